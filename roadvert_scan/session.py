#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Scan sessions: a bounded discovery window feeding decoded beacon URLs
# through a per-session admission filter into concurrent page enrichment.
#

"""Beacon scan sessions and the bleak-backed scan source."""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, List, Optional, Set

from bleak import BleakScanner
from bleak.exc import BleakError

from .eddystone import (
    EDDYSTONE_SERVICE_UUID,
    decode_url_frame,
    service_data_from_advertisement,
)
from .metadata import BeaconInfo

DEFAULT_SCAN_WINDOW = 10.0  # seconds of discovery per session


class ScanPermissionError(RuntimeError):
    """Scanning is not allowed or the radio could not be started."""


class ScanStatus(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


@dataclass(frozen=True)
class RawAdvertisement:
    """Eddystone service data seen from one device during a scan."""
    service_data: bytes
    address: str = ""
    rssi: Optional[int] = None


class AdmissionFilter:
    """Insert-only set of URLs already admitted in a session."""

    def __init__(self, lock: Optional[threading.Lock] = None):
        self._seen: Set[str] = set()
        self._lock = lock or threading.Lock()

    def admit(self, url: str) -> bool:
        """Return True and record *url* if it has not been admitted before."""
        with self._lock:
            if url in self._seen:
                return False
            self._seen.add(url)
            return True

    @property
    def seen(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._seen)

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class SessionState:
    """Everything one scan session owns.

    ``results`` is kept in completion order.  Dismissing a result leaves
    its URL admitted, so a re-broadcast does not bring it back.
    """

    def __init__(self):
        # One lock guards both the seen set and the results list
        self._lock = threading.Lock()
        self.admission = AdmissionFilter(self._lock)
        self._results: List[BeaconInfo] = []
        self.status = ScanStatus.IDLE
        self.tasks: Set[asyncio.Task] = set()
        self.advertisements = 0
        self.url_frames = 0
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None

    @property
    def seen(self) -> FrozenSet[str]:
        return self.admission.seen

    @property
    def results(self) -> List[BeaconInfo]:
        with self._lock:
            return list(self._results)

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else time.time()
        return end - self.started_at

    def admit(self, url: str) -> bool:
        return self.admission.admit(url)

    def append(self, info: BeaconInfo):
        with self._lock:
            self._results.append(info)

    def dismiss(self, index: int) -> BeaconInfo:
        with self._lock:
            return self._results.pop(index)

    def track(self, task: asyncio.Task):
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)


@dataclass
class _Advertisement:
    state: SessionState
    raw: RawAdvertisement


@dataclass
class _Enriched:
    state: SessionState
    info: BeaconInfo


Listener = Callable[["SessionController"], None]


class SessionController:
    """Runs scan sessions: ``Idle -> Scanning -> Idle``.

    Advertisements and finished enrichments are posted to one inbox that a
    single task drains, so admission and result insertion happen in order.
    Every message carries the session it belongs to; results from a session
    that has since been replaced land in that discarded state only.

    *source* must provide ``start(callback)`` and ``stop()`` coroutines and
    may provide ``ensure_permissions()``.  *fetcher* must provide an
    ``enrich(url)`` coroutine that returns a :class:`BeaconInfo`.
    """

    def __init__(self, source, fetcher, duration: float = DEFAULT_SCAN_WINDOW,
                 permission_gate: Optional[Callable[[], Awaitable[bool]]] = None,
                 on_admit: Optional[Callable[[str, RawAdvertisement], None]] = None):
        self.source = source
        self.fetcher = fetcher
        self.duration = duration
        self.permission_gate = permission_gate
        self.on_admit = on_admit
        self._state = SessionState()
        self._listeners: List[Listener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._lock: Optional[asyncio.Lock] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._window_task: Optional[asyncio.Task] = None
        self.hook_errors = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> ScanStatus:
        return self._state.status

    @property
    def results(self) -> List[BeaconInfo]:
        return self._state.results

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        self._listeners.remove(listener)

    def _notify(self, state: SessionState):
        if state is not self._state:
            return
        for listener in list(self._listeners):
            self._call_hook(listener, self)

    def _call_hook(self, hook, *args):
        try:
            hook(*args)
        except Exception:
            # Observer failures never stop the session
            self.hook_errors += 1

    def _ensure_running(self):
        if self._drain_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._inbox = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._drain_task = self._loop.create_task(self._drain())

    async def _permission_granted(self) -> bool:
        gate = self.permission_gate
        if gate is None:
            gate = getattr(self.source, "ensure_permissions", None)
        if gate is None:
            return True
        return bool(await gate())

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def start(self) -> SessionState:
        """Start a fresh session, replacing (and stopping) the current one."""
        self._ensure_running()
        if not await self._permission_granted():
            raise ScanPermissionError("Permissions required to scan")

        async with self._lock:
            await self._cancel_window()
            await self._end_discovery(self._state)

            state = SessionState()
            state.status = ScanStatus.SCANNING
            state.started_at = time.time()
            try:
                await self.source.start(self._subscriber(state))
            except BaseException:
                state.status = ScanStatus.IDLE
                raise
            self._state = state
            self._window_task = self._loop.create_task(self._run_window(state))
        self._notify(state)
        return state

    async def stop(self):
        """End discovery now.  Enrichment already in flight still finishes."""
        if self._lock is None:
            return
        async with self._lock:
            await self._cancel_window()
            await self._end_discovery(self._state)

    def dismiss(self, index: int) -> BeaconInfo:
        """Remove the result at *index*; its URL stays admitted."""
        state = self._state
        info = state.dismiss(index)
        self._notify(state)
        return info

    async def wait_for_idle(self):
        """Wait until the current discovery window has ended."""
        task = self._window_task
        if task is not None:
            await asyncio.wait({task})

    async def wait_for_enrichment(self):
        """Wait until every admitted URL of the current session has a result."""
        if self._inbox is None:
            return
        state = self._state
        while True:
            pending = [t for t in state.tasks if not t.done()]
            if pending:
                await asyncio.gather(*pending)
            await self._inbox.join()
            if all(t.done() for t in state.tasks):
                return

    async def close(self):
        await self.stop()
        task, self._drain_task = self._drain_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def __aenter__(self) -> "SessionController":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # ------------------------------------------------------------------
    # Discovery window
    # ------------------------------------------------------------------

    def _subscriber(self, state: SessionState) -> Callable[[RawAdvertisement], None]:
        loop = self._loop
        inbox = self._inbox
        loop_thread = self._loop_thread

        def deliver(raw: RawAdvertisement):
            message = _Advertisement(state, raw)
            if threading.get_ident() == loop_thread:
                inbox.put_nowait(message)
            else:
                # Scan backends may call back from their own thread
                loop.call_soon_threadsafe(inbox.put_nowait, message)

        return deliver

    async def _run_window(self, state: SessionState):
        await asyncio.sleep(self.duration)
        async with self._lock:
            if self._window_task is asyncio.current_task():
                self._window_task = None
            await self._end_discovery(state)

    async def _cancel_window(self):
        task, self._window_task = self._window_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _end_discovery(self, state: SessionState):
        if state.status is not ScanStatus.SCANNING:
            return
        state.status = ScanStatus.IDLE
        state.ended_at = time.time()
        await self.source.stop()
        self._notify(state)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def _drain(self):
        while True:
            message = await self._inbox.get()
            try:
                if isinstance(message, _Advertisement):
                    self._on_advertisement(message.state, message.raw)
                else:
                    self._on_enriched(message.state, message.info)
            except Exception:
                self.hook_errors += 1
            finally:
                self._inbox.task_done()

    def _on_advertisement(self, state: SessionState, raw: RawAdvertisement):
        # Late deliveries from a stopped subscription are dropped
        if state.status is not ScanStatus.SCANNING:
            return
        state.advertisements += 1
        url = decode_url_frame(raw.service_data)
        if url is None:
            return
        state.url_frames += 1
        if not state.admit(url):
            return
        state.track(self._loop.create_task(self._enrich(state, url)))
        if self.on_admit is not None:
            self._call_hook(self.on_admit, url, raw)

    async def _enrich(self, state: SessionState, url: str):
        info = await self.fetcher.enrich(url)
        self._inbox.put_nowait(_Enriched(state, info))

    def _on_enriched(self, state: SessionState, info: BeaconInfo):
        state.append(info)
        self._notify(state)


class BleakScanSource:
    """Scan source backed by one ``BleakScanner`` per adapter."""

    def __init__(self, adapters: Optional[List[str]] = None,
                 active: bool = False):
        self.adapters = adapters
        self.active = active
        self._scanners: List[BleakScanner] = []

    async def ensure_permissions(self) -> bool:
        # Desktop BLE stacks have no runtime permission prompt; access
        # problems show up when the scanner starts.
        return True

    async def start(self, callback: Callable[[RawAdvertisement], None]):
        def detection_callback(device, adv):
            data = service_data_from_advertisement(adv)
            if data is None:
                return
            callback(RawAdvertisement(data, device.address or "", adv.rssi))

        scanner_kwargs: dict = {
            "detection_callback": detection_callback,
            "service_uuids": [EDDYSTONE_SERVICE_UUID],
        }
        if self.active:
            scanner_kwargs["scanning_mode"] = "active"

        scanners = []
        if self.adapters:
            for adapter in self.adapters:
                scanners.append(BleakScanner(**scanner_kwargs, adapter=adapter))
        else:
            scanners.append(BleakScanner(**scanner_kwargs))

        started = []
        try:
            for s in scanners:
                await s.start()
                started.append(s)
        except (BleakError, OSError) as e:
            for s in started:
                await s.stop()
            raise ScanPermissionError(f"Could not start BLE scan: {e}") from e
        self._scanners = scanners

    async def stop(self):
        scanners, self._scanners = self._scanners, []
        for s in scanners:
            await s.stop()
