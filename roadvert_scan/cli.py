#!/usr/bin/env python3
#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Scans for BLE beacons broadcasting Eddystone-URL frames, decodes the URL
# each one carries, and fetches the page behind it to show a title,
# description and preview image for every distinct URL found.
#

"""Eddystone-URL scanner - discover beacons and preview the pages they link."""

import argparse
import asyncio
import csv
import json
import os
import platform
import signal
import sys
from datetime import datetime
from typing import List, Optional

try:
    import bleak  # noqa: F401
except ImportError:
    print("Error: 'bleak' is not installed.")
    print("Install dependencies with:  pip install roadvert-scan")
    sys.exit(1)

try:
    import httpx  # noqa: F401
    import bs4  # noqa: F401
except ImportError:
    print("Error: 'httpx' and 'beautifulsoup4' are required.")
    print("Install dependencies with:  pip install roadvert-scan")
    sys.exit(1)

from .metadata import BeaconInfo, MetadataFetcher, favicon_url
from .session import (
    DEFAULT_SCAN_WINDOW,
    BleakScanSource,
    RawAdvertisement,
    ScanPermissionError,
    SessionController,
)

_USER_AGENT_ENV = "ROADVERT_USER_AGENT"

_FIELDNAMES = [
    "timestamp", "url", "title", "description", "image_url", "favicon_url",
]

_BANNER = r"""
                     _                 _
  _ __ ___   __ _  __| |_   _____ _ __| |_
 | '__/ _ \ / _` |/ _` \ \ / / _ \ '__| __|
 | | | (_) | (_| | (_| |\ V /  __/ |  | |_
 |_|  \___/ \__,_|\__,_| \_/ \___|_|   \__|
   Eddystone-URL Beacon Scanner
"""


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


def _build_record(info: BeaconInfo) -> dict:
    return {
        "timestamp": _timestamp(),
        "url": info.url,
        "title": info.title,
        "description": info.description,
        "image_url": info.image_url or "",
        "favicon_url": favicon_url(info.url),
    }


class BeaconScanner:
    def __init__(self, timeout: float = DEFAULT_SCAN_WINDOW,
                 output_format: Optional[str] = None,
                 output_file: Optional[str] = None,
                 verbose: bool = False,
                 quiet: bool = False,
                 active: bool = False,
                 adapters: Optional[List[str]] = None,
                 log_file: Optional[str] = None,
                 user_agent: Optional[str] = None,
                 gui: bool = False,
                 gui_port: int = 5000,
                 source=None,
                 fetcher: Optional[MetadataFetcher] = None):
        self.timeout = timeout
        self.output_format = output_format
        self.output_file = output_file
        self.verbose = verbose
        self.quiet = quiet
        self.active = active
        self.adapters = adapters
        self.log_file = log_file
        self.user_agent = user_agent
        self.gui = gui
        self.gui_port = gui_port
        self.running = True
        self.records: List[dict] = []
        self.fetch_failures = 0
        self._printed = 0
        self._log_writer = None
        self._log_fh = None
        self._gui_server = None
        self._stop_event: Optional[asyncio.Event] = None

        self.source = source or BleakScanSource(adapters=adapters, active=active)
        self.fetcher = fetcher or MetadataFetcher(user_agent=user_agent)
        self.fetcher.on_error = self._on_fetch_error
        self.controller = SessionController(
            self.source, self.fetcher, duration=timeout,
            on_admit=self._on_admit)
        self.controller.add_listener(self._on_update)

    # ------------------------------------------------------------------
    # Controller callbacks
    # ------------------------------------------------------------------

    def _on_admit(self, url: str, raw: RawAdvertisement):
        if self.verbose and not self.gui:
            rssi = f"{raw.rssi} dBm" if raw.rssi is not None else "N/A"
            print(f"  [+] {url}  (from {raw.address or 'unknown'}, RSSI {rssi})")

    def _on_fetch_error(self, url: str, exc: Exception):
        self.fetch_failures += 1
        if self.verbose and not self.gui:
            print(f"  [!] Could not load {url} — {exc.__class__.__name__}: {exc}")

    def _on_update(self, controller: SessionController):
        """Print and log any results completed since the last update."""
        results = controller.results
        if len(results) <= self._printed:
            # dismissal or status change
            self._printed = len(results)
            return
        for info in results[self._printed:]:
            self._record_beacon(info)
        self._printed = len(results)

    def _record_beacon(self, info: BeaconInfo):
        record = _build_record(info)
        self.records.append(record)

        if self._log_writer is not None:
            self._log_writer.writerow(record)
            self._log_fh.flush()

        if not self.quiet and not self.gui:
            self._print_beacon(info, len(self.records))

    def _print_beacon(self, info: BeaconInfo, number: int):
        print(f"\n{'='*60}")
        print(f"  BEACON #{number}")
        print(f"{'='*60}")
        print(f"  Title        : {info.title}")
        if info.description:
            print(f"  Description  : {info.description}")
        print(f"  URL          : {info.url}")
        if info.image_url:
            print(f"  Image        : {info.image_url}")
        print(f"  Timestamp    : {_timestamp()}")
        print(f"{'='*60}")

    # ------------------------------------------------------------------
    # Main scan flow
    # ------------------------------------------------------------------

    async def scan(self) -> int:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        if platform.system() != "Windows":
            loop.add_signal_handler(signal.SIGINT, self.stop)
            loop.add_signal_handler(signal.SIGTERM, self.stop)

        if self.log_file:
            self._log_fh = open(self.log_file, "w", newline="")
            self._log_writer = csv.DictWriter(self._log_fh,
                                              fieldnames=_FIELDNAMES)
            self._log_writer.writeheader()
            self._log_fh.flush()

        if not self.quiet and not self.gui:
            self._print_header()

        status = 0
        try:
            if self.gui:
                from .gui import GuiServer
                self._gui_server = GuiServer(self.controller, port=self.gui_port)
                self._gui_server.start()

            try:
                await self.controller.start()
            except ScanPermissionError as e:
                print("Permissions required to scan")
                print(f"  {e}")
                if not self.gui:
                    return 1
                status = 1

            if self.gui:
                # Rescans come from the browser; run until Ctrl+C
                await self._stop_event.wait()
            else:
                await self._wait_for_window()
            await self.controller.stop()
            if self.running:
                await self.controller.wait_for_enrichment()
        finally:
            await self.controller.close()
            await self.fetcher.aclose()
            if self._gui_server is not None:
                self._gui_server.stop()
            if self._log_fh is not None:
                self._log_fh.close()
                self._log_fh = None
                self._log_writer = None

        if not self.gui and not self.quiet:
            self._print_summary()
        self._write_output()
        return status

    async def _wait_for_window(self):
        idle = asyncio.ensure_future(self.controller.wait_for_idle())
        stopped = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({idle, stopped},
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            for f in (idle, stopped):
                f.cancel()

    def _print_header(self):
        """Print scan configuration banner."""
        print(_BANNER)
        scan_mode = "active" if self.active else "passive"
        print(f"Scanning: {scan_mode}  |  Eddystone-URL frames only")
        if self.active and platform.system() == "Darwin":
            print("  Note: CoreBluetooth always scans actively regardless of this flag")
        if self.adapters:
            print(f"Adapters: {', '.join(self.adapters)}")
        if self.log_file:
            print(f"Live log: {self.log_file}")
        if self.user_agent:
            print(f"User-Agent: {self.user_agent}")
        print(f"Timeout: {self.timeout}s  |  Press Ctrl+C to stop")
        print(f"{'—'*60}")

    def _print_summary(self):
        """Print scan summary statistics."""
        state = self.controller.state
        print(f"\n{'—'*60}")
        print(f"Scan complete — {state.elapsed:.1f}s elapsed")
        print(f"  Eddystone adverts : {state.advertisements}")
        print(f"  URL frames        : {state.url_frames}")
        print(f"  Unique URLs       : {len(state.seen)}")
        print(f"  Pages unavailable : {self.fetch_failures}")
        if state.results:
            print(f"\n  {'Title':<30} {'URL'}")
            print(f"  {'—'*30} {'—'*28}")
            for info in state.results:
                print(f"  {info.title[:30]:<30} {info.url}")
        else:
            print("\n  No beacons found — make sure Eddystone-URL beacons are")
            print("  in range and Bluetooth is enabled.")

    def _write_output(self):
        """Write batch output file (json / jsonl / csv)."""
        if not self.output_format or not self.records:
            if self.log_file:
                print(f"  Live log written to {self.log_file}")
            return

        filename = self.output_file or f"roadvert-scan-results.{self.output_format}"

        # Support writing to stdout with --output-file -
        if filename == "-":
            if self.output_format == "json":
                sys.stdout.write(json.dumps(self.records, indent=2) + "\n")
            elif self.output_format == "jsonl":
                for record in self.records:
                    sys.stdout.write(json.dumps(record) + "\n")
            elif self.output_format == "csv":
                writer = csv.DictWriter(sys.stdout, fieldnames=_FIELDNAMES)
                writer.writeheader()
                writer.writerows(self.records)
            return

        if self.output_format == "json":
            with open(filename, "w") as f:
                json.dump(self.records, f, indent=2)
        elif self.output_format == "jsonl":
            with open(filename, "w") as f:
                for record in self.records:
                    f.write(json.dumps(record) + "\n")
        elif self.output_format == "csv":
            with open(filename, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=_FIELDNAMES)
                writer.writeheader()
                writer.writerows(self.records)
        print(f"  Results written to {filename}")
        if self.log_file:
            print(f"  Live log written to {self.log_file}")

    def stop(self):
        if not self.gui and self.running:
            print("\nStopping scan...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()


def main():
    parser = argparse.ArgumentParser(
        description="Eddystone-URL scanner — find beacons and preview their pages"
    )
    parser.add_argument(
        "-t", "--timeout", type=float, default=DEFAULT_SCAN_WINDOW,
        help=f"Discovery window in seconds (default: {DEFAULT_SCAN_WINDOW:g})"
    )

    # Output / logging
    parser.add_argument(
        "--output", choices=["csv", "json", "jsonl"], default=None,
        help="Batch output format written once every page has been fetched"
    )
    parser.add_argument(
        "-o", "--output-file", type=str, default=None, metavar="FILE",
        help="Output file path (default: roadvert-scan-results.<format>; "
             "use - for stdout)"
    )
    parser.add_argument(
        "--log", type=str, default=None, metavar="FILE",
        help="Stream each beacon to a CSV file as its page is fetched"
    )

    # Verbosity
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v", "--verbose", action="store_true",
        help="Verbose mode — show each new URL and why pages failed to load"
    )
    verbosity.add_argument(
        "-q", "--quiet", action="store_true",
        help="Quiet mode — suppress per-beacon output and summary"
    )

    # Scanner
    parser.add_argument(
        "--active", action="store_true",
        help="Use active scanning (default: passive)"
    )
    parser.add_argument(
        "--adapters", type=str, default=None, metavar="LIST",
        help="Comma-separated Bluetooth adapter names to scan with "
             "(e.g. hci0,hci1 — Linux only)"
    )

    # HTTP
    parser.add_argument(
        "--user-agent", type=str, default=None, metavar="UA",
        help=f"User-Agent header for page fetches "
             f"(default: ${_USER_AGENT_ENV} or the httpx default)"
    )

    # GUI
    parser.add_argument(
        "--gui", action="store_true",
        help="Launch the web interface in the browser"
    )
    parser.add_argument(
        "--gui-port", type=int, default=5000, metavar="PORT",
        help="Port for GUI web server (default: 5000)"
    )

    args = parser.parse_args()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    if args.output_file and not args.output:
        parser.error("--output-file (-o) requires --output to specify "
                     "the format (csv, json, or jsonl)")

    if args.timeout <= 0:
        parser.error("--timeout must be greater than 0")

    if args.gui and args.quiet:
        parser.error("Cannot use --gui with --quiet")

    if args.gui:
        from .gui import _HAS_FLASK
        if not _HAS_FLASK:
            parser.error("--gui requires Flask and flask-socketio. "
                         "Install with: pip install roadvert-scan[gui]")

    adapters = None
    if args.adapters:
        adapters = [a.strip() for a in args.adapters.split(",") if a.strip()]
        if not adapters:
            parser.error("--adapters requires at least one adapter name")

    user_agent = args.user_agent or os.environ.get(_USER_AGENT_ENV) or None

    scanner = BeaconScanner(
        timeout=args.timeout,
        output_format=args.output,
        output_file=args.output_file,
        verbose=args.verbose,
        quiet=args.quiet,
        active=args.active,
        adapters=adapters,
        log_file=args.log,
        user_agent=user_agent,
        gui=args.gui,
        gui_port=args.gui_port,
    )

    try:
        status = asyncio.run(scanner.scan())
    except KeyboardInterrupt:
        # Windows has no add_signal_handler; Ctrl+C lands here instead
        scanner.stop()
        status = 0
    sys.exit(status)


if __name__ == "__main__":
    main()
