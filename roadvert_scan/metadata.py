#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Fetches the page behind a beacon URL and pulls out a human-readable
# preview: Open Graph title/image, <title>, and meta description.
#

"""Page metadata enrichment for decoded beacon URLs."""

import asyncio
from dataclasses import asdict, dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

_OG_TITLE = 'meta[property="og:title"]'
_OG_IMAGE = 'meta[property="og:image"]'
_META_DESCRIPTION = 'meta[name="description"]'
_TITLE = "title"

_FAVICON_SERVICE = "https://www.google.com/s2/favicons?sz=64&domain={host}"


@dataclass(frozen=True)
class BeaconInfo:
    url: str
    title: str
    description: str = ""
    image_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def fallback_info(url: str) -> BeaconInfo:
    """The record used when a page cannot be fetched or read."""
    return BeaconInfo(url=url, title=url, description="", image_url=None)


def favicon_url(url: str) -> str:
    """Build a favicon lookup URL for the host of *url*."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        host = ""
    return _FAVICON_SERVICE.format(host=host)


def _meta_content(doc, selector: str) -> Optional[str]:
    node = doc.select_one(selector)
    if node is None:
        return None
    content = node.get("content")
    if content is None:
        return None
    return content.strip()


def extract_metadata(url: str, body: bytes) -> BeaconInfo:
    """Parse an HTML body and build a :class:`BeaconInfo` for *url*.

    Raises ``UnicodeDecodeError`` when the body is not valid UTF-8.
    """
    doc = BeautifulSoup(body.decode("utf-8"), "html.parser")

    title = _meta_content(doc, _OG_TITLE)
    if not title:
        node = doc.select_one(_TITLE)
        title = node.get_text().strip() if node is not None else ""
    if not title:
        title = url

    description = _meta_content(doc, _META_DESCRIPTION) or ""
    image_url = _meta_content(doc, _OG_IMAGE) or None

    return BeaconInfo(url=url, title=title, description=description,
                      image_url=image_url)


class MetadataFetcher:
    """Fetch-and-extract for beacon URLs over a shared ``httpx.AsyncClient``.

    :meth:`enrich` never raises: any failure yields :func:`fallback_info`.
    Pass *on_error* to be told why a URL fell back.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 user_agent: Optional[str] = None,
                 on_error: Optional[Callable[[str, Exception], None]] = None):
        self._owns_client = client is None
        if client is None:
            headers = {"User-Agent": user_agent} if user_agent else None
            client = httpx.AsyncClient(follow_redirects=True, headers=headers)
        self._client = client
        self.on_error = on_error

    async def enrich(self, url: str) -> BeaconInfo:
        try:
            response = await self._client.get(url)
            if response.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"HTTP {response.status_code}",
                    request=response.request, response=response)
            # Parsing runs off the event loop so discovery keeps going
            return await asyncio.to_thread(extract_metadata, url, response.content)
        except Exception as exc:
            self._report(url, exc)
            return fallback_info(url)

    def _report(self, url: str, exc: Exception):
        if self.on_error is None:
            return
        try:
            self.on_error(url, exc)
        except Exception:
            pass

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MetadataFetcher":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
