"""
Client for the call-recording archive (ACR).

A single endpoint serves both the search command (XML result list) and the
replay command (raw recording bytes, honoring Range).
"""

import asyncio
import time
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

import aiofiles
import aiohttp

from callbridge.archive.query import (
    DEFAULT_END_TIME,
    DEFAULT_START_TIME,
    compute_window,
    number_search_params,
    parse_started_at,
    ucid_search_params,
    validate_time,
)
from callbridge.config import ArchiveConfig
from callbridge.core.models import RecordingRecord, SearchResult
from callbridge.errors import CacheError, RemoteTransportError
from callbridge.logging_config import get_logger
from callbridge.utils.masking import mask_phone, mask_ucid, safe_trunc

logger = get_logger(__name__)

REPLAY_ROUTE = "/api/acr/replay"
DOWNLOAD_CHUNK_BYTES = 64 * 1024


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_results(body: str) -> Tuple[int, List[Tuple[Optional[str], Dict[str, Optional[str]]]]]:
    """
    Parse a search response into (result_count, [(inum, fields), ...]).

    Field names are lower-cased so naming variants between archive versions
    map onto the same keys.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise RemoteTransportError(f"Unparseable archive search response: {e}") from e
    results = root.findall("result") if root.tag == "results" else root.findall(".//result")
    parsed = []
    for result in results:
        fields = {}
        for f in result.findall("field"):
            fields[str(f.get("name") or "").lower()] = f.text
        parsed.append((result.get("inum") or None, fields))
    return len(results), parsed


class ArchiveClient:
    """Searches the archive and fetches raw recordings."""

    def __init__(self, http_session: aiohttp.ClientSession, settings: ArchiveConfig, log=None):
        self.http_session = http_session
        self.settings = settings
        self._log = log or logger

    @property
    def base_url(self) -> str:
        return self.settings.base_url

    def _auth(self) -> Optional[aiohttp.BasicAuth]:
        if self.settings.username or self.settings.password:
            return aiohttp.BasicAuth(self.settings.username or "", self.settings.password or "")
        return None

    def replay_urls(self, inum: str) -> Tuple[str, str]:
        """(raw archive URL, proxied URL served by this service)."""
        raw = f"{self.base_url}?{urlencode({'command': 'replay', 'id': inum})}"
        proxied = f"{REPLAY_ROUTE}/{quote(inum, safe='')}"
        return raw, proxied

    def _to_record(self, inum: Optional[str], fields: Dict[str, Optional[str]], number: Optional[str] = None):
        if not inum:
            return None
        raw, proxied = self.replay_urls(inum)
        return RecordingRecord(
            inum=inum,
            ucid=fields.get("switchcallid") or None,
            number=number,
            started_at=fields.get("startedat") or None,
            duration_sec=_to_int(fields.get("duration")) if fields.get("duration") else None,
            agents=fields.get("agents") or None,
            other_parties=fields.get("otherparties") or None,
            services=fields.get("services") or None,
            skills=fields.get("skills") or None,
            playback_url=proxied,
            raw_playback_url=raw,
            fields=fields,
        )

    async def _search(self, params: Dict, log) -> Tuple[int, List[Tuple[Optional[str], Dict]]]:
        t0 = time.monotonic()
        try:
            async with self.http_session.get(
                self.base_url,
                params={k: str(v) for k, v in params.items()},
                auth=self._auth(),
                timeout=aiohttp.ClientTimeout(total=self.settings.search_timeout_sec),
            ) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteTransportError(f"Archive search request error: {e!r}") from e

        log.info(
            "Archive search response",
            status=status,
            ms=int((time.monotonic() - t0) * 1000),
            xml_sample=safe_trunc(body, 400),
        )
        if not 200 <= status < 300:
            raise RemoteTransportError(f"Archive search failed with HTTP {status}", status=status)
        count, parsed = parse_results(body)
        log.info("Archive search parsed", count=count)
        return count, parsed

    async def search_by_ucid(
        self,
        ucid: str,
        startdate: str,
        enddate: Optional[str] = None,
        window_days=None,
    ) -> SearchResult:
        """Recordings whose switch call id equals the UCID, in archive order."""
        window = compute_window(startdate, enddate, window_days)
        log = self._log.bind(ucid_masked=mask_ucid(ucid))
        log.info("Archive search by UCID", p1=window.p1, p3=window.p3)

        count, parsed = await self._search(ucid_search_params(window, ucid), log)
        items = [r for r in (self._to_record(inum, fields) for inum, fields in parsed) if r is not None]
        if count and len(items) < count:
            log.warning("Archive results without inum dropped", dropped=count - len(items))
        return SearchResult(window=window, items=items, total=count)

    async def search_by_number(
        self,
        number: str,
        startdate: str,
        enddate: Optional[str] = None,
        window_days=None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """
        Recordings whose other party matches the number, newest first.

        limit 0/None returns only the newest record; otherwise up to `limit`.
        total counts every record that carries an inum.
        """
        window = compute_window(startdate, enddate, window_days)
        p2 = validate_time(start_time, DEFAULT_START_TIME, "starttime")
        p4 = validate_time(end_time, DEFAULT_END_TIME, "endtime")
        limit = limit if limit and limit > 0 else 0
        log = self._log.bind(number_masked=mask_phone(number))
        log.info("Archive search by number", p1=window.p1, p2=p2, p3=window.p3, p4=p4, limit=limit)

        _, parsed = await self._search(number_search_params(window, number, p2, p4), log)
        items = [r for r in (self._to_record(inum, fields, number) for inum, fields in parsed) if r is not None]
        items.sort(key=lambda r: parse_started_at(r.started_at), reverse=True)

        total = len(items)
        selected = items[:limit] if limit else items[:1]
        return SearchResult(window=window, items=selected, total=total, limit=limit)

    async def download_raw(self, inum: str, out_path: str, log=None) -> int:
        """
        Stream the raw recording to out_path.

        Returns:
            Number of bytes written

        Raises:
            RemoteTransportError: network failure or status outside 200..399
            CacheError: the file could not be written
        """
        log = log or self._log
        raw_url, _ = self.replay_urls(inum)
        log.info("Archive download start", inum=inum, out_path=out_path)
        t0 = time.monotonic()
        written = 0
        try:
            async with self.http_session.get(
                raw_url,
                auth=self._auth(),
                timeout=aiohttp.ClientTimeout(total=self.settings.download_timeout_sec),
            ) as response:
                if response.status < 200 or response.status >= 400:
                    log.error("Archive download http error", inum=inum, status=response.status)
                    raise RemoteTransportError(f"Archive GET failed ({response.status})", status=response.status)
                async with aiofiles.open(out_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_BYTES):
                        await f.write(chunk)
                        written += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("Archive download stream error", inum=inum, error=repr(e))
            raise RemoteTransportError(f"Archive download error: {e!r}") from e
        except OSError as e:
            log.error("Archive download write error", inum=inum, error=str(e))
            raise CacheError(f"Could not write {out_path}: {e}") from e

        log.info("Archive download done", inum=inum, ms=int((time.monotonic() - t0) * 1000), size=written)
        return written

    async def open_replay(self, inum: str, method: str = "GET", headers: Optional[Dict[str, str]] = None):
        """
        Open a replay request against the archive and return the live response.

        The caller owns the response and must release it.
        """
        raw_url, _ = self.replay_urls(inum)
        try:
            return await self.http_session.request(
                method,
                raw_url,
                headers=headers or {},
                auth=self._auth(),
                timeout=aiohttp.ClientTimeout(
                    total=None,
                    sock_connect=self.settings.replay_timeout_sec,
                    sock_read=self.settings.replay_timeout_sec,
                ),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteTransportError(f"Archive replay error: {e!r}") from e
