"""
Side-channel UCID reader backed by the AES station monitor service.

GET {base}/monitor?station=&timeout= blocks on the monitor side until the
station sees a call or the timeout passes, then answers
{"ok": true, "station": ..., "ucid": ...} (200) or {"ok": false, "error": ...} (202).
"""

import asyncio
from typing import Optional

import aiohttp

from callbridge.config import MonitorConfig
from callbridge.logging_config import get_logger
from callbridge.utils.masking import mask_ucid

logger = get_logger(__name__)

# slack on top of the monitor's own timeout for the HTTP round trip
HTTP_GRACE_MS = 2000


class UcidMonitorClient:
    """Fetches a UCID for a station. Never raises: every failure resolves to None."""

    def __init__(self, http_session: aiohttp.ClientSession, settings: MonitorConfig, log=None):
        self.http_session = http_session
        self.settings = settings
        self._log = log or logger

    @property
    def enabled(self) -> bool:
        return bool(self.settings.base_url)

    async def fetch_ucid(self, station: str, timeout_ms: Optional[int] = None, log=None) -> Optional[str]:
        log = log or self._log
        if not self.enabled:
            log.warning("UCID monitor base URL not set; skipping side-channel lookup")
            return None

        timeout_ms = timeout_ms if timeout_ms is not None else self.settings.timeout_ms
        url = f"{self.settings.base_url.rstrip('/')}/monitor"
        try:
            async with self.http_session.get(
                url,
                params={"station": station, "timeout": str(timeout_ms)},
                timeout=aiohttp.ClientTimeout(total=(timeout_ms + HTTP_GRACE_MS) / 1000.0),
            ) as response:
                data = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning("UCID monitor error", station=station, error=repr(e))
            return None

        if isinstance(data, dict) and data.get("ok") and data.get("ucid"):
            log.info("UCID monitor returned", station=station, ucid=mask_ucid(data["ucid"]))
            return str(data["ucid"])
        log.warning("UCID monitor returned no ucid", station=station, status=status, data=data)
        return None
