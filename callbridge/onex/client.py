"""
Client for the one-X agent voice-control HTTP API.

Every endpoint is a GET with query parameters that answers with a small XML
document; the attributes of its root element carry the result
(ResponseCode, ClientId, ...). Notifications arrive as child elements of
NextNotificationResponse.
"""

import asyncio
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from callbridge.config import OnexConfig
from callbridge.errors import InputValidationError, RemoteLogicalError, RemoteTransportError
from callbridge.logging_config import get_logger

logger = get_logger(__name__)

SUCCESS_CODE = "0"
VOICE_ACTIONS = ("makecall", "release", "hold", "unhold", "mute", "unmute")

_HOST_RE = re.compile(r"^[a-zA-Z0-9.\-:]+$")


@dataclass
class VoiceResponse:
    status: int
    attrs: Dict[str, str]

    @property
    def code(self) -> Optional[str]:
        return self.attrs.get("ResponseCode")

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE


@dataclass
class VoiceNotification:
    """Fields of a VoiceInteractionCreated notification."""
    interaction_id: Optional[str]
    ucid: Optional[str]


def build_base_url(device_address: str, settings: OnexConfig) -> str:
    """
    Build the API base URL for an agent device.

    A full http(s):// URL is used as-is with the API path appended when
    missing. A bare host or host:port gets the configured scheme, default port
    and API path.
    """
    address = (device_address or "").strip()
    api_path = settings.api_path or ""
    if re.match(r"^https?://", address, re.IGNORECASE):
        parts = urlsplit(address)
        path = parts.path
        if api_path and not path.endswith(api_path):
            path = path.rstrip("/") + api_path
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))
    if not address:
        raise InputValidationError("Missing required deviceIp", ["deviceIp"])
    if not _HOST_RE.match(address):
        raise InputValidationError("Invalid device IP/host", ["deviceIp"])
    port_part = "" if ":" in address else f":{settings.port}"
    return f"{settings.scheme}://{address}{port_part}{api_path}"


def parse_response_attrs(body: str) -> Dict[str, str]:
    """Attributes of the XML root element; empty for an empty or invalid body."""
    if not body or not body.strip():
        return {}
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return {}
    return dict(root.attrib)


def parse_notification(body: str) -> Optional[VoiceNotification]:
    """Extract VoiceInteractionCreated from a nextnotification response, if present."""
    if not body or not body.strip():
        return None
    root = ET.fromstring(body)
    if root.tag != "NextNotificationResponse":
        return None
    created = root.find("VoiceInteractionCreated")
    if created is None:
        return None
    return VoiceNotification(
        interaction_id=created.get("ObjectId"),
        ucid=created.get("UCID"),
    )


class OneXClient:
    """A client bound to one agent device's voice-control API."""

    def __init__(self, base_url: str, http_session: aiohttp.ClientSession, settings: OnexConfig, log=None):
        self.base_url = base_url.rstrip("/")
        self.http_session = http_session
        self.settings = settings
        self._log = log or logger

    async def _get(self, resource: str, params: Dict[str, Any], timeout: float):
        """GET {base}/{resource}; returns (status, body). Transport failures raise RemoteTransportError."""
        url = f"{self.base_url}/{resource}"
        clean = {k: str(v) for k, v in params.items() if v is not None}
        try:
            async with self.http_session.get(
                url, params=clean, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                body = await response.text()
                if response.status >= 400:
                    self._log.error("one-X request failed", resource=resource, status=response.status)
                    raise RemoteTransportError(
                        f"one-X {resource} failed with HTTP {response.status}", status=response.status
                    )
                return response.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteTransportError(f"one-X {resource} request error: {e!r}") from e

    async def register_client(self, name: str) -> Dict[str, str]:
        """Register a client session. Returns the response attributes (ResponseCode, ClientId)."""
        self._log.info("Registering one-X client", client_name=name)
        _, body = await self._get("registerclient", {"name": name}, self.settings.register_timeout_sec)
        attrs = parse_response_attrs(body)
        self._log.info("registerclient parsed", attrs=attrs)
        return attrs

    async def unregister_client(self, client_id: str) -> None:
        self._log.info("Unregistering one-X client", client_id=client_id)
        await self._get("unregisterclient", {"clientid": client_id}, self.settings.register_timeout_sec)
        self._log.info("Unregistered one-X client", client_id=client_id)

    async def ensure_client(self, preferred_name: str, client_id: Optional[str] = None):
        """
        Reuse a caller-supplied session or register a new one.

        Returns:
            (client_id, created) where created tells the caller it owns teardown
        """
        if client_id:
            return client_id, False
        attrs = await self.register_client(preferred_name)
        new_id = attrs.get("ClientId") or attrs.get("clientId")
        if not new_id:
            raise RemoteLogicalError("Failed to register one-X client", code=attrs.get("ResponseCode"))
        return new_id, True

    async def voice_action(self, action: str, params: Dict[str, Any]) -> VoiceResponse:
        if action not in VOICE_ACTIONS:
            raise ValueError(f"Unknown voice action: {action}")
        status, body = await self._get(f"voice/{action}", params, self.settings.request_timeout_sec)
        attrs = parse_response_attrs(body)
        self._log.info("one-X voice response", action=action, status=status, attrs=attrs)
        return VoiceResponse(status=status, attrs=attrs)

    async def make_call(self, client_id: str, number: str, device: str) -> VoiceResponse:
        return await self.voice_action("makecall", {"clientid": client_id, "number": number, "device": device})

    async def next_notification(self, client_id: str) -> Optional[VoiceNotification]:
        """Fetch the next queued notification; None when it is not an interaction-created event."""
        _, body = await self._get("nextnotification", {"clientid": client_id}, self.settings.request_timeout_sec)
        try:
            return parse_notification(body)
        except ET.ParseError as e:
            raise RemoteTransportError(f"Unparseable nextnotification response: {e}") from e


class OneXClientFactory:
    """Builds a OneXClient for a device address, sharing one HTTP session."""

    def __init__(self, http_session: aiohttp.ClientSession, settings: OnexConfig):
        self.http_session = http_session
        self.settings = settings

    def __call__(self, device_address: str, log=None) -> OneXClient:
        return OneXClient(build_base_url(device_address, self.settings), self.http_session, self.settings, log=log)
