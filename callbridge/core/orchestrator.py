"""
Call origination and mid-call control against the one-X agent endpoint.

start_call() drives the whole origination sequence:

    resolve station -> ensure session -> [monitor UCID fetch, concurrently]
    -> makecall -> poll nextnotification -> join monitor -> pick UCID
    -> audit -> unregister the session if we created it

The monitor fetch and the notification poll run side by side; the monitor
result is only looked at once polling has finished, and when both channels
produced a UCID the monitor value wins.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Tuple

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from callbridge.config import OnexConfig, PollingConfig
from callbridge.core.models import ActionLogEntry, ActionOutcome, CallLogEntry, CallOutcome
from callbridge.errors import CallBridgeError, InputValidationError, RemoteLogicalError
from callbridge.logging_config import get_logger
from callbridge.onex.client import OneXClient
from callbridge.utils.masking import mask_phone, mask_ucid

logger = get_logger(__name__)

CONTROL_ACTIONS = ("release", "hold", "unhold", "mute", "unmute")
# mute/unmute act on the device, the rest on an interaction
INTERACTION_ACTIONS = ("release", "hold", "unhold")


class StationLookup(Protocol):
    async def lookup(self, device_ip: str) -> Optional[str]: ...


class UcidSource(Protocol):
    async def fetch_ucid(self, station: str, timeout_ms: Optional[int] = None, log=None) -> Optional[str]: ...


def with_prefix(number: str, prefix: str) -> str:
    """Prepend the dial prefix unless the number already carries it."""
    number = str(number or "")
    if not prefix or number.startswith(prefix):
        return number
    return f"{prefix}{number}"


def select_ucid(monitor_ucid: Optional[str], onex_ucid: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Pick exactly one UCID: monitor first, then the notification channel.

    Returns:
        (ucid, source) where source is "monitor", "onex" or None
    """
    if monitor_ucid:
        return monitor_ucid, "monitor"
    if onex_ucid:
        return onex_ucid, "onex"
    return None, None


@dataclass
class PollState:
    interaction_id: Optional[str] = None
    ucid: Optional[str] = None
    attempts: int = 0

    @property
    def complete(self) -> bool:
        return bool(self.interaction_id and self.ucid)


class CallOrchestrator:
    """Originates calls and performs control actions on agent devices."""

    def __init__(
        self,
        client_factory: Callable[..., OneXClient],
        monitor: UcidSource,
        stations: StationLookup,
        audit,
        onex_settings: OnexConfig,
        polling: PollingConfig,
        log=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client_factory = client_factory
        self._monitor = monitor
        self._stations = stations
        self._audit = audit
        self._onex_settings = onex_settings
        self._polling = polling
        self._log = log or logger
        self._sleep = sleep

    async def start_call(
        self,
        device_address: str,
        dial_target: str,
        ticket_number: str,
        agent_user: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> CallOutcome:
        """
        Place a call from an agent device and collect its interaction id and UCID.

        Remote failures do not raise; they come back as CallOutcome(success=False).
        An invalid device address raises InputValidationError before any request.
        """
        number = with_prefix(dial_target, self._onex_settings.call_prefix)
        log = self._log.bind(
            ticket_number=ticket_number,
            agent_user=agent_user or "",
            device_ip=device_address,
            client_phone_masked=mask_phone(dial_target),
            dial_number_masked=mask_phone(number),
        )
        client = self._client_factory(device_address, log=log)

        station = await self._stations.lookup(device_address)
        if station:
            log.info("Resolved station from map", station=station)
        else:
            log.warning("No station mapping for device")

        client_name = f"CRM_{agent_user or 'anon'}_{ticket_number}_{int(time.time() * 1000)}"
        created = False
        monitor_task: Optional[asyncio.Task] = None

        try:
            client_id, created = await client.ensure_client(client_name, client_id)

            if station:
                monitor_task = asyncio.create_task(self._monitor.fetch_ucid(station, log=log))

            placed = await client.make_call(client_id, number, device_address)
            if placed.code is not None and not placed.ok:
                raise RemoteLogicalError("one-X makecall rejected", code=placed.code)

            state = await self._poll_notifications(client, client_id, log)
            monitor_ucid = await self._join_monitor(monitor_task, log)
            ucid, source = select_ucid(monitor_ucid, state.ucid)

            outcome = CallOutcome(
                success=bool(state.interaction_id),
                ucid=ucid,
                interaction_id=state.interaction_id,
                client_id=client_id,
                station=station,
                dialed=dial_target,
                ucid_source=source,
            )
            log.info(
                "startcall finished",
                success=outcome.success,
                ucid=mask_ucid(ucid),
                ucid_source=source,
                interaction_id=state.interaction_id,
                poll_attempts=state.attempts,
            )
            self._audit.submit_call(CallLogEntry(
                ucid=ucid,
                ticket_number=ticket_number,
                client_phone=dial_target,
                device_ip=device_address,
                client_id=client_id,
                interaction_id=state.interaction_id,
                agent_user=agent_user or "",
            ))
            return outcome
        except RemoteLogicalError as e:
            log.error("startcall rejected", error=str(e), code=e.code)
            return CallOutcome(
                success=False,
                client_id=client_id,
                station=station,
                dialed=dial_target,
                error=str(e),
                error_kind="logical",
                code=e.code,
            )
        except CallBridgeError as e:
            log.error("startcall error", error=str(e))
            return CallOutcome(
                success=False,
                client_id=client_id,
                station=station,
                dialed=dial_target,
                error=str(e),
                error_kind="transport",
            )
        finally:
            if monitor_task is not None and not monitor_task.done():
                monitor_task.cancel()
            if created:
                await self._teardown(client, client_id, log)

    async def perform_action(
        self,
        action: str,
        device_address: str,
        interaction_id: Optional[str] = None,
        client_id: Optional[str] = None,
        agent_user: Optional[str] = None,
    ) -> ActionOutcome:
        """
        Run one control action (release, hold, unhold, mute, unmute).

        A non-zero ResponseCode is reported as ActionOutcome(success=False, code=...).
        Transport failures raise after the failed action has been audited.
        """
        action = (action or "").lower()
        if action not in CONTROL_ACTIONS:
            raise InputValidationError(f"Unsupported action: {action}", ["action"])
        if not device_address:
            raise InputValidationError("deviceIp is required", ["deviceIp"])
        if action in INTERACTION_ACTIONS and not interaction_id:
            raise InputValidationError("deviceIp and interactionid are required", ["interactionid"])

        log = self._log.bind(op=action.upper(), agent_user=agent_user or "", interaction_id=interaction_id)
        client = self._client_factory(device_address, log=log)
        client_name = f"CRM_{agent_user or 'anon'}_{action.upper()}_{int(time.time() * 1000)}"
        created = False

        try:
            client_id, created = await client.ensure_client(client_name, client_id)
            params = {"clientid": client_id}
            if action in INTERACTION_ACTIONS:
                params["interactionid"] = interaction_id
            response = await client.voice_action(action, params)
            self._submit_action(action, device_address, interaction_id, response.ok, agent_user)
            if not response.ok:
                log.warning("one-X action reported failure", code=response.code)
            return ActionOutcome(
                action=action,
                success=response.ok,
                code=response.code,
                client_id=client_id,
                interaction_id=interaction_id,
            )
        except CallBridgeError as e:
            log.error("action error", error=str(e))
            self._submit_action(action, device_address, interaction_id, False, agent_user)
            raise
        finally:
            if created:
                await self._teardown(client, client_id, log)

    async def _poll_notifications(self, client: OneXClient, client_id: str, log) -> PollState:
        """Poll nextnotification until both ids are known or attempts run out."""
        state = PollState()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._polling.max_attempts),
            wait=wait_fixed(self._polling.interval_ms / 1000.0),
            retry=retry_if_result(lambda s: not s.complete),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            sleep=self._sleep,
        )
        return await retrying(self._poll_once, client, client_id, state, log)

    async def _poll_once(self, client: OneXClient, client_id: str, state: PollState, log) -> PollState:
        state.attempts += 1
        try:
            notification = await client.next_notification(client_id)
        except CallBridgeError as e:
            log.warning("nextnotification poll error", attempt=state.attempts, error=str(e))
            return state
        if notification is not None:
            state.interaction_id = notification.interaction_id or state.interaction_id
            state.ucid = notification.ucid or state.ucid
        return state

    async def _join_monitor(self, task: Optional[asyncio.Task], log) -> Optional[str]:
        if task is None:
            return None
        try:
            return await task
        except Exception as e:
            log.warning("UCID monitor task failed", error=repr(e))
            return None

    async def _teardown(self, client: OneXClient, client_id: Optional[str], log) -> None:
        try:
            await client.unregister_client(client_id)
        except CallBridgeError as e:
            log.warning("unregister client error", client_id=client_id, error=str(e))

    def _submit_action(self, action, device_address, interaction_id, success, agent_user) -> None:
        self._audit.submit_action(ActionLogEntry(
            action=action.upper(),
            device_ip=device_address,
            interaction_id=interaction_id,
            success=success,
            agent_user=agent_user or "",
        ))
