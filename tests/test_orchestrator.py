"""
Tests for CallOrchestrator.

The one-X client, monitor, station map and audit sink are replaced with
in-memory fakes so the origination sequence can be checked step by step.
"""

import asyncio

import pytest

from callbridge.config import OnexConfig, PollingConfig
from callbridge.core.orchestrator import CallOrchestrator, select_ucid, with_prefix
from callbridge.errors import InputValidationError, RemoteLogicalError, RemoteTransportError
from callbridge.onex.client import VoiceNotification, VoiceResponse


class FakeOneXClient:
    def __init__(self, notifications=None, makecall_code="0", action_code="0", register_id="C-NEW"):
        self.notifications = list(notifications or [])
        self.makecall_code = makecall_code
        self.action_code = action_code
        self.register_id = register_id
        self.register_calls = []
        self.unregister_calls = []
        self.voice_calls = []
        self.poll_calls = 0
        self.makecall_error = None
        self.action_error = None

    async def ensure_client(self, preferred_name, client_id=None):
        if client_id:
            return client_id, False
        self.register_calls.append(preferred_name)
        if not self.register_id:
            raise RemoteLogicalError("Failed to register one-X client", code="9")
        return self.register_id, True

    async def unregister_client(self, client_id):
        self.unregister_calls.append(client_id)

    async def make_call(self, client_id, number, device):
        self.voice_calls.append(("makecall", {"clientid": client_id, "number": number, "device": device}))
        if self.makecall_error:
            raise self.makecall_error
        return VoiceResponse(status=200, attrs={"ResponseCode": self.makecall_code})

    async def voice_action(self, action, params):
        self.voice_calls.append((action, dict(params)))
        if self.action_error:
            raise self.action_error
        return VoiceResponse(status=200, attrs={"ResponseCode": self.action_code})

    async def next_notification(self, client_id):
        self.poll_calls += 1
        if not self.notifications:
            return None
        item = self.notifications.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeMonitor:
    def __init__(self, ucid=None, delay=0.0):
        self.ucid = ucid
        self.delay = delay
        self.calls = []

    async def fetch_ucid(self, station, timeout_ms=None, log=None):
        self.calls.append(station)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.ucid


class FakeStations:
    def __init__(self, mapping=None):
        self.mapping = mapping or {}

    async def lookup(self, device_ip):
        return self.mapping.get(device_ip)


class FakeAudit:
    def __init__(self):
        self.calls = []
        self.actions = []

    def submit_call(self, entry):
        self.calls.append(entry)

    def submit_action(self, entry):
        self.actions.append(entry)


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def created(interaction_id="IX-1", ucid="UCID-ONEX-0001"):
    return VoiceNotification(interaction_id=interaction_id, ucid=ucid)


def make_orchestrator(client, monitor=None, stations=None, max_attempts=5, interval_ms=200, call_prefix=""):
    audit = FakeAudit()
    sleep = FakeSleep()
    factory_calls = []

    def factory(device_address, log=None):
        factory_calls.append(device_address)
        if device_address == "bad host":
            raise InputValidationError("Invalid device IP/host", ["deviceIp"])
        return client

    orchestrator = CallOrchestrator(
        client_factory=factory,
        monitor=monitor or FakeMonitor(),
        stations=stations or FakeStations({"10.0.0.5": "4001"}),
        audit=audit,
        onex_settings=OnexConfig(scheme="http", port=60001, api_path="/onexagent/api", call_prefix=call_prefix),
        polling=PollingConfig(interval_ms=interval_ms, max_attempts=max_attempts),
        sleep=sleep,
    )
    return orchestrator, audit, sleep, factory_calls


class TestHelpers:

    def test_with_prefix(self):
        assert with_prefix("0551234567", "9") == "90551234567"
        assert with_prefix("90551234567", "9") == "90551234567"
        assert with_prefix("0551234567", "") == "0551234567"

    @pytest.mark.parametrize("monitor,onex,expected", [
        ("M", "O", ("M", "monitor")),
        (None, "O", ("O", "onex")),
        ("M", None, ("M", "monitor")),
        (None, None, (None, None)),
    ])
    def test_select_ucid_precedence(self, monitor, onex, expected):
        assert select_ucid(monitor, onex) == expected


class TestStartCall:

    @pytest.mark.asyncio
    async def test_happy_path(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, audit, _, _ = make_orchestrator(client, monitor=FakeMonitor(ucid="UCID-MON-0002"))

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-100", agent_user="alice")

        assert outcome.success is True
        assert outcome.ucid == "UCID-MON-0002"
        assert outcome.ucid_source == "monitor"
        assert outcome.interaction_id == "IX-1"
        assert outcome.client_id == "C-NEW"
        assert outcome.station == "4001"
        assert outcome.dialed == "0551234567"
        assert client.register_calls[0].startswith("CRM_alice_T-100_")
        assert client.unregister_calls == ["C-NEW"]

    @pytest.mark.asyncio
    async def test_response_shape(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.to_dict() == {
            "success": True,
            "ucid": "UCID-ONEX-0001",
            "interactionId": "IX-1",
            "clientId": "C-NEW",
            "dialed": "0551234567",
            "station": "4001",
        }

    @pytest.mark.asyncio
    async def test_onex_ucid_used_when_monitor_has_none(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, _, _, _ = make_orchestrator(client, monitor=FakeMonitor(ucid=None))

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert (outcome.ucid, outcome.ucid_source) == ("UCID-ONEX-0001", "onex")

    @pytest.mark.asyncio
    async def test_no_station_skips_monitor(self):
        monitor = FakeMonitor(ucid="UCID-MON")
        client = FakeOneXClient(notifications=[created()])
        orchestrator, _, _, _ = make_orchestrator(client, monitor=monitor, stations=FakeStations({}))

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert monitor.calls == []
        assert outcome.station is None
        assert outcome.ucid_source == "onex"

    @pytest.mark.asyncio
    async def test_slow_monitor_still_consulted_after_polling(self):
        monitor = FakeMonitor(ucid="UCID-MON", delay=0.05)
        client = FakeOneXClient(notifications=[created()])
        orchestrator, _, _, _ = make_orchestrator(client, monitor=monitor)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert client.poll_calls == 1
        assert outcome.ucid == "UCID-MON"

    @pytest.mark.asyncio
    async def test_polling_bounded_by_max_attempts(self):
        client = FakeOneXClient(notifications=[])
        orchestrator, _, sleep, _ = make_orchestrator(client, max_attempts=4, interval_ms=250)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert client.poll_calls == 4
        assert sleep.delays == [0.25, 0.25, 0.25]
        assert outcome.success is False
        assert outcome.interaction_id is None
        assert outcome.error is None
        assert client.unregister_calls == ["C-NEW"]

    @pytest.mark.asyncio
    async def test_polling_stops_once_both_ids_known(self):
        client = FakeOneXClient(notifications=[None, created(), created("IX-2", "U-2")])
        orchestrator, _, _, _ = make_orchestrator(client, max_attempts=10)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert client.poll_calls == 2
        assert outcome.interaction_id == "IX-1"

    @pytest.mark.asyncio
    async def test_polling_continues_until_ucid_arrives(self):
        client = FakeOneXClient(notifications=[created(ucid=None), created(ucid="U-LATE")])
        orchestrator, _, _, _ = make_orchestrator(client, stations=FakeStations({}))

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert client.poll_calls == 2
        assert outcome.ucid == "U-LATE"

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_abort(self):
        client = FakeOneXClient(notifications=[RemoteTransportError("flaky"), created()])
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.success is True
        assert client.poll_calls == 2

    @pytest.mark.asyncio
    async def test_makecall_rejected_is_failure_with_single_teardown(self):
        client = FakeOneXClient(makecall_code="1")
        orchestrator, audit, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.success is False
        assert outcome.error
        assert client.poll_calls == 0
        assert client.unregister_calls == ["C-NEW"]
        assert audit.calls == []

    @pytest.mark.asyncio
    async def test_makecall_rejection_keeps_remote_code(self):
        client = FakeOneXClient(makecall_code="7")
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.rejected is True
        assert outcome.error_kind == "logical"
        assert outcome.code == "7"

    @pytest.mark.asyncio
    async def test_makecall_transport_error_tears_down_once(self):
        client = FakeOneXClient()
        client.makecall_error = RemoteTransportError("connection refused")
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.success is False
        assert "connection refused" in outcome.error
        assert outcome.error_kind == "transport"
        assert outcome.rejected is False
        assert outcome.code is None
        assert client.unregister_calls == ["C-NEW"]

    @pytest.mark.asyncio
    async def test_caller_session_never_unregistered(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1", client_id="C-EXT")

        assert outcome.client_id == "C-EXT"
        assert client.register_calls == []
        assert client.unregister_calls == []

    @pytest.mark.asyncio
    async def test_register_failure_has_nothing_to_tear_down(self):
        client = FakeOneXClient(register_id=None)
        orchestrator, _, _, _ = make_orchestrator(client)

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert outcome.success is False
        assert outcome.error_kind == "logical"
        assert outcome.code == "9"
        assert client.voice_calls == []
        assert client.unregister_calls == []

    @pytest.mark.asyncio
    async def test_invalid_device_raises_before_any_request(self):
        client = FakeOneXClient()
        orchestrator, audit, _, _ = make_orchestrator(client)

        with pytest.raises(InputValidationError):
            await orchestrator.start_call("bad host", "0551234567", "T-1")

        assert client.register_calls == []
        assert audit.calls == []

    @pytest.mark.asyncio
    async def test_dial_prefix_applied_but_original_reported(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, audit, _, _ = make_orchestrator(client, call_prefix="9")

        outcome = await orchestrator.start_call("10.0.0.5", "0551234567", "T-1")

        assert client.voice_calls[0][1]["number"] == "90551234567"
        assert outcome.dialed == "0551234567"
        assert audit.calls[0].client_phone == "0551234567"

    @pytest.mark.asyncio
    async def test_audit_entry_submitted(self):
        client = FakeOneXClient(notifications=[created()])
        orchestrator, audit, _, _ = make_orchestrator(client)

        await orchestrator.start_call("10.0.0.5", "0551234567", "T-42", agent_user="bob")

        assert len(audit.calls) == 1
        entry = audit.calls[0]
        assert entry.ticket_number == "T-42"
        assert entry.device_ip == "10.0.0.5"
        assert entry.is_complete()


class TestPerformAction:

    @pytest.mark.asyncio
    async def test_hold_sends_interaction(self):
        client = FakeOneXClient()
        orchestrator, audit, _, _ = make_orchestrator(client)

        outcome = await orchestrator.perform_action("hold", "10.0.0.5", interaction_id="IX-1")

        assert outcome.success is True
        assert outcome.code == "0"
        assert client.voice_calls == [("hold", {"clientid": "C-NEW", "interactionid": "IX-1"})]
        assert client.unregister_calls == ["C-NEW"]
        assert audit.actions[0].action == "HOLD"
        assert audit.actions[0].success is True

    @pytest.mark.asyncio
    async def test_mute_needs_no_interaction(self):
        client = FakeOneXClient()
        orchestrator, audit, _, _ = make_orchestrator(client)

        outcome = await orchestrator.perform_action("mute", "10.0.0.5", client_id="C-EXT")

        assert outcome.success is True
        assert client.voice_calls == [("mute", {"clientid": "C-EXT"})]
        assert client.unregister_calls == []
        assert audit.actions[0].interaction_id is None

    @pytest.mark.asyncio
    async def test_release_without_interaction_rejected(self):
        client = FakeOneXClient()
        orchestrator, audit, _, factory_calls = make_orchestrator(client)

        with pytest.raises(InputValidationError) as exc_info:
            await orchestrator.perform_action("release", "10.0.0.5")

        assert exc_info.value.fields == ["interactionid"]
        assert factory_calls == []
        assert audit.actions == []

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self):
        orchestrator, _, _, _ = make_orchestrator(FakeOneXClient())

        with pytest.raises(InputValidationError):
            await orchestrator.perform_action("transfer", "10.0.0.5", interaction_id="IX-1")

    @pytest.mark.asyncio
    async def test_non_zero_code_reported(self):
        client = FakeOneXClient(action_code="7")
        orchestrator, audit, _, _ = make_orchestrator(client)

        outcome = await orchestrator.perform_action("unhold", "10.0.0.5", interaction_id="IX-1")

        assert outcome.success is False
        assert outcome.code == "7"
        assert audit.actions[0].success is False
        assert client.unregister_calls == ["C-NEW"]

    @pytest.mark.asyncio
    async def test_transport_error_audited_and_raised(self):
        client = FakeOneXClient()
        client.action_error = RemoteTransportError("timeout")
        orchestrator, audit, _, _ = make_orchestrator(client)

        with pytest.raises(RemoteTransportError):
            await orchestrator.perform_action("release", "10.0.0.5", interaction_id="IX-1")

        assert len(audit.actions) == 1
        assert audit.actions[0].success is False
        assert client.unregister_calls == ["C-NEW"]
