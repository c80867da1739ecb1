"""Tests for the recording archive client against a scripted archive."""

import base64

import pytest

from callbridge.archive.client import ArchiveClient, parse_results
from callbridge.config import ArchiveConfig
from callbridge.errors import InputValidationError, RemoteTransportError

PATH = "/searchapi"


def result(inum, startedat=None, switchcallid=None, duration=None):
    fields = []
    if startedat:
        fields.append(f'<field name="startedat">{startedat}</field>')
    if switchcallid:
        fields.append(f'<field name="switchcallid">{switchcallid}</field>')
    if duration:
        fields.append(f'<field name="duration">{duration}</field>')
    inum_attr = f' inum="{inum}"' if inum else ""
    return f"<result{inum_attr}>{''.join(fields)}</result>"


def results(*items):
    return f"<results>{''.join(items)}</results>"


@pytest.fixture
def archive(remote, http_session):
    settings = ArchiveConfig(
        scheme="http", host="127.0.0.1", port=remote.port, path=PATH,
        username="reader", password="secret",
    )
    return ArchiveClient(http_session, settings)


class TestParseResults:

    def test_field_names_lower_cased(self):
        count, parsed = parse_results(
            '<results><result inum="1"><field name="StartedAt">x</field></result></results>'
        )

        assert count == 1
        assert parsed == [("1", {"startedat": "x"})]

    def test_malformed_xml_is_transport_error(self):
        with pytest.raises(RemoteTransportError):
            parse_results("<results><result>")


class TestSearchByUcid:

    @pytest.mark.asyncio
    async def test_query_encoding_and_auth(self, remote, archive):
        remote.reply(PATH, results(result("900123", "2024-03-05 10:00:00", "U-1", "42")))

        found = await archive.search_by_ucid("U-1", "2024-03-05", window_days="2")

        request = remote.calls(PATH)[0]
        assert request["query"] == {
            "command": "search",
            "operator_startedat": "9",
            "param1_startedat": "05/03/24",
            "param3_startedat": "07/03/24",
            "operator_switchcallid": "1",
            "param1_switchcallid": "U-1",
        }
        expected_auth = "Basic " + base64.b64encode(b"reader:secret").decode()
        assert request["headers"]["Authorization"] == expected_auth

        item = found.items[0]
        assert found.total == 1
        assert item.inum == "900123"
        assert item.ucid == "U-1"
        assert item.duration_sec == 42
        assert item.playback_url == "/api/acr/replay/900123"
        assert item.raw_playback_url == f"http://127.0.0.1:{remote.port}{PATH}?command=replay&id=900123"

    @pytest.mark.asyncio
    async def test_results_without_inum_dropped(self, remote, archive):
        remote.reply(PATH, results(result(None, "2024-03-05 10:00:00"), result("900124")))

        found = await archive.search_by_ucid("U-1", "2024-03-05")

        assert found.total == 2
        assert [i.inum for i in found.items] == ["900124"]

    @pytest.mark.asyncio
    async def test_invalid_date_makes_no_request(self, remote, archive):
        with pytest.raises(InputValidationError):
            await archive.search_by_ucid("U-1", "2024-13-01")

        assert remote.requests == []

    @pytest.mark.asyncio
    async def test_http_error(self, remote, archive):
        remote.reply(PATH, "unauthorized", status=401)

        with pytest.raises(RemoteTransportError) as exc_info:
            await archive.search_by_ucid("U-1", "2024-03-05")

        assert exc_info.value.status == 401


class TestSearchByNumber:

    BODY = results(
        result("T1", "2024-03-05 09:00:00"),
        result("T3", "2024-03-05 11:00:00"),
        result(None, "2024-03-05 12:00:00"),
        result("T2", "2024-03-05 10:00:00"),
    )

    @pytest.mark.asyncio
    async def test_limit_returns_newest_first(self, remote, archive):
        remote.reply(PATH, self.BODY)

        found = await archive.search_by_number("0551234567", "2024-03-05", limit=2)

        assert [i.inum for i in found.items] == ["T3", "T2"]
        assert found.total == 3
        assert found.limit == 2
        assert all(i.number == "0551234567" for i in found.items)

    @pytest.mark.asyncio
    async def test_no_limit_returns_newest_only(self, remote, archive):
        remote.reply(PATH, self.BODY)

        found = await archive.search_by_number("0551234567", "2024-03-05")

        assert [i.inum for i in found.items] == ["T3"]
        assert found.limit == 0

    @pytest.mark.asyncio
    async def test_time_bounds_encoded(self, remote, archive):
        remote.reply(PATH, results())

        await archive.search_by_number("0551234567", "2024-03-05", start_time="08:00:00")

        query = remote.calls(PATH)[0]["query"]
        assert query["layout"] == "AvayaSegment"
        assert query["param2_startedat"] == "08:00:00"
        assert query["param4_startedat"] == "23:59:59"
        assert query["operator_otherparties"] == "8"

    @pytest.mark.asyncio
    async def test_bad_time_makes_no_request(self, remote, archive):
        with pytest.raises(InputValidationError):
            await archive.search_by_number("0551234567", "2024-03-05", end_time="25h")

        assert remote.requests == []


class TestDownloadRaw:

    @pytest.mark.asyncio
    async def test_writes_body_to_file(self, remote, archive, tmp_path):
        payload = bytes(range(256)) * 600
        remote.reply(PATH, payload)
        out = tmp_path / "900123.raw.bin"

        written = await archive.download_raw("900123", str(out))

        assert written == len(payload)
        assert out.read_bytes() == payload
        assert remote.calls(PATH)[0]["query"] == {"command": "replay", "id": "900123"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, remote, archive, tmp_path):
        remote.reply(PATH, "gone", status=404)

        with pytest.raises(RemoteTransportError):
            await archive.download_raw("900123", str(tmp_path / "x.raw.bin"))


class TestNumberLogging:

    @pytest.mark.asyncio
    async def test_number_masked_in_log_context(self, remote, http_session, recording_log):
        settings = ArchiveConfig(
            scheme="http", host="127.0.0.1", port=remote.port, path=PATH,
            username="reader", password="secret",
        )
        log = recording_log
        archive = ArchiveClient(http_session, settings, log=log)
        remote.reply(PATH, results(result("T1", "2024-03-05 09:00:00")))

        await archive.search_by_number("0551234567", "2024-03-05")

        assert log.events
        for _, fields in log.events:
            assert "0551234567" not in repr(fields)
            assert fields["number_masked"] == "******4567"
