"""
HTTP routing layer.

Thin aiohttp handlers that validate query parameters, call into the
orchestrator / archive / media cache and shape the JSON answers the CRM
front end expects. onex answers use `success`, archive answers use `ok`.
"""

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from aiohttp import web

from callbridge.archive.query import DEFAULT_END_TIME, DEFAULT_START_TIME, validate_time
from callbridge.core.models import RecordingRecord
from callbridge.core.orchestrator import CONTROL_ACTIONS
from callbridge.errors import CallBridgeError, InputValidationError
from callbridge.logging_config import get_logger, set_correlation_id
from callbridge.media.streaming import proxy_stream, stream_file
from callbridge.utils.masking import mask_phone, mask_ucid

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_TRUTHY = ("1", "true")


def server_datetime(now: Optional[datetime] = None) -> Dict[str, str]:
    now = now or datetime.now()
    return {"date": now.strftime("%Y-%m-%d"), "time": now.strftime("%H:%M:%S")}


def onex_json(status: int, body: Dict[str, Any]) -> web.Response:
    """JSON answer for the onex routes, stamped with server-local date and time."""
    return web.json_response({**body, **server_datetime()}, status=status)


def _query(request: web.Request, name: str) -> str:
    return (request.query.get(name) or "").strip()


def _missing(request: web.Request, *names: str) -> List[str]:
    return [name for name in names if not _query(request, name)]


def _parse_limit(value: Optional[str]) -> int:
    try:
        limit = int(value or 0)
    except ValueError:
        return 0
    return limit if limit > 0 else 0


@web.middleware
async def correlation_middleware(request: web.Request, handler):
    request_id = set_correlation_id(request.headers.get(REQUEST_ID_HEADER) or None)
    response = await handler(request)
    if not response.prepared:
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
    return response


class CallBridgeApi:
    """Owns the service objects and exposes them as aiohttp routes."""

    def __init__(
        self,
        orchestrator,
        archive,
        media_cache,
        audit_queue,
        audit_store,
        use_local_default: bool = True,
        log=None,
    ):
        self.orchestrator = orchestrator
        self.archive = archive
        self.media_cache = media_cache
        self.audit_queue = audit_queue
        self.audit_store = audit_store
        self.use_local_default = use_local_default
        self._log = log or logger

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[correlation_middleware])
        app.router.add_get("/", self._index_handler)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/api/onex/startcall", self._startcall_handler)
        actions = "|".join(CONTROL_ACTIONS)
        app.router.add_get("/api/onex/{action:" + actions + "}", self._action_handler)
        app.router.add_get("/api/acr/find", self._find_handler)
        # add_get also registers HEAD
        app.router.add_get("/api/acr/replay/{inum}", self._replay_handler)
        app.router.add_get("/api/acr/replayByUcid", self._replay_by_ucid_handler)
        app.router.add_get("/api/acr/searchByNumber", self._search_by_number_handler)
        app.router.add_get("/api/lookup/ucidByTicket", self._ucid_by_ticket_handler)
        return app

    async def _index_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"service": "callbridge", "ok": True})

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "audit": {
                "attempted": self.audit_queue.attempted,
                "failed": self.audit_queue.failed,
                "dropped": self.audit_queue.dropped,
            },
        })

    # ---- onex ----

    async def _startcall_handler(self, request: web.Request) -> web.Response:
        log = self._log.bind(route="/onex/startcall", ip=request.remote)
        missing = _missing(request, "ticketNumber", "clientPhone", "deviceIp")
        if missing:
            log.warning("startcall missing parameters", missing=missing)
            return onex_json(400, {"success": False, "missing": missing, "message": "Missing required parameters"})

        try:
            outcome = await self.orchestrator.start_call(
                device_address=_query(request, "deviceIp"),
                dial_target=_query(request, "clientPhone"),
                ticket_number=_query(request, "ticketNumber"),
                agent_user=_query(request, "agentUser") or None,
                client_id=_query(request, "clientid") or None,
            )
        except InputValidationError as e:
            log.warning("startcall invalid input", error=str(e))
            return onex_json(400, {"success": False, "message": str(e)})

        if outcome.rejected:
            return onex_json(502, {"success": False, "code": outcome.code, "message": outcome.error})
        if outcome.error:
            return onex_json(500, {"success": False, "message": outcome.error})
        return onex_json(200, outcome.to_dict())

    async def _action_handler(self, request: web.Request) -> web.Response:
        action = request.match_info["action"]
        log = self._log.bind(route=f"/onex/{action}", ip=request.remote)
        try:
            outcome = await self.orchestrator.perform_action(
                action,
                device_address=_query(request, "deviceIp"),
                interaction_id=_query(request, "interactionid") or None,
                client_id=_query(request, "clientid") or None,
                agent_user=_query(request, "agentUser") or None,
            )
        except InputValidationError as e:
            log.warning("action invalid input", error=str(e), fields=e.fields)
            return onex_json(400, {"success": False, "message": str(e)})
        except CallBridgeError as e:
            return onex_json(500, {"success": False, "message": str(e)})

        body = {
            "success": outcome.success,
            "code": outcome.code,
            "clientId": outcome.client_id,
            "interactionId": outcome.interaction_id,
        }
        return onex_json(200 if outcome.success else 502, body)

    # ---- archive ----

    async def _find_handler(self, request: web.Request) -> web.Response:
        ucid = _query(request, "ucid")
        log = self._log.bind(route="/acr/find", ucid_masked=mask_ucid(ucid), ip=request.remote)
        missing = _missing(request, "ucid", "startdate")
        if missing:
            log.warning("find missing params", missing=missing)
            return web.json_response({"ok": False, "message": "Missing required parameters", "missing": missing}, status=400)

        try:
            result = await self.archive.search_by_ucid(
                ucid,
                _query(request, "startdate"),
                enddate=_query(request, "enddate") or None,
                window_days=request.query.get("windowDays"),
            )
        except InputValidationError as e:
            log.warning("find invalid input", error=str(e))
            return web.json_response({"ok": False, "message": str(e), "invalid": e.fields}, status=400)
        except CallBridgeError as e:
            log.error("find error", error=str(e))
            return web.json_response({"ok": False, "message": str(e)}, status=502)

        if not result.total:
            return web.json_response({"ok": True, "found": 0, "items": []})
        if not result.items:
            log.warning("find returned no inum")
            return web.json_response({"ok": False, "message": "ACR returned no INUM"}, status=502)

        item = result.items[0]
        self.audit_queue.submit_recording(item, ucid=ucid)
        log.info("find success", inum=item.inum)
        return web.json_response({
            "ok": True,
            "found": result.total,
            "item": item.to_dict(),
            "window": result.window.to_dict(),
        })

    async def _search_by_number_handler(self, request: web.Request) -> web.Response:
        number = _query(request, "number")
        log = self._log.bind(route="/acr/searchByNumber", number_masked=mask_phone(number), ip=request.remote)
        missing = _missing(request, "number", "startdate")
        if missing:
            log.warning("searchByNumber missing params", missing=missing)
            return web.json_response({"ok": False, "message": "Missing required parameters", "missing": missing}, status=400)

        limit = _parse_limit(request.query.get("limit"))
        try:
            p2 = validate_time(request.query.get("starttime"), DEFAULT_START_TIME, "starttime")
            p4 = validate_time(request.query.get("endtime"), DEFAULT_END_TIME, "endtime")
            result = await self.archive.search_by_number(
                number,
                _query(request, "startdate"),
                enddate=_query(request, "enddate") or None,
                window_days=request.query.get("windowDays"),
                start_time=p2,
                end_time=p4,
                limit=limit,
            )
        except InputValidationError as e:
            log.warning("searchByNumber invalid input", error=str(e))
            return web.json_response({"ok": False, "message": str(e), "invalid": e.fields}, status=400)
        except CallBridgeError as e:
            log.error("searchByNumber error", error=str(e))
            return web.json_response({"ok": False, "message": str(e)}, status=502)

        window = {**result.window.to_dict(), "p2": p2, "p4": p4}
        if not result.items:
            return web.json_response({"ok": True, "found": 0, "items": [], "window": window})

        for item in result.items:
            self.audit_queue.submit_recording(item)

        if not limit:
            item = result.items[0]
            log.info("searchByNumber single result", inum=item.inum)
            return web.json_response({"ok": True, "found": result.total, "item": item.to_dict(), "window": window})

        log.info("searchByNumber multiple results", returned=len(result.items), total=result.total)
        return web.json_response({
            "ok": True,
            "found": result.total,
            "items": [item.to_dict() for item in result.items],
            "window": window,
            "limit": limit,
        })

    async def _replay_handler(self, request: web.Request) -> web.StreamResponse:
        inum = request.match_info.get("inum", "")
        return await self._proxy_replay(request, inum, request.query.get("ucid") or None)

    async def _proxy_replay(self, request: web.Request, inum: str, ucid: Optional[str]) -> web.StreamResponse:
        log = self._log.bind(route="/acr/replay", inum=inum)
        if not inum:
            log.warning("replay missing inum")
            return web.Response(text="missing inum", status=400)

        _, proxied = self.archive.replay_urls(inum)
        self.audit_queue.submit_recording(RecordingRecord(inum=inum, playback_url=proxied), ucid=ucid)

        headers = {}
        for name in ("Range", "Accept"):
            if request.headers.get(name):
                headers[name] = request.headers[name]
        log.info("replay proxy to archive", method=request.method, has_range="Range" in headers)

        try:
            upstream = await self.archive.open_replay(inum, method=request.method, headers=headers)
        except CallBridgeError as e:
            log.error("replay error", error=str(e))
            return web.Response(text=f"ACR replay error: {e}", status=502)
        log.info("replay archive response", status=upstream.status)
        return await proxy_stream(request, upstream, log=log)

    async def _replay_by_ucid_handler(self, request: web.Request) -> web.StreamResponse:
        ucid = _query(request, "ucid")
        log = self._log.bind(route="/acr/replayByUcid", ucid_masked=mask_ucid(ucid), ip=request.remote)
        missing = _missing(request, "ucid", "startdate")
        if missing:
            log.warning("replayByUcid missing params", missing=missing)
            return web.Response(text="Missing required parameters: " + ", ".join(missing), status=400)

        try:
            result = await self.archive.search_by_ucid(
                ucid,
                _query(request, "startdate"),
                enddate=_query(request, "enddate") or None,
                window_days=request.query.get("windowDays"),
            )
        except InputValidationError as e:
            log.warning("replayByUcid invalid input", error=str(e))
            return web.Response(text=str(e), status=400)
        except CallBridgeError as e:
            log.error("replayByUcid error", error=str(e))
            return web.Response(text=f"ACR replayByUcid error: {e}", status=502)

        if not result.total:
            log.warning("replayByUcid no result")
            return web.Response(text="No recording found for that UCID/date", status=404)
        if not result.items:
            log.warning("replayByUcid returned no inum")
            return web.Response(text="ACR returned no INUM", status=502)

        item = result.items[0]
        self.audit_queue.submit_recording(item, ucid=ucid)

        if _query(request, "redirect").lower() in _TRUTHY:
            log.info("replayByUcid redirect to raw", inum=item.inum)
            raise web.HTTPFound(item.raw_playback_url)

        if "local" in request.query:
            prefer_local = _query(request, "local").lower() in _TRUTHY
        else:
            prefer_local = self.use_local_default

        if prefer_local:
            try:
                wav_path = await self.media_cache.resolve(item.inum, log=log)
                log.info("replayByUcid serve local wav", inum=item.inum, wav=str(wav_path))
                return await stream_file(request, str(wav_path), "audio/wav", log=log)
            except CallBridgeError as e:
                log.warning("replayByUcid local WAV failed, fallback", inum=item.inum, error=str(e))

        log.info("replayByUcid proxy fallback", inum=item.inum)
        return await self._proxy_replay(request, item.inum, ucid)

    # ---- lookup ----

    async def _ucid_by_ticket_handler(self, request: web.Request) -> web.Response:
        ticket = _query(request, "ticket")
        if not ticket:
            return web.json_response({"ok": False, "message": "Missing required query param: ticket"}, status=400)
        try:
            rows = await self.audit_store.calls_by_ticket(ticket)
        except sqlite3.Error as e:
            self._log.error("ucidByTicket lookup failed", ticket=ticket, error=str(e))
            return web.json_response({"ok": False, "message": str(e) or "DB error"}, status=500)
        return web.json_response({"ok": True, "found": len(rows), "items": rows})
