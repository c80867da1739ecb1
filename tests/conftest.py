"""Shared fixtures: a scripted HTTP remote and a client session."""

from typing import Dict, List, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


class FakeRemote:
    """
    Scripted stand-in for the one-X, monitor and archive services.

    Each path answers from its own list of canned responses; the last one
    repeats once the list is exhausted. Every request is recorded.
    """

    def __init__(self):
        self.requests: List[Dict] = []
        self._replies: Dict[str, List[Dict]] = {}
        self.base_url = ""
        self.port = 0

    def reply(self, path: str, body="", status: int = 200, headers: Optional[Dict[str, str]] = None):
        self._replies.setdefault(path, []).append({"body": body, "status": status, "headers": headers or {}})

    def calls(self, path: str) -> List[Dict]:
        return [r for r in self.requests if r["path"] == path]

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handler)
        return app

    async def _handler(self, request: web.Request) -> web.Response:
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
        })
        queue = self._replies.get(request.path)
        if not queue:
            return web.Response(status=404, text="not scripted")
        scripted = queue.pop(0) if len(queue) > 1 else queue[0]
        body = scripted["body"]
        if isinstance(body, str):
            body = body.encode("utf-8")
        return web.Response(status=scripted["status"], body=body, headers=scripted["headers"])


@pytest_asyncio.fixture
async def remote():
    fake = FakeRemote()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.port = server.port
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


class RecordingLog:
    """Collects bound context and event keywords."""

    def __init__(self, events=None, context=None):
        self.events = events if events is not None else []
        self.context = dict(context or {})

    def bind(self, **kw):
        return RecordingLog(self.events, {**self.context, **kw})

    def _record(self, event, **kw):
        self.events.append((event, {**self.context, **kw}))

    info = warning = error = debug = _record


@pytest.fixture
def recording_log():
    return RecordingLog()
