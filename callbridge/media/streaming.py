"""
Range-aware HTTP delivery of recordings.

stream_file() serves a local file honoring a single `bytes=start-[end]` range;
proxy_stream() relays a live archive replay response to the client.
"""

import os
import re
from typing import Optional, Tuple

import aiofiles
from aiohttp import web

from callbridge.logging_config import get_logger

logger = get_logger(__name__)

STREAM_CHUNK_BYTES = 64 * 1024

HOP_BY_HOP_HEADERS = frozenset({
    "transfer-encoding",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "upgrade",
})

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")


def parse_range(header: Optional[str], total: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single byte range against a file of `total` bytes.

    Returns (start, end) inclusive, or None when the header is absent or
    malformed. The end is clamped to the last byte; a start past the end of
    the file or after the end is malformed.
    """
    if not header or total <= 0:
        return None
    m = _RANGE_RE.match(header.strip())
    if not m:
        return None
    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) else total - 1
    end = min(end, total - 1)
    if start >= total or start > end:
        return None
    return start, end


async def stream_file(request: web.Request, path: str, content_type: str = "audio/wav", log=None):
    """Send a local file, answering 206 for a valid range and 200 otherwise."""
    log = log or logger
    total = os.path.getsize(path)
    byte_range = parse_range(request.headers.get("Range"), total)

    headers = {
        "Content-Type": content_type,
        "Accept-Ranges": "bytes",
        "Access-Control-Allow-Origin": "*",
    }
    if byte_range:
        start, end = byte_range
        status = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{total}"
    else:
        start, end = 0, total - 1
        status = 200
    length = end - start + 1 if total else 0

    response = web.StreamResponse(status=status, headers=headers)
    response.content_length = length
    await response.prepare(request)

    if request.method != "HEAD" and length:
        remaining = length
        try:
            async with aiofiles.open(path, "rb") as f:
                await f.seek(start)
                while remaining > 0:
                    chunk = await f.read(min(STREAM_CHUNK_BYTES, remaining))
                    if not chunk:
                        break
                    await response.write(chunk)
                    remaining -= len(chunk)
        except ConnectionResetError:
            log.warning("Client went away during file stream", path=path, sent=length - remaining)
            return response

    await response.write_eof()
    log.info("File streamed", path=path, status=status, length=length)
    return response


async def proxy_stream(request: web.Request, upstream, log=None):
    """
    Relay an archive replay response (status, headers, body) to the client.

    Hop-by-hop headers are dropped. The upstream response is always released.
    """
    log = log or logger
    try:
        skip = HOP_BY_HOP_HEADERS
        # the client session has already decoded the body
        if "Content-Encoding" in upstream.headers:
            skip = skip | {"content-encoding", "content-length"}
        headers = {k: v for k, v in upstream.headers.items() if k.lower() not in skip}
        headers["Access-Control-Allow-Origin"] = "*"

        response = web.StreamResponse(status=upstream.status, headers=headers)
        await response.prepare(request)
        if request.method == "HEAD":
            await response.write_eof()
            return response

        try:
            async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_BYTES):
                await response.write(chunk)
        except ConnectionResetError:
            log.warning("Client went away during replay proxy")
            return response
        await response.write_eof()
        return response
    finally:
        upstream.release()
