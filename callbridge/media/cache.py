"""
Local cache of transcoded recordings.

Layout under the media root, keyed by the filesystem-safe recording id:

    {safe}.raw.bin   download target, removed once transcoded
    {safe}.part.wav  transcoder output, renamed onto .wav after a clean exit
    {safe}.wav       served to clients
    {safe}.json      {"inum": ..., "createdAt": ...}

A periodic sweep deletes artifacts whose mtime is older than the TTL.
There is no per-id lock: two concurrent misses for the same id both download
and transcode, and the last rename wins. Readers only ever see a complete .wav;
download and transcoder leftovers are removed whether or not the run succeeded.
"""

import asyncio
import json
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles

from callbridge.errors import CacheError
from callbridge.logging_config import get_logger
from callbridge.utils.masking import safe_name

logger = get_logger(__name__)

CACHED_FILE_RE = re.compile(r"\.(wav|json|raw\.bin)$", re.IGNORECASE)


@dataclass
class ArtifactPaths:
    raw: Path
    partial: Path
    wav: Path
    meta: Path


class MediaCache:
    """Resolves a recording id to a playable local WAV file."""

    def __init__(
        self,
        root: str,
        archive,
        transcoder,
        ttl_hours: float = 72,
        sweep_interval_sec: float = 3600,
        log=None,
    ):
        self.root = Path(root)
        self._archive = archive
        self._transcoder = transcoder
        self.ttl_hours = ttl_hours
        self.sweep_interval_sec = sweep_interval_sec
        self._log = log or logger
        self._sweep_task: Optional[asyncio.Task] = None

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._log.info("Media root ensured", media_root=str(self.root))
        except OSError as e:
            self._log.error("Media root create failed", media_root=str(self.root), error=str(e))
            raise CacheError(f"Cannot create media root {self.root}: {e}") from e

    def paths_for(self, inum: str) -> ArtifactPaths:
        base = safe_name(inum)
        return ArtifactPaths(
            raw=self.root / f"{base}.raw.bin",
            partial=self.root / f"{base}.part.wav",
            wav=self.root / f"{base}.wav",
            meta=self.root / f"{base}.json",
        )

    def cached(self, inum: str) -> Optional[Path]:
        wav = self.paths_for(inum).wav
        try:
            if wav.stat().st_size > 0:
                return wav
        except FileNotFoundError:
            pass
        return None

    async def resolve(self, inum: str, log=None) -> Path:
        """
        Return the local WAV for a recording, downloading and transcoding on a miss.

        Raises:
            RemoteTransportError: download failed
            TranscodeError: ffmpeg failed
            CacheError: local storage failed
        """
        log = (log or self._log).bind(inum=inum)
        if not safe_name(inum):
            raise CacheError("Empty recording id")

        hit = self.cached(inum)
        if hit is not None:
            log.info("Cache hit (wav)", wav=str(hit))
            return hit

        paths = self.paths_for(inum)
        try:
            await self._archive.download_raw(inum, str(paths.raw), log=log)
            await self._transcoder.transcode(str(paths.raw), str(paths.partial), log=log)
            try:
                produced = paths.partial.stat().st_size > 0
            except FileNotFoundError:
                produced = False
            if not produced:
                raise CacheError(f"Transcoder produced no output for {inum}")
            try:
                os.replace(paths.partial, paths.wav)
            except OSError as e:
                raise CacheError(f"Cannot publish {paths.wav}: {e}") from e
        finally:
            self._discard(paths.partial, log)
            self._discard(paths.raw, log)

        try:
            async with aiofiles.open(paths.meta, "w") as f:
                await f.write(json.dumps(
                    {"inum": inum, "createdAt": datetime.now(timezone.utc).isoformat()},
                    indent=2,
                ))
            log.info("Meta written", meta=str(paths.meta))
        except OSError as e:
            log.warning("Meta write failed", meta=str(paths.meta), error=str(e))

        return paths.wav

    @staticmethod
    def _discard(path: Path, log) -> None:
        try:
            path.unlink()
            log.info("Intermediate deleted", file=str(path))
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Intermediate delete failed", file=str(path), error=str(e))

    def sweep(self, now: Optional[float] = None) -> int:
        """Delete cached artifacts older than the TTL. Returns the number removed."""
        cutoff = (now if now is not None else time.time()) - self.ttl_hours * 3600
        removed = 0
        try:
            entries = list(os.scandir(self.root))
        except OSError as e:
            self._log.warning("Media cleanup failed", error=str(e))
            return 0
        for entry in entries:
            if not CACHED_FILE_RE.search(entry.name):
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    os.unlink(entry.path)
                    removed += 1
            except OSError as e:
                self._log.warning("Cleanup stat/unlink error", file=entry.path, error=str(e))
        self._log.info("Media cleanup complete", removed=removed, cache_ttl_hours=self.ttl_hours)
        return removed

    def start(self) -> None:
        """Sweep once now, then every sweep_interval_sec."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            self.sweep()
            await asyncio.sleep(self.sweep_interval_sec)
