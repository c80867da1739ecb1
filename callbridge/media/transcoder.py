"""ffmpeg wrapper turning archive recordings into 8 kHz mono PCM WAV."""

import asyncio
import os
import time
from typing import List

from callbridge.errors import TranscodeError
from callbridge.logging_config import get_logger
from callbridge.utils.masking import safe_trunc

logger = get_logger(__name__)

DIAGNOSTIC_LIMIT = 800


class FfmpegTranscoder:

    def __init__(self, ffmpeg_bin: str, log=None):
        self.ffmpeg_bin = ffmpeg_bin
        self._log = log or logger

    @staticmethod
    def build_args(in_path: str, out_path: str) -> List[str]:
        return ["-y", "-i", in_path, "-vn", "-acodec", "pcm_s16le", "-ac", "1", "-ar", "8000", out_path]

    async def transcode(self, in_path: str, out_path: str, log=None) -> None:
        """
        Run ffmpeg to completion.

        Raises:
            TranscodeError: spawn failure or non-zero exit (stderr kept, truncated)
        """
        log = log or self._log
        args = self.build_args(in_path, out_path)
        log.info("ffmpeg start", args=" ".join(args))
        t0 = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_bin,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("ffmpeg spawn error", error=str(e))
            raise TranscodeError(f"ffmpeg could not be started: {e}") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            diagnostic = safe_trunc(stderr, DIAGNOSTIC_LIMIT) or ""
            log.error("ffmpeg exit", code=proc.returncode, err=diagnostic)
            raise TranscodeError(f"ffmpeg exited {proc.returncode}", diagnostic=diagnostic)

        out_size = os.path.getsize(out_path) if os.path.exists(out_path) else 0
        log.info("ffmpeg done", ms=int((time.monotonic() - t0) * 1000), out_size=out_size)
