"""Process entry point: load configuration, wire components, serve HTTP."""

import asyncio
import signal
import ssl
from typing import Optional

import aiohttp
from aiohttp import web
from dotenv import load_dotenv

from callbridge.archive.client import ArchiveClient
from callbridge.config import AppConfig, load_config, require_valid
from callbridge.core.audit import AuditQueue, AuditStore, StationDirectory
from callbridge.core.orchestrator import CallOrchestrator
from callbridge.errors import ConfigurationError
from callbridge.logging_config import configure_logging, get_logger
from callbridge.media.cache import MediaCache
from callbridge.media.transcoder import FfmpegTranscoder
from callbridge.onex.client import OneXClientFactory
from callbridge.onex.monitor import UcidMonitorClient
from callbridge.server import CallBridgeApi

logger = get_logger(__name__)


class CallBridgeService:
    """Owns the shared HTTP session, background workers and the web server."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.audit_queue: Optional[AuditQueue] = None
        self.media_cache: Optional[MediaCache] = None
        self._runner: Optional[web.AppRunner] = None

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        server = self.config.server
        if not (server.ssl_cert_path and server.ssl_key_path):
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(server.ssl_cert_path, server.ssl_key_path)
        return context

    async def start(self) -> None:
        config = self.config
        self.http_session = aiohttp.ClientSession()

        db = config.database
        audit_store = AuditStore(
            db.path,
            call_table=db.call_table,
            action_table=db.action_table,
            recording_table=db.recording_table,
            device_map_table=db.device_map_table,
        )
        self.audit_queue = AuditQueue(audit_store)
        self.audit_queue.start()

        orchestrator = CallOrchestrator(
            client_factory=OneXClientFactory(self.http_session, config.onex),
            monitor=UcidMonitorClient(self.http_session, config.monitor),
            stations=StationDirectory(audit_store),
            audit=self.audit_queue,
            onex_settings=config.onex,
            polling=config.polling,
        )
        archive = ArchiveClient(self.http_session, config.archive)

        self.media_cache = MediaCache(
            config.media.root,
            archive,
            FfmpegTranscoder(config.media.ffmpeg_bin),
            ttl_hours=config.media.cache_ttl_hours,
            sweep_interval_sec=config.media.sweep_interval_sec,
        )
        self.media_cache.ensure_root()
        self.media_cache.start()

        api = CallBridgeApi(
            orchestrator,
            archive,
            self.media_cache,
            self.audit_queue,
            audit_store,
            use_local_default=config.media.use_local_default,
        )
        self._runner = web.AppRunner(api.build_app())
        await self._runner.setup()
        ssl_context = self._ssl_context()
        site = web.TCPSite(self._runner, config.server.host, config.server.port, ssl_context=ssl_context)
        await site.start()
        logger.info(
            "callbridge listening",
            host=config.server.host,
            port=config.server.port,
            tls=ssl_context is not None,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self.media_cache is not None:
            await self.media_cache.stop()
        if self.audit_queue is not None:
            await self.audit_queue.stop()
        if self.http_session is not None:
            await self.http_session.close()
            self.http_session = None
        logger.info("callbridge stopped")


async def main(config_path: Optional[str] = None):
    load_dotenv()
    config = load_config(config_path)
    configure_logging(
        log_level=config.logging.level,
        log_dir=config.logging.dir,
        max_files=config.logging.max_files,
        to_console=config.logging.to_console,
        log_format=config.logging.format,
    )

    try:
        warnings = require_valid(config)
    except ConfigurationError as e:
        logger.error("Configuration validation FAILED", missing=e.missing)
        raise
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed")

    service = CallBridgeService(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await service.start()
    try:
        await shutdown_event.wait()
    finally:
        await service.stop()


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("callbridge has shut down.")


if __name__ == "__main__":
    run()
