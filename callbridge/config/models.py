"""
Typed configuration models for callbridge.

Every value the service needs is declared here once. Fields that must be
supplied by the deployment are Optional so that validate_config() can report
every missing key in one pass instead of failing on the first.
"""

from typing import Optional

from pydantic import BaseModel, Field


class OnexConfig(BaseModel):
    """Remote voice endpoint (one-X agent API) settings."""
    scheme: Optional[str] = None  # http | https
    port: Optional[int] = None  # used when the device address carries no port
    api_path: Optional[str] = None  # e.g. /onexagent/api
    call_prefix: str = Field(default="")  # optional dial prefix, e.g. "9"
    register_timeout_sec: float = Field(default=10.0)
    request_timeout_sec: float = Field(default=15.0)


class PollingConfig(BaseModel):
    interval_ms: Optional[int] = None
    max_attempts: Optional[int] = None


class MonitorConfig(BaseModel):
    """Side-channel UCID monitor. Optional: without it UCIDs come from one-X only."""
    base_url: Optional[str] = None
    timeout_ms: int = Field(default=8000)


class ArchiveConfig(BaseModel):
    """Call-recording archive (ACR) settings."""
    scheme: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    search_timeout_sec: float = Field(default=30.0)
    replay_timeout_sec: float = Field(default=60.0)
    download_timeout_sec: float = Field(default=600.0)

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


class MediaConfig(BaseModel):
    root: Optional[str] = None
    ffmpeg_bin: Optional[str] = None
    use_local_default: bool = Field(default=True)
    cache_ttl_hours: int = Field(default=72)
    sweep_interval_sec: float = Field(default=3600.0)


class DatabaseConfig(BaseModel):
    """Audit sink. Table names are interpolated into SQL and must be identifiers."""
    path: str = Field(default="data/callbridge.db")
    call_table: Optional[str] = None
    action_table: Optional[str] = None
    device_map_table: Optional[str] = None
    recording_table: Optional[str] = None


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    ssl_cert_path: Optional[str] = None
    ssl_key_path: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical
    dir: Optional[str] = Field(default="logs")
    max_files: int = Field(default=14)
    to_console: bool = Field(default=False)
    format: str = Field(default="json")  # json|console


class AppConfig(BaseModel):
    onex: OnexConfig = Field(default_factory=OnexConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
