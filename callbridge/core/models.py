"""
Core data models for callbridge.

Plain dataclasses passed between the orchestrator, the archive pipeline, the
audit sink and the routing layer.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass
class CallOutcome:
    """Result of one call-origination attempt."""
    success: bool
    ucid: Optional[str] = None
    interaction_id: Optional[str] = None
    client_id: Optional[str] = None
    station: Optional[str] = None
    dialed: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # logical | transport | None
    code: Optional[str] = None  # remote ResponseCode on a logical failure
    ucid_source: Optional[str] = None  # monitor | onex | None

    @property
    def rejected(self) -> bool:
        """The remote side answered but refused the request."""
        return self.error_kind == "logical"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "ucid": self.ucid,
            "interactionId": self.interaction_id,
            "clientId": self.client_id,
            "dialed": self.dialed,
            "station": self.station,
        }


@dataclass
class ActionOutcome:
    """Result of one mid-call control action (hold, release, mute...)."""
    action: str
    success: bool
    code: Optional[str] = None
    client_id: Optional[str] = None
    interaction_id: Optional[str] = None


@dataclass
class RecordingRecord:
    """One normalized archive search result. inum is the cache key."""
    inum: str
    ucid: Optional[str] = None
    number: Optional[str] = None
    started_at: Optional[str] = None
    duration_sec: Optional[int] = None
    agents: Optional[str] = None
    other_parties: Optional[str] = None
    services: Optional[str] = None
    skills: Optional[str] = None
    playback_url: Optional[str] = None
    raw_playback_url: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("fields", None)
        return data


@dataclass
class SearchWindow:
    """Validated archive date window plus its dd/mm/yy encodings."""
    start: date
    end: date
    p1: str
    p3: str

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass
class SearchResult:
    window: SearchWindow
    items: List[RecordingRecord] = field(default_factory=list)
    total: int = 0
    limit: int = 0


@dataclass
class CallLogEntry:
    """Row for the call-attempt audit table."""
    ucid: Optional[str]
    ticket_number: str
    client_phone: str
    device_ip: str
    client_id: Optional[str]
    interaction_id: Optional[str]
    agent_user: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def is_complete(self) -> bool:
        return bool(self.ucid and self.interaction_id and self.client_id)


@dataclass
class ActionLogEntry:
    """Row for the control-action audit table. Always written."""
    action: str
    device_ip: str
    interaction_id: Optional[str]
    success: bool
    agent_user: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
