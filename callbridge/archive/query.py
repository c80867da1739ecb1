"""
Query encoding for the recording archive's search command.

The archive takes filters as operator/param pairs per field
(operator_startedat=9 is "between", param1/param3 are the start/end dates,
param2/param4 the start/end times) with dates written dd/mm/yy.
Everything here is validated before any request leaves the process.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

from callbridge.core.models import SearchWindow
from callbridge.errors import InputValidationError

OPERATOR_BETWEEN = 9
OPERATOR_EQUALS = 1
OPERATOR_CONTAINS = 8

SEGMENT_LAYOUT = "AvayaSegment"
DEFAULT_START_TIME = "00:00:00"
DEFAULT_END_TIME = "23:59:59"

_YMD_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_HMS_RE = re.compile(r"^\d{2}:\d{2}:\d{2}$")

# formats the archive has been seen to use for startedat
_STARTED_AT_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
)


def parse_ymd(value: Optional[str]) -> Optional[date]:
    """Strict YYYY-MM-DD between 1970 and 2100; None when malformed."""
    s = str(value or "").strip()
    if not _YMD_RE.match(s):
        return None
    y, m, d = (int(part) for part in s.split("-"))
    if not 1970 <= y <= 2100:
        return None
    try:
        return date(y, m, d)
    except ValueError:
        return None


def to_ddmmyy(d: date) -> str:
    return d.strftime("%d/%m/%y")


def compute_window(
    startdate: Optional[str],
    enddate: Optional[str] = None,
    window_days: Optional[Any] = None,
) -> SearchWindow:
    """
    Resolve the search window.

    enddate wins over window_days; with neither the window is the start day.

    Raises:
        InputValidationError: malformed dates or a non-positive window
    """
    start = parse_ymd(startdate)
    if start is None:
        raise InputValidationError("Invalid startdate (expected YYYY-MM-DD)", ["startdate"])

    if enddate:
        end = parse_ymd(enddate)
        if end is None:
            raise InputValidationError("Invalid enddate (expected YYYY-MM-DD)", ["enddate"])
    elif window_days is not None and str(window_days).strip() != "":
        try:
            days = int(str(window_days).strip())
        except ValueError:
            days = 0
        if days <= 0:
            raise InputValidationError("Invalid windowDays (must be positive integer)", ["windowDays"])
        end = start + timedelta(days=days)
    else:
        end = start

    return SearchWindow(start=start, end=end, p1=to_ddmmyy(start), p3=to_ddmmyy(end))


def validate_time(value: Optional[str], default: str, field: str) -> str:
    s = (value or "").strip() or default
    if not _HMS_RE.match(s):
        raise InputValidationError(f"Invalid {field} (expected HH:MM:SS)", [field])
    return s


def ucid_search_params(window: SearchWindow, ucid: str) -> Dict[str, Any]:
    return {
        "command": "search",
        "operator_startedat": OPERATOR_BETWEEN,
        "param1_startedat": window.p1,
        "param3_startedat": window.p3,
        "operator_switchcallid": OPERATOR_EQUALS,
        "param1_switchcallid": ucid,
    }


def number_search_params(window: SearchWindow, number: str, start_time: str, end_time: str) -> Dict[str, Any]:
    return {
        "command": "search",
        "layout": SEGMENT_LAYOUT,
        "operator_startedat": OPERATOR_BETWEEN,
        "param1_startedat": window.p1,
        "param2_startedat": start_time,
        "param3_startedat": window.p3,
        "param4_startedat": end_time,
        "operator_otherparties": OPERATOR_CONTAINS,
        "param1_otherparties": number,
    }


def parse_started_at(value: Optional[str]) -> datetime:
    """Sort key for startedat; unknown or missing values sort as oldest."""
    s = (value or "").strip()
    if not s:
        return datetime.min
    try:
        return datetime.fromisoformat(s).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in _STARTED_AT_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return datetime.min
