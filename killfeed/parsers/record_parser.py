"""
Record Parser
Parses one complete death-log or server-log line into a typed record
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, Optional, Pattern

from killfeed.models.events import DeathRecord, LogEventRecord
from killfeed.utils.exceptions import ParseError

logger = logging.getLogger(__name__)

DELIMITER = ";"

# timestamp;killer;killer_id;victim;victim_id;weapon are mandatory,
# distance;killer_platform;victim_platform and anything after are optional
MANDATORY_FIELDS = 6

TIMESTAMP_FORMATS = (
    "%Y.%m.%d-%H.%M.%S",  # CSV format: 2025.06.03-01.45.48
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%Y-%m-%d_%H-%M-%S",
)

LOG_TIMESTAMP_FORMAT = "%Y.%m.%d-%H.%M.%S:%f"

LOG_EVENT_PATTERNS: Dict[str, Pattern] = {
    "player_queue": re.compile(
        r"LogNet: Join request: /Game/Maps/world_[^?]*\?.*?login=([^?&]+)\?password=[^?]*\?eosid=\|([a-f0-9]+).*?Name=([^?&]+)",
        re.IGNORECASE,
    ),
    "player_connect": re.compile(r"LogOnline: Warning: Player \|([a-f0-9]+) successfully registered!", re.IGNORECASE),
    "player_disconnect": re.compile(r"LogNet: UChannel::Close:.*?UniqueId: EOS:\|([a-f0-9]+)", re.IGNORECASE),
}

LOG_EVENT_FIELDS = {
    "player_queue": ("login", "player_id", "player_name"),
    "player_connect": ("player_id",),
    "player_disconnect": ("player_id",),
}


def parse_timestamp(value: str) -> Optional[datetime]:
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _parse_distance(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        distance = float(value)
    except ValueError:
        return None
    return max(0.0, round(distance, 1))


def parse_line(line: str) -> DeathRecord:
    """Parse a death-log line, raising ParseError when it cannot be used"""
    stripped = line.strip()
    if not stripped:
        raise ParseError(line, "empty line")

    parts = [part.strip() for part in stripped.split(DELIMITER)]
    if len(parts) < MANDATORY_FIELDS:
        raise ParseError(line, f"expected at least {MANDATORY_FIELDS} fields, got {len(parts)}")

    timestamp_str, killer, killer_id, victim, victim_id, weapon = parts[:MANDATORY_FIELDS]
    optional = parts[MANDATORY_FIELDS:]

    timestamp = parse_timestamp(timestamp_str)
    if timestamp is None:
        raise ParseError(line, f"malformed timestamp {timestamp_str!r}")

    if not victim_id:
        raise ParseError(line, "missing victim id")

    return DeathRecord(
        timestamp=timestamp,
        killer_id=killer_id or None,
        killer=killer or None,
        victim_id=victim_id,
        # Relocation suicides leave the victim name blank
        victim=victim or killer or victim_id,
        weapon=weapon,
        raw_line=stripped,
        distance=_parse_distance(optional[0]) if len(optional) > 0 else None,
        killer_platform=(optional[1] or None) if len(optional) > 1 else None,
        victim_platform=(optional[2] or None) if len(optional) > 2 else None,
    )


def parse_log_line(line: str) -> Optional[LogEventRecord]:
    """Parse a general server-log line.

    Returns None for lines that carry no event we track. Raises ParseError for
    a tracked event whose timestamp prefix is malformed.
    """
    stripped = line.strip()
    if not stripped.startswith("["):
        return None

    for event_type, pattern in LOG_EVENT_PATTERNS.items():
        match = pattern.search(stripped)
        if not match:
            continue

        timestamp_end = stripped.find("]")
        if timestamp_end == -1:
            raise ParseError(line, "unterminated timestamp")
        try:
            timestamp = datetime.strptime(stripped[1:timestamp_end], LOG_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            raise ParseError(line, f"malformed timestamp {stripped[1:timestamp_end]!r}")

        names = LOG_EVENT_FIELDS[event_type]
        fields = {name: match.group(i + 1).strip() for i, name in enumerate(names)}
        return LogEventRecord(timestamp=timestamp, event_type=event_type, raw_line=stripped, fields=fields)

    return None
