"""
Emerald's Killfeed - Event Records
Per-line records produced by the parsers and consumed by the aggregator and the killfeed
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class DeathType(Enum):
    PLAYER_VS_PLAYER = "PlayerVsPlayer"
    SUICIDE = "Suicide"
    ENVIRONMENTAL = "Environmental"
    VEHICLE = "Vehicle"
    UNKNOWN = "Unknown"

    @property
    def announced(self) -> bool:
        return self is not DeathType.UNKNOWN


@dataclass(frozen=True)
class DeathRecord:
    """One death-log line: timestamp;killer;killer_id;victim;victim_id;weapon;distance;..."""
    timestamp: datetime
    killer_id: Optional[str]
    killer: Optional[str]
    victim_id: str
    victim: str
    weapon: str
    raw_line: str
    distance: Optional[float] = None
    killer_platform: Optional[str] = None
    victim_platform: Optional[str] = None


@dataclass(frozen=True)
class LogEventRecord:
    """One recognised line of the general server log"""
    timestamp: datetime
    event_type: str
    raw_line: str
    fields: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ClassifiedEvent:
    """A DeathRecord with its death-type category attached"""
    record: DeathRecord
    death_type: DeathType

    @property
    def timestamp(self) -> datetime:
        return self.record.timestamp

    @property
    def killer(self) -> Optional[str]:
        return self.record.killer

    @property
    def killer_id(self) -> Optional[str]:
        return self.record.killer_id

    @property
    def victim(self) -> str:
        return self.record.victim

    @property
    def victim_id(self) -> str:
        return self.record.victim_id

    @property
    def weapon(self) -> str:
        return self.record.weapon

    @property
    def distance(self) -> Optional[float]:
        return self.record.distance

    def to_payload(self) -> Dict[str, Any]:
        """Stable field names handed to the presentation layer"""
        return {
            "timestamp": self.timestamp,
            "killer": self.killer,
            "victim": self.victim,
            "weapon": self.weapon,
            "deathType": self.death_type.value,
            "distance": self.distance,
        }
