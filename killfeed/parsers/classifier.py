"""
Event Classifier
Assigns a death type to a DeathRecord by walking an ordered rule table
"""

import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Optional, Sequence

from killfeed.models.events import ClassifiedEvent, DeathRecord, DeathType

logger = logging.getLogger(__name__)

SUICIDE_CAUSES: FrozenSet[str] = frozenset({
    "suicide", "suicide_by_relocation", "unknown_suicide",
})

ENVIRONMENTAL_CAUSES: FrozenSet[str] = frozenset({
    "fall", "falling", "fall_damage",
    "drowning", "drowned",
    "radiation",
    "bleeding", "bleed_out",
    "starvation", "hunger",
    "dehydration", "thirst",
    "hypothermia", "cold",
    "fire", "burning",
})

VEHICLE_CAUSES: FrozenSet[str] = frozenset({
    "vehicle", "vehicle_crash", "vehicle_explosion",
    "car", "car_crash", "truck", "motorcycle",
    "roadkill", "run_over",
})

# Causes that say nothing about what killed the victim
NON_WEAPON_CAUSES: FrozenSet[str] = frozenset({
    "", "unknown", "none", "null", "n/a",
})


def normalize_cause(weapon: Optional[str]) -> str:
    return "_".join((weapon or "").strip().lower().split())


def _killer_absent(record: DeathRecord) -> bool:
    return not record.killer_id and not record.killer


def _same_player(record: DeathRecord) -> bool:
    if record.killer_id:
        return record.killer_id == record.victim_id
    return bool(record.killer) and record.killer == record.victim


def _self_inflicted(record: DeathRecord) -> bool:
    return (
        _killer_absent(record)
        or _same_player(record)
        or normalize_cause(record.weapon) in SUICIDE_CAUSES
    )


def _cause_in(causes: FrozenSet[str]) -> Callable[[DeathRecord], bool]:
    def matches(record: DeathRecord) -> bool:
        return normalize_cause(record.weapon) in causes
    return matches


def _weapon_kill(record: DeathRecord) -> bool:
    # Reaching this rule means the cause is neither environmental nor vehicle
    return (
        not _killer_absent(record)
        and not _same_player(record)
        and normalize_cause(record.weapon) not in NON_WEAPON_CAUSES
    )


@dataclass(frozen=True)
class ClassificationRule:
    death_type: DeathType
    matches: Callable[[DeathRecord], bool]
    name: str


DEFAULT_RULES: Sequence[ClassificationRule] = (
    ClassificationRule(DeathType.SUICIDE, _self_inflicted, "self-inflicted"),
    ClassificationRule(DeathType.ENVIRONMENTAL, _cause_in(ENVIRONMENTAL_CAUSES), "environmental cause"),
    ClassificationRule(DeathType.VEHICLE, _cause_in(VEHICLE_CAUSES), "vehicle cause"),
    ClassificationRule(DeathType.PLAYER_VS_PLAYER, _weapon_kill, "weapon kill"),
)


class EventClassifier:
    """Deterministic first-match classifier; unmatched records are Unknown"""

    def __init__(self, rules: Optional[Iterable[ClassificationRule]] = None):
        self.rules = tuple(rules) if rules is not None else tuple(DEFAULT_RULES)

    def classify(self, record: DeathRecord) -> ClassifiedEvent:
        for rule in self.rules:
            if rule.matches(record):
                return ClassifiedEvent(record=record, death_type=rule.death_type)

        logger.debug(f"No classification rule matched cause {record.weapon!r}")
        return ClassifiedEvent(record=record, death_type=DeathType.UNKNOWN)


def classify(record: DeathRecord) -> ClassifiedEvent:
    """Classify with the default rule table"""
    return _default_classifier.classify(record)


_default_classifier = EventClassifier()
