"""
Parser Validator
Pass/fail checks for a guild's parser setup, reported per component instead of as raw exceptions
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from killfeed.models.events import DeathRecord, DeathType
from killfeed.parsers.classifier import EventClassifier
from killfeed.parsers.line_splitter import split_lines
from killfeed.parsers.record_parser import parse_line, parse_log_line
from killfeed.utils.exceptions import KillfeedException, ParseError
from killfeed.utils.remote_log_source import DEATHLOG, SERVER_LOG

logger = logging.getLogger(__name__)

PATH_RESOLUTION = "path resolution"
FIELD_MAPPING = "field mapping"
CLASSIFICATION = "classification"
ISOLATION = "isolation boundaries"

SAMPLE_DEATHLOG_LINE = "2025.06.03-01.45.48;Alpha;a1b2c3;Bravo;d4e5f6;AKM;152.3;PC;PC"
SAMPLE_SERVER_LOG_LINE = "[2025.06.03-01.45.48:123][  0]LogOnline: Warning: Player |0002a1b2c3d4 successfully registered!"

PEEK_BYTES = 4096


def _sample(killer_id, killer, victim_id, victim, weapon) -> DeathRecord:
    return DeathRecord(
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        killer_id=killer_id, killer=killer,
        victim_id=victim_id, victim=victim,
        weapon=weapon, raw_line="",
    )


CLASSIFICATION_CASES: Tuple[Tuple[DeathRecord, DeathType], ...] = (
    (_sample("k1", "Alpha", "v1", "Bravo", "AKM"), DeathType.PLAYER_VS_PLAYER),
    (_sample("v1", "Bravo", "v1", "Bravo", "AKM"), DeathType.SUICIDE),
    (_sample(None, None, "v1", "Bravo", "falling"), DeathType.SUICIDE),
    (_sample("k1", "Alpha", "v1", "Bravo", "suicide_by_relocation"), DeathType.SUICIDE),
    (_sample("k1", "Alpha", "v1", "Bravo", "drowning"), DeathType.ENVIRONMENTAL),
    (_sample("k1", "Alpha", "v1", "Bravo", "vehicle_crash"), DeathType.VEHICLE),
    (_sample("k1", "Alpha", "v1", "Bravo", ""), DeathType.UNKNOWN),
)


@dataclass
class ComponentCheck:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class ValidationReport:
    guild_id: int
    checks: List[ComponentCheck] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)

    def check(self, name: str) -> ComponentCheck:
        for item in self.checks:
            if item.name == name:
                return item
        raise KeyError(name)


class ParserValidator:
    """Runs every component check for a guild and never raises"""

    def __init__(self, db_manager, remote_source, classifier: EventClassifier = None):
        self.db_manager = db_manager
        self.remote_source = remote_source
        self.classifier = classifier or EventClassifier()

    async def validate(self, guild_id: int) -> ValidationReport:
        report = ValidationReport(guild_id=guild_id)
        try:
            servers = await self.db_manager.list_servers(guild_id)
        except KillfeedException as e:
            logger.error(f"Validation could not load servers for guild {guild_id}: {e}")
            servers = []

        checks = (
            (PATH_RESOLUTION, self._check_paths, (servers,)),
            (FIELD_MAPPING, self._check_field_mapping, (servers,)),
            (CLASSIFICATION, self._check_classification, ()),
            (ISOLATION, self._check_isolation, (guild_id, servers)),
        )
        for name, check, args in checks:
            try:
                passed, detail = await check(*args)
            except Exception as e:
                logger.error(f"Validation of {name} raised: {e}")
                passed, detail = False, f"{type(e).__name__}: {e}"
            report.checks.append(ComponentCheck(name, passed, detail))

        logger.info(
            f"Parser validation for guild {guild_id}: "
            + ", ".join(f"{c.name}={'pass' if c.passed else 'fail'}" for c in report.checks)
        )
        return report

    async def _check_paths(self, servers: List[Dict[str, Any]]) -> Tuple[bool, str]:
        if not servers:
            return False, "No servers configured"

        problems = []
        for server in servers:
            for kind in (DEATHLOG, SERVER_LOG):
                try:
                    await self.remote_source.resolve_directory(server, kind)
                except KillfeedException as e:
                    problems.append(f"{server.get('name', server['server_id'])} {kind}: {e}")

        if problems:
            return False, "; ".join(problems)
        return True, f"{len(servers)} server(s) resolved"

    async def _check_field_mapping(self, servers: List[Dict[str, Any]]) -> Tuple[bool, str]:
        record = parse_line(SAMPLE_DEATHLOG_LINE)
        if (record.killer, record.killer_id, record.victim, record.victim_id, record.weapon) != \
                ("Alpha", "a1b2c3", "Bravo", "d4e5f6", "AKM") or record.distance != 152.3:
            return False, "Death-log fields are mapped out of order"

        log_record = parse_log_line(SAMPLE_SERVER_LOG_LINE)
        if log_record is None or log_record.fields.get('player_id') != "0002a1b2c3d4":
            return False, "Server-log connect event not recognised"

        # A real line from each server's newest death log must parse as well
        failures = []
        for server in servers:
            try:
                files = await self.remote_source.list_files(server, DEATHLOG)
                if not files:
                    continue
                newest = files[-1]
                head = await self.remote_source.read_from(server, newest.file_id, 0, min(PEEK_BYTES, newest.size))
            except KillfeedException as e:
                failures.append(f"{server.get('name', server['server_id'])}: {e}")
                continue

            lines, _ = split_lines(b"", head)
            sample = next((line for line in lines if line.strip()), None)
            if sample is None:
                continue
            try:
                parse_line(sample.decode('utf-8', errors='replace'))
            except ParseError as e:
                failures.append(f"{newest.file_id}: {e.reason}")

        if failures:
            return False, "; ".join(failures)
        return True, "Sample and live lines parse"

    async def _check_classification(self) -> Tuple[bool, str]:
        mismatches = []
        for record, expected in CLASSIFICATION_CASES:
            actual = self.classifier.classify(record).death_type
            if actual is not expected:
                mismatches.append(f"{record.weapon or '<none>'}: {actual.value} != {expected.value}")
        if mismatches:
            return False, "; ".join(mismatches)
        return True, f"{len(CLASSIFICATION_CASES)} rule cases match"

    async def _check_isolation(self, guild_id: int, servers: List[Dict[str, Any]]) -> Tuple[bool, str]:
        problems = []
        seen = set()
        for server in servers:
            if server.get('guild_id') != guild_id:
                problems.append(f"server {server['server_id']} belongs to guild {server.get('guild_id')}")
            if server['server_id'] in seen:
                problems.append(f"duplicate server id {server['server_id']}")
            seen.add(server['server_id'])

        if problems:
            return False, "; ".join(problems)
        return True, f"{len(servers)} server(s) scoped to guild {guild_id}"
