"""
Server Poll Orchestrator
One unit of work per server: cursor -> remote read -> split -> parse -> classify -> aggregate -> advance
Maintains per-file cursors instead of re-reading whole files, and never runs two polls over the same log of a server at once
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from killfeed.models.events import ClassifiedEvent, LogEventRecord
from killfeed.parsers.classifier import EventClassifier
from killfeed.parsers.line_splitter import split_lines
from killfeed.parsers.record_parser import parse_line, parse_log_line
from killfeed.utils.cursor_store import Cursor, CursorStore
from killfeed.utils.exceptions import (
    ParseError, PersistenceException, TransportException, ValidationException
)
from killfeed.utils.remote_log_source import DEATHLOG, DEATHLOG_PREFIX, SERVER_LOG, RemoteFile, server_key
from killfeed.utils.single_flight import SingleFlight
from killfeed.utils.stat_aggregator import StatAggregator

logger = logging.getLogger(__name__)

KILLFEED = "killfeed"
SERVER_STATS = "server_stats"
REPROCESS = "reprocess"

ServerKey = Tuple[int, str]

# Polls reading the same files share an exclusion lane
LANES = {
    KILLFEED: DEATHLOG,
    REPROCESS: DEATHLOG,
    SERVER_STATS: SERVER_LOG,
}


def flight_key(server: Dict[str, Any], kind: str) -> Tuple[int, str, str]:
    guild_id, server_id = server_key(server)
    return guild_id, server_id, LANES[kind]


class PollState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PollResult:
    """Outcome of one poll invocation for one server"""
    guild_id: int
    server_id: str
    kind: str
    state: PollState = PollState.IDLE
    skipped: bool = False
    files_processed: int = 0
    lines_processed: int = 0
    parse_errors: int = 0
    rotations: int = 0
    events: List[ClassifiedEvent] = field(default_factory=list)
    log_events: List[LogEventRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is PollState.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'skipped': self.skipped,
            'events_processed': len(self.events),
            'log_events_processed': len(self.log_events),
            'parse_errors': self.parse_errors,
            'errors': list(self.errors),
        }


class PollOrchestrator:
    """Runs killfeed, server-stats and reprocess polls under a single-flight guard per server and log"""

    def __init__(self, db_manager, remote_source, cursor_store: CursorStore, aggregator: StatAggregator,
                 classifier: Optional[EventClassifier] = None, notifier=None,
                 read_chunk_bytes: int = 65536, offline_failure_threshold: int = 3):
        self.db_manager = db_manager
        self.remote_source = remote_source
        self.cursor_store = cursor_store
        self.aggregator = aggregator
        self.classifier = classifier or EventClassifier()
        self.notifier = notifier
        self.read_chunk_bytes = read_chunk_bytes
        self.offline_failure_threshold = offline_failure_threshold

        self.single_flight = SingleFlight(name="server-poll")
        self._states: Dict[Tuple[int, str, str], PollState] = {}
        self._consecutive_failures: Dict[ServerKey, int] = {}
        # player_id -> "queued" | "online", rebuilt from the server log
        self._players: Dict[ServerKey, Dict[str, str]] = {}

        self.invocations = 0
        self.completed_polls = 0
        self.skipped_polls = 0

    def get_state(self, guild_id: int, server_id: str, kind: str = KILLFEED) -> PollState:
        return self._states.get((guild_id, str(server_id), LANES[kind]), PollState.IDLE)

    def is_polling(self, server: Dict[str, Any], kind: str = KILLFEED) -> bool:
        return self.single_flight.is_in_flight(flight_key(server, kind))

    def consecutive_failures(self, guild_id: int, server_id: str) -> int:
        return self._consecutive_failures.get((guild_id, str(server_id)), 0)

    def player_counts(self, guild_id: int, server_id: str) -> Tuple[int, int]:
        """(online, queued) as last seen in the server log"""
        players = self._players.get((guild_id, str(server_id)), {})
        online = sum(1 for state in players.values() if state == "online")
        return online, len(players) - online

    async def poll_killfeed(self, server: Dict[str, Any]) -> PollResult:
        return await self._run(server, KILLFEED, self._poll_deathlogs)

    async def poll_server_stats(self, server: Dict[str, Any]) -> PollResult:
        return await self._run(server, SERVER_STATS, self._poll_server_log)

    async def reprocess_server(self, guild_id: int, server_id: str) -> PollResult:
        """Forget the server's death-log cursors and re-read every death log from the start"""
        server = await self.db_manager.get_server(guild_id, server_id)
        if not server:
            raise ValidationException(f"Server {server_id} is not configured in guild {guild_id}")

        logger.warning(f"🔄 Reprocessing all death logs for server {server_id} in guild {guild_id}")
        return await self._run(server, REPROCESS, self._reprocess_deathlogs, notify=False)

    async def _run(self, server: Dict[str, Any], kind: str,
                   body: Callable[[Dict[str, Any], ServerKey, PollResult], Awaitable[None]],
                   notify: bool = True) -> PollResult:
        key = server_key(server)
        guild_id, server_id = key
        lane = flight_key(server, kind)
        result = PollResult(guild_id=guild_id, server_id=server_id, kind=kind)
        self.invocations += 1

        async with self.single_flight.acquire(lane) as acquired:
            if not acquired:
                self.skipped_polls += 1
                result.skipped = True
                result.state = self._states.get(lane, PollState.POLLING)
                logger.info(f"⏭️ {kind} poll skipped for {server.get('name', server_id)}: already polling")
                return result

            self._states[lane] = PollState.POLLING
            try:
                await body(server, key, result)
                await self._record_success(server, key, kind)
                result.state = PollState.SUCCESS
            except TransportException as e:
                result.state = PollState.FAILED
                result.errors.append(str(e))
                await self._record_transport_failure(server, key, e)
            except PersistenceException as e:
                result.state = PollState.FAILED
                result.errors.append(str(e))
                logger.error(f"❌ {kind} poll failed for {server.get('name', server_id)} ({e.operation}): {e}")
            except asyncio.CancelledError:
                logger.warning(f"⏹️ {kind} poll abandoned for {server.get('name', server_id)}; unconsumed bytes stay unread")
                raise
            finally:
                self._states[lane] = PollState.IDLE

            self.completed_polls += 1

        if result.parse_errors:
            logger.warning(f"⚠️ {result.parse_errors} unparseable line(s) skipped on {server.get('name', server_id)}")
        if result.success:
            logger.info(
                f"✅ {kind} poll for {server.get('name', server_id)}: {len(result.events)} kill events, "
                f"{len(result.log_events)} log events from {result.files_processed} file(s)"
            )

        if notify and result.events and self.notifier:
            await self._notify(server, result.events)
        return result

    # Poll bodies
    async def _poll_deathlogs(self, server: Dict[str, Any], key: ServerKey, result: PollResult):
        guild_id, server_id = key
        files = await self.remote_source.list_files(server, DEATHLOG)
        if not files:
            logger.warning(f"No death logs found for {server.get('name', server_id)}")
            return

        # Older files are only finished when a cursor shows they were started
        selected: List[RemoteFile] = []
        for remote_file in files[:-1]:
            cursor = await self.cursor_store.get_cursor(guild_id, server_id, remote_file.file_id)
            if cursor is not None and cursor.offset < remote_file.size:
                logger.info(f"Finishing previous file {remote_file.file_id} from offset {cursor.offset}")
                selected.append(remote_file)
        selected.append(files[-1])

        for remote_file in selected:
            await self._process_file(server, key, remote_file, self._apply_deathlog_lines, result)

    async def _poll_server_log(self, server: Dict[str, Any], key: ServerKey, result: PollResult):
        for remote_file in await self.remote_source.list_files(server, SERVER_LOG):
            await self._process_file(
                server, key, remote_file, self._apply_server_log_lines, result,
                on_rotation=lambda: self._players.pop(key, None)
            )

    async def _reprocess_deathlogs(self, server: Dict[str, Any], key: ServerKey, result: PollResult):
        guild_id, server_id = key
        await self.cursor_store.reset(guild_id, server_id, prefix=DEATHLOG_PREFIX)
        self.remote_source.forget_paths(server)

        for remote_file in await self.remote_source.list_files(server, DEATHLOG):
            await self._process_file(server, key, remote_file, self._apply_deathlog_lines, result)

    async def _process_file(self, server: Dict[str, Any], key: ServerKey, remote_file: RemoteFile,
                            apply_lines: Callable[[ServerKey, List[bytes], PollResult], Awaitable[list]],
                            result: PollResult, on_rotation: Optional[Callable[[], Any]] = None):
        """Consume everything appended to one file since its cursor, chunk by chunk"""
        guild_id, server_id = key
        file_id = remote_file.file_id
        stored = await self.cursor_store.load(guild_id, server_id, file_id)

        tail = None
        tail_range = self.cursor_store.tail_range(stored)
        if tail_range and remote_file.size >= stored.offset:
            start, end = tail_range
            tail = await self.remote_source.read_from(server, file_id, start, end - start)

        cursor = self.cursor_store.check_rotation(stored, remote_file.size, tail)
        if cursor.offset < stored.offset:
            result.rotations += 1
            tail = None
            # Saved before reading so a stale offset cannot outlive an empty or partial new file
            cursor = await self._advance(cursor, 0, b"", 0)
            if on_rotation:
                on_rotation()

        result.files_processed += 1
        if cursor.offset >= remote_file.size:
            return

        consumed_tail = tail or b""
        pending = b""
        position = cursor.offset
        while position < remote_file.size:
            length = min(self.read_chunk_bytes, remote_file.size - position)
            chunk = await self.remote_source.read_from(server, file_id, position, length)
            if not chunk:
                break
            position += len(chunk)

            buffered = pending + chunk
            lines, pending = split_lines(pending, chunk)
            if not lines:
                continue

            # Aggregate the whole batch before the cursor moves past it
            committed = await apply_lines(key, lines, result)
            consumed = buffered[:len(buffered) - len(pending)]
            window = (consumed_tail + consumed)[-self.cursor_store.fingerprint_window:]
            cursor = await self._advance(cursor, cursor.offset + len(consumed), window, len(lines))
            consumed_tail = window
            result.lines_processed += len(lines)
            self._commit(committed, result)

        if pending:
            logger.debug(f"{file_id}: holding {len(pending)} byte(s) of an incomplete line for the next poll")

    async def _advance(self, cursor: Cursor, new_offset: int, window: bytes, lines: int) -> Cursor:
        try:
            return await self.cursor_store.advance(cursor, new_offset, self.cursor_store.fingerprint(window), lines)
        except PersistenceException:
            logger.error(
                f"❌ Cursor advance failed for {cursor.file_id} on server {cursor.server_id}; "
                f"{lines} line(s) already aggregated will be read again next poll"
            )
            raise

    @staticmethod
    def _commit(records: list, result: PollResult):
        for record in records:
            if isinstance(record, ClassifiedEvent):
                result.events.append(record)
            else:
                result.log_events.append(record)

    # Line handlers
    async def _apply_deathlog_lines(self, key: ServerKey, lines: List[bytes], result: PollResult) -> List[ClassifiedEvent]:
        guild_id, _ = key
        events = []
        for raw in lines:
            text = raw.decode('utf-8', errors='replace')
            if not text.strip():
                continue
            try:
                record = parse_line(text)
            except ParseError as e:
                result.parse_errors += 1
                logger.debug(f"Skipping death-log line: {e}")
                continue

            event = self.classifier.classify(record)
            # PersistenceException here aborts the batch; the cursor stays put
            await self.aggregator.apply(guild_id, event)
            events.append(event)
        return events

    async def _apply_server_log_lines(self, key: ServerKey, lines: List[bytes], result: PollResult) -> List[LogEventRecord]:
        players = self._players.setdefault(key, {})
        records = []
        for raw in lines:
            try:
                record = parse_log_line(raw.decode('utf-8', errors='replace'))
            except ParseError as e:
                result.parse_errors += 1
                logger.debug(f"Skipping server-log line: {e}")
                continue
            if record is None:
                continue

            player_id = record.fields.get('player_id')
            if record.event_type == 'player_queue':
                players[player_id] = 'queued'
            elif record.event_type == 'player_connect':
                players[player_id] = 'online'
            elif record.event_type == 'player_disconnect':
                players.pop(player_id, None)
            records.append(record)
        return records

    # Server status bookkeeping
    async def _record_success(self, server: Dict[str, Any], key: ServerKey, kind: str):
        guild_id, server_id = key
        previous_failures = self._consecutive_failures.pop(key, 0)
        updates: Dict[str, Any] = {
            'online': True,
            'last_seen': datetime.now(timezone.utc),
            'consecutive_failures': 0,
        }
        if kind == SERVER_STATS:
            updates['player_count'], updates['queue_count'] = self.player_counts(guild_id, server_id)
        if previous_failures >= self.offline_failure_threshold:
            logger.info(f"🟢 Server {server.get('name', server_id)} is reachable again")
        await self.db_manager.update_server_status(guild_id, server_id, updates)

    async def _record_transport_failure(self, server: Dict[str, Any], key: ServerKey, error: TransportException):
        guild_id, server_id = key
        name = server.get('name', server_id)

        if not error.retryable:
            logger.warning(f"Missing remote path on {name}: {error}")
            self.remote_source.forget_paths(server)
            return

        failures = self._consecutive_failures.get(key, 0) + 1
        self._consecutive_failures[key] = failures
        logger.warning(f"Transport failure {failures}/{self.offline_failure_threshold} on {name}: {error}")

        if failures < self.offline_failure_threshold:
            return
        if failures == self.offline_failure_threshold:
            logger.error(f"🔴 Server {name} marked offline after {failures} consecutive failures")
        try:
            await self.db_manager.update_server_status(
                guild_id, server_id, {'online': False, 'consecutive_failures': failures}
            )
        except PersistenceException as e:
            logger.error(f"Could not mark server {name} offline: {e}")

    async def _notify(self, server: Dict[str, Any], events: List[ClassifiedEvent]):
        try:
            await self.notifier.deliver(server, events)
        except Exception as e:
            logger.error(f"Killfeed delivery failed for {server.get('name', server.get('server_id'))}: {e}")
