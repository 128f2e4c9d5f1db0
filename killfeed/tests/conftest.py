"""
Test Configuration
In-memory stand-ins for the MongoDB repository and the SFTP log source
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from killfeed.utils.cursor_store import CursorStore
from killfeed.utils.exceptions import PersistenceException, TransportErrorKind, TransportException
from killfeed.utils.poll_orchestrator import PollOrchestrator
from killfeed.utils.remote_log_source import DEATHLOG, DEATHLOG_PREFIX, SERVER_LOG, SERVER_LOG_PREFIX, RemoteFile
from killfeed.utils.stat_aggregator import StatAggregator

GUILD_ID = 12345


def make_server(guild_id: int = GUILD_ID, server_id: str = "7020", **extra) -> Dict[str, Any]:
    server = {
        'guild_id': guild_id,
        'server_id': server_id,
        '_id': server_id,
        'name': f"Server {server_id}",
        'host': "10.0.0.1",
        'port': 22,
        'username': "user",
        'password': "pass",
        'channels': {},
    }
    server.update(extra)
    return server


def death_line(killer="Alpha", killer_id="k1", victim="Bravo", victim_id="v1",
               weapon="AKM", distance="100", stamp="2025.06.03-01.45.48") -> bytes:
    return f"{stamp};{killer};{killer_id};{victim};{victim_id};{weapon};{distance};PC;PC\n".encode()


class FakeRepository:
    """Async repository contract backed by dicts"""

    def __init__(self):
        self.guilds: Dict[int, Dict[str, Any]] = {}
        self.players: Dict[tuple, Dict[str, Any]] = {}
        self.factions: Dict[tuple, Dict[str, Any]] = {}
        self.cursors: Dict[tuple, Dict[str, Any]] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.server_updates: List[tuple] = []
        # operation name -> remaining number of failures (-1 = always)
        self.failures: Dict[str, int] = {}
        self.calls: List[str] = []

    def fail(self, operation: str, times: int = -1):
        self.failures[operation] = times

    def _check(self, operation: str):
        self.calls.append(operation)
        remaining = self.failures.get(operation)
        if remaining is None or remaining == 0:
            return
        if remaining > 0:
            self.failures[operation] = remaining - 1
        raise PersistenceException(operation, RuntimeError("injected failure"))

    def add_server(self, server: Dict[str, Any]):
        guild = self.guilds.setdefault(server['guild_id'], {'guild_id': server['guild_id'], 'servers': []})
        guild['servers'].append(server)

    def add_faction(self, guild_id: int, faction_id: str, members: List[str], **totals):
        faction = {'guild_id': guild_id, 'faction_id': faction_id, 'name': faction_id.title(),
                   'members': list(members), 'total_kills': 0, 'total_deaths': 0, 'total_coins': 0,
                   'stats_dirty': False}
        faction.update(totals)
        self.factions[(guild_id, faction_id)] = faction
        return faction

    def add_player(self, guild_id: int, player_id: str, **stats):
        player = {'guild_id': guild_id, 'player_id': player_id, 'name': player_id,
                  'kills': 0, 'deaths': 0, 'suicides': 0, 'coins': 0}
        player.update(stats)
        self.players[(guild_id, player_id)] = player
        return player

    def player(self, guild_id: int, player_id: str) -> Dict[str, Any]:
        return self.players.get((guild_id, player_id), {})

    # Servers
    async def get_guild(self, guild_id):
        self._check("get_guild")
        return copy.deepcopy(self.guilds.get(guild_id))

    async def list_servers(self, guild_id):
        self._check("list_servers")
        return [dict(s) for s in self.guilds.get(guild_id, {}).get('servers', [])]

    async def get_server(self, guild_id, server_id):
        for server in await self.list_servers(guild_id):
            if server['server_id'] == str(server_id):
                return server
        return None

    async def list_all_servers(self):
        self._check("list_all_servers")
        return [dict(s) for guild in self.guilds.values() for s in guild.get('servers', [])]

    async def update_server_status(self, guild_id, server_id, updates):
        self._check("update_server_status")
        self.server_updates.append((guild_id, server_id, dict(updates)))
        for server in self.guilds.get(guild_id, {}).get('servers', []):
            if server['server_id'] == server_id:
                server.update(updates)
                return True
        return False

    # Players
    def _upsert_player(self, guild_id, player_id, name=None):
        key = (guild_id, player_id)
        if key not in self.players:
            self.players[key] = {'guild_id': guild_id, 'player_id': player_id, 'kills': 0,
                                 'deaths': 0, 'suicides': 0, 'coins': 0,
                                 'created_at': datetime.now(timezone.utc)}
        if name:
            self.players[key]['name'] = name
        return self.players[key]

    async def get_player(self, guild_id, player_id):
        self._check("get_player")
        player = self.players.get((guild_id, player_id))
        return dict(player) if player else None

    async def get_players(self, guild_id, player_ids):
        self._check("get_players")
        return [dict(self.players[(guild_id, pid)]) for pid in player_ids if (guild_id, pid) in self.players]

    async def get_or_create_player(self, guild_id, player_id, name=None):
        self._check("get_or_create_player")
        return dict(self._upsert_player(guild_id, player_id, name))

    async def increment_player_kill(self, guild_id, player_id, name=None, active_at=None):
        self._check("increment_player_kill")
        player = self._upsert_player(guild_id, player_id, name)
        player['kills'] += 1
        if active_at:
            player['last_active'] = active_at

    async def increment_player_death(self, guild_id, player_id, name=None, active_at=None, suicide=False):
        self._check("increment_player_death")
        player = self._upsert_player(guild_id, player_id, name)
        player['deaths'] += 1
        if suicide:
            player['suicides'] += 1
        if active_at:
            player['last_active'] = active_at

    async def add_player_coins(self, guild_id, player_id, amount):
        self._check("add_player_coins")
        self._upsert_player(guild_id, player_id)['coins'] += amount

    async def add_transaction(self, guild_id, player_id, amount, event_type, description):
        self._check("add_transaction")
        self.transactions.append({'guild_id': guild_id, 'player_id': player_id, 'amount': amount,
                                  'event_type': event_type, 'description': description})
        return True

    # Factions
    async def get_faction(self, guild_id, faction_id):
        self._check("get_faction")
        faction = self.factions.get((guild_id, faction_id))
        return copy.deepcopy(faction) if faction else None

    async def list_factions(self, guild_id):
        self._check("list_factions")
        return [copy.deepcopy(f) for (gid, _), f in self.factions.items() if gid == guild_id]

    async def list_dirty_factions(self):
        self._check("list_dirty_factions")
        return [{'guild_id': f['guild_id'], 'faction_id': f['faction_id']}
                for f in self.factions.values() if f.get('stats_dirty')]

    async def mark_player_factions_dirty(self, guild_id, player_id):
        self._check("mark_player_factions_dirty")
        marked = 0
        for (gid, _), faction in self.factions.items():
            if gid == guild_id and player_id in faction['members']:
                faction['stats_dirty'] = True
                marked += 1
        return marked

    async def clear_faction_dirty(self, guild_id, faction_id):
        self._check("clear_faction_dirty")
        if (guild_id, faction_id) in self.factions:
            self.factions[(guild_id, faction_id)]['stats_dirty'] = False

    async def save_faction(self, faction):
        self._check("save_faction")
        stored = self.factions.setdefault((faction['guild_id'], faction['faction_id']), {})
        for key in ("guild_id", "faction_id", "name", "members", "total_kills",
                    "total_deaths", "total_coins", "last_active"):
            if key in faction:
                stored[key] = copy.deepcopy(faction[key])

    # Cursors
    async def get_cursor(self, guild_id, server_id, file_id):
        self._check("get_cursor")
        doc = self.cursors.get((guild_id, server_id, file_id))
        return dict(doc) if doc else None

    async def save_cursor(self, cursor_doc):
        self._check("save_cursor")
        key = (cursor_doc['guild_id'], cursor_doc['server_id'], cursor_doc['file_id'])
        self.cursors[key] = dict(cursor_doc)

    async def delete_cursors(self, guild_id, server_id, file_id=None, prefix=None):
        self._check("delete_cursors")
        doomed = [k for k in self.cursors
                  if k[0] == guild_id and k[1] == server_id
                  and (file_id is None or k[2] == file_id)
                  and (prefix is None or k[2].startswith(prefix))]
        for key in doomed:
            del self.cursors[key]
        return len(doomed)


class FakeLogSource:
    """Remote files held in memory, keyed by server and file id"""

    def __init__(self):
        self.files: Dict[tuple, Dict[str, bytearray]] = {}
        self.error: Optional[TransportException] = None
        self.missing_paths: set = set()
        self.reads: List[tuple] = []
        self.forgotten = 0
        # When set, list_files waits on it so a poll can be held in flight
        self.gate: Optional[asyncio.Event] = None

    def _files(self, server):
        return self.files.setdefault((server['guild_id'], server['server_id']), {})

    def write(self, server, file_id: str, data: bytes):
        self._files(server)[file_id] = bytearray(data)

    def append(self, server, file_id: str, data: bytes):
        self._files(server).setdefault(file_id, bytearray()).extend(data)

    def fail_with(self, kind: TransportErrorKind):
        self.error = TransportException(kind, f"injected {kind.value}")

    async def resolve_directory(self, server, kind):
        if self.error:
            raise self.error
        if (server['server_id'], kind) in self.missing_paths:
            raise TransportException(TransportErrorKind.NOT_FOUND, f"No {kind} directory")
        return f"./{server['host']}_{server['server_id']}/{kind}"

    def forget_paths(self, server):
        self.forgotten += 1

    async def list_files(self, server, kind=None):
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error

        found = []
        for file_id, data in sorted(self._files(server).items()):
            if file_id.startswith(DEATHLOG_PREFIX) and kind in (None, DEATHLOG):
                found.append(RemoteFile(file_id, DEATHLOG, len(data)))
            elif file_id.startswith(SERVER_LOG_PREFIX) and kind in (None, SERVER_LOG):
                found.append(RemoteFile(file_id, SERVER_LOG, len(data)))
        return found

    async def read_from(self, server, file_id, offset, length=None):
        if self.error:
            raise self.error
        self.reads.append((file_id, offset, length))
        data = bytes(self._files(server).get(file_id, b""))
        end = len(data) if length is None else offset + length
        return data[offset:end]


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def source():
    return FakeLogSource()


@pytest.fixture
def server(repo):
    server = make_server()
    repo.add_server(server)
    return server


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.deliver = AsyncMock(return_value=0)
    return notifier


@pytest.fixture
def make_orchestrator(repo, source, notifier):
    def factory(read_chunk_bytes: int = 65536, offline_failure_threshold: int = 3, kill_reward_coins: int = 0):
        return PollOrchestrator(
            repo,
            source,
            CursorStore(repo, fingerprint_window=64, retry_delay=0),
            StatAggregator(repo, kill_reward_coins=kill_reward_coins),
            notifier=notifier,
            read_chunk_bytes=read_chunk_bytes,
            offline_failure_threshold=offline_failure_threshold,
        )
    return factory


@pytest.fixture
def mock_bot():
    """Mock bot instance for testing"""
    bot = MagicMock()
    bot.db_manager = AsyncMock()
    bot.orchestrator = AsyncMock()
    bot.faction_sync = AsyncMock()
    bot.parser_validator = AsyncMock()
    return bot


@pytest.fixture
def mock_ctx():
    """Mock Discord context for testing"""
    ctx = AsyncMock()
    ctx.guild.id = GUILD_ID
    ctx.guild_id = GUILD_ID
    ctx.respond = AsyncMock()
    ctx.defer = AsyncMock()
    return ctx
