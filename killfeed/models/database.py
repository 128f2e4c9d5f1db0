"""
Emerald's Killfeed - Database Models and Architecture
MongoDB repository used by the ingestion pipeline:
- Servers are stored inside the guild configuration document
- Players, factions, cursors and transactions are guild-scoped collections
- Every stat change is an atomic $inc, never a read-modify-write
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from killfeed.utils.exceptions import PersistenceException

logger = logging.getLogger(__name__)


def _normalize_server(guild_id: int, server: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an embedded server entry into the shape the pipeline uses"""
    server_id = str(server.get('server_id', server.get('_id', 'default')))
    return {
        **server,
        'guild_id': guild_id,
        'server_id': server_id,
        'name': server.get('name', f"Server {server_id}"),
        'host': server.get('host', ''),
        'port': server.get('port', 22),
        'username': server.get('username', ''),
        'password': server.get('password', ''),
        'channels': server.get('channels', {}),
    }


class DatabaseManager:
    """
    Repository over the emerald_killfeed database.
    Read helpers return plain documents; write helpers raise PersistenceException
    so the caller decides whether the poll fails.
    """

    def __init__(self, mongo_client: AsyncIOMotorClient, database_name: str = "emerald_killfeed"):
        self.client = mongo_client
        self.db: AsyncIOMotorDatabase = mongo_client[database_name]

        # Collections
        self.guild_configs = self.db.guild_configs
        self.guilds = self.guild_configs
        self.players = self.db.players
        self.factions = self.db.factions
        self.log_cursors = self.db.log_cursors
        self.transactions = self.db.transactions

    async def initialize_indexes(self):
        """Create the compound indexes the pipeline relies on"""
        try:
            await self.guilds.create_index("guild_id", unique=True)
            await self.players.create_index([("guild_id", 1), ("player_id", 1)], unique=True)
            await self.players.create_index([("guild_id", 1), ("kills", -1)])
            await self.factions.create_index([("guild_id", 1), ("faction_id", 1)], unique=True)
            await self.factions.create_index([("guild_id", 1), ("members", 1)])
            await self.factions.create_index("stats_dirty")
            await self.log_cursors.create_index(
                [("guild_id", 1), ("server_id", 1), ("file_id", 1)], unique=True
            )
            await self.transactions.create_index([("guild_id", 1), ("player_id", 1), ("timestamp", -1)])
            logger.info("Database indexes ready")
        except PyMongoError as e:
            logger.error(f"Index creation failed: {e}")
            raise PersistenceException("initialize_indexes", e) from e

    # SERVERS (embedded in guild config)
    async def get_guild(self, guild_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await self.guilds.find_one({"guild_id": guild_id})
        except PyMongoError as e:
            logger.error(f"Failed to get guild {guild_id}: {e}")
            raise PersistenceException("get_guild", e) from e

    async def get_server(self, guild_id: int, server_id: str) -> Optional[Dict[str, Any]]:
        for server in await self.list_servers(guild_id):
            if server['server_id'] == str(server_id):
                return server
        return None

    async def list_servers(self, guild_id: int) -> List[Dict[str, Any]]:
        guild_doc = await self.get_guild(guild_id)
        if not guild_doc:
            return []
        return [_normalize_server(guild_id, server) for server in guild_doc.get('servers', [])]

    async def list_all_servers(self) -> List[Dict[str, Any]]:
        """Every configured server across every guild"""
        servers = []
        try:
            async for guild_doc in self.guilds.find({}, {"guild_id": 1, "servers": 1}):
                for server in guild_doc.get('servers', []):
                    servers.append(_normalize_server(guild_doc['guild_id'], server))
        except PyMongoError as e:
            logger.error(f"Error getting all servers: {e}")
            raise PersistenceException("list_all_servers", e) from e
        return servers

    async def update_server_status(self, guild_id: int, server_id: str, updates: Dict[str, Any]) -> bool:
        """Set fields on one embedded server entry"""
        try:
            result = await self.guilds.update_one(
                {"guild_id": guild_id, "servers._id": str(server_id)},
                {
                    "$set": {f"servers.$.{key}": value for key, value in updates.items()},
                    "$currentDate": {"last_updated": True}
                }
            )
            return result.modified_count > 0
        except PyMongoError as e:
            logger.error(f"Failed to update server {server_id} status: {e}")
            raise PersistenceException("update_server_status", e) from e

    # PLAYERS (guild-scoped)
    async def get_player(self, guild_id: int, player_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.players.find_one({"guild_id": guild_id, "player_id": player_id})
        except PyMongoError as e:
            raise PersistenceException("get_player", e) from e

    async def get_players(self, guild_id: int, player_ids: Iterable[str]) -> List[Dict[str, Any]]:
        try:
            cursor = self.players.find({"guild_id": guild_id, "player_id": {"$in": list(player_ids)}})
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceException("get_players", e) from e

    async def get_or_create_player(self, guild_id: int, player_id: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Return the player, provisioning it on first sighting"""
        update: Dict[str, Any] = {
            "$setOnInsert": {
                "guild_id": guild_id,
                "player_id": player_id,
                "kills": 0,
                "deaths": 0,
                "suicides": 0,
                "coins": 0,
                "created_at": datetime.now(timezone.utc),
            }
        }
        if name:
            update["$set"] = {"name": name}
        try:
            return await self.players.find_one_and_update(
                {"guild_id": guild_id, "player_id": player_id},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Failed to get or create player {player_id}: {e}")
            raise PersistenceException("get_or_create_player", e) from e

    async def _increment_player(self, guild_id: int, player_id: str, name: Optional[str],
                                increments: Dict[str, int], active_at: Optional[datetime], operation: str):
        defaults = {"kills": 0, "deaths": 0, "suicides": 0, "coins": 0}
        set_on_insert = {k: v for k, v in defaults.items() if k not in increments}
        set_on_insert.update({"guild_id": guild_id, "player_id": player_id,
                              "created_at": datetime.now(timezone.utc)})

        update: Dict[str, Any] = {"$inc": increments, "$setOnInsert": set_on_insert}
        fields = {}
        if name:
            fields["name"] = name
        if active_at:
            fields["last_active"] = active_at
        if fields:
            update["$set"] = fields

        try:
            await self.players.update_one(
                {"guild_id": guild_id, "player_id": player_id}, update, upsert=True
            )
        except PyMongoError as e:
            logger.error(f"Failed to {operation} for {player_id} in guild {guild_id}: {e}")
            raise PersistenceException(operation, e) from e

    async def increment_player_kill(self, guild_id: int, player_id: str, name: Optional[str] = None,
                                    active_at: Optional[datetime] = None):
        await self._increment_player(guild_id, player_id, name, {"kills": 1}, active_at, "increment_player_kill")

    async def increment_player_death(self, guild_id: int, player_id: str, name: Optional[str] = None,
                                     active_at: Optional[datetime] = None, suicide: bool = False):
        increments = {"deaths": 1, "suicides": 1} if suicide else {"deaths": 1}
        await self._increment_player(guild_id, player_id, name, increments, active_at, "increment_player_death")

    async def add_player_coins(self, guild_id: int, player_id: str, amount: int):
        await self._increment_player(guild_id, player_id, None, {"coins": amount}, None, "add_player_coins")

    # TRANSACTIONS (economy ledger, append only)
    async def add_transaction(self, guild_id: int, player_id: str, amount: int,
                              event_type: str, description: str) -> bool:
        try:
            result = await self.transactions.insert_one({
                "guild_id": guild_id,
                "player_id": player_id,
                "amount": amount,
                "event_type": event_type,
                "description": description,
                "timestamp": datetime.now(timezone.utc),
            })
            return result.acknowledged
        except PyMongoError as e:
            logger.error(f"Failed to add transaction for {player_id}: {e}")
            raise PersistenceException("add_transaction", e) from e

    # FACTIONS (guild-scoped)
    async def get_faction(self, guild_id: int, faction_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.factions.find_one({"guild_id": guild_id, "faction_id": faction_id})
        except PyMongoError as e:
            raise PersistenceException("get_faction", e) from e

    async def list_factions(self, guild_id: int) -> List[Dict[str, Any]]:
        try:
            return await self.factions.find({"guild_id": guild_id}).to_list(length=None)
        except PyMongoError as e:
            raise PersistenceException("list_factions", e) from e

    async def list_dirty_factions(self) -> List[Dict[str, Any]]:
        try:
            cursor = self.factions.find({"stats_dirty": True}, {"guild_id": 1, "faction_id": 1})
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceException("list_dirty_factions", e) from e

    async def mark_player_factions_dirty(self, guild_id: int, player_id: str) -> int:
        """Flag whatever faction the player belongs to for the next sync pass"""
        try:
            result = await self.factions.update_many(
                {"guild_id": guild_id, "members": player_id},
                {"$set": {"stats_dirty": True}}
            )
            return result.modified_count
        except PyMongoError as e:
            raise PersistenceException("mark_player_factions_dirty", e) from e

    async def clear_faction_dirty(self, guild_id: int, faction_id: str):
        try:
            await self.factions.update_one(
                {"guild_id": guild_id, "faction_id": faction_id},
                {"$set": {"stats_dirty": False}}
            )
        except PyMongoError as e:
            raise PersistenceException("clear_faction_dirty", e) from e

    async def save_faction(self, faction: Dict[str, Any]):
        """Overwrite the faction's aggregate fields"""
        fields = {
            key: faction[key]
            for key in ("name", "members", "total_kills", "total_deaths", "total_coins", "last_active")
            if key in faction
        }
        try:
            await self.factions.update_one(
                {"guild_id": faction["guild_id"], "faction_id": faction["faction_id"]},
                {"$set": fields},
                upsert=True
            )
        except PyMongoError as e:
            logger.error(f"Failed to save faction {faction.get('faction_id')}: {e}")
            raise PersistenceException("save_faction", e) from e

    # CURSORS (server-scoped)
    async def get_cursor(self, guild_id: int, server_id: str, file_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.log_cursors.find_one(
                {"guild_id": guild_id, "server_id": server_id, "file_id": file_id}
            )
        except PyMongoError as e:
            logger.error(f"Failed to get cursor for {file_id}: {e}")
            raise PersistenceException("get_cursor", e) from e

    async def save_cursor(self, cursor_doc: Dict[str, Any]):
        key = {k: cursor_doc[k] for k in ("guild_id", "server_id", "file_id")}
        try:
            await self.log_cursors.replace_one(key, cursor_doc, upsert=True)
        except PyMongoError as e:
            logger.error(f"Failed to save cursor for {key['file_id']}: {e}")
            raise PersistenceException("save_cursor", e) from e

    async def delete_cursors(self, guild_id: int, server_id: str, file_id: Optional[str] = None,
                             prefix: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"guild_id": guild_id, "server_id": server_id}
        if file_id is not None:
            query["file_id"] = file_id
        elif prefix is not None:
            query["file_id"] = {"$regex": f"^{re.escape(prefix)}"}
        try:
            result = await self.log_cursors.delete_many(query)
            return result.deleted_count
        except PyMongoError as e:
            raise PersistenceException("delete_cursors", e) from e

    def close(self):
        self.client.close()
