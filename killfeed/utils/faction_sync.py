"""
Faction Stat Sync
Recomputes faction totals from live member records; eventual consistency for faction leaderboards
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from killfeed.utils.exceptions import PersistenceException
from killfeed.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

TOTAL_FIELDS = (
    ("total_kills", "kills"),
    ("total_deaths", "deaths"),
    ("total_coins", "coins"),
)


class FactionStatSync:
    """Full recompute plus incremental add/remove helpers for membership changes"""

    def __init__(self, db_manager):
        self.db_manager = db_manager
        self.single_flight = SingleFlight(name="faction-sync")
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = {}

    def _lock_for(self, guild_id: int, faction_id: str) -> asyncio.Lock:
        key = (guild_id, faction_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def sync_faction(self, guild_id: int, faction_id: str) -> Optional[Dict[str, Any]]:
        """Replace the faction's totals with the sum over its current members.

        Returns the saved faction, or None when it does not exist or a sync for
        it is already running.
        """
        key = (guild_id, faction_id)
        async with self.single_flight.acquire(key) as acquired:
            if not acquired:
                logger.debug(f"Faction {faction_id} sync already running, skipping")
                return None

            async with self._lock_for(guild_id, faction_id):
                faction = await self.db_manager.get_faction(guild_id, faction_id)
                if not faction:
                    logger.warning(f"Cannot sync stats for non-existent faction {faction_id} in guild {guild_id}")
                    return None

                # Cleared first so a kill landing mid-sync re-flags the faction
                await self.db_manager.clear_faction_dirty(guild_id, faction_id)

                members = list(faction.get('members', []))
                players = await self.db_manager.get_players(guild_id, members) if members else []

                for total_field, player_field in TOTAL_FIELDS:
                    faction[total_field] = sum(player.get(player_field, 0) for player in players)
                active = [player['last_active'] for player in players if player.get('last_active')]
                if active:
                    faction['last_active'] = max(active)

                await self.db_manager.save_faction(faction)
                logger.info(
                    f"Synced faction {faction.get('name', faction_id)}: "
                    f"{faction['total_kills']} kills, {faction['total_deaths']} deaths over {len(players)} member(s)"
                )
                return faction

    async def sync_all_factions_for_community(self, guild_id: int) -> Dict[str, int]:
        """Sync every faction in the guild; one failure does not stop the rest"""
        summary = {'synced': 0, 'skipped': 0, 'failed': 0}
        factions = await self.db_manager.list_factions(guild_id)
        logger.info(f"Syncing {len(factions)} factions for guild {guild_id}")

        for faction in factions:
            try:
                synced = await self.sync_faction(guild_id, faction['faction_id'])
            except PersistenceException as e:
                summary['failed'] += 1
                logger.error(f"Error syncing faction {faction['faction_id']}: {e}")
                continue
            summary['synced' if synced else 'skipped'] += 1
        return summary

    async def sync_dirty_factions(self) -> Dict[str, int]:
        """Periodic pass over factions whose members' stats changed since the last sync"""
        summary = {'synced': 0, 'skipped': 0, 'failed': 0}
        dirty: List[Dict[str, Any]] = await self.db_manager.list_dirty_factions()
        if not dirty:
            return summary

        for faction in dirty:
            try:
                synced = await self.sync_faction(faction['guild_id'], faction['faction_id'])
            except PersistenceException as e:
                summary['failed'] += 1
                logger.error(f"Error syncing dirty faction {faction['faction_id']}: {e}")
                continue
            summary['synced' if synced else 'skipped'] += 1

        logger.info(f"Dirty faction sync: {summary['synced']} synced, {summary['failed']} failed")
        return summary

    async def add_player_stats(self, guild_id: int, faction_id: str, player_id: str) -> Optional[Dict[str, Any]]:
        """Fold a joining player's current stats into the faction totals"""
        async with self._lock_for(guild_id, faction_id):
            faction = await self.db_manager.get_faction(guild_id, faction_id)
            if not faction:
                return None
            player = await self.db_manager.get_player(guild_id, player_id) or {}

            for total_field, player_field in TOTAL_FIELDS:
                faction[total_field] = faction.get(total_field, 0) + player.get(player_field, 0)
            members = list(faction.get('members', []))
            if player_id not in members:
                members.append(player_id)
            faction['members'] = members
            faction['last_active'] = datetime.now(timezone.utc)

            await self.db_manager.save_faction(faction)
            return faction

    async def remove_player_stats(self, guild_id: int, faction_id: str, player_id: str) -> Optional[Dict[str, Any]]:
        """Subtract a leaving player's stats, never taking a total below zero"""
        async with self._lock_for(guild_id, faction_id):
            faction = await self.db_manager.get_faction(guild_id, faction_id)
            if not faction:
                return None
            player = await self.db_manager.get_player(guild_id, player_id) or {}

            for total_field, player_field in TOTAL_FIELDS:
                faction[total_field] = max(0, faction.get(total_field, 0) - player.get(player_field, 0))
            faction['members'] = [m for m in faction.get('members', []) if m != player_id]
            faction['last_active'] = datetime.now(timezone.utc)

            await self.db_manager.save_faction(faction)
            return faction
