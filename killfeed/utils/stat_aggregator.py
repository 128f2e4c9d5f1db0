"""
Stat Aggregator
Folds classified death events into per-guild player counters
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from killfeed.models.events import ClassifiedEvent, DeathType

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """What a single apply() changed"""
    death_type: DeathType
    victim_id: str
    killer_id: Optional[str] = None
    kill_credited: bool = False
    coins_awarded: int = 0
    dirty_factions: int = 0
    touched_players: List[str] = field(default_factory=list)


class StatAggregator:
    """
    Applies ClassifiedEvents through the repository's atomic increments.
    There is no dedupe ledger: each event must be applied exactly once, which
    the cursor store guarantees by handing out every byte range once.
    """

    def __init__(self, db_manager, kill_reward_coins: int = 0):
        self.db_manager = db_manager
        self.kill_reward_coins = kill_reward_coins

    async def apply(self, guild_id: int, event: ClassifiedEvent) -> ApplyResult:
        result = ApplyResult(death_type=event.death_type, victim_id=event.victim_id)

        if event.death_type is DeathType.PLAYER_VS_PLAYER:
            killer_id = event.killer_id or event.killer
            result.killer_id = killer_id
            await self.db_manager.increment_player_kill(
                guild_id, killer_id, event.killer, active_at=event.timestamp
            )
            result.kill_credited = True
            result.touched_players.append(killer_id)

        await self.db_manager.increment_player_death(
            guild_id,
            event.victim_id,
            event.victim,
            active_at=event.timestamp,
            suicide=event.death_type is DeathType.SUICIDE,
        )
        result.touched_players.append(event.victim_id)

        if result.kill_credited and self.kill_reward_coins > 0:
            await self._reward_kill(guild_id, event, result)

        for player_id in result.touched_players:
            result.dirty_factions += await self.db_manager.mark_player_factions_dirty(guild_id, player_id)

        logger.debug(
            f"Applied {event.death_type.value} in guild {guild_id}: "
            f"{event.killer or '-'} -> {event.victim} ({event.weapon})"
        )
        return result

    async def _reward_kill(self, guild_id: int, event: ClassifiedEvent, result: ApplyResult):
        amount = self.kill_reward_coins
        await self.db_manager.add_player_coins(guild_id, result.killer_id, amount)
        await self.db_manager.add_transaction(
            guild_id,
            result.killer_id,
            amount,
            "kill_reward",
            f"Killed {event.victim} with {event.weapon}",
        )
        result.coins_awarded = amount
