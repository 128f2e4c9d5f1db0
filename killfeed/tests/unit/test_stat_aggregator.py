"""
Unit Tests for the Stat Aggregator
"""

import asyncio
from datetime import datetime, timezone

import pytest

from killfeed.models.events import ClassifiedEvent, DeathRecord, DeathType
from killfeed.utils.exceptions import PersistenceException
from killfeed.utils.stat_aggregator import StatAggregator

from killfeed.tests.conftest import GUILD_ID

WHEN = datetime(2025, 6, 3, 1, 45, 48, tzinfo=timezone.utc)


def event(death_type, killer_id="k1", killer="Alpha", victim_id="v1", victim="Bravo", weapon="AKM"):
    record = DeathRecord(timestamp=WHEN, killer_id=killer_id, killer=killer,
                         victim_id=victim_id, victim=victim, weapon=weapon, raw_line="")
    return ClassifiedEvent(record=record, death_type=death_type)


class TestStatAggregator:
    """Counter increments per death type"""

    def test_pvp_credits_killer_and_victim(self, repo):
        result = asyncio.run(StatAggregator(repo).apply(GUILD_ID, event(DeathType.PLAYER_VS_PLAYER)))

        assert result.kill_credited
        assert repo.player(GUILD_ID, "k1")["kills"] == 1
        assert repo.player(GUILD_ID, "k1")["deaths"] == 0
        assert repo.player(GUILD_ID, "v1")["deaths"] == 1
        assert repo.player(GUILD_ID, "v1")["last_active"] == WHEN
        assert repo.player(GUILD_ID, "v1")["name"] == "Bravo"

    @pytest.mark.parametrize("death_type", [DeathType.ENVIRONMENTAL, DeathType.VEHICLE, DeathType.UNKNOWN])
    def test_non_pvp_only_counts_the_death(self, repo, death_type):
        result = asyncio.run(StatAggregator(repo).apply(GUILD_ID, event(death_type)))

        assert not result.kill_credited
        assert repo.player(GUILD_ID, "k1") == {}
        assert repo.player(GUILD_ID, "v1")["deaths"] == 1
        assert repo.player(GUILD_ID, "v1")["suicides"] == 0

    def test_suicide_counts_death_and_suicide(self, repo):
        asyncio.run(StatAggregator(repo).apply(GUILD_ID, event(DeathType.SUICIDE, killer_id="v1")))
        assert repo.player(GUILD_ID, "v1")["deaths"] == 1
        assert repo.player(GUILD_ID, "v1")["suicides"] == 1
        assert repo.player(GUILD_ID, "v1")["kills"] == 0

    def test_players_are_scoped_per_guild(self, repo):
        aggregator = StatAggregator(repo)
        asyncio.run(aggregator.apply(GUILD_ID, event(DeathType.PLAYER_VS_PLAYER)))
        asyncio.run(aggregator.apply(999, event(DeathType.PLAYER_VS_PLAYER)))

        assert repo.player(GUILD_ID, "k1")["kills"] == 1
        assert repo.player(999, "k1")["kills"] == 1

    def test_faction_is_marked_dirty_not_updated(self, repo):
        repo.add_faction(GUILD_ID, "wolves", ["k1"], total_kills=10)
        result = asyncio.run(StatAggregator(repo).apply(GUILD_ID, event(DeathType.PLAYER_VS_PLAYER)))

        faction = repo.factions[(GUILD_ID, "wolves")]
        assert faction["stats_dirty"] is True
        assert faction["total_kills"] == 10
        assert result.dirty_factions == 1

    def test_kill_reward(self, repo):
        result = asyncio.run(StatAggregator(repo, kill_reward_coins=25).apply(GUILD_ID, event(DeathType.PLAYER_VS_PLAYER)))

        assert result.coins_awarded == 25
        assert repo.player(GUILD_ID, "k1")["coins"] == 25
        assert repo.transactions[0]["event_type"] == "kill_reward"
        assert repo.transactions[0]["amount"] == 25

    def test_no_reward_for_non_pvp(self, repo):
        asyncio.run(StatAggregator(repo, kill_reward_coins=25).apply(GUILD_ID, event(DeathType.SUICIDE, killer_id="v1")))
        assert repo.transactions == []

    def test_persistence_error_propagates(self, repo):
        repo.fail("increment_player_death")
        with pytest.raises(PersistenceException):
            asyncio.run(StatAggregator(repo).apply(GUILD_ID, event(DeathType.ENVIRONMENTAL)))
