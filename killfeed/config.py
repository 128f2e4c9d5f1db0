"""
Emerald's Killfeed - Runtime Configuration
Built once at startup and handed to every component that needs it
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from killfeed.utils.exceptions import ConfigurationException

logger = logging.getLogger(__name__)


def _first(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationException(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationException(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class BotConfig:
    """Everything the pipeline reads from the environment"""
    mongo_uri: str
    bot_token: Optional[str] = None
    database_name: str = "emerald_killfeed"
    killfeed_interval_seconds: int = 300
    server_stats_interval_seconds: int = 180
    faction_sync_interval_seconds: int = 3600
    max_concurrent_polls: int = 5
    poll_timeout_seconds: int = 120
    offline_failure_threshold: int = 3
    read_chunk_bytes: int = 65536
    fingerprint_window_bytes: int = 256
    kill_reward_coins: int = 0
    log_level: str = "INFO"
    log_file: str = "bot.log"
    dev_mode: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BotConfig":
        """Read configuration from the process environment (after .env is loaded)"""
        if env is None:
            load_dotenv()
            env = os.environ

        mongo_uri = _first(env, "MONGO_URI", "MONGODB_URI")
        if not mongo_uri:
            raise ConfigurationException("MONGO_URI is required")

        return cls(
            mongo_uri=mongo_uri,
            bot_token=_first(env, "BOT_TOKEN", "DISCORD_TOKEN"),
            database_name=env.get("MONGO_DATABASE") or "emerald_killfeed",
            killfeed_interval_seconds=_int(env, "KILLFEED_INTERVAL", 300, minimum=1),
            server_stats_interval_seconds=_int(env, "SERVER_STATS_INTERVAL", 180, minimum=1),
            faction_sync_interval_seconds=_int(env, "FACTION_SYNC_INTERVAL", 3600, minimum=1),
            max_concurrent_polls=_int(env, "MAX_CONCURRENT_POLLS", 5, minimum=1),
            poll_timeout_seconds=_int(env, "POLL_TIMEOUT", 120, minimum=1),
            offline_failure_threshold=_int(env, "OFFLINE_FAILURE_THRESHOLD", 3, minimum=1),
            read_chunk_bytes=_int(env, "READ_CHUNK_BYTES", 65536, minimum=1),
            fingerprint_window_bytes=_int(env, "FINGERPRINT_WINDOW", 256, minimum=1),
            kill_reward_coins=_int(env, "KILL_REWARD_COINS", 0),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            log_file=env.get("LOG_FILE") or "bot.log",
            dev_mode=(env.get("DEV_MODE") or "false").lower() == "true",
        )
