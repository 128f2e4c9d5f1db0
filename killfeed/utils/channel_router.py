"""
Emerald's Killfeed - Channel Router Utility
Channel resolution with server-specific fallbacks and killfeed embed delivery
"""

import logging
from typing import Any, Dict, List, Optional

import discord

from killfeed.models.events import ClassifiedEvent, DeathType

logger = logging.getLogger(__name__)

EMBED_STYLE = {
    DeathType.PLAYER_VS_PLAYER: ("💀 Player Eliminated", 0xFF0000),
    DeathType.SUICIDE: ("☠️ Suicide", 0x808080),
    DeathType.ENVIRONMENTAL: ("🌲 Killed by the Environment", 0x2E8B57),
    DeathType.VEHICLE: ("🚗 Vehicle Death", 0xFF8C00),
}


class ChannelRouter:
    """Centralized channel routing with server-specific fallback logic"""

    def __init__(self, bot, db_manager):
        self.bot = bot
        self.db_manager = db_manager

    async def get_channel_id(self, guild_id: int, server: Dict[str, Any], channel_type: str) -> Optional[int]:
        """
        Get channel ID with server-specific fallback logic

        Priority:
        1. Channel stored on the server entry (servers[].channels.{channel_type})
        2. Server-specific channel (server_channels.{server_id}.{channel_type})
        3. Default server channel (server_channels.default.{channel_type})
        4. Legacy channel (channels.{channel_type})
        """
        channel_id = (server.get('channels') or {}).get(channel_type)
        if channel_id:
            return channel_id

        guild_config = await self.db_manager.get_guild(guild_id)
        if not guild_config:
            logger.warning(f"No guild config found for guild {guild_id}")
            return None

        server_id = str(server.get('server_id'))
        server_channels = guild_config.get('server_channels', {})
        for scope in (server_id, 'default'):
            channel_id = server_channels.get(scope, {}).get(channel_type)
            if channel_id:
                return channel_id

        channel_id = guild_config.get('channels', {}).get(channel_type)
        if not channel_id:
            logger.warning(f"No {channel_type} channel configured for guild {guild_id}, server {server_id}")
        return channel_id

    async def get_channel(self, guild_id: int, server: Dict[str, Any], channel_type: str):
        channel_id = await self.get_channel_id(guild_id, server, channel_type)
        if not channel_id:
            return None

        channel = self.bot.get_channel(int(channel_id))
        if not channel:
            logger.warning(f"Channel {channel_id} not found for {channel_type}")
        return channel


class KillfeedNotifier:
    """Presentation sink for classified events; Unknown deaths are never announced"""

    def __init__(self, router: ChannelRouter):
        self.router = router

    @staticmethod
    def build_embed(event: ClassifiedEvent, server_name: str) -> discord.Embed:
        payload = event.to_payload()
        title, color = EMBED_STYLE[event.death_type]
        embed = discord.Embed(title=title, color=color, timestamp=payload['timestamp'])

        if event.death_type is DeathType.PLAYER_VS_PLAYER:
            embed.add_field(name="Killer", value=f"**{payload['killer']}**", inline=True)
            embed.add_field(name="Victim", value=f"**{payload['victim']}**", inline=True)
            weapon = f"**{payload['weapon']}**"
            if payload['distance'] is not None:
                weapon += f"\n*{payload['distance']}m*"
            embed.add_field(name="Weapon", value=weapon, inline=True)
        else:
            embed.description = f"**{payload['victim']}** died ({payload['weapon'] or 'unknown cause'})"

        embed.set_footer(text=f"{server_name} • {payload['deathType']}")
        return embed

    async def deliver(self, server: Dict[str, Any], events: List[ClassifiedEvent]) -> int:
        """Send one embed per announced event, returning how many were sent"""
        announced = [event for event in events if event.death_type.announced]
        if not announced:
            return 0

        guild_id = int(server['guild_id'])
        channel = await self.router.get_channel(guild_id, server, 'killfeed')
        if not channel:
            return 0

        server_name = server.get('name', server.get('server_id'))
        sent = 0
        for event in announced:
            try:
                await channel.send(embed=self.build_embed(event, server_name))
                sent += 1
            except discord.HTTPException as e:
                logger.error(f"Failed to send killfeed embed to channel {channel.id}: {e}")
        logger.info(f"Delivered {sent}/{len(announced)} killfeed events for {server_name}")
        return sent
