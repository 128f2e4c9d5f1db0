"""
Parser Administration Cog - Validate parser setup, reprocess history, force stat sync
"""

import logging
from datetime import datetime, timezone
from typing import Dict

import discord

from killfeed.parsers.validator import ValidationReport
from killfeed.utils.exceptions import KillfeedException
from killfeed.utils.poll_orchestrator import PollResult

logger = logging.getLogger(__name__)


def validation_embed(report: ValidationReport) -> discord.Embed:
    embed = discord.Embed(
        title="✅ Parser Validation Passed" if report.success else "❌ Parser Validation Failed",
        color=0x00FF00 if report.success else 0xFF0000,
        timestamp=datetime.now(timezone.utc)
    )
    for check in report.checks:
        marker = "✅" if check.passed else "❌"
        embed.add_field(name=f"{marker} {check.name.title()}", value=check.detail or "-", inline=False)
    return embed


def reprocess_embed(server_id: str, result: PollResult) -> discord.Embed:
    if result.skipped:
        return discord.Embed(
            title="⏳ Server Busy",
            description=f"Server `{server_id}` is being polled right now, try again shortly.",
            color=0xFFA500
        )

    embed = discord.Embed(
        title="🔄 Reprocess Complete" if result.success else "❌ Reprocess Failed",
        color=0x00FF00 if result.success else 0xFF0000,
        timestamp=datetime.now(timezone.utc)
    )
    embed.add_field(name="Files", value=str(result.files_processed), inline=True)
    embed.add_field(name="Kill Events", value=str(len(result.events)), inline=True)
    embed.add_field(name="Skipped Lines", value=str(result.parse_errors), inline=True)
    if result.errors:
        embed.add_field(name="Errors", value="\n".join(result.errors)[:1024], inline=False)
    return embed


def sync_embed(summary: Dict[str, int]) -> discord.Embed:
    return discord.Embed(
        title="📊 Faction Stats Synced",
        description=(
            f"Synced **{summary['synced']}** faction(s), "
            f"{summary['skipped']} already in progress, {summary['failed']} failed."
        ),
        color=0x00FF00 if not summary['failed'] else 0xFFA500,
        timestamp=datetime.now(timezone.utc)
    )


class ParserAdmin(discord.Cog):
    """Admin commands over the ingestion pipeline"""

    def __init__(self, bot):
        self.bot = bot

    async def _component(self, ctx: discord.ApplicationContext, attribute: str):
        """Pipeline component from the bot, or None after telling the user it is not up yet"""
        component = getattr(self.bot, attribute, None)
        if component is None:
            await ctx.respond("❌ Killfeed pipeline is not ready yet, try again shortly", ephemeral=True)
        return component

    parser = discord.SlashCommandGroup(
        "parser",
        "Killfeed parser administration",
        default_member_permissions=discord.Permissions(administrator=True)
    )

    @parser.command(name="validate", description="Check paths, field mapping, classification and isolation")
    async def parser_validate(self, ctx: discord.ApplicationContext):
        if not ctx.guild:
            await ctx.respond("❌ This command must be used in a server", ephemeral=True)
            return

        validator = await self._component(ctx, "parser_validator")
        if validator is None:
            return

        await ctx.defer(ephemeral=True)
        report = await validator.validate(ctx.guild.id)
        await ctx.respond(embed=validation_embed(report), ephemeral=True)

    @parser.command(name="reprocess", description="Reset cursors and re-read every death log for a server")
    async def parser_reprocess(self, ctx: discord.ApplicationContext,
                               server_id: discord.Option(str, "Server ID to reprocess")):
        if not ctx.guild:
            await ctx.respond("❌ This command must be used in a server", ephemeral=True)
            return

        orchestrator = await self._component(ctx, "orchestrator")
        if orchestrator is None:
            return

        await ctx.defer(ephemeral=True)
        try:
            result = await orchestrator.reprocess_server(ctx.guild.id, server_id)
        except KillfeedException as e:
            logger.error(f"Reprocess of {server_id} failed: {e}")
            await ctx.respond(f"❌ {e}", ephemeral=True)
            return
        await ctx.respond(embed=reprocess_embed(server_id, result), ephemeral=True)

    @parser.command(name="syncstats", description="Recompute faction totals from member stats")
    async def parser_syncstats(self, ctx: discord.ApplicationContext):
        if not ctx.guild:
            await ctx.respond("❌ This command must be used in a server", ephemeral=True)
            return

        faction_sync = await self._component(ctx, "faction_sync")
        if faction_sync is None:
            return

        await ctx.defer(ephemeral=True)
        try:
            summary = await faction_sync.sync_all_factions_for_community(ctx.guild.id)
        except KillfeedException as e:
            logger.error(f"Faction sync for guild {ctx.guild.id} failed: {e}")
            await ctx.respond(f"❌ Faction sync failed: {e}", ephemeral=True)
            return
        await ctx.respond(embed=sync_embed(summary), ephemeral=True)


def setup(bot):
    bot.add_cog(ParserAdmin(bot))
