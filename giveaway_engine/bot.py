from __future__ import annotations

import argparse
import asyncio
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from .config import Config, ConfigError, load_config
from .discord_adapters import (
    ChannelNotificationSink,
    DiscordMemberDirectory,
    LoggerChannelAlerts,
    RoleAuthorizer,
    is_admin,
)
from .engine import GiveawayEngine, build_engine
from .errors import TransientInfraError, ValidationError
from .models import GiveawayConfig, GiveawayStatus, Requirements
from .views import ClaimView, EntryView, describe_decision

PERMISSION_LOG = logging.getLogger("giveaway.permissions")
ENV_PATH = Path(".env")

log = logging.getLogger(__name__)


def _load_env_file(path: Path = ENV_PATH) -> None:
    """Export ``KEY=value`` pairs from ``path`` without overriding the real environment."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for line in lines:
        name, sep, value = line.strip().partition("=")
        name = name.strip()
        if not sep or not name or name.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        os.environ.setdefault(name, value)


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str, log_dir: Path = Path("logs")) -> None:
    """Console at ``level``, everything at DEBUG into ``logs/log.txt``."""
    formatter = logging.Formatter(LOG_FORMAT)
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers = [
        (logging.StreamHandler(), getattr(logging, level.upper(), logging.INFO)),
        (logging.FileHandler(log_dir / "log.txt", encoding="utf-8"), logging.DEBUG),
    ]

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)
    for handler, handler_level in handlers:
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # discord.py logs every gateway event at DEBUG.
    logging.getLogger("discord").setLevel(logging.INFO)


class GiveawayBot(commands.Bot):
    def __init__(self, config: Config) -> None:
        intents = discord.Intents.default()
        intents.members = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            application_id=config.application_id,
        )
        self.config = config
        self.engine: Optional[GiveawayEngine] = None
        self.sink = ChannelNotificationSink(self)
        self.authorizer = RoleAuthorizer(self, config.permissions.admin_roles)

    async def setup_hook(self) -> None:
        self.engine = await build_engine(
            self.config.storage.path,
            sink=self.sink,
            directory=DiscordMemberDirectory(self),
            authorizer=self.authorizer,
            alerts=LoggerChannelAlerts(self, self.config.logging.logger_channel_id),
            defaults=self.config.defaults,
            scheduler_config=self.config.scheduler,
        )
        self.sink.view_factory = lambda giveaway_id: ClaimView(self.engine, giveaway_id)
        await self._restore_views()
        self.engine.scheduler.start()
        self._maintenance.start()
        await self.tree.sync()
        dev_guild_id = self.config.permissions.development_guild_id
        if dev_guild_id:
            guild = discord.Object(dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)

    async def _restore_views(self) -> None:
        for giveaway in await self.engine.list_active():
            if giveaway.status is GiveawayStatus.ACTIVE:
                self.add_view(EntryView(self.engine, giveaway.giveaway_id))
            else:
                self.add_view(ClaimView(self.engine, giveaway.giveaway_id))

    @tasks.loop(minutes=1)
    async def _maintenance(self) -> None:
        try:
            await self.engine.scheduler.reclaim_expired()
            dead_letters = await self.engine.scheduler.list_dead_letters()
        except TransientInfraError as exc:
            log.warning("Maintenance pass skipped: %s", exc)
            return
        if dead_letters:
            log.warning("%s giveaway job(s) are waiting for manual re-drive.", len(dead_letters))

    async def close(self) -> None:
        if self._maintenance.is_running():
            self._maintenance.cancel()
        if self.engine is not None:
            await self.engine.scheduler.stop()
        await super().close()

    async def on_ready(self) -> None:
        log.info("Logged in as %s (%s)", self.user, self.user.id)  # type: ignore[union-attr]


async def admin_required(interaction: discord.Interaction, bot: GiveawayBot) -> Optional[str]:
    command_name = getattr(getattr(interaction, "command", None), "name", "unknown")
    user = interaction.user
    guild = interaction.guild
    if guild is None:
        PERMISSION_LOG.debug(
            "Denied command %s for user %s: non-guild context.", command_name, user.id
        )
        return "This command can only be used inside a guild."

    member = user if isinstance(user, discord.Member) else guild.get_member(user.id)
    if member is None:
        PERMISSION_LOG.warning(
            "Denied command %s for user %s: unable to resolve guild member.",
            command_name,
            user.id,
        )
        return "You do not have permission to manage giveaways."

    if not is_admin(
        member,
        bot.config.permissions.admin_roles,
        guild_owner_id=guild.owner_id,
        base_permissions=getattr(interaction, "permissions", None),
    ):
        PERMISSION_LOG.warning(
            "Denied command %s for user %s: missing giveaway admin rights (roles=%s).",
            command_name,
            member.id,
            [role.id for role in member.roles],
        )
        return "You do not have permission to manage giveaways."

    PERMISSION_LOG.debug("Authorized command %s for user %s.", command_name, member.id)
    return None


def build_bot(config_path: Path) -> GiveawayBot:
    _load_env_file()
    config = load_config(config_path)
    configure_logging(config.logging.level)
    return GiveawayBot(config)


def register_commands(bot: GiveawayBot) -> None:
    @bot.tree.command(name="giveaway-create", description="Start a new giveaway.")
    @app_commands.describe(
        prize="What the winner receives.",
        channel="Channel to run the giveaway in.",
        duration_minutes="How long entries stay open.",
        description="Optional description shown with the giveaway.",
        required_role="Role an entrant must hold.",
        min_level="Minimum level an entrant must have.",
        min_account_age_days="Minimum Discord account age in days.",
        claim_timeout_minutes="How long a winner has to claim before a reroll.",
        max_rerolls="How many times the prize may be rerolled.",
    )
    async def giveaway_create(
        interaction: discord.Interaction,
        prize: str,
        channel: discord.TextChannel,
        duration_minutes: app_commands.Range[int, 1, 60 * 24 * 30],
        description: str = "",
        required_role: Optional[discord.Role] = None,
        min_level: app_commands.Range[int, 0] = 0,
        min_account_age_days: app_commands.Range[int, 0] = 0,
        claim_timeout_minutes: Optional[app_commands.Range[int, 1]] = None,
        max_rerolls: Optional[app_commands.Range[int, 0]] = None,
    ) -> None:
        error = await admin_required(interaction, bot)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True)
        config = GiveawayConfig(
            prize=prize,
            channel_id=channel.id,
            ends_at=datetime.now(tz=UTC) + timedelta(minutes=duration_minutes),
            description=description,
            created_by=interaction.user.id,
            requirements=Requirements(
                required_role_ids=[required_role.id] if required_role else [],
                min_level=min_level,
                min_account_age_days=min_account_age_days,
            ),
            claim_timeout_seconds=(
                claim_timeout_minutes * 60 if claim_timeout_minutes is not None else None
            ),
            max_reroll_count=max_rerolls,
        )
        try:
            giveaway = await bot.engine.create_giveaway(interaction.guild.id, config)
        except ValidationError as exc:
            await interaction.followup.send(str(exc), ephemeral=True)
            return

        lines = [f"🎉 **{giveaway.prize}**"]
        if giveaway.description:
            lines.append(giveaway.description)
        lines.append(f"Ends <t:{int(giveaway.ends_at.timestamp())}:R>.")
        try:
            await channel.send("\n".join(lines), view=EntryView(bot.engine, giveaway.giveaway_id))
        except discord.HTTPException as exc:
            log.warning("Failed to post giveaway %s to %s: %s", giveaway.giveaway_id, channel.id, exc)
        await interaction.followup.send(
            f"Giveaway `{giveaway.giveaway_id}` started in {channel.mention}.", ephemeral=True
        )

    @bot.tree.command(name="giveaway-cancel", description="Cancel a running giveaway.")
    @app_commands.describe(giveaway_id="Identifier of the giveaway to cancel.")
    async def giveaway_cancel(interaction: discord.Interaction, giveaway_id: str) -> None:
        if not interaction.guild:
            await interaction.response.send_message(
                "This command can only be used in a guild.", ephemeral=True
            )
            return
        await interaction.response.defer(ephemeral=True)
        decision = await bot.engine.cancel(
            interaction.guild.id, giveaway_id.strip(), interaction.user.id
        )
        await interaction.followup.send(
            describe_decision(decision, f"Giveaway `{giveaway_id}` cancelled."),
            ephemeral=True,
        )

    @bot.tree.command(
        name="giveaway-reroll", description="Reroll the winner of a giveaway."
    )
    @app_commands.describe(giveaway_id="Identifier of the giveaway to reroll.")
    async def giveaway_reroll(interaction: discord.Interaction, giveaway_id: str) -> None:
        if not interaction.guild:
            await interaction.response.send_message(
                "This command can only be used in a guild.", ephemeral=True
            )
            return
        await interaction.response.defer(ephemeral=True)
        decision = await bot.engine.manual_reroll(
            interaction.guild.id, giveaway_id.strip(), interaction.user.id
        )
        await interaction.followup.send(
            describe_decision(decision, f"Reroll of `{giveaway_id}` requested."),
            ephemeral=True,
        )

    @bot.tree.command(name="giveaway-state", description="Show the state of a giveaway.")
    @app_commands.describe(giveaway_id="Identifier of the giveaway.")
    async def giveaway_state(interaction: discord.Interaction, giveaway_id: str) -> None:
        error = await admin_required(interaction, bot)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        giveaway = await bot.engine.get_state(interaction.guild.id, giveaway_id.strip())
        if giveaway is None:
            await interaction.followup.send("Giveaway not found.", ephemeral=True)
            return
        entries = await bot.engine.list_entries(interaction.guild.id, giveaway.giveaway_id)
        winner = (
            f"<@{giveaway.announced_winner_id}>"
            if giveaway.announced_winner_id is not None
            else "none"
        )
        message = (
            f"**{giveaway.prize}** (`{giveaway.giveaway_id}`)\n"
            f"- Status: {giveaway.status.value}\n"
            f"- Entries: {len(entries)}\n"
            f"- Winner: {winner}\n"
            f"- Rerolls: {giveaway.reroll_count}/{giveaway.max_reroll_count}\n"
            f"- Ends: <t:{int(giveaway.ends_at.timestamp())}:f>"
        )
        await interaction.followup.send(message, ephemeral=True)

    @bot.tree.command(
        name="giveaway-deadletters",
        description="List giveaway jobs that need manual re-drive.",
    )
    async def giveaway_deadletters(interaction: discord.Interaction) -> None:
        error = await admin_required(interaction, bot)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        jobs = await bot.engine.scheduler.list_dead_letters(interaction.guild.id)
        if not jobs:
            await interaction.followup.send("No dead-lettered jobs.", ephemeral=True)
            return
        lines = [
            f"- `{job.job_key}` after {job.attempt_count} attempt(s): {job.last_error}"
            for job in jobs
        ]
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @bot.tree.command(
        name="giveaway-redrive", description="Re-queue a dead-lettered giveaway job."
    )
    @app_commands.describe(job_key="Key of the dead-lettered job.")
    async def giveaway_redrive(interaction: discord.Interaction, job_key: str) -> None:
        error = await admin_required(interaction, bot)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        job_key = job_key.strip()
        if not job_key.startswith(f"{interaction.guild.id}:"):
            await interaction.followup.send("No such job in this server.", ephemeral=True)
            return
        if await bot.engine.scheduler.redrive(job_key):
            await interaction.followup.send(f"Job `{job_key}` re-queued.", ephemeral=True)
        else:
            await interaction.followup.send(
                "That job is not dead-lettered.", ephemeral=True
            )


async def main() -> None:
    parser = argparse.ArgumentParser(description="Giveaway engine Discord bot")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config") / "config.yaml",
        help="Path to the bot configuration file.",
    )
    args = parser.parse_args()

    try:
        bot = build_bot(args.config)
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    register_commands(bot)

    async with bot:
        await bot.start(bot.config.token)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
