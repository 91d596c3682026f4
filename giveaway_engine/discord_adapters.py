"""discord.py implementations of the engine's collaborator contracts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import discord

from .errors import TransientInfraError
from .models import CandidateProfile, MessageKind

log = logging.getLogger(__name__)

LevelLookup = Callable[[int, int], Awaitable[int]]

CLAIMABLE_KINDS = frozenset({MessageKind.WINNER_ANNOUNCED, MessageKind.REROLLED})


def render_announcement(kind: MessageKind, payload: Dict[str, Any]) -> str:
    prize = payload.get("prize", "the prize")
    winner_id = payload.get("winner_id")
    winner = f"<@{winner_id}>" if winner_id is not None else "nobody"
    claim_hint = ""
    expires_at = payload.get("claim_expires_at")
    if expires_at:
        deadline = int(datetime.fromisoformat(expires_at).timestamp())
        claim_hint = f" Claim it <t:{deadline}:R> or it will be rerolled."

    if kind is MessageKind.WINNER_ANNOUNCED:
        return f"🎉 {winner} won **{prize}**!{claim_hint}"
    if kind is MessageKind.REROLLED:
        previous = payload.get("previous_winner_id")
        lead = f"<@{previous}> did not claim in time. " if previous is not None else ""
        return (
            f"🔁 {lead}New winner for **{prize}**: {winner} "
            f"(reroll {payload.get('reroll_count')}/{payload.get('max_reroll_count')}).{claim_hint}"
        )
    if kind is MessageKind.NO_WINNER:
        return f"Giveaway **{prize}** ended without any eligible entries."
    if kind is MessageKind.EXHAUSTED:
        return f"Giveaway **{prize}** closed: no eligible winner claimed the prize."
    if kind is MessageKind.CLAIM_CONFIRMED:
        return f"✅ {winner} claimed **{prize}**. Congratulations!"
    if kind is MessageKind.CANCELLED:
        return f"Giveaway **{prize}** was cancelled."
    return f"[Giveaway] {kind.value}: {prize}"


def is_admin(
    member: discord.Member,
    admin_roles: Iterable[int],
    *,
    guild_owner_id: Optional[int] = None,
    base_permissions: Optional[discord.Permissions] = None,
) -> bool:
    """Guild owner, Administrator/Manage Server, or one of the configured admin roles."""
    owner_id = guild_owner_id
    if owner_id is None:
        owner_id = getattr(getattr(member, "guild", None), "owner_id", None)
    if owner_id is not None and owner_id == member.id:
        log.debug("Member %s is guild owner; treating as giveaway admin.", member.id)
        return True

    permissions = base_permissions
    if permissions is None:
        permissions = getattr(member, "guild_permissions", None)
    if permissions is not None and (permissions.administrator or permissions.manage_guild):
        log.debug(
            "Member %s has administrative permissions; treating as giveaway admin.",
            member.id,
        )
        return True

    allowed = {int(role_id) for role_id in admin_roles}
    if not allowed:
        log.debug("No giveaway admin roles configured; denying member %s.", member.id)
        return False
    member_roles = {role.id for role in getattr(member, "roles", [])}
    return bool(allowed & member_roles)


async def resolve_member(
    bot: discord.Client, guild_id: int, user_id: int
) -> Optional[discord.Member]:
    """Return the guild member, or ``None`` when the user is not in the guild.

    Discord outages surface as ``TransientInfraError``.
    """
    guild = bot.get_guild(guild_id)
    try:
        if guild is None:
            guild = await bot.fetch_guild(guild_id)
        member = guild.get_member(user_id)
        if member is None:
            member = await guild.fetch_member(user_id)
    except (discord.NotFound, discord.Forbidden):
        return None
    except discord.HTTPException as exc:
        raise TransientInfraError(
            f"Could not look up member {user_id} in guild {guild_id}: {exc}"
        ) from exc
    return member


async def fetch_text_channel(
    bot: discord.Client, channel_id: int
) -> Optional[discord.TextChannel]:
    channel = bot.get_channel(channel_id)
    if isinstance(channel, discord.TextChannel):
        return channel
    try:
        fetched = await bot.fetch_channel(channel_id)
    except (discord.NotFound, discord.Forbidden):
        return None
    except discord.HTTPException as exc:
        raise TransientInfraError(f"Could not fetch channel {channel_id}: {exc}") from exc
    return fetched if isinstance(fetched, discord.TextChannel) else None


class DiscordMemberDirectory:
    """Builds candidate profiles from guild membership.

    Discord has no notion of levels; ``level_lookup`` plugs in whatever leveling
    system the guild uses. Without one every member is level 0.
    """

    def __init__(self, bot: discord.Client, level_lookup: Optional[LevelLookup] = None) -> None:
        self.bot = bot
        self.level_lookup = level_lookup

    async def fetch_candidate(
        self, tenant_id: int, user_id: int
    ) -> Optional[CandidateProfile]:
        member = await resolve_member(self.bot, tenant_id, user_id)
        if member is None:
            return None
        level = 0
        if self.level_lookup is not None:
            level = await self.level_lookup(tenant_id, user_id)
        return CandidateProfile(
            user_id=member.id,
            role_ids=frozenset(role.id for role in member.roles),
            level=level,
            account_created_at=member.created_at,
        )


class ChannelNotificationSink:
    """Posts plain-text announcements to the giveaway's channel.

    Winner announcements carry a Claim button. ``view_factory`` builds it and is
    wired by the bot once the engine exists.
    """

    def __init__(
        self,
        bot: discord.Client,
        view_factory: Optional[Callable[[str], discord.ui.View]] = None,
    ) -> None:
        self.bot = bot
        self.view_factory = view_factory

    async def announce(
        self,
        tenant_id: int,
        channel_ref: int,
        message_kind: MessageKind,
        payload: Dict[str, Any],
    ) -> None:
        channel = await fetch_text_channel(self.bot, channel_ref)
        if channel is None:
            raise TransientInfraError(
                f"Channel {channel_ref} in guild {tenant_id} is not reachable."
            )
        content = render_announcement(message_kind, payload)
        view = None
        if message_kind in CLAIMABLE_KINDS and self.view_factory is not None:
            view = self.view_factory(str(payload["giveaway_id"]))
        try:
            if view is None:
                await channel.send(content)
            else:
                await channel.send(content, view=view)
        except discord.HTTPException as exc:
            raise TransientInfraError(
                f"Failed to post {message_kind.value} to channel {channel_ref}: {exc}"
            ) from exc


class LoggerChannelAlerts:
    """Sends operator alerts to the configured logger channel."""

    def __init__(self, bot: discord.Client, channel_id: Optional[int]) -> None:
        self.bot = bot
        self.channel_id = channel_id

    async def alert(self, message: str, *, tenant_id: Optional[int] = None) -> None:
        if not self.channel_id:
            return
        try:
            channel = await fetch_text_channel(self.bot, self.channel_id)
        except TransientInfraError as exc:
            log.warning("Failed to reach logger channel %s: %s", self.channel_id, exc)
            return
        if channel is None:
            log.warning("Logger channel %s is not a reachable text channel.", self.channel_id)
            return
        prefix = f"[Giveaway] (guild {tenant_id}) " if tenant_id is not None else "[Giveaway] "
        try:
            await channel.send(f"{prefix}{message}")
        except discord.HTTPException as exc:
            log.warning("Failed to send log message to %s: %s", self.channel_id, exc)


class RoleAuthorizer:
    """Allows cancel and reroll for guild owners, server managers, and admin roles."""

    def __init__(self, bot: discord.Client, admin_roles: Iterable[int]) -> None:
        self.bot = bot
        self.admin_roles = [int(role_id) for role_id in admin_roles]

    async def is_permitted(
        self, tenant_id: int, giveaway_id: str, actor_id: int, action: str
    ) -> bool:
        member = await resolve_member(self.bot, tenant_id, actor_id)
        if member is None:
            log.warning(
                "Denied %s on giveaway %s for user %s: not a member of guild %s.",
                action,
                giveaway_id,
                actor_id,
                tenant_id,
            )
            return False
        allowed = is_admin(member, self.admin_roles)
        if not allowed:
            log.warning(
                "Denied %s on giveaway %s for user %s: missing giveaway admin rights.",
                action,
                giveaway_id,
                actor_id,
            )
        return allowed
