from __future__ import annotations

import logging

import discord

from .errors import TransientInfraError
from .models import Decision, RejectionReason

log = logging.getLogger(__name__)

REJECTION_MESSAGES = {
    RejectionReason.NOT_FOUND: "This giveaway no longer exists.",
    RejectionReason.GIVEAWAY_CLOSED: "This giveaway is closed for entries.",
    RejectionReason.DUPLICATE_ENTRY: "You have already entered this giveaway.",
    RejectionReason.BLACKLISTED: "You are not allowed to enter this giveaway.",
    RejectionReason.NOT_IN_GUILD: "You must be a member of this server to take part.",
    RejectionReason.MISSING_ROLES: "You do not have the roles required for this giveaway.",
    RejectionReason.LEVEL_TOO_LOW: "Your level is too low for this giveaway.",
    RejectionReason.ACCOUNT_TOO_NEW: "Your account is too new for this giveaway.",
    RejectionReason.NOT_WINNER: "Only the announced winner can claim this prize.",
    RejectionReason.ALREADY_RESOLVED: "This prize has already been resolved.",
    RejectionReason.NOT_AUTHORIZED: "You do not have permission to manage giveaways.",
    RejectionReason.INVALID_STATE: "The giveaway is not in a state that allows this.",
}


def describe_decision(decision: Decision, success: str) -> str:
    if decision.accepted:
        return success
    return REJECTION_MESSAGES.get(decision.reason, "Request rejected.")


class EntryView(discord.ui.View):
    def __init__(self, engine, giveaway_id: str) -> None:
        super().__init__(timeout=None)
        self.engine = engine
        self.giveaway_id = giveaway_id

        enter_button = discord.ui.Button(
            label="Enter 🎉",
            style=discord.ButtonStyle.success,
            custom_id=f"giveaway:enter:{giveaway_id}",
        )
        enter_button.callback = self.enter_callback  # type: ignore[assignment]
        self.add_item(enter_button)

    async def enter_callback(self, interaction: discord.Interaction) -> None:
        if not interaction.guild:
            await interaction.response.send_message(
                "You can only enter giveaways from a guild.", ephemeral=True
            )
            return
        try:
            decision = await self.engine.enter(
                interaction.guild.id, self.giveaway_id, interaction.user.id
            )
        except TransientInfraError as exc:
            log.warning("Entry into giveaway %s failed: %s", self.giveaway_id, exc)
            await interaction.response.send_message(
                "Something went wrong, please try again in a moment.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            describe_decision(decision, "You're in! Good luck 🍀"), ephemeral=True
        )


class ClaimView(discord.ui.View):
    def __init__(self, engine, giveaway_id: str) -> None:
        super().__init__(timeout=None)
        self.engine = engine
        self.giveaway_id = giveaway_id

        claim_button = discord.ui.Button(
            label="Claim prize",
            style=discord.ButtonStyle.primary,
            custom_id=f"giveaway:claim:{giveaway_id}",
        )
        claim_button.callback = self.claim_callback  # type: ignore[assignment]
        self.add_item(claim_button)

    async def claim_callback(self, interaction: discord.Interaction) -> None:
        if not interaction.guild:
            await interaction.response.send_message(
                "Prizes can only be claimed from a guild.", ephemeral=True
            )
            return
        try:
            decision = await self.engine.claim(
                interaction.guild.id, self.giveaway_id, interaction.user.id
            )
        except TransientInfraError as exc:
            log.warning("Claim on giveaway %s failed: %s", self.giveaway_id, exc)
            await interaction.response.send_message(
                "Something went wrong, please try again in a moment.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            describe_decision(decision, "Prize claimed, congratulations! 🏆"),
            ephemeral=True,
        )
