"""Notification delivery - Discord client and message rendering."""

from crowdfund_relay.notify.discord import DiscordNotifier

__all__ = ["DiscordNotifier"]
