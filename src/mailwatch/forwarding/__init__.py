"""Delivery of new messages to notification sinks."""

from .discord import DeliveryError, DiscordWebhookChannel, build_embed, gravatar_url

__all__ = ["DeliveryError", "DiscordWebhookChannel", "build_embed", "gravatar_url"]
