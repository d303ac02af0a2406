"""Elara provider gateway."""

from elara.gateway.service import GatewayService, GatewayStats
from elara.providers.models import ChatMessage, SendRequest

__all__ = [
    "ChatMessage",
    "GatewayService",
    "GatewayStats",
    "SendRequest",
]
