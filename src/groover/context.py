"""Operator context shared by every component.

Built once at startup and passed explicitly; there is no module-level state.
"""

from dataclasses import dataclass
from typing import Any

from groover.config import OperatorConfig


@dataclass
class OperatorContext:
    """Live clients and gateway session identity.

    Attributes:
        config: Loaded operator configuration
        bus: Connected NATS client (publish/subscribe/request)
        session_id: Gateway session id captured on Ready; None until then
        bot_user_id: The bot's own user id, known once the gateway is ready
    """

    config: OperatorConfig
    bus: Any = None
    session_id: str | None = None
    bot_user_id: int | None = None

    async def publish(self, subject: str, payload: bytes) -> None:
        """Publish raw bytes on the message bus.

        Raises:
            RuntimeError: If the bus is not connected
        """
        if self.bus is None:
            raise RuntimeError("Message bus not connected")
        await self.bus.publish(subject, payload)
