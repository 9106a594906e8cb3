"""Voice gateway → worker connection info relay.

The gateway assigns a voice media server some time after the bot asks to
join a guild's voice channel, and may reassign it later (server migration).
Each assignment is republished to the worker on the guild's topic. Delivery
is last-write-wins with no acknowledgement; the worker reconnects with the
most recent info it receives.
"""

import logging

from groover.context import OperatorContext
from groover.messages import ConnectionInfo, join_envelope

logger = logging.getLogger(__name__)


class VoiceEventBridge:
    """Republishes voice server assignments as Join envelopes."""

    def __init__(self, context: OperatorContext) -> None:
        self.context = context

    def on_ready(self, session_id: str, bot_user_id: int | None = None) -> None:
        """Capture the gateway session id needed by later Join payloads.

        Args:
            session_id: Gateway session id from the Ready event
            bot_user_id: The bot's own user id, if known
        """
        self.context.session_id = session_id
        if bot_user_id is not None:
            self.context.bot_user_id = bot_user_id
        logger.info("Gateway ready", extra={"session_id": session_id})

    async def on_voice_server_update(
        self, guild_id: str | int, endpoint: str | None, token: str
    ) -> bool:
        """Publish fresh connection info to the guild's worker topic.

        Errors are logged and never raised back into the gateway.

        Args:
            guild_id: Guild the media server was assigned for
            endpoint: Voice media server endpoint
            token: Voice server token

        Returns:
            True if a Join envelope was published
        """
        if self.context.session_id is None or self.context.bot_user_id is None:
            logger.warning(
                f"Voice server update for guild {guild_id} before gateway ready, dropped"
            )
            return False

        try:
            info = ConnectionInfo(
                user_id=int(self.context.bot_user_id),
                endpoint=endpoint,
                guild_id=int(guild_id),
                token=token,
                session_id=self.context.session_id,
            )
        except ValueError as e:
            logger.error(f"Invalid voice server update for guild {guild_id}: {e}")
            return False

        try:
            await self.context.publish(str(guild_id), join_envelope(info).encode())
        except Exception as e:
            logger.error(f"Failed to publish Join for guild {guild_id}: {e}")
            return False

        logger.info(f"Relayed voice server for guild {guild_id}", extra={"endpoint": endpoint})
        return True
