"""Discord gateway wiring for the operator.

The operator never streams audio itself. It only asks the gateway to place
the bot in a voice channel, then hands the resulting voice server credentials
to the guild's worker, which opens the media connection.
"""

import logging
from typing import Any

import discord

from groover.bridge import VoiceEventBridge
from groover.context import OperatorContext

logger = logging.getLogger(__name__)

VoiceChannel = discord.VoiceChannel | discord.StageChannel


class RelayVoiceProtocol(discord.VoiceProtocol):
    """Manual voice join: sends the voice state update and relays the
    resulting voice server assignment instead of connecting to it.
    """

    def __init__(self, client: "GatewayClient", channel: Any) -> None:
        super().__init__(client, channel)
        self.guild_id: int = channel.guild.id

    async def connect(
        self,
        *,
        timeout: float,
        reconnect: bool,
        self_deaf: bool = False,
        self_mute: bool = False,
    ) -> None:
        await self.channel.guild.change_voice_state(
            channel=self.channel, self_mute=self_mute, self_deaf=self_deaf
        )

    async def on_voice_state_update(self, data: Any) -> None:
        if data.get("channel_id") is None:
            logger.info(f"Left voice in guild {self.guild_id}")
            self.cleanup()

    async def on_voice_server_update(self, data: Any) -> None:
        await self.client.bridge.on_voice_server_update(  # type: ignore[attr-defined]
            data["guild_id"], data.get("endpoint"), data["token"]
        )

    async def disconnect(self, *, force: bool) -> None:
        await self.channel.guild.change_voice_state(channel=None)
        self.cleanup()


class GatewayClient(discord.Client):
    """Voice-states-only Discord client feeding the voice event bridge."""

    def __init__(self, context: OperatorContext, bridge: VoiceEventBridge) -> None:
        intents = discord.Intents.none()
        intents.guilds = True
        intents.voice_states = True
        super().__init__(
            intents=intents,
            member_cache_flags=discord.MemberCacheFlags.none(),
            chunk_guilds_at_startup=False,
        )
        self.context = context
        self.bridge = bridge

    async def on_ready(self) -> None:
        session_id = self.ws.session_id if self.ws is not None else None
        if session_id is None:
            logger.error("Gateway ready without a session id")
            return
        bot_user_id = self.user.id if self.user is not None else None
        self.bridge.on_ready(session_id, bot_user_id)

    def find_voice_channel(self, guild_id: str, user_id: str) -> VoiceChannel | None:
        """Find the voice channel a user currently sits in within a guild.

        Uses the low-level voice state mapping, which is kept even with the
        member cache disabled.
        """
        try:
            guild = self.get_guild(int(guild_id))
            uid = int(user_id)
        except ValueError:
            logger.warning(f"Malformed ids: guild={guild_id!r} user={user_id!r}")
            return None

        if guild is None:
            logger.debug(f"Guild {guild_id} not in gateway cache")
            return None

        for channel in [*guild.voice_channels, *guild.stage_channels]:
            if uid in channel.voice_states:
                return channel
        return None

    async def join_voice(self, guild_id: str, channel: VoiceChannel) -> None:
        """Join (or move to) a voice channel unmuted and self-deafened."""
        guild = channel.guild
        if guild.voice_client is not None:
            await guild.change_voice_state(channel=channel, self_mute=False, self_deaf=True)
        else:
            await channel.connect(cls=RelayVoiceProtocol, self_mute=False, self_deaf=True)
        logger.info(f"Joining voice channel {channel.id} in guild {guild_id}")
