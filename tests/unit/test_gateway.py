"""Unit tests for the Discord gateway wiring.

The Discord connection itself is never opened; guild and channel objects
are mocked.
"""

from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest

from groover.bridge import VoiceEventBridge
from groover.context import OperatorContext
from groover.gateway import GatewayClient, RelayVoiceProtocol


def make_channel(channel_id: int, members: list[int]) -> MagicMock:
    channel = MagicMock()
    channel.id = channel_id
    channel.voice_states = {member: MagicMock() for member in members}
    return channel


@pytest.fixture
async def gateway(context: OperatorContext) -> GatewayClient:
    return GatewayClient(context, VoiceEventBridge(context))


async def test_intents_limited_to_voice_states(gateway: GatewayClient) -> None:
    assert gateway.intents.voice_states is True
    assert gateway.intents.guilds is True
    assert gateway.intents.members is False
    assert gateway.intents.message_content is False


class TestFindVoiceChannel:
    """Test voice channel membership lookups."""

    async def test_finds_users_channel(self, gateway: GatewayClient) -> None:
        lobby = make_channel(1, [5])
        party = make_channel(2, [9, 11])
        guild = MagicMock(voice_channels=[lobby, party], stage_channels=[])

        with patch.object(gateway, "get_guild", return_value=guild) as get_guild:
            assert gateway.find_voice_channel("42", "9") is party
        get_guild.assert_called_once_with(42)

    async def test_finds_stage_channel(self, gateway: GatewayClient) -> None:
        stage = make_channel(3, [9])
        guild = MagicMock(voice_channels=[make_channel(1, [])], stage_channels=[stage])

        with patch.object(gateway, "get_guild", return_value=guild):
            assert gateway.find_voice_channel("42", "9") is stage

    async def test_user_not_in_voice(self, gateway: GatewayClient) -> None:
        guild = MagicMock(voice_channels=[make_channel(1, [5])], stage_channels=[])

        with patch.object(gateway, "get_guild", return_value=guild):
            assert gateway.find_voice_channel("42", "9") is None

    async def test_unknown_guild(self, gateway: GatewayClient) -> None:
        with patch.object(gateway, "get_guild", return_value=None):
            assert gateway.find_voice_channel("42", "9") is None

    async def test_malformed_ids(self, gateway: GatewayClient) -> None:
        assert gateway.find_voice_channel("not-a-guild", "9") is None


class TestJoinVoice:
    """Test the manual voice join."""

    async def test_connects_with_relay_protocol(self, gateway: GatewayClient) -> None:
        channel = make_channel(2, [9])
        channel.guild.voice_client = None
        channel.connect = AsyncMock()

        await gateway.join_voice("42", channel)

        channel.connect.assert_awaited_once_with(
            cls=RelayVoiceProtocol, self_mute=False, self_deaf=True
        )

    async def test_moves_when_already_connected(self, gateway: GatewayClient) -> None:
        channel = make_channel(2, [9])
        channel.guild.voice_client = MagicMock()
        channel.guild.change_voice_state = AsyncMock()
        channel.connect = AsyncMock()

        await gateway.join_voice("42", channel)

        channel.guild.change_voice_state.assert_awaited_once_with(
            channel=channel, self_mute=False, self_deaf=True
        )
        channel.connect.assert_not_awaited()


class TestReady:
    """Test session capture on gateway ready."""

    async def test_on_ready_captures_session(
        self, gateway: GatewayClient, context: OperatorContext
    ) -> None:
        gateway.ws = MagicMock(session_id="session-abc")
        with patch.object(
            GatewayClient, "user", new_callable=PropertyMock, return_value=MagicMock(id=1234)
        ):
            await gateway.on_ready()

        assert context.session_id == "session-abc"
        assert context.bot_user_id == 1234


class TestRelayVoiceProtocol:
    """Test the voice protocol that relays instead of connecting."""

    @pytest.fixture
    def channel(self) -> MagicMock:
        channel = MagicMock()
        channel.guild.id = 42
        channel.guild.change_voice_state = AsyncMock()
        channel._get_voice_client_key.return_value = (42, "guild_id")
        return channel

    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.bridge.on_voice_server_update = AsyncMock(return_value=True)
        return client

    async def test_connect_sends_voice_state(self, client: MagicMock, channel: MagicMock) -> None:
        protocol = RelayVoiceProtocol(client, channel)

        await protocol.connect(timeout=60.0, reconnect=True, self_deaf=True, self_mute=False)

        channel.guild.change_voice_state.assert_awaited_once_with(
            channel=channel, self_mute=False, self_deaf=True
        )

    async def test_voice_server_update_forwarded(
        self, client: MagicMock, channel: MagicMock
    ) -> None:
        protocol = RelayVoiceProtocol(client, channel)

        await protocol.on_voice_server_update(
            {"guild_id": "42", "endpoint": "x.discord.media", "token": "vtoken"}
        )

        client.bridge.on_voice_server_update.assert_awaited_once_with(
            "42", "x.discord.media", "vtoken"
        )

    async def test_disconnect_leaves_channel(self, client: MagicMock, channel: MagicMock) -> None:
        protocol = RelayVoiceProtocol(client, channel)

        await protocol.disconnect(force=True)

        channel.guild.change_voice_state.assert_awaited_once_with(channel=None)
