"""Message bus command routing.

Subscribes to the operator's command topics and runs each inbound message
on its own task, so a slow handler (Redis, HTTP, Kubernetes) never stalls a
subscription or another guild's command.

Topics:
- ``login``: raw user id → login URL (empty reply on relay failure)
- ``start``: JSON {guild_id, user_id} → status text
- ``stop``: raw guild id → publishes Stop to the worker, clears registration
- ``ready``: raw guild id → joins the registered user's voice channel

User-input rejections are replied; infrastructure faults are logged and the
command fails without a reply.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydantic import ValidationError

from groover.context import OperatorContext
from groover.errors import CredentialRelayError, OperatorError
from groover.lifecycle import EnsureOutcome, WorkerLifecycle
from groover.messages import (
    ALREADY_RUNNING_REPLY,
    NOT_IN_VOICE_REPLY,
    NOT_LOGGED_IN_REPLY,
    STARTING_REPLY,
    STOP_REPLY,
    StartRequest,
    stop_envelope,
)
from groover.relay import CredentialRelay
from groover.state import StateGuard

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class VoiceDirectory(Protocol):
    """Gateway operations the router depends on."""

    def find_voice_channel(self, guild_id: str, user_id: str) -> Any | None: ...

    async def join_voice(self, guild_id: str, channel: Any) -> None: ...


class CommandRouter:
    """Dispatches bus commands to their handlers."""

    def __init__(
        self,
        context: OperatorContext,
        state: StateGuard,
        relay: CredentialRelay,
        lifecycle: WorkerLifecycle,
        gateway: VoiceDirectory,
    ) -> None:
        self.context = context
        self.state = state
        self.relay = relay
        self.lifecycle = lifecycle
        self.gateway = gateway

        self._subscriptions: list[Any] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def handlers(self) -> dict[str, Handler]:
        return {
            "ready": self.handle_ready,
            "stop": self.handle_stop,
            "login": self.handle_login,
            "start": self.handle_start,
        }

    async def subscribe(self) -> None:
        """Subscribe every command topic on the bus."""
        if self.context.bus is None:
            raise RuntimeError("Message bus not connected")

        for topic, handler in self.handlers.items():
            sub = await self.context.bus.subscribe(topic, cb=self._dispatcher(topic, handler))
            self._subscriptions.append(sub)
        logger.info(f"Subscribed to command topics: {', '.join(self.handlers)}")

    async def close(self) -> None:
        """Unsubscribe and wait for in-flight handlers."""
        for sub in self._subscriptions:
            try:
                await sub.unsubscribe()
            except Exception as e:
                logger.warning(f"Error unsubscribing: {e}")
        self._subscriptions.clear()

        if self._tasks:
            logger.info("Waiting for in-flight commands", extra={"count": len(self._tasks)})
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _dispatcher(self, topic: str, handler: Handler) -> Callable[[Any], Awaitable[None]]:
        async def dispatch(msg: Any) -> None:
            task = asyncio.create_task(self._run(topic, handler, msg))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return dispatch

    async def _run(self, topic: str, handler: Handler, msg: Any) -> None:
        try:
            await handler(msg)
        except OperatorError as e:
            logger.error(f"Command '{topic}' failed: {e}", extra={"topic": topic})
        except Exception as e:
            logger.exception(f"Command '{topic}' crashed", extra={"topic": topic, "error": str(e)})

    @staticmethod
    async def _reply(msg: Any, text: str | bytes) -> None:
        if not msg.reply:
            logger.debug(f"No reply subject on '{msg.subject}', dropping reply")
            return
        data = text.encode("utf-8") if isinstance(text, str) else text
        await msg.respond(data)

    @staticmethod
    def _raw_id(msg: Any) -> str:
        return bytes(msg.data).decode("utf-8").strip()

    async def handle_login(self, msg: Any) -> None:
        user_id = self._raw_id(msg)
        if not user_id:
            logger.error("Login request without a user id")
            return
        try:
            url = await self.relay.fetch_login_url(user_id)
        except CredentialRelayError as e:
            logger.error(f"Login URL for user {user_id} unavailable: {e}")
            await self._reply(msg, b"")
            return
        await self._reply(msg, url)

    async def handle_start(self, msg: Any) -> None:
        """Start a worker for a guild.

        Order matters: the authorization and voice checks run before any
        reservation, relay call or pod submission.
        """
        try:
            request = StartRequest.model_validate_json(msg.data)
        except ValidationError as e:
            logger.error(f"Malformed start request: {e}")
            return

        guild_id, user_id = request.guild_id, request.user_id

        if not await self.state.is_authorized(user_id):
            logger.debug(f"User {user_id} is not logged in")
            await self._reply(msg, NOT_LOGGED_IN_REPLY)
            return

        if self.gateway.find_voice_channel(guild_id, user_id) is None:
            logger.debug(f"User {user_id} is not in a voice channel in guild {guild_id}")
            await self._reply(msg, NOT_IN_VOICE_REPLY)
            return

        outcome = await self.lifecycle.ensure_worker(guild_id, user_id)
        if outcome is EnsureOutcome.STARTED:
            await self._reply(msg, STARTING_REPLY)
        elif outcome is EnsureOutcome.ALREADY_RUNNING:
            await self._reply(msg, ALREADY_RUNNING_REPLY)
        else:
            logger.error(
                f"Start for guild {guild_id} failed: {outcome.value}",
                extra={"guild_id": guild_id, "user_id": user_id},
            )

    async def handle_stop(self, msg: Any) -> None:
        guild_id = self._raw_id(msg)
        if not guild_id:
            logger.error("Stop request without a guild id")
            return
        try:
            await self.context.publish(guild_id, stop_envelope().encode())
        finally:
            await self.state.unregister(guild_id)
        logger.info(f"Stop requested for guild {guild_id}")
        await self._reply(msg, STOP_REPLY)

    async def handle_ready(self, msg: Any) -> None:
        guild_id = self._raw_id(msg)
        if not guild_id:
            logger.error("Ready notification without a guild id")
            return
        user_id = await self.state.get_registered_user(guild_id)
        if user_id is None:
            logger.warning(f"Worker ready for unregistered guild {guild_id}")
            return

        channel = self.gateway.find_voice_channel(guild_id, user_id)
        if channel is None:
            logger.warning(f"User {user_id} left voice before guild {guild_id} worker was ready")
            return

        await self.gateway.join_voice(guild_id, channel)
