"""Idempotent "ensure worker for guild" operation.

Ties reservation, token fetch, pod submission and registration together so
that a registration always implies a worker exists or is being created
within the reservation TTL:

    UNRESERVED --reserve--> RESERVED --submit+confirm--> REGISTERED
                               |
                               +--rollback / expiry--> UNRESERVED
"""

import logging
from enum import Enum

from groover.errors import CredentialRelayError, WorkerAlreadyExistsError, WorkerSubmissionError
from groover.relay import CredentialRelay
from groover.state import VALID_TRANSITIONS, RegistrationState, StateGuard
from groover.supervisor import WorkerSupervisor

logger = logging.getLogger(__name__)


class EnsureOutcome(Enum):
    """Result of ensure_worker."""

    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    TOKEN_FAILED = "token_failed"
    SUBMIT_FAILED = "submit_failed"
    CONFIRM_FAILED = "confirm_failed"


class WorkerLifecycle:
    """Start workers under a provisional guild reservation."""

    def __init__(
        self,
        state: StateGuard,
        relay: CredentialRelay,
        supervisor: WorkerSupervisor,
        reservation_ttl_s: int = 60,
    ) -> None:
        self.state = state
        self.relay = relay
        self.supervisor = supervisor
        self.reservation_ttl_s = reservation_ttl_s

    def _transition(
        self, guild_id: str, current: RegistrationState, target: RegistrationState
    ) -> RegistrationState:
        if target not in VALID_TRANSITIONS[current]:
            raise RuntimeError(
                f"Invalid registration transition for guild {guild_id}: "
                f"{current.value} -> {target.value}"
            )
        logger.debug(f"Guild {guild_id}: {current.value} -> {target.value}")
        return target

    async def _rollback(self, guild_id: str, current: RegistrationState) -> None:
        await self.state.unregister(guild_id)
        self._transition(guild_id, current, RegistrationState.UNRESERVED)

    async def ensure_worker(self, guild_id: str, user_id: str) -> EnsureOutcome:
        """Reserve the guild, create its worker, then register it.

        Args:
            guild_id: Guild to start a worker for
            user_id: User the worker streams for

        Returns:
            Outcome of the attempt; only STARTED leaves a registration behind

        Raises:
            StateStoreError: If Redis is unavailable at any step
        """
        state = RegistrationState.UNRESERVED

        if not await self.state.reserve(guild_id, user_id, self.reservation_ttl_s):
            held = await self.state.get_state(guild_id)
            logger.info(f"Guild {guild_id} already has a worker ({held.value})")
            return EnsureOutcome.ALREADY_RUNNING
        state = self._transition(guild_id, state, RegistrationState.RESERVED)

        try:
            token = await self.relay.fetch_session_token(user_id)
        except CredentialRelayError as e:
            logger.error(f"Token fetch for user {user_id} failed: {e}")
            await self._rollback(guild_id, state)
            return EnsureOutcome.TOKEN_FAILED
        except Exception:
            await self._rollback(guild_id, state)
            raise

        try:
            await self.supervisor.start(guild_id, user_id, token)
        except WorkerAlreadyExistsError:
            # a pod outlived its registration; it exits on Stop or is reaped on failure
            logger.warning(f"Worker for guild {guild_id} exists without a registration")
            await self._rollback(guild_id, state)
            return EnsureOutcome.ALREADY_RUNNING
        except WorkerSubmissionError as e:
            logger.error(f"Worker submission for guild {guild_id} failed: {e}")
            await self._rollback(guild_id, state)
            return EnsureOutcome.SUBMIT_FAILED
        except Exception:
            await self._rollback(guild_id, state)
            raise

        if not await self.state.confirm(guild_id, user_id):
            logger.error(f"Guild {guild_id} was claimed by another start; removing worker")
            try:
                await self.supervisor.stop(guild_id)
            except Exception as e:
                # left to the reconciler once the pod fails, or to the next stop
                logger.error(f"Removing worker for guild {guild_id} failed: {e}")
            return EnsureOutcome.CONFIRM_FAILED
        self._transition(guild_id, state, RegistrationState.REGISTERED)

        logger.info(f"Worker for guild {guild_id} registered to user {user_id}")
        return EnsureOutcome.STARTED
