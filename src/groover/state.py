"""Redis-backed worker registration guard.

Holds the two facts the operator reasons about:

- ``groover:<guild>`` -> user id: a worker is believed active for the guild
- ``oauth:<user>``: the user has linked their account (owned externally)

A registration is written in two phases. ``reserve`` places a provisional
key with a TTL while the worker pod is being created; ``confirm`` removes the
TTL once the scheduler accepted the pod. A reservation stranded by a crash
simply expires.
"""

import logging
from enum import Enum
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from groover.errors import StateStoreError

logger = logging.getLogger(__name__)


class RegistrationState(Enum):
    """Per-guild registration state machine.

    State Transitions:
    - UNRESERVED → RESERVED (start command reserves the guild)
    - RESERVED → REGISTERED (worker submission confirmed)
    - RESERVED → UNRESERVED (rollback on failure, or reservation expiry)
    - REGISTERED → UNRESERVED (stop command)
    """

    UNRESERVED = "unreserved"
    RESERVED = "reserved"
    REGISTERED = "registered"


VALID_TRANSITIONS: dict[RegistrationState, set[RegistrationState]] = {
    RegistrationState.UNRESERVED: {RegistrationState.RESERVED},
    RegistrationState.RESERVED: {RegistrationState.REGISTERED, RegistrationState.UNRESERVED},
    RegistrationState.REGISTERED: {RegistrationState.UNRESERVED},
}


class StateGuard:
    """Atomic guild registration and authorization lookups via Redis.

    Every Redis failure surfaces as StateStoreError; callers must fail the
    triggering command rather than assume any state.
    """

    def __init__(
        self,
        redis_url: str,
        password: str | None = None,
        db: int = 0,
        registration_key_prefix: str = "groover:",
        authorization_key_prefix: str = "oauth:",
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize guard with Redis connection settings.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            password: Optional Redis password
            db: Redis database number (0-15)
            registration_key_prefix: Key prefix for guild registrations
            authorization_key_prefix: Key prefix for user authorization facts
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.password = password
        self.db = db
        self.registration_key_prefix = registration_key_prefix
        self.authorization_key_prefix = authorization_key_prefix
        self.connection_pool_size = connection_pool_size

        self._pool: Any = None
        self._redis: Any = None
        self._connected = False

    def registration_key(self, guild_id: str) -> str:
        return f"{self.registration_key_prefix}{guild_id}"

    def authorization_key(self, user_id: str) -> str:
        return f"{self.authorization_key_prefix}{user_id}"

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            StateStoreError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                password=self.password,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            await self._redis.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.redis_url} (db={self.db})")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StateStoreError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection pool.

        This method is idempotent - safe to call multiple times.
        """
        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.disconnect()
            logger.info("Disconnected from Redis")
        except RedisError as e:
            logger.warning(f"Error during Redis disconnect: {e}")
        finally:
            self._connected = False

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    def _client(self) -> Any:
        if not self._connected or not self._redis:
            raise StateStoreError("Redis not connected. Call connect() first.")
        return self._redis

    async def try_register(self, guild_id: str, user_id: str) -> bool:
        """Register a durable guild -> user fact if none exists.

        Plain registration for callers whose worker already exists. Worker
        starts go through reserve() and confirm() instead, so a crash before
        the worker is submitted leaves only an expiring claim.

        Args:
            guild_id: Guild identifier
            user_id: User starting the worker

        Returns:
            False if the guild already holds a registration or reservation

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            created = await client.set(self.registration_key(guild_id), user_id, nx=True)
        except RedisError as e:
            raise StateStoreError(f"Registration of guild {guild_id} failed: {e}") from e
        return bool(created)

    async def reserve(self, guild_id: str, user_id: str, ttl_s: int) -> bool:
        """Provisionally claim a guild; the claim expires after ttl_s.

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            created = await client.set(
                self.registration_key(guild_id), user_id, nx=True, ex=ttl_s
            )
        except RedisError as e:
            raise StateStoreError(f"Reservation of guild {guild_id} failed: {e}") from e

        if created:
            logger.debug(f"Reserved guild {guild_id} for user {user_id} (ttl={ttl_s}s)")
        return bool(created)

    async def confirm(self, guild_id: str, user_id: str) -> bool:
        """Turn a reservation into a durable registration.

        If the reservation expired while the worker was being created, the
        guild is re-acquired only if nobody else claimed it meanwhile.

        Returns:
            True if the guild is now registered to user_id

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        key = self.registration_key(guild_id)
        try:
            holder = await client.get(key)
            if holder is None:
                logger.warning(f"Reservation for guild {guild_id} expired before confirm")
                return bool(await client.set(key, user_id, nx=True))
            if holder != user_id:
                return False
            await client.persist(key)
            return True
        except RedisError as e:
            raise StateStoreError(f"Confirming guild {guild_id} failed: {e}") from e

    async def unregister(self, guild_id: str) -> None:
        """Remove a guild registration or reservation. No error if absent.

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            deleted = await client.delete(self.registration_key(guild_id))
        except RedisError as e:
            raise StateStoreError(f"Unregistering guild {guild_id} failed: {e}") from e

        if deleted:
            logger.info(f"Unregistered guild {guild_id}")
        else:
            logger.debug(f"Guild {guild_id} had no registration")

    async def is_authorized(self, user_id: str) -> bool:
        """Check whether the user has linked their account.

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            return bool(await client.exists(self.authorization_key(user_id)))
        except RedisError as e:
            raise StateStoreError(f"Authorization lookup for {user_id} failed: {e}") from e

    async def get_registered_user(self, guild_id: str) -> str | None:
        """Return the user a guild's worker was started for, if any.

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            user_id: str | None = await client.get(self.registration_key(guild_id))
        except RedisError as e:
            raise StateStoreError(f"Registration lookup for {guild_id} failed: {e}") from e
        return user_id

    async def get_state(self, guild_id: str) -> RegistrationState:
        """Derive the guild's registration state from key presence and TTL.

        Raises:
            StateStoreError: If Redis is unavailable
        """
        client = self._client()
        try:
            ttl = await client.ttl(self.registration_key(guild_id))
        except RedisError as e:
            raise StateStoreError(f"State lookup for {guild_id} failed: {e}") from e

        if ttl == -2:
            return RegistrationState.UNRESERVED
        if ttl == -1:
            return RegistrationState.REGISTERED
        return RegistrationState.RESERVED
