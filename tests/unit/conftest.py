"""Shared fixtures for operator unit tests.

Provides:
- In-memory Redis double with SET NX / EX / PERSIST semantics
- Connected StateGuard backed by the double
- Fake NATS message with reply capture
- Worker template rendered from the shipped pod manifest
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from groover.config import OperatorConfig
from groover.context import OperatorContext
from groover.state import StateGuard
from groover.template import WorkerTemplate

DEPLOYMENT_JSON = Path(__file__).resolve().parents[2] / "configs" / "deployment.json"


class FakeRedis:
    """Single-threaded in-memory stand-in for redis.asyncio.Redis.

    Each command completes without yielding to the event loop, so SET NX is
    atomic with respect to concurrent tasks, as it is on a real server.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def set(
        self, key: str, value: str, nx: bool = False, ex: int | None = None
    ) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def persist(self, key: str) -> bool:
        if key in self.data and key in self.ttls:
            del self.ttls[key]
            return True
        return False

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    async def ttl(self, key: str) -> int:
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def aclose(self) -> None:
        pass

    def expire(self, key: str) -> None:
        """Simulate TTL expiry of a key."""
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@dataclass
class FakeMsg:
    """Minimal nats.aio.msg.Msg stand-in capturing replies."""

    subject: str
    data: bytes
    reply: str = "_INBOX.test"
    responses: list[bytes] = field(default_factory=list)

    async def respond(self, data: bytes) -> None:
        self.responses.append(data)

    @property
    def text_responses(self) -> list[str]:
        return [r.decode("utf-8") for r in self.responses]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def state_guard(fake_redis: FakeRedis) -> StateGuard:
    """StateGuard already connected to the in-memory double."""
    guard = StateGuard(redis_url="redis://localhost:6379")
    guard._redis = fake_redis
    guard._connected = True
    return guard


@pytest.fixture
def operator_config() -> OperatorConfig:
    return OperatorConfig.model_validate(
        {
            "credentials": {"url": "http://authify.test"},
            "discord": {"token": "bot-token"},
        }
    )


@pytest.fixture
def context(operator_config: OperatorConfig) -> OperatorContext:
    ctx = OperatorContext(config=operator_config)
    ctx.bus = AsyncMock()
    return ctx


@pytest.fixture
def worker_template() -> WorkerTemplate:
    return WorkerTemplate.from_file(DEPLOYMENT_JSON)


@pytest.fixture
def make_msg() -> Any:
    """Factory for fake bus messages."""

    def _make(subject: str, data: bytes | str, reply: str = "_INBOX.test") -> FakeMsg:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return FakeMsg(subject=subject, data=data, reply=reply)

    return _make
