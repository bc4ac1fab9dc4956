"""
Trade Settlement - Message Bus.

============================================================
PURPOSE
============================================================
Transport for outbound settlement events.

IMPLEMENTATIONS:
- InMemoryMessageBus: records messages (tests, single process)
- RestProxyMessageBus: Kafka REST proxy over aiohttp

A send either completes or raises MessageBusError; retrying
is the publisher's job.

============================================================
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import MessageBusError


logger = logging.getLogger(__name__)


KAFKA_JSON_CONTENT_TYPE = "application/vnd.kafka.json.v2+json"


@dataclass(frozen=True)
class BusMessage:
    """A delivered message."""

    topic: str
    key: str
    value: Dict[str, Any]


class MessageBus(ABC):
    """Outbound message bus port."""

    @abstractmethod
    async def send(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        """
        Deliver one message.

        Raises:
            MessageBusError: The message was not accepted
        """

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY BUS
# ============================================================

class InMemoryMessageBus(MessageBus):
    """Keeps every accepted message in order."""

    def __init__(self):
        self.messages: List[BusMessage] = []
        self._failures_left = 0
        self._failure_message = "bus unavailable"
        self._lock = asyncio.Lock()

    def fail_next(self, count: int, message: str = "bus unavailable") -> None:
        """Reject the next `count` sends."""
        self._failures_left = count
        self._failure_message = message

    async def send(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            if self._failures_left > 0:
                self._failures_left -= 1
                raise MessageBusError(self._failure_message)
            self.messages.append(BusMessage(topic=topic, key=key, value=value))

    def messages_for(self, key: str) -> List[BusMessage]:
        return [m for m in self.messages if m.key == key]


# ============================================================
# KAFKA REST PROXY BUS
# ============================================================

class RestProxyMessageBus(MessageBus):
    """
    Produces to Kafka through a REST proxy.

        POST {base_url}/topics/{topic}
        {"records": [{"key": ..., "value": {...}}]}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(self, topic: str, key: str, value: Dict[str, Any]) -> None:
        url = f"{self._base_url}/topics/{topic}"
        body = json.dumps({"records": [{"key": key, "value": value}]})
        headers = {
            "Content-Type": KAFKA_JSON_CONTENT_TYPE,
            "Accept": "application/vnd.kafka.v2+json",
        }

        session = await self._get_session()
        try:
            async with session.post(url, data=body, headers=headers) as response:
                if response.status >= 300:
                    text = await response.text()
                    raise MessageBusError(f"REST proxy returned {response.status}: {text}")

                result = await response.json(content_type=None)
                offsets = (result or {}).get("offsets") or []
                for offset in offsets:
                    if offset.get("error"):
                        raise MessageBusError(f"Record rejected: {offset['error']}")
        except aiohttp.ClientError as e:
            raise MessageBusError(f"REST proxy unreachable: {e}") from e
        except asyncio.TimeoutError as e:
            raise MessageBusError("REST proxy timed out") from e

        logger.debug(f"Produced {key} to {topic}")

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
