"""In-process stand-ins for the Kafka producer/consumer used by the dispatch service.

Notification lifecycle events are published through ``KafkaProducerStub`` and
business modules request notifications through ``KafkaConsumerStub``. Both
share a module level broker so a producer and consumer in the same process
see each other's messages.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
TopicHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class _InMemoryBroker:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[MessageHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: MessageHandler) -> None:
        handlers = self._subscribers.get(topic)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            self._subscribers.pop(topic, None)

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._subscribers.get(topic))

    async def publish(self, topic: str, message: dict[str, Any]) -> None:
        # Handlers may unsubscribe while we iterate.
        for handler in list(self._subscribers.get(topic, [])):
            await handler(message)


_BROKER = _InMemoryBroker()


class KafkaProducerStub:
    """Producer placeholder; ``send`` delivers synchronously to local subscribers."""

    def __init__(self, bootstrap_servers: str | None = None, **_kwargs: Any) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def send(self, topic: str, value: dict[str, Any]) -> None:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        await _BROKER.publish(topic, value)

    async def close(self) -> None:
        self._connected = False


class KafkaConsumerStub:
    """Routes messages for ``topics`` to ``handler(topic, message)``."""

    def __init__(self, topics: Sequence[str], handler: TopicHandler) -> None:
        self._topics = list(topics)
        self._handler = handler
        self._registrations: list[tuple[str, MessageHandler]] = []

    @property
    def started(self) -> bool:
        return bool(self._registrations)

    async def start(self) -> None:
        if self.started:
            return
        for topic in self._topics:
            async def _callback(message: dict[str, Any], current_topic: str = topic) -> None:
                await self._handler(current_topic, message)

            _BROKER.subscribe(topic, _callback)
            self._registrations.append((topic, _callback))

    async def stop(self) -> None:
        for topic, callback in self._registrations:
            _BROKER.unsubscribe(topic, callback)
        self._registrations.clear()
