"""Contract between the engine and the broker carrying automation events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..events import AutomationEvent

# Whatever the broker hands back for acknowledgement: a list entry, a tuple...
RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Topic-addressed, at-least-once delivery of automation events.

    Topics are event names such as ``longtails.start`` or
    ``document.generate``. A published event may be delivered more than once
    (the outbox relay republishes anything not marked dispatched), so
    consumers rely on the state guards in the step handler and the document
    lease rather than on the broker for uniqueness.
    """

    async def connect(self) -> None:
        """Brokers that need a session open it here; publish/subscribe call it lazily."""

    async def disconnect(self) -> None:
        """Release the broker session, if any."""

    @abc.abstractmethod
    async def publish(self, topic: str, event: AutomationEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, AutomationEvent]]:
        """Yield ``(raw, event)`` for each delivery on ``topic``.

        Stops after ``lifespan`` seconds, or never when it is ``None``.
        Undecodable deliveries are dropped by the implementation.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery handled so the broker does not redeliver it."""
        raise NotImplementedError
