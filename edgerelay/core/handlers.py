"""Handler capabilities.

A message handler subclasses ``MessageHandler`` and names its payload type in
the ``payload_type`` class attribute; an event handler subclasses
``EventHandler`` and names ``event_data_type`` and, when it returns
something, ``result_type``.  ``handle`` may be a plain method or a
coroutine function.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from edgerelay.events.results import ReadResults
    from edgerelay.models.messages import MessageContext
    from edgerelay.models.values import TagValue


class MessageHandler(ABC):
    """Handles values delivered for one or more subscribed keys.

    Examples
    --------
    >>> @subscribe("plc", "Line4.Temperature", deadband=0.5)
    ... class TemperatureHandler(MessageHandler):
    ...     payload_type = float
    ...
    ...     async def handle(self, message, context):
    ...         print(message.value)
    """

    payload_type: ClassVar[Any] = None

    @abstractmethod
    def handle(self, message: TagValue, context: MessageContext) -> Any:
        ...


class EventHandler(ABC):
    """Handles an on-demand event, optionally returning a result."""

    event_data_type: ClassVar[Any] = None
    result_type: ClassVar[Any] = None

    @abstractmethod
    def handle(self, data: Any, reads: ReadResults) -> Any:
        ...
