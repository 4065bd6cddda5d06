"""edgerelay: handler dispatch core for industrial edge messaging.

Routes data-change notifications (controller tags, broker topics) to
declaratively registered handlers, and mediates on-demand events that
pre-read values before their handlers run.

  - Declarative discovery: ``@subscribe``, ``@event``, ``@pre_read``
  - Container-free handler activation with capability injection
  - Change/deadband filtering with per-key suppression of failing handlers
  - Typed payloads through an explicit payload-type registry
  - In-memory transport for tests and demos
"""

__version__ = "0.1.0"
__description__ = "Handler dispatch core for industrial edge messaging"

from edgerelay.core.activator import Activator, ScopedHandler
from edgerelay.core.discovery import (
    disable_handler,
    discover,
    discover_events,
    event,
    pre_read,
    subscribe,
)
from edgerelay.core.dispatch import DispatchEngine, SubscriptionState
from edgerelay.core.handlers import EventHandler, MessageHandler
from edgerelay.core.marshaller import PayloadTypeRegistry, ValueMarshaller
from edgerelay.events import EventMediator, ReadResults
from edgerelay.models import MessageContext, Quality, ReadValue, SubscriptionMode, TagValue
from edgerelay.relay import EdgeRelay, EdgeRelayBuilder

__all__ = [
    "Activator",
    "DispatchEngine",
    "EdgeRelay",
    "EdgeRelayBuilder",
    "EventHandler",
    "EventMediator",
    "MessageContext",
    "MessageHandler",
    "PayloadTypeRegistry",
    "Quality",
    "ReadResults",
    "ReadValue",
    "ScopedHandler",
    "SubscriptionMode",
    "SubscriptionState",
    "TagValue",
    "ValueMarshaller",
    "__version__",
    "disable_handler",
    "discover",
    "discover_events",
    "event",
    "pre_read",
    "subscribe",
]
