"""On-demand events: the mediator and its read results."""

from edgerelay.events.mediator import EventMediator
from edgerelay.events.results import ReadResults

__all__ = ["EventMediator", "ReadResults"]
