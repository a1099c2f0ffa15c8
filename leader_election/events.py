"""
Events emitted by an election candidate to its owner.

Each ClientEvent has exactly one payload type. Handlers are registered on an
ElectionEventBus and are called synchronously, in registration order, from
the candidate's callback thread.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class ClientEvent(Enum):
    """Observable transitions of an election candidate."""
    CHILD_CREATED = "childCreated"
    CLIENT_CONNECTED = "clientConnected"
    CLIENT_DISCONNECTED = "clientDisconnected"
    ERROR = "error"
    LEADER_CHANGED = "leaderChanged"
    NODE_CHILDREN_CHANGED = "nodeChildrenChanged"
    NODE_CREATED = "nodeCreated"
    NODE_REMOVED = "nodeRemoved"


@dataclass(frozen=True)
class ConnectionInfo:
    host: str


@dataclass(frozen=True)
class DisconnectionInfo:
    host: str
    path: str
    id: Optional[int]


@dataclass(frozen=True)
class NodeInfo:
    path: str


@dataclass(frozen=True)
class CandidateInfo:
    path: str
    is_leader: bool
    id: Optional[int]


@dataclass(frozen=True)
class ErrorInfo:
    cause: Exception

    @property
    def code(self) -> str:
        """Coordination error code of the cause, e.g. 'NODE_EXISTS'."""
        return getattr(self.cause, "code", type(self.cause).__name__)


EventPayload = Union[ConnectionInfo, DisconnectionInfo, NodeInfo, CandidateInfo, ErrorInfo]
EventHandler = Callable[[EventPayload], None]

PAYLOAD_TYPES = {
    ClientEvent.CLIENT_CONNECTED: ConnectionInfo,
    ClientEvent.CLIENT_DISCONNECTED: DisconnectionInfo,
    ClientEvent.NODE_CREATED: NodeInfo,
    ClientEvent.CHILD_CREATED: CandidateInfo,
    ClientEvent.LEADER_CHANGED: CandidateInfo,
    ClientEvent.NODE_CHILDREN_CHANGED: CandidateInfo,
    ClientEvent.NODE_REMOVED: CandidateInfo,
    ClientEvent.ERROR: ErrorInfo,
}


class ElectionEventBus:
    """Subscription registry for ClientEvent handlers."""

    def __init__(self):
        self._handlers: Dict[ClientEvent, List[EventHandler]] = defaultdict(list)

    def on(self, event: ClientEvent, handler: EventHandler) -> "ElectionEventBus":
        self._handlers[event].append(handler)
        return self

    def off(self, event: ClientEvent, handler: EventHandler) -> "ElectionEventBus":
        try:
            self._handlers[event].remove(handler)
        except ValueError:
            logger.debug(f"Handler {handler!r} was not subscribed to {event.value}")
        return self

    def handler_count(self, event: ClientEvent) -> int:
        return len(self._handlers[event])

    def emit(self, event: ClientEvent, payload: EventPayload) -> None:
        """
        Deliver payload to every handler of event.

        A failing handler is logged and does not stop delivery to the
        remaining handlers or propagate into the election flow.
        """
        expected = PAYLOAD_TYPES[event]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event.value} expects {expected.__name__}, got {type(payload).__name__}"
            )
        handlers = list(self._handlers[event])
        if event is ClientEvent.ERROR and not handlers:
            logger.warning(f"Unhandled election error: {payload.cause}")
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Error in {event.value} handler: {e}", exc_info=True)
