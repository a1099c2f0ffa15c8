"""
Election flow module for ZooKeeper sequential-ephemeral leader election.

Every candidate registers an ephemeral sequential node under a shared
election root. The candidate holding the lowest sequence number is the
leader. When the leader's session ends its node disappears, the remaining
candidates are notified through a children watch and re-rank themselves.

The flow is driven entirely by coordination-service callbacks. ZooKeeper
watches are one-shot, so each watch callback re-issues the read that armed
it, unless the candidate is closing or its session is gone.
"""

import logging
from enum import Enum
from typing import Callable, FrozenSet, Optional

from .coordination import (
    CoordinationClient,
    CoordinationError,
    CreateMode,
    NodeExistsError,
    WatchEvent,
    WatchEventType,
    kazoo_client_factory,
)
from .events import (
    CandidateInfo,
    ClientEvent,
    ConnectionInfo,
    DisconnectionInfo,
    ElectionEventBus,
    ErrorInfo,
    EventHandler,
    NodeInfo,
)
from .utils import (
    extract_candidate_id,
    is_leader_among,
    is_valid_candidate_prefix,
    is_valid_election_root,
)


logger = logging.getLogger(__name__)

ClientFactory = Callable[..., CoordinationClient]


class CandidateState(Enum):
    """States of a candidate in the election flow."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ROOT_CHECK_PENDING = "root_check_pending"
    ROOT_CREATE_PENDING = "root_create_pending"
    CANDIDATE_CREATE_PENDING = "candidate_create_pending"
    REGISTERED = "registered"
    DISCONNECTED = "disconnected"
    CLOSING = "closing"
    CLOSED = "closed"


class ElectionCandidate:
    """
    One participant in a ZooKeeper leader election.

    The candidate handles:
    - Opening a session and making sure the election root exists
    - Registering its own ephemeral sequential node
    - Ranking itself against the sibling nodes and tracking leadership
    - Re-arming the one-shot root and children watches
    - Tearing the session down and cleaning up the election root

    Outcomes are reported through ClientEvent notifications; no public
    method blocks waiting for the coordination service.
    """

    def __init__(self,
                 host: str,
                 election_root: str,
                 candidate_prefix: str,
                 session_timeout: int = 30000,
                 reconnect_spin_delay: int = 1000,
                 retry_count: int = 0,
                 client_factory: Optional[ClientFactory] = None):
        """
        Initialize the candidate.

        Args:
            host: ZooKeeper connection string, e.g. "zk1:2181,zk2:2181"
            election_root: Absolute path shared by the election group, e.g. "/election"
            candidate_prefix: Name prefix of this candidate's node, e.g. "guid-n_"
            session_timeout: Session timeout in milliseconds
            reconnect_spin_delay: Delay between connection attempts in milliseconds
            retry_count: Connection retries performed by the client
            client_factory: Builds a CoordinationClient; defaults to kazoo

        Raises:
            ValueError: if election_root or candidate_prefix is malformed
        """
        if not is_valid_election_root(election_root):
            raise ValueError(
                "election_root must start with '/' and allows a-z, A-Z, 0-9, -, _"
            )
        if not is_valid_candidate_prefix(candidate_prefix):
            raise ValueError("candidate_prefix allows a-z, A-Z, 0-9, -, _")

        self.host = host
        self.election_root = election_root
        self.candidate_prefix = candidate_prefix
        self.session_timeout = session_timeout
        self.reconnect_spin_delay = reconnect_spin_delay
        self.retry_count = retry_count
        self._client_factory = client_factory or kazoo_client_factory

        self.candidate_id: Optional[int] = None
        self.candidate_path: Optional[str] = None
        self.is_leader = False
        self.root_stat = None
        self.siblings: FrozenSet[str] = frozenset()
        self.state = CandidateState.IDLE
        self.events = ElectionEventBus()

        self._client: Optional[CoordinationClient] = None
        self._registering = False
        self._closing = False
        self._disconnected = True

    @property
    def node_path(self) -> str:
        """Path passed to the sequential create, before the suffix is appended."""
        return f"{self.election_root}/{self.candidate_prefix}"

    def on(self, event: ClientEvent, handler: EventHandler) -> "ElectionCandidate":
        self.events.on(event, handler)
        return self

    def off(self, event: ClientEvent, handler: EventHandler) -> "ElectionCandidate":
        self.events.off(event, handler)
        return self

    def start(self):
        """Open a session and join the election."""
        if self._closing:
            logger.warning(f"Candidate {self.node_path} is closed, ignoring start")
            return
        if not self._disconnected:
            logger.warning(f"Candidate {self.node_path} already has a live session")
            return

        self.candidate_id = None
        self.candidate_path = None
        self.is_leader = False
        self.siblings = frozenset()
        self._registering = False
        self.state = CandidateState.CONNECTING

        self._client = self._new_client()
        self._client.connect(self._bound(self._on_connected), self._bound(self._on_disconnected))
        logger.info(f"Candidate {self.node_path} connecting to {self.host}")

    def close(self):
        """Leave the election and end the session."""
        if self._closing:
            return
        self._closing = True
        if self._client is None or self.state in (CandidateState.IDLE, CandidateState.DISCONNECTED):
            self.state = CandidateState.CLOSED
            logger.info(f"Candidate {self.node_path} closed")
            return
        self.state = CandidateState.CLOSING
        logger.info(f"Candidate {self.node_path} closing session")
        self._client.disconnect()

    def create_election_root(self):
        """
        Create the election root without checking whether it exists.

        Any failure, NODE_EXISTS included, is reported as ERROR.
        """
        if self._client is None or self._disconnected:
            raise RuntimeError("create_election_root requires a live session")
        self._client.create(
            self.election_root, CreateMode.PERSISTENT, self._bound(self._on_explicit_root_created)
        )

    def remove_election_root(self):
        """
        Delete the election root.

        Uses the live session if there is one, otherwise a dedicated session
        opened for the delete and closed right after. The delete is refused
        with NOT_EMPTY while any candidate node is still registered.
        """
        if self._client is not None and not (self._disconnected or self._closing):
            self._client.remove(self.election_root, self._bound(self._on_root_removed))
            return

        client = self._new_client()

        def on_connected(error):
            if error:
                self._emit_error(error)
                return
            client.remove(self.election_root, on_removed)

        def on_removed(error, _):
            self._on_root_removed(error, _)
            client.disconnect()

        def on_disconnected(error):
            if error:
                logger.warning(f"Error closing maintenance session on {self.host}: {error}")
            else:
                logger.debug(f"Maintenance session on {self.host} closed")

        client.connect(on_connected, on_disconnected)

    def _new_client(self) -> CoordinationClient:
        return self._client_factory(
            self.host,
            session_timeout=self.session_timeout,
            reconnect_spin_delay=self.reconnect_spin_delay,
            retry_count=self.retry_count,
        )

    def _bound(self, callback: Callable) -> Callable:
        """
        Tie callback to the session that is current now.

        Each session delivers on its own thread, so results and watches of
        a session replaced by start() can still arrive; those are dropped.
        """
        client = self._client

        def deliver(*args):
            if client is not self._client:
                logger.debug(f"Dropping {callback.__name__} from a replaced session on {self.host}")
                return
            callback(*args)

        return deliver

    @property
    def _halted(self) -> bool:
        return self._closing or self._disconnected

    def _emit_error(self, error: Exception):
        logger.error(f"Election error on {self.election_root}: {error}")
        self.events.emit(ClientEvent.ERROR, ErrorInfo(cause=error))

    def _candidate_info(self) -> CandidateInfo:
        return CandidateInfo(path=self.election_root, is_leader=self.is_leader, id=self.candidate_id)

    def _on_connected(self, error: Optional[CoordinationError]):
        if self._closing:
            return
        if error:
            self.state = CandidateState.DISCONNECTED
            self._emit_error(error)
            return
        self._disconnected = False
        self.state = CandidateState.CONNECTED
        logger.info(f"Candidate {self.node_path} connected to {self.host}")
        self.events.emit(ClientEvent.CLIENT_CONNECTED, ConnectionInfo(host=self.host))
        self._check_root()

    def _on_disconnected(self, error: Optional[CoordinationError]):
        if error:
            self._emit_error(error)
            return
        self._disconnected = True
        if self._closing:
            self.state = CandidateState.CLOSED
            logger.info(f"Candidate {self.node_path} closed (id={self.candidate_id})")
        else:
            self.state = CandidateState.DISCONNECTED
            logger.warning(f"Candidate {self.node_path} lost its session (id={self.candidate_id})")
        self.events.emit(
            ClientEvent.CLIENT_DISCONNECTED,
            DisconnectionInfo(host=self.host, path=self.election_root, id=self.candidate_id),
        )

    def _check_root(self):
        if self._halted:
            return
        if self.state is CandidateState.CONNECTED:
            self.state = CandidateState.ROOT_CHECK_PENDING
        self._client.exists(
            self.election_root, self._bound(self._on_root_watch), self._bound(self._on_root_checked)
        )

    def _on_root_watch(self, event: WatchEvent):
        if self._halted:
            return
        if event.type == WatchEventType.CREATED:
            self.events.emit(ClientEvent.NODE_CREATED, NodeInfo(path=self.election_root))
        logger.debug(f"Root watch fired ({event.type}), re-arming on {self.election_root}")
        self._check_root()

    def _on_root_checked(self, error: Optional[CoordinationError], stat):
        if self._halted:
            return
        if error:
            self._emit_error(error)
            return
        if stat is not None:
            self.root_stat = stat
            self._register()
        else:
            self._ensure_root()

    def _ensure_root(self):
        if self._registering:
            return
        self.state = CandidateState.ROOT_CREATE_PENDING
        self._client.create(self.election_root, CreateMode.PERSISTENT, self._bound(self._on_root_created))

    def _on_root_created(self, error: Optional[CoordinationError], _path):
        if self._halted:
            return
        if isinstance(error, NodeExistsError):
            logger.debug(f"Election root {self.election_root} created concurrently by another candidate")
        elif error:
            self._emit_error(error)
            return
        self._register()

    def _on_explicit_root_created(self, error: Optional[CoordinationError], path):
        if error:
            self._emit_error(error)
            return
        logger.info(f"Election root {path} created")

    def _register(self):
        if self._halted or self._registering:
            return
        self._registering = True
        self.state = CandidateState.CANDIDATE_CREATE_PENDING
        self._client.create(
            self.node_path, CreateMode.EPHEMERAL_SEQUENTIAL, self._bound(self._on_registered)
        )

    def _on_registered(self, error: Optional[CoordinationError], path: Optional[str]):
        if self._halted:
            return
        if error:
            self._emit_error(error)
            return
        self.candidate_path = path
        self.candidate_id = extract_candidate_id(path)
        logger.info(f"Candidate registered at {path} (id={self.candidate_id})")
        self.events.emit(ClientEvent.CHILD_CREATED, self._candidate_info())
        self._list_children()

    def _list_children(self):
        if self._halted:
            return
        self._client.get_children(
            self.election_root, self._bound(self._on_children_watch), self._bound(self._on_children_listed)
        )

    def _on_children_watch(self, event: WatchEvent):
        if self._halted:
            return
        self.events.emit(ClientEvent.NODE_CHILDREN_CHANGED, self._candidate_info())
        logger.debug(f"Children watch fired ({event.type}), re-arming on {self.election_root}")
        self._list_children()

    def _on_children_listed(self, error: Optional[CoordinationError], children):
        if self._halted:
            return
        if error:
            self._emit_error(error)
            return
        self.state = CandidateState.REGISTERED
        self.siblings = frozenset(children)
        self._elect_leader()

    def _elect_leader(self):
        """Re-rank against the current sibling snapshot; report flips only."""
        previous = self.is_leader
        self.is_leader = is_leader_among(self.candidate_id, self.siblings)
        if previous != self.is_leader:
            if self.is_leader:
                logger.info(f"Candidate {self.node_path} (id={self.candidate_id}) is now the leader")
            else:
                logger.info(f"Candidate {self.node_path} (id={self.candidate_id}) is no longer the leader")
            self.events.emit(ClientEvent.LEADER_CHANGED, self._candidate_info())

    def _on_root_removed(self, error: Optional[CoordinationError], _):
        if error:
            self._emit_error(error)
            return
        logger.info(f"Election root {self.election_root} removed")
        self.events.emit(ClientEvent.NODE_REMOVED, self._candidate_info())

    def am_i_leader(self) -> bool:
        """Check if this candidate currently holds leadership."""
        return self.is_leader


def start_candidate(host: str,
                    election_root: str,
                    candidate_prefix: str,
                    on_leader_change: Optional[Callable[[CandidateInfo], None]] = None,
                    **options) -> ElectionCandidate:
    """
    Entry point to build a candidate, subscribe a leadership callback and start it.

    Args:
        host: ZooKeeper connection string
        election_root: Absolute path shared by the election group
        candidate_prefix: Name prefix of this candidate's node
        on_leader_change: Called with a CandidateInfo whenever leadership flips
        **options: session_timeout, reconnect_spin_delay, retry_count, client_factory

    Returns:
        The started ElectionCandidate

    Example:
        >>> def on_leader_change(info):
        ...     if info.is_leader:
        ...         print(f"Candidate {info.id} is now the leader")
        ...
        >>> candidate = start_candidate("zk:2181", "/election", "guid-n_", on_leader_change)
        >>>
        >>> # Cleanup when done
        >>> candidate.close()
    """
    candidate = ElectionCandidate(host, election_root, candidate_prefix, **options)
    if on_leader_change:
        candidate.on(ClientEvent.LEADER_CHANGED, on_leader_change)
    candidate.start()
    return candidate
