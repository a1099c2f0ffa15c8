from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Optional

import pytest  # type: ignore[import-not-found]

from leader_election.coordination import (
    CoordinationClient,
    CreateMode,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionError,
    WatchEvent,
    WatchEventType,
)
from leader_election.events import ClientEvent


def _parent(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or "/"


@dataclass(frozen=True)
class FakeStat:
    path: str
    ephemeral_owner: Optional[int]


# ---------- fakes ----------
class FakeCoordinationService:
    """
    In-memory ZooKeeper stand-in.

    Requests are applied when issued; their results and any triggered
    watches are queued and only delivered by run(), one at a time, in FIFO
    order. Watches are one-shot and belong to the session that armed them.
    """

    def __init__(self):
        self.nodes = {"/": None}  # path -> owning session for ephemeral nodes
        self.pending = deque()
        self.clients = []
        self.refuse_connections = False
        self.deliver_immediately = False
        self._sequences = defaultdict(int)
        self._exists_watches = defaultdict(list)
        self._child_watches = defaultdict(list)
        self._failures = {}
        self._next_session = 1

    # API compatible with ElectionCandidate's client_factory
    def client_factory(self, host, session_timeout=30000, reconnect_spin_delay=1000, retry_count=0):
        client = FakeCoordinationClient(self, host, session_timeout, reconnect_spin_delay, retry_count)
        self.clients.append(client)
        return client

    def schedule(self, func, *args):
        if self.deliver_immediately:
            func(*args)
            return
        self.pending.append((func, args))

    def run(self, limit: int = 1000) -> int:
        steps = 0
        while self.pending:
            func, args = self.pending.popleft()
            func(*args)
            steps += 1
            if steps > limit:
                raise AssertionError("callbacks did not settle")
        return steps

    def step(self) -> bool:
        """Deliver a single queued callback."""
        if not self.pending:
            return False
        func, args = self.pending.popleft()
        func(*args)
        return True

    def touch(self, path: str):
        """Simulate a data change on path, firing its existence watches."""
        self._trigger(self._exists_watches, path, WatchEventType.CHANGED)

    def fail_next(self, operation: str, error: Exception):
        """Make the next call of operation ('exists', 'create', ...) fail with error."""
        self._failures[operation] = error

    def take_failure(self, operation: str):
        return self._failures.pop(operation, None)

    def open_session(self) -> int:
        session = self._next_session
        self._next_session += 1
        return session

    def end_session(self, session: int):
        # a closed session's own watches are never delivered
        for table in (self._exists_watches, self._child_watches):
            for path in list(table):
                table[path] = [(s, w) for s, w in table[path] if s != session]
        for path in sorted(p for p, owner in self.nodes.items() if owner == session):
            self.delete(path)

    def stat(self, path: str):
        if path not in self.nodes:
            return None
        return FakeStat(path=path, ephemeral_owner=self.nodes[path])

    def children(self, path: str):
        prefix = path.rstrip("/") + "/"
        return sorted(
            p[len(prefix):] for p in self.nodes
            if p != path and p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def watch_exists(self, session: int, path: str, watch):
        self._exists_watches[path].append((session, watch))

    def watch_children(self, session: int, path: str, watch):
        self._child_watches[path].append((session, watch))

    def create(self, path: str, mode: CreateMode, session: int) -> str:
        parent = _parent(path)
        if parent not in self.nodes:
            raise NoNodeError(parent)
        if mode is CreateMode.EPHEMERAL_SEQUENTIAL:
            path = f"{path}{self._sequences[parent]:010d}"
            self._sequences[parent] += 1
        if path in self.nodes:
            raise NodeExistsError(path)
        self.nodes[path] = session if mode is CreateMode.EPHEMERAL_SEQUENTIAL else None
        self._trigger(self._exists_watches, path, WatchEventType.CREATED)
        self._trigger(self._child_watches, parent, WatchEventType.CHILD)
        return path

    def delete(self, path: str):
        if path not in self.nodes:
            raise NoNodeError(path)
        if self.children(path):
            raise NotEmptyError(path)
        del self.nodes[path]
        self._trigger(self._exists_watches, path, WatchEventType.DELETED)
        self._trigger(self._child_watches, path, WatchEventType.DELETED)
        self._trigger(self._child_watches, _parent(path), WatchEventType.CHILD)

    def _trigger(self, table, path: str, event_type: str):
        for _, watch in table.pop(path, []):
            self.schedule(watch, WatchEvent(type=event_type, path=path))


class FakeCoordinationClient(CoordinationClient):
    def __init__(self, service, host, session_timeout, reconnect_spin_delay, retry_count):
        self.service = service
        self.host = host
        self.session_timeout = session_timeout
        self.reconnect_spin_delay = reconnect_spin_delay
        self.retry_count = retry_count
        self.session = None
        self.disconnect_calls = 0
        self.operations = []
        self._on_disconnected = None

    @property
    def live(self) -> bool:
        return self.session is not None

    def connect(self, on_connected, on_disconnected):
        self._on_disconnected = on_disconnected
        if self.service.refuse_connections:
            self.service.schedule(on_connected, SessionError(f"cannot reach {self.host}"))
            return
        self.session = self.service.open_session()
        self.service.schedule(on_connected, None)

    def exists(self, path, watch, callback):
        self._apply("exists", callback, self._exists, path, watch)

    def get_children(self, path, watch, callback):
        self._apply("get_children", callback, self._get_children, path, watch)

    def create(self, path, mode, callback):
        self._apply("create", callback, self.service.create, path, mode, self.session)

    def remove(self, path, callback):
        self._apply("remove", callback, self._remove, path)

    def disconnect(self):
        self.disconnect_calls += 1
        if not self.live:
            return
        session, self.session = self.session, None
        self.service.end_session(session)
        self.service.schedule(self._on_disconnected, None)

    def expire(self):
        """Simulate the service dropping this session without a close request."""
        self.disconnect()

    def _exists(self, path, watch):
        if watch is not None:
            self.service.watch_exists(self.session, path, watch)
        return self.service.stat(path)

    def _get_children(self, path, watch):
        children = self.service.children(path) if path in self.service.nodes else None
        if children is None:
            raise NoNodeError(path)
        if watch is not None:
            self.service.watch_children(self.session, path, watch)
        return children

    def _remove(self, path):
        self.service.delete(path)
        return True

    def _apply(self, operation, callback, func, *args):
        self.operations.append(operation)
        if not self.live:
            self.service.schedule(callback, SessionError("session closed"), None)
            return
        failure = self.service.take_failure(operation)
        if failure is not None:
            self.service.schedule(callback, failure, None)
            return
        try:
            value = func(*args)
        except Exception as e:
            self.service.schedule(callback, e, None)
            return
        self.service.schedule(callback, None, value)


class EventRecorder:
    """Subscribes to every ClientEvent of a candidate and records (event, payload)."""

    def __init__(self, candidate):
        self.events = []
        for event in ClientEvent:
            candidate.on(event, self._recorder(event))

    def _recorder(self, event):
        def record(payload):
            self.events.append((event, payload))
        return record

    def names(self):
        return [event for event, _ in self.events]

    def of(self, event):
        return [payload for recorded, payload in self.events if recorded is event]


@pytest.fixture
def zk_service():
    return FakeCoordinationService()


@pytest.fixture
def make_candidate(zk_service):
    from leader_election import ElectionCandidate

    def make(root="/connect-election", prefix="guid-n_", **options):
        return ElectionCandidate(
            "zk-test:2181",
            root,
            prefix,
            session_timeout=10000,
            client_factory=zk_service.client_factory,
            **options,
        )

    return make
