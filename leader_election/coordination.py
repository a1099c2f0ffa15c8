"""
Coordination-service client used by the election flow.

CoordinationClient is the narrow contract the election state machine relies
on: open a session, check existence, list children, create, remove, close.
Every result arrives later through a callback taking (error, value).

KazooCoordinationClient implements it on top of kazoo. kazoo delivers state
changes, async completions and watches on different threads, so the adapter
funnels all of them through one queue drained by a single worker thread.
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from kazoo import exceptions as kazoo_errors
from kazoo.client import KazooClient, KazooState
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.retry import KazooRetry

logger = logging.getLogger(__name__)


class CoordinationError(Exception):
    """Failure reported by the coordination service."""
    code = "SYSTEM_ERROR"


class NodeExistsError(CoordinationError):
    code = "NODE_EXISTS"


class NotEmptyError(CoordinationError):
    code = "NOT_EMPTY"


class NoNodeError(CoordinationError):
    code = "NO_NODE"


class SessionError(CoordinationError):
    code = "CONNECTION_LOSS"


class CreateMode(Enum):
    PERSISTENT = "persistent"
    EPHEMERAL_SEQUENTIAL = "ephemeral_sequential"


class WatchEventType:
    CREATED = "CREATED"
    DELETED = "DELETED"
    CHANGED = "CHANGED"
    CHILD = "CHILD"


@dataclass(frozen=True)
class WatchEvent:
    type: str
    path: str


ResultCallback = Callable[[Optional[CoordinationError], Any], None]
SessionCallback = Callable[[Optional[CoordinationError]], None]
WatchCallback = Callable[[WatchEvent], None]


class CoordinationClient(ABC):
    @abstractmethod
    def connect(self, on_connected: SessionCallback, on_disconnected: SessionCallback):
        pass

    @abstractmethod
    def exists(self, path: str, watch: Optional[WatchCallback], callback: ResultCallback):
        pass

    @abstractmethod
    def get_children(self, path: str, watch: Optional[WatchCallback], callback: ResultCallback):
        pass

    @abstractmethod
    def create(self, path: str, mode: CreateMode, callback: ResultCallback):
        pass

    @abstractmethod
    def remove(self, path: str, callback: ResultCallback):
        pass

    @abstractmethod
    def disconnect(self):
        pass


_KAZOO_ERRORS = (
    (kazoo_errors.NodeExistsError, NodeExistsError),
    (kazoo_errors.NotEmptyError, NotEmptyError),
    (kazoo_errors.NoNodeError, NoNodeError),
    (kazoo_errors.ConnectionLoss, SessionError),
    (kazoo_errors.SessionExpiredError, SessionError),
    (kazoo_errors.ConnectionClosedError, SessionError),
    (KazooTimeoutError, SessionError),
)


def translate_error(exc: BaseException) -> CoordinationError:
    """Map a kazoo exception to the matching CoordinationError, chained."""
    if isinstance(exc, CoordinationError):
        return exc
    error_type = CoordinationError
    for kazoo_type, mapped in _KAZOO_ERRORS:
        if isinstance(exc, kazoo_type):
            error_type = mapped
            break
    error = error_type(str(exc) or type(exc).__name__)
    error.__cause__ = exc
    return error


_STOP = object()


class KazooCoordinationClient(CoordinationClient):
    """CoordinationClient backed by a kazoo session."""

    def __init__(
        self,
        host: str,
        session_timeout: int = 30000,
        reconnect_spin_delay: int = 1000,
        retry_count: int = 0,
        kazoo_client: Optional[KazooClient] = None,
    ):
        self.host = host
        self._connect_timeout = session_timeout / 1000.0
        self._zk = kazoo_client or KazooClient(
            hosts=host,
            timeout=session_timeout / 1000.0,
            connection_retry=KazooRetry(
                max_tries=retry_count,
                delay=reconnect_spin_delay / 1000.0,
                max_delay=reconnect_spin_delay / 1000.0,
            ),
        )
        self._callbacks: "queue.Queue" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()
        self._connected = False
        self._session_ended = False
        self._shutting_down = False
        self._on_connected: Optional[SessionCallback] = None
        self._on_disconnected: Optional[SessionCallback] = None

    def connect(self, on_connected: SessionCallback, on_disconnected: SessionCallback):
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._worker = threading.Thread(
            target=self._run_callbacks, daemon=True, name=f"CoordinationCallbacks-{self.host}"
        )
        self._worker.start()
        self._zk.add_listener(self._on_state_change)
        threading.Thread(
            target=self._open_session, daemon=True, name=f"CoordinationConnect-{self.host}"
        ).start()

    def exists(self, path: str, watch: Optional[WatchCallback], callback: ResultCallback):
        self._link(self._zk.exists_async(path, watch=self._watcher(watch)), callback)

    def get_children(self, path: str, watch: Optional[WatchCallback], callback: ResultCallback):
        self._link(self._zk.get_children_async(path, watch=self._watcher(watch)), callback)

    def create(self, path: str, mode: CreateMode, callback: ResultCallback):
        sequential = mode is CreateMode.EPHEMERAL_SEQUENTIAL
        async_result = self._zk.create_async(path, b"", ephemeral=sequential, sequence=sequential)
        self._link(async_result, callback)

    def remove(self, path: str, callback: ResultCallback):
        self._link(self._zk.delete_async(path), callback)

    def disconnect(self):
        self._begin_shutdown()

    def _open_session(self):
        try:
            self._zk.start(timeout=self._connect_timeout)
        except Exception as e:
            logger.warning(f"Could not open ZooKeeper session on {self.host}: {e}")
            with self._state_lock:
                requested = self._shutting_down
                if not requested:
                    # a session that never opened has nothing to report as ended
                    self._session_ended = True
            if not requested:
                self._post(self._on_connected, translate_error(e))
            self._begin_shutdown()
            return
        with self._state_lock:
            self._connected = True
        logger.info(f"ZooKeeper session open on {self.host}")
        self._post(self._on_connected, None)

    def _on_state_change(self, state):
        # Runs on kazoo's connection thread, must not block.
        if state == KazooState.SUSPENDED:
            logger.warning(f"ZooKeeper connection to {self.host} suspended")
        elif state == KazooState.CONNECTED:
            logger.debug(f"ZooKeeper connection to {self.host} (re)established")
        elif state == KazooState.LOST:
            with self._state_lock:
                unexpected = self._connected and not self._shutting_down
            if unexpected:
                logger.warning(f"ZooKeeper session on {self.host} lost")
                self._report_session_end(None)
                self._begin_shutdown()

    def _begin_shutdown(self):
        with self._state_lock:
            if self._shutting_down:
                return
            self._shutting_down = True
        threading.Thread(
            target=self._shutdown, daemon=True, name=f"CoordinationShutdown-{self.host}"
        ).start()

    def _shutdown(self):
        try:
            self._zk.stop()
            self._zk.close()
        except Exception as e:
            logger.error(f"Error closing ZooKeeper session on {self.host}: {e}")
            self._report_session_end(translate_error(e))
        else:
            self._report_session_end(None)
        finally:
            self._post(_STOP)

    def _report_session_end(self, error: Optional[CoordinationError]):
        with self._state_lock:
            if self._session_ended:
                return
            self._session_ended = True
        self._post(self._on_disconnected, error)

    def _watcher(self, watch: Optional[WatchCallback]):
        if watch is None:
            return None

        def _fire(event):
            self._post(watch, WatchEvent(type=event.type, path=event.path))

        return _fire

    def _link(self, async_result, callback: ResultCallback):
        def _complete(result):
            if result.successful():
                self._post(callback, None, result.value)
            else:
                self._post(callback, translate_error(result.exception), None)

        async_result.rawlink(_complete)

    def _post(self, func, *args):
        if func is _STOP:
            self._callbacks.put(_STOP)
        elif func is not None:
            self._callbacks.put((func, args))

    def _run_callbacks(self):
        while True:
            item = self._callbacks.get()
            if item is _STOP:
                break
            func, args = item
            try:
                func(*args)
            except Exception as e:
                logger.error(f"Error in coordination callback: {e}", exc_info=True)
        logger.debug(f"Coordination callback worker for {self.host} stopped")


def kazoo_client_factory(
    host: str,
    session_timeout: int = 30000,
    reconnect_spin_delay: int = 1000,
    retry_count: int = 0,
) -> CoordinationClient:
    return KazooCoordinationClient(
        host,
        session_timeout=session_timeout,
        reconnect_spin_delay=reconnect_spin_delay,
        retry_count=retry_count,
    )
