"""
Leader Election module for ZooKeeper sequential-ephemeral election.

Provides the election candidate state machine, the events it emits and the
coordination-service client it drives.
"""

from .coordination import (
    CoordinationClient,
    CoordinationError,
    CreateMode,
    KazooCoordinationClient,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    SessionError,
    WatchEvent,
    WatchEventType,
)
from .election_flow import (
    CandidateState,
    ElectionCandidate,
    start_candidate,
)
from .events import (
    CandidateInfo,
    ClientEvent,
    ConnectionInfo,
    DisconnectionInfo,
    ElectionEventBus,
    ErrorInfo,
    NodeInfo,
)
from .utils import (
    extract_candidate_id,
    is_leader_among,
    is_valid_candidate_prefix,
    is_valid_election_root,
)

__all__ = [
    'CandidateInfo',
    'CandidateState',
    'ClientEvent',
    'ConnectionInfo',
    'CoordinationClient',
    'CoordinationError',
    'CreateMode',
    'DisconnectionInfo',
    'ElectionCandidate',
    'ElectionEventBus',
    'ErrorInfo',
    'KazooCoordinationClient',
    'NodeExistsError',
    'NodeInfo',
    'NoNodeError',
    'NotEmptyError',
    'SessionError',
    'WatchEvent',
    'WatchEventType',
    'extract_candidate_id',
    'is_leader_among',
    'is_valid_candidate_prefix',
    'is_valid_election_root',
    'start_candidate',
]
