"""
Path and identity helpers for ZooKeeper leader election.

Pure functions: validate the election root and candidate prefix, extract the
sequence number ZooKeeper appends to ephemeral sequential nodes, and rank a
candidate against its siblings.
"""

import re
from typing import Iterable, Optional

_NAME = r"[A-Za-z0-9_-]"

_ELECTION_ROOT_RE = re.compile(rf"/{_NAME}+")
_CANDIDATE_PREFIX_RE = re.compile(rf"{_NAME}+")
_CHILD_NAME_RE = re.compile(rf"{_NAME}+?([0-9]+)")
_CHILD_PATH_RE = re.compile(rf"/{_NAME}+/{_NAME}+?([0-9]+)")


def is_valid_election_root(name: str) -> bool:
    """True if name is a single absolute segment like '/election'."""
    return _ELECTION_ROOT_RE.fullmatch(name) is not None


def is_valid_candidate_prefix(prefix: str) -> bool:
    """True if prefix is a bare node name like 'guid-n_' (no slash)."""
    return _CANDIDATE_PREFIX_RE.fullmatch(prefix) is not None


def extract_candidate_id(path: str) -> Optional[int]:
    """
    Extract the numeric sequence suffix from a candidate node.

    Accepts either a bare child name ('guid-n_0000000001') or a full
    two-segment path ('/election/guid-n_0000000001'). Zero padding of any
    length is stripped.

    Returns None when the input is not one of those two shapes or has no
    trailing digits, e.g. 'election/guid-n_1', 'election:guid-n_1' or
    'guid-n_00000000n'.
    """
    match = _CHILD_NAME_RE.fullmatch(path) or _CHILD_PATH_RE.fullmatch(path)
    if match is None:
        return None
    return int(match.group(1))


def is_leader_among(candidate_id: Optional[int], sibling_names: Iterable[str]) -> bool:
    """
    Decide leadership from a snapshot of sibling node names.

    The candidate leads iff it has an id and no sibling has a strictly
    smaller one. Names without a parseable id never win the comparison.
    """
    if candidate_id is None:
        return False
    for name in sibling_names:
        sibling_id = extract_candidate_id(name)
        if sibling_id is not None and sibling_id < candidate_id:
            return False
    return True
