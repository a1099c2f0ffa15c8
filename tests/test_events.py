import pytest

from leader_election.coordination import NodeExistsError
from leader_election.events import (
    CandidateInfo,
    ClientEvent,
    ConnectionInfo,
    ElectionEventBus,
    ErrorInfo,
    NodeInfo,
)


class TestElectionEventBus:
    def test_handlers_called_in_registration_order(self):
        bus = ElectionEventBus()
        calls = []
        bus.on(ClientEvent.NODE_CREATED, lambda p: calls.append(("first", p.path)))
        bus.on(ClientEvent.NODE_CREATED, lambda p: calls.append(("second", p.path)))

        bus.emit(ClientEvent.NODE_CREATED, NodeInfo(path="/election"))

        assert calls == [("first", "/election"), ("second", "/election")]

    def test_only_matching_event_is_delivered(self):
        bus = ElectionEventBus()
        calls = []
        bus.on(ClientEvent.CLIENT_CONNECTED, calls.append)

        bus.emit(ClientEvent.NODE_CREATED, NodeInfo(path="/election"))

        assert calls == []

    def test_off_removes_handler(self):
        bus = ElectionEventBus()
        calls = []
        bus.on(ClientEvent.CLIENT_CONNECTED, calls.append).off(ClientEvent.CLIENT_CONNECTED, calls.append)

        bus.emit(ClientEvent.CLIENT_CONNECTED, ConnectionInfo(host="zk:2181"))

        assert calls == []
        assert bus.handler_count(ClientEvent.CLIENT_CONNECTED) == 0

    def test_off_unknown_handler_is_ignored(self):
        bus = ElectionEventBus()
        assert bus.off(ClientEvent.ERROR, print) is bus

    def test_failing_handler_does_not_stop_others(self):
        bus = ElectionEventBus()
        calls = []

        def broken(_):
            raise RuntimeError("boom")

        bus.on(ClientEvent.LEADER_CHANGED, broken)
        bus.on(ClientEvent.LEADER_CHANGED, calls.append)
        info = CandidateInfo(path="/election", is_leader=True, id=0)

        bus.emit(ClientEvent.LEADER_CHANGED, info)

        assert calls == [info]

    def test_wrong_payload_type_rejected(self):
        bus = ElectionEventBus()
        with pytest.raises(TypeError):
            bus.emit(ClientEvent.LEADER_CHANGED, NodeInfo(path="/election"))

    def test_unhandled_error_is_logged(self, caplog):
        bus = ElectionEventBus()
        bus.emit(ClientEvent.ERROR, ErrorInfo(cause=NodeExistsError("/election")))
        assert "Unhandled election error" in caplog.text


class TestErrorInfo:
    def test_code_from_coordination_error(self):
        assert ErrorInfo(cause=NodeExistsError("/election")).code == "NODE_EXISTS"

    def test_code_falls_back_to_type_name(self):
        assert ErrorInfo(cause=ValueError("bad")).code == "ValueError"
