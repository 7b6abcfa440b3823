"""Tests for the PeerXO session state machine."""

import pytest

from peerxo.chat import ChatOrigin
from peerxo.game import GameStatus, Mark
from peerxo.session import PeerSession, SessionState
from peerxo.transport import (
    ChannelClosed,
    ChannelData,
    ChannelFailed,
    ChannelOpened,
    EndpointFailed,
    EndpointOpened,
    IncomingConnection,
    TransportConfig,
    TransportError,
)


class StubChannel:
    def __init__(self):
        self.open = False
        self.sent = []
        self.close_calls = 0

    def send(self, payload):
        self.sent.append(payload)

    def close(self):
        self.close_calls += 1
        self.open = False


class StubEndpoint:
    def __init__(self, peer_id):
        self.id = peer_id
        self.connects = []
        self.destroyed = False
        self.fail_on_destroy = False

    def connect(self, target_id, reliable=True):
        channel = StubChannel()
        self.connects.append((target_id, channel))
        return channel

    def destroy(self):
        self.destroyed = True
        if self.fail_on_destroy:
            raise RuntimeError("already gone")


class StubTransport:
    def __init__(self):
        self.endpoints = []
        self.configs = []
        self.refuse = False

    def open_endpoint(self, config, listener):
        if self.refuse:
            raise TransportError("Broker unreachable")
        endpoint = StubEndpoint(f"PEER{len(self.endpoints)}")
        self.endpoints.append(endpoint)
        self.configs.append(config)
        return endpoint


def _open(session, channel):
    channel.open = True
    session.handle(ChannelOpened(channel))


def _hosting():
    transport = StubTransport()
    session = PeerSession(transport)
    assert session.start_hosting("Al")
    endpoint = transport.endpoints[-1]
    session.handle(EndpointOpened(endpoint, endpoint.id))
    return session, transport, endpoint


def _connected_host():
    session, transport, endpoint = _hosting()
    channel = StubChannel()
    session.handle(IncomingConnection(endpoint, channel))
    _open(session, channel)
    return session, endpoint, channel


def _connected_guest():
    transport = StubTransport()
    session = PeerSession(transport)
    assert session.join_game("Bo", "PEER9")
    endpoint = transport.endpoints[-1]
    session.handle(EndpointOpened(endpoint, endpoint.id))
    _, channel = endpoint.connects[-1]
    _open(session, channel)
    return session, endpoint, channel


def test_session_starts_idle():
    session = PeerSession(StubTransport())
    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.connection_label == "Idle"
    assert session.status_message == "Connect two peers to start playing."
    assert session.chat_placeholder == "Connect to enable chat"


@pytest.mark.parametrize("username", ["", "   "])
def test_hosting_requires_username(username):
    transport = StubTransport()
    session = PeerSession(transport)
    assert not session.start_hosting(username)
    assert session.state is SessionState.IDLE
    assert session.error_message == "Choose a username first."
    assert transport.endpoints == []


def test_hosting_with_username():
    session, transport, endpoint = _hosting()
    assert session.state is SessionState.HOSTING
    assert session.local_mark is Mark.X
    assert session.host_id == endpoint.id
    assert session.info_message == "Share your host ID with a friend to let them join."
    assert session.error_message is None
    assert session.connection_label == "Hosting (waiting for opponent)..."


def test_config_is_passed_to_transport():
    transport = StubTransport()
    session = PeerSession(transport)
    config = TransportConfig(host="broker.example", port=9000, secure=True)
    session.start_hosting("Al", config)
    assert transport.configs == [config]


def test_join_requires_target():
    transport = StubTransport()
    session = PeerSession(transport)
    assert not session.join_game("Bo", "  ")
    assert session.state is SessionState.IDLE
    assert session.error_message == "Enter a host ID to join."
    assert transport.endpoints == []


def test_join_connects_once_endpoint_is_open():
    transport = StubTransport()
    session = PeerSession(transport)
    assert session.join_game("Bo", " host01 ")
    assert session.state is SessionState.JOINING
    assert session.local_mark is Mark.O
    assert session.connection_label == "Connecting to host..."

    endpoint = transport.endpoints[-1]
    assert endpoint.connects == []
    session.handle(EndpointOpened(endpoint, endpoint.id))
    target, channel = endpoint.connects[-1]
    assert target == "HOST01"

    _open(session, channel)
    assert session.state is SessionState.CONNECTED
    assert session.connection_label == "Connected as O"
    assert channel.sent == [{"type": "join", "username": "Bo"}]


def test_transport_refusal_returns_to_idle():
    transport = StubTransport()
    transport.refuse = True
    session = PeerSession(transport)
    assert not session.start_hosting("Al")
    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.error_message == "Broker unreachable"


def test_host_channel_open_does_not_send_join():
    session, _, channel = _connected_host()
    assert session.state is SessionState.CONNECTED
    assert session.info_message == "Peers connected. Have fun!"
    assert channel.sent == []


def test_host_answers_join_with_snapshot():
    session, _, channel = _connected_host()
    session.handle(ChannelData(channel, {"type": "join", "username": "Bo"}))
    assert session.opponent_name == "Bo"
    assert session.info_message == "Bo joined your lobby."
    (reply,) = channel.sent
    assert reply["type"] == "host-ready"
    assert reply["youAre"] == "O"
    assert reply["username"] == "Al"


def test_second_inbound_connection_is_rejected():
    session, endpoint, first = _connected_host()
    second = StubChannel()
    session.handle(IncomingConnection(endpoint, second))
    assert second.close_calls == 1
    assert first.close_calls == 0
    assert session.state is SessionState.CONNECTED

    session.handle(ChannelData(first, {"type": "move", "cellIndex": 4}))
    assert session.snapshot.board[4] is Mark.X


def test_second_inbound_while_pending_is_rejected():
    session, _, endpoint = _hosting()
    pending = StubChannel()
    session.handle(IncomingConnection(endpoint, pending))
    extra = StubChannel()
    session.handle(IncomingConnection(endpoint, extra))
    assert extra.close_calls == 1
    _open(session, pending)
    assert session.state is SessionState.CONNECTED


def test_host_survives_pre_open_failure():
    session, _, endpoint = _hosting()
    bad = StubChannel()
    session.handle(IncomingConnection(endpoint, bad))
    session.handle(ChannelFailed(bad, "ice failed"))

    assert session.state is SessionState.HOSTING
    assert session.local_mark is Mark.X
    assert session.error_message == "Negotiation failed: ice failed"
    assert session.info_message == "Still hosting. Waiting for another opponent."
    assert bad.close_calls == 1
    assert not endpoint.destroyed

    good = StubChannel()
    session.handle(IncomingConnection(endpoint, good))
    _open(session, good)
    assert session.state is SessionState.CONNECTED


def test_host_survives_pre_open_close():
    session, _, endpoint = _hosting()
    bad = StubChannel()
    session.handle(IncomingConnection(endpoint, bad))
    session.handle(ChannelClosed(bad))
    assert session.state is SessionState.HOSTING
    assert session.error_message == "Connection closed before it could be established."


def test_joiner_pre_open_failure_returns_to_idle():
    transport = StubTransport()
    session = PeerSession(transport)
    session.join_game("Bo", "HOST01")
    endpoint = transport.endpoints[-1]
    session.handle(EndpointOpened(endpoint, endpoint.id))
    _, channel = endpoint.connects[-1]

    session.handle(ChannelClosed(channel))

    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.info_message is None
    assert session.error_message == "Connection closed before it could be established."
    assert endpoint.destroyed


def test_post_open_close_tears_everything_down():
    session, endpoint, channel = _connected_guest()
    session.handle(
        ChannelData(
            channel, {"type": "chat", "message": "hi", "username": "Al", "timestamp": 1}
        )
    )
    assert len(session.chat) == 1

    session.handle(ChannelClosed(channel))

    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.opponent_name == ""
    assert len(session.chat) == 0
    assert session.info_message == "Peer disconnected."
    assert endpoint.destroyed
    assert channel.close_calls == 1


def test_post_open_error_uses_reason():
    session, endpoint, channel = _connected_host()
    session.handle(ChannelFailed(channel, "Connection reset"))
    assert session.state is SessionState.IDLE
    assert session.info_message == "Connection reset"
    assert endpoint.destroyed


def test_cancel_while_hosting():
    session, _, endpoint = _hosting()
    session.cancel()
    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.host_id == ""
    assert session.info_message == "Session cancelled."
    assert endpoint.destroyed


def test_teardown_swallows_transport_errors():
    session, endpoint, channel = _connected_host()
    endpoint.fail_on_destroy = True

    def broken_close():
        raise RuntimeError("socket already closed")

    channel.close = broken_close
    session.cancel()
    assert session.state is SessionState.IDLE


def test_events_from_stale_channel_are_ignored():
    session, endpoint, channel = _connected_host()
    session.cancel()
    session.handle(ChannelData(channel, {"type": "move", "cellIndex": 0}))
    session.handle(ChannelClosed(channel))
    assert session.snapshot.move_count == 0
    assert session.info_message == "Session cancelled."


def test_new_session_tears_down_previous_one():
    session, endpoint, channel = _connected_host()
    session.handle(
        ChannelData(
            channel, {"type": "chat", "message": "hi", "username": "Bo", "timestamp": 1}
        )
    )
    session.handle(ChannelData(channel, {"type": "move", "cellIndex": 4}))

    assert session.join_game("Al", "ELSEWHERE")
    assert endpoint.destroyed
    assert channel.close_calls == 1
    assert len(session.chat) == 0
    assert session.snapshot.move_count == 0
    assert session.state is SessionState.JOINING


def test_endpoint_error_while_joining_ends_session():
    transport = StubTransport()
    session = PeerSession(transport)
    session.join_game("Bo", "HOST01")
    endpoint = transport.endpoints[-1]
    session.handle(EndpointFailed(endpoint, "Could not connect to peer HOST01"))
    assert session.state is SessionState.IDLE
    assert session.error_message == "Could not connect to peer HOST01"


def test_endpoint_error_while_connected_keeps_channel():
    session, endpoint, channel = _connected_host()
    session.handle(EndpointFailed(endpoint, "Lost connection to broker"))
    assert session.state is SessionState.CONNECTED
    assert session.error_message == "Lost connection to broker"
    assert channel.close_calls == 0


def test_cell_clicks_are_guarded():
    session = PeerSession(StubTransport())
    assert not session.click_cell(0)
    assert session.snapshot.move_count == 0

    guest, _, channel = _connected_guest()
    # X moves first, so the joiner has to wait
    assert not guest.is_players_turn
    assert not guest.click_cell(0)
    assert guest.error_message == "That cell cannot be played right now."
    assert channel.sent == [{"type": "join", "username": "Bo"}]


def test_local_move_is_sent():
    session, _, channel = _connected_host()
    assert session.is_players_turn
    assert session.status_message == "Turn: X"
    assert session.click_cell(4)
    assert channel.sent == [{"type": "move", "cellIndex": 4}]
    assert session.snapshot.board[4] is Mark.X
    assert not session.click_cell(5)  # now O's turn
    assert session.remote_mark is Mark.O


def test_game_result_messages():
    session, _, channel = _connected_host()
    for index, remote in ((0, False), (3, True), (1, False), (4, True), (2, False)):
        if remote:
            session.handle(ChannelData(channel, {"type": "move", "cellIndex": index}))
        else:
            assert session.click_cell(index)
    assert session.snapshot.status is GameStatus.WON
    assert session.status_message == "Winner: X"
    assert not session.can_play_cell(5)


def test_reset_only_announced_when_connected():
    idle = PeerSession(StubTransport())
    idle.engine.play_move(0)
    assert idle.reset_game().move_count == 0

    session, _, channel = _connected_host()
    session.click_cell(0)
    channel.sent.clear()
    snapshot = session.reset_game()
    assert snapshot.move_count == 0
    assert channel.sent == [{"type": "reset"}]

    session.reset_game(announce=False)
    assert channel.sent == [{"type": "reset"}]


def test_chat_requires_connection_and_text():
    idle = PeerSession(StubTransport())
    assert idle.send_chat("hello") is None

    session, _, channel = _connected_host()
    assert session.send_chat("   ") is None
    message = session.send_chat("  good luck ")
    assert message.text == "good luck"
    assert message.origin is ChatOrigin.SELF
    assert session.chat.messages == (message,)
    assert channel.sent[-1]["type"] == "chat"
    assert channel.sent[-1]["message"] == "good luck"
    assert session.chat_placeholder == "Send a message to your opponent"


def test_close_releases_transport():
    session, endpoint, channel = _connected_host()
    session.close()
    assert endpoint.destroyed
    assert channel.close_calls == 1
    assert session.state is SessionState.IDLE
    assert session.local_mark is None
    assert session.opponent_name == ""
    assert not session.click_cell(4)
    assert session.snapshot.board[4] is None
    assert channel.sent == []
