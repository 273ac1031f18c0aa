import socket
import struct
import threading

import pytest

from rtty.client import (
    TERM_LIMIT,
    ClientOptions,
    RttyClient,
    build_register_payload,
)
from rtty.proto import MessageStream, MsgType, ProtocolError, RegAttr, Role, encode_attr

SID = "a" * 32


class FakeTerminal:
    def __init__(self):
        self.written = []
        self.acked = []
        self.winsizes = []
        self.pending = 0
        self.closed = threading.Event()

    def read(self, size=4096):
        self.closed.wait(5)
        return b""

    def write(self, data):
        self.written.append(bytes(data))
        return len(data)

    def set_winsize(self, cols, rows):
        self.winsizes.append((cols, rows))

    def ack(self, n):
        self.acked.append(n)

    def wait_ack(self, length):
        self.pending += length

    def close(self):
        self.closed.set()


def make_factory(terminals):
    def factory(username):
        terminal = FakeTerminal()
        terminals.append(terminal)
        return terminal

    return factory


@pytest.fixture
def connected():
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(5)
    port = listener.getsockname()[1]
    client = RttyClient(ClientOptions(host="127.0.0.1", port=port, id="dev1"))
    terminals = []
    client.terminal_factory = make_factory(terminals)
    client.connect()
    server, _ = listener.accept()
    server.settimeout(5)
    server_file = server.makefile("rwb")
    stream = MessageStream(Role.RTTYS, server_file)
    yield client, stream, terminals
    client.close()
    server_file.close()
    server.close()
    listener.close()


def login(client, stream):
    client.handle_message(MsgType.LOGIN, SID.encode())
    return stream.read()


def test_register_payload_wire_format():
    payload = build_register_payload(ClientOptions(id="dev1", heartbeat=30))
    assert payload == b"\x05\x00\x00\x01\x1e\x01\x00\x04dev1"


def test_register_payload_optional_attrs_in_order():
    options = ClientOptions(id="dev1", group="g1", description="desc", token="token")
    payload = build_register_payload(options)
    tail = (
        encode_attr(RegAttr.GROUP, "g1")
        + encode_attr(RegAttr.DESCRIPTION, "desc")
        + encode_attr(RegAttr.TOKEN, "token")
    )
    assert payload.endswith(tail)
    assert payload == build_register_payload(ClientOptions(id="dev1")) + tail


def test_register_sends_payload(connected):
    client, stream, _ = connected
    client.register()
    assert stream.read() == (MsgType.REGISTER, build_register_payload(client.options))


def test_login_creates_session(connected):
    client, stream, terminals = connected
    assert login(client, stream) == (MsgType.LOGIN, SID.encode() + b"\x00")
    assert client.ntty == 1
    assert list(client.sessions) == [SID]
    assert client.sessions[SID].terminal is terminals[0]


def test_login_rejected_at_limit(connected):
    client, stream, terminals = connected
    client.ntty = TERM_LIMIT
    assert login(client, stream) == (MsgType.LOGIN, SID.encode() + b"\x01")
    assert client.sessions == {}
    assert terminals == []


def test_login_rejected_when_terminal_fails(connected):
    client, stream, _ = connected

    def failing(username):
        raise OSError("no pty")

    client.terminal_factory = failing
    assert login(client, stream) == (MsgType.LOGIN, SID.encode() + b"\x01")
    assert client.ntty == 0


def test_termdata_goes_to_terminal(connected):
    client, stream, terminals = connected
    login(client, stream)
    client.handle_message(MsgType.TERMDATA, SID.encode() + b"ls\n")
    assert terminals[0].written == [b"ls\n"]


def test_winsize_sets_terminal_size(connected):
    client, stream, terminals = connected
    login(client, stream)
    client.handle_message(MsgType.WINSIZE, SID.encode() + struct.pack(">HH", 80, 24))
    assert terminals[0].winsizes == [(80, 24)]


def test_ack_reaches_terminal(connected):
    client, stream, terminals = connected
    login(client, stream)
    client.handle_message(MsgType.ACK, SID.encode() + struct.pack(">H", 100))
    assert terminals[0].acked == [100]


def test_logout_closes_session(connected):
    client, stream, terminals = connected
    login(client, stream)
    client.handle_message(MsgType.LOGOUT, SID.encode())
    assert client.sessions == {}
    assert client.ntty == 0
    assert terminals[0].closed.is_set()


def test_unknown_message_raises(connected):
    client, _, _ = connected
    with pytest.raises(ProtocolError):
        client.handle_message(42, b"")


def test_session_write_sends_termdata(connected):
    client, stream, terminals = connected
    login(client, stream)
    session = client.sessions[SID]
    assert session.write(b"hello") == 5
    assert stream.read() == (MsgType.TERMDATA, SID.encode() + b"hello")
    assert terminals[0].pending == 5


def test_session_close_sends_logout(connected):
    client, stream, terminals = connected
    login(client, stream)
    client.sessions[SID].close()
    assert stream.read() == (MsgType.LOGOUT, SID.encode())
    assert client.ntty == 0
    assert terminals[0].closed.is_set()


def test_write_without_connection_raises():
    client = RttyClient(ClientOptions())
    with pytest.raises(ConnectionError):
        client.write_msg(MsgType.HEARTBEAT, b"")


def run_against(serve):
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(5)
    port = listener.getsockname()[1]
    client = RttyClient(ClientOptions(host="127.0.0.1", port=port, id="dev1"))
    terminals = []
    client.terminal_factory = make_factory(terminals)

    def handler():
        conn, _ = listener.accept()
        conn.settimeout(5)
        with conn, conn.makefile("rwb") as f:
            serve(MessageStream(Role.RTTYS, f))

    thread = threading.Thread(target=handler)
    thread.start()
    try:
        client.run()
    finally:
        thread.join(5)
        listener.close()
    return client, terminals


def test_run_stops_when_registration_is_rejected():
    received = []

    def serve(stream):
        received.append(stream.read())
        stream.write(MsgType.REGISTER, 1, b"bad")

    client, _ = run_against(serve)
    assert received == [(MsgType.REGISTER, build_register_payload(client.options))]
    assert client.sessions == {}


def test_run_serves_login_then_cleans_up():
    replies = []

    def serve(stream):
        stream.read()
        stream.write(MsgType.REGISTER, 0)
        stream.write(MsgType.LOGIN, SID)
        replies.append(stream.read())

    client, terminals = run_against(serve)
    assert replies == [(MsgType.LOGIN, SID.encode() + b"\x00")]
    assert client.sessions == {}
    assert client.ntty == 0
    assert terminals[0].closed.is_set()