"""The agent: keeps a connection to the server and serves its requests."""

from __future__ import annotations

import logging
import random
import socket
import ssl
import struct
import threading
import time
from contextlib import suppress
from dataclasses import dataclass

import psutil

from .cmd import CommandRunner
from .filetransfer import FileContext, handle_file_msg
from .httpproxy import handle_http_msg
from .proto import (
    HEARTBEAT_ATTR_UPTIME,
    MessageStream,
    MsgType,
    ProtocolError,
    RegAttr,
    Role,
    encode_attr,
    msg_type_name,
)
from .terminal import Terminal, login_argv

log = logging.getLogger(__name__)

PROTO_VERSION = 5
TERM_LIMIT = 10
TERM_TIMEOUT = 600.0
HEARTBEAT_TIMEOUT = 3.0
CONNECT_TIMEOUT = 5.0
REGISTER_TIMEOUT = 5.0
SID_LEN = 32
READ_SIZE = 32 * 1024

_SEND_ERRORS = (OSError, ValueError, ProtocolError)


@dataclass
class ClientOptions:
    host: str = "localhost"
    port: int = 5912
    id: str = ""
    group: str = ""
    description: str = ""
    token: str = ""
    heartbeat: int = 30
    reconnect: bool = False
    ssl: bool = False
    insecure: bool = False
    cacert: str = ""
    sslcert: str = ""
    sslkey: str = ""
    username: str = ""


def build_register_payload(options: ClientOptions) -> bytes:
    """Build the body of the register message."""
    parts = [
        bytes((PROTO_VERSION,)),
        encode_attr(RegAttr.HEARTBEAT, options.heartbeat, 1),
        encode_attr(RegAttr.DEVID, options.id),
    ]
    for attr, value in (
        (RegAttr.GROUP, options.group),
        (RegAttr.DESCRIPTION, options.description),
        (RegAttr.TOKEN, options.token),
    ):
        if value:
            parts.append(encode_attr(attr, value))
    return b"".join(parts)


def _open_terminal(username: str) -> Terminal:
    return Terminal(login_argv(username))


def _uptime() -> int:
    return max(0, int(time.time() - psutil.boot_time())) & 0xFFFFFFFF


class TermSession:
    """A terminal opened on behalf of one browser session."""

    def __init__(self, client, sid: str, terminal) -> None:
        self.client = client
        self.sid = sid
        self.terminal = terminal
        self.file_context = FileContext(self)
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def _on_timeout(self) -> None:
        log.info("tty %s inactive over %ss, now kill it", self.sid, TERM_TIMEOUT)
        self.terminal.close()

    def _new_timer(self) -> threading.Timer:
        timer = threading.Timer(TERM_TIMEOUT, self._on_timeout)
        timer.daemon = True
        timer.start()
        return timer

    def stop_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def active(self) -> None:
        """Restart the inactivity timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = self._new_timer()

    def write(self, data) -> int:
        """Forward terminal output to the server, with flow control."""
        data = bytes(data)
        self.active()
        if self.file_context.detect(data):
            return len(data)
        self.client.write_msg(MsgType.TERMDATA, self.sid, data)
        self.terminal.wait_ack(len(data))
        return len(data)

    def run(self) -> None:
        """Copy terminal output to the server until the terminal ends."""
        with self._lock:
            self._timer = self._new_timer()
        try:
            while True:
                chunk = self.terminal.read(READ_SIZE)
                if not chunk:
                    break
                self.write(chunk)
        except _SEND_ERRORS as err:
            log.debug("tty %s stopped: %s", self.sid, err)
        self.close()

    def close(self) -> None:
        """End the session and tell the server, unless already ended."""
        if self.client._discard_session(self.sid, self) is None:
            return
        self.stop_timer()
        with suppress(*_SEND_ERRORS):
            self.client.write_msg(MsgType.LOGOUT, self.sid)
        self.terminal.close()
        log.info("delete tty %s", self.sid)


class RttyClient:
    """Connection to the server and dispatch of its messages."""

    def __init__(self, options: ClientOptions) -> None:
        self.options = options
        self.sessions: dict[str, TermSession] = {}
        self.http_conns: dict = {}
        self.ntty = 0
        self.waiting_heartbeat = False
        self.terminal_factory = _open_terminal
        self.commands = CommandRunner(self.write_msg)
        self._lock = threading.Lock()
        self._sock = None
        self._file = None
        self._stream: MessageStream | None = None
        self._heartbeat_stop: threading.Event | None = None
        self._last_heartbeat: float | None = None
        self._handlers = {
            MsgType.HEARTBEAT: self._handle_heartbeat,
            MsgType.LOGIN: self._handle_login,
            MsgType.LOGOUT: self._handle_logout,
            MsgType.TERMDATA: self._handle_termdata,
            MsgType.WINSIZE: self._handle_winsize,
            MsgType.ACK: self._handle_ack,
            MsgType.FILE: lambda data: handle_file_msg(self, data),
            MsgType.CMD: self.commands.handle,
            MsgType.HTTP: lambda data: handle_http_msg(self, data),
        }

    def _tls_context(self) -> ssl.SSLContext:
        opts = self.options
        try:
            ctx = ssl.create_default_context(cafile=opts.cacert or None)
        except OSError as err:
            raise OSError(f"load cacert fail: {err}") from err
        if opts.insecure:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        if opts.sslcert and opts.sslkey:
            try:
                ctx.load_cert_chain(opts.sslcert, opts.sslkey)
            except OSError as err:
                raise OSError(f"load cert and key fail: {err}") from err
        return ctx

    def connect(self) -> None:
        """Open the connection to the server."""
        opts = self.options
        ctx = self._tls_context() if opts.ssl else None
        try:
            sock = socket.create_connection((opts.host, opts.port), timeout=CONNECT_TIMEOUT)
            if ctx is not None:
                try:
                    sock = ctx.wrap_socket(sock, server_hostname=opts.host)
                except BaseException:
                    sock.close()
                    raise
        except OSError as err:
            raise ConnectionError(f"failed to connect to {opts.host}:{opts.port}: {err}") from err
        sock.settimeout(None)
        self._sock = sock
        self._file = sock.makefile("rwb")
        self._stream = MessageStream(Role.RTTY, self._file)
        log.info("Connected to %s:%d", opts.host, opts.port)

    def register(self) -> None:
        self.write_msg(MsgType.REGISTER, build_register_payload(self.options))

    def _require_stream(self) -> MessageStream:
        if self._stream is None:
            raise ConnectionError("not connected")
        return self._stream

    def read_msg(self) -> tuple[int, bytes]:
        return self._require_stream().read()

    def write_msg(self, typ, *args) -> None:
        self._require_stream().write(typ, *args)

    def send_file_msg(self, sid: str, typ, data) -> None:
        self.write_msg(MsgType.FILE, sid, int(typ), data)

    def send_http_msg(self, saddr, data) -> None:
        self.write_msg(MsgType.HTTP, saddr, data)

    def handle_message(self, typ: int, data) -> None:
        """Dispatch one message from the server; unknown types raise."""
        handler = self._handlers.get(typ)
        if handler is None:
            raise ProtocolError(f"unexpected message '{msg_type_name(typ)}'")
        handler(bytes(data))
        self.waiting_heartbeat = False

    def run(self) -> None:
        """Serve the server until the connection ends, reconnecting if asked to."""
        while True:
            try:
                self._serve()
            except (OSError, EOFError, ValueError, ProtocolError) as err:
                log.error("%s", err)
            finally:
                self.close()
            if not self.options.reconnect:
                return
            delay = random.randint(5, 14)
            log.error("Reconnecting in %d seconds...", delay)
            time.sleep(delay)

    def _serve(self) -> None:
        self.connect()
        self.register()

        self._sock.settimeout(REGISTER_TIMEOUT)
        typ, data = self.read_msg()
        if typ != MsgType.REGISTER:
            raise ProtocolError(f"register msg expected first, got {msg_type_name(typ)}")
        if data[0] != 0:
            raise ProtocolError(f"register failed: {data[1:].decode(errors='replace')}")
        log.info("registered successfully")
        self._sock.settimeout(None)

        self._start_heartbeat()

        while True:
            typ, data = self.read_msg()
            log.debug("recv msg: %s", msg_type_name(typ))
            self.handle_message(typ, data)

    def _start_heartbeat(self) -> None:
        stop = threading.Event()
        with self._lock:
            self._heartbeat_stop = stop
            self._last_heartbeat = None
        threading.Thread(target=self._heartbeat_loop, args=(stop,), daemon=True).start()

    def _heartbeat_loop(self, stop: threading.Event) -> None:
        interval = float(self.options.heartbeat)
        delay = interval
        while not stop.wait(delay):
            if self.waiting_heartbeat:
                log.error("heartbeat timeout")
                self._shutdown_socket()
                return
            now = time.monotonic()
            if self._last_heartbeat is not None and now - self._last_heartbeat < interval:
                delay = interval - (now - self._last_heartbeat)
                continue
            try:
                self.write_msg(
                    MsgType.HEARTBEAT, encode_attr(HEARTBEAT_ATTR_UPTIME, _uptime(), 4)
                )
            except _SEND_ERRORS as err:
                log.error("failed to send heartbeat: %s", err)
                return
            self._last_heartbeat = now
            self.waiting_heartbeat = True
            delay = HEARTBEAT_TIMEOUT
            log.debug("send msg: heartbeat")

    def _shutdown_socket(self) -> None:
        if self._sock is not None:
            with suppress(OSError):
                self._sock.shutdown(socket.SHUT_RDWR)

    def _discard_session(self, sid: str, expected=None):
        with self._lock:
            session = self.sessions.get(sid)
            if session is None or (expected is not None and session is not expected):
                return None
            del self.sessions[sid]
            self.ntty -= 1
            return session

    def close(self) -> None:
        """Stop the heartbeat, end all sessions and proxies and drop the connection."""
        with self._lock:
            self.waiting_heartbeat = False
            if self._heartbeat_stop is not None:
                self._heartbeat_stop.set()
                self._heartbeat_stop = None
            sessions = list(self.sessions.values())
            self.sessions.clear()
            self.ntty = 0
            conns = list(self.http_conns.values())

        for session in sessions:
            session.stop_timer()
            session.terminal.close()
            with suppress(OSError):
                session.file_context.reset()

        for conn in conns:
            conn.cancel()

        self._stream = None
        self._shutdown_socket()
        if self._file is not None:
            with suppress(OSError, ValueError):
                self._file.close()
            self._file = None
        if self._sock is not None:
            with suppress(OSError):
                self._sock.close()
            self._sock = None

    def _session(self, data: bytes):
        sid = data[:SID_LEN].decode(errors="replace")
        session = self.sessions.get(sid)
        if session is None:
            log.error("terminal session %s not found", sid)
        return session

    def _handle_heartbeat(self, data: bytes) -> None:
        pass

    def _handle_login(self, data: bytes) -> None:
        sid = data.decode(errors="replace")
        ret = 0
        with self._lock:
            full = self.ntty >= TERM_LIMIT
        if full:
            log.error("maximum number of TTYs reached: %d", TERM_LIMIT)
            ret = 1
        else:
            try:
                terminal = self.terminal_factory(self.options.username)
            except OSError as err:
                log.error("failed to create terminal: %s", err)
                ret = 1
            else:
                session = TermSession(self, sid, terminal)
                with self._lock:
                    log.info("new tty: %d/%d %s", self.ntty, TERM_LIMIT, sid)
                    self.sessions[sid] = session
                    self.ntty += 1
                threading.Thread(target=session.run, daemon=True).start()
        self.write_msg(MsgType.LOGIN, sid, ret)

    def _handle_logout(self, data: bytes) -> None:
        sid = data.decode(errors="replace")
        session = self._discard_session(sid)
        if session is None:
            log.error("tty session %s not found", sid)
            return
        log.info("delete tty %s", sid)
        session.stop_timer()
        session.terminal.close()

    def _handle_termdata(self, data: bytes) -> None:
        session = self._session(data)
        if session is None:
            return
        with suppress(OSError):
            session.terminal.write(data[SID_LEN:])
        session.active()

    def _handle_winsize(self, data: bytes) -> None:
        session = self._session(data)
        if session is None:
            return
        cols, rows = struct.unpack(">HH", data[SID_LEN:SID_LEN + 4])
        try:
            session.terminal.set_winsize(cols, rows)
        except OSError as err:
            log.error("failed to set terminal size for %s: %s", session.sid, err)
            raise
        log.debug("setting terminal %s size to %dx%d", session.sid, cols, rows)

    def _handle_ack(self, data: bytes) -> None:
        session = self._session(data)
        if session is None:
            return
        (n,) = struct.unpack(">H", data[SID_LEN:SID_LEN + 2])
        session.terminal.ack(n)