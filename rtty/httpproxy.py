"""Forwarding of HTTP(S) requests from the server to hosts on the local network."""

from __future__ import annotations

import ipaddress
import logging
import queue
import socket
import ssl
import struct
import threading
import time
from contextlib import suppress
from typing import NamedTuple

from .proto import ProtocolError

log = logging.getLogger(__name__)

SADDR_LEN = 18
HEADER_LEN = 1 + SADDR_LEN + 6
HTTP_TIMEOUT = 30.0
CONNECT_TIMEOUT = 3.0
CHECK_INTERVAL = 5.0
BUF_SIZE = 32 * 1024
QUEUE_SIZE = 100
_PUSH_RETRY = 0.5


class HttpMessage(NamedTuple):
    is_https: bool
    saddr: bytes
    daddr: str
    dport: int
    payload: bytes


def parse_http_msg(data) -> HttpMessage:
    """Split an HTTP message into scheme flag, source key, target and payload."""
    data = bytes(data)
    if len(data) < HEADER_LEN:
        raise ValueError(f"http message too short: {len(data)} bytes")
    is_https = data[0] == 1
    saddr = data[1:1 + SADDR_LEN]
    rest = data[1 + SADDR_LEN:]
    daddr = str(ipaddress.IPv4Address(rest[:4]))
    (dport,) = struct.unpack(">H", rest[4:6])
    return HttpMessage(is_https, saddr, daddr, dport, rest[6:])


def handle_http_msg(client, data) -> None:
    """Route an HTTP message to its connection, opening one when needed.

    An empty payload for a known source closes that connection.
    """
    msg = parse_http_msg(data)
    conn = HttpProxyConnection()
    existing = client.http_conns.setdefault(msg.saddr, conn)

    if existing is not conn:
        if not msg.payload:
            existing.cancel()
        else:
            existing.push(msg.payload)
        return

    if not msg.payload:
        if client.http_conns.get(msg.saddr) is conn:
            client.http_conns.pop(msg.saddr, None)
        return

    conn.push(msg.payload)
    threading.Thread(
        target=conn.run,
        args=(client, msg.is_https, msg.saddr, msg.daddr, msg.dport),
        daemon=True,
    ).start()


class HttpProxyConnection:
    """One proxied TCP (or TLS) connection to a local web server."""

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue(QUEUE_SIZE)
        self._cancelled = threading.Event()
        self._deadline = 0.0
        self._sock = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _touch(self) -> None:
        self._deadline = time.monotonic() + HTTP_TIMEOUT

    def push(self, data) -> None:
        """Queue request data for the target; dropped once the connection ends."""
        data = bytes(data)
        while not self._cancelled.is_set():
            try:
                self._queue.put(data, timeout=_PUSH_RETRY)
                return
            except queue.Full:
                continue

    def cancel(self) -> None:
        """Ask the connection to shut down."""
        self._cancelled.set()
        with suppress(queue.Full):
            self._queue.put_nowait(None)

    def write(self, data) -> int:
        """Send data to the target and extend the idle deadline."""
        self._touch()
        if self._sock is None:
            raise OSError("not connected")
        self._sock.sendall(data)
        return len(data)

    @staticmethod
    def _dial(is_https: bool, daddr: str, dport: int):
        raw = socket.create_connection((daddr, dport), timeout=CONNECT_TIMEOUT)
        try:
            sock = raw
            if is_https:
                ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
                sock = ctx.wrap_socket(raw, server_hostname=daddr)
            sock.settimeout(None)
            return sock
        except BaseException:
            raw.close()
            raise

    def _discard(self, client, saddr) -> None:
        if client.http_conns.get(saddr) is self:
            client.http_conns.pop(saddr, None)

    def run(self, client, is_https: bool, saddr, daddr: str, dport: int) -> None:
        """Connect to the target and relay its responses back to the server."""
        try:
            sock = self._dial(is_https, daddr, dport)
        except OSError as err:
            log.error("Failed to connect to target address: %s", err)
            self._discard(client, saddr)
            self._cancelled.set()
            with suppress(OSError, ValueError, ProtocolError):
                client.send_http_msg(saddr, None)
            return

        self._sock = sock
        try:
            threading.Thread(target=self._loop, daemon=True).start()
            while True:
                try:
                    chunk = sock.recv(BUF_SIZE)
                except OSError:
                    chunk = b""
                try:
                    client.send_http_msg(saddr, chunk)
                except (OSError, ValueError, ProtocolError) as err:
                    log.error("send http msg fail: %s", err)
                    return
                if not chunk:
                    return
                self._touch()
        finally:
            self._discard(client, saddr)
            self.cancel()

    def _loop(self) -> None:
        try:
            while True:
                try:
                    data = self._queue.get(timeout=CHECK_INTERVAL)
                except queue.Empty:
                    if time.monotonic() > self._deadline:
                        return
                    continue
                if data is None or self._cancelled.is_set():
                    return
                try:
                    self.write(data)
                except OSError:
                    return
        finally:
            self._cancelled.set()
            sock = self._sock
            if sock is not None:
                with suppress(OSError):
                    sock.shutdown(socket.SHUT_RDWR)
                with suppress(OSError):
                    sock.close()
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break