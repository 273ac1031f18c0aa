import fcntl
import select
import struct
import termios
import threading
import time

import pytest

from rtty.terminal import ACK_BLOCK, Terminal, login_argv


def _read_until(term, needle, timeout=5.0):
    buf = b""
    deadline = time.monotonic() + timeout
    while needle not in buf and time.monotonic() < deadline:
        ready, _, _ = select.select([term.fd], [], [], 0.1)
        if ready:
            chunk = term.read(1024)
            if not chunk:
                break
            buf += chunk
    return buf


def _read_to_eof(term, timeout=5.0):
    buf = b""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        ready, _, _ = select.select([term.fd], [], [], 0.1)
        if ready:
            chunk = term.read(1024)
            if not chunk:
                return buf, True
            buf += chunk
    return buf, False


@pytest.fixture
def cat_terminal():
    term = Terminal(["/bin/cat"])
    yield term
    term.close()


def test_login_argv_with_user():
    assert login_argv("alice") == ["/bin/login", "-f", "alice"]


def test_login_argv_without_user():
    assert login_argv("") == ["/bin/login"]
    assert login_argv(None) == ["/bin/login"]


def test_write_is_echoed(cat_terminal):
    assert cat_terminal.write(b"ping\n") == 5
    out = _read_until(cat_terminal, b"ping")
    assert b"ping" in out


def test_set_winsize(cat_terminal):
    cat_terminal.set_winsize(80, 24)
    raw = fcntl.ioctl(cat_terminal.fd, termios.TIOCGWINSZ, bytes(8))
    rows, cols, _, _ = struct.unpack("HHHH", raw)
    assert (cols, rows) == (80, 24)


def test_read_returns_empty_when_child_exits():
    term = Terminal(["/bin/sh", "-c", "echo done"])
    try:
        out, eof = _read_to_eof(term)
        assert eof
        assert b"done" in out
    finally:
        term.close()


def test_close_is_idempotent_and_ends_reads(cat_terminal):
    cat_terminal.close()
    cat_terminal.close()
    assert cat_terminal.closed
    assert cat_terminal.read(10) == b""
    with pytest.raises(OSError):
        cat_terminal.write(b"x")


def test_wait_ack_below_block_does_not_wait(cat_terminal):
    cat_terminal.wait_ack(100)
    assert cat_terminal.pending == 100
    cat_terminal.ack(100)
    assert cat_terminal.pending == 0


def test_wait_ack_blocks_until_acked(cat_terminal):
    worker = threading.Thread(target=cat_terminal.wait_ack, args=(ACK_BLOCK + 1000,))
    worker.start()
    time.sleep(0.2)
    assert worker.is_alive()
    cat_terminal.ack(1000)
    worker.join(timeout=2)
    assert not worker.is_alive()
    assert cat_terminal.pending == ACK_BLOCK


def test_close_releases_waiters(cat_terminal):
    worker = threading.Thread(target=cat_terminal.wait_ack, args=(ACK_BLOCK * 2,))
    worker.start()
    time.sleep(0.1)
    cat_terminal.close()
    worker.join(timeout=2)
    assert not worker.is_alive()