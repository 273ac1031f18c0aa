"""Pseudo terminals that run a login shell for a remote session."""

from __future__ import annotations

import errno
import fcntl
import os
import struct
import subprocess
import termios
import threading
from contextlib import suppress

ACK_BLOCK = 4096


def login_argv(username: str | None = None) -> list[str]:
    """Return the login command line, skipping authentication for username."""
    if username:
        return ["/bin/login", "-f", username]
    return ["/bin/login"]


def _make_controlling_tty() -> None:
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class Terminal:
    """A child process attached to a pseudo terminal, with output flow control.

    Output that has been sent but not yet acknowledged is counted; writers
    block in ``wait_ack`` while more than ``ACK_BLOCK`` bytes are pending.
    """

    def __init__(self, argv) -> None:
        master, slave = os.openpty()
        try:
            self._proc = subprocess.Popen(
                list(argv),
                stdin=slave,
                stdout=slave,
                stderr=slave,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
                close_fds=True,
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            os.close(slave)

        self._fd = master
        self._lock = threading.Lock()
        self._closed = False
        self._cond = threading.Condition()
        self._pending = 0

    def __enter__(self) -> Terminal:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def fd(self) -> int:
        return self._fd

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Bytes sent but not yet acknowledged."""
        with self._cond:
            return self._pending

    def read(self, size: int = 4096) -> bytes:
        """Read terminal output; an empty result means the terminal has ended."""
        if self._closed:
            return b""
        try:
            return os.read(self._fd, size)
        except OSError as err:
            if err.errno in (errno.EIO, errno.EBADF):
                return b""
            raise

    def write(self, data) -> int:
        """Write input to the terminal and return the number of bytes written."""
        if self._closed:
            raise OSError(errno.EBADF, "terminal closed")
        view = memoryview(data)
        total = len(view)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]
        return total

    def set_winsize(self, cols: int, rows: int) -> None:
        """Set the window size of the terminal."""
        fcntl.ioctl(self._fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    def close(self) -> None:
        """Kill the child process and release the terminal; safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._proc.poll() is None:
            with suppress(OSError):
                self._proc.kill()
        with suppress(subprocess.TimeoutExpired):
            self._proc.wait(timeout=1)
        with suppress(OSError):
            os.close(self._fd)
        with self._cond:
            self._cond.notify_all()

    def ack(self, n: int) -> None:
        """Record that the peer has consumed n bytes of output."""
        with self._cond:
            self._pending -= n
            self._cond.notify()

    def wait_ack(self, length: int) -> None:
        """Account for length bytes sent and block while too much is unacknowledged."""
        with self._cond:
            self._pending += length
            while self._pending > ACK_BLOCK and not self._closed:
                self._cond.wait()