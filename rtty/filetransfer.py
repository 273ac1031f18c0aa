"""Transfer of files between a terminal session and the browser.

A program running inside the terminal announces a transfer by writing a
short magic sequence to the terminal and then listens on a named pipe for
control messages from the agent.
"""

from __future__ import annotations

import enum
import errno
import logging
import os
import signal
import stat
import struct
import sys
import time
from contextlib import suppress

from . import utils
from .proto import FileMsgType
from .utils import format_size

log = logging.getLogger(__name__)

MAGIC_PREFIX = b"\xb6\xbc\xbd"
MAGIC_SIZE = 12
CTL_MSG_SIZE = 129
FILE_SIZE_LIMIT = 2 * 1024 * 1024 * 1024
BUF_SIZE = 1024 * 63
SID_LEN = 32


class FileCtl(enum.IntEnum):
    REQUEST_ACCEPT = 0
    PROGRESS = 1
    INFO = 2
    BUSY = 3
    ABORT = 4
    NO_SPACE = 5
    ERR_EXIST = 6
    ERR = 7


def fifo_name(pid: int) -> str:
    return f"/tmp/rtty-fifo-{pid}.fifo"


def _typ_byte(typ) -> int:
    if isinstance(typ, str):
        return ord(typ)
    if isinstance(typ, (bytes, bytearray)):
        return typ[0]
    return int(typ)


def build_magic(typ, pid: int, fd: int = 0) -> bytes:
    """Build the sequence that announces a transfer: 'R' to receive, 'S' to send."""
    return MAGIC_PREFIX + bytes((_typ_byte(typ),)) + struct.pack("=II", pid, fd)


def parse_magic(data):
    """Return (typ, pid, fd) if data is a transfer announcement, else None."""
    data = bytes(data)
    if len(data) != MAGIC_SIZE or not data.startswith(MAGIC_PREFIX):
        return None
    pid, fd = struct.unpack("=II", data[4:12])
    return chr(data[3]), pid, fd


def progress_line(elapsed: float, total_size: int, remain_size: int) -> str:
    """Format the progress line shown to the user."""
    transferred = total_size - remain_size
    percentage = transferred * 100 // total_size if total_size else 100
    return f"  {percentage}%    {format_size(transferred)}     {elapsed:.3f}s"


def handle_file_msg(client, data) -> None:
    """Dispatch a file message from the server to its session."""
    data = bytes(data)
    sid = data[:SID_LEN].decode(errors="replace")
    typ = data[SID_LEN]

    session = client.sessions.get(sid)
    if session is None:
        log.error("terminal session %s not found", sid)
        return

    fc = session.file_context
    data = data[SID_LEN + 1:]

    if typ == FileMsgType.INFO:
        fc.start_download(data)
    elif typ == FileMsgType.DATA:
        if not data:
            fc.reset()
            return
        if fc.file is None:
            return
        try:
            fc.file.write(data)
        except OSError as err:
            log.error("failed to write file %s: %s", fc.savepath, err)
            fc._try_send(FileCtl.ERR)
            fc.reset()
            return
        fc.remain_size = (fc.remain_size - len(data)) & 0xFFFFFFFF
        try:
            fc.notify_progress()
        except OSError:
            fc.reset()
            return
        if fc.remain_size == 0:
            fc.reset()
        else:
            client.send_file_msg(session.sid, FileMsgType.ACK, None)
    elif typ == FileMsgType.ACK:
        fc.send_data()
    elif typ == FileMsgType.ABORT:
        fc._try_send(FileCtl.ABORT)
        fc.reset()


class FileContext:
    """State of the file transfer of one terminal session."""

    def __init__(self, session) -> None:
        self.session = session
        self.file = None
        self.fifo = None
        self.busy = False
        self.uid = 0
        self.gid = 0
        self.total_size = 0
        self.remain_size = 0
        self.savepath = ""

    def _send_file_msg(self, typ, data=None) -> None:
        self.session.client.send_file_msg(self.session.sid, typ, data)

    def _try_send(self, typ, data=None) -> None:
        with suppress(OSError):
            self.send_control(typ, data)

    def detect(self, data) -> bool:
        """Handle terminal output that announces a transfer; True if it did."""
        magic = parse_magic(data)
        if magic is None:
            return False
        typ, pid, fd = magic

        try:
            uid = utils.get_uid_by_pid(pid)
            gid = utils.get_gid_by_pid(pid)
        except (OSError, ValueError, LookupError) as err:
            with suppress(OSError):
                os.kill(pid, signal.SIGTERM)
            log.error("failed to get uid/gid for pid %d: %s", pid, err)
            return True

        name = fifo_name(pid)
        try:
            fifo = open(name, "wb", buffering=0)
        except OSError as err:
            with suppress(OSError):
                os.kill(pid, signal.SIGTERM)
            log.error("Could not open fifo %s: %s", name, err)
            return True

        if self.busy:
            with suppress(OSError):
                fifo.write(_control_frame(FileCtl.BUSY))
            fifo.close()
            return True

        self.fifo = fifo
        log.debug(
            "detected file operation: sid=%s pid=%d, uid=%d, gid=%d",
            self.session.sid, pid, uid, gid,
        )

        if typ == "R":
            try:
                savepath = utils.get_cwd_by_pid(pid)
            except OSError as err:
                log.error("failed to get cwd for pid %d: %s", pid, err)
                self._fail_detect()
                return True
            self.savepath = savepath
            self.uid = uid
            self.gid = gid
            self._send_file_msg(FileMsgType.RECV)
            self._try_send(FileCtl.REQUEST_ACCEPT)
        else:
            link = f"/proc/{pid}/fd/{fd}"
            try:
                path = os.readlink(link)
            except OSError as err:
                log.error("failed to read link %s: %s", link, err)
                self._fail_detect()
                return True
            self._try_send(FileCtl.REQUEST_ACCEPT)
            try:
                self.start_upload(path)
            except OSError as err:
                log.error("failed to start upload file for path %s: %s", path, err)
                self._fail_detect()
                return True

        self.busy = True
        return True

    def _fail_detect(self) -> None:
        self._try_send(FileCtl.ERR)
        if self.fifo is not None:
            self.fifo.close()
            self.fifo = None

    def start_download(self, data) -> None:
        """Begin writing a file sent by the browser into the save directory."""
        data = bytes(data)
        (self.total_size,) = struct.unpack(">I", data[:4])
        self.remain_size = self.total_size

        try:
            utils.check_space_available(self.savepath, self.total_size)
        except OSError as err:
            log.error("download file fail for %s: %s", self.savepath, err)
            self._try_send(FileCtl.NO_SPACE)
            self.reset()
            return

        name = data[4:]
        self.savepath = os.path.join(self.savepath, name.decode(errors="replace"))

        if utils.file_exists(self.savepath):
            log.error("file %s already exists", self.savepath)
            self._try_send(FileCtl.ERR_EXIST)
            self.reset()
            return

        try:
            fd = os.open(self.savepath, os.O_WRONLY | os.O_CREAT, 0o644)
        except OSError as err:
            log.error("failed to open file %s for writing: %s", self.savepath, err)
            self._try_send(FileCtl.ERR)
            self.reset()
            return

        log.debug("download file: %s, size: %d bytes", self.savepath, self.total_size)

        try:
            os.fchown(fd, self.uid, self.gid)
        except OSError as err:
            log.warning(
                "failed to change owner of file %s to uid=%d gid=%d: %s",
                self.savepath, self.uid, self.gid, err,
            )

        if self.total_size == 0:
            os.close(fd)
        else:
            self.file = os.fdopen(fd, "wb")

        self._try_send(FileCtl.INFO, struct.pack("=I", self.total_size) + name)

    def start_upload(self, path) -> None:
        """Open a file to be sent to the browser and announce it."""
        try:
            file = open(path, "rb")
        except OSError as err:
            raise OSError(err.errno, f"failed to open file {path}: {err.strerror}") from err
        self.file = file
        self.total_size = os.fstat(file.fileno()).st_size & 0xFFFFFFFF
        self.remain_size = self.total_size
        self._send_file_msg(FileMsgType.SEND, os.path.basename(path).encode())
        log.debug("upload file: %s, size: %d bytes", path, self.total_size)

    def reset(self) -> None:
        """Close the file and control pipe and become idle."""
        if self.file is not None:
            self.file.close()
            self.file = None
        if self.fifo is not None:
            self.fifo.close()
            self.fifo = None
        self.busy = False

    def notify_progress(self) -> None:
        self.send_control(FileCtl.PROGRESS, struct.pack("=I", self.remain_size))

    def send_data(self) -> None:
        """Send the next chunk of the file being uploaded."""
        if self.file is None:
            return
        try:
            chunk = self.file.read(BUF_SIZE)
        except OSError as err:
            log.error("failed to read file %s: %s", self.session.sid, err)
            self._send_file_msg(FileMsgType.ABORT)
            self._try_send(FileCtl.ERR)
            self.reset()
            return

        self.remain_size = (self.remain_size - len(chunk)) & 0xFFFFFFFF
        self._send_file_msg(FileMsgType.DATA, chunk)

        if not chunk:
            self.reset()
            return

        try:
            self.notify_progress()
        except OSError:
            self._send_file_msg(FileMsgType.ABORT)
            self.reset()

    def send_control(self, typ, data=None) -> None:
        """Write one fixed size control message to the requesting program."""
        if self.fifo is None:
            raise OSError(errno.EBADF, "no control fifo")
        self.fifo.write(_control_frame(typ, data))


def _control_frame(typ, data=None) -> bytes:
    body = bytes(data or b"")[: CTL_MSG_SIZE - 1]
    return bytes((int(typ),)) + body.ljust(CTL_MSG_SIZE - 1, b"\x00")


def _read_frame(ctl) -> bytes | None:
    buf = b""
    while len(buf) < CTL_MSG_SIZE:
        chunk = ctl.read(CTL_MSG_SIZE - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def _print_progress(start: float, total_size: int, remain_size: int) -> None:
    print(" " * 100, end="\r")
    print(progress_line(time.monotonic() - start, total_size, remain_size), end="\r", flush=True)


def handle_control_messages(ctl, upload_file, total_size: int, path: str) -> None:
    """Follow a transfer's control messages and report progress on stdout."""
    start = time.monotonic()
    while True:
        frame = _read_frame(ctl)
        if frame is None:
            return
        typ, body = frame[0], frame[1:]

        if typ == FileCtl.REQUEST_ACCEPT:
            if upload_file is not None:
                upload_file.close()
                start = time.monotonic()
                print(f"Transferring '{os.path.basename(path)}'...Press Ctrl+C to cancel")
                if total_size == 0:
                    print("  100%    0 B     0s")
            else:
                print("Waiting to receive. Press Ctrl+C to cancel")
        elif typ == FileCtl.INFO:
            (total_size,) = struct.unpack("=I", body[:4])
            name = body[4:].rstrip(b"\x00").decode(errors="replace")
            print(f"Transferring '{name}'...")
            if total_size == 0:
                print("  100%    0 B     0s")
                return
            start = time.monotonic()
        elif typ == FileCtl.PROGRESS:
            (remain_size,) = struct.unpack("=I", body[:4])
            _print_progress(start, total_size, remain_size)
            if remain_size == 0:
                print()
                return
        elif typ == FileCtl.ABORT:
            print("\nTransfer aborted")
            return
        elif typ == FileCtl.BUSY:
            print("\033[31mRtty is busy to transfer file\033[0m")
            return
        elif typ == FileCtl.NO_SPACE:
            print("\033[31mNo enough space\033[0m")
            return
        elif typ == FileCtl.ERR_EXIST:
            print("\033[31mThe file already exists\033[0m")
            return


def _fail(message: str, stream=None) -> None:
    print(message, file=stream or sys.stdout)
    raise SystemExit(1)


def request_transfer_file(typ, path: str = "") -> None:
    """Ask the agent to receive ('R') or send ('S') a file, then follow progress."""
    typ_byte = _typ_byte(typ)
    pid = os.getpid()
    upload_file = None
    total_size = 0

    if typ_byte == ord("R"):
        try:
            mode = os.stat(".").st_mode
        except OSError:
            _fail("Permission denied")
        if not mode & 0o200:
            _fail("Permission denied")
    else:
        try:
            upload_file = open(path, "rb")
        except FileNotFoundError:
            _fail(f"open '{path}' failed: No such file")
        except OSError as err:
            _fail(f"open '{path}' failed: {err.strerror}")
        try:
            st = os.fstat(upload_file.fileno())
        except OSError as err:
            upload_file.close()
            _fail(f"stat '{path}' failed: {err.strerror}")
        if not stat.S_ISREG(st.st_mode):
            upload_file.close()
            _fail(f"'{path}' is not a regular file")
        if st.st_size > FILE_SIZE_LIMIT:
            upload_file.close()
            _fail(f"'{path}' is too large(> {FILE_SIZE_LIMIT} Byte)")
        total_size = st.st_size

    name = fifo_name(pid)
    try:
        os.mkfifo(name, 0o644)
    except OSError:
        if upload_file is not None:
            upload_file.close()
        _fail(f"Could not create fifo {name}", sys.stderr)

    def on_interrupt(signum, frame):
        print()
        raise SystemExit(0)

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        time.sleep(0.01)
        fd = upload_file.fileno() if upload_file is not None else 0
        out = sys.stdout.buffer
        out.write(build_magic(typ_byte, pid, fd))
        out.flush()

        try:
            ctl = open(name, "rb")
        except OSError:
            _fail(f"Could not open fifo {name}", sys.stderr)
        with ctl:
            handle_control_messages(ctl, upload_file, total_size, path)
    finally:
        signal.signal(signal.SIGINT, previous)
        if upload_file is not None:
            upload_file.close()
        with suppress(OSError):
            os.remove(name)