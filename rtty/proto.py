"""Framing and encoding of messages exchanged with the rtty server."""

from __future__ import annotations

import enum
import struct
import threading

HEADER_SIZE = 3
MAX_PAYLOAD = 0xFFFF

MAX_DEVID_LEN = 32
MAX_GROUP_LEN = 16
MAX_DESC_LEN = 126

HEARTBEAT_ATTR_UPTIME = 0


class Role(enum.Enum):
    """Which end of the connection a stream belongs to."""

    RTTY = 0
    RTTYS = 1


class MsgType(enum.IntEnum):
    REGISTER = 0
    LOGIN = 1
    LOGOUT = 2
    TERMDATA = 3
    WINSIZE = 4
    CMD = 5
    HEARTBEAT = 6
    FILE = 7
    HTTP = 8
    ACK = 9


class RegAttr(enum.IntEnum):
    HEARTBEAT = 0
    DEVID = 1
    DESCRIPTION = 2
    TOKEN = 3
    GROUP = 4


class FileMsgType(enum.IntEnum):
    SEND = 0
    RECV = 1
    INFO = 2
    DATA = 3
    ACK = 4
    ABORT = 5


class ProtocolError(Exception):
    """Raised for malformed or oversized messages."""


_NAMES = {
    MsgType.REGISTER: "register",
    MsgType.LOGIN: "login",
    MsgType.LOGOUT: "logout",
    MsgType.TERMDATA: "termdata",
    MsgType.WINSIZE: "winsize",
    MsgType.CMD: "cmd",
    MsgType.HEARTBEAT: "heartbeat",
    MsgType.FILE: "file",
    MsgType.HTTP: "http",
    MsgType.ACK: "ack",
}

_MIN_LENS = {
    Role.RTTY: {
        MsgType.REGISTER: 1,
        MsgType.LOGIN: 32,
        MsgType.LOGOUT: 32,
        MsgType.TERMDATA: 33,
        MsgType.WINSIZE: 36,
        MsgType.FILE: 33,
        MsgType.ACK: 34,
        MsgType.HTTP: 25,
    },
    Role.RTTYS: {
        MsgType.REGISTER: 1,
        MsgType.LOGIN: 33,
        MsgType.LOGOUT: 32,
        MsgType.TERMDATA: 33,
        MsgType.FILE: 33,
        MsgType.HTTP: 18,
    },
}

_INT_FORMATS = {1: ">B", 2: ">H", 4: ">I"}


def msg_type_name(typ: int) -> str:
    """Return the human readable name of a message type."""
    name = _NAMES.get(typ)
    return name if name is not None else f"unknown({typ})"


def encode_attr(attr_type: int, value, width: int | None = None) -> bytes:
    """Encode a type-length-value attribute.

    Strings and bytes are stored as is; integers need a width of 1, 2 or 4
    bytes and are stored big endian.
    """
    if isinstance(value, str):
        body = value.encode()
    elif isinstance(value, (bytes, bytearray, memoryview)):
        body = bytes(value)
    elif isinstance(value, int) and not isinstance(value, bool):
        fmt = _INT_FORMATS.get(width)
        if fmt is None:
            raise ValueError(f"unsupported integer width: {width}")
        try:
            body = struct.pack(fmt, value)
        except struct.error as err:
            raise ValueError(f"value {value} does not fit in {width} bytes") from err
    else:
        raise TypeError(f"unsupported attribute type: {type(value).__name__}")

    if len(body) > MAX_PAYLOAD:
        raise ValueError("attribute too long, exceeds 0xffff")
    return struct.pack(">BH", attr_type, len(body)) + body


def _encode_field(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, int) and not isinstance(value, bool):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"byte value out of range: {value}")
        return bytes((value,))
    raise TypeError(f"unsupported data type: {type(value).__name__}")


class MessageStream:
    """Reads and writes framed messages over a binary stream.

    Each frame is a type byte, a big endian 16-bit length and the payload.
    """

    def __init__(self, role: Role, stream) -> None:
        self._stream = stream
        self._min_lens = _MIN_LENS[Role(role)]
        self._lock = threading.Lock()

    def _read_exact(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            chunk = self._stream.read(size - len(buf))
            if not chunk:
                raise EOFError("connection closed")
            buf += chunk
        return bytes(buf)

    def read(self) -> tuple[int, bytes]:
        """Read one message and return its type and payload."""
        typ, length = struct.unpack(">BH", self._read_exact(HEADER_SIZE))
        minimum = self._min_lens.get(typ)
        if minimum is not None and length < minimum:
            raise ProtocolError(
                f"invalid message length for {msg_type_name(typ)}: "
                f"at least {minimum}, got {length}"
            )
        return typ, self._read_exact(length)

    def write(self, typ: int, *args) -> None:
        """Write one message whose payload is the concatenation of args.

        Arguments may be bytes-like, str, an int (a single byte) or None.
        """
        body = b"".join(_encode_field(arg) for arg in args)
        if len(body) > MAX_PAYLOAD:
            raise ProtocolError("data too long, exceeds 0xffff")
        frame = memoryview(struct.pack(">BH", typ, len(body)) + body)
        with self._lock:
            while frame:
                written = self._stream.write(frame)
                if written is None:
                    break
                frame = frame[written:]
            flush = getattr(self._stream, "flush", None)
            if flush is not None:
                flush()