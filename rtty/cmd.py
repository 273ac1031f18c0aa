"""Remote command execution requested by the server."""

from __future__ import annotations

import base64
import enum
import logging
import pwd
import shutil
import subprocess
import threading
from dataclasses import dataclass, field

from .proto import MsgType

log = logging.getLogger(__name__)

RUNNING_LIMIT = 5
EXEC_TIMEOUT = 30.0
MAX_REPLY = 0xFFFF


class CmdError(enum.IntEnum):
    NONE = 0
    PERMIT = 1
    NOT_FOUND = 2
    NO_MEM = 3
    SYS_ERR = 4
    RESP_TOO_BIG = 5


_MESSAGES = {
    CmdError.PERMIT: "operation not permitted",
    CmdError.NOT_FOUND: "not found",
    CmdError.NO_MEM: "no mem",
    CmdError.SYS_ERR: "sys error",
    CmdError.RESP_TOO_BIG: "stdout+stderr is too big",
}


@dataclass
class CommandRequest:
    username: str
    name: str
    token: str
    params: list[str] = field(default_factory=list)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def parse_cmd_msg(data: bytes) -> CommandRequest:
    """Parse username, command, token and parameters from a command message."""
    data = bytes(data)
    parts = []
    while len(parts) < 3:
        end = data.find(b"\x00")
        if end < 0:
            raise ValueError("invalid command message format")
        parts.append(_decode(data[:end]))
        data = data[end + 1:]
        if not data:
            raise ValueError("invalid command message format")

    nparams = data[0]
    params: list[str] = []
    if nparams > 0:
        rest = data[1:]
        if rest.endswith(b"\x00"):
            rest = rest[:-1]
        params = [_decode(p) for p in rest.split(b"\x00")]
        if len(params) != nparams:
            raise ValueError(
                f"invalid command message format: expected {nparams} params, got {len(params)}"
            )

    username, name, token = parts
    return CommandRequest(username, name, token, params)


def cmd_error_message(err: int) -> str:
    """Return the text sent along with an error code."""
    return _MESSAGES.get(err, "")


def format_error_reply(token: str, err: int) -> str:
    return f'{{"token":"{token}","attrs":{{"err":{int(err)},"msg":"{cmd_error_message(err)}"}}}}'


def format_reply(token: str, code: int, stdout: bytes, stderr: bytes) -> str:
    out = base64.b64encode(stdout).decode("ascii")
    err = base64.b64encode(stderr).decode("ascii")
    return (
        f'{{"token":"{token}","attrs":{{"code":{code},'
        f'"stdout":"{out}","stderr":"{err}"}}}}'
    )


class CommandRunner:
    """Runs commands on behalf of the server, a limited number at a time.

    ``send`` is called as ``send(MsgType.CMD, text)`` with every reply.
    """

    def __init__(self, send) -> None:
        self._send = send
        self._slots = threading.Semaphore(RUNNING_LIMIT)

    def handle(self, data: bytes) -> None:
        try:
            request = parse_cmd_msg(data)
        except ValueError as err:
            log.error("invalid command message format: %s", err)
            return

        log.debug(
            "command: %s, username: %s, token: %s, params: %s",
            request.name, request.username, request.token, request.params,
        )

        try:
            user = pwd.getpwnam(request.username)
        except (KeyError, ValueError):
            self.error_reply(request.token, CmdError.PERMIT)
            return

        path = shutil.which(request.name)
        if path is None:
            log.error("command not found: %s", request.name)
            self.error_reply(request.token, CmdError.NOT_FOUND)
            return

        if not self._slots.acquire(blocking=False):
            log.warning("command limit reached: %d", RUNNING_LIMIT)
            self.error_reply(request.token, CmdError.NO_MEM)
            return

        threading.Thread(
            target=self._run_in_slot,
            args=(user, path, request.params, request.token),
            daemon=True,
        ).start()

    def _run_in_slot(self, user, path, params, token) -> None:
        try:
            self.execute(user, path, params, token)
        finally:
            self._slots.release()

    def execute(self, user, path: str, params, token: str) -> None:
        """Run a command as the given passwd entry and send its result."""
        log.debug("starting command execution: %s, token: %s", path, token)
        try:
            result = subprocess.run(
                [path, *params],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=EXEC_TIMEOUT,
                user=user.pw_uid,
                group=user.pw_gid,
            )
        except subprocess.TimeoutExpired:
            log.error("command timeout: %s, token: %s", path, token)
            self.error_reply(token, CmdError.SYS_ERR)
            return
        except (OSError, subprocess.SubprocessError) as err:
            log.error("command execution failed: %s, token: %s: %s", path, token, err)
            self.error_reply(token, CmdError.SYS_ERR)
            return

        code = result.returncode if result.returncode >= 0 else -1
        self.reply(token, code, result.stdout, result.stderr)

    def error_reply(self, token: str, err: int) -> None:
        self._send(MsgType.CMD, format_error_reply(token, err))

    def reply(self, token: str, code: int, stdout: bytes, stderr: bytes) -> None:
        msg = format_reply(token, code, stdout, stderr)
        if len(msg.encode()) > MAX_REPLY:
            self.error_reply(token, CmdError.RESP_TOO_BIG)
            return
        self._send(MsgType.CMD, msg)