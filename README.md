# rtty

`rtty` is a library for the device side of remote terminal access through an
rttys server. An `RttyClient` keeps a single TCP (optionally TLS) connection
to the server and carries everything over it:

- **Terminals** – each browser session gets its own pseudo-terminal running
  `/bin/login` (with `-f <username>` when a username is configured), with
  window-size changes and flow control: output is held back while more than
  4096 bytes are waiting to be acknowledged. Sessions idle for 600 seconds
  are closed, and at most 10 run at once.
- **Remote commands** – the server can run a program found on `PATH` as a
  given user. Up to 5 commands run at the same time, each limited to
  30 seconds; the exit code and base64-encoded stdout and stderr are sent
  back as JSON, or an error code when the user or program is unknown, the
  limit is reached, the run fails or the reply would exceed 65535 bytes.
- **File transfer** – a program running inside a terminal session can send a
  file to the browser or receive one into its working directory. Progress,
  "busy", "no space" and "file exists" conditions are reported back to it
  over a named pipe in `/tmp`.
- **HTTP proxying** – the server can tunnel HTTP and HTTPS requests to
  IPv4 addresses reachable from the device. HTTPS targets are not verified,
  and idle proxied connections are closed after about 30 seconds.
- **Heartbeats** – the agent sends its uptime every heartbeat interval and
  drops the connection if nothing arrives from the server within 3 seconds
  of a heartbeat.

## Requirements

Python 3.10 or newer on Linux. It depends on `psutil`. Terminal,
file-transfer and mount-point features read `/proc`, and running commands
as another user needs suitable privileges.

## Modules

| Module | What it provides |
| --- | --- |
| `rtty.proto` | The wire format: `MsgType`, `RegAttr`, `FileMsgType`, `Role`, `MessageStream`, `encode_attr`, `msg_type_name`, `ProtocolError` |
| `rtty.client` | `ClientOptions`, `RttyClient`, `TermSession`, `build_register_payload` |
| `rtty.terminal` | `Terminal`, a child process on a pseudo-terminal with acknowledgement-based flow control, and `login_argv` |
| `rtty.cmd` | `CommandRunner`, `CmdError`, `CommandRequest` and the helpers `parse_cmd_msg`, `cmd_error_message`, `format_reply`, `format_error_reply` |
| `rtty.filetransfer` | `FileContext`, `FileCtl`, `request_transfer_file`, `handle_control_messages`, `handle_file_msg`, `build_magic`, `parse_magic`, `progress_line` |
| `rtty.httpproxy` | `HttpProxyConnection`, `parse_http_msg`, `handle_http_msg` |
| `rtty.utils` | `MountInfo`, `format_size`, `file_exists`, `read_mount_info`, `find_mount_point`, `check_space_available`, `get_uid_by_pid`, `get_gid_by_pid`, `get_cwd_by_pid` |
| `rtty.logsetup` | `setup_logging`, `enable_debug`, `install_debug_signal`, `CallerFormatter` |

## Running the agent

Describe the server and the device with a `ClientOptions` and hand it to an
`RttyClient`. `run()` connects, registers and serves messages until the
connection ends; with `reconnect=True` it tries again after a random delay
of 5 to 14 seconds.

```python
from rtty.client import ClientOptions, RttyClient
from rtty.logsetup import install_debug_signal, setup_logging

setup_logging(debug=False)   # stdout, plus syslog when stdout is not a terminal
install_debug_signal()       # SIGUSR1 switches logging to debug level

options = ClientOptions(
    host="localhost",
    port=5912,
    id="example-device",
    description="lab machine",
    token="token",
    heartbeat=30,
    reconnect=True,
)
RttyClient(options).run()
```

`ClientOptions` fields: `host`, `port`, `id`, `group`, `description`,
`token`, `heartbeat`, `reconnect`, `ssl`, `insecure`, `cacert`, `sslcert`,
`sslkey`, `username`. With `ssl=True` the connection is wrapped in TLS,
verified against `cacert` (or the system store) unless `insecure` is set,
and `sslcert`/`sslkey` supply a client certificate.

## Transferring files from a terminal session

Inside a session served by the agent, a program calls
`request_transfer_file("R")` to receive a file into the current directory,
or `request_transfer_file("S", path)` to send one (regular files up to
2 GiB). It prints progress on stdout and raises `SystemExit(1)` with a
message when the directory is not writable, the file cannot be opened or
the pipe cannot be created.

## Working with the protocol

Every message is a one-byte type, a big-endian 16-bit length and a payload.
`MessageStream` reads and writes such frames over any binary stream, raises
`ProtocolError` for frames shorter than the minimum for their type or
payloads over 65535 bytes, and `EOFError` when the stream ends.

```python
from rtty.proto import encode_attr, msg_type_name

msg_type_name(3)      # "termdata"
msg_type_name(200)    # "unknown(200)"
encode_attr(0, 30, 1) # b"\x00\x00\x01\x1e"
```

```python
from rtty.utils import format_size

format_size(512)   # "512 B"
format_size(1536)  # "1.5 KB"
```

## What this package does not do

- It has no command-line program: there is no option parsing, no
  configuration-file loading and no running in the background. An
  application builds `ClientOptions` itself and calls `RttyClient.run()`,
  and a program that wants to start file transfers calls
  `request_transfer_file` itself.
- It does not work on Windows; terminals, file transfer and the debug
  signal rely on POSIX pseudo-terminals, `/proc` and `SIGUSR1`.
- It is only the device side; it does not include a server.

## Running the tests

Install the `test` extra and run `pytest` from the project root.