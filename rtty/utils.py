"""File system and process helpers."""

from __future__ import annotations

import errno
import os
import stat
from dataclasses import dataclass
from itertools import islice

import psutil

_UNITS = ("B", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class MountInfo:
    device: str
    mount_point: str
    file_system: str
    options: str


def file_exists(filename) -> bool:
    """Return False only when the path is known not to exist."""
    try:
        os.stat(filename)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def format_size(size: int) -> str:
    """Format a byte count with a binary unit."""
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    if unit == 0:
        return f"{int(value)} {_UNITS[unit]}"
    return f"{value:.1f} {_UNITS[unit]}"


def read_mount_info(path="/proc/mounts") -> list[MountInfo]:
    """Parse a mounts table, skipping lines with fewer than four fields."""
    with open(path, encoding="utf-8", errors="replace") as f:
        return [
            MountInfo(*fields[:4])
            for fields in (line.split() for line in f)
            if len(fields) >= 4
        ]


def find_mount_point(name) -> MountInfo:
    """Find the mount that holds the given path."""
    abs_path = os.path.abspath(name)
    st = os.stat(abs_path)
    if stat.S_ISBLK(st.st_mode) or stat.S_ISCHR(st.st_mode):
        raise ValueError("path is a device file")

    best = None
    for mount in read_mount_info():
        if mount.file_system == "rootfs":
            continue
        if abs_path == mount.mount_point:
            return mount
        try:
            if os.stat(mount.mount_point).st_dev == st.st_dev:
                best = mount
        except OSError:
            continue

    if best is None:
        raise LookupError("mount point not found")
    return best


def _available_space(mount_point: str) -> int:
    vfs = os.statvfs(mount_point)
    return vfs.f_bavail * vfs.f_bsize


def check_space_available(save_path, total_size: int) -> None:
    """Raise OSError if fewer than total_size bytes can be stored at save_path."""
    try:
        mount = find_mount_point(save_path)
    except (OSError, LookupError, ValueError) as err:
        raise OSError(f"not found mount point of '{save_path}': {err}") from err

    if mount.file_system == "ramfs":
        avail = psutil.virtual_memory().free
    else:
        try:
            avail = _available_space(mount.mount_point)
        except OSError as err:
            raise OSError(f"failed to get available space: {err}") from err

    if total_size > avail:
        raise OSError(
            errno.ENOSPC,
            f"no enough space: need {total_size} bytes, available {avail} bytes",
        )


def _status_id(pid: int, key: str, max_lines: int | None) -> int:
    status_file = f"/proc/{pid}/status"
    with open(status_file, encoding="utf-8", errors="replace") as f:
        for line in islice(f, max_lines):
            if not line.startswith(key):
                continue
            fields = line.split()
            if len(fields) >= 2:
                try:
                    value = int(fields[1])
                except ValueError as err:
                    raise ValueError(
                        f"failed to parse {key[:-1].lower()} from line '{line.rstrip()}'"
                    ) from err
                if not 0 <= value <= 0xFFFFFFFF:
                    raise ValueError(f"id out of range in line '{line.rstrip()}'")
                return value
    raise LookupError(f"{key[:-1].lower()} not found in {status_file}")


def get_uid_by_pid(pid: int) -> int:
    """Return the real user id of a process."""
    return _status_id(pid, "Uid:", 20)


def get_gid_by_pid(pid: int) -> int:
    """Return the real group id of a process."""
    return _status_id(pid, "Gid:", None)


def get_cwd_by_pid(pid: int) -> str:
    """Return the working directory of a process."""
    return os.readlink(f"/proc/{pid}/cwd")