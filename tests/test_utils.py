import os

import pytest

from rtty.utils import (
    MountInfo,
    check_space_available,
    file_exists,
    find_mount_point,
    format_size,
    get_cwd_by_pid,
    get_gid_by_pid,
    get_uid_by_pid,
    read_mount_info,
)


def test_file_exists(tmp_path):
    target = tmp_path / "f"
    assert file_exists(target) is False
    target.write_text("x")
    assert file_exists(target) is True
    assert file_exists(tmp_path) is True


def test_format_size_values():
    assert format_size(0) == "0 B"
    assert format_size(1024) == "1.0 KB"
    assert format_size(1536) == "1.5 KB"


@pytest.mark.parametrize("n", [1, 10, 512, 1023])
def test_format_size_small_values_are_bytes(n):
    assert format_size(n) == f"{n} B"


def test_format_size_unit_caps_at_tb():
    assert format_size(2048 * 1024**4).endswith(" TB")
    assert format_size(2048 * 1024**4).startswith("2048.0")


def test_read_mount_info(tmp_path):
    table = tmp_path / "mounts"
    table.write_text(
        "/dev/sda1 / ext4 rw,relatime 0 0\n"
        "short line\n"
        "proc /proc proc rw 0 0\n"
    )
    mounts = read_mount_info(table)
    assert mounts == [
        MountInfo("/dev/sda1", "/", "ext4", "rw,relatime"),
        MountInfo("proc", "/proc", "proc", "rw"),
    ]


def test_find_mount_point_same_device(tmp_path):
    mount = find_mount_point(tmp_path)
    assert os.stat(mount.mount_point).st_dev == os.stat(tmp_path).st_dev
    assert mount.file_system != "rootfs"


def test_find_mount_point_rejects_device():
    with pytest.raises(ValueError):
        find_mount_point("/dev/null")


def test_find_mount_point_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        find_mount_point(tmp_path / "missing")


def test_check_space_too_large(tmp_path):
    with pytest.raises(OSError) as info:
        check_space_available(tmp_path, 2**62)
    assert "no enough space" in str(info.value)


def test_check_space_missing_path(tmp_path):
    with pytest.raises(OSError) as info:
        check_space_available(tmp_path / "missing", 1)
    assert "not found mount point" in str(info.value)


def test_ids_of_current_process():
    assert get_uid_by_pid(os.getpid()) == os.getuid()
    assert get_gid_by_pid(os.getpid()) == os.getgid()


def test_cwd_of_current_process(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert get_cwd_by_pid(os.getpid()) == os.path.realpath(tmp_path)


def test_missing_process():
    with pytest.raises(OSError):
        get_uid_by_pid(0)
    with pytest.raises(OSError):
        get_gid_by_pid(0)
    with pytest.raises(OSError):
        get_cwd_by_pid(0)