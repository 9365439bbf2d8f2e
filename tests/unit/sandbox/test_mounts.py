"""Unit tests for host mount bookkeeping."""

import subprocess
from unittest.mock import patch

import pytest

from binbuild.sandbox.mounts import MountError, MountTable, filesystem_type, is_ecryptfs

MOUNTS = """\
/dev/sda1 / ext4 rw,relatime 0 0
proc /proc proc rw 0 0
/home/.ecryptfs/alice/.Private /home/alice ecryptfs rw 0 0
tmpfs /home/alice/with\\040space tmpfs rw 0 0
"""


@pytest.fixture
def mounts_file(tmp_path):
    path = tmp_path / "mounts"
    path.write_text(MOUNTS)
    return path


class TestFilesystemType:
    """Test cases for filesystem_type() and is_ecryptfs()."""

    def test_longest_prefix_wins(self, mounts_file):
        assert filesystem_type("/home/alice/src", mounts_file) == "ecryptfs"
        assert filesystem_type("/home/bob", mounts_file) == "ext4"

    def test_prefix_must_end_at_separator(self, mounts_file):
        assert filesystem_type("/home/alicex", mounts_file) == "ext4"

    def test_escaped_mountpoint(self, mounts_file):
        assert filesystem_type("/home/alice/with space/x", mounts_file) == "tmpfs"

    def test_is_ecryptfs(self, mounts_file):
        assert is_ecryptfs("/home/alice", mounts_file)
        assert not is_ecryptfs("/proc/self", mounts_file)

    def test_unreadable_mounts_file(self, tmp_path):
        assert filesystem_type("/", tmp_path / "missing") is None


def _completed(returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


class TestMountTable:
    """Test cases for MountTable."""

    @patch("binbuild.sandbox.mounts.subprocess.run")
    def test_mount_and_unmount_in_reverse(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        table = MountTable(sudo=False)
        a = table.mount_image(tmp_path / "a.squashfs", tmp_path / "mnt" / "a")
        b = table.mount_image(tmp_path / "b.squashfs", tmp_path / "mnt" / "b")
        assert table.mounted == [a, b]
        assert a.is_dir()

        table.unmount_all()
        unmounts = [c.args[0] for c in mock_run.call_args_list if c.args[0][0] == "umount"]
        assert unmounts == [["umount", str(b)], ["umount", str(a)]]
        assert table.mounted == []

    @patch("binbuild.sandbox.mounts.os.geteuid", return_value=1000)
    @patch("binbuild.sandbox.mounts.subprocess.run")
    def test_sudo_prefix(self, mock_run, mock_euid, tmp_path):
        mock_run.return_value = _completed()
        MountTable(sudo=True).mount_image(tmp_path / "a.squashfs", tmp_path / "mnt")
        assert mock_run.call_args.args[0][:3] == ["sudo", "-n", "mount"]

    @patch("binbuild.sandbox.mounts.os.geteuid", return_value=0)
    def test_no_sudo_as_root(self, mock_euid):
        assert MountTable(sudo=True).sudo is False

    @patch("binbuild.sandbox.mounts.subprocess.run")
    def test_mount_failure(self, mock_run, tmp_path):
        mock_run.return_value = _completed(32, "permission denied")
        table = MountTable(sudo=False)
        with pytest.raises(MountError, match="permission denied"):
            table.mount_image(tmp_path / "a.squashfs", tmp_path / "mnt")
        assert table.mounted == []

    @patch("binbuild.sandbox.mounts.subprocess.run")
    def test_unmount_failure_still_attempts_rest(self, mock_run, tmp_path):
        table = MountTable(sudo=False)
        mock_run.return_value = _completed()
        table.mount_image(tmp_path / "a.squashfs", tmp_path / "a")
        table.mount_image(tmp_path / "b.squashfs", tmp_path / "b")

        mock_run.side_effect = [_completed(1, "busy"), _completed()]
        with pytest.raises(MountError, match="busy"):
            table.unmount_all()
        assert table.mounted == []

    @patch("binbuild.sandbox.mounts.subprocess.run")
    def test_context_manager_keeps_original_exception(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        with pytest.raises(RuntimeError, match="build failed"):
            with MountTable(sudo=False) as table:
                table.mount_image(tmp_path / "a.squashfs", tmp_path / "a")
                mock_run.return_value = _completed(1, "busy")
                raise RuntimeError("build failed")
