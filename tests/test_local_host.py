"""
Unit tests for host implementations.

Tests the host factory and the local Linux host with subprocess mocked
out; file operations run against a temporary directory.
"""

import os
import subprocess
import threading
from unittest.mock import Mock, mock_open, patch

import pytest

from reconcile_tool.core.errors import HostError, OperationTimeoutError
from reconcile_tool.hosts.factory import HostFactory
from reconcile_tool.hosts.local import LocalHost


def completed(stdout="", stderr="", returncode=0):
    return Mock(stdout=stdout, stderr=stderr, returncode=returncode)


@pytest.fixture
def local_host():
    """Create a local host with systemd and apt, without touching the system."""
    with patch.object(LocalHost, '_detect_service_manager', return_value="systemctl"), \
            patch.object(LocalHost, '_detect_package_manager', return_value="apt"):
        return LocalHost(backup=False)


class TestHostFactory:
    """Test host factory functionality."""

    def test_get_local_host(self):
        host = HostFactory.get_host("local")
        assert isinstance(host, LocalHost)
        assert host.name == "local"

    def test_unsupported_target(self):
        with pytest.raises(ValueError, match="Unsupported host target"):
            HostFactory.get_host("ssh://web-01")

    def test_register_host(self, host_class):
        HostFactory.register_host("memory", host_class)
        try:
            host = HostFactory.get_host("memory://web-01")
            assert isinstance(host, host_class)
            assert host.name == "memory://web-01"
            assert "memory" in HostFactory.get_supported_schemes()
        finally:
            HostFactory._hosts.pop("memory")


class TestExecuteCommand:
    """Test command execution and error mapping."""

    @patch('subprocess.run')
    def test_execute_command_success(self, mock_run, local_host):
        mock_run.return_value = completed(stdout="active\n")

        result = local_host.execute_command(["systemctl", "is-active", "sshd"], 5)

        assert result == {'exit_code': 0, 'stdout': "active\n", 'stderr': ""}
        assert mock_run.call_args.kwargs['timeout'] == 5

    @patch('subprocess.run')
    def test_execute_command_timeout(self, mock_run, local_host):
        mock_run.side_effect = subprocess.TimeoutExpired("sleep", 1)

        with pytest.raises(OperationTimeoutError, match="timed out after 1"):
            local_host.execute_command(["sleep", "10"], 1)

    @patch('subprocess.run')
    def test_execute_command_missing_binary(self, mock_run, local_host):
        mock_run.side_effect = FileNotFoundError("No such file")

        with pytest.raises(HostError, match="cannot execute findmnt"):
            local_host.execute_command(["findmnt"], 1)

    @patch('subprocess.run')
    def test_check_command_failure(self, mock_run, local_host):
        mock_run.return_value = completed(stderr="Unit foo.service not found.\n", returncode=5)

        with pytest.raises(HostError) as exc:
            local_host.service_set_state("foo", "started", 5)
        assert exc.value.exit_code == 5
        assert "not found" in str(exc.value)


class TestFiles:
    """Test file operations against a temporary directory."""

    def test_read_write(self, local_host, tmp_path):
        path = str(tmp_path / "sshd_config")
        local_host.write_file(path, "PermitRootLogin no\n", 5)
        assert local_host.read_file(path, 5) == "PermitRootLogin no\n"

    def test_read_missing(self, local_host, tmp_path):
        with pytest.raises(FileNotFoundError):
            local_host.read_file(str(tmp_path / "missing"), 5)

    def test_backup_before_write(self, tmp_path):
        with patch.object(LocalHost, '_detect_service_manager', return_value="systemctl"), \
                patch.object(LocalHost, '_detect_package_manager', return_value="apt"):
            host = LocalHost(backup=True)
        path = tmp_path / "login.defs"
        path.write_text("PASS_MAX_DAYS 99999\n")

        host.write_file(str(path), "PASS_MAX_DAYS 365\n", 5)

        backups = list(tmp_path.glob("login.defs.backup_*"))
        assert len(backups) == 1
        assert backups[0].read_text() == "PASS_MAX_DAYS 99999\n"

    def test_stat_and_chmod(self, local_host, tmp_path):
        path = tmp_path / "crontab"
        path.write_text("")
        os.chmod(path, 0o644)

        local_host.set_owner_mode(str(path), None, None, "0600", 5)
        info = local_host.stat_file(str(path), 5)

        assert info['mode'] == "0600"
        assert set(info) == {'owner', 'group', 'mode'}

    def test_stat_missing(self, local_host, tmp_path):
        assert local_host.stat_file(str(tmp_path / "missing"), 5) is None

    def test_hung_stat_times_out(self, local_host, tmp_path):
        """Test that a filesystem call blocking past the timeout is abandoned."""
        release = threading.Event()

        def hang(path):
            release.wait(5)
            raise FileNotFoundError(path)

        try:
            with patch('reconcile_tool.hosts.local.os.stat', side_effect=hang):
                with pytest.raises(OperationTimeoutError, match="timed out after 0.05 seconds"):
                    local_host.stat_file(str(tmp_path / "nfs-file"), 0.05)
        finally:
            release.set()

    @patch('subprocess.run')
    def test_proc_mounts_fallback(self, mock_run, local_host):
        mock_run.side_effect = FileNotFoundError("findmnt")
        mounts = "tmpfs /dev/shm tmpfs rw,nosuid,nodev 0 0\n"

        with patch('builtins.open', mock_open(read_data=mounts)):
            assert local_host.mount_options("/dev/shm", 5) == ["rw", "nosuid", "nodev"]


class TestServices:
    """Test systemd service handling."""

    @patch('subprocess.run')
    def test_service_status(self, mock_run, local_host):
        mock_run.side_effect = [
            completed(stdout="loaded\n"),
            completed(stdout="active\n"),
            completed(stdout="disabled\n", returncode=1),
        ]

        status = local_host.service_status("cups", 5)

        assert status == {'found': True, 'running': True, 'enabled': False}

    @patch('subprocess.run')
    def test_service_not_found(self, mock_run, local_host):
        mock_run.return_value = completed(stdout="not-found\n")
        assert local_host.service_status("nope", 5)['found'] is False

    @patch('subprocess.run')
    def test_service_set_state(self, mock_run, local_host):
        mock_run.return_value = completed()
        local_host.service_set_state("sshd", "restarted", 5)
        assert mock_run.call_args.args[0] == ["systemctl", "restart", "sshd"]

    def test_unsupported_state(self, local_host):
        with pytest.raises(HostError, match="unsupported service state"):
            local_host.service_set_state("sshd", "masked", 5)


class TestSysctlAndMounts:
    """Test kernel parameter and mount handling."""

    @patch('subprocess.run')
    def test_get_sysctl(self, mock_run, local_host):
        mock_run.return_value = completed(stdout="1\n")
        assert local_host.get_sysctl("net.ipv4.ip_forward", 5) == "1"

    @patch('subprocess.run')
    def test_get_sysctl_unknown_key(self, mock_run, local_host):
        mock_run.return_value = completed(
            stderr="sysctl: cannot stat /proc/sys/net/bogus: No such file or directory\n",
            returncode=255,
        )
        assert local_host.get_sysctl("net.bogus", 5) is None

    @patch('subprocess.run')
    def test_get_sysctl_permission_error(self, mock_run, local_host):
        mock_run.return_value = completed(stderr="permission denied\n", returncode=1)
        with pytest.raises(HostError):
            local_host.get_sysctl("kernel.secret", 5)

    @patch('subprocess.run')
    def test_mount_options(self, mock_run, local_host):
        mock_run.return_value = completed(stdout="rw,nosuid,nodev,relatime\n")
        assert local_host.mount_options("/tmp", 5) == ["rw", "nosuid", "nodev", "relatime"]

    @patch('subprocess.run')
    def test_not_mounted(self, mock_run, local_host):
        mock_run.return_value = completed(returncode=1)
        assert local_host.mount_options("/var/tmp", 5) is None

    @patch('subprocess.run')
    def test_remount(self, mock_run, local_host):
        mock_run.return_value = completed()
        local_host.remount("/tmp", ["nodev", "noexec"], 5)
        assert mock_run.call_args.args[0] == ["mount", "-o", "remount,nodev,noexec", "/tmp"]


class TestPackages:
    """Test apt package handling."""

    @patch('subprocess.run')
    def test_package_status(self, mock_run, local_host):
        mock_run.side_effect = [
            completed(stdout="install ok installed 1:9.6p1-3"),
            completed(stdout="openssh-server:\n  Installed: 1:9.6p1-3\n  Candidate: 1:9.6p1-4\n"),
        ]

        status = local_host.package_status("openssh-server", 5)

        assert status == {'installed': "1:9.6p1-3", 'candidate': "1:9.6p1-4"}

    @patch('subprocess.run')
    def test_package_absent(self, mock_run, local_host):
        mock_run.side_effect = [
            completed(stderr="dpkg-query: no packages found matching telnet\n", returncode=1),
            completed(stdout="telnet:\n  Installed: (none)\n  Candidate: 0.17-44\n"),
        ]
        assert local_host.package_status("telnet", 5)['installed'] is None

    @patch('subprocess.run')
    def test_remove_package(self, mock_run, local_host):
        mock_run.return_value = completed()
        local_host.set_package_state("telnet", "absent", None, 60)
        assert mock_run.call_args.args[0] == ["apt-get", "remove", "-y", "telnet"]
        assert mock_run.call_args.kwargs['env']['DEBIAN_FRONTEND'] == "noninteractive"

    @patch('subprocess.run')
    def test_install_pinned_version(self, mock_run, local_host):
        mock_run.return_value = completed()
        local_host.set_package_state("aide", "present", "0.18.6-2", 60)
        assert mock_run.call_args.args[0] == ["apt-get", "install", "-y", "aide=0.18.6-2"]

    def test_unknown_package_manager(self):
        with patch.object(LocalHost, '_detect_service_manager', return_value="service"), \
                patch.object(LocalHost, '_detect_package_manager', return_value="unknown"):
            host = LocalHost()
        with pytest.raises(HostError, match="no supported package manager"):
            host.package_status("aide", 5)
