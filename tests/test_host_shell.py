"""Tests for host_shell module."""

import subprocess
from unittest import mock

import paramiko
import pytest

from quickvm_setup.errors import ExternalCommandFailure
from quickvm_setup.host_shell import LocalShell, SSHShell


class TestLocalShell:
    """Tests for LocalShell class."""

    @mock.patch("subprocess.run")
    def test_run_success(self, mock_run):
        mock_run.return_value = mock.Mock(returncode=0, stdout="ok\n", stderr="")

        result = LocalShell().run(["pveam", "update"])

        assert result.ok
        assert result.stdout == "ok\n"
        mock_run.assert_called_once_with(
            ["pveam", "update"], input=None, capture_output=True, text=True, timeout=600
        )

    @mock.patch("subprocess.run")
    def test_run_failure_raises(self, mock_run):
        mock_run.return_value = mock.Mock(returncode=2, stdout="", stderr="bad option")

        with pytest.raises(ExternalCommandFailure, match="bad option") as exc_info:
            LocalShell().run(["pct", "list", "--bogus"])

        assert exc_info.value.returncode == 2
        assert exc_info.value.command == "pct list --bogus"

    @mock.patch("subprocess.run")
    def test_run_failure_unchecked(self, mock_run):
        mock_run.return_value = mock.Mock(returncode=1, stdout="", stderr="")

        assert not LocalShell().run(["false"], check=False).ok

    @mock.patch("subprocess.run", side_effect=FileNotFoundError("pct"))
    def test_missing_binary(self, mock_run):
        with pytest.raises(ExternalCommandFailure, match="Command not found: pct") as exc_info:
            LocalShell().run(["pct", "list"])
        assert "Proxmox VE node" in exc_info.value.remediation

    @mock.patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["dnf"], 5))
    def test_timeout(self, mock_run):
        with pytest.raises(ExternalCommandFailure, match="timed out"):
            LocalShell().run(["dnf", "update"], timeout=5)

    @mock.patch("subprocess.run")
    def test_pct_exec(self, mock_run):
        mock_run.return_value = mock.Mock(returncode=0, stdout="", stderr="")

        LocalShell().pct_exec(102, ["systemctl", "daemon-reload"], input="data")

        args, kwargs = mock_run.call_args
        assert args[0] == ["pct", "exec", "102", "--", "systemctl", "daemon-reload"]
        assert kwargs["input"] == "data"

    def test_file_roundtrip(self, tmp_path):
        shell = LocalShell()
        path = str(tmp_path / "nested" / "state.env")

        assert shell.read_file(path) is None
        assert not shell.file_exists(path)

        shell.write_file(path, "MAC=00:50:56:aa:bb:cc\n", mode=0o640)

        assert shell.read_file(path) == "MAC=00:50:56:aa:bb:cc\n"
        assert (tmp_path / "nested" / "state.env").stat().st_mode & 0o777 == 0o640
        assert shell.remove_file(path) is True
        assert shell.remove_file(path) is False

    def test_make_dirs(self, tmp_path):
        target = tmp_path / "var" / "quickvm"

        LocalShell().make_dirs(str(target), mode=0o750)

        assert target.is_dir()
        assert target.stat().st_mode & 0o777 == 0o750


class TestSSHShell:
    """Tests for SSHShell class."""

    @pytest.fixture
    def ssh_client(self):
        with mock.patch("quickvm_setup.host_shell.paramiko.SSHClient") as mock_cls:
            client = mock.MagicMock()
            mock_cls.return_value = client
            yield client

    def _exec_result(self, client, stdout=b"", stderr=b"", status=0):
        stdin = mock.MagicMock()
        out = mock.MagicMock()
        out.read.return_value = stdout
        out.channel.recv_exit_status.return_value = status
        err = mock.MagicMock()
        err.read.return_value = stderr
        client.exec_command.return_value = (stdin, out, err)
        return stdin

    def test_run_quotes_command(self, ssh_client):
        self._exec_result(ssh_client, stdout=b"100\n")

        result = SSHShell("pve.maas", key_filename="/keys/id").run(["pct", "exec", "100", "--", "sh", "-c", "echo hi"])

        assert result.stdout == "100\n"
        ssh_client.connect.assert_called_once_with(
            hostname="pve.maas", username="root", key_filename="/keys/id", timeout=10
        )
        assert ssh_client.exec_command.call_args[0][0] == "pct exec 100 -- sh -c 'echo hi'"

    def test_run_with_input(self, ssh_client):
        stdin = self._exec_result(ssh_client)

        SSHShell("pve.maas").run(["cat"], input="payload")

        stdin.write.assert_called_once_with("payload")
        stdin.channel.shutdown_write.assert_called_once()

    def test_run_failure(self, ssh_client):
        self._exec_result(ssh_client, stderr=b"permission denied", status=1)

        with pytest.raises(ExternalCommandFailure, match="permission denied"):
            SSHShell("pve.maas").run(["pvesm", "status"])

    def test_connect_failure(self, ssh_client):
        ssh_client.connect.side_effect = paramiko.SSHException("auth failed")

        with pytest.raises(ExternalCommandFailure, match="Cannot connect to root@pve.maas"):
            SSHShell("pve.maas").run(["true"])

    def test_read_missing_file(self, ssh_client):
        sftp = ssh_client.open_sftp.return_value
        sftp.open.side_effect = FileNotFoundError()

        assert SSHShell("pve.maas").read_file("/etc/quickvm/state.env") is None
        sftp.close.assert_called_once()

    def test_close(self, ssh_client):
        self._exec_result(ssh_client)
        shell = SSHShell("pve.maas")
        shell.run(["true"])

        shell.close()

        ssh_client.close.assert_called_once()

    def test_write_file_leaves_parent_mode_alone(self, ssh_client):
        self._exec_result(ssh_client)
        sftp = ssh_client.open_sftp.return_value

        SSHShell("pve.maas").write_file("/etc/systemd/system/quickvm-provider-port-forward.service", "[Unit]\n", mode=0o644)

        commands = [c[0][0] for c in ssh_client.exec_command.call_args_list]
        assert commands == ["mkdir -p /etc/systemd/system"]
        handle = sftp.open.return_value.__enter__.return_value
        handle.chmod.assert_called_once_with(0o644)
        handle.write.assert_called_once_with("[Unit]\n")
        sftp.chown.assert_not_called()
