"""
Command and file access on the Proxmox host.

Provisioning normally runs on the node itself (LocalShell). When a remote
host is configured, the same operations go over SSH with paramiko.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import paramiko

from quickvm_setup.errors import ExternalCommandFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600


@dataclass
class CommandResult:
    """Outcome of a host command."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class HostShell:
    """Interface shared by the local and SSH implementations."""

    def run(
        self,
        args: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        raise NotImplementedError

    def read_file(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def write_file(
        self, path: str, content: str, mode: int = 0o600, owner: Optional[Tuple[int, int]] = None
    ) -> None:
        raise NotImplementedError

    def remove_file(self, path: str) -> bool:
        raise NotImplementedError

    def make_dirs(self, path: str, mode: int = 0o755, owner: Optional[Tuple[int, int]] = None) -> None:
        raise NotImplementedError

    def file_exists(self, path: str) -> bool:
        return self.read_file(path) is not None

    def pct_exec(
        self,
        vmid: int,
        args: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        """Run a command inside container ``vmid`` and wait for it."""
        return self.run(["pct", "exec", str(vmid), "--", *args], input=input, check=check, timeout=timeout)

    @staticmethod
    def _check(result: CommandResult, check: bool) -> CommandResult:
        if check and not result.ok:
            command = shlex.join(result.args)
            raise ExternalCommandFailure(
                f"Command failed (exit {result.returncode}): {command}",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result


class LocalShell(HostShell):
    """Runs commands with subprocess on the machine executing this tool."""

    def run(
        self,
        args: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug(f"$ {shlex.join(argv)}")
        try:
            proc = subprocess.run(argv, input=input, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise ExternalCommandFailure(
                f"Command not found: {argv[0]}",
                command=shlex.join(argv),
                remediation="Run this tool on a Proxmox VE node (or pass --host)",
            )
        except subprocess.TimeoutExpired:
            raise ExternalCommandFailure(
                f"Command timed out after {timeout}s: {shlex.join(argv)}", command=shlex.join(argv)
            )
        return self._check(CommandResult(argv, proc.returncode, proc.stdout, proc.stderr), check)

    def read_file(self, path: str) -> Optional[str]:
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return None

    def write_file(
        self, path: str, content: str, mode: int = 0o600, owner: Optional[Tuple[int, int]] = None
    ) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Create with restrictive permissions before any content lands
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(target, mode)
        if owner is not None:
            os.chown(target, *owner)

    def remove_file(self, path: str) -> bool:
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False

    def make_dirs(self, path: str, mode: int = 0o755, owner: Optional[Tuple[int, int]] = None) -> None:
        target = Path(path)
        target.mkdir(parents=True, exist_ok=True)
        os.chmod(target, mode)
        if owner is not None:
            os.chown(target, *owner)


class SSHShell(HostShell):
    """Runs commands on a remote Proxmox node over SSH."""

    def __init__(self, host: str, username: str = "root", key_filename: str = "~/.ssh/id_rsa"):
        self.host = host
        self.username = username
        self.key_filename = os.path.expanduser(key_filename)
        self._client: Optional[paramiko.SSHClient] = None

    def _connect(self) -> paramiko.SSHClient:
        if self._client is None:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(hostname=self.host, username=self.username, key_filename=self.key_filename, timeout=10)
            except (paramiko.SSHException, OSError) as e:
                raise ExternalCommandFailure(
                    f"Cannot connect to {self.username}@{self.host}: {e}",
                    remediation="Check SSH_USER / SSH_KEY_PATH or run the tool directly on the node",
                )
            self._client = client
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def run(
        self,
        args: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        command = shlex.join(argv)
        logger.debug(f"$ [{self.host}] {command}")
        client = self._connect()
        stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
        if input is not None:
            stdin.write(input)
            stdin.channel.shutdown_write()
        out = stdout.read().decode()
        err = stderr.read().decode()
        returncode = stdout.channel.recv_exit_status()
        return self._check(CommandResult(argv, returncode, out, err), check)

    def read_file(self, path: str) -> Optional[str]:
        sftp = self._connect().open_sftp()
        try:
            with sftp.open(path, "r") as f:
                return f.read().decode()
        except FileNotFoundError:
            return None
        finally:
            sftp.close()

    def write_file(
        self, path: str, content: str, mode: int = 0o600, owner: Optional[Tuple[int, int]] = None
    ) -> None:
        # Parent directories are created if missing; existing ones keep their mode
        self.run(["mkdir", "-p", os.path.dirname(path) or "/"])
        sftp = self._connect().open_sftp()
        try:
            with sftp.open(path, "w") as f:
                f.chmod(mode)
                f.write(content)
            if owner is not None:
                sftp.chown(path, *owner)
        finally:
            sftp.close()

    def remove_file(self, path: str) -> bool:
        sftp = self._connect().open_sftp()
        try:
            sftp.remove(path)
            return True
        except FileNotFoundError:
            return False
        finally:
            sftp.close()

    def make_dirs(self, path: str, mode: int = 0o755, owner: Optional[Tuple[int, int]] = None) -> None:
        self.run(["mkdir", "-p", path])
        self.run(["chmod", format(mode, "o"), path])
        if owner is not None:
            self.run(["chown", f"{owner[0]}:{owner[1]}", path])
