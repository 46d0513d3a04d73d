"""Remote command transports.

The driver only needs Transport.available() to decide when a machine is
reachable; machine handles use execute() and write_file() to converge it.
SSH is the only supported transport. Windows guests would need WinRM,
which fails fast with UnsupportedTransportError.
"""
from __future__ import annotations

import posixpath
import socket
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import paramiko

from . import logging_config
from .exceptions import TransportError, UnsupportedTransportError

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_TRANSPORT)


@dataclass
class CommandResult:
    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def check(self) -> "CommandResult":
        """Raise TransportError unless the command exited 0."""
        if not self.ok:
            raise TransportError(
                f"command '{self.command}' exited with {self.exit_status}: {self.stderr.strip()}"
            )
        return self


class Transport(ABC):

    @abstractmethod
    def available(self) -> bool:
        """True once the remote end accepts commands. Never raises."""

    @abstractmethod
    def execute(self, command: str) -> CommandResult:
        """Run a command remotely."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Create or replace a remote file."""

    @abstractmethod
    def upload_file(self, local_path: str, path: str) -> None:
        """Copy a local file to the remote end."""

    def disconnect(self) -> None:
        pass


class SSHTransport(Transport):
    """SSH transport built on paramiko.

    `ssh_options` holds the resolved bootstrap ssh options (port, password,
    key_filename, timeout). `options` carries per-machine flags such as
    sudo; `config` is the driver configuration.
    """

    def __init__(self, host: Optional[str], username: str, ssh_options: Mapping[str, Any],
                 options: Optional[Mapping[str, Any]] = None, config: Optional[Mapping[str, Any]] = None,
                 client_factory=paramiko.SSHClient):
        self.host = host
        self.username = username
        self.ssh_options = dict(ssh_options)
        self.options = dict(options or {})
        self.config = dict(config or {})
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def port(self) -> int:
        return int(self.ssh_options.get("port") or 22)

    @property
    def sudo(self) -> bool:
        sudo = self.options.get("sudo")
        return bool(sudo) if sudo is not None else self.username != "root"

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": float(self.ssh_options.get("timeout") or 10.0),
        }
        if self.ssh_options.get("password"):
            kwargs["password"] = self.ssh_options["password"]
        if self.ssh_options.get("key_filename"):
            kwargs["key_filename"] = self.ssh_options["key_filename"]
        return kwargs

    def _session(self) -> paramiko.SSHClient:
        if self.host is None:
            raise TransportError("guest has not reported an IP address yet")
        if self._client is None:
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(**self._connect_kwargs())
            except (paramiko.SSHException, socket.error, EOFError) as e:
                client.close()
                raise TransportError(f"cannot connect to {self.username}@{self.host}:{self.port}: {e}") from e
            self._client = client
        return self._client

    def available(self) -> bool:
        if self.host is None:
            return False
        try:
            result = self.execute("pwd")
        except TransportError as e:
            logger.debug("%s:%s not yet available: %s", self.host, self.port, e)
            self.disconnect()
            return False
        return result.ok

    def execute(self, command: str) -> CommandResult:
        if self.sudo and not command.startswith("sudo "):
            command = f"sudo {command}"
        client = self._session()
        logger.debug("Executing on %s: %s", self.host, command)
        try:
            _, stdout, stderr = client.exec_command(command)
            exit_status = stdout.channel.recv_exit_status()
            return CommandResult(
                command=command,
                exit_status=exit_status,
                stdout=stdout.read().decode("utf-8", errors="replace"),
                stderr=stderr.read().decode("utf-8", errors="replace"),
            )
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.disconnect()
            raise TransportError(f"command '{command}' failed on {self.host}: {e}") from e

    def write_file(self, path: str, content: str) -> None:
        target = path
        if self.sudo:
            # upload somewhere writable, then move into place as root
            target = posixpath.join("/tmp", f"metal-{uuid.uuid4().hex}")
        client = self._session()
        try:
            sftp = client.open_sftp()
            try:
                with sftp.open(target, "w") as remote:
                    remote.write(content)
            finally:
                sftp.close()
        except (paramiko.SSHException, IOError) as e:
            raise TransportError(f"cannot write {path} on {self.host}: {e}") from e
        if target != path:
            self.execute(f"mv {target} {path}").check()

    def upload_file(self, local_path: str, path: str) -> None:
        target = posixpath.join("/tmp", posixpath.basename(path)) if self.sudo else path
        client = self._session()
        try:
            sftp = client.open_sftp()
            try:
                sftp.put(local_path, target)
            finally:
                sftp.close()
        except (paramiko.SSHException, IOError) as e:
            raise TransportError(f"cannot upload {local_path} to {self.host}:{path}: {e}") from e
        if target != path:
            self.execute(f"mv {target} {path}").check()

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_winrm_transport(*args, **kwargs) -> Transport:
    raise UnsupportedTransportError("Windows guest VMs are not yet supported")
