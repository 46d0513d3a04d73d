"""Post-boot convergence strategies.

A strategy installs the configuration-management client on a ready
machine, runs it, and on destroy removes the machine's node and client
objects from the configuration server. Which strategy applies is decided
from the persisted record only (see strategies.convergence_strategy_for).
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import httpx

from . import logging_config
from .exceptions import ConvergenceError, InvalidServerURLError

if TYPE_CHECKING:
    from .action_handler import ActionHandler
    from .machine import Machine
    from .schemas import MachineSpec

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_CONVERGENCE)

DEFAULT_CACHE_DIR = Path(os.environ.get("METAL_VSPHERE_CACHE_DIR", Path.home() / ".metal_vsphere" / "cache"))


class ConfigServerClient:
    """Minimal client for the configuration server's node/client objects."""

    def __init__(self, server_url: str, headers: Optional[Mapping[str, str]] = None,
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        parsed = urlparse(server_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidServerURLError(f"invalid configuration server URL: {server_url!r}")
        self.server_url = server_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport

    def delete(self, kind: str, name: str) -> bool:
        """DELETE /<kind>/<name>. Returns False when it did not exist."""
        url = f"{self.server_url}/{kind}/{name}"
        try:
            with httpx.Client(timeout=self.timeout, headers=self.headers, transport=self._transport) as client:
                response = client.delete(url)
        except httpx.HTTPError as e:
            raise ConvergenceError(f"cannot delete {kind}/{name} on {self.server_url}: {e}") from e
        if response.status_code == 404:
            return False
        if response.status_code >= 400:
            raise ConvergenceError(
                f"deleting {kind}/{name} on {self.server_url} returned HTTP {response.status_code}"
            )
        return True


class ConvergenceStrategy(ABC):

    def __init__(self, convergence_options: Optional[Mapping[str, Any]] = None,
                 config: Optional[Mapping[str, Any]] = None):
        self.convergence_options: Dict[str, Any] = dict(convergence_options or {})
        self.config: Dict[str, Any] = dict(config or {})

    @property
    def server_url(self) -> Optional[str]:
        return self.convergence_options.get("chef_server_url") or self.config.get("chef_server_url")

    def server_client(self) -> Optional[ConfigServerClient]:
        if not self.server_url:
            return None
        return ConfigServerClient(
            self.server_url,
            headers=self.convergence_options.get("server_headers"),
            transport=self.convergence_options.get("http_transport"),
        )

    @abstractmethod
    def setup_convergence(self, action_handler: "ActionHandler", machine: "Machine") -> None:
        """Install and configure the client on the machine."""

    @abstractmethod
    def converge(self, action_handler: "ActionHandler", machine: "Machine") -> None:
        """Run the client on the machine."""

    def cleanup(self, action_handler: "ActionHandler", spec: "MachineSpec") -> None:
        """Delete the node and client objects named after the machine.

        Raises InvalidServerURLError if the server URL is malformed.
        """
        client = self.server_client()
        if client is None:
            logger.debug("No configuration server configured; nothing to clean up for %s", spec.name)
            return
        for kind in ("nodes", "clients"):
            description = f"delete {kind[:-1]} {spec.name} at {client.server_url}"
            deleted = action_handler.perform_action(description, lambda kind=kind: client.delete(kind, spec.name))
            if deleted is False:
                logger.debug("%s/%s already absent on %s", kind, spec.name, client.server_url)

    def _client_config(self, machine: "Machine") -> str:
        lines = [f"node_name {machine.spec.name!r}"]
        if self.server_url:
            lines.append(f"chef_server_url {self.server_url!r}")
        log_level = self.convergence_options.get("log_level", "info")
        lines.append(f"log_level :{log_level}")
        return "\n".join(lines) + "\n"


class NoConverge(ConvergenceStrategy):
    """Used before the machine exists: nothing to install or run."""

    def setup_convergence(self, action_handler, machine) -> None:
        logger.debug("NoConverge: skipping setup for %s", machine.spec.name)

    def converge(self, action_handler, machine) -> None:
        logger.debug("NoConverge: skipping converge for %s", machine.spec.name)


class InstallCached(ConvergenceStrategy):
    """Download the client package once into a local cache, upload it to
    each machine and install it there."""

    CONFIG_PATH = "/etc/chef/client.rb"

    def __init__(self, convergence_options=None, config=None, cache_dir: Optional[Path] = None):
        super().__init__(convergence_options, config)
        self.cache_dir = Path(cache_dir or self.convergence_options.get("package_cache_path") or DEFAULT_CACHE_DIR)

    def _cached_package(self) -> Path:
        package_url = self.convergence_options.get("package_url")
        if not package_url:
            raise ConvergenceError("convergence_options['package_url'] is required to install the client")
        path = self.cache_dir / Path(urlparse(package_url).path).name
        if path.exists():
            return path
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = path.with_suffix(path.suffix + ".part")
        logger.info("Downloading %s into %s", package_url, self.cache_dir)
        try:
            with httpx.stream("GET", package_url, follow_redirects=True, timeout=300.0) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise ConvergenceError(f"cannot download {package_url}: {e}") from e
        partial.rename(path)
        return path

    @staticmethod
    def install_command(remote_path: str) -> str:
        if remote_path.endswith(".deb"):
            return f"dpkg -i {remote_path}"
        if remote_path.endswith(".rpm"):
            return f"rpm -Uvh --oldpackage --replacepkgs {remote_path}"
        return f"sh {remote_path}"

    def setup_convergence(self, action_handler, machine) -> None:
        if machine.execute("which chef-client").ok and not self.convergence_options.get("force_install"):
            logger.debug("Client already installed on %s", machine.spec.name)
        else:
            package = self._cached_package()
            remote_path = f"/tmp/{package.name}"

            def install():
                machine.upload_file(str(package), remote_path)
                machine.execute(self.install_command(remote_path)).check()

            action_handler.perform_action(f"install {package.name} on {machine.spec.name}", install)

        action_handler.perform_action(
            f"write {self.CONFIG_PATH} on {machine.spec.name}",
            lambda: self._write_config(machine),
        )

    def _write_config(self, machine) -> None:
        machine.execute("mkdir -p /etc/chef").check()
        machine.write_file(self.CONFIG_PATH, self._client_config(machine))

    def converge(self, action_handler, machine) -> None:
        command = self.convergence_options.get("client_command", "chef-client")
        action_handler.perform_action(
            f"run '{command}' on {machine.spec.name}",
            lambda: machine.execute(command).check(),
        )


class InstallMsi(ConvergenceStrategy):
    """Install the client on Windows guests from an MSI package."""

    CONFIG_PATH = "C:\\chef\\client.rb"

    def setup_convergence(self, action_handler, machine) -> None:
        msi_url = self.convergence_options.get("msi_url")
        if not msi_url:
            raise ConvergenceError("convergence_options['msi_url'] is required to install the client")
        action_handler.perform_action(
            f"install client MSI on {machine.spec.name}",
            lambda: machine.execute(f"msiexec /qn /i {msi_url}").check(),
        )
        action_handler.perform_action(
            f"write {self.CONFIG_PATH} on {machine.spec.name}",
            lambda: machine.write_file(self.CONFIG_PATH, self._client_config(machine)),
        )

    def converge(self, action_handler, machine) -> None:
        command = self.convergence_options.get("client_command", "chef-client")
        action_handler.perform_action(
            f"run '{command}' on {machine.spec.name}",
            lambda: machine.execute(command).check(),
        )
