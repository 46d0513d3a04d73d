"""Virtualization platform client interface.

The driver talks to vSphere only through PlatformClient. A live client is
looked up by provider name in a small registry (a pyVmomi-backed client
registers itself under "vsphere"); InMemoryPlatformClient keeps a simulated
inventory and is used in dry-run mode and by the test suite.

Resources returned by a client are handles valid for one operation only.
The driver re-fetches them by instance UUID on every call.
"""
from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import logging_config
from .exceptions import PlatformConnectionError, PlatformError

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_PLATFORM)

GUEST_TOOLS_RUNNING = "guestToolsRunning"
GUEST_TOOLS_NOT_RUNNING = "guestToolsNotRunning"
WINDOWS_GUEST_FAMILY = "windowsGuest"
LINUX_GUEST_FAMILY = "linuxGuest"


class PowerState(str, Enum):
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    SUSPENDED = "suspended"


class GuestFamily(Enum):
    UNIX = "unix"
    WINDOWS = "windows"

    @classmethod
    def from_platform(cls, guest_family: Optional[str]) -> "GuestFamily":
        return cls.WINDOWS if guest_family == WINDOWS_GUEST_FAMILY else cls.UNIX


@dataclass
class GuestInfo:
    """Result of a guest probe."""
    tools_running_status: str
    ip_address: Optional[str] = None
    guest_family: Optional[str] = None

    @property
    def tools_running(self) -> bool:
        return self.tools_running_status == GUEST_TOOLS_RUNNING

    @property
    def family(self) -> GuestFamily:
        return GuestFamily.from_platform(self.guest_family)

    @property
    def is_ready(self) -> bool:
        return self.tools_running and bool(self.ip_address)


@dataclass
class VirtualMachine:
    """A live VM handle."""
    instance_uuid: str
    name: str
    datacenter: Optional[str] = None
    folder: Optional[str] = None
    power_state: PowerState = PowerState.POWERED_OFF
    handle: Any = field(default=None, repr=False, compare=False)

    @property
    def path(self) -> str:
        return f"{self.folder}/{self.name}" if self.folder else self.name


class PlatformClient(ABC):
    """Narrow interface onto the virtualization platform.

    Implementations raise PlatformError on failure and return None from the
    find_* methods when nothing matches. Long-running platform tasks are
    awaited before the method returns, except graceful power-off, which
    only asks the guest to shut down.
    """

    @abstractmethod
    def find_by_instance_id(self, instance_uuid: str) -> Optional[VirtualMachine]:
        """Find a VM by its platform-assigned instance UUID."""

    @abstractmethod
    def find_by_path(self, datacenter: Optional[str], folder: Optional[str], name: str) -> Optional[VirtualMachine]:
        """Find a VM or template by inventory path."""

    @abstractmethod
    def clone(self, template: VirtualMachine, name: str, placement: Mapping[str, Any]) -> VirtualMachine:
        """Clone `template` into a new VM called `name`."""

    @abstractmethod
    def power_on(self, vm: VirtualMachine) -> None:
        """Power on and wait for the task to finish."""

    @abstractmethod
    def power_off(self, vm: VirtualMachine, graceful: bool = False) -> None:
        """Hard power-off, or ask the guest OS to shut down when graceful."""

    @abstractmethod
    def destroy(self, vm: VirtualMachine) -> None:
        """Delete the VM and its disks."""

    @abstractmethod
    def guest_probe(self, vm: VirtualMachine) -> GuestInfo:
        """Read guest tools status, IP address and guest family."""

    @abstractmethod
    def power_state(self, vm: VirtualMachine) -> PowerState:
        """Read the current power state."""

    def close(self) -> None:
        """Release the connection. Optional."""


_client_factories: Dict[str, Callable[[Any], PlatformClient]] = {}
_factories_lock = threading.Lock()


def register_client_factory(provider: str, factory: Callable[[Any], PlatformClient]) -> None:
    """Register the factory used by connect() for a provider name."""
    with _factories_lock:
        _client_factories[provider] = factory


def unregister_client_factory(provider: str) -> None:
    with _factories_lock:
        _client_factories.pop(provider, None)


def connect(connect_options, dry_run: bool = False) -> PlatformClient:
    """Establish a platform client for `connect_options`.

    Raises PlatformConnectionError when no client is available or the
    factory cannot connect.
    """
    if dry_run:
        logger.info("dry-run: using in-memory platform for %s", connect_options.host)
        return InMemoryPlatformClient()

    with _factories_lock:
        factory = _client_factories.get(connect_options.provider)
    if factory is None:
        raise PlatformConnectionError(
            f"no platform client registered for provider '{connect_options.provider}'",
            operation="connect",
        )
    try:
        return factory(connect_options)
    except PlatformError:
        raise
    except (ConnectionError, OSError) as e:
        raise PlatformConnectionError(
            f"cannot connect to {connect_options.host}:{connect_options.port}: {e}",
            operation="connect",
        ) from e


class InMemoryPlatformClient(PlatformClient):
    """Simulated vSphere inventory.

    Templates are registered with add_template(). Cloned VMs start powered
    off; on power-on the guest reports tools running and an IP address
    unless auto_boot is disabled, in which case tests drive the guest state
    with set_guest(). Every mutating call is appended to `calls`.
    """

    def __init__(self, auto_boot: bool = True):
        self.auto_boot = auto_boot
        self.vms: Dict[str, VirtualMachine] = {}
        self.guests: Dict[str, GuestInfo] = {}
        self.guest_families: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self._next_ip = 10

    def add_template(self, datacenter: Optional[str], folder: Optional[str], name: str,
                     guest_family: str = LINUX_GUEST_FAMILY) -> VirtualMachine:
        template = VirtualMachine(instance_uuid=str(uuid.uuid4()), name=name,
                                  datacenter=datacenter, folder=folder)
        self.vms[template.instance_uuid] = template
        self.guest_families[template.instance_uuid] = guest_family
        return template

    def set_guest(self, vm: VirtualMachine, tools_running_status: str, ip_address: Optional[str] = None) -> None:
        self.guests[vm.instance_uuid] = GuestInfo(
            tools_running_status=tools_running_status,
            ip_address=ip_address,
            guest_family=self.guest_families.get(vm.instance_uuid),
        )

    def _get(self, vm: VirtualMachine, operation: str) -> VirtualMachine:
        stored = self.vms.get(vm.instance_uuid)
        if stored is None:
            raise PlatformError(f"VM {vm.instance_uuid} does not exist", operation=operation,
                                server_id=vm.instance_uuid)
        return stored

    def find_by_instance_id(self, instance_uuid: str) -> Optional[VirtualMachine]:
        return self.vms.get(instance_uuid)

    def find_by_path(self, datacenter: Optional[str], folder: Optional[str], name: str) -> Optional[VirtualMachine]:
        for vm in self.vms.values():
            if vm.datacenter == datacenter and vm.folder == folder and vm.name == name:
                return vm
        return None

    def clone(self, template: VirtualMachine, name: str, placement: Mapping[str, Any]) -> VirtualMachine:
        self._get(template, "clone")
        vm = VirtualMachine(
            instance_uuid=str(uuid.uuid4()),
            name=name,
            datacenter=placement.get("datacenter", template.datacenter),
            folder=placement.get("vm_folder"),
        )
        self.vms[vm.instance_uuid] = vm
        self.guest_families[vm.instance_uuid] = self.guest_families.get(template.instance_uuid, LINUX_GUEST_FAMILY)
        self.guests[vm.instance_uuid] = GuestInfo(GUEST_TOOLS_NOT_RUNNING,
                                                  guest_family=self.guest_families[vm.instance_uuid])
        self.calls.append(("clone", vm.instance_uuid))
        logger.info("dry-run: cloned %s into %s (%s)", template.path, vm.path, vm.instance_uuid)
        return vm

    def power_on(self, vm: VirtualMachine) -> None:
        stored = self._get(vm, "power_on")
        stored.power_state = PowerState.POWERED_ON
        vm.power_state = PowerState.POWERED_ON
        if self.auto_boot:
            self._next_ip += 1
            self.set_guest(stored, GUEST_TOOLS_RUNNING, f"10.0.0.{self._next_ip}")
        self.calls.append(("power_on", vm.instance_uuid))

    def power_off(self, vm: VirtualMachine, graceful: bool = False) -> None:
        stored = self._get(vm, "power_off")
        if graceful and not self.guest_probe(stored).tools_running:
            raise PlatformError(f"cannot shut down guest of {vm.path}: guest tools not running",
                                operation="shutdown_guest", server_id=vm.instance_uuid)
        stored.power_state = PowerState.POWERED_OFF
        vm.power_state = PowerState.POWERED_OFF
        self.set_guest(stored, GUEST_TOOLS_NOT_RUNNING)
        self.calls.append(("shutdown_guest" if graceful else "power_off", vm.instance_uuid))

    def destroy(self, vm: VirtualMachine) -> None:
        self._get(vm, "destroy")
        del self.vms[vm.instance_uuid]
        self.guests.pop(vm.instance_uuid, None)
        self.calls.append(("destroy", vm.instance_uuid))

    def guest_probe(self, vm: VirtualMachine) -> GuestInfo:
        self._get(vm, "guest_probe")
        return self.guests.get(vm.instance_uuid) or GuestInfo(
            GUEST_TOOLS_NOT_RUNNING, guest_family=self.guest_families.get(vm.instance_uuid))

    def power_state(self, vm: VirtualMachine) -> PowerState:
        return self._get(vm, "power_state").power_state

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)
