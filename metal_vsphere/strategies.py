"""Guest-family capability registry.

Each GuestFamily maps to one set of capabilities: how to reach the guest,
how to converge it, and which machine handle wraps the two. Callers select
by family once instead of branching on Windows/Unix themselves.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Type

from .bootstrap import BootstrapIdentity, resolve_bootstrap_options
from .convergence import ConvergenceStrategy, InstallCached, InstallMsi, NoConverge
from .exceptions import PreconditionError
from .machine import Machine, UnixMachine, WindowsMachine
from .platform import GuestFamily, GuestInfo
from .schemas import BootstrapOptions, MachineOptions, MachineSpec
from .transport import SSHTransport, Transport, create_winrm_transport

TransportFactory = Callable[[MachineSpec, BootstrapOptions, MachineOptions, GuestInfo, Mapping[str, Any]], Transport]


def create_ssh_transport(spec: MachineSpec, bootstrap: BootstrapOptions, options: MachineOptions,
                         guest: GuestInfo, config: Mapping[str, Any]) -> Transport:
    """SSH transport to the guest IP. The host is None until the guest reports
    an address; such a transport is never available."""
    ssh = bootstrap.ssh
    if ssh is None or ssh.port is None:
        raise PreconditionError(f"Must specify bootstrap_options.ssh.port for machine {spec.name}")

    location = spec.location
    user = ssh.user or (location.ssh_username if location else None) or options.ssh_username or "root"
    sudo = location.sudo if location and location.sudo is not None else options.sudo
    extra = {"sudo": sudo, "ssh_gateway": location.ssh_gateway if location else options.ssh_gateway}
    return SSHTransport(guest.ip_address, user, ssh.model_dump(exclude_none=True), extra, config)


@dataclass(frozen=True)
class GuestCapabilities:
    transport_factory: TransportFactory
    convergence_class: Type[ConvergenceStrategy]
    machine_class: Type[Machine]


CAPABILITIES: Dict[GuestFamily, GuestCapabilities] = {
    GuestFamily.UNIX: GuestCapabilities(create_ssh_transport, InstallCached, UnixMachine),
    GuestFamily.WINDOWS: GuestCapabilities(create_winrm_transport, InstallMsi, WindowsMachine),
}


def recorded_family(spec: MachineSpec) -> GuestFamily:
    if spec.location is not None and spec.location.is_windows:
        return GuestFamily.WINDOWS
    return GuestFamily.UNIX


def transport_for(spec: MachineSpec, options: MachineOptions, guest: GuestInfo,
                  identity: BootstrapIdentity, config: Optional[Mapping[str, Any]] = None) -> Transport:
    """Transport for the live guest; the family comes from the probe."""
    bootstrap = resolve_bootstrap_options(spec, options, identity)
    factory = CAPABILITIES[guest.family].transport_factory
    return factory(spec, bootstrap, options, guest, config or {})


def convergence_strategy_for(spec: MachineSpec, options: MachineOptions,
                             config: Optional[Mapping[str, Any]] = None) -> ConvergenceStrategy:
    """Strategy chosen from the persisted record only, never the live VM."""
    if spec.location is None:
        return NoConverge(options.convergence_options, config)
    convergence_class = CAPABILITIES[recorded_family(spec)].convergence_class
    return convergence_class(options.convergence_options, config)


def machine_for(spec: MachineSpec, transport: Transport, strategy: ConvergenceStrategy) -> Machine:
    return CAPABILITIES[recorded_family(spec)].machine_class(spec, transport, strategy)
