"""Bootstrap option resolution.

Resolved options are rebuilt from MachineOptions on every call and never
persisted, so option changes made before the VM exists take effect, and
changes made afterwards are ignored (there is no drift repair).
"""
from __future__ import annotations

import getpass
import socket
from dataclasses import dataclass

from .schemas import BootstrapOptions, MachineOptions, MachineSpec

DEFAULT_KEY_NAME = "metal_default"


@dataclass(frozen=True)
class BootstrapIdentity:
    """Who is provisioning: recorded in the BootstrapHost/BootstrapUser tags."""
    host: str
    user: str

    @classmethod
    def local(cls) -> "BootstrapIdentity":
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return cls(host=socket.gethostname(), user=user)


def resolve_bootstrap_options(spec: MachineSpec, options: MachineOptions,
                              identity: BootstrapIdentity) -> BootstrapOptions:
    bootstrap = options.bootstrap_options.model_copy(deep=True)
    if not bootstrap.key_name:
        bootstrap.key_name = DEFAULT_KEY_NAME

    tags = {
        "Name": spec.name,
        "BootstrapId": spec.id or "",
        "BootstrapHost": identity.host,
        "BootstrapUser": identity.user,
    }
    # caller tags win
    tags.update(bootstrap.tags)
    bootstrap.tags = tags

    if not bootstrap.name:
        bootstrap.name = spec.name
    return bootstrap
