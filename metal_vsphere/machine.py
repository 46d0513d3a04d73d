"""Machine handles returned by VsphereDriver.ready_machine / connect_to_machine."""
from __future__ import annotations

from typing import TYPE_CHECKING

from .transport import CommandResult, Transport

if TYPE_CHECKING:
    from .action_handler import ActionHandler
    from .convergence import ConvergenceStrategy
    from .schemas import MachineSpec


class Machine:
    """A ready machine: its record, a way in, and a way to converge it."""

    is_windows = False

    def __init__(self, spec: "MachineSpec", transport: Transport, convergence_strategy: "ConvergenceStrategy"):
        self.spec = spec
        self.transport = transport
        self.convergence_strategy = convergence_strategy

    @property
    def name(self) -> str:
        return self.spec.name

    def setup_convergence(self, action_handler: "ActionHandler") -> None:
        self.convergence_strategy.setup_convergence(action_handler, self)

    def converge(self, action_handler: "ActionHandler") -> None:
        self.convergence_strategy.converge(action_handler, self)

    def execute(self, command: str) -> CommandResult:
        return self.transport.execute(command)

    def write_file(self, path: str, content: str) -> None:
        self.transport.write_file(path, content)

    def upload_file(self, local_path: str, path: str) -> None:
        self.transport.upload_file(local_path, path)

    def disconnect(self) -> None:
        self.transport.disconnect()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name='{self.name}')>"


class UnixMachine(Machine):
    pass


class WindowsMachine(Machine):
    is_windows = True

    def execute(self, command: str) -> CommandResult:
        return self.transport.execute(f"powershell -NoProfile -NonInteractive -Command \"{command}\"")
