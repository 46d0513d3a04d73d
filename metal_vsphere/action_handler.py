"""Action reporting context passed into every lifecycle operation."""
from __future__ import annotations

import logging
import sys
from typing import Callable, List, Optional, Sequence, TypeVar, Union

from . import logging_config

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_DRIVER)

T = TypeVar("T")


class ActionHandler:
    """Reports progress and runs side-effecting actions.

    With should_perform_actions false (why-run mode) perform_action only
    records what would have happened.
    """

    def __init__(self, should_perform_actions: bool = True, log: Optional[logging.Logger] = None,
                 interactive: Optional[bool] = None, stream=None):
        self.should_perform_actions = should_perform_actions
        self.stream = stream or sys.stdout
        self.interactive = self.stream.isatty() if interactive is None else interactive
        self.log = log or logger
        self.performed: List[str] = []

    def report_progress(self, description: Union[str, Sequence[str]]) -> None:
        lines = [description] if isinstance(description, str) else list(description)
        for line in lines:
            self.log.info(line)

    def report_tick(self) -> None:
        """One dot per poll while waiting, in interactive mode only."""
        if self.interactive:
            self.stream.write(".")
            self.stream.flush()

    def performed_action(self, description: Union[str, Sequence[str]]) -> None:
        lines = [description] if isinstance(description, str) else list(description)
        self.performed.extend(lines)
        for line in lines:
            self.log.info("- %s", line)

    def perform_action(self, description: str, action: Callable[[], T]) -> Optional[T]:
        if not self.should_perform_actions:
            self.log.info("Would %s", description)
            return None
        result = action()
        self.performed_action(description)
        return result

    @property
    def updated(self) -> bool:
        return bool(self.performed)
