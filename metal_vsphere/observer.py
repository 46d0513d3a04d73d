"""OBSERVER: coherence checks between stored machine records and vSphere.

Periodically compares every record in the MachineStore with the platform:
- a record whose server_id no longer resolves is stale (the next
  allocate_machine call will recreate the VM),
- a record created through a different driver URL cannot be managed by
  this driver.

Issues are logged only. Repair happens through the lifecycle operations.

Run one next to the driver that owns the records:

    observer = driver.observer(MachineStore(), check_interval=60)
    observer.start()
    ...
    observer.stop()
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from . import logging_config
from .exceptions import PlatformError
from .machine_store import MachineStore
from .platform import PlatformClient

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_OBSERVER)


@dataclass
class CoherenceIssue:
    """Represents a detected record/platform mismatch."""
    issue_type: str  # "stale_record", "driver_url_mismatch", "probe_failed"
    resource_id: str
    details: str


class ObserverInterface(ABC):

    @abstractmethod
    def check_coherence(self) -> List[CoherenceIssue]:
        """Perform coherence checks and return list of issues found."""

    @abstractmethod
    def start(self) -> None:
        """Start the observer background task."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the observer background task."""


class LocalObserver(ObserverInterface):
    """Checks the records of one driver URL against its platform client."""

    def __init__(self, store: MachineStore, platform: PlatformClient, driver_url: str,
                 check_interval: float = 60.0):
        self.store = store
        self.platform = platform
        self.driver_url = driver_url
        self.check_interval = float(check_interval)
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.last_issues: List[CoherenceIssue] = []

    def check_coherence(self) -> List[CoherenceIssue]:
        issues = []
        for spec in self.store.all():
            location = spec.location
            if location is None:
                continue
            if location.driver_url != self.driver_url:
                issues.append(CoherenceIssue(
                    issue_type="driver_url_mismatch",
                    resource_id=spec.name,
                    details=f"record was created by {location.driver_url}, not {self.driver_url}",
                ))
                continue
            try:
                vm = self.platform.find_by_instance_id(location.server_id)
            except PlatformError as e:
                issues.append(CoherenceIssue(
                    issue_type="probe_failed",
                    resource_id=spec.name,
                    details=f"lookup of {location.server_id} failed: {e}",
                ))
                continue
            if vm is None:
                issues.append(CoherenceIssue(
                    issue_type="stale_record",
                    resource_id=spec.name,
                    details=f"server {location.server_id} not found on {self.driver_url}",
                ))

        self.last_issues = issues
        return issues

    def _observer_loop(self) -> None:
        logger.info("Observer loop starting (check_interval=%.1fs)", self.check_interval)
        while self.running:
            try:
                issues = self.check_coherence()
                if issues:
                    logger.warning("Coherence check found %d issue(s)", len(issues))
                    for issue in issues:
                        logging_config.UnifiedLogger.log_coherence_issue(
                            logger, issue.issue_type, issue.resource_id, issue.details
                        )
                else:
                    logger.debug("Coherence check passed")
            except Exception as e:
                logger.error("Error in observer loop: %s", e)

            # Sleep for the check interval, but allow for quick stop.
            for _ in range(int(self.check_interval * 10)):
                if not self.running:
                    break
                time.sleep(0.1)

    def start(self) -> None:
        if self.running:
            logger.warning("Observer already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._observer_loop, daemon=True)
        self.thread.start()
        logger.info("Observer started")

    def stop(self) -> None:
        if not self.running:
            logger.warning("Observer not running")
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=5.0)
            logger.info("Observer stopped")
