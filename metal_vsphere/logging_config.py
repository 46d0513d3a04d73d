"""Unified logging configuration for the vSphere driver.

Every component (driver, platform client, transports, convergence
strategies, observer) logs through loggers named "<SERVICE>.<module>" so
provisioning runs read as a single stream. Output goes to stdout and,
unless disabled, to a rotating log file.
"""
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional


class UnifiedLogger:
    """Unified logger configuration for the driver services."""

    # Service identifiers
    SERVICE_DRIVER = "DRIVER"
    SERVICE_PLATFORM = "PLATFORM"
    SERVICE_TRANSPORT = "TRANSPORT"
    SERVICE_CONVERGENCE = "CONVERGENCE"
    SERVICE_OBSERVER = "OBSERVER"

    _configured = False

    @classmethod
    def configure(
        cls,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        max_bytes: int = 10 * 1024 * 1024,  # 10MB default
        backup_count: int = 5,
        file_logging: Optional[bool] = None,
    ) -> None:
        """Configure unified logging for all driver components.

        Args:
            log_level: Logging level name. Defaults to INFO, or
                      METAL_VSPHERE_LOG_LEVEL.
            log_file: Path to log file. Falls back to METAL_VSPHERE_LOG_FILE,
                     then to metal_vsphere.log inside log_dir.
            log_dir: Directory for log files. Defaults to ./logs or
                    METAL_VSPHERE_LOG_DIR.
            max_bytes: Size in bytes before rotation (METAL_VSPHERE_LOG_MAX_BYTES).
            backup_count: Rotated files to keep (METAL_VSPHERE_LOG_BACKUP_COUNT).
            file_logging: Write to a log file at all. Defaults to true unless
                         METAL_VSPHERE_LOG_TO_FILE is "0".
        """
        if cls._configured:
            return

        level_str = (log_level or os.environ.get("METAL_VSPHERE_LOG_LEVEL", "INFO")).upper()
        level = logging.getLevelName(level_str)
        if not isinstance(level, int):
            level = logging.INFO

        max_bytes = int(os.environ.get("METAL_VSPHERE_LOG_MAX_BYTES", str(max_bytes)))
        backup_count = int(os.environ.get("METAL_VSPHERE_LOG_BACKUP_COUNT", str(backup_count)))
        if file_logging is None:
            file_logging = os.environ.get("METAL_VSPHERE_LOG_TO_FILE", "1") != "0"

        log_path: Optional[Path] = None
        if log_file:
            log_path = Path(log_file)
        elif os.environ.get("METAL_VSPHERE_LOG_FILE"):
            log_path = Path(os.environ["METAL_VSPHERE_LOG_FILE"])
        elif file_logging:
            log_dir = Path(log_dir or os.environ.get("METAL_VSPHERE_LOG_DIR", "./logs"))
            log_path = log_dir / "metal_vsphere.log"

        formatter = logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if log_path:
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.handlers.RotatingFileHandler(
                    log_path,
                    mode='a',
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding='utf-8'
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)
                logging.info(
                    "Logging to file: %s (rotation: %.1fMB, backups: %d)",
                    log_path, max_bytes / (1024 * 1024), backup_count
                )
            except OSError as e:
                logging.warning("Failed to create file handler: %s", e)

        cls._configured = True
        logging.info("Unified logging configured (level=%s)", level_str)

    @classmethod
    def get_logger(cls, module_name: str, service: Optional[str] = None) -> logging.Logger:
        """Get a logger for a module with service identification.

        Args:
            module_name: Module name (typically __name__).
            service: Service identifier. If None, inferred from the module name.
        """
        if not cls._configured:
            cls.configure()

        short_name = module_name.split('.')[-1]
        if not service:
            service = {
                "driver": cls.SERVICE_DRIVER,
                "platform": cls.SERVICE_PLATFORM,
                "transport": cls.SERVICE_TRANSPORT,
                "convergence": cls.SERVICE_CONVERGENCE,
                "observer": cls.SERVICE_OBSERVER,
            }.get(short_name)

        if service:
            return logging.getLogger(f"{service}.{short_name}")
        return logging.getLogger(short_name)

    @classmethod
    def log_error(cls, logger: logging.Logger, operation: str, error: Exception,
                  context: Optional[dict] = None):
        """Log error in unified format.

        Args:
            logger: Logger instance.
            operation: Operation that failed.
            error: Exception that occurred.
            context: Additional context dictionary (optional).
        """
        context_str = f" | Context: {context}" if context else ""
        logger.error(f"{operation} failed: {error}{context_str}", exc_info=True)

    @classmethod
    def log_machine_event(cls, logger: logging.Logger, machine_name: str, event: str,
                          details: Optional[str] = None, level: int = logging.INFO):
        """Log a machine lifecycle event, e.g. ``[web1] powered on: vm-1234``."""
        details_str = f": {details}" if details else ""
        logger.log(level, f"[{machine_name}] {event}{details_str}")

    @classmethod
    def log_coherence_issue(cls, logger: logging.Logger, issue_type: str,
                            resource_id: str, details: str):
        logger.warning(f"Coherence issue [{issue_type}] {resource_id}: {details}")
