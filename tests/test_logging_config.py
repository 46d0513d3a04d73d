"""Unit tests for logging configuration module."""
import logging
import logging.handlers
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

from metal_vsphere import logging_config


class TestUnifiedLogger:
    """Test UnifiedLogger class."""

    def setup_method(self):
        """Reset configuration state before each test."""
        logging_config.UnifiedLogger._configured = False
        root_logger = logging.getLogger()
        root_logger.handlers.clear()

    def teardown_method(self):
        """Close file handlers and restore console-only logging."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers.clear()
        logging_config.UnifiedLogger._configured = False
        logging_config.UnifiedLogger.configure(log_level="INFO", file_logging=False)

    def test_configure_basic(self):
        """Test basic configuration."""
        logging_config.UnifiedLogger.configure()
        assert logging_config.UnifiedLogger._configured is True
        root_logger = logging.getLogger()
        assert len(root_logger.handlers) > 0

    def test_configure_with_custom_level(self):
        """Test configuration with custom log level."""
        logging_config.UnifiedLogger.configure(log_level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_configure_with_custom_log_file(self):
        """Test configuration with custom log file path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "custom.log"
            logging_config.UnifiedLogger.configure(log_file=log_file)
            assert log_file.exists()
            self.teardown_method()

    def test_configure_with_custom_log_dir(self):
        """Test configuration with custom log directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_dir = Path(tmpdir) / "custom_logs"
            logging_config.UnifiedLogger.configure(log_dir=log_dir, file_logging=True)
            assert (log_dir / "metal_vsphere.log").exists()
            self.teardown_method()

    def test_file_logging_disabled(self):
        """Test METAL_VSPHERE_LOG_TO_FILE=0 keeps logging on the console only."""
        with patch.dict(os.environ, {"METAL_VSPHERE_LOG_TO_FILE": "0"}):
            logging_config.UnifiedLogger.configure()
        handlers = logging.getLogger().handlers
        assert not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)

    def test_configure_with_env_vars(self):
        """Test configuration with environment variables."""
        with tempfile.TemporaryDirectory() as tmpdir:
            env = {"METAL_VSPHERE_LOG_LEVEL": "WARNING", "METAL_VSPHERE_LOG_DIR": str(tmpdir)}
            with patch.dict(os.environ, env):
                logging_config.UnifiedLogger.configure(file_logging=True)
                assert logging.getLogger().level == logging.WARNING
                assert (Path(tmpdir) / "metal_vsphere.log").exists()
            self.teardown_method()

    def test_configure_with_env_log_file(self):
        """Test configuration with METAL_VSPHERE_LOG_FILE env var."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "env.log"
            with patch.dict(os.environ, {"METAL_VSPHERE_LOG_FILE": str(log_file)}):
                logging_config.UnifiedLogger.configure()
                assert log_file.exists()
            self.teardown_method()

    def test_configure_with_env_rotation_settings(self):
        """Test configuration with rotation settings from env."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "rotated.log"
            env = {"METAL_VSPHERE_LOG_MAX_BYTES": "2048", "METAL_VSPHERE_LOG_BACKUP_COUNT": "2"}
            with patch.dict(os.environ, env):
                logging_config.UnifiedLogger.configure(log_file=log_file)
            file_handler = next(h for h in logging.getLogger().handlers
                                if isinstance(h, logging.handlers.RotatingFileHandler))
            assert file_handler.maxBytes == 2048
            assert file_handler.backupCount == 2
            self.teardown_method()

    def test_configure_file_handler_error(self):
        """Test configuration handles file handler creation errors."""
        with patch("metal_vsphere.logging_config.logging.handlers.RotatingFileHandler") as mock_handler:
            mock_handler.side_effect = PermissionError("Permission denied")
            with tempfile.TemporaryDirectory() as tmpdir:
                # Should not raise, just log warning
                logging_config.UnifiedLogger.configure(log_file=Path(tmpdir) / "error.log")
                assert logging_config.UnifiedLogger._configured is True

    def test_configure_idempotent(self):
        """Test that configure can be called multiple times safely."""
        logging_config.UnifiedLogger.configure()
        first_handlers = len(logging.getLogger().handlers)
        logging_config.UnifiedLogger.configure()
        assert len(logging.getLogger().handlers) == first_handlers

    def test_get_logger_with_service(self):
        """Test getting logger with explicit service."""
        logger = logging_config.UnifiedLogger.get_logger("test_module", "PLATFORM")
        assert logger.name == "PLATFORM.test_module"

    def test_get_logger_without_service(self):
        """Test getting logger without service (auto-inference)."""
        assert logging_config.UnifiedLogger.get_logger("metal_vsphere.driver").name == "DRIVER.driver"
        assert logging_config.UnifiedLogger.get_logger("metal_vsphere.transport").name == "TRANSPORT.transport"
        assert logging_config.UnifiedLogger.get_logger("metal_vsphere.observer").name == "OBSERVER.observer"
        assert logging_config.UnifiedLogger.get_logger("metal_vsphere.unknown").name == "unknown"

    def test_get_logger_auto_configure(self):
        """Test that get_logger auto-configures if not configured."""
        logger = logging_config.UnifiedLogger.get_logger("test")
        assert logging_config.UnifiedLogger._configured is True
        assert logger is not None

    def test_log_machine_event(self):
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, "log") as mock_log:
            logging_config.UnifiedLogger.log_machine_event(logger, "web1", "powered on", "4213-abcd")
            mock_log.assert_called_once_with(logging.INFO, "[web1] powered on: 4213-abcd")

    def test_log_machine_event_without_details(self):
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, "log") as mock_log:
            logging_config.UnifiedLogger.log_machine_event(logger, "web1", "destroyed", level=logging.WARNING)
            mock_log.assert_called_once_with(logging.WARNING, "[web1] destroyed")

    def test_log_error_with_context(self):
        """Test log_error with context."""
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, "error") as mock_error:
            logging_config.UnifiedLogger.log_error(
                logger, "destroy", ValueError("Test error"), {"machine": "web1"}
            )
            mock_error.assert_called_once()
            assert "Context:" in mock_error.call_args[0][0]

    def test_log_error_without_context(self):
        """Test log_error without context."""
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, "error") as mock_error:
            logging_config.UnifiedLogger.log_error(logger, "destroy", ValueError("Test error"))
            mock_error.assert_called_once()
            assert "Context:" not in mock_error.call_args[0][0]

    def test_log_coherence_issue(self):
        """Test log_coherence_issue."""
        logger = logging_config.UnifiedLogger.get_logger("test")
        with patch.object(logger, "warning") as mock_warning:
            logging_config.UnifiedLogger.log_coherence_issue(
                logger, "stale_record", "web1", "server 4213-abcd not found"
            )
            mock_warning.assert_called_once()
            assert "stale_record" in mock_warning.call_args[0][0]
            assert "web1" in mock_warning.call_args[0][0]

    def test_configure_invalid_log_level(self):
        """Test configuration with invalid log level defaults to INFO."""
        logging_config.UnifiedLogger.configure(log_level="INVALID")
        assert logging.getLogger().level == logging.INFO
