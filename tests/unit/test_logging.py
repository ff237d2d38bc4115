# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs across tasks, configure_logging, and the AuditLogger trail

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gitops_reconciler.utils.logging import (
    AuditLogger,
    add_correlation_id,
    configure_logging,
    correlation_id,
    get_correlation_id,
    new_correlation_id,
    set_correlation_id,
)


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_new_correlation_id_is_short_hex(self):
        """Test generated ids are the first 8 hex characters of a UUID4."""
        cid = new_correlation_id()

        assert len(cid) == 8
        int(cid, 16)

    def test_get_correlation_id_generates_new_when_empty(self):
        """Test that get_correlation_id generates a new ID when none exists."""
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        assert correlation_id.get() == cid

    def test_get_correlation_id_returns_existing(self):
        """Test that get_correlation_id returns existing ID when set."""
        set_correlation_id("cycle123")

        assert get_correlation_id() == "cycle123"

    def test_get_correlation_id_preserves_value(self):
        """Test that subsequent calls return the same ID."""
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()

    async def test_tasks_keep_their_own_ids(self):
        """Test concurrent cycles in separate tasks never see each other's id."""
        seen: dict[str, str] = {}

        async def cycle(name: str, cid: str) -> None:
            set_correlation_id(cid)
            await asyncio.sleep(0)
            seen[name] = get_correlation_id()

        await asyncio.gather(cycle("shop-dev", "aaaa1111"), cycle("shop-prod", "bbbb2222"))

        assert seen == {"shop-dev": "aaaa1111", "shop-prod": "bbbb2222"}


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        """Test that correlation ID is added to event dictionary."""
        set_correlation_id("proc1234")
        event_dict = {"event": "Cycle started"}

        result = add_correlation_id(MagicMock(), "info", event_dict)

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "Cycle started"

    def test_generates_correlation_id_if_not_set(self):
        """Test that correlation ID is generated if not already set."""
        correlation_id.set("")

        result = add_correlation_id(MagicMock(), "info", {"event": "startup"})

        assert len(result["correlation_id"]) == 8


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_console_output(self):
        """Test the console renderer is used by default."""
        with patch("gitops_reconciler.utils.logging.structlog") as mock_structlog:
            configure_logging()

            mock_structlog.dev.ConsoleRenderer.assert_called_once()
            mock_structlog.processors.JSONRenderer.assert_not_called()
            mock_structlog.configure.assert_called_once()

    def test_json_output(self):
        """Test JSON lines are used when requested."""
        with patch("gitops_reconciler.utils.logging.structlog") as mock_structlog:
            configure_logging(json_output=True)

            mock_structlog.processors.JSONRenderer.assert_called_once()
            mock_structlog.dev.ConsoleRenderer.assert_not_called()

    def test_processors_order(self):
        """Test correlation ids are added before the renderer."""
        with patch("gitops_reconciler.utils.logging.structlog") as mock_structlog:
            configure_logging()

            processors = mock_structlog.configure.call_args[1]["processors"]
            assert len(processors) == 5
            assert processors[3] is add_correlation_id

    def test_logs_go_to_stderr(self):
        """Test stdout stays free for the MCP stdio transport."""
        with patch("gitops_reconciler.utils.logging.structlog") as mock_structlog:
            configure_logging()

            mock_structlog.PrintLoggerFactory.assert_called_once_with(file=sys.stderr)

    @pytest.mark.parametrize(
        ("level", "expected"),
        [("DEBUG", 10), ("info", 20), ("WARNING", 30), ("bogus", 20)],
    )
    def test_level_mapping(self, level: str, expected: int):
        """Test level names map onto the filtering bound logger."""
        with patch("gitops_reconciler.utils.logging.structlog") as mock_structlog:
            configure_logging(level=level)

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(expected)


@pytest.mark.unit
class TestAuditLoggerLog:
    """Tests for AuditLogger.log method."""

    def test_log_to_file(self, tmp_path: Path):
        """Test logging to a file."""
        log_file = tmp_path / "audit.log"
        logger = AuditLogger(log_path=log_file)
        set_correlation_id("file1234")

        logger.log(action="create", target="Deployment/shop/web", result="success")

        entry = json.loads(log_file.read_text().strip())
        assert entry["action"] == "create"
        assert entry["target"] == "Deployment/shop/web"
        assert entry["result"] == "success"
        assert entry["correlation_id"] == "file1234"
        assert entry["timestamp"].endswith("+00:00")
        assert "details" not in entry

    def test_log_appends_to_file(self, tmp_path: Path):
        """Test that multiple log calls append to the file."""
        log_file = tmp_path / "audit.log"
        logger = AuditLogger(log_path=log_file)

        logger.log("create", "ConfigMap/shop/cfg", "success")
        logger.log("delete", "Service/shop/old", "failed", {"attempts": 3})

        lines = log_file.read_text().strip().split("\n")
        assert [json.loads(line)["action"] for line in lines] == ["create", "delete"]
        assert json.loads(lines[1])["details"] == {"attempts": 3}

    def test_log_without_path_uses_structlog(self):
        """Test entries go through structlog when no file is configured."""
        logger = AuditLogger(log_path=None)

        with patch.object(logger, "_logger") as mock_logger:
            logger.log("update", "Deployment/shop/web", "success", {"application": "shop-dev"})

            mock_logger.info.assert_called_once_with(
                "audit",
                action="update",
                target="Deployment/shop/web",
                result="success",
                details={"application": "shop-dev"},
            )


@pytest.mark.unit
class TestAuditLoggerConvenience:
    """Tests for the read/write/blocked/error helpers."""

    def test_log_read(self):
        logger = AuditLogger()
        with patch.object(logger, "log") as mock_log:
            logger.log_read("get_application_status", "shop-dev")
            mock_log.assert_called_once_with("get_application_status", "shop-dev", "success")

    def test_log_write(self):
        logger = AuditLogger()
        details = {"application": "shop-dev", "attempts": 2}
        with patch.object(logger, "log") as mock_log:
            logger.log_write("update", "Deployment/shop/web", "success", details)
            mock_log.assert_called_once_with("update", "Deployment/shop/web", "success", details)

    def test_log_blocked(self, tmp_path: Path):
        """Test blocked entries carry the reason."""
        log_file = tmp_path / "audit.log"
        logger = AuditLogger(log_path=log_file)

        logger.log_blocked(
            "sync_application", "shop-prod", "Controller is running in read-only mode"
        )

        entry = json.loads(log_file.read_text().strip())
        assert entry["result"] == "blocked"
        assert entry["details"]["reason"] == "Controller is running in read-only mode"

    def test_log_error(self, tmp_path: Path):
        """Test error entries carry the error text."""
        log_file = tmp_path / "audit.log"
        logger = AuditLogger(log_path=log_file)

        logger.log_error("promote_application", "shop-prod", "no healthy revision")

        entry = json.loads(log_file.read_text().strip())
        assert entry["result"] == "error"
        assert entry["details"]["error"] == "no healthy revision"

    def test_different_correlation_ids(self, tmp_path: Path):
        """Test that different correlation IDs are recorded correctly."""
        log_file = tmp_path / "audit.log"
        logger = AuditLogger(log_path=log_file)

        set_correlation_id("cycle001")
        logger.log_write("create", "ConfigMap/shop/cfg", "success")
        set_correlation_id("cycle002")
        logger.log_write("update", "ConfigMap/shop/cfg", "success")

        lines = log_file.read_text().strip().split("\n")
        assert [json.loads(line)["correlation_id"] for line in lines] == ["cycle001", "cycle002"]
