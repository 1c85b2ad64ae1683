# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs, configure_logging, and the write audit trail

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from mesh_operator.utils.logging import (
    AuditLogger,
    add_correlation_id,
    configure_logging,
    correlation_id,
    get_correlation_id,
    new_correlation_id,
    set_correlation_id,
)


def read_entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_get_correlation_id_generates_new_when_empty(self):
        """Test that get_correlation_id generates an ID when none exists."""
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        int(cid, 16)

    def test_get_correlation_id_preserves_value(self):
        """Test that subsequent calls return the same ID."""
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()

    def test_new_correlation_id_replaces_current(self):
        """Test that each pass gets a fresh ID."""
        set_correlation_id("pass0001")

        cid = new_correlation_id()

        assert cid != "pass0001"
        assert get_correlation_id() == cid

    async def test_ids_do_not_leak_between_tasks(self):
        """Test that a pass's ID stays inside its own task."""
        set_correlation_id("outer123")

        async def one_pass() -> str:
            return new_correlation_id()

        inner = await asyncio.create_task(one_pass())

        assert inner != "outer123"
        assert get_correlation_id() == "outer123"


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        """Test that the correlation ID is added to the event dictionary."""
        set_correlation_id("proc1234")

        result = add_correlation_id(MagicMock(), "info", {"event": "Applying desired state"})

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "Applying desired state"


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_console_output(self):
        """Test that console rendering is the default."""
        with patch("mesh_operator.utils.logging.structlog") as mock_structlog:
            configure_logging()

            mock_structlog.dev.ConsoleRenderer.assert_called_once()
            mock_structlog.processors.JSONRenderer.assert_not_called()
            mock_structlog.configure.assert_called_once()

    def test_json_output_flattens_exceptions(self):
        """Test that JSON output formats exception info before rendering."""
        with patch("mesh_operator.utils.logging.structlog") as mock_structlog:
            configure_logging(json_output=True)

            processors = mock_structlog.configure.call_args.kwargs["processors"]
            assert processors[-2] is mock_structlog.processors.format_exc_info
            assert processors[-1] is mock_structlog.processors.JSONRenderer.return_value

    def test_level_filter(self):
        """Test that the level name selects the filtering threshold."""
        with patch("mesh_operator.utils.logging.structlog") as mock_structlog:
            configure_logging(level="WARNING")

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(30)

    def test_processors_include_correlation_id(self):
        """Test that every line carries the correlation ID."""
        with patch("mesh_operator.utils.logging.structlog") as mock_structlog:
            configure_logging()

            processors = mock_structlog.configure.call_args.kwargs["processors"]
            assert add_correlation_id in processors


@pytest.mark.unit
class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_log_to_file(self, tmp_path: Path):
        """Test writing an entry to the audit file."""
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)
        set_correlation_id("file1234")

        audit.log_applied("mesh_apply", "cluster/edge")

        (entry,) = read_entries(log_file)
        assert entry["action"] == "mesh_apply"
        assert entry["target"] == "cluster/edge"
        assert entry["result"] == "applied"
        assert entry["correlation_id"] == "file1234"
        assert "timestamp" in entry
        assert "details" not in entry

    def test_entries_are_appended(self, tmp_path: Path):
        """Test that each write appends one JSON line."""
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)

        audit.log_applied("apply_manifest", "Service/apps/edge")
        audit.log_deleted("delete_manifest", "Deployment/apps/old")

        assert [e["result"] for e in read_entries(log_file)] == ["applied", "deleted"]

    def test_log_blocked_records_reason(self, tmp_path: Path):
        """Test that blocked writes carry the guard's reason."""
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)

        audit.log_blocked("delete_manifest", "Deployment/apps/old", "Destructive operations are disabled")

        (entry,) = read_entries(log_file)
        assert entry["result"] == "blocked"
        assert entry["details"] == {"reason": "Destructive operations are disabled"}

    def test_log_error_records_error(self, tmp_path: Path):
        """Test that failed writes carry the error text."""
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)

        audit.log_error("mesh_apply", "route/edge", "exit status 1")

        (entry,) = read_entries(log_file)
        assert entry["result"] == "error"
        assert entry["details"] == {"error": "exit status 1"}

    def test_log_to_stdout(self):
        """Test that without a path entries go through structlog."""
        audit = AuditLogger(log_path=None)

        with patch.object(audit, "_logger") as mock_logger:
            audit.log_deleted("mesh_delete", "cluster/edge")

            mock_logger.info.assert_called_once_with(
                "audit",
                action="mesh_delete",
                target="cluster/edge",
                result="deleted",
                details=None,
            )
