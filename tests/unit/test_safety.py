# ABOUTME: Unit tests for safety utilities
# ABOUTME: Tests read-only and non-destructive write guards

import pytest

from mesh_operator.config import SafetySettings
from mesh_operator.utils.safety import OperationBlocked, SafetyGuard


@pytest.mark.unit
class TestSafetyGuard:
    """Tests for SafetyGuard class."""

    def test_write_allowed_by_default(self, safety_guard: SafetyGuard):
        """Test that writes pass when no guard is on."""
        assert safety_guard.check_write_operation("apply_manifest") is None
        assert safety_guard.check_destructive_operation("delete_manifest") is None

    def test_read_only_blocks_writes(self, read_only_safety_guard: SafetyGuard):
        """Test that read-only mode blocks applies."""
        result = read_only_safety_guard.check_write_operation("mesh_apply")

        assert isinstance(result, OperationBlocked)
        assert result.operation == "mesh_apply"
        assert result.setting == "OPERATOR_READ_ONLY"
        assert read_only_safety_guard.read_only is True

    def test_read_only_wins_over_destructive(self, read_only_safety_guard: SafetyGuard):
        """Test that a delete in read-only mode reports the read-only setting."""
        result = read_only_safety_guard.check_destructive_operation("mesh_delete")

        assert result is not None
        assert result.setting == "OPERATOR_READ_ONLY"

    def test_disable_destructive_blocks_only_deletes(self):
        """Test that non-destructive mode still allows applies."""
        guard = SafetyGuard(SafetySettings(read_only=False, disable_destructive=True))

        assert guard.check_write_operation("apply_manifest") is None
        result = guard.check_destructive_operation("delete_manifest")
        assert result is not None
        assert result.setting == "OPERATOR_DISABLE_DESTRUCTIVE"

