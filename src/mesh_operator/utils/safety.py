# ABOUTME: Safety utilities for the mesh GitOps operator
# ABOUTME: Implements read-only and non-destructive guards for cluster and mesh writes

"""Safety utilities guarding every write the operator makes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from mesh_operator.config import SafetySettings

logger = structlog.get_logger(__name__)


@dataclass
class OperationBlocked:
    """Result indicating a write is blocked by safety settings."""

    operation: str
    reason: str
    setting: str


class SafetyGuard:
    """Guard consulted before cluster applies, cluster deletes and mesh commands."""

    def __init__(self, settings: SafetySettings) -> None:
        """Initialize safety guard.

        Args:
            settings: Safety settings
        """
        self._settings = settings

    @property
    def read_only(self) -> bool:
        return self._settings.read_only

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Check if write operation is allowed.

        Args:
            operation: Operation name

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Operator is running in read-only mode",
                setting="OPERATOR_READ_ONLY",
            )
        return None

    def check_destructive_operation(self, operation: str) -> OperationBlocked | None:
        """Check if destructive (delete) operation is allowed.

        Args:
            operation: Operation name

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        write_check = self.check_write_operation(operation)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="OPERATOR_DISABLE_DESTRUCTIVE",
            )

        return None
