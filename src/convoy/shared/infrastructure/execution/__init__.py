"""Command execution services."""

from convoy.shared.infrastructure.execution.command_executor import (
    CommandExecutor,
    CommandResult,
    SpawnedProcess,
)

__all__ = ["CommandExecutor", "CommandResult", "SpawnedProcess"]
