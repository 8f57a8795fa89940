"""
Collaborator interfaces consumed by the workflow engine.

The operation backend wraps the infrastructure-as-code tool; the state
backend owns state snapshots and their backups. Both are implemented outside
this package. Failures must be raised as ``OperationError`` with a code so
the engine can classify them.
"""

from __future__ import annotations

import abc
from typing import Any, Dict


class OperationBackend(abc.ABC):
    """Infrastructure operations invoked by workflow steps."""

    @abc.abstractmethod
    async def deploy(self, options: Dict[str, Any]) -> Any:
        """Apply the infrastructure changes."""

    @abc.abstractmethod
    async def destroy(self, options: Dict[str, Any]) -> Any:
        """Destroy managed resources."""

    @abc.abstractmethod
    async def plan(self, options: Dict[str, Any]) -> Any:
        """Compute an execution plan."""

    @abc.abstractmethod
    async def synth(self, options: Dict[str, Any]) -> Any:
        """Synthesize the infrastructure code."""

    @abc.abstractmethod
    async def diff(self, options: Dict[str, Any]) -> Any:
        """Show pending changes."""

    async def apply(self, options: Dict[str, Any]) -> Any:
        return await self.deploy(options)


class StateBackend(abc.ABC):
    """Infrastructure state access used by restores and state conditions."""

    @abc.abstractmethod
    async def load_state(self) -> Dict[str, Any]:
        """Return the current state snapshot."""

    @abc.abstractmethod
    async def save_state(self, state: Dict[str, Any]) -> None:
        """Persist a state snapshot."""

    @abc.abstractmethod
    async def create_backup(self) -> str:
        """Back up the current state and return the backup location."""

    @abc.abstractmethod
    async def restore_backup(self, location: str) -> Dict[str, Any]:
        """Restore state from a backup location and return it."""
