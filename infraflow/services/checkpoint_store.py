"""
Checkpoint store: one JSON file per checkpoint id.
"""

import contextlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from infraflow.models.checkpoint_models import WorkflowCheckpoint
from infraflow.utils.errors import CheckpointIOError, CheckpointNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_DIR = ".infraflow/checkpoints"


class CheckpointStore:
    """Persist, load and list workflow checkpoints.

    The directory is created on first write. Ids are fresh uuids, so
    concurrent writers never touch the same file.
    """

    def __init__(self, checkpoint_dir: Union[str, Path] = DEFAULT_CHECKPOINT_DIR):
        self.checkpoint_dir = Path(checkpoint_dir)

    def _path_for(self, checkpoint_id: str) -> Path:
        if not checkpoint_id or os.sep in checkpoint_id or checkpoint_id.startswith("."):
            raise CheckpointIOError(
                f"Invalid checkpoint id: {checkpoint_id!r}", checkpoint_id
            )
        return self.checkpoint_dir / f"{checkpoint_id}.json"

    def save(self, checkpoint: WorkflowCheckpoint) -> str:
        """Write ``checkpoint`` and return the file location.

        State values must be JSON serializable and the timestamp must be
        timezone-aware; anything else would not load back unchanged.

        Raises:
            CheckpointIOError: If the checkpoint cannot be encoded or written
        """
        path = self._path_for(checkpoint.id)
        if checkpoint.timestamp.tzinfo is None:
            raise CheckpointIOError(
                f"Checkpoint {checkpoint.id} has a naive timestamp",
                checkpoint.id,
                suggestions=["Use a timezone-aware datetime such as datetime.now(timezone.utc)"],
            )
        try:
            payload = json.dumps(checkpoint.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            raise CheckpointIOError(
                f"Failed to encode checkpoint {checkpoint.id}: {e}",
                checkpoint.id,
                suggestions=["Keep workflow state to JSON-compatible values"],
            ) from e

        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                f.write(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise CheckpointIOError(
                f"Failed to save checkpoint {checkpoint.id}: {e}", checkpoint.id
            ) from e

        logger.debug(f"Checkpoint saved: {path}")
        return str(path)

    def load(self, checkpoint_id: str) -> WorkflowCheckpoint:
        """Load a checkpoint by id.

        Raises:
            CheckpointNotFoundError: If no checkpoint file exists for the id
            CheckpointIOError: If the file cannot be read or parsed
        """
        path = self._path_for(checkpoint_id)
        if not path.exists():
            raise CheckpointNotFoundError(checkpoint_id)
        return self._read(path, checkpoint_id)

    def list(self, workflow_name: Optional[str] = None) -> List[WorkflowCheckpoint]:
        """Checkpoints newest first, optionally filtered by workflow name."""
        if not self.checkpoint_dir.exists():
            return []

        checkpoints: List[WorkflowCheckpoint] = []
        for path in sorted(self.checkpoint_dir.glob("*.json")):
            try:
                checkpoint = self._read(path, path.stem)
            except CheckpointIOError as e:
                logger.warning(f"Failed to load checkpoint {path.name}: {e}")
                continue
            if workflow_name is None or checkpoint.workflow_name == workflow_name:
                checkpoints.append(checkpoint)

        return sorted(checkpoints, key=lambda c: c.timestamp, reverse=True)

    def delete(self, checkpoint_id: str) -> bool:
        path = self._path_for(checkpoint_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CheckpointIOError(
                f"Failed to delete checkpoint {checkpoint_id}: {e}", checkpoint_id
            ) from e
        return True

    def create(
        self,
        workflow_name: str,
        step_index: int,
        step_name: str,
        completed_steps: List[str],
        failed_steps: List[str],
        state: Dict[str, Any],
        prefix: str = "",
    ) -> WorkflowCheckpoint:
        """Build and save a checkpoint with a fresh id."""
        checkpoint = WorkflowCheckpoint(
            id=f"{prefix}{uuid.uuid4()}",
            workflow_name=workflow_name,
            step_index=step_index,
            step_name=step_name,
            timestamp=datetime.now(timezone.utc),
            state=dict(state),
            completed_steps=list(completed_steps),
            failed_steps=list(failed_steps),
        )
        self.save(checkpoint)
        return checkpoint

    def _read(self, path: Path, checkpoint_id: str) -> WorkflowCheckpoint:
        try:
            with open(path, "r") as f:
                data = json.load(f)
            return WorkflowCheckpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CheckpointIOError(
                f"Failed to read checkpoint {checkpoint_id}: {e}", checkpoint_id
            ) from e
