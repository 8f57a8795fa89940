"""Checkpoint model and its on-disk JSON representation."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


@dataclass(frozen=True)
class WorkflowCheckpoint:
    """Point-in-time snapshot of workflow progress."""

    id: str
    workflow_name: str
    step_index: int
    step_name: str
    timestamp: datetime
    state: Dict[str, Any] = field(default_factory=dict)
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowName": self.workflow_name,
            "stepIndex": self.step_index,
            "stepName": self.step_name,
            "timestamp": self.timestamp.isoformat(),
            "state": self.state,
            "completedSteps": list(self.completed_steps),
            "failedSteps": list(self.failed_steps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowCheckpoint":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            # Naive timestamps are read as UTC so listings stay sortable.
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            id=data["id"],
            workflow_name=data["workflowName"],
            step_index=int(data["stepIndex"]),
            step_name=data["stepName"],
            timestamp=timestamp,
            state=dict(data.get("state") or {}),
            completed_steps=list(data.get("completedSteps") or []),
            failed_steps=list(data.get("failedSteps") or []),
        )
