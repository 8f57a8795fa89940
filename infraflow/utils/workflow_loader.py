"""
Loading and saving workflow definition files (YAML or JSON).
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from infraflow.models.workflow_models import WorkflowDefinition
from infraflow.models.workflow_schema import definition_to_dict, parse_workflow
from infraflow.utils.errors import WorkflowValidationError

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_FILE = "infraflow-workflow.yaml"
YAML_SUFFIXES = (".yaml", ".yml")


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in YAML_SUFFIXES


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """Read and validate a workflow file.

    Raises:
        WorkflowValidationError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise WorkflowValidationError(
            f"Workflow file not found: {path}",
            code="WORKFLOW_FILE_NOT_FOUND",
            suggestions=[
                "Check if the workflow file exists",
                "Use --file to specify a different workflow file",
                'Create a workflow file using "infraflow create"',
            ],
        )

    try:
        with open(path, "r") as f:
            if _is_yaml(path):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (yaml.YAMLError, ValueError) as e:
        raise WorkflowValidationError(
            f"Failed to parse workflow file {path}: {e}",
            code="WORKFLOW_PARSE_ERROR",
        ) from e

    logger.debug(f"Loaded workflow file {path}")
    return parse_workflow(data)


def dump_workflow(definition: WorkflowDefinition, path: Union[str, Path]) -> Path:
    """Write a workflow definition in the format implied by the file suffix."""
    path = Path(path)
    data = definition_to_dict(definition)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        if _is_yaml(path):
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        else:
            json.dump(data, f, indent=2)
    return path


def sample_workflow_data(name: str = "sample-workflow") -> Dict[str, Any]:
    return {
        "name": name,
        "description": "A sample workflow with pre-hooks, main steps, and rollback",
        "required": True,
        "preHooks": [
            {
                "name": "backup-state",
                "description": "Create a backup of the current state",
                "command": "backup-state",
            }
        ],
        "steps": [
            {
                "name": "synthesize",
                "description": "Synthesize the application",
                "command": "synth",
                "options": {"stack": "default"},
            },
            {
                "name": "plan-deployment",
                "description": "Create a deployment plan",
                "command": "plan",
                "options": {"stack": "default", "refresh": True},
                "dependsOn": ["synthesize"],
                "retry": {"maxAttempts": 3, "delayMs": 1000, "backoffMultiplier": 2},
            },
            {
                "name": "deploy",
                "description": "Deploy the infrastructure",
                "command": "deploy",
                "options": {"stack": "default", "autoApprove": True},
                "dependsOn": ["plan-deployment"],
                "condition": {"type": "file-exists", "value": "cdktf.out"},
            },
        ],
        "postHooks": [
            {
                "name": "verify-deployment",
                "description": "Verify the deployment was successful",
                "command": "wait",
                "args": ["5000"],
            }
        ],
        "rollbackSteps": [
            {
                "name": "destroy-on-rollback",
                "description": "Destroy infrastructure on rollback",
                "command": "destroy",
                "options": {"stack": "default", "autoApprove": True},
                "priority": "high",
                "compensates": "deploy",
            },
            {
                "name": "restore-state",
                "description": "Restore state from backup",
                "command": "restore-state",
                "dependencies": ["destroy-on-rollback"],
            },
        ],
    }


def sample_workflow(name: str = "sample-workflow") -> WorkflowDefinition:
    """The sample workflow written by ``infraflow create``."""
    return parse_workflow(sample_workflow_data(name))
