"""Tests for workflow parsing, loading and serialization."""

import json

import pytest
import yaml

from infraflow.models.rollback_models import (
    RollbackPriority,
    RollbackStrategyType,
    RollbackTriggerType,
    RollbackType,
)
from infraflow.models.workflow_models import ConditionType
from infraflow.models.workflow_schema import definition_to_dict, parse_workflow
from infraflow.services.workflow_engine import WorkflowEngine
from infraflow.utils.errors import WorkflowValidationError
from infraflow.utils.retry import RetryStrategy
from infraflow.utils.workflow_loader import (
    dump_workflow,
    load_workflow,
    sample_workflow,
    sample_workflow_data,
)


def workflow_data(**overrides):
    data = {
        "name": "web",
        "description": "Deploy the web tier",
        "steps": [
            {"name": "synth", "description": "Synthesize", "command": "synth"},
            {
                "name": "deploy",
                "description": "Deploy",
                "command": "deploy",
                "args": ["--auto-approve", 3],
                "dependsOn": ["synth"],
                "parallelGroup": "apply",
                "cdktfOptions": {"stack": "web", "refresh": False},
                "options": {"refresh": True},
                "retry": {"maxAttempts": 3, "delayMs": 500, "strategy": "linear"},
                "timeout": 60000,
                "condition": {"type": "file-exists", "value": "cdktf.out"},
            },
        ],
    }
    data.update(overrides)
    return data


class TestParseWorkflow:
    """Test parse_workflow."""

    def test_step_fields(self):
        definition = parse_workflow(workflow_data())

        deploy = definition.get_step("deploy")
        assert deploy.args == ["--auto-approve", "3"]
        assert deploy.depends_on == ["synth"]
        assert deploy.parallel_group == "apply"
        assert deploy.options == {"stack": "web", "refresh": True}
        assert deploy.timeout_ms == 60000
        assert deploy.condition.type == ConditionType.FILE_EXISTS
        assert deploy.retry.max_attempts == 3
        assert deploy.retry.strategy == RetryStrategy.LINEAR
        assert deploy.retry.delay_ms == 500

    def test_unknown_keys_are_rejected(self):
        data = workflow_data()
        data["steps"][0]["dependencies"] = ["x"]

        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow(data)

        assert any("steps.0.dependencies" in issue for issue in exc_info.value.issues)

    def test_bad_types_are_rejected(self):
        data = workflow_data()
        data["steps"][1]["retry"] = {"maxAttempts": 0, "delayMs": 100}

        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow(data)

        assert any("maxAttempts" in issue for issue in exc_info.value.issues)

    def test_non_object_payload(self):
        with pytest.raises(WorkflowValidationError):
            parse_workflow(["not", "a", "workflow"])

    def test_missing_fields_are_left_to_validation(self):
        definition = parse_workflow({"steps": [{"command": "plan"}]})

        issues = WorkflowEngine().validate_workflow(definition).issues
        assert "Workflow name is required and cannot be empty" in issues
        assert "Step 1: Step name is required and cannot be empty" in issues

    def test_rollback_types_are_inferred(self):
        definition = parse_workflow(
            workflow_data(
                rollbackSteps=[
                    {"name": "undo", "description": "Destroy", "command": "destroy"},
                    {
                        "name": "restore",
                        "description": "Restore",
                        "command": "restore-state",
                        "dependencies": ["undo"],
                        "priority": "critical",
                    },
                ]
            )
        )

        undo, restore = definition.rollback_steps
        assert undo.rollback_type == RollbackType.RESOURCE_DESTROY
        assert restore.rollback_type == RollbackType.STATE_RESTORE
        assert restore.priority == RollbackPriority.CRITICAL
        assert restore.dependencies == ["undo"]

    def test_rollback_strategy(self):
        definition = parse_workflow(
            workflow_data(
                rollbackStrategy={
                    "type": "selective",
                    "triggerConditions": [
                        {"type": "step-failure", "stepName": "deploy", "errorPattern": "lock"}
                    ],
                    "rollbackSteps": [
                        {
                            "name": "undo",
                            "description": "Destroy",
                            "command": "destroy",
                            "targetResources": ["aws_instance.web"],
                        }
                    ],
                    "options": {"maxRollbackAttempts": 2, "rollbackTimeoutMs": 1000},
                }
            )
        )

        strategy = definition.rollback_strategy
        assert strategy.type == RollbackStrategyType.SELECTIVE
        assert strategy.trigger_conditions[0].type == RollbackTriggerType.STEP_FAILURE
        assert strategy.trigger_conditions[0].error_pattern == "lock"
        assert strategy.rollback_steps[0].target_resources == ["aws_instance.web"]
        assert strategy.options.max_rollback_attempts == 2
        assert definition.has_rollback

    def test_definition_round_trip(self):
        definition = parse_workflow(sample_workflow_data())

        assert parse_workflow(definition_to_dict(definition)) == definition


class TestWorkflowFiles:
    """Test load_workflow and dump_workflow."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "workflow.yaml"
        path.write_text(yaml.safe_dump(workflow_data()))

        definition = load_workflow(path)

        assert definition.name == "web"
        assert definition.step_names == ["synth", "deploy"]

    def test_load_json(self, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(workflow_data()))

        assert load_workflow(path).name == "web"

    def test_missing_file(self, tmp_path):
        with pytest.raises(WorkflowValidationError) as exc_info:
            load_workflow(tmp_path / "missing.yaml")

        assert exc_info.value.code == "WORKFLOW_FILE_NOT_FOUND"
        assert exc_info.value.suggestions

    def test_unparsable_file(self, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text("{broken")

        with pytest.raises(WorkflowValidationError) as exc_info:
            load_workflow(path)

        assert exc_info.value.code == "WORKFLOW_PARSE_ERROR"

    def test_dump_and_load(self, tmp_path):
        path = dump_workflow(sample_workflow("demo"), tmp_path / "nested" / "demo.yml")

        loaded = load_workflow(path)

        assert loaded == sample_workflow("demo")


class TestSampleWorkflow:
    """Test the sample workflow."""

    def test_sample_is_valid(self):
        definition = sample_workflow()

        assert WorkflowEngine().validate_workflow(definition).is_valid
        assert definition.required
        assert [h.command for h in definition.pre_hooks] == ["backup-state"]
        assert definition.get_step("plan-deployment").retry.max_attempts == 3
        assert [s.name for s in definition.rollback_steps] == [
            "destroy-on-rollback",
            "restore-state",
        ]
