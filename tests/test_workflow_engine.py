"""Tests for the workflow engine."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from infraflow.models.rollback_models import (
    RollbackOptions,
    RollbackStrategy,
    RollbackStrategyType,
    RollbackType,
)
from infraflow.models.workflow_models import (
    ConditionType,
    ErrorRecoveryStrategy,
    RecoveryType,
    StepCondition,
    WorkflowDefinition,
    WorkflowExecutionOptions,
    WorkflowStatus,
    WorkflowStep,
)
from infraflow.services.checkpoint_store import CheckpointStore
from infraflow.services.workflow_engine import WorkflowEngine
from infraflow.utils.errors import (
    CheckpointIOError,
    CheckpointNotFoundError,
    InterventionNotFoundError,
    OperationError,
    WorkflowValidationError,
)
from infraflow.utils.retry import RetryPolicy
from tests.mock_backends import make_rollback_step, make_step, make_workflow


def abc_workflow(**kwargs):
    return make_workflow(
        [make_step("A"), make_step("B"), make_step("C", depends_on=["A", "B"])],
        **kwargs,
    )


async def wait_for_pending(engine, attempts=200):
    for _ in range(attempts):
        pending = await engine.list_pending_interventions()
        if pending:
            return pending
        await asyncio.sleep(0.01)
    return []


class TestValidateWorkflow:
    """Test WorkflowEngine.validate_workflow."""

    def test_valid_workflow(self, engine):
        result = engine.validate_workflow(abc_workflow())

        assert result.is_valid
        assert result.issues == []

    def test_missing_fields(self, engine):
        result = engine.validate_workflow(WorkflowDefinition(name="", description=" "))

        assert not result.is_valid
        assert result.issues == [
            "Workflow name is required and cannot be empty",
            "Workflow description is required and cannot be empty",
            "Workflow must have at least one step",
        ]

    def test_step_issues(self, engine):
        definition = make_workflow(
            [
                WorkflowStep(name="a", description="", command=""),
                make_step("b", "explode"),
            ]
        )

        issues = engine.validate_workflow(definition).issues

        assert "Step 1: Step description is required and cannot be empty" in issues
        assert "Step 1: Step command is required and cannot be empty" in issues
        assert "Step 2: Unknown command: explode" in issues

    def test_dependency_issues(self, engine):
        definition = make_workflow([make_step("a", depends_on=["missing"])])

        issues = engine.validate_workflow(definition).issues

        assert issues == ["UNKNOWN_DEPENDENCY: Step a depends on unknown step: missing"]

    def test_rollback_dependency_issues(self, engine):
        definition = make_workflow(
            [make_step("a")],
            rollback_steps=[make_rollback_step("undo", dependencies=["ghost"])],
        )

        issues = engine.validate_workflow(definition).issues

        assert len(issues) == 1
        assert issues[0].startswith("UNKNOWN_DEPENDENCY: Rollback step undo")

    @pytest.mark.asyncio
    async def test_execute_rejects_cycle(self, engine, operation_backend):
        definition = make_workflow(
            [make_step("A", depends_on=["B"]), make_step("B", depends_on=["A"])]
        )

        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.execute_workflow(definition)

        assert exc_info.value.code == "CYCLIC_DEPENDENCY"
        assert operation_backend.calls == []


class TestParallelExecution:
    """Test batching and concurrency."""

    @pytest.mark.asyncio
    async def test_independent_steps_run_together(self, engine, operation_backend):
        operation_backend.delay = 0.01

        result = await engine.execute_workflow(abc_workflow())

        assert result.success
        assert result.status == WorkflowStatus.COMPLETED
        assert sorted(result.completed_steps) == ["A", "B", "C"]
        assert operation_backend.call_order[-1] == "C"
        stats = result.parallel_execution_stats
        assert [b.step_names for b in stats.batches] == [["A", "B"], ["C"]]
        assert stats.max_concurrent_steps == 2
        assert stats.parallel_steps == 2
        assert operation_backend.max_active == 2

    @pytest.mark.asyncio
    async def test_sequential_mode(self, engine, operation_backend):
        operation_backend.delay = 0.01

        result = await engine.execute_workflow(
            abc_workflow(), WorkflowExecutionOptions(parallel=False)
        )

        assert result.success
        assert result.parallel_execution_stats.batch_count == 3
        assert operation_backend.max_active == 1

    @pytest.mark.asyncio
    async def test_max_concurrency_bounds_batches(self, engine, operation_backend):
        operation_backend.delay = 0.01
        definition = make_workflow([make_step(f"s{i}") for i in range(5)])

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(max_concurrency=2)
        )

        assert result.success
        assert result.parallel_execution_stats.batch_count == 3
        assert operation_backend.max_active <= 2

    @pytest.mark.asyncio
    async def test_dry_run_invokes_nothing(self, engine, operation_backend):
        definition = abc_workflow(
            pre_hooks=[WorkflowStep("backup", "Back up state", "backup-state")]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(dry_run=True, save_checkpoints=True)
        )

        assert result.success
        assert result.dry_run
        assert sorted(result.completed_steps) == ["A", "B", "C"]
        assert result.checkpoints_saved == []
        assert operation_backend.calls == []


class TestFailureHandling:
    """Test recovery, abort and continue-on-error behaviour."""

    @pytest.mark.asyncio
    async def test_step_retry_policy(self, engine, operation_backend):
        operation_backend.fail(
            "plan", OperationError("NETWORK_ERROR", "reset"), RuntimeError("again")
        )
        definition = make_workflow(
            [make_step("plan", "plan", retry=RetryPolicy(max_attempts=3, jitter=False))]
        )

        result = await engine.execute_workflow(definition)

        assert result.success
        assert operation_backend.invocations("plan") == 3

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_by_retry(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("NETWORK_ERROR", "connection reset"))

        result = await engine.execute_workflow(abc_workflow())

        assert result.success
        assert operation_backend.invocations("A") == 2
        assert result.manual_interventions_requested == 0

    @pytest.mark.asyncio
    async def test_state_lock_waits_before_retry(self, engine, operation_backend, no_sleep):
        operation_backend.fail("A", OperationError("STATE_LOCK_ERROR", "lock held"))

        result = await engine.execute_workflow(make_workflow([make_step("A")]))

        assert result.success
        no_sleep.assert_any_await(7.0)

    @pytest.mark.asyncio
    async def test_unresolved_intervention_aborts(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "access denied"))

        result = await engine.execute_workflow(abc_workflow())

        assert not result.success
        assert result.status == WorkflowStatus.ABORTED
        assert result.failed_steps == ["A"]
        assert "C" in result.skipped_steps
        assert operation_backend.invocations("C") == 0
        assert result.intervention_required
        assert result.manual_interventions_requested == 1
        request = result.pending_interventions[0]
        assert request.step_name == "A"
        assert "Verify IAM permissions" in request.suggested_actions

    @pytest.mark.asyncio
    async def test_pending_intervention_can_be_resolved_after_run(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "access denied"))
        result = await engine.execute_workflow(make_workflow([make_step("A")]))
        request_id = result.pending_interventions[0].id

        assert [r.id for r in await engine.list_pending_interventions()] == [request_id]

        resolution = await engine.resolve_intervention(
            request_id, ErrorRecoveryStrategy(RecoveryType.ABORT, "giving up")
        )

        assert resolution.strategy.type == RecoveryType.ABORT
        assert await engine.list_pending_interventions() == []
        with pytest.raises(InterventionNotFoundError):
            await engine.resolve_intervention(
                request_id, ErrorRecoveryStrategy(RecoveryType.ABORT)
            )

    @pytest.mark.asyncio
    async def test_handler_abort_stops_dependents(self, engine, operation_backend):
        decisions = []

        async def handler(request):
            decisions.append(request.step_name)
            return ErrorRecoveryStrategy(RecoveryType.ABORT, "operator aborted")

        engine.intervention_handler = handler
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "access denied"))
        definition = make_workflow(
            [make_step("A"), make_step("B", "plan", depends_on=["A"])]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(allow_manual_intervention=True)
        )

        assert decisions == ["A"]
        assert result.status == WorkflowStatus.ABORTED
        assert result.failed_steps == ["A"]
        assert result.skipped_steps == ["B"]
        assert result.pending_interventions == []
        assert operation_backend.invocations("B") == 0

    @pytest.mark.asyncio
    async def test_external_resolution_resumes_step(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "access denied"))
        task = asyncio.create_task(
            engine.execute_workflow(
                make_workflow([make_step("A")]),
                WorkflowExecutionOptions(allow_manual_intervention=True),
            )
        )

        pending = await wait_for_pending(engine)
        assert len(pending) == 1
        await engine.resolve_intervention(
            pending[0].id, ErrorRecoveryStrategy(RecoveryType.RETRY, "credentials fixed")
        )
        result = await asyncio.wait_for(task, 5)

        assert result.success
        assert operation_backend.invocations("A") == 2
        assert result.manual_interventions_requested == 1

    @pytest.mark.asyncio
    async def test_handler_skip_is_allowed_for_plan(self, engine, operation_backend):
        async def handler(request):
            return ErrorRecoveryStrategy(RecoveryType.SKIP, "not needed")

        engine.intervention_handler = handler
        operation_backend.fail("check", RuntimeError("boom"))
        definition = make_workflow(
            [make_step("check", "plan"), make_step("deploy", depends_on=["check"])]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(allow_manual_intervention=True)
        )

        assert result.status == WorkflowStatus.COMPLETED
        assert result.skipped_steps == ["check"]
        assert result.completed_steps == ["deploy"]
        assert any("check skipped after failure" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_continue_on_error(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("BROKEN", "broken plan"))
        definition = make_workflow(
            [
                make_step("A", "plan"),
                make_step("B", "plan", depends_on=["A"]),
                make_step("C", "plan", depends_on=["B"]),
                make_step("D", "plan"),
            ]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(continue_on_error=True)
        )

        assert result.status == WorkflowStatus.COMPLETED
        assert not result.success
        assert result.failed_steps == ["A"]
        assert result.skipped_steps == ["B", "C"]
        assert result.completed_steps == ["D"]
        assert "Post-hooks skipped because steps failed" in result.warnings

    @pytest.mark.asyncio
    async def test_step_timeout(self, engine, operation_backend):
        operation_backend.delays["slow"] = 1.0
        definition = make_workflow([make_step("slow", "plan", timeout_ms=20)])

        result = await engine.execute_workflow(definition)

        assert result.failed_steps == ["slow"]
        assert "timed out after 20ms" in result.errors[0]
        assert operation_backend.invocations("slow") == 3

    @pytest.mark.asyncio
    async def test_workflow_timeout(self, engine, operation_backend):
        operation_backend.delays["slow"] = 1.0
        definition = make_workflow(
            [make_step("fast", "plan"), make_step("slow", "plan"), make_step("after", "plan", depends_on=["slow"])]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(timeout_ms=50)
        )

        assert result.status == WorkflowStatus.ABORTED
        assert result.completed_steps == ["fast"]
        assert result.failed_steps == ["slow"]
        assert result.skipped_steps == ["after"]
        assert "workflow timed out after 50ms" in result.errors[0]

    @pytest.mark.asyncio
    async def test_attempts_are_recorded_per_step(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("NETWORK_ERROR", "connection reset"))

        result = await engine.execute_workflow(abc_workflow())

        assert result.success
        assert result.step_attempts == {"A": 2, "B": 1, "C": 1}
        assert set(result.step_durations_ms) == {"A", "B", "C"}
        assert all(ms >= 0 for ms in result.step_durations_ms.values())
        assert result.to_dict()["step_attempts"]["A"] == 2

    @pytest.mark.asyncio
    async def test_state_backend_failure_in_condition(self, engine, operation_backend, state_backend):
        state_backend.load_state = AsyncMock(
            side_effect=OperationError("NETWORK_ERROR", "state backend unreachable")
        )
        definition = make_workflow(
            [
                make_step(
                    "check",
                    condition=StepCondition(
                        ConditionType.STATE_HAS_RESOURCE, "aws_instance.web"
                    ),
                ),
                make_step("other", "plan"),
            ]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(continue_on_error=True)
        )

        assert not result.success
        assert result.failed_steps == ["check"]
        assert result.completed_steps == ["other"]
        assert "state backend unreachable" in result.errors[0]
        assert operation_backend.invocations("check") == 0

    @pytest.mark.asyncio
    async def test_custom_condition_error_aborts_run(self, engine, operation_backend):
        def broken_predicate(condition, state):
            raise ValueError("bad predicate")

        engine.conditions.register("broken", broken_predicate)
        definition = make_workflow(
            [
                make_step("check", condition=StepCondition(ConditionType.CUSTOM, "broken")),
                make_step("after", "plan", depends_on=["check"]),
            ]
        )

        result = await engine.execute_workflow(definition)

        assert result.status == WorkflowStatus.ABORTED
        assert result.failed_steps == ["check"]
        assert result.skipped_steps == ["after"]
        assert "bad predicate" in result.errors[0]
        assert operation_backend.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_failures_each_request_intervention(self, engine, operation_backend):
        operation_backend.delay = 0.01
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "access denied"))
        operation_backend.fail("B", OperationError("PERMISSION_DENIED", "access denied"))

        result = await engine.execute_workflow(
            abc_workflow(), WorkflowExecutionOptions(continue_on_error=True)
        )

        assert sorted(result.failed_steps) == ["A", "B"]
        assert result.skipped_steps == ["C"]
        assert result.manual_interventions_requested == 2
        pending = await engine.list_pending_interventions()
        assert sorted(r.step_name for r in pending) == ["A", "B"]
        assert len({r.id for r in pending}) == 2
        assert {r.id for r in result.pending_interventions} == {r.id for r in pending}


class TestConditionsAndHooks:
    """Test conditional steps and hooks."""

    @pytest.mark.asyncio
    async def test_unmet_condition_skips_step(self, engine, operation_backend):
        definition = make_workflow(
            [
                make_step(
                    "deploy",
                    condition=StepCondition(ConditionType.FILE_EXISTS, "cdktf.out"),
                ),
                make_step("verify", "plan", depends_on=["deploy"]),
            ]
        )

        result = await engine.execute_workflow(definition)

        assert result.success
        assert result.skipped_steps == ["deploy"]
        assert result.completed_steps == ["verify"]

    @pytest.mark.asyncio
    async def test_met_condition_runs_step(self, engine, operation_backend, tmp_path):
        (tmp_path / "cdktf.out").mkdir()
        definition = make_workflow(
            [
                make_step(
                    "deploy",
                    condition=StepCondition(ConditionType.FILE_EXISTS, "cdktf.out"),
                )
            ]
        )

        result = await engine.execute_workflow(definition)

        assert result.completed_steps == ["deploy"]
        assert operation_backend.invocations("deploy") == 1

    @pytest.mark.asyncio
    async def test_state_condition(self, engine, state_backend):
        state_backend.state = {"resources": [{"type": "aws_instance", "name": "web"}]}
        definition = make_workflow(
            [
                make_step(
                    "update",
                    condition=StepCondition(
                        ConditionType.STATE_HAS_RESOURCE, "aws_instance.web"
                    ),
                ),
                make_step(
                    "create-db",
                    condition=StepCondition(
                        ConditionType.STATE_HAS_RESOURCE, "aws_db_instance.main"
                    ),
                ),
            ]
        )

        result = await engine.execute_workflow(definition)

        assert result.completed_steps == ["update"]
        assert result.skipped_steps == ["create-db"]

    @pytest.mark.asyncio
    async def test_hooks_run_around_steps(self, engine, operation_backend, state_backend):
        definition = make_workflow(
            [make_step("deploy")],
            pre_hooks=[WorkflowStep("backup", "Back up state", "backup-state")],
            post_hooks=[make_step("verify", "plan")],
        )

        result = await engine.execute_workflow(definition)

        assert result.success
        assert list(state_backend.backups) == ["backup-1"]
        assert operation_backend.call_order == ["deploy", "verify"]
        assert result.completed_steps == ["deploy"]

    @pytest.mark.asyncio
    async def test_failed_pre_hook_aborts(self, engine, operation_backend):
        definition = make_workflow(
            [make_step("deploy")],
            pre_hooks=[WorkflowStep("restore", "Restore state", "restore-state")],
        )

        result = await engine.execute_workflow(definition)

        assert result.status == WorkflowStatus.ABORTED
        assert operation_backend.calls == []
        assert result.errors[0].startswith("Pre-hook restore failed")

    @pytest.mark.asyncio
    async def test_hook_failure_can_be_tolerated(self, engine, operation_backend):
        definition = make_workflow(
            [make_step("deploy")],
            pre_hooks=[WorkflowStep("restore", "Restore state", "restore-state")],
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(continue_on_hook_failure=True)
        )

        assert result.success
        assert result.completed_steps == ["deploy"]
        assert any(w.startswith("Pre-hook restore failed") for w in result.warnings)


class TestRollback:
    """Test rollback on failure and manual rollback."""

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, engine, operation_backend):
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [
                make_step("plan", "plan", options={"target": "aws_instance.web"}),
                make_step("deploy", depends_on=["plan"]),
            ],
            rollback_steps=[
                make_rollback_step("undo-web", target_resources=["aws_instance.web"])
            ],
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(rollback_on_error=True)
        )

        assert result.status == WorkflowStatus.ROLLED_BACK
        assert result.rollback_performed
        assert result.rollback_details.rollback_steps == ["undo-web"]
        assert operation_backend.invocations("undo-web") == 1
        history = engine.get_rollback_history("test-workflow")
        assert len(history) == 1
        assert history[0].context["failed_step"] == "deploy"
        assert history[0].context["affected_resources"] == ["aws_instance.web"]

    @pytest.mark.asyncio
    async def test_state_restored_from_pre_hook_backup(self, engine, operation_backend, state_backend):
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [make_step("deploy")],
            pre_hooks=[WorkflowStep("backup", "Back up state", "backup-state")],
            rollback_steps=[
                make_rollback_step(
                    "restore", "restore-state", RollbackType.STATE_RESTORE
                )
            ],
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(rollback_on_error=True)
        )

        assert result.status == WorkflowStatus.ROLLED_BACK
        assert result.rollback_details.state_restored
        assert state_backend.restored == ["backup-1"]

    @pytest.mark.asyncio
    async def test_without_rollback_on_error_the_run_aborts(self, engine, operation_backend):
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [make_step("deploy")], rollback_steps=[make_rollback_step("undo")]
        )

        result = await engine.execute_workflow(definition)

        assert result.status == WorkflowStatus.ABORTED
        assert not result.rollback_performed
        assert operation_backend.invocations("undo") == 0

    @pytest.mark.asyncio
    async def test_partial_success_kept_when_configured(self, engine, operation_backend):
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [make_step("plan", "plan"), make_step("deploy", depends_on=["plan"])],
            rollback_strategy=RollbackStrategy(
                rollback_steps=[make_rollback_step("undo")],
                options=RollbackOptions(rollback_on_partial_success=False),
            ),
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(rollback_on_error=True)
        )

        assert result.status == WorkflowStatus.ABORTED
        assert not result.rollback_performed
        assert operation_backend.invocations("undo") == 0
        assert "Rollback on partial success is disabled; completed steps were kept" in result.warnings

    @pytest.mark.asyncio
    async def test_rollback_context_records_elapsed_time(self, engine, operation_backend):
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [make_step("deploy")], rollback_steps=[make_rollback_step("undo")]
        )

        await engine.execute_workflow(
            definition, WorkflowExecutionOptions(rollback_on_error=True)
        )

        assert engine.get_rollback_history()[0].context["elapsed_ms"] >= 0

    @pytest.mark.asyncio
    async def test_handler_rollback_decision(self, engine, operation_backend):
        async def handler(request):
            return ErrorRecoveryStrategy(RecoveryType.ROLLBACK, "undo it")

        engine.intervention_handler = handler
        operation_backend.fail("deploy", OperationError("PERMISSION_DENIED", "denied"))
        definition = make_workflow(
            [make_step("deploy")], rollback_steps=[make_rollback_step("undo")]
        )

        result = await engine.execute_workflow(
            definition, WorkflowExecutionOptions(allow_manual_intervention=True)
        )

        assert result.status == WorkflowStatus.ROLLED_BACK
        assert operation_backend.invocations("undo") == 1

    @pytest.mark.asyncio
    async def test_manual_rollback(self, engine, operation_backend):
        definition = make_workflow(
            [make_step("deploy", options={"target": "aws_instance.web"})],
            rollback_steps=[
                make_rollback_step("undo-web", target_resources=["aws_instance.web"]),
                make_rollback_step("undo-db", target_resources=["aws_db_instance.main"]),
            ],
        )

        result = await engine.execute_manual_rollback(
            definition, "bad release", RollbackStrategyType.SELECTIVE
        )

        assert result.success
        assert result.rollback_steps == ["undo-web"]
        entry = engine.get_rollback_history()[0]
        assert entry.trigger_reason == "bad release"
        assert entry.rollback_strategy == "selective"
        assert "bad release" in engine.generate_rollback_report("test-workflow")

    @pytest.mark.asyncio
    async def test_manual_rollback_without_steps(self, engine):
        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.execute_manual_rollback(make_workflow([make_step("deploy")]))

        assert exc_info.value.code == "NO_ROLLBACK_STEPS"


class TestCheckpoints:
    """Test checkpointing and resume."""

    @pytest.mark.asyncio
    async def test_checkpoint_after_each_batch(self, engine):
        result = await engine.execute_workflow(
            abc_workflow(), WorkflowExecutionOptions(save_checkpoints=True)
        )

        assert len(result.checkpoints_saved) == 2
        checkpoints = engine.list_checkpoints("test-workflow")
        assert {c.id for c in checkpoints} == set(result.checkpoints_saved)
        latest = engine.checkpoint_store.load(result.checkpoints_saved[-1])
        assert sorted(latest.completed_steps) == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_emergency_checkpoint_on_failure(self, engine, operation_backend):
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "denied"))

        result = await engine.execute_workflow(
            make_workflow([make_step("A")]), WorkflowExecutionOptions(save_checkpoints=True)
        )

        emergency = [c for c in result.checkpoints_saved if c.startswith("emergency_")]
        assert len(emergency) == 1
        assert engine.checkpoint_store.load(emergency[0]).failed_steps == ["A"]

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_is_fatal(self, operation_backend, no_sleep, tmp_path):
        (tmp_path / "blocker").write_text("not a directory")
        engine = WorkflowEngine(
            operation_backend=operation_backend,
            checkpoint_store=CheckpointStore(tmp_path / "blocker" / "checkpoints"),
            sleep=no_sleep,
        )

        with pytest.raises(CheckpointIOError):
            await engine.execute_workflow(
                abc_workflow(), WorkflowExecutionOptions(save_checkpoints=True)
            )

        assert sorted(operation_backend.call_order) == ["A", "B"]
        assert operation_backend.invocations("C") == 0

    @pytest.mark.asyncio
    async def test_emergency_checkpoint_failure_waits_for_batch(self, operation_backend, no_sleep, tmp_path):
        (tmp_path / "blocker").write_text("not a directory")
        engine = WorkflowEngine(
            operation_backend=operation_backend,
            checkpoint_store=CheckpointStore(tmp_path / "blocker" / "checkpoints"),
            sleep=no_sleep,
        )
        operation_backend.delays["B"] = 0.05
        operation_backend.fail("A", OperationError("PERMISSION_DENIED", "denied"))

        with pytest.raises(CheckpointIOError):
            await engine.execute_workflow(
                abc_workflow(), WorkflowExecutionOptions(save_checkpoints=True)
            )

        assert operation_backend.invocations("B") == 1
        assert operation_backend.active == 0

    @pytest.mark.asyncio
    async def test_resume_skips_completed_steps(self, engine, checkpoint_store, operation_backend):
        checkpoint = checkpoint_store.create(
            "test-workflow", 0, "A", ["A", "B"], [], {"backup_location": "backup-1"}
        )

        result = await engine.execute_workflow(
            abc_workflow(), WorkflowExecutionOptions(resume_from_checkpoint=checkpoint.id)
        )

        assert result.success
        assert result.resumed_from_checkpoint == checkpoint.id
        assert operation_backend.call_order == ["C"]
        assert result.completed_steps == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_resume_from_other_workflow(self, engine, checkpoint_store):
        checkpoint = checkpoint_store.create("other", 0, "A", ["A"], [], {})

        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.execute_workflow(
                abc_workflow(), WorkflowExecutionOptions(resume_from_checkpoint=checkpoint.id)
            )

        assert exc_info.value.code == "CHECKPOINT_MISMATCH"

    @pytest.mark.asyncio
    async def test_resume_from_missing_checkpoint(self, engine):
        with pytest.raises(CheckpointNotFoundError):
            await engine.execute_workflow(
                abc_workflow(), WorkflowExecutionOptions(resume_from_checkpoint="missing")
            )


class TestParallelization:
    """Test analysis and optimization entry points."""

    def test_analyze(self, engine):
        analysis = engine.analyze_workflow_parallelization(abc_workflow())

        assert analysis.can_run_in_parallel
        assert analysis.batches == [["A", "B"], ["C"]]
        assert analysis.critical_path == ["A", "C"]

    def test_optimize_assigns_groups(self, engine):
        optimized = engine.optimize_workflow_for_parallel_execution(abc_workflow())

        groups = {s.name: s.parallel_group for s in optimized.steps}
        assert groups["A"] == groups["B"]
        assert groups["A"] is not None
        assert groups["C"] is None
