"""Tests for parallelization analysis and optimization."""

import pytest

from infraflow.services.parallel_analysis import (
    FALLBACK_TIMEOUT_MS,
    ParallelAnalyzer,
    default_timeout_ms,
)
from infraflow.utils.errors import WorkflowValidationError
from tests.mock_backends import make_step, make_workflow


@pytest.fixture
def analyzer():
    return ParallelAnalyzer()


def diamond():
    return make_workflow(
        [
            make_step("synth", "synth"),
            make_step("plan-web", "plan", depends_on=["synth"]),
            make_step("plan-db", "plan", depends_on=["synth"]),
            make_step("deploy", depends_on=["plan-web", "plan-db"]),
        ]
    )


class TestAnalyze:
    """Test ParallelAnalyzer.analyze."""

    def test_diamond(self, analyzer):
        analysis = analyzer.analyze(diamond())

        assert analysis.can_run_in_parallel
        assert analysis.batches == [["synth"], ["plan-web", "plan-db"], ["deploy"]]
        assert analysis.suggested_groups == {"parallel-group-1": ["plan-web", "plan-db"]}
        assert analysis.critical_path == ["synth", "plan-web", "deploy"]
        assert analysis.dependencies["deploy"] == ["plan-web", "plan-db"]
        assert "2 steps can run concurrently across 3 batches" in analysis.recommendations
        assert "Assign parallel groups to: plan-web, plan-db" in analysis.recommendations
        assert "Critical path: synth -> plan-web -> deploy" in analysis.recommendations

    def test_existing_group_name_is_kept(self, analyzer):
        definition = make_workflow(
            [make_step("a", parallel_group="web"), make_step("b", parallel_group="web")]
        )

        analysis = analyzer.analyze(definition)

        assert analysis.suggested_groups == {"web": ["a", "b"]}
        assert not any(r.startswith("Assign parallel groups") for r in analysis.recommendations)

    def test_group_spanning_batches(self, analyzer):
        definition = make_workflow(
            [
                make_step("a", parallel_group="web"),
                make_step("b", depends_on=["a"], parallel_group="web"),
            ]
        )

        analysis = analyzer.analyze(definition)

        assert not analysis.can_run_in_parallel
        assert (
            "Parallel group web contains dependent steps and will run across 2 batches"
            in analysis.recommendations
        )

    def test_sequential_chain(self, analyzer):
        definition = make_workflow(
            [make_step("a", timeout_ms=1000), make_step("b", depends_on=["a"], timeout_ms=1000)]
        )

        analysis = analyzer.analyze(definition)

        assert not analysis.can_run_in_parallel
        assert analysis.recommendations[0].startswith("Steps form a single dependency chain")
        assert not any(r.startswith("Set timeouts") for r in analysis.recommendations)

    def test_invalid_graph_reports_issues(self, analyzer):
        definition = make_workflow(
            [make_step("a", depends_on=["b"]), make_step("b", depends_on=["a"])]
        )

        analysis = analyzer.analyze(definition)

        assert not analysis.can_run_in_parallel
        assert analysis.issues
        assert analysis.batches == []
        assert analysis.recommendations == [
            "Resolve dependency issues before enabling parallel execution"
        ]


class TestOptimize:
    """Test ParallelAnalyzer.optimize."""

    def test_groups_and_timeouts(self, analyzer):
        definition = diamond()

        optimized = analyzer.optimize(definition)

        steps = {s.name: s for s in optimized.steps}
        assert steps["plan-web"].parallel_group == "parallel-group-1"
        assert steps["plan-db"].parallel_group == "parallel-group-1"
        assert steps["synth"].parallel_group is None
        assert steps["synth"].timeout_ms == 5 * 60 * 1000
        assert steps["deploy"].timeout_ms == 30 * 60 * 1000
        assert definition.steps[0].timeout_ms is None

    def test_existing_settings_are_kept(self, analyzer):
        definition = make_workflow(
            [
                make_step("a", parallel_group="mine", timeout_ms=42),
                make_step("b", "plan"),
            ]
        )

        optimized = analyzer.optimize(definition)

        a, b = optimized.steps
        assert (a.parallel_group, a.timeout_ms) == ("mine", 42)
        assert b.parallel_group == "parallel-group-1"
        assert b.timeout_ms == 10 * 60 * 1000

    def test_invalid_graph_raises(self, analyzer):
        definition = make_workflow([make_step("a", depends_on=["missing"])])

        with pytest.raises(WorkflowValidationError):
            analyzer.optimize(definition)

    def test_default_timeouts(self):
        assert default_timeout_ms("destroy") == 30 * 60 * 1000
        assert default_timeout_ms("diff") == 10 * 60 * 1000
        assert default_timeout_ms("wait") == FALLBACK_TIMEOUT_MS
