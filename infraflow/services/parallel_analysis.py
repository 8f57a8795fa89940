"""
Parallelization analysis and optimisation of workflow definitions.
"""

import dataclasses
import logging
from typing import Dict, List, Optional

from infraflow.models.workflow_models import (
    ParallelizationAnalysis,
    WorkflowDefinition,
    WorkflowStep,
)
from infraflow.services.dependency_scheduler import DependencyScheduler

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000

DEFAULT_TIMEOUTS_MS = {
    "deploy": 30 * MINUTE_MS,
    "apply": 30 * MINUTE_MS,
    "destroy": 30 * MINUTE_MS,
    "plan": 10 * MINUTE_MS,
    "diff": 10 * MINUTE_MS,
    "synth": 5 * MINUTE_MS,
}
FALLBACK_TIMEOUT_MS = 5 * MINUTE_MS

GROUP_PREFIX = "parallel-group-"


def default_timeout_ms(command: str) -> int:
    return DEFAULT_TIMEOUTS_MS.get(command, FALLBACK_TIMEOUT_MS)


class ParallelAnalyzer:
    """Report and improve how much of a workflow can run concurrently."""

    def __init__(self, scheduler: Optional[DependencyScheduler] = None):
        self.scheduler = scheduler or DependencyScheduler()

    def analyze(self, definition: WorkflowDefinition) -> ParallelizationAnalysis:
        steps = definition.steps
        analysis = ParallelizationAnalysis(
            workflow_name=definition.name,
            can_run_in_parallel=False,
            dependencies=self.scheduler.build_graph(steps),
        )

        issues = self.scheduler.validate(steps)
        if issues:
            analysis.issues = issues
            analysis.recommendations.append(
                "Resolve dependency issues before enabling parallel execution"
            )
            return analysis

        layers = self.scheduler.layers(steps)
        analysis.batches = [[s.name for s in layer] for layer in layers]
        analysis.can_run_in_parallel = any(len(layer) > 1 for layer in layers)
        analysis.suggested_groups = self._suggest_groups(layers)
        analysis.critical_path = self._critical_path(steps)
        analysis.recommendations = self._recommend(steps, layers, analysis)
        return analysis

    def optimize(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Return a copy with parallel groups and default timeouts filled in.

        Raises:
            WorkflowValidationError: If the dependency graph is invalid
        """
        group_for: Dict[str, str] = {}
        number = 0
        for layer in self.scheduler.layers(definition.steps):
            if len(layer) < 2:
                continue
            number += 1
            for step in layer:
                if step.parallel_group is None:
                    group_for[step.name] = f"{GROUP_PREFIX}{number}"

        optimized: List[WorkflowStep] = []
        for step in definition.steps:
            changes = {}
            if step.name in group_for:
                changes["parallel_group"] = group_for[step.name]
            if step.timeout_ms is None:
                changes["timeout_ms"] = default_timeout_ms(step.command)
            optimized.append(dataclasses.replace(step, **changes) if changes else step)

        logger.info(
            f"Optimized {definition.name}: {len(group_for)} steps grouped, "
            f"{sum(1 for s in definition.steps if s.timeout_ms is None)} timeouts added"
        )
        return dataclasses.replace(definition, steps=optimized)

    def _suggest_groups(self, layers: List[List[WorkflowStep]]) -> Dict[str, List[str]]:
        groups: Dict[str, List[str]] = {}
        number = 0
        for layer in layers:
            if len(layer) < 2:
                continue
            number += 1
            existing = {s.parallel_group for s in layer}
            if len(existing) == 1 and None not in existing:
                name = existing.pop()
            else:
                name = f"{GROUP_PREFIX}{number}"
            groups[name] = [s.name for s in layer]
        return groups

    def _critical_path(self, steps: List[WorkflowStep]) -> List[str]:
        """Longest dependency chain, first step first."""
        by_name = {s.name: s for s in steps}
        length: Dict[str, int] = {}
        previous: Dict[str, str] = {}

        def chain_length(name: str) -> int:
            if name in length:
                return length[name]
            best = 0
            for dependency in by_name[name].depends_on:
                candidate = chain_length(dependency)
                if candidate > best:
                    best = candidate
                    previous[name] = dependency
            length[name] = best + 1
            return length[name]

        if not steps:
            return []
        end = max(steps, key=lambda s: chain_length(s.name)).name
        path = [end]
        while path[-1] in previous:
            path.append(previous[path[-1]])
        return list(reversed(path))

    def _recommend(
        self,
        steps: List[WorkflowStep],
        layers: List[List[WorkflowStep]],
        analysis: ParallelizationAnalysis,
    ) -> List[str]:
        recommendations = []
        if not analysis.can_run_in_parallel:
            recommendations.append(
                "Steps form a single dependency chain; nothing can run in parallel"
            )
        else:
            concurrent = sum(len(layer) for layer in layers if len(layer) > 1)
            recommendations.append(
                f"{concurrent} steps can run concurrently across {len(layers)} batches"
            )

        ungrouped = [
            s.name
            for layer in layers
            if len(layer) > 1
            for s in layer
            if s.parallel_group is None
        ]
        if ungrouped:
            recommendations.append(f"Assign parallel groups to: {', '.join(ungrouped)}")

        layer_of = {s.name: i for i, layer in enumerate(layers) for s in layer}
        groups: Dict[str, set] = {}
        for step in steps:
            if step.parallel_group:
                groups.setdefault(step.parallel_group, set()).add(layer_of[step.name])
        for group, group_layers in sorted(groups.items()):
            if len(group_layers) > 1:
                recommendations.append(
                    f"Parallel group {group} contains dependent steps and will "
                    f"run across {len(group_layers)} batches"
                )

        missing_timeouts = [s.name for s in steps if s.timeout_ms is None]
        if missing_timeouts:
            recommendations.append(
                f"Set timeouts on steps: {', '.join(missing_timeouts)}"
            )

        if len(analysis.critical_path) > 1:
            recommendations.append(
                f"Critical path: {' -> '.join(analysis.critical_path)}"
            )
        return recommendations
