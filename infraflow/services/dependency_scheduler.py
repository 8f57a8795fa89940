"""
Dependency scheduler for infraflow.

Turns the step dependency graph into an ordered list of execution batches.
``depends_on`` is authoritative; ``parallel_group`` only influences how steps
of the same layer are ordered and split.
"""

import logging
from typing import Dict, List, Optional, Sequence

from infraflow.models.workflow_models import ExecutionBatch, WorkflowStep
from infraflow.utils.errors import WorkflowValidationError

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """Compute concurrency-bounded execution batches from step dependencies."""

    def build_graph(self, steps: Sequence[WorkflowStep]) -> Dict[str, List[str]]:
        """Map each step name to the names it depends on."""
        return {step.name: list(step.depends_on) for step in steps}

    def find_cycle(self, steps: Sequence[WorkflowStep]) -> Optional[List[str]]:
        """Return the first dependency cycle found, as a closed path.

        Depth-first search in definition order with an explicit recursion
        stack; a back edge onto the stack closes the cycle. Unknown
        dependencies are ignored here.
        """
        graph = self.build_graph(steps)
        visited: set = set()
        stack: List[str] = []
        on_stack: set = set()

        def visit(name: str) -> Optional[List[str]]:
            visited.add(name)
            stack.append(name)
            on_stack.add(name)
            for dependency in graph.get(name, []):
                if dependency not in graph:
                    continue
                if dependency in on_stack:
                    start = stack.index(dependency)
                    return stack[start:] + [dependency]
                if dependency not in visited:
                    cycle = visit(dependency)
                    if cycle:
                        return cycle
            stack.pop()
            on_stack.discard(name)
            return None

        for step in steps:
            if step.name not in visited:
                cycle = visit(step.name)
                if cycle:
                    return cycle
        return None

    def validate(self, steps: Sequence[WorkflowStep]) -> List[str]:
        """Return dependency issues: duplicates, unknown references and cycles."""
        issues: List[str] = []
        seen: set = set()
        for step in steps:
            if step.name in seen:
                issues.append(f"DUPLICATE_STEP: Duplicate step name: {step.name}")
            seen.add(step.name)

        for step in steps:
            for dependency in step.depends_on:
                if dependency not in seen:
                    issues.append(
                        f"UNKNOWN_DEPENDENCY: Step {step.name} depends on "
                        f"unknown step: {dependency}"
                    )
                elif dependency == step.name:
                    issues.append(
                        f"CYCLIC_DEPENDENCY: Step {step.name} depends on itself"
                    )

        if not any(issue.startswith("CYCLIC_DEPENDENCY") for issue in issues):
            cycle = self.find_cycle(steps)
            if cycle:
                issues.append(
                    "CYCLIC_DEPENDENCY: Cyclic dependency detected: "
                    + " -> ".join(cycle)
                )
        return issues

    def layers(self, steps: Sequence[WorkflowStep]) -> List[List[WorkflowStep]]:
        """Topological layering: layer i holds steps whose deps sit in layers < i.

        Raises:
            WorkflowValidationError: On duplicate names, unknown deps or cycles
        """
        issues = self.validate(steps)
        if issues:
            first = issues[0]
            code, _, message = first.partition(": ")
            raise WorkflowValidationError(
                message,
                code=code,
                issues=issues,
                suggestions=[
                    "Check the dependsOn entries of each step",
                    "Remove circular dependencies between steps",
                ],
            )

        remaining = list(steps)
        placed: set = set()
        result: List[List[WorkflowStep]] = []
        while remaining:
            layer = [s for s in remaining if all(d in placed for d in s.depends_on)]
            result.append(self._order_by_group(layer))
            placed.update(s.name for s in layer)
            remaining = [s for s in remaining if s.name not in placed]
        return result

    def schedule(
        self, steps: Sequence[WorkflowStep], max_concurrency: Optional[int] = None
    ) -> List[ExecutionBatch]:
        """Compute execution batches, splitting layers wider than max_concurrency."""
        if max_concurrency is not None and max_concurrency < 1:
            raise WorkflowValidationError(
                f"max_concurrency must be at least 1, got {max_concurrency}",
                code="INVALID_CONCURRENCY",
            )

        batches: List[ExecutionBatch] = []
        for layer in self.layers(steps):
            size = max_concurrency or len(layer)
            for start in range(0, len(layer), size):
                chunk = layer[start : start + size]
                batches.append(
                    ExecutionBatch(
                        batch_number=len(batches) + 1,
                        steps=chunk,
                        parallel_group=self._common_group(chunk),
                    )
                )

        logger.debug(
            f"Scheduled {len(steps)} steps into {len(batches)} batches "
            f"(max_concurrency={max_concurrency})"
        )
        return batches

    def _order_by_group(self, layer: List[WorkflowStep]) -> List[WorkflowStep]:
        # Keep members of a parallel group adjacent, groups in order of first
        # appearance, ungrouped steps in place of their own "group".
        group_rank: Dict[str, int] = {}
        ranked = []
        for index, step in enumerate(layer):
            key = step.parallel_group or f"\0{index}"
            rank = group_rank.setdefault(key, len(group_rank))
            ranked.append((rank, index, step))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return [step for _, _, step in ranked]

    @staticmethod
    def _common_group(steps: List[WorkflowStep]) -> Optional[str]:
        groups = {step.parallel_group for step in steps}
        if len(groups) == 1:
            return groups.pop()
        return None
