"""
StepGraph - Dependency graph built from a flat list of step declarations.
StepGraph：由扁平步骤声明列表构建的依赖图。

The StepGraph holds:
  - successors: step id -> ids it unblocks (verbatim `next` list)
  - in_degree:  step id -> number of not-yet-satisfied dependencies

StepGraph 包含：
  - successors: 步骤 ID -> 它解锁的后继 ID 列表（原样保存 `next`）
  - in_degree:  步骤 ID -> 尚未满足的前置依赖数量（入度）

Key operations:
  - from_steps():            build both maps, validate structure
  - initial_ready_queue():   seed the ready queue with zero in-degree steps
  - topological_sort():      Kahn's algorithm, for inspection and cycle detection

核心操作：
  - from_steps():            构建两张映射表并做结构校验
  - initial_ready_queue():   将入度为 0 的步骤放入就绪队列
  - topological_sort():      Kahn 算法，用于查看执行顺序与检测环

The graph itself is read-only. The scheduler works on a copy of `in_degree`
so one StepGraph can drive any number of runs.
图本身只读；调度器在 `in_degree` 的副本上递减，因此同一个 StepGraph 可以重复运行。
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable

import config
from schema import Step

logger = logging.getLogger(__name__)

POLICY_REJECT = "reject"
POLICY_IGNORE = "ignore"
_POLICIES = (POLICY_REJECT, POLICY_IGNORE)


class WorkflowValidationError(ValueError):
    """
    Raised before scheduling when the step list is structurally malformed.
    步骤列表结构非法时在调度开始前抛出（与步骤的 FAILED 状态完全不同）。
    """

    def __init__(
        self,
        message: str,
        duplicate_ids: list[str] | None = None,
        undeclared_ids: list[str] | None = None,
    ):
        super().__init__(message)
        self.duplicate_ids = duplicate_ids or []
        self.undeclared_ids = undeclared_ids or []


class StepGraph:
    """
    Successor map + in-degree map for one workflow definition.
    一个工作流定义对应的后继映射 + 入度映射。
    """

    def __init__(self, successors: dict[str, list[str]], in_degree: dict[str, int]):
        self.successors = successors   # 每个已声明步骤一条
        self.in_degree = in_degree     # 已声明步骤 + 所有被引用的后继

    # ------------------------------------------------------------------
    # Construction
    # 构建
    # ------------------------------------------------------------------

    @classmethod
    def from_steps(
        cls,
        steps: Iterable[Step | dict[str, Any]],
        undeclared_policy: str | None = None,
    ) -> StepGraph:
        """
        Build the successor and in-degree maps from step declarations.

        For each step: record its `next` list, make sure it has an in-degree
        entry (0 unless something already points at it), then add one to the
        in-degree of each successor. Dict insertion order is preserved, so the
        initial ready queue follows first appearance in the input.

        对每个步骤：记录其 `next` 列表；若尚无入度条目则初始化为 0
        （之前的步骤可能已把它列为后继）；然后每个后继的入度加 1。
        字典保持插入顺序，因此初始就绪队列按在输入中首次出现的顺序排列。

        Raises:
            WorkflowValidationError: duplicate step ids, or undeclared
                successors under the "reject" policy.
            ValueError: unknown undeclared successor policy.
        """
        policy = (undeclared_policy or config.UNDECLARED_SUCCESSOR_POLICY).strip().lower()
        if policy not in _POLICIES:
            raise ValueError(f"Unknown undeclared successor policy '{policy}', expected one of {_POLICIES}")

        parsed = [s if isinstance(s, Step) else Step.model_validate(s) for s in steps]
        cls._check_duplicates(parsed)

        successors: dict[str, list[str]] = {}
        in_degree: dict[str, int] = {}
        for step in parsed:
            successors[step.id] = list(step.next)
            if step.id not in in_degree:
                in_degree[step.id] = 0
            for next_id in step.next:
                in_degree[next_id] = in_degree.get(next_id, 0) + 1

        graph = cls(successors, in_degree)

        undeclared = graph.undeclared_successors()
        if undeclared:
            if policy == POLICY_REJECT:
                raise WorkflowValidationError(
                    f"Successors reference undeclared steps: {', '.join(undeclared)}",
                    undeclared_ids=undeclared,
                )
            graph._drop_undeclared(undeclared)

        # Cycles are not an error: their steps simply never become ready
        # 环不视为错误：环上的步骤只是永远不会就绪，这里只记录警告
        graph.topological_sort()

        logger.debug("[Graph] Built %s", graph.summary())
        return graph

    @staticmethod
    def _check_duplicates(steps: list[Step]) -> None:
        seen: set[str] = set()
        duplicates: list[str] = []
        for step in steps:
            if step.id in seen and step.id not in duplicates:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            raise WorkflowValidationError(
                f"Duplicate step ids: {', '.join(duplicates)}",
                duplicate_ids=duplicates,
            )

    def _drop_undeclared(self, undeclared: list[str]) -> None:
        """
        Remove phantom successors so they are never scheduled.
        移除幽灵后继：它们既不会被调度，也不会出现在最终结果中。
        """
        phantom = set(undeclared)
        for step_id, nexts in self.successors.items():
            self.successors[step_id] = [n for n in nexts if n not in phantom]
        for step_id in undeclared:
            del self.in_degree[step_id]
            logger.warning("[Graph] Ignoring undeclared successor '%s'", step_id)

    # ------------------------------------------------------------------
    # Queries
    # 查询方法
    # ------------------------------------------------------------------

    @property
    def step_ids(self) -> list[str]:
        """Declared step ids, in declaration order."""
        return list(self.successors)

    def undeclared_successors(self) -> list[str]:
        """
        Ids that appear in some `next` list but were never declared as a step.
        出现在某个 `next` 列表中、但从未被声明为步骤的 ID。
        """
        return [sid for sid in self.in_degree if sid not in self.successors]

    def dependencies_of(self, step_id: str) -> list[str]:
        """
        Return ids of steps that list `step_id` as a successor.
        返回把 `step_id` 列为后继的所有步骤 ID（即它的前置依赖）。
        """
        return [sid for sid, nexts in self.successors.items() if step_id in nexts]

    def initial_ready_queue(self) -> deque[str]:
        """
        Seed the ready queue: every id whose in-degree is exactly 0, in
        in-degree map order.
        初始化就绪队列：按入度表顺序放入所有入度恰好为 0 的步骤。
        """
        return deque(sid for sid, deg in self.in_degree.items() if deg == 0)

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def topological_sort(self) -> list[str]:
        """
        Kahn's algorithm - returns step ids in a valid execution order.
        Steps on a cycle are left out and a warning is logged.

        Kahn 算法：返回合法的拓扑执行顺序。
        处在环上的步骤不会出现在结果中，并记录一条警告。
        """
        in_degree = dict(self.in_degree)
        queue = deque(sid for sid, deg in in_degree.items() if deg == 0)
        result: list[str] = []

        while queue:
            sid = queue.popleft()
            result.append(sid)
            for next_id in self.successors.get(sid, []):
                in_degree[next_id] -= 1
                if in_degree[next_id] == 0:
                    queue.append(next_id)

        if len(result) != len(in_degree):
            missing = [sid for sid in in_degree if sid not in result]
            logger.warning("[Graph] Cycle detected! Steps never ready: %s", ", ".join(missing))
        return result

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """One-line summary, e.g. StepGraph[5 steps, 5 edges, 1 root]."""
        edges = sum(len(nexts) for nexts in self.successors.values())
        roots = sum(1 for deg in self.in_degree.values() if deg == 0)
        return f"StepGraph[{len(self.successors)} steps, {edges} edges, {roots} root{'s' if roots != 1 else ''}]"
