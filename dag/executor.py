"""
Workflow Executor - Runs a StepGraph tick by tick on a logical clock.
工作流执行器：在逻辑时钟上逐 tick 运行 StepGraph。

Each tick is one batch of concurrently dispatched steps:
每个 tick 就是一批并发调度的步骤：

    1. start_clock = clock; clock += 1
    2. Drain the WHOLE ready queue into the batch
       (steps released during this tick wait for the next one)
    3. WAITING -> RUNNING for every batch member, dispatch all at once
    4. Join on every dispatch via asyncio.gather(return_exceptions=True):
       never short-circuit, never cancel siblings
    5. finished_clock = clock for the whole batch
       success -> COMPLETED, decrement successors, enqueue those that reach 0
       failure -> FAILED, successors untouched (they stay WAITING forever)
    6. Repeat until the queue is empty

    1. 记录起始时钟并将时钟加 1
    2. 一次性取空整个就绪队列作为本批次（本 tick 中新解锁的步骤留到下一个 tick）
    3. 批次内所有步骤 WAITING -> RUNNING，同时并发调度
    4. 用 asyncio.gather(return_exceptions=True) 等待全部结束：不短路、不取消兄弟任务
    5. 整个批次的 finished_clock 相同
       成功 -> COMPLETED，后继入度减 1，降为 0 的入队
       失败 -> FAILED，后继入度不变（它们将永远停留在 WAITING）
    6. 循环直到队列为空

Failure is local to its branch: siblings in the same batch and unrelated
branches keep running. There is no retry and no global abort.
失败只影响所在分支：同批次兄弟步骤与无关分支照常执行；没有重试，也没有全局中止。

The in-degree map, the ready queue and the clock are locals of one run, so
no concurrent step ever touches scheduling state.
入度表、就绪队列和时钟都是单次运行的局部变量，并发步骤永远不会触碰调度状态。
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Iterable

from dag.graph import StepGraph
from dag.state_machine import StepStateMachine
from schema import (
    CompletedState,
    FailedState,
    RunningState,
    Step,
    StepStatus,
    TickRecord,
    WaitingState,
    WorkflowRun,
    WorkflowState,
)
from steps.base import BaseStepExecutor, FunctionStepExecutor
from steps.simulated import SimulatedStepExecutor

logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """
    Tick scheduler for one workflow definition at a time.
    Tick 调度器：每次运行一个工作流定义。
    """

    def __init__(
        self,
        step_executor: BaseStepExecutor | Callable[[str], Awaitable[Any]] | None = None,
        on_event: Callable[[str, Any], None] | None = None,
        undeclared_policy: str | None = None,
    ):
        if step_executor is None:
            step_executor = SimulatedStepExecutor()
        elif not isinstance(step_executor, BaseStepExecutor):
            step_executor = FunctionStepExecutor(step_executor)
        self._step_executor = step_executor
        self._undeclared_policy = undeclared_policy
        self._on_event = on_event  # 事件回调（用于 UI 实时更新）
        self._sm = StepStateMachine(on_transition=self._on_step_transition)

    # ------------------------------------------------------------------
    # Main execution loop
    # 主执行循环
    # ------------------------------------------------------------------

    async def run(self, steps: Iterable[Step | dict[str, Any]]) -> WorkflowRun:
        """
        Validate and build the graph, then execute it.
        校验并构建依赖图，然后执行。

        Raises:
            WorkflowValidationError: the step list is structurally malformed.
                Nothing has been scheduled when this is raised.
        """
        graph = StepGraph.from_steps(steps, undeclared_policy=self._undeclared_policy)
        return await self.run_graph(graph)

    async def run_graph(self, graph: StepGraph) -> WorkflowRun:
        """
        Execute a prebuilt graph and return the final states and timeline.
        执行已构建好的依赖图，返回最终状态与时间线。
        """
        state: WorkflowState = {sid: WaitingState() for sid in graph.step_ids}
        in_degree = dict(graph.in_degree)
        queue = graph.initial_ready_queue()
        ticks: list[TickRecord] = []
        clock = 0

        self._emit("workflow_start", {"steps": graph.step_ids, "ready": list(queue)})

        while queue:
            start_clock = clock
            clock += 1

            # Drain exactly what is queued now
            # 只取出此刻队列中的步骤
            batch = self._drain(queue, state)
            if not batch:
                clock = start_clock
                break
            self._emit("tick_start", {"clock": start_clock, "steps": batch})

            for step_id in batch:
                self._sm.transition(state, step_id, RunningState(start_clock=start_clock))

            results = await asyncio.gather(
                *[self._step_executor.execute(step_id) for step_id in batch],
                return_exceptions=True,
            )

            record = TickRecord(clock=start_clock, steps=batch)
            for step_id, result in zip(batch, results):
                if isinstance(result, BaseException):
                    self._sm.transition(
                        state,
                        step_id,
                        FailedState(start_clock=start_clock, finished_clock=clock, error=str(result) or type(result).__name__),
                    )
                    record.failed.append(step_id)
                    logger.info("[Scheduler] Step %s FAILED at tick %d: %s", step_id, start_clock, result)
                    self._emit("step_failed", {"step_id": step_id, "state": state[step_id], "error": result})
                    continue

                self._sm.transition(state, step_id, CompletedState(start_clock=start_clock, finished_clock=clock))
                record.completed.append(step_id)
                self._emit("step_completed", {"step_id": step_id, "state": state[step_id]})

                released = self._release_successors(step_id, graph, in_degree, queue)
                record.released.extend(released)

            ticks.append(record)
            self._emit("tick_done", {"record": record})
            logger.info(
                "[Scheduler] Tick %d done: %d completed, %d failed, %d released",
                start_clock, len(record.completed), len(record.failed), len(record.released),
            )

        run = WorkflowRun(states=state, ticks=ticks, clock=clock)
        for step_id in run.blocked_steps():
            unmet = [
                dep for dep in graph.dependencies_of(step_id)
                if state[dep].status != StepStatus.COMPLETED
            ]
            logger.warning(
                "[Scheduler] Step %s never ran, unmet dependencies: %s",
                step_id, ", ".join(unmet) or "(none)",
            )
        logger.info("[Scheduler] %s", run.summary())
        self._emit("workflow_done", {"run": run})
        return run

    # ------------------------------------------------------------------
    # Queue helpers
    # 队列辅助方法
    # ------------------------------------------------------------------

    @staticmethod
    def _drain(queue: deque[str], state: WorkflowState) -> list[str]:
        """
        Pop the current contents of the queue. Ids with no declared step are
        dropped with a warning instead of being dispatched.
        取出队列当前全部内容；没有对应步骤声明的 ID 直接丢弃并记录警告。
        """
        batch: list[str] = []
        for _ in range(len(queue)):
            step_id = queue.popleft()
            if step_id not in state:
                logger.warning("[Scheduler] '%s' became ready but is not a declared step, skipping", step_id)
                continue
            batch.append(step_id)
        return batch

    @staticmethod
    def _release_successors(
        step_id: str,
        graph: StepGraph,
        in_degree: dict[str, int],
        queue: deque[str],
    ) -> list[str]:
        """
        Decrement the in-degree of each successor of a completed step and
        enqueue those that reach exactly 0.
        将已完成步骤的每个后继入度减 1，恰好降为 0 的放入队列。
        """
        released: list[str] = []
        for next_id in graph.successors.get(step_id, []):
            remaining = in_degree.get(next_id, 0)
            if remaining <= 0:
                continue
            in_degree[next_id] = remaining - 1
            if in_degree[next_id] == 0:
                queue.append(next_id)
                released.append(next_id)
        return released

    # ------------------------------------------------------------------
    # Event helpers
    # 事件辅助方法
    # ------------------------------------------------------------------

    def _emit(self, event: str, data: Any) -> None:
        """
        Forward an event to the on_event callback. A failing callback is
        logged and never interrupts the run.
        转发事件给回调；回调出错只记录日志，不会中断调度。
        """
        if self._on_event is None:
            return
        try:
            self._on_event(event, data)
        except Exception:
            logger.exception("[Scheduler] on_event callback failed for %s", event)

    def _on_step_transition(self, step_id: str, old: StepStatus, new: StepStatus) -> None:
        """Callback from the state machine, forwarded as a UI event."""
        self._emit("step_transition", {
            "step_id": step_id,
            "from": old.value,
            "to": new.value,
        })


async def execute_workflow(
    steps: Iterable[Step | dict[str, Any]],
    step_executor: BaseStepExecutor | Callable[[str], Awaitable[Any]] | None = None,
) -> WorkflowState:
    """
    Execute a workflow of interdependent steps.
    执行由相互依赖的步骤组成的工作流。

    Args:
        steps: Step declarations (Step models or {"id": ..., "next": [...]} dicts).
        step_executor: Does the work for one step id. Defaults to
            SimulatedStepExecutor (ids starting with "fail" fail).

    Returns:
        Mapping of every declared step id to its final state.
    """
    run = await WorkflowExecutor(step_executor=step_executor).run(steps)
    return run.states
