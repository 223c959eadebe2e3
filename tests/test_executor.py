"""
Tick 调度器测试，覆盖:
  1. 线性工作流 (Linear Workflows)
  2. 分支 / 菱形 / 多链并行 (Branching & Parallel Ticks)
  3. 失败传播: 下游永远停留在 WAITING (Failure Blocking)
  4. 边界情况: 空工作流、孤立步骤、结构校验 (Edge Cases)
  5. 事件流与时间线 (Events & Timeline)

运行方式:
    pytest tests/test_executor.py -v

执行器均为 Mock 或按前缀判定失败的 SimulatedStepExecutor，结果完全确定。
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from dag.executor import WorkflowExecutor, execute_workflow
from dag.graph import StepGraph, WorkflowValidationError
from schema import Step, StepStatus, WaitingState
from steps import FunctionStepExecutor, SimulatedStepExecutor, StepExecutionError


# ======================================================================
# Helper: 校验工作流结果的基本一致性
# ======================================================================


def _assert_workflow_consistency(steps: list[Step], result: dict) -> None:
    # 每个声明的步骤都恰好有一条结果
    assert set(result) == {s.id for s in steps}

    # COMPLETED / FAILED 必须带合法时钟；WAITING 不带任何时钟字段
    for step_id, state in result.items():
        dumped = state.model_dump()
        if state.status in (StepStatus.COMPLETED, StepStatus.FAILED):
            assert state.start_clock >= 0, step_id
            assert state.finished_clock > state.start_clock, step_id
        elif state.status == StepStatus.WAITING:
            assert "start_clock" not in dumped, step_id
            assert "finished_clock" not in dumped, step_id
        assert state.status != StepStatus.RUNNING, f"{step_id} left RUNNING after the run"

    # 依赖顺序: COMPLETED 的步骤，其所有前置步骤都已 COMPLETED 且先结束
    for step in steps:
        state = result[step.id]
        if state.status != StepStatus.COMPLETED:
            continue
        for dependency in steps:
            if step.id in dependency.next:
                dep_state = result[dependency.id]
                assert dep_state.status == StepStatus.COMPLETED, f"{dependency.id} -> {step.id}"
                assert dep_state.finished_clock <= state.start_clock


def _steps(*pairs: tuple[str, list[str]]) -> list[Step]:
    return [Step(id=sid, next=nexts) for sid, nexts in pairs]


def _clocks(result: dict, step_id: str) -> tuple[int, int]:
    return result[step_id].start_clock, result[step_id].finished_clock


# ======================================================================
# Test 1: 线性工作流
# ======================================================================


class TestLinearWorkflows:

    @pytest.mark.asyncio
    async def test_simple_chain(self):
        """A -> B -> C: 全部成功, startClock 依次为 0, 1, 2."""
        steps = _steps(("start", ["middle"]), ("middle", ["end"]), ("end", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert [result[s].status for s in ("start", "middle", "end")] == [StepStatus.COMPLETED] * 3
        assert _clocks(result, "start") == (0, 1)
        assert _clocks(result, "middle") == (1, 2)
        assert _clocks(result, "end") == (2, 3)

    @pytest.mark.asyncio
    async def test_single_step(self):
        steps = _steps(("only", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert result["only"].status == StepStatus.COMPLETED
        assert _clocks(result, "only") == (0, 1)

    @pytest.mark.asyncio
    async def test_chain_with_failure(self):
        """start -> fail-step -> after-fail: 失败步骤之后永远 WAITING."""
        steps = _steps(("start", ["fail-step"]), ("fail-step", ["after-fail"]), ("after-fail", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert result["start"].status == StepStatus.COMPLETED
        assert result["fail-step"].status == StepStatus.FAILED
        assert _clocks(result, "fail-step") == (1, 2)
        assert result["after-fail"] == WaitingState()

    @pytest.mark.asyncio
    async def test_accepts_plain_dicts(self):
        result = await execute_workflow([{"id": "a", "next": ["b"]}, {"id": "b"}])

        assert result["a"].status == StepStatus.COMPLETED
        assert result["b"].status == StepStatus.COMPLETED


# ======================================================================
# Test 2: 分支与并行 tick
# ======================================================================


class TestBranchingAndParallelTicks:

    @pytest.mark.asyncio
    async def test_branch_and_converge(self):
        steps = _steps(
            ("start", ["branch1", "branch2"]),
            ("branch1", ["converge"]),
            ("branch2", ["converge"]),
            ("converge", []),
        )

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert all(s.status == StepStatus.COMPLETED for s in result.values())
        assert _clocks(result, "converge") == (2, 3)

    @pytest.mark.asyncio
    async def test_diamond_runs_branches_in_same_tick(self):
        """A -> [B, C] -> D -> E: B 和 C 在同一个 tick 并行执行."""
        steps = _steps(("A", ["B", "C"]), ("B", ["D"]), ("C", ["D"]), ("D", ["E"]), ("E", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert _clocks(result, "A") == (0, 1)
        assert _clocks(result, "B") == (1, 2)
        assert _clocks(result, "C") == (1, 2)
        assert _clocks(result, "D") == (2, 3)
        assert _clocks(result, "E") == (3, 4)

    @pytest.mark.asyncio
    async def test_independent_chains_interleave(self):
        steps = _steps(
            ("chain1-start", ["chain1-end"]),
            ("chain1-end", []),
            ("chain2-start", ["chain2-middle"]),
            ("chain2-middle", ["chain2-end"]),
            ("chain2-end", []),
        )

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert all(s.status == StepStatus.COMPLETED for s in result.values())
        assert result["chain1-start"].start_clock == result["chain2-start"].start_clock == 0
        assert result["chain1-end"].start_clock == result["chain2-middle"].start_clock == 1
        assert result["chain2-end"].start_clock == 2

    @pytest.mark.asyncio
    async def test_batch_members_are_dispatched_concurrently(self):
        """
        两个步骤都在等待对方开始后才返回: 只有真正并发调度时才不会死锁.
        """
        started = {"left": asyncio.Event(), "right": asyncio.Event()}
        other = {"left": "right", "right": "left"}

        async def rendezvous(step_id: str) -> None:
            if step_id in started:
                started[step_id].set()
                await asyncio.wait_for(started[other[step_id]].wait(), timeout=1)

        steps = _steps(("root", ["left", "right"]), ("left", []), ("right", []))

        result = await execute_workflow(steps, step_executor=rendezvous)

        assert result["left"].status == StepStatus.COMPLETED
        assert result["right"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_step_released_this_tick_waits_for_next_tick(self):
        """
        slow 与 fast 同批次; fast 的后继即使很早就被解锁，也必须在下一个 tick 才开始.
        """

        async def varying_latency(step_id: str) -> None:
            await asyncio.sleep(0.05 if step_id == "slow" else 0)

        steps = _steps(("slow", []), ("fast", ["after-fast"]), ("after-fast", []))

        run = await WorkflowExecutor(step_executor=varying_latency).run(steps)

        assert _clocks(run.states, "slow") == (0, 1)
        assert _clocks(run.states, "fast") == (0, 1)
        assert _clocks(run.states, "after-fast") == (1, 2)
        assert [t.steps for t in run.ticks] == [["slow", "fast"], ["after-fast"]]


# ======================================================================
# Test 3: 失败传播
# ======================================================================


class TestFailureBlocking:

    @pytest.mark.asyncio
    async def test_partial_failure_in_branches(self):
        steps = _steps(
            ("start", ["good-branch", "fail-branch"]),
            ("good-branch", ["final"]),
            ("fail-branch", ["final"]),
            ("final", []),
        )

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert result["start"].status == StepStatus.COMPLETED
        assert result["good-branch"].status == StepStatus.COMPLETED
        assert result["fail-branch"].status == StepStatus.FAILED
        assert result["final"].status == StepStatus.WAITING

    @pytest.mark.asyncio
    async def test_transitive_descendants_stay_waiting(self):
        steps = _steps(("fail-root", ["child"]), ("child", ["grandchild"]), ("grandchild", []), ("other", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert result["fail-root"].status == StepStatus.FAILED
        assert result["child"].status == StepStatus.WAITING
        assert result["grandchild"].status == StepStatus.WAITING
        assert result["other"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        """同批次的失败不会短路或取消兄弟步骤."""
        finished: list[str] = []

        async def work(step_id: str) -> None:
            if step_id == "boom":
                raise RuntimeError("exploded")
            await asyncio.sleep(0.01)
            finished.append(step_id)

        steps = _steps(("boom", ["after-boom"]), ("sibling", ["after-sibling"]), ("after-boom", []), ("after-sibling", []))

        result = await execute_workflow(steps, step_executor=work)

        assert finished == ["sibling", "after-sibling"]
        assert result["boom"].status == StepStatus.FAILED
        assert result["boom"].error == "exploded"
        assert result["after-boom"].status == StepStatus.WAITING
        assert _clocks(result, "after-sibling") == (1, 2)

    @pytest.mark.asyncio
    async def test_executor_errors_never_escape(self):
        mock_executor = AsyncMock()
        mock_executor.execute = AsyncMock(side_effect=StepExecutionError("a", "nope"))
        # AsyncMock 不是 BaseStepExecutor，按普通 async 函数包装
        executor = WorkflowExecutor(step_executor=mock_executor.execute)

        run = await executor.run(_steps(("a", ["b"]), ("b", [])))

        assert run.states["a"].status == StepStatus.FAILED
        assert "nope" in run.states["a"].error
        assert run.states["b"].status == StepStatus.WAITING
        mock_executor.execute.assert_awaited_once_with("a")


# ======================================================================
# Test 4: 边界情况
# ======================================================================


class TestEdgeCases:

    @pytest.mark.asyncio
    async def test_empty_workflow(self):
        result = await execute_workflow([])
        assert result == {}

    @pytest.mark.asyncio
    async def test_orphans_share_first_tick(self):
        steps = _steps(("orphan1", []), ("orphan2", []))

        result = await execute_workflow(steps)

        _assert_workflow_consistency(steps, result)
        assert _clocks(result, "orphan1") == (0, 1)
        assert _clocks(result, "orphan2") == (0, 1)

    @pytest.mark.asyncio
    async def test_undeclared_successor_rejected_before_scheduling(self):
        mock_executor = AsyncMock()

        with pytest.raises(WorkflowValidationError) as exc_info:
            await WorkflowExecutor(step_executor=mock_executor).run(_steps(("a", ["ghost"])))

        assert exc_info.value.undeclared_ids == ["ghost"]
        mock_executor.assert_not_called()

    @pytest.mark.asyncio
    async def test_undeclared_successor_ignored_by_policy(self):
        executor = WorkflowExecutor(undeclared_policy="ignore")

        run = await executor.run(_steps(("a", ["ghost", "b"]), ("b", [])))

        assert set(run.states) == {"a", "b"}
        assert run.states["b"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_phantom_ready_id_is_not_dispatched(self):
        """手工构建含幽灵入度条目的图: 调度器跳过它，不会调用执行器."""
        graph = StepGraph(successors={"a": []}, in_degree={"a": 0, "ghost": 0})
        calls: list[str] = []

        async def record(step_id: str) -> None:
            calls.append(step_id)

        run = await WorkflowExecutor(step_executor=record).run_graph(graph)

        assert calls == ["a"]
        assert set(run.states) == {"a"}

    @pytest.mark.asyncio
    async def test_cycle_members_remain_waiting(self, caplog):
        steps = _steps(("root", []), ("x", ["y"]), ("y", ["x"]))

        with caplog.at_level("WARNING"):
            result = await execute_workflow(steps)

        assert result["root"].status == StepStatus.COMPLETED
        assert result["x"].status == StepStatus.WAITING
        assert result["y"].status == StepStatus.WAITING
        # 构建图时即报告环，运行结束时报告未满足的依赖
        assert "Cycle detected" in caplog.text
        assert "Step x never ran, unmet dependencies: y" in caplog.text
        assert "Step y never ran, unmet dependencies: x" in caplog.text

    @pytest.mark.asyncio
    async def test_repeated_successor_edge(self):
        """重复的后继边各计一次入度，两次递减后恰好解锁一次."""
        steps = _steps(("a", ["c", "c"]), ("c", []))

        run = await WorkflowExecutor().run(steps)

        _assert_workflow_consistency(steps, run.states)
        assert run.states["c"].status == StepStatus.COMPLETED
        assert _clocks(run.states, "c") == (1, 2)
        assert run.ticks[0].released == ["c"]

    @pytest.mark.asyncio
    async def test_repeated_runs_are_identical(self):
        steps = _steps(("A", ["B", "fail-C"]), ("B", ["D"]), ("fail-C", ["D"]), ("D", []))
        executor = WorkflowExecutor(step_executor=SimulatedStepExecutor())

        first = await executor.run(steps)
        second = await executor.run(steps)

        assert first.model_dump() == second.model_dump()


# ======================================================================
# Test 5: 事件流与时间线
# ======================================================================


class TestEventsAndTimeline:

    @pytest.mark.asyncio
    async def test_tick_records(self):
        steps = _steps(("A", ["B", "fail-C"]), ("B", []), ("fail-C", []))

        run = await WorkflowExecutor().run(steps)

        assert run.clock == 2
        assert len(run.ticks) == 2
        assert run.ticks[0].clock == 0
        assert run.ticks[0].released == ["B", "fail-C"]
        assert run.ticks[1].steps == ["B", "fail-C"]
        assert run.ticks[1].completed == ["B"]
        assert run.ticks[1].failed == ["fail-C"]
        assert run.blocked_steps() == []
        assert "1 FAILED" in run.summary()

    @pytest.mark.asyncio
    async def test_event_stream(self):
        events: list[tuple[str, dict]] = []
        executor = WorkflowExecutor(
            step_executor=FunctionStepExecutor(AsyncMock(return_value=None)),
            on_event=lambda etype, data: events.append((etype, data)),
        )

        await executor.run(_steps(("a", ["b"]), ("b", [])))

        names = [e[0] for e in events]
        assert names[0] == "workflow_start"
        assert names[-1] == "workflow_done"
        assert names.count("tick_start") == 2
        transitions = [(d["step_id"], d["from"], d["to"]) for n, d in events if n == "step_transition"]
        assert transitions == [
            ("a", "WAITING", "RUNNING"),
            ("a", "RUNNING", "COMPLETED"),
            ("b", "WAITING", "RUNNING"),
            ("b", "RUNNING", "COMPLETED"),
        ]

    @pytest.mark.asyncio
    async def test_failing_event_callback_does_not_break_run(self):
        seen: list[str] = []

        def broken(event: str, data: dict) -> None:
            seen.append(event)
            raise RuntimeError("ui crashed")

        steps = _steps(("a", ["b"]), ("fail-x", []), ("b", []))
        run = await WorkflowExecutor(on_event=broken).run(steps)

        _assert_workflow_consistency(steps, run.states)
        assert run.states["a"].status == StepStatus.COMPLETED
        assert run.states["b"].status == StepStatus.COMPLETED
        assert run.states["fail-x"].status == StepStatus.FAILED
        # 每种事件都抛异常，但仍被完整投递
        for event in ("workflow_start", "tick_start", "step_completed", "step_failed", "tick_done", "workflow_done"):
            assert event in seen
