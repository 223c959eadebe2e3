"""
Pydantic data models for the workflow scheduler.
Defines the step definitions, the per-step state variants and the run timeline.
工作流调度器的 Pydantic 数据模型。
定义步骤声明、每个步骤的状态变体以及运行时间线。

Step State is a tagged variant discriminated on `status`:
Step State 是以 `status` 为标签的变体类型：
    WAITING    -> no clock fields / 无时钟字段
    RUNNING    -> start_clock
    COMPLETED  -> start_clock, finished_clock
    FAILED     -> start_clock, finished_clock (+ error)
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ======================================================================
# Input definitions
# 输入定义
# ======================================================================

class Step(BaseModel):
    """
    A single step declaration: its id and the steps it unblocks.
    单个步骤声明：步骤 ID 以及它完成后解锁的后继步骤。
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique step identifier")                                        # 步骤唯一 ID
    next: list[str] = Field(default_factory=list, description="IDs of steps unblocked by this one")  # 后继步骤 ID 列表（有序）


# ======================================================================
# Step state variants
# 步骤状态变体
# ======================================================================

class StepStatus(str, Enum):
    """
    Step lifecycle states, managed by StepStateMachine.
    步骤生命周期状态，由 StepStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        WAITING -> RUNNING -> COMPLETED
                           -> FAILED
    """
    WAITING = "WAITING"       # 等待前置依赖完成（也是被上游失败永久阻塞时的终态）
    RUNNING = "RUNNING"       # 正在执行中
    COMPLETED = "COMPLETED"   # 成功完成（终态）
    FAILED = "FAILED"         # 执行失败（终态）


TERMINAL_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED})


class WaitingState(BaseModel):
    """Not started yet. Carries no clock fields."""
    status: Literal[StepStatus.WAITING] = StepStatus.WAITING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RunningState(BaseModel):
    """Dispatched in the tick that started at `start_clock`."""
    status: Literal[StepStatus.RUNNING] = StepStatus.RUNNING
    start_clock: int = Field(ge=0)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class _SettledState(BaseModel):
    """
    Shared shape of COMPLETED / FAILED: both clocks are set and ordered.
    COMPLETED / FAILED 的公共结构：两个时钟均存在且 finished_clock > start_clock。
    """
    start_clock: int = Field(ge=0)
    finished_clock: int

    @model_validator(mode="after")
    def _check_clock_order(self) -> _SettledState:
        if self.finished_clock <= self.start_clock:
            raise ValueError(
                f"finished_clock ({self.finished_clock}) must be greater than "
                f"start_clock ({self.start_clock})"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CompletedState(_SettledState):
    status: Literal[StepStatus.COMPLETED] = StepStatus.COMPLETED


class FailedState(_SettledState):
    status: Literal[StepStatus.FAILED] = StepStatus.FAILED
    error: str | None = Field(default=None, description="Message of the exception raised by the executor")  # 执行器抛出的异常信息


StepState = Annotated[
    Union[WaitingState, RunningState, CompletedState, FailedState],
    Field(discriminator="status"),
]

# step_id -> current state; exactly one entry per declared step
# step_id -> 当前状态；每个已声明步骤恰好一条
WorkflowState = dict[str, StepState]


# ======================================================================
# Run timeline
# 运行时间线（对应每个 tick 的快照）
# ======================================================================

class TickRecord(BaseModel):
    """
    What happened during one tick of the logical clock.
    逻辑时钟一个 tick 内发生的事情：本批次调度了哪些步骤、谁成功、谁失败、解锁了谁。
    """
    clock: int = Field(description="Logical clock value at which the batch started")   # 本批次的起始逻辑时钟
    steps: list[str] = Field(default_factory=list, description="Batch, in dispatch order")
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    released: list[str] = Field(
        default_factory=list,
        description="Successors whose in-degree reached 0 during this tick",          # 本 tick 内入度降为 0 的后继
    )


class WorkflowRun(BaseModel):
    """
    Full outcome of one scheduler run: final states plus the tick timeline.
    一次调度运行的完整结果：最终状态 + tick 时间线。
    """
    states: dict[str, StepState] = Field(default_factory=dict)
    ticks: list[TickRecord] = Field(default_factory=list)
    clock: int = 0  # 运行结束时逻辑时钟的值

    def blocked_steps(self) -> list[str]:
        """Steps that never left WAITING (blocked by a failed ancestor or unreachable)."""
        return [sid for sid, s in self.states.items() if s.status == StepStatus.WAITING]

    def summary(self) -> str:
        """
        One-line summary for logging.
        生成单行状态摘要，如：Workflow[5 steps, 4 ticks: 3 COMPLETED, 1 FAILED, 1 WAITING]
        """
        status_counts: dict[str, int] = {}
        for s in self.states.values():
            status_counts[s.status.value] = status_counts.get(s.status.value, 0) + 1
        parts = [f"{v} {k}" for k, v in status_counts.items()]
        return f"Workflow[{len(self.states)} steps, {len(self.ticks)} ticks: {', '.join(parts)}]"
