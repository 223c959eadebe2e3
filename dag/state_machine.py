"""
Step State Machine - Validates and enforces step lifecycle transitions.
步骤状态机：校验并强制执行步骤生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError, so a step
can never move backward, skip RUNNING, or leave a terminal state.
转移表是合法状态变化的唯一权威来源。
任何非法转移都会抛出 InvalidTransitionError：步骤不能回退、不能跳过 RUNNING、
也不能离开终态。

Transition graph:
转移图：
    WAITING ──> RUNNING ──> COMPLETED
                        ──> FAILED
"""

from __future__ import annotations

import logging
from typing import Callable

from schema import StepState, StepStatus, WorkflowState

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """
    Raised when an illegal state transition is attempted.
    当尝试非法状态转移时抛出此异常。
    """
    pass


# 完整的状态转移表
VALID_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.WAITING:   {StepStatus.RUNNING},
    StepStatus.RUNNING:   {StepStatus.COMPLETED, StepStatus.FAILED},
    # Terminal states
    # 终态
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED:    set(),
}


class StepStateMachine:
    """
    Validates and applies step state transitions on a WorkflowState.
    在 WorkflowState 上校验并应用步骤状态转移。

    Provides a single `transition()` method that:
      1. Checks the VALID_TRANSITIONS table
      2. Replaces the step's entry in the workflow state
      3. Fires an optional callback for UI/logging
    """

    def __init__(self, on_transition: Callable[[str, StepStatus, StepStatus], None] | None = None):
        """
        Args:
            on_transition: Optional callback(step_id, old_status, new_status).
            on_transition: 可选回调 callback(step_id, 旧状态, 新状态)，用于事件驱动的 UI 更新。
        """
        self._on_transition = on_transition

    @staticmethod
    def can_transition(current: StepStatus, new_status: StepStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(current, set())

    def transition(self, state: WorkflowState, step_id: str, new_state: StepState) -> None:
        """
        Apply a state transition. Raises InvalidTransitionError if illegal.
        应用状态转移。若转移非法则抛出 InvalidTransitionError。
        """
        current = state.get(step_id)
        if current is None:
            raise InvalidTransitionError(f"Step '{step_id}': not part of this workflow")

        old_status = current.status
        if not self.can_transition(old_status, new_state.status):
            raise InvalidTransitionError(
                f"Step '{step_id}': cannot transition from {old_status.value} to {new_state.status.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(old_status, set()))}"
            )

        state[step_id] = new_state  # 每个步骤只有一个写入者，不存在竞争

        logger.debug("[SM] %s: %s -> %s", step_id, old_status.value, new_state.status.value)

        if self._on_transition:
            try:
                self._on_transition(step_id, old_status, new_state.status)
            except Exception:
                # UI errors should never crash the scheduler
                # UI 回调异常不能影响调度主流程
                logger.exception("[SM] on_transition callback failed for %s", step_id)
