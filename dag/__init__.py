"""
DAG module - Core engine for workflow scheduling.
DAG 模块：工作流调度的核心引擎。

Components:
  - graph.py:         StepGraph (successor map, in-degree map, ready queue seed)
  - state_machine.py: Step lifecycle state machine
  - executor.py:      Tick scheduler (logical clock, batched concurrent dispatch)

模块组成：
  - graph.py:         StepGraph 依赖图（后继表、入度表、初始就绪队列）
  - state_machine.py: 步骤生命周期状态机（强制合法状态转移）
  - executor.py:      Tick 调度器（逻辑时钟 + 批量并发调度）
"""

from dag.graph import StepGraph, WorkflowValidationError               # 依赖图
from dag.state_machine import InvalidTransitionError, StepStateMachine  # 步骤状态机
from dag.executor import WorkflowExecutor, execute_workflow            # Tick 调度器

__all__ = [
    "StepGraph",
    "WorkflowValidationError",
    "StepStateMachine",
    "InvalidTransitionError",
    "WorkflowExecutor",
    "execute_workflow",
]
