"""
Base Step Executor - Abstract interface for the work a step performs.
BaseStepExecutor：步骤实际工作的抽象接口。

The scheduler only needs one capability: given a step id, do the work and
either return (success) or raise (failure). What the work is, how long it
takes and what counts as failure are up to the concrete executor.
调度器只依赖一种能力：给定步骤 ID，执行工作，正常返回即成功，抛出异常即失败。
具体做什么、耗时多久、何为失败，全部由具体执行器决定。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable


class StepExecutionError(Exception):
    """
    Raised by an executor to report that a step failed.
    执行器用于报告步骤失败的异常。
    """

    def __init__(self, step_id: str, message: str = "Step failed"):
        super().__init__(f"{step_id}: {message}")
        self.step_id = step_id


class BaseStepExecutor(ABC):
    """
    Abstract base class for all step executors.
    所有步骤执行器的抽象基类。
    """

    @abstractmethod
    async def execute(self, step_id: str) -> None:
        """
        Run the step. Return normally on success, raise on failure.
        执行步骤：正常返回表示成功，抛出异常表示失败。
        """


class FunctionStepExecutor(BaseStepExecutor):
    """Adapts a plain `async def fn(step_id)` to the executor interface."""

    def __init__(self, fn: Callable[[str], Awaitable[Any]]):
        self._fn = fn

    async def execute(self, step_id: str) -> None:
        await self._fn(step_id)
