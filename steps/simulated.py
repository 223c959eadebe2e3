"""
Simulated Step Executor - Stand-in for real step work.
模拟步骤执行器：代替真实工作的占位实现。

Steps whose id starts with the configured prefix (default "fail") fail;
every other step succeeds, optionally after a short sleep. This naming
convention is a test fixture, not a production policy.
ID 以配置前缀（默认 "fail"）开头的步骤会失败，其余步骤成功（可选地先 sleep 一段时间）。
这一命名约定只是测试夹具，不是生产策略。
"""

from __future__ import annotations

import asyncio
import logging

import config
from steps.base import BaseStepExecutor, StepExecutionError

logger = logging.getLogger(__name__)


class SimulatedStepExecutor(BaseStepExecutor):
    """
    Fail-by-prefix executor with optional simulated latency.
    按前缀判定失败的执行器，可模拟耗时。
    """

    def __init__(self, fail_prefix: str | None = None, latency: float | None = None):
        self.fail_prefix = config.FAIL_STEP_PREFIX if fail_prefix is None else fail_prefix
        self.latency = config.SIMULATED_STEP_LATENCY if latency is None else latency

    def should_fail(self, step_id: str) -> bool:
        return bool(self.fail_prefix) and step_id.startswith(self.fail_prefix)

    async def execute(self, step_id: str) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)  # 模拟工作耗时
        if self.should_fail(step_id):
            logger.debug("[Simulated] %s matches fail prefix '%s'", step_id, self.fail_prefix)
            raise StepExecutionError(step_id, "Step failed!")
