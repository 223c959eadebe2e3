from .base import BaseStepExecutor, FunctionStepExecutor, StepExecutionError
from .simulated import SimulatedStepExecutor

__all__ = ["BaseStepExecutor", "FunctionStepExecutor", "StepExecutionError", "SimulatedStepExecutor"]
