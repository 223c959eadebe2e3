"""
Configuration module for the workflow scheduler.
Loads settings from environment variables or .env file.
工作流调度器配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Graph Validation ---
# --- 图结构校验 ---
# "reject" = fail fast when a successor names an undeclared step
# "ignore" = drop undeclared successors from the graph
# "reject" = 后继引用了未声明的步骤时直接报错；"ignore" = 从图中丢弃这些后继
UNDECLARED_SUCCESSOR_POLICY = os.getenv("UNDECLARED_SUCCESSOR_POLICY", "reject")

# --- Simulated Step Executor ---
# --- 模拟步骤执行器（测试约定，非生产策略）---
FAIL_STEP_PREFIX = os.getenv("FAIL_STEP_PREFIX", "fail")                        # 以此前缀开头的步骤会被判定为失败
SIMULATED_STEP_LATENCY = float(os.getenv("SIMULATED_STEP_LATENCY", "0"))         # 每个步骤模拟耗时（秒）
