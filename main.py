"""
Workflow Scheduler - Command-line entry point.
工作流调度器：命令行入口。

Runs a workflow definition with the tick scheduler and renders each tick,
the final step states and the logical timeline with a rich console UI.
使用 Tick 调度器运行工作流定义，并通过 Rich 控制台 UI 展示每个 tick、
各步骤最终状态以及逻辑时间线。

Usage / 用法:
    python main.py                    # built-in diamond demo / 内置菱形示例
    python main.py workflow.json      # [{"id": "A", "next": ["B"]}, ...]
    python main.py workflow.json -v   # DEBUG logging / 调试日志
    python main.py workflow.json --json
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from dag.executor import WorkflowExecutor
from dag.graph import WorkflowValidationError
from schema import Step, StepStatus, TickRecord, WorkflowRun

console = Console()
log_console = Console(stderr=True)  # 日志走 stderr，避免污染 --json 输出

# Status -> Rich style mapping
# 步骤状态 -> Rich 样式映射
_STATUS_STYLES = {
    "WAITING": "dim",
    "RUNNING": "bold yellow",
    "COMPLETED": "green",
    "FAILED": "red",
}

# A -> [B, C] -> D -> E, with every step succeeding
DEMO_WORKFLOW: list[dict[str, Any]] = [
    {"id": "A", "next": ["B", "C"]},
    {"id": "B", "next": ["D"]},
    {"id": "C", "next": ["D"]},
    {"id": "D", "next": ["E"]},
    {"id": "E", "next": []},
]

_steps_adapter = TypeAdapter(list[Step])


# ======================================================================
# Workflow loading
# 工作流加载
# ======================================================================

def load_steps(path: str | Path) -> list[Step]:
    """
    Read step declarations from a JSON file.
    从 JSON 文件读取步骤声明。

    Accepts either a bare list of steps or an object with a "steps" key.
    既接受步骤列表，也接受带 "steps" 键的对象。
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("steps", [])
    return _steps_adapter.validate_python(data)


# ======================================================================
# Rendering
# 渲染
# ======================================================================

def build_state_table(run: WorkflowRun) -> Table:
    """
    Table of final step states: id, status, start and finish clocks.
    最终状态表：步骤 ID、状态、起止逻辑时钟。
    """
    table = Table(title="Final Step States", border_style="cyan", show_lines=False)
    table.add_column("Step", style="cyan")
    table.add_column("Status", width=10)
    table.add_column("Start", justify="right", width=6)
    table.add_column("Finish", justify="right", width=6)
    table.add_column("Error", style="dim")
    for step_id, state in run.states.items():
        style = _STATUS_STYLES.get(state.status.value, "white")
        start = getattr(state, "start_clock", None)
        finish = getattr(state, "finished_clock", None)
        table.add_row(
            step_id,
            f"[{style}]{state.status.value}[/{style}]",
            "-" if start is None else str(start),
            "-" if finish is None else str(finish),
            getattr(state, "error", None) or "",
        )
    return table


def build_timeline_tree(run: WorkflowRun) -> Tree:
    """
    Tree of ticks: each branch is one batch, leaves are its steps.
    Tick 树：每个分支是一个批次，叶子是该批次的步骤。
    """
    tree = Tree(f"[bold]Timeline[/bold] [dim]({len(run.ticks)} ticks, clock={run.clock})[/dim]")
    for record in run.ticks:
        parallel_note = " (parallel)" if len(record.steps) > 1 else ""
        branch = tree.add(f"[yellow]tick {record.clock}[/yellow]{parallel_note}")
        for step_id in record.steps:
            status = StepStatus.FAILED if step_id in record.failed else StepStatus.COMPLETED
            style = _STATUS_STYLES[status.value]
            branch.add(f"{step_id} [{style}]{status.value}[/{style}]")
        if record.released:
            branch.add(f"[dim]released: {', '.join(record.released)}[/dim]")
    blocked = run.blocked_steps()
    if blocked:
        tree.add(f"[dim strike]never ran: {', '.join(blocked)}[/dim strike]")
    return tree


def on_event(event: str, data: Any) -> None:
    """
    Handle events from the WorkflowExecutor and display them.
    处理来自 WorkflowExecutor 的事件并在控制台展示。
    """
    if event == "workflow_start":
        console.print(
            f"[bold cyan]>>> Running {len(data['steps'])} steps[/bold cyan] "
            f"[dim](initially ready: {', '.join(data['ready']) or '-'})[/dim]"
        )

    elif event == "tick_start":
        steps = data["steps"]
        parallel_note = " (parallel)" if len(steps) > 1 else ""
        console.print(
            f"\n  [bold yellow]--- Tick {data['clock']} ---[/bold yellow] "
            f"Running {len(steps)} step{'s' if len(steps) != 1 else ''}{parallel_note}: "
            f"[cyan]{', '.join(steps)}[/cyan]"
        )

    elif event == "step_completed":
        console.print(f"    [green]<< {data['step_id']} completed.[/green]")

    elif event == "step_failed":
        console.print(f"    [red]<< {data['step_id']} FAILED: {data['error']}[/red]")

    elif event == "tick_done":
        record: TickRecord = data["record"]
        if record.released:
            console.print(f"    [dim]released for next tick: {', '.join(record.released)}[/dim]")

    elif event == "step_transition":
        pass  # 状态转移已由 step_completed / step_failed 事件展示

    elif event == "workflow_done":
        run: WorkflowRun = data["run"]
        console.print()
        console.print(build_state_table(run))
        console.print(Panel(build_timeline_tree(run), title="[bold magenta]Ticks[/bold magenta]", border_style="magenta"))
        console.print(f"  [dim]{run.summary()}[/dim]")


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统；verbose=True 时启用 DEBUG 级别。
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=log_console, show_path=False, rich_tracebacks=True)],
    )


async def run_workflow(steps: list[Step], quiet: bool = False) -> WorkflowRun:
    """Run one workflow, streaming events to the console unless `quiet`."""
    executor = WorkflowExecutor(on_event=None if quiet else on_event)
    return await executor.run(steps)


def main(argv: list[str] | None = None) -> int:
    """
    程序入口：解析命令行参数并运行工作流。
    - 有位置参数：从 JSON 文件加载工作流
    - 无位置参数：运行内置菱形示例
    - -v / --verbose：启用调试日志
    - --json：只输出最终状态 JSON
    """
    argv = sys.argv[1:] if argv is None else argv
    verbose = "--verbose" in argv or "-v" in argv
    as_json = "--json" in argv
    setup_logging(verbose)

    # 过滤掉以 - 开头的选项参数，保留位置参数
    args = [a for a in argv if not a.startswith("-")]
    try:
        steps = load_steps(args[0]) if args else _steps_adapter.validate_python(DEMO_WORKFLOW)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[red]Cannot load workflow: {exc}[/red]")
        return 2

    try:
        run = asyncio.run(run_workflow(steps, quiet=as_json))
    except WorkflowValidationError as exc:
        console.print(f"[red]Invalid workflow: {exc}[/red]")
        return 1
    except ValueError as exc:
        # 例如 UNDECLARED_SUCCESSOR_POLICY 取值非法
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        return 1

    if as_json:
        payload = {sid: state.model_dump(mode="json") for sid, state in run.states.items()}
        console.print_json(data=payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
