"""
Named shell steps with live progress.

Runs external tooling (az, docker) one step at a time, showing a spinner
and the last few output lines while a step runs, and the tail of the output
when it fails.

Example:
    from xiops.steps import doit, run

    doit([
        run("Logging in to ACR", "az acr login --name myacr"),
        run("Building image", "docker build -t myacr.azurecr.io/api:v02 ."),
    ])
"""

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Sequence

from rich.console import Console, Group
from rich.live import Live
from rich.text import Text

from . import output
from .errors import StepError


class StepStatus(Enum):
    PENDING = auto()
    RUNNING = auto()
    SUCCESS = auto()
    FAILED = auto()


@dataclass
class Step:
    """A shell command to run under a display name."""

    name: str
    command: str
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None


@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: int
    output: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS


@dataclass
class RunConfig:
    """Configuration for the step runner."""

    output_lines: int = 3
    error_lines: int = 20
    raise_on_failure: bool = True


@dataclass
class _RunningStep:
    step: Step
    status: StepStatus = StepStatus.PENDING
    lines: list[str] = field(default_factory=list)
    exit_code: int = -1
    start_time: float = 0.0
    end_time: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)


class _Renderer:
    SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, running: _RunningStep, config: RunConfig):
        self.running = running
        self.config = config
        self._frame = 0

    def __rich__(self) -> Group:
        self._frame = (self._frame + 1) % len(self.SPINNER_FRAMES)
        task = self.running
        status_line = Text()
        duration = f" ({task.end_time - task.start_time:.1f}s)" if task.end_time else ""

        if task.status == StepStatus.RUNNING:
            status_line.append(f"{self.SPINNER_FRAMES[self._frame]} ", style="blue bold")
            status_line.append(task.step.name, style="blue")
        elif task.status == StepStatus.SUCCESS:
            status_line.append("✓ ", style="green bold")
            status_line.append(task.step.name, style="green")
            status_line.append(duration, style="dim")
        elif task.status == StepStatus.FAILED:
            status_line.append("✗ ", style="red bold")
            status_line.append(task.step.name, style="red")
            status_line.append(duration, style="dim")
        else:
            status_line.append("○ ", style="dim")
            status_line.append(task.step.name, style="dim")

        lines = [status_line]
        with task._lock:
            if task.status == StepStatus.RUNNING:
                tail, style = task.lines[-self.config.output_lines :], "dim"
            elif task.status == StepStatus.FAILED:
                tail, style = task.lines[-self.config.error_lines :], "red dim"
            else:
                tail, style = [], "dim"
        for line in tail:
            lines.append(Text(f"    {line}", style=style))
        return Group(*lines)


def _execute(task: _RunningStep) -> None:
    step = task.step
    env = {**os.environ, **step.env}
    task.status = StepStatus.RUNNING
    task.start_time = time.time()

    try:
        process = subprocess.Popen(
            step.command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            cwd=str(step.cwd) if step.cwd else None,
            text=True,
            bufsize=1,
        )
    except OSError as e:
        task.lines.append(str(e))
        task.exit_code = 127
        task.end_time = time.time()
        task.status = StepStatus.FAILED
        return
    if process.stdout:
        for line in process.stdout:
            with task._lock:
                task.lines.append(line.rstrip("\n"))
    process.wait()

    task.exit_code = process.returncode
    task.end_time = time.time()
    task.status = StepStatus.SUCCESS if task.exit_code == 0 else StepStatus.FAILED


def run(
    name: str,
    command: str,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
) -> Step:
    return Step(name, command, env or {}, cwd)


def doit(
    steps: Sequence[Step],
    config: RunConfig | None = None,
    console: Console | None = None,
) -> list[StepResult]:
    """Run steps in order, stopping at the first failure.

    Raises:
        StepError: On the first failing step, unless `config.raise_on_failure`
            is False, in which case the results so far are returned
    """
    if config is None:
        config = RunConfig()
    console = console or output.console

    results: list[StepResult] = []
    for step in steps:
        task = _RunningStep(step)
        with Live(_Renderer(task, config), console=console, refresh_per_second=10):
            worker = threading.Thread(target=_execute, args=(task,), daemon=True)
            worker.start()
            worker.join()

        result = StepResult(
            name=step.name,
            status=task.status,
            exit_code=task.exit_code,
            output="\n".join(task.lines),
            duration_seconds=task.end_time - task.start_time,
        )
        results.append(result)
        if not result.ok:
            if config.raise_on_failure:
                tail = "\n".join(task.lines[-config.error_lines :])
                raise StepError(step.name, result.exit_code, tail)
            break
    return results
