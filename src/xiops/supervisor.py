"""
Rollout supervisor.

Polls the pods of a deployment after a manifest apply until they are all
ready, a failure shows up in the newest pod's events, or the timeout runs
out. Everything runs on one thread: each tick takes a snapshot, renders it,
then classifies from that same snapshot.

Example:
    kube = Kubectl(Context())
    supervisor = RolloutSupervisor(kube)
    outcome = supervisor.supervise(config.target())
    if not outcome.ok:
        ...
"""

import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Protocol

from rich.console import Console
from rich.live import Live

from . import output
from .config import DeploymentTarget
from .errors import KubectlError
from .events import EventClassifier, EventSource, EventVerdict, KeywordEventClassifier
from .pods import RolloutSnapshot, take_snapshot
from .render import format_duration, snapshot_view


class OutcomeKind(Enum):
    CONVERGED = auto()
    ERRORED = auto()
    TIMED_OUT = auto()


@dataclass(frozen=True)
class RolloutOutcome:
    """Terminal result of a supervisor run."""

    kind: OutcomeKind
    verdict: EventVerdict | None = None
    elapsed: float = 0.0
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.CONVERGED

    @classmethod
    def converged(cls, elapsed: float = 0.0) -> "RolloutOutcome":
        return cls(OutcomeKind.CONVERGED, elapsed=elapsed)

    @classmethod
    def errored(
        cls, verdict: EventVerdict, elapsed: float = 0.0, aborted: bool = False
    ) -> "RolloutOutcome":
        return cls(OutcomeKind.ERRORED, verdict=verdict, elapsed=elapsed, aborted=aborted)

    @classmethod
    def timed_out(cls, elapsed: float = 0.0) -> "RolloutOutcome":
        return cls(OutcomeKind.TIMED_OUT, elapsed=elapsed)


class Cluster(EventSource, Protocol):
    def rollout_restart(self, deployment: str, namespace: str) -> None: ...


@dataclass
class SupervisorConfig:
    """Timing for the poll loop, in seconds."""

    timeout: float = 300.0
    poll_interval: float = 5.0
    settle_delay: float = 3.0


class RolloutSupervisor:
    SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(
        self,
        cluster: Cluster,
        classifier: EventClassifier | None = None,
        config: SupervisorConfig | None = None,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.classifier = classifier or KeywordEventClassifier(cluster)
        self.config = config or SupervisorConfig()
        self.console = console or output.console
        self.clock = clock
        self.sleep = sleep

    def supervise(self, target: DeploymentTarget, timeout: float | None = None) -> RolloutOutcome:
        """Watch `target` until it converges, errors or `timeout` seconds pass."""
        if timeout is None:
            timeout = self.config.timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        output.step(
            f"Waiting for {target.deployment_name} to roll out (timeout {format_duration(timeout)})",
            self.console,
        )
        if self.config.settle_delay > 0:
            self.sleep(self.config.settle_delay)

        start = self.clock()
        frame = 0
        with Live(console=self.console, auto_refresh=False, transient=False) as live:
            while True:
                snapshot = take_snapshot(self.cluster, target)
                live.update(
                    snapshot_view(
                        target,
                        snapshot,
                        self.clock() - start,
                        timeout,
                        self.SPINNER_FRAMES[frame % len(self.SPINNER_FRAMES)],
                    ),
                    refresh=True,
                )
                frame += 1

                outcome = self._check(target, snapshot, self.clock() - start)
                if outcome is not None:
                    break

                elapsed = self.clock() - start
                if elapsed >= timeout:
                    outcome = RolloutOutcome.timed_out(elapsed)
                    break

                self.sleep(self.config.poll_interval)

        self._report(target, outcome)
        if outcome.kind is OutcomeKind.TIMED_OUT:
            self._nudge(target)
        return outcome

    def _check(
        self, target: DeploymentTarget, snapshot: RolloutSnapshot, elapsed: float
    ) -> RolloutOutcome | None:
        if not snapshot.available:
            output.warning("Pod query failed; treating pods as not ready this tick", self.console)
            return None
        if not snapshot.observations:
            return None

        try:
            verdict = self.classifier.classify(target, snapshot)
        except KubectlError as e:
            output.warning(f"Event query failed; retrying next tick ({e})", self.console)
            return None

        if verdict.is_error:
            return RolloutOutcome.errored(verdict, elapsed)
        if snapshot.converged:
            return RolloutOutcome.converged(elapsed)
        return None

    def _report(self, target: DeploymentTarget, outcome: RolloutOutcome) -> None:
        took = format_duration(outcome.elapsed)
        if outcome.kind is OutcomeKind.CONVERGED:
            output.success(f"{target.deployment_name} rolled out in {took}", self.console)
        elif outcome.kind is OutcomeKind.ERRORED:
            pod = outcome.verdict.pod_name if outcome.verdict else None
            output.error(f"Failure detected in pod {pod} after {took}", self.console)
        else:
            output.error(f"Rollout did not converge within {took}", self.console)

    def _nudge(self, target: DeploymentTarget) -> None:
        """Best-effort rollout restart after a timeout."""
        output.step("Attempting rollout restart to recover", self.console)
        try:
            self.cluster.rollout_restart(target.deployment_name, target.namespace)
        except KubectlError as e:
            output.warning(f"Restart failed: {e}", self.console)
