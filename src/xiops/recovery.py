"""
Error recovery menu.

When the supervisor reports a failure, the menu shows the evidence, asks a
policy what to do, performs it and supervises again. A RecoveryPolicy only
chooses; RecoveryMenu.perform carries the action out.
"""

import shlex
from enum import Enum
from typing import Protocol, Sequence

from invoke import Context
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from . import config as xconfig
from . import manifests, output
from .config import DeploymentTarget, ProjectConfig
from .errors import ConfigError, KubectlError, XiopsError
from .events import EventVerdict
from .render import head
from .supervisor import OutcomeKind, RolloutOutcome, RolloutSupervisor

EVIDENCE_LINES = 25


class RecoveryAction(Enum):
    REDEPLOY = "Redeploy (rollout restart)"
    RESYNC_SECRETS = "Resync SPC from .env, then redeploy"
    RESYNC_CONFIG = "Resync ConfigMap from .env, then redeploy"
    ABORT = "Abort and fix code/config manually"

    @property
    def label(self) -> str:
        return self.value


MENU = list(RecoveryAction)


class RecoveryPolicy(Protocol):
    def choose(self, verdict: EventVerdict, attempt: int) -> RecoveryAction: ...


class DiagnosticAdvisor(Protocol):
    def advise(self, pod_name: str, namespace: str) -> str: ...


class InteractivePolicy:
    """Ask the operator through a numbered prompt."""

    def __init__(self, console: Console | None = None):
        self.console = console or output.console

    def choose(self, verdict: EventVerdict, attempt: int) -> RecoveryAction:
        self.console.print("\n[bold]What would you like to do?[/bold]")
        for i, action in enumerate(MENU, start=1):
            self.console.print(f"  [bold magenta]{i}[/bold magenta]) {action.label}")
        answer = Prompt.ask(
            "Choice",
            choices=[str(i) for i in range(1, len(MENU) + 1)],
            default=str(len(MENU)),
            console=self.console,
        )
        return MENU[int(answer) - 1]


class ScriptedPolicy:
    """Play back a fixed list of actions, then abort."""

    def __init__(self, actions: Sequence[RecoveryAction] = ()):
        self._actions = list(actions)

    def choose(self, verdict: EventVerdict, attempt: int) -> RecoveryAction:
        if not self._actions:
            return RecoveryAction.ABORT
        return self._actions.pop(0)


class CommandAdvisor:
    """Run an operator-configured command for a root-cause hint.

    The command may reference `{pod}` and `{namespace}`, e.g.
    `my-triage-tool explain {pod} -n {namespace}`.
    """

    def __init__(self, c: Context, command: str, timeout: int = 120):
        self.c = c
        self.command = command
        self.timeout = timeout

    def advise(self, pod_name: str, namespace: str) -> str:
        cmd = self.command.format(pod=shlex.quote(pod_name), namespace=shlex.quote(namespace))
        result = self.c.run(cmd, hide=True, warn=True, timeout=self.timeout)
        if result is None or not result.ok:
            exit_code = result.return_code if result else -1
            raise XiopsError(f"Advisor exited {exit_code}")
        return result.stdout.strip()


class RecoveryMenu:
    def __init__(
        self,
        kube: manifests.ManifestTarget,
        config: ProjectConfig,
        supervisor: RolloutSupervisor,
        policy: RecoveryPolicy,
        advisor: DiagnosticAdvisor | None = None,
        console: Console | None = None,
    ):
        self.kube = kube
        self.config = config
        self.supervisor = supervisor
        self.policy = policy
        self.advisor = advisor
        self.console = console or output.console

    def resolve(
        self, target: DeploymentTarget, verdict: EventVerdict, max_retries: int
    ) -> RolloutOutcome:
        """Drive recovery until a retried rollout stops erroring or the operator aborts.

        Args:
            target: Deployment being recovered
            verdict: The failure that brought us here
            max_retries: Retried rollouts allowed before giving up

        Returns:
            The outcome of the last supervised retry, or an aborted Errored
            outcome when the policy aborts or the retry limit is reached
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        retries = 0
        while True:
            self.show_evidence(target, verdict)

            if retries >= max_retries:
                output.error(f"Retry limit reached ({max_retries}); giving up", self.console)
                return RolloutOutcome.errored(verdict, aborted=True)

            action = self.policy.choose(verdict, retries)
            if action is RecoveryAction.ABORT:
                output.error(
                    "Aborted. Inspect the code and configuration, then deploy again.",
                    self.console,
                )
                return RolloutOutcome.errored(verdict, aborted=True)

            retries += 1
            try:
                self.perform(action, target)
            except (KubectlError, ConfigError) as e:
                output.error(f"{action.label} failed: {e}", self.console)
                continue

            outcome = self.supervisor.supervise(target)
            if outcome.kind is not OutcomeKind.ERRORED or outcome.verdict is None:
                return outcome
            verdict = outcome.verdict

    def perform(self, action: RecoveryAction, target: DeploymentTarget) -> None:
        """Apply the side effects of `action`: optional resync, then restart.

        A resync re-reads the .env file first, so edits made while the menu
        was open are applied.

        Raises:
            KubectlError: If the apply or restart fails
            ConfigError: If the .env file is gone or lacks keys the resync needs
        """
        if action in (RecoveryAction.RESYNC_SECRETS, RecoveryAction.RESYNC_CONFIG):
            self.config = xconfig.load(self.config.env_file)
        if action is RecoveryAction.RESYNC_SECRETS:
            manifests.sync_secrets(self.kube, self.config, self.console)
        elif action is RecoveryAction.RESYNC_CONFIG:
            manifests.sync_config(self.kube, self.config, self.console)

        output.step(f"Restarting {target.deployment_name}", self.console)
        self.kube.rollout_restart(target.deployment_name, target.namespace)

    def show_evidence(self, target: DeploymentTarget, verdict: EventVerdict) -> None:
        pod = verdict.pod_name or "unknown pod"
        text = head(verdict.text, EVIDENCE_LINES) if verdict.text else "(no events recorded)"
        self.console.print(
            Panel(Text(text), title=f"Events for {pod}", title_align="left", border_style="red")
        )

        if self.advisor is None or verdict.pod_name is None:
            return
        output.step("Asking the diagnostic advisor", self.console)
        try:
            hint = self.advisor.advise(verdict.pod_name, target.namespace)
        except Exception as e:
            output.warning(f"Advisor unavailable: {e}", self.console)
            return
        if hint:
            self.console.print(
                Panel(Text(hint), title="Advisor", title_align="left", border_style="cyan")
            )
