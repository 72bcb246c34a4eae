"""
The deploy workflow.

connect -> namespace -> migrations -> render + apply -> supervise -> recover
-> record tag -> status summary.
"""

import shlex
from dataclasses import dataclass
from typing import Callable

from rich.console import Console

from . import images, manifests, output
from .config import REQUIRED_DEPLOY, DeploymentTarget, ProjectConfig
from .errors import KubectlError, MigrationError
from .kubectl import Kubectl
from .migrations import JobStatus, MigrationJob, MigrationRunner
from .pods import take_snapshot
from .recovery import RecoveryMenu
from .render import pods_table, services_table
from .steps import doit, run
from .supervisor import OutcomeKind, RolloutOutcome, RolloutSupervisor

PROCESSED_DIR = ".xiops-processed"


@dataclass
class DeployOptions:
    tag: str
    skip_migrations: bool = False
    max_retries: int = 3
    migration_timeout: float = 300.0


def connect_cluster(config: ProjectConfig, console: Console | None = None) -> None:
    """Fetch AKS credentials into the local kubeconfig."""
    q = shlex.quote
    doit(
        [
            run(
                f"Connecting to AKS cluster {config.get('AKS_CLUSTER_NAME')}",
                f"az aks get-credentials --resource-group {q(config.get('RESOURCE_GROUP'))} "
                f"--name {q(config.get('AKS_CLUSTER_NAME'))} --overwrite-existing",
            )
        ],
        console=console,
    )


def show_status(kube: Kubectl, target: DeploymentTarget, console: Console | None = None) -> None:
    console = console or output.console
    output.section("Deployment status", console)
    snapshot = take_snapshot(kube, target)
    if not snapshot.available:
        output.warning("Could not query pods", console)
    else:
        console.print(pods_table(snapshot))
    try:
        services = kube.get_services(target.namespace, target.label_selector)
    except KubectlError as e:
        output.warning(f"Could not query services: {e}", console)
        return
    console.print(services_table(services))


def recover_if_needed(
    outcome: RolloutOutcome,
    menu: RecoveryMenu,
    target: DeploymentTarget,
    max_retries: int,
) -> RolloutOutcome:
    if outcome.kind is OutcomeKind.ERRORED and outcome.verdict is not None:
        return menu.resolve(target, outcome.verdict, max_retries)
    return outcome


class DeployWorkflow:
    def __init__(
        self,
        config: ProjectConfig,
        kube: Kubectl,
        supervisor: RolloutSupervisor,
        menu: RecoveryMenu,
        migrations: MigrationRunner,
        console: Console | None = None,
        connect: Callable[[ProjectConfig, Console | None], None] | None = connect_cluster,
    ):
        self.config = config
        self.kube = kube
        self.supervisor = supervisor
        self.menu = menu
        self.migrations = migrations
        self.console = console or output.console
        self.connect = connect

    @property
    def has_migrations(self) -> bool:
        return (self.config.k8s_dir / manifests.MIGRATION_JOB).exists()

    def run(self, options: DeployOptions) -> RolloutOutcome:
        """Deploy `options.tag` and supervise it.

        Raises:
            ConfigError: If required .env keys are missing
            StepError: If connecting to the cluster fails
            MigrationError: If the migration job fails or times out
            ManifestError: If manifests cannot be rendered
            KubectlError: If namespace preparation or manifest apply fails
        """
        config = self.config
        config.require(REQUIRED_DEPLOY)
        target = config.target()

        if self.connect is not None:
            self.connect(config, self.console)

        output.step(f"Preparing namespace {target.namespace}", self.console)
        self.kube.apply_manifest(manifests.namespace_manifest(target.namespace))

        if options.skip_migrations:
            output.warning("Skipping migrations (--skip-migrations)", self.console)
        elif not self.has_migrations:
            output.step(f"No {manifests.MIGRATION_JOB} found, skipping migrations", self.console)
        else:
            job = MigrationJob.for_release(config, options.tag)
            status = self.migrations.run_and_wait(job, timeout=options.migration_timeout)
            if status is not JobStatus.SUCCEEDED:
                raise MigrationError(
                    f"Migration {status.value.lower()}. Aborting deployment. "
                    "Use --skip-migrations to deploy without migrations."
                )

        output.section("Applying Kubernetes manifests", self.console)
        with manifests.tmpdir(config.project_dir / PROCESSED_DIR) as processed:
            for path in manifests.render(config.k8s_dir, processed, config.substitutions(options.tag)):
                output.step(f"Processed {path.name}", self.console)
            manifests.apply(self.kube, processed, target, self.console)

        outcome = self.supervisor.supervise(target)
        outcome = recover_if_needed(outcome, self.menu, target, options.max_retries)

        if outcome.ok:
            images.write_marker(config.project_dir / images.DEPLOYED_MARKER, options.tag)
            output.success(f"Deployed {options.tag}; tag saved to {images.DEPLOYED_MARKER}", self.console)
            show_status(self.kube, target, self.console)
        return outcome
