"""
Command-line entry point.

The tasks are served through an invoke Program, so `xiops --list` and
`xiops <task> --help` behave like any invoke collection.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from invoke import Collection, Context, Program, task
from rich.prompt import Prompt

from . import __version__, images, manifests, migrations, output
from . import config as xconfig
from .config import REQUIRED_BUILD, REQUIRED_DEPLOY, DeploymentTarget, ProjectConfig
from .confirm import random_char_confirm
from .errors import XiopsError
from .kubectl import Kubectl
from .migrations import JobStatus, MigrationJob, MigrationRunner
from .recovery import CommandAdvisor, InteractivePolicy, RecoveryAction, RecoveryMenu, ScriptedPolicy
from .supervisor import RolloutOutcome, RolloutSupervisor, SupervisorConfig
from .workflow import DeployOptions, DeployWorkflow, connect_cluster, recover_if_needed, show_status

COMMON_HELP = {
    "env-file": "Path to the .env file (default: nearest .env above the current directory)",
    "verbose": "Log kubectl commands",
}
ROLLOUT_HELP = {
    **COMMON_HELP,
    "timeout": "Rollout timeout in seconds (default: XIOPS_ROLLOUT_TIMEOUT or 300)",
    "interval": "Poll interval in seconds (default: XIOPS_POLL_INTERVAL or 5)",
    "non-interactive": "Never prompt; on failure redeploy once, then give up",
    "max-retries": "Retried rollouts allowed from the recovery menu",
}


@contextmanager
def _fail_on_error() -> Generator[None, None, None]:
    """Turn xiops errors into an exit with the evidence printed."""
    try:
        yield
    except XiopsError as e:
        output.error(str(e))
        raise SystemExit(1) from e


def _load(env_file: str | None, verbose: bool) -> ProjectConfig:
    output.configure_logging(verbose)
    config = xconfig.load(Path(env_file) if env_file else None)
    output.step(f"Loaded configuration from {config.env_file}")
    return config


def _supervisor(kube: Kubectl, config: ProjectConfig, timeout: int, interval: int) -> RolloutSupervisor:
    return RolloutSupervisor(
        kube,
        config=SupervisorConfig(
            timeout=float(timeout) if timeout > 0 else config.rollout_timeout,
            poll_interval=float(interval) if interval > 0 else config.poll_interval,
        ),
    )


def _menu(
    c: Context, kube: Kubectl, config: ProjectConfig, supervisor: RolloutSupervisor, non_interactive: bool
) -> RecoveryMenu:
    if non_interactive:
        policy = ScriptedPolicy([RecoveryAction.REDEPLOY])
    else:
        policy = InteractivePolicy()
    advisor = CommandAdvisor(c, config.advisor_command) if config.advisor_command else None
    return RecoveryMenu(kube, config, supervisor, policy, advisor=advisor)


def _resolve_tag(kube: Kubectl, config: ProjectConfig, tag: str | None, interactive: bool) -> str:
    if tag:
        return images.normalize_tag(tag)
    if not interactive:
        if config.get("IMAGE_TAG"):
            return images.normalize_tag(config.get("IMAGE_TAG"))
        raise XiopsError("No --tag given and IMAGE_TAG is not set")
    current = images.deployed_tag(kube, config)
    if current:
        output.step(f"Currently deployed: {current}")
    answer = Prompt.ask("Image tag", default=images.suggest_next_tag(current))
    return images.normalize_tag(answer)


def _exit_for(outcome: RolloutOutcome) -> None:
    if not outcome.ok:
        raise SystemExit(1)


def _finish(kube: Kubectl, target: DeploymentTarget, outcome: RolloutOutcome) -> None:
    if outcome.ok:
        show_status(kube, target)
    _exit_for(outcome)


@task(
    help={
        **ROLLOUT_HELP,
        "tag": "Image tag to deploy (prompted when omitted)",
        "skip-migrations": "Deploy without running the migration job",
    }
)
def deploy(
    c,
    tag=None,
    skip_migrations=False,
    timeout=0,
    interval=0,
    non_interactive=False,
    max_retries=3,
    env_file=None,
    verbose=False,
):
    """Run migrations, apply manifests and supervise the rollout."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        config.require(REQUIRED_DEPLOY)
        kube = Kubectl(c)
        resolved = _resolve_tag(kube, config, tag, not non_interactive)
        supervisor = _supervisor(kube, config, timeout, interval)
        workflow = DeployWorkflow(
            config,
            kube,
            supervisor,
            _menu(c, kube, config, supervisor, non_interactive),
            MigrationRunner(kube),
        )
        outcome = workflow.run(
            DeployOptions(tag=resolved, skip_migrations=skip_migrations, max_retries=max_retries)
        )
    _exit_for(outcome)


@task(help={**COMMON_HELP, "tag": "Image tag to build (prompted when omitted)", "dockerfile": "Dockerfile path"})
def build(c, tag=None, dockerfile="Dockerfile", env_file=None, verbose=False):
    """Build the image and push it to ACR."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        config.require(REQUIRED_BUILD)
        resolved = _resolve_tag(Kubectl(c), config, tag, interactive=True)
        images.build_and_push(config, resolved, dockerfile=dockerfile)


@task(help=ROLLOUT_HELP)
def watch(c, timeout=0, interval=0, non_interactive=False, max_retries=3, env_file=None, verbose=False):
    """Supervise the current rollout, with the recovery menu on failure."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        kube = Kubectl(c)
        target = config.target()
        supervisor = _supervisor(kube, config, timeout, interval)
        outcome = supervisor.supervise(target)
        outcome = recover_if_needed(
            outcome, _menu(c, kube, config, supervisor, non_interactive), target, max_retries
        )
    _finish(kube, target, outcome)


@task(help=ROLLOUT_HELP)
def restart(c, timeout=0, interval=0, non_interactive=False, max_retries=3, env_file=None, verbose=False):
    """Restart the deployment and supervise the new rollout."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        kube = Kubectl(c)
        target = config.target()
        output.step(f"Restarting {target.deployment_name}")
        kube.rollout_restart(target.deployment_name, target.namespace)
        supervisor = _supervisor(kube, config, timeout, interval)
        outcome = recover_if_needed(
            supervisor.supervise(target),
            _menu(c, kube, config, supervisor, non_interactive),
            target,
            max_retries,
        )
    _finish(kube, target, outcome)


@task(
    help={
        **COMMON_HELP,
        "tag": "Image tag to migrate with (default: the deployed tag)",
        "timeout": "Migration timeout in seconds",
        "connect": "Fetch AKS credentials first",
    }
)
def migrate(c, tag=None, timeout=300, connect=False, env_file=None, verbose=False):
    """Run the migration job on its own."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        config.require(REQUIRED_DEPLOY)
        if connect:
            connect_cluster(config)
        kube = Kubectl(c)
        resolved = tag or images.deployed_tag(kube, config)
        if not resolved:
            raise XiopsError("No --tag given and no deployed tag found")
        job = MigrationJob.for_release(config, images.normalize_tag(resolved))
        status = MigrationRunner(kube).run_and_wait(job, timeout=float(timeout))
    if status is not JobStatus.SUCCEEDED:
        raise SystemExit(1)


def _print_alembic(c: Context, env_file: str | None, verbose: bool, title: str, *args: str) -> None:
    config = _load(env_file, verbose)
    output.section(title)
    text = migrations.alembic(Kubectl(c), config.target(), *args)
    output.console.print(text.rstrip(), markup=False, highlight=False)


@task(help=COMMON_HELP)
def migrate_status(c, env_file=None, verbose=False):
    """Show the current alembic revision of the running application."""
    with _fail_on_error():
        _print_alembic(c, env_file, verbose, "Migration status", "current")


@task(help=COMMON_HELP)
def migrate_history(c, env_file=None, verbose=False):
    """Show the alembic revision history."""
    with _fail_on_error():
        _print_alembic(c, env_file, verbose, "Migration history", "history")


@task(
    help={
        **COMMON_HELP,
        "revision": "Revision to downgrade to (default: -1, one step back)",
        "yes": "Skip the confirmation prompt",
    }
)
def migrate_downgrade(c, revision="-1", yes=False, env_file=None, verbose=False):
    """Downgrade the database with alembic inside a running pod."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        output.section("Downgrade migration")
        output.warning(f"This will downgrade to revision: {revision}")
        if not yes and not random_char_confirm("Are you sure you want to downgrade?"):
            output.step("Downgrade cancelled")
            return
        text = migrations.alembic(Kubectl(c), config.target(), "downgrade", revision)
        output.console.print(text.rstrip(), markup=False, highlight=False)
        output.success(f"Downgraded to {revision}")


@task(
    help={
        **COMMON_HELP,
        "timeout": ROLLOUT_HELP["timeout"],
        "interval": ROLLOUT_HELP["interval"],
    }
)
def rollback(c, timeout=0, interval=0, env_file=None, verbose=False):
    """Roll the deployment back to its previous revision and supervise it."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        kube = Kubectl(c)
        target = config.target()
        output.section(f"Rolling back {target.deployment_name}")
        kube.rollout_undo(target.deployment_name, target.namespace)
        output.success("Rollback initiated")
        outcome = _supervisor(kube, config, timeout, interval).supervise(target)
    _finish(kube, target, outcome)


@task(help=COMMON_HELP)
def status(c, env_file=None, verbose=False):
    """Show pods, services and image tags for the service."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        kube = Kubectl(c)
        show_status(kube, config.target())
        live = images.deployed_tag(kube, config)
        built = images.read_marker(config.project_dir / images.BUILT_MARKER)
        output.step(f"Image repository: {config.image_repository}")
        output.step(f"Currently deployed: {live or 'unknown'}")
        if built and built != live:
            output.step(f"Last built: {built}")


@task(help=COMMON_HELP)
def sync_secrets(c, env_file=None, verbose=False):
    """Regenerate and apply the SecretProviderClass from .env."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        manifests.sync_secrets(Kubectl(c), config)


@task(help=COMMON_HELP)
def sync_config(c, env_file=None, verbose=False):
    """Regenerate and apply the ConfigMap from .env."""
    with _fail_on_error():
        config = _load(env_file, verbose)
        manifests.sync_config(Kubectl(c), config)


ns = Collection(
    deploy,
    build,
    watch,
    restart,
    rollback,
    migrate,
    migrate_status,
    migrate_history,
    migrate_downgrade,
    status,
    sync_secrets,
    sync_config,
)


program = Program(namespace=ns, version=__version__, name="xiops", binary="xiops")
