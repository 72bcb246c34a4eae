"""
Database migrations as a one-shot Kubernetes Job.

The job runs the new image with the service's config and secrets, and the
runner polls it the same way the rollout supervisor polls pods. Successful
migration jobs are deleted; failed ones are kept for postmortem.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

import yaml
from rich.console import Console

from . import output
from .config import DeploymentTarget, ProjectConfig
from .errors import KubectlError, MigrationError
from .pods import PodPhase, PodSource, take_snapshot

MIGRATION_LABEL = "type=migration"
# Job pods carry no app label so the deployment selector never matches them.
POD_LABELS = {"type": "migration"}
DEFAULT_COMMAND = ("alembic", "upgrade", "head")


class JobStatus(Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class JobCluster(Protocol):
    def apply_manifest(self, manifest: str) -> str: ...

    def get_job(self, name: str, namespace: str) -> dict[str, Any]: ...

    def get_pods(self, namespace: str, selector: str) -> list[dict[str, Any]]: ...

    def logs(self, resource: str, namespace: str, tail: int | None = None) -> str: ...

    def delete_jobs(self, selector: str, namespace: str) -> None: ...


@dataclass(frozen=True)
class MigrationJob:
    """A run-to-completion migration job."""

    name: str
    namespace: str
    service_name: str
    image: str
    service_account: str
    command: tuple[str, ...] = DEFAULT_COMMAND
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_release(cls, config: ProjectConfig, tag: str, now: float | None = None) -> "MigrationJob":
        service = config.service_name
        stamp = int(now if now is not None else time.time())
        command = config.get("XIOPS_MIGRATION_COMMAND")
        return cls(
            name=f"migration-{service}-{stamp}",
            namespace=config.namespace,
            service_name=service,
            image=config.image(tag),
            service_account=config.get("SERVICE_ACCOUNT_NAME", f"{service}-sa"),
            command=tuple(command.split()) if command else DEFAULT_COMMAND,
            labels={"app": service, "type": "migration"},
        )

    def manifest(self) -> str:
        service = self.service_name
        job = {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": self.name, "namespace": self.namespace, "labels": self.labels},
            "spec": {
                "ttlSecondsAfterFinished": 300,
                "backoffLimit": 0,
                "template": {
                    "metadata": {"labels": dict(POD_LABELS)},
                    "spec": {
                        "restartPolicy": "Never",
                        "serviceAccountName": self.service_account,
                        "containers": [
                            {
                                "name": "migrate",
                                "image": self.image,
                                "imagePullPolicy": "Always",
                                "command": list(self.command),
                                "envFrom": [
                                    {"configMapRef": {"name": f"{service}-config", "optional": True}},
                                    {"secretRef": {"name": f"{service}-secrets", "optional": False}},
                                ],
                                "volumeMounts": [
                                    {
                                        "name": "secrets-store",
                                        "mountPath": "/mnt/secrets-store",
                                        "readOnly": True,
                                    }
                                ],
                            }
                        ],
                        "volumes": [
                            {
                                "name": "secrets-store",
                                "csi": {
                                    "driver": "secrets-store.csi.k8s.io",
                                    "readOnly": True,
                                    "volumeAttributes": {"secretProviderClass": f"{service}-spc"},
                                },
                            }
                        ],
                    },
                },
            },
        }
        return yaml.safe_dump(job, sort_keys=False)


def job_signal(job: dict[str, Any], pod_phase: str | None) -> JobStatus | None:
    """First terminal signal, checked in priority order.

    Complete condition, then Failed condition, then the succeeded counter,
    then the phase of the job's pod.
    """
    conditions = job.get("status", {}).get("conditions") or []
    active = {c.get("type") for c in conditions if c.get("status", "True") == "True"}
    if active & {"Complete", "SuccessCriteriaMet"}:
        return JobStatus.SUCCEEDED
    if "Failed" in active:
        return JobStatus.FAILED
    if int(job.get("status", {}).get("succeeded") or 0) >= 1:
        return JobStatus.SUCCEEDED
    if pod_phase == "Succeeded":
        return JobStatus.SUCCEEDED
    if pod_phase == "Failed":
        return JobStatus.FAILED
    return None


class MigrationRunner:
    def __init__(
        self,
        kube: JobCluster,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kube = kube
        self.console = console or output.console
        self.clock = clock
        self.sleep = sleep

    def run_and_wait(
        self, job: MigrationJob, timeout: float = 300.0, poll_interval: float = 2.0
    ) -> JobStatus:
        """Submit `job` and wait for it to finish.

        Logs are printed whatever the result. On success all migration jobs in
        the namespace are deleted; on failure or timeout they are left alone.

        Raises:
            KubectlError: If the job cannot be created
        """
        output.section("Running database migrations", self.console)
        output.step("Creating migration job", self.console)
        self.kube.apply_manifest(job.manifest())
        output.success(f"Migration job created: {job.name}", self.console)

        status = self.wait(job, timeout, poll_interval)
        self._show_logs(job)

        if status is JobStatus.SUCCEEDED:
            output.success("Migrations completed successfully", self.console)
            self._cleanup(job)
        else:
            reason = "timed out" if status is JobStatus.TIMED_OUT else "failed"
            output.error(f"Migration {reason}", self.console)
            output.warning(
                "Migration jobs kept for debugging. Delete with: "
                f"kubectl delete jobs -l {MIGRATION_LABEL} -n {job.namespace}",
                self.console,
            )
        return status

    def wait(self, job: MigrationJob, timeout: float, poll_interval: float) -> JobStatus:
        output.step(f"Waiting for migration to complete (timeout: {int(timeout)}s)", self.console)
        start = self.clock()
        while True:
            status = self._poll(job)
            if status is not None:
                return status
            if self.clock() - start >= timeout:
                return JobStatus.TIMED_OUT
            self.sleep(poll_interval)

    def _poll(self, job: MigrationJob) -> JobStatus | None:
        try:
            state = self.kube.get_job(job.name, job.namespace)
        except KubectlError:
            state = {}
        try:
            pods = self.kube.get_pods(job.namespace, f"job-name={job.name}")
        except KubectlError:
            pods = []
        phase = pods[0].get("status", {}).get("phase") if pods else None
        return job_signal(state, phase)

    def _show_logs(self, job: MigrationJob) -> None:
        output.step("Migration logs:", self.console)
        try:
            logs = self.kube.logs(f"job/{job.name}", job.namespace)
        except KubectlError as e:
            output.warning(f"Could not fetch logs: {e}", self.console)
            return
        self.console.print(logs, markup=False, highlight=False)

    def _cleanup(self, job: MigrationJob) -> None:
        output.step("Cleaning up migration jobs", self.console)
        try:
            self.kube.delete_jobs(MIGRATION_LABEL, job.namespace)
        except KubectlError as e:
            output.warning(f"Cleanup failed: {e}", self.console)
            return
        output.success("Migration jobs deleted", self.console)


class ExecCluster(PodSource, Protocol):
    def exec_in_pod(self, pod: str, namespace: str, command: list[str]) -> str: ...


def app_pod(kube: PodSource, target: DeploymentTarget) -> str:
    """Name of the first running, ready pod of `target`.

    Raises:
        MigrationError: If there is no such pod
    """
    snapshot = take_snapshot(kube, target)
    if not snapshot.available:
        raise MigrationError(f"Could not query pods in {target.namespace}")
    for pod in snapshot.observations:
        if pod.phase is PodPhase.RUNNING and pod.ready:
            return pod.name
    raise MigrationError(
        f"No running pods found for {target.label_selector} in {target.namespace}. "
        "Deploy the application first."
    )


def alembic(kube: ExecCluster, target: DeploymentTarget, *args: str) -> str:
    """Run `alembic <args>` inside a running application pod and return its output.

    Example:
        alembic(kube, config.target(), "current")
        alembic(kube, config.target(), "downgrade", "-1")

    Raises:
        MigrationError: If no application pod is running
        KubectlError: If the exec fails
    """
    pod = app_pod(kube, target)
    return kube.exec_in_pod(pod, target.namespace, ["alembic", *args])
