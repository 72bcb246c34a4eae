import io
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console

from xiops import config as xconfig
from xiops.config import DeploymentTarget, ProjectConfig
from xiops.errors import KubectlError
from xiops.supervisor import RolloutSupervisor, SupervisorConfig

HEALTHY_EVENTS = """Events:
  Type    Reason     Age   From               Message
  ----    ------     ----  ----               -------
  Normal  Scheduled  30s   default-scheduler  Successfully assigned shop/api-1 to aks-node-1
  Normal  Pulled     28s   kubelet            Container image "acme.azurecr.io/api:v02" already present on machine
  Normal  Created    28s   kubelet            Created container api
  Normal  Started    27s   kubelet            Started container api"""

NO_EVENTS = "Events:  <none>"


def describe_output(events: str = HEALTHY_EVENTS, name: str = "api-1") -> str:
    return f"""Name:             {name}
Namespace:        shop
Priority:         0
Node:             aks-node-1/10.224.0.4
Labels:           app=api
Status:           Running
{events}
"""


def kubectl_error(stderr: str = "Unable to connect to the server: dial tcp: i/o timeout") -> KubectlError:
    return KubectlError("kubectl get pods -n shop -l app=api", 1, stderr)


def pod(
    name: str,
    ready: bool = True,
    containers: int = 1,
    phase: str = "Running",
    restarts: int = 0,
    created: str = "2024-05-01T10:00:00Z",
    node: str = "aks-nodepool1-12345678-vmss000000",
    waiting: str | None = None,
    deleting: bool = False,
    image: str = "acme.azurecr.io/api:v02",
) -> dict[str, Any]:
    statuses = []
    for i in range(containers):
        state: dict[str, Any] = {"running": {"startedAt": created}}
        if waiting:
            state = {"waiting": {"reason": waiting}}
        statuses.append(
            {"name": f"c{i}", "ready": ready, "restartCount": restarts, "state": state}
        )
    metadata: dict[str, Any] = {"name": name, "creationTimestamp": created, "labels": {"app": "api"}}
    if deleting:
        metadata["deletionTimestamp"] = created
    return {
        "metadata": metadata,
        "spec": {
            "nodeName": node,
            "containers": [{"name": f"c{i}", "image": image} for i in range(containers)],
        },
        "status": {"phase": phase, "containerStatuses": statuses},
    }


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster:
    """Scripted cluster: each get_pods call returns the next tick, the last one repeats.

    A tick may be an exception instance, which is raised instead.
    """

    def __init__(
        self,
        ticks: list[Any] | None = None,
        events: dict[str, Any] | None = None,
        calls: list[tuple] | None = None,
    ) -> None:
        self.ticks = ticks if ticks is not None else [[]]
        self.events = events or {}
        self.calls = calls if calls is not None else []
        self.pod_reads = 0
        self.restart_error: Exception | None = None
        self.apply_error: Exception | None = None
        self.services: list[dict[str, Any]] = []
        self.exec_output = ""

    def _count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    @property
    def describe_calls(self) -> int:
        return self._count("describe_pod")

    @property
    def restart_calls(self) -> int:
        return self._count("rollout_restart")

    def get_pods(self, namespace: str, selector: str) -> list[dict[str, Any]]:
        self.calls.append(("get_pods", namespace, selector))
        tick = self.ticks[min(self.pod_reads, len(self.ticks) - 1)]
        self.pod_reads += 1
        if isinstance(tick, Exception):
            raise tick
        return tick

    def describe_pod(self, name: str, namespace: str) -> str:
        self.calls.append(("describe_pod", name, namespace))
        value = self.events.get(name, HEALTHY_EVENTS)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return describe_output(value, name)

    def get_services(self, namespace: str, selector: str) -> list[dict[str, Any]]:
        self.calls.append(("get_services", namespace, selector))
        return self.services

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self.calls.append(("rollout_restart", deployment, namespace))
        if self.restart_error:
            raise self.restart_error

    def rollout_undo(self, deployment: str, namespace: str) -> None:
        self.calls.append(("rollout_undo", deployment, namespace))

    def exec_in_pod(self, pod: str, namespace: str, command: list[str]) -> str:
        self.calls.append(("exec_in_pod", pod, namespace, tuple(command)))
        return self.exec_output

    def _apply(self, kind: str, arg: Any) -> str:
        self.calls.append((kind, arg))
        if self.apply_error:
            raise self.apply_error
        return "applied"

    def apply_kustomization(self, directory: Path) -> str:
        return self._apply("apply_kustomization", directory)

    def apply_files(self, path: Path) -> str:
        return self._apply("apply_files", path)

    def apply_manifest(self, manifest: str) -> str:
        return self._apply("apply_manifest", manifest)


@pytest.fixture
def console() -> Console:
    return Console(file=io.StringIO(), width=140, color_system=None)


def console_text(console: Console) -> str:
    return console.file.getvalue()  # type: ignore[attr-defined]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def target() -> DeploymentTarget:
    return DeploymentTarget(service_name="api", namespace="shop", deployment_name="api")


PROJECT_VALUES = {
    "SERVICE_NAME": "api",
    "NAMESPACE": "shop",
    "ACR_NAME": "acme",
    "AKS_CLUSTER_NAME": "aks-prod",
    "RESOURCE_GROUP": "rg-prod",
    "KEY_VAULT_NAME": "kv-shop",
    "TENANT_ID": "tenant-123",
    "WORKLOAD_IDENTITY_CLIENT_ID": "client-456",
    "DB_PASSWORD": "hunter2",
    "STRIPE_API_KEY": "sk_live_x",
    "LOG_LEVEL": "info",
    "FEATURE_FLAGS": "checkout,search",
}


def write_env(directory: Path, values: dict[str, str]) -> Path:
    env = directory / ".env"
    env.write_text("".join(f"{k}={v}\n" for k, v in values.items()))
    return env


@pytest.fixture
def project_config(tmp_path: Path) -> ProjectConfig:
    return xconfig.load(write_env(tmp_path, PROJECT_VALUES))


@pytest.fixture
def make_supervisor(clock: FakeClock, console: Console):
    def make(
        cluster: FakeCluster,
        timeout: float = 300.0,
        interval: float = 5.0,
        settle: float = 3.0,
    ) -> RolloutSupervisor:
        return RolloutSupervisor(
            cluster,
            config=SupervisorConfig(timeout=timeout, poll_interval=interval, settle_delay=settle),
            console=console,
            clock=clock,
            sleep=clock.sleep,
        )

    return make
