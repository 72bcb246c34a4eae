"""Rich rendering of rollout and deployment status."""

from typing import Any

from rich.console import Group
from rich.table import Table
from rich.text import Text

from .config import DeploymentTarget
from .pods import PodObservation, PodPhase, RolloutSnapshot

NODE_WIDTH = 24

PHASE_ICONS = {
    PodPhase.RUNNING: ("●", "green"),
    PodPhase.SUCCEEDED: ("✓", "green"),
    PodPhase.PENDING: ("○", "yellow"),
    PodPhase.CONTAINER_CREATING: ("◌", "blue"),
    PodPhase.FAILED: ("✗", "red"),
    PodPhase.UNKNOWN: ("?", "dim"),
}


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{seconds:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    return value[: width - 1] + "…"


def pod_line(pod: PodObservation) -> Text:
    """One status line: icon, name, readiness, phase, restarts, node, age."""
    icon, style = PHASE_ICONS[pod.phase]
    if pod.reason and pod.phase is not PodPhase.RUNNING:
        label = pod.reason
    else:
        label = pod.phase.value
    if pod.reason in ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull", "Error"):
        style = "red"

    line = Text("  ")
    line.append(f"{icon} ", style=f"{style} bold")
    line.append(pod.name, style="cyan")
    line.append("  ")
    line.append(
        f"{pod.ready_containers}/{pod.total_containers}",
        style="green" if pod.ready else "yellow",
    )
    line.append(f"  {label}", style=style)
    line.append("  restarts ", style="dim")
    line.append(str(pod.restart_count), style="red bold" if pod.restart_count else "dim")
    if pod.node_name:
        line.append(f"  {truncate(pod.node_name, NODE_WIDTH)}", style="dim")
    line.append(f"  {format_duration(pod.age_seconds)}", style="dim")
    return line


def snapshot_view(
    target: DeploymentTarget,
    snapshot: RolloutSnapshot,
    elapsed: float,
    timeout: float,
    spinner: str = "",
) -> Group:
    header = Text()
    if spinner:
        header.append(f"{spinner} ", style="blue bold")
    header.append(f"{target.deployment_name}", style="bold")
    header.append(f" in {target.namespace}", style="dim")
    header.append(f"  {snapshot.ready_count}/{snapshot.total_count} ready")
    header.append(f"  {format_duration(elapsed)} / {format_duration(timeout)}", style="dim")

    lines: list[Text] = [header]
    if not snapshot.available:
        lines.append(Text("  cluster query failed, retrying", style="yellow"))
    elif not snapshot.observations:
        lines.append(Text("  waiting for pods to be created", style="dim"))
    else:
        lines.extend(pod_line(pod) for pod in snapshot.observations)
    return Group(*lines)


def pods_table(snapshot: RolloutSnapshot) -> Table:
    table = Table(title="Pods", title_justify="left")
    table.add_column("Name", style="cyan")
    table.add_column("Ready")
    table.add_column("Status")
    table.add_column("Restarts", justify="right")
    table.add_column("Node", style="dim")
    table.add_column("Age", justify="right", style="dim")
    for pod in snapshot.observations:
        table.add_row(
            pod.name,
            f"{pod.ready_containers}/{pod.total_containers}",
            pod.reason or pod.phase.value,
            Text(str(pod.restart_count), style="red" if pod.restart_count else ""),
            truncate(pod.node_name, NODE_WIDTH),
            format_duration(pod.age_seconds),
        )
    return table


def services_table(services: list[dict[str, Any]]) -> Table:
    table = Table(title="Services", title_justify="left")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Cluster IP")
    table.add_column("Ports")
    for svc in services:
        spec = svc.get("spec", {})
        ports = ", ".join(
            f"{p.get('port')}/{p.get('protocol', 'TCP')}" for p in spec.get("ports") or []
        )
        table.add_row(
            svc.get("metadata", {}).get("name", ""),
            spec.get("type", ""),
            spec.get("clusterIP", ""),
            ports,
        )
    return table


def head(text: str, lines: int) -> str:
    """First `lines` lines of `text`, noting how many were cut."""
    all_lines = text.splitlines()
    if len(all_lines) <= lines:
        return text
    cut = len(all_lines) - lines
    return "\n".join(all_lines[:lines]) + f"\n... ({cut} more lines)"
