"""
Pod observations and rollout snapshots.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from .config import DeploymentTarget
from .errors import KubectlError

log = logging.getLogger(__name__)


class PodPhase(Enum):
    PENDING = "Pending"
    CONTAINER_CREATING = "ContainerCreating"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> "PodPhase":
        for phase in cls:
            if phase.value == value:
                return phase
        return cls.UNKNOWN


class PodSource(Protocol):
    def get_pods(self, namespace: str, selector: str) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class PodObservation:
    """One pod at one poll tick."""

    name: str
    ready_containers: int
    total_containers: int
    phase: PodPhase
    restart_count: int
    age_seconds: float
    node_name: str
    created_at: datetime
    reason: str | None = None

    @property
    def ready(self) -> bool:
        return self.total_containers > 0 and self.ready_containers == self.total_containers


@dataclass(frozen=True)
class RolloutSnapshot:
    """All pods of a deployment at one tick.

    `available` is False when the pod query failed; such a snapshot is empty
    and never converged.
    """

    observations: tuple[PodObservation, ...]
    available: bool = True

    @property
    def total_count(self) -> int:
        return len(self.observations)

    @property
    def ready_count(self) -> int:
        return sum(1 for o in self.observations if o.ready)

    @property
    def converged(self) -> bool:
        return self.total_count > 0 and self.ready_count == self.total_count

    @classmethod
    def unavailable(cls) -> "RolloutSnapshot":
        return cls(observations=(), available=False)


def parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _container_reason(statuses: list[dict[str, Any]]) -> str | None:
    for status in statuses:
        state = status.get("state") or {}
        for key in ("waiting", "terminated"):
            reason = (state.get(key) or {}).get("reason")
            if reason:
                return reason
    return None


def observe(item: dict[str, Any], now: datetime) -> PodObservation:
    """Normalize one `kubectl get pods -o json` item."""
    metadata = item.get("metadata", {})
    spec = item.get("spec", {})
    status = item.get("status", {})
    statuses = status.get("containerStatuses") or []

    created_at = parse_timestamp(metadata.get("creationTimestamp"))
    reason = _container_reason(statuses)
    phase = PodPhase.parse(status.get("phase"))
    if phase is PodPhase.PENDING and reason == "ContainerCreating":
        phase = PodPhase.CONTAINER_CREATING

    return PodObservation(
        name=metadata.get("name", ""),
        ready_containers=sum(1 for s in statuses if s.get("ready")),
        total_containers=len(spec.get("containers") or statuses),
        phase=phase,
        restart_count=sum(int(s.get("restartCount", 0)) for s in statuses),
        age_seconds=max(0.0, (now - created_at).total_seconds()),
        node_name=spec.get("nodeName") or "",
        created_at=created_at,
        reason=reason,
    )


def take_snapshot(
    source: PodSource, target: DeploymentTarget, now: datetime | None = None
) -> RolloutSnapshot:
    """Query pods for `target` and build a snapshot.

    Terminating pods are left out. A failed query yields an unavailable
    snapshot instead of raising.
    """
    now = now or datetime.now(timezone.utc)
    try:
        items = source.get_pods(target.namespace, target.label_selector)
    except KubectlError as e:
        log.debug("pod query failed: %s", e)
        return RolloutSnapshot.unavailable()

    observations = sorted(
        (observe(item, now) for item in items if not item.get("metadata", {}).get("deletionTimestamp")),
        key=lambda o: o.name,
    )
    return RolloutSnapshot(observations=tuple(observations))


def newest(observations: tuple[PodObservation, ...] | list[PodObservation]) -> PodObservation | None:
    """Most recently created pod; ties go to the lexicographically first name."""
    if not observations:
        return None
    by_name = sorted(observations, key=lambda o: o.name)
    return max(by_name, key=lambda o: o.created_at)
