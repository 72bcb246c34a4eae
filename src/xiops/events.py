"""
Event classification for the most recently created pod of a deployment.

The keyword classifier is coarse: it flags image pull errors,
secret mount errors, quota errors and probe failures alike without keeping
a list of every Kubernetes event reason. Anything implementing
EventClassifier can replace it in the supervisor.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .config import DeploymentTarget
from .pods import PodSource, RolloutSnapshot, newest, take_snapshot

FAILURE_SIGNALS = (
    "failed",
    "error",
    "backoff",
    "not found",
    "forbidden",
    "denied",
    "exceeded",
    "unhealthy",
)


class Verdict(Enum):
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class EventVerdict:
    """Classification of one pod's events, with the text it was based on."""

    verdict: Verdict
    pod_name: str | None = None
    text: str = ""

    @property
    def is_error(self) -> bool:
        return self.verdict is Verdict.ERROR


class EventSource(PodSource, Protocol):
    def describe_pod(self, name: str, namespace: str) -> str: ...


class EventClassifier(Protocol):
    def classify(
        self, target: DeploymentTarget, snapshot: RolloutSnapshot | None = None
    ) -> EventVerdict: ...


def events_section(describe_output: str) -> str:
    """Return the `Events:` section of `kubectl describe` output."""
    lines = describe_output.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("Events:"):
            return "\n".join(lines[i:]).strip()
    return ""


def matching_signals(text: str) -> list[str]:
    lowered = text.lower()
    return [s for s in FAILURE_SIGNALS if s in lowered]


class KeywordEventClassifier:
    """Flag the newest pod as failing when its events mention a failure keyword."""

    def __init__(self, source: EventSource):
        self.source = source

    def classify(
        self, target: DeploymentTarget, snapshot: RolloutSnapshot | None = None
    ) -> EventVerdict:
        """Classify the newest pod of `target`.

        Uses `snapshot` when given so the decision matches what was displayed,
        otherwise takes a fresh one. No pods means Ok.

        Raises:
            KubectlError: If the describe call fails
        """
        if snapshot is None:
            snapshot = take_snapshot(self.source, target)
        pod = newest(snapshot.observations)
        if pod is None:
            return EventVerdict(Verdict.OK)

        text = events_section(self.source.describe_pod(pod.name, target.namespace))
        verdict = Verdict.ERROR if matching_signals(text) else Verdict.OK
        return EventVerdict(verdict, pod_name=pod.name, text=text)
