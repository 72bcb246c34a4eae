"""Image build/push and image tag bookkeeping."""

import re
import shlex
from pathlib import Path
from typing import Any, Protocol

from rich.console import Console

from . import output
from .config import ProjectConfig
from .errors import KubectlError
from .steps import doit, run

BUILT_MARKER = "built-image-tag.txt"
DEPLOYED_MARKER = "deployed-image-tag.txt"
PLATFORM = "linux/amd64"


class PodLister(Protocol):
    def get_pods(self, namespace: str, selector: str) -> list[dict[str, Any]]: ...


def version_number(tag: str) -> int | None:
    match = re.match(r"^v(\d+)", tag)
    return int(match.group(1)) if match else None


def suggest_next_tag(current: str | None) -> str:
    """v07 -> v08; anything unrecognized starts over at v01."""
    number = version_number(current) if current else None
    return f"v{(number or 0) + 1:02d}"


def normalize_tag(value: str) -> str:
    value = value.strip()
    return value if value.startswith("v") else f"v{value}"


def read_marker(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text().strip() or None


def write_marker(path: Path, tag: str) -> None:
    path.write_text(f"{tag}\n")


def deployed_image(kube: PodLister, config: ProjectConfig) -> str | None:
    """Image of the first running pod of the service, or None when unknown."""
    try:
        pods = kube.get_pods(config.namespace, f"app={config.deployment_name}")
    except KubectlError:
        return None
    for pod in pods:
        containers = pod.get("spec", {}).get("containers") or []
        if containers and containers[0].get("image"):
            return containers[0]["image"]
    return None


def deployed_tag(kube: PodLister, config: ProjectConfig) -> str | None:
    """Tag live in the cluster, falling back to the deployed-tag marker."""
    image = deployed_image(kube, config)
    if image and ":" in image:
        return image.rsplit(":", 1)[1]
    return read_marker(config.project_dir / DEPLOYED_MARKER)


def build_and_push(
    config: ProjectConfig,
    tag: str,
    dockerfile: str = "Dockerfile",
    console: Console | None = None,
) -> str:
    """Build the image for linux/amd64, push it with a `latest` alias, record the tag.

    Returns:
        The full image reference

    Raises:
        StepError: If login, build or push fails
    """
    image = config.image(tag)
    latest = f"{config.image_repository}:latest"
    q = shlex.quote
    output.section(f"Building {image}", console)
    doit(
        [
            run("Logging in to ACR", f"az acr login --name {q(config.acr_name)}"),
            run(
                "Building image",
                f"docker buildx build --platform {PLATFORM} -t {q(image)} "
                f"-f {q(dockerfile)} --no-cache --load .",
                cwd=config.project_dir,
            ),
            run("Tagging latest", f"docker tag {q(image)} {q(latest)}"),
            run(f"Pushing {tag}", f"docker push {q(image)}"),
            run("Pushing latest", f"docker push {q(latest)}"),
        ],
        console=console,
    )
    write_marker(config.project_dir / BUILT_MARKER, tag)
    output.success(f"Pushed {image}; tag saved to {BUILT_MARKER}", console)
    return image
