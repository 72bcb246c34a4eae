"""
Kubernetes access using kubectl.
"""

import io
import json
import logging
import shlex
from pathlib import Path
from typing import Any

from invoke import Context

from .errors import KubectlError

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = "15s"


class Kubectl:
    """Thin wrapper over the kubectl binary.

    Every method raises KubectlError when kubectl exits non-zero, so callers
    decide whether a failure is transient or fatal.

    Example:
        kube = Kubectl(Context())
        pods = kube.get_pods("shop", "app=api")
        kube.rollout_restart("api", "shop")
    """

    def __init__(self, c: Context, binary: str = "kubectl"):
        self.c = c
        self.binary = binary

    def _run(self, args: list[str], stdin: str | None = None) -> str:
        cmd = shlex.join([self.binary, *args])
        log.debug("running %s", cmd)
        kwargs: dict[str, Any] = {"hide": True, "warn": True}
        if stdin is not None:
            kwargs["in_stream"] = io.StringIO(stdin)
        result = self.c.run(cmd, **kwargs)
        if result is None:
            raise KubectlError(cmd, -1, "command did not run")
        log.debug("%s exited %s", cmd, result.return_code)
        if not result.ok:
            raise KubectlError(cmd, result.return_code, result.stderr or result.stdout)
        return result.stdout

    def _get_json(self, args: list[str]) -> dict[str, Any]:
        out = self._run([*args, "-o", "json", f"--request-timeout={REQUEST_TIMEOUT}"])
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise KubectlError(shlex.join(args), 0, f"unparseable JSON: {e}") from e

    # Queries

    def get_pods(self, namespace: str, selector: str) -> list[dict[str, Any]]:
        data = self._get_json(["get", "pods", "-n", namespace, "-l", selector])
        return list(data.get("items", []))

    def describe_pod(self, name: str, namespace: str) -> str:
        return self._run(
            ["describe", "pod", name, "-n", namespace, f"--request-timeout={REQUEST_TIMEOUT}"]
        )

    def get_job(self, name: str, namespace: str) -> dict[str, Any]:
        return self._get_json(["get", "job", name, "-n", namespace])

    def get_services(self, namespace: str, selector: str) -> list[dict[str, Any]]:
        data = self._get_json(["get", "services", "-n", namespace, "-l", selector])
        return list(data.get("items", []))

    def logs(self, resource: str, namespace: str, tail: int | None = None) -> str:
        args = ["logs", resource, "-n", namespace]
        if tail is not None:
            args.append(f"--tail={tail}")
        return self._run(args)

    # Mutations

    def apply_kustomization(self, directory: Path) -> str:
        return self._run(["apply", "-k", str(directory)])

    def apply_files(self, path: Path) -> str:
        return self._run(["apply", "-f", str(path)])

    def apply_manifest(self, manifest: str) -> str:
        """Apply a manifest passed on stdin."""
        return self._run(["apply", "-f", "-"], stdin=manifest)

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self._run(["rollout", "restart", f"deployment/{deployment}", "-n", namespace])

    def rollout_undo(self, deployment: str, namespace: str) -> None:
        self._run(["rollout", "undo", f"deployment/{deployment}", "-n", namespace])

    def exec_in_pod(self, pod: str, namespace: str, command: list[str]) -> str:
        return self._run(["exec", "-n", namespace, pod, "--", *command])

    def delete_jobs(self, selector: str, namespace: str) -> None:
        self._run(["delete", "jobs", "-l", selector, "-n", namespace, "--ignore-not-found=true"])
