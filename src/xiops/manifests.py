"""
Manifest rendering and apply.

Project manifests live in `<project>/k8s/` and reference `${VAR}` values from
the .env file. They are rendered into a throwaway directory, applied as a
set, and the deployment is restarted so new images are pulled even when the
manifests themselves did not change.
"""

import shutil
from contextlib import contextmanager
from pathlib import Path
from string import Template
from typing import Generator, Protocol

import yaml
from rich.console import Console

from . import output
from .config import DeploymentTarget, ProjectConfig
from .errors import ConfigError, KubectlError, ManifestError

KUSTOMIZATION = "kustomization.yaml"
MIGRATION_JOB = "migration-job.yaml"
MANIFEST_SUFFIXES = (".yaml", ".yml")


class ManifestTarget(Protocol):
    def apply_kustomization(self, directory: Path) -> str: ...

    def apply_files(self, path: Path) -> str: ...

    def apply_manifest(self, manifest: str) -> str: ...

    def rollout_restart(self, deployment: str, namespace: str) -> None: ...


class _Blank(dict):
    """Unset variables render empty, the way envsubst does."""

    def __missing__(self, key: str) -> str:
        return ""


def substitute(text: str, variables: dict[str, str]) -> str:
    return Template(text).safe_substitute(_Blank(variables))


@contextmanager
def tmpdir(path: Path) -> Generator[Path, None, None]:
    """Clean directory for rendered manifests, removed when the block exits.

    Example:
        with manifests.tmpdir(config.project_dir / ".xiops-processed") as out:
            render(config.k8s_dir, out, variables)
            apply(kube, out, target)
    """
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def render(source_dir: Path, output_dir: Path, variables: dict[str, str]) -> list[Path]:
    """Substitute variables into every manifest of `source_dir`.

    The migration job template is skipped; it is handled by the migration runner.

    Returns:
        Rendered files, sorted by name

    Raises:
        ManifestError: If `source_dir` is missing or holds no manifests
    """
    if not source_dir.is_dir():
        raise ManifestError(f"k8s directory not found: {source_dir}")

    sources = sorted(
        p
        for p in source_dir.iterdir()
        if p.is_file() and p.suffix in MANIFEST_SUFFIXES and p.name != MIGRATION_JOB
    )
    if not sources:
        raise ManifestError(f"No manifests found in {source_dir}")

    output_dir.mkdir(parents=True, exist_ok=True)
    rendered = []
    for src in sources:
        dest = output_dir / src.name
        dest.write_text(substitute(src.read_text(), variables))
        rendered.append(dest)
    return rendered


def apply(
    kube: ManifestTarget,
    manifests_dir: Path,
    target: DeploymentTarget,
    console: Console | None = None,
) -> None:
    """Apply rendered manifests, then restart the deployment.

    Uses kustomize when the directory has a kustomization.yaml.

    Raises:
        KubectlError: If the apply fails. The restart is best-effort.
    """
    if (manifests_dir / KUSTOMIZATION).exists():
        output.step("Applying manifests with kustomize", console)
        kube.apply_kustomization(manifests_dir)
    else:
        output.step("Applying manifests", console)
        kube.apply_files(manifests_dir)
    output.success("All manifests applied", console)

    restart(kube, target, console)


def restart(kube: ManifestTarget, target: DeploymentTarget, console: Console | None = None) -> None:
    output.step(f"Triggering rollout restart for {target.deployment_name}", console)
    try:
        kube.rollout_restart(target.deployment_name, target.namespace)
    except KubectlError as e:
        output.warning(f"Rollout restart failed: {e}", console)
        return
    output.success("Rollout restart triggered", console)


def namespace_manifest(name: str) -> str:
    return yaml.safe_dump({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}})


def keyvault_name(env_name: str) -> str:
    """Key Vault secret name for an env var: DB_PASSWORD -> db-password."""
    return env_name.replace("_", "-").lower()


def secret_provider_class(config: ProjectConfig) -> str:
    """Render the `<service>-spc` SecretProviderClass from the .env secrets.

    Each secret key is mounted from Key Vault and synced into the
    `<service>-secrets` Kubernetes secret under its env var name.

    Raises:
        ConfigError: If KEY_VAULT_NAME is not set
    """
    config.require(("SERVICE_NAME", "KEY_VAULT_NAME"))
    names = sorted(config.secret_values())
    objects = yaml.safe_dump(
        {
            "array": [
                yaml.safe_dump(
                    {"objectName": keyvault_name(n), "objectType": "secret", "objectAlias": n},
                    sort_keys=False,
                )
                for n in names
            ]
        }
    )
    service = config.service_name
    manifest = {
        "apiVersion": "secrets-store.csi.x-k8s.io/v1",
        "kind": "SecretProviderClass",
        "metadata": {
            "name": f"{service}-spc",
            "namespace": config.namespace,
            "labels": {"app": service},
        },
        "spec": {
            "provider": "azure",
            "parameters": {
                "usePodIdentity": "false",
                "clientID": config.get("WORKLOAD_IDENTITY_CLIENT_ID"),
                "keyvaultName": config.get("KEY_VAULT_NAME"),
                "tenantId": config.get("TENANT_ID"),
                "objects": objects,
            },
            "secretObjects": [
                {
                    "secretName": f"{service}-secrets",
                    "type": "Opaque",
                    "data": [{"objectName": n, "key": n} for n in names],
                }
            ],
        },
    }
    return yaml.safe_dump(manifest, sort_keys=False)


def configmap(config: ProjectConfig) -> str:
    """Render the `<service>-config` ConfigMap from the non-secret .env values."""
    if not config.service_name:
        raise ConfigError("SERVICE_NAME is required to render the configmap")
    service = config.service_name
    manifest = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": f"{service}-config",
            "namespace": config.namespace,
            "labels": {"app": service},
        },
        "data": dict(sorted(config.config_values().items())),
    }
    return yaml.safe_dump(manifest, sort_keys=False)


def sync_secrets(kube: ManifestTarget, config: ProjectConfig, console: Console | None = None) -> None:
    """Regenerate and apply the SecretProviderClass."""
    output.step(f"Syncing {config.service_name}-spc from {config.env_file.name}", console)
    kube.apply_manifest(secret_provider_class(config))
    output.success(f"Applied {config.service_name}-spc ({len(config.secret_values())} secrets)", console)


def sync_config(kube: ManifestTarget, config: ProjectConfig, console: Console | None = None) -> None:
    """Regenerate and apply the ConfigMap."""
    output.step(f"Syncing {config.service_name}-config from {config.env_file.name}", console)
    kube.apply_manifest(configmap(config))
    output.success(f"Applied {config.service_name}-config ({len(config.config_values())} keys)", console)
