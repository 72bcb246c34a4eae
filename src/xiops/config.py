"""Project configuration discovery and resolution."""

from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .errors import ConfigError

ENV_FILENAME = ".env"

REQUIRED_BUILD = ("ACR_NAME", "SERVICE_NAME")
REQUIRED_DEPLOY = ("ACR_NAME", "AKS_CLUSTER_NAME", "RESOURCE_GROUP", "NAMESPACE", "SERVICE_NAME")

# Keys consumed by xiops itself; everything else in .env belongs to the application.
KNOWN_KEYS = frozenset(
    {
        "SERVICE_NAME",
        "NAMESPACE",
        "DEPLOYMENT_NAME",
        "ACR_NAME",
        "AKS_CLUSTER_NAME",
        "RESOURCE_GROUP",
        "IMAGE_TAG",
        "IMAGE_NAME",
        "KEY_VAULT_NAME",
        "TENANT_ID",
        "SUBSCRIPTION_ID",
        "WORKLOAD_IDENTITY_CLIENT_ID",
        "SERVICE_ACCOUNT_NAME",
        "XIOPS_ROLLOUT_TIMEOUT",
        "XIOPS_POLL_INTERVAL",
        "XIOPS_ADVISOR_CMD",
        "XIOPS_MIGRATION_COMMAND",
    }
)

SECRET_MARKERS = ("SECRET", "PASSWORD", "TOKEN", "KEY", "CONNECTION_STRING")


@dataclass(frozen=True)
class DeploymentTarget:
    """What a supervisor run is watching."""

    service_name: str
    namespace: str
    deployment_name: str

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ConfigError("Deployment target needs a namespace")
        if not self.deployment_name:
            raise ConfigError("Deployment target needs a deployment name")

    @property
    def label_selector(self) -> str:
        return f"app={self.deployment_name}"


@dataclass(frozen=True)
class ProjectConfig:
    """Values loaded from a project's .env file."""

    project_dir: Path
    values: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key) or default

    @property
    def env_file(self) -> Path:
        return self.project_dir / ENV_FILENAME

    @property
    def service_name(self) -> str:
        return self.get("SERVICE_NAME")

    @property
    def namespace(self) -> str:
        return self.get("NAMESPACE", "default")

    @property
    def deployment_name(self) -> str:
        return self.get("DEPLOYMENT_NAME", self.service_name)

    @property
    def acr_name(self) -> str:
        return self.get("ACR_NAME")

    @property
    def image_name(self) -> str:
        return self.get("IMAGE_NAME", self.service_name)

    @property
    def image_repository(self) -> str:
        return f"{self.acr_name}.azurecr.io/{self.image_name}"

    def image(self, tag: str) -> str:
        return f"{self.image_repository}:{tag}"

    @property
    def k8s_dir(self) -> Path:
        return self.project_dir / "k8s"

    @property
    def rollout_timeout(self) -> float:
        return self._seconds("XIOPS_ROLLOUT_TIMEOUT", 300.0)

    @property
    def poll_interval(self) -> float:
        return self._seconds("XIOPS_POLL_INTERVAL", 5.0)

    @property
    def advisor_command(self) -> str | None:
        return self.get("XIOPS_ADVISOR_CMD") or None

    def _seconds(self, key: str, default: float) -> float:
        raw = self.get(key)
        if not raw:
            return default
        try:
            value = float(raw.rstrip("s"))
        except ValueError:
            raise ConfigError(f"{key} must be a number of seconds, got '{raw}'") from None
        if value <= 0:
            raise ConfigError(f"{key} must be positive, got '{raw}'")
        return value

    def require(self, keys: tuple[str, ...]) -> None:
        """Raise ConfigError listing every key in `keys` that is unset."""
        missing = [k for k in keys if not self.get(k)]
        if missing:
            listed = "\n".join(f"  - {k}" for k in missing)
            raise ConfigError(f"Missing required variables in {self.env_file}:\n{listed}")

    def target(self) -> DeploymentTarget:
        return DeploymentTarget(
            service_name=self.service_name,
            namespace=self.namespace,
            deployment_name=self.deployment_name,
        )

    def app_values(self) -> dict[str, str]:
        """Application keys, i.e. everything xiops itself does not consume."""
        return {k: v for k, v in self.values.items() if k not in KNOWN_KEYS and v}

    def secret_values(self) -> dict[str, str]:
        return {k: v for k, v in self.app_values().items() if is_secret_key(k)}

    def config_values(self) -> dict[str, str]:
        return {k: v for k, v in self.app_values().items() if not is_secret_key(k)}

    def substitutions(self, tag: str) -> dict[str, str]:
        """Variables available to ${VAR} references in k8s manifests."""
        return {
            **self.values,
            "NAMESPACE": self.namespace,
            "SERVICE_NAME": self.service_name,
            "IMAGE_NAME": self.image_name,
            "IMAGE_TAG": tag,
            "AZURE_TENANT_ID": self.get("TENANT_ID"),
        }


def is_secret_key(name: str) -> bool:
    upper = name.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def find_project_root(start: Path) -> Path | None:
    """Walk up from `start` to the first directory containing a .env file."""
    start = start.resolve()
    for directory in (start, *start.parents):
        if (directory / ENV_FILENAME).is_file():
            return directory
    return None


def load(env_file: Path | None = None, cwd: Path | None = None) -> ProjectConfig:
    """Load the project configuration.

    Args:
        env_file: Explicit .env path. When omitted, the nearest .env above `cwd` is used.
        cwd: Directory to search from (default: current directory)

    Raises:
        ConfigError: If no .env file can be found
    """
    if env_file is None:
        root = find_project_root(cwd or Path.cwd())
        if root is None:
            raise ConfigError("No .env file found in current directory or parent directories")
        env_file = root / ENV_FILENAME
    elif not env_file.is_file():
        raise ConfigError(f".env file not found: {env_file}")

    raw = dotenv_values(env_file)
    values = {k: v for k, v in raw.items() if v is not None}
    return ProjectConfig(project_dir=env_file.resolve().parent, values=values)
