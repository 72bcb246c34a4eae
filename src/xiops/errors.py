"""
Exceptions raised by xiops.
"""


class XiopsError(Exception):
    """Base exception for xiops operations."""

    pass


class ConfigError(XiopsError):
    """Missing or invalid project configuration."""

    pass


class KubectlError(XiopsError):
    """A kubectl command exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(f"'{command}' failed (exit {exit_code}): {detail}")


class ManifestError(XiopsError):
    """Failed to render or locate manifests."""

    pass


class StepError(XiopsError):
    """Raised when an external step fails."""

    def __init__(self, step_name: str, exit_code: int, output: str):
        self.step_name = step_name
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Step '{step_name}' failed with exit code {exit_code}")


class MigrationError(XiopsError):
    """Migration job failed or timed out."""

    pass
