"""Service manager boundary used by the reconciler."""
import shutil
import logging
import subprocess
from typing import Optional

from .errors import ServiceControlError
from .models import ActionKind

logger = logging.getLogger(__name__)


class ServiceController:
    """Performs one action on one service, raising ServiceControlError on failure."""

    def perform_action(self, service_name: str, action: ActionKind, timeout: float) -> None:
        raise NotImplementedError


class SystemctlController(ServiceController):
    """Drives systemd units through ``systemctl``."""

    def __init__(self, systemctl: str = "systemctl"):
        self.systemctl = systemctl

    @classmethod
    def detect(cls, systemctl: str = "systemctl") -> "SystemctlController":
        """
        Build a controller after checking systemctl is available.

        Raises:
            ServiceControlError: If systemctl is not in PATH
        """
        resolved: Optional[str] = shutil.which(systemctl)
        if resolved is None:
            raise ServiceControlError(
                f"'{systemctl}' not found in PATH",
                stage="Initializing systemd integration",
                resource="systemd integration",
                suggestions=[
                    "Ensure systemctl is available in PATH",
                    "Check if running on a systemd-enabled system",
                    "Consider disabling systemd integration if not needed",
                ],
            )
        return cls(resolved)

    def perform_action(self, service_name: str, action: ActionKind, timeout: float) -> None:
        cmd = [self.systemctl, action.value, service_name]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise ServiceControlError(
                f"systemctl {action.value} timed out after {timeout}s",
                service_name=service_name, stage=f"Running {action.value}", cause=e,
                suggestions=[f"Check systemd service logs: journalctl -u {service_name}"],
            )
        except OSError as e:
            raise ServiceControlError(
                f"systemctl could not be started: {e}",
                service_name=service_name, stage=f"Running {action.value}", cause=e,
                suggestions=["Ensure systemctl is available in PATH"],
            )

        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise ServiceControlError(
                f"systemctl {action.value} failed: {detail}",
                service_name=service_name, stage=f"Running {action.value}",
                suggestions=[
                    "Check if the service exists and is accessible",
                    "Verify systemctl permissions",
                    f"Check systemd service logs: journalctl -u {service_name}",
                ],
            )
