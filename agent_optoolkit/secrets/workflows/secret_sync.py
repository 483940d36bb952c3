"""Workflow for one secret sync run: prerequisites, auth, processing, reconciliation."""
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..domains.config_loader import check_uniqueness, load_config
from ..domains.errors import file_operation_error
from ..domains.filesystem import RunLock, discard, ensure_dir
from ..domains.models import (
    CredentialSource,
    DesktopAgentAccount,
    ProcessResult,
    ReconciliationResult,
    ServiceAccountToken,
)
from ..domains.op_client import OnePasswordClient
from ..domains.retry import RetryPolicy
from ..domains.service_control import ServiceController, SystemctlController
from ..domains.token_validator import validate_token_file
from .secret_processor import DEFAULT_MAX_WORKERS, RunContext, SecretProcessor
from .service_reconciler import ServiceReconciler, build_plan

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = "/etc/optoolkit-token"
TOKEN_FILE_ENV = "OPTOOLKIT_TOKEN_FILE"
WRITE_PROBE_NAME = ".optoolkit-test"


def resolve_token_file(explicit: Optional[str] = None) -> Path:
    """
    Token file path.

    Priority order:
    1. Explicit path (--token-file)
    2. OPTOOLKIT_TOKEN_FILE environment variable
    3. /etc/optoolkit-token
    """
    if explicit:
        return Path(explicit)
    env_path = os.getenv(TOKEN_FILE_ENV)
    if env_path:
        logger.debug(f"Using {TOKEN_FILE_ENV} from environment: {env_path}")
        return Path(env_path)
    return Path(DEFAULT_TOKEN_PATH)


@dataclass
class RunOptions:
    config_path: Path
    output_dir: Path
    token_file: Path = field(default_factory=resolve_token_file)
    desktop_account: Optional[str] = None
    max_workers: int = DEFAULT_MAX_WORKERS
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def credential_source(self) -> CredentialSource:
        """Desktop integration, when given, replaces the token file."""
        if self.desktop_account:
            return DesktopAgentAccount(self.desktop_account)
        return ServiceAccountToken(Path(self.token_file))


@dataclass
class RunReport:
    process_result: ProcessResult
    reconciliation: Optional[ReconciliationResult] = None
    warnings: List[str] = field(default_factory=list)


def check_output_directory(output_dir: Path) -> None:
    """
    Create the output directory if needed and probe that it is writable.

    Runs before the run lock is taken, so the probe file is named per process.

    Raises:
        FileSystemError: If the directory cannot be created or written
    """
    ensure_dir(output_dir)
    probe = Path(output_dir) / f"{WRITE_PROBE_NAME}.{os.getpid()}"
    try:
        with open(probe, "wb") as f:
            f.write(b"test")
    except OSError as e:
        raise file_operation_error(
            "Testing output directory permissions", output_dir, "Output directory is not writable", e
        )
    discard(probe)


def validate_prerequisites(options: RunOptions) -> List[str]:
    """
    Pre-flight checks.

    Returns:
        Token hygiene warnings; these never block the run

    Raises:
        FileSystemError: Missing config file or unusable output directory
    """
    if not Path(options.config_path).exists():
        raise file_operation_error(
            "Checking configuration file", options.config_path, "Configuration file does not exist",
            FileNotFoundError(str(options.config_path)),
        )

    check_output_directory(options.output_dir)

    warnings: List[str] = []
    if isinstance(options.credential_source, ServiceAccountToken):
        warnings = validate_token_file(options.token_file)
        for w in warnings:
            logger.warning(f"Warning: {w}")
        if warnings:
            logger.warning("Continuing with existing secrets if available")
    return warnings


def run_secret_sync(
    options: RunOptions,
    client: Optional[OnePasswordClient] = None,
    controller: Optional[ServiceController] = None,
) -> RunReport:
    """
    Run one full sync.

    Args:
        options: Paths, credential choice and tuning
        client: Secret store client (defaults to the 1Password CLI)
        controller: Service controller (defaults to systemctl, only built when needed)

    Returns:
        RunReport with the process result, reconciliation outcome and warnings

    Raises:
        OpToolkitError subclass on any fatal error; ReconciliationError when
        secrets were written but at least one service action failed
    """
    warnings = validate_prerequisites(options)

    config = load_config(options.config_path)
    check_uniqueness(config.secrets, options.output_dir)
    logger.info(f"Loaded configuration with {len(config.secrets)} secrets")

    client = client or OnePasswordClient()
    session = client.authenticate(options.credential_source)
    logger.info("Initialized 1Password client successfully")

    context = RunContext(
        output_dir=Path(options.output_dir),
        client=client,
        session=session,
        retry_policy=options.retry_policy,
        max_workers=options.max_workers,
    )

    with RunLock(context.output_dir):
        result = SecretProcessor(context).process(config)
        logger.info(f"Successfully processed {result.processed_count} secrets to {options.output_dir}")

        report = RunReport(process_result=result, warnings=warnings)
        systemd = config.systemd_integration
        if not systemd.enabled:
            return report

        logger.info(f"Processing systemd integration for {len(systemd.service_bindings)} bindings")
        if not systemd.restart_on_change:
            plan = build_plan(result, systemd.service_bindings)
            for planned in plan:
                logger.info(f"restartOnChange disabled, skipping {planned.action.value} of {planned.service_name}")
            report.reconciliation = ReconciliationResult()
            return report

        reconciler = ServiceReconciler(controller or SystemctlController.detect(), timeout=systemd.timeout)
        report.reconciliation = reconciler.reconcile(result, systemd.service_bindings)
        logger.info("Successfully processed systemd integration")
        return report
