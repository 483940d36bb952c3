"""Domain models for secret materialization and service reconciliation."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Union

REFERENCE_SCHEME = "op://"
DEFAULT_FILE_MODE = 0o600
DEFAULT_SERVICE_TIMEOUT = 30.0


@dataclass(frozen=True)
class VaultRef:
    """Address of a single field in the secret store."""
    vault: str
    item: str
    field: str

    @property
    def uri(self) -> str:
        return f"{REFERENCE_SCHEME}{self.vault}/{self.item}/{self.field}"

    @classmethod
    def parse(cls, reference: str) -> "VaultRef":
        """Parse ``op://vault/item/field``.

        Raises:
            ValueError: If the reference is not in that form
        """
        if not reference.startswith(REFERENCE_SCHEME):
            raise ValueError(f"reference must start with {REFERENCE_SCHEME}: {reference!r}")
        parts = reference[len(REFERENCE_SCHEME):].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"reference must be {REFERENCE_SCHEME}vault/item/field: {reference!r}")
        return cls(vault=parts[0], item=parts[1], field=parts[2])

    def __str__(self) -> str:
        return self.uri


class ActionKind(Enum):
    RESTART = "restart"
    RELOAD = "reload"


@dataclass(frozen=True)
class SecretSpec:
    """One secret to materialize."""
    key: str
    vault_ref: VaultRef
    output_file: str
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: int = DEFAULT_FILE_MODE
    services: Tuple[str, ...] = ()

    def resolve_path(self, output_dir: Path) -> Path:
        """Destination path; absolute output files bypass output_dir."""
        path = Path(self.output_file)
        if path.is_absolute():
            return path
        return Path(output_dir) / path


@dataclass(frozen=True)
class ServiceBinding:
    service_name: str
    depends_on_keys: FrozenSet[str]
    action: ActionKind = ActionKind.RESTART


@dataclass(frozen=True)
class SystemdIntegrationConfig:
    enabled: bool = False
    service_bindings: Tuple[ServiceBinding, ...] = ()
    restart_on_change: bool = True
    timeout: float = DEFAULT_SERVICE_TIMEOUT


@dataclass(frozen=True)
class SecretsConfig:
    secrets: Tuple[SecretSpec, ...]
    systemd_integration: SystemdIntegrationConfig = field(default_factory=SystemdIntegrationConfig)


@dataclass(frozen=True)
class FetchedSecret:
    key: str
    content: bytes = field(repr=False)
    content_hash: str


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one processing run, keyed by secret key in sorted order."""
    processed_count: int
    secret_paths: Mapping[str, Path]
    changed: Mapping[str, bool]

    @classmethod
    def build(cls, secret_paths: Dict[str, Path], changed: Dict[str, bool]) -> "ProcessResult":
        keys = sorted(secret_paths)
        return cls(
            processed_count=len(keys),
            secret_paths=MappingProxyType({k: secret_paths[k] for k in keys}),
            changed=MappingProxyType({k: changed[k] for k in keys}),
        )

    @property
    def changed_keys(self) -> FrozenSet[str]:
        return frozenset(k for k, v in self.changed.items() if v)


@dataclass(frozen=True)
class PlannedAction:
    service_name: str
    action: ActionKind


@dataclass(frozen=True)
class ReconciliationPlan:
    actions: Tuple[PlannedAction, ...] = ()

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions)


@dataclass(frozen=True)
class ServiceOutcome:
    service_name: str
    action: ActionKind
    succeeded: bool
    reason: str = ""


@dataclass(frozen=True)
class ReconciliationResult:
    outcomes: Tuple[ServiceOutcome, ...] = ()

    @property
    def succeeded(self) -> Tuple[ServiceOutcome, ...]:
        return tuple(o for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> Tuple[ServiceOutcome, ...]:
        return tuple(o for o in self.outcomes if not o.succeeded)

    @property
    def ok(self) -> bool:
        return not self.failed


# Credential sources. Exactly one is active per run.

@dataclass(frozen=True)
class ServiceAccountToken:
    path: Path


@dataclass(frozen=True)
class DesktopAgentAccount:
    account_name: str


CredentialSource = Union[ServiceAccountToken, DesktopAgentAccount]


@dataclass(frozen=True)
class Session:
    """Authenticated handle passed to every fetch."""
    source: CredentialSource
    env: Mapping[str, str] = field(default_factory=dict, repr=False)
    account: Optional[str] = None
