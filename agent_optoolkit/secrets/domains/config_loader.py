"""Configuration loader for Agent-OPtoolkit."""
import os
import logging
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional
import yaml

from .errors import ConfigError
from .models import (
    DEFAULT_FILE_MODE,
    DEFAULT_SERVICE_TIMEOUT,
    ActionKind,
    SecretSpec,
    SecretsConfig,
    ServiceBinding,
    SystemdIntegrationConfig,
    VaultRef,
)
from .preferences import get_preference

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "secrets.json"

_FORMAT_HINT = (
    "Required format:\n"
    "secrets:\n"
    "  - key: db-password\n"
    "    vaultRef: {vault: Infra, item: Postgres, field: password}\n"
    "    outputFile: db-password\n"
)


def resolve_config_path(explicit: Optional[str] = None) -> Path:
    """
    Get config file path.

    Priority order:
    1. Explicit path (--config)
    2. User preference (stored in ~/.config/agent-optoolkit/preferences.json)
    3. secrets.json in the current directory

    Existence is not checked here; the run's prerequisite checks report it.
    """
    if explicit:
        return Path(explicit)

    config_path_pref = get_preference("config_path")
    if config_path_pref:
        logger.info(f"Using config from preference: {config_path_pref}")
        return Path(config_path_pref)

    return Path(DEFAULT_CONFIG_FILE)


def _config_error(message: str, path, suggestions: Optional[List[str]] = None) -> ConfigError:
    return ConfigError(
        message,
        stage="Loading configuration",
        resource=str(path),
        suggestions=suggestions or ["Review the secrets configuration file"],
    )


def parse_mode(value: Any, where: str, path) -> int:
    """Octal string ("0600", "600") or an int already holding the mode bits."""
    if value is None:
        return DEFAULT_FILE_MODE
    if isinstance(value, bool):
        raise _config_error(f"{where}: mode must be an octal string like \"0600\"", path)
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        try:
            mode = int(value, 8)
        except ValueError:
            raise _config_error(f"{where}: invalid mode {value!r}, expected an octal string like \"0600\"", path)
    else:
        raise _config_error(f"{where}: mode must be an octal string like \"0600\"", path)
    if not 0 <= mode <= 0o7777:
        raise _config_error(f"{where}: mode {value!r} out of range", path)
    return mode


def _parse_vault_ref(raw: Dict[str, Any], where: str, path) -> VaultRef:
    if "reference" in raw and "vaultRef" in raw:
        raise _config_error(f"{where}: use either 'reference' or 'vaultRef', not both", path)

    if "reference" in raw:
        try:
            return VaultRef.parse(str(raw["reference"]))
        except ValueError as e:
            raise _config_error(f"{where}: {e}", path)

    ref = raw.get("vaultRef")
    if not isinstance(ref, dict):
        raise _config_error(f"{where}: missing 'vaultRef' (or 'reference')", path, [_FORMAT_HINT])
    missing = [k for k in ("vault", "item", "field") if not ref.get(k)]
    if missing:
        raise _config_error(f"{where}: vaultRef is missing {', '.join(missing)}", path, [_FORMAT_HINT])
    return VaultRef(vault=str(ref["vault"]), item=str(ref["item"]), field=str(ref["field"]))


def _parse_secret(raw: Any, index: int, path) -> SecretSpec:
    where = f"secrets[{index}]"
    if not isinstance(raw, dict):
        raise _config_error(f"{where} must be a mapping", path, [_FORMAT_HINT])

    key = raw.get("key")
    if not key or not isinstance(key, str):
        raise _config_error(f"{where}: missing 'key'", path, [_FORMAT_HINT])
    where = f"secrets[{index}] ({key})"

    vault_ref = _parse_vault_ref(raw, where, path)

    output_file = raw.get("outputFile") or raw.get("path") or key
    output_file = str(output_file)
    pure = PurePosixPath(output_file)
    if not pure.is_absolute() and ".." in pure.parts:
        raise _config_error(f"{where}: outputFile {output_file!r} escapes the output directory", path)

    services = raw.get("services") or []
    if not isinstance(services, list) or not all(isinstance(s, str) and s for s in services):
        raise _config_error(f"{where}: 'services' must be a list of service names", path)

    owner = raw.get("owner")
    group = raw.get("group")
    return SecretSpec(
        key=key,
        vault_ref=vault_ref,
        output_file=output_file,
        owner=str(owner) if owner is not None else None,
        group=str(group) if group is not None else None,
        mode=parse_mode(raw.get("mode"), where, path),
        services=tuple(services),
    )


def _parse_action(value: Any, where: str, path) -> ActionKind:
    try:
        return ActionKind(str(value or "restart").lower())
    except ValueError:
        raise _config_error(f"{where}: action must be 'restart' or 'reload', got {value!r}", path)


def _parse_systemd(raw: Any, secrets: List[SecretSpec], path) -> SystemdIntegrationConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise _config_error("'systemdIntegration' must be a mapping", path)

    keys = {s.key for s in secrets}
    bindings: List[ServiceBinding] = []
    for index, svc in enumerate(raw.get("services") or []):
        where = f"systemdIntegration.services[{index}]"
        if not isinstance(svc, dict) or not svc.get("name"):
            raise _config_error(f"{where}: each service needs a 'name'", path)
        depends = svc.get("dependsOnKeys") or []
        if not isinstance(depends, list) or not depends:
            raise _config_error(f"{where} ({svc['name']}): 'dependsOnKeys' must be a non-empty list", path)
        unknown = sorted(set(map(str, depends)) - keys)
        if unknown:
            raise _config_error(
                f"{where} ({svc['name']}): depends on unknown secret key(s): {', '.join(unknown)}", path
            )
        bindings.append(ServiceBinding(
            service_name=str(svc["name"]),
            depends_on_keys=frozenset(map(str, depends)),
            action=_parse_action(svc.get("action"), where, path),
        ))

    # Per-secret 'services' shorthand, after the explicit bindings
    for spec in secrets:
        for service_name in spec.services:
            bindings.append(ServiceBinding(service_name, frozenset([spec.key]), ActionKind.RESTART))

    timeout = raw.get("timeout", DEFAULT_SERVICE_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise _config_error(f"systemdIntegration.timeout must be a positive number, got {timeout!r}", path)

    return SystemdIntegrationConfig(
        enabled=bool(raw.get("enable", False)),
        service_bindings=tuple(bindings),
        restart_on_change=bool(raw.get("restartOnChange", True)),
        timeout=float(timeout),
    )


def check_uniqueness(secrets, output_dir: Optional[Path] = None) -> None:
    """
    Reject duplicate keys and duplicate resolved output paths.

    Raises:
        ConfigError: naming the duplicated key or path
    """
    base = Path(output_dir) if output_dir is not None else Path(".")
    seen_keys = set()
    seen_paths: Dict[Path, str] = {}
    for spec in secrets:
        if spec.key in seen_keys:
            raise ConfigError(
                f"Duplicate secret key '{spec.key}'",
                stage="Validating configuration", resource=spec.key,
                suggestions=["Give every secret a unique 'key'"],
            )
        seen_keys.add(spec.key)

        resolved = Path(os.path.normpath(spec.resolve_path(base)))
        if resolved in seen_paths:
            raise ConfigError(
                f"Secrets '{seen_paths[resolved]}' and '{spec.key}' write to the same file {resolved}",
                stage="Validating configuration", resource=str(resolved),
                suggestions=["Give every secret a unique 'outputFile'"],
            )
        seen_paths[resolved] = spec.key


def load_config(config_path) -> SecretsConfig:
    """
    Load and validate the secrets configuration (YAML or JSON).

    Args:
        config_path: Path to the config file

    Returns:
        SecretsConfig

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise _config_error(
            "Configuration file does not exist", config_path,
            ["Pass --config /path/to/secrets.json", "Or set a default with: optoolkit config set-path <path>"],
        )

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse config: {e}", stage="Loading configuration", resource=str(config_path), cause=e,
            suggestions=["Check the file for YAML/JSON syntax errors"],
        )
    except OSError as e:
        raise ConfigError(
            "Failed to read config file", stage="Loading configuration", resource=str(config_path), cause=e,
            suggestions=[f"Check read permissions on {config_path}"],
        )

    if not raw:
        raise _config_error("Config file is empty", config_path, [_FORMAT_HINT])
    if not isinstance(raw, dict):
        raise _config_error("Config file must contain a mapping at the top level", config_path, [_FORMAT_HINT])

    raw_secrets = raw.get("secrets")
    if not isinstance(raw_secrets, list):
        raise _config_error("Missing 'secrets' list in config", config_path, [_FORMAT_HINT])

    secrets = [_parse_secret(item, i, config_path) for i, item in enumerate(raw_secrets)]
    check_uniqueness(secrets)
    systemd = _parse_systemd(raw.get("systemdIntegration"), secrets, config_path)

    logger.info(f"Configuration loaded successfully from {config_path}")
    logger.debug(f"Secrets: {', '.join(s.key for s in secrets)}")
    return SecretsConfig(secrets=tuple(secrets), systemd_integration=systemd)
