"""CLI entrypoint for agent-optoolkit."""
import sys
import argparse
import logging
from pathlib import Path

from .validators import validate_account_name, validate_output_dir, validate_workers

VERSION = "0.1.0"

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def cmd_version(args):
    """Show version information."""
    print(f"agent-optoolkit {VERSION}")


def cmd_config_set_path(args):
    """Set default secrets config file path."""
    from agent_optoolkit.secrets.domains.preferences import set_preference

    config_path = Path(args.path).resolve()

    if not config_path.exists():
        print(f"Error: Config file does not exist: {config_path}", file=sys.stderr)
        sys.exit(1)

    if not config_path.is_file():
        print(f"Error: Path is not a file: {config_path}", file=sys.stderr)
        sys.exit(1)

    set_preference("config_path", str(config_path))
    print(f"Config path set to: {config_path}")


def cmd_config_show(args):
    """Show the config file 'optoolkit secret' uses without --config."""
    from agent_optoolkit.secrets.domains.preferences import get_preference
    from agent_optoolkit.secrets.domains.config_loader import resolve_config_path

    source = "preference" if get_preference("config_path") else "default"
    config_path = resolve_config_path()
    suffix = "" if config_path.exists() else " (file not found)"
    print(f"Config path: {config_path}")
    print(f"Source: {source}{suffix}")


def cmd_config_clear(args):
    """Clear config path preference."""
    from agent_optoolkit.secrets.domains.preferences import clear_preference
    from agent_optoolkit.secrets.domains.config_loader import DEFAULT_CONFIG_FILE

    clear_preference("config_path")
    print(f"Config path preference cleared. Will use default: ./{DEFAULT_CONFIG_FILE}")


def cmd_secret(args):
    """Materialize secrets and reconcile dependent services."""
    from agent_optoolkit.secrets.domains.config_loader import resolve_config_path
    from agent_optoolkit.secrets.domains.errors import OpToolkitError
    from agent_optoolkit.secrets.workflows.secret_sync import RunOptions, resolve_token_file, run_secret_sync

    if args.verbose:
        logging.getLogger("agent_optoolkit").setLevel(logging.INFO)
    if args.desktop_integration is not None:
        validate_account_name(args.desktop_integration)
    validate_output_dir(args.output)
    validate_workers(args.workers)

    options = RunOptions(
        config_path=resolve_config_path(args.config),
        output_dir=Path(args.output),
        token_file=resolve_token_file(args.token_file),
        desktop_account=args.desktop_integration,
        max_workers=args.workers,
    )

    try:
        report = run_secret_sync(options)
    except OpToolkitError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    changed = sorted(report.process_result.changed_keys)
    print(f"Processed {report.process_result.processed_count} secrets to {options.output_dir} "
          f"({len(changed)} changed)")
    if report.reconciliation is not None:
        for outcome in report.reconciliation.outcomes:
            print(f"  {outcome.action.value} {outcome.service_name}: ok")
    sys.exit(0)


def main():
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (configuration, authentication, fetch, filesystem, service control)
        2 - Usage errors (invalid arguments)
    """
    parser = argparse.ArgumentParser(
        prog="optoolkit",
        description="Agent-OPtoolkit CLI - materialize 1Password secrets to disk and restart dependent services",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (configuration, authentication, fetch, filesystem, service control)
  2 - Usage error (invalid arguments)

Environment variables:
  OPTOOLKIT_TOKEN_FILE - service account token file (overridden by --token-file)

Configuration:
  Default config: ./secrets.json
  Custom default: Set with 'optoolkit config set-path <path>'
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "version",
        help="Show version information",
        description="Display the current version of agent-optoolkit"
    )

    secret_parser = subparsers.add_parser(
        "secret",
        help="Retrieve and manage secrets from 1Password",
        description="""
Fetch every configured secret from 1Password, write changed ones atomically
into the output directory, then restart or reload services bound to the
secrets that changed (when systemd integration is enabled).
        """
    )
    secret_parser.add_argument(
        "--config",
        help="Path to secrets configuration file (default: preference, then ./secrets.json)"
    )
    secret_parser.add_argument(
        "--output",
        default="secrets",
        help="Directory to store retrieved secrets (default: secrets)"
    )
    secret_parser.add_argument(
        "--token-file",
        help="Path to file containing 1Password service account token "
             "(default: $OPTOOLKIT_TOKEN_FILE, then /etc/optoolkit-token)"
    )
    secret_parser.add_argument(
        "--desktop-integration",
        metavar="ACCOUNT",
        help="Account name to use for 1Password desktop app integration. "
             "Overrides --token-file and uses the desktop app to authenticate."
    )
    secret_parser.add_argument(
        "--workers",
        type=int,
        default=4,
        help="Maximum concurrent secret fetches (default: 4)"
    )
    secret_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log progress to stderr"
    )

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Manage the default secrets config file"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    config_set_path_parser = config_subparsers.add_parser(
        "set-path",
        help="Set default config file path",
        description="""
Store the absolute path of the secrets config in:
~/.config/agent-optoolkit/preferences.json

'optoolkit secret' reads it when --config is not given.
        """
    )
    config_set_path_parser.add_argument(
        "path",
        help="Path to config file"
    )
    config_subparsers.add_parser(
        "show",
        help="Show current config path",
        description="Display the config file used without --config and where the choice comes from"
    )
    config_subparsers.add_parser(
        "clear",
        help="Clear config path preference",
        description="Remove the config path preference; ./secrets.json is used afterwards"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(2)

    try:
        if args.command == "version":
            cmd_version(args)
        elif args.command == "secret":
            cmd_secret(args)
        elif args.command == "config":
            if args.config_command == "set-path":
                cmd_config_set_path(args)
            elif args.config_command == "show":
                cmd_config_show(args)
            elif args.config_command == "clear":
                cmd_config_clear(args)
            else:
                config_parser.print_help()
                sys.exit(2)
        else:
            parser.print_help()
            sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
