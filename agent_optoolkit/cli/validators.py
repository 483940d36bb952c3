"""Input validation for CLI arguments."""
import re
import sys

# 1Password account shorthand, sign-in address, or user/account UUID
_ACCOUNT_PATTERN = r'^[A-Za-z0-9][A-Za-z0-9._@:-]*$'


def validate_account_name(name: str) -> None:
    """
    Validate the --desktop-integration account name.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name or not name.strip():
        print("Error: Desktop integration account name cannot be empty", file=sys.stderr)
        print("\nList accounts known to the desktop app with: op account list", file=sys.stderr)
        sys.exit(2)

    if not re.match(_ACCOUNT_PATTERN, name):
        print(f"Error: Invalid account name '{name}'", file=sys.stderr)
        print("\nUse the account shorthand, sign-in address, or account ID, e.g.:", file=sys.stderr)
        print("  ✓ my-team", file=sys.stderr)
        print("  ✓ my-team.1password.com", file=sys.stderr)
        print("  ✓ someone@example.com", file=sys.stderr)
        sys.exit(2)


def validate_output_dir(path: str) -> None:
    """
    Validate the --output directory argument.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not path or not path.strip():
        print("Error: Output directory cannot be empty", file=sys.stderr)
        sys.exit(2)


def validate_workers(value: int) -> None:
    """
    Raises:
        SystemExit with code 2 if the worker count is not positive
    """
    if value < 1:
        print(f"Error: --workers must be at least 1, got {value}", file=sys.stderr)
        sys.exit(2)
