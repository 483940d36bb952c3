"""Token file hygiene checks. Problems are reported as warnings, never raised."""
import os
import stat
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def validate_token_file(path) -> List[str]:
    """
    Check that the token file exists, is non-empty and is not world-readable.

    Args:
        path: Token file path

    Returns:
        Warning messages; empty when the file looks sane
    """
    path = Path(path)
    warnings: List[str] = []

    try:
        st = os.stat(path)
    except FileNotFoundError:
        return [f"Token file {path} does not exist"]
    except OSError as e:
        return [f"Token file {path} cannot be inspected: {e}"]

    if not stat.S_ISREG(st.st_mode):
        warnings.append(f"Token file {path} is not a regular file")
    elif st.st_size == 0:
        warnings.append(f"Token file {path} is empty")

    if st.st_mode & stat.S_IROTH:
        warnings.append(
            f"Token file {path} is world-readable (mode {stat.S_IMODE(st.st_mode):04o}); "
            f"restrict it with: chmod 600 {path}"
        )

    for w in warnings:
        logger.debug(w)
    return warnings
