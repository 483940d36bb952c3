"""Filesystem primitives: content hashing, atomic writes and the run lock."""
import os
import grp
import pwd
import fcntl
import hashlib
import logging
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from .errors import FileSystemError, file_operation_error

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".optoolkit.lock"
DIR_MODE = 0o755
LOCK_ATTEMPTS = 3


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_hash(path: Path) -> Optional[str]:
    """Hash of the file at path, or None if it does not exist."""
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise file_operation_error("Reading existing secret", path, "Cannot read current secret file", e)


def ensure_dir(path: Path) -> Path:
    try:
        Path(path).mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    except OSError as e:
        raise file_operation_error("Creating directory", path, "Cannot create directory", e)
    return Path(path)


def resolve_ownership(owner: Optional[str], group: Optional[str]) -> Tuple[int, int]:
    """
    Resolve user and group names (or numeric ids) to uid/gid.

    Returns -1 for anything not given, which os.chown leaves unchanged.

    Raises:
        FileSystemError: If a name does not exist on this host
    """
    uid = gid = -1
    if owner:
        try:
            uid = int(owner) if owner.isdigit() else pwd.getpwnam(owner).pw_uid
        except KeyError as e:
            raise FileSystemError(
                f"Unknown user '{owner}'", stage="Resolving file owner", resource=owner, cause=e,
                suggestions=["Create the user or change 'owner' in the secrets config"],
            )
    if group:
        try:
            gid = int(group) if group.isdigit() else grp.getgrnam(group).gr_gid
        except KeyError as e:
            raise FileSystemError(
                f"Unknown group '{group}'", stage="Resolving file group", resource=group, cause=e,
                suggestions=["Create the group or change 'group' in the secrets config"],
            )
    return uid, gid


def apply_permissions(path: Path, mode: int, uid: int = -1, gid: int = -1) -> None:
    """chmod then chown, for a file that already exists."""
    try:
        os.chmod(path, mode)
        if uid != -1 or gid != -1:
            os.chown(path, uid, gid)
    except OSError as e:
        raise file_operation_error("Setting file permissions", path, "Cannot set mode or ownership", e)


def stage_file(destination: Path, data: bytes, mode: int, uid: int = -1, gid: int = -1) -> Path:
    """
    Write data to a temp file beside destination, durably, with final permissions.

    The temp file lives in the destination's directory so the later rename
    stays on one filesystem. Missing parent directories are created here and
    are not removed if the run aborts later. The caller owns the returned path.
    """
    parent = ensure_dir(destination.parent)
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=str(parent))
    except OSError as e:
        raise file_operation_error("Creating temporary file", parent, "Cannot create temporary file", e)

    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            if uid != -1 or gid != -1:
                os.fchown(f.fileno(), uid, gid)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        discard(tmp_path)
        raise file_operation_error("Writing temporary file", destination, "Cannot write secret content", e)
    return tmp_path


def commit_file(tmp_path: Path, destination: Path) -> None:
    """Atomically move a staged file onto its destination."""
    try:
        os.replace(tmp_path, destination)
    except OSError as e:
        discard(tmp_path)
        raise file_operation_error("Replacing secret file", destination, "Cannot move new content into place", e)
    _fsync_dir(destination.parent)


def discard(tmp_path: Path) -> None:
    """Best-effort removal of a staged file."""
    try:
        tmp_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {tmp_path}: {e}")


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError as e:
        logger.debug(f"Cannot open {path} for fsync: {e}")
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"fsync of directory {path} failed: {e}")
    finally:
        os.close(fd)


class RunLock:
    """Exclusive, non-blocking lock on the output directory for one run.

    Example:
        >>> with RunLock(Path("/run/secrets")):
        ...     pass  # sole writer in /run/secrets
    """

    def __init__(self, directory: Path, name: str = LOCK_FILE_NAME):
        self.lock_path = Path(directory) / name
        self._lock_fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> None:
        """
        Raises:
            FileSystemError: If the lock is held by another run or cannot be created
        """
        # release() unlinks the file, so a lock won on an unlinked inode is stale.
        for _ in range(LOCK_ATTEMPTS):
            fd = self._open_and_lock()
            if self._is_current(fd):
                self._lock_fd = fd
                break
            os.close(fd)
        else:
            raise FileSystemError(
                "Lock file kept being replaced while acquiring it",
                stage="Acquiring run lock", resource=str(self.lock_path),
                suggestions=["Wait for the other run to finish"],
            )
        os.ftruncate(self._lock_fd, 0)
        os.write(self._lock_fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired run lock {self.lock_path}")

    def _open_and_lock(self) -> int:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_WRONLY, 0o600)
        except OSError as e:
            raise file_operation_error("Acquiring run lock", self.lock_path, "Cannot create lock file", e)

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            raise FileSystemError(
                "Another run holds the output directory lock",
                stage="Acquiring run lock", resource=str(self.lock_path), cause=e,
                suggestions=[
                    "Wait for the other run to finish",
                    f"If no other run is active, remove {self.lock_path}",
                ],
            )
        return fd

    def _is_current(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self.lock_path)
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (held.st_dev, held.st_ino)

    def release(self) -> None:
        """Release and remove the lock. Safe to call when not held."""
        if self._lock_fd is None:
            return
        try:
            os.unlink(self.lock_path)
        except OSError as e:
            logger.warning(f"Could not delete lock file {self.lock_path}: {e}")
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None
        logger.debug(f"Released run lock {self.lock_path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
