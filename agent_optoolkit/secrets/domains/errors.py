"""Structured errors shared by every stage of a secret sync run.

Each error carries the stage it happened in, the resource involved, the
underlying cause, and a list of suggestions a human can act on. Components
raise one of the subclasses below; nothing raises a bare Exception.
"""
from enum import Enum
from typing import Iterable, List, Optional


class OpToolkitError(Exception):
    """Base error with stage/resource/cause/suggestions."""

    def __init__(
        self,
        message: str,
        stage: str = "",
        resource: str = "",
        cause: Optional[BaseException] = None,
        suggestions: Optional[Iterable[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.resource = resource
        self.cause = cause
        self.suggestions: List[str] = list(suggestions or [])

    def __str__(self) -> str:
        lines = []
        if self.stage:
            lines.append(f"{self.stage} failed: {self.message}")
        else:
            lines.append(self.message)
        if self.resource:
            lines.append(f"  Resource: {self.resource}")
        if self.cause is not None:
            lines.append(f"  Cause: {self.cause}")
        if self.suggestions:
            lines.append("  Suggestions:")
            lines.extend(f"    - {s}" for s in self.suggestions)
        return "\n".join(lines)


class ConfigError(OpToolkitError):
    """Configuration is malformed or violates a uniqueness rule."""


class AuthError(OpToolkitError):
    """Credential is missing, malformed, or rejected by the secret store."""


class FetchErrorKind(Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"


class FetchError(OpToolkitError):
    """A single secret could not be read from the secret store."""

    def __init__(self, kind: FetchErrorKind, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is FetchErrorKind.UNAVAILABLE


class FileSystemError(OpToolkitError):
    """Output directory, file, or run lock could not be handled."""


class ServiceControlError(OpToolkitError):
    """A service manager action failed for one service."""

    def __init__(self, message: str, service_name: str = "", **kwargs):
        kwargs.setdefault("resource", service_name)
        super().__init__(message, **kwargs)
        self.service_name = service_name


class ReconciliationError(OpToolkitError):
    """One or more planned service actions failed.

    ``result`` holds every outcome, successes included; ``errors`` has one
    ServiceControlError per failed service.
    """

    def __init__(self, result, errors: List[ServiceControlError], **kwargs):
        failed = ", ".join(e.service_name for e in errors)
        kwargs.setdefault("stage", "Reconciling services")
        kwargs.setdefault("resource", failed)
        super().__init__(f"{len(errors)} service action(s) failed: {failed}", **kwargs)
        self.result = result
        self.errors = errors

    def __str__(self) -> str:
        lines = [super().__str__()]
        for err in self.errors:
            lines.append(f"  - {err.service_name}: {err.message}")
        succeeded = [o.service_name for o in self.result.succeeded]
        if succeeded:
            lines.append(f"  Succeeded: {', '.join(succeeded)}")
        return "\n".join(lines)


def wrap_with_suggestions(
    err: BaseException,
    stage: str,
    resource: str,
    suggestions: Iterable[str],
    error_cls: type = OpToolkitError,
) -> OpToolkitError:
    """Wrap a foreign exception into the structured shape."""
    return error_cls(str(err), stage=stage, resource=resource, cause=err, suggestions=suggestions)


def file_operation_error(stage: str, path, message: str, cause: Optional[BaseException] = None) -> FileSystemError:
    """Build a FileSystemError with the usual permission/space suggestions."""
    return FileSystemError(
        message,
        stage=stage,
        resource=str(path),
        cause=cause,
        suggestions=[
            f"Check that {path} exists and is writable by the current user",
            "Check available disk space",
            "Run with sufficient privileges if secrets need a different owner",
        ],
    )
