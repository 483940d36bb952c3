"""Fetch, change detection and atomic write of every configured secret."""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from ..domains.config_loader import check_uniqueness
from ..domains.errors import AuthError, FetchError, OpToolkitError
from ..domains.filesystem import (
    apply_permissions,
    commit_file,
    content_hash,
    discard,
    file_hash,
    resolve_ownership,
    stage_file,
)
from ..domains.models import FetchedSecret, ProcessResult, SecretSpec, SecretsConfig, Session
from ..domains.op_client import OnePasswordClient
from ..domains.retry import RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class RunContext:
    """Everything one run needs, passed explicitly instead of held globally."""
    output_dir: Path
    client: OnePasswordClient
    session: Session
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    max_workers: int = DEFAULT_MAX_WORKERS


class SecretProcessor:
    """Materializes secrets into the output directory.

    Nothing under the output directory is modified until every secret has
    been fetched; a single fetch failure aborts the run with all destination
    files untouched.
    """

    def __init__(self, context: RunContext):
        self.context = context

    def process(self, config: SecretsConfig) -> ProcessResult:
        """
        Fetch all secrets and write the changed ones.

        Returns:
            ProcessResult keyed by secret key, sorted

        Raises:
            ConfigError: Duplicate keys or output paths (before any fetch)
            AuthError, FetchError: First failing secret in config order
            FileSystemError: Staging, permission or rename failure
        """
        output_dir = Path(self.context.output_dir)
        check_uniqueness(config.secrets, output_dir)

        fetched = self._fetch_all(config.secrets)
        specs = sorted(config.secrets, key=lambda s: s.key)
        paths = {s.key: s.resolve_path(output_dir) for s in specs}

        changed = self._write_all(specs, paths, fetched)

        result = ProcessResult.build(paths, changed)
        logger.info(
            f"Processed {result.processed_count} secrets, {len(result.changed_keys)} changed"
        )
        return result

    def _fetch_one(self, spec: SecretSpec) -> FetchedSecret:
        ctx = self.context
        try:
            content = run_with_retry(
                ctx.retry_policy, logger, lambda: ctx.client.fetch_secret(ctx.session, spec.vault_ref)
            )
        except FetchError as e:
            attempts = f" after {ctx.retry_policy.max_attempts} attempts" if e.retryable else ""
            raise FetchError(
                e.kind,
                f"Secret '{spec.key}' ({spec.vault_ref.uri}) could not be fetched{attempts}: {e.message}",
                stage="Fetching secret", resource=spec.key, cause=e, suggestions=e.suggestions,
            )
        except AuthError as e:
            raise AuthError(
                f"Secret '{spec.key}' ({spec.vault_ref.uri}): {e.message}",
                stage="Fetching secret", resource=spec.key, cause=e, suggestions=e.suggestions,
            )
        logger.debug(f"Fetched secret '{spec.key}' ({len(content)} bytes)")
        return FetchedSecret(key=spec.key, content=content, content_hash=content_hash(content))

    def _fetch_all(self, secrets: Tuple[SecretSpec, ...]) -> Dict[str, FetchedSecret]:
        fetched: Dict[str, FetchedSecret] = {}
        errors: Dict[str, OpToolkitError] = {}
        workers = max(1, min(self.context.max_workers, len(secrets) or 1))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="optoolkit-fetch") as pool:
            futures = {pool.submit(self._fetch_one, spec): spec for spec in secrets}
            for future in as_completed(futures):
                spec = futures[future]
                if future.cancelled():
                    continue
                try:
                    fetched[spec.key] = future.result()
                except OpToolkitError as e:
                    errors[spec.key] = e
                    for pending in futures:
                        pending.cancel()

        if errors:
            first = next(s.key for s in secrets if s.key in errors)
            raise errors[first]
        return fetched

    def _write_all(
        self,
        specs: List[SecretSpec],
        paths: Dict[str, Path],
        fetched: Dict[str, FetchedSecret],
    ) -> Dict[str, bool]:
        changed: Dict[str, bool] = {}
        ownership = {s.key: resolve_ownership(s.owner, s.group) for s in specs}
        for spec in specs:
            previous = file_hash(paths[spec.key])
            changed[spec.key] = previous != fetched[spec.key].content_hash

        for spec in specs:
            if not changed[spec.key]:
                uid, gid = ownership[spec.key]
                apply_permissions(paths[spec.key], spec.mode, uid, gid)
                logger.debug(f"Unchanged {paths[spec.key]}")

        # No destination is renamed until every other step has succeeded.
        staged: List[Tuple[Path, Path]] = []
        try:
            for spec in specs:
                if not changed[spec.key]:
                    continue
                uid, gid = ownership[spec.key]
                tmp = stage_file(paths[spec.key], fetched[spec.key].content, spec.mode, uid, gid)
                staged.append((tmp, paths[spec.key]))
            while staged:
                tmp, destination = staged[0]
                commit_file(tmp, destination)
                staged.pop(0)
                logger.info(f"Updated {destination}")
        finally:
            for tmp, _ in staged:
                discard(tmp)
        return changed
