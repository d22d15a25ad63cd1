"""PagesDeployer — lock, publish, verify and roll back coverage deployments."""

from __future__ import annotations

import abc
import logging
import re
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from covpages.config import LATEST_COVERAGE_FILES, WORK_DIR_PREFIX
from covpages.deployment.cleanup import (
    CleanupEngine,
    FileCleanup,
    default_preserve_patterns,
)
from covpages.deployment.config_manager import DeploySettings
from covpages.deployment.models import (
    DeploymentInfo,
    DeploymentOptions,
    DeploymentResult,
    DeploymentStage,
    DeploymentStatus,
)
from covpages.deployment.paths import (
    DeploymentPath,
    PathType,
    build_deployment_path,
    sanitize_branch_name,
)
from covpages.deployment.verify import URLVerifier, VerificationError
from covpages.retry import OperationCancelled
from covpages.sync.locking import Locker, LockTimeoutError, make_locker
from covpages.vcs.repo import GitClient, GitError, GitOperations, github_remote_url

logger = logging.getLogger(__name__)

_FAILURE_MESSAGES = {
    DeploymentStage.LOCK_ACQUIRED: "failed to deploy coverage files",
    DeploymentStage.PREPARED: "failed to commit changes",
    DeploymentStage.COMMITTED: "failed to push changes",
}

_PR_MESSAGE = re.compile(r"^Deploy coverage for PR #(?P<pr>\S+) \(")
_BRANCH_MESSAGE = re.compile(r"^Deploy coverage for branch (?P<branch>.+) \(")
_MAIN_MESSAGE = re.compile(r"^Deploy coverage for (?P<branch>.+) branch \(")


class DeploymentError(Exception):
    """Raised when a deployment did not succeed.

    ``result`` is the :class:`DeploymentResult` describing how far the
    attempt got; the underlying failure is chained as ``__cause__``.
    """

    def __init__(self, message: str, result: DeploymentResult) -> None:
        super().__init__(message)
        self.result = result


class RollbackError(DeploymentError):
    """Raised when a failed deployment could not be rolled back.

    The pages branch may be left in an unknown state.
    """

    def __init__(
        self,
        message: str,
        result: DeploymentResult,
        original_error: BaseException,
        rollback_error: BaseException,
    ) -> None:
        super().__init__(message, result)
        self.original_error = original_error
        self.rollback_error = rollback_error


def build_commit_message(options: DeploymentOptions, target: DeploymentPath) -> str:
    """Describe a deployment the way it appears in the pages branch log."""
    sha = options.commit_sha[:7] or "unknown"
    if target.type is PathType.MAIN:
        return f"Deploy coverage for {options.branch} branch ({sha})"
    if target.type is PathType.BRANCH:
        return f"Deploy coverage for branch {options.branch} ({sha})"
    if target.type is PathType.PR:
        return f"Deploy coverage for PR #{options.pr_number or target.identifier} ({sha})"
    return f"Deploy coverage ({sha})"


@dataclass
class _Attempt:
    """Mutable progress of one deploy call; frozen into a result at the end."""

    options: DeploymentOptions
    target: DeploymentPath
    started: float
    deployment_url: str = ""
    additional_urls: list[str] = field(default_factory=list)
    stage: DeploymentStage = DeploymentStage.PENDING
    status: DeploymentStatus = DeploymentStatus.PENDING
    message: str = ""
    work_dir: Path | None = None
    created: bool = False
    backup_ref: str = ""
    backup_commit: str = ""
    commit_sha: str = ""
    files_deployed: int = 0
    files_removed: int = 0
    removed_paths: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: BaseException | None = None
    rollback_error: BaseException | None = None

    @property
    def label(self) -> str:
        return str(self.target) or "<root>"


class DeploymentManager(abc.ABC):
    """Publish artifacts to the pages branch and manage past deployments."""

    @abc.abstractmethod
    def deploy(
        self, options: DeploymentOptions, *, cancel: threading.Event | None = None,
    ) -> DeploymentResult:
        """Run one deployment; raise :class:`DeploymentError` on failure."""

    @abc.abstractmethod
    def verify(
        self, result: DeploymentResult, *, cancel: threading.Event | None = None,
    ) -> None:
        """Raise :class:`VerificationError` if the deployed URLs do not respond."""

    @abc.abstractmethod
    def rollback(self, backup: str, *, expected_remote: str | None = None) -> None:
        """Reset the pages branch to *backup* and push it."""

    @abc.abstractmethod
    def get_deployment_url(self, options: DeploymentOptions) -> str:
        """Return the URL of the coverage report for *options*."""

    @abc.abstractmethod
    def list_deployments(self, limit: int = 20) -> list[DeploymentInfo]:
        """Return recent deployments, newest first."""


class PagesDeployer(DeploymentManager):
    """Deploy coverage artifacts to a static-hosting branch.

    Each call to :meth:`deploy` takes a named lock for its target, clones
    the pages branch into a fresh temporary directory, snapshots HEAD,
    writes the artifacts, cleans stale files, commits and pushes.  A failure
    after the snapshot resets the branch to it.

    Parameters
    ----------
    repository:
        ``owner/repo`` being deployed; defaults to ``settings.repository``.
    token:
        Token used for authenticated pushes to GitHub.
    settings:
        Configuration; see :class:`DeploySettings`.
    git, cleanup, locker, verifier:
        Collaborators.  Built from *settings* when omitted.
    remote_url:
        Remote holding the pages branch.  Defaults to the GitHub https URL
        of *repository*.
    work_root:
        Parent directory for temporary working copies.
    """

    def __init__(
        self,
        repository: str = "",
        token: str = "",
        *,
        settings: DeploySettings | None = None,
        git: GitOperations | None = None,
        cleanup: CleanupEngine | None = None,
        locker: Locker | None = None,
        verifier: URLVerifier | None = None,
        remote_url: str | None = None,
        work_root: str | Path | None = None,
    ) -> None:
        self.settings = settings or DeploySettings(repository=repository, token=token)
        self.repository = repository or self.settings.repository
        token = token or self.settings.token

        self.git = git or GitClient(
            remote_url or github_remote_url(self.repository, token),
            self.settings.pages_branch,
        )
        self.cleanup = cleanup or FileCleanup()
        self.locker = locker or make_locker(
            self.settings.lock_strategy,
            self.settings.lock_dir or None,
            self.settings.lock_poll_interval,
        )
        self.verifier = verifier or URLVerifier(
            timeout=self.settings.verification_timeout,
            propagation_delay=self.settings.propagation_delay,
        )
        self.work_root = Path(work_root) if work_root else None

    @classmethod
    def from_settings(cls, settings: DeploySettings, **kwargs) -> PagesDeployer:
        """Build a deployer for ``settings.repository`` using ``settings.token``."""
        return cls(settings.repository, settings.token, settings=settings, **kwargs)

    # -- Naming ---------------------------------------------------------------

    def resolve_path(self, options: DeploymentOptions) -> DeploymentPath:
        """Return the target path of *options*, resolving it if unset."""
        if options.target_path is not None:
            return options.target_path
        return build_deployment_path(
            options.event_name, options.branch, options.pr_number,
            self.settings.main_branches,
        )

    def lock_name(self, options: DeploymentOptions, target: DeploymentPath | None = None) -> str:
        """Lock shared by every deployment of the same repository and target."""
        target = target or self.resolve_path(options)
        repository = sanitize_branch_name(options.repository or self.repository)
        return f"{repository}-{sanitize_branch_name(str(target)) or 'root'}"

    def base_url(self, repository: str | None = None) -> str:
        """Published site root, e.g. ``https://owner.github.io/repo``."""
        if self.settings.base_url:
            return self.settings.base_url.rstrip("/")
        owner, _, name = (repository or self.repository).partition("/")
        if not owner or not name:
            raise ValueError(
                f"repository must look like 'owner/repo', got {repository or self.repository!r}"
            )
        return f"https://{owner}.github.io/{name}"

    def get_deployment_url(self, options: DeploymentOptions) -> str:
        target = str(self.resolve_path(options))
        base = self.base_url(options.repository or None)
        if not target:
            return f"{base}/coverage.html"
        return f"{base}/{target}/coverage.html"

    def additional_urls(self, options: DeploymentOptions) -> list[str]:
        """Badge and navigation page URLs for *options*."""
        target = str(self.resolve_path(options))
        base = self.base_url(options.repository or None)
        badge = f"{base}/coverage.svg" if not target else f"{base}/{target}/coverage.svg"
        return [badge, f"{base}/index.html"]

    # -- Deploy ---------------------------------------------------------------

    def deploy(
        self, options: DeploymentOptions, *, cancel: threading.Event | None = None,
    ) -> DeploymentResult:
        """Publish ``options.files`` under the resolved target directory.

        Returns
        -------
        DeploymentResult
            With ``status == SUCCESS``; verification problems appear in
            ``warnings``.

        Raises
        ------
        DeploymentError
            If the deployment failed.  ``error.result`` says whether the
            branch was rolled back.
        RollbackError
            If the rollback after a failure also failed.
        """
        target = self.resolve_path(options)
        attempt = _Attempt(options=options, target=target, started=time.monotonic())
        logger.info(
            "Deploying %d file(s) to %s%s",
            len(options.files), attempt.label, " (dry run)" if options.dry_run else "",
        )
        try:
            attempt.deployment_url = self.get_deployment_url(options)
            attempt.additional_urls = self.additional_urls(options)
        except ValueError as exc:
            self._fail(attempt, exc, f"invalid deployment target: {exc}")
            return self._finish(attempt)

        lock_name = self.lock_name(options, target)

        try:
            self.locker.acquire(lock_name, self.settings.lock_timeout, cancel=cancel)
        except (LockTimeoutError, OperationCancelled, OSError) as exc:
            self._fail(attempt, exc, f"failed to acquire deployment lock: {exc}")
            return self._finish(attempt)
        self._advance(attempt, DeploymentStage.LOCK_ACQUIRED)

        try:
            self._publish(attempt, cancel)
        finally:
            self._release_lock(lock_name, attempt)
            self._remove_work_dir(attempt)
        return self._finish(attempt)

    def _publish(self, attempt: _Attempt, cancel: threading.Event | None) -> None:
        try:
            work_dir = self._prepare(attempt, cancel)
        except Exception as exc:
            self._fail(attempt, exc, f"failed to set up {self.git.branch}: {exc}")
            return

        try:
            self._apply(attempt, work_dir, cancel)
        except Exception as exc:
            prefix = _FAILURE_MESSAGES.get(attempt.stage, "deployment failed")
            logger.error("Deployment of %s failed: %s", attempt.label, exc)
            self._fail(attempt, exc, f"{prefix}: {exc}")
            if attempt.backup_ref:
                self._rollback_attempt(attempt, work_dir)
            return

        self._verify_attempt(attempt, cancel)
        attempt.status = DeploymentStatus.SUCCESS
        attempt.message = (
            f"deployed {attempt.files_deployed} file(s) to {attempt.label}"
            if not attempt.options.dry_run
            else f"dry run: would deploy {attempt.files_deployed} file(s) to {attempt.label}"
        )
        self._advance(attempt, DeploymentStage.SUCCESS)

    def _prepare(self, attempt: _Attempt, cancel: threading.Event | None) -> Path:
        """Check out the pages branch and snapshot it.  Mutates nothing."""
        options = attempt.options
        work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=self.work_root))
        attempt.work_dir = work_dir

        attempt.created = self.git.clone_or_create(work_dir, cancel=cancel)
        attempt.backup_commit = self.git.current_commit(work_dir, cancel=cancel)
        if not options.dry_run:
            attempt.backup_ref = self.git.create_backup(work_dir, cancel=cancel)

        self.cleanup.validate_cleanup(work_dir, options.cleanup_patterns)
        return work_dir

    def _apply(self, attempt: _Attempt, work_dir: Path, cancel: threading.Event | None) -> None:
        options = attempt.options

        written = set(self._write_artifacts(attempt, work_dir))
        preserve = default_preserve_patterns()
        if options.dry_run:
            attempt.removed_paths = self.cleanup.preview_cleanup(
                work_dir, options.cleanup_patterns, preserve, keep=written,
            )
            attempt.files_removed = sum(
                1 for rel in attempt.removed_paths if not (work_dir / rel).is_dir()
            )
        else:
            cleanup = self.cleanup.cleanup_files(
                work_dir, options.cleanup_patterns, preserve, keep=written,
            )
            attempt.removed_paths = list(cleanup.removed_paths)
            attempt.files_removed = cleanup.files_removed
            attempt.warnings.extend(f"Cleanup: {err}" for err in cleanup.errors)
        self._advance(attempt, DeploymentStage.PREPARED)

        message = build_commit_message(options, attempt.target)
        attempt.commit_sha = self.git.commit(work_dir, message, cancel=cancel)
        if attempt.commit_sha == attempt.backup_commit:
            logger.info("No changes to deploy for %s", attempt.label)
        self._advance(attempt, DeploymentStage.COMMITTED)

        if options.dry_run:
            logger.info("Dry run: skipping push of %s", attempt.commit_sha[:7])
            return
        self.git.push(work_dir, options.force, cancel=cancel)
        self._advance(attempt, DeploymentStage.PUSHED)

    def _write_artifacts(self, attempt: _Attempt, work_dir: Path) -> list[str]:
        """Write every artifact under the target; return the paths written."""
        options = attempt.options
        prefix = str(attempt.target)
        written: list[str] = []

        for name in sorted(options.files):
            rel = f"{prefix}/{name}" if prefix else name
            _write_file(work_dir / rel, options.files[name])
            written.append(rel)
        attempt.files_deployed = len(written)

        # Keep the site root pointing at the latest main-branch coverage
        if attempt.target.type is PathType.MAIN:
            for name in LATEST_COVERAGE_FILES:
                if name in options.files:
                    _write_file(work_dir / name, options.files[name])
                    written.append(name)

        logger.debug("Wrote %d artifact path(s) for %s", len(written), attempt.label)
        return written

    def _verify_attempt(self, attempt: _Attempt, cancel: threading.Event | None) -> None:
        options = attempt.options
        if options.dry_run or options.verification_timeout <= 0:
            return

        urls = [attempt.deployment_url, *attempt.additional_urls]
        try:
            report = self.verifier.verify(
                urls, timeout=options.verification_timeout, cancel=cancel,
            )
        except OperationCancelled:
            attempt.warnings.append("Deployment verification cancelled")
            return

        if report.passed:
            self._advance(attempt, DeploymentStage.VERIFIED)
            return
        for check in report.failures:
            attempt.warnings.append(
                f"Deployment verification failed for {check.url}: {check.message}"
            )

    # -- Failure handling -----------------------------------------------------

    def _rollback_attempt(self, attempt: _Attempt, work_dir: Path) -> None:
        """Undo a failed attempt.  Runs without the cancel signal."""
        logger.error(
            "Rolling back %s to %s (%s)",
            self.git.branch, attempt.backup_ref, attempt.backup_commit[:7],
        )
        try:
            expected, push = self._rollback_lease(attempt, work_dir)
            self.git.rollback(
                work_dir, attempt.backup_ref, expected_remote=expected, push=push,
            )
        except Exception as exc:
            logger.error("Rollback to %s failed: %s", attempt.backup_ref, exc)
            attempt.rollback_error = exc
            attempt.message = f"{attempt.message}; rollback failed: {exc}"
            return

        attempt.status = DeploymentStatus.ROLLED_BACK
        attempt.message = f"{attempt.message}; rolled back to {attempt.backup_commit[:7]}"
        self._advance(attempt, DeploymentStage.ROLLED_BACK)

    def _rollback_lease(self, attempt: _Attempt, work_dir: Path) -> tuple[str | None, bool]:
        """Return the remote SHA a rollback push may replace, and whether to push.

        The remote may hold the snapshot (push never landed) or this
        attempt's own commit (push landed but reported failure); both are
        pushed over with a lease.  Any other SHA means nothing of this
        attempt is on the remote, so only the working copy is reset.
        """
        try:
            remote = self.git.remote_head(work_dir)
        except GitError as exc:
            logger.warning("Could not read remote head before rollback: %s", exc)
            remote = ""

        if attempt.commit_sha and remote == attempt.commit_sha:
            return remote, True
        if remote and remote == attempt.backup_commit:
            return remote, True
        if not remote and attempt.created:
            # The branch never reached the remote
            return None, False
        if remote:
            # Another deployment won the race
            logger.warning(
                "%s moved to %s during deployment; resetting the working copy only",
                self.git.branch, remote[:7],
            )
            attempt.warnings.append(
                f"Remote {self.git.branch} moved to {remote[:7]} during deployment; "
                "rollback was local only"
            )
            return None, False
        return attempt.backup_commit, True

    def _fail(self, attempt: _Attempt, exc: BaseException, message: str) -> None:
        attempt.error = exc
        attempt.status = DeploymentStatus.FAILED
        attempt.message = message
        self._advance(attempt, DeploymentStage.FAILED)

    def _advance(self, attempt: _Attempt, stage: DeploymentStage) -> None:
        logger.info("Deployment %s: %s -> %s", attempt.label, attempt.stage.value, stage.value)
        attempt.stage = stage

    def _release_lock(self, name: str, attempt: _Attempt) -> None:
        try:
            self.locker.release(name)
        except OSError as exc:
            logger.warning("Failed to release deployment lock %s: %s", name, exc)
            attempt.warnings.append(f"Failed to release deployment lock: {exc}")

    def _remove_work_dir(self, attempt: _Attempt) -> None:
        if attempt.work_dir is None:
            return
        try:
            shutil.rmtree(attempt.work_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove work directory %s: %s", attempt.work_dir, exc)
            attempt.warnings.append(f"Failed to remove work directory: {exc}")

    def _finish(self, attempt: _Attempt) -> DeploymentResult:
        result = DeploymentResult(
            status=attempt.status,
            stage=attempt.stage,
            message=attempt.message,
            target_path=str(attempt.target),
            deployment_url=attempt.deployment_url,
            additional_urls=attempt.additional_urls,
            files_deployed=attempt.files_deployed,
            files_removed=attempt.files_removed,
            removed_paths=attempt.removed_paths,
            backup_ref=attempt.backup_ref,
            backup_commit=attempt.backup_commit,
            commit_sha=attempt.commit_sha,
            dry_run=attempt.options.dry_run,
            warnings=attempt.warnings,
            duration_seconds=time.monotonic() - attempt.started,
        )
        if attempt.error is None:
            logger.info("Deployment %s finished: %s", attempt.label, result.message)
            return result

        if attempt.rollback_error is not None:
            raise RollbackError(
                result.message, result, attempt.error, attempt.rollback_error,
            ) from attempt.rollback_error
        raise DeploymentError(result.message, result) from attempt.error

    # -- Other operations -----------------------------------------------------

    def verify(
        self, result: DeploymentResult, *, cancel: threading.Event | None = None,
    ) -> None:
        """Check that a finished deployment's URLs respond.

        Dry runs are never verified.

        Raises
        ------
        VerificationError
            If any URL did not answer with ``200``.
        """
        if result.dry_run:
            return
        report = self.verifier.verify(
            [result.deployment_url, *result.additional_urls], cancel=cancel,
        )
        if not report.passed:
            raise VerificationError(report)

    def rollback(self, backup: str, *, expected_remote: str | None = None) -> None:
        """Reset the pages branch to *backup* and push it.

        *backup* is usually ``DeploymentResult.backup_commit``; backup refs
        only exist in the working copy that created them.  With
        *expected_remote* the push only replaces that exact remote commit.
        """
        if not backup:
            raise ValueError("no backup reference provided for rollback")

        work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=self.work_root))
        try:
            if self.git.clone_or_create(work_dir):
                raise ValueError(f"branch {self.git.branch!r} does not exist on the remote")
            self.git.rollback(work_dir, backup, expected_remote=expected_remote)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
        logger.info("Rolled back %s to %s", self.git.branch, backup)

    def list_deployments(self, limit: int = 20) -> list[DeploymentInfo]:
        """Read recent deployment commits from the pages branch.

        Returns an empty list if the branch does not exist yet.
        """
        work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=self.work_root))
        try:
            if self.git.clone_or_create(work_dir):
                return []
            entries = self.git.history(work_dir, limit)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        deployments: list[DeploymentInfo] = []
        for entry in entries:
            info = self._parse_deployment(entry.sha, entry.author, entry.date, entry.message)
            if info is not None:
                deployments.append(info)
        return deployments

    def _parse_deployment(
        self, sha: str, author: str, date: str, message: str,
    ) -> DeploymentInfo | None:
        if not message.startswith("Deploy coverage"):
            return None

        pr_number = branch = ""
        pr_match = _PR_MESSAGE.match(message)
        branch_match = _BRANCH_MESSAGE.match(message) or _MAIN_MESSAGE.match(message)
        if pr_match:
            pr_number = pr_match.group("pr")
        elif branch_match:
            branch = branch_match.group("branch")

        if pr_number or branch:
            event = "pull_request" if pr_number else "push"
            options = DeploymentOptions(
                repository=self.repository, branch=branch, pr_number=pr_number,
                event_name=event,
            )
        else:
            options = DeploymentOptions(
                repository=self.repository, target_path=DeploymentPath.root_path(),
            )

        try:
            url = self.get_deployment_url(options)
        except ValueError:
            url = ""
        try:
            when = datetime.fromisoformat(date) if date else None
        except ValueError:
            when = None

        return DeploymentInfo(
            commit_sha=sha,
            message=message,
            author=author,
            deployment_time=when,
            branch=branch,
            pr_number=pr_number,
            url=url,
        )


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
