"""Pydantic models for deployment inputs and outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from covpages.config import DEFAULT_VERIFICATION_TIMEOUT
from covpages.deployment.cleanup import default_cleanup_patterns
from covpages.deployment.paths import DeploymentPath


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    """Final status of a deployment attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentStage(str, Enum):
    """Furthest step a deployment attempt reached."""

    PENDING = "pending"
    LOCK_ACQUIRED = "lock_acquired"
    PREPARED = "prepared"
    COMMITTED = "committed"
    PUSHED = "pushed"
    VERIFIED = "verified"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentOptions(BaseModel):
    """Everything a caller hands over for one publish."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, bytes] = Field(default_factory=dict)
    """Artifact content keyed by path relative to the target directory."""

    repository: str = ""
    """``owner/repo``."""

    branch: str = ""
    commit_sha: str = ""
    pr_number: str = ""
    event_name: str = ""

    target_path: Optional[DeploymentPath] = None
    """Resolved target; computed from the CI context when *None*."""

    cleanup_patterns: list[str] = Field(default_factory=default_cleanup_patterns)
    dry_run: bool = False
    force: bool = False
    verification_timeout: float = DEFAULT_VERIFICATION_TIMEOUT
    """Seconds per URL check; ``0`` disables verification."""

    @field_validator("files")
    @classmethod
    def _check_artifact_paths(cls, files: dict[str, bytes]) -> dict[str, bytes]:
        for name in files:
            path = PurePosixPath(name)
            if not name or name.strip() != name or "\\" in name:
                raise ValueError(f"invalid artifact path: {name!r}")
            if path.is_absolute() or ".." in path.parts or str(path) in (".", ""):
                raise ValueError(f"artifact path must stay inside the target: {name!r}")
            if path.parts[0] == ".git":
                raise ValueError(f"artifact path must not touch .git: {name!r}")
        return files

    @field_validator("verification_timeout")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("verification_timeout must be >= 0")
        return value


class DeploymentResult(BaseModel):
    """Outcome of one :meth:`PagesDeployer.deploy` call."""

    model_config = ConfigDict(frozen=True)

    status: DeploymentStatus = DeploymentStatus.PENDING
    stage: DeploymentStage = DeploymentStage.PENDING
    message: str = ""
    target_path: str = ""
    deployment_url: str = ""
    additional_urls: list[str] = Field(default_factory=list)
    files_deployed: int = 0
    files_removed: int = 0
    """Files deleted by cleanup; directories appear only in ``removed_paths``."""

    removed_paths: list[str] = Field(default_factory=list)
    backup_ref: str = ""
    backup_commit: str = ""
    commit_sha: str = ""
    dry_run: bool = False
    warnings: list[str] = Field(default_factory=list)
    deployment_time: datetime = Field(default_factory=_utc_now)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is DeploymentStatus.SUCCESS


class DeploymentInfo(BaseModel):
    """One past deployment, read back from the pages branch history."""

    commit_sha: str
    message: str
    author: str = ""
    deployment_time: Optional[datetime] = None
    branch: str = ""
    pr_number: str = ""
    url: str = ""
    status: DeploymentStatus = DeploymentStatus.SUCCESS
