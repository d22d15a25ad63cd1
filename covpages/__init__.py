"""covpages — publish coverage reports to a static-hosting git branch."""

__version__ = "1.0.0"

from covpages.deployment.cleanup import (
    CleanupPatternCriticalError,
    CleanupResult,
    FileCleanup,
    WorkDirMissingError,
    default_cleanup_patterns,
    default_preserve_patterns,
)
from covpages.deployment.config_manager import ConfigManager, DeploySettings
from covpages.deployment.manager import (
    DeploymentError,
    DeploymentManager,
    PagesDeployer,
    RollbackError,
)
from covpages.deployment.models import (
    DeploymentInfo,
    DeploymentOptions,
    DeploymentResult,
    DeploymentStage,
    DeploymentStatus,
)
from covpages.deployment.paths import DeploymentPath, PathType, build_deployment_path
from covpages.deployment.verify import URLVerifier, VerificationError
from covpages.retry import OperationCancelled, RetryError, RetryPolicy
from covpages.sync.locking import ExclusiveFileLock, FileLock, LockTimeoutError
from covpages.vcs.repo import GitClient, GitError, PushError

__all__ = [
    "__version__",
    "CleanupPatternCriticalError",
    "CleanupResult",
    "ConfigManager",
    "DeploySettings",
    "DeploymentError",
    "DeploymentInfo",
    "DeploymentManager",
    "DeploymentOptions",
    "DeploymentPath",
    "DeploymentResult",
    "DeploymentStage",
    "DeploymentStatus",
    "ExclusiveFileLock",
    "FileCleanup",
    "FileLock",
    "GitClient",
    "GitError",
    "LockTimeoutError",
    "OperationCancelled",
    "PagesDeployer",
    "PathType",
    "PushError",
    "RetryError",
    "RetryPolicy",
    "RollbackError",
    "URLVerifier",
    "VerificationError",
    "WorkDirMissingError",
    "build_deployment_path",
    "default_cleanup_patterns",
    "default_preserve_patterns",
]
