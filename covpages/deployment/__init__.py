"""Deployment Pipeline.

Resolves the target directory, cleans stale files, publishes artifacts to
the pages branch with rollback on failure, and verifies the published URLs.
"""

from covpages.deployment.cleanup import CleanupEngine, CleanupResult, FileCleanup
from covpages.deployment.config_manager import ConfigManager, DeploySettings
from covpages.deployment.manager import (
    DeploymentError,
    DeploymentManager,
    PagesDeployer,
    RollbackError,
    build_commit_message,
)
from covpages.deployment.models import DeploymentOptions, DeploymentResult
from covpages.deployment.paths import DeploymentPath, build_deployment_path
from covpages.deployment.verify import CheckResult, URLVerifier, VerificationReport

__all__ = [
    "CheckResult",
    "CleanupEngine",
    "CleanupResult",
    "ConfigManager",
    "DeploySettings",
    "DeploymentError",
    "DeploymentManager",
    "DeploymentOptions",
    "DeploymentPath",
    "DeploymentResult",
    "FileCleanup",
    "PagesDeployer",
    "RollbackError",
    "URLVerifier",
    "VerificationReport",
    "build_commit_message",
    "build_deployment_path",
]
