"""Global configuration: paths, constants, settings."""

import tempfile
from pathlib import Path

# Branch served by the static host
DEFAULT_PAGES_BRANCH = "gh-pages"

# Branch names whose deployments land under main/<name>
DEFAULT_MAIN_BRANCHES = ("master", "main")

# Empty marker committed as the first commit of a fresh pages branch
NOJEKYLL_FILE = ".nojekyll"
INIT_COMMIT_MESSAGE = "Initialize gh-pages branch"

# Committer identity for deployment commits
GIT_USER_NAME = "GitHub Action"
GIT_USER_EMAIL = "action@github.com"

# Backup references live outside refs/heads so they never get pushed
BACKUP_REF_PREFIX = "refs/backup/deployment-"

# Push retry: 3 total attempts, sleeping 1s then 2s
PUSH_ATTEMPTS = 3

# Lock tokens
DEFAULT_LOCK_DIR = Path(tempfile.gettempdir())
LOCK_FILE_PREFIX = "deployment-lock-"
DEFAULT_LOCK_TIMEOUT = 300.0  # 5 minutes
LOCK_POLL_INTERVAL = 1.0

# Post-push verification
DEFAULT_VERIFICATION_TIMEOUT = 30.0
DEFAULT_PROPAGATION_DELAY = 5.0

# Prefix for per-attempt working copies
WORK_DIR_PREFIX = "gh-pages-deploy-"

# Artifacts mirrored at the branch root for main deployments
LATEST_COVERAGE_FILES = ("coverage.html", "coverage.svg")
