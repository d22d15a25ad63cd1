"""ConfigManager — environment profiles, settings and the .env template."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from covpages.config import (
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MAIN_BRANCHES,
    DEFAULT_PAGES_BRANCH,
    DEFAULT_PROPAGATION_DELAY,
    DEFAULT_VERIFICATION_TIMEOUT,
    LOCK_POLL_INTERVAL,
)
from covpages.deployment.cleanup import default_cleanup_patterns
from covpages.deployment.models import DeploymentOptions
from covpages.deployment.paths import build_deployment_path, parse_main_branches

logger = logging.getLogger(__name__)

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "COVPAGES_ENV": {"default": "development", "description": "Environment profile"},
    "COVPAGES_PAGES_BRANCH": {"default": DEFAULT_PAGES_BRANCH, "description": "Branch served by the static host"},
    "COVPAGES_MAIN_BRANCHES": {"default": ",".join(DEFAULT_MAIN_BRANCHES), "description": "Comma-separated main branch names"},
    "COVPAGES_LOCK_DIR": {"default": "", "description": "Lock token directory (empty = system temp dir)"},
    "COVPAGES_LOCK_STRATEGY": {"default": "exclusive", "description": "Lock strategy: exclusive or advisory"},
    "COVPAGES_LOCK_TIMEOUT": {"default": str(DEFAULT_LOCK_TIMEOUT), "description": "Seconds to wait for the deployment lock"},
    "COVPAGES_VERIFY_TIMEOUT": {"default": str(DEFAULT_VERIFICATION_TIMEOUT), "description": "Per-URL verification timeout (0 disables)"},
    "COVPAGES_PROPAGATION_DELAY": {"default": str(DEFAULT_PROPAGATION_DELAY), "description": "Seconds to wait before verifying URLs"},
    "COVPAGES_DRY_RUN": {"default": "false", "description": "Compute but do not push"},
    "COVPAGES_FORCE": {"default": "false", "description": "Force-push deployments"},
    "COVPAGES_CLEANUP_PATTERNS": {"default": "", "description": "Comma-separated removal patterns (empty = built-in list)"},
    "COVPAGES_BASE_URL": {"default": "", "description": "Published site root (empty = https://<owner>.github.io/<repo>)"},
    "COVPAGES_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "GITHUB_REPOSITORY": {"default": "", "description": "owner/repo being deployed"},
    "GITHUB_TOKEN": {"default": "", "description": "Token used to push (secret)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "COVPAGES_ENV": "development",
        "COVPAGES_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "COVPAGES_ENV": "production",
        "COVPAGES_LOG_LEVEL": "INFO",
    },
    "testing": {
        "COVPAGES_ENV": "testing",
        "COVPAGES_LOG_LEVEL": "DEBUG",
        "COVPAGES_DRY_RUN": "true",
        "COVPAGES_VERIFY_TIMEOUT": "0",
        "COVPAGES_PROPAGATION_DELAY": "0",
    },
}

_TRUE = {"1", "true", "yes", "on"}


def _as_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE


def _as_float(key: str, value: str, default: float) -> float:
    if not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}") from None


class DeploySettings(BaseModel):
    """Typed view of the merged configuration."""

    env: str = "development"
    pages_branch: str = DEFAULT_PAGES_BRANCH
    main_branches: tuple[str, ...] = DEFAULT_MAIN_BRANCHES
    lock_dir: str = ""
    lock_strategy: str = "exclusive"
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    lock_poll_interval: float = LOCK_POLL_INTERVAL
    verification_timeout: float = DEFAULT_VERIFICATION_TIMEOUT
    propagation_delay: float = DEFAULT_PROPAGATION_DELAY
    dry_run: bool = False
    force: bool = False
    cleanup_patterns: list[str] = Field(default_factory=default_cleanup_patterns)
    base_url: str = ""
    log_level: str = "INFO"
    repository: str = ""
    token: str = Field(default="", repr=False)

    @classmethod
    def from_config(cls, config: dict[str, str]) -> DeploySettings:
        """Parse the flat string dict returned by :meth:`ConfigManager.load_config`."""
        patterns = [
            p.strip() for p in config.get("COVPAGES_CLEANUP_PATTERNS", "").split(",") if p.strip()
        ]
        return cls(
            env=config.get("COVPAGES_ENV", "development"),
            pages_branch=config.get("COVPAGES_PAGES_BRANCH") or DEFAULT_PAGES_BRANCH,
            main_branches=parse_main_branches(config.get("COVPAGES_MAIN_BRANCHES")),
            lock_dir=config.get("COVPAGES_LOCK_DIR", ""),
            lock_strategy=config.get("COVPAGES_LOCK_STRATEGY") or "exclusive",
            lock_timeout=_as_float(
                "COVPAGES_LOCK_TIMEOUT", config.get("COVPAGES_LOCK_TIMEOUT", ""), DEFAULT_LOCK_TIMEOUT,
            ),
            verification_timeout=_as_float(
                "COVPAGES_VERIFY_TIMEOUT", config.get("COVPAGES_VERIFY_TIMEOUT", ""),
                DEFAULT_VERIFICATION_TIMEOUT,
            ),
            propagation_delay=_as_float(
                "COVPAGES_PROPAGATION_DELAY", config.get("COVPAGES_PROPAGATION_DELAY", ""),
                DEFAULT_PROPAGATION_DELAY,
            ),
            dry_run=_as_bool(config.get("COVPAGES_DRY_RUN", "false")),
            force=_as_bool(config.get("COVPAGES_FORCE", "false")),
            cleanup_patterns=patterns or default_cleanup_patterns(),
            base_url=config.get("COVPAGES_BASE_URL", ""),
            log_level=config.get("COVPAGES_LOG_LEVEL", "INFO"),
            repository=config.get("GITHUB_REPOSITORY", ""),
            token=config.get("GITHUB_TOKEN", ""),
        )

    def build_options(
        self,
        files: dict[str, bytes],
        *,
        branch: str,
        commit_sha: str,
        event_name: str = "push",
        pr_number: str = "",
        repository: str | None = None,
    ) -> DeploymentOptions:
        """Combine CI context with these settings into deployment options."""
        target = build_deployment_path(event_name, branch, pr_number, self.main_branches)
        return DeploymentOptions(
            files=files,
            repository=repository or self.repository,
            branch=branch,
            commit_sha=commit_sha,
            pr_number=pr_number,
            event_name=event_name,
            target_path=target,
            cleanup_patterns=list(self.cleanup_patterns),
            dry_run=self.dry_run,
            force=self.force,
            verification_timeout=self.verification_timeout,
        )


class ConfigManager:
    """Manage deployment configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# covpages configuration template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        # 1. Defaults
        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        # 2. Profile overrides
        env_name = os.environ.get("COVPAGES_ENV", config.get("COVPAGES_ENV", "development"))
        profile = _PROFILES.get(env_name, {})
        config.update(profile)

        # 3. .covpages/config.json
        config_json = root / ".covpages" / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
                for k, v in data.items():
                    if isinstance(v, list):
                        v = ",".join(str(i) for i in v)
                    config[k] = str(v)
            except (json.JSONDecodeError, OSError):
                logger.debug("Could not read config.json", exc_info=True)

        # 4. .env file
        env_file = root / ".env"
        if env_file.is_file():
            try:
                for line in env_file.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        k, v = line.split("=", 1)
                        config[k.strip()] = v.strip()
            except OSError:
                logger.debug("Could not read .env", exc_info=True)

        # 5. Environment variables override all
        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config

    def load_settings(self, project_path: str | Path) -> DeploySettings:
        """Load and parse configuration into :class:`DeploySettings`."""
        return DeploySettings.from_config(self.load_config(project_path))

    def configure_logging(self, settings: DeploySettings) -> None:
        """Apply the configured log level to the root logger."""
        level = getattr(logging, settings.log_level.upper(), None)
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {settings.log_level!r}")
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        logging.getLogger("covpages").setLevel(level)
