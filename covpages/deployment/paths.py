"""Map CI event context to the subdirectory a deployment is published under."""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, model_validator

from covpages.config import DEFAULT_MAIN_BRANCHES

PR_EVENTS = frozenset({"pull_request", "pull_request_target"})

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_MERGE_SUFFIX = "/merge"


class PathType(str, Enum):
    """Kind of deployment target."""

    ROOT = "root"
    MAIN = "main"
    BRANCH = "branch"
    PR = "pr"


class DeploymentPath(BaseModel):
    """Target directory of a deployment: ``<root>/<identifier>``.

    The root path has an empty ``root`` and ``identifier`` and renders as
    ``""``.  Every other type uses its own name as ``root``.
    """

    model_config = ConfigDict(frozen=True)

    type: PathType
    root: str = ""
    identifier: str = ""

    @model_validator(mode="after")
    def _check_shape(self) -> DeploymentPath:
        if self.type is PathType.ROOT:
            if self.root or self.identifier:
                raise ValueError("root deployment path must have empty root and identifier")
            return self
        if self.root != self.type.value:
            raise ValueError(
                f"{self.type.value} deployment path must use root {self.type.value!r}, "
                f"got {self.root!r}"
            )
        if not self.identifier:
            raise ValueError(f"{self.type.value} deployment path needs an identifier")
        if self.identifier in (".", "..") or _UNSAFE_CHARS.search(self.identifier):
            raise ValueError(f"unsafe deployment identifier: {self.identifier!r}")
        return self

    def __str__(self) -> str:
        if self.type is PathType.ROOT:
            return ""
        return f"{self.root}/{self.identifier}"

    @classmethod
    def root_path(cls) -> DeploymentPath:
        return cls(type=PathType.ROOT)


def sanitize_branch_name(branch: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_.-]`` with ``-``.

    One output character per input character, so the length never changes.
    Names made only of dots would walk out of the target directory and are
    dashed as well.
    """
    cleaned = _UNSAFE_CHARS.sub("-", branch)
    if cleaned and set(cleaned) == {"."}:
        cleaned = "-" * len(cleaned)
    return cleaned


def parse_main_branches(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Parse a comma-separated list (or iterable) of main-branch names."""
    if value is None:
        return DEFAULT_MAIN_BRANCHES
    items = value.split(",") if isinstance(value, str) else list(value)
    branches = tuple(b.strip() for b in items if b and b.strip())
    return branches or DEFAULT_MAIN_BRANCHES


def is_merge_ref(ref: str) -> bool:
    """Return True for CI merge refs such as ``42/merge`` or ``refs/pull/42/merge``."""
    return len(ref) > len(_MERGE_SUFFIX) and ref.endswith(_MERGE_SUFFIX)


def clean_merge_ref(branch: str) -> str:
    """Strip a trailing ``/merge`` from *branch*."""
    if is_merge_ref(branch):
        return branch[: -len(_MERGE_SUFFIX)]
    return branch


def merge_ref_number(ref: str) -> str:
    """Return the PR number encoded in a merge ref, or ``""``."""
    if not is_merge_ref(ref):
        return ""
    last = clean_merge_ref(ref).rsplit("/", 1)[-1]
    return last if last.isdigit() else ""


def build_deployment_path(
    event_name: str,
    branch: str,
    pr_number: str = "",
    main_branches: Iterable[str] = DEFAULT_MAIN_BRANCHES,
) -> DeploymentPath:
    """Classify a deployment as ``pr``, ``main`` or ``branch``.

    Parameters
    ----------
    event_name:
        CI event (``push``, ``pull_request``, ...).
    branch:
        Source branch or ref.
    pr_number:
        Pull request number, empty when not a PR build.
    main_branches:
        Names treated as main branches.
    """
    pr_number = (pr_number or "").strip()
    branch = (branch or "").strip()

    merge_number = merge_ref_number(branch)
    is_pr = (
        bool(merge_number)
        or (bool(pr_number) and event_name in PR_EVENTS)
        or (bool(pr_number) and is_merge_ref(branch))
        or (bool(pr_number) and not branch)
    )
    if is_pr:
        return DeploymentPath(
            type=PathType.PR,
            root=PathType.PR.value,
            identifier=sanitize_branch_name(pr_number or merge_number),
        )

    clean = clean_merge_ref(branch) or "unknown"
    identifier = sanitize_branch_name(clean)

    if clean in set(main_branches):
        return DeploymentPath(type=PathType.MAIN, root=PathType.MAIN.value, identifier=identifier)

    return DeploymentPath(type=PathType.BRANCH, root=PathType.BRANCH.value, identifier=identifier)
