"""Git operations on the pages branch working copy."""

from covpages.vcs.repo import GitClient, GitError, GitOperations, PushError, github_remote_url

__all__ = ["GitClient", "GitError", "GitOperations", "PushError", "github_remote_url"]
