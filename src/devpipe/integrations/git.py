"""Git subprocess wrappers for syncing a project's local clone."""

import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None, timeout: float | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def pull(repo_path: str | Path, branch: str = "main", timeout: float | None = 30.0) -> str:
    """Fast-forward the local clone's branch from origin."""
    return run_git(["pull", "--ff-only", "origin", branch], cwd=repo_path, timeout=timeout)


def remote_url(repo_path: str | Path) -> str | None:
    """The origin URL of a clone, or None when it has no origin."""
    try:
        return run_git(["remote", "get-url", "origin"], cwd=repo_path, timeout=5) or None
    except GitError:
        return None
