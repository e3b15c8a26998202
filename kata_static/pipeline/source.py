"""Source tree preconditions.

This module handles:
- Resolving the commit a run builds when none was requested
- Checking that the tree is at the commit a run was asked to build
- Running the rebase helper when a target branch was requested

Git mechanics themselves live in the helper script; the orchestrator only
treats a non-zero exit as a fatal precondition failure.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from pathlib import Path

from kata_static.errors import SourceSyncError

logger = logging.getLogger(__name__)


def _git(args: list[str], source_dir: Path, timeout: int) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=source_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise SourceSyncError(
            f"git {' '.join(args)} failed in {source_dir}: {e.stderr.strip()}",
            code="commit_unresolved",
        ) from e
    except subprocess.TimeoutExpired as e:
        raise SourceSyncError(
            f"git {' '.join(args)} timed out after {timeout}s",
            code="commit_unresolved",
        ) from e
    except OSError as e:
        raise SourceSyncError(
            f"Failed to run git in {source_dir}: {e}",
            code="commit_unresolved",
        ) from e

    output = result.stdout.strip()
    if not output:
        raise SourceSyncError(
            f"git {' '.join(args)} returned no commit in {source_dir}",
            code="commit_unresolved",
        )
    return output


def resolve_commit_ref(source_dir: Path, timeout: int = 60) -> str:
    """Return the commit currently checked out in a source tree.

    Args:
        source_dir: Path to the git checkout.
        timeout: Command timeout in seconds.

    Returns:
        Full commit hash of HEAD.

    Raises:
        SourceSyncError: If the commit cannot be resolved.
    """
    return _git(["rev-parse", "HEAD"], source_dir, timeout)


def verify_commit_ref(source_dir: Path, commit_ref: str, timeout: int = 60) -> str:
    """Check that the source tree is checked out at the requested commit.

    The ref may be a full or abbreviated hash, a tag or a branch; it is
    resolved to a commit and compared with HEAD.

    Returns:
        Full commit hash of HEAD.

    Raises:
        SourceSyncError: If the ref cannot be resolved or HEAD differs.
    """
    requested = _git(
        ["rev-parse", "--verify", "--quiet", f"{commit_ref}^{{commit}}"],
        source_dir,
        timeout,
    )
    head = resolve_commit_ref(source_dir, timeout)
    if requested != head:
        raise SourceSyncError(
            f"Source tree {source_dir} is at {head}, not at requested "
            f"commit {commit_ref} ({requested})",
            code="commit_mismatch",
        )
    return head


def sync_source_tree(
    source_dir: Path,
    target_branch: str | None,
    command: str,
    timeout: int | None = None,
) -> bool:
    """Rebase the source tree atop the latest target branch.

    Nothing is run when no target branch was requested.

    Args:
        source_dir: Path to the git checkout.
        target_branch: Branch to rebase onto, or None.
        command: Helper command line, run from source_dir.
        timeout: Command timeout in seconds.

    Returns:
        True if the helper ran, False if it was skipped.

    Raises:
        SourceSyncError: If the helper fails.
    """
    if not target_branch:
        logger.info("No target branch requested, skipping rebase")
        return False

    cmd = shlex.split(command)
    env = dict(os.environ)
    env["TARGET_BRANCH"] = target_branch

    logger.info("Rebasing %s atop %s: %s", source_dir, target_branch, command)
    try:
        result = subprocess.run(
            cmd,
            cwd=source_dir,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SourceSyncError(
            f"Rebase onto {target_branch} timed out after {timeout}s",
            code="rebase_timeout",
        ) from e
    except OSError as e:
        raise SourceSyncError(
            f"Failed to run rebase helper: {e}",
            code="rebase_error",
        ) from e

    if result.returncode != 0:
        raise SourceSyncError(
            f"Rebase onto {target_branch} failed with exit code "
            f"{result.returncode}: {result.stderr.strip()}",
            code="rebase_failed",
        )
    return True


__all__ = ["resolve_commit_ref", "sync_source_tree", "verify_commit_ref"]
