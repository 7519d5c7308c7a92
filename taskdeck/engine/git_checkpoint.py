"""Git checkpoints taken around a task, and the revert flow that uses them.

Git runs as an async subprocess so a slow repository never stalls the
event loop. Workspaces that are not git repositories simply have no
checkpoint.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timezone

from .errors import RevertPrecondition
from .models import TaskGitState

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 10.0


class GitCommandError(Exception):
    def __init__(self, args: tuple[str, ...], returncode: int | None, stderr: str):
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed (rc={returncode}): {stderr.strip()}"
        )


async def run_git(cwd: str, *args: str, timeout: float = GIT_TIMEOUT) -> str:
    """Run git in ``cwd`` and return stdout. Raises GitCommandError."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise GitCommandError(args, None, "git executable not found") from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise GitCommandError(args, None, f"timed out after {timeout}s")
    if proc.returncode != 0:
        raise GitCommandError(
            args, proc.returncode, stderr.decode("utf-8", errors="replace")
        )
    return stdout.decode("utf-8", errors="replace")


def _lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class GitCheckpointTracker:
    """Captures before/after commit state and performs reverts."""

    async def is_repo(self, path: str) -> bool:
        try:
            out = await run_git(path, "rev-parse", "--is-inside-work-tree")
        except GitCommandError:
            return False
        return out.strip() == "true"

    async def head(self, path: str) -> str:
        return (await run_git(path, "rev-parse", "HEAD")).strip()

    async def has_uncommitted_changes(self, path: str) -> bool:
        return bool((await run_git(path, "status", "--porcelain")).strip())

    async def fingerprint(self, path: str) -> str:
        """Hash of HEAD, status and the tracked diff."""
        digest = hashlib.sha256()
        digest.update((await self.head(path)).encode())
        digest.update((await run_git(path, "status", "--porcelain")).encode())
        digest.update((await run_git(path, "diff", "HEAD")).encode())
        return digest.hexdigest()

    async def capture_before(self, path: str) -> TaskGitState | None:
        """Snapshot HEAD and dirtiness before a task starts.

        Returns None when ``path`` is not a git repository or has no
        commits yet.
        """
        if not await self.is_repo(path):
            return None
        try:
            commit = await self.head(path)
            uncommitted = await self.has_uncommitted_changes(path)
        except GitCommandError as exc:
            logger.info("No git checkpoint for %s: %s", path, exc)
            return None
        logger.debug(
            "capture_before %s: commit=%s uncommitted=%s", path, commit[:8], uncommitted
        )
        return TaskGitState(
            commit_before=commit,
            uncommitted_before=uncommitted,
            can_revert=not uncommitted,
        )

    async def capture_after(self, path: str, before: TaskGitState) -> TaskGitState:
        """Record the post-task commit, touched files and a tree fingerprint."""
        try:
            commit_after = await self.head(path)
            changed = _lines(
                await run_git(path, "diff", "--name-only", before.commit_before)
            )
            untracked = _lines(
                await run_git(path, "ls-files", "--others", "--exclude-standard")
            )
            fingerprint = await self.fingerprint(path)
        except GitCommandError as exc:
            logger.warning("capture_after failed for %s: %s", path, exc)
            before.can_revert = False
            return before

        files = sorted(set(changed) | set(untracked))
        before.commit_after = commit_after
        before.files_modified = files
        before.tree_fingerprint = fingerprint
        before.can_revert = not before.uncommitted_before and before.reverted_at is None
        logger.info(
            "capture_after %s: %s -> %s, %d file(s), can_revert=%s",
            path, before.commit_before[:8], commit_after[:8], len(files),
            before.can_revert,
        )
        return before

    async def check_revertable(self, path: str, state: TaskGitState) -> None:
        """Raise RevertPrecondition naming the first precondition that fails."""
        if state.reverted_at is not None:
            raise RevertPrecondition("Task changes were already reverted")
        if state.uncommitted_before:
            raise RevertPrecondition(
                "Workspace had uncommitted changes before the task started"
            )
        if not state.can_revert or state.commit_after is None:
            raise RevertPrecondition("No completed checkpoint to revert to")
        try:
            head = await self.head(path)
            fingerprint = await self.fingerprint(path)
        except GitCommandError as exc:
            raise RevertPrecondition(f"Cannot inspect workspace: {exc}") from exc
        if head != state.commit_after:
            raise RevertPrecondition(
                f"HEAD moved since the task finished ({state.commit_after[:8]} -> {head[:8]})"
            )
        if state.tree_fingerprint is not None and fingerprint != state.tree_fingerprint:
            raise RevertPrecondition(
                "Working tree changed since the task finished"
            )

    async def revert(
        self,
        path: str,
        state: TaskGitState,
        clean_untracked: bool = False,
    ) -> list[str]:
        """Hard-reset ``path`` to ``commit_before``.

        Returns the reverted files. ``state`` is updated in place so
        ``can_revert`` is False afterwards.
        """
        await self.check_revertable(path, state)
        try:
            await run_git(path, "reset", "--hard", state.commit_before)
            if clean_untracked:
                await run_git(path, "clean", "-fd")
        except GitCommandError as exc:
            raise RevertPrecondition(f"Revert failed: {exc}") from exc

        state.reverted_at = datetime.now(timezone.utc).isoformat()
        state.can_revert = False
        logger.info(
            "Reverted %s to %s (%d file(s), clean_untracked=%s)",
            path, state.commit_before[:8], len(state.files_modified), clean_untracked,
        )
        return list(state.files_modified)
