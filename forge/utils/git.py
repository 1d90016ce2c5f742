"""Git operations wrapper."""

import logging
from pathlib import Path

from ..errors import ExternalOperationFailure
from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)

RESET_MODES = ("soft", "mixed", "hard")


class GitError(ExternalOperationFailure):
    """Git operation error."""

    def __init__(self, message: str):
        super().__init__("git", message)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


class GitOps:
    """Git operations for one working directory."""

    def __init__(self, repo_root: Path, timeout_sec: int = 30):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
        """
        self.repo_root = Path(repo_root)
        self.timeout_sec = timeout_sec
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(self, args: list[str], check: bool = True) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        try:
            result = await self.manager.run(command, cwd=self.repo_root)
        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {e}")

        if result["timed_out"]:
            raise GitError(f"Git command timed out: {' '.join(args)}")
        if check and not result["success"]:
            raise GitError(f"Git command failed: {' '.join(args)}\n{result['output']}")

        return result

    async def is_repo(self) -> bool:
        """Check whether the directory is inside a git work tree."""
        if not self.repo_root.is_dir():
            return False
        try:
            result = await self.run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except GitError:
            return False
        return result["success"] and _last_line(result["output"]) == "true"

    async def get_head(self) -> str | None:
        """Current commit hash, or None on an unborn branch."""
        result = await self.run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if not result["success"]:
            return None
        return _last_line(result["output"])

    async def get_current_branch(self) -> str:
        """Get current branch name.

        Returns:
            Branch name
        """
        result = await self.run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        return _last_line(result["output"])

    async def list_changed_files(self) -> list[str]:
        """Tracked and untracked paths with uncommitted changes."""
        result = await self.run_git(["status", "--porcelain"])
        return [line[3:].strip() for line in result["output"].splitlines() if line.strip()]

    async def has_changes(self) -> bool:
        return bool(await self.list_changed_files())

    async def add_all(self) -> None:
        """Stage every change, including untracked files."""
        await self.run_git(["add", "-A"])

    async def commit(
        self,
        message: str,
        allow_empty: bool = False,
    ) -> str:
        """Commit staged changes.

        Args:
            message: Commit message
            allow_empty: Allow empty commit

        Returns:
            Commit hash
        """
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")

        await self.run_git(args)

        result = await self.run_git(["rev-parse", "HEAD"])
        commit_hash = _last_line(result["output"])
        logger.info(f"Committed: {commit_hash[:8]} - {message.split(chr(10))[0]}")

        return commit_hash

    async def commit_all(self, message: str) -> str | None:
        """Stage and commit everything; no-op on a clean tree.

        Returns:
            Commit hash, or None when there was nothing to commit
        """
        if not await self.has_changes():
            logger.debug("Nothing to commit")
            return None
        await self.add_all()
        return await self.commit(message)

    async def reset(self, ref: str, mode: str = "hard") -> None:
        """Reset the current branch to a commit.

        Args:
            ref: Commit or ref to reset to
            mode: soft, mixed or hard

        Raises:
            ValueError: On an unknown mode
            GitError: If git rejects the reset
        """
        if mode not in RESET_MODES:
            raise ValueError(f"Unknown reset mode: {mode}")
        await self.run_git(["reset", f"--{mode}", ref])
        logger.info(f"Reset {self.repo_root} to {ref[:8]} ({mode})")
