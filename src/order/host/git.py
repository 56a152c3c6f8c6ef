from __future__ import annotations

import subprocess
from pathlib import Path

import structlog

logger = structlog.get_logger()


class GitCommandError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, message: str, *, args: list[str], exit_code: int) -> None:
        super().__init__(message)
        self.git_args = args
        self.exit_code = exit_code


class Workspace:
    """The single shared working tree and its checked-out branch."""

    def __init__(self, repo_root: Path, *, trunk: str = "main", remote: str = "origin") -> None:
        self.repo_root = repo_root.resolve()
        self.trunk = trunk
        self.remote = remote

    @property
    def remote_trunk(self) -> str:
        return f"{self.remote}/{self.trunk}"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                args=args,
                exit_code=proc.returncode,
            )
        return proc

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head_commit(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def fetch(self, ref: str | None = None) -> None:
        args = ["fetch", self.remote]
        if ref:
            args.append(ref)
        self._run_git(args)

    def start_task_branch(self, branch: str) -> None:
        """Create (or reset) ``branch`` at the freshly fetched trunk and check it out."""
        self.fetch(self.trunk)
        self._run_git(["checkout", "-B", branch, self.remote_trunk])

    def checkout_remote_branch(self, branch: str) -> None:
        self.fetch(branch)
        self._run_git(["checkout", "-B", branch, f"{self.remote}/{branch}"])

    def return_to_trunk(self) -> bool:
        """Check out trunk, discarding tracked edits. Never raises."""
        proc = self._run_git(["checkout", "-f", self.trunk], check=False)
        if proc.returncode != 0:
            logger.error(
                "return_to_trunk_failed",
                trunk=self.trunk,
                error=proc.stderr.strip() or proc.stdout.strip(),
            )
            return False
        return True

    def pull_trunk(self) -> None:
        self._run_git(["checkout", "-f", self.trunk])
        self._run_git(["pull", "--ff-only", self.remote, self.trunk])

    def conflicted_paths(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def rebase_onto_trunk(self) -> list[str]:
        """Rebase the current branch onto the remote trunk.

        Returns the conflicting paths; an empty list means the rebase applied.
        A conflicting rebase is aborted before returning.
        """
        self.fetch(self.trunk)
        proc = self._run_git(["rebase", self.remote_trunk], check=False)
        if proc.returncode == 0:
            return []
        conflicts = self.conflicted_paths()
        self._run_git(["rebase", "--abort"], check=False)
        if not conflicts:
            raise GitCommandError(
                proc.stderr.strip() or proc.stdout.strip() or "git rebase failed",
                args=["rebase", self.remote_trunk],
                exit_code=proc.returncode,
            )
        return conflicts

    def reset_hard(self, commit: str) -> None:
        self._run_git(["reset", "--hard", commit])

    def push(self, branch: str, *, force: bool = False) -> None:
        args = ["push"]
        if force:
            args.append("--force-with-lease")
        args.extend([self.remote, f"HEAD:refs/heads/{branch}"])
        self._run_git(args)

    def stage_paths(self, paths: list[str]) -> list[str]:
        """Stage changes under ``paths`` and return everything now staged there."""
        existing = [path for path in paths if (self.repo_root / path).exists()]
        if not existing:
            return []
        self._run_git(["add", "-A", "--", *existing])
        proc = self._run_git(["diff", "--cached", "--name-only", "--", *existing])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def commit(self, message: str) -> str:
        self._run_git(["commit", "-m", message])
        return self.head_commit()
