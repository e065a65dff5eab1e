from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from agman.config import sanitize_branch

logger = logging.getLogger(__name__)


class WorkspaceError(RuntimeError):
    """Raised when a repository or worktree cannot be prepared or removed."""


class GitWorktreeProvisioner:
    """Creates one git worktree per task under ``<repos_dir>/<repo>-wt/``."""

    def __init__(self, repos_dir: Path) -> None:
        self.repos_dir = repos_dir

    def repo_path(self, repo_name: str) -> Path:
        return self.repos_dir / repo_name

    def worktree_path(self, repo_name: str, branch_name: str) -> Path:
        return self.repos_dir / f"{repo_name}-wt" / sanitize_branch(branch_name)

    @staticmethod
    def _run_git(
        args: list[str], cwd: Path, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=cwd,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise WorkspaceError(f"Failed to run git {args[0]}: {exc}") from exc
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _require_repo(self, repo_name: str) -> Path:
        repo = self.repo_path(repo_name)
        if not (repo / ".git").exists():
            raise WorkspaceError(f"Repository '{repo_name}' not found at {repo}")
        return repo

    def branch_exists(self, repo_name: str, branch_name: str) -> bool:
        repo = self._require_repo(repo_name)
        proc = self._run_git(["rev-parse", "--verify", "--quiet", branch_name], repo, check=False)
        return proc.returncode == 0

    def provision(
        self,
        repo_name: str,
        branch_name: str,
        *,
        existing_branch: bool | None = None,
    ) -> Path:
        repo = self._require_repo(repo_name)
        worktree = self.worktree_path(repo_name, branch_name)
        if worktree.exists():
            logger.info("reusing existing worktree %s", worktree)
            return worktree

        if existing_branch is None:
            existing_branch = self.branch_exists(repo_name, branch_name)
        worktree.parent.mkdir(parents=True, exist_ok=True)
        if existing_branch:
            self._run_git(["worktree", "add", str(worktree), branch_name], repo)
        else:
            self._run_git(["worktree", "add", "-b", branch_name, str(worktree)], repo)
        logger.info("created worktree %s for %s/%s", worktree, repo_name, branch_name)
        return worktree

    def remove(self, repo_name: str, worktree_path: Path, branch_name: str | None = None) -> None:
        repo = self._require_repo(repo_name)
        if worktree_path.exists():
            self._run_git(["worktree", "remove", "--force", str(worktree_path)], repo)
            logger.info("removed worktree %s", worktree_path)
        if branch_name:
            proc = self._run_git(["branch", "-D", branch_name], repo, check=False)
            if proc.returncode != 0:
                logger.warning("could not delete branch %s: %s", branch_name, proc.stderr.strip())

    def ensure_excluded(self, worktree_path: Path, entry: str) -> bool:
        """Add ``entry`` to the shared ``info/exclude`` file; returns True when it was added."""
        proc = self._run_git(["rev-parse", "--git-common-dir"], worktree_path)
        common_dir = Path(proc.stdout.strip())
        if not common_dir.is_absolute():
            common_dir = worktree_path / common_dir
        exclude = common_dir / "info" / "exclude"
        existing = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if any(line.strip() in {entry, f"/{entry}"} for line in existing.splitlines()):
            return False
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude.write_text(f"{existing}{prefix}{entry}\n", encoding="utf-8")
        return True
