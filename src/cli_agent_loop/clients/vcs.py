"""Version control collaborator used to auto-commit after productive iterations.

Only ever stages and commits on top of the current branch; history is never
rewritten.
"""

import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable

from cli_agent_loop.errors import VcsError

logger = logging.getLogger(__name__)

# First line of `git commit` output: "[main abc1234] message" or "[main (root-commit) abc1234] ..."
COMMIT_HASH_PATTERN = re.compile(r"^\[[^\]]*?(\w+)\]")


@runtime_checkable
class Vcs(Protocol):
    def commit_all(self, message: str) -> Optional[str]:
        """Stage and commit everything; return the commit hash, or None if clean."""
        ...


class GitVcs:
    """Git implementation of the Vcs protocol."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _run_git(self, args: List[str]) -> subprocess.CompletedProcess:
        command = "git " + " ".join(args)
        try:
            result = subprocess.run(
                ["git", *args], cwd=self.root, capture_output=True, text=True
            )
        except OSError as e:
            raise VcsError(command, str(e)) from e
        if result.returncode != 0:
            raise VcsError(command, (result.stderr or result.stdout).strip())
        return result

    def has_changes(self) -> bool:
        return bool(self._run_git(["status", "--porcelain"]).stdout.strip())

    def stage_all(self) -> None:
        self._run_git(["add", "-A"])

    def commit(self, message: str) -> str:
        result = self._run_git(["commit", "-m", message, "--no-verify"])
        first_line = result.stdout.splitlines()[0] if result.stdout else ""
        match = COMMIT_HASH_PATTERN.match(first_line)
        return match.group(1) if match else "unknown"

    def commit_all(self, message: str) -> Optional[str]:
        if not self.has_changes():
            logger.debug("No changes to commit")
            return None
        self.stage_all()
        commit_hash = self.commit(message)
        logger.info(f"Committed {commit_hash}: {message}")
        return commit_hash


def detect_git_root(path: Path) -> Optional[Path]:
    """Walk up from path looking for a .git entry; None if not in a repository."""
    current = Path(path).resolve()
    if current.is_file():
        current = current.parent
    if shutil.which("git") is None:
        return None
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None
