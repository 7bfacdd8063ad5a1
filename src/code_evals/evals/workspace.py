"""Git isolation of the exercises checkout around a run."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any
from uuid import uuid4

from code_evals.evals.errors import WorkspaceError

logger = logging.getLogger(__name__)

GIT_USER_NAME = "Code Evals"
GIT_USER_EMAIL = "code-evals@localhost"
SETTINGS_FILE_NAME = "settings.json"


class GitWorkspace:
    """Resets the exercises checkout, branches per run and commits the results."""

    def __init__(
        self,
        root: Path,
        *,
        base_branch: str = "main",
        timeout_seconds: int = 120,
    ) -> None:
        self.root = root
        self.base_branch = base_branch
        self.timeout_seconds = timeout_seconds

    def prepare_run_branch(self, run_id: int) -> str:
        """Discard local changes and check out a fresh ``runs/<id>-<hex8>`` branch."""

        self._git("config", "user.name", GIT_USER_NAME)
        self._git("config", "user.email", GIT_USER_EMAIL)
        self._git("checkout", "-f")
        self._git("clean", "-fd")
        branch = f"runs/{run_id}-{uuid4().hex[:8]}"
        self._git("checkout", "-b", branch, self.base_branch)
        logger.info("Exercises checkout on branch %s", branch)
        return branch

    def write_settings(self, settings: dict[str, Any]) -> Path:
        path = self.root / SETTINGS_FILE_NAME
        path.write_text(json.dumps(settings, indent=2) + "\n", "utf-8")
        return path

    def commit_run(self, run_id: int) -> bool:
        """Commit everything the run produced. Returns False when there was nothing to commit."""

        self._git("add", ".")
        status = self._git("status", "--porcelain")
        if not status.strip():
            logger.info("Run #%s left no changes to commit", run_id)
            return False
        self._git("commit", "-m", f"Run #{run_id}", "--no-verify")
        logger.info("Committed results of run #%s", run_id)
        return True

    def _git(self, *args: str) -> str:
        command = ["git", *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=self.root,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise WorkspaceError(
                f"git command timed out: {' '.join(command)}",
                command=" ".join(command),
            ) from error
        except OSError as error:
            raise WorkspaceError(
                f"git command failed to start: {error}",
                command=" ".join(command),
            ) from error
        if completed.returncode != 0:
            raise WorkspaceError(
                f"git command failed with exit code {completed.returncode}: {' '.join(command)}",
                command=" ".join(command),
                stderr=completed.stderr.strip(),
            )
        return completed.stdout
