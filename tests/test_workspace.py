from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from code_evals.evals.errors import WorkspaceError
from code_evals.evals.workspace import GitWorkspace

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Git Isolation"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _git(root: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture()
def checkout(tmp_path: Path) -> Path:
    root = tmp_path / "exercises"
    (root / "go" / "hello").mkdir(parents=True)
    (root / "go" / "hello" / "hello.go").write_text("package hello\n", "utf-8")
    _git(root, "init", "-q")
    _git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(root, "config", "user.name", "Fixture")
    _git(root, "config", "user.email", "fixture@localhost")
    _git(root, "config", "commit.gpgsign", "false")
    _git(root, "add", ".")
    _git(root, "commit", "-q", "-m", "initial")
    return root


def test_run_branch_starts_from_clean_main(checkout: Path) -> None:
    (checkout / "go" / "hello" / "hello.go").write_text("dirty\n", "utf-8")
    (checkout / "go" / "hello" / "scratch.txt").write_text("untracked\n", "utf-8")

    branch = GitWorkspace(checkout).prepare_run_branch(5)

    assert branch.startswith("runs/5-")
    assert _git(checkout, "rev-parse", "--abbrev-ref", "HEAD") == branch
    assert (checkout / "go" / "hello" / "hello.go").read_text("utf-8") == "package hello\n"
    assert not (checkout / "go" / "hello" / "scratch.txt").exists()
    assert _git(checkout, "config", "user.name") == "Code Evals"


def test_commit_run_records_settings_and_changes(checkout: Path) -> None:
    workspace = GitWorkspace(checkout)
    workspace.prepare_run_branch(7)
    settings_path = workspace.write_settings({"openRouterModelId": "test/model"})
    (checkout / "go" / "hello" / "hello.go").write_text("package hello\n// solved\n", "utf-8")

    assert workspace.commit_run(7) is True
    assert json.loads(settings_path.read_text("utf-8")) == {"openRouterModelId": "test/model"}
    assert _git(checkout, "log", "-1", "--format=%s") == "Run #7"
    assert _git(checkout, "status", "--porcelain") == ""
    assert workspace.commit_run(7) is False


def test_git_failure_raises_workspace_error(checkout: Path) -> None:
    workspace = GitWorkspace(checkout, base_branch="does-not-exist")

    with pytest.raises(WorkspaceError) as error:
        workspace.prepare_run_branch(1)

    assert "checkout -b" in error.value.command
    assert error.value.stderr
