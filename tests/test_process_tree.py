from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

import allure
import pytest

from code_evals.evals import process_tree
from code_evals.evals.process_tree import (
    PosixProcessTreeKiller,
    WindowsProcessTreeKiller,
    descendants_from_table,
    select_process_tree_killer,
)

pytestmark = [allure.epic("Grading"), allure.feature("Process Tree")]


def test_descendants_are_walked_breadth_first() -> None:
    table = [(10, 1), (12, 10), (11, 10), (13, 11), (14, 12), (20, 1), (30, 30)]

    assert descendants_from_table(table, 10) == [11, 12, 13, 14]
    assert descendants_from_table(table, 20) == []
    assert descendants_from_table(table, 30) == []


def test_killer_matches_platform() -> None:
    assert isinstance(select_process_tree_killer("win32"), WindowsProcessTreeKiller)
    assert isinstance(select_process_tree_killer("linux"), PosixProcessTreeKiller)
    assert isinstance(select_process_tree_killer("darwin"), PosixProcessTreeKiller)


def test_proc_table_handles_parens_in_command_names(tmp_path: Path) -> None:
    for pid, stat in {
        "100": "100 (python (worker)) S 1 100 100 0",
        "101": "101 (sh) S 100 100 100 0",
        "102": "102 (broken)",
    }.items():
        (tmp_path / pid).mkdir()
        (tmp_path / pid / "stat").write_text(stat, "utf-8")
    (tmp_path / "self").mkdir()
    (tmp_path / "103").mkdir()

    killer = PosixProcessTreeKiller(proc_root=tmp_path)

    assert sorted(killer.process_table()) == [(100, 1), (101, 100)]
    assert killer.descendants(1) == [100, 101]


def test_ps_is_used_without_proc(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(process_tree, "_read_ps_table", lambda: [(5, 1), (6, 5), (7, 6)])

    killer = PosixProcessTreeKiller(proc_root=tmp_path / "missing")

    assert killer.descendants(5) == [6, 7]


def test_pid_pair_parser_skips_headers_and_noise() -> None:
    lines = ["  PID  PPID", "    5     1", "garbage", "7 5", "8 x", ""]

    assert list(process_tree._parse_pid_pairs(lines)) == [(5, 1), (7, 5)]


def test_windows_killer_uses_taskkill_tree(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(command: list[str], **_kwargs: object) -> SimpleNamespace:
        calls.append(command)
        if command[0] == "powershell":
            return SimpleNamespace(returncode=0, stdout="4 1\r\n5 4\r\n6 5\r\n", stderr="")
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(process_tree.subprocess, "run", fake_run)

    killed = WindowsProcessTreeKiller().kill_tree(4)

    assert killed == [5, 6, 4]
    assert calls[-1] == ["taskkill", "/PID", "4", "/T", "/F"]


def test_windows_killer_reports_nothing_when_taskkill_fails(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        process_tree.subprocess,
        "run",
        lambda command, **_kwargs: SimpleNamespace(returncode=128, stdout="", stderr="denied"),
    )

    assert WindowsProcessTreeKiller().kill_tree(4) == []


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX signals")
def test_kill_tree_terminates_parent_and_children() -> None:
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    parent = subprocess.Popen(
        [sys.executable, "-c", script],
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert parent.stdout is not None
        child_pid = int(parent.stdout.readline())

        killed = select_process_tree_killer().kill_tree(parent.pid)

        assert killed == [child_pid, parent.pid]
        assert parent.wait(timeout=10) == -9
    finally:
        if parent.poll() is None:
            parent.kill()
            parent.wait()
        if parent.stdout is not None:
            parent.stdout.close()
