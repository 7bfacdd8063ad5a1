"""Recursive process-tree discovery and forced termination."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_TABLE_TIMEOUT_SECONDS = 15


class ProcessTreeKiller(Protocol):
    """Protocol implemented by platform-specific tree killers."""

    def descendants(self, pid: int) -> list[int]:
        """Return every transitive child of ``pid``, parents before children."""

    def kill_tree(self, pid: int) -> list[int]:
        """Force-kill every descendant, then ``pid`` itself; return the pids signalled."""


class PosixProcessTreeKiller:
    """Reads ``/proc`` when available, otherwise ``ps``; kills with SIGKILL."""

    def __init__(self, proc_root: Path = Path("/proc")) -> None:
        self.proc_root = proc_root

    def process_table(self) -> list[tuple[int, int]]:
        if self.proc_root.is_dir():
            return list(_read_proc_table(self.proc_root))
        return _read_ps_table()

    def descendants(self, pid: int) -> list[int]:
        return descendants_from_table(self.process_table(), pid)

    def kill_tree(self, pid: int) -> list[int]:
        victims = self.descendants(pid)
        killed: list[int] = []
        for target in [*victims, pid]:
            if _send_sigkill(target):
                killed.append(target)
        if victims:
            logger.info("Killed process tree of %s: %s", pid, killed)
        return killed


class WindowsProcessTreeKiller:
    """Reads the process table through PowerShell; kills with ``taskkill /T /F``."""

    def process_table(self) -> list[tuple[int, int]]:
        command = [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            "Get-CimInstance Win32_Process | "
            'ForEach-Object { "$($_.ProcessId) $($_.ParentProcessId)" }',
        ]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=_TABLE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("Cannot read Windows process table: %s", error)
            return []
        return list(_parse_pid_pairs(completed.stdout.splitlines()))

    def descendants(self, pid: int) -> list[int]:
        return descendants_from_table(self.process_table(), pid)

    def kill_tree(self, pid: int) -> list[int]:
        victims = self.descendants(pid)
        try:
            completed = subprocess.run(  # noqa: S603
                ["taskkill", "/PID", str(pid), "/T", "/F"],  # noqa: S607
                check=False,
                capture_output=True,
                text=True,
                timeout=_TABLE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("taskkill failed for %s: %s", pid, error)
            return []
        if completed.returncode != 0:
            logger.warning(
                "taskkill exited with %s for %s: %s",
                completed.returncode,
                pid,
                completed.stderr.strip(),
            )
            return []
        return [*victims, pid]


def select_process_tree_killer(platform: str | None = None) -> ProcessTreeKiller:
    name = platform or sys.platform
    if name.startswith("win"):
        return WindowsProcessTreeKiller()
    return PosixProcessTreeKiller()


def descendants_from_table(table: Iterable[tuple[int, int]], root_pid: int) -> list[int]:
    """Breadth-first walk of a ``(pid, ppid)`` table starting below ``root_pid``."""

    children: dict[int, list[int]] = defaultdict(list)
    for pid, ppid in table:
        if pid != ppid:
            children[ppid].append(pid)

    result: list[int] = []
    seen = {root_pid}
    frontier = [root_pid]
    while frontier:
        next_frontier: list[int] = []
        for parent in frontier:
            for child in sorted(children.get(parent, ())):
                if child in seen:
                    continue
                seen.add(child)
                result.append(child)
                next_frontier.append(child)
        frontier = next_frontier
    return result


def _read_proc_table(proc_root: Path) -> Iterable[tuple[int, int]]:
    for entry in proc_root.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text("utf-8", errors="replace")
        except OSError:
            continue
        # "<pid> (<comm>) <state> <ppid> ..."; comm may contain spaces and parens.
        _, _, rest = stat.rpartition(")")
        fields = rest.split()
        if len(fields) < 2 or not fields[1].lstrip("-").isdigit():
            continue
        yield int(entry.name), int(fields[1])


def _read_ps_table() -> list[tuple[int, int]]:
    try:
        completed = subprocess.run(
            ["ps", "-A", "-o", "pid=,ppid="],  # noqa: S607
            check=False,
            capture_output=True,
            text=True,
            timeout=_TABLE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning("Cannot read process table with ps: %s", error)
        return []
    return list(_parse_pid_pairs(completed.stdout.splitlines()))


def _parse_pid_pairs(lines: Iterable[str]) -> Iterable[tuple[int, int]]:
    for line in lines:
        parts = line.split()
        if len(parts) != 2 or not parts[0].isdigit() or not parts[1].isdigit():
            continue
        yield int(parts[0]), int(parts[1])


def _send_sigkill(pid: int) -> bool:
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return False
    except PermissionError as error:
        logger.warning("Not permitted to kill %s: %s", pid, error)
        return False
    return True
