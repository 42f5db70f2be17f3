"""Process supervisor — spawns the monitored command and tracks its tree."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

import psutil

from phonehome.errors import SpawnError, TerminationError

logger = logging.getLogger(__name__)

# Seconds to wait after SIGTERM before escalating to SIGKILL.
_TERMINATE_GRACE = 5


@dataclass
class ProcessHandle:
    """The spawned process plus every descendant seen so far."""

    process: subprocess.Popen[bytes]
    command: tuple[str, ...]
    descendants: set[int] = field(default_factory=set)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode


class ProcessSupervisor:
    """Owns spawning, liveness, descendant discovery and termination."""

    def spawn(self, command: Sequence[str]) -> ProcessHandle:
        """Start ``command`` with the caller's stdio inherited."""
        if not command:
            raise SpawnError("No command given")
        try:
            process = subprocess.Popen(list(command))
        except (OSError, ValueError) as exc:
            raise SpawnError(f"Failed to execute {command[0]!r}: {exc}") from exc
        logger.debug("Spawned %s as PID %d", command[0], process.pid)
        return ProcessHandle(process=process, command=tuple(command))

    def is_alive(self, handle: ProcessHandle, include_children: bool = True) -> bool:
        """True while the main process or any known descendant still runs."""
        if handle.process.poll() is None:
            return True
        if not include_children:
            return False
        return any(_pid_alive(pid) for pid in handle.descendants)

    def descendant_pids(self, handle: ProcessHandle) -> set[int]:
        """Refresh and return the descendants of the main process.

        Best-effort: children re-parented away after their parent exited are
        still followed as long as they were seen once.
        """
        found: set[int] = set()
        for root in (handle.pid, *handle.descendants):
            try:
                children = psutil.Process(root).children(recursive=True)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            found.update(child.pid for child in children)

        survivors = {pid for pid in handle.descendants if _pid_alive(pid)}
        handle.descendants = (survivors | found) - {handle.pid}
        return set(handle.descendants)

    def terminate(self, handle: ProcessHandle) -> None:
        """Stop the main process and its descendants.

        Raises TerminationError if the main process cannot be stopped.
        """
        descendants = self._live_descendants(handle)
        for proc in descendants:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        process = handle.process
        if process.poll() is None:
            try:
                process.terminate()
                try:
                    process.wait(timeout=_TERMINATE_GRACE)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait(timeout=_TERMINATE_GRACE)
            except PermissionError as exc:
                raise TerminationError(
                    f"Permission denied terminating PID {handle.pid}"
                ) from exc
            except subprocess.TimeoutExpired as exc:
                raise TerminationError(
                    f"PID {handle.pid} still running after SIGKILL"
                ) from exc

        _gone, alive = psutil.wait_procs(descendants, timeout=_TERMINATE_GRACE)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("Permission denied killing descendant PID %d", proc.pid)
        logger.info("Process %d terminated", handle.pid)

    def wait(self, handle: ProcessHandle, timeout: float | None = None) -> int:
        """Wait for the main process and return a shell-style exit code."""
        return exit_code_of(handle.process.wait(timeout=timeout))

    def _live_descendants(self, handle: ProcessHandle) -> list[psutil.Process]:
        procs: list[psutil.Process] = []
        for pid in sorted(self.descendant_pids(handle)):
            try:
                procs.append(psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
        return procs


def exit_code_of(returncode: int) -> int:
    """Map Popen's negative signal codes to the 128+N shell convention."""
    if returncode < 0:
        return 128 + -returncode
    return returncode


def _pid_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
