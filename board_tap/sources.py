from __future__ import annotations

import logging
import os
import signal
from pathlib import Path
import subprocess
import threading

import psutil

from board_tap.errors import SourceTimeout, SourceUnavailable
from board_tap.logging_utils import TRACE_LEVEL
from board_tap.registry import SourceSpec

# Time a terminated process tree gets before it is killed.
KILL_GRACE_S = 1.0


class SourceReader:
    """Reads pseudo-files and runs diagnostic commands.

    The reader never retries; a failure is reported once as
    :class:`SourceUnavailable` or :class:`SourceTimeout`. Commands are started
    in their own session so that a timeout or :meth:`cancel_all` can take down
    the whole process tree, and every process is reaped before returning.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[str]] = set()
        self._cancelled = False

    def read(self, source: SourceSpec) -> str:
        if source.is_command:
            return self.run_command(source.argv, source.timeout_s)
        return self.read_file(source.path)

    def read_file(self, path: str | None) -> str:
        if not path:
            raise SourceUnavailable("no file configured")
        try:
            content = Path(path).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            raise SourceUnavailable(f"file not found: {path}") from None
        except PermissionError:
            raise SourceUnavailable(f"permission denied: {path}") from None
        except OSError as exc:
            raise SourceUnavailable(f"cannot read {path}: {exc}") from exc
        self.logger.log(TRACE_LEVEL, "%s: %s", path, content.strip())
        return content

    def run_command(self, argv: tuple[str, ...] | list[str], timeout_s: float) -> str:
        command = " ".join(argv)
        with self._lock:
            if self._cancelled:
                raise SourceUnavailable(f"reader shut down, not running: {command}")
            try:
                process = subprocess.Popen(
                    list(argv),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    errors="replace",
                    start_new_session=True,
                )
            except FileNotFoundError:
                raise SourceUnavailable(f"command not found: {argv[0]}") from None
            except PermissionError:
                raise SourceUnavailable(f"permission denied: {argv[0]}") from None
            except OSError as exc:
                raise SourceUnavailable(f"cannot run {command}: {exc}") from exc
            self._processes.add(process)

        try:
            try:
                stdout, stderr = process.communicate(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                self.logger.debug("Command timed out after %ss: %s", timeout_s, command)
                self._terminate(process)
                self._drain(process, command)
                raise SourceTimeout(
                    f"command exceeded {timeout_s}s: {command}"
                ) from None
        finally:
            if process.poll() is None:
                self._terminate(process)
                process.wait()
            with self._lock:
                self._processes.discard(process)

        if process.returncode != 0:
            self.logger.debug("Command failed (%s): %s", process.returncode, command)
            if stderr:
                self.logger.log(TRACE_LEVEL, "stderr: %s", stderr.strip())
            if not stdout:
                if self._cancelled:
                    raise SourceUnavailable(f"command cancelled: {command}")
                raise SourceUnavailable(
                    f"command exited with {process.returncode}: {command}"
                )
        self.logger.log(TRACE_LEVEL, "stdout: %s", stdout.strip())
        return stdout

    def cancel_all(self) -> None:
        """Terminate every outstanding command and refuse new ones."""
        with self._lock:
            self._cancelled = True
            processes = list(self._processes)
        for process in processes:
            if process.returncode is not None:
                # Already reaped by its reader; the pid may be reused.
                continue
            self.logger.debug("Cancelling outstanding command (pid %s)", process.pid)
            self._terminate(process)

    def _signal_group(self, process: subprocess.Popen[str], sig: signal.Signals) -> None:
        # The command leads its own session, so its pid is also the group id.
        # Group members outlive the leader, including orphaned grandchildren.
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.poll() is None:
                process.send_signal(sig)

    def _terminate(self, process: subprocess.Popen[str]) -> None:
        """Take down the command's process group and any escaped descendants."""
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        self._signal_group(process, signal.SIGTERM)
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                self.logger.debug("Access denied terminating pid %s", child.pid)
        _, alive = psutil.wait_procs(children, timeout=KILL_GRACE_S)
        try:
            process.wait(timeout=KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            self.logger.warning("Command ignored SIGTERM, killing pid %s", process.pid)
        # Anything left in the group after the grace period ignored SIGTERM.
        self._signal_group(process, signal.SIGKILL)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                self.logger.warning("Unable to kill pid %s", proc.pid)
        if process.poll() is None:
            process.kill()
            process.wait()

    def _drain(self, process: subprocess.Popen[str], command: str) -> None:
        """Collect leftover output of a killed command without waiting on strangers.

        A daemonizing tool can leave a process outside the group holding the
        output pipes open; the pipes are closed instead of waiting for it.
        """
        try:
            process.communicate(timeout=KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            self.logger.warning("Output of %s still held open after kill; closing pipes", command)
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    pipe.close()
