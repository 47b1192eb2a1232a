"""
Shell command execution with live output streaming and a hard timeout.
"""

import os
import signal
import subprocess
import threading
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional


logger = logging.getLogger("synapscript.process")

DEFAULT_TIMEOUT = float(os.getenv('SYNAPSCRIPT_STEP_TIMEOUT', '300'))

# Grace period between SIGTERM and SIGKILL when a command times out
KILL_GRACE_SECONDS = 2.0

OutputCallback = Callable[[str], None]


class ProcessTimeoutError(TimeoutError):
    """A command did not exit within its timeout and was killed."""

    def __init__(self, command: str, elapsed: float):
        self.command = command
        self.elapsed = elapsed
        super().__init__(f"Command timed out after {elapsed:.2f}s: {command}")


@dataclass
class ProcessResult:
    """Outcome of a command that exited on its own."""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """
    Runs one shell command at a time per call.

    A non-zero exit code is returned, not raised. Only a timeout raises.

    Usage:
        runner = ProcessRunner()
        result = runner.run('echo hi', timeout=5, on_stdout=print)
    """

    def __init__(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd
        self.env = env

    def run(
        self,
        command: str,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        on_stdout: OutputCallback = None,
        on_stderr: OutputCallback = None
    ) -> ProcessResult:
        """
        Execute a command through the shell.

        Args:
            command: Shell command text
            timeout: Seconds to wait before killing the process (None waits forever)
            on_stdout: Called with each stdout line as it arrives
            on_stderr: Called with each stderr line as it arrives

        Returns:
            ProcessResult with aggregated output and exit code

        Raises:
            ProcessTimeoutError: if the command outlives the timeout
        """
        start_time = time.time()
        proc = subprocess.Popen(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors='replace',
            cwd=self.cwd,
            env=self.env,
            start_new_session=(os.name == 'posix')
        )
        logger.debug(f"Started pid {proc.pid}: {command}")

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, stdout_lines, on_stdout), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, stderr_lines, on_stderr), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = None if timeout is None else start_time + timeout
        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill(proc, readers, command, start_time)

        # Background children can keep the pipes open after the shell exits
        for reader in readers:
            reader.join(None if deadline is None else max(0.0, deadline - time.time()))
        if any(reader.is_alive() for reader in readers):
            self._kill(proc, readers, command, start_time)

        return ProcessResult(
            command=command,
            exit_code=exit_code,
            stdout="".join(stdout_lines),
            stderr="".join(stderr_lines),
            duration_seconds=time.time() - start_time
        )

    def _kill(self, proc: subprocess.Popen, readers: List[threading.Thread], command: str, start_time: float):
        """Kill the command's process group and raise ProcessTimeoutError."""
        elapsed = time.time() - start_time
        _terminate(proc)
        for reader in readers:
            reader.join(timeout=KILL_GRACE_SECONDS)
        logger.warning(f"Killed pid {proc.pid} after {elapsed:.2f}s: {command}")
        raise ProcessTimeoutError(command, elapsed)


def _pump(stream, lines: List[str], callback: Optional[OutputCallback]) -> None:
    """Drain a pipe line by line, forwarding each line to the callback."""
    try:
        for line in iter(stream.readline, ''):
            lines.append(line)
            if callback is None:
                continue
            try:
                callback(line)
            except Exception as e:
                logger.error(f"Output callback failed: {e}")
    finally:
        stream.close()


def _terminate(proc: subprocess.Popen) -> None:
    """Stop a process and everything it spawned, including members left behind by an exited shell."""
    if os.name != 'posix':
        proc.kill()
        proc.wait()
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()
