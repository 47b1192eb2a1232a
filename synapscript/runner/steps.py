"""
Sequential, fail-fast execution of an automation's steps.

Each step runs as one shell command. Progress is published on the EventBus:
step-update on every status change, log for every output line, then exactly
one automation-complete or automation-failed.
"""

import time
import uuid
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from synapscript.models import (
    RUN_FAILED, RUN_SUCCESS,
    STEP_COMPLETED, STEP_FAILED, STEP_IN_PROGRESS,
    Step,
)
from synapscript.runner import events
from synapscript.runner.events import EventBus
from synapscript.runner.process import DEFAULT_TIMEOUT, ProcessRunner, ProcessTimeoutError


logger = logging.getLogger("synapscript.steps")


@dataclass
class RunOutcome:
    """Terminal state of one step run."""
    run_id: str
    status: str
    steps: List[Step]
    output: str = ""
    error: Optional[str] = None
    failed_step: Optional[int] = None
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'status': self.status,
            'steps': [s.to_dict() for s in self.steps],
            'output': self.output,
            'error': self.error,
            'failed_step': self.failed_step,
            'exit_code': self.exit_code,
            'duration_seconds': self.duration_seconds,
        }


class StepExecutor:
    """
    Runs one automation's steps, one run at a time.

    Usage:
        executor = StepExecutor(bus, automation_id='abc')
        future = executor.run(automation.build_steps())
        outcome = future.result()
    """

    def __init__(
        self,
        bus: EventBus,
        runner: ProcessRunner = None,
        automation_id: str = None,
        pool: ThreadPoolExecutor = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT
    ):
        self.bus = bus
        self.runner = runner or ProcessRunner()
        self.automation_id = automation_id
        self.timeout = timeout
        self._pool = pool
        self._owns_pool = pool is None
        self._run_lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def run(self, steps: List[Step], run_id: str = None) -> 'Future[RunOutcome]':
        """Enqueue a run and return immediately; observe it via the bus or the future."""
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='steps')
        return self._pool.submit(self.execute, steps, run_id)

    def execute(self, steps: List[Step], run_id: str = None) -> RunOutcome:
        """
        Run steps in order on the calling thread.

        Raises:
            RuntimeError: if this executor already has a run in flight
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError(f"Automation '{self.automation_id}' already has a run in progress")
        try:
            return self._execute(steps, run_id or str(uuid.uuid4()))
        finally:
            self._run_lock.release()

    def _execute(self, steps: List[Step], run_id: str) -> RunOutcome:
        start_time = time.time()
        output: List[str] = []

        def emit(event_type: str, **data) -> None:
            self.bus.emit(event_type, automation_id=self.automation_id, run_id=run_id, **data)

        def on_stdout(line: str) -> None:
            output.append(line)
            emit(events.LOG, message=line.rstrip('\n'))

        def on_stderr(line: str) -> None:
            output.append(line)
            emit(events.LOG, message=f"ERROR: {line.rstrip()}")

        for index, step in enumerate(steps):
            step.status = STEP_IN_PROGRESS
            emit(events.STEP_UPDATE, step=step.to_dict(), stepIndex=index)

            if not step.command:
                step.status = STEP_COMPLETED
                emit(events.STEP_UPDATE, step=step.to_dict(), stepIndex=index)
                continue

            exit_code = None
            error = None
            try:
                result = self.runner.run(
                    step.command, timeout=self.timeout, on_stdout=on_stdout, on_stderr=on_stderr
                )
                exit_code = result.exit_code
            except ProcessTimeoutError as e:
                error = str(e)
            except OSError as e:
                error = f"Failed to start command: {e}"

            if exit_code == 0:
                step.status = STEP_COMPLETED
                emit(events.STEP_UPDATE, step=step.to_dict(), stepIndex=index)
                continue

            step.status = STEP_FAILED
            emit(events.STEP_UPDATE, step=step.to_dict(), stepIndex=index)

            message = error or f"Step failed with exit code {exit_code}"
            message = f"{message} (step {index + 1}: {step.label})"
            last_output = _last_line(output)
            if last_output:
                message = f"{message}: {last_output}"

            emit(events.AUTOMATION_FAILED, message=message, stepIndex=index, exitCode=exit_code)
            logger.warning(f"Run {run_id} of '{self.automation_id}' failed: {message}")
            return RunOutcome(
                run_id=run_id,
                status=RUN_FAILED,
                steps=steps,
                output="".join(output),
                error=message,
                failed_step=index,
                exit_code=exit_code,
                duration_seconds=time.time() - start_time
            )

        emit(events.AUTOMATION_COMPLETE)
        return RunOutcome(
            run_id=run_id,
            status=RUN_SUCCESS,
            steps=steps,
            output="".join(output),
            duration_seconds=time.time() - start_time
        )

    def shutdown(self) -> None:
        if self._owns_pool and self._pool is not None:
            self._pool.shutdown(wait=True)


def _last_line(output: List[str]) -> str:
    for line in reversed(output):
        if line.strip():
            return line.strip()
    return ""
