"""
Automation engine: the single entry point the transport layer talks to.

Ties the store, the step executor, the code materializer and the scheduler
together and records one execution log per run.
"""

import os
import sqlite3
import threading
import time
import uuid
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from synapscript.models import RUN_FAILED, Automation, ExecutionLog
from synapscript.runner import db, events
from synapscript.runner.events import EventBus
from synapscript.runner.materializer import CodeMaterializer, CodeResult, DangerousCodeError
from synapscript.runner.process import DEFAULT_TIMEOUT, ProcessRunner
from synapscript.runner.scheduler import Scheduler
from synapscript.runner.steps import StepExecutor


logger = logging.getLogger("synapscript.executor")

DEFAULT_MAX_WORKERS = int(os.getenv('SYNAPSCRIPT_MAX_WORKERS', '4'))


@dataclass
class RunHandle:
    """Handle to a background run; progress arrives on the EventBus."""
    run_id: str
    automation_id: str
    future: 'Future[ExecutionLog]'

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float = None) -> ExecutionLog:
        return self.future.result(timeout=timeout)


class AutomationEngine:
    """
    Executes and schedules automations.

    Usage:
        engine = AutomationEngine()
        engine.start()
        handle = engine.submit_manual_run(automation)
    """

    def __init__(
        self,
        db_path: Path = None,
        bus: EventBus = None,
        runner: ProcessRunner = None,
        materializer: CodeMaterializer = None,
        scheduler: Scheduler = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        step_timeout: Optional[float] = DEFAULT_TIMEOUT
    ):
        """
        Initialize the engine.

        Args:
            db_path: Path to the sqlite database
            bus: Event bus shared with the transport layer
            runner: Process runner used for steps and generated code
            materializer: Generated code runner
            scheduler: Cron scheduler; its ticks call run_by_id()
            max_workers: Size of the pool for background runs
            step_timeout: Per-step timeout in seconds
        """
        self.db_path = db_path or db.DEFAULT_DB_PATH
        db.init_database(self.db_path)

        self.bus = bus or EventBus()
        self.runner = runner or ProcessRunner()
        self.materializer = materializer or CodeMaterializer(self.runner)
        self.scheduler = scheduler or Scheduler(self.run_by_id)
        self.step_timeout = step_timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='automation-run')
        # Store writes and the matching scheduler resync happen as one step
        self._store_lock = threading.RLock()

    # --- Lifecycle ---

    def start(self) -> int:
        """Start the scheduler and arm every persisted schedule."""
        self.scheduler.start()
        return self.reconcile_all()

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown()
        self._pool.shutdown(wait=wait)

    # --- Execution ---

    def submit_manual_run(self, automation: Automation, triggered_by: str = None) -> RunHandle:
        """Start a run in the background and return without waiting for it."""
        run_id = str(uuid.uuid4())
        future = self._pool.submit(
            self.run_automation, automation, 'manual', triggered_by, run_id
        )
        logger.info(f"Submitted manual run {run_id} for '{automation.name}'")
        return RunHandle(run_id=run_id, automation_id=automation.id, future=future)

    def run_automation(
        self,
        automation: Automation,
        trigger_type: str = 'manual',
        triggered_by: str = None,
        run_id: str = None
    ) -> ExecutionLog:
        """
        Execute an automation on the calling thread and record the result.

        Generated code, when present, is the executable form of the
        automation; otherwise its actions run as steps.

        Returns:
            ExecutionLog for the finished run
        """
        run_id = run_id or str(uuid.uuid4())
        start_time = time.time()
        logger.info(f"Executing automation '{automation.name}' ({trigger_type}, run {run_id})")

        try:
            if automation.generated_code:
                status, output, error = self._run_code(automation, run_id)
            else:
                executor = StepExecutor(
                    self.bus, self.runner, automation.id, timeout=self.step_timeout
                )
                outcome = executor.execute(automation.build_steps(), run_id)
                status, output, error = outcome.status, outcome.output, outcome.error
        except Exception as e:
            logger.error(f"Run {run_id} of '{automation.name}' crashed: {e}", exc_info=True)
            status, output, error = RUN_FAILED, "", f"Execution crashed: {e}"
            self.bus.emit(events.AUTOMATION_FAILED, automation.id, run_id, message=error)

        entry = ExecutionLog(
            automation_id=automation.id,
            status=status,
            output=output,
            error=error,
            run_id=run_id,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            duration_seconds=time.time() - start_time
        )
        self._record(entry)

        if entry.success:
            logger.info(
                f"Automation '{automation.name}' completed successfully "
                f"in {entry.duration_seconds:.2f}s"
            )
        else:
            logger.warning(f"Automation '{automation.name}' failed: {entry.error}")
        return entry

    def run_by_id(
        self,
        automation_id: str,
        trigger_type: str = 'scheduled',
        triggered_by: str = 'scheduler'
    ) -> Optional[ExecutionLog]:
        """Load an automation from the store and run it. Used by scheduler ticks."""
        automation = self.get_automation(automation_id)
        if automation is None:
            logger.warning(f"Automation {automation_id} not found; nothing to run")
            return None
        return self.run_automation(automation, trigger_type, triggered_by)

    def execute_generated_code(self, code: str, language: str, automation_id: str = None) -> CodeResult:
        """
        Run generated code and wait for the result.

        Raises:
            DangerousCodeError: if the code is rejected before execution
        """
        start_time = time.time()
        result = self.materializer.execute(code, language)
        self._record(ExecutionLog(
            automation_id=automation_id,
            status=result.status,
            output=result.stdout,
            error=result.error,
            trigger_type='direct',
            duration_seconds=time.time() - start_time
        ))
        return result

    def _run_code(self, automation: Automation, run_id: str):
        def emit(event_type: str, **data) -> None:
            self.bus.emit(event_type, automation.id, run_id, **data)

        try:
            result = self.materializer.execute(
                automation.generated_code.code,
                automation.generated_code.language,
                on_stdout=lambda line: emit(events.LOG, message=line.rstrip('\n')),
                on_stderr=lambda line: emit(events.LOG, message=f"ERROR: {line.rstrip()}")
            )
        except DangerousCodeError as e:
            emit(events.AUTOMATION_FAILED, message=str(e))
            return RUN_FAILED, "", str(e)

        if result.success:
            emit(events.AUTOMATION_COMPLETE)
        else:
            emit(events.AUTOMATION_FAILED, message=result.error, exitCode=result.exit_code)
        return result.status, result.stdout + result.stderr, result.error

    def _record(self, entry: ExecutionLog) -> None:
        try:
            db.log_execution(db_path=self.db_path, **entry.to_dict())
        except sqlite3.Error as e:
            logger.error(f"Failed to record execution log for run {entry.run_id}: {e}")

    # --- Scheduling ---

    def schedule_automation(self, automation: Automation) -> bool:
        """Arm (or disarm) the schedule to match the automation's trigger."""
        if not automation.is_scheduled:
            self.scheduler.unschedule(automation.id)
            return False
        return self.scheduler.schedule(automation)

    def unschedule_automation(self, automation_id: str) -> bool:
        return self.scheduler.unschedule(automation_id)

    def reconcile_all(self, automations: Iterable[Automation] = None) -> int:
        """Schedule every stored (or given) automation with a schedule trigger."""
        with self._store_lock:
            if automations is None:
                automations = self.list_automations()
            return self.scheduler.reconcile_all(automations)

    # --- Store ---

    def list_automations(self) -> List[Automation]:
        automations = []
        for row in db.get_all_automations(self.db_path):
            try:
                automations.append(Automation.from_dict(row))
            except ValueError as e:
                logger.warning(f"Skipping malformed automation {row.get('id')}: {e}")
        return automations

    def get_automation(self, automation_id: str) -> Optional[Automation]:
        row = db.get_automation(automation_id, self.db_path)
        return Automation.from_dict(row) if row else None

    def save_automation(self, automation: Automation) -> Automation:
        """Persist a new automation and arm its schedule."""
        with self._store_lock:
            row = db.create_automation(automation.to_dict(), self.db_path)
            saved = Automation.from_dict(row)
            self.schedule_automation(saved)
        return saved

    def update_automation(self, automation_id: str, updates: Dict[str, Any]) -> Optional[Automation]:
        """
        Apply updates and re-sync the schedule.

        Raises:
            ValueError: if the merged automation is invalid
        """
        with self._store_lock:
            existing = db.get_automation(automation_id, self.db_path)
            if existing is None:
                return None

            # Validate before writing
            merged = dict(existing)
            merged.update({k: v for k, v in updates.items() if k in ('name', 'trigger', 'actions', 'generated_code')})
            Automation.from_dict(merged)

            row = db.update_automation(automation_id, updates, self.db_path)
            if row is None:
                return None
            updated = Automation.from_dict(row)
            self.scheduler.unschedule(automation_id)
            self.schedule_automation(updated)
        return updated

    def delete_automation(self, automation_id: str) -> bool:
        with self._store_lock:
            self.scheduler.unschedule(automation_id)
            return db.delete_automation(automation_id, self.db_path)
