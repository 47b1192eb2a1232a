"""
Cron scheduling for automations via APScheduler.

Holds the automation_id -> job map for the life of the process. The map is
rebuilt at startup by reconcile_all() from the persisted automations.
"""

import os
import re
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from synapscript.models import Automation


logger = logging.getLogger("synapscript.scheduler")

# Ticks of the same automation allowed to overlap before APScheduler skips one
DEFAULT_MAX_OVERLAP = int(os.getenv('SYNAPSCRIPT_MAX_OVERLAP', '3'))


DAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _expand_weekday_step(part: str) -> List[int]:
    """Expand a stepped crontab weekday part ('*/2', '1-5/2', '3/2') to day numbers."""
    base, step = part.split('/', 1)
    step = int(step)
    if step <= 0:
        raise ValueError(f"Invalid weekday step: {part}")
    if base == '*':
        start, end = 0, 6
    elif '-' in base:
        start, end = (int(v) for v in base.split('-', 1))
    else:
        start, end = int(base), 6
    if start > end or end > 7:
        raise ValueError(f"Invalid weekday range: {part}")
    return list(range(start, end + 1, step))


def _crontab_day_of_week(field: str) -> str:
    """
    Translate crontab weekday numbers (0 or 7 = Sunday) to day names.

    APScheduler counts weekdays from Monday, so '1-5' must become 'mon-fri'
    and stepped parts are expanded to the days they select.
    Parts given as names are passed through unchanged.
    """
    parts = []
    for part in field.split(','):
        if re.fullmatch(r'(\*|\d(?:-\d)?)/\d+', part):
            for day in _expand_weekday_step(part):
                name = DAY_NAMES[day % 7]
                if name not in parts:
                    parts.append(name)
            continue

        match = re.fullmatch(r'(\d)(?:-(\d))?', part)
        if not match:
            parts.append(part)
            continue

        start = int(match.group(1))
        if start > 7:
            raise ValueError(f"Invalid weekday: {part}")
        if match.group(2) is None:
            parts.append(DAY_NAMES[start % 7])
            continue

        end = int(match.group(2))
        if start > end or end > 7:
            raise ValueError(f"Invalid weekday range: {part}")
        if start == 0:
            parts.append('sun')
            start = 1
        if end == 7:
            parts.append('sun')
            end = 6
        if start == end:
            parts.append(DAY_NAMES[start])
        elif start < end:
            parts.append(f"{DAY_NAMES[start]}-{DAY_NAMES[end]}")
    return ','.join(parts)


def parse_cron(expression: Optional[str]) -> Optional[CronTrigger]:
    """Return a CronTrigger for a 5-field expression, or None if it is invalid."""
    if not expression or not isinstance(expression, str):
        return None
    fields = expression.split()
    if len(fields) != 5:
        return None
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week)
        )
    except ValueError:
        return None


def is_valid_cron(expression: Optional[str]) -> bool:
    return parse_cron(expression) is not None


def humanize_cron(cron_expr: str) -> Optional[str]:
    """Convert cron expression to human-readable format."""
    if not cron_expr:
        return None

    parts = cron_expr.split()
    if len(parts) != 5:
        return cron_expr

    minute, hour, day, month, dow = parts

    # Common patterns
    if cron_expr == "* * * * *":
        return "Every minute"
    if minute.startswith("*/") and hour == "*" and day == "*" and month == "*" and dow == "*":
        return f"Every {minute[2:]} minutes"
    if minute == "0" and hour == "*" and day == "*" and month == "*" and dow == "*":
        return "Every hour"
    if minute.isdigit() and hour.isdigit() and day == "*" and month == "*":
        if dow == "*":
            return f"Daily at {int(hour)}:{int(minute):02d}"
        if dow == "1-5":
            return f"Weekdays at {int(hour)}:{int(minute):02d}"
        if dow == "0":
            return f"Weekly on Sunday at {int(hour)}:{int(minute):02d}"
    if minute == "0" and hour.isdigit() and day == "1" and month == "*" and dow == "*":
        return f"Monthly on 1st at {hour}:00"

    return cron_expr


def _job_id(automation_id: str) -> str:
    return f"automation:{automation_id}"


class Scheduler:
    """
    Installs, replaces and removes recurring triggers at runtime.

    Every tick calls ``execute(automation_id)`` directly, with no end-user
    credentials involved. A tick that raises or returns a failed result is
    logged and the job stays armed.

    Usage:
        scheduler = Scheduler(engine.run_by_id)
        scheduler.start()
        scheduler.reconcile_all(automations)
    """

    def __init__(
        self,
        execute: Callable[[str], Any],
        scheduler: BackgroundScheduler = None,
        max_overlap: int = DEFAULT_MAX_OVERLAP
    ):
        self._execute = execute
        self._scheduler = scheduler or BackgroundScheduler()
        self.max_overlap = max_overlap
        self._jobs: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, paused: bool = False) -> None:
        if not self._scheduler.running:
            self._scheduler.start(paused=paused)
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def schedule(self, automation: Automation) -> bool:
        """
        Install (or replace) the recurring trigger for an automation.

        Returns:
            True if a job is now armed, False if the automation was skipped
        """
        expression = automation.trigger.cron_expression
        trigger = parse_cron(expression)
        if trigger is None:
            logger.warning(
                f"Skipping schedule for '{automation.name}' ({automation.id}): "
                f"invalid cron expression {expression!r}"
            )
            return False

        with self._lock:
            self._remove(automation.id)
            self._jobs[automation.id] = self._scheduler.add_job(
                self._tick,
                trigger,
                args=[automation.id],
                id=_job_id(automation.id),
                name=automation.name,
                max_instances=self.max_overlap,
                replace_existing=True
            )

        logger.info(f"Scheduled '{automation.name}' ({automation.id}) with '{expression}'")
        return True

    def unschedule(self, automation_id: str) -> bool:
        """Stop and discard the job for an automation. Returns False if there was none."""
        with self._lock:
            removed = self._remove(automation_id)
        if removed:
            logger.info(f"Unscheduled automation {automation_id}")
        return removed

    def reconcile_all(self, automations: Iterable[Automation]) -> int:
        """Schedule every automation with a schedule trigger; returns how many were armed."""
        count = 0
        for automation in automations:
            if automation.is_scheduled and self.schedule(automation):
                count += 1
        logger.info(f"Reconciled schedules: {count} active")
        return count

    def is_scheduled(self, automation_id: str) -> bool:
        with self._lock:
            return automation_id in self._jobs

    def jobs(self) -> Dict[str, Optional[datetime]]:
        """Active automation ids mapped to their next fire time (None until started)."""
        with self._lock:
            ids = list(self._jobs)
        result = {}
        for automation_id in ids:
            job = self._scheduler.get_job(_job_id(automation_id))
            result[automation_id] = getattr(job, 'next_run_time', None) if job else None
        return result

    def _remove(self, automation_id: str) -> bool:
        job = self._jobs.pop(automation_id, None)
        if job is None:
            return False
        try:
            self._scheduler.remove_job(job.id)
        except JobLookupError:
            pass
        return True

    def _tick(self, automation_id: str) -> None:
        logger.info(f"Tick for automation {automation_id}")
        try:
            result = self._execute(automation_id)
        except Exception as e:
            logger.error(f"Scheduled run of {automation_id} raised: {e}", exc_info=True)
            return

        if result is None:
            logger.warning(f"Scheduled run of {automation_id} did not execute")
        elif not getattr(result, 'success', True):
            logger.warning(
                f"Scheduled run of {automation_id} failed: {getattr(result, 'error', None)}"
            )
