from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger


@dataclass
class JobDefinition:
    id: str
    name: str
    schedule: str  # 5-field crontab
    description: str
    func: Callable[[], object]
    is_active: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "schedule": self.schedule,
            "description": self.description,
            "isActive": self.is_active,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "lastError": self.last_error,
        }


class SchedulerState:
    """Cron-style jobs for one Flask app.

    Build one per process (``start_scheduler``) and hand it to whatever needs
    to trigger jobs; it is kept on ``app.extensions["billing_scheduler"]``.
    Every firing runs inside the app context. A job never runs twice at the
    same time: overlapping firings and manual triggers are skipped.
    """

    def __init__(self, app, scheduler: Optional[BackgroundScheduler] = None, timezone: Optional[str] = None):
        self.app = app
        self.timezone = timezone or app.config.get("SCHEDULER_TIMEZONE", "UTC")
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.timezone)
        self.jobs: Dict[str, JobDefinition] = {}
        self._triggers: Dict[str, CronTrigger] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # Set by initialize(); start_job restarts a scheduler that was shut down
        self.started = False

    @property
    def logger(self):
        return self.app.logger

    # -----------------------------
    # Registry
    # -----------------------------

    def schedule_job(self, definition: JobDefinition) -> bool:
        try:
            trigger = CronTrigger.from_crontab(definition.schedule, timezone=self.timezone)
        except ValueError as e:
            self.logger.error("Invalid cron expression '%s' for job %s: %s", definition.schedule, definition.id, e)
            return False

        if definition.id in self.jobs:
            self._unregister(definition.id)
        self.jobs[definition.id] = definition
        self._triggers[definition.id] = trigger
        self._locks.setdefault(definition.id, threading.Lock())
        definition.next_run = self._next_fire_time(definition.id)
        if definition.is_active:
            self._register(definition.id)
        self.logger.info("Scheduled job '%s' with schedule '%s'", definition.name, definition.schedule)
        return True

    def get_job(self, job_id: str) -> Optional[dict]:
        job = self.jobs.get(job_id)
        return job.to_dict() if job else None

    def list_jobs(self) -> List[dict]:
        return [job.to_dict() for job in self.jobs.values()]

    def is_running(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        return bool(lock and lock.locked())

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def start_job(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        job.is_active = True
        self._register(job_id)
        if self.started and not self.scheduler.running:
            self.logger.info("Scheduler was shut down; restarting it for job: %s", job.name)
            self.scheduler.start()
        job.next_run = self._next_fire_time(job_id)
        self.logger.info("Started job: %s", job.name)
        return True

    def stop_job(self, job_id: str) -> bool:
        """Stop future firings; a run already in progress finishes normally."""
        job = self.jobs.get(job_id)
        if job is None:
            return False
        job.is_active = False
        self._unregister(job_id)
        job.next_run = None
        self.logger.info("Stopped job: %s", job.name)
        return True

    def trigger_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            self.logger.error("Job not found: %s", job_id)
            return False
        self.logger.info("Manually triggering job: %s", job_id)
        return self._execute(job_id)

    def initialize(self) -> None:
        self.logger.info("Initializing scheduler...")
        for job_id, job in self.jobs.items():
            if job.is_active:
                self._register(job_id)
        if not self.scheduler.running:
            self.scheduler.start()
        self.started = True
        self.logger.info("Scheduler initialized with %s jobs", len(self.jobs))

    def shutdown(self) -> None:
        self.logger.info("Shutting down scheduler...")
        for job_id in list(self.jobs):
            self._unregister(job_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.logger.info("Scheduler shutdown complete")

    # -----------------------------
    # Internals
    # -----------------------------

    def _register(self, job_id: str) -> None:
        if self.scheduler.get_job(job_id) is not None:
            return
        self.scheduler.add_job(
            self._execute,
            trigger=self._triggers[job_id],
            args=[job_id],
            id=job_id,
            name=self.jobs[job_id].name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _unregister(self, job_id: str) -> None:
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)

    def _next_fire_time(self, job_id: str) -> Optional[datetime]:
        trigger = self._triggers[job_id]
        return trigger.get_next_fire_time(None, datetime.now(trigger.timezone))

    def _execute(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        lock = self._locks[job_id]
        if not lock.acquire(blocking=False):
            self.logger.warning("Job '%s' is still running; skipping this firing", job.name)
            return False
        try:
            job.last_run = datetime.now(self._triggers[job_id].timezone)
            self.logger.info("Starting execution of job: %s", job.name)
            with self.app.app_context():
                job.func()
            job.last_error = None
            self.logger.info("Completed execution of job: %s", job.name)
            return True
        except Exception as e:
            job.last_error = str(e)
            self.logger.exception("Failed to execute job '%s'", job.name)
            return False
        finally:
            if job.is_active:
                job.next_run = self._next_fire_time(job_id)
            lock.release()


# -----------------------------
# Default jobs
# -----------------------------


def _monthly_billing_job():
    from billing import generate_monthly_allocations
    from flask import current_app

    result = generate_monthly_allocations()
    if result.success:
        current_app.logger.info(
            "Monthly billing completed successfully: %s/%s bills generated",
            result.successful_bills, result.total_students,
        )
    else:
        current_app.logger.error(
            "Monthly billing completed with errors: %s failed out of %s; errors: %s",
            result.failed_bills, result.total_students, result.errors,
        )
    return result


def _notification_dispatch_job():
    from utils.notify import dispatch_pending_notifications

    return dispatch_pending_notifications()


def _overdue_reminder_job():
    from billing import send_fee_reminders

    return send_fee_reminders("overdue")


def register_default_jobs(state: SchedulerState) -> None:
    cfg = state.app.config
    state.schedule_job(JobDefinition(
        id="monthly-billing",
        name="Monthly Billing Generation",
        schedule=cfg.get("MONTHLY_BILLING_CRON", "0 10 5 * *"),
        description="Automatically generates monthly bills for all active students",
        func=_monthly_billing_job,
    ))
    state.schedule_job(JobDefinition(
        id="notification-dispatch",
        name="Notification Dispatch",
        schedule=cfg.get("NOTIFICATION_DISPATCH_CRON", "*/5 * * * *"),
        description="Delivers queued bill and reminder emails",
        func=_notification_dispatch_job,
    ))
    state.schedule_job(JobDefinition(
        id="overdue-reminders",
        name="Overdue Fee Reminders",
        schedule=cfg.get("OVERDUE_REMINDER_CRON", "0 9 * * *"),
        description="Marks unpaid past-due bills overdue and queues reminders",
        func=_overdue_reminder_job,
        is_active=bool(cfg.get("REMINDERS_ENABLED", True)),
    ))


def start_scheduler(app) -> SchedulerState:
    state = SchedulerState(app)
    register_default_jobs(state)
    state.initialize()
    app.extensions["billing_scheduler"] = state
    return state
