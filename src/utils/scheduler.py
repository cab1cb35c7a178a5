"""In-process backup scheduler with retry handling"""

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 60
DEFAULT_POLL_INTERVAL_SECONDS = 1
SCHEDULES_VERSION = "1.0"


class ScheduleType(Enum):
    """How often a schedule fires"""

    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"  # Approximated as 30 days
    CUSTOM_INTERVAL = "custom"


SCHEDULE_INTERVALS = {
    ScheduleType.ONCE: timedelta(0),
    ScheduleType.HOURLY: timedelta(hours=1),
    ScheduleType.DAILY: timedelta(days=1),
    ScheduleType.WEEKLY: timedelta(weeks=1),
    ScheduleType.MONTHLY: timedelta(days=30),
}


@dataclass
class ScheduleInfo:
    """One named schedule"""

    name: str
    schedule_type: ScheduleType
    interval: timedelta
    next_run: datetime | None
    enabled: bool = True
    last_run: datetime | None = None
    last_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.schedule_type.value,
            "interval": int(self.interval.total_seconds()),
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "enabled": self.enabled,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_message": self.last_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleInfo":
        next_run = data.get("next_run")
        last_run = data.get("last_run")
        return cls(
            name=data["name"],
            schedule_type=ScheduleType(data["type"]),
            interval=timedelta(seconds=int(data["interval"])),
            next_run=datetime.fromisoformat(next_run) if next_run else None,
            enabled=bool(data.get("enabled", True)),
            last_run=datetime.fromisoformat(last_run) if last_run else None,
            last_message=data.get("last_message"),
        )


# Runner returns an OperationResult (truthy on success) or a plain bool
BackupRunner = Callable[[str], Any]
ErrorCallback = Callable[[str, str], None]


class BackupScheduler:
    """Fires named backup jobs from a single background worker thread

    Due jobs run one at a time; run_now() shares the same lock, so at most one
    backup is ever in flight.
    """

    def __init__(
        self,
        runner: BackupRunner,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_error: ErrorCallback | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the scheduler

        Args:
            runner: Called with the schedule name to perform one backup
            retry_attempts: Attempts per due run before giving up
            retry_delay: Seconds to wait between attempts
            poll_interval: Seconds between checks for due schedules
            on_error: Called with (name, message) for every failed attempt
            clock: Source of the current time
        """
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")

        self.runner = runner
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self.on_error = on_error
        self.clock = clock
        self.logger = logging.getLogger("BackupScheduler")

        self._schedules: dict[str, ScheduleInfo] = {}
        self._lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, runner: BackupRunner, config, on_error: ErrorCallback | None = None) -> "BackupScheduler":
        """Build a scheduler from the scheduler.* settings of a ConfigManager"""
        return cls(
            runner,
            retry_attempts=int(config.get_setting("scheduler.retry_attempts", DEFAULT_RETRY_ATTEMPTS)),
            retry_delay=float(config.get_setting("scheduler.retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS)),
            poll_interval=float(config.get_setting("scheduler.poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)),
            on_error=on_error,
        )

    def schedule_backup(
        self, name: str, schedule_type: ScheduleType, custom_interval: timedelta | None = None
    ) -> tuple[bool, str]:
        """Add or replace a recurring (or immediate one-off) schedule

        Args:
            name: Schedule name, passed to the runner
            schedule_type: Frequency
            custom_interval: Interval for CUSTOM_INTERVAL schedules

        Returns:
            Tuple of (success, message)
        """
        if not name:
            return False, "Schedule name must not be empty"

        if schedule_type == ScheduleType.CUSTOM_INTERVAL:
            if custom_interval is None or custom_interval <= timedelta(0):
                return False, "Custom schedules need a positive interval"
            interval = custom_interval
        else:
            interval = SCHEDULE_INTERVALS[schedule_type]

        now = self.clock()
        next_run = now if schedule_type == ScheduleType.ONCE else now + interval

        with self._lock:
            self._schedules[name] = ScheduleInfo(name, schedule_type, interval, next_run)

        self.logger.info(f"Scheduled backup '{name}' ({schedule_type.value}, next run {next_run.isoformat()})")
        return True, f"Scheduled backup '{name}'"

    def schedule_backup_at(self, name: str, when: datetime) -> tuple[bool, str]:
        """Add a one-off schedule that fires at a given time"""
        if not name:
            return False, "Schedule name must not be empty"

        with self._lock:
            self._schedules[name] = ScheduleInfo(name, ScheduleType.ONCE, timedelta(0), when)

        self.logger.info(f"Scheduled backup '{name}' at {when.isoformat()}")
        return True, f"Scheduled backup '{name}' at {when.isoformat()}"

    def cancel(self, name: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(name, None)
        if removed:
            self.logger.info(f"Cancelled scheduled backup: {name}")
        return removed is not None

    def pause(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def resume(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        with self._lock:
            schedule = self._schedules.get(name)
            if schedule is None:
                return False
            schedule.enabled = enabled
        self.logger.info(f"{'Resumed' if enabled else 'Paused'} scheduled backup: {name}")
        return True

    def get_scheduled_backups(self) -> list[ScheduleInfo]:
        """Snapshot copies of all schedules, sorted by name"""
        with self._lock:
            return [replace(self._schedules[name]) for name in sorted(self._schedules)]

    def get_next_scheduled_time(self) -> datetime | None:
        with self._lock:
            times = [s.next_run for s in self._schedules.values() if s.enabled and s.next_run is not None]
        return min(times) if times else None

    def get_active_schedules_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._schedules.values() if s.enabled)

    def start(self) -> None:
        """Start the worker thread (no-op when already running)"""
        if self.is_running():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="BackupScheduler", daemon=True)
        self._thread.start()
        self.logger.info("Backup scheduler started")

    def stop(self, timeout: float | None = None) -> None:
        """Signal the worker to stop and wait for the current job to finish"""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        self.logger.info("Backup scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                self.logger.error(f"Error in scheduler loop: {e}")
            self._stop_event.wait(self.poll_interval)

    def _due_names(self) -> list[str]:
        now = self.clock()
        with self._lock:
            return sorted(
                name
                for name, s in self._schedules.items()
                if s.enabled and s.next_run is not None and now >= s.next_run
            )

    def run_pending(self) -> list[str]:
        """Run every schedule that is due, one after another

        Returns:
            Names of the schedules that were executed
        """
        executed = []
        for name in self._due_names():
            if self._stop_event.is_set():
                break
            self._execute(name)
            executed.append(name)
        return executed

    def run_now(self, name: str) -> bool:
        """Run one schedule immediately on the calling thread

        Raises:
            KeyError: If no schedule has that name
        """
        with self._lock:
            if name not in self._schedules:
                raise KeyError(f"No schedule named '{name}'")
        return self._execute(name)

    def _execute(self, name: str) -> bool:
        with self._run_lock:
            self.logger.info(f"Executing scheduled backup: {name}")
            success = False
            message = ""

            for attempt in range(1, self.retry_attempts + 1):
                try:
                    result = self.runner(name)
                    success = bool(result)
                    message = getattr(result, "message", "") or ("succeeded" if success else "failed")
                except Exception as e:
                    message = f"Exception during scheduled backup: {e}"
                    self.logger.error(f"{message} ({name})")

                if success:
                    self.logger.info(f"Scheduled backup completed successfully: {name}")
                    break

                self.logger.warning(f"Scheduled backup failed (attempt {attempt}/{self.retry_attempts}): {name}")
                self._report_error(name, message)
                if attempt < self.retry_attempts and self._stop_event.wait(self.retry_delay):
                    break

            if not success:
                self.logger.error(f"Scheduled backup failed after {self.retry_attempts} attempts: {name}")

            self._advance(name, message)
            return success

    def _report_error(self, name: str, message: str) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(name, message)
        except Exception as e:
            self.logger.warning(f"Error in error callback: {e}")

    def _advance(self, name: str, message: str) -> None:
        """Set the next run time; one-off schedules disable themselves"""
        now = self.clock()
        with self._lock:
            schedule = self._schedules.get(name)
            if schedule is None:
                return
            schedule.last_run = now
            schedule.last_message = message
            if schedule.schedule_type == ScheduleType.ONCE:
                schedule.enabled = False
                schedule.next_run = None
            else:
                schedule.next_run = now + schedule.interval

    def save_schedules_to_file(self, filename: Path | str) -> None:
        document = {
            "version": SCHEDULES_VERSION,
            "schedules": [s.to_dict() for s in self.get_scheduled_backups()],
        }
        with open(filename, "w") as f:
            json.dump(document, f, indent=2)

    def load_schedules_from_file(self, filename: Path | str) -> int:
        """Replace the current schedules with those in a file

        A missing file leaves the scheduler empty.

        Returns:
            Number of schedules loaded

        Raises:
            ValueError: If the document is malformed
        """
        path = Path(filename)
        if not path.exists():
            with self._lock:
                self._schedules = {}
            return 0

        try:
            with open(path) as f:
                document = json.load(f)
            loaded = [ScheduleInfo.from_dict(item) for item in document["schedules"]]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed schedules file {path}: {e}") from e

        with self._lock:
            self._schedules = {s.name: s for s in loaded}
        self.logger.info(f"Loaded {len(loaded)} schedules from {path}")
        return len(loaded)
