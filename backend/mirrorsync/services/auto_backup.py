import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from mirrorsync.config import settings
from mirrorsync.errors import ConfigurationError
from mirrorsync.services.backends import list_backends
from mirrorsync.services.backup_service import start_backup
from mirrorsync.services.job_runner import JobRunner

logger = logging.getLogger(__name__)

KINDS = ("database", "files")


class AutoBackupConfig(BaseModel):
    database_enabled: bool = False
    database_schedule: str = "0 2 * * *"
    files_enabled: bool = False
    files_schedule: str = "0 3 * * *"

    @classmethod
    def from_settings(cls) -> "AutoBackupConfig":
        return cls(
            database_enabled=settings.auto_backup_database_enabled,
            database_schedule=settings.auto_backup_database_schedule,
            files_enabled=settings.auto_backup_files_enabled,
            files_schedule=settings.auto_backup_files_schedule,
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AutoBackupScheduler:
    """Cron-driven backups of every registered backend, one schedule per kind."""

    def __init__(self, scheduler: AsyncIOScheduler, runner: JobRunner) -> None:
        self._scheduler = scheduler
        self._runner = runner
        self._triggers: dict[str, Optional[CronTrigger]] = {k: None for k in KINDS}
        self._state = {k: {"enabled": False, "schedule": None, "lastRun": None, "running": False} for k in KINDS}

    def start(self, config: Optional[AutoBackupConfig] = None) -> None:
        """Schedule from ``config`` (settings by default); invalid crontabs disable that kind."""
        config = config or AutoBackupConfig.from_settings()
        for kind in KINDS:
            try:
                self._schedule(kind, getattr(config, f"{kind}_enabled"), getattr(config, f"{kind}_schedule"))
            except ConfigurationError as e:
                logger.error("Auto %s backup disabled: %s", kind, e)

    def restart(self, config: AutoBackupConfig) -> dict:
        """Reschedule both kinds; an invalid crontab raises before anything changes."""
        for kind in KINDS:
            if getattr(config, f"{kind}_enabled"):
                self._trigger(getattr(config, f"{kind}_schedule"))
        for kind in KINDS:
            self._schedule(kind, getattr(config, f"{kind}_enabled"), getattr(config, f"{kind}_schedule"))
        return self.status()

    def status(self) -> dict:
        now = datetime.now(timezone.utc)
        result = {}
        for kind in KINDS:
            trigger = self._triggers[kind]
            next_run = trigger.get_next_fire_time(None, now) if trigger and self._state[kind]["enabled"] else None
            result[kind] = {**self._state[kind], "nextRun": _iso(next_run)}
        return result

    # ---- Helpers ----

    @staticmethod
    def _trigger(schedule: str) -> CronTrigger:
        try:
            return CronTrigger.from_crontab(schedule, timezone=settings.scheduler_timezone)
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron schedule {schedule!r}: {e}") from e

    def _schedule(self, kind: str, enabled: bool, schedule: str) -> None:
        job_name = f"auto_backup_{kind}"
        if self._scheduler.get_job(job_name):
            self._scheduler.remove_job(job_name)
        self._state[kind].update(enabled=False, schedule=schedule)
        self._triggers[kind] = None

        if not enabled:
            logger.info("Auto %s backup is disabled", kind)
            return

        trigger = self._trigger(schedule)
        self._scheduler.add_job(self.run, trigger, args=[kind], id=job_name, replace_existing=True)
        self._triggers[kind] = trigger
        self._state[kind]["enabled"] = True
        logger.info("Auto %s backup scheduled: %s", kind, schedule)

    async def run(self, kind: str) -> list[str]:
        """Start one automatic backup job per backend that can do ``kind``."""
        state = self._state[kind]
        state["running"] = True
        state["lastRun"] = datetime.now(timezone.utc).isoformat()
        logger.info("Starting automatic %s backup", kind)
        job_ids = []
        try:
            for backend in await list_backends():
                if (kind == "database" and not backend.db_url) or (kind == "files" and not backend.bucket_url):
                    logger.info("Auto %s backup: %s has nothing to back up", kind, backend.name)
                    continue
                job_ids.append(await start_backup(self._runner, kind, backend.name, is_automatic=True))
        finally:
            state["running"] = False
        logger.info("Automatic %s backup started %d job(s)", kind, len(job_ids))
        return job_ids
