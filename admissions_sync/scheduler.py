import logging
import signal

from apscheduler.schedulers.blocking import BlockingScheduler

from admissions_sync.config import Settings
from admissions_sync.pipeline import PipelineRunner


logger = logging.getLogger(__name__)


def _run_scheduled_ingestion(runner: PipelineRunner, tables: list[str]) -> None:
    report = runner.run(tables=tables)
    extra = {
        "run_id": report.run_id,
        "status": report.status,
        "partitions": len(report.partitions),
        "report_path": report.report_path,
    }
    if report.status == "failed":
        logger.error("scheduled ingestion run failed", extra=extra)
        return
    logger.info("scheduled ingestion run completed", extra=extra)


def start_scheduler(settings: Settings, runner: PipelineRunner, tables: list[str], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_scheduled_ingestion,
        "cron",
        args=[runner, tables],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_ingestion",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
            "tables": tables,
        },
    )

    def stop(signum, frame) -> None:
        logger.info("scheduler stopping", extra={"signal": signum})
        runner.cancel()
        if scheduler.running:
            scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, stop)

    if run_now:
        _run_scheduled_ingestion(runner, tables)
    if runner.cancel_event.is_set():
        return

    scheduler.start()
