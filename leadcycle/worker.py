import asyncio
import os

from celery import Celery
from celery.schedules import crontab

from leadcycle import db
from leadcycle.jobs import DispatchWorker


def _broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "leadcycle",
    broker=_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _broker_url()),
)

celery_app.conf.beat_schedule = {
    "followup-dispatch": {
        "task": "leadcycle.worker.dispatch_followups_task",
        "schedule": crontab(minute=0),
    },
    "followup-purge": {
        "task": "leadcycle.worker.purge_followups_task",
        "schedule": crontab(minute=0, hour=0),
    },
}


async def _run(step: str):
    # Pooled connections are bound to the loop that asyncio.run tears down.
    try:
        worker = DispatchWorker()
        return await getattr(worker, step)()
    finally:
        await db.engine.dispose()


@celery_app.task
def dispatch_followups_task() -> dict:
    return asyncio.run(_run("tick")).to_dict()


@celery_app.task
def purge_followups_task() -> int:
    return asyncio.run(_run("purge"))
