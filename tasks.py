# tasks.py

import logging
from typing import Optional

from celery import Celery

from database import SessionLocal
from config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND, LOG_LEVEL, POLL_BATCH_SIZE, POLL_INTERVAL_SECONDS
from errors import InflioError
from klap_api import KlapAPIService
from services import ClipJobService

celery = Celery('tasks', broker=CELERY_BROKER_URL, backend=CELERY_RESULT_BACKEND)
celery.conf.beat_schedule = {
    "poll-clip-jobs": {"task": "tasks.poll_clip_jobs", "schedule": POLL_INTERVAL_SECONDS},
}
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")


@celery.task(name="tasks.poll_clip_jobs")
def poll_clip_jobs(limit: int = POLL_BATCH_SIZE) -> dict:
    """
    Periodic sweep: advance every clip job that is still processing on Klap.
    """
    db = SessionLocal()
    try:
        summary = ClipJobService(db, KlapAPIService()).process_pending(limit)
        logging.info(f"🔄 Poll sweep done: {summary}")
        return summary
    finally:
        db.close()


@celery.task(name="tasks.start_clip_job")
def start_clip_job(project_id: str, video_url: Optional[str] = None) -> str:
    """
    Dispatch clip extraction for a project from a background worker.
    """
    db = SessionLocal()
    try:
        logging.info(f"📝 Worker received clip dispatch for project {project_id}")
        return ClipJobService(db, KlapAPIService()).start_job(project_id, video_url)
    except InflioError as e:
        logging.error(f"❌ Worker could not dispatch clips for project {project_id}. Error: {e}")
        raise
    finally:
        db.close()
