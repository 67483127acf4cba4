"""
Router for the clip worker and its cron trigger.
The cron endpoint forwards to the worker endpoint with the worker secret.
"""

import logging

import requests
from fastapi import APIRouter, Depends, HTTPException

import config
from auth import require_cron_secret, require_worker_secret
from routers.clips import get_clip_jobs
from schemas import WorkerResponse
from services import ClipJobService


router = APIRouter(prefix="/api", tags=["worker"])


@router.post("/worker/klap", response_model=WorkerResponse, dependencies=[Depends(require_worker_secret)])
def run_klap_worker(limit: int = config.POLL_BATCH_SIZE, jobs: ClipJobService = Depends(get_clip_jobs)):
    """
    Polls Klap for every processing clip job and materializes finished ones.
    """
    summary = jobs.process_pending(limit)
    message = "No jobs to process" if not summary["processed"] and not summary["errors"] else "Sweep complete"
    return WorkerResponse(**summary, message=message)


@router.api_route("/cron/klap", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def trigger_klap_worker():
    """
    Entry point for the scheduler. Hands the sweep to the worker endpoint.
    """
    if not config.WORKER_SECRET:
        raise HTTPException(status_code=503, detail="WORKER_SECRET is not configured")
    try:
        response = requests.post(
            config.WORKER_URL,
            headers={"Authorization": f"Bearer {config.WORKER_SECRET}"},
            timeout=300,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logging.error(f"[Cron] Could not reach the Klap worker at {config.WORKER_URL}: {e}")
        raise HTTPException(status_code=502, detail="Failed to trigger the clip worker")

    logging.info(f"[Cron] Klap worker triggered: {response.status_code}")
    return {"success": True, "worker": response.json()}
