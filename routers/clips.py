"""
Router for clip-generation endpoints.
Dispatches, restarts, force-materializes and exports Klap clip jobs.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from errors import EmptyFolderError, JobNotDispatchedError
from klap_api import KlapAPIService, get_klap_service
from schemas import (
    ExportClipsRequest,
    ExportClipsResponse,
    ForceProcessRequest,
    JobResponse,
    MaterializeResponse,
    RestartJobRequest,
    StartJobRequest,
    VendorTaskResponse,
)
from services import ClipJobService, ProjectService


router = APIRouter(prefix="/api", tags=["clips"])


def get_clip_jobs(db: Session = Depends(get_db), klap: KlapAPIService = Depends(get_klap_service)) -> ClipJobService:
    """Dependency for FastAPI to get the clip job service."""
    return ClipJobService(db, klap)


@router.post("/process-klap", response_model=JobResponse)
def process_klap(
    request: StartJobRequest,
    user_id: str = Depends(get_current_user),
    jobs: ClipJobService = Depends(get_clip_jobs),
):
    """
    Sends the project's video to Klap and returns the Klap task id.
    A project gets at most one clip job; use /restart-klap to start over.
    """
    external_id = jobs.start_job(request.project_id, request.video_url, user_id=user_id)
    return JobResponse(project_id=request.project_id, external_job_id=external_id, status="processing")


@router.post("/restart-klap", response_model=JobResponse)
def restart_klap(
    request: RestartJobRequest,
    user_id: str = Depends(get_current_user),
    jobs: ClipJobService = Depends(get_clip_jobs),
):
    external_id = jobs.restart_job(request.project_id, user_id=user_id)
    return JobResponse(project_id=request.project_id, external_job_id=external_id, status="processing")


@router.post("/process-klap-force", response_model=MaterializeResponse)
def process_klap_force(
    request: ForceProcessRequest,
    user_id: str = Depends(get_current_user),
    jobs: ClipJobService = Depends(get_clip_jobs),
):
    """
    Materializes clips from a known Klap output folder without waiting for the worker.
    """
    before = len(ProjectService.get_folders(jobs.projects.get_project(request.project_id, user_id))["clips"])
    try:
        clips = jobs.materialize_results(request.project_id, request.folder_id, user_id=user_id)
    except EmptyFolderError:
        raise HTTPException(status_code=404, detail="No clips found in folder")
    after = len(ProjectService.get_folders(jobs.projects.get_project(request.project_id))["clips"])
    logging.info(f"[Force Process] Project {request.project_id}: {after - before} clip(s) added")
    return MaterializeResponse(project_id=request.project_id, clips_added=after - before, clip_count=after, clips=clips)


@router.get("/check-klap-task", response_model=VendorTaskResponse)
def check_klap_task(
    project_id: str = Query(..., alias="projectId"),
    user_id: str = Depends(get_current_user),
    jobs: ClipJobService = Depends(get_clip_jobs),
):
    """
    Asks Klap directly for the state of the project's task. Nothing is written.
    """
    project = jobs.projects.get_project(project_id, user_id)
    if not project.klap_project_id:
        raise JobNotDispatchedError("No Klap task ID found in project")
    poll = jobs.poll_job(project.klap_project_id)
    return VendorTaskResponse(project_id=project.id, external_job_id=project.klap_project_id, poll=poll)


@router.post("/export-clips", response_model=ExportClipsResponse)
def export_clips(
    request: ExportClipsRequest,
    user_id: str = Depends(get_current_user),
    jobs: ClipJobService = Depends(get_clip_jobs),
):
    if len(set(request.clip_ids)) != len(request.clip_ids):
        raise HTTPException(status_code=400, detail="Duplicate clip ids in request")
    exported = jobs.export_clips(request.project_id, request.clip_ids, request.watermark, user_id=user_id)
    return ExportClipsResponse(project_id=request.project_id, exported_clips=exported)
