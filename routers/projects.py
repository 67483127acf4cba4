"""
Router for project endpoints.
Handles project creation, listing, deletion and the status projection clients poll.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user
from config import CLIP_TASK_TYPE
from database import get_db
from models import ExternalJob
from schemas import JobView, ProjectCreateRequest, ProjectListResponse, ProjectResponse, StatusResponse
from services import ProjectService
from tasks import start_clip_job


router = APIRouter(tags=["projects"])


@router.post("/api/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: ProjectCreateRequest,
    auto_process: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    """
    Creates a project with one pending task per selected workflow.
    With `auto_process=true` clip extraction is queued on the Celery worker.
    """
    project = ProjectService(db).create_project(user_id, request)
    if auto_process and ProjectService.find_task(project, CLIP_TASK_TYPE):
        start_clip_job.delay(project.id)
        logging.info(f"✨ Clip job for project {project.id} submitted to the worker")
    return ProjectResponse.model_validate(project)


@router.get("/api/list-projects", response_model=ProjectListResponse)
def list_projects(
    status: Optional[str] = None,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    projects = ProjectService(db).list_projects(user_id, status=status, search=q)
    return ProjectListResponse(
        projects=[ProjectResponse.model_validate(p) for p in projects],
        count=len(projects),
    )


@router.get("/api/projects/{project_id}", response_model=ProjectResponse)
def get_project(project_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    return ProjectResponse.model_validate(ProjectService(db).get_project(project_id, user_id))


@router.delete("/api/projects/{project_id}")
def delete_project(project_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    ProjectService(db).delete_project(project_id, user_id)
    return {"success": True, "message": "Project deleted successfully"}


@router.get("/api/projects/{project_id}/status", response_model=StatusResponse)
def get_project_status(project_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """
    Read-only view of task and job state. Never calls Klap.
    """
    project = ProjectService(db).get_project(project_id, user_id)
    job = (
        db.query(ExternalJob)
        .filter(ExternalJob.project_id == project.id, ExternalJob.task_type == CLIP_TASK_TYPE)
        .first()
    )
    return StatusResponse(
        project_id=project.id,
        status=project.status,
        tasks=project.tasks or [],
        job=JobView.model_validate(job, from_attributes=True) if job else None,
        clip_count=len(ProjectService.get_folders(project)["clips"]),
    )
