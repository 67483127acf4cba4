"""
Service classes for the Inflio clip backend.
Contains ProjectService, ClipJobService, MediaService and PersonaService.

Project rows are read whole, mutated and written whole. The `version`
column on projects turns a write based on a stale read into a
StaleDataError instead of a silent overwrite.
"""

import logging
import uuid
from datetime import datetime, timezone
from fractions import Fraction
from typing import Dict, List, Optional

import ffmpeg
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import (
    CLIP_TASK_TYPE,
    DEFAULT_WORKFLOWS,
    DISPATCHED_PROGRESS,
    KLAP_LANGUAGE,
    KLAP_MAX_DURATION,
    KLAP_PLAYER_URL,
    MAX_POLLING_PROGRESS,
    POLL_BATCH_SIZE,
    TASK_TYPES,
)
from errors import (
    EmptyFolderError,
    ForbiddenError,
    InvalidTaskTransitionError,
    JobAlreadyDispatchedError,
    JobNotDispatchedError,
    KlapAPIError,
    PersonaNotFoundError,
    ProjectNotFoundError,
    ValidationError,
)
from klap_api import KlapAPIService
from models import ExternalJob, Persona, PersonaImage, Project, empty_folders
from schemas import (
    Clip,
    JobPoll,
    KlapClip,
    PersonaCreateRequest,
    ProcessingTask,
    ProjectCreateRequest,
    VideoMetadata,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectService:
    """CRUD over projects plus the embedded task and folder documents."""

    def __init__(self, db: Session):
        self.db = db

    def create_project(self, user_id: str, request: ProjectCreateRequest) -> Project:
        workflows = {**DEFAULT_WORKFLOWS, **(request.workflows or {})}
        tasks = [
            ProcessingTask(id=str(uuid.uuid4()), type=task_type).model_dump(by_alias=True, exclude_none=True)
            for task_type in TASK_TYPES
            if workflows.get(task_type)
        ]
        metadata = request.video_metadata or VideoMetadata()

        project = Project(
            user_id=user_id,
            title=request.title,
            description=request.description,
            video_url=request.video_url,
            thumbnail_url=request.thumbnail_url,
            video_metadata=metadata.model_dump(by_alias=True),
            status="processing",
            tasks=tasks,
            folders=empty_folders(),
            settings={
                "autoGenerateClips": bool(workflows.get(CLIP_TASK_TYPE)),
                "clipDuration": KLAP_MAX_DURATION,
                "language": KLAP_LANGUAGE,
            },
        )
        self.db.add(project)
        self.db.commit()
        self.db.refresh(project)
        logging.info(f"✨ Project {project.id} created for user {user_id} with tasks {[t['type'] for t in tasks]}")
        return project

    def get_project(self, project_id: str, user_id: Optional[str] = None, for_update: bool = False) -> Project:
        query = self.db.query(Project).filter(Project.id == project_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        project = query.first()
        if not project:
            raise ProjectNotFoundError("Project not found")
        if user_id is not None and project.user_id != user_id:
            raise ForbiddenError("You do not have access to this project")
        return project

    def list_projects(self, user_id: str, status: Optional[str] = None, search: Optional[str] = None) -> List[Project]:
        query = self.db.query(Project).filter(Project.user_id == user_id)
        if status:
            query = query.filter(Project.status == status)
        if search:
            query = query.filter(Project.title.ilike(f"%{search}%"))
        return query.order_by(Project.created_at.desc()).all()

    def delete_project(self, project_id: str, user_id: str) -> None:
        project = self.get_project(project_id, user_id)
        self.db.delete(project)
        self.db.commit()
        logging.info(f"🗑️ Project {project_id} deleted")

    # --- Embedded documents ---

    @staticmethod
    def get_folders(project: Project) -> Dict[str, list]:
        """A normalised copy of the project's folders; assign it back to save."""
        folders = empty_folders()
        for name, items in (project.folders or {}).items():
            folders[name] = list(items or [])
        return folders

    @staticmethod
    def get_tasks(project: Project) -> List[dict]:
        return [dict(task) for task in project.tasks or []]

    @staticmethod
    def find_task(project: Project, task_type: str) -> Optional[dict]:
        return next((dict(t) for t in project.tasks or [] if t.get("type") == task_type), None)

    def update_task_progress(
        self,
        project: Project,
        task_type: str,
        progress: int,
        status: Optional[str] = None,
        error: Optional[str] = None,
        commit: bool = True,
    ) -> dict:
        """Move one task forward.

        Progress is clamped to 0..100 and never decreases while the task stays
        processing. A clips task cannot complete before a vendor job id is stored.
        """
        tasks = self.get_tasks(project)
        index = next((i for i, t in enumerate(tasks) if t.get("type") == task_type), None)
        if index is None:
            tasks.append({"id": str(uuid.uuid4()), "type": task_type, "status": "pending", "progress": 0})
            index = len(tasks) - 1

        task = tasks[index]
        current_status = task.get("status", "pending")
        new_status = status or current_status
        progress = max(0, min(100, int(progress)))

        if new_status == "completed":
            if task_type == CLIP_TASK_TYPE and not project.klap_project_id:
                raise InvalidTaskTransitionError(
                    f"Task '{task_type}' cannot complete without an external job id"
                )
            progress = 100
            task["completedAt"] = _now_iso()
        elif new_status == "processing":
            if current_status == "processing":
                progress = max(progress, int(task.get("progress", 0)))
            task.setdefault("startedAt", _now_iso())

        task["status"] = new_status
        task["progress"] = progress
        if error is not None:
            task["error"] = error
        elif new_status != "failed":
            task.pop("error", None)

        tasks[index] = ProcessingTask.model_validate(task).model_dump(by_alias=True, exclude_none=True)
        project.tasks = tasks
        if commit:
            self.db.commit()
        return tasks[index]

    def reset_task(self, project: Project, task_type: str) -> None:
        tasks = self.get_tasks(project)
        for task in tasks:
            if task.get("type") == task_type:
                for key in ("startedAt", "completedAt", "error"):
                    task.pop(key, None)
                task.update(status="pending", progress=0)
        project.tasks = tasks

    def add_clips(self, project: Project, clips: List[Clip]) -> List[Clip]:
        """Append clips whose id is not in the folder yet; return the ones added."""
        folders = self.get_folders(project)
        known_ids = {clip.get("id") for clip in folders["clips"]}
        added = []
        for clip in clips:
            if clip.id in known_ids:
                continue
            known_ids.add(clip.id)
            folders["clips"].append(clip.model_dump(by_alias=True, exclude_none=True))
            added.append(clip)
        project.folders = folders
        return added

    @staticmethod
    def refresh_status(project: Project) -> None:
        tasks = project.tasks or []
        if tasks and all(task.get("status") == "completed" for task in tasks):
            project.status = "ready"


class ClipJobService:
    """Drives the clip-extraction job: dispatch, poll, materialize, restart."""

    def __init__(self, db: Session, klap: KlapAPIService):
        self.db = db
        self.klap = klap
        self.projects = ProjectService(db)

    def get_job(self, project_id: str, task_type: str = CLIP_TASK_TYPE) -> Optional[ExternalJob]:
        return (
            self.db.query(ExternalJob)
            .filter(ExternalJob.project_id == project_id, ExternalJob.task_type == task_type)
            .first()
        )

    def start_job(self, project_id: str, source_url: Optional[str] = None, user_id: Optional[str] = None) -> str:
        """Dispatch clip extraction to Klap and return the vendor task id.

        The job row is committed before Klap is called, so the unique
        (project_id, task_type) constraint lets exactly one caller through.
        """
        project = self.projects.get_project(project_id, user_id)
        source_url = source_url or project.video_url
        if not source_url:
            raise ValidationError("Project has no video URL to process")
        if project.klap_project_id or self.get_job(project_id):
            raise JobAlreadyDispatchedError("Clip generation has already been started for this project")

        job = ExternalJob(project_id=project.id, task_type=CLIP_TASK_TYPE, provider="klap", status="pending")
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise JobAlreadyDispatchedError("Clip generation has already been started for this project")

        try:
            task = self.klap.create_video_task(source_url)
        except Exception as e:
            logging.error(f"❌ Klap dispatch failed for project {project_id}: {e}")
            job.status = "failed"
            job.error = str(e)
            self.projects.update_task_progress(project, CLIP_TASK_TYPE, 0, "failed", error=str(e), commit=False)
            self.db.commit()
            raise

        job.external_id = task.id
        job.status = "processing"
        project.klap_project_id = task.id
        project.status = "processing"
        self.projects.update_task_progress(project, CLIP_TASK_TYPE, DISPATCHED_PROGRESS, "processing", commit=False)
        self.db.commit()
        logging.info(f"🚀 Klap task {task.id} dispatched for project {project_id}")
        return task.id

    def poll_job(self, external_job_id: str) -> JobPoll:
        """Ask Klap for the task state. Never writes."""
        task = self.klap.get_task(external_job_id)
        status = task.status.lower()
        if status == "ready":
            if task.output_id:
                return JobPoll(status="completed", result_ref=task.output_id)
            logging.warning(f"[Klap] Task {external_job_id} is ready but has no output_id yet")
            return JobPoll(status="processing")
        if status in ("error", "failed"):
            return JobPoll(status="failed", error=task.error or "Unknown error")
        return JobPoll(status="processing")

    def advance_job(self, project_id: str) -> str:
        """One worker step for a project's clip job.

        Returns one of "completed", "failed", "processing", "unchanged" or
        "skipped". Transient Klap failures leave every row untouched.
        """
        job = self.get_job(project_id)
        if job is None or job.status != "processing" or not job.external_id:
            return "skipped"

        try:
            poll = self.poll_job(job.external_id)
        except KlapAPIError as e:
            if e.transient:
                logging.warning(f"⏳ Klap unavailable while polling {job.external_id}, will retry: {e}")
                return "unchanged"
            self._fail(project_id, job, str(e))
            return "failed"

        if poll.status == "failed":
            self._fail(project_id, job, poll.error or "Klap processing failed")
            return "failed"

        if poll.status == "processing":
            project = self.projects.get_project(project_id)
            job.poll_count = (job.poll_count or 0) + 1
            progress = min(DISPATCHED_PROGRESS + 2 * job.poll_count, MAX_POLLING_PROGRESS)
            self.projects.update_task_progress(project, CLIP_TASK_TYPE, progress, "processing", commit=False)
            self.db.commit()
            return "processing"

        try:
            self.materialize_results(project_id, poll.result_ref)
        except KlapAPIError as e:
            self.db.rollback()
            if e.transient:
                logging.warning(f"⏳ Clips for {project_id} not retrievable yet, will retry: {e}")
                return "unchanged"
            self._fail(project_id, self.get_job(project_id), str(e))
            return "failed"
        return "completed"

    def _fail(self, project_id: str, job: ExternalJob, error: str) -> None:
        logging.error(f"❌ Clip job for project {project_id} failed: {error}")
        project = self.projects.get_project(project_id)
        job.status = "failed"
        job.error = error
        self.projects.update_task_progress(project, CLIP_TASK_TYPE, 0, "failed", error=error, commit=False)
        self.db.commit()

    def materialize_results(self, project_id: str, result_ref: str, user_id: Optional[str] = None) -> List[Clip]:
        """Copy the clips of a finished Klap folder into the project.

        Every Klap call happens before the first write, and clips already in
        the folder are not appended again, so a second call changes nothing.
        Returns the project's clips that belong to this result set.
        """
        project = self.projects.get_project(project_id, user_id)
        job = self.get_job(project_id)
        if not project.klap_project_id or job is None or not job.external_id:
            raise JobNotDispatchedError("Project has no dispatched clip job")

        klap_clips = self.klap.get_clips_from_folder(result_ref)
        if not klap_clips:
            raise EmptyFolderError(result_ref)
        clips = [self._to_clip(klap_clip, result_ref, index) for index, klap_clip in enumerate(klap_clips)]

        project = self.projects.get_project(project_id, for_update=True)
        added = self.projects.add_clips(project, clips)
        project.klap_folder_id = result_ref
        job.result_ref = result_ref
        job.status = "completed"
        job.error = None
        self.projects.update_task_progress(project, CLIP_TASK_TYPE, 100, "completed", commit=False)
        self.projects.refresh_status(project)
        self.db.commit()
        logging.info(f"✅ Materialized {len(added)} new clip(s) from folder {result_ref} into project {project_id}")

        wanted = {clip.id for clip in clips}
        return [Clip.model_validate(c) for c in self.projects.get_folders(project)["clips"] if c.get("id") in wanted]

    def _to_clip(self, klap_clip: KlapClip, folder_id: str, index: int) -> Clip:
        if not (klap_clip.name or klap_clip.title):
            try:
                klap_clip = self.klap.get_clip_details(folder_id, klap_clip.id)
            except KlapAPIError as e:
                logging.warning(f"[Klap] Using defaults for clip {klap_clip.id}: {e}")

        start = klap_clip.start_time or 0
        end = klap_clip.end_time or 0
        duration = klap_clip.duration if klap_clip.duration is not None else max(end - start, 0)
        score = klap_clip.virality_score / 100 if klap_clip.virality_score is not None else 0.5
        return Clip(
            id=klap_clip.id,
            title=klap_clip.title or klap_clip.name or f"Clip {index + 1}",
            description=klap_clip.virality_score_explanation or klap_clip.description or "",
            start_time=start,
            end_time=end,
            duration=duration,
            thumbnail=klap_clip.thumbnail or f"{KLAP_PLAYER_URL}/{klap_clip.id}/thumbnail",
            tags=klap_clip.tags,
            score=max(0.0, min(1.0, score)),
            klap_project_id=klap_clip.id,
            klap_folder_id=folder_id,
            preview_url=f"{KLAP_PLAYER_URL}/{klap_clip.id}",
            virality_explanation=klap_clip.virality_score_explanation,
            created_at=_now_iso(),
        )

    def restart_job(self, project_id: str, user_id: Optional[str] = None) -> str:
        """Forget the current clip job and dispatch a new one. Clips already stored stay."""
        project = self.projects.get_project(project_id, user_id)
        job = self.get_job(project_id)
        if job is not None:
            self.db.delete(job)
        project.klap_project_id = None
        project.klap_folder_id = None
        self.projects.reset_task(project, CLIP_TASK_TYPE)
        self.db.commit()
        logging.info(f"🔁 Restarting clip job for project {project_id}")
        return self.start_job(project_id, user_id=user_id)

    def process_pending(self, limit: int = POLL_BATCH_SIZE) -> Dict[str, int]:
        """Advance up to `limit` processing jobs, least recently touched first."""
        rows = (
            self.db.query(ExternalJob.project_id)
            .filter(ExternalJob.status == "processing", ExternalJob.external_id.isnot(None))
            .order_by(ExternalJob.updated_at.asc())
            .limit(limit)
            .all()
        )
        summary = {"processed": 0, "completed": 0, "failed": 0, "unchanged": 0, "errors": 0}
        for (project_id,) in rows:
            try:
                outcome = self.advance_job(project_id)
            except StaleDataError:
                self.db.rollback()
                logging.warning(f"Project {project_id} was modified concurrently; it will be polled again")
                summary["unchanged"] += 1
                continue
            except Exception as e:
                self.db.rollback()
                logging.exception(f"Worker failed to advance project {project_id}: {e}")
                summary["errors"] += 1
                continue
            summary["processed"] += 1
            if outcome in summary:
                summary[outcome] += 1
        logging.info(f"[Worker] Sweep finished: {summary}")
        return summary

    def export_clips(
        self,
        project_id: str,
        clip_ids: List[str],
        watermark: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        project = self.projects.get_project(project_id, user_id)
        folder_id = project.klap_folder_id
        if not folder_id:
            raise JobNotDispatchedError("Project has no generated clips to export")
        known_ids = {clip.get("id") for clip in self.projects.get_folders(project)["clips"]}
        unknown = [clip_id for clip_id in clip_ids if clip_id not in known_ids]
        if unknown:
            raise ValidationError(f"Unknown clip id(s): {', '.join(unknown)}")

        exported = []
        for index, clip_id in enumerate(clip_ids):
            logging.info(f"[Klap] Exporting clip {index + 1} of {len(clip_ids)}")
            url = self.klap.export_clip(folder_id, clip_id, watermark)
            exported.append({"clip_id": clip_id, "url": url})

        urls = {item["clip_id"]: item["url"] for item in exported}
        project = self.projects.get_project(project_id, for_update=True)
        folders = self.projects.get_folders(project)
        folders["clips"] = [
            {**clip, "exportUrl": urls[clip["id"]], "exported": True} if clip.get("id") in urls else clip
            for clip in folders["clips"]
        ]
        project.folders = folders
        self.db.commit()
        return exported


class MediaService:
    """Reads technical metadata from stored videos."""

    @staticmethod
    def probe(path: str) -> VideoMetadata:
        """Probe a video with ffprobe; an unreadable file yields empty metadata."""
        try:
            info = ffmpeg.probe(path)
        except ffmpeg.Error as e:
            error_details = e.stderr.decode("utf8") if e.stderr else "Unknown FFmpeg error"
            logging.warning(f"ffprobe could not read {path}: {error_details}")
            return VideoMetadata()
        except FileNotFoundError:
            logging.warning("ffprobe is not installed; skipping metadata extraction")
            return VideoMetadata()

        fmt = info.get("format", {})
        video = next((s for s in info.get("streams", []) if s.get("codec_type") == "video"), {})
        try:
            fps = float(Fraction(video.get("avg_frame_rate") or video.get("r_frame_rate") or "0"))
        except (ValueError, ZeroDivisionError):
            fps = 0.0
        return VideoMetadata(
            duration=float(fmt.get("duration") or video.get("duration") or 0),
            width=int(video.get("width") or 0),
            height=int(video.get("height") or 0),
            fps=round(fps, 3),
            codec=video.get("codec_name", ""),
            bitrate=int(fmt.get("bit_rate") or 0),
            size=int(fmt.get("size") or 0),
            format=fmt.get("format_name", ""),
        )


class PersonaService:
    def __init__(self, db: Session):
        self.db = db

    def list_personas(self, user_id: str) -> List[Persona]:
        return (
            self.db.query(Persona)
            .filter(Persona.user_id == user_id)
            .order_by(Persona.created_at.desc())
            .all()
        )

    def create_persona(self, user_id: str, request: PersonaCreateRequest) -> Persona:
        persona = Persona(
            user_id=user_id,
            name=request.name,
            description=request.description,
            status="pending",
            persona_metadata={"photoCount": len(request.image_urls)},
            images=[PersonaImage(url=url, kind="training") for url in request.image_urls],
        )
        self.db.add(persona)
        self.db.commit()
        self.db.refresh(persona)
        return persona

    def delete_persona(self, persona_id: str, user_id: str) -> None:
        persona = self.db.query(Persona).filter(Persona.id == persona_id).first()
        if not persona:
            raise PersonaNotFoundError("Persona not found")
        if persona.user_id != user_id:
            raise ForbiddenError("You do not have access to this persona")
        self.db.delete(persona)
        self.db.commit()

    @staticmethod
    def summarize(persona: Persona) -> dict:
        """Avatar and training counters, preferring stored portrait rows over metadata."""
        metadata = persona.persona_metadata or {}
        portraits = [image.url for image in persona.images if image.kind == "portrait"]
        if not portraits:
            portraits = [p.get("url") for p in metadata.get("portraits") or [] if isinstance(p, dict) and p.get("url")]
        if not portraits:
            portraits = list(metadata.get("generalPortraitUrls") or metadata.get("portraitUrls") or [])
        training = [image for image in persona.images if image.kind == "training"]

        return {
            "id": persona.id,
            "name": persona.name,
            "description": persona.description,
            "status": persona.status,
            "avatar_url": portraits[0] if portraits else None,
            "photo_count": metadata.get("photoCount") or len(training),
            "portraits_generated": len(portraits),
            "created_at": persona.created_at,
        }
