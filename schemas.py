"""
Pydantic models for data validation in the Inflio clip backend.

Three groups live here: the shapes embedded in a project row (tasks, clips,
folders), the Klap API payloads validated at the vendor boundary, and the
request/response bodies of the HTTP API.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TaskType = Literal["transcription", "clips", "blog", "social", "podcast"]
TaskStatus = Literal["pending", "processing", "completed", "failed"]
ClipType = Literal["highlight", "intro", "outro", "key-moment"]


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, like the stored JSON and the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Embedded project documents ---

class ProcessingTask(CamelModel):
    id: str
    type: TaskType
    status: TaskStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


class VideoMetadata(CamelModel):
    duration: float = 0
    width: int = 0
    height: int = 0
    fps: float = 0
    codec: str = ""
    bitrate: int = 0
    size: int = 0
    format: str = ""


class Clip(CamelModel):
    id: str
    title: str
    description: str = ""
    start_time: float = 0
    end_time: float = 0
    duration: float = 0
    thumbnail: str = ""
    tags: List[str] = Field(default_factory=list)
    score: float = 0.5
    type: ClipType = "highlight"
    klap_project_id: Optional[str] = None
    klap_folder_id: Optional[str] = None
    preview_url: Optional[str] = None
    export_url: Optional[str] = None
    exported: bool = False
    virality_explanation: Optional[str] = None
    created_at: Optional[str] = None


class ContentFolders(BaseModel):
    clips: List[Clip] = Field(default_factory=list)
    blog: List[dict] = Field(default_factory=list)
    social: List[dict] = Field(default_factory=list)
    images: List[dict] = Field(default_factory=list)


# --- Klap API payloads ---

class KlapTask(BaseModel):
    id: str
    status: str = "processing"
    output_id: Optional[str] = None
    error: Optional[str] = None


class KlapClip(BaseModel):
    id: str
    name: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    virality_score: Optional[float] = None
    virality_score_explanation: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    tags: Optional[List[str]] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_default(cls, value):
        return value or []


class KlapExport(BaseModel):
    id: str
    status: str = "processing"
    src_url: Optional[str] = None
    error: Optional[str] = None


class JobPoll(CamelModel):
    """Internal view of a vendor task, as returned by a poll."""
    status: TaskStatus
    result_ref: Optional[str] = None
    error: Optional[str] = None


# --- API requests ---

class ProjectCreateRequest(CamelModel):
    title: str = Field(min_length=1)
    video_url: str = Field(min_length=1)
    description: str = ""
    thumbnail_url: Optional[str] = None
    video_metadata: Optional[VideoMetadata] = None
    workflows: Optional[Dict[TaskType, bool]] = None


class StartJobRequest(CamelModel):
    project_id: str
    video_url: Optional[str] = None


class RestartJobRequest(CamelModel):
    project_id: str


class ForceProcessRequest(CamelModel):
    project_id: str
    folder_id: str


class ExportClipsRequest(CamelModel):
    project_id: str
    clip_ids: List[str] = Field(min_length=1)
    watermark: Optional[str] = None


class PersonaCreateRequest(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    image_urls: List[str] = Field(default_factory=list)


# --- API responses ---

class UploadVideoResponse(CamelModel):
    video_url: str
    file_path: str
    metadata: VideoMetadata


class ProjectResponse(BaseModel):
    """Mirror of a project row; embedded documents keep their camelCase keys."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    description: Optional[str] = ""
    video_url: str
    thumbnail_url: Optional[str] = None
    video_metadata: VideoMetadata = Field(default_factory=VideoMetadata)
    status: str
    tasks: List[ProcessingTask] = Field(default_factory=list)
    folders: ContentFolders = Field(default_factory=ContentFolders)
    content_analysis: Optional[dict] = None
    klap_project_id: Optional[str] = None
    klap_folder_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("video_metadata", "folders", "tasks", mode="before")
    @classmethod
    def _default_when_null(cls, value, info):
        # rows written before a column existed come back as NULL
        if value is None:
            return [] if info.field_name == "tasks" else {}
        return value


class ProjectListResponse(BaseModel):
    projects: List[ProjectResponse]
    count: int


class JobView(CamelModel):
    task_type: str
    status: str
    external_id: Optional[str] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None
    poll_count: int = 0
    updated_at: Optional[datetime] = None


class StatusResponse(CamelModel):
    """Read-only projection polled by the client."""
    project_id: str
    status: str
    tasks: List[ProcessingTask]
    job: Optional[JobView] = None
    clip_count: int = 0


class JobResponse(CamelModel):
    project_id: str
    external_job_id: str
    status: str


class MaterializeResponse(CamelModel):
    project_id: str
    clips_added: int
    clip_count: int
    clips: List[Clip]


class ExportedClip(CamelModel):
    clip_id: str
    url: str


class ExportClipsResponse(CamelModel):
    project_id: str
    exported_clips: List[ExportedClip]


class VendorTaskResponse(CamelModel):
    project_id: str
    external_job_id: str
    poll: JobPoll


class WorkerResponse(CamelModel):
    processed: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    errors: int = 0
    message: str = ""


class PersonaResponse(BaseModel):
    """Snake-case row fields with camelCase training counters, as the persona screens read them."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: Optional[str] = ""
    status: str
    avatar_url: Optional[str] = None
    photo_count: int = Field(default=0, alias="photoCount")
    portraits_generated: int = Field(default=0, alias="portraitsGenerated")
    created_at: Optional[datetime] = None


class PersonaListResponse(CamelModel):
    personas: List[PersonaResponse]
    count: int
