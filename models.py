# models.py

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def empty_folders() -> dict:
    return {"clips": [], "blog": [], "social": [], "images": []}


class Project(Base):
    """A user's uploaded video and everything derived from it."""

    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, default="")
    video_url = Column(String, nullable=False)
    thumbnail_url = Column(String, nullable=True)
    video_metadata = Column(JSON, default=dict)
    status = Column(String, default="processing")  # draft, processing, ready, published
    tasks = Column(JSON, default=list)
    folders = Column(JSON, default=empty_folders)
    content_analysis = Column(JSON, nullable=True)
    settings = Column(JSON, default=dict)
    klap_project_id = Column(String, nullable=True)  # vendor task id
    klap_folder_id = Column(String, nullable=True)  # vendor output folder id
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)
    version = Column(Integer, nullable=False, default=1)

    jobs = relationship("ExternalJob", back_populates="project", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}


class ExternalJob(Base):
    """Work delegated to a vendor API, one row per (project, task type)."""

    __tablename__ = "external_jobs"
    __table_args__ = (UniqueConstraint("project_id", "task_type", name="uq_external_jobs_project_task"),)

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    task_type = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="klap")
    external_id = Column(String, nullable=True)
    result_ref = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending, processing, completed, failed
    error = Column(Text, nullable=True)
    poll_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    project = relationship("Project", back_populates="jobs")


class Persona(Base):
    __tablename__ = "personas"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    status = Column(String, default="pending")  # pending, training, ready, failed
    persona_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now)

    images = relationship(
        "PersonaImage",
        back_populates="persona",
        cascade="all, delete-orphan",
        order_by="PersonaImage.created_at",
    )


class PersonaImage(Base):
    __tablename__ = "persona_images"

    id = Column(String, primary_key=True, default=_uuid)
    persona_id = Column(String, ForeignKey("personas.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String, nullable=False)
    kind = Column(String, default="training")  # training, portrait
    created_at = Column(DateTime(timezone=True), default=_now)

    persona = relationship("Persona", back_populates="images")
