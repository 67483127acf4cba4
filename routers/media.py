"""
Router for media endpoints.
Handles video uploads and serving stored media files.
"""

import os
import uuid
import shutil
import logging
from fastapi import APIRouter, HTTPException, File, UploadFile, Depends
from fastapi.responses import FileResponse

import config
from auth import get_current_user
from schemas import UploadVideoResponse
from services import MediaService


# Create the router
router = APIRouter(tags=["media"])


@router.post("/api/upload-video", response_model=UploadVideoResponse)
def upload_video(file: UploadFile = File(...), user_id: str = Depends(get_current_user)):
    """Receives a video from the frontend, stores it and probes its metadata."""
    filename = f"{uuid.uuid4()}_{os.path.basename(file.filename or 'video.mp4')}"
    user_dir = os.path.join(config.UPLOAD_DIR, user_id)
    file_path = os.path.join(user_dir, filename)
    try:
        os.makedirs(user_dir, exist_ok=True)
        with open(file_path, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)
    except OSError as e:
        logging.error(f"Failed to store upload: {e}")
        raise HTTPException(status_code=500, detail="Failed to save uploaded video.")
    logging.info(f"Video saved to: {file_path}")

    metadata = MediaService.probe(file_path)
    relative = os.path.relpath(file_path, config.MEDIA_DIR).replace(os.sep, "/")
    video_url = f"{config.PUBLIC_BASE_URL.rstrip('/')}/media/{relative}"
    return UploadVideoResponse(video_url=video_url, file_path=file_path, metadata=metadata)


@router.get("/media/{path:path}")
def get_media(path: str):
    """
    Safely serves a file from the server's media directory.
    Klap fetches uploaded videos through this route.
    """
    media_root = os.path.abspath(config.MEDIA_DIR)
    full_path = os.path.abspath(os.path.join(media_root, path))
    # Ensure the requested path is within our allowed media directory
    if os.path.commonpath([media_root, full_path]) != media_root:
        raise HTTPException(status_code=403, detail="Forbidden: Access to this path is not allowed.")

    if not os.path.isfile(full_path):
        raise HTTPException(status_code=404, detail="Media file not found.")

    return FileResponse(full_path, filename=os.path.basename(full_path))
