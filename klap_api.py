"""
Client for the Klap video-to-shorts API (v2 task-based workflow).

Step 1 creates a task, step 2 polls it until it reports an output folder,
step 3 lists the clips in that folder. Exports are a separate task per clip.
Every payload is validated into the Klap models in `schemas` before it is
handed to the rest of the application.
"""

import logging
import time
from typing import Any, Callable, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from config import (
    APP_ENV,
    KLAP_API_KEY,
    KLAP_API_URL,
    KLAP_EXPORT_MAX_POLLS,
    KLAP_EXPORT_POLL_INTERVAL,
    KLAP_LANGUAGE,
    KLAP_MAX_CLIP_COUNT,
    KLAP_MAX_DURATION,
    KLAP_TIMEOUT,
)
from errors import KlapAPIError, KlapNotConfiguredError
from schemas import KlapClip, KlapExport, KlapTask


class KlapAPIService:
    """Handles authenticated requests to the Klap API."""

    def __init__(
        self,
        api_key: str = KLAP_API_KEY,
        api_url: str = KLAP_API_URL,
        timeout: float = KLAP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            logging.error("[Klap] KLAP_API_KEY is not configured")
            raise KlapNotConfiguredError(
                "Clip generation service is not configured. Please set KLAP_API_KEY in environment variables."
            )
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"Inflio/1.0 ({APP_ENV})",
            "X-Environment": APP_ENV,
        })

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        url = f"{self.api_url}{endpoint}"
        logging.info(f"[Klap] Requesting: {method} {url}")

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logging.error(f"[Klap] Network error calling {url}: {e}")
            raise KlapAPIError(f"Klap API network error: {e}") from e

        if not response.ok:
            raise self._error_from_response(method, url, response)

        try:
            return response.json()
        except ValueError as e:
            raise KlapAPIError(
                f"Klap API returned a non-JSON body for {endpoint}",
                status_code=response.status_code,
                retryable=False,
            ) from e

    @staticmethod
    def _error_from_response(method: str, url: str, response: requests.Response) -> KlapAPIError:
        details = response.text
        message = f"Klap API Error: {response.status_code} - {response.reason}"
        try:
            body = response.json()
        except ValueError:
            logging.error(f"[Klap] Raw non-JSON error response: {details}")
        else:
            if isinstance(body, dict) and (body.get("message") or body.get("error")):
                message = f"Klap API Error: {body.get('message') or body.get('error')}"

        logging.error(f"[Klap] API request failed: {method} {url} -> {response.status_code} {details}")

        if response.status_code == 401:
            message = "Klap API authentication failed. Please check your KLAP_API_KEY."
        elif response.status_code == 429:
            message = "Klap API rate limit exceeded. Please try again later."
        elif response.status_code == 503:
            message = "Klap API service is temporarily unavailable. Please try again later."
        return KlapAPIError(message, status_code=response.status_code, details=details)

    @staticmethod
    def _parse(model, payload: Any, what: str):
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            logging.error(f"[Klap] Unexpected {what} payload: {payload!r}")
            raise KlapAPIError(f"Klap API returned an invalid {what}: {e.error_count()} error(s)", retryable=False) from e

    # --- Tasks ---

    def create_video_task(
        self,
        video_url: str,
        language: str = KLAP_LANGUAGE,
        max_duration: int = KLAP_MAX_DURATION,
        max_clip_count: int = KLAP_MAX_CLIP_COUNT,
    ) -> KlapTask:
        """Step 1: create a video-to-shorts task for a public video URL."""
        payload = {
            "source_video_url": video_url,
            "language": language,
            "max_duration": max_duration,
            "max_clip_count": max_clip_count,
            "editing_options": {"intro_title": False},
        }
        logging.info(f"[Klap] Creating video task for {video_url}")
        data = self._request("POST", "/tasks/video-to-shorts", json=payload)
        return self._parse(KlapTask, data, "task")

    def get_task(self, task_id: str) -> KlapTask:
        """Step 2: read the current state of a task."""
        data = self._request("GET", f"/tasks/{task_id}")
        return self._parse(KlapTask, data, "task")

    # --- Folders & clips ---

    def get_clips_from_folder(self, folder_id: str) -> List[KlapClip]:
        """Step 3: list the clips of an output folder.

        Klap answers with either clip objects or bare clip ids; bare ids are
        returned as clips carrying only their id. Entries that are neither
        are logged and skipped so the rest of the folder still comes through.
        """
        data = self._request("GET", f"/projects/{folder_id}")
        if not isinstance(data, list):
            raise KlapAPIError(f"Klap API returned an invalid folder listing for {folder_id}", retryable=False)
        clips = []
        for index, entry in enumerate(data):
            if isinstance(entry, str) and entry:
                clips.append(KlapClip(id=entry))
                continue
            try:
                clips.append(KlapClip.model_validate(entry))
            except PydanticValidationError as e:
                logging.warning(f"[Klap] Skipping unreadable entry {index} in folder {folder_id}: {entry!r} ({e.error_count()} error(s))")
        return clips

    def get_clip_details(self, folder_id: str, clip_id: str) -> KlapClip:
        logging.info(f"[Klap] Getting details for clip {clip_id} in folder {folder_id}")
        try:
            data = self._request("GET", f"/projects/{folder_id}/{clip_id}")
        except KlapAPIError as e:
            logging.warning(f"[Klap] Clip lookup inside folder failed ({e}); retrying without folder")
            data = self._request("GET", f"/projects/{clip_id}")
        return self._parse(KlapClip, data, "clip")

    # --- Exports ---

    def create_export(self, folder_id: str, clip_id: str, watermark: Optional[str] = None) -> KlapExport:
        payload = {"watermark": {"src_url": watermark}} if watermark else {}
        data = self._request("POST", f"/projects/{folder_id}/{clip_id}/exports", json=payload)
        return self._parse(KlapExport, data, "export")

    def get_export(self, folder_id: str, clip_id: str, export_id: str) -> KlapExport:
        data = self._request("GET", f"/projects/{folder_id}/{clip_id}/exports/{export_id}")
        return self._parse(KlapExport, data, "export")

    def export_clip(
        self,
        folder_id: str,
        clip_id: str,
        watermark: Optional[str] = None,
        poll_interval: float = KLAP_EXPORT_POLL_INTERVAL,
        max_polls: int = KLAP_EXPORT_MAX_POLLS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> str:
        """Export one clip and wait for its rendered URL."""
        export = self.create_export(folder_id, clip_id, watermark)
        logging.info(f"[Klap] Export task created: {export.id}")

        for _ in range(max_polls):
            export = self.get_export(folder_id, clip_id, export.id)
            if export.status == "ready" and export.src_url:
                logging.info(f"[Klap] Exported clip {clip_id}: {export.src_url}")
                return export.src_url
            if export.status == "error":
                raise KlapAPIError(
                    f"Export failed for clip {clip_id}. Reason: {export.error or 'Unknown'}",
                    retryable=False,
                )
            sleep(poll_interval)

        raise KlapAPIError(f"Export timed out for clip {clip_id}. Final status: {export.status}")


def get_klap_service() -> KlapAPIService:
    """Dependency for FastAPI to get a Klap client."""
    return KlapAPIService()
