"""Lifecycle of the Klap clip job: dispatch, poll, materialize, restart."""

from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import IntegrityError

from errors import (
    EmptyFolderError,
    ForbiddenError,
    JobAlreadyDispatchedError,
    JobNotDispatchedError,
    KlapAPIError,
    ValidationError,
)
from klap_api import KlapAPIService
from models import ExternalJob
from schemas import KlapClip, KlapTask
from services import ClipJobService, ProjectService

FOLDER_CLIPS = [
    KlapClip(id="clipA", name="Hook", virality_score=91, virality_score_explanation="Strong hook", duration=28),
    KlapClip(id="clipB", name="Story", virality_score=64, start_time=30, end_time=55),
]


def clips_task(project):
    return ProjectService.find_task(project, "clips")


@pytest.fixture
def dispatched(db, klap, make_project):
    """A project whose clip job was accepted by Klap as task J123."""
    project = make_project(video_url="V")
    klap.create_video_task.return_value = KlapTask(id="J123", status="processing")
    ClipJobService(db, klap).start_job(project.id)
    return project


def test_start_job_stores_external_id_and_marks_processing(db, klap, dispatched):
    klap.create_video_task.assert_called_once_with("V")

    job = ClipJobService(db, klap).get_job(dispatched.id)
    assert job.external_id == "J123"
    assert job.status == "processing"
    assert dispatched.klap_project_id == "J123"

    task = clips_task(dispatched)
    assert task["status"] == "processing"
    assert task["progress"] == 20
    assert task["startedAt"]


def test_start_job_refuses_second_dispatch(db, klap, dispatched):
    with pytest.raises(JobAlreadyDispatchedError):
        ClipJobService(db, klap).start_job(dispatched.id)
    assert klap.create_video_task.call_count == 1


def test_start_job_checks_ownership_before_dispatching(db, klap, make_project):
    project = make_project(user_id="owner")
    with pytest.raises(ForbiddenError):
        ClipJobService(db, klap).start_job(project.id, user_id="intruder")
    klap.create_video_task.assert_not_called()


def test_start_job_requires_a_video_url(db, klap, make_project):
    project = make_project()
    project.video_url = ""
    db.commit()

    with pytest.raises(ValidationError):
        ClipJobService(db, klap).start_job(project.id)
    klap.create_video_task.assert_not_called()
    assert ClipJobService(db, klap).get_job(project.id) is None


def test_concurrent_start_reaches_klap_once(session_factory, klap, make_project):
    project_id = make_project().id
    first_db, second_db = session_factory(), session_factory()

    def dispatch(video_url):
        # A second request arrives while the first is still waiting on Klap
        with pytest.raises(JobAlreadyDispatchedError):
            ClipJobService(second_db, klap).start_job(project_id)
        return KlapTask(id="J123")

    klap.create_video_task.side_effect = dispatch
    try:
        assert ClipJobService(first_db, klap).start_job(project_id) == "J123"
    finally:
        first_db.close()
        second_db.close()
    assert klap.create_video_task.call_count == 1


def test_unique_constraint_blocks_dispatch_after_stale_read(db, klap, make_project, monkeypatch):
    project = make_project()
    db.add(ExternalJob(project_id=project.id, task_type="clips", status="pending"))
    db.commit()

    service = ClipJobService(db, klap)
    # pretend this caller read the project before the other job row was committed
    monkeypatch.setattr(service, "get_job", lambda project_id, task_type="clips": None)

    with pytest.raises(JobAlreadyDispatchedError):
        service.start_job(project.id)
    klap.create_video_task.assert_not_called()


def test_one_job_per_task_type_in_the_database(db, make_project):
    project = make_project()
    db.add(ExternalJob(project_id=project.id, task_type="clips"))
    db.commit()
    db.add(ExternalJob(project_id=project.id, task_type="clips"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_failed_dispatch_marks_job_and_task_failed(db, klap, make_project):
    project = make_project()
    klap.create_video_task.side_effect = KlapAPIError("Klap API rate limit exceeded.", status_code=429)
    service = ClipJobService(db, klap)

    with pytest.raises(KlapAPIError):
        service.start_job(project.id)

    job = service.get_job(project.id)
    assert job.status == "failed"
    assert job.external_id is None
    assert clips_task(project)["status"] == "failed"
    assert project.klap_project_id is None
    # failure is terminal until a restart
    with pytest.raises(JobAlreadyDispatchedError):
        service.start_job(project.id)


def test_poll_job_maps_vendor_states(db, klap):
    service = ClipJobService(db, klap)

    klap.get_task.return_value = KlapTask(id="J1", status="processing")
    assert service.poll_job("J1").status == "processing"

    klap.get_task.return_value = KlapTask(id="J1", status="ready", output_id="F1")
    poll = service.poll_job("J1")
    assert (poll.status, poll.result_ref) == ("completed", "F1")

    klap.get_task.return_value = KlapTask(id="J1", status="ready")
    assert service.poll_job("J1").status == "processing"

    klap.get_task.return_value = KlapTask(id="J1", status="error", error="bad source")
    poll = service.poll_job("J1")
    assert (poll.status, poll.error) == ("failed", "bad source")


def test_advance_bumps_progress_while_processing(db, klap, dispatched):
    klap.get_task.return_value = KlapTask(id="J123", status="processing")
    service = ClipJobService(db, klap)

    progress = []
    for _ in range(20):
        assert service.advance_job(dispatched.id) == "processing"
        progress.append(clips_task(dispatched)["progress"])

    assert progress[:3] == [22, 24, 26]
    assert progress == sorted(progress)
    assert max(progress) == 50


def test_transient_poll_failure_changes_nothing(db, klap, dispatched):
    service = ClipJobService(db, klap)
    before_task = clips_task(dispatched)
    before_version = dispatched.version

    for status_code in (None, 429, 503):
        klap.get_task.side_effect = KlapAPIError("unavailable", status_code=status_code)
        assert service.advance_job(dispatched.id) == "unchanged"

    db.expire_all()
    job = service.get_job(dispatched.id)
    assert job.status == "processing"
    assert job.poll_count == 0
    assert clips_task(dispatched) == before_task
    assert dispatched.version == before_version


def test_vendor_failure_status_fails_the_job(db, klap, dispatched):
    klap.get_task.return_value = KlapTask(id="J123", status="error", error="Video too long")
    service = ClipJobService(db, klap)

    assert service.advance_job(dispatched.id) == "failed"

    job = service.get_job(dispatched.id)
    assert job.status == "failed"
    assert job.error == "Video too long"
    task = clips_task(dispatched)
    assert task["status"] == "failed"
    assert task["error"] == "Video too long"
    # a failed job is not polled again
    assert service.advance_job(dispatched.id) == "skipped"


def test_non_transient_http_error_fails_the_job(db, klap, dispatched):
    klap.get_task.side_effect = KlapAPIError("Task not found", status_code=404)
    assert ClipJobService(db, klap).advance_job(dispatched.id) == "failed"


def test_end_to_end_materializes_exactly_the_folder_clips(db, klap, dispatched):
    klap.get_task.return_value = KlapTask(id="J123", status="ready", output_id="F1")
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS
    service = ClipJobService(db, klap)

    assert service.advance_job(dispatched.id) == "completed"

    klap.get_clips_from_folder.assert_called_once_with("F1")
    clips = ProjectService.get_folders(dispatched)["clips"]
    assert [c["id"] for c in clips] == ["clipA", "clipB"]
    assert len({c["id"] for c in clips}) == len(clips)
    assert clips[0]["title"] == "Hook"
    assert clips[0]["score"] == pytest.approx(0.91)
    assert clips[0]["klapFolderId"] == "F1"
    assert clips[1]["duration"] == 25

    task = clips_task(dispatched)
    assert (task["status"], task["progress"]) == ("completed", 100)
    assert task["completedAt"]
    assert dispatched.klap_folder_id == "F1"
    job = service.get_job(dispatched.id)
    assert (job.status, job.result_ref) == ("completed", "F1")


def test_materialize_twice_keeps_clip_count(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS
    service = ClipJobService(db, klap)

    first = service.materialize_results(dispatched.id, "F1")
    second = service.materialize_results(dispatched.id, "F1")

    assert [c.id for c in first] == [c.id for c in second] == ["clipA", "clipB"]
    assert len(ProjectService.get_folders(dispatched)["clips"]) == 2


def test_materialize_keeps_existing_clips(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS[:1]
    service = ClipJobService(db, klap)
    service.materialize_results(dispatched.id, "F1")

    klap.get_clips_from_folder.return_value = FOLDER_CLIPS
    service.materialize_results(dispatched.id, "F1")

    assert [c["id"] for c in ProjectService.get_folders(dispatched)["clips"]] == ["clipA", "clipB"]


def test_materialize_requires_an_external_job(db, klap, make_project):
    project = make_project()
    with pytest.raises(JobNotDispatchedError):
        ClipJobService(db, klap).materialize_results(project.id, "F1")
    klap.get_clips_from_folder.assert_not_called()
    assert clips_task(project)["status"] == "pending"


def test_materialize_fetches_details_for_bare_ids(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = [KlapClip(id="bare1"), KlapClip(id="bare2")]
    klap.get_clip_details.side_effect = [
        KlapClip(id="bare1", name="Detailed", virality_score=70),
        KlapAPIError("gone", status_code=404),
    ]

    clips = ClipJobService(db, klap).materialize_results(dispatched.id, "F1")

    assert clips[0].title == "Detailed"
    assert clips[1].title == "Clip 2"
    assert clips[1].thumbnail == "https://klap.app/player/bare2/thumbnail"
    assert clips[1].score == 0.5


def test_empty_folder_is_retried_later(db, klap, dispatched):
    klap.get_task.return_value = KlapTask(id="J123", status="ready", output_id="F1")
    klap.get_clips_from_folder.return_value = []
    service = ClipJobService(db, klap)

    assert service.advance_job(dispatched.id) == "unchanged"
    assert service.get_job(dispatched.id).status == "processing"
    assert ProjectService.get_folders(dispatched)["clips"] == []


def test_restart_dispatches_a_fresh_job(db, klap, make_project):
    project = make_project(video_url="V")
    service = ClipJobService(db, klap)
    klap.create_video_task.side_effect = KlapAPIError("down", status_code=503)
    with pytest.raises(KlapAPIError):
        service.start_job(project.id)

    klap.create_video_task.side_effect = None
    klap.create_video_task.return_value = KlapTask(id="J456")
    assert service.restart_job(project.id) == "J456"

    job = service.get_job(project.id)
    assert (job.status, job.external_id, job.error) == ("processing", "J456", None)
    assert project.klap_project_id == "J456"
    task = clips_task(project)
    assert task["status"] == "processing"
    assert "error" not in task


def test_process_pending_sweeps_processing_jobs(db, klap, make_project):
    service = ClipJobService(db, klap)
    done, waiting, broken = (make_project(title=t) for t in ("done", "waiting", "broken"))
    for project, task_id in ((done, "T-done"), (waiting, "T-wait"), (broken, "T-broken")):
        klap.create_video_task.return_value = KlapTask(id=task_id)
        service.start_job(project.id)

    states = {
        "T-done": KlapTask(id="T-done", status="ready", output_id="F-done"),
        "T-wait": KlapTask(id="T-wait", status="processing"),
        "T-broken": KlapTask(id="T-broken", status="error"),
    }
    klap.get_task.side_effect = lambda task_id: states[task_id]
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS

    summary = service.process_pending()

    assert summary == {"processed": 3, "completed": 1, "failed": 1, "unchanged": 0, "errors": 0}
    assert service.process_pending()["processed"] == 1


def test_export_clips_records_urls(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS
    service = ClipJobService(db, klap)
    service.materialize_results(dispatched.id, "F1")
    klap.export_clip.return_value = "https://cdn.klap.app/clipA.mp4"

    exported = service.export_clips(dispatched.id, ["clipA"])

    assert exported == [{"clip_id": "clipA", "url": "https://cdn.klap.app/clipA.mp4"}]
    klap.export_clip.assert_called_once_with("F1", "clipA", None)
    clips = {c["id"]: c for c in ProjectService.get_folders(dispatched)["clips"]}
    assert clips["clipA"]["exportUrl"] == "https://cdn.klap.app/clipA.mp4"
    assert clips["clipA"]["exported"] is True
    assert clips["clipB"]["exported"] is False


def test_export_rejects_unknown_clips(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = FOLDER_CLIPS
    service = ClipJobService(db, klap)
    service.materialize_results(dispatched.id, "F1")

    with pytest.raises(ValidationError):
        service.export_clips(dispatched.id, ["nope"])
    klap.export_clip.assert_not_called()


def test_folder_with_a_bad_entry_still_materializes_the_good_clips(db, klap, dispatched):
    folder = MagicMock()
    folder.ok = True
    folder.json.return_value = [
        {"id": "a", "name": "A", "tags": None},
        {"name": "No id"},
        {"id": "b", "name": "B"},
    ]
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    session.request.side_effect = [
        MagicMock(ok=True, **{"json.return_value": {"id": "J123", "status": "ready", "output_id": "F1"}}),
        folder,
    ]
    service = ClipJobService(db, KlapAPIService(api_key="klap-key", session=session))

    assert service.advance_job(dispatched.id) == "completed"

    clips = ProjectService.get_folders(dispatched)["clips"]
    assert [c["id"] for c in clips] == ["a", "b"]
    assert clips[0]["tags"] == []
    assert clips_task(dispatched)["status"] == "completed"


def test_empty_folder_raises_before_any_write(db, klap, dispatched):
    klap.get_clips_from_folder.return_value = []
    service = ClipJobService(db, klap)

    with pytest.raises(EmptyFolderError) as excinfo:
        service.materialize_results(dispatched.id, "F1")

    assert excinfo.value.transient
    assert dispatched.klap_folder_id is None
    assert service.get_job(dispatched.id).status == "processing"
