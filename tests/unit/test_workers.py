"""Unit tests for the RQ queue wrapper and the generation worker task."""

from uuid import uuid4

import pytest

from src.core.config import settings
from src.models.job import GenerationStatus
from src.services.generation_service import submit_generation_job
from src.workers import generation_worker
from src.workers.generation_worker import (
    cleanup_stale_generation_jobs,
    configure_collaborators,
    configure_from_factory,
    get_collaborators,
    process_generation_job,
)
from src.workers.queue import JobQueue
from tests.fakes import FakeBillingLedger, FakeDocumentSource, ScriptedGenerationClient


@pytest.fixture
def worker_setup(mocker, session_factory, document_source, quiz_persistence, billing_ledger):
    """Worker process configured against the test database and fakes."""
    mocker.patch.object(generation_worker, "_collaborators", None)
    mocker.patch.object(generation_worker, "get_session_factory", return_value=session_factory)
    mocker.patch.object(generation_worker, "get_current_job", return_value=None)
    mocker.patch("src.services.generation_service.StructuredGenerationClient", return_value=ScriptedGenerationClient())
    configure_collaborators(document_source, quiz_persistence, billing_ledger)


@pytest.mark.unit
class TestJobQueue:
    """Test enqueueing generation jobs on RQ."""

    def test_enqueue_quiz_generation(self, mocker, quiz_request):
        """Test the job is enqueued with a serialized request and metadata."""
        queue_cls = mocker.patch("src.workers.queue.Queue")
        queue = JobQueue(connection=mocker.Mock())
        job_id = uuid4()

        queue.enqueue_quiz_generation(job_id, quiz_request)

        args, kwargs = queue_cls.return_value.enqueue.call_args
        assert args[0] is process_generation_job
        assert args[1] == str(job_id)
        assert args[2]["questions_per_type"] == {"MCQ_SINGLE": 2, "TRUE_FALSE": 1}
        assert kwargs["job_id"] == f"quiz-generation-{job_id}"
        assert kwargs["meta"] == {"job_id": str(job_id), "document_id": str(quiz_request.document_id)}

    def test_get_job_info_missing(self, mocker):
        """Test an unknown RQ job yields None."""
        mocker.patch("src.workers.queue.Queue")
        mocker.patch("src.workers.queue.Job.fetch", side_effect=Exception("No such job"))

        assert JobQueue(connection=mocker.Mock()).get_job_info("quiz-generation-missing") is None


@pytest.mark.unit
class TestGenerationWorker:
    """Test the background task entry points."""

    def test_unconfigured_worker(self, mocker):
        """Test a worker without collaborators or factory refuses to run."""
        mocker.patch.object(generation_worker, "_collaborators", None)
        mocker.patch.object(settings, "collaborators_factory", "")

        with pytest.raises(RuntimeError, match="not configured"):
            get_collaborators()

    def test_collaborators_loaded_from_factory_setting(self, mocker):
        """Test COLLABORATORS_FACTORY is resolved on first use."""
        mocker.patch.object(generation_worker, "_collaborators", None)
        mocker.patch.object(settings, "collaborators_factory", "tests.fakes:build_fake_collaborators")

        collaborators = get_collaborators()

        assert isinstance(collaborators.document_source, FakeDocumentSource)
        assert isinstance(collaborators.billing_ledger, FakeBillingLedger)
        assert get_collaborators() is collaborators

    def test_factory_path_without_callable(self, mocker):
        """Test a factory path missing the callable part is rejected."""
        mocker.patch.object(generation_worker, "_collaborators", None)

        with pytest.raises(RuntimeError, match="must look like 'package.module:callable'"):
            configure_from_factory("tests.fakes")

    def test_factory_missing_attribute(self, mocker):
        """Test an unknown factory name is reported."""
        mocker.patch.object(generation_worker, "_collaborators", None)

        with pytest.raises(RuntimeError, match="Cannot load collaborators factory"):
            configure_from_factory("tests.fakes:no_such_factory")

    def test_factory_returning_wrong_type(self, mocker):
        """Test a factory must return Collaborators."""
        mocker.patch.object(generation_worker, "_collaborators", None)

        with pytest.raises(RuntimeError, match="returned dict, expected Collaborators"):
            configure_from_factory("tests.fakes:build_not_collaborators")
        assert generation_worker._collaborators is None

    def test_process_generation_job(self, worker_setup, session_factory, document_source, billing_service, quiz_request):
        """Test the RQ task runs a submitted job to completion."""
        job = submit_generation_job(session_factory, "alice", quiz_request, document_source, billing_service)

        result = process_generation_job(str(job.job_id), quiz_request.model_dump(mode="json"))

        assert result["status"] == GenerationStatus.COMPLETED.value
        assert result["total_questions_generated"] == 9
        assert result["progress_percentage"] == 100.0
        assert result["generated_quiz_id"] is not None

    def test_cleanup_stale_generation_jobs(self, worker_setup):
        """Test the periodic cleanup task with nothing stuck."""
        assert cleanup_stale_generation_jobs() == {"failed": 0, "cancelled": 0}
