from pathlib import Path

from celery import shared_task
from celery.utils.log import get_task_logger
from django.conf import settings

from .errors import TranscodeError
from .models import TranscodeJob
from .orchestrator import TranscodeJobOrchestrator
from .utils import store_output_file

logger = get_task_logger(__name__)


def _update(job: TranscodeJob, *, status=None, error=None, **fields):
    update_fields = ["updated_at"]
    if status:
        job.status = status
        update_fields.append("status")
    if error is not None:
        job.error = error[:4000]
        update_fields.append("error")
    for name, value in fields.items():
        setattr(job, name, value)
        update_fields.append(name)
    job.save(update_fields=update_fields)


def build_orchestrator(job: TranscodeJob, input_abs: Path) -> TranscodeJobOrchestrator:
    """Orchestrator for one TranscodeJob, configured from TRANSCODER_* settings."""
    orchestrator = TranscodeJobOrchestrator(
        input_abs,
        job.preset_id,
        settings.TRANSCODER_INPUT_BUCKET,
        settings.TRANSCODER_OUTPUT_BUCKET,
        settings.TRANSCODER_PIPELINE_ID,
        settings.TRANSCODER_SQS_QUEUE_URL,
        timeout=settings.TRANSCODER_TIMEOUT_SECONDS or None,
        strict_cleanup=settings.TRANSCODER_STRICT_CLEANUP,
    )
    orchestrator.set_delete_input_on_cleanup(settings.TRANSCODER_DELETE_INPUT_ON_CLEANUP)
    orchestrator.set_delete_output_on_cleanup(settings.TRANSCODER_DELETE_OUTPUT_ON_CLEANUP)
    return orchestrator


@shared_task(bind=True)
def transcode_media(self, job_id: str):
    job = TranscodeJob.objects.get(pk=job_id)
    _update(job, status=TranscodeJob.Status.STARTED, error="", attempts=job.attempts + 1)

    input_abs = Path(settings.MEDIA_ROOT) / job.input_path
    orchestrator = None
    try:
        orchestrator = build_orchestrator(job, input_abs)
        result = orchestrator.transcode()

        output_rel = store_output_file(result.path, str(job.id), job.original_filename)
        _update(
            job,
            status=TranscodeJob.Status.SUCCESS,
            remote_job_id=orchestrator.job_id or "",
            output_path=output_rel,
            content_type=result.content_type or "",
        )
        logger.info("Transcoded %s -> %s", job.input_path, output_rel)

    except TranscodeError as e:
        remote_job_id = (orchestrator.job_id if orchestrator else None) or ""
        # strict cleanup can fail after the output was already downloaded
        blob = orchestrator.get_transcoded_blob() if orchestrator else None
        if blob is not None:
            blob.path.unlink(missing_ok=True)
        if e.retryable and self.request.retries < settings.TRANSCODER_MAX_RETRIES:
            logger.warning("Transcoding %s failed, will retry: %s", job.id, e)
            _update(job, error=str(e), remote_job_id=remote_job_id)
            raise self.retry(exc=e, countdown=settings.TRANSCODER_RETRY_COUNTDOWN_SECONDS)
        _update(job, status=TranscodeJob.Status.FAILURE, error=str(e), remote_job_id=remote_job_id)
        raise
    except Exception as e:
        _update(job, status=TranscodeJob.Status.FAILURE, error=str(e))
        raise
