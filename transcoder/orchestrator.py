"""
One Elastic Transcoder round trip for one local file.

    upload input -> create job -> wait for SNS/SQS terminal notification
    -> download output -> delete the S3 objects we created

The job's Step records how far the run got, so cleanup only deletes objects
that were actually written: the input once it was uploaded, the output once
the transcoder reported it complete.

Each orchestrator starts its own NotificationListener. This does not scale
past a handful of concurrent jobs on one queue, because a listener deletes
every message it receives, including other jobs' notifications.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError

from .aws import describe_aws_error, get_s3_client, get_transcoder_client
from .errors import (
    CleanupFailure,
    DeleteFailure,
    RemoteJobFailure,
    SubmissionFailure,
    TranscodeError,
    TranscodeTimeout,
    ValidationFailure,
)
from .gateway import ObjectStoreGateway, RetrievedObject
from .notifications import JobState, NotificationEvent, NotificationListener

logger = logging.getLogger(__name__)

# S3 answers these when the object is already gone
_MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


class Step(IntEnum):
    INIT = 0
    INPUT_SENT = 1
    TRANSCODING_DONE = 2
    OUTPUT_DOWNLOADED = 3


def can_delete_input(step: Step) -> bool:
    return step >= Step.INPUT_SENT


def can_delete_output(step: Step) -> bool:
    return step >= Step.TRANSCODING_DONE


def is_idle(step: Step) -> bool:
    return step in (Step.INIT, Step.OUTPUT_DOWNLOADED)


class TerminalState(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


def build_unique_prefix() -> str:
    return uuid.uuid4().hex + "-"


@dataclass
class Job:
    prefix: str
    input_key: str
    output_key: str
    preset_id: str
    pipeline_id: str
    id: str | None = None
    step: Step = Step.INIT
    terminal_state: TerminalState | None = None
    delete_input_on_cleanup: bool = True
    delete_output_on_cleanup: bool = True


class _CompletionWatch:
    """
    Single-assignment hand-off between the listener thread and the caller.

    The watch is registered before the job is created, so a terminal event
    that is received before the caller learns the job id is kept aside and
    replayed by bind().
    """

    def __init__(self):
        self.future: Future = Future()
        self._lock = threading.Lock()
        self._job_id: str | None = None
        self._early: dict[str, NotificationEvent] = {}

    def accepts(self, job_id: str) -> bool:
        with self._lock:
            return self._job_id is None or job_id == self._job_id

    def offer(self, event: NotificationEvent) -> None:
        if not event.is_terminal:
            return
        with self._lock:
            if self._job_id is None:
                self._early.setdefault(event.job_id, event)
            elif event.job_id == self._job_id:
                self._resolve(event)

    def bind(self, job_id: str) -> None:
        with self._lock:
            self._job_id = job_id
            early = self._early.pop(job_id, None)
            self._early.clear()
            if early is not None:
                self._resolve(early)

    def wait(self, timeout: float | None) -> NotificationEvent:
        return self.future.result(timeout=timeout)

    def _resolve(self, event: NotificationEvent) -> None:
        # first terminal event wins
        if not self.future.done():
            self.future.set_result(event)


def _require(field: str, value) -> str:
    if value is None or not str(value).strip():
        raise ValidationFailure(field)
    return str(value)


class TranscodeJobOrchestrator:
    """
    Sends `file` through an Elastic Transcoder pipeline and fetches the result.

    By default both S3 objects created for the job are deleted once
    transcode() returns, whatever the outcome. Call
    set_delete_input_on_cleanup(False) / set_delete_output_on_cleanup(False)
    before transcode() to keep them.

    With `strict_cleanup`, a failed deletion after an otherwise successful run
    raises CleanupFailure. A deletion failure never replaces an earlier error.
    """

    def __init__(
        self,
        file: str | Path,
        preset_id: str,
        input_bucket: str,
        output_bucket: str,
        pipeline_id: str,
        queue_url: str,
        *,
        s3_client=None,
        transcoder_client=None,
        listener_factory: Callable[[str], NotificationListener] | None = None,
        timeout: float | None = None,
        strict_cleanup: bool = False,
    ):
        self.preset_id = _require("preset_id", preset_id)
        self.input_bucket = _require("input_bucket", input_bucket)
        self.output_bucket = _require("output_bucket", output_bucket)
        self.pipeline_id = _require("pipeline_id", pipeline_id)
        self.queue_url = _require("queue_url", queue_url)
        if file is None or not str(file).strip():
            raise ValidationFailure("file")
        self.file = Path(file)
        if not self.file.is_file():
            raise ValidationFailure("file", f"{self.file} does not exist")
        if timeout is not None and timeout <= 0:
            raise ValidationFailure("timeout", "must be positive")

        self.timeout = timeout
        self.strict_cleanup = strict_cleanup

        prefix = build_unique_prefix()
        self.job = Job(
            prefix=prefix,
            input_key=self._build_input_key(prefix),
            output_key=self._build_output_key(prefix),
            preset_id=self.preset_id,
            pipeline_id=self.pipeline_id,
        )

        s3_client = s3_client if s3_client is not None else get_s3_client()
        self._input_store = ObjectStoreGateway(self.input_bucket, s3_client)
        self._output_store = ObjectStoreGateway(self.output_bucket, s3_client)
        self._transcoder = transcoder_client if transcoder_client is not None else get_transcoder_client()
        self._listener_factory = listener_factory or self._default_listener
        self._transcoded: RetrievedObject | None = None
        self._in_flight = False

    # -- keys ---------------------------------------------------------------

    def _build_input_key(self, prefix: str) -> str:
        return prefix + self.file.name

    def _build_output_key(self, prefix: str) -> str:
        # Same name as the input: the random prefix already keeps the output bucket collision free
        return prefix + self.file.name

    @property
    def input_key(self) -> str:
        return self.job.input_key

    @property
    def output_key(self) -> str:
        return self.job.output_key

    @property
    def output_filename(self) -> str:
        return self.job.output_key.removeprefix(self.job.prefix)

    @property
    def job_id(self) -> str | None:
        return self.job.id

    @property
    def terminal_state(self) -> TerminalState | None:
        return self.job.terminal_state

    @property
    def step(self) -> Step:
        return self.job.step

    # -- caller configuration -------------------------------------------------

    def get_delete_input_on_cleanup(self) -> bool:
        return self.job.delete_input_on_cleanup

    def set_delete_input_on_cleanup(self, value: bool) -> None:
        self._ensure_not_running()
        self.job.delete_input_on_cleanup = value

    def get_delete_output_on_cleanup(self) -> bool:
        return self.job.delete_output_on_cleanup

    def set_delete_output_on_cleanup(self, value: bool) -> None:
        self._ensure_not_running()
        self.job.delete_output_on_cleanup = value

    def _ensure_not_running(self) -> None:
        if self._in_flight:
            raise RuntimeError("Cleanup options must be set before transcode()")

    # -- lifecycle ----------------------------------------------------------

    def done(self) -> bool:
        return not self._in_flight and is_idle(self.job.step)

    def get_transcoded_blob(self) -> RetrievedObject | None:
        return self._transcoded

    def transcode(self) -> RetrievedObject:
        if self._in_flight:
            raise RuntimeError(f"Transcoding of {self.input_key} is already running")
        self._in_flight = True
        self._transcoded = None
        self.job.id = None
        self.job.terminal_state = None

        try:
            self._run()
        except TranscodeError:
            self.cleanup(strict=False)
            raise
        except Exception as exc:
            self.cleanup(strict=False)
            raise TranscodeError(f"Transcoding of {self.input_key} failed: {exc}") from exc
        except BaseException:
            self.cleanup(strict=False)
            raise
        self.cleanup()
        return self._transcoded

    def _run(self) -> None:
        job = self.job

        self._input_store.put(job.input_key, self.file)
        self._advance(Step.INPUT_SENT)
        logger.info("Uploaded %s to s3://%s/%s", self.file, self.input_bucket, job.input_key)

        watch = _CompletionWatch()
        listener = self._listener_factory(self.queue_url)
        listener.add_handler(watch.accepts, lambda event: self._on_notification(watch, event))
        listener.start()
        try:
            job.id = self._submit()
            logger.info("Created transcoder job %s for %s", job.id, job.input_key)
            watch.bind(job.id)
            event = watch.wait(self.timeout)
        except FutureTimeout:
            raise TranscodeTimeout(job.input_key, job.id, self.timeout) from None
        finally:
            listener.stop()

        self._advance(Step.TRANSCODING_DONE)
        job.terminal_state = TerminalState.ERROR if event.state == JobState.ERROR else TerminalState.SUCCESS
        if job.terminal_state == TerminalState.ERROR:
            raise RemoteJobFailure(job.input_key, job.id, event)

        self._transcoded = self._output_store.get(job.output_key, self.output_filename)
        self._advance(Step.OUTPUT_DOWNLOADED)
        logger.info("Downloaded s3://%s/%s as %s", self.output_bucket, job.output_key, self.output_filename)

    def _submit(self) -> str:
        job = self.job
        try:
            resp = self._transcoder.create_job(
                PipelineId=job.pipeline_id,
                Input={"Key": job.input_key},
                Outputs=[{"Key": job.output_key, "PresetId": job.preset_id}],
            )
        except (ClientError, BotoCoreError) as exc:
            raise SubmissionFailure(job.pipeline_id, job.input_key, describe_aws_error(exc)) from exc
        try:
            return resp["Job"]["Id"]
        except (KeyError, TypeError):
            raise SubmissionFailure(job.pipeline_id, job.input_key, "response carries no job id") from None

    def _on_notification(self, watch: _CompletionWatch, event: NotificationEvent) -> None:
        if event.job_id == self.job.id:
            if event.state == JobState.ERROR:
                logger.error("Transcoder job %s failed: %s", event.job_id, event)
            elif event.state == JobState.WARNING:
                logger.warning("Transcoder job %s reported a warning: %s", event.job_id, event.message)
        watch.offer(event)

    def _advance(self, step: Step) -> None:
        if step != self.job.step + 1:
            raise RuntimeError(f"Cannot move from {self.job.step.name} to {step.name}")
        self.job.step = step

    def _default_listener(self, queue_url: str) -> NotificationListener:
        return NotificationListener(queue_url, name=f"transcode-{self.job.prefix.rstrip('-')[:12]}")

    # -- cleanup ------------------------------------------------------------

    def cleanup(self, strict: bool | None = None) -> None:
        """
        Delete the remote objects this run created, as far as `step` allows.

        Failures are logged. They are raised as CleanupFailure only when
        strict (defaults to the constructor's `strict_cleanup`).
        """
        strict = self.strict_cleanup if strict is None else strict
        job = self.job
        failures: list[DeleteFailure] = []
        try:
            if job.delete_input_on_cleanup and can_delete_input(job.step):
                self._delete(self._input_store, job.input_key, "input", failures)
            # an ERROR job never wrote its output
            if (
                job.delete_output_on_cleanup
                and can_delete_output(job.step)
                and job.terminal_state != TerminalState.ERROR
            ):
                self._delete(self._output_store, job.output_key, "output", failures)
        finally:
            job.step = Step.INIT
            self._in_flight = False
        if failures and strict:
            raise CleanupFailure(failures)

    def _delete(self, store: ObjectStoreGateway, key: str, label: str, failures: list) -> None:
        try:
            store.delete(key)
        except DeleteFailure as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                logger.debug("%s object s3://%s/%s already gone", label, store.bucket, key)
                return
            logger.error("Error when deleting file %s in the S3 %s bucket", key, label, exc_info=True)
            failures.append(exc)
