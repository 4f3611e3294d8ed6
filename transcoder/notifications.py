"""
Elastic Transcoder job status notifications delivered through SQS.

The pipeline publishes status changes to an SNS topic which is subscribed by
an SQS queue. A NotificationListener long-polls that queue on its own thread,
decodes every message into a NotificationEvent and hands it to each registered
handler whose predicate accepts the event's job id.

Several jobs can share one queue. Whichever listener receives a message
consumes (deletes) it, so correlation is only reliable with a single consumer
per queue.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .aws import describe_aws_error, get_sqs_client

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_POLL = 10  # SQS hard limit


class JobState(str, Enum):
    SUBMITTED = "SUBMITTED"
    PROGRESSING = "PROGRESSING"
    COMPLETED = "COMPLETED"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "SUCCEEDED":
                return cls.COMPLETED
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.ERROR)


@dataclass(frozen=True)
class NotificationEvent:
    job_id: str
    state: JobState
    pipeline_id: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def parse_notification(body: str) -> NotificationEvent:
    """
    Decode an SQS message body into a NotificationEvent.

    Accepts both the SNS envelope (`{"Type": "Notification", "Message": "..."}`)
    and raw message delivery. Raises ValueError for anything that is not a
    transcoder status notification.
    """
    try:
        payload = json.loads(body)
        if isinstance(payload, dict) and isinstance(payload.get("Message"), str):
            payload = json.loads(payload["Message"])
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Notification is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError("Notification payload is not an object")

    job_id = payload.get("jobId")
    if not job_id:
        raise ValueError("Notification has no jobId")
    try:
        state = JobState(payload.get("state"))
    except ValueError:
        raise ValueError(f"Unknown job state {payload.get('state')!r} for job {job_id}") from None

    message = payload.get("messageDetails") or payload.get("errorCode")
    if message is None:
        for output in payload.get("outputs") or []:
            if isinstance(output, dict) and output.get("statusDetail"):
                message = output["statusDetail"]
                break

    return NotificationEvent(
        job_id=job_id,
        state=state,
        pipeline_id=payload.get("pipelineId"),
        message=str(message) if message is not None else None,
        raw=payload,
    )


@dataclass(frozen=True, eq=False)
class HandlerRegistration:
    predicate: Callable[[str], bool]
    callback: Callable[[NotificationEvent], None]


class NotificationListener:
    """
    Polls one SQS queue on a dedicated thread and fans events out to handlers.

    Handlers run on the listener thread and must return quickly: a slow
    handler delays delivery to every other registration. Messages are deleted
    after dispatch whatever the handlers did, so a handler that keeps failing
    cannot wedge the queue.
    """

    def __init__(
        self,
        queue_url: str,
        client=None,
        *,
        wait_seconds: int | None = None,
        error_backoff: float | None = None,
        name: str | None = None,
    ):
        self.queue_url = queue_url
        self.wait_seconds = settings.TRANSCODER_POLL_WAIT_SECONDS if wait_seconds is None else wait_seconds
        self.error_backoff = (
            settings.TRANSCODER_POLL_ERROR_BACKOFF_SECONDS if error_backoff is None else error_backoff
        )
        self.name = name or "notification-listener"

        self._client = client if client is not None else get_sqs_client()
        self._handlers: list[HandlerRegistration] = []
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._released = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._stopping.is_set():
                raise RuntimeError(f"{self.name} was stopped and cannot be restarted")
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("%s polling %s", self.name, self.queue_url)

    def add_handler(
        self,
        predicate: Callable[[str], bool],
        callback: Callable[[NotificationEvent], None],
    ) -> HandlerRegistration:
        registration = HandlerRegistration(predicate, callback)
        with self._lock:
            self._handlers.append(registration)
        return registration

    def remove_handler(self, registration: HandlerRegistration) -> None:
        with self._lock:
            if registration in self._handlers:
                self._handlers.remove(registration)

    def stop(self, timeout: float = 0.0) -> None:
        """
        Ask the poll loop to exit after the current cycle.

        Does not wait unless `timeout` is given. Calling it again, or calling it
        on a listener that never started, is harmless.
        """
        with self._lock:
            self._stopping.set()
            self._handlers.clear()
            thread = self._thread
        if thread is None:
            self._release_client()
        elif timeout > 0 and thread is not threading.current_thread():
            thread.join(timeout)

    def poll_once(self) -> int:
        """Receive one batch, dispatch and acknowledge it. Returns the batch size."""
        resp = self._client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=MAX_MESSAGES_PER_POLL,
            WaitTimeSeconds=self.wait_seconds,
        )
        messages = resp.get("Messages", [])
        for message in messages:
            try:
                self._dispatch(message)
            finally:
                self._acknowledge(message)
        return len(messages)

    def _run(self) -> None:
        try:
            while not self._stopping.is_set():
                try:
                    self.poll_once()
                except (ClientError, BotoCoreError) as exc:
                    logger.warning("%s: queue access failed, retrying: %s", self.name, describe_aws_error(exc))
                    self._stopping.wait(self.error_backoff)
                except Exception:
                    logger.exception("%s: unexpected poll failure, retrying", self.name)
                    self._stopping.wait(self.error_backoff)
        finally:
            self._release_client()
            logger.debug("%s stopped", self.name)

    def _dispatch(self, message: dict) -> None:
        try:
            event = parse_notification(message.get("Body", ""))
        except ValueError as exc:
            logger.warning("%s: discarding message %s: %s", self.name, message.get("MessageId"), exc)
            return
        except Exception:
            logger.exception("%s: discarding malformed message %s", self.name, message.get("MessageId"))
            return

        with self._lock:
            handlers = list(self._handlers)
        for registration in handlers:
            try:
                if registration.predicate(event.job_id):
                    registration.callback(event)
            except Exception:
                logger.exception("%s: handler failed for job %s (%s)", self.name, event.job_id, event.state.value)

    def _acknowledge(self, message: dict) -> None:
        try:
            self._client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message["ReceiptHandle"])
        except (ClientError, BotoCoreError, KeyError) as exc:
            # The message becomes visible again after its visibility timeout
            logger.warning("%s: could not delete message %s: %s", self.name, message.get("MessageId"), exc)

    def _release_client(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._client.close()
