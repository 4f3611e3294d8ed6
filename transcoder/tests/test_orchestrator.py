import pytest

from transcoder.errors import (
    CleanupFailure,
    RemoteJobFailure,
    SubmissionFailure,
    TranscodeTimeout,
    UploadFailure,
    ValidationFailure,
)
from transcoder.notifications import JobState, NotificationListener, parse_notification
from transcoder.orchestrator import (
    Step,
    TerminalState,
    TranscodeJobOrchestrator,
    _CompletionWatch,
    can_delete_input,
    can_delete_output,
    is_idle,
)

from .fakes import EagerTranscoder, FakeSQS, FakeTranscoder, client_error, notification_body, sqs_message, wait_until


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "holiday.mp4"
    path.write_bytes(b"\0" * (10 * 1024 * 1024))
    return path


@pytest.fixture
def transcoder(fake_s3):
    return FakeTranscoder(fake_s3, job_id="J1", output_bucket="out")


def _orchestrator(video, s3, transcoder, sqs, **kwargs):
    def listener_factory(queue_url):
        return NotificationListener(queue_url, client=sqs, wait_seconds=0, error_backoff=0.01)

    kwargs.setdefault("timeout", 5)
    return TranscodeJobOrchestrator(
        video, "P1", "in", "out", "PL1", "Q1",
        s3_client=s3,
        transcoder_client=transcoder,
        listener_factory=listener_factory,
        **kwargs,
    )


def _terminal_after_two_polls(job_id, state):
    return FakeSQS([[], [], [sqs_message(notification_body(job_id, state))]])


def test_step_predicates():
    assert not can_delete_input(Step.INIT)
    assert can_delete_input(Step.INPUT_SENT)
    assert not can_delete_output(Step.INPUT_SENT)
    assert can_delete_output(Step.TRANSCODING_DONE)
    assert can_delete_output(Step.OUTPUT_DOWNLOADED)
    assert is_idle(Step.INIT) and is_idle(Step.OUTPUT_DOWNLOADED)
    assert not is_idle(Step.INPUT_SENT) and not is_idle(Step.TRANSCODING_DONE)


@pytest.mark.parametrize("field", ["preset_id", "input_bucket", "output_bucket", "pipeline_id", "queue_url"])
def test_blank_parameter_fails_fast(video, fake_s3, transcoder, field):
    params = dict(preset_id="P1", input_bucket="in", output_bucket="out", pipeline_id="PL1", queue_url="Q1")
    params[field] = "   "

    with pytest.raises(ValidationFailure) as excinfo:
        TranscodeJobOrchestrator(video, s3_client=fake_s3, transcoder_client=transcoder, **params)

    assert excinfo.value.field == field
    assert fake_s3.calls == []
    assert transcoder.requests == []


def test_missing_file_fails_fast(tmp_path, fake_s3, transcoder):
    with pytest.raises(ValidationFailure):
        TranscodeJobOrchestrator(
            tmp_path / "nope.mp4", "P1", "in", "out", "PL1", "Q1",
            s3_client=fake_s3, transcoder_client=transcoder,
        )


def test_keys_are_unique_per_orchestrator(video, fake_s3, transcoder):
    a = _orchestrator(video, fake_s3, transcoder, FakeSQS())
    b = _orchestrator(video, fake_s3, transcoder, FakeSQS())

    assert a.input_key != b.input_key
    assert a.output_key != b.output_key
    assert a.input_key.endswith("-holiday.mp4")
    assert a.output_filename == "holiday.mp4"
    assert a.done() and b.done()


def test_successful_run_downloads_and_cleans_up(video, fake_s3, transcoder):
    sqs = _terminal_after_two_polls("J1", "succeeded")
    orch = _orchestrator(video, fake_s3, transcoder, sqs)

    result = orch.transcode()

    try:
        assert result is orch.get_transcoded_blob()
        assert result.filename == "holiday.mp4"
        assert result.content_type == "video/mp4"
        assert result.path.read_bytes() == b"transcoded"
    finally:
        result.path.unlink()

    assert orch.job_id == "J1"
    assert orch.terminal_state is TerminalState.SUCCESS
    assert transcoder.requests == [
        {
            "PipelineId": "PL1",
            "Input": {"Key": orch.input_key},
            "Outputs": [{"Key": orch.output_key, "PresetId": "P1"}],
        }
    ]
    assert set(fake_s3.deleted()) == {("in", orch.input_key), ("out", orch.output_key)}
    assert fake_s3.objects == {}
    assert orch.step is Step.INIT
    assert orch.done()
    assert wait_until(lambda: sqs.closed)


def test_remote_error_fails_and_skips_output(video, fake_s3, transcoder):
    transcoder.produce_output = False
    sqs = _terminal_after_two_polls("J1", "ERROR")
    orch = _orchestrator(video, fake_s3, transcoder, sqs)

    with pytest.raises(RemoteJobFailure) as excinfo:
        orch.transcode()

    assert orch.input_key in str(excinfo.value)
    assert excinfo.value.job_id == "J1"
    assert not excinfo.value.retryable
    assert orch.get_transcoded_blob() is None
    assert orch.terminal_state is TerminalState.ERROR
    assert ("in", orch.input_key) in fake_s3.deleted()
    assert not any(op == "get" for op, _, _ in fake_s3.calls)
    assert ("out", orch.output_key) not in fake_s3.deleted()
    assert ("in", orch.input_key) not in fake_s3.objects
    assert orch.done()


def test_other_jobs_events_do_not_unblock(video, fake_s3, transcoder):
    sqs = FakeSQS([
        [sqs_message(notification_body("J2", "COMPLETED"))],
        [sqs_message(notification_body("J2", "ERROR"))],
        [sqs_message(notification_body("J1", "PROGRESSING"))],
    ])
    orch = _orchestrator(video, fake_s3, transcoder, sqs, timeout=0.3)

    with pytest.raises(TranscodeTimeout):
        orch.transcode()

    assert orch.get_transcoded_blob() is None
    assert orch.terminal_state is None
    # transcoding never finished, so only the input is ours to delete
    assert fake_s3.deleted() == [("in", orch.input_key)]


def test_first_terminal_event_wins(video, fake_s3, transcoder):
    sqs = FakeSQS([
        [sqs_message(notification_body("J1", "WARNING"))],
        [sqs_message(notification_body("J1", "COMPLETED")), sqs_message(notification_body("J1", "ERROR"))],
    ])
    orch = _orchestrator(video, fake_s3, transcoder, sqs)

    result = orch.transcode()

    result.path.unlink()
    assert orch.terminal_state is TerminalState.SUCCESS


def test_upload_failure_deletes_nothing(video, fake_s3, transcoder):
    fake_s3.fail_upload = client_error("SlowDown", "Reduce your request rate", "PutObject")
    orch = _orchestrator(video, fake_s3, transcoder, FakeSQS())

    with pytest.raises(UploadFailure):
        orch.transcode()

    assert transcoder.requests == []
    assert fake_s3.deleted() == []
    assert orch.done()


def test_submission_failure_cleans_input_only(video, fake_s3, transcoder):
    transcoder.fail = client_error("ValidationException", "Pipeline not found", "CreateJob")
    sqs = FakeSQS()
    orch = _orchestrator(video, fake_s3, transcoder, sqs)

    with pytest.raises(SubmissionFailure) as excinfo:
        orch.transcode()

    assert "Pipeline not found" in str(excinfo.value)
    assert fake_s3.deleted() == [("in", orch.input_key)]


def test_delete_failure_does_not_change_outcome(video, fake_s3, transcoder):
    fake_s3.fail_delete = client_error("AccessDenied", "Access Denied", "DeleteObject")
    orch = _orchestrator(video, fake_s3, transcoder, _terminal_after_two_polls("J1", "COMPLETED"))

    result = orch.transcode()

    result.path.unlink()
    assert len(fake_s3.deleted()) == 2
    assert orch.done()


def test_strict_cleanup_raises_after_success(video, fake_s3, transcoder):
    fake_s3.fail_delete = client_error("AccessDenied", "Access Denied", "DeleteObject")
    orch = _orchestrator(video, fake_s3, transcoder, _terminal_after_two_polls("J1", "COMPLETED"), strict_cleanup=True)

    with pytest.raises(CleanupFailure) as excinfo:
        orch.transcode()

    orch.get_transcoded_blob().path.unlink()
    assert len(excinfo.value.failures) == 2
    assert orch.done()


def test_strict_cleanup_never_masks_remote_failure(video, fake_s3, transcoder):
    fake_s3.fail_delete = client_error("AccessDenied", "Access Denied", "DeleteObject")
    orch = _orchestrator(video, fake_s3, transcoder, _terminal_after_two_polls("J1", "ERROR"), strict_cleanup=True)

    with pytest.raises(RemoteJobFailure):
        orch.transcode()


def test_keep_objects_when_cleanup_disabled(video, fake_s3, transcoder):
    orch = _orchestrator(video, fake_s3, transcoder, _terminal_after_two_polls("J1", "COMPLETED"))
    orch.set_delete_input_on_cleanup(False)
    orch.set_delete_output_on_cleanup(False)

    orch.transcode().path.unlink()

    assert fake_s3.deleted() == []
    assert ("in", orch.input_key) in fake_s3.objects
    assert ("out", orch.output_key) in fake_s3.objects
    assert not orch.get_delete_input_on_cleanup()


def test_done_is_false_while_running(video, fake_s3, transcoder):
    orch = _orchestrator(video, fake_s3, transcoder, _terminal_after_two_polls("J1", "COMPLETED"))
    observed = []
    fake_s3.on_upload = lambda: observed.append(orch.done())

    assert orch.done()
    orch.transcode().path.unlink()

    assert observed == [False]
    assert orch.done()


def test_terminal_event_before_create_job_returns(video, fake_s3):
    sqs = FakeSQS()
    transcoder = EagerTranscoder(fake_s3, sqs, job_id="J1")
    orch = _orchestrator(video, fake_s3, transcoder, sqs)

    result = orch.transcode()

    result.path.unlink()
    assert transcoder.delivered
    assert orch.job_id == "J1"
    assert orch.terminal_state is TerminalState.SUCCESS
    assert orch.done()


class TestCompletionWatch:
    def test_early_event_is_replayed_on_bind(self):
        watch = _CompletionWatch()
        watch.offer(parse_notification(notification_body("J1", "COMPLETED")))

        assert not watch.future.done()
        watch.bind("J1")

        assert watch.wait(0).job_id == "J1"

    def test_early_event_for_another_job_is_dropped(self):
        watch = _CompletionWatch()
        watch.offer(parse_notification(notification_body("J2", "COMPLETED")))

        watch.bind("J1")

        assert not watch.future.done()
        assert not watch.accepts("J2")
        watch.offer(parse_notification(notification_body("J1", "ERROR")))
        assert watch.wait(0).state is JobState.ERROR

    def test_non_terminal_events_are_ignored(self):
        watch = _CompletionWatch()
        watch.bind("J1")

        watch.offer(parse_notification(notification_body("J1", "PROGRESSING")))

        assert not watch.future.done()
