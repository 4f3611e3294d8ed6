import pytest

from transcoder.notifications import NotificationListener

from .fakes import FakeS3


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def make_listener():
    listeners = []

    def factory(client, **kwargs):
        kwargs.setdefault("wait_seconds", 0)
        kwargs.setdefault("error_backoff", 0.01)
        listener = NotificationListener("https://sqs.test/Q1", client=client, **kwargs)
        listeners.append(listener)
        return listener

    yield factory
    for listener in listeners:
        listener.stop(timeout=1.0)
