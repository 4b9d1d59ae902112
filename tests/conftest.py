import socket
from concurrent.futures import Future
from typing import Any

import pytest

from smtptopubsub import AdmissionFilter, RelayConfig


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


class FakePublisherClient:
    """Stands in for pubsub_v1.PublisherClient, resolving futures immediately."""

    def __init__(self):
        self.published: list[dict[str, Any]] = []
        self.resumed: list[tuple[str, str]] = []
        self.fail_next: Exception | None = None
        self.raise_on_publish: Exception | None = None
        self.stopped = False

    def topic_path(self, project: str, topic: str) -> str:
        return f"projects/{project}/topics/{topic}"

    def publish(self, topic, data, ordering_key=""):
        if self.raise_on_publish is not None:
            error, self.raise_on_publish = self.raise_on_publish, None
            raise error
        future: Future = Future()
        if self.fail_next is not None:
            future.set_exception(self.fail_next)
            self.fail_next = None
            return future
        self.published.append({"topic": topic, "data": data, "ordering_key": ordering_key})
        future.set_result(str(len(self.published)))
        return future

    def resume_publish(self, topic, ordering_key):
        self.resumed.append((topic, ordering_key))

    def stop(self):
        self.stopped = True


class RecordingPublisher:
    """Minimal publisher double for accumulator tests."""

    def __init__(self):
        self.payloads: list[bytes] = []
        self.error: Exception | None = None

    async def publish(self, data: bytes) -> str:
        if self.error is not None:
            raise self.error
        self.payloads.append(data)
        return f"msg-{len(self.payloads)}"


@pytest.fixture
def relay_config():
    return RelayConfig()


@pytest.fixture
def fake_client():
    return FakePublisherClient()


@pytest.fixture
def recording_publisher():
    return RecordingPublisher()


@pytest.fixture
def admission_filter():
    return AdmissionFilter()
