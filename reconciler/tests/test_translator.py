from __future__ import annotations

import logging
from typing import Any

import pytest

from reconciler.src.cache import LiveObject, Tombstone, Unrecognized
from reconciler.src.translator import EventTranslator
from reconciler.src.workqueue import RateLimitingQueue


class RecordingQueue:
    def __init__(self) -> None:
        self.added: list[str] = []

    def add(self, key: str) -> None:
        self.added.append(key)


def make_sample(
    name: str | None = "sample-1",
    namespace: str | None = "default",
    resource_version: str = "1",
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"resourceVersion": resource_version}
    if name is not None:
        metadata["name"] = name
    if namespace is not None:
        metadata["namespace"] = namespace
    return {"apiVersion": "myk8s.io/v1", "kind": "Sample", "metadata": metadata}


def _error_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [record for record in caplog.records if record.levelno >= logging.ERROR]


# ---------------------------------------------------------------------------
# Added / Updated
# ---------------------------------------------------------------------------


def test_added_object_is_enqueued_by_key() -> None:
    queue = RecordingQueue()
    EventTranslator(queue).on_add(make_sample())

    assert queue.added == ["default/sample-1"]


def test_cluster_scoped_object_is_enqueued_by_name() -> None:
    queue = RecordingQueue()
    EventTranslator(queue).on_add(make_sample(namespace=None))

    assert queue.added == ["sample-1"]


def test_updated_object_is_enqueued_by_new_key() -> None:
    queue = RecordingQueue()
    EventTranslator(queue).on_update(
        make_sample(resource_version="1"), make_sample(resource_version="2")
    )

    assert queue.added == ["default/sample-1"]


def test_added_object_without_name_is_dropped_and_logged(
    caplog: pytest.LogCaptureFixture,
) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.ERROR):
        EventTranslator(queue).on_add(make_sample(name=None))

    assert queue.added == []
    assert len(_error_records(caplog)) == 1


def test_updated_object_without_metadata_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.ERROR):
        EventTranslator(queue).on_update(make_sample(), {"kind": "Sample"})

    assert queue.added == []
    assert len(_error_records(caplog)) == 1


# ---------------------------------------------------------------------------
# Deleted
# ---------------------------------------------------------------------------


def test_live_delete_is_enqueued() -> None:
    queue = RecordingQueue()
    EventTranslator(queue).on_delete(LiveObject(obj=make_sample()))

    assert queue.added == ["default/sample-1"]


def test_tombstone_with_last_known_identity_enqueues_once(
    caplog: pytest.LogCaptureFixture,
) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.INFO):
        EventTranslator(queue).on_delete(
            Tombstone(key="default/sample-1", obj=make_sample())
        )

    assert queue.added == ["default/sample-1"]
    assert _error_records(caplog) == []


def test_tombstone_wrapping_unknown_value_is_dropped_with_one_error(
    caplog: pytest.LogCaptureFixture,
) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.ERROR):
        EventTranslator(queue).on_delete(Tombstone(key="default/sample-1", obj="garbage"))

    assert queue.added == []
    errors = _error_records(caplog)
    assert len(errors) == 1
    assert "non-resource" in errors[0].getMessage()


def test_tombstone_without_recoverable_name_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.ERROR):
        EventTranslator(queue).on_delete(
            Tombstone(key="default/sample-1", obj=make_sample(name=None))
        )

    assert queue.added == []
    assert len(_error_records(caplog)) == 1


def test_unrecognized_delete_payload_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    queue = RecordingQueue()

    with caplog.at_level(logging.ERROR):
        EventTranslator(queue).on_delete(Unrecognized(value=12345))

    assert queue.added == []
    assert len(_error_records(caplog)) == 1


# ---------------------------------------------------------------------------
# Against the real queue
# ---------------------------------------------------------------------------


def test_burst_of_notifications_collapses_to_one_pending_key() -> None:
    queue = RateLimitingQueue(name="translator-test")
    translator = EventTranslator(queue)

    translator.on_add(make_sample(resource_version="1"))
    translator.on_update(make_sample(resource_version="1"), make_sample(resource_version="2"))
    translator.on_update(make_sample(resource_version="2"), make_sample(resource_version="3"))
    translator.on_delete(LiveObject(obj=make_sample(resource_version="4")))

    assert len(queue) == 1
    assert queue.get(timeout=0) == ("default/sample-1", False)
