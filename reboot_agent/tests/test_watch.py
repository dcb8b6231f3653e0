from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from reboot_agent.src.kube import ResourceKind
from reboot_agent.src.watch import ResourceEventHandler, ResourceWatch, object_key


class RecordingHandler(ResourceEventHandler):
    def __init__(self) -> None:
        self.events: list[tuple[str, ...]] = []

    def on_added(self, obj: Any) -> None:
        self.events.append(("added", obj.metadata.name, obj.metadata.resource_version))

    def on_updated(self, old: Any, new: Any) -> None:
        self.events.append(
            ("updated", new.metadata.name, old.metadata.resource_version, new.metadata.resource_version)
        )

    def on_deleted(self, obj: Any) -> None:
        self.events.append(("deleted", obj.metadata.name))


def make_node(name: str, resource_version: str = "1") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name, namespace=None, resource_version=resource_version, annotations={}
        )
    )


def fake_list_fn(
    resource_versions: list[str] | None = None,
    item_sets: list[list[Any]] | None = None,
) -> MagicMock:
    versions = resource_versions or ["100"]
    items_by_call = item_sets or [[]]
    call_count = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal call_count
        index = min(call_count, len(versions) - 1)
        items_index = min(call_count, len(items_by_call) - 1)
        call_count += 1
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=versions[index]),
            items=items_by_call[items_index],
        )

    return MagicMock(side_effect=fake_list)


def _make_watch(list_fn: Any, handler: ResourceEventHandler | None = None, **kwargs: Any) -> ResourceWatch:
    return ResourceWatch(ResourceKind.NODE, list_fn, handler or RecordingHandler(), **kwargs)


def test_object_key() -> None:
    assert object_key(make_node("node-1")) == "node-1"
    pod = SimpleNamespace(metadata=SimpleNamespace(name="web-1", namespace="apps"))
    assert object_key(pod) == "apps/web-1"
    assert object_key(SimpleNamespace(metadata=None)) is None


def test_handle_event_tracks_old_and_new() -> None:
    handler = RecordingHandler()
    resource_watch = _make_watch(fake_list_fn(), handler)

    resource_watch.handle_event("ADDED", make_node("node-1", "1"))
    resource_watch.handle_event("MODIFIED", make_node("node-1", "2"))
    resource_watch.handle_event("DELETED", make_node("node-1", "3"))
    resource_watch.handle_event("MODIFIED", make_node("node-2", "4"))
    resource_watch.handle_event("BOOKMARK", make_node("node-3", "5"))

    assert handler.events == [
        ("added", "node-1", "1"),
        ("updated", "node-1", "1", "2"),
        ("deleted", "node-1"),
        ("added", "node-2", "4"),
    ]


def test_handler_exception_does_not_break_delivery() -> None:
    handler = MagicMock(spec=ResourceEventHandler)
    handler.on_added.side_effect = [RuntimeError("boom"), None]
    resource_watch = _make_watch(fake_list_fn(), handler)

    resource_watch.handle_event("ADDED", make_node("node-1"))
    resource_watch.handle_event("ADDED", make_node("node-2"))

    assert handler.on_added.call_count == 2


def test_run_seeds_cache_then_streams_events() -> None:
    handler = RecordingHandler()
    list_fn = fake_list_fn(resource_versions=["100"], item_sets=[[make_node("node-1", "90")]])
    resource_watch = _make_watch(list_fn, handler, list_kwargs={"label_selector": "x=y"}, timeout_seconds=15)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    calls: list[dict[str, Any]] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        calls.append(kwargs)
        if len(calls) == 1:
            assert resource_watch.synced.is_set()
            return iter([{"type": "MODIFIED", "object": make_node("node-1", "101")}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher):
        resource_watch.run(stop_event=shutdown_event)

    assert handler.events == [
        ("added", "node-1", "90"),
        ("updated", "node-1", "90", "101"),
    ]
    list_fn.assert_called_once_with(label_selector="x=y")
    assert calls[0]["resource_version"] == "100"
    assert calls[0]["timeout_seconds"] == 15
    assert calls[0]["label_selector"] == "x=y"
    assert calls[1]["resource_version"] == "101"
    assert mock_watcher.stop.call_count >= 1


def test_run_relists_and_diffs_on_410() -> None:
    handler = RecordingHandler()
    list_fn = fake_list_fn(
        resource_versions=["100", "200"],
        item_sets=[
            [make_node("node-1", "10"), make_node("node-2", "20")],
            [make_node("node-1", "11"), make_node("node-3", "30")],
        ],
    )
    resource_watch = _make_watch(list_fn, handler)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    resource_versions_seen: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_versions_seen.append(kwargs.get("resource_version"))
        if len(resource_versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher):
        resource_watch.run(stop_event=shutdown_event)

    assert resource_versions_seen == ["100", "200"]
    assert handler.events[2:] == [
        ("updated", "node-1", "10", "11"),
        ("added", "node-3", "30"),
        ("deleted", "node-2"),
    ]


def test_run_retries_initial_list_on_transient_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    list_attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])

    resource_watch = _make_watch(fake_list)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher),
        patch("reboot_agent.src.watch.threading.Event.wait", side_effect=fake_wait),
        patch("reboot_agent.src.watch.random.random", return_value=0.5),
    ):
        resource_watch.run(stop_event=shutdown_event)

    assert list_attempts == 2
    assert wait_values == [pytest.approx(1.0)]
    assert resource_watch.synced.is_set()
    assert mock_watcher.stream.call_count == 1


def test_run_exits_fast_on_initial_list_rbac_denied() -> None:
    def fake_list(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=403, reason="forbidden")

    resource_watch = _make_watch(fake_list)
    watch_factory = MagicMock()

    with patch("reboot_agent.src.watch.watch.Watch", watch_factory):
        resource_watch.run(stop_event=threading.Event())

    watch_factory.assert_not_called()
    assert resource_watch.fatal.is_set()
    assert not resource_watch.synced.is_set()


def test_run_exits_fast_on_watch_rbac_denied() -> None:
    wait_values: list[float] = []
    resource_watch = _make_watch(fake_list_fn())
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher),
        patch("reboot_agent.src.watch.threading.Event.wait", side_effect=fake_wait),
    ):
        resource_watch.run(stop_event=threading.Event())

    assert wait_values == []
    assert resource_watch.fatal.is_set()


def test_run_applies_exponential_backoff_on_api_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    resource_watch = _make_watch(fake_list_fn())
    call_count = 0
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher),
        patch("reboot_agent.src.watch.threading.Event.wait", side_effect=fake_wait),
        patch("reboot_agent.src.watch.random.random", return_value=0.5),
    ):
        resource_watch.run(stop_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_run_resets_backoff_after_successful_stream() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    resource_watch = _make_watch(fake_list_fn())
    call_count = 0
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ApiException(status=500, reason="error")
        if call_count == 2:
            return iter([])
        if call_count == 3:
            raise ConnectionError("network down")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher),
        patch("reboot_agent.src.watch.threading.Event.wait", side_effect=fake_wait),
        patch("reboot_agent.src.watch.random.random", return_value=0.5),
    ):
        resource_watch.run(stop_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(1.0)]


def test_run_returns_immediately_when_stopped() -> None:
    list_fn = fake_list_fn()
    shutdown_event = threading.Event()
    shutdown_event.set()
    resource_watch = _make_watch(list_fn)
    watch_factory = MagicMock()

    with patch("reboot_agent.src.watch.watch.Watch", watch_factory):
        resource_watch.run(stop_event=shutdown_event)

    list_fn.assert_not_called()
    watch_factory.assert_not_called()


def test_request_stop_interrupts_active_stream() -> None:
    resource_watch = _make_watch(fake_list_fn())
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_watch.request_stop()
        return iter([{"type": "ADDED", "object": make_node("late")}])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reboot_agent.src.watch.watch.Watch", return_value=mock_watcher):
        resource_watch.run(stop_event=threading.Event())

    assert mock_watcher.stop.call_count >= 2
    assert "late" not in resource_watch._cache
