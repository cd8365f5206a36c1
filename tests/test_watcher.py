"""Unit tests for IngressWatcher list-then-watch event production."""

from itertools import islice
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from adguard_external_dns.cli import EventType, IngressWatcher


def make_obj(name: str, resource_version: str = "") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, resource_version=resource_version))


def make_listing(items, resource_version: str = "100") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(resource_version=resource_version), items=items)


@pytest.fixture
def mock_watch():
    with patch("adguard_external_dns.cli.watch.Watch") as watch_cls:
        yield watch_cls.return_value


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("adguard_external_dns.cli.time.sleep") as mock_sleep:
        yield mock_sleep


def test_initial_listing_is_a_restart_followed_by_stream_events(mock_watch: MagicMock) -> None:
    api = MagicMock()
    existing = make_obj("existing")
    api.list_ingress_for_all_namespaces.return_value = make_listing([existing])
    added, modified, deleted = make_obj("a", "101"), make_obj("b", "102"), make_obj("c", "103")
    mock_watch.stream.return_value = iter(
        [
            {"type": "ADDED", "object": added},
            {"type": "BOOKMARK", "object": make_obj("", "104")},
            {"type": "MODIFIED", "object": modified},
            {"type": "DELETED", "object": deleted},
        ]
    )

    events = list(islice(IngressWatcher(api).events(), 4))

    assert [e.type for e in events] == [
        EventType.RESTARTED,
        EventType.APPLIED,
        EventType.APPLIED,
        EventType.DELETED,
    ]
    assert events[0].objects == [existing]
    assert [e.objects for e in events[1:]] == [[added], [modified], [deleted]]
    mock_watch.stream.assert_called_once_with(
        api.list_ingress_for_all_namespaces, resource_version="100", timeout_seconds=300
    )


def test_stream_timeout_resumes_from_last_resource_version(mock_watch: MagicMock) -> None:
    api = MagicMock()
    api.list_ingress_for_all_namespaces.return_value = make_listing([])
    mock_watch.stream.side_effect = [
        iter([{"type": "ADDED", "object": make_obj("a", "150")}]),
        iter([{"type": "ADDED", "object": make_obj("b", "151")}]),
    ]

    events = list(islice(IngressWatcher(api).events(), 3))

    assert [e.type for e in events] == [EventType.RESTARTED, EventType.APPLIED, EventType.APPLIED]
    assert mock_watch.stream.call_args_list[1].kwargs["resource_version"] == "150"
    assert api.list_ingress_for_all_namespaces.call_count == 1
    assert mock_watch.stop.call_count >= 1


def test_gone_relists_and_restarts(mock_watch: MagicMock) -> None:
    api = MagicMock()
    first, second = make_obj("first"), make_obj("second")
    api.list_ingress_for_all_namespaces.side_effect = [
        make_listing([first], "100"),
        make_listing([first, second], "200"),
    ]
    mock_watch.stream.side_effect = [ApiException(status=410, reason="Gone"), iter([])]

    events = list(islice(IngressWatcher(api).events(), 2))

    assert [e.type for e in events] == [EventType.RESTARTED, EventType.RESTARTED]
    assert events[1].objects == [first, second]


def test_api_error_backs_off_then_relists(mock_watch: MagicMock, no_sleep: MagicMock) -> None:
    api = MagicMock()
    api.list_ingress_for_all_namespaces.return_value = make_listing([])
    mock_watch.stream.side_effect = [ApiException(status=500, reason="boom"), iter([])]

    events = list(islice(IngressWatcher(api, backoff_seconds=2.0).events(), 2))

    assert [e.type for e in events] == [EventType.RESTARTED, EventType.RESTARTED]
    no_sleep.assert_called_once_with(2.0)


def test_list_failure_is_retried(mock_watch: MagicMock, no_sleep: MagicMock) -> None:
    api = MagicMock()
    api.list_ingress_for_all_namespaces.side_effect = [
        ApiException(status=503, reason="Unavailable"),
        make_listing([]),
    ]

    events = list(islice(IngressWatcher(api).events(), 1))

    assert events[0].type == EventType.RESTARTED
    no_sleep.assert_called_once_with(1.0)


def test_namespace_restricts_listing_and_watch(mock_watch: MagicMock) -> None:
    api = MagicMock()
    api.list_namespaced_ingress.return_value = make_listing([])
    mock_watch.stream.return_value = iter([{"type": "DELETED", "object": make_obj("a", "101")}])

    events = list(islice(IngressWatcher(api, namespace="apps", timeout_seconds=60).events(), 2))

    assert events[1].type == EventType.DELETED
    api.list_namespaced_ingress.assert_called_once_with(namespace="apps")
    api.list_ingress_for_all_namespaces.assert_not_called()
    mock_watch.stream.assert_called_once_with(
        api.list_namespaced_ingress, resource_version="100", timeout_seconds=60, namespace="apps"
    )
