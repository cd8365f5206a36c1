"""Unit tests for AnnotationStateTracker."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from adguard_external_dns.cli import (
    FIELD_MANAGER,
    OLD_HOST_ANNOTATION,
    OLD_IP_ANNOTATION,
    AnnotationStateTracker,
    IngressRecord,
)


def make_ingress(name: str = "web", namespace: str = "apps") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace, annotations={}))


class TestPersist:
    def test_persist_sends_merge_patch_with_both_annotations(self) -> None:
        api = MagicMock()
        tracker = AnnotationStateTracker(api)

        tracker.persist(make_ingress(), IngressRecord("a.test", "1.1.1.1"))

        api.patch_namespaced_ingress.assert_called_once_with(
            name="web",
            namespace="apps",
            body={
                "metadata": {
                    "annotations": {
                        OLD_HOST_ANNOTATION: "a.test",
                        OLD_IP_ANNOTATION: "1.1.1.1",
                    }
                }
            },
            field_manager=FIELD_MANAGER,
            _content_type="application/merge-patch+json",
        )

    def test_persist_uses_configured_field_manager(self) -> None:
        api = MagicMock()
        tracker = AnnotationStateTracker(api, field_manager="custom")

        tracker.persist(make_ingress(), IngressRecord("a.test", "1.1.1.1"))

        assert api.patch_namespaced_ingress.call_args.kwargs["field_manager"] == "custom"

    def test_persist_propagates_api_errors(self) -> None:
        api = MagicMock()
        api.patch_namespaced_ingress.side_effect = ApiException(status=404, reason="Not Found")
        tracker = AnnotationStateTracker(api)

        with pytest.raises(ApiException):
            tracker.persist(make_ingress(), IngressRecord("a.test", "1.1.1.1"))
