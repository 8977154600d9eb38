#!/usr/bin/env python3
# tests/test_mediation.py
"""
Tests for the mediation client: idempotent ensure, readiness gating and
work bundle convergence.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fakes import FakeCustomObjects, answer, api_error

import appliers
import hub_api
from mediation import (
    Condition,
    MediationClient,
    RemoteView,
    parse_conditions,
    read_readiness,
    read_result,
    semantic_equal,
)

VIEWS = hub_api.REMOTE_VIEW.plural
ACTIONS = hub_api.REMOTE_ACTION.plural
WORKS = hub_api.WORK_BUNDLE.plural


class TestConditions(unittest.TestCase):
    def test_malformed_conditions_are_not_ready(self):
        self.assertEqual(parse_conditions(None), [])
        self.assertEqual(parse_conditions({"conditions": "yes"}), [])
        conditions = parse_conditions({"conditions": [{"type": "Processing", "status": True}]})
        self.assertEqual(conditions[0].status, "Unknown")

    def test_only_first_condition_counts(self):
        view = RemoteView.from_object(
            {
                "metadata": {"name": "v", "namespace": "c"},
                "status": {
                    "conditions": [
                        {"type": "Processing", "status": "False"},
                        {"type": "Other", "status": "True"},
                    ]
                },
            }
        )
        self.assertTrue(view.answered)
        self.assertFalse(view.ready)

    def test_condition_from_dict(self):
        self.assertEqual(Condition.from_dict({"type": "A", "status": "True"}).status, "True")


class TestReadResult(unittest.TestCase):
    def _view(self, status):
        return RemoteView.from_object({"metadata": {"name": "v", "namespace": "c"}, "status": status})

    def test_not_ready(self):
        ready, result = read_result(self._view({"conditions": [{"status": "False"}]}))
        self.assertFalse(ready)
        self.assertEqual(result, {})

    def test_ready_without_result_is_not_usable(self):
        ready, _ = read_result(self._view({"conditions": [{"status": "True"}]}))
        self.assertFalse(ready)

    def test_ready_with_config_map_result(self):
        view = self._view(
            {
                "conditions": [{"status": "True"}],
                "result": {"kind": "ConfigMap", "data": {"ca-bundle.crt": "CERT"}},
            }
        )
        ready, result = read_result(view)
        self.assertTrue(ready)
        self.assertEqual(result["ca-bundle.crt"], "CERT")

    def test_read_readiness(self):
        self.assertTrue(read_readiness(self._view({"conditions": [{"status": "True"}]})))
        self.assertFalse(read_readiness(self._view({})))


class TestEnsure(unittest.TestCase):
    def setUp(self):
        self.api = FakeCustomObjects()
        self.mediation = MediationClient(self.api)

    def test_ensure_view_creates_once(self):
        first = self.mediation.ensure_view("spoke-1", appliers.ingress_cert_view("spoke-1"))
        second = self.mediation.ensure_view("spoke-1", appliers.ingress_cert_view("spoke-1"))

        self.assertEqual(first.name, second.name)
        self.assertEqual(self.api.count_calls("create_namespaced_custom_object"), 1)
        self.assertEqual(len(self.api.items(VIEWS)), 1)

    def test_ensure_view_returns_existing_state(self):
        self.mediation.ensure_view("spoke-1", appliers.ingress_cert_view("spoke-1"))
        answer(
            self.api, VIEWS, "spoke-1", hub_api.INGRESS_CERT_VIEW_NAME,
            result={"data": {"ca-bundle.crt": "CERT"}},
        )

        view = self.mediation.ensure_view("spoke-1", appliers.ingress_cert_view("spoke-1"))
        self.assertTrue(view.ready)
        self.assertEqual(read_result(view).result["ca-bundle.crt"], "CERT")

    def test_existing_view_spec_never_updated(self):
        original = appliers.ingress_cert_view("spoke-1")
        original.spec = {"scope": {"name": "something-else"}}
        self.mediation.ensure_view("spoke-1", original)

        view = self.mediation.ensure_view("spoke-1", appliers.ingress_cert_view("spoke-1"))
        self.assertEqual(view.spec, {"scope": {"name": "something-else"}})
        self.assertEqual(self.api.count_calls("replace_namespaced_custom_object"), 0)

    def test_create_conflict_falls_back_to_get(self):
        api = Mock()
        existing = {"metadata": {"name": hub_api.CREATE_OAUTH_CLIENT_ACTION_NAME, "namespace": "spoke-1"}}
        api.get_namespaced_custom_object.side_effect = [api_error(404), existing]
        api.create_namespaced_custom_object.side_effect = api_error(409)

        action = MediationClient(api).ensure_action(
            "spoke-1", appliers.create_oauth_client_action("spoke-1", "s", [])
        )
        self.assertEqual(action.name, hub_api.CREATE_OAUTH_CLIENT_ACTION_NAME)
        self.assertEqual(api.get_namespaced_custom_object.call_count, 2)

    def test_other_create_errors_propagate(self):
        self.api.fail("create_namespaced_custom_object", status=500)
        with self.assertRaises(Exception) as ctx:
            self.mediation.ensure_action(
                "spoke-1", appliers.create_oauth_client_action("spoke-1", "s", [])
            )
        self.assertEqual(ctx.exception.status, 500)

    def test_get_view_missing(self):
        self.assertIsNone(self.mediation.get_view("spoke-1", "missing"))


class TestWorkBundles(unittest.TestCase):
    def setUp(self):
        self.api = FakeCustomObjects()
        self.mediation = MediationClient(self.api)
        self.owner = {"apiVersion": "operator.openshift.io/v1", "kind": "Console", "name": "cluster", "uid": "u1"}

    def _bundle(self, secret="s1"):
        return appliers.oauth_client_work_bundle("spoke-1", secret, ["https://cb"], self.owner)

    def test_create_then_unchanged(self):
        _, changed = self.mediation.apply_work_bundle(self._bundle())
        self.assertTrue(changed)
        _, changed = self.mediation.apply_work_bundle(self._bundle())
        self.assertFalse(changed)
        self.assertEqual(self.api.count_calls("replace_namespaced_custom_object"), 0)

    def test_changed_spec_updates_in_place(self):
        self.mediation.apply_work_bundle(self._bundle("s1"))
        bundle, changed = self.mediation.apply_work_bundle(self._bundle("s2"))

        self.assertTrue(changed)
        self.assertEqual(self.api.count_calls("replace_namespaced_custom_object"), 1)
        self.assertEqual(self.api.count_calls("delete_namespaced_custom_object"), 0)
        self.assertEqual(bundle.manifests[0]["secret"], "s2")

        _, changed = self.mediation.apply_work_bundle(self._bundle("s2"))
        self.assertFalse(changed)

    def test_missing_labels_restored(self):
        self.mediation.apply_work_bundle(self._bundle())
        stored = self.api.stored(WORKS, "spoke-1", hub_api.OAUTH_CLIENT_WORK_NAME)
        stored["metadata"]["labels"] = {}

        _, changed = self.mediation.apply_work_bundle(self._bundle())
        self.assertTrue(changed)
        stored = self.api.stored(WORKS, "spoke-1", hub_api.OAUTH_CLIENT_WORK_NAME)
        self.assertIn(hub_api.LABELS.feature_key, stored["metadata"]["labels"])

    def test_semantic_equal_ignores_unset_fields(self):
        self.assertTrue(semantic_equal({"a": 1, "b": None, "c": {}}, {"a": 1}))
        self.assertFalse(semantic_equal({"a": 1}, {"a": 2}))

    def test_update_conflict_raises(self):
        self.mediation.apply_work_bundle(self._bundle("s1"))
        self.api.fail("replace_namespaced_custom_object", status=409)
        with self.assertRaises(Exception) as ctx:
            self.mediation.apply_work_bundle(self._bundle("s2"))
        self.assertEqual(ctx.exception.status, 409)


class TestDeleteLabeled(unittest.TestCase):
    def setUp(self):
        self.api = FakeCustomObjects()
        self.mediation = MediationClient(self.api)

    def test_deletes_only_labeled(self):
        self.mediation.ensure_view("a", appliers.ingress_cert_view("a"))
        self.mediation.ensure_view("b", appliers.ingress_cert_view("b"))
        self.api.put(VIEWS, {"metadata": {"name": "unrelated", "namespace": "a", "labels": {"app": "x"}}})

        deleted, errors = self.mediation.delete_labeled(hub_api.REMOTE_VIEW, hub_api.LABELS.selector())
        self.assertEqual((deleted, errors), (2, []))
        self.assertEqual([o["metadata"]["name"] for o in self.api.items(VIEWS)], ["unrelated"])

    def test_unserved_api_is_success(self):
        self.api.unserved.add(ACTIONS)
        self.assertEqual(
            self.mediation.delete_labeled(hub_api.REMOTE_ACTION, hub_api.LABELS.selector()), (0, [])
        )

    def test_delete_errors_collected(self):
        self.mediation.ensure_view("a", appliers.ingress_cert_view("a"))
        self.mediation.ensure_view("b", appliers.oauth_client_view("b"))
        self.api.fail("delete_namespaced_custom_object", hub_api.INGRESS_CERT_VIEW_NAME, 500)

        deleted, errors = self.mediation.delete_labeled(hub_api.REMOTE_VIEW, hub_api.LABELS.selector())
        self.assertEqual(deleted, 1)
        self.assertEqual(len(errors), 1)


if __name__ == "__main__":
    unittest.main()
