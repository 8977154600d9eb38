#!/usr/bin/env python3
# tests/test_status.py
"""Tests for error aggregation and operator status conditions."""

import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fakes import FakeCustomObjects, api_error, operator_conditions, seed_hub

import hub_api

from status import (
    AggregateError,
    ClusterSyncError,
    ConditionUpdate,
    StatusHandler,
    SyncProgressingError,
    aggregate,
    cluster_error,
    handle_progressing_or_degraded,
    merge_conditions,
)


class TestErrors(unittest.TestCase):
    def test_aggregate_empty(self):
        self.assertIsNone(aggregate([]))

    def test_aggregate_names_every_cluster(self):
        err = aggregate(
            [
                cluster_error("a", "applying", api_error(500)),
                cluster_error("b", "applying", api_error(500)),
            ]
        )
        self.assertIsInstance(err, AggregateError)
        self.assertIn("managed cluster a", str(err))
        self.assertIn("managed cluster b", str(err))
        self.assertEqual(len(err.errors), 2)

    def test_conflict_is_progressing(self):
        self.assertIsInstance(cluster_error("a", "applying", api_error(409)), SyncProgressingError)
        self.assertIsInstance(cluster_error("a", "applying", api_error(500)), ClusterSyncError)

    def test_all_progressing_aggregate_stays_progressing(self):
        err = aggregate([SyncProgressingError("x"), SyncProgressingError("y")])
        self.assertIsInstance(err, SyncProgressingError)
        mixed = aggregate([SyncProgressingError("x"), ClusterSyncError("a", "y")])
        self.assertIsInstance(mixed, AggregateError)


class TestConditions(unittest.TestCase):
    def test_degraded_on_error(self):
        degraded, progressing = handle_progressing_or_degraded("P", "Step", ValueError("boom"))
        self.assertEqual(degraded.type, "PStepDegraded")
        self.assertEqual(degraded.status, "True")
        self.assertEqual(degraded.reason, "StepFailed")
        self.assertEqual(progressing.status, "False")

    def test_progressing_on_sync_error(self):
        degraded, progressing = handle_progressing_or_degraded("P", "Step", SyncProgressingError("later"))
        self.assertEqual(degraded.status, "False")
        self.assertEqual(progressing.status, "True")

    def test_transition_time_only_moves_on_flip(self):
        existing = [{"type": "A", "status": "False", "lastTransitionTime": "t0", "reason": "", "message": ""}]
        same = merge_conditions(existing, [ConditionUpdate("A", "False")], "t1")
        self.assertEqual(same[0]["lastTransitionTime"], "t0")
        flipped = merge_conditions(existing, [ConditionUpdate("A", "True", "AFailed", "x")], "t2")
        self.assertEqual(flipped[0]["lastTransitionTime"], "t2")
        self.assertEqual(existing[0]["status"], "False")


class TestStatusHandler(unittest.TestCase):
    def setUp(self):
        self.api = FakeCustomObjects()
        seed_hub(self.api)

    def test_flush_writes_all_reasons_and_returns_first_error(self):
        handler = StatusHandler(self.api)
        first = ValueError("first")
        handler.add("Sync", "One", None)
        handler.add("Sync", "Two", first)
        handler.add("Sync", "Three", ValueError("second"))

        self.assertIs(handler.flush_and_return(), first)
        conditions = operator_conditions(self.api)
        self.assertEqual(conditions["SyncOneDegraded"]["status"], "False")
        self.assertEqual(conditions["SyncTwoDegraded"]["status"], "True")
        self.assertEqual(conditions["SyncThreeDegraded"]["message"], "second")
        self.assertEqual(self.api.count_calls("patch_cluster_custom_object_status"), 1)

    def test_explicit_return_error_wins(self):
        handler = StatusHandler(self.api)
        handler.add("Sync", "One", ValueError("step"))
        fatal = ValueError("fatal")
        self.assertIs(handler.flush_and_return(fatal), fatal)

    def test_unchanged_conditions_not_rewritten(self):
        for _ in range(2):
            handler = StatusHandler(self.api)
            handler.add("Sync", "One", None)
            handler.flush_and_return()
        self.assertEqual(self.api.count_calls("patch_cluster_custom_object_status"), 1)

    def test_status_write_failure_returned(self):
        self.api.fail("patch_cluster_custom_object_status", status=500)
        handler = StatusHandler(self.api)
        handler.add("Sync", "One", None)
        self.assertEqual(handler.flush_and_return().status, 500)

    def test_concurrent_handlers_keep_each_others_conditions(self):
        cluster_sync = StatusHandler(self.api)
        work_sync = StatusHandler(self.api)
        cluster_sync.add("ManagedClusterSync", "APIServerCAConfigMaps", None)
        work_sync.add("ManagedClusterOAuthClientSync", "ApplyWorkBundles", ValueError("apply failed"))

        real_get = self.api.get_cluster_custom_object
        interleaved = []

        def get_then_interleave(**kwargs):
            obj = real_get(**kwargs)
            if not interleaved:
                # The other controller flushes between this read and its patch
                interleaved.append(True)
                work_sync.flush_and_return()
            return obj

        self.api.get_cluster_custom_object = get_then_interleave
        self.assertIsNone(cluster_sync.flush_and_return())

        conditions = operator_conditions(self.api)
        self.assertEqual(conditions["ManagedClusterOAuthClientSyncApplyWorkBundlesDegraded"]["status"], "True")
        self.assertEqual(conditions["ManagedClusterSyncAPIServerCAConfigMapsDegraded"]["status"], "False")
        self.assertEqual(self.api.count_calls("patch_cluster_custom_object_status"), 3)

    def test_persistent_conflict_is_progressing(self):
        self.api.fail("patch_cluster_custom_object_status", status=409)
        handler = StatusHandler(self.api)
        handler.add("Sync", "One", None)

        self.assertIsInstance(handler.flush_and_return(), SyncProgressingError)
        self.assertEqual(self.api.count_calls("patch_cluster_custom_object_status"), 3)

    def test_status_patch_carries_resource_version(self):
        handler = StatusHandler(self.api)
        handler.add("Sync", "One", None)
        expected = self.api.stored(hub_api.OPERATOR_CONFIG.plural, "", hub_api.OPERATOR_CONFIG_NAME)[
            "metadata"
        ]["resourceVersion"]

        with patch.object(
            self.api, "patch_cluster_custom_object_status", wraps=self.api.patch_cluster_custom_object_status
        ) as patched:
            handler.flush_and_return()

        body = patched.call_args.kwargs["body"]
        self.assertEqual(body["metadata"]["resourceVersion"], expected)


if __name__ == "__main__":
    unittest.main()
