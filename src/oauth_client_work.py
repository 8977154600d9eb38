#!/usr/bin/env python3
# src/oauth_client_work.py
"""
Replicates the hub's console OAuth client to every managed cluster through
work bundles.

Runs independently of the managed cluster controller and re-asserts the
bundle on every cycle, so a rotated hub secret or a drifted bundle is
corrected on the next pass.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

import appliers
import hub_api
import metrics
from managed_clusters import (
    ManagedCluster,
    get_local_oauth_client,
    get_operator_config,
    list_eligible_managed_clusters,
    management_state,
)
from mediation import MediationClient
from provisioners import APPLIED, LocalOAuthClient, WorkBundleProvisioner
from status import StatusHandler, aggregate, cluster_error

logger = logging.getLogger("console-hub-sync.oauth-client-work")

CONDITION_PREFIX = "ManagedClusterOAuthClientSync"

REASON_APPLY_WORK_BUNDLES = "ApplyWorkBundles"
REASON_TEARDOWN = "Teardown"


class ManagedClusterOAuthClientController:
    name = "oauth-client-work"

    def __init__(self, custom_objects_api: client.CustomObjectsApi):
        self.api = custom_objects_api
        self.provisioner = WorkBundleProvisioner(MediationClient(custom_objects_api))

    def sync(self) -> Optional[Exception]:
        try:
            operator_config = get_operator_config(self.api)
        except ApiException as e:
            logger.warning(f"Failed to get operator config: {e}")
            return e

        state = management_state(operator_config)
        if state == hub_api.UNMANAGED:
            return None
        if state == hub_api.REMOVED:
            handler = StatusHandler(self.api)
            handler.add(CONDITION_PREFIX, REASON_TEARDOWN, self.remove())
            return handler.flush_and_return()
        if state != hub_api.MANAGED:
            return ValueError(f"unknown management state: {state}")

        handler = StatusHandler(self.api)

        local_client, reason, err = get_local_oauth_client(self.api)
        handler.add(CONDITION_PREFIX, reason, err)
        if err is not None:
            logger.warning(f"Failed to get local OAuth client, removing work bundles: {err}")
            handler.add(CONDITION_PREFIX, REASON_TEARDOWN, self.remove())
            return handler.flush_and_return(err)

        clusters, reason, err = list_eligible_managed_clusters(self.api)
        handler.add(CONDITION_PREFIX, reason, err)
        if err is not None:
            return handler.flush_and_return(err)

        metrics.managed_clusters.labels(controller=self.name).set(len(clusters))
        if not clusters:
            logger.debug("No eligible managed clusters, no work bundles to apply")
            return handler.flush_and_return()

        owner = appliers.owner_reference_from(operator_config)
        handler.add(CONDITION_PREFIX, *self.apply_work_bundles(clusters, local_client, owner))
        return handler.flush_and_return()

    def apply_work_bundles(
        self,
        clusters: List[ManagedCluster],
        local_client: LocalOAuthClient,
        owner: Optional[Dict[str, Any]],
    ) -> Tuple[str, Optional[Exception]]:
        errors = []
        applied = 0
        for cluster in clusters:
            try:
                if self.provisioner.provision(cluster.name, local_client, owner) == APPLIED:
                    applied += 1
            except ApiException as e:
                errors.append(cluster_error(cluster.name, "applying OAuth client work bundle", e))
        if applied:
            logger.info(f"Applied OAuth client work bundles to {applied} of {len(clusters)} clusters")
        return REASON_APPLY_WORK_BUNDLES, aggregate(errors)

    def remove(self) -> Optional[Exception]:
        deleted, errors = self.provisioner.remove()
        metrics.teardown_deletions_total.labels(kind=hub_api.WORK_BUNDLE.kind).inc(deleted)
        if errors:
            logger.error(f"Errors were encountered while removing OAuth client work bundles: {errors}")
        return aggregate(errors)
