#!/usr/bin/env python3
# src/managed_clusters.py
"""
Managed cluster synchronization for the console hub.

Each sync cycle, recomputed from live state:

1. List eligible ManagedClusters (the hub itself and clusters without a
   usable client config are skipped)
2. Publish one API server CA ConfigMap per cluster
3. Provision the console OAuth client on every cluster
4. Harvest each cluster's ingress CA through a view and publish it
5. Publish the aggregated managed cluster list for the console server
6. Delete what was created for clusters that are no longer eligible
7. Flush one status update with a condition per step

A failing cluster or step is recorded and the cycle moves on. Only a missing
hub OAuth client stops the cycle, and then everything this feature created
is removed.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

import appliers
import hub_api
import metrics
from appliers import ManagedClusterConfig
from hub_api import LABELS
from mediation import MediationClient, RemoteView, read_result
from provisioners import LocalOAuthClient, RemoteProvisioner, WorkBundleProvisioner
from resourceapply import apply_config_map, delete_labeled_config_maps, get_config_map
from status import StatusHandler, aggregate, cluster_error

logger = logging.getLogger("console-hub-sync.managed-clusters")

CONDITION_PREFIX = "ManagedClusterSync"

REASON_LOCAL_OAUTH_CLIENT = "LocalOAuthClient"
REASON_CLUSTER_LIST = "ManagedClusterList"
REASON_API_SERVER_CA = "APIServerCAConfigMaps"
REASON_OAUTH_CLIENTS = "OAuthClientProvisioning"
REASON_INGRESS_VIEWS = "IngressCertViews"
REASON_INGRESS_CONFIG_MAPS = "IngressCertConfigMaps"
REASON_CLUSTERS_CONFIG = "ManagedClustersConfigMap"
REASON_DEPARTED_CLUSTERS = "DepartedClusterCleanup"
REASON_TEARDOWN = "Teardown"

CA_SOURCE_CLIENT_CONFIG = "client-config"
CA_SOURCE_VIEW = "view"

# Every mediated kind this feature may have created, whatever the strategy
MEDIATED_KINDS = (hub_api.REMOTE_VIEW, hub_api.REMOTE_ACTION, hub_api.WORK_BUNDLE)


# -----------------------------
# Managed cluster model
# -----------------------------


@dataclass
class ClientConfig:
    url: str
    ca_bundle: Optional[bytes]

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ClientConfig":
        ca_bundle = None
        encoded = raw.get("caBundle")
        if encoded is not None:
            try:
                ca_bundle = base64.b64decode(encoded, validate=True)
            except (binascii.Error, TypeError, ValueError) as e:
                logger.warning(f"Ignoring undecodable caBundle for {raw.get('url', '')}: {e}")
        return cls(url=raw.get("url") or "", ca_bundle=ca_bundle)


@dataclass
class ManagedCluster:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    client_configs: List[ClientConfig] = field(default_factory=list)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ManagedCluster":
        meta = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            labels=meta.get("labels") or {},
            client_configs=[
                ClientConfig.from_dict(c)
                for c in spec.get("managedClusterClientConfigs") or []
                if isinstance(c, dict)
            ],
        )

    @property
    def is_hub(self) -> bool:
        return self.labels.get(hub_api.LOCAL_CLUSTER_LABEL) == "true"

    @property
    def client_config(self) -> Optional[ClientConfig]:
        """The primary client config, if it has both a URL and a CA bundle."""
        if not self.client_configs:
            return None
        primary = self.client_configs[0]
        if not primary.url or primary.ca_bundle is None:
            return None
        return primary


def filter_eligible(clusters: List[ManagedCluster]) -> List[ManagedCluster]:
    eligible = []
    for cluster in clusters:
        if cluster.is_hub:
            logger.debug(f"Skipping managed cluster {cluster.name}, it is the hub cluster")
            continue
        if not cluster.client_configs:
            logger.info(f"Skipping managed cluster {cluster.name}, no client config found")
            continue
        if cluster.client_config is None:
            logger.info(
                f"Skipping managed cluster {cluster.name}, client config URL or CA bundle not found"
            )
            continue
        eligible.append(cluster)
    return eligible


# -----------------------------
# Shared lookups
# -----------------------------


def get_operator_config(api: client.CustomObjectsApi) -> Dict[str, Any]:
    descriptor = hub_api.OPERATOR_CONFIG
    return api.get_cluster_custom_object(
        group=descriptor.group,
        version=descriptor.version,
        plural=descriptor.plural,
        name=hub_api.OPERATOR_CONFIG_NAME,
    )


def management_state(operator_config: Dict[str, Any]) -> str:
    return (operator_config.get("spec") or {}).get("managementState") or hub_api.MANAGED


def list_eligible_managed_clusters(
    api: client.CustomObjectsApi,
) -> Tuple[List[ManagedCluster], str, Optional[Exception]]:
    descriptor = hub_api.MANAGED_CLUSTER
    try:
        listed = api.list_cluster_custom_object(
            group=descriptor.group,
            version=descriptor.version,
            plural=descriptor.plural,
            label_selector=f"{hub_api.LOCAL_CLUSTER_LABEL}!=true",
        )
    except ApiException as e:
        if e.status == 404:
            # API not served: cluster management is not installed on the hub
            logger.debug("ManagedCluster API not found, no managed clusters")
            return [], REASON_CLUSTER_LIST, None
        return [], REASON_CLUSTER_LIST, e

    clusters = [ManagedCluster.from_object(item) for item in listed.get("items", [])]
    return filter_eligible(clusters), REASON_CLUSTER_LIST, None


def get_local_oauth_client(
    api: client.CustomObjectsApi,
) -> Tuple[Optional[LocalOAuthClient], str, Optional[Exception]]:
    descriptor = hub_api.OAUTH_CLIENT
    try:
        obj = api.get_cluster_custom_object(
            group=descriptor.group,
            version=descriptor.version,
            plural=descriptor.plural,
            name=hub_api.LOCAL_OAUTH_CLIENT_NAME,
        )
    except ApiException as e:
        return None, REASON_LOCAL_OAUTH_CLIENT, e
    return LocalOAuthClient.from_object(obj), REASON_LOCAL_OAUTH_CLIENT, None


# -----------------------------
# Controller
# -----------------------------


class ManagedClusterController:
    """Projects console configuration onto every eligible managed cluster."""

    name = "managed-clusters"

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        core_v1_api: client.CoreV1Api,
        provisioner: Optional[RemoteProvisioner] = None,
        api_server_ca_source: str = CA_SOURCE_CLIENT_CONFIG,
        require_tech_preview: bool = False,
    ):
        if api_server_ca_source not in (CA_SOURCE_CLIENT_CONFIG, CA_SOURCE_VIEW):
            raise ValueError(f"Unknown API server CA source: {api_server_ca_source}")
        self.api = custom_objects_api
        self.core_v1 = core_v1_api
        self.mediation = MediationClient(custom_objects_api)
        self.provisioner = provisioner
        self.api_server_ca_source = api_server_ca_source
        self.require_tech_preview = require_tech_preview

    def sync(self) -> Optional[Exception]:
        """Run one cycle; return the error that should shorten the next wait."""
        try:
            operator_config = get_operator_config(self.api)
        except ApiException as e:
            logger.warning(f"Failed to get operator config: {e}")
            return e

        state = management_state(operator_config)
        if state == hub_api.UNMANAGED:
            logger.debug("Operator is unmanaged, skipping managed cluster sync")
            return None
        if state == hub_api.REMOVED:
            logger.info("Operator is removed, deleting managed cluster resources")
            return self._sync_removed()
        if state != hub_api.MANAGED:
            return ValueError(f"unknown management state: {state}")

        if self.require_tech_preview and not self._tech_preview_enabled():
            logger.debug("Tech preview feature set not enabled, skipping managed cluster sync")
            return None

        handler = StatusHandler(self.api)
        owner = appliers.owner_reference_from(operator_config)

        # Without the hub's own client nothing can be provisioned remotely
        local_client, reason, err = get_local_oauth_client(self.api)
        handler.add(CONDITION_PREFIX, reason, err)
        if err is not None:
            logger.warning(f"Failed to get local OAuth client, removing managed cluster resources: {err}")
            handler.add(CONDITION_PREFIX, REASON_TEARDOWN, self.remove())
            return handler.flush_and_return(err)

        clusters, reason, err = list_eligible_managed_clusters(self.api)
        handler.add(CONDITION_PREFIX, reason, err)
        if err is not None:
            return handler.flush_and_return(err)

        metrics.managed_clusters.labels(controller=self.name).set(len(clusters))
        if not clusters:
            logger.info("No eligible managed clusters, nothing to sync")
            return handler.flush_and_return()

        logger.info(f"Syncing {len(clusters)} managed clusters: {', '.join(c.name for c in clusters)}")

        handler.add(CONDITION_PREFIX, *self.sync_api_server_ca_config_maps(clusters, owner))

        if self.provisioner is not None:
            handler.add(CONDITION_PREFIX, *self.sync_oauth_clients(clusters, local_client, owner))

        views, reason, err = self.sync_ingress_cert_views(clusters)
        handler.add(CONDITION_PREFIX, reason, err)
        handler.add(CONDITION_PREFIX, *self.sync_ingress_cert_config_maps(views, owner))

        handler.add(
            CONDITION_PREFIX,
            *self.sync_managed_clusters_config_map(clusters, local_client, owner),
        )
        handler.add(CONDITION_PREFIX, *self.prune_departed_clusters(clusters))
        return handler.flush_and_return()

    def _tech_preview_enabled(self) -> bool:
        descriptor = hub_api.FEATURE_GATE
        try:
            gate = self.api.get_cluster_custom_object(
                group=descriptor.group,
                version=descriptor.version,
                plural=descriptor.plural,
                name=hub_api.FEATURE_GATE_NAME,
            )
        except ApiException as e:
            logger.warning(f"Error getting FeatureGate config: {e}")
            return False
        feature_set = (gate.get("spec") or {}).get("featureSet") or ""
        return hub_api.TECH_PREVIEW_FEATURE_SET in feature_set

    # -----------------------------
    # Steps
    # -----------------------------

    def _api_server_ca(self, cluster: ManagedCluster) -> Optional[bytes]:
        if self.api_server_ca_source == CA_SOURCE_CLIENT_CONFIG:
            return cluster.client_config.ca_bundle

        view = self.mediation.ensure_view(cluster.name, appliers.api_server_ca_view(cluster.name))
        ready, result = read_result(view)
        bundle = result.get(hub_api.REMOTE_API_SERVER_CA_KEY, "")
        if not ready or not bundle:
            return None
        return bundle.encode("utf-8")

    def sync_api_server_ca_config_maps(
        self, clusters: List[ManagedCluster], owner: Optional[Dict[str, Any]]
    ) -> Tuple[str, Optional[Exception]]:
        errors = []
        for cluster in clusters:
            try:
                ca_bundle = self._api_server_ca(cluster)
                if ca_bundle is None:
                    logger.debug(f"API server CA for {cluster.name} not available yet, deferring")
                    metrics.deferred_clusters_total.labels(step="api-server-ca").inc()
                    continue
                apply_config_map(
                    self.core_v1, appliers.api_server_ca_config_map(cluster.name, ca_bundle, owner)
                )
            except ApiException as e:
                logger.warning(f"Skipping API server CA ConfigMap sync for {cluster.name}: {e}")
                errors.append(cluster_error(cluster.name, "applying API server CA ConfigMap", e))
        return REASON_API_SERVER_CA, aggregate(errors)

    def sync_oauth_clients(
        self,
        clusters: List[ManagedCluster],
        local_client: LocalOAuthClient,
        owner: Optional[Dict[str, Any]],
    ) -> Tuple[str, Optional[Exception]]:
        errors = []
        for cluster in clusters:
            try:
                outcome = self.provisioner.provision(cluster.name, local_client, owner)
                logger.debug(f"OAuth client on {cluster.name}: {outcome}")
            except ApiException as e:
                errors.append(cluster_error(cluster.name, "provisioning OAuth client", e))
        return REASON_OAUTH_CLIENTS, aggregate(errors)

    def sync_ingress_cert_views(
        self, clusters: List[ManagedCluster]
    ) -> Tuple[List[RemoteView], str, Optional[Exception]]:
        views = []
        errors = []
        for cluster in clusters:
            try:
                views.append(
                    self.mediation.ensure_view(cluster.name, appliers.ingress_cert_view(cluster.name))
                )
            except ApiException as e:
                errors.append(cluster_error(cluster.name, "syncing ingress cert view", e))
        return views, REASON_INGRESS_VIEWS, aggregate(errors)

    def sync_ingress_cert_config_maps(
        self, views: List[RemoteView], owner: Optional[Dict[str, Any]]
    ) -> Tuple[str, Optional[Exception]]:
        errors = []
        for view in views:
            cluster_name = view.namespace
            ready, result = read_result(view)
            if not ready:
                logger.debug(f"Ingress cert view for {cluster_name} not ready, deferring")
                metrics.deferred_clusters_total.labels(step="ingress-cert").inc()
                continue
            bundle = result.get(hub_api.REMOTE_INGRESS_CERT_KEY, "")
            if not bundle:
                logger.info(f"Skipping ingress cert ConfigMap for {cluster_name}, cert bundle is empty")
                continue
            try:
                apply_config_map(
                    self.core_v1, appliers.ingress_cert_config_map(cluster_name, bundle, owner)
                )
            except ApiException as e:
                errors.append(cluster_error(cluster_name, "applying ingress cert ConfigMap", e))
        return REASON_INGRESS_CONFIG_MAPS, aggregate(errors)

    def _oauth_client_secret(self, cluster_name: str, local_client: LocalOAuthClient) -> str:
        if isinstance(self.provisioner, WorkBundleProvisioner):
            return local_client.secret
        view = self.mediation.get_view(cluster_name, hub_api.OAUTH_CLIENT_VIEW_NAME)
        if view is None:
            return ""
        ready, result = read_result(view)
        return result.get("secret", "") if ready else ""

    def _managed_cluster_config(
        self, cluster: ManagedCluster, local_client: LocalOAuthClient
    ) -> Optional[ManagedClusterConfig]:
        namespace = hub_api.CONSOLE_NAMESPACE
        if get_config_map(self.core_v1, namespace, hub_api.api_server_ca_config_map_name(cluster.name)) is None:
            logger.debug(f"API server CA ConfigMap not found for {cluster.name}")
            return None

        config = ManagedClusterConfig(
            name=cluster.name,
            url=cluster.client_config.url,
            ca_file=hub_api.api_server_ca_file_mount_path(cluster.name),
        )
        ingress_name = hub_api.managed_cluster_ingress_cert_config_map_name(cluster.name)
        if get_config_map(self.core_v1, namespace, ingress_name) is not None:
            config.oauth_ca_file = hub_api.ingress_cert_file_mount_path(cluster.name)
            config.oauth_client_id = hub_api.MANAGED_CLUSTER_OAUTH_CLIENT_NAME
            config.oauth_client_secret = self._oauth_client_secret(cluster.name, local_client)
        return config

    def sync_managed_clusters_config_map(
        self,
        clusters: List[ManagedCluster],
        local_client: LocalOAuthClient,
        owner: Optional[Dict[str, Any]],
    ) -> Tuple[str, Optional[Exception]]:
        configs = []
        for cluster in clusters:
            try:
                config = self._managed_cluster_config(cluster, local_client)
            except ApiException as e:
                logger.info(f"Leaving {cluster.name} out of the managed cluster config: {e}")
                continue
            if config is not None:
                configs.append(config)

        if not configs:
            logger.info("No managed cluster has a published API server CA yet, skipping config")
            return REASON_CLUSTERS_CONFIG, None

        try:
            apply_config_map(self.core_v1, appliers.managed_clusters_config_map(configs, owner))
        except ApiException as e:
            return REASON_CLUSTERS_CONFIG, e
        return REASON_CLUSTERS_CONFIG, None

    # -----------------------------
    # Teardown
    # -----------------------------

    def _sync_removed(self) -> Optional[Exception]:
        handler = StatusHandler(self.api)
        handler.add(CONDITION_PREFIX, REASON_TEARDOWN, self.remove())
        return handler.flush_and_return()

    def prune_departed_clusters(self, clusters: List[ManagedCluster]) -> Tuple[str, Optional[Exception]]:
        """Delete labeled objects of clusters that are no longer eligible."""
        errors = self._delete_labeled(keep_clusters={c.name for c in clusters})
        return REASON_DEPARTED_CLUSTERS, aggregate(errors)

    def remove(self) -> Optional[Exception]:
        """Delete every object labeled as belonging to this feature."""
        errors = self._delete_labeled()
        if errors:
            logger.error(f"Errors were encountered while removing managed cluster resources: {errors}")
        return aggregate(errors)

    def _delete_labeled(self, keep_clusters: Optional[AbstractSet[str]] = None) -> List[Exception]:
        errors: List[Exception] = []

        deleted, errs = delete_labeled_config_maps(
            self.core_v1, hub_api.CONSOLE_NAMESPACE, LABELS.selector(), keep_clusters
        )
        metrics.teardown_deletions_total.labels(kind="ConfigMap").inc(deleted)
        errors.extend(errs)

        for descriptor in MEDIATED_KINDS:
            deleted, errs = self.mediation.delete_labeled(descriptor, LABELS.selector(), keep_clusters)
            metrics.teardown_deletions_total.labels(kind=descriptor.kind).inc(deleted)
            errors.extend(errs)
        return errors
