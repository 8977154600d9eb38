#!/usr/bin/env python3
# src/hub_api.py
"""
Fixed names, resource descriptors and the label scheme shared by every
component that writes or reads hub-side objects for managed clusters.

The naming functions in this module are a wire contract with the console
server: it reads CA files from paths built by the same convention, so the
output for a given cluster name must never change.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

# -----------------------------
# Hub namespaces and names
# -----------------------------
CONSOLE_NAMESPACE = os.environ.get("CONSOLE_NAMESPACE", "openshift-console")
OPERATOR_NAMESPACE = os.environ.get("OPERATOR_NAMESPACE", "openshift-console-operator")
OPERATOR_CONFIG_NAME = os.environ.get("OPERATOR_CONFIG_NAME", "cluster")
LOCAL_OAUTH_CLIENT_NAME = os.environ.get("LOCAL_OAUTH_CLIENT_NAME", "console")
FEATURE_GATE_NAME = "cluster"
TECH_PREVIEW_FEATURE_SET = "TechPreviewNoUpgrade"

# Executor identity used to apply work bundles inside managed clusters
WORK_EXECUTOR_SERVICE_ACCOUNT = "console-operator"
WORK_EXECUTOR_NAMESPACE = OPERATOR_NAMESPACE

# Mediating object names (one per cluster namespace)
OAUTH_CLIENT_VIEW_NAME = "console-oauth-client"
INGRESS_CERT_VIEW_NAME = "console-ingress-cert"
API_SERVER_CA_VIEW_NAME = "console-api-server-ca"
CREATE_OAUTH_CLIENT_ACTION_NAME = "console-create-oauth-client"
OAUTH_CLIENT_WORK_NAME = "console-managed-cluster-oauth-client"

# OAuth client created inside every managed cluster
MANAGED_CLUSTER_OAUTH_CLIENT_NAME = "console-managed-cluster-oauth-client"

# Remote objects observed through views
REMOTE_INGRESS_CERT_CONFIGMAP = "default-ingress-cert"
REMOTE_INGRESS_CERT_NAMESPACE = "openshift-config-managed"
REMOTE_INGRESS_CERT_KEY = "ca-bundle.crt"
REMOTE_API_SERVER_CA_CONFIGMAP = "kube-root-ca.crt"
REMOTE_API_SERVER_CA_NAMESPACE = "kube-public"
REMOTE_API_SERVER_CA_KEY = "ca.crt"

# Aggregated configuration consumed by the console server
MANAGED_CLUSTERS_CONFIGMAP_NAME = "managed-clusters"
MANAGED_CLUSTERS_CONFIG_KEY = "managed-clusters.yaml"

# Per-cluster CA ConfigMaps
API_SERVER_CA_SUFFIX = "managed-cluster-api-server-ca"
API_SERVER_CA_KEY = "ca.crt"
API_SERVER_CA_MOUNT_DIR = "/var/managed-cluster-api-server-certs"
INGRESS_CERT_SUFFIX = "managed-cluster-ingress-cert"
INGRESS_CERT_KEY = "ca-bundle.crt"
INGRESS_CERT_MOUNT_DIR = "/var/managed-cluster-oauth-server-certs"

# Hub cluster marker on ManagedCluster objects
LOCAL_CLUSTER_LABEL = "local-cluster"

# Management states of the operator config
MANAGED = "Managed"
UNMANAGED = "Unmanaged"
REMOVED = "Removed"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Group/version/plural triple for a resource served by the hub API."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


MANAGED_CLUSTER = ResourceDescriptor(
    "cluster.open-cluster-management.io", "v1", "managedclusters", "ManagedCluster", False
)
REMOTE_VIEW = ResourceDescriptor(
    "view.open-cluster-management.io", "v1beta1", "managedclusterviews", "ManagedClusterView"
)
REMOTE_ACTION = ResourceDescriptor(
    "action.open-cluster-management.io", "v1beta1", "managedclusteractions", "ManagedClusterAction"
)
WORK_BUNDLE = ResourceDescriptor(
    "work.open-cluster-management.io", "v1", "manifestworks", "ManifestWork"
)
OAUTH_CLIENT = ResourceDescriptor("oauth.openshift.io", "v1", "oauthclients", "OAuthClient", False)
OPERATOR_CONFIG = ResourceDescriptor("operator.openshift.io", "v1", "consoles", "Console", False)
FEATURE_GATE = ResourceDescriptor("config.openshift.io", "v1", "featuregates", "FeatureGate", False)


@dataclass(frozen=True)
class LabelScheme:
    """Labels stamped on every object this feature creates.

    Writers call ``for_cluster``/``for_shared``; readers (teardown, listing)
    use ``selector``. Presence of ``feature_key`` is the only discovery
    mechanism, its value is the owning cluster name ("" when shared).
    """

    feature_key: str = "console.openshift.io/managed-cluster"
    app_key: str = "app"
    app_value: str = "console"
    kind_markers: Dict[str, str] = field(
        default_factory=lambda: {
            "api-server-ca": "console.openshift.io/managed-cluster-api-server-ca",
            "ingress-cert": "console.openshift.io/managed-cluster-ingress-cert",
        }
    )

    def for_cluster(self, cluster_name: str, kind: str = "") -> Dict[str, str]:
        labels = {self.app_key: self.app_value, self.feature_key: cluster_name}
        if kind:
            labels[self.kind_markers[kind]] = ""
        return labels

    def for_shared(self) -> Dict[str, str]:
        return self.for_cluster("")

    def selector(self) -> str:
        return self.feature_key

    def cluster_of(self, labels: Dict[str, str]) -> str:
        return (labels or {}).get(self.feature_key, "")


LABELS = LabelScheme()


def api_server_ca_config_map_name(cluster_name: str) -> str:
    return f"{cluster_name}-{API_SERVER_CA_SUFFIX}"


def managed_cluster_ingress_cert_config_map_name(cluster_name: str) -> str:
    return f"{cluster_name}-{INGRESS_CERT_SUFFIX}"


def api_server_ca_file_mount_path(cluster_name: str) -> str:
    return f"{API_SERVER_CA_MOUNT_DIR}/{api_server_ca_config_map_name(cluster_name)}/{API_SERVER_CA_KEY}"


def ingress_cert_file_mount_path(cluster_name: str) -> str:
    return (
        f"{INGRESS_CERT_MOUNT_DIR}/"
        f"{managed_cluster_ingress_cert_config_map_name(cluster_name)}/{INGRESS_CERT_KEY}"
    )
