#!/usr/bin/env python3
# src/appliers.py
"""
Builders for the objects this feature publishes.

Every builder is a pure function of its arguments: the same inputs always
produce the same content. Views and actions are matched by name only, so a
builder that drifted between calls would silently leave stale requests in
place.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client

import hub_api
from hub_api import LABELS
from mediation import ExecutorIdentity, RemoteAction, RemoteView, WorkBundle


# -----------------------------
# Ownership
# -----------------------------


def owner_reference_from(operator_config: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Controller owner reference pointing at the operator config."""
    if not operator_config:
        return None
    meta = operator_config.get("metadata") or {}
    if not meta.get("uid"):
        return None
    return {
        "apiVersion": operator_config.get("apiVersion", hub_api.OPERATOR_CONFIG.api_version),
        "kind": operator_config.get("kind", hub_api.OPERATOR_CONFIG.kind),
        "name": meta.get("name", ""),
        "uid": meta["uid"],
        "controller": True,
    }


def _v1_owner_references(owner: Optional[Dict[str, Any]]) -> Optional[List[client.V1OwnerReference]]:
    if owner is None:
        return None
    return [
        client.V1OwnerReference(
            api_version=owner["apiVersion"],
            kind=owner["kind"],
            name=owner["name"],
            uid=owner["uid"],
            controller=owner.get("controller", True),
        )
    ]


# -----------------------------
# Views
# -----------------------------


def _view(cluster_name: str, name: str, scope: Dict[str, str]) -> RemoteView:
    return RemoteView(
        name=name,
        namespace=cluster_name,
        spec={"scope": dict(scope)},
        labels=LABELS.for_cluster(cluster_name),
    )


def oauth_client_view(cluster_name: str) -> RemoteView:
    """Query the console OAuth client inside the managed cluster."""
    return _view(
        cluster_name,
        hub_api.OAUTH_CLIENT_VIEW_NAME,
        {
            "apiVersion": hub_api.OAUTH_CLIENT.api_version,
            "resource": hub_api.OAUTH_CLIENT.kind,
            "name": hub_api.MANAGED_CLUSTER_OAUTH_CLIENT_NAME,
        },
    )


def ingress_cert_view(cluster_name: str) -> RemoteView:
    """Query the managed cluster's default ingress CA bundle."""
    return _view(
        cluster_name,
        hub_api.INGRESS_CERT_VIEW_NAME,
        {
            "kind": "ConfigMap",
            "version": "v1",
            "name": hub_api.REMOTE_INGRESS_CERT_CONFIGMAP,
            "namespace": hub_api.REMOTE_INGRESS_CERT_NAMESPACE,
        },
    )


def api_server_ca_view(cluster_name: str) -> RemoteView:
    """Query the managed cluster's published API server CA bundle."""
    return _view(
        cluster_name,
        hub_api.API_SERVER_CA_VIEW_NAME,
        {
            "kind": "ConfigMap",
            "version": "v1",
            "name": hub_api.REMOTE_API_SERVER_CA_CONFIGMAP,
            "namespace": hub_api.REMOTE_API_SERVER_CA_NAMESPACE,
        },
    )


# -----------------------------
# OAuth client
# -----------------------------


def managed_cluster_oauth_client(secret: str, redirect_uris: List[str]) -> Dict[str, Any]:
    return {
        "apiVersion": hub_api.OAUTH_CLIENT.api_version,
        "kind": hub_api.OAUTH_CLIENT.kind,
        "metadata": {
            "name": hub_api.MANAGED_CLUSTER_OAUTH_CLIENT_NAME,
            "labels": LABELS.for_shared(),
        },
        "grantMethod": "auto",
        "secret": secret,
        "redirectURIs": list(redirect_uris),
    }


def create_oauth_client_action(
    cluster_name: str, secret: str, redirect_uris: List[str]
) -> RemoteAction:
    template = managed_cluster_oauth_client(secret, redirect_uris)
    template["metadata"] = {"name": hub_api.MANAGED_CLUSTER_OAUTH_CLIENT_NAME}
    return RemoteAction(
        name=hub_api.CREATE_OAUTH_CLIENT_ACTION_NAME,
        namespace=cluster_name,
        spec={
            "actionType": "Create",
            "kube": {"resource": hub_api.OAUTH_CLIENT.kind, "template": template},
        },
        labels=LABELS.for_cluster(cluster_name),
    )


def oauth_client_work_bundle(
    cluster_name: str,
    secret: str,
    redirect_uris: List[str],
    owner: Optional[Dict[str, Any]] = None,
) -> WorkBundle:
    return WorkBundle(
        name=hub_api.OAUTH_CLIENT_WORK_NAME,
        namespace=cluster_name,
        manifests=[managed_cluster_oauth_client(secret, redirect_uris)],
        executor=ExecutorIdentity(
            name=hub_api.WORK_EXECUTOR_SERVICE_ACCOUNT,
            namespace=hub_api.WORK_EXECUTOR_NAMESPACE,
        ),
        labels=LABELS.for_cluster(cluster_name),
        owner_references=[owner] if owner else [],
    )


# -----------------------------
# Hub ConfigMaps
# -----------------------------


def _config_map(
    name: str, labels: Dict[str, str], data: Optional[Dict[str, str]], owner: Optional[Dict[str, Any]]
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=hub_api.CONSOLE_NAMESPACE,
            labels=labels,
            owner_references=_v1_owner_references(owner),
        ),
        data=data,
    )


def api_server_ca_config_map(
    cluster_name: str, ca_bundle: Optional[bytes], owner: Optional[Dict[str, Any]] = None
) -> client.V1ConfigMap:
    """ConfigMap holding a managed cluster's API server CA bundle.

    The console mounts it and uses the bundle when proxying to the cluster.
    """
    data = None
    if ca_bundle is not None:
        data = {hub_api.API_SERVER_CA_KEY: ca_bundle.decode("utf-8")}
    return _config_map(
        hub_api.api_server_ca_config_map_name(cluster_name),
        LABELS.for_cluster(cluster_name, "api-server-ca"),
        data,
        owner,
    )


def ingress_cert_config_map(
    cluster_name: str, ca_bundle: str, owner: Optional[Dict[str, Any]] = None
) -> client.V1ConfigMap:
    data = {hub_api.INGRESS_CERT_KEY: ca_bundle} if ca_bundle else None
    return _config_map(
        hub_api.managed_cluster_ingress_cert_config_map_name(cluster_name),
        LABELS.for_cluster(cluster_name, "ingress-cert"),
        data,
        owner,
    )


@dataclass
class ManagedClusterConfig:
    """One entry of the managed cluster list read by the console server."""

    name: str
    url: str
    ca_file: str
    oauth_ca_file: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "name": self.name,
            "apiServer": {"url": self.url, "caFile": self.ca_file},
        }
        if self.oauth_client_secret and self.oauth_ca_file:
            entry["oauth"] = {
                "caFile": self.oauth_ca_file,
                "clientID": self.oauth_client_id,
                "clientSecret": self.oauth_client_secret,
            }
        return entry


def managed_clusters_config_map(
    configs: List[ManagedClusterConfig], owner: Optional[Dict[str, Any]] = None
) -> client.V1ConfigMap:
    document = yaml.safe_dump(
        [c.to_dict() for c in configs], default_flow_style=False, sort_keys=False
    )
    return _config_map(
        hub_api.MANAGED_CLUSTERS_CONFIGMAP_NAME,
        LABELS.for_shared(),
        {hub_api.MANAGED_CLUSTERS_CONFIG_KEY: document},
        owner,
    )
