#!/usr/bin/env python3
# src/provisioners.py
"""
Two ways of getting the console OAuth client into a managed cluster.

ViewActionProvisioner is fire-and-forget: it looks for the remote client
through a view and, if the agent reports it missing, asks for it to be
created once through an action. It never updates a client that exists.

WorkBundleProvisioner is self-healing: it re-asserts a work bundle holding
the client manifest on every cycle, so drift on either side is corrected.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import appliers
import hub_api
import metrics
from hub_api import LABELS
from mediation import MediationClient, read_readiness

logger = logging.getLogger("console-hub-sync.provisioners")

# Outcomes of a single provision call
DEFERRED = "deferred"
PRESENT = "present"
REQUESTED = "requested"
CREATED = "created"
APPLIED = "applied"
UNCHANGED = "unchanged"


@dataclass
class LocalOAuthClient:
    """The hub's own OAuth client, source of the replicated secret."""

    name: str
    secret: str
    redirect_uris: List[str] = field(default_factory=list)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "LocalOAuthClient":
        return cls(
            name=(obj.get("metadata") or {}).get("name", ""),
            secret=obj.get("secret") or "",
            redirect_uris=list(obj.get("redirectURIs") or []),
        )


class RemoteProvisioner:
    """Capability: make a managed cluster hold the console OAuth client."""

    name = "none"

    def provision(
        self,
        cluster_name: str,
        local_client: LocalOAuthClient,
        owner: Optional[Dict[str, Any]] = None,
    ) -> str:
        raise NotImplementedError

    def remove(self) -> Tuple[int, List[Exception]]:
        raise NotImplementedError


class ViewActionProvisioner(RemoteProvisioner):
    name = "view-action"

    def __init__(self, mediation: MediationClient):
        self.mediation = mediation

    def provision(self, cluster_name, local_client, owner=None) -> str:
        view = self.mediation.ensure_view(cluster_name, appliers.oauth_client_view(cluster_name))
        if not view.answered:
            logger.debug(f"OAuth client view for {cluster_name} not answered yet, deferring")
            metrics.deferred_clusters_total.labels(step="oauth-client-view").inc()
            return DEFERRED

        if read_readiness(view):
            # Created once; a rotated hub secret is not pushed through this path
            logger.debug(f"OAuth client already present on {cluster_name}")
            return PRESENT

        action = self.mediation.ensure_action(
            cluster_name,
            appliers.create_oauth_client_action(
                cluster_name, local_client.secret, local_client.redirect_uris
            ),
        )
        if read_readiness(action):
            logger.info(f"OAuth client creation completed on {cluster_name}")
            return CREATED
        logger.info(f"OAuth client creation requested on {cluster_name}")
        return REQUESTED

    def remove(self) -> Tuple[int, List[Exception]]:
        return self.mediation.delete_labeled(hub_api.REMOTE_ACTION, LABELS.selector())


class WorkBundleProvisioner(RemoteProvisioner):
    name = "work-bundle"

    def __init__(self, mediation: MediationClient):
        self.mediation = mediation

    def provision(self, cluster_name, local_client, owner=None) -> str:
        required = appliers.oauth_client_work_bundle(
            cluster_name, local_client.secret, local_client.redirect_uris, owner
        )
        _, changed = self.mediation.apply_work_bundle(required)
        return APPLIED if changed else UNCHANGED

    def remove(self) -> Tuple[int, List[Exception]]:
        return self.mediation.delete_labeled(hub_api.WORK_BUNDLE, LABELS.selector())


def provisioner_for(strategy: str, mediation: MediationClient) -> Optional[RemoteProvisioner]:
    """Select a provisioner by name; "none" disables OAuth client provisioning."""
    if strategy == ViewActionProvisioner.name:
        return ViewActionProvisioner(mediation)
    if strategy == WorkBundleProvisioner.name:
        return WorkBundleProvisioner(mediation)
    if strategy == RemoteProvisioner.name:
        return None
    raise ValueError(f"Unknown OAuth client strategy: {strategy}")
