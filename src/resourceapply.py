#!/usr/bin/env python3
# src/resourceapply.py
"""Create-or-update-if-different for ordinary hub ConfigMaps."""

import logging
from typing import AbstractSet, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from hub_api import LABELS

logger = logging.getLogger("console-hub-sync.resourceapply")


def get_config_map(
    core_v1: client.CoreV1Api, namespace: str, name: str
) -> Optional[client.V1ConfigMap]:
    """Get a ConfigMap or None if not found."""
    try:
        return core_v1.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def _owner_key(ref) -> tuple:
    return (ref.kind, ref.name, ref.uid)


def _ensure_metadata(existing: client.V1ObjectMeta, required: client.V1ObjectMeta) -> bool:
    modified = False
    labels = dict(existing.labels or {})
    for key, value in (required.labels or {}).items():
        if labels.get(key) != value:
            labels[key] = value
            modified = True
    existing.labels = labels

    owners = list(existing.owner_references or [])
    known = {_owner_key(o) for o in owners}
    for ref in required.owner_references or []:
        if _owner_key(ref) not in known:
            owners.append(ref)
            modified = True
    existing.owner_references = owners or None
    return modified


def apply_config_map(
    core_v1: client.CoreV1Api, required: client.V1ConfigMap
) -> Tuple[client.V1ConfigMap, bool]:
    """Create ``required`` or bring the live ConfigMap in line with it.

    Returns ``(current, changed)``. Updates go through the live
    resourceVersion; a 409 from a concurrent writer is raised to the caller.
    """
    namespace = required.metadata.namespace
    name = required.metadata.name
    existing = get_config_map(core_v1, namespace, name)
    if existing is None:
        created = core_v1.create_namespaced_config_map(namespace=namespace, body=required)
        logger.info(f"Created ConfigMap {namespace}/{name}")
        return created, True

    data_same = (existing.data or {}) == (required.data or {})
    metadata = client.V1ObjectMeta(
        name=name,
        namespace=namespace,
        labels=dict(existing.metadata.labels or {}),
        annotations=existing.metadata.annotations,
        owner_references=list(existing.metadata.owner_references or []) or None,
        resource_version=existing.metadata.resource_version,
    )
    meta_modified = _ensure_metadata(metadata, required.metadata)
    if data_same and not meta_modified:
        return existing, False

    updated = client.V1ConfigMap(
        api_version="v1", kind="ConfigMap", metadata=metadata, data=required.data
    )
    current = core_v1.replace_namespaced_config_map(name=name, namespace=namespace, body=updated)
    logger.info(f"Updated ConfigMap {namespace}/{name}")
    return current, True


def delete_labeled_config_maps(
    core_v1: client.CoreV1Api,
    namespace: str,
    label_selector: str,
    keep_clusters: Optional[AbstractSet[str]] = None,
) -> Tuple[int, List[Exception]]:
    """Delete every ConfigMap in ``namespace`` matching ``label_selector``.

    With ``keep_clusters``, only ConfigMaps labeled for some other cluster
    are deleted; shared ones and those of the kept clusters stay.
    """
    try:
        listed = core_v1.list_namespaced_config_map(namespace=namespace, label_selector=label_selector)
    except ApiException as e:
        return 0, [e]

    deleted = 0
    errors: List[Exception] = []
    for config_map in listed.items:
        name = config_map.metadata.name
        if keep_clusters is not None:
            owner = LABELS.cluster_of(config_map.metadata.labels)
            if not owner or owner in keep_clusters:
                continue
        try:
            core_v1.delete_namespaced_config_map(name=name, namespace=namespace)
            deleted += 1
            logger.info(f"Deleted ConfigMap {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                logger.warning(f"Failed to delete ConfigMap {namespace}/{name}: {e}")
                errors.append(e)
    return deleted, errors
