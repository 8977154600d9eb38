#!/usr/bin/env python3
# src/mediation.py
"""
Remote-object mediation over hub-local custom resources.

The hub cannot reach managed clusters directly. Instead it writes request
objects into the managed cluster's namespace on the hub and an agent running
in that cluster answers them:

- RemoteView: read-only observation, answered with ``status.result``
- RemoteAction: a mutation, answered with a readiness condition only
- WorkBundle: manifests continuously applied inside the managed cluster

A request is either ``Requested`` (no usable answer yet) or ``Ready``
(``status.conditions[0].status == "True"``). Nothing here waits for an
answer: callers read the current object and skip the cluster for this cycle
when it is not ready.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, List, NamedTuple, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

import hub_api
import metrics
from hub_api import LABELS, ResourceDescriptor

logger = logging.getLogger("console-hub-sync.mediation")

PHASE_REQUESTED = "Requested"
PHASE_READY = "Ready"


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "Condition":
        # Any shape other than a mapping with a string status is "not ready"
        if not isinstance(raw, dict) or not isinstance(raw.get("status"), str):
            return cls(type="", status="Unknown")
        return cls(
            type=str(raw.get("type", "")),
            status=raw["status"],
            reason=str(raw.get("reason", "") or ""),
            message=str(raw.get("message", "") or ""),
        )


def parse_conditions(status: Any) -> List[Condition]:
    if not isinstance(status, dict):
        return []
    conditions = status.get("conditions")
    if not isinstance(conditions, list):
        return []
    return [Condition.from_dict(c) for c in conditions]


def conditions_ready(conditions: List[Condition]) -> bool:
    """Readiness predicate shared by every mediating resource."""
    return len(conditions) > 0 and conditions[0].status == "True"


def _flatten_result(raw: Any) -> Dict[str, str]:
    """Reduce a view result to a flat string map.

    Top-level string fields are kept as-is; a ConfigMap-shaped result
    contributes the string entries of its ``data``.
    """
    if not isinstance(raw, dict):
        return {}
    result = {k: v for k, v in raw.items() if isinstance(v, str)}
    data = raw.get("data")
    if isinstance(data, dict):
        result.update({k: v for k, v in data.items() if isinstance(v, str)})
    return result


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, dict) else {}


@dataclass
class _MediatedRequest:
    name: str
    namespace: str
    spec: Dict[str, Any]
    labels: Dict[str, str] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    resource_version: Optional[str] = None

    descriptor = hub_api.REMOTE_VIEW

    @property
    def ready(self) -> bool:
        return conditions_ready(self.conditions)

    @property
    def answered(self) -> bool:
        """True once the remote agent has written any condition."""
        return len(self.conditions) > 0

    @property
    def phase(self) -> str:
        return PHASE_READY if self.ready else PHASE_REQUESTED

    def to_body(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.descriptor.api_version,
            "kind": self.descriptor.kind,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
            },
            "spec": copy.deepcopy(self.spec),
        }

    @classmethod
    def _common_fields(cls, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = _metadata(obj)
        return {
            "name": meta.get("name", ""),
            "namespace": meta.get("namespace", ""),
            "spec": obj.get("spec") or {},
            "labels": meta.get("labels") or {},
            "conditions": parse_conditions(obj.get("status")),
            "resource_version": meta.get("resourceVersion"),
        }


@dataclass
class RemoteView(_MediatedRequest):
    result: Dict[str, str] = field(default_factory=dict)

    descriptor = hub_api.REMOTE_VIEW

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "RemoteView":
        status = obj.get("status") if isinstance(obj.get("status"), dict) else {}
        return cls(result=_flatten_result(status.get("result")), **cls._common_fields(obj))


@dataclass
class RemoteAction(_MediatedRequest):
    descriptor = hub_api.REMOTE_ACTION

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "RemoteAction":
        return cls(**cls._common_fields(obj))


@dataclass
class ExecutorIdentity:
    name: str
    namespace: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": {
                "type": "ServiceAccount",
                "serviceAccount": {"name": self.name, "namespace": self.namespace},
            }
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["ExecutorIdentity"]:
        try:
            account = raw["subject"]["serviceAccount"]
            return cls(name=account["name"], namespace=account["namespace"])
        except (KeyError, TypeError):
            return None


@dataclass
class WorkBundle:
    name: str
    namespace: str
    manifests: List[Dict[str, Any]]
    executor: Optional[ExecutorIdentity] = None
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[Dict[str, Any]] = field(default_factory=list)
    resource_version: Optional[str] = None

    descriptor = hub_api.WORK_BUNDLE

    @property
    def spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"workload": {"manifests": copy.deepcopy(self.manifests)}}
        if self.executor is not None:
            spec["executor"] = self.executor.to_dict()
        return spec

    def to_body(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
        }
        if self.owner_references:
            metadata["ownerReferences"] = copy.deepcopy(self.owner_references)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": self.descriptor.api_version,
            "kind": self.descriptor.kind,
            "metadata": metadata,
            "spec": self.spec,
        }

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "WorkBundle":
        meta = _metadata(obj)
        spec = obj.get("spec") or {}
        workload = spec.get("workload") or {}
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            manifests=list(workload.get("manifests") or []),
            executor=ExecutorIdentity.from_dict(spec.get("executor")),
            labels=meta.get("labels") or {},
            owner_references=list(meta.get("ownerReferences") or []),
            resource_version=meta.get("resourceVersion"),
        )


class ViewResult(NamedTuple):
    ready: bool
    result: Dict[str, str]


def read_result(view: RemoteView) -> ViewResult:
    """Return the view's result if, and only if, it is usable.

    A ready condition without any result data is reported as not ready: the
    agent's write and the hub's copy can briefly disagree.
    """
    if not view.ready:
        return ViewResult(False, {})
    if not view.result:
        logger.info(
            f"View {view.namespace}/{view.name} is ready but has no result yet, deferring"
        )
        return ViewResult(False, {})
    return ViewResult(True, dict(view.result))


def read_readiness(request: _MediatedRequest) -> bool:
    return request.ready


def _normalize(value: Any) -> Any:
    """Drop unset fields so that absent, None and empty compare equal."""
    if isinstance(value, dict):
        normalized = {k: _normalize(v) for k, v in value.items()}
        return {k: v for k, v in normalized.items() if v not in (None, {}, [], "")}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def semantic_equal(left: Any, right: Any) -> bool:
    return _normalize(left) == _normalize(right)


def _ensure_object_meta(existing: Dict[str, Any], required: WorkBundle) -> bool:
    """Merge required labels and owner references into existing metadata."""
    meta = existing.setdefault("metadata", {})
    modified = False

    labels = meta.get("labels") or {}
    for key, value in required.labels.items():
        if labels.get(key) != value:
            labels[key] = value
            modified = True
    meta["labels"] = labels

    owners = meta.get("ownerReferences") or []
    known = {(o.get("kind"), o.get("name"), o.get("uid")) for o in owners}
    for ref in required.owner_references:
        if (ref.get("kind"), ref.get("name"), ref.get("uid")) not in known:
            owners.append(copy.deepcopy(ref))
            modified = True
    if owners:
        meta["ownerReferences"] = owners
    return modified


class MediationClient:
    """Idempotent create-or-fetch of mediating resources on the hub."""

    def __init__(self, custom_objects_api: client.CustomObjectsApi):
        self.api = custom_objects_api

    # -----------------------------
    # Views and actions
    # -----------------------------

    def ensure_view(self, cluster_name: str, request: RemoteView) -> RemoteView:
        """Return the view for ``request``, creating it if it does not exist.

        The spec of an existing view is never touched; the query is fixed
        once issued.
        """
        obj = self._ensure(hub_api.REMOTE_VIEW, cluster_name, request)
        return RemoteView.from_object(obj)

    def ensure_action(self, cluster_name: str, request: RemoteAction) -> RemoteAction:
        obj = self._ensure(hub_api.REMOTE_ACTION, cluster_name, request)
        return RemoteAction.from_object(obj)

    def get_view(self, cluster_name: str, name: str) -> Optional[RemoteView]:
        obj = self._get(hub_api.REMOTE_VIEW, cluster_name, name)
        return RemoteView.from_object(obj) if obj is not None else None

    def _get(
        self, descriptor: ResourceDescriptor, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        try:
            return self.api.get_namespaced_custom_object(
                group=descriptor.group,
                version=descriptor.version,
                namespace=namespace,
                plural=descriptor.plural,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def _ensure(
        self, descriptor: ResourceDescriptor, cluster_name: str, request: _MediatedRequest
    ) -> Dict[str, Any]:
        existing = self._get(descriptor, cluster_name, request.name)
        if existing is not None:
            return existing

        body = request.to_body()
        body["metadata"]["namespace"] = cluster_name
        try:
            created = self.api.create_namespaced_custom_object(
                group=descriptor.group,
                version=descriptor.version,
                namespace=cluster_name,
                plural=descriptor.plural,
                body=body,
            )
            logger.info(f"Created {descriptor.kind} {cluster_name}/{request.name}")
            _count_request(descriptor.kind)
            return created
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug(f"{descriptor.kind} {cluster_name}/{request.name} already exists, fetching it")
            existing = self._get(descriptor, cluster_name, request.name)
            if existing is None:
                raise
            return existing

    # -----------------------------
    # Work bundles
    # -----------------------------

    def apply_work_bundle(self, required: WorkBundle) -> Tuple[WorkBundle, bool]:
        """Create the bundle, or update it in place when its spec drifted.

        Returns the live bundle and whether a write happened. Updates carry
        the live resourceVersion, so a concurrent writer surfaces as a 409.
        """
        descriptor = hub_api.WORK_BUNDLE
        existing = self._get(descriptor, required.namespace, required.name)
        if existing is None:
            created = self.api.create_namespaced_custom_object(
                group=descriptor.group,
                version=descriptor.version,
                namespace=required.namespace,
                plural=descriptor.plural,
                body=required.to_body(),
            )
            logger.info(f"Created {descriptor.kind} {required.namespace}/{required.name}")
            _count_request(descriptor.kind)
            return WorkBundle.from_object(created), True

        updated = copy.deepcopy(existing)
        spec_same = semantic_equal(existing.get("spec") or {}, required.spec)
        meta_modified = _ensure_object_meta(updated, required)
        if spec_same and not meta_modified:
            return WorkBundle.from_object(existing), False

        updated["spec"] = required.spec
        applied = self.api.replace_namespaced_custom_object(
            group=descriptor.group,
            version=descriptor.version,
            namespace=required.namespace,
            plural=descriptor.plural,
            name=required.name,
            body=updated,
        )
        logger.info(
            f"Updated {descriptor.kind} {required.namespace}/{required.name} "
            f"(spec changed: {not spec_same}, metadata changed: {meta_modified})"
        )
        return WorkBundle.from_object(applied), True

    # -----------------------------
    # Teardown
    # -----------------------------

    def delete_labeled(
        self,
        descriptor: ResourceDescriptor,
        label_selector: str,
        keep_clusters: Optional[AbstractSet[str]] = None,
    ) -> Tuple[int, List[Exception]]:
        """Delete every object of ``descriptor`` matching ``label_selector``.

        Not-found, for the list or for an individual delete, counts as done.
        With ``keep_clusters``, objects labeled for one of those clusters (or
        for no cluster) are left alone.
        """
        try:
            listed = self.api.list_cluster_custom_object(
                group=descriptor.group,
                version=descriptor.version,
                plural=descriptor.plural,
                label_selector=label_selector,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{descriptor.kind} API not served, nothing to remove")
                return 0, []
            return 0, [e]

        deleted = 0
        errors: List[Exception] = []
        for item in listed.get("items", []):
            meta = _metadata(item)
            name = meta.get("name", "")
            namespace = meta.get("namespace", "")
            if keep_clusters is not None:
                owner = LABELS.cluster_of(meta.get("labels") or {})
                if not owner or owner in keep_clusters:
                    continue
            try:
                self.api.delete_namespaced_custom_object(
                    group=descriptor.group,
                    version=descriptor.version,
                    namespace=namespace,
                    plural=descriptor.plural,
                    name=name,
                )
                deleted += 1
                logger.info(f"Deleted {descriptor.kind} {namespace}/{name}")
            except ApiException as e:
                if e.status != 404:
                    logger.warning(f"Failed to delete {descriptor.kind} {namespace}/{name}: {e}")
                    errors.append(e)
        return deleted, errors


def _count_request(kind: str):
    metrics.remote_requests_total.labels(kind=kind).inc()
