#!/usr/bin/env python3
# src/status.py
"""
Status conditions for the operator config and the error types that drive them.

Every sync step reports a ``(reason, error)`` pair. The handler turns each
pair into a ``<prefix><reason>Degraded`` and a ``<prefix><reason>Progressing``
condition, so a failure in one step never hides the result of another. All
conditions collected during a cycle are written in a single status update.

Example:

    handler.add("ManagedClusterSync", "APIServerCAConfigMaps", err)

sets ``ManagedClusterSyncAPIServerCAConfigMapsDegraded=True`` with the error
text as message when ``err`` is set, and clears it when ``err`` is None.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

import hub_api

logger = logging.getLogger("console-hub-sync.status")

DEGRADED = "Degraded"
PROGRESSING = "Progressing"

STATUS_UPDATE_ATTEMPTS = 3


class SyncProgressingError(Exception):
    """The operand is incomplete and needs another pass, not a failure."""


class AggregateError(Exception):
    """Several independent failures reported as one error."""

    def __init__(self, errors: Iterable[Exception]):
        self.errors = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))


class ClusterSyncError(Exception):
    """A failure scoped to one managed cluster."""

    def __init__(self, cluster_name: str, message: str):
        self.cluster_name = cluster_name
        super().__init__(message)


def is_sync_error(err: Optional[Exception]) -> bool:
    return isinstance(err, SyncProgressingError)


def cluster_error(cluster_name: str, action: str, err: Exception) -> Exception:
    """Wrap ``err`` with the cluster it belongs to.

    Optimistic-concurrency conflicts become SyncProgressingError: the next
    cycle retries against the fresh object.
    """
    message = f"Error {action} for managed cluster {cluster_name}: {err}"
    if isinstance(err, ApiException) and err.status == 409:
        return SyncProgressingError(message)
    return ClusterSyncError(cluster_name, message)


def aggregate(errors: List[Exception]) -> Optional[Exception]:
    """Collapse a list of errors into one, or None when there are none.

    If every member is a SyncProgressingError the result is one too, so the
    condition lands on Progressing rather than Degraded.
    """
    if not errors:
        return None
    combined = AggregateError(errors)
    if all(is_sync_error(e) for e in errors):
        return SyncProgressingError(str(combined))
    return combined


@dataclass
class ConditionUpdate:
    type: str
    status: str
    reason: str = ""
    message: str = ""


def _handle_condition(condition_type: str, reason: str, err: Optional[Exception]) -> ConditionUpdate:
    if err is not None:
        logger.error(f"{condition_type} {reason}: {err}")
        return ConditionUpdate(
            type=condition_type,
            status="True",
            reason=f"{reason}Failed",
            message=str(err),
        )
    return ConditionUpdate(type=condition_type, status="False")


def handle_degraded(prefix: str, reason: str, err: Optional[Exception]) -> ConditionUpdate:
    return _handle_condition(f"{prefix}{reason}{DEGRADED}", reason, err)


def handle_progressing(prefix: str, reason: str, err: Optional[Exception]) -> ConditionUpdate:
    return _handle_condition(f"{prefix}{reason}{PROGRESSING}", reason, err)


def handle_progressing_or_degraded(
    prefix: str, reason: str, err: Optional[Exception]
) -> List[ConditionUpdate]:
    if is_sync_error(err):
        return [handle_degraded(prefix, reason, None), handle_progressing(prefix, reason, err)]
    return [handle_degraded(prefix, reason, err), handle_progressing(prefix, reason, None)]


def merge_conditions(
    existing: List[Dict[str, Any]], updates: Iterable[ConditionUpdate], now: str
) -> List[Dict[str, Any]]:
    """Apply updates by type; lastTransitionTime moves only when status flips."""
    merged = [copy.deepcopy(c) for c in existing if isinstance(c, dict)]
    index = {c.get("type"): c for c in merged}
    for update in updates:
        current = index.get(update.type)
        if current is None:
            current = {"type": update.type, "lastTransitionTime": now}
            merged.append(current)
            index[update.type] = current
        elif current.get("status") != update.status:
            current["lastTransitionTime"] = now
        current["status"] = update.status
        current["reason"] = update.reason
        current["message"] = update.message
    return merged


class StatusHandler:
    """Collects condition updates for one cycle and flushes them together."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        config_name: str = hub_api.OPERATOR_CONFIG_NAME,
    ):
        self.api = custom_objects_api
        self.config_name = config_name
        # keyed by condition type so the latest update in a cycle wins
        self._updates: Dict[str, ConditionUpdate] = {}
        self._first_error: Optional[Exception] = None

    @property
    def updates(self) -> Dict[str, ConditionUpdate]:
        return dict(self._updates)

    def add_conditions(self, updates: Iterable[ConditionUpdate]):
        for update in updates:
            self._updates[update.type] = update

    def add(self, prefix: str, reason: str, err: Optional[Exception]):
        self.add_conditions(handle_progressing_or_degraded(prefix, reason, err))
        if err is not None and self._first_error is None:
            self._first_error = err

    def flush_and_return(self, return_err: Optional[Exception] = None) -> Optional[Exception]:
        """Write all collected conditions and return the cycle's error.

        The explicit ``return_err`` wins; otherwise the first error added
        during the cycle is returned. A failed status write is returned in
        place of both, as SyncProgressingError when it kept conflicting.
        """
        if self._updates:
            try:
                self._write(list(self._updates.values()))
            except ApiException as e:
                logger.warning(f"Failed to update operator status: {e}")
                if e.status == 409:
                    return SyncProgressingError(f"operator status kept changing: {e.reason}")
                return e
        return return_err if return_err is not None else self._first_error

    def _write(self, updates: List[ConditionUpdate]):
        for attempt in range(1, STATUS_UPDATE_ATTEMPTS + 1):
            try:
                self._write_once(updates)
                return
            except ApiException as e:
                if e.status != 409 or attempt == STATUS_UPDATE_ATTEMPTS:
                    raise
                logger.debug(f"Operator status changed since read, merging again (attempt {attempt})")

    def _write_once(self, updates: List[ConditionUpdate]):
        descriptor = hub_api.OPERATOR_CONFIG
        current = self.api.get_cluster_custom_object(
            group=descriptor.group,
            version=descriptor.version,
            plural=descriptor.plural,
            name=self.config_name,
        )
        existing = (current.get("status") or {}).get("conditions") or []
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        merged = merge_conditions(existing, updates, now)
        if merged == existing:
            logger.debug("Operator status conditions unchanged")
            return

        # The conditions list is shared with the other controller; a stale
        # resourceVersion makes the server reject the write with 409
        resource_version = (current.get("metadata") or {}).get("resourceVersion")
        body: Dict[str, Any] = {"status": {"conditions": merged}}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        self.api.patch_cluster_custom_object_status(
            group=descriptor.group,
            version=descriptor.version,
            plural=descriptor.plural,
            name=self.config_name,
            body=body,
        )
        logger.debug(f"Updated {len(updates)} operator status conditions")
