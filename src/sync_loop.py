#!/usr/bin/env python3
# src/sync_loop.py
"""
Scheduling for the sync controllers.

Each controller gets one SyncLoop: a single worker thread that runs one cycle
at a time. Triggers (watch events, the resync timer) set an event; any number
of triggers arriving while a cycle is in flight collapse into one re-run.
Failed cycles are retried sooner, with exponential backoff.
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

import metrics
from hub_api import ResourceDescriptor
from status import is_sync_error

logger = logging.getLogger("console-hub-sync.sync-loop")


def calculate_exponential_backoff(attempt: int, base_delay: float = 0.5, max_delay: float = 30.0) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Backoff delay with jitter
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    # Add jitter to prevent thundering herd
    jitter = random.uniform(0.1, 0.3) * delay
    return delay + jitter


class SyncLoop:
    """Runs ``sync_fn`` on trigger or timer, never concurrently with itself."""

    def __init__(
        self,
        name: str,
        sync_fn: Callable[[], Optional[Exception]],
        resync_interval: float = 60,
        backoff_max: float = 30.0,
    ):
        self.name = name
        self.sync_fn = sync_fn
        self.resync_interval = resync_interval
        self.backoff_max = backoff_max

        self._trigger = threading.Event()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._failures = 0

        self.cycles = 0
        self.last_result: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None

    @property
    def pending(self) -> bool:
        return self._trigger.is_set()

    def trigger(self, reason: str = ""):
        if reason:
            logger.debug(f"[{self.name}] sync triggered: {reason}")
        self._trigger.set()

    def run_once(self) -> Optional[Exception]:
        """Run a single cycle and record its outcome."""
        # Cleared before the cycle so triggers during it cause exactly one re-run
        self._trigger.clear()
        try:
            err = self.sync_fn()
        except Exception as e:
            logger.exception(f"[{self.name}] unexpected error during sync: {e}")
            err = e

        self.cycles += 1
        self.last_sync_time = datetime.now(timezone.utc)
        if err is None:
            result = "success"
        elif is_sync_error(err):
            result = "progressing"
        else:
            result = "error"
        self.last_result = result
        self.last_error = str(err) if err is not None else None
        metrics.sync_cycles_total.labels(controller=self.name, result=result).inc()

        if err is not None:
            logger.warning(f"[{self.name}] sync cycle finished with {result}: {err}")
        else:
            logger.debug(f"[{self.name}] sync cycle succeeded")
        return err

    def next_delay(self, err: Optional[Exception]) -> float:
        if err is None:
            self._failures = 0
            return self.resync_interval
        delay = calculate_exponential_backoff(self._failures, max_delay=self.backoff_max)
        self._failures += 1
        return min(delay, self.resync_interval)

    def _run(self):
        logger.info(f"[{self.name}] sync loop started (resync: {self.resync_interval}s)")
        while not self._shutdown_event.is_set():
            err = self.run_once()
            delay = self.next_delay(err)
            # Returns early on trigger or shutdown
            self._trigger.wait(delay)
        logger.info(f"[{self.name}] sync loop stopped")

    def start(self):
        self._thread = threading.Thread(target=self._run, name=f"sync-{self.name}", daemon=True)
        self._thread.start()

    def stop(self):
        self._shutdown_event.set()
        self._trigger.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

    def health(self) -> Dict[str, Any]:
        return {
            "cycles": self.cycles,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
        }


class ResourceWatcher:
    """Watches one custom resource kind and triggers loops on every event.

    The stream is resumed from the last resourceVersion seen, so a server
    side timeout does not replay every existing object as ADDED. Only an
    expired version (410) starts over from a fresh list.
    """

    def __init__(
        self,
        api: client.CustomObjectsApi,
        descriptor: ResourceDescriptor,
        loops: List[SyncLoop],
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ):
        self.api = api
        self.descriptor = descriptor
        self.loops = loops
        self.label_selector = label_selector
        self.field_selector = field_selector
        self.resource_version: Optional[str] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def _stream_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "group": self.descriptor.group,
            "version": self.descriptor.version,
            "plural": self.descriptor.plural,
            "timeout_seconds": 30,
        }
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        if self.field_selector:
            kwargs["field_selector"] = self.field_selector
        if self.resource_version:
            kwargs["resource_version"] = self.resource_version
        return kwargs

    def handle_event(self, event: Dict[str, Any]):
        obj = event.get("object") or {}
        meta = obj.get("metadata", {}) if isinstance(obj, dict) else {}
        if meta.get("resourceVersion"):
            self.resource_version = meta["resourceVersion"]
        if event.get("type") == "BOOKMARK":
            return
        reason = f"{event.get('type')} {self.descriptor.kind} {meta.get('namespace', '')}/{meta.get('name', '')}"
        for loop in self.loops:
            loop.trigger(reason)

    def _watch(self):
        kind = self.descriptor.kind
        logger.info(f"Starting {kind} watch")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(self.api.list_cluster_custom_object, **self._stream_kwargs()):
                    if self._shutdown_event.is_set():
                        break
                    self.handle_event(event)
                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info(f"{kind} watch resource version expired, restarting from a fresh list")
                    self.resource_version = None
                    continue
                elif e.status == 404:
                    logger.info(f"{kind} API not served, retrying watch later")
                    self._shutdown_event.wait(60)
                else:
                    logger.error(f"{kind} watch error: {e}")
                    time.sleep(5)

            except Exception as e:
                logger.error(f"Unexpected {kind} watch error: {e}")
                time.sleep(5)

        logger.info(f"{kind} watch stopped")

    def start(self):
        self._thread = threading.Thread(
            target=self._watch, name=f"watch-{self.descriptor.plural}", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._shutdown_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
