#!/usr/bin/env python3
# src/hubsync.py
"""
Console Hub Sync - projects console configuration onto managed clusters

Runs the managed cluster controller and, optionally, the OAuth client work
bundle controller, each in its own sync loop, and serves Prometheus metrics
and a health endpoint.
"""

import json
import logging
import os
import signal
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import List
from urllib.parse import urlparse

from kubernetes import client, config
from prometheus_client import generate_latest

import hub_api
import metrics
from hub_api import LABELS
from managed_clusters import CA_SOURCE_CLIENT_CONFIG, ManagedClusterController
from mediation import MediationClient
from oauth_client_work import ManagedClusterOAuthClientController
from provisioners import provisioner_for
from sync_loop import ResourceWatcher, SyncLoop

# -----------------------------
# Environment variables
# -----------------------------
RESYNC_INTERVAL = int(os.environ.get("RESYNC_INTERVAL", 60))
ERROR_BACKOFF_MAX = float(os.environ.get("ERROR_BACKOFF_MAX", 30))
OAUTH_CLIENT_STRATEGY = os.environ.get("OAUTH_CLIENT_STRATEGY", "view-action")
ENABLE_OAUTH_CLIENT_WORK_CONTROLLER = os.environ.get(
    "ENABLE_OAUTH_CLIENT_WORK_CONTROLLER", "true"
).lower() in ("true", "1", "yes")
API_SERVER_CA_SOURCE = os.environ.get("API_SERVER_CA_SOURCE", CA_SOURCE_CLIENT_CONFIG)
REQUIRE_TECH_PREVIEW = os.environ.get("REQUIRE_TECH_PREVIEW", "false").lower() in (
    "true",
    "1",
    "yes",
)
ENABLE_WATCHES = os.environ.get("ENABLE_WATCHES", "true").lower() in ("true", "1", "yes")
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("console-hub-sync")

metrics.info_metric.info(
    {
        "version": "1.0.0",
        "console_namespace": hub_api.CONSOLE_NAMESPACE,
        "operator_config": hub_api.OPERATOR_CONFIG_NAME,
        "oauth_client_strategy": OAUTH_CLIENT_STRATEGY,
        "api_server_ca_source": API_SERVER_CA_SOURCE,
    }
)

# -----------------------------
# Global State
# -----------------------------
_loops: List[SyncLoop] = []


def load_kube_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def build_loops(
    custom_objects: client.CustomObjectsApi, core_v1: client.CoreV1Api
) -> List[SyncLoop]:
    """Build one sync loop per enabled controller."""
    provisioner = provisioner_for(OAUTH_CLIENT_STRATEGY, MediationClient(custom_objects))
    controllers = [
        ManagedClusterController(
            custom_objects,
            core_v1,
            provisioner=provisioner,
            api_server_ca_source=API_SERVER_CA_SOURCE,
            require_tech_preview=REQUIRE_TECH_PREVIEW,
        )
    ]
    if ENABLE_OAUTH_CLIENT_WORK_CONTROLLER:
        controllers.append(ManagedClusterOAuthClientController(custom_objects))

    return [
        SyncLoop(c.name, c.sync, resync_interval=RESYNC_INTERVAL, backoff_max=ERROR_BACKOFF_MAX)
        for c in controllers
    ]


def build_watchers(
    custom_objects: client.CustomObjectsApi, loops: List[SyncLoop]
) -> List[ResourceWatcher]:
    """Watches that trigger every loop on relevant hub events."""
    by_name = f"metadata.name={hub_api.OPERATOR_CONFIG_NAME}"
    return [
        ResourceWatcher(custom_objects, hub_api.MANAGED_CLUSTER, loops),
        ResourceWatcher(custom_objects, hub_api.OPERATOR_CONFIG, loops, field_selector=by_name),
        ResourceWatcher(
            custom_objects,
            hub_api.OAUTH_CLIENT,
            loops,
            field_selector=f"metadata.name={hub_api.LOCAL_OAUTH_CLIENT_NAME}",
        ),
        ResourceWatcher(custom_objects, hub_api.REMOTE_VIEW, loops, label_selector=LABELS.selector()),
        ResourceWatcher(custom_objects, hub_api.REMOTE_ACTION, loops, label_selector=LABELS.selector()),
        ResourceWatcher(custom_objects, hub_api.WORK_BUNDLE, loops, label_selector=LABELS.selector()),
    ]


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------


class HubSyncHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics and the last cycle result of every loop."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self.send_response(500)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"Error generating metrics")

        elif path == "/healthz":
            response = {
                "status": "ok",
                "controllers": {loop.name: loop.health() for loop in _loops},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            self.wfile.write(json.dumps(response).encode())

        else:
            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            self.wfile.write(b"Not Found")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), HubSyncHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (metrics: /metrics, health: /healthz)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main Loop
# -----------------------------


def main():
    logger.info(
        f"Starting Console Hub Sync (strategy: {OAUTH_CLIENT_STRATEGY}, "
        f"console namespace: {hub_api.CONSOLE_NAMESPACE})"
    )
    load_kube_config()
    custom_objects = client.CustomObjectsApi()
    core_v1 = client.CoreV1Api()

    _loops.extend(build_loops(custom_objects, core_v1))
    watchers: List[ResourceWatcher] = []
    if ENABLE_WATCHES:
        watchers = build_watchers(custom_objects, _loops)

    start_metrics_server()
    for loop in _loops:
        loop.start()
    for watcher in watchers:
        watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        for watcher in watchers:
            watcher.stop()
        for loop in _loops:
            loop.stop()
        logger.info("Console Hub Sync shutdown complete")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    raise KeyboardInterrupt


def run():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    main()


if __name__ == "__main__":
    run()
