"""
Health check module for Quorum-DNS.

This module provides health check endpoints for monitoring the application.
"""

import asyncio
import json
import logging
from functools import partial
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Thread
from typing import Dict, List, Optional

from quorum_dns.models.record import CONDITION_TYPE_READY, STATUS_TRUE, DNSRecord
from quorum_dns.store.record_store import RecordStore


def render_metrics(records: List[DNSRecord]) -> str:
    """
    Render per-record metrics in the Prometheus text format.

    Args:
        records: Records to report on

    Returns:
        str: Metrics text
    """
    metrics = [
        "# HELP quorum_dns_up Whether the Quorum-DNS service is up",
        "# TYPE quorum_dns_up gauge",
        "quorum_dns_up 1",
        "# HELP quorum_dns_record_ready Whether a record reports Ready",
        "# TYPE quorum_dns_record_ready gauge",
    ]
    counters = []
    for record in records:
        ready = record.status.get_condition(CONDITION_TYPE_READY)
        value = 1 if ready is not None and ready.status == STATUS_TRUE else 0
        labels = f'namespace="{record.namespace}",name="{record.name}",root_host="{record.spec.root_host}"'
        metrics.append(f"quorum_dns_record_ready{{{labels}}} {value}")
        counters.append(f"quorum_dns_record_write_counter{{{labels}}} {record.status.write_counter}")

    metrics.extend(
        [
            "# HELP quorum_dns_record_write_counter Consecutive cycles a record had to be rewritten",
            "# TYPE quorum_dns_record_write_counter gauge",
        ]
    )
    metrics.extend(counters)
    return "\n".join(metrics) + "\n"


class HealthCheckHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for health check endpoints.
    """

    def __init__(self, *args, store: Optional[RecordStore] = None, loop: Optional[asyncio.AbstractEventLoop] = None, **kwargs):
        self.logger = logging.getLogger("quorum-dns.health")
        self.store = store
        self.loop = loop
        super().__init__(*args, **kwargs)

    def do_GET(self):
        """
        Handle GET requests.
        """
        if self.path == "/health":
            self._handle_health_check()
        elif self.path == "/metrics":
            self._handle_metrics()
        else:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"Not Found")

    def _list_records(self) -> List[DNSRecord]:
        # The store belongs to the event loop thread
        future = asyncio.run_coroutine_threadsafe(self.store.list(), self.loop)
        return future.result(timeout=5)

    def _send_json(self, code: int, body: Dict) -> None:
        self.send_response(code)
        self.send_header("Content-type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body).encode())

    def _handle_health_check(self):
        """
        Handle health check requests.
        """
        if self.store is None or self.loop is None:
            self._send_json(200, {"status": "healthy"})
            return

        if not self.loop.is_running():
            self._send_json(503, {"status": "unhealthy", "controller": "event loop not running"})
            return

        try:
            records = self._list_records()
        except Exception as e:
            self.logger.error(f"Health check failed listing records: {e}")
            self._send_json(503, {"status": "unhealthy", "store": f"error: {str(e)}"})
            return

        self._send_json(200, {"status": "healthy", "records": len(records)})

    def _handle_metrics(self):
        """
        Handle metrics requests.
        """
        records = []
        if self.store is not None and self.loop is not None and self.loop.is_running():
            try:
                records = self._list_records()
            except Exception as e:
                self.logger.error(f"Failed to collect record metrics: {e}")

        self.send_response(200)
        self.send_header("Content-type", "text/plain")
        self.end_headers()
        self.wfile.write(render_metrics(records).encode())

    def log_message(self, format, *args):
        """
        Override log_message to use the application logger.
        """
        self.logger.debug(format % args)


class HealthCheckServer:
    """
    HTTP server for health check endpoints.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
        store: Optional[RecordStore] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize a HealthCheckServer.

        Args:
            host: Host to bind to
            port: Port to bind to
            store: Store the metrics are read from
            loop: Event loop the store is used from
        """
        self.host = host
        self.port = port
        self.store = store
        self.loop = loop
        self.server = None
        self.thread = None
        self.logger = logging.getLogger("quorum-dns.health")

    def start(self):
        """
        Start the health check server.
        """
        handler = partial(HealthCheckHandler, store=self.store, loop=self.loop)
        self.server = HTTPServer((self.host, self.port), handler)
        self.thread = Thread(target=self.server.serve_forever)
        self.thread.daemon = True
        self.thread.start()
        self.logger.info(f"Health check: {self.host}:{self.port}/health")

    def stop(self):
        """
        Stop the health check server.
        """
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.logger.info("Health check server stopped")
