"""
pgwarden - webserver component

Copyright (c) 2015 Ohmu Ltd
Copyright (c) 2014 F-Secure

This file is under the Apache License, Version 2.0.
See the file `LICENSE` for details.
"""
from __future__ import annotations

from http.server import BaseHTTPRequestHandler, HTTPServer, SimpleHTTPRequestHandler
from logging import getLogger, Logger
from pgwarden.config import Config
from pgwarden.control_state import ControlState, REMOTE_PATCH_KEYS
from pgwarden.default import HTTP_PORT
from queue import Queue
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Callable

import json
import threading


class ThreadedWebServer(ThreadingMixIn, HTTPServer):
    allow_reuse_address: bool = True

    def __init__(
        self,
        address: str,
        port: int,
        RequestHandlerClass: type[BaseHTTPRequestHandler],
        control_state: ControlState,
        get_node_state: Callable[[], dict[str, Any]],
        log: Logger,
        monitor_check_queue: Queue[str],
    ) -> None:
        super().__init__((address, port), RequestHandlerClass)
        self.control_state: ControlState = control_state
        self.get_node_state: Callable[[], dict[str, Any]] = get_node_state
        self.log: Logger = log
        self.monitor_check_queue: Queue[str] = monitor_check_queue


class WebServer(Thread):
    def __init__(
        self,
        config: Config,
        control_state: ControlState,
        get_node_state: Callable[[], dict[str, Any]],
        monitor_check_queue: Queue[str],
    ) -> None:
        super().__init__()
        self.config: Config = config
        self.control_state: ControlState = control_state
        self.get_node_state: Callable[[], dict[str, Any]] = get_node_state
        self.monitor_check_queue: Queue[str] = monitor_check_queue
        self.log: Logger = getLogger("WebServer")
        self.address: str = self.config.get("http_address", "")
        self.port: int = self.config.get("http_port", HTTP_PORT)
        self.server: ThreadedWebServer | None = None
        self.log.debug("WebServer initialized with address: %r port: %r", self.address, self.port)
        self.is_initialized: threading.Event = threading.Event()

    def run(self) -> None:
        # We bind the port only when we start running
        self.server = ThreadedWebServer(
            address=self.address,
            port=self.port,
            RequestHandlerClass=RequestHandler,
            control_state=self.control_state,
            get_node_state=self.get_node_state,
            log=self.log,
            monitor_check_queue=self.monitor_check_queue,
        )
        self.is_initialized.set()
        self.server.serve_forever()

    def close(self) -> None:
        if self.server is None:
            return

        self.log.debug("Closing WebServer")
        self.server.shutdown()
        self.log.debug("Closed WebServer")


class RequestHandler(SimpleHTTPRequestHandler):
    def _send_json(self, status: int, body: Any) -> None:
        response = json.dumps(body, indent=4).encode("utf8")
        self.send_response(status)
        self.send_header("Content-type", "application/json")
        self.send_header("Content-length", str(len(response)))
        self.end_headers()
        self.wfile.write(response)

    def do_GET(self) -> None:
        assert isinstance(self.server, ThreadedWebServer), f"server: {self.server!r}"
        self.server.log.debug("Got request: %r", self.path)
        if self.path.startswith("/control.json"):
            self._send_json(200, self.server.control_state.snapshot())
        elif self.path.startswith("/state.json"):
            self._send_json(200, self.server.get_node_state())
        else:
            self.send_response(404)
            self.send_header("Content-length", str(0))
            self.end_headers()

    def do_POST(self) -> None:
        assert isinstance(self.server, ThreadedWebServer), f"server: {self.server!r}"
        self.server.log.debug("Got request: %r", self.path)
        if self.path.startswith("/check"):
            self.server.monitor_check_queue.put("request from webserver")
            self.server.log.info("Immediate status check requested")
            self.send_response(204)
            self.send_header("Content-length", str(0))
            self.end_headers()
        elif self.path.startswith("/control"):
            try:
                length = int(self.headers.get("Content-length", "0"))
                patch = json.loads(self.rfile.read(length) or b"{}")
                if not isinstance(patch, dict) or set(patch) - REMOTE_PATCH_KEYS:
                    raise ValueError(f"invalid control state patch: {patch!r}")
                state = self.server.control_state.store.apply(patch)
            except (KeyError, TypeError, ValueError) as ex:
                self.server.log.warning("Rejected control state change: %s", ex)
                self._send_json(400, {"error": str(ex)})
                return
            self.server.log.info("Control state changed by remote request: %r", patch)
            self.server.monitor_check_queue.put("control state changed")
            self._send_json(200, state)
        else:
            self.send_response(404)
            self.send_header("Content-length", str(0))
            self.end_headers()
