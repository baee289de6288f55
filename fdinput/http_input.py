"""HTTP input: newline-delimited events from request bodies, with optional Elasticsearch emulation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

_READ_SIZE = 16 * 1024
_EMULATE_MODES = ("no", "elasticsearch")

ELASTICSEARCH_INFO = b"""{
  "name" : "file-d",
  "cluster_name" : "file-d",
  "cluster_uuid" : "00000000-placeholder",
  "version" : {
    "number" : "6.7.1",
    "build_flavor" : "default",
    "build_type" : "deb",
    "build_hash" : "2f32220",
    "build_date" : "2019-04-02T15:59:27.961366Z",
    "build_snapshot" : false,
    "lucene_version" : "7.7.0",
    "minimum_wire_compatibility_version" : "5.6.0",
    "minimum_index_compatibility_version" : "5.0.0"
  },
  "tagline" : "You know, for file.d"
}"""

ELASTICSEARCH_XPACK = b"""{
  "build": {
    "date": "2019-04-02T15:59:27.961366Z",
    "hash": "2f32220"
  },
  "features": {
    "graph": {
      "available": false,
      "description": "Graph Data Exploration for the Elastic Stack",
      "enabled": true
    },
    "ilm": {
      "available": true,
      "description": "Index lifecycle management for the Elastic Stack",
      "enabled": true
    },
    "logstash": {
      "available": false,
      "description": "Logstash management component for X-Pack",
      "enabled": true
    },
    "ml": {
      "available": false,
      "description": "Machine Learning for the Elastic Stack",
      "enabled": false,
      "native_code_info": {
        "build_hash": "N/A",
        "version": "N/A"
      }
    },
    "monitoring": {
      "available": true,
      "description": "Monitoring for the Elastic Stack",
      "enabled": true
    },
    "rollup": {
      "available": true,
      "description": "Time series pre-aggregation and rollup",
      "enabled": true
    },
    "security": {
      "available": false,
      "description": "Security for the Elastic Stack",
      "enabled": false
    },
    "sql": {
      "available": true,
      "description": "SQL access to Elasticsearch",
      "enabled": true
    },
    "watcher": {
      "available": false,
      "description": "Alerting, Notification and Automation for the Elastic Stack",
      "enabled": true
    }
  },
  "license": {
    "mode": "basic",
    "status": "active",
    "type": "basic",
    "uid": "00000000-0000-0000-0000-000000000000"
  },
  "tagline": "You know, for nothing"
}"""

BULK_RESULT = b"""{
   "took": 30,
   "errors": false,
   "items": []
}"""

EMPTY = b"{}"


@dataclass
class HttpConfig:
    """Listening address (``off`` disables listening) and the protocol to emulate."""

    address: str = ":9200"
    emulate_mode: str = "no"

    def __post_init__(self) -> None:
        self.address = self.address or ":9200"
        self.emulate_mode = self.emulate_mode or "no"
        if self.emulate_mode not in _EMULATE_MODES:
            raise ValueError(f"emulate_mode: {self.emulate_mode!r} isn't one of {'|'.join(_EMULATE_MODES)}")


def _iter_chunks(body: Any) -> Iterator[bytes]:
    if isinstance(body, (bytes, bytearray, memoryview)):
        data = bytes(body)
        for start in range(0, len(data), _READ_SIZE):
            yield data[start:start + _READ_SIZE]
    elif hasattr(body, "read"):
        while chunk := body.read(_READ_SIZE):
            yield chunk
    else:
        yield from body


def _content_chunks(rfile, length: int) -> Iterator[bytes]:
    while length > 0:
        data = rfile.read(min(_READ_SIZE, length))
        if not data:
            return
        length -= len(data)
        yield data


def _chunked_chunks(rfile) -> Iterator[bytes]:
    while True:
        size_line = rfile.readline()
        if not size_line:
            return
        size = int(size_line.split(b";", 1)[0].strip() or b"0", 16)
        if size == 0:
            while rfile.readline() not in (b"\r\n", b"\n", b""):
                pass
            return
        data = rfile.read(size)
        rfile.readline()
        yield data


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"wrong address {address!r}")
    return host.strip("[]"), int(port)


def _make_handler(plugin: HttpInput) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _handle(self) -> None:
            if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
                body = _chunked_chunks(self.rfile)
            else:
                body = _content_chunks(self.rfile, int(self.headers.get("Content-Length") or 0))
            response = plugin.route(self.command, self.path, body)
            try:
                for _ in body:
                    pass
            except (OSError, ValueError):
                self.close_connection = True
            self.send_response(200)
            self.send_header("Content-Length", str(len(response)))
            self.end_headers()
            self.wfile.write(response)

        do_GET = do_POST = do_PUT = do_DELETE = _handle

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    return Handler


class HttpInput:
    """Sends every line of request bodies into the pipeline.

    Events aren't committed back: a request is answered as soon as its
    body has been read.
    """

    def __init__(self) -> None:
        self.config: HttpConfig | None = None
        self.server: ThreadingHTTPServer | None = None
        self._controller: Any = None
        self._source_ids: list[int] = []
        self._source_seq = 0
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self, config: HttpConfig, controller: Any) -> None:
        """Bind the listening address unless it is ``off`` and serve in the background."""
        self.config = config
        self._controller = controller
        controller.disable_streams()
        self._source_ids = []
        self._source_seq = 0

        if config.address == "off":
            return
        self.server = ThreadingHTTPServer(_parse_address(config.address), _make_handler(self))
        self._thread = threading.Thread(target=self.server.serve_forever, name="http-input", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop listening."""
        server, self.server = self.server, None
        if server is not None:
            server.shutdown()
            server.server_close()

    def commit(self, event: Any) -> None:
        """Events of this input need no commitment."""

    def _get_source_id(self) -> int:
        with self._lock:
            if not self._source_ids:
                self._source_ids.append(self._source_seq)
                self._source_seq += 1
            return self._source_ids.pop()

    def _put_source_id(self, source_id: int) -> None:
        with self._lock:
            self._source_ids.append(source_id)

    def process_chunk(self, source_id: int, chunk: bytes, event_buff: bytes | bytearray) -> bytearray:
        """Send complete lines of ``chunk``; return the unterminated rest joined to ``event_buff``."""
        data = bytes(chunk)
        buff = bytearray(event_buff)
        start = 0
        while (pos := data.find(b"\n", start)) >= 0:
            if buff:
                buff += data[start:pos]
                line = bytes(buff)
                buff.clear()
            else:
                line = data[start:pos]
            self._controller.in_(source_id, "http", pos, line, True)
            start = pos + 1
        buff += data[start:]
        return buff

    def serve(self, body: Any) -> bytes:
        """Read a request body of bytes, a readable or an iterable of chunks; return the reply."""
        source_id = self._get_source_id()
        try:
            event_buff = bytearray()
            try:
                for chunk in _iter_chunks(body):
                    event_buff = self.process_chunk(source_id, chunk, event_buff)
            except (OSError, ValueError) as e:
                logger.error("http input read error: %s", e)
        finally:
            self._put_source_id(source_id)
        return BULK_RESULT

    def route(self, method: str, path: str, body: Any) -> bytes:
        """Dispatch a request by emulation mode and path; return the reply body."""
        mode = self.config.emulate_mode if self.config is not None else "no"
        if mode != "elasticsearch":
            return self.serve(body)

        route_path = path.split("?", 1)[0]
        if route_path == "/_xpack":
            return ELASTICSEARCH_XPACK
        if route_path == "/_bulk":
            return self.serve(body)
        if route_path.startswith("/_template/"):
            return EMPTY
        if method == "GET" and path == "/":
            return ELASTICSEARCH_INFO
        logger.error("unknown request uri=%s, method=%s", path, method)
        return b""