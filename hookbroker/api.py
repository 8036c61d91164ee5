"""HTTP plumbing shared by the broker's API endpoints: routing, responses and the server."""

from __future__ import annotations

import json
import logging
import re
import secrets
import signal
import socket
import string
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlencode

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.serving import WSGIRequestHandler, make_server
from werkzeug.wrappers import Request, Response

_log = logging.getLogger(__name__)
_access_log = logging.getLogger("hookbroker.access")

PREVIOUS_PAGINATION_QUERY_PARAM = "previous"
NEXT_PAGINATION_QUERY_PARAM = "next"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_UNMODIFIED_SINCE = "If-Unmodified-Since"
HEADER_LAST_MODIFIED = "Last-Modified"
HEADER_REQUEST_ID = "X-Request-ID"
REQUEST_ID_LOG_FIELD = "requestId"
TOKEN_CHARSET = string.ascii_lowercase + string.ascii_uppercase + string.digits
TOKEN_LENGTH = 12

ERR_UNSUPPORTED_MEDIA_TYPE = "Media type not supported"
ERR_CONDITIONAL_FAILED = "Update failed due to mismatch of `If-Unmodified-Since` header value"
ERR_NOT_FOUND = "Request resource not found"
ERR_BAD_REQUEST = "Bad Request: Update is missing `If-Unmodified-Since` header "
ERR_BAD_REQUEST_FOR_REQUEUE = "`requeue` form param must match consumer token"

HTTP_METHODS = ("get", "put", "post", "delete")

_REQUEST_ID_ENVIRON_KEY = "hookbroker.request_id"
_PATH_PARAM = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")
_JSON_ACRONYMS = {"id": "ID", "url": "URL", "http": "HTTP", "dlq": "DLQ"}


class ApiError(Exception):
    """An error that ends a request with the given HTTP status and message."""

    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


class RecordNotFound(LookupError):
    """Raised by repositories when the requested record does not exist."""


@dataclass
class Pagination:
    """Cursors bounding one page of a listing."""

    previous: Optional[str] = None
    next: Optional[str] = None


class Endpoint:
    """Base of every API resource: a path template and optional method handlers."""

    path = "/"
    path_params: tuple[str, ...] = ()

    def format_as_relative_link(self, **kwargs):
        """Fill the path template with the given parameters."""
        return format_url(kwargs, self.path, *self.path_params)


class ServerLifecycleListener:
    """Receives notifications about the API server's lifecycle and records them."""

    def __init__(self):
        self.started = threading.Event()
        self.stopped = threading.Event()
        self.start_error: Optional[BaseException] = None

    def starting_server(self):
        """Called just before the server starts listening."""
        self.started.set()

    def server_start_failed(self, error):
        """Called when the server could not start listening."""
        self.start_error = error

    def server_shutdown_completed(self):
        """Called once the server has stopped."""
        self.stopped.set()


def _route_pattern(path: str) -> str:
    return _PATH_PARAM.sub(r"<\1>", path)


class ApiApplication:
    """WSGI application dispatching requests to endpoints by path and method."""

    def __init__(self, *args):
        self.endpoints = args
        rules = []
        for index, endpoint in enumerate(args):
            methods = [name.upper() for name in HTTP_METHODS if callable(getattr(endpoint, name, None))]
            if methods:
                rules.append(Rule(_route_pattern(endpoint.path), endpoint=index, methods=methods))
        self._url_map = Map(rules)

    def __call__(self, environ, start_response):
        request = Request(environ)
        request_id = get_request_id(request)
        started = time.perf_counter()
        response = self._dispatch(request)
        response.headers[HEADER_REQUEST_ID] = request_id
        duration_ms = (time.perf_counter() - started) * 1000
        _access_log.info(
            "method=%s url=%s status=%d size=%d duration=%.3fms %s=%s",
            request.method,
            request.url,
            response.status_code,
            response.calculate_content_length() or 0,
            duration_ms,
            REQUEST_ID_LOG_FIELD,
            request_id,
        )
        return response(environ, start_response)

    def _dispatch(self, request: Request) -> Response:
        adapter = self._url_map.bind_to_environ(request.environ)
        try:
            index, params = adapter.match()
        except HTTPException as exc:
            return exc.get_response(request.environ)
        method = "get" if request.method == "HEAD" else request.method.lower()
        handler = getattr(self.endpoints[index], method)
        try:
            return handler(request, params)
        except ApiError as err:
            return status_response(err.status, err.message)


class ApiServer:
    """A background HTTP server for an :class:`ApiApplication`."""

    def __init__(self, application, host, port, timeout, listener):
        self.ready = threading.Event()
        self.port: Optional[int] = None
        self.start_error: Optional[OSError] = None
        self._application = application
        self._host = host
        self._requested_port = port
        self._timeout = timeout
        self._listener = listener
        self._server = None
        self._lock = threading.Lock()
        self._stopped = False
        self._previous_handlers: dict = {}
        self._thread = threading.Thread(target=self._serve, name="hookbroker-http", daemon=True)

    def _serve(self):
        _log.info("Listening to http at - %s:%s", self._host, self._requested_port)
        self._listener.starting_server()

        class _Handler(WSGIRequestHandler):
            timeout = self._timeout

        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        try:
            with socket.create_server((self._host, self._requested_port), family=family) as sock:
                server = make_server(
                    self._host,
                    self._requested_port,
                    self._application,
                    threaded=True,
                    request_handler=_Handler,
                    fd=sock.fileno(),
                )
        except OSError as err:
            self.start_error = err
            self.ready.set()
            self._listener.server_start_failed(err)
            _log.error("HTTP server failed to start: %s", err)
            return
        self._server = server
        self.port = server.server_address[1]
        self.ready.set()
        server.serve_forever()

    def _start(self):
        self._thread.start()

    def _watch_interrupts(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._on_interrupt)

    def _on_interrupt(self, signum, frame):
        self._restore_signal_handlers()
        threading.Thread(target=self.shutdown, daemon=True).start()

    def _restore_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

    def shutdown(self):
        """Stop serving and notify the listener; later calls do nothing."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._restore_signal_handlers()
        _log.info("Shutting down the server...")
        self.ready.wait()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        _log.info("Server gracefully stopped!")
        self._listener.server_shutdown_completed()


def _parse_listening_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listening address: {addr!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def _seconds(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def configure_api(http_config, listener, application):
    """Start serving ``application`` in the background and stop on SIGINT or SIGTERM.

    ``http_config`` provides ``listening_addr`` ("host:port") and optionally
    ``read_timeout`` and ``write_timeout`` (seconds or timedelta); the larger
    of the two becomes the per-connection socket timeout.
    """
    host, port = _parse_listening_addr(http_config.listening_addr)
    timeouts = [
        t
        for t in (
            _seconds(getattr(http_config, "read_timeout", None)),
            _seconds(getattr(http_config, "write_timeout", None)),
        )
        if t is not None
    ]
    server = ApiServer(application, host, port, max(timeouts) if timeouts else None, listener)
    server._start()
    server._watch_interrupts()
    return server


def get_request_id(request):
    """Return the request's id, taken from ``X-Request-ID`` or generated once."""
    request_id = request.environ.get(_REQUEST_ID_ENVIRON_KEY)
    if request_id is None:
        request_id = request.headers.get(HEADER_REQUEST_ID, "") or uuid.uuid4().hex
        request.environ[_REQUEST_ID_ENVIRON_KEY] = request_id
    return request_id


def get_pagination(request):
    """Read the ``previous`` and ``next`` cursors from the query string."""
    return Pagination(
        previous=request.args.get(PREVIOUS_PAGINATION_QUERY_PARAM) or None,
        next=request.args.get(NEXT_PAGINATION_QUERY_PARAM) or None,
    )


def get_pagination_links(request, pagination):
    """Build links to the neighbouring pages of the current listing."""
    links: dict[str, str] = {}
    if pagination is None:
        return links
    base = request.script_root + request.path
    for key, cursor in (
        (PREVIOUS_PAGINATION_QUERY_PARAM, pagination.previous),
        (NEXT_PAGINATION_QUERY_PARAM, pagination.next),
    ):
        if cursor is not None:
            links[key] = f"{base}?{urlencode({key: str(cursor)})}"
    return links


def format_url(params, url_template, *args):
    """Replace each ``:name`` in the template whose parameter has a non-empty value."""
    values = {name: str(params.get(name) or "") for name in args}
    result = url_template
    for name, value in values.items():
        if value:
            result = result.replace(":" + name, value)
    return result


def random_token():
    """Return a random 12 character alphanumeric token."""
    return "".join(secrets.choice(TOKEN_CHARSET) for _ in range(TOKEN_LENGTH))


def _json_key(name: str) -> str:
    return "".join(_JSON_ACRONYMS.get(part, part.capitalize()) for part in name.split("_"))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.metadata.get("json", _json_key(f.name)): _jsonable(getattr(value, f.name))
            for f in fields(value)
        }
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_response(data):
    """Serialise ``data`` as a 200 JSON response, or a 500 if it cannot be encoded."""
    try:
        body = json.dumps(_jsonable(data)) + "\n"
    except (TypeError, ValueError) as err:
        return status_response(500, err)
    return Response(body, status=200, mimetype="application/json")


def status_response(code, error):
    """A plain response with the status code and the error's text as body."""
    return Response("" if error is None else str(error), status=code, mimetype="text/plain")