"""Reference session store server.

A small in-process implementation of the session upload protocol, good enough to run the
upload engine end to end against it: sessions accept concurrent out-of-order appends, each
append is verified against its content hash and finishing a session requires its data to be
contiguous up to the declared length.
"""

import base64
import binascii
import json
import logging
import re
import uuid
from http.server import BaseHTTPRequestHandler
from typing import Any, Optional

from session_upload.content_hash import ContentHash
from session_upload.models import CommitInfo
from session_upload.storage import SessionStorage, SQLiteSessionStorage

logger = logging.getLogger(__name__)

Response = tuple[int, dict[str, str], bytes]

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class SessionServer:
    """Session upload protocol server.

    Endpoints (all POST, under ``base_path``):
        - files/upload_session/start, files/upload_session/append_v2,
          files/upload_session/finish, files/download: arguments in the
          ``Dropbox-API-Arg`` header, raw bytes as the body
        - files/get_metadata, files/list_folder, files/list_folder/continue:
          JSON arguments as the body

    Errors the client is expected to act upon are returned as 409 with a JSON body of
    the form ``{"error_summary": ..., "error": {".tag": ..., ...}}``.

    Example:
        >>> server = SessionServer(storage=SQLiteSessionStorage(), base_path="/2")
        >>> status, headers, body = server.handle_request(
        ...     "POST",
        ...     "/2/files/upload_session/start",
        ...     {"Dropbox-API-Arg": '{"session_type": "concurrent"}'},
        ...     b"",
        ... )
    """

    ARG_HEADER = "dropbox-api-arg"
    RESULT_HEADER = "Dropbox-API-Result"
    DEFAULT_LIST_LIMIT = 2000

    def __init__(
        self,
        storage: Optional[SessionStorage] = None,
        base_path: str = "/2",
        max_size: int = 0,
        access_token: Optional[str] = None,
    ):
        """Initialize the server.

        Args:
            storage: Storage backend (defaults to SQLiteSessionStorage)
            base_path: Base URL path of all endpoints
            max_size: Maximum size of a single append request in bytes (0 = unlimited)
            access_token: If set, every request must carry it as a bearer token
        """
        self.storage = storage or SQLiteSessionStorage()
        self.base_path = base_path.rstrip("/")
        self.max_size = max_size
        self.access_token = access_token
        self._routes = {
            "files/upload_session/start": (self._handle_start, True),
            "files/upload_session/append_v2": (self._handle_append, True),
            "files/upload_session/finish": (self._handle_finish, True),
            "files/download": (self._handle_download, True),
            "files/get_metadata": (self._handle_get_metadata, False),
            "files/list_folder": (self._handle_list_folder, False),
            "files/list_folder/continue": (self._handle_list_folder_continue, False),
        }

    def handle_request(
        self, method: str, path: str, headers: dict[str, str], body: bytes = b""
    ) -> Response:
        """Handle an incoming HTTP request.

        Args:
            method: HTTP method
            path: Request path
            headers: Request headers
            body: Request body

        Returns:
            Tuple of (status_code, response_headers, response_body)
        """
        logger.info(f"Received {method} request for {path}")

        headers = {k.lower(): v for k, v in headers.items()}

        if not path.startswith(self.base_path + "/"):
            logger.warning(f"Route not found: {method} {path}")
            return self._text(404, "Not Found")
        route = self._routes.get(path[len(self.base_path) + 1 :])
        if route is None:
            logger.warning(f"Route not found: {method} {path}")
            return self._text(404, "Not Found")
        if method != "POST":
            return self._text(405, "Method Not Allowed")

        if self.access_token is not None:
            if headers.get("authorization") != f"Bearer {self.access_token}":
                logger.warning(f"Unauthorized request for {path}")
                return self._text(401, "Invalid access token")

        handler, is_content = route
        try:
            if is_content:
                arg = json.loads(headers.get(self.ARG_HEADER) or "{}")
            else:
                arg = json.loads(body or b"{}")
        except ValueError:
            logger.error(f"Invalid arguments for {path}")
            return self._text(400, "Could not decode request arguments")
        if not isinstance(arg, dict):
            return self._text(400, "Request arguments must be a JSON object")

        try:
            if is_content:
                return handler(arg, headers, body)
            return handler(arg)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Bad request for {path}: {e}")
            return self._text(400, f"Bad request: {e}")

    def _handle_start(
        self, arg: dict[str, Any], headers: dict[str, str], body: bytes
    ) -> Response:
        """Create a new upload session."""
        session_id = uuid.uuid4().hex
        self.storage.create_session(session_id)
        logger.info(f"Created session {session_id} ({arg.get('session_type', 'sequential')})")
        if body:
            self.storage.write_chunk(session_id, 0, body)
        if arg.get("close"):
            self.storage.close_session(session_id, len(body))
        return self._json(200, {"session_id": session_id})

    def _handle_append(
        self, arg: dict[str, Any], headers: dict[str, str], body: bytes
    ) -> Response:
        """Append data to a session, at any offset."""
        session_id = arg["cursor"]["session_id"]
        offset = int(arg["cursor"]["offset"])
        close = bool(arg.get("close", False))

        if self.max_size > 0 and len(body) > self.max_size:
            logger.warning(f"Append of {len(body)} bytes exceeds maximum {self.max_size}")
            return self._text(413, "Request exceeds maximum size")

        session = self.storage.get_session(session_id)
        if session is None:
            logger.warning(f"Session not found: {session_id}")
            return self._error("not_found", {".tag": "not_found"})
        if session["closed"] and offset + len(body) > session["closed_length"]:
            logger.warning(f"Append past the end of closed session {session_id}")
            return self._error("closed", {".tag": "closed"})

        expected_hash = arg.get("content_hash")
        if expected_hash is not None:
            computed = ContentHash.from_bytes(body).finish_hex()
            if computed != expected_hash:
                logger.error(f"Content hash mismatch for session {session_id} at {offset}")
                return self._error("content_hash_mismatch", {".tag": "content_hash_mismatch"})

        # an empty append only checks the offset
        if not body and not close and offset != session["length"]:
            return self._error(
                "incorrect_offset",
                {".tag": "incorrect_offset", "correct_offset": session["length"]},
            )

        if body:
            self.storage.write_chunk(session_id, offset, body)
        if close:
            self.storage.close_session(session_id, offset + len(body))

        logger.info(
            f"Append to session {session_id}: wrote {len(body)} bytes at {offset}"
            f"{', closed' if close else ''}"
        )
        return self._json(200, None)

    def _handle_finish(
        self, arg: dict[str, Any], headers: dict[str, str], body: bytes
    ) -> Response:
        """Commit a session's data as a file."""
        session_id = arg["cursor"]["session_id"]
        offset = int(arg["cursor"]["offset"])
        commit = CommitInfo.from_dict(arg["commit"])

        session = self.storage.get_session(session_id)
        if session is None:
            logger.warning(f"Session not found: {session_id}")
            return self._error("lookup_failed", self._lookup_failed({".tag": "not_found"}))
        if session["length"] != offset:
            logger.error(
                f"Finish offset mismatch for session {session_id}: "
                f"expected {session['length']}, got {offset}"
            )
            return self._error(
                "lookup_failed",
                self._lookup_failed(
                    {".tag": "incorrect_offset", "correct_offset": session["length"]}
                ),
            )
        if not commit.path.startswith("/") or commit.path.endswith("/"):
            return self._error("path", self._path_error("malformed_path"))

        path = commit.path
        if self.storage.folder_exists(path):
            return self._error("path", self._path_error("conflict"))
        if self.storage.get_file(path) is not None and commit.mode != "overwrite":
            if not commit.autorename:
                return self._error("path", self._path_error("conflict"))
            path = self._free_name(path)

        info = self.storage.commit_session(session_id, offset, path, commit.client_modified)
        logger.info(f"Committed session {session_id} as {path} ({offset} bytes)")
        return self._json(200, info)

    def _handle_download(
        self, arg: dict[str, Any], headers: dict[str, str], body: bytes
    ) -> Response:
        """Send a file, or a byte range of it."""
        path = arg["path"]
        info = self.storage.get_file(path)
        if info is None:
            return self._error("path", self._path_error("not_found"))

        size = info["size"]
        start, end = 0, size
        status = 200
        range_header = headers.get("range")
        if range_header:
            match = _RANGE_RE.match(range_header.strip())
            if not match or not any(match.groups()):
                return self._text(416, "Invalid Range header")
            first, last = match.groups()
            if first:
                start = int(first)
                end = min(int(last) + 1, size) if last else size
            else:
                # suffix range: the last N bytes
                start = max(size - int(last), 0)
            if start > end or (start >= size and size > 0):
                return self._text(416, "Range Not Satisfiable")
            status = 206

        data = self.storage.read_file(path, start, end)
        response_headers = {
            self.RESULT_HEADER: json.dumps(info),
            "Content-Type": "application/octet-stream",
            "Content-Length": str(len(data)),
        }
        if status == 206:
            response_headers["Content-Range"] = f"bytes {start}-{end - 1}/{size}"
        return (status, response_headers, data)

    def _handle_get_metadata(self, arg: dict[str, Any]) -> Response:
        path = arg["path"]
        info = self.storage.get_file(path)
        if info is not None:
            return self._json(200, {".tag": "file", **info})
        if path and self.storage.folder_exists(path):
            name = path.rstrip("/").rsplit("/", 1)[-1]
            return self._json(200, {".tag": "folder", "name": name, "path_display": path})
        return self._error("path", self._path_error("not_found"))

    def _handle_list_folder(self, arg: dict[str, Any]) -> Response:
        path = arg["path"]
        if path == "/":
            return self._error("path", self._path_error("malformed_path"))
        if self.storage.get_file(path) is not None:
            return self._error("path", self._path_error("not_folder"))
        if not self.storage.folder_exists(path):
            return self._error("path", self._path_error("not_found"))
        cursor = {
            "path": path,
            "recursive": bool(arg.get("recursive", False)),
            "limit": int(arg.get("limit") or self.DEFAULT_LIST_LIMIT),
            "position": 0,
        }
        return self._list_page(cursor)

    def _handle_list_folder_continue(self, arg: dict[str, Any]) -> Response:
        try:
            cursor = json.loads(base64.urlsafe_b64decode(arg["cursor"].encode("ascii")))
        except (binascii.Error, ValueError):
            return self._error("reset", {".tag": "reset"})
        return self._list_page(cursor)

    def _list_page(self, cursor: dict[str, Any]) -> Response:
        entries = self.storage.list_entries(cursor["path"], cursor["recursive"])
        start = cursor["position"]
        end = start + cursor["limit"]
        page = [
            {".tag": entry["tag"], **{k: v for k, v in entry.items() if k != "tag"}}
            for entry in entries[start:end]
        ]
        next_cursor = base64.urlsafe_b64encode(
            json.dumps({**cursor, "position": end}).encode("utf-8")
        ).decode("ascii")
        return self._json(
            200, {"entries": page, "cursor": next_cursor, "has_more": end < len(entries)}
        )

    def _free_name(self, path: str) -> str:
        """Find a name like "file (1).txt" that isn't taken yet."""
        folder, _, name = path.rpartition("/")
        stem, dot, ext = name.rpartition(".")
        if not stem:
            stem, dot, ext = name, "", ""
        n = 1
        while True:
            candidate = f"{folder}/{stem} ({n}){dot}{ext}"
            if self.storage.get_file(candidate) is None:
                return candidate
            n += 1

    @staticmethod
    def _lookup_failed(reason: dict[str, Any]) -> dict[str, Any]:
        return {".tag": "lookup_failed", "lookup_failed": reason}

    @staticmethod
    def _path_error(reason: str) -> dict[str, Any]:
        return {".tag": "path", "path": {".tag": reason}}

    @staticmethod
    def _error(summary: str, error: dict[str, Any]) -> Response:
        return SessionServer._json(409, {"error_summary": f"{summary}/", "error": error})

    @staticmethod
    def _json(status: int, payload: Any) -> Response:
        body = json.dumps(payload).encode("utf-8")
        return (
            status,
            {"Content-Type": "application/json", "Content-Length": str(len(body))},
            body,
        )

    @staticmethod
    def _text(status: int, message: str) -> Response:
        body = message.encode("utf-8")
        return (
            status,
            {"Content-Type": "text/plain; charset=utf-8", "Content-Length": str(len(body))},
            body,
        )


class SessionHTTPRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the session server."""

    session_server: SessionServer = None

    def do_POST(self) -> None:
        """Handle POST request."""
        self._handle_request("POST")

    def do_GET(self) -> None:
        """Handle GET request."""
        self._handle_request("GET")

    def _handle_request(self, method: str) -> None:
        """Handle incoming request."""
        body = b""
        content_length = int(self.headers.get("Content-Length", 0))
        if content_length > 0:
            body = self.rfile.read(content_length)

        headers = dict(self.headers)

        status, response_headers, response_body = self.session_server.handle_request(
            method, self.path, headers, body
        )

        self.send_response(status)
        for key, value in response_headers.items():
            self.send_header(key, value)
        self.end_headers()
        if response_body:
            self.wfile.write(response_body)

    def log_message(self, format: str, *args: Any) -> None:
        """Suppress default logging."""
        pass
