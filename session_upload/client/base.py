"""Remote session store client: the interface the upload engine talks to, and its HTTP
implementation."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from session_upload.exceptions import (
    ApiError,
    ContentHashMismatchError,
    IncorrectOffsetError,
    LookupNotFoundError,
    PermanentApiError,
    RateLimitedError,
    TransientApiError,
)
from session_upload.models import (
    CommitInfo,
    DownloadResponse,
    FileMetadata,
    ListFolderResult,
    Metadata,
    metadata_from_dict,
)

logger = logging.getLogger(__name__)


class SessionClient(ABC):
    """Abstract interface to a remote store with session-oriented uploads.

    Implementations raise the ``session_upload.exceptions.ApiError`` subclasses so the
    retry logic can tell transient failures, rate limits and permanent errors apart.
    """

    @abstractmethod
    def upload_session_start(self, session_type: str = "concurrent") -> str:
        """Start an upload session and return its identifier."""
        pass

    @abstractmethod
    def upload_session_append(
        self,
        session_id: str,
        offset: int,
        data: bytes,
        content_hash: Optional[str] = None,
        close: bool = False,
    ) -> None:
        """Append ``data`` at ``offset``. ``close`` marks the last append of the session."""
        pass

    @abstractmethod
    def upload_session_finish(
        self, session_id: str, offset: int, commit_info: CommitInfo
    ) -> FileMetadata:
        """Turn the session's ``offset`` bytes into a file described by ``commit_info``."""
        pass

    @abstractmethod
    def get_metadata(self, path: str) -> Metadata:
        """Look up a file or folder."""
        pass

    @abstractmethod
    def list_folder(
        self, path: str, recursive: bool = False, limit: Optional[int] = None
    ) -> ListFolderResult:
        """List the first page of a folder."""
        pass

    @abstractmethod
    def list_folder_continue(self, cursor: str) -> ListFolderResult:
        """Fetch the next page of a listing."""
        pass

    @abstractmethod
    def download(
        self,
        path: str,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ) -> DownloadResponse:
        """Download a file, optionally only the inclusive byte range [range_start, range_end]."""
        pass


class HTTPSessionClient(SessionClient):
    """HTTP client for the session upload protocol.

    RPC endpoints take a JSON body. Content endpoints take their JSON arguments in the
    ``Dropbox-API-Arg`` header and raw bytes as the body.

    Example:
        >>> client = HTTPSessionClient("http://localhost:8080/2", access_token="secret")
        >>> session_id = client.upload_session_start()
        >>> client.upload_session_append(session_id, 0, b"hello", close=True)
        >>> client.upload_session_finish(session_id, 5, CommitInfo(path="/hello.txt"))
    """

    ARG_HEADER = "Dropbox-API-Arg"
    RESULT_HEADER = "Dropbox-API-Result"

    def __init__(
        self,
        url: str,
        content_url: Optional[str] = None,
        access_token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 60.0,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the RPC endpoints (e.g. "https://api.example.com/2")
            content_url: Base URL of the content endpoints (default: same as url)
            access_token: Optional bearer token sent with every request
            headers: Optional custom headers to include in all requests
            timeout: Socket timeout for each request, in seconds
        """
        self.url = url.rstrip("/")
        self.content_url = (content_url or url).rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"

    def update_headers(self, headers: dict[str, str]) -> None:
        """Update custom headers for all requests."""
        self.headers.update(headers)

    def get_headers(self) -> dict[str, str]:
        """Get a copy of the current custom headers."""
        return self.headers.copy()

    def upload_session_start(self, session_type: str = "concurrent") -> str:
        arg = {"session_type": session_type, "close": False}
        result = self._content_call("files/upload_session/start", arg, b"")
        return result["session_id"]

    def upload_session_append(
        self,
        session_id: str,
        offset: int,
        data: bytes,
        content_hash: Optional[str] = None,
        close: bool = False,
    ) -> None:
        arg: dict[str, Any] = {
            "cursor": {"session_id": session_id, "offset": offset},
            "close": close,
        }
        if content_hash is not None:
            arg["content_hash"] = content_hash
        self._content_call("files/upload_session/append_v2", arg, data)

    def upload_session_finish(
        self, session_id: str, offset: int, commit_info: CommitInfo
    ) -> FileMetadata:
        arg = {
            "cursor": {"session_id": session_id, "offset": offset},
            "commit": commit_info.to_dict(),
        }
        result = self._content_call("files/upload_session/finish", arg, b"")
        return metadata_from_dict({".tag": "file", **result})

    def get_metadata(self, path: str) -> Metadata:
        return metadata_from_dict(self._rpc_call("files/get_metadata", {"path": path}))

    def list_folder(
        self, path: str, recursive: bool = False, limit: Optional[int] = None
    ) -> ListFolderResult:
        arg: dict[str, Any] = {"path": path, "recursive": recursive}
        if limit is not None:
            arg["limit"] = limit
        return self._list_result(self._rpc_call("files/list_folder", arg))

    def list_folder_continue(self, cursor: str) -> ListFolderResult:
        return self._list_result(self._rpc_call("files/list_folder/continue", {"cursor": cursor}))

    def download(
        self,
        path: str,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
    ) -> DownloadResponse:
        headers = {self.ARG_HEADER: json.dumps({"path": path})}
        if range_start is not None or range_end is not None:
            start = "" if range_start is None else str(range_start)
            end = "" if range_end is None else str(range_end)
            headers["Range"] = f"bytes={start}-{end}"

        # the body stays open; the caller reads and closes it
        response = self._open(f"{self.content_url}/files/download", b"", headers, "download")
        result = response.headers.get(self.RESULT_HEADER)
        if not result:
            response.close()
            raise ApiError(f"Server did not return {self.RESULT_HEADER} header")
        length = response.headers.get("Content-Length")
        if length is None:
            response.close()
            raise ApiError("Server did not return Content-Length header")

        metadata = metadata_from_dict({".tag": "file", **json.loads(result)})
        return DownloadResponse(metadata=metadata, body=response, content_length=int(length))

    def _rpc_call(self, endpoint: str, arg: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(arg).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        with self._open(f"{self.url}/{endpoint}", body, headers, endpoint) as response:
            return json.loads(response.read() or b"{}")

    def _content_call(self, endpoint: str, arg: dict[str, Any], data: bytes) -> dict[str, Any]:
        headers = {
            self.ARG_HEADER: json.dumps(arg),
            "Content-Type": "application/octet-stream",
        }
        with self._open(f"{self.content_url}/{endpoint}", data, headers, endpoint) as response:
            content = response.read()
            return json.loads(content) if content else {}

    def _open(self, url: str, body: bytes, headers: dict[str, str], action: str):
        """POST to ``url`` and return the open response, translating failures."""
        headers = {**headers, **self.headers}
        logger.debug(f"POST {url} ({len(body)} bytes)")
        try:
            req = Request(url, data=body, headers=headers, method="POST")
            return urlopen(req, timeout=self.timeout)
        except HTTPError as e:
            raise self._translate_http_error(e, action) from e
        except (URLError, OSError) as e:
            raise TransientApiError(f"Failed to call {action}: {e}") from e

    @staticmethod
    def _list_result(result: dict[str, Any]) -> ListFolderResult:
        return ListFolderResult(
            entries=[metadata_from_dict(entry) for entry in result.get("entries", [])],
            cursor=result.get("cursor", ""),
            has_more=result.get("has_more", False),
        )

    @staticmethod
    def _translate_http_error(e: HTTPError, action: str) -> ApiError:
        """Map an HTTP error response onto the exception hierarchy."""
        content = e.read()
        try:
            payload = json.loads(content) if content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        summary = payload.get("error_summary") or e.reason
        error = payload.get("error")
        tags = _error_tags(error)
        tag = tags[-1] if tags else None
        message = f"Failed to call {action}: {summary}"
        kwargs = {"status_code": e.code, "response_content": content, "error_tag": tag}

        if e.code == 429:
            retry_after = e.headers.get("Retry-After") if e.headers else None
            if retry_after is None and isinstance(error, dict):
                retry_after = error.get("retry_after", 0)
            reason = tag or "too_many_requests"
            return RateLimitedError(
                message, retry_after_seconds=float(retry_after or 0), reason=reason, **kwargs
            )
        if e.code == 409:
            if "incorrect_offset" in tags:
                return IncorrectOffsetError(
                    message, correct_offset=_find_key(error, "correct_offset"), **kwargs
                )
            if "content_hash_mismatch" in tags:
                return ContentHashMismatchError(message, **kwargs)
            if "not_found" in tags:
                return LookupNotFoundError(message, **kwargs)
            return PermanentApiError(message, **kwargs)
        if e.code >= 500:
            return TransientApiError(message, **kwargs)
        return PermanentApiError(message, **kwargs)


def _error_tags(error: Any) -> list[str]:
    """Collect the nested ".tag" values of a protocol error, outermost first."""
    tags = []
    while isinstance(error, dict) and ".tag" in error:
        tag = error[".tag"]
        tags.append(tag)
        error = error.get(tag)
    return tags


def _find_key(error: Any, key: str) -> Any:
    while isinstance(error, dict):
        if key in error:
            return error[key]
        error = error.get(error.get(".tag", ""))
    return None
