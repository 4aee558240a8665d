"""Data types exchanged with the remote store."""

from dataclasses import asdict, dataclass, field
from typing import IO, Any, Optional, Union


@dataclass
class CommitInfo:
    """Where and how to create the file when an upload session is finished.

    Attributes:
        path: Destination path in the remote store, starting with "/"
        mode: Write mode ("add" or "overwrite")
        autorename: Pick a free name instead of failing on conflicts
        client_modified: ISO 8601 modification time ("%Y-%m-%dT%H:%M:%SZ")
        mute: Don't notify the user's devices about this change
    """

    path: str
    mode: str = "add"
    autorename: bool = False
    client_modified: Optional[str] = None
    mute: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.client_modified is None:
            del data["client_modified"]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CommitInfo":
        return cls(
            path=data["path"],
            mode=data.get("mode", "add"),
            autorename=data.get("autorename", False),
            client_modified=data.get("client_modified"),
            mute=data.get("mute", False),
        )


@dataclass
class FileMetadata:
    """Metadata of a committed file."""

    name: str
    path_display: str
    id: str
    size: int
    content_hash: Optional[str] = None
    client_modified: Optional[str] = None
    server_modified: Optional[str] = None
    rev: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {".tag": "file", **asdict(self)}


@dataclass
class FolderMetadata:
    """Metadata of a folder."""

    name: str
    path_display: str
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {".tag": "folder", **asdict(self)}


Metadata = Union[FileMetadata, FolderMetadata]


def metadata_from_dict(data: dict[str, Any]) -> Metadata:
    """Build file or folder metadata from its JSON form.

    Raises:
        ValueError: If the ".tag" field is missing or unknown
    """
    tag = data.get(".tag")
    fields = {k: v for k, v in data.items() if k != ".tag"}
    if tag == "file":
        known = FileMetadata.__dataclass_fields__
        return FileMetadata(**{k: v for k, v in fields.items() if k in known})
    if tag == "folder":
        known = FolderMetadata.__dataclass_fields__
        return FolderMetadata(**{k: v for k, v in fields.items() if k in known})
    raise ValueError(f"Unknown metadata tag: {tag!r}")


@dataclass
class ListFolderResult:
    """One page of a folder listing."""

    entries: list[Metadata] = field(default_factory=list)
    cursor: str = ""
    has_more: bool = False


@dataclass
class DownloadResponse:
    """Response of a (possibly ranged) download request."""

    metadata: FileMetadata
    body: IO[bytes]
    content_length: int
