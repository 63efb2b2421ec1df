"""Data structures shared by the workspace client, its agent service and the cache."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import hashlib
import posixpath
from typing import List, Optional

import lz4.frame


def normalize_path(path: str) -> str:
    """
    Turn a path into its canonical workspace form.

    Workspace paths are forward slash separated and rooted at "/". Relative paths are
    interpreted relative to the root and ".." segments can never escape it.
    """
    normalized = posixpath.normpath("/" + path.replace("\\", "/").strip())

    # POSIX allows exactly two leading slashes to be significant, we don't
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")

    return normalized


def join_path(parent: str, name: str) -> str:
    """Return the path of the entry called name within the parent directory."""
    return normalize_path(posixpath.join(normalize_path(parent), name))


def parent_path(path: str) -> str:
    """Return the path of the directory containing the specified path."""
    return posixpath.dirname(normalize_path(path))


def is_ancestor(ancestor: str, path: str) -> bool:
    """Check if ancestor is a strict ancestor directory of path."""
    ancestor = normalize_path(ancestor)
    path = normalize_path(path)

    if ancestor == path:
        return False
    elif ancestor == "/":
        return True
    else:
        return path.startswith(ancestor + "/")


class EntryKind(str, Enum):
    """Type of file system entry."""

    FILE = "file"
    DIRECTORY = "directory"


class ChangeType(str, Enum):
    """Type of change reported by a watch."""

    ADD = "add"
    CHANGE = "change"
    REMOVE = "remove"


@dataclass
class FileNode:
    """
    Entry in the rendered file tree.

    Children are None for files. For directories they are None as long as the listing
    hasn't been loaded, and a (possibly empty) list afterwards.
    """

    name: str
    path: str
    kind: EntryKind
    children: Optional[List[FileNode]] = None

    @property
    def is_directory(self) -> bool:
        return self.kind == EntryKind.DIRECTORY


@dataclass
class DirectoryEntry:
    """
    Entry returned by a directory listing of the workspace agent.

    The kind is optional because not every agent can cheaply tell what an entry is.
    """

    name: str
    kind: Optional[str] = None


@dataclass
class Stat:
    """Result of probing the type of a path."""

    kind: str
    size: int = 0
    mtime_ns: int = 0


@dataclass
class ChangeBatch:
    """Change notification as sent by the workspace agent."""

    type: str
    paths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChangeEvent:
    """A single change to a single path, as delivered to watch handlers."""

    type: ChangeType
    path: str


@dataclass
class FileContents:
    """
    Container for the full contents of a file.

    File contents are compressed to reduce bandwidth usage, which speeds up file access
    over slow links. LZ4 is fast enough to make this worth it even for small files.
    """

    compressed_data: bytes
    checksum: str
    size: int

    @staticmethod
    def from_data(data: bytes) -> FileContents:
        """Wrap raw file data into a FileContents object."""
        return FileContents(
            compressed_data=lz4.frame.compress(data),
            checksum=hashlib.sha256(data).hexdigest(),
            size=len(data),
        )

    @staticmethod
    def from_text(text: str) -> FileContents:
        """Wrap text into a FileContents object using UTF-8."""
        return FileContents.from_data(text.encode("utf-8"))

    @property
    def data(self) -> bytes:
        """Retrieve and decompress the original file data."""
        return lz4.frame.decompress(self.compressed_data)

    @property
    def text(self) -> str:
        """Retrieve the original file data as text."""
        return self.data.decode("utf-8", errors="replace")

    def verify(self) -> bool:
        """Check that the decompressed data matches the checksum."""
        return hashlib.sha256(self.data).hexdigest() == self.checksum


@dataclass
class Session:
    """
    Credentials and endpoints for a live connection to a workspace agent.

    Sessions are issued by an external collaborator and are opaque to wsmirror beyond
    the fields below.
    """

    workspace_id: str
    endpoint: str
    events_endpoint: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class PreviewUrl:
    """Publicly reachable URL of a port opened inside the workspace."""

    port: int
    url: str
