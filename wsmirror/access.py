"""
Module with the file access paths of a workspace.

A workspace can be reached in two ways: directly through a live WorkspaceClient, or
indirectly through the fallback API. Both are exposed through the same FileAccess
interface so that consumers never need to know which one they're using. FailoverAccess
combines the two so that failures of the live path fall through to the fallback.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from wsmirror.api import ApiClient
from wsmirror.logger import log
from wsmirror.tree import sort_nodes
from wsmirror.workspace.client import TypeProbeError, WorkspaceClient
from wsmirror.workspace.common import EntryKind, FileNode, join_path, normalize_path


class FileAccess(ABC):
    """Directory listing, reading and writing of workspace files."""

    name = "abstract"

    @abstractmethod
    async def list_directory(self, path: str) -> List[FileNode]:
        """
        List a directory as sorted, unloaded nodes.

        A directory that doesn't exist is listed as empty.
        """

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read the text contents of a file."""

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Replace the text contents of a file."""


async def resolve_kind(client: WorkspaceClient, path: str) -> EntryKind:
    """
    Determine whether a path is a file or a directory.

    Not every workspace agent has a reliable stat, so if probing the type fails then a
    directory listing is attempted instead: if that works, it's a directory, otherwise
    it's assumed to be a file.
    """
    try:
        st = await client.stat_path(path)
        return EntryKind(st.kind)
    except (TypeProbeError, FileNotFoundError, ValueError) as e:
        log.debug(f"type probe of {path} failed ({e}), trying directory listing")

    try:
        await client.list_directory(path)
        return EntryKind.DIRECTORY
    except Exception:
        return EntryKind.FILE


class LiveAccess(FileAccess):
    """File access through a live connection to the workspace agent."""

    name = "live"

    def __init__(self, client: WorkspaceClient) -> None:
        self._client = client

    @property
    def client(self) -> WorkspaceClient:
        return self._client

    async def list_directory(self, path: str) -> List[FileNode]:
        path = normalize_path(path)

        try:
            entries = await self._client.list_directory(path)
        except FileNotFoundError:
            return []

        nodes = []

        for entry in entries:
            entry_path = join_path(path, entry.name)

            if entry.kind:
                kind = EntryKind(entry.kind)
            else:
                kind = await resolve_kind(self._client, entry_path)

            nodes.append(FileNode(name=entry.name, path=entry_path, kind=kind))

        return sort_nodes(nodes)

    async def read_file(self, path: str) -> str:
        return await self._client.read_file(path)

    async def write_file(self, path: str, content: str) -> None:
        await self._client.write_file(path, content)


class FallbackAccess(FileAccess):
    """File access through the fallback API, addressed by project."""

    name = "fallback"

    def __init__(self, api: ApiClient, project_id: str) -> None:
        self._api = api
        self._project_id = project_id

    async def list_directory(self, path: str) -> List[FileNode]:
        path = normalize_path(path)

        try:
            items = await self._api.get_files(self._project_id, path)
        except FileNotFoundError:
            return []

        nodes = []

        for item in items:
            name = item["name"]
            kind = EntryKind(item.get("type", EntryKind.FILE.value))
            item_path = normalize_path(item.get("path") or join_path(path, name))

            nodes.append(FileNode(name=name, path=item_path, kind=kind))

        return sort_nodes(nodes)

    async def read_file(self, path: str) -> str:
        return await self._api.read_file(self._project_id, path)

    async def write_file(self, path: str, content: str) -> None:
        await self._api.write_file(self._project_id, path, content)


class FailoverAccess(FileAccess):
    """
    File access that tries a primary path first and falls through to a secondary one.

    Permission errors are never retried on the secondary path since the write was
    rejected by the workspace itself.
    """

    name = "failover"

    def __init__(self, primary: FileAccess, secondary: FileAccess) -> None:
        self._primary = primary
        self._secondary = secondary

    @staticmethod
    def _should_fail_over(error: Exception) -> bool:
        return not isinstance(error, PermissionError)

    async def list_directory(self, path: str) -> List[FileNode]:
        try:
            return await self._primary.list_directory(path)
        except Exception as e:
            if not self._should_fail_over(e):
                raise

            log.warning(f"{self._primary.name} listing of {path} failed: {e}")

        return await self._secondary.list_directory(path)

    async def read_file(self, path: str) -> str:
        try:
            return await self._primary.read_file(path)
        except Exception as e:
            if not self._should_fail_over(e):
                raise

            log.warning(f"{self._primary.name} read of {path} failed: {e}")

        return await self._secondary.read_file(path)

    async def write_file(self, path: str, content: str) -> None:
        try:
            await self._primary.write_file(path, content)
            return
        except Exception as e:
            if not self._should_fail_over(e):
                raise

            log.warning(f"{self._primary.name} write of {path} failed: {e}")

        await self._secondary.write_file(path, content)


def chain(
    live: Optional[FileAccess], fallback: Optional[FileAccess]
) -> Optional[FileAccess]:
    """Combine the available access paths in order of preference."""
    if live is not None and fallback is not None:
        return FailoverAccess(live, fallback)
    elif live is not None:
        return live
    else:
        return fallback
