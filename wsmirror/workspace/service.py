"""Module with the RPC service that runs inside a workspace to expose its files."""

from __future__ import annotations

import os
import os.path
import socket
import stat
import subprocess
from typing import Dict, List, Optional, Tuple

import wsmirror.constants as constants
from wsmirror.logger import log
import wsmirror.rpc as rpc
from wsmirror.workspace.common import (
    ChangeBatch,
    ChangeType,
    DirectoryEntry,
    EntryKind,
    FileContents,
    normalize_path,
    Stat,
)


class WorkspaceService:
    """
    RPC service that exposes the primitive file operations of a workspace.

    All paths are workspace paths rooted at "/", which maps to the root directory that
    the service was created with. Errors are raised as the builtin exceptions of the
    underlying calls so that they're faithfully recreated on the client side.
    """

    def __init__(self, root: str, command_timeout: Optional[float] = None) -> None:
        """Instantiate the service for the workspace at the given root directory."""
        self._root = os.path.realpath(root)
        self._command_timeout = command_timeout

    def _resolve(self, path: str) -> str:
        """Map a workspace path to a path on the local file system."""
        relative = normalize_path(path).lstrip("/")
        return os.path.join(self._root, relative) if relative else self._root

    @staticmethod
    def get_protocol_version() -> str:
        return constants.PROTOCOL_VERSION

    #
    # File operations
    #

    def list_directory(self, path: str) -> List[DirectoryEntry]:
        entries = []

        with os.scandir(self._resolve(path)) as it:
            for entry in it:
                try:
                    is_dir = entry.is_dir()
                except OSError:
                    is_dir = False

                kind = EntryKind.DIRECTORY if is_dir else EntryKind.FILE
                entries.append(DirectoryEntry(name=entry.name, kind=kind.value))

        return entries

    def read_file(self, path: str) -> FileContents:
        with open(self._resolve(path), "rb") as f:
            return FileContents.from_data(f.read())

    def write_file(self, path: str, contents: FileContents) -> None:
        if not contents.verify():
            raise ValueError("file contents checksum mismatch")

        local_path = self._resolve(path)

        try:
            with open(local_path, "wb") as f:
                f.write(contents.data)
        except FileNotFoundError:
            # Create missing parent directories and retry once
            os.makedirs(os.path.dirname(local_path), exist_ok=True)

            with open(local_path, "wb") as f:
                f.write(contents.data)

    def stat_path(self, path: str) -> Stat:
        st = os.stat(self._resolve(path))

        if stat.S_ISDIR(st.st_mode):
            kind = EntryKind.DIRECTORY
        else:
            kind = EntryKind.FILE

        return Stat(kind=kind.value, size=st.st_size, mtime_ns=st.st_mtime_ns)

    #
    # Miscellaneous
    #

    def run_command(self, command: str) -> str:
        """Run a shell command from the workspace root and return its output."""
        result = subprocess.run(
            command,
            shell=True,
            cwd=self._root,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=self._command_timeout,
        )

        return result.stdout.decode(errors="replace")

    @staticmethod
    def is_port_open(port: int) -> bool:
        """Check if something inside the workspace is listening on the given port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            return sock.connect_ex(("127.0.0.1", port)) == 0


# Snapshot of a directory tree: path -> (kind, mtime, size)
Snapshot = Dict[str, Tuple[str, int, int]]


def take_snapshot(root: str) -> Snapshot:
    """Record the type, modification time and size of everything below root."""
    snapshot: Snapshot = {}
    root = os.path.realpath(root)

    for dirpath, dirnames, filenames in os.walk(root):
        relative_dir = "/" + os.path.relpath(dirpath, root).replace(os.sep, "/")
        relative_dir = normalize_path(relative_dir)

        for name in dirnames + filenames:
            local_path = os.path.join(dirpath, name)

            try:
                st = os.lstat(local_path)
            except FileNotFoundError:
                # Removed while walking
                continue

            kind = EntryKind.DIRECTORY if stat.S_ISDIR(st.st_mode) else EntryKind.FILE
            path = normalize_path(f"{relative_dir}/{name}")

            snapshot[path] = (kind.value, st.st_mtime_ns, st.st_size)

    return snapshot


def diff_snapshots(old: Snapshot, new: Snapshot) -> List[ChangeBatch]:
    """Determine the changes that turn the old snapshot into the new one."""
    added = sorted(path for path in new if path not in old)
    removed = sorted(path for path in old if path not in new)
    changed = sorted(
        path
        for path in new
        if path in old and new[path] != old[path] and new[path][0] == EntryKind.FILE
    )

    batches = []

    for typ, paths in (
        (ChangeType.ADD, added),
        (ChangeType.CHANGE, changed),
        (ChangeType.REMOVE, removed),
    ):
        if paths:
            batches.append(ChangeBatch(type=typ.value, paths=paths))

    return batches


class ChangePublisher:
    """
    Publishes workspace changes to subscribed clients.

    Every changed path is published under its own path as topic, which allows clients
    to watch a directory recursively by simply subscribing to its path as prefix.
    """

    def __init__(self, endpoint: str) -> None:
        """Bind the change channel to the given endpoint."""
        self._publisher = rpc.Publisher(ChangeBatch, endpoint)

    def publish(self, batch: ChangeBatch) -> None:
        for path in batch.paths:
            log.debug(f"publishing {batch.type} of {path}")
            self._publisher.publish(path, ChangeBatch(type=batch.type, paths=[path]))

    def close(self) -> None:
        self._publisher.close()
