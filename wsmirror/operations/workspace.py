"""Module that implements the command-line actions that access a workspace."""

import asyncio
import contextlib
import os
import sys
from typing import List, Optional

from wsmirror.access import chain, FallbackAccess, FileAccess, LiveAccess
from wsmirror.api import ApiClient, ApiSessionIssuer
from wsmirror.args import Arguments
from wsmirror.cache import CacheStore
from wsmirror.config import Config
from wsmirror.connection import (
    ConnectionManager,
    SessionIssuer,
    StaticSessionIssuer,
    WorkspaceConnectionError,
)
from wsmirror.editor import EditorSession
from wsmirror.explorer import FileExplorer
from wsmirror.logger import log
from wsmirror.tree import find_node
from wsmirror.watcher import ChangeWatcher
from wsmirror.workspace.client import WorkspaceClient
from wsmirror.workspace.common import ChangeEvent, FileNode, normalize_path
from .common import AsyncOperations


class WorkspaceOperations(AsyncOperations):
    """Class that performs a single action on the files of a workspace."""

    def __init__(self, args: Arguments):
        """Initialize workspace operations based on the command-line arguments."""
        self._args = args
        self._config = Config.load(os.path.expanduser(args.config))

        if args.api:
            self._config.api.base_url = args.api
        if args.token:
            self._config.api.token = args.token
        if args.timeout:
            self._config.connection.timeout = args.timeout

        self._cache = CacheStore()
        self._manager: Optional[ConnectionManager] = None
        self._client: Optional[WorkspaceClient] = None
        self._live: Optional[FileAccess] = None
        self._fallback: Optional[FileAccess] = None

    async def _run_in_loop(self, stack: contextlib.AsyncExitStack) -> int:
        """Connect to the workspace and run the requested action."""
        api = ApiClient(self._config.api.base_url, self._config.api.token)
        stack.push_async_callback(api.close)

        stack.callback(self._cache.close)

        self._fallback = FallbackAccess(api, self._args.project)

        if self._args.live:
            await self._connect(api, stack)

        action = getattr(self, f"_{self._args.action}")
        return await action(stack)

    async def _connect(self, api: ApiClient, stack: contextlib.AsyncExitStack) -> None:
        """Set up the live connection, leaving only the fallback API on failure."""
        issuer: SessionIssuer

        if self._args.endpoint:
            issuer = StaticSessionIssuer(
                self._args.endpoint, self._args.events_endpoint, self._config.api.token
            )
        else:
            issuer = ApiSessionIssuer(api)

        connection = self._config.connection

        self._manager = ConnectionManager(
            issuer,
            rpc_timeout_ms=connection.timeout,
            preview_url=connection.preview_url,
            port_poll_interval_ms=connection.port_poll_interval,
        )
        stack.push_async_callback(self._manager.deactivate)

        self._client = await self._manager.activate(
            self._args.project, connection.timeout
        )

        if self._client is not None:
            self._live = LiveAccess(self._client)
        else:
            log.warning(f"using fallback API: {self._manager.error}")

    def _require_client(self) -> WorkspaceClient:
        if self._client is None:
            error = self._manager.error if self._manager else "live access disabled"
            raise WorkspaceConnectionError(f"workspace is not connected ({error})")

        return self._client

    #
    # Actions
    #

    async def _tree(self, stack: contextlib.AsyncExitStack) -> int:
        explorer = FileExplorer(self._cache, self._live, self._fallback)
        stack.callback(explorer.close)

        await explorer.load_root()
        self._check_explorer(explorer)

        path = normalize_path(self._args.path)

        # Expand the way down to the requested directory
        components = [c for c in path.split("/") if c]

        for i in range(len(components)):
            await explorer.expand("/" + "/".join(components[: i + 1]))
            self._check_explorer(explorer)

        await self._expand_levels(explorer, path, self._args.depth - 1)

        nodes = self._children(explorer, path)

        self._print_tree(nodes, explorer, 0)

        return 0

    async def _expand_levels(
        self, explorer: FileExplorer, path: str, levels: int
    ) -> None:
        if levels <= 0:
            return

        nodes = self._children(explorer, path)

        for node in nodes:
            if node.is_directory:
                await explorer.expand(node.path)
                self._check_explorer(explorer)
                await self._expand_levels(explorer, node.path, levels - 1)

    @staticmethod
    def _children(explorer: FileExplorer, path: str) -> List[FileNode]:
        if path == "/":
            return explorer.nodes

        node = find_node(explorer.nodes, path)

        return (node.children or []) if node else []

    @staticmethod
    def _check_explorer(explorer: FileExplorer) -> None:
        if explorer.error:
            raise IOError(explorer.error)

    @classmethod
    def _print_tree(
        cls, nodes: List[FileNode], explorer: FileExplorer, indent: int
    ) -> None:
        for node in nodes:
            suffix = "/" if node.is_directory else ""
            print(f"{'  ' * indent}{node.name}{suffix}")

            if node.children and explorer.is_expanded(node.path):
                cls._print_tree(node.children, explorer, indent + 1)

    async def _cat(self, stack: contextlib.AsyncExitStack) -> int:
        editor = EditorSession(
            self._cache,
            self._live,
            self._fallback,
            debounce_ms=self._config.editor.debounce,
            max_age_ms=self._config.cache.max_age,
        )
        stack.callback(editor.close)

        content = await editor.open(self._args.path)

        sys.stdout.write(content or "")
        sys.stdout.flush()

        return 0

    async def _put(self, stack: contextlib.AsyncExitStack) -> int:
        if self._args.file:
            with open(self._args.file, "r") as f:
                content = f.read()
        else:
            content = sys.stdin.read()

        access = chain(self._live, self._fallback)
        assert access is not None

        await access.write_file(self._args.path, content)
        self._cache.set_file_content(self._args.path, content)

        return 0

    async def _watch(self, stack: contextlib.AsyncExitStack) -> int:
        client = self._require_client()

        watcher = ChangeWatcher(client, self._cache)
        stack.callback(watcher.dispose_all)
        watcher.watch(self._args.path)

        def print_event(event: ChangeEvent) -> None:
            print(f"{event.type.value} {event.path}", flush=True)

        watch = client.watch(self._args.path)
        stack.callback(watch.dispose)
        watch.on_event(print_event)

        # Runs until interrupted
        await asyncio.Event().wait()

        return 0

    async def _exec(self, stack: contextlib.AsyncExitStack) -> int:
        client = self._require_client()
        assert self._manager is not None

        if not self._args.command:
            raise ValueError("no command specified")

        command = " ".join(self._args.command)

        if self._args.wait_port is None:
            sys.stdout.write(await client.run_command(command))
            return 0

        # Servers don't exit, so the command runs in the background while waiting
        run = asyncio.get_running_loop().create_task(client.run_command(command))
        stack.callback(run.cancel)

        preview = await self._manager.wait_for_port(self._args.wait_port)

        if preview is None:
            raise TimeoutError(f"port {self._args.wait_port} was not opened")

        print(preview.url)

        return 0
