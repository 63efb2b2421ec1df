"""Module with the client side of the primitive workspace operations."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

from semver import VersionInfo

import wsmirror.constants as constants
from wsmirror.events import EventChannel
from wsmirror.logger import log
import wsmirror.rpc as rpc
from wsmirror.workspace.common import (
    ChangeBatch,
    ChangeEvent,
    ChangeType,
    DirectoryEntry,
    FileContents,
    is_ancestor,
    normalize_path,
    parent_path,
    PreviewUrl,
    Session,
    Stat,
)
from wsmirror.workspace.service import WorkspaceService

SessionRefresher = Callable[[], Awaitable[Session]]
FailureHandler = Callable[[Exception], Awaitable[None]]


class TypeProbeError(OSError):
    """Exception raised when the type of a path can't be determined with a stat."""


class IncompatibleProtocolError(ConnectionError):
    """Exception raised when the workspace agent speaks an incompatible protocol."""


class Watch:
    """
    Recursive or non-recursive watch on a workspace path.

    Events are delivered through an event channel, so handlers registered with
    on_event() are called one at a time in delivery order.
    """

    def __init__(self, path: str, recursive: bool, client: WorkspaceClient) -> None:
        """Instantiate a watch, use WorkspaceClient.watch() instead."""
        self.path = path
        self.recursive = recursive

        self._client = client
        self._channel: EventChannel[ChangeEvent] = EventChannel()

    def matches(self, path: str) -> bool:
        """Check if a change to the given path falls within this watch."""
        if path == self.path:
            return True
        elif self.recursive:
            return is_ancestor(self.path, path)
        else:
            return parent_path(path) == self.path

    def on_event(self, handler: Callable[[ChangeEvent], Awaitable[None]]):
        """Register a handler for change events and return its disposer."""
        return self._channel.subscribe(handler)

    def emit(self, event: ChangeEvent) -> None:
        self._channel.emit(event)

    @property
    def disposed(self) -> bool:
        return self._channel.closed

    async def drain(self) -> None:
        """Wait until all delivered events have been handled."""
        await self._channel.drain()

    def dispose(self) -> None:
        """Stop the watch. No handlers are called after this returns."""
        if not self._channel.closed:
            self._channel.close()
            self._client._remove_watch(self)


class WorkspaceClient:
    """
    Remote primitive client for a live session with a workspace agent.

    The client owns the RPC transport to the agent and transparently renews the session
    when the agent rejects the current credentials, using the session refresh callback
    supplied by the session issuer.
    """

    def __init__(
        self,
        session: Session,
        refresh_session: Optional[SessionRefresher] = None,
        timeout_ms: int = -1,
        preview_url: str = "http://localhost:{port}",
        port_poll_interval_ms: int = 500,
        on_failure: Optional[FailureHandler] = None,
    ) -> None:
        """
        Instantiate a client for the given session. No connection is made yet.

        The on_failure handler is awaited if the change channel breaks down, after
        which no more change events are delivered.
        """
        self._session = session
        self._refresh_session = refresh_session
        self._timeout_ms = timeout_ms
        self._preview_url = preview_url
        self._port_poll_interval = port_poll_interval_ms / 1000
        self._on_failure = on_failure

        self._rpc = self._create_rpc(session)

        self._subscriber: Optional[rpc.Subscriber] = None
        self._subscriber_task: Optional[asyncio.Task] = None
        self._watches: List[Watch] = []
        self._topics: Set[str] = set()

    def _create_rpc(self, session: Session) -> rpc.Client:
        return rpc.Client(
            WorkspaceService, session.endpoint, session.token, self._timeout_ms
        )

    @property
    def session(self) -> Session:
        return self._session

    async def connect(self, timeout_ms: Optional[int] = None) -> None:
        """
        Check that the workspace agent is reachable and speaks our protocol.

        Raises IOError if the agent doesn't respond in time.
        """
        await self._with_session(lambda: self._rpc.ping(timeout_ms))

        version = VersionInfo.parse(
            await self._with_session(lambda: self._rpc.get_protocol_version())
        )

        if version.major != VersionInfo.parse(constants.PROTOCOL_VERSION).major:
            raise IncompatibleProtocolError(
                f"incompatible protocol ({version} != {constants.PROTOCOL_VERSION})"
            )

    async def _with_session(self, call: Callable[[], Awaitable]):
        """
        Perform an RPC call, renewing the session once if its token was rejected.

        The call is passed as a callable so that it's made with the renewed RPC client.
        """
        try:
            return await call()
        except rpc.InvalidTokenError:
            if self._refresh_session is None:
                raise

            log.info(f"renewing session for workspace {self._session.workspace_id}")

            session = await self._refresh_session()

            if session.endpoint != self._session.endpoint:
                self._rpc.close()
                self._rpc = self._create_rpc(session)
            else:
                self._rpc.token = session.token

            self._session = session

            return await call()

    #
    # Primitive operations
    #

    async def list_directory(self, path: str) -> List[DirectoryEntry]:
        path = normalize_path(path)
        return await self._with_session(lambda: self._rpc.list_directory(path))

    async def read_file(self, path: str) -> str:
        path = normalize_path(path)
        contents: FileContents = await self._with_session(
            lambda: self._rpc.read_file(path)
        )

        if not contents.verify():
            raise IOError(f"corrupted contents received for {path}")

        return contents.text

    async def write_file(self, path: str, content: str) -> None:
        path = normalize_path(path)
        contents = FileContents.from_text(content)
        await self._with_session(lambda: self._rpc.write_file(path, contents))

    async def stat_path(self, path: str) -> Stat:
        """
        Determine the type of a path.

        Not every agent supports this, so any failure other than the path not existing
        is raised as TypeProbeError.
        """
        path = normalize_path(path)

        try:
            return await self._with_session(lambda: self._rpc.stat_path(path))
        except FileNotFoundError:
            raise
        except Exception as e:
            raise TypeProbeError(f"failed to stat {path}: {e}")

    async def run_command(self, command: str) -> str:
        return await self._with_session(lambda: self._rpc.run_command(command))

    async def wait_for_port(
        self, port: int, timeout_ms: int = 30000
    ) -> Optional[PreviewUrl]:
        """
        Wait for a port to be opened inside the workspace.

        Returns None if the port didn't open before the timeout expired.
        """

        async def poll() -> PreviewUrl:
            while not await self._with_session(lambda: self._rpc.is_port_open(port)):
                await asyncio.sleep(self._port_poll_interval)

            return PreviewUrl(port=port, url=self._preview_url.format(port=port))

        try:
            return await asyncio.wait_for(poll(), timeout_ms / 1000)
        except asyncio.TimeoutError:
            log.warning(f"timeout waiting for port {port}")
            return None

    #
    # Change notifications
    #

    def watch(self, path: str, recursive: bool = True) -> Watch:
        """Start watching a path for changes."""
        if not self._session.events_endpoint:
            raise ConnectionError("session does not provide a change channel")

        watch = Watch(normalize_path(path), recursive, self)
        self._watches.append(watch)

        if self._subscriber is None:
            self._subscriber = rpc.Subscriber(
                ChangeBatch, self._session.events_endpoint
            )
            self._subscriber_task = asyncio.get_running_loop().create_task(
                self._receive_changes(self._subscriber)
            )

        if watch.path not in self._topics:
            self._topics.add(watch.path)
            self._subscriber.subscribe(watch.path)

        return watch

    def _remove_watch(self, watch: Watch) -> None:
        if watch in self._watches:
            self._watches.remove(watch)

        if self._subscriber and not any(w.path == watch.path for w in self._watches):
            self._topics.discard(watch.path)
            self._subscriber.unsubscribe(watch.path)

    async def _receive_changes(self, subscriber: rpc.Subscriber) -> None:
        """Dispatch incoming change batches to the matching watches."""
        while True:
            try:
                _, batch = await subscriber.receive()
            except (TypeError, ValueError) as e:
                log.warning(f"ignoring malformed change notification: {e}")
                continue
            except Exception as e:
                log.error(f"change channel failed: {e}")

                # The task is finishing on its own, close() must not wait for it
                self._subscriber_task = None

                if self._on_failure is not None:
                    await self._on_failure(e)

                return

            self.dispatch(batch)

    def dispatch(self, batch: ChangeBatch) -> None:
        """Split a change batch into events and emit them to matching watches."""
        try:
            typ = ChangeType(batch.type)
        except ValueError:
            log.warning(f"ignoring unknown change type {batch.type}")
            return

        for path in batch.paths:
            event = ChangeEvent(type=typ, path=normalize_path(path))

            for watch in list(self._watches):
                if watch.matches(event.path):
                    watch.emit(event)

    async def close(self) -> None:
        """Dispose all watches and close the underlying transport."""
        for watch in list(self._watches):
            watch.dispose()

        if self._subscriber_task is not None:
            self._subscriber_task.cancel()

            try:
                await self._subscriber_task
            except asyncio.CancelledError:
                pass

            self._subscriber_task = None

        if self._subscriber is not None:
            self._subscriber.close()
            self._subscriber = None

        self._topics.clear()
        self._rpc.close()

    @property
    def closed(self) -> bool:
        return self._rpc.closed

