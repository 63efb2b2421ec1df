"""Module that manages the lifecycle of the live connection to a workspace."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from wsmirror.logger import log
from wsmirror.workspace.client import WorkspaceClient
from wsmirror.workspace.common import PreviewUrl, Session


class WorkspaceConnectionError(ConnectionError):
    """Exception raised when a workspace can't be reached or no session is issued."""


class ConnectionState(Enum):
    """State of the live connection to a workspace."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# Transitions that are allowed between connection states
_TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.ERROR},
    ConnectionState.CONNECTED: {ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.CONNECTING},
}


class SessionIssuer(Protocol):
    """External collaborator that issues sessions for direct workspace connections."""

    async def issue_session(self, workspace_id: str) -> Session:
        """Return a new session for a workspace."""
        ...

    async def refresh_session(self, workspace_id: str) -> Session:
        """Return a session with new credentials after the old ones were rejected."""
        ...


class StaticSessionIssuer:
    """Session issuer for a workspace agent at a known endpoint."""

    def __init__(
        self,
        endpoint: str,
        events_endpoint: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        """Instantiate an issuer that always hands out the same session."""
        self._endpoint = endpoint
        self._events_endpoint = events_endpoint
        self._token = token

    async def issue_session(self, workspace_id: str) -> Session:
        """Return a session for the configured endpoint and token."""
        return Session(
            workspace_id=workspace_id,
            endpoint=self._endpoint,
            events_endpoint=self._events_endpoint,
            token=self._token,
        )

    async def refresh_session(self, workspace_id: str) -> Session:
        """Fail, because the token of a known endpoint can't be renewed."""
        raise WorkspaceConnectionError("session token was rejected")


StateListener = Callable[[ConnectionState, Optional[str]], Any]


class ConnectionManager:
    """
    Owner of the live WorkspaceClient for a single workspace activation.

    The manager establishes a session through the session issuer, connects a client with
    it and exposes the state of that connection. A failed connection attempt leaves the
    manager in the ERROR state, it's up to the caller to retry or to fall back to a
    path that doesn't need a live connection.

    Example:
    ```
    async with ConnectionManager(issuer) as manager:
        client = await manager.activate("project-id", timeout_ms=5000)

        if client is None:
            print(f"using fallback: {manager.error}")
    ```
    """

    def __init__(
        self,
        issuer: SessionIssuer,
        client_factory: Optional[Callable[..., WorkspaceClient]] = None,
        rpc_timeout_ms: int = -1,
        preview_url: str = "http://localhost:{port}",
        port_poll_interval_ms: int = 500,
    ) -> None:
        """Instantiate a manager that gets its sessions from the given issuer."""
        self._issuer = issuer
        self._client_factory = client_factory or WorkspaceClient
        self._rpc_timeout_ms = rpc_timeout_ms
        self._preview_url = preview_url
        self._port_poll_interval_ms = port_poll_interval_ms

        self._state = ConnectionState.IDLE
        self._error: Optional[str] = None
        self._workspace_id: Optional[str] = None
        self._client: Optional[WorkspaceClient] = None
        self._listeners: List[StateListener] = []
        self._preview_urls: Dict[int, PreviewUrl] = {}

    @property
    def state(self) -> ConnectionState:
        """Return the current state of the connection."""
        return self._state

    @property
    def error(self) -> Optional[str]:
        """Return the message describing why the connection failed, if it did."""
        return self._error

    @property
    def client(self) -> Optional[WorkspaceClient]:
        """Return the connected client, or None if there is no live connection."""
        return self._client if self._state == ConnectionState.CONNECTED else None

    @property
    def workspace_id(self) -> Optional[str]:
        """Return the workspace that is being connected to, if any."""
        return self._workspace_id

    @property
    def preview_urls(self) -> Dict[int, PreviewUrl]:
        """Return the preview URLs of the ports that were seen to open, by port."""
        return dict(self._preview_urls)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call the listener on every state change until the disposer is called."""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _transition(self, state: ConnectionState, error: Optional[str] = None) -> None:
        if state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"invalid connection transition {self._state} -> {state}"
            )

        log.debug(f"connection {self._state.value} -> {state.value}")

        self._state = state
        self._error = error

        for listener in list(self._listeners):
            try:
                listener(state, error)
            except Exception as e:
                log.error(f"connection listener failed: {e}")

    async def activate(
        self, workspace_id: str, timeout_ms: Optional[int] = None
    ) -> Optional[WorkspaceClient]:
        """
        Connect to the workspace and return the ready client.

        Returns None if the session couldn't be issued, the workspace couldn't be
        reached or the connection didn't complete within the timeout. The manager is
        left in the ERROR state with a description of the problem in that case.
        """
        if self._state == ConnectionState.CONNECTED:
            if workspace_id == self._workspace_id:
                return self._client

            raise RuntimeError(f"already connected to {self._workspace_id}")

        self._workspace_id = workspace_id
        self._transition(ConnectionState.CONNECTING)

        timeout = timeout_ms / 1000 if timeout_ms is not None else None

        try:
            client = await asyncio.wait_for(self._connect(workspace_id), timeout)
        except asyncio.TimeoutError:
            self._transition(ConnectionState.ERROR, "timed out connecting to workspace")
            return None
        except Exception as e:
            log.error(f"failed to connect to workspace {workspace_id}: {e}")
            self._transition(ConnectionState.ERROR, str(e) or e.__class__.__name__)
            return None

        self._client = client
        self._transition(ConnectionState.CONNECTED)

        return client

    async def _connect(self, workspace_id: str) -> WorkspaceClient:
        try:
            session = await self._issuer.issue_session(workspace_id)
        except WorkspaceConnectionError:
            raise
        except Exception as e:
            raise WorkspaceConnectionError(f"failed to issue session: {e}")

        async def refresh_session() -> Session:
            return await self._issuer.refresh_session(workspace_id)

        client = self._client_factory(
            session,
            refresh_session=refresh_session,
            on_failure=self.fail,
            timeout_ms=self._rpc_timeout_ms,
            preview_url=self._preview_url,
            port_poll_interval_ms=self._port_poll_interval_ms,
        )

        try:
            await client.connect()
        except BaseException:
            # Includes cancellation by the connect timeout
            await client.close()
            raise

        return client

    async def retry(
        self, timeout_ms: Optional[int] = None
    ) -> Optional[WorkspaceClient]:
        """Make another connection attempt after a failure."""
        if self._state != ConnectionState.ERROR or self._workspace_id is None:
            raise RuntimeError("can only retry a failed connection")

        return await self.activate(self._workspace_id, timeout_ms)

    async def fail(self, error: Exception) -> None:
        """Report that the live connection broke down after it was established."""
        if self._state != ConnectionState.CONNECTED:
            return

        client = self._client
        self._client = None

        self._transition(ConnectionState.ERROR, str(error))

        if client is not None:
            await client.close()

    async def wait_for_port(
        self, port: int, timeout_ms: int = 30000
    ) -> Optional[PreviewUrl]:
        """Wait for a port to open in the workspace and remember its preview URL."""
        client = self.client

        if client is None:
            raise WorkspaceConnectionError("workspace is not connected")

        preview = await client.wait_for_port(port, timeout_ms)

        if preview is not None:
            self._preview_urls[port] = preview

        return preview

    async def deactivate(self) -> None:
        """
        Tear down the connection and forget all state.

        Listeners are disposed before the client is closed, so they don't observe the
        teardown. Calling this more than once has no further effect.
        """
        self._listeners.clear()

        client = self._client
        self._client = None

        self._state = ConnectionState.IDLE
        self._error = None
        self._workspace_id = None
        self._preview_urls.clear()

        if client is not None and not client.closed:
            await client.close()

    async def __aenter__(self) -> ConnectionManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.deactivate()
