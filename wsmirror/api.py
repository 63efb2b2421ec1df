"""
Module with the client for the fallback (non-live) workspace API.

The fallback API is an HTTP service that proxies file operations to a workspace on
behalf of a project. It is slower than a live connection because every operation makes
a round trip through the API server, but it keeps working when a direct connection to
the workspace can't be established. It also issues the sessions that are used to set up
those direct connections.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from wsmirror.connection import WorkspaceConnectionError
from wsmirror.logger import log
from wsmirror.workspace.common import normalize_path, Session


class ApiClient:
    """Asynchronous client for the project file and session endpoints of the API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_ms: int = 30000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Instantiate a client for the API at the given base URL.

        The transport can be overridden to talk to something other than a real server.
        """
        headers = {"Content-Type": "application/json"}

        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_ms / 1000),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """
        Make a request and return its decoded JSON body.

        HTTP errors are translated into the builtin exceptions that the rest of wsmirror
        understands.
        """
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise IOError(f"{method} {url} timed out: {e}")
        except httpx.TransportError as e:
            raise IOError(f"{method} {url} failed: {e}")

        if response.status_code == 404:
            raise FileNotFoundError(self._error_message(response))
        elif response.status_code in (401, 403):
            raise PermissionError(self._error_message(response))
        elif response.is_error:
            raise IOError(
                f"{method} {url} failed with status {response.status_code}: "
                f"{self._error_message(response)}"
            )

        if not response.content:
            return None

        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text

        if isinstance(body, dict) and "error" in body:
            return str(body["error"])
        else:
            return response.text

    #
    # Files
    #

    async def get_files(self, project_id: str, path: str) -> List[Dict[str, str]]:
        """List a directory, returning entries with a name, path and type."""
        path = normalize_path(path)

        items = await self._request(
            "GET",
            f"/projects/{project_id}/files",
            params={"path": "" if path == "/" else path},
        )

        return items or []

    async def read_file(self, project_id: str, path: str) -> str:
        body = await self._request(
            "GET",
            f"/projects/{project_id}/files/content",
            params={"path": normalize_path(path)},
        )

        return body["content"]

    async def write_file(self, project_id: str, path: str, content: str) -> None:
        await self._request(
            "PUT",
            f"/projects/{project_id}/files/content",
            json={"path": normalize_path(path), "content": content},
        )

    #
    # Sessions
    #

    async def get_session(self, project_id: str) -> Session:
        """Retrieve credentials for a direct connection to the project's workspace."""
        try:
            body = await self._request(
                "GET", f"/projects/{project_id}/sandbox/session"
            )
            session = body["session"]

            return Session(
                workspace_id=project_id,
                endpoint=session["endpoint"],
                events_endpoint=session.get("events_endpoint"),
                token=session.get("token"),
            )
        except (OSError, KeyError, TypeError, ValueError) as e:
            raise WorkspaceConnectionError(f"failed to issue session: {e}")


class ApiSessionIssuer:
    """Session issuer backed by the fallback API."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def issue_session(self, workspace_id: str) -> Session:
        return await self._api.get_session(workspace_id)

    async def refresh_session(self, workspace_id: str) -> Session:
        log.debug(f"refreshing session for {workspace_id}")
        return await self._api.get_session(workspace_id)
