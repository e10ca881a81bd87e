from __future__ import annotations

from typing import Any, Protocol

import httpx


class RemoteWriteError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class SnapshotFetcher(Protocol):
    def fetch_projects(self) -> list[dict[str, Any]]: ...

    def fetch_timeline(self, project_id: str) -> list[dict[str, Any]]: ...


class RemoteWriter(Protocol):
    def update_quote(self, quote_id: str, changes: dict[str, Any]) -> dict[str, Any]: ...


class HttpPipelineGateway:
    """Fetcher and remote writer backed by the pipeline HTTP API."""

    def __init__(self, client: httpx.Client, *, token: str | None = None, prefix: str = "/api/pipeline") -> None:
        self.client = client
        self.prefix = prefix.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def fetch_projects(self) -> list[dict[str, Any]]:
        return self._get(f"{self.prefix}/projects")

    def fetch_timeline(self, project_id: str) -> list[dict[str, Any]]:
        return self._get(f"{self.prefix}/projects/{project_id}/timeline")

    def update_quote(self, quote_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        response = self.client.patch(f"{self.prefix}/quotes/{quote_id}", json=changes, headers=self.headers)
        self._raise_for_error(response)
        return response.json()

    def _get(self, path: str) -> Any:
        response = self.client.get(path, headers=self.headers)
        self._raise_for_error(response)
        return response.json()

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        raise RemoteWriteError(
            response.status_code,
            str(body.get("code") or "http_error"),
            str(body.get("message") or body.get("detail") or response.reason_phrase),
        )
