from __future__ import annotations

import http.client
import logging
from typing import Any

from . import http_client

logger = logging.getLogger(__name__)

API_PREFIX = "/api/project"


class RemoteError(RuntimeError):
    def __init__(self, command: str, detail: str, *, status: int | None = None):
        super().__init__(f"project/{command} failed: {detail}")
        self.command = command
        self.detail = detail
        self.status = status


class RemoteProjectAPI:
    """Client for the shared-projects registry service.

    Every call returns the decoded JSON object or raises :class:`RemoteError`.
    """

    def __init__(self, base_url: str, *, timeout_s: float = 10.0):
        self.base_url = http_client.build_base_url(base_url)
        if not self.base_url:
            raise ValueError("remote api url is empty")
        self.timeout_s = timeout_s

    def do(self, command: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{API_PREFIX}/{command}"
        try:
            status, payload = http_client.post_json(url, params or {}, timeout_s=self.timeout_s)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            raise RemoteError(command, f"{type(exc).__name__}: {exc}") from exc
        if status >= 400:
            detail = _error_detail(payload) or f"http {status}"
            raise RemoteError(command, detail, status=status)
        if payload is None:
            raise RemoteError(command, "empty response", status=status)
        error = payload.get("error")
        if isinstance(error, str) and error:
            raise RemoteError(command, error, status=status)
        logger.debug("project/%s -> %s", command, status)
        return payload

    def ls(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.do("ls", params)

    def o(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.do("o", params)

    def cp(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.do("cp", params)

    def w(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.do("w", params)

    def rm(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.do("rm", params)


def _error_detail(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    reason = payload.get("reason")
    if isinstance(error, str) and isinstance(reason, str):
        return f"{error}:{reason}"
    if isinstance(error, str):
        return error
    return None
