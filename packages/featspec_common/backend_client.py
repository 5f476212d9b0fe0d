from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from featspec_common.config import DEFAULT_BACKEND_URL

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/api/cursor-cli-execute"
SAVE_FILE_PATH = "/api/save-automation-file"


class BackendError(RuntimeError):
    pass


class BackendHttpError(BackendError):
    def __init__(self, *, status_code: int, reason: str, body_snippet: str = "") -> None:
        super().__init__(f"Server error: {status_code} {reason}".rstrip())
        self.status_code = status_code
        self.reason = reason
        self.body_snippet = body_snippet


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: str = ""
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "output": self.output, "error": self.error}


class BackendClient:
    """
    Thin client for the execution backend.

    `session` may be any object with a requests-compatible `post` (tests pass a dummy).
    Execution calls carry no timeout: a step may legitimately run for a long time.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_URL,
        *,
        session: Any = None,
        execute_timeout_s: Optional[float] = None,
        save_timeout_s: Optional[float] = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.execute_timeout_s = execute_timeout_s
        self.save_timeout_s = save_timeout_s

    def _post_json(self, path: str, payload: Dict[str, Any], *, timeout_s: Optional[float]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.post(url, json=payload, timeout=timeout_s)
        except requests.RequestException as exc:
            raise BackendError(f"backend request failed: {url}: {exc}") from exc
        if not (200 <= int(resp.status_code) < 300):
            body = (getattr(resp, "text", "") or "").strip().replace("\n", " ")
            raise BackendHttpError(
                status_code=int(resp.status_code),
                reason=str(getattr(resp, "reason", "") or ""),
                body_snippet=body[:200],
            )
        try:
            data = resp.json() or {}
        except ValueError as exc:
            raise BackendError(f"backend response is not json: {url}") from exc
        return data if isinstance(data, dict) else {}

    def execute(self, prompt: str, scope_directory: str) -> ExecutionResult:
        """
        Run one assembled prompt against the backend.

        Raises BackendError when the call fails or the backend reports `success: false`.
        """
        data = self._post_json(
            EXECUTE_PATH,
            {"prompt": prompt, "scopeDirectory": scope_directory},
            timeout_s=self.execute_timeout_s,
        )
        if not data.get("success"):
            raise BackendError(str(data.get("error") or "Cursor CLI execution failed"))
        return ExecutionResult(success=True, output=str(data.get("output") or ""))

    def save_file(self, file_path: str, content: str) -> None:
        data = self._post_json(
            SAVE_FILE_PATH,
            {"filePath": file_path, "content": content},
            timeout_s=self.save_timeout_s,
        )
        if not data.get("success"):
            raise BackendError(str(data.get("error") or "save failed"))
        logger.debug("saved %s (%d chars)", file_path, len(content))
