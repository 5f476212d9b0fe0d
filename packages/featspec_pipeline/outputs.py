from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from featspec_common.backend_client import BackendClient, BackendError
from featspec_pipeline.errors import OutputPersistenceError

logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "-output.md"


def output_file_name(step_name: str) -> str:
    return f"{step_name}{OUTPUT_SUFFIX}"


def output_file_path(automation_dir: str, step_name: str) -> str:
    return f"{automation_dir.rstrip('/')}/{output_file_name(step_name)}"


class OutputWriter(Protocol):
    def save(self, file_path: str, content: str) -> None:
        ...


class HttpOutputWriter:
    """Persists outputs through the backend's save endpoint."""

    def __init__(self, client: BackendClient) -> None:
        self.client = client

    def save(self, file_path: str, content: str) -> None:
        try:
            self.client.save_file(file_path, content)
        except BackendError as exc:
            raise OutputPersistenceError(f"could not save {file_path}: {exc}") from exc


class LocalOutputWriter:
    """Writes outputs straight to disk (tmp file + replace)."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None

    def save(self, file_path: str, content: str) -> None:
        path = Path(file_path)
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise OutputPersistenceError(f"could not save {path}: {exc}") from exc
        logger.debug("wrote %s", path)
