from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    pass


class FetchHttpError(FetchError):
    def __init__(self, *, url: str, status_code: int) -> None:
        super().__init__(f"fetch failed: status={status_code} url={url}")
        self.url = url
        self.status_code = status_code


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


class TextFetcher:
    """
    Reads text documents relative to a source root.

    The root is either a local directory or an http(s) base URL. Relative
    locations are resolved the way a static file server would resolve them:
    `reference/x`, `./reference/x` and `/reference/x` all land under the root,
    `../x` lands next to it.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        session: Any = None,
        timeout_s: Optional[float] = 20.0,
    ) -> None:
        self.root = str(root)
        self.session = session
        self.timeout_s = timeout_s

    def locate(self, location: str) -> str:
        if _is_url(self.root):
            base = self.root if self.root.endswith("/") else self.root + "/"
            return urljoin(base, location.lstrip("/"))
        rel = location.lstrip("/")
        return str((Path(self.root) / rel).resolve())

    def fetch(self, location: str) -> str:
        target = self.locate(location)
        if _is_url(target):
            return self._fetch_http(target)
        path = Path(target)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise FetchError(f"cannot read {path}: {exc}") from exc

    def _fetch_http(self, url: str) -> str:
        getter = self.session.get if self.session is not None else requests.get
        try:
            resp = getter(url, headers={"Accept": "text/markdown, text/plain, */*"}, timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise FetchError(f"fetch failed: url={url} error={exc}") from exc
        if resp.status_code != 200:
            raise FetchHttpError(url=url, status_code=int(resp.status_code))
        return resp.text or ""


def fetch_first(fetcher: Any, relative_path: str, base_candidates: Iterable[str]) -> Optional[str]:
    """
    Try each base candidate in order and return the first successful fetch.

    All candidates failing is not an error: a warning is logged and None returned.
    """
    tried = []
    for base in base_candidates:
        location = f"{base}{relative_path}"
        tried.append(location)
        try:
            return fetcher.fetch(location)
        except FetchError as exc:
            logger.debug("fetch miss: %s (%s)", location, exc)
            continue
    logger.warning("Could not load %s from any candidate path: %s", relative_path, ", ".join(tried))
    return None
