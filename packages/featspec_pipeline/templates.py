from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from featspec_common.fetch import TextFetcher, fetch_first
from featspec_common.paths import reference_source

logger = logging.getLogger(__name__)

TEMPLATE_BASE_PATH = "reference/pipeline-steps/"
TEMPLATE_BASE_CANDIDATES: Tuple[str, ...] = (
    TEMPLATE_BASE_PATH,
    "./" + TEMPLATE_BASE_PATH,
    "../feat-spec/" + TEMPLATE_BASE_PATH,
    "/feat-spec/" + TEMPLATE_BASE_PATH,
)

CORE_STEP_NAMES: Tuple[str, ...] = (
    "research",
    "feature-extraction",
    "validation",
    "app-analysis",
    "decomposition",
    "atomic-features",
    "ux-specification",
)
PROCESS_STEP_NAMES: Tuple[str, ...] = ("validation-loop", "refinement-loop", "integration-loop")


class TemplateStore:
    """
    Cached access to the step templates under `reference/pipeline-steps/`.

    Layout (relative to each base candidate):
      core/<step>.md
      modifiers/<step>/<modifier>.md
      process-steps/<name>.md
      inference/<step>.md
      case3-specialized/<name>.md

    A missing template is never an exception: loaders return None and the miss
    is not cached, so a file that appears later is picked up.
    """

    def __init__(
        self,
        fetcher: Any = None,
        *,
        root: Optional[str] = None,
        base_candidates: Tuple[str, ...] = TEMPLATE_BASE_CANDIDATES,
    ) -> None:
        if fetcher is None:
            fetcher = TextFetcher(root if root is not None else reference_source())
        self.fetcher = fetcher
        self.base_candidates = tuple(base_candidates)
        self._cache: Dict[str, str] = {}
        self._cache_lock = threading.RLock()
        self._load_lock = threading.Lock()
        self._loaded = False

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _memo(self, key: str, loader: Callable[[], Optional[str]]) -> Optional[str]:
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]
            content = loader()
            if content:
                self._cache[key] = content
            return content

    def _fetch(self, relative_path: str) -> Optional[str]:
        return fetch_first(self.fetcher, relative_path, self.base_candidates)

    def is_cached(self, key: str) -> bool:
        with self._cache_lock:
            return key in self._cache

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    def load_core_step(self, step_name: str) -> Optional[str]:
        path = f"core/{step_name}.md"
        return self._memo(path, lambda: self._fetch(path))

    def load_modifier(self, step_name: str, modifier_name: str) -> Optional[str]:
        path = f"modifiers/{step_name}/{modifier_name}.md"
        return self._memo(path, lambda: self._fetch(path))

    def load_process_step(self, name: str) -> Optional[str]:
        path = f"process-steps/{name}.md"
        return self._memo(path, lambda: self._fetch(path))

    def load_inference_step(self, step_name: str) -> Optional[str]:
        path = f"inference/{step_name}.md"
        return self._memo(path, lambda: self._fetch(path))

    def load_specialized_prompt(self, name_or_path: str) -> Optional[str]:
        """
        `name_or_path` containing "/" is a path below the template root (".md" optional);
        a bare name is looked up in case3-specialized/ first, then inference/.
        """

        def _load() -> Optional[str]:
            if "/" in name_or_path:
                path = name_or_path if name_or_path.endswith(".md") else f"{name_or_path}.md"
                return self._fetch(path)
            content = self._fetch(f"case3-specialized/{name_or_path}.md")
            if not content:
                content = self._fetch(f"inference/{name_or_path}.md")
            return content

        return self._memo(f"specialized:{name_or_path}", _load)

    # ------------------------------------------------------------------
    # Bulk preload
    # ------------------------------------------------------------------

    def load_template(self) -> None:
        """
        Preload the known core and process step templates.

        At most one preload runs; a concurrent caller waits for it to finish.
        """
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            for name in CORE_STEP_NAMES:
                self.load_core_step(name)
            for name in PROCESS_STEP_NAMES:
                self.load_process_step(name)
            self._loaded = True
            logger.debug("template preload done (%d cached)", len(self._cache))

    @property
    def loaded(self) -> bool:
        return self._loaded

    def reload(self) -> None:
        with self._load_lock:
            with self._cache_lock:
                self._cache.clear()
            self._loaded = False
        self.load_template()
