"""
featspec_common.config

Settings + YAML loader shared by the pipeline and the CLI.

- `.env` at the repo root is loaded fail-soft (existing env wins).
- YAML files accept a sibling `*.local.yaml` overlay (deep-merged, override wins).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from featspec_common.paths import pipeline_config_path, reference_source, repo_root

DEFAULT_BACKEND_URL = "http://localhost:8050"
DEFAULT_FETCH_TIMEOUT_S = 20.0


def load_env_files(paths: List[Path]) -> None:
    for env_path in paths:
        if not env_path.exists():
            continue
        try:
            lines = env_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            # Fail-soft: a broken .env must not stop the CLI
            continue
        for line in lines:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            k, v = stripped.split("=", 1)
            k = k.strip()
            v = v.strip().strip("\"'")
            os.environ.setdefault(k, v)


def _deep_merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge dicts (override wins).

    Used for `.local.yaml` overlays so a local file only carries what it changes.
    """
    out: Dict[str, Any] = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge_dict(out.get(key) or {}, value)  # type: ignore[arg-type]
        else:
            out[key] = value
    return out


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
        return loaded if isinstance(loaded, dict) else {}


def local_overlay_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}.local{path.suffix}")


def load_yaml_with_overlay(path: Path | str | None = None) -> Dict[str, Any]:
    """
    Load a YAML mapping plus its `.local` overlay.

    Default path: the packaged `pipeline_config.yaml` (env: FEATSPEC_PIPELINE_CONFIG).
    """
    p = Path(path) if path else pipeline_config_path()
    base = _load_yaml(p)
    local = local_overlay_path(p)
    if local.exists():
        overlay = _load_yaml(local)
        if overlay:
            return _deep_merge_dict(base, overlay)
    return base


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    backend_url: str
    reference_root: str
    scope_directory: Optional[str] = None
    fetch_timeout_s: float = DEFAULT_FETCH_TIMEOUT_S

    def as_dict(self) -> Dict[str, Any]:
        return {
            "backend_url": self.backend_url,
            "reference_root": self.reference_root,
            "scope_directory": self.scope_directory,
            "fetch_timeout_s": self.fetch_timeout_s,
        }


def load_settings(*, load_env: bool = True) -> Settings:
    if load_env:
        load_env_files([repo_root() / ".env"])
    scope = (os.getenv("FEATSPEC_SCOPE_DIR") or "").strip() or None
    return Settings(
        backend_url=(os.getenv("FEATSPEC_BACKEND_URL") or "").strip() or DEFAULT_BACKEND_URL,
        reference_root=reference_source(),
        scope_directory=scope,
        fetch_timeout_s=_env_float("FEATSPEC_FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_S),
    )
