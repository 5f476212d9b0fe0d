from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


DEFAULT_AUTOMATION_DIR = "./automation-output"


# ---------------------------------------------------------------------------
# Repo / workspace roots
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def repo_root(start: Optional[Path] = None) -> Path:
    """
    Resolve repository root by searching for pyproject.toml.
    Env override:
      - FEATSPEC_REPO_ROOT: absolute path to repo root
    """
    override = os.getenv("FEATSPEC_REPO_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    if start is None:
        start = Path(__file__).resolve()
    cur = start if start.is_dir() else start.parent

    for candidate in (cur, *cur.parents):
        if (candidate / "pyproject.toml").exists():
            return candidate.resolve()

    # Fallback: best-effort current directory
    return cur.resolve()


@lru_cache(maxsize=1)
def workspace_root() -> Path:
    """
    Root for project files and run logs.
    Env override:
      - FEATSPEC_WORKSPACE_ROOT
    """
    override = os.getenv("FEATSPEC_WORKSPACE_ROOT")
    if override:
        return Path(override).expanduser().resolve()
    return repo_root() / "workspaces"


def reference_source() -> str:
    """
    Source root for templates and reference documents.

    Either a local directory or an http(s) base URL.
    Env override:
      - FEATSPEC_REFERENCE_ROOT
    """
    override = (os.getenv("FEATSPEC_REFERENCE_ROOT") or "").strip()
    if override:
        if override.startswith(("http://", "https://")):
            return override
        return str(Path(override).expanduser().resolve())
    return str(repo_root())


def projects_root() -> Path:
    return workspace_root() / "projects"


def project_path(project_id: str) -> Path:
    return projects_root() / f"{project_id}.json"


def logs_root() -> Path:
    return workspace_root() / "logs"


# ---------------------------------------------------------------------------
# Pipeline package roots
# ---------------------------------------------------------------------------


def pipeline_pkg_root() -> Path:
    return repo_root() / "packages" / "featspec_pipeline"


def pipeline_config_path() -> Path:
    override = (os.getenv("FEATSPEC_PIPELINE_CONFIG") or "").strip()
    if override:
        p = Path(override).expanduser()
        return p if p.is_absolute() else (repo_root() / p)
    return Path(__file__).resolve().parent.parent / "featspec_pipeline" / "pipeline_config.yaml"
