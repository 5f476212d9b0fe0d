from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
PACKAGES_ROOT = REPO_ROOT / "packages"
if str(PACKAGES_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGES_ROOT))

from featspec_common import paths  # noqa: E402


REFERENCE_DOC = """# Feature Specification Reference

## Part 1: Terminology

- **tap**: a single short touch
- **drag**: press, move, release

## Part 2: Feature Taxonomy

Atomic, composite, system.

## Part 3: Dependency Mapping

Requires, enables, conflicts.

## Part 4: Quality Metrics & Validation

Every feature has an acceptance check.
"""


def write_file(root: Path, rel: str, content: str) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
    return p


@pytest.fixture(autouse=True)
def _clear_path_caches():
    paths.repo_root.cache_clear()
    paths.workspace_root.cache_clear()
    yield
    paths.repo_root.cache_clear()
    paths.workspace_root.cache_clear()


@pytest.fixture
def reference_root(tmp_path: Path) -> Path:
    """A minimal template + reference tree laid out like the real one."""
    root = tmp_path / "ref"
    steps = "reference/pipeline-steps"
    write_file(root, f"{steps}/core/research.md", "Research for case {CASE}.\n\n{INJECT_MODIFIER_CONTENT_HERE}\n")
    write_file(
        root,
        f"{steps}/core/feature-extraction.md",
        "Extract features.\n\n{INJECT_MODIFIER_CONTENT_HERE}\n\nPrevious: {PREVIOUS_OUTPUT}\n\n## Output Format\n\nList.\n",
    )
    write_file(root, f"{steps}/modifiers/research/codebase-input.md", "Read the source code.")
    write_file(root, f"{steps}/modifiers/research/enhancement-input.md", "Extend the existing features.")
    write_file(root, f"{steps}/modifiers/feature-extraction/codebase-input.md", "Scan modules.")
    write_file(root, f"{steps}/process-steps/validation-loop.md", "Validate {PREVIOUS_OUTPUT}.")
    write_file(root, f"{steps}/inference/data-model-inference.md", "Infer data models from {ATOMIC_FEATURES_OUTPUT}.")
    write_file(root, f"{steps}/case3-specialized/transcript-feature-mining.md", "Mine the transcript.")
    write_file(root, "reference/feature-spec-reference.md", REFERENCE_DOC)
    write_file(root, "reference/master-pipeline-template.md", "# Master Pipeline Template\n\nStep list.\n")
    return root


class DummyBackend:
    """Stands in for BackendClient; records every prompt it receives."""

    def __init__(self, outputs=None, fail_on=None, on_execute=None):
        self.outputs = list(outputs or [])
        self.fail_on = fail_on
        self.on_execute = on_execute
        self.prompts = []
        self.saved = []

    def execute(self, prompt: str, scope_directory: str):
        from featspec_common.backend_client import BackendError, ExecutionResult

        self.prompts.append((prompt, scope_directory))
        n = len(self.prompts)
        if self.on_execute is not None:
            self.on_execute(n)
        if self.fail_on is not None and n == self.fail_on:
            raise BackendError("Cursor CLI execution failed")
        output = self.outputs[n - 1] if n - 1 < len(self.outputs) else f"output-{n}"
        return ExecutionResult(success=True, output=output)


class RecordingWriter:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.saved = []

    def save(self, file_path: str, content: str) -> None:
        from featspec_pipeline.errors import OutputPersistenceError

        if self.fail:
            raise OutputPersistenceError(f"could not save {file_path}: disk full")
        self.saved.append((file_path, content))
