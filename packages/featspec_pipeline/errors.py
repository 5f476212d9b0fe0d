from __future__ import annotations

from typing import List, Optional, Sequence, Tuple


class PipelineError(RuntimeError):
    kind = "pipeline_error"


class TemplateMissingError(PipelineError):
    kind = "template_missing"

    def __init__(self, *, section_id: str, template_key: str) -> None:
        super().__init__(f"No template found for section '{section_id}' ({template_key})")
        self.section_id = section_id
        self.template_key = template_key


class ValidationFailedError(PipelineError):
    kind = "validation_failed"


class NoScopeDirectoryError(ValidationFailedError):
    kind = "no_scope_directory"

    def __init__(self) -> None:
        super().__init__("Please set the scope directory before starting automation")


class MissingDependenciesError(ValidationFailedError):
    kind = "missing_dependencies"

    def __init__(self, missing: Sequence[Tuple[str, str]]) -> None:
        edges = ", ".join(f"{sid} -> {dep}" for sid, dep in missing)
        super().__init__(f"Sections reference missing dependencies: {edges}")
        self.missing: List[Tuple[str, str]] = list(missing)


class DependencyCycleError(ValidationFailedError):
    kind = "dependency_cycle"

    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__("Dependency cycle: " + " -> ".join(cycle))
        self.cycle = list(cycle)


class NothingToRunError(ValidationFailedError):
    kind = "nothing_to_run"

    def __init__(self) -> None:
        super().__init__("No incomplete sections to execute")


class ExecutionFailedError(PipelineError):
    kind = "execution_failed"

    def __init__(self, *, section_id: str, message: str) -> None:
        super().__init__(f"Section '{section_id}' failed: {message}")
        self.section_id = section_id
        self.detail = message


class OutputPersistenceError(PipelineError):
    kind = "persistence_warning"


class FatalRunError(PipelineError):
    kind = "fatal"

    def __init__(self, message: str, *, section_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.section_id = section_id


class RunInProgressError(PipelineError):
    kind = "run_in_progress"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"A run is already active for project '{project_id}'")
        self.project_id = project_id


class InvalidStatusTransition(PipelineError):
    kind = "invalid_status_transition"

    def __init__(self, *, section_id: str, current: str, target: str) -> None:
        super().__init__(f"Section '{section_id}': cannot move from {current} to {target}")
        self.section_id = section_id
        self.current = current
        self.target = target


class ProjectFileError(PipelineError):
    kind = "project_file"
