"""
featspec_pipeline.executor

Runs a project's pending sections against the execution backend.

- validation: scope directory -> dependency references / cycles -> pending set
- strictly sequential, in project order, one backend call at a time
- cancellation is cooperative: `stop()` is honored before the next section
- fail-stop: the first failing backend call ends the run; later sections are not touched
- a section without a template is skipped with a warning and the run moves on
- output persistence is best effort (logged, never fails the run)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from featspec_common.backend_client import BackendError
from featspec_pipeline.assembler import AssemblyOptions, PromptAssembler
from featspec_pipeline.errors import (
    DependencyCycleError,
    ExecutionFailedError,
    FatalRunError,
    MissingDependenciesError,
    NoScopeDirectoryError,
    NothingToRunError,
    OutputPersistenceError,
    PipelineError,
    RunInProgressError,
    TemplateMissingError,
    ValidationFailedError,
)
from featspec_pipeline.graph import PipelineGraph
from featspec_pipeline.models import Project, Section, utc_now_iso
from featspec_pipeline.outputs import OutputWriter, output_file_path

logger = logging.getLogger(__name__)

INPUT_HEADER = "\n\n## Input\n\n"

_EDITABLE_FIELDS = frozenset(
    {"section_name", "input", "output", "notes", "modifiers", "dependencies", "specialized", "vtt_transcript"}
)


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    VALIDATION_FAILED = "validation_failed"
    REJECTED = "rejected"
    FATAL = "fatal"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunReport:
    project_id: str
    outcome: Optional[RunOutcome] = None
    completed: List[str] = field(default_factory=list)
    error: Optional[PipelineError] = None
    failed_section: Optional[str] = None
    severity: str = "info"
    retryable: bool = False
    warnings: List[str] = field(default_factory=list)
    template_missing: List[str] = field(default_factory=list)
    log: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    finished_at: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        if self.outcome == RunOutcome.CANCELLED:
            return "Automation stopped"
        if self.outcome == RunOutcome.COMPLETED:
            return f"Completed {len(self.completed)} section(s)"
        return ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "outcome": self.outcome.value if self.outcome else None,
            "completed": list(self.completed),
            "error_kind": self.error_kind,
            "message": self.message,
            "failed_section": self.failed_section,
            "severity": self.severity,
            "retryable": self.retryable,
            "warnings": list(self.warnings),
            "template_missing": list(self.template_missing),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


_FINAL_STATES = {
    RunOutcome.COMPLETED: RunState.COMPLETED,
    RunOutcome.CANCELLED: RunState.CANCELLED,
    RunOutcome.VALIDATION_FAILED: RunState.IDLE,
}


class PipelineExecutor:
    def __init__(
        self,
        assembler: PromptAssembler,
        backend: Any,
        *,
        writer: Optional[OutputWriter] = None,
        scope_directory: Optional[str] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.assembler = assembler
        self.backend = backend
        self.writer = writer
        self.scope_directory = scope_directory
        self.on_progress = on_progress

        # Held for the whole run loop, including an in-flight call after stop().
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = RunState.IDLE
        self._active = False
        self._running_project: Optional[str] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._active

    def _set_state(self, state: RunState) -> None:
        with self._state_lock:
            self._state = state

    def stop(self) -> None:
        """Request cancellation; the section currently executing is allowed to finish."""
        with self._state_lock:
            self._cancel.set()
            self._active = False
        logger.info("stop requested")

    def _log(self, report: RunReport, message: str) -> None:
        report.log.append(f"[{datetime.now().strftime('%H:%M:%S')}] {message}")
        logger.info("%s", message)
        if self.on_progress is not None:
            self.on_progress(message)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def resolve_scope_directory(self, project: Project, scope_directory: Optional[str] = None) -> Optional[str]:
        for candidate in (scope_directory, project.scope_directory, self.scope_directory):
            if candidate and str(candidate).strip():
                return str(candidate).strip()
        return None

    def validate(
        self,
        project: Project,
        scope_directory: Optional[str] = None,
        section_ids: Optional[Iterable[str]] = None,
    ) -> tuple[str, List[Section]]:
        scope = self.resolve_scope_directory(project, scope_directory)
        if not scope:
            raise NoScopeDirectoryError()

        graph = PipelineGraph(project)
        missing = graph.missing_dependency_refs()
        if missing:
            raise MissingDependenciesError(missing)
        cycle = graph.find_cycle()
        if cycle:
            raise DependencyCycleError(cycle)

        pending = graph.pending_sections()
        if section_ids is not None:
            wanted = set(section_ids)
            pending = [s for s in pending if s.section_id in wanted]
        if not pending:
            raise NothingToRunError()
        return scope, pending

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def start(
        self,
        project: Project,
        scope_directory: Optional[str] = None,
        *,
        section_ids: Optional[Iterable[str]] = None,
    ) -> RunReport:
        report = RunReport(project_id=project.id)
        # stop() only ever sees the cancel event of the run holding _run_lock.
        with self._state_lock:
            acquired = self._run_lock.acquire(blocking=False)
            if acquired:
                cancel = threading.Event()
                self._cancel = cancel
                self._active = True
                self._running_project = project.id
                self._state = RunState.VALIDATING
            else:
                report.error = RunInProgressError(self._running_project or project.id)
        if not acquired:
            report.outcome = RunOutcome.REJECTED
            report.severity = "warning"
            report.finished_at = _now_iso()
            logger.warning("%s", report.error)
            return report

        current: Optional[Section] = None
        try:
            scope, pending = self.validate(project, scope_directory, section_ids)
            self._set_state(RunState.RUNNING)
            self._log(report, f"Starting automation: {len(pending)} section(s) in {scope}")

            for i, section in enumerate(pending, start=1):
                if cancel.is_set():
                    report.outcome = RunOutcome.CANCELLED
                    self._log(report, "Automation stopped by user")
                    break
                current = section
                self._log(report, f"[{i}/{len(pending)}] Executing {section.display_name}")
                try:
                    self.execute_section(project, section, scope, report=report)
                except TemplateMissingError as exc:
                    report.template_missing.append(section.section_id)
                    report.warnings.append(str(exc))
                    logger.warning("skipping %s: %s", section.section_id, exc)
                    self._log(report, f"Skipped {section.display_name}: no template")
                    current = None
                    continue
                report.completed.append(section.section_id)
                self._log(report, f"Completed {section.display_name}")
                current = None
            else:
                report.outcome = RunOutcome.COMPLETED
                self._log(report, "All sections completed")
        except ValidationFailedError as exc:
            report.outcome = RunOutcome.VALIDATION_FAILED
            report.error = exc
            report.severity = "error"
            self._log(report, f"Validation failed: {exc}")
        except ExecutionFailedError as exc:
            report.outcome = RunOutcome.FAILED
            report.error = exc
            report.failed_section = exc.section_id
            report.severity = "error"
            report.retryable = True
            logger.error("run stopped at %s: %s", exc.section_id, exc)
            self._log(report, f"Error: {exc}")
        except Exception as exc:  # run boundary: nothing escapes start()
            logger.exception("fatal error during run of %s", project.id)
            sid = current.section_id if current is not None else None
            report.outcome = RunOutcome.FATAL
            report.error = FatalRunError(f"Automation error: {exc}", section_id=sid)
            report.failed_section = sid
            report.severity = "fatal"
            report.retryable = True
        finally:
            report.finished_at = _now_iso()
            with self._state_lock:
                self._state = _FINAL_STATES.get(report.outcome, RunState.FAILED)
                self._active = False
                self._running_project = None
            self._run_lock.release()
        return report

    def retry_section(self, project: Project, section_id: str, scope_directory: Optional[str] = None) -> RunReport:
        return self.start(project, scope_directory, section_ids=[section_id])

    def get_section_input(self, project: Project, section: Section) -> str:
        return PipelineGraph(project).derive_input(section)

    def execute_section(
        self,
        project: Project,
        section: Section,
        scope_directory: str,
        *,
        report: Optional[RunReport] = None,
    ) -> str:
        """
        Execute one section; on success the section is marked complete with its output.

        Raises TemplateMissingError / ExecutionFailedError without touching the section.
        """
        input_text = self.get_section_input(project, section)
        prompt = self.assembler.assemble(section, project, AssemblyOptions(substitute_input=True))
        if prompt is None:
            raise TemplateMissingError(section_id=section.section_id, template_key=_template_key(section))

        try:
            result = self.backend.execute(f"{prompt}{INPUT_HEADER}{input_text}", scope_directory)
        except BackendError as exc:
            raise ExecutionFailedError(section_id=section.section_id, message=str(exc)) from exc

        output = result.output
        section.complete(output)
        self._persist(project, section, output, report)
        return output

    def _persist(self, project: Project, section: Section, output: str, report: Optional[RunReport]) -> None:
        automation_dir = (project.automation_directory or "").strip()
        if not automation_dir:
            logger.warning("No automation directory set for project %s; output of %s not saved", project.id, section.section_id)
            return
        if self.writer is None:
            return
        path = output_file_path(automation_dir, section.step_key)
        try:
            self.writer.save(path, output)
        except OutputPersistenceError as exc:
            logger.warning("Failed to save output for %s: %s", section.section_id, exc)
            if report is not None:
                report.warnings.append(str(exc))

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_section(self, project: Project, section_id: str, **changes: Any) -> Section:
        """Edit a section; refused while a run of the same project is in flight."""
        with self._state_lock:
            if self._running_project == project.id:
                raise RunInProgressError(project.id)
            section = project.get_section(section_id)
            if section is None:
                raise KeyError(f"section not found: {section_id}")
            status = changes.pop("status", None)
            unknown = set(changes) - _EDITABLE_FIELDS
            if unknown:
                raise ValueError(f"not editable: {', '.join(sorted(unknown))}")
            if status is not None:
                section.transition(status)
            for key, value in changes.items():
                setattr(section, key, value)
            if changes:
                section.last_modified = utc_now_iso()
            return section


def _template_key(section: Section) -> str:
    if section.is_process_step and section.process_step_type:
        return f"process-steps/{section.process_step_type}.md"
    if section.is_inference_step:
        return f"inference/{section.step_key}.md"
    return f"core/{section.step_key}.md"
