from __future__ import annotations

import threading
from pathlib import Path

import pytest

from featspec_pipeline.assembler import PromptAssembler
from featspec_pipeline.errors import (
    DependencyCycleError,
    InvalidStatusTransition,
    MissingDependenciesError,
    NoScopeDirectoryError,
    NothingToRunError,
    RunInProgressError,
)
from featspec_pipeline.executor import INPUT_HEADER, PipelineExecutor, RunOutcome, RunState
from featspec_pipeline.models import COMPLETE, NEEDS_REVISION, NOT_STARTED, Project, Section
from featspec_pipeline.references import ReferenceCatalog
from featspec_pipeline.templates import TemplateStore
from featspec_pipeline.workflow import PipelineConfig

from conftest import DummyBackend, RecordingWriter, write_file


@pytest.fixture
def assembler(reference_root: Path) -> PromptAssembler:
    root = str(reference_root)
    write_file(reference_root, "reference/pipeline-steps/core/validation.md", "Check {PREVIOUS_OUTPUT}.")
    return PromptAssembler(TemplateStore(root=root), ReferenceCatalog(root=root), PipelineConfig.load())


def _project(**kwargs) -> Project:
    defaults = dict(
        id="p1",
        case=1,
        scope_directory="/work/app",
        automation_directory="./runs/p1",
        sections=[
            Section(section_id="research", input="Look at the repo"),
            Section(section_id="feature-extraction", dependencies=["research"]),
            Section(section_id="validation", dependencies=["feature-extraction"]),
        ],
    )
    defaults.update(kwargs)
    return Project(**defaults)


def test_run_completes_all_sections_in_order(assembler: PromptAssembler):
    backend = DummyBackend(outputs=["R", "F", "V"])
    writer = RecordingWriter()
    progress = []
    executor = PipelineExecutor(assembler, backend, writer=writer, on_progress=progress.append)
    project = _project()

    report = executor.start(project)

    assert report.ok
    assert report.outcome == RunOutcome.COMPLETED
    assert report.completed == ["research", "feature-extraction", "validation"]
    assert [s.status for s in project.sections] == [COMPLETE, COMPLETE, COMPLETE]
    assert [s.output for s in project.sections] == ["R", "F", "V"]
    assert executor.state == RunState.COMPLETED
    assert not executor.is_running

    first_prompt, scope = backend.prompts[0]
    assert scope == "/work/app"
    assert first_prompt.endswith(INPUT_HEADER + "Look at the repo")
    # the dependency output is the derived input of the next section
    assert backend.prompts[1][0].endswith(INPUT_HEADER + "R")
    assert "Previous: R" in backend.prompts[1][0]

    assert [path for path, _ in writer.saved] == [
        "./runs/p1/research-output.md",
        "./runs/p1/feature-extraction-output.md",
        "./runs/p1/validation-output.md",
    ]
    assert progress and progress[-1] == "All sections completed"


def test_failure_stops_run_and_leaves_later_sections_untouched(assembler: PromptAssembler):
    backend = DummyBackend(outputs=["R"], fail_on=2)
    executor = PipelineExecutor(assembler, backend)
    project = _project()

    report = executor.start(project)

    assert report.outcome == RunOutcome.FAILED
    assert report.error_kind == "execution_failed"
    assert report.failed_section == "feature-extraction"
    assert report.retryable is True
    assert report.completed == ["research"]
    assert len(backend.prompts) == 2
    assert [s.status for s in project.sections] == [COMPLETE, NOT_STARTED, NOT_STARTED]
    assert project.sections[1].output == ""
    assert executor.state == RunState.FAILED


def test_missing_template_skips_only_that_section(assembler: PromptAssembler):
    backend = DummyBackend(outputs=["R", "V"])
    project = _project(
        sections=[
            Section(section_id="research"),
            Section(section_id="decomposition", dependencies=["research"]),
            Section(section_id="validation", dependencies=["decomposition"]),
        ]
    )
    report = PipelineExecutor(assembler, backend).start(project)

    assert report.outcome == RunOutcome.COMPLETED
    assert report.completed == ["research", "validation"]
    assert report.template_missing == ["decomposition"]
    assert report.as_dict()["template_missing"] == ["decomposition"]
    assert any("decomposition" in w for w in report.warnings)
    assert len(backend.prompts) == 2
    skipped = project.get_section("decomposition")
    assert skipped.status == NOT_STARTED
    assert skipped.output == ""


def test_retry_runs_only_requested_section(assembler: PromptAssembler):
    project = _project()
    executor = PipelineExecutor(assembler, DummyBackend(fail_on=2))
    executor.start(project)

    backend = DummyBackend(outputs=["F2"])
    executor.backend = backend
    report = executor.retry_section(project, "feature-extraction")
    assert report.ok
    assert report.completed == ["feature-extraction"]
    assert project.get_section("feature-extraction").output == "F2"
    assert project.get_section("validation").status == NOT_STARTED


def test_stop_lets_current_section_finish(assembler: PromptAssembler):
    holder = {}

    def on_execute(n):
        if n == 1:
            holder["executor"].stop()

    backend = DummyBackend(outputs=["R", "F"], on_execute=on_execute)
    executor = PipelineExecutor(assembler, backend)
    holder["executor"] = executor
    project = _project()

    report = executor.start(project)

    assert report.outcome == RunOutcome.CANCELLED
    assert report.message == "Automation stopped"
    assert report.completed == ["research"]
    assert project.sections[0].status == COMPLETE
    assert project.sections[1].status == NOT_STARTED
    assert len(backend.prompts) == 1
    assert executor.state == RunState.CANCELLED


def test_stop_before_start_does_not_cancel_next_run(assembler: PromptAssembler):
    executor = PipelineExecutor(assembler, DummyBackend())
    executor.stop()
    assert executor.start(_project()).ok


def test_stop_during_validation_cancels_before_first_section(assembler: PromptAssembler):
    backend = DummyBackend()
    executor = PipelineExecutor(assembler, backend)
    validate = executor.validate

    def validate_then_stop(*args, **kwargs):
        result = validate(*args, **kwargs)
        executor.stop()
        return result

    executor.validate = validate_then_stop
    project = _project()
    report = executor.start(project)

    assert report.outcome == RunOutcome.CANCELLED
    assert report.completed == []
    assert backend.prompts == []
    assert all(s.status == NOT_STARTED for s in project.sections)


def test_stop_on_start_message_cancels_run(assembler: PromptAssembler):
    backend = DummyBackend()
    holder = {}

    def on_progress(message):
        if message.startswith("Starting automation"):
            holder["executor"].stop()

    executor = PipelineExecutor(assembler, backend, on_progress=on_progress)
    holder["executor"] = executor
    report = executor.start(_project())

    assert report.outcome == RunOutcome.CANCELLED
    assert report.completed == []
    assert backend.prompts == []
    # a later run gets a fresh cancel flag
    executor.on_progress = None
    assert executor.start(_project()).ok


@pytest.mark.parametrize(
    "project_kwargs, error_type",
    [
        (dict(scope_directory="  "), NoScopeDirectoryError),
        (
            dict(sections=[Section(section_id="a", dependencies=["ghost"])]),
            MissingDependenciesError,
        ),
        (
            dict(sections=[Section(section_id="a", dependencies=["b"]), Section(section_id="b", dependencies=["a"])]),
            DependencyCycleError,
        ),
        (dict(sections=[Section(section_id="a", status=COMPLETE)]), NothingToRunError),
    ],
)
def test_validation_failures(assembler: PromptAssembler, project_kwargs, error_type):
    backend = DummyBackend()
    report = PipelineExecutor(assembler, backend).start(_project(**project_kwargs))

    assert report.outcome == RunOutcome.VALIDATION_FAILED
    assert isinstance(report.error, error_type)
    assert report.error_kind == error_type.kind
    assert backend.prompts == []


def test_scope_directory_precedence(assembler: PromptAssembler):
    executor = PipelineExecutor(assembler, DummyBackend(), scope_directory="/from/settings")
    project = _project(scope_directory=None)
    assert executor.resolve_scope_directory(project) == "/from/settings"
    assert executor.resolve_scope_directory(project, "/explicit") == "/explicit"
    project.scope_directory = "/from/project"
    assert executor.resolve_scope_directory(project) == "/from/project"


def test_persistence_failure_is_only_a_warning(assembler: PromptAssembler, caplog: pytest.LogCaptureFixture):
    executor = PipelineExecutor(assembler, DummyBackend(), writer=RecordingWriter(fail=True))
    report = executor.start(_project())

    assert report.ok
    assert len(report.warnings) == 3
    assert "disk full" in report.warnings[0]
    assert "Failed to save output" in caplog.text


def test_no_automation_directory_skips_saving(assembler: PromptAssembler):
    writer = RecordingWriter()
    report = PipelineExecutor(assembler, DummyBackend(), writer=writer).start(_project(automation_directory=""))
    assert report.ok
    assert writer.saved == []


def test_unexpected_error_is_fatal(assembler: PromptAssembler):
    class ExplodingBackend:
        def execute(self, prompt, scope_directory):
            raise ZeroDivisionError("boom")

    executor = PipelineExecutor(assembler, ExplodingBackend())
    report = executor.start(_project())

    assert report.outcome == RunOutcome.FATAL
    assert report.severity == "fatal"
    assert report.failed_section == "research"
    assert "boom" in report.message
    assert not executor.is_running


def test_second_start_is_rejected_and_edits_refused_while_running(assembler: PromptAssembler):
    entered = threading.Event()
    release = threading.Event()

    def on_execute(n):
        if n == 1:
            entered.set()
            release.wait(5)

    backend = DummyBackend(on_execute=on_execute)
    executor = PipelineExecutor(assembler, backend)
    project = _project()
    reports = []
    worker = threading.Thread(target=lambda: reports.append(executor.start(project)))
    worker.start()
    try:
        assert entered.wait(5)
        assert executor.is_running

        second = executor.start(project)
        assert second.outcome == RunOutcome.REJECTED
        assert isinstance(second.error, RunInProgressError)

        with pytest.raises(RunInProgressError):
            executor.update_section(project, "validation", notes="later")
    finally:
        release.set()
        worker.join(5)

    assert reports[0].ok
    assert len(backend.prompts) == 3
    executor.update_section(project, "validation", notes="later")
    assert project.get_section("validation").notes == "later"


def test_update_section_rules(assembler: PromptAssembler):
    executor = PipelineExecutor(assembler, DummyBackend())
    project = _project()
    project.sections[0].status = COMPLETE

    section = executor.update_section(project, "research", status=NEEDS_REVISION, input="again")
    assert section.status == NEEDS_REVISION
    assert section.input == "again"
    assert section.last_modified

    executor.update_section(project, "validation", status="skipped")
    with pytest.raises(InvalidStatusTransition):
        executor.update_section(project, "validation", status=COMPLETE)
    with pytest.raises(ValueError):
        executor.update_section(project, "research", automation_id="zzzz")
    with pytest.raises(KeyError):
        executor.update_section(project, "ghost", notes="x")
