from __future__ import annotations

import json
from pathlib import Path

import pytest

from featspec_pipeline.errors import InvalidStatusTransition, ProjectFileError
from featspec_pipeline.models import (
    AUTOMATION_ID_ALPHABET,
    AUTOMATION_ID_LENGTH,
    COMPLETE,
    IN_PROGRESS,
    NEEDS_REVISION,
    NOT_STARTED,
    SKIPPED,
    Project,
    Section,
    derived_automation_id,
    load_project,
    new_automation_id,
    project_from_dict,
    save_project,
)


def _project_dict():
    return {
        "id": "p1",
        "name": "Demo",
        "case": 1,
        "scopeDirectory": "/work/app",
        "automationDirectory": None,
        "userDescription": None,
        "caseChain": {"previousCase": 2, "currentCase": 1, "previousCaseOutput": "old features"},
        "sections": [
            {"sectionId": "research", "sectionName": "Research", "status": "complete", "output": "R", "input": None},
            {"sectionId": "feature-extraction", "dependencies": ["research"], "modifiers": None},
            {
                "sectionId": "validation-loop-1",
                "isProcessStep": True,
                "processStepType": "validation-loop",
                "dependencies": ["feature-extraction"],
            },
        ],
    }


def test_project_from_dict_reads_camel_case_and_nulls():
    project = project_from_dict(_project_dict())

    assert project.id == "p1"
    assert project.case == 1
    assert project.user_description == ""
    assert project.case_chain is not None and project.case_chain.previous_case == 2
    research = project.get_section("research")
    assert research.status == COMPLETE
    assert research.input == ""
    fe = project.get_section("feature-extraction")
    assert fe.modifiers == []
    assert fe.step_key == "feature-extraction"
    assert project.sections[2].is_process_step is True


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d["sections"].append({"sectionId": "research"}),
        lambda d: d["sections"][0].update(status="done"),
        lambda d: d["sections"][2].update(processStepType=None),
        lambda d: d["sections"][1].update(dependencies=["feature-extraction"]),
        lambda d: d.update(case=9),
        lambda d: d.update(schema="other.v2"),
    ],
)
def test_invalid_project_data_rejected(mutate):
    data = _project_dict()
    mutate(data)
    with pytest.raises(ProjectFileError):
        project_from_dict(data)


def test_save_and_load_roundtrip(tmp_path: Path):
    project = project_from_dict(_project_dict())
    path = save_project(project, tmp_path / "projects" / "p1.json")

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["schema"] == "featspec.project.v1"
    assert raw["sections"][1]["dependencies"] == ["research"]
    assert not (tmp_path / "projects" / "p1.json.tmp").exists()

    loaded = load_project(path)
    assert loaded.as_dict() == project.as_dict()


def test_load_project_bad_file(tmp_path: Path):
    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ProjectFileError):
        load_project(bad)
    with pytest.raises(ProjectFileError):
        load_project(tmp_path / "missing.json")


def test_status_transitions():
    s = Section(section_id="research")
    s.transition(IN_PROGRESS)
    s.complete("done")
    assert s.status == COMPLETE and s.output == "done"
    assert s.last_modified

    with pytest.raises(InvalidStatusTransition):
        s.transition(SKIPPED)
    s.transition(NEEDS_REVISION)
    s.transition(COMPLETE)

    skipped = Section(section_id="x", status=SKIPPED)
    assert skipped.is_finished
    with pytest.raises(InvalidStatusTransition):
        skipped.transition(COMPLETE)
    skipped.transition(NOT_STARTED)
    with pytest.raises(InvalidStatusTransition):
        skipped.transition("bogus")


def test_insert_section_rejects_duplicates():
    project = Project(id="p", sections=[Section(section_id="a")])
    with pytest.raises(ValueError):
        project.insert_section(1, Section(section_id="a"))


def test_automation_ids():
    taken = {new_automation_id() for _ in range(20)}
    for value in taken:
        assert len(value) == AUTOMATION_ID_LENGTH
        assert set(value) <= set(AUTOMATION_ID_ALPHABET)
    fresh = new_automation_id(taken)
    assert fresh not in taken

    assert derived_automation_id("p", "s") == derived_automation_id("p", "s")
    assert len(derived_automation_id("p", "s")) == AUTOMATION_ID_LENGTH
