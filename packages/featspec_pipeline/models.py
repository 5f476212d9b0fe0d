from __future__ import annotations

import hashlib
import json
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from featspec_pipeline.errors import InvalidStatusTransition, ProjectFileError
from featspec_pipeline.schema import PROJECT_FILE_SCHEMA_V1, ProjectModel


NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
COMPLETE = "complete"
NEEDS_REVISION = "needs_revision"
SKIPPED = "skipped"

SECTION_STATUSES = (NOT_STARTED, IN_PROGRESS, COMPLETE, NEEDS_REVISION, SKIPPED)

# Sections in these states are never part of a pending set.
FINISHED_STATUSES = frozenset({COMPLETE, SKIPPED})

AUTOMATION_ID_LENGTH = 4
AUTOMATION_ID_ALPHABET = string.ascii_lowercase + string.digits

# not_started -> complete: the executor completes a section in one step, so a failed or cancelled one keeps its status.
# complete -> needs_revision and skipped -> not_started are user edits.
_ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    NOT_STARTED: frozenset({IN_PROGRESS, COMPLETE, NEEDS_REVISION, SKIPPED}),
    IN_PROGRESS: frozenset({COMPLETE, NEEDS_REVISION}),
    NEEDS_REVISION: frozenset({IN_PROGRESS, COMPLETE}),
    COMPLETE: frozenset({NEEDS_REVISION}),
    SKIPPED: frozenset({NOT_STARTED}),
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class CaseChain:
    previous_case: Optional[int] = None
    current_case: Optional[int] = None
    previous_case_output: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "previousCase": self.previous_case,
            "currentCase": self.current_case,
            "previousCaseOutput": self.previous_case_output,
        }


@dataclass
class Section:
    section_id: str
    section_name: str = ""
    step_name: str = ""
    status: str = NOT_STARTED
    input: str = ""
    output: str = ""
    dependencies: List[str] = field(default_factory=list)
    modifiers: List[str] = field(default_factory=list)
    is_process_step: bool = False
    process_step_type: Optional[str] = None
    is_inference_step: bool = False
    specialized: Optional[str] = None
    automation_id: Optional[str] = None
    last_modified: Optional[str] = None
    notes: str = ""
    vtt_transcript: str = ""

    @property
    def step_key(self) -> str:
        return self.step_name or self.section_id

    @property
    def display_name(self) -> str:
        return self.section_name or self.section_id

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def transition(self, target: str) -> None:
        if target not in SECTION_STATUSES:
            raise InvalidStatusTransition(section_id=self.section_id, current=self.status, target=target)
        if target == self.status:
            return
        if target not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidStatusTransition(section_id=self.section_id, current=self.status, target=target)
        self.status = target
        self.last_modified = utc_now_iso()

    def complete(self, output: str) -> None:
        self.transition(COMPLETE)
        self.output = output
        self.last_modified = utc_now_iso()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sectionId": self.section_id,
            "sectionName": self.section_name,
            "stepName": self.step_name,
            "status": self.status,
            "input": self.input,
            "output": self.output,
            "dependencies": list(self.dependencies),
            "modifiers": list(self.modifiers),
            "isProcessStep": self.is_process_step,
            "processStepType": self.process_step_type,
            "isInferenceStep": self.is_inference_step,
            "specialized": self.specialized,
            "automationId": self.automation_id,
            "lastModified": self.last_modified,
            "notes": self.notes,
            "vttTranscript": self.vtt_transcript,
        }


@dataclass
class Project:
    id: str
    sections: List[Section] = field(default_factory=list)
    case: Optional[int] = None
    name: str = ""
    description: str = ""
    scope_directory: Optional[str] = None
    automation_directory: Optional[str] = None
    case_chain: Optional[CaseChain] = None
    user_description: str = ""
    vtt_transcript: str = ""
    created_at: Optional[str] = None

    def get_section(self, section_id: str) -> Optional[Section]:
        for section in self.sections:
            if section.section_id == section_id:
                return section
        return None

    def index_of(self, section_id: str) -> int:
        for i, section in enumerate(self.sections):
            if section.section_id == section_id:
                return i
        return -1

    def insert_section(self, index: int, section: Section) -> None:
        if self.get_section(section.section_id) is not None:
            raise ValueError(f"duplicate sectionId: {section.section_id}")
        self.sections.insert(index, section)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "schema": PROJECT_FILE_SCHEMA_V1,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "case": self.case,
            "scopeDirectory": self.scope_directory,
            "automationDirectory": self.automation_directory,
            "caseChain": self.case_chain.as_dict() if self.case_chain else None,
            "userDescription": self.user_description,
            "vttTranscript": self.vtt_transcript,
            "createdAt": self.created_at,
            "sections": [s.as_dict() for s in self.sections],
        }


def new_project_id() -> str:
    return uuid.uuid4().hex[:12]


def new_automation_id(existing: Iterable[str] = ()) -> str:
    taken = set(existing)
    while True:
        candidate = "".join(secrets.choice(AUTOMATION_ID_ALPHABET) for _ in range(AUTOMATION_ID_LENGTH))
        if candidate not in taken:
            return candidate


def derived_automation_id(project_id: str, section_id: str) -> str:
    # Stable across calls so assembling the same section twice gives the same text.
    digest = hashlib.sha1(f"{project_id}:{section_id}".encode("utf-8")).digest()
    return "".join(AUTOMATION_ID_ALPHABET[b % len(AUTOMATION_ID_ALPHABET)] for b in digest[:AUTOMATION_ID_LENGTH])


def project_from_dict(data: Dict[str, Any]) -> Project:
    try:
        model = ProjectModel.model_validate(data)
    except ValidationError as exc:
        raise ProjectFileError(f"invalid project data: {exc}") from exc

    sections = [Section(**s.model_dump()) for s in model.sections]
    chain = CaseChain(**model.case_chain.model_dump()) if model.case_chain else None
    return Project(
        id=model.id,
        sections=sections,
        case=model.case,
        name=model.name,
        description=model.description,
        scope_directory=model.scope_directory,
        automation_directory=model.automation_directory,
        case_chain=chain,
        user_description=model.user_description,
        vtt_transcript=model.vtt_transcript,
        created_at=model.created_at,
    )


def load_project(path: Path) -> Project:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ProjectFileError(f"cannot read project file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ProjectFileError(f"project file {path}: expected object, got {type(data).__name__}")
    return project_from_dict(data)


def save_project(project: Project, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(project.as_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
