from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


PROJECT_FILE_SCHEMA_V1 = "featspec.project.v1"

SectionStatusLiteral = Literal["not_started", "in_progress", "complete", "needs_revision", "skipped"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class CaseChainModel(_CamelModel):
    previous_case: Optional[int] = None
    current_case: Optional[int] = None
    previous_case_output: str = ""


class SectionModel(_CamelModel):
    section_id: str = Field(..., min_length=1)
    section_name: str = ""
    step_name: str = ""
    status: SectionStatusLiteral = "not_started"
    input: str = ""
    output: str = ""
    dependencies: List[str] = Field(default_factory=list)
    modifiers: List[str] = Field(default_factory=list)
    is_process_step: bool = False
    process_step_type: Optional[str] = None
    is_inference_step: bool = False
    specialized: Optional[str] = None
    automation_id: Optional[str] = None
    last_modified: Optional[str] = None
    notes: str = ""
    vtt_transcript: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce_nulls(cls, v: Any) -> Any:
        # Older files store `null` for empty text fields.
        if isinstance(v, dict):
            out = dict(v)
            for key in ("input", "output", "notes", "vttTranscript", "sectionName", "stepName"):
                if key in out and out[key] is None:
                    out[key] = ""
            for key in ("dependencies", "modifiers"):
                if key in out and out[key] is None:
                    out[key] = []
            return out
        return v

    @model_validator(mode="after")
    def _validate_process_step(self) -> "SectionModel":
        if self.is_process_step and not (self.process_step_type or "").strip():
            raise ValueError(f"process step {self.section_id!r} has no processStepType")
        if self.section_id in self.dependencies:
            raise ValueError(f"section {self.section_id!r} depends on itself")
        return self


class ProjectModel(_CamelModel):
    schema_id: Literal[PROJECT_FILE_SCHEMA_V1] = Field(default=PROJECT_FILE_SCHEMA_V1, alias="schema")
    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    case: Optional[int] = Field(default=None, ge=1, le=7)
    sections: List[SectionModel] = Field(default_factory=list)
    scope_directory: Optional[str] = None
    automation_directory: Optional[str] = None
    case_chain: Optional[CaseChainModel] = None
    user_description: str = ""
    vtt_transcript: str = ""
    created_at: Optional[str] = None

    @field_validator("user_description", "vtt_transcript", "name", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @model_validator(mode="after")
    def _validate_unique_ids(self) -> "ProjectModel":
        seen: set[str] = set()
        for section in self.sections:
            if section.section_id in seen:
                raise ValueError(f"duplicate sectionId: {section.section_id}")
            seen.add(section.section_id)
        return self
