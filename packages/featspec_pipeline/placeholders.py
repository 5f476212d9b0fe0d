"""
featspec_pipeline.placeholders

Fixed placeholder language resolved against live project/section state.

Resolution is a single left-to-right pass: text produced by a substitution is
never scanned again, so an output that happens to contain `{CASE}` stays as is.
Unknown tokens are left verbatim.
"""

from __future__ import annotations

import re
from typing import Callable, Dict, List, Optional

from featspec_common.paths import DEFAULT_AUTOMATION_DIR
from featspec_pipeline.models import Project, Section, derived_automation_id
from featspec_pipeline.workflow import PipelineConfig, describe_input_sources

OUTPUT_SEPARATOR = "\n\n---\n\n"
PREVIEW_CHARS = 500
NO_PREVIOUS_STEPS = "(No previous steps completed yet)"
NO_OUTPUT_YET = "(No output yet)"

TOKENS = (
    "CASE",
    "MODIFIERS",
    "PREVIOUS_OUTPUT",
    "PREVIOUS_STEP",
    "PREVIOUS_STEPS",
    "INPUT_SOURCES",
    "USER_INPUT",
    "INPUT",
    "AUTOMATION_ID",
    "EXISTING_FEATURES",
    "PROCESS_STEP_TRIGGERS",
    "WORKFLOW_CONTEXT",
    "USER_DESCRIPTION",
    "VTT_TRANSCRIPT",
    "UX_SPECIFICATIONS",
    "DATA_MODELS_OUTPUT",
    "STATE_MACHINES_OUTPUT",
    "API_CONTRACTS_OUTPUT",
    "ATOMIC_FEATURES_OUTPUT",
)

# Old numeric section refs -> current section ids.
LEGACY_SECTION_IDS: Dict[str, str] = {
    "0_0A": "research-initial",
    "0_0B": "research-extraction",
    "0_0C": "research-validation",
    "0A": "discovery-inventory",
    "0B": "discovery-decomposition",
    "0C": "discovery-atomic",
    "1": "ux-generation",
    "1_5": "ux-validation",
    "1_6": "ux-dependencies",
    "2": "impl-generation",
    "2_5": "impl-validation",
    "2_6": "impl-interface",
    "3": "final-assembly",
    "R1": "research-initial",
    "R2": "research-extraction",
    "R3": "research-validation",
}

_RE_PLACEHOLDER = re.compile(
    r"\{AUTOMATION_DIR\}(?P<subdir>/[^\s`]+)?"
    r"|\{(?P<token>" + "|".join(TOKENS) + r")\}"
    r"|(?i:\[OUTPUT_FROM_SECTION_(?P<legacy>[\d._A-Za-z]+)\])"
)


def legacy_section_id(ref: str) -> str:
    return LEGACY_SECTION_IDS.get(ref.upper(), ref.lower())


def previous_steps_summary(project: Project, section: Section) -> str:
    idx = project.index_of(section.section_id)
    if idx <= 0:
        return NO_PREVIOUS_STEPS
    entries = []
    for i, prev in enumerate(project.sections[:idx]):
        output = prev.output or NO_OUTPUT_YET
        preview = output[:PREVIEW_CHARS] + "..." if len(output) > PREVIEW_CHARS else output
        name = prev.section_name or prev.section_id or "Unknown Step"
        entries.append(f"### {i + 1}. {name}\n\n**Output:**\n{preview}")
    return OUTPUT_SEPARATOR.join(entries)


def workflow_context(project: Project, section: Section) -> str:
    idx = project.index_of(section.section_id)
    return f"Step {idx + 1} of {len(project.sections)}: {section.step_key or 'unknown'}"


def _output_where(project: Project, predicate: Callable[[Section], bool]) -> str:
    for s in project.sections:
        if predicate(s):
            return s.output or ""
    return ""


class PlaceholderResolver:
    def __init__(self, workflow: Optional[PipelineConfig] = None) -> None:
        self.workflow = workflow

    def _previous(self, project: Project, section: Section) -> tuple[str, str]:
        if section.dependencies:
            outputs: List[str] = []
            names: List[str] = []
            for dep_id in section.dependencies:
                dep = project.get_section(dep_id)
                if dep is None:
                    continue
                if dep.output:
                    outputs.append(dep.output)
                names.append(dep.section_name or dep.section_id)
            return OUTPUT_SEPARATOR.join(outputs), ", ".join(names)
        idx = project.index_of(section.section_id)
        if idx > 0:
            prev = project.sections[idx - 1]
            return prev.output or "", prev.section_name or ""
        return "", ""

    def _input_sources(self, project: Project, section: Section) -> str:
        if self.workflow is not None:
            return self.workflow.input_sources_description(project.case, section.modifiers)
        return describe_input_sources(project.case, section.modifiers)

    def _triggers(self, project: Project, section: Section) -> str:
        if self.workflow is None or section.is_process_step:
            return ""
        triggers = self.workflow.process_step_triggers(project.case, section.step_key)
        return "\n".join(t.as_line() for t in triggers)

    def substitute(
        self,
        text: str,
        section: Section,
        project: Project,
        *,
        substitute_input: bool = False,
        substitute_automation_id: bool = False,
    ) -> str:
        if not text:
            return ""

        values: Dict[str, str] = {}

        def value(token: str) -> Optional[str]:
            if token in values:
                return values[token]
            if token == "CASE":
                v = str(project.case or "")
            elif token == "MODIFIERS":
                v = ", ".join(section.modifiers) or "none"
            elif token in ("PREVIOUS_OUTPUT", "PREVIOUS_STEP"):
                values["PREVIOUS_OUTPUT"], values["PREVIOUS_STEP"] = self._previous(project, section)
                return values[token]
            elif token == "PREVIOUS_STEPS":
                v = previous_steps_summary(project, section)
            elif token == "INPUT_SOURCES":
                v = self._input_sources(project, section)
            elif token in ("USER_INPUT", "INPUT"):
                if not substitute_input:
                    return None
                v = section.input or ""
            elif token == "AUTOMATION_ID":
                if not substitute_automation_id:
                    return None
                v = section.automation_id or derived_automation_id(project.id, section.section_id)
            elif token == "EXISTING_FEATURES":
                v = project.case_chain.previous_case_output if project.case_chain else ""
            elif token == "PROCESS_STEP_TRIGGERS":
                v = self._triggers(project, section)
            elif token == "WORKFLOW_CONTEXT":
                v = workflow_context(project, section)
            elif token == "USER_DESCRIPTION":
                v = section.input or project.user_description or ""
            elif token == "VTT_TRANSCRIPT":
                v = section.vtt_transcript or project.vtt_transcript or ""
            elif token == "UX_SPECIFICATIONS":
                v = _output_where(project, lambda s: s.step_name == "ux-specification")
            elif token == "DATA_MODELS_OUTPUT":
                v = _output_where(project, lambda s: s.section_id == "data-model-inference")
            elif token == "STATE_MACHINES_OUTPUT":
                v = _output_where(project, lambda s: s.section_id == "state-machine-inference")
            elif token == "API_CONTRACTS_OUTPUT":
                v = _output_where(project, lambda s: s.section_id == "api-contract-inference")
            elif token == "ATOMIC_FEATURES_OUTPUT":
                v = _output_where(project, lambda s: s.step_name == "atomic-features")
            else:
                return None
            values[token] = v
            return v

        automation_dir = (project.automation_directory or "").strip()

        def _replace(m: re.Match) -> str:
            if m.group("token"):
                v = value(m.group("token"))
                return m.group(0) if v is None else v
            if m.group("legacy"):
                ref = m.group("legacy")
                target = project.get_section(legacy_section_id(ref))
                if target is not None and target.output:
                    return target.output
                return f"[OUTPUT_FROM_SECTION_{ref} - NOT FOUND]"
            # {AUTOMATION_DIR} with optional /subdir suffix
            if automation_dir:
                return automation_dir
            return DEFAULT_AUTOMATION_DIR + (m.group("subdir") or "")

        return _RE_PLACEHOLDER.sub(_replace, text)
