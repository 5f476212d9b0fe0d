"""
featspec_pipeline.assembler

Builds the instruction text for one section:

1) base template (process step / inference step / core step)
2) modifier fragments spliced into `{INJECT_MODIFIER_CONTENT_HERE}` (core steps only)
3) specialized fragment appended
4) prompt body extracted (`**Prompt:**` fenced block, else up to `**Output Format:**`)
5) placeholders substituted
6) reference-document excerpts spliced in before `## Output Format` / `## Quality Criteria`

A missing base template yields None; callers must not execute such a section.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from featspec_pipeline.models import Project, Section
from featspec_pipeline.placeholders import OUTPUT_SEPARATOR, PlaceholderResolver
from featspec_pipeline.references import (
    FEATURE_SPEC_REFERENCE,
    PART_DEPENDENCIES,
    PART_QUALITY,
    PART_TAXONOMY,
    PART_TERMINOLOGY,
    ReferenceCatalog,
)
from featspec_pipeline.templates import TemplateStore
from featspec_pipeline.workflow import PipelineConfig

logger = logging.getLogger(__name__)

MODIFIER_SLOT = "{INJECT_MODIFIER_CONTENT_HERE}"
SPECIALIZED_HEADER = "\n\n---\n\n## Specialized Instructions\n\n"
DEFAULT_INPUT_HINT = "Enter input for this section..."

POIESIS_STEPS = frozenset({"theoria", "praxis", "doctrine", "poiesis"})
TAXONOMY_STEPS = frozenset(
    {"feature-extraction", "app-analysis", "decomposition", "atomic-features", "atomization", "iterative-refinement"}
)
QUALITY_STEPS = frozenset({"validation", "validation-loop"})

_RE_PROMPT_FENCED = re.compile(r"\*\*Prompt:\*\*\s*```(?:\w+)?\n([\s\S]*?)\n```")
_RE_PROMPT_UNTIL_FORMAT = re.compile(r"\*\*Prompt:\*\*\s*([\s\S]*?)\s*\*\*Output Format:\*\*")
_RE_REFERENCE_ANCHOR = re.compile(r"\n## Output Format|\n## Quality Criteria")
_RE_INPUT_GUIDANCE = re.compile(r"## Input Guidance\s*\n\n([\s\S]*?)(?=\n---|\n## |\Z)")
_RE_INPUT_FIELD = re.compile(r"\*\*Input\*\*:\s*([^\n]+)")
_RE_NEEDS_INPUT = re.compile(r"(paste|previous|output|from.*step|research summary|feature extraction)", re.IGNORECASE)
_RE_BULLET = re.compile(r"^[-*•]\s*")

_CRITICAL_POIESIS = (
    "**CRITICAL**: This is a Poiesis step. Use cNode/cElement terminology and philosophical/cognitive frameworks. "
    "DO NOT use software/UI terminology (action1, action2, opacity, scale, timing, etc.).\n\n"
)
_CRITICAL_DEFAULT = (
    "**CRITICAL**: You MUST use the following reference materials for consistency. "
    "All terminology, taxonomy, quality metrics, and validation rules come from these documents.\n\n"
)
_COMPLETE_REFERENCE_SUMMARY = (
    "### Complete Reference Document\n\n"
    "The complete reference document (`feature-spec-reference.md`) contains:\n"
    "- **Part 1: Terminology** - All interaction terms, visual properties, timing notation\n"
    "- **Part 2: Feature Taxonomy** - Feature classification system\n"
    "- **Part 3: Dependency Mapping** - How features relate to each other\n"
    "- **Part 4: Quality Metrics & Validation** - Checklists and validation rules\n\n"
    "**You MUST use terminology from Part 1, classify features using Part 2, "
    "and validate outputs using Part 4.**\n\n"
)


@dataclass(frozen=True)
class AssemblyOptions:
    substitute_input: bool = False
    substitute_automation_id: bool = False
    inject_references: bool = True


def extract_prompt_body(template: str) -> str:
    m = _RE_PROMPT_FENCED.search(template)
    if m:
        return m.group(1).strip()
    m = _RE_PROMPT_UNTIL_FORMAT.search(template)
    if m:
        return m.group(1).strip()
    return template


def relevant_reference_parts(step_name: str, *, is_process_step: bool = False) -> List[str]:
    parts: List[str] = []
    if step_name not in POIESIS_STEPS:
        parts.append(PART_TERMINOLOGY)
    if step_name in TAXONOMY_STEPS:
        parts.append(PART_TAXONOMY)
    if step_name in QUALITY_STEPS or is_process_step:
        parts.append(PART_QUALITY)
    if step_name == "ux-specification":
        parts.extend([PART_TAXONOMY, PART_DEPENDENCIES, PART_QUALITY])
    return list(dict.fromkeys(parts))


def build_reference_block(reference: str, step_name: str, parts: List[str], catalog: ReferenceCatalog) -> str:
    poiesis = step_name in POIESIS_STEPS
    block = "\n\n---\n\n## Required Reference Documents\n\n"
    block += _CRITICAL_POIESIS if poiesis else _CRITICAL_DEFAULT
    for part in parts:
        content = catalog.extract_part(reference, part)
        if content:
            block += f"### {part}\n\n{content}\n\n---\n\n"
    if not poiesis and parts:
        block += _COMPLETE_REFERENCE_SUMMARY
    return block


def splice_reference_block(prompt: str, block: str) -> str:
    m = _RE_REFERENCE_ANCHOR.search(prompt)
    if m:
        return prompt[: m.start()] + block + prompt[m.start():]
    return prompt + block


class PromptAssembler:
    def __init__(
        self,
        templates: TemplateStore,
        references: Optional[ReferenceCatalog] = None,
        workflow: Optional[PipelineConfig] = None,
    ) -> None:
        self.templates = templates
        self.references = references
        self.workflow = workflow
        self.resolver = PlaceholderResolver(workflow)

    # ------------------------------------------------------------------
    # Template selection
    # ------------------------------------------------------------------

    def base_template(self, section: Section) -> Optional[str]:
        if section.is_process_step and section.process_step_type:
            content = self.templates.load_process_step(section.process_step_type)
            kind = f"process step {section.process_step_type}"
        elif section.is_inference_step:
            content = self.templates.load_inference_step(section.step_key)
            kind = f"inference step {section.step_key}"
        else:
            content = self.templates.load_core_step(section.step_key)
            kind = f"core step {section.step_key}"
        if not content:
            logger.warning("Template not found: %s", kind)
            return None
        return content

    def inject_modifiers(self, template: str, modifiers: List[str], step_name: str) -> str:
        fragments = []
        for name in modifiers or []:
            content = self.templates.load_modifier(step_name, name)
            if content:
                fragments.append(content)
            else:
                logger.warning("Modifier not found: %s/%s", step_name, name)
        return template.replace(MODIFIER_SLOT, OUTPUT_SEPARATOR.join(fragments))

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(
        self,
        section: Section,
        project: Optional[Project] = None,
        options: Optional[AssemblyOptions] = None,
    ) -> Optional[str]:
        opts = options or AssemblyOptions()
        self.templates.load_template()

        prompt = self.base_template(section)
        if prompt is None:
            return None

        if not section.is_process_step and not section.is_inference_step:
            prompt = self.inject_modifiers(prompt, section.modifiers, section.step_key)

        if section.specialized:
            specialized = self.templates.load_specialized_prompt(section.specialized)
            if specialized:
                prompt = prompt + SPECIALIZED_HEADER + specialized
            else:
                logger.warning("Specialized prompt not found: %s", section.specialized)

        prompt = extract_prompt_body(prompt)

        if project is not None:
            prompt = self.resolver.substitute(
                prompt,
                section,
                project,
                substitute_input=opts.substitute_input,
                substitute_automation_id=opts.substitute_automation_id,
            )

        if opts.inject_references:
            prompt = self.inject_references(prompt, section)
        return prompt

    def inject_references(self, prompt: str, section: Section) -> str:
        if self.references is None:
            return prompt
        reference = self.references.get_document(FEATURE_SPEC_REFERENCE)
        if not reference:
            logger.warning("Feature spec reference document not found")
            return prompt
        step_name = section.step_key
        parts = relevant_reference_parts(step_name, is_process_step=section.is_process_step)
        block = build_reference_block(reference, step_name, parts, self.references)
        return splice_reference_block(prompt, block)

    def process_step_prompt(
        self,
        process_step_type: str,
        section: Optional[Section] = None,
        project: Optional[Project] = None,
    ) -> Optional[str]:
        self.templates.load_template()
        template = self.templates.load_process_step(process_step_type)
        if not template:
            logger.warning("Process step not found: %s", process_step_type)
            return None
        prompt = extract_prompt_body(template)
        if section is not None and project is not None:
            prompt = self.resolver.substitute(prompt, section, project)
        return prompt

    # ------------------------------------------------------------------
    # Input guidance
    # ------------------------------------------------------------------

    def input_guidance(self, section: Section) -> Optional[str]:
        self.templates.load_template()
        content = self.base_template(section)
        if not content:
            return None
        m = _RE_INPUT_GUIDANCE.search(content)
        if m:
            return m.group(1).strip()
        m = _RE_INPUT_FIELD.search(content)
        if m:
            return f"Enter: {m.group(1).strip()}"
        return None

    def input_hint(self, section: Section, *, max_chars: int = 80, line_limit: int = 100) -> str:
        guidance = self.input_guidance(section)
        if not guidance:
            return DEFAULT_INPUT_HINT
        lines = [ln for ln in guidance.split("\n") if ln.strip()]
        cleaned = [_RE_BULLET.sub("", ln).replace("**", "").strip() for ln in lines]
        candidate = next((c for c in cleaned if c and len(c) < line_limit), cleaned[0] if cleaned else "")
        if not candidate:
            return DEFAULT_INPUT_HINT
        if len(candidate) > max_chars:
            return candidate[: max_chars - 3] + "..."
        return candidate

    def section_needs_input(self, section: Section) -> bool:
        guidance = self.input_guidance(section)
        return bool(guidance and _RE_NEEDS_INPUT.search(guidance))
