"""
featspec_pipeline.workflow

Case-based workflow definition loaded from `pipeline_config.yaml`.

- Which steps a case runs, in which order, with which modifiers.
- Case chaining: a project that continues from an earlier case gets extra
  per-step modifiers (`case_chaining["<prev>-><cur>"]`), merged by the
  modifier-layering priority (base modifiers first, then layering ones).
- Process-step triggers and inference steps per case.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from featspec_common.config import load_yaml_with_overlay
from featspec_pipeline.models import (
    CaseChain,
    Project,
    Section,
    new_automation_id,
    new_project_id,
    utc_now_iso,
)


DEFAULT_INPUT_SOURCES: Dict[int, str] = {
    1: "Source code files, documentation, implementation details, API specifications",
    2: "Running application UI, user interactions, visual elements, interaction patterns",
    3: "User-provided descriptions, VTT transcripts, unstructured text input",
}
FALLBACK_INPUT_SOURCES = "Available input sources"
ENHANCEMENT_MODIFIER = "enhancement-input"
ENHANCEMENT_SUFFIX = ", plus existing feature documentation from previous case"


def describe_input_sources(
    case: Optional[int],
    modifiers: Sequence[str],
    overrides: Optional[Dict[int, str]] = None,
) -> str:
    table = dict(DEFAULT_INPUT_SOURCES)
    table.update(overrides or {})
    text = table.get(case, FALLBACK_INPUT_SOURCES) if case is not None else FALLBACK_INPUT_SOURCES
    if ENHANCEMENT_MODIFIER in (modifiers or []):
        text += ENHANCEMENT_SUFFIX
    return text


@dataclass(frozen=True)
class CaseInfo:
    number: int
    name: str
    description: str = ""


@dataclass(frozen=True)
class ProcessStepTrigger:
    name: str
    required: bool = False

    def as_line(self) -> str:
        return f"- {self.name} ({'required' if self.required else 'optional'})"


@dataclass(frozen=True)
class InferenceStep:
    name: str
    after: Optional[str] = None


def _uniq(items: Sequence[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


class PipelineConfig:
    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = data if data is not None else {}

    @classmethod
    def load(cls, path: Path | str | None = None) -> "PipelineConfig":
        return cls(load_yaml_with_overlay(path))

    @property
    def raw(self) -> Dict[str, Any]:
        return self._data

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def case_config(self, case: Optional[int]) -> Optional[Dict[str, Any]]:
        if case is None:
            return None
        cases = self._data.get("cases") or {}
        cfg = cases.get(case)
        if cfg is None:
            cfg = cases.get(str(case))
        return cfg if isinstance(cfg, dict) else None

    def all_cases(self) -> List[CaseInfo]:
        out: List[CaseInfo] = []
        for key, cfg in (self._data.get("cases") or {}).items():
            if not isinstance(cfg, dict):
                continue
            out.append(CaseInfo(number=int(key), name=str(cfg.get("name") or ""), description=str(cfg.get("description") or "")))
        return sorted(out, key=lambda c: c.number)

    def case_display_name(self, case: Optional[int]) -> str:
        cfg = self.case_config(case) or {}
        name = str(cfg.get("name") or "").strip()
        return name or f"Case {case}"

    def steps_for_case(self, case: int) -> List[str]:
        cfg = self.case_config(case) or {}
        return [str(s) for s in (cfg.get("steps") or [])]

    def is_sequential(self, case: int) -> bool:
        cfg = self.case_config(case) or {}
        return bool(cfg.get("sequential", True))

    def step_config(self, case: int, step_name: str) -> Dict[str, Any]:
        cfg = self.case_config(case) or {}
        entry = (cfg.get("workflow") or {}).get(step_name)
        if isinstance(entry, dict):
            return dict(entry)
        return {}

    # ------------------------------------------------------------------
    # Modifiers
    # ------------------------------------------------------------------

    def case_chaining_config(self, previous_case: int, current_case: int) -> Optional[Dict[str, Any]]:
        chain = (self._data.get("case_chaining") or {}).get(f"{previous_case}->{current_case}")
        return chain if isinstance(chain, dict) else None

    def apply_modifier_layering(self, base_modifiers: Sequence[str], additional: Sequence[str]) -> List[str]:
        """
        Base-priority modifiers first, then layering modifiers, duplicates removed.
        Modifiers named in neither list keep their relative order at the end.
        """
        priority = ((self._data.get("modifier_layering") or {}).get("priority")) or {}
        if not priority:
            return _uniq([*base_modifiers, *additional])
        base = set(priority.get("base") or [])
        layering = set(priority.get("layering") or [])
        combined = [*base_modifiers, *additional]
        return _uniq(
            [m for m in combined if m in base]
            + [m for m in combined if m in layering]
            + [m for m in combined if m not in base and m not in layering]
        )

    def modifiers_for_step(self, case: int, step_name: str, case_chain: Optional[CaseChain] = None) -> List[str]:
        if self.case_config(case) is None:
            return []
        modifiers = [str(m) for m in (self.step_config(case, step_name).get("modifiers") or [])]
        if case_chain and case_chain.previous_case and case_chain.current_case == case:
            chain_cfg = self.case_chaining_config(case_chain.previous_case, case) or {}
            per_step = (chain_cfg.get(f"case{case}Modifiers") or {}).get(step_name)
            if per_step:
                modifiers = self.apply_modifier_layering(modifiers, [str(m) for m in per_step])
        return modifiers

    # ------------------------------------------------------------------
    # Process / inference steps
    # ------------------------------------------------------------------

    def process_step_triggers(self, case: Optional[int], step_name: str) -> List[ProcessStepTrigger]:
        cfg = self.case_config(case) or {}
        out: List[ProcessStepTrigger] = []
        for name, ps in (cfg.get("process_steps") or {}).items():
            if not isinstance(ps, dict):
                continue
            if step_name in (ps.get("triggers") or []):
                out.append(
                    ProcessStepTrigger(
                        name=str(name),
                        required=bool(ps.get("required", False)),
                    )
                )
        return out

    def inference_steps(self, case: int) -> List[InferenceStep]:
        cfg = self.case_config(case) or {}
        return [
            InferenceStep(name=str(name), after=(inf or {}).get("after"))
            for name, inf in (cfg.get("inference") or {}).items()
        ]

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def step_display_name(self, step_name: str) -> str:
        return str((self._data.get("display_names") or {}).get(step_name) or step_name)

    def process_step_display_name(self, process_step_type: str) -> str:
        return str((self._data.get("process_step_display_names") or {}).get(process_step_type) or process_step_type)

    def input_sources_description(self, case: Optional[int], modifiers: Sequence[str]) -> str:
        overrides: Dict[int, str] = {}
        for info in self.all_cases():
            text = (self.case_config(info.number) or {}).get("input_sources")
            if text:
                overrides[info.number] = str(text)
        return describe_input_sources(case, modifiers, overrides)

    # ------------------------------------------------------------------
    # Section generation
    # ------------------------------------------------------------------

    def generate_sections_for_case(self, case: int, case_chain: Optional[CaseChain] = None) -> List[Section]:
        if self.case_config(case) is None:
            return []
        sequential = self.is_sequential(case)
        sections: List[Section] = []
        previous: Optional[str] = None
        for step_name in self.steps_for_case(case):
            step_cfg = self.step_config(case, step_name)
            sections.append(
                Section(
                    section_id=step_name,
                    section_name=self.step_display_name(step_name),
                    step_name=step_name,
                    dependencies=[previous] if (sequential and previous) else [],
                    modifiers=self.modifiers_for_step(case, step_name, case_chain),
                    specialized=step_cfg.get("specialized") or None,
                )
            )
            previous = step_name

        ids = {s.section_id for s in sections}
        last = "atomic-features"
        for inf in self.inference_steps(case):
            after = inf.after if inf.after in ids else last
            sections.append(
                Section(
                    section_id=inf.name,
                    section_name=self.step_display_name(inf.name),
                    step_name=inf.name,
                    dependencies=[after] if after in ids else [],
                    is_inference_step=True,
                )
            )
            ids.add(inf.name)
            last = inf.name
        return sections


def build_project(
    config: PipelineConfig,
    case: int,
    *,
    name: str = "",
    description: str = "",
    scope_directory: Optional[str] = None,
    automation_directory: Optional[str] = None,
    case_chain: Optional[CaseChain] = None,
    user_description: str = "",
    project_id: Optional[str] = None,
) -> Project:
    sections = config.generate_sections_for_case(case, case_chain)
    used: set[str] = set()
    for section in sections:
        section.automation_id = new_automation_id(used)
        used.add(section.automation_id)
    return Project(
        id=project_id or new_project_id(),
        sections=sections,
        case=case,
        name=name or config.case_display_name(case),
        description=description,
        scope_directory=scope_directory,
        automation_directory=automation_directory,
        case_chain=case_chain,
        user_description=user_description,
        created_at=utc_now_iso(),
    )
