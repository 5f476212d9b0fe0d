from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from featspec_pipeline.models import COMPLETE, Project, Section
from featspec_pipeline.placeholders import OUTPUT_SEPARATOR, workflow_context


@dataclass(frozen=True)
class DependencyCheck:
    met: bool
    missing: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Progress:
    complete: int
    total: int

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.complete * 100 / self.total)

    def as_dict(self) -> Dict[str, int]:
        return {"percentage": self.percentage, "complete": self.complete, "total": self.total}


class PipelineGraph:
    """
    Read-only view over a project's sections.

    Dependencies are explicit per section; project order is the positional
    fallback when a section declares none.
    """

    def __init__(self, project: Project) -> None:
        self.project = project

    @property
    def sections(self) -> List[Section]:
        return self.project.sections

    def section(self, section_id: str) -> Optional[Section]:
        return self.project.get_section(section_id)

    def dependencies_of(self, section: Section) -> List[Section]:
        """Declared dependencies in declared order; ids with no section are skipped."""
        out: List[Section] = []
        for dep_id in section.dependencies:
            dep = self.project.get_section(dep_id)
            if dep is not None:
                out.append(dep)
        return out

    def next_section(self, section_id: str) -> Optional[Section]:
        idx = self.project.index_of(section_id)
        if 0 <= idx < len(self.sections) - 1:
            return self.sections[idx + 1]
        return None

    def previous_section(self, section_id: str) -> Optional[Section]:
        idx = self.project.index_of(section_id)
        if idx > 0:
            return self.sections[idx - 1]
        return None

    def check_dependencies(self, section_id: str) -> DependencyCheck:
        section = self.section(section_id)
        if section is None or not section.dependencies:
            return DependencyCheck(met=True)
        missing = [dep.section_id for dep in self.dependencies_of(section) if dep.status != COMPLETE]
        return DependencyCheck(met=not missing, missing=missing)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def missing_dependency_refs(self) -> List[Tuple[str, str]]:
        """(section_id, dependency_id) for every edge pointing at an absent section."""
        ids = {s.section_id for s in self.sections}
        return [(s.section_id, dep) for s in self.sections for dep in s.dependencies if dep not in ids]

    def find_cycle(self) -> Optional[List[str]]:
        ids = {s.section_id for s in self.sections}
        edges = {s.section_id: [d for d in s.dependencies if d in ids] for s in self.sections}
        state: Dict[str, int] = {}
        stack: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            state[node] = 1
            stack.append(node)
            for dep in edges.get(node, []):
                if state.get(dep) == 1:
                    return stack[stack.index(dep):] + [dep]
                if dep not in state:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            state[node] = 2
            return None

        for s in self.sections:
            if s.section_id not in state:
                found = visit(s.section_id)
                if found:
                    return found
        return None

    # ------------------------------------------------------------------
    # Run planning
    # ------------------------------------------------------------------

    def pending_sections(self) -> List[Section]:
        return [s for s in self.sections if not s.is_finished]

    def first_runnable(self) -> Optional[Section]:
        for s in self.pending_sections():
            if self.check_dependencies(s.section_id).met:
                return s
        return None

    def derive_input(self, section: Section) -> str:
        """
        User input if present, else dependency outputs joined in declared order
        (sections with no dependencies fall back to the preceding section's output).
        """
        if section.input and section.input.strip():
            return section.input
        if section.dependencies:
            return OUTPUT_SEPARATOR.join(dep.output for dep in self.dependencies_of(section) if dep.output)
        prev = self.previous_section(section.section_id)
        if prev is not None and prev.output:
            return prev.output
        return ""

    def workflow_context(self, section: Section) -> str:
        return workflow_context(self.project, section)

    def progress(self) -> Progress:
        done = sum(1 for s in self.sections if s.status == COMPLETE)
        return Progress(complete=done, total=len(self.sections))
