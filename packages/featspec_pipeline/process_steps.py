from __future__ import annotations

import logging
import time
from typing import List, Optional

from featspec_pipeline.models import NOT_STARTED, Project, Section, new_automation_id, utc_now_iso
from featspec_pipeline.workflow import PipelineConfig, ProcessStepTrigger

logger = logging.getLogger(__name__)


def available_process_steps(project: Project, section: Section, config: PipelineConfig) -> List[ProcessStepTrigger]:
    if section.is_process_step:
        return []
    return config.process_step_triggers(project.case or 1, section.step_key)


def _attached_step(project: Project, parent_id: str, process_step_type: str) -> Optional[Section]:
    for s in project.sections:
        if (
            s.is_process_step
            and s.process_step_type == process_step_type
            and s.dependencies == [parent_id]
            and not s.is_finished
        ):
            return s
    return None


def invoke_process_step(
    project: Project,
    parent_id: str,
    process_step_type: str,
    config: Optional[PipelineConfig] = None,
    *,
    input_text: str = "",
) -> Section:
    """
    Attach a process step to `parent_id`.

    An unfinished step of the same type already attached to the parent is
    returned as is; otherwise a new section is inserted after the parent and
    the process steps already attached to it.
    """
    idx = project.index_of(parent_id)
    if idx < 0:
        raise KeyError(f"section not found: {parent_id}")

    existing = _attached_step(project, parent_id, process_step_type)
    if existing is not None:
        if input_text:
            existing.input = input_text
        logger.info("reusing process step %s for %s", existing.section_id, parent_id)
        return existing

    base_id = f"{process_step_type}-{int(time.time() * 1000)}"
    section_id = base_id
    n = 1
    while project.get_section(section_id) is not None:
        section_id = f"{base_id}-{n}"
        n += 1

    name = config.process_step_display_name(process_step_type) if config else process_step_type
    step = Section(
        section_id=section_id,
        section_name=name,
        step_name=process_step_type,
        status=NOT_STARTED,
        input=input_text,
        dependencies=[parent_id],
        is_process_step=True,
        process_step_type=process_step_type,
        automation_id=new_automation_id(s.automation_id for s in project.sections if s.automation_id),
        last_modified=utc_now_iso(),
    )
    insert_at = idx + 1
    while insert_at < len(project.sections):
        nxt = project.sections[insert_at]
        if not (nxt.is_process_step and nxt.dependencies == [parent_id]):
            break
        insert_at += 1
    project.insert_section(insert_at, step)
    logger.info("added process step %s after %s", step.section_id, parent_id)
    return step
