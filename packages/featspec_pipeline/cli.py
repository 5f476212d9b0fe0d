#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from featspec_common.backend_client import BackendClient
from featspec_common.config import load_settings
from featspec_common.fetch import TextFetcher
from featspec_common.paths import project_path
from featspec_pipeline.assembler import AssemblyOptions, PromptAssembler
from featspec_pipeline.executor import PipelineExecutor
from featspec_pipeline.graph import PipelineGraph
from featspec_pipeline.models import CaseChain, load_project, save_project
from featspec_pipeline.outputs import HttpOutputWriter, LocalOutputWriter
from featspec_pipeline.process_steps import available_process_steps, invoke_process_step
from featspec_pipeline.references import ReferenceCatalog
from featspec_pipeline.templates import TemplateStore
from featspec_pipeline.workflow import PipelineConfig, build_project


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Feature-spec pipeline: assemble prompts and run sections.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--project", required=True, help="Project JSON path or project id (under workspaces/projects)")
    common.add_argument("--config", help="Pipeline config YAML (default: packaged pipeline_config.yaml)")

    init_p = sub.add_parser("init", parents=[common], help="Create a project file for a case")
    init_p.add_argument("--case", type=int, required=True, help="Case number (1-7)")
    init_p.add_argument("--name", default="", help="Project name (default: case name)")
    init_p.add_argument("--scope-dir", help="Scope directory passed to the backend")
    init_p.add_argument("--automation-dir", help="Directory the backend writes outputs into")
    init_p.add_argument("--previous-case", type=int, help="Continue from this case (case chaining)")
    init_p.add_argument("--previous-output", help="File with the previous case's output")
    init_p.add_argument("--description", default="", help="User description of the product")
    init_p.add_argument("--force", action="store_true", help="Overwrite an existing project file")

    sub.add_parser("status", parents=[common], help="Show sections and progress")
    sub.add_parser("next", parents=[common], help="Show the first runnable section")

    prompt_p = sub.add_parser("prompt", parents=[common], help="Print the assembled prompt of a section")
    prompt_p.add_argument("--section", required=True, help="Section id")
    prompt_p.add_argument("--with-input", action="store_true", help="Substitute {USER_INPUT}/{INPUT}")
    prompt_p.add_argument("--with-automation-id", action="store_true", help="Substitute {AUTOMATION_ID}")
    prompt_p.add_argument("--no-references", action="store_true", help="Skip reference-document excerpts")
    prompt_p.add_argument("--hint", action="store_true", help="Print the input hint as JSON instead of the prompt")

    run_p = sub.add_parser("run", parents=[common], help="Execute pending sections against the backend")
    run_p.add_argument("--scope-dir", help="Override the scope directory for this run")
    run_p.add_argument("--section", action="append", help="Only run these section ids (repeatable)")
    run_p.add_argument("--backend-url", help="Backend base URL (env: FEATSPEC_BACKEND_URL)")
    run_p.add_argument("--local-save", action="store_true", help="Write outputs locally instead of via the backend")

    ps_p = sub.add_parser("process-step", parents=[common], help="Attach a process step to a section")
    ps_p.add_argument("--section", required=True, help="Parent section id")
    ps_p.add_argument("--type", dest="process_step_type", help="Process step type (omit to list available)")
    ps_p.add_argument("--print-prompt", action="store_true", help="Print the process-step prompt without attaching it")

    return parser.parse_args(argv)


def _resolve_project_path(raw: str) -> Path:
    p = Path(raw).expanduser()
    if p.suffix == ".json" or p.exists():
        return p
    return project_path(raw)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings()
    config = PipelineConfig.load(args.config)
    path = _resolve_project_path(args.project)

    if args.command == "init":
        if path.exists() and not args.force:
            raise SystemExit(f"Error: project file already exists: {path} (use --force to overwrite)")
        chain = None
        if args.previous_case:
            previous_output = Path(args.previous_output).read_text(encoding="utf-8") if args.previous_output else ""
            chain = CaseChain(previous_case=args.previous_case, current_case=args.case, previous_case_output=previous_output)
        project = build_project(
            config,
            args.case,
            name=args.name,
            scope_directory=args.scope_dir,
            automation_directory=args.automation_dir,
            case_chain=chain,
            user_description=args.description,
            project_id=path.stem,
        )
        if not project.sections:
            raise SystemExit(f"Error: case {args.case} is not defined in the pipeline config")
        save_project(project, path)
        print(json.dumps({"project": str(path), "sections": [s.section_id for s in project.sections]}, ensure_ascii=False, indent=2))
        return 0

    project = load_project(path)
    graph = PipelineGraph(project)

    if args.command == "status":
        out = {
            "id": project.id,
            "name": project.name,
            "case": project.case,
            "case_name": config.case_display_name(project.case),
            "progress": graph.progress().as_dict(),
            "sections": [
                {"id": s.section_id, "name": s.display_name, "status": s.status, "dependencies": s.dependencies}
                for s in project.sections
            ],
        }
        print(json.dumps(out, ensure_ascii=False, indent=2))
        return 0

    if args.command == "next":
        section = graph.first_runnable()
        print(section.section_id if section else "(all sections complete)")
        return 0

    fetcher = TextFetcher(settings.reference_root, timeout_s=settings.fetch_timeout_s)
    templates = TemplateStore(fetcher)
    references = ReferenceCatalog(fetcher)
    assembler = PromptAssembler(templates, references, config)

    if args.command == "prompt":
        section = project.get_section(args.section)
        if section is None:
            raise SystemExit(f"Error: section not found: {args.section}")
        if args.hint:
            hint = {"hint": assembler.input_hint(section), "needs_input": assembler.section_needs_input(section)}
            print(json.dumps(hint, ensure_ascii=False, indent=2))
            return 0
        prompt = assembler.assemble(
            section,
            project,
            AssemblyOptions(
                substitute_input=args.with_input,
                substitute_automation_id=args.with_automation_id,
                inject_references=not args.no_references,
            ),
        )
        if prompt is None:
            raise SystemExit(f"Error: no template found for section {section.section_id}")
        sys.stdout.write(prompt + "\n")
        return 0

    if args.command == "process-step":
        section = project.get_section(args.section)
        if section is None:
            raise SystemExit(f"Error: section not found: {args.section}")
        if not args.process_step_type:
            triggers = available_process_steps(project, section, config)
            print(json.dumps([{"name": t.name, "required": t.required} for t in triggers], indent=2))
            return 0
        if args.print_prompt:
            prompt = assembler.process_step_prompt(args.process_step_type, section, project)
            if prompt is None:
                raise SystemExit(f"Error: process step not found: {args.process_step_type}")
            sys.stdout.write(prompt + "\n")
            return 0
        step = invoke_process_step(project, section.section_id, args.process_step_type, config)
        save_project(project, path)
        print(step.section_id)
        return 0

    if args.command == "run":
        client = BackendClient(args.backend_url or settings.backend_url)
        writer = LocalOutputWriter() if args.local_save else HttpOutputWriter(client)
        executor = PipelineExecutor(
            assembler,
            client,
            writer=writer,
            scope_directory=settings.scope_directory,
        )
        report = executor.start(project, args.scope_dir, section_ids=args.section)
        save_project(project, path)
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
        return 0 if report.ok else 1

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    sys.exit(main())
