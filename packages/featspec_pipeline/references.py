from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from featspec_common.fetch import TextFetcher, fetch_first
from featspec_common.paths import reference_source

logger = logging.getLogger(__name__)

REFERENCE_BASE_CANDIDATES: Tuple[str, ...] = (
    "reference/",
    "./reference/",
    "../feat-spec/reference/",
    "/feat-spec/reference/",
)

FEATURE_SPEC_REFERENCE = "feature-spec-reference"
PIPELINE_TEMPLATE = "pipeline-template"

DOCUMENT_PATHS: Dict[str, str] = {
    FEATURE_SPEC_REFERENCE: "feature-spec-reference.md",
    PIPELINE_TEMPLATE: "master-pipeline-template.md",
}
DOCUMENT_NAMES: Dict[str, str] = {
    FEATURE_SPEC_REFERENCE: "Feature Specification Reference (Complete)",
    PIPELINE_TEMPLATE: "Master Pipeline Template",
}

PART_TERMINOLOGY = "Part 1: Terminology"
PART_TAXONOMY = "Part 2: Feature Taxonomy"
PART_DEPENDENCIES = "Part 3: Dependency Mapping"
PART_QUALITY = "Part 4: Quality Metrics & Validation"

# Old per-topic document keys -> part of the consolidated reference.
LEGACY_DOCUMENT_PARTS: Dict[str, Tuple[str, str]] = {
    "master-terminology": (FEATURE_SPEC_REFERENCE, PART_TERMINOLOGY),
    "feature-taxonomy": (FEATURE_SPEC_REFERENCE, PART_TAXONOMY),
    "dependency-mapping": (FEATURE_SPEC_REFERENCE, PART_DEPENDENCIES),
    "quality-metrics": (FEATURE_SPEC_REFERENCE, PART_QUALITY),
    "validation-rules": (FEATURE_SPEC_REFERENCE, PART_QUALITY),
}

_BOTH = [FEATURE_SPEC_REFERENCE, PIPELINE_TEMPLATE]
SECTION_DOCUMENTS: Dict[str, List[str]] = {
    "research-initial": [PIPELINE_TEMPLATE],
    "discovery-inventory": [PIPELINE_TEMPLATE],
}

MAX_PART_CHARS = 8000
TRUNCATION_MARKER = "\n\n... (content truncated, see full document) ..."

_RE_TERM_LINE = re.compile(r"^-\s+\*\*(\w+)\*\*:\s+(.+)$")


@dataclass(frozen=True)
class SearchHit:
    document: str
    document_name: str
    line: int
    content: str
    context: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document,
            "document_name": self.document_name,
            "line": self.line,
            "content": self.content,
            "context": self.context,
        }


def extract_part(document: str, part_heading: str) -> Optional[str]:
    """
    Return the `## <part_heading>` block up to the next `## Part ` heading.

    Blocks over MAX_PART_CHARS are cut and marked as truncated.
    """
    if not document:
        return None
    pattern = re.compile(rf"## {re.escape(part_heading)}[\s\S]*?(?=\n## Part |\Z)", re.IGNORECASE)
    m = pattern.search(document)
    if not m:
        return None
    part = m.group(0)
    if len(part) > MAX_PART_CHARS:
        part = part[:MAX_PART_CHARS] + TRUNCATION_MARKER
    return part


def _context(lines: List[str], idx: int, radius: int = 2) -> str:
    start = max(0, idx - radius)
    end = min(len(lines), idx + radius + 1)
    return "\n".join(lines[start:end])


class ReferenceCatalog:
    def __init__(
        self,
        fetcher: Any = None,
        *,
        root: Optional[str] = None,
        base_candidates: Tuple[str, ...] = REFERENCE_BASE_CANDIDATES,
        document_paths: Optional[Dict[str, str]] = None,
    ) -> None:
        if fetcher is None:
            fetcher = TextFetcher(root if root is not None else reference_source())
        self.fetcher = fetcher
        self.base_candidates = tuple(base_candidates)
        self.document_paths = dict(document_paths or DOCUMENT_PATHS)
        self._documents: Dict[str, str] = {}
        self._load_lock = threading.Lock()
        self._loaded = False

    def load_all(self) -> Dict[str, str]:
        """
        Fetch every catalog document once.

        Concurrent callers block on the in-flight load. Documents that could not
        be fetched stay absent until `reload()`.
        """
        if self._loaded:
            return self._documents
        with self._load_lock:
            if self._loaded:
                return self._documents
            for key, relative_path in self.document_paths.items():
                content = fetch_first(self.fetcher, relative_path, self.base_candidates)
                if content:
                    self._documents[key] = content
                else:
                    logger.warning("reference document unavailable: %s", key)
            self._loaded = True
        return self._documents

    def reload(self) -> Dict[str, str]:
        with self._load_lock:
            self._documents = {}
            self._loaded = False
        return self.load_all()

    def get_document(self, key: str) -> Optional[str]:
        return self.load_all().get(key)

    def get_document_name(self, key: str) -> str:
        return DOCUMENT_NAMES.get(key, key)

    def extract_part(self, document: str, part_heading: str) -> Optional[str]:
        return extract_part(document, part_heading)

    def get_part(self, part_heading: str, key: str = FEATURE_SPEC_REFERENCE) -> Optional[str]:
        document = self.get_document(key)
        if not document:
            return None
        return extract_part(document, part_heading)

    def resolve_legacy_key(self, key: str) -> Optional[str]:
        """Old per-topic keys map onto a part of the consolidated reference."""
        if key in self.document_paths:
            return self.get_document(key)
        mapped = LEGACY_DOCUMENT_PARTS.get(key)
        if not mapped:
            return None
        doc_key, part = mapped
        return self.get_part(part, doc_key)

    def search(self, query: str) -> List[SearchHit]:
        needle = (query or "").lower()
        if not needle:
            return []
        hits: List[SearchHit] = []
        for key, content in self.load_all().items():
            lines = content.split("\n")
            for i, line in enumerate(lines):
                if needle in line.lower():
                    hits.append(
                        SearchHit(
                            document=key,
                            document_name=self.get_document_name(key),
                            line=i + 1,
                            content=line.strip(),
                            context=_context(lines, i),
                        )
                    )
        return hits

    def terminology_terms(self) -> List[Dict[str, str]]:
        content = self.get_document(FEATURE_SPEC_REFERENCE)
        if not content:
            return []
        terms: List[Dict[str, str]] = []
        inside = False
        for line in content.split("\n"):
            if f"## {PART_TERMINOLOGY}" in line:
                inside = True
                continue
            if line.startswith("## Part 2:"):
                break
            if inside:
                m = _RE_TERM_LINE.match(line)
                if m:
                    terms.append({"term": m.group(1), "definition": m.group(2)})
        return terms

    def relevant_documents(self, section_id: str) -> List[str]:
        return list(SECTION_DOCUMENTS.get(section_id, _BOTH))
