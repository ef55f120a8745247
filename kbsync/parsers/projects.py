"""Scan the knowledge base for project descriptors.

Expected layout::

    <root>/<org>/projects/<slug>/README.md          folder project
    <root>/<org>/projects/<slug>/<sub>.md           sub-project (type: sub-project)
    <root>/<org>/projects/<slug>/<sub>/README.md    nested sub-project
    <root>/<org>/projects/<slug>.md                 standalone project

Sub-projects reference their parent by slug. The ancestor chain
(`parentPath`, e.g. "alpha/docs") tells apart same-named parents.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterator, Optional

from kbsync import config
from kbsync.models import ProjectInfo, ScanResult
from kbsync.observability import record_parser_failure
from kbsync.parsers.frontmatter import FrontmatterParseError, first_heading, read_frontmatter

logger = logging.getLogger("kbsync.scanner")

PROJECT_MARKER = "README.md"
PROJECTS_DIRNAME = "projects"
SUB_PROJECT_TYPE = "sub-project"

IGNORED_DIRS = frozenset({
    "node_modules",
    "venv",
    ".venv",
    "__pycache__",
    ".git",
    ".hg",
    ".svn",
})
# Markdown files inside a project folder that are never sub-projects
_RESERVED_FILES = frozenset({PROJECT_MARKER, "next-steps.md"})
_WORD_START = re.compile(r"\b\w")


def _is_ignored(path: Path) -> bool:
    return path.name.startswith(".") or path.name in IGNORED_DIRS


def _humanize_slug(slug: str) -> str:
    return _WORD_START.sub(lambda m: m.group(0).upper(), slug.replace("-", " "))


def normalize_priority(value: Any) -> Optional[int]:
    """Return a priority in 1..4, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        token = value.strip()
        if not token.isdigit():
            return None
        value = int(token)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and 1 <= value <= 4:
        return value
    return None


def _text_field(fm: dict[str, Any], key: str) -> str:
    value = fm.get(key)
    if value is None:
        return ""
    return str(value).strip()


class ProjectScanner:
    """Lazy, restartable traversal of the knowledge base.

    Every call to ``iter()`` starts a fresh pass and resets ``warnings``.
    """

    def __init__(self, root: Path | None = None, max_depth: int | None = None):
        self.root = Path(root) if root is not None else config.KNOWLEDGE_BASE_PATH
        self.max_depth = max(1, max_depth if max_depth is not None else config.SCAN_MAX_DEPTH)
        self.warnings: list[str] = []

    def __iter__(self) -> Iterator[ProjectInfo]:
        self.warnings = []
        return self._walk()

    def org_dirs(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return [
            entry
            for entry in sorted(self.root.iterdir())
            if entry.is_dir() and not _is_ignored(entry) and (entry / PROJECTS_DIRNAME).is_dir()
        ]

    def _walk(self) -> Iterator[ProjectInfo]:
        if not self.root.is_dir():
            self._warn(f"Knowledge base root not found: {self.root}")
            return
        for org_dir in self.org_dirs():
            projects_dir = org_dir / PROJECTS_DIRNAME
            try:
                entries = sorted(projects_dir.iterdir())
            except OSError as exc:
                self._warn(f"Cannot read {projects_dir}: {exc}")
                continue
            for entry in entries:
                if _is_ignored(entry):
                    continue
                if entry.is_dir():
                    yield from self._walk_project_dir(entry, org_dir.name, parent_path=None, depth=1)
                elif entry.suffix == ".md" and "research-prompt" not in entry.name:
                    project = self._parse(entry, entry.stem, org_dir.name)
                    if project:
                        yield project

    def _walk_project_dir(
        self,
        project_dir: Path,
        org: str,
        parent_path: Optional[str],
        depth: int,
    ) -> Iterator[ProjectInfo]:
        marker = project_dir / PROJECT_MARKER
        if not marker.is_file():
            return
        project = self._parse(marker, project_dir.name, org, parent_path=parent_path)
        if project is None:
            return
        yield project

        try:
            entries = sorted(project_dir.iterdir())
        except OSError as exc:
            self._warn(f"Cannot read {project_dir}: {exc}")
            return

        for entry in entries:
            if _is_ignored(entry):
                continue
            if entry.is_file() and entry.suffix == ".md" and entry.name not in _RESERVED_FILES:
                sub = self._parse(entry, entry.stem, org, parent_path=project.path, require_sub_type=True)
                if sub:
                    yield sub
            elif entry.is_dir():
                if depth + 1 > self.max_depth:
                    logger.debug("Depth limit reached at %s", entry)
                    continue
                yield from self._walk_project_dir(entry, org, parent_path=project.path, depth=depth + 1)

    def _parse(
        self,
        path: Path,
        default_slug: str,
        org: str,
        parent_path: Optional[str] = None,
        require_sub_type: bool = False,
    ) -> ProjectInfo | None:
        try:
            text = path.read_text(encoding="utf-8")
            fm, body = read_frontmatter(text, path)
        except (OSError, UnicodeDecodeError) as exc:
            self._warn(f"Cannot read {path}: {exc}")
            return None
        except FrontmatterParseError as exc:
            self._warn(str(exc))
            return None

        if require_sub_type and _text_field(fm, "type") != SUB_PROJECT_TYPE:
            return None

        slug = _text_field(fm, "slug") or default_slug
        name = _text_field(fm, "title") or first_heading(body) or _humanize_slug(slug)
        description = _text_field(fm, "description") or None
        return ProjectInfo(
            slug=slug,
            name=name,
            org=org,
            status=_text_field(fm, "status"),
            priority=normalize_priority(fm.get("priority")),
            description=description,
            isSubProject=parent_path is not None,
            parentSlug=parent_path.rsplit("/", 1)[-1] if parent_path else None,
            parentPath=parent_path,
            sourcePath=str(path),
        )

    def _warn(self, message: str) -> None:
        logger.warning("Scan warning: %s", message)
        record_parser_failure("frontmatter", project_id=self.root.name)
        self.warnings.append(message)


def scan_projects(root: Path | None = None, max_depth: int | None = None) -> ScanResult:
    """Scan the knowledge base and return all project descriptors plus warnings."""
    scanner = ProjectScanner(root, max_depth=max_depth)
    projects = list(scanner)
    return ScanResult(projects=projects, warnings=list(scanner.warnings))
