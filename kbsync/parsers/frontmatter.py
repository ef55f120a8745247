"""Read and write YAML frontmatter in knowledge-base markdown files."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)", re.DOTALL)
_H1_RE = re.compile(r"^# (.+)$", re.MULTILINE)


class FrontmatterParseError(ValueError):
    """Raised when markdown frontmatter exists but is not valid YAML mapping."""


def split_frontmatter(text: str) -> tuple[str | None, str]:
    """Split a markdown file into (frontmatter_text, body).

    Returns (None, full_text) if no frontmatter is found.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), match.group(2)


def _rebuild_file(fm_dict: dict, body: str) -> str:
    """Reconstruct a markdown file from frontmatter dict + body."""
    fm_text = yaml.dump(fm_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return f"---\n{fm_text}---\n{body}"


def load_frontmatter_dict(fm_text: str, file_path: Path) -> dict[str, Any]:
    """Parse YAML frontmatter and ensure it is a mapping."""
    try:
        parsed = yaml.safe_load(fm_text) or {}
    except yaml.YAMLError as exc:
        raise FrontmatterParseError(f"Invalid YAML frontmatter in {file_path}") from exc
    if not isinstance(parsed, dict):
        raise FrontmatterParseError(f"Expected mapping frontmatter in {file_path}")
    return parsed


def read_frontmatter(text: str, file_path: Path) -> tuple[dict[str, Any], str]:
    """Return (frontmatter, body). Files without frontmatter yield ``{}``.

    Raises FrontmatterParseError for a present but malformed block.
    """
    fm_text, body = split_frontmatter(text)
    if fm_text is None:
        return {}, body
    return load_frontmatter_dict(fm_text, file_path), body


def first_heading(body: str) -> str:
    match = _H1_RE.search(body or "")
    return match.group(1).strip() if match else ""


def update_frontmatter_field(file_path: Path, field: str, value: Any) -> bool:
    """Update a top-level field in a markdown file's YAML frontmatter.

    Reads the file, modifies the field, and writes back preserving the body.
    Returns False when the field already held ``value`` and nothing was written.
    """
    text = file_path.read_text(encoding="utf-8")
    fm_text, body = split_frontmatter(text)

    if fm_text is None:
        # No frontmatter — create one with just this field
        fm_dict: dict[str, Any] = {field: value}
    else:
        fm_dict = load_frontmatter_dict(fm_text, file_path)
        if fm_dict.get(field) == value:
            return False
        fm_dict[field] = value

    file_path.write_text(_rebuild_file(fm_dict, body), encoding="utf-8")
    return True
