"""
File-backed skill catalog.

Each skill lives in `skills/<dir>/SKILL.md`, optionally opening with a
`---` frontmatter block of `key: value` lines. Only the name and
description are surfaced in the prompt; the body is fetched on demand.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

_FRONTMATTER = re.compile(r"^---\n(.*?)\n---\n?(.*)$", re.DOTALL)

CATALOG_HINT = (
    "Use the `read_skill` tool to load a skill's full instructions "
    "when it is relevant to the user's request."
)


@dataclass(frozen=True)
class SkillInfo:
    name: str
    description: str
    content: str


def parse_frontmatter(raw: str) -> Tuple[Dict[str, str], str]:
    match = _FRONTMATTER.match(raw)
    if not match:
        return {}, raw
    meta: Dict[str, str] = {}
    for line in match.group(1).split("\n"):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        meta[key.strip()] = value.strip()
    return meta, match.group(2).strip()


def get_installed_skills(skills_dir: Path) -> List[SkillInfo]:
    """Skills sorted by directory name. Directories without SKILL.md are skipped."""
    skills_dir = Path(skills_dir)
    if not skills_dir.is_dir():
        return []

    skills: List[SkillInfo] = []
    for entry in sorted(skills_dir.iterdir(), key=lambda path: path.name):
        skill_file = entry / "SKILL.md"
        if not entry.is_dir() or not skill_file.is_file():
            continue
        raw = skill_file.read_text(encoding="utf-8").strip()
        if not raw:
            continue
        meta, body = parse_frontmatter(raw)
        skills.append(
            SkillInfo(
                name=meta.get("name") or entry.name,
                description=meta.get("description", ""),
                content=body,
            )
        )
    return skills


def read_skill(skills_dir: Path, name: str) -> str:
    for skill in get_installed_skills(skills_dir):
        if skill.name == name:
            return skill.content
    return f'Skill not found: "{name}". Use /skills to see installed skills.'


def render_catalog(skills: List[SkillInfo]) -> str:
    """The prompt section listing installed skills; empty when there are none."""
    if not skills:
        return ""
    lines = ["# Available Skills", "", CATALOG_HINT, ""]
    for skill in skills:
        lines.append(f"- **{skill.name}**: {skill.description}")
    return "\n".join(lines)
