"""Version comparison and Guidelines validation."""

import re
from typing import Any, Dict, List

from twoloop_kernel.models.policy import (
    GuidelinesContent,
    PolicyDiff,
    PolicyVersion,
    SectionDiff,
    ValidationReport,
)

_TEMPLATE_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _by_id(items: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {item["id"]: item for item in items if isinstance(item, dict) and "id" in item}


def diff_sections(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, SectionDiff]:
    """Items are matched across versions by id within each section."""
    sections: Dict[str, SectionDiff] = {}
    for name in sorted(set(old) | set(new)):
        before = _by_id(old.get(name) or [])
        after = _by_id(new.get(name) or [])
        section = SectionDiff(
            added=[i for i in after if i not in before],
            modified=[i for i in after if i in before and after[i] != before[i]],
            removed=[i for i in before if i not in after],
        )
        if section.added or section.modified or section.removed:
            sections[name] = section
    return sections


def compare_versions(old: PolicyVersion, new: PolicyVersion) -> PolicyDiff:
    sections = diff_sections(old.content, new.content)
    added = sum(len(s.added) for s in sections.values())
    modified = sum(len(s.modified) for s in sections.values())
    removed = sum(len(s.removed) for s in sections.values())

    summary = "No changes"
    if added or modified or removed:
        summary = f"{added} added, {modified} modified, {removed} removed"

    return PolicyDiff(
        kind=new.kind,
        from_version=old.version,
        to_version=new.version,
        sections=sections,
        summary=summary,
    )


def validate_guidelines(content: GuidelinesContent) -> ValidationReport:
    """Structural checks run before a Guidelines draft is stored."""
    errors: List[str] = []
    warnings: List[str] = []

    for section in ("workflows", "templates", "decision_trees", "constraints"):
        seen = set()
        for item in getattr(content, section):
            if item.id in seen:
                errors.append(f"{section}: duplicate id '{item.id}'")
            seen.add(item.id)

    for workflow in content.workflows:
        if not workflow.stages:
            warnings.append(f"Workflow '{workflow.id}' has no stages")
        stage_ids = {s.id for s in workflow.stages}
        for stage in workflow.stages:
            if stage.next_stage_id and stage.next_stage_id not in stage_ids:
                errors.append(
                    f"Workflow '{workflow.id}' stage '{stage.id}' points to "
                    f"unknown stage '{stage.next_stage_id}'"
                )

    for template in content.templates:
        if not template.body.strip():
            errors.append(f"Template '{template.id}' has an empty body")
        used = set(_TEMPLATE_VAR.findall(template.body + (template.subject or "")))
        undeclared = sorted(used - set(template.variables))
        if undeclared:
            warnings.append(
                f"Template '{template.id}' uses undeclared variables: {', '.join(undeclared)}"
            )

    for tree in content.decision_trees:
        if tree.root_node_id not in tree.nodes:
            errors.append(f"Decision tree '{tree.id}' root '{tree.root_node_id}' not found")
        for node in tree.nodes.values():
            for target in node.children.values():
                if target not in tree.nodes:
                    errors.append(
                        f"Decision tree '{tree.id}' node '{node.id}' points to unknown node '{target}'"
                    )

    for constraint in content.constraints:
        if constraint.type == "rate_limit" and "max_per_day" not in constraint.config \
                and "max_per_hour" not in constraint.config:
            warnings.append(f"Rate limit '{constraint.id}' has no limit configured")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)
