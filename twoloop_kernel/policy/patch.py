"""
Working policy — the Guidelines a Run generates from, as an immutable value.

A Run starts from the tenant's ACTIVE Guidelines and threads a
``WorkingPolicy`` through its iterations. Every change returns a new value;
nothing here is ever written back to the Policy Store.

Update paths are dotted with optional list indices: ``templates[0].body``,
``constraints[2]``, ``decision_trees[1].nodes.n3.action``.
"""

import copy
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from twoloop_kernel.errors import ValidationError
from twoloop_kernel.models.convergence import GuidelinesUpdate, UpdateOperation
from twoloop_kernel.models.policy import GuidelinesContent

STRUCTURAL_SECTIONS = ("workflows", "decision_trees")
GUIDELINES_SECTIONS = ("workflows", "templates", "decision_trees", "constraints")

_SECTION_ALIASES = {"decisionTrees": "decision_trees"}
_SEGMENT = re.compile(r"^([A-Za-z_][\w-]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")


class PolicyPatchError(ValidationError):
    """An update path cannot be applied to the policy document."""
    pass


def parse_path(path: str) -> List[Union[str, int]]:
    """Split ``a.b[2].c`` into ``["a", "b", 2, "c"]``."""
    if not path:
        raise PolicyPatchError("Empty update path")

    tokens: List[Union[str, int]] = []
    for segment in path.split("."):
        match = _SEGMENT.match(segment)
        if not match:
            raise PolicyPatchError(f"Malformed path segment '{segment}' in '{path}'")
        tokens.append(match.group(1))
        tokens.extend(int(i) for i in _INDEX.findall(match.group(2)))

    if isinstance(tokens[0], str):
        tokens[0] = _SECTION_ALIASES.get(tokens[0], tokens[0])
    return tokens


def section_of(update: GuidelinesUpdate) -> str:
    return str(parse_path(update.path)[0])


def targets_structural_section(update: GuidelinesUpdate) -> bool:
    try:
        return section_of(update) in STRUCTURAL_SECTIONS
    except PolicyPatchError:
        return False


def _child(container: Any, token: Union[str, int], path: str, create_for: Any = None) -> Any:
    if isinstance(token, int):
        if not isinstance(container, list):
            raise PolicyPatchError(f"'{path}': index {token} applied to a non-list")
        if token >= len(container):
            raise PolicyPatchError(f"'{path}': index {token} out of range")
        return container[token]

    if not isinstance(container, dict):
        raise PolicyPatchError(f"'{path}': key '{token}' applied to a non-object")
    if token not in container:
        if create_for is None:
            raise PolicyPatchError(f"'{path}': key '{token}' not found")
        container[token] = [] if isinstance(create_for, int) else {}
    return container[token]


def apply_update(document: Dict[str, Any], update: GuidelinesUpdate) -> None:
    """Apply one update to a plain-dict policy document in place."""
    tokens = parse_path(update.path)
    creating = update.operation != UpdateOperation.REMOVE

    node: Any = document
    for position, token in enumerate(tokens[:-1]):
        upcoming = tokens[position + 1] if creating else None
        node = _child(node, token, update.path, create_for=upcoming)

    last = tokens[-1]
    if update.operation == UpdateOperation.REMOVE:
        if isinstance(last, int):
            if not isinstance(node, list) or last >= len(node):
                raise PolicyPatchError(f"'{update.path}': nothing to remove")
            node.pop(last)
        else:
            if not isinstance(node, dict) or last not in node:
                raise PolicyPatchError(f"'{update.path}': nothing to remove")
            del node[last]
        return

    value = copy.deepcopy(update.value)
    if isinstance(last, int):
        if not isinstance(node, list):
            raise PolicyPatchError(f"'{update.path}': index applied to a non-list")
        if last == len(node) and update.operation == UpdateOperation.ADD:
            node.append(value)
        elif last < len(node):
            node[last] = value
        else:
            raise PolicyPatchError(f"'{update.path}': index {last} out of range")
    else:
        if not isinstance(node, dict):
            raise PolicyPatchError(f"'{update.path}': key applied to a non-object")
        if isinstance(node.get(last), list) and update.operation == UpdateOperation.ADD \
                and not isinstance(value, list):
            node[last].append(value)
        else:
            node[last] = value


class WorkingPolicy(BaseModel):
    """An immutable Guidelines snapshot plus the updates applied to reach it."""

    model_config = ConfigDict(frozen=True)

    base_version: Optional[int] = None
    content: GuidelinesContent
    applied: Tuple[GuidelinesUpdate, ...] = ()

    @classmethod
    def from_document(cls, document: Dict[str, Any], base_version: Optional[int] = None) -> "WorkingPolicy":
        return cls(
            base_version=base_version,
            content=GuidelinesContent.model_validate(document),
        )

    def snapshot(self) -> Dict[str, Any]:
        """A detached plain-dict copy, safe to hand to the oracle."""
        return self.content.model_dump(mode="json")

    def with_updates(
        self, updates: List[GuidelinesUpdate]
    ) -> Tuple["WorkingPolicy", List[GuidelinesUpdate]]:
        """
        Apply updates one at a time as targeted patches.

        An update that cannot be applied, or that would leave the document
        invalid, is skipped and returned in the rejected list.
        """
        document = self.snapshot()
        applied: List[GuidelinesUpdate] = []
        rejected: List[GuidelinesUpdate] = []

        for update in updates:
            candidate = copy.deepcopy(document)
            try:
                apply_update(candidate, update)
                GuidelinesContent.model_validate(candidate)
            except (PolicyPatchError, PydanticValidationError):
                rejected.append(update)
                continue
            document = candidate
            applied.append(update)

        return (
            WorkingPolicy(
                base_version=self.base_version,
                content=GuidelinesContent.model_validate(document),
                applied=self.applied + tuple(applied),
            ),
            rejected,
        )

    def with_sections(
        self,
        sections: Dict[str, Any],
        updates: List[GuidelinesUpdate],
    ) -> "WorkingPolicy":
        """
        Replace whole sections with regenerated ones.

        Sections missing from ``sections`` keep their current content.
        """
        sections = {_SECTION_ALIASES.get(k, k): v for k, v in sections.items()}
        document = self.snapshot()
        for name in GUIDELINES_SECTIONS:
            if sections.get(name) is not None:
                document[name] = copy.deepcopy(sections[name])

        try:
            content = GuidelinesContent.model_validate(document)
        except PydanticValidationError as e:
            raise PolicyPatchError(f"Regenerated guidelines are invalid: {e}") from e

        return WorkingPolicy(
            base_version=self.base_version,
            content=content,
            applied=self.applied + tuple(updates),
        )
