from __future__ import annotations

from typing import Mapping, Optional

from .schemas import LabelSelector, LabelSelectorRequirement

OP_IN = "In"
OP_NOT_IN = "NotIn"
OP_EXISTS = "Exists"
OP_DOES_NOT_EXIST = "DoesNotExist"

_OPERATORS = (OP_IN, OP_NOT_IN, OP_EXISTS, OP_DOES_NOT_EXIST)


class SelectorError(ValueError):
    pass


def validate_selector(selector: LabelSelector) -> None:
    for requirement in selector.match_expressions:
        if not requirement.key:
            raise SelectorError("selector requirement is missing a key")
        if requirement.operator not in _OPERATORS:
            raise SelectorError(f"unsupported selector operator: {requirement.operator!r}")
        if requirement.operator in (OP_IN, OP_NOT_IN) and not requirement.values:
            raise SelectorError(
                f"values must be non-empty for {requirement.operator} on {requirement.key!r}"
            )
        if requirement.operator in (OP_EXISTS, OP_DOES_NOT_EXIST) and requirement.values:
            raise SelectorError(
                f"values must be empty for {requirement.operator} on {requirement.key!r}"
            )


def _matches_requirement(
    requirement: LabelSelectorRequirement, labels: Mapping[str, str]
) -> bool:
    present = requirement.key in labels
    if requirement.operator == OP_IN:
        return present and labels[requirement.key] in requirement.values
    if requirement.operator == OP_NOT_IN:
        return not present or labels[requirement.key] not in requirement.values
    if requirement.operator == OP_EXISTS:
        return present
    return not present


def matches(selector: Optional[LabelSelector], labels: Mapping[str, str]) -> bool:
    """A missing selector matches everything; callers validate before listing."""
    if selector is None:
        return True
    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False
    return all(_matches_requirement(req, labels) for req in selector.match_expressions)
