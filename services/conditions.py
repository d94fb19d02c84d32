"""
Transition condition expressions.

Conditions are stored as JSON on TemplateTransition rows and parsed into a
small tagged tree:

    {"type": "min_reviewers_locked_in", "config": {"min_count": 3}}
    {"op": "AND", "conditions": [...]}
    {"op": "OR", "conditions": [...]}
    {"op": "NOT", "condition": {...}}

Leaves name a predicate from the activity type's registry; evaluation is a
plain interpreter over the tree, AND/OR short-circuit left to right.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Union

from utils.exceptions import TemplateDefinitionError


@dataclass(frozen=True)
class Predicate:
    name: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class And:
    conditions: List["Expression"]


@dataclass(frozen=True)
class Or:
    conditions: List["Expression"]


@dataclass(frozen=True)
class Not:
    condition: "Expression"


Expression = Union[Predicate, And, Or, Not]

PredicateResolver = Callable[[Predicate], bool]


def parse_expression(raw: Any) -> Expression:
    """Build an expression tree from its JSON form; raises TemplateDefinitionError on malformed input"""
    if not isinstance(raw, dict):
        raise TemplateDefinitionError(f"Condition must be an object, got {type(raw).__name__}")

    if "op" in raw:
        op = str(raw["op"]).upper()
        if op in ("AND", "OR"):
            children = raw.get("conditions")
            if not isinstance(children, list) or not children:
                raise TemplateDefinitionError(f"{op} condition needs a non-empty 'conditions' list")
            parsed = [parse_expression(child) for child in children]
            return And(parsed) if op == "AND" else Or(parsed)
        if op == "NOT":
            if "condition" not in raw:
                raise TemplateDefinitionError("NOT condition needs a 'condition'")
            return Not(parse_expression(raw["condition"]))
        raise TemplateDefinitionError(f"Unknown condition operator: {raw['op']}")

    name = raw.get("type")
    if not isinstance(name, str) or not name:
        raise TemplateDefinitionError(f"Condition has neither 'op' nor 'type': {raw}")
    config = raw.get("config") or {}
    if not isinstance(config, dict):
        raise TemplateDefinitionError(f"Config for predicate '{name}' must be an object")
    return Predicate(name, dict(config))


def to_json(expression: Expression) -> Dict[str, Any]:
    if isinstance(expression, Predicate):
        data: Dict[str, Any] = {"type": expression.name}
        if expression.config:
            data["config"] = dict(expression.config)
        return data
    if isinstance(expression, And):
        return {"op": "AND", "conditions": [to_json(c) for c in expression.conditions]}
    if isinstance(expression, Or):
        return {"op": "OR", "conditions": [to_json(c) for c in expression.conditions]}
    if isinstance(expression, Not):
        return {"op": "NOT", "condition": to_json(expression.condition)}
    raise TypeError(f"Not a condition expression: {expression!r}")


def iter_predicates(expression: Expression) -> Iterator[Predicate]:
    if isinstance(expression, Predicate):
        yield expression
    elif isinstance(expression, (And, Or)):
        for child in expression.conditions:
            yield from iter_predicates(child)
    elif isinstance(expression, Not):
        yield from iter_predicates(expression.condition)


def predicate_names(expression: Expression) -> set:
    return {predicate.name for predicate in iter_predicates(expression)}


def evaluate(expression: Expression, resolve: PredicateResolver) -> bool:
    if isinstance(expression, Predicate):
        return bool(resolve(expression))
    if isinstance(expression, And):
        return all(evaluate(child, resolve) for child in expression.conditions)
    if isinstance(expression, Or):
        return any(evaluate(child, resolve) for child in expression.conditions)
    if isinstance(expression, Not):
        return not evaluate(expression.condition, resolve)
    raise TypeError(f"Not a condition expression: {expression!r}")


# Shorthand used by the built-in template definitions
def predicate(name: str, **config) -> Dict[str, Any]:
    return to_json(Predicate(name, config))


def all_of(*conditions: Dict[str, Any]) -> Dict[str, Any]:
    return {"op": "AND", "conditions": list(conditions)}


def any_of(*conditions: Dict[str, Any]) -> Dict[str, Any]:
    return {"op": "OR", "conditions": list(conditions)}


def negate(condition: Dict[str, Any]) -> Dict[str, Any]:
    return {"op": "NOT", "condition": condition}
