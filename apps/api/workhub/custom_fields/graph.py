from __future__ import annotations

from collections.abc import Iterable

from workhub.custom_fields.errors import CyclicDependency
from workhub.custom_fields.schemas import FieldDefinition


def definition_dependencies(definition: FieldDefinition) -> list[str]:
    """Ids a definition reads from: formula references, rollup/mirror source and rule targets."""
    dependencies: list[str] = []
    if definition.formula is not None:
        dependencies.extend(definition.formula.dependencies)
    source = definition.source_field_id()
    if source is not None:
        dependencies.append(source)
    dependencies.extend(rule.field_id for rule in definition.conditional_rules)
    return list(dict.fromkeys(dependencies))


def dependency_edges(definitions: Iterable[FieldDefinition]) -> dict[str, list[str]]:
    items = list(definitions)
    known = {definition.id for definition in items}
    return {
        definition.id: [dep for dep in definition_dependencies(definition) if dep in known]
        for definition in items
    }


def find_cycle(edges: dict[str, list[str]]) -> list[str] | None:
    visiting: list[str] = []
    state: dict[str, int] = {}

    def visit(node: str) -> list[str] | None:
        state[node] = 1
        visiting.append(node)
        for dep in edges.get(node, []):
            if state.get(dep) == 1:
                start = visiting.index(dep)
                return visiting[start:] + [dep]
            if state.get(dep) is None:
                cycle = visit(dep)
                if cycle is not None:
                    return cycle
        visiting.pop()
        state[node] = 2
        return None

    for node in edges:
        if state.get(node) is None:
            cycle = visit(node)
            if cycle is not None:
                return cycle
    return None


def ensure_acyclic(definitions: Iterable[FieldDefinition]) -> None:
    cycle = find_cycle(dependency_edges(definitions))
    if cycle is not None:
        raise CyclicDependency(cycle)


def topological_order(edges: dict[str, list[str]]) -> list[str]:
    """Dependencies first, otherwise keeping the input order of ``edges``."""
    remaining = {node: set(deps) for node, deps in edges.items()}
    ordered: list[str] = []
    while remaining:
        ready = [node for node, deps in remaining.items() if not deps]
        if not ready:
            raise CyclicDependency(find_cycle({node: sorted(deps) for node, deps in remaining.items()}) or sorted(remaining))
        for node in ready:
            ordered.append(node)
            del remaining[node]
        for deps in remaining.values():
            deps.difference_update(ready)
    return ordered
