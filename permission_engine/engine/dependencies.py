"""Permission dependency expansion over the catalog's `implies` edges."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Callable

from permission_engine.types import PermissionDefinition

logger = logging.getLogger(__name__)

DefinitionLookup = Callable[[Iterable[str]], Mapping[str, PermissionDefinition]]


class DependencyResolver:
    """
    Expands a set of permission codes with everything they imply.

    `lookup` is normally `PermissionStore.get_permission_definitions`; it is
    only asked about codes not seen before, so each definition is fetched once
    per expansion. Inactive definitions contribute no edges.
    """

    def __init__(self, lookup: DefinitionLookup) -> None:
        self._lookup = lookup

    def expand(self, codes: Iterable[str]) -> frozenset[str]:
        result: set[str] = set(codes)
        visited: set[str] = set()
        edges: dict[str, frozenset[str]] = {}
        frontier = set(result)

        while frontier:
            visited.update(frontier)
            definitions = self._lookup(frontier)
            next_frontier: set[str] = set()
            for code in frontier:
                definition = definitions.get(code)
                if definition is None or not definition.is_active or not definition.implies:
                    continue
                edges[code] = definition.implies
                for implied in definition.implies:
                    result.add(implied)
                    if implied not in visited:
                        next_frontier.add(implied)
            frontier = next_frontier

        cycle = _find_cycle(edges)
        if cycle:
            logger.warning("Permission dependency cycle in catalog: %s", " -> ".join(cycle))

        return frozenset(result)


def _find_cycle(edges: Mapping[str, frozenset[str]]) -> list[str] | None:
    """Return one cycle (as a closed path) in the implies graph, or None."""

    done: set[str] = set()
    path: list[str] = []
    on_path: set[str] = set()

    def dfs(code: str) -> list[str] | None:
        if code in on_path:
            return path[path.index(code) :] + [code]
        if code in done:
            return None
        on_path.add(code)
        path.append(code)
        for implied in sorted(edges.get(code, ())):
            found = dfs(implied)
            if found:
                return found
        path.pop()
        on_path.remove(code)
        done.add(code)
        return None

    for start in sorted(edges):
        found = dfs(start)
        if found:
            return found
    return None
