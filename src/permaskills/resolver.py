from __future__ import annotations

import logging
from typing import Mapping, Protocol

from .errors import CircularDependencyError, DependencyDepthError, DependencyError
from .models import DependencyNode, DependencyPlan, SkillMetadata
from .versions import exact_version, is_latest, sort_versions, version_satisfies

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10


class SkillSource(Protocol):
    def get_skill(self, name: str, version: str | None = None) -> SkillMetadata | None: ...

    def get_versions(self, name: str) -> list[str]: ...


def _not_found(name: str, requirement: str | None, path: list[str]) -> DependencyError:
    label = f"{name}@{requirement}" if requirement else name
    if path:
        return DependencyError(
            f"Dependency {label} not found in registry (required by {' -> '.join(path)}).",
            name=name,
            path=path + [name],
            hint=f"Ask the maintainer of {path[-1]} to fix the dependency, or publish {name} first.",
        )
    return DependencyError(
        f"Skill {label} not found in registry.",
        name=name,
        path=[name],
        hint="Check the name with `skills search`.",
    )


def fetch_matching(source: SkillSource, name: str, requirement: str | None, path: list[str]) -> SkillMetadata:
    """Registry metadata for the version of `name` that `requirement` selects."""
    if is_latest(requirement):
        meta = source.get_skill(name)
    elif (pinned := exact_version(requirement)) is not None:
        meta = source.get_skill(name, pinned)
    else:
        matching = [v for v in sort_versions(source.get_versions(name)) if version_satisfies(v, requirement)]
        if matching:
            meta = source.get_skill(name, matching[0])
        else:
            meta = source.get_skill(name)
            if meta is not None and not version_satisfies(meta.version, requirement):
                raise DependencyError(
                    f"No published version of {name} satisfies {requirement} (latest is {meta.version}).",
                    name=name,
                    path=path + [name],
                    hint="Relax the version requirement or publish a matching version.",
                )
    if meta is None:
        raise _not_found(name, requirement, path)
    return meta


def resolve(
    registry: SkillSource,
    root_name: str,
    *,
    version: str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    skip_installed: bool = True,
    locked: Mapping[str, str] | None = None,
) -> DependencyPlan:
    """
    Expand `root_name` and its dependencies into an install plan.

    `locked` maps installed names to versions; with `skip_installed`, nodes that match exactly are
    kept in the plan but flagged `from_cache`. The plan order lists every dependency before the
    skills that need it.
    """
    locked = locked or {}
    slots: list[DependencyNode | None] = []
    index: dict[str, int] = {}
    order: list[int] = []
    stack: list[str] = []
    in_progress: set[str] = set()

    def visit(name: str, requirement: str | None, depth: int) -> int:
        if name in in_progress:
            raise CircularDependencyError(stack[stack.index(name):] + [name])
        if name in index:
            existing = slots[index[name]]
            if existing is not None and requirement and not version_satisfies(existing.version, requirement):
                log.warning(
                    "%s requires %s@%s but %s is already selected",
                    stack[-1] if stack else "root",
                    name,
                    requirement,
                    existing.version,
                )
            return index[name]
        if depth > max_depth:
            raise DependencyDepthError(stack + [name], max_depth)

        meta = fetch_matching(registry, name, requirement, list(stack))
        slot = len(slots)
        slots.append(None)
        in_progress.add(name)
        stack.append(name)
        try:
            children = tuple(visit(dep.name, dep.version_requirement, depth + 1) for dep in meta.dependencies)
        finally:
            stack.pop()
            in_progress.discard(name)

        from_cache = skip_installed and locked.get(meta.name) == meta.version
        slots[slot] = DependencyNode(
            name=meta.name,
            version=meta.version,
            content_id=meta.content_id,
            depth=depth,
            children=children,
            is_direct=depth == 0,
            from_cache=from_cache,
            dependencies=meta.dependencies,
        )
        index[name] = slot
        order.append(slot)
        log.debug("resolved %s@%s at depth %d%s", meta.name, meta.version, depth, " (installed)" if from_cache else "")
        return slot

    root = visit(root_name, version, 0)
    nodes = tuple(n for n in slots if n is not None)
    return DependencyPlan(nodes=nodes, order=tuple(order), root=root)
