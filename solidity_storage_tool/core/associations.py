"""Resolve a named type reference to the class it denotes.

Resolution happens in two phases:

1. A breadth first walk of the import chain starting at the referencing
   class, trying a direct match at every file it reaches. Aliased imports
   are followed with both the alias and the original name.
2. If that fails, a walk up the inheritance graph of every class visited in
   phase 1, looking for structs and enums declared on parent contracts.

Phase 2 only ever uses phase 1 to find parents, never itself.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set, Tuple

from .models import Association, ClassEntry, ClassModel

logger = logging.getLogger(__name__)


@dataclass
class ImportChainResult:
    """Outcome of the import chain walk."""

    match: Optional[ClassEntry] = None
    visited_sources: List[ClassEntry] = field(default_factory=list)


def resolve_association(
    association: Association,
    source: ClassEntry,
    model: ClassModel,
) -> Optional[ClassEntry]:
    """Find the class an association points at, or None."""
    chain = find_via_import_chain(association, source, model)
    if chain.match is not None:
        return chain.match

    visited_class_ids: Set[int] = set()
    for visited in chain.visited_sources:
        inherited = find_inherited_type(association, visited, model, visited_class_ids)
        if inherited is not None:
            return inherited

    logger.debug(
        "Could not resolve %s referenced from %s (%s)",
        association.target_name,
        source.name,
        source.path,
    )
    return None


def is_associated(
    association: Association,
    source: ClassEntry,
    target: ClassEntry,
    target_parent: Optional[ClassEntry],
) -> bool:
    """Test if `source` can see `target` under the association's name."""
    same_file = source.path == target.path
    wildcard_import = any(
        import_.absolute_path == target.path and import_.is_wildcard for import_ in source.imports
    )
    named_imports = [
        name
        for import_ in source.imports
        if import_.absolute_path == target.path
        for name in import_.names
    ]

    if association.parent_name:
        if association.target_name != target.name:
            return False
        parent_name = target_parent.name if target_parent is not None else None
        if association.parent_name == parent_name and (same_file or wildcard_import):
            return True
        # The parent contract itself was imported, with or without an alias
        return parent_name is not None and any(
            name.class_name == parent_name
            and (
                (name.alias is None and association.parent_name == name.class_name)
                or (name.alias is not None and association.parent_name == name.alias)
            )
            for name in named_imports
        )

    if association.target_name == target.name and (same_file or wildcard_import):
        return True
    return any(
        name.class_name == target.name
        and (
            (name.alias is None and association.target_name == name.class_name)
            or (name.alias is not None and association.target_name == name.alias)
        )
        for name in named_imports
    )


def _try_direct_match(
    association: Association,
    source: ClassEntry,
    model: ClassModel,
) -> Optional[ClassEntry]:
    for target in model.iter_classes():
        target_parent = None
        if association.parent_name and target.parent_id is not None:
            target_parent = model.get(target.parent_id)
        if is_associated(association, source, target, target_parent):
            return target
    return None


def find_via_import_chain(
    association: Association,
    source: ClassEntry,
    model: ClassModel,
) -> ImportChainResult:
    """Breadth first search through the import chain of `source`.

    Terminates on cyclic imports since every (file, name) pair is searched
    at most once.
    """
    result = ImportChainResult()
    searched: Set[Tuple[str, str]] = set()
    visited_paths: Set[str] = set()
    queue: Deque[Tuple[ClassEntry, str]] = deque([(source, association.target_name)])

    while queue:
        current, target_name = queue.popleft()
        key = (current.path, target_name)
        if key in searched:
            continue
        searched.add(key)

        if current.path not in visited_paths:
            visited_paths.add(current.path)
            result.visited_sources.append(current)

        match = _try_direct_match(association.with_target(target_name), current, model)
        if match is not None:
            result.match = match
            return result

        for import_ in current.imports:
            leads_to_target = import_.is_wildcard or any(
                (name.alias is None and name.class_name == target_name) or name.alias == target_name
                for name in import_.names
            )
            if not leads_to_target:
                continue
            imported = model.first_in_file(import_.absolute_path)
            if imported is None:
                continue

            if (imported.path, target_name) not in searched:
                queue.append((imported, target_name))
            # further hops use the original, un-aliased name
            for name in import_.names:
                if name.alias is not None and name.alias == target_name:
                    if (imported.path, name.class_name) not in searched:
                        queue.append((imported, name.class_name))

    return result


def find_inherited_type(
    association: Association,
    source: ClassEntry,
    model: ClassModel,
    visited_class_ids: Set[int],
) -> Optional[ClassEntry]:
    """Look for a struct or enum declared on any ancestor of `source`.

    `visited_class_ids` is shared across calls so diamond inheritance does not
    walk the same ancestor twice.
    """
    if source.id in visited_class_ids:
        return None
    visited_class_ids.add(source.id)

    for parent_association in source.parent_contracts():
        parent = find_via_import_chain(parent_association, source, model).match
        if parent is None:
            continue

        for nested_id in list(parent.struct_ids) + list(parent.enum_ids):
            nested = model.get(nested_id)
            if nested is not None and nested.name == association.target_name:
                return nested

        inherited = find_inherited_type(association, parent, model, visited_class_ids)
        if inherited is not None:
            return inherited
    return None
