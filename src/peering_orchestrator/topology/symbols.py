"""
Typed symbol table.

Every reference in the model is resolved here. Lookups are keyed by
(kind, name) and checked against the kinds the referring field accepts,
so a route table field that names a segment fails with TypeMismatchError
instead of being coerced.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from peering_orchestrator.core.errors import TypeMismatchError, UnresolvedReferenceError
from peering_orchestrator.core.types import Entity, EntityKind, ReferenceField


class SymbolTable:
    """Name to entity lookup keyed by kind."""

    def __init__(self, entities: Iterable[Entity]) -> None:
        self._by_key: Dict[Tuple[EntityKind, str], Entity] = {}
        self._kinds_by_name: Dict[str, List[EntityKind]] = {}
        for entity in entities:
            self._by_key[(entity.kind, entity.name)] = entity
            self._kinds_by_name.setdefault(entity.name, []).append(entity.kind)

    def kinds_named(self, name: str) -> List[EntityKind]:
        return sorted(self._kinds_by_name.get(name, []), key=lambda k: k.value)

    def resolve(self, owner: Entity, ref_field: ReferenceField) -> Entity:
        """
        Resolve one reference held by owner.

        Rules
        1) The reference's declared kind must be one the field accepts.
        2) The (kind, name) key must exist.
        3) If it does not, but the name exists under another kind, the
           reference is ill typed rather than missing.
        """

        ref = ref_field.ref
        owner_label = str(owner.ref)
        allowed = sorted(k.value for k in ref_field.allowed)

        if ref.kind not in ref_field.allowed:
            raise TypeMismatchError(
                entity=owner_label,
                field=ref_field.field,
                expected=" or ".join(allowed),
                actual=ref.kind.value,
                name=ref.name,
            )

        found = self._by_key.get((ref.kind, ref.name))
        if found is not None:
            return found

        other_kinds = self.kinds_named(ref.name)
        if other_kinds:
            raise TypeMismatchError(
                entity=owner_label,
                field=ref_field.field,
                expected=ref.kind.value,
                actual=other_kinds[0].value,
                name=ref.name,
            )

        raise UnresolvedReferenceError(
            entity=owner_label,
            field=ref_field.field,
            kind=ref.kind.value,
            name=ref.name,
        )
