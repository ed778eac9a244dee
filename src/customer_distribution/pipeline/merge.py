from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Set

from ..domain.models import Customer


@dataclass
class MergeResult:
    customers: List[Customer]
    added: List[Customer] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added)


def merge(existing: Sequence[Customer], incoming: Iterable[Customer]) -> MergeResult:
    """Prepend incoming records whose id is not already present.

    Existing records always win over an incoming duplicate, and within the
    incoming batch the first occurrence of an id wins. When nothing is new the
    existing list is returned unchanged.
    """
    seen: Set[str] = {c.id for c in existing}
    added: List[Customer] = []
    for customer in incoming:
        if customer.id in seen:
            continue
        seen.add(customer.id)
        added.append(customer)
    if not added:
        return MergeResult(customers=list(existing))
    return MergeResult(customers=added + list(existing), added=added)
