"""City distribution and dashboard summary helpers."""

from __future__ import annotations

from typing import Dict, Iterable, List

from ..domain.models import CityStat, Customer, SyncStatus


def aggregate(records: Iterable[Customer]) -> List[CityStat]:
    """Count customers per city, largest first.

    Cities are grouped by exact string equality; records without a city are
    left out. Equal counts keep the order in which each city was first seen.
    """
    counts: Dict[str, int] = {}
    for customer in records:
        if not customer.city:
            continue
        counts[customer.city] = counts.get(customer.city, 0) + 1
    # dict preserves first-seen order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [CityStat(city=city, count=count) for city, count in ranked]


def summarize(records: Iterable[Customer]) -> dict:
    customers = list(records)
    stats = aggregate(customers)
    return {
        "totalCustomers": len(customers),
        "withMapLink": sum(1 for c in customers if c.map_url),
        "synced": sum(1 for c in customers if c.sync_status == SyncStatus.SYNCED.value),
        "cities": len(stats),
        "topCity": stats[0].to_dict() if stats else None,
    }
