#!/usr/bin/env python3
"""
Advisory pre-insert deduplication.

Filtering here only saves write volume. The unique indexes on link, guid and
content hash in storage are what actually prevent duplicates, so a candidate
that slips through is rejected at insert time instead.
"""

from typing import Iterable, List, Set

from config import get_logger
from fetcher import CandidateItem

# Module-specific logger
logger = get_logger("dedup")


def is_known(item: CandidateItem, known_links: Set[str], known_guids: Set[str]) -> bool:
    """An item is known when its link is known, or its guid is present and known."""
    if item.link and item.link in known_links:
        return True
    if item.guid and item.guid in known_guids:
        return True
    return False


def filter_new(
    candidates: Iterable[CandidateItem],
    known_links: Set[str],
    known_guids: Set[str],
) -> List[CandidateItem]:
    """Return the candidates not already stored, in their original order.

    Repeats inside the same batch are dropped too, keeping the first occurrence.
    The input sets are not modified.
    """
    seen_links = set(known_links)
    seen_guids = set(known_guids)
    fresh: List[CandidateItem] = []
    total = 0

    for item in candidates:
        total += 1
        if is_known(item, seen_links, seen_guids):
            continue
        fresh.append(item)
        if item.link:
            seen_links.add(item.link)
        if item.guid:
            seen_guids.add(item.guid)

    if total:
        logger.debug(f"Dedup kept {len(fresh)} of {total} candidates")
    return fresh
