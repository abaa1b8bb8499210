from __future__ import annotations

from typing import Sequence

from loguru import logger


def distribute_tags(tags: Sequence[str], fetcher_count: int) -> list[list[str]]:
    """Round-robin tags over fetchers: tag[i] goes to fetcher i % fetcher_count.

    Every tag lands in exactly one list and each list keeps input order.
    """
    if fetcher_count < 1:
        raise ValueError("fetcher_count must be >= 1")

    distribution: list[list[str]] = [[] for _ in range(fetcher_count)]
    for i, tag in enumerate(tags):
        distribution[i % fetcher_count].append(tag)

    for i, assigned in enumerate(distribution):
        logger.info(f"Fetcher-{i + 1} assigned {len(assigned)} tags")
    return distribution
