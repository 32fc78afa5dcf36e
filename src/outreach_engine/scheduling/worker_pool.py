"""Bounded per-contact worker pool shared by both sweeps."""

import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def group_by_contact(items: Iterable[T], key: Callable[[T], str]) -> "OrderedDict[str, list[T]]":
    """Group items by contact id, keeping first-seen order of contacts and items."""
    groups: "OrderedDict[str, list[T]]" = OrderedDict()
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


async def run_per_contact(
    groups: "OrderedDict[str, list[T]]",
    handler: Callable[[T], Awaitable[R]],
    max_workers: int,
) -> list[R]:
    """
    Run ``handler`` over every item, at most ``max_workers`` contacts at once.

    Items of one contact run one after another in their original order;
    different contacts run concurrently. ``handler`` must not raise.
    """
    semaphore = asyncio.Semaphore(max(1, max_workers))

    async def run_contact(items: list[T]) -> list[R]:
        async with semaphore:
            results = []
            for item in items:
                results.append(await handler(item))
            return results

    per_contact = await asyncio.gather(*(run_contact(items) for items in groups.values()))
    return [result for results in per_contact for result in results]
