#!/usr/bin/env python3
"""
Cursor Pagination Module

Drives a cursor-based collection fetch loop. Items are handed one at a time to
a visitor, and the visitor decides whether the traversal keeps going. The
helpers at the bottom of this module build the usual consumption modes
(collect into a list, run an action per item, find the first match) on top of
that single loop.
"""

from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from fetch_errors import PageFetchError

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One batch of items returned by a collection endpoint"""
    items: Sequence[T] = field(default_factory=tuple)
    next_cursor: Optional[str] = None

    @property
    def has_next(self) -> bool:
        return bool(self.next_cursor)


class PageFetcher(Generic[T]):
    """Capability to fetch the page that follows a continuation cursor"""

    def fetch_next(self, cursor: str) -> Page[T]:
        raise NotImplementedError


def paginate(initial_page: Page[T], fetcher: PageFetcher[T], visitor: Callable[[T], bool]) -> bool:
    """
    Visit items across pages until the visitor says stop or the cursors run out.

    Items are visited strictly in order: page order first, then the order
    within each page. A False from the visitor ends the traversal right after
    that item, without looking at the rest of the page or fetching more.

    Args:
        initial_page: Page that has already been fetched
        fetcher: Used to fetch every page after the first one
        visitor: Called once per item, returns True to continue

    Returns:
        bool: True if every page was exhausted, False if the visitor stopped early

    Raises:
        PageFetchError: If a following page cannot be fetched. Exceptions raised
            by the visitor propagate unchanged.
    """
    page = initial_page

    while True:
        for item in page.items:
            if not visitor(item):
                return False

        if not page.has_next:
            return True

        try:
            page = fetcher.fetch_next(page.next_cursor)
        except PageFetchError:
            raise
        except Exception as e:
            raise PageFetchError(f"Failed to fetch next page: {e}", url=page.next_cursor) from e


def to_list(initial_page: Page[T], fetcher: PageFetcher[T], fetch_all: bool) -> List[T]:
    """
    Collect items into a list.

    With fetch_all False only the very first item is collected, not the
    first page.
    """
    results: List[T] = []

    def collect(item: T) -> bool:
        results.append(item)
        return fetch_all  # Whether to keep processing

    paginate(initial_page, fetcher, collect)
    return results


def for_each(initial_page: Page[T], fetcher: PageFetcher[T], action: Callable[[T], None], fetch_all: bool) -> bool:
    """Run action on each item, stopping after the first one unless fetch_all is set"""

    def process(item: T) -> bool:
        action(item)
        return fetch_all  # Whether to keep processing

    return paginate(initial_page, fetcher, process)


def first_where(initial_page: Page[T], fetcher: PageFetcher[T], predicate: Callable[[T], bool]) -> Optional[T]:
    """
    Return the first item matching predicate, or None once all pages are exhausted.

    Only useful where the endpoint cannot filter server side.
    """
    match: List[T] = []

    def check(item: T) -> bool:
        if predicate(item):
            match.append(item)
            return False
        return True

    paginate(initial_page, fetcher, check)
    return match[0] if match else None
