"""Merges a paginated, delimiter-aware listing into one result."""
import typing as t

import zrlog

from roverfs.util import HaltFlag
from .base import ListingPage, ListingError, DEFAULT_PAGE_SIZE, StorageError

# (prefix, cursor, page_size) -> ListingPage
PageFetcher = t.Callable[[str, str, int], ListingPage]


class ListingResult:
    """All keys and immediate common prefixes below one prefix."""

    __slots__ = ('prefix', 'keys', 'prefixes', 'pages')

    def __init__(self, prefix: str):
        self.prefix = prefix
        self.keys: list[str] = []
        self.prefixes: list[str] = []
        self.pages = 0

    def __iter__(self):
        yield self.keys
        yield self.prefixes

    def is_empty(self) -> bool:
        return not (self.keys or self.prefixes)

    def __repr__(self):
        return f"<ListingResult {self.prefix!r} keys={len(self.keys)} prefixes={len(self.prefixes)} pages={self.pages}>"


def list_all(list_page: PageFetcher,
             prefix: str = "",
             start_cursor: str = "",
             page_size: int = DEFAULT_PAGE_SIZE,
             halt_flag: t.Optional[HaltFlag] = None) -> ListingResult:
    """Follow the continuation cursor until the backend reports no more pages.

        Common prefixes are merged across pages without duplicates, so a provider
        that reports them all on one page and one that spreads them over several
        give the same result. The result belongs to this call only.
    """
    log = zrlog.get_logger("roverfs.storage.listing")
    result = ListingResult(prefix)
    cursor = start_cursor or ""
    seen_prefixes = set()
    while True:
        if halt_flag is not None:
            halt_flag.breakpoint()
        try:
            page = list_page(prefix, cursor, page_size)
        except StorageError as ex:
            raise ListingError(prefix, cursor, ex) from ex
        result.pages += 1
        result.keys.extend(page.keys)
        for common_prefix in page.prefixes:
            if common_prefix not in seen_prefixes:
                seen_prefixes.add(common_prefix)
                result.prefixes.append(common_prefix)
        log.debug(f"Listed page [{result.pages}] of [{prefix}]: {len(page.keys)} keys, {len(page.prefixes)} prefixes")
        if not page.is_truncated:
            break
        if not page.next_cursor or page.next_cursor == cursor:
            raise ListingError(prefix, cursor, StorageError(f"Truncated page without a new cursor", 1201))
        cursor = page.next_cursor
    return result


def page_from_entries(prefix: str,
                      entries: t.Iterable[tuple[str, bool]],
                      cursor: str = "",
                      page_size: int = DEFAULT_PAGE_SIZE) -> ListingPage:
    """Build one listing page from a directory listing of (name, is_directory) pairs.

        Used by backends with real directories. Entries are ordered by their full key,
        the cursor is the last key of the previous page.
    """
    if page_size < 1:
        raise ValueError(f"Page size must be positive [actual {page_size}]")
    keyed = []
    for entry_name, is_dir in entries:
        if entry_name in (".", ".."):
            continue
        keyed.append((f"{prefix}{entry_name}/" if is_dir else f"{prefix}{entry_name}", is_dir))
    keyed.sort(key=lambda x: x[0])
    if cursor:
        keyed = [x for x in keyed if x[0] > cursor]
    selected = keyed[:page_size]
    page = ListingPage(
        keys=[k for k, is_dir in selected if not is_dir],
        prefixes=[k for k, is_dir in selected if is_dir],
        is_truncated=len(keyed) > page_size,
    )
    if page.is_truncated:
        page.next_cursor = selected[-1][0]
    return page
