"""Recursive remove, rename and move over virtual directories.

    Every operation first asks whether the path names exactly one existing object.
    If it does, a single primitive call handles it. Otherwise the path is treated as
    a directory: its members are fully enumerated before anything is changed, the
    members are mutated in batches and each child prefix is handled recursively.

    Paths that end in a separator always name a directory and skip the single
    object check.
"""
from __future__ import annotations
import typing as t

import zrlog

from . import paths
from .base import StorageError
from .batch import apply_batched
from .listing import list_all, ListingResult

if t.TYPE_CHECKING:
    from .base import BaseFilesystem


def as_path_list(paths_: t.Union[str, t.Iterable[str]]) -> list[str]:
    if isinstance(paths_, str):
        return [paths_]
    return list(paths_)


class TreeOperator:
    """Applies one recursive operation to one container.

        A new operator is built for every call so that nothing is shared between
        unrelated operations.
    """

    def __init__(self, fs: BaseFilesystem, container: t.Optional[str]):
        self.fs = fs
        self.container = container
        self.removed = 0
        self.renamed = 0
        self._log = zrlog.get_logger("roverfs.storage.tree")

    def _list(self, prefix: str) -> ListingResult:
        container = self.container
        return list_all(
            lambda p, c, s: self.fs._list_page(p, c, s, container),
            prefix,
            page_size=self.fs.page_size,
            halt_flag=self.fs.halt_flag
        )

    def _is_single_object(self, path: str) -> bool:
        if path == "" or path.endswith(paths.SEPARATOR):
            return False
        return self.fs._object_exists(path, self.container)

    def remove(self, paths_: t.Union[str, t.Iterable[str]]):
        for path in as_path_list(paths_):
            self._remove_one(paths.normalize(path))
        self._log.info(f"Removed {self.removed} objects from [{self.fs}]")

    def _remove_one(self, path: str):
        if self._is_single_object(path):
            self.fs._delete_object(path, self.container)
            self.removed += 1
            return
        prefix = paths.ensure_trailing_separator(path)
        listing = self._list(prefix)
        if listing.keys:
            apply_batched(
                listing.keys,
                self.fs.batch_limit,
                lambda batch: self.fs._delete_objects(batch, self.container)
            )
            self.removed += len(listing.keys)
        for child_prefix in listing.prefixes:
            if child_prefix != prefix:
                self._remove_one(child_prefix)
        if self.fs.has_directories and prefix:
            self.fs._remove_directory(prefix, self.container)

    def rename(self, old_names: t.Union[str, t.Iterable[str]], new_name: str):
        new_name = paths.normalize(new_name)
        for old_name in as_path_list(old_names):
            self._rename_one(paths.normalize(old_name), new_name)
        self._log.info(f"Renamed {self.renamed} objects in [{self.fs}]")

    def _rename_one(self, old_name: str, new_name: str):
        if self._is_single_object(old_name):
            if new_name == "" or new_name.endswith(paths.SEPARATOR):
                new_name = new_name + paths.name(old_name)
            if new_name != old_name:
                self.fs._rename_object(old_name, new_name, self.container)
                self.renamed += 1
            return
        old_prefix = paths.ensure_trailing_separator(old_name)
        new_prefix = paths.rename_target(new_name)
        if old_prefix == new_prefix:
            return
        if new_prefix.startswith(old_prefix):
            raise StorageError(f"Cannot rename [{old_prefix}] into its own subdirectory [{new_prefix}]", 1007)
        listing = self._list(old_prefix)
        pairs = [(key, paths.substitute_prefix(key, old_prefix, new_prefix)) for key in listing.keys]
        if pairs:
            apply_batched(
                pairs,
                self.fs.batch_limit,
                lambda batch: self.fs._rename_objects(batch, self.container)
            )
            self.renamed += len(pairs)
        for child_prefix in listing.prefixes:
            if child_prefix != old_prefix:
                self._rename_one(child_prefix, paths.substitute_prefix(child_prefix, old_prefix, new_prefix))
        if self.fs.has_directories and old_prefix:
            self.fs._remove_directory(old_prefix, self.container)

    def move(self, from_path: str, to_path: str, to_container: t.Optional[str], **options):
        """Move one object, by default a copy to the new location followed by removal of the source."""
        src_key = paths.normalize(from_path)
        dst_key = paths.normalize(to_path)
        if src_key == dst_key and self.container == to_container:
            return True
        result = self.fs._move_object(src_key, self.container, dst_key, to_container, options)
        self._log.info(f"Moved [{src_key}] to [{dst_key}] in [{self.fs}]")
        return result
