"""Local disk or mounted network drive.

    Keys map onto files below a root directory; containers are subdirectories of
    the root. Multipart uploads are staged as part files in a staging directory
    and concatenated on completion.
"""
import datetime
import mimetypes
import os
import pathlib
import shutil
import tempfile
import typing as t

from roverfs.util import HaltFlag
from . import paths
from .base import (
    BaseFilesystem,
    StorageError,
    NotFound,
    ListingPage,
    FileMeta,
    local_file_error_wrap,
    tuning_options,
)
from .listing import page_from_entries
from .multipart import StagedMultipartMixin


class LocalFilesystem(StagedMultipartMixin, BaseFilesystem):

    backend_name = "local"

    has_directories = True

    def __init__(self,
                 root: t.Union[str, pathlib.Path],
                 staging_dir: t.Optional[t.Union[str, pathlib.Path]] = None,
                 **kwargs):
        super().__init__(**kwargs)
        self.root = pathlib.Path(os.path.normpath(pathlib.Path(root).expanduser().absolute()))
        if staging_dir is None:
            staging_dir = pathlib.Path(tempfile.gettempdir()) / "roverfs-staging"
        self.staging_dir = pathlib.Path(staging_dir).expanduser().absolute()

    def __str__(self):
        return f"local:{self.root}"

    def _path(self, key: str, container: t.Optional[str]) -> pathlib.Path:
        if container and (container in (".", "..") or "/" in container or "\\" in container):
            raise StorageError(f"Container [{container}] is not a single directory name", 1009)
        base = self.root / container if container else self.root
        full_path = pathlib.Path(os.path.normpath(base / key))
        if not (full_path == self.root or full_path.is_relative_to(self.root)):
            raise StorageError(f"Path [{key}] is outside of [{self.root}]", 1008)
        return full_path

    def _object_exists(self, key: str, container: t.Optional[str]) -> bool:
        if not key or key.endswith(paths.SEPARATOR):
            return False
        return self._path(key, container).is_file()

    @local_file_error_wrap
    def _head_object(self, key: str, container: t.Optional[str]) -> FileMeta:
        full_path = self._path(key, container)
        if not full_path.is_file():
            raise NotFound(key, container)
        st = full_path.stat()
        return FileMeta(
            key,
            st.st_size,
            mimetypes.guess_type(full_path.name)[0],
            datetime.datetime.fromtimestamp(st.st_mtime, datetime.timezone(datetime.timedelta(hours=0), "UTC")),
            None,
            st
        )

    @local_file_error_wrap
    def _list_page(self, prefix: str, cursor: str, page_size: int, container: t.Optional[str]) -> ListingPage:
        prefix = paths.ensure_trailing_separator(prefix)
        directory = self._path(prefix, container)
        if not directory.is_dir():
            return ListingPage()
        entries = [
            (entry.name, entry.is_dir())
            for entry in directory.iterdir()
            if entry.absolute() != self.staging_dir
        ]
        return page_from_entries(prefix, entries, cursor, page_size)

    @local_file_error_wrap
    def _delete_object(self, key: str, container: t.Optional[str]):
        self._path(key, container).unlink(True)

    @local_file_error_wrap
    def _make_directory(self, prefix: str, container: t.Optional[str]):
        self._path(prefix, container).mkdir(parents=True, exist_ok=True)

    @local_file_error_wrap
    def _remove_directory(self, prefix: str, container: t.Optional[str]):
        if not prefix:
            return
        directory = self._path(prefix, container)
        if directory.is_dir():
            directory.rmdir()

    @local_file_error_wrap
    def _rename_object(self, old_key: str, new_key: str, container: t.Optional[str]):
        target = self._path(new_key, container)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._path(old_key, container).replace(target)

    @local_file_error_wrap
    def _put_bytes(self, key: str, data: bytes, container: t.Optional[str], options: dict):
        target = self._path(key, container)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return True

    @local_file_error_wrap
    def _put_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        return self._copy_local(local_path, self._path(key, container))

    @local_file_error_wrap
    def _get_bytes(self, key: str, container: t.Optional[str], options: dict) -> bytes:
        return self._path(key, container).read_bytes()

    @local_file_error_wrap
    def _get_to_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        self._copy_local(self._path(key, container), local_path)

    @local_file_error_wrap
    def _copy_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        return self._copy_local(self._path(src_key, src_container), self._path(dst_key, dst_container))

    def _copy_local(self, source: pathlib.Path, target: pathlib.Path) -> bool:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        shutil.copystat(source, target)
        return True

    def _staging_area(self, upload_id: str) -> pathlib.Path:
        return self.staging_dir / upload_id

    @local_file_error_wrap
    def _stage_part(self, upload_id: str, part_name: str, data: bytes):
        area = self._staging_area(upload_id)
        area.mkdir(parents=True, exist_ok=True)
        (area / part_name).write_bytes(data)

    @local_file_error_wrap
    def _staged_part_names(self, upload_id: str) -> list[str]:
        area = self._staging_area(upload_id)
        if not area.is_dir():
            return []
        return [f.name for f in area.iterdir() if f.is_file()]

    @local_file_error_wrap
    def _assemble_parts(self, key: str, upload_id: str, part_names: list[str], container: t.Optional[str]):
        area = self._staging_area(upload_id)
        target = self._path(key, container)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as dst:
            for part_name in HaltFlag.iterate(part_names, self.halt_flag, True):
                with open(area / part_name, "rb") as src:
                    shutil.copyfileobj(src, dst)

    @local_file_error_wrap
    def _discard_staging(self, upload_id: str):
        area = self._staging_area(upload_id)
        if area.exists():
            shutil.rmtree(area)

    @staticmethod
    def supports(backend: str) -> bool:
        return backend in ("local", "file")

    @classmethod
    def build(cls, options: dict, halt_flag: t.Optional[HaltFlag] = None):
        return cls(
            options.get("root", "."),
            staging_dir=options.get("staging_dir"),
            halt_flag=halt_flag,
            **tuning_options(options)
        )
