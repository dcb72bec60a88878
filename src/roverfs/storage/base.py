from __future__ import annotations
import datetime
import functools
import pathlib
import typing as t

import zrlog

from roverfs.exc import RoverError
from roverfs.util import HaltFlag
from . import paths

if t.TYPE_CHECKING:
    from .multipart import PartRange


KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_PAGE_SIZE = 1000
DEFAULT_BATCH_LIMIT = 1000
DEFAULT_PART_SIZE = 5 * MIB
DEFAULT_COPY_THRESHOLD = GIB
DEFAULT_COPY_CHUNK_SIZE = 10 * MIB


class StorageError(RoverError):
    """Error class specifically for storage errors."""

    def __init__(self, msg, code, is_recoverable: bool = False, wrapped: t.Optional[Exception] = None):
        super().__init__(msg, "STORAGE", code, is_recoverable=is_recoverable, wrapped=wrapped)


class NotFound(StorageError):

    def __init__(self, path: str, container: t.Optional[str] = None, wrapped: t.Optional[Exception] = None):
        self.path = path
        self.container = container
        where = path if container is None else f"{container}:{path}"
        super().__init__(f"Path [{where}] not found", 1100, wrapped=wrapped)


class ListingError(StorageError):
    """A page of a listing could not be retrieved; the enumeration was abandoned."""

    def __init__(self, prefix: str, cursor: str, wrapped: t.Optional[Exception] = None):
        self.prefix = prefix
        self.cursor = cursor
        detail = f": {wrapped}" if wrapped is not None else ""
        recoverable = wrapped.is_recoverable if isinstance(wrapped, RoverError) else True
        super().__init__(f"Listing of prefix [{prefix}] failed at cursor [{cursor}]{detail}", 1200, recoverable, wrapped)


class BatchMutationError(StorageError):
    """One batch of a bulk mutation failed. Earlier batches remain applied."""

    def __init__(self, batch_index: int, applied: int, wrapped: t.Optional[Exception] = None):
        self.batch_index = batch_index
        self.applied = applied
        detail = f": {wrapped}" if wrapped is not None else ""
        super().__init__(f"Batch [{batch_index}] failed after [{applied}] items were applied{detail}", 1300, wrapped=wrapped)


class MultipartError(StorageError):
    """A part upload, chunk copy or completion failed; the session is unusable."""

    def __init__(self, msg: str, path: str, upload_id: t.Optional[str] = None, wrapped: t.Optional[Exception] = None):
        self.path = path
        self.upload_id = upload_id
        super().__init__(f"Multipart upload of [{path}] ({upload_id}): {msg}", 1400, wrapped=wrapped)


class IntegrityMismatch(StorageError):

    def __init__(self, part_number: int, expected: str, actual: str):
        self.part_number = part_number
        self.expected = expected
        self.actual = actual
        super().__init__(f"Integrity check failed for part [{part_number}]: expected [{expected}], got [{actual}]", 1500, True)


class ConfigurationError(StorageError):

    def __init__(self, msg: str, wrapped: t.Optional[Exception] = None):
        super().__init__(msg, 1600, wrapped=wrapped)


def local_file_error_wrap(cb):
    """Converts typical local file-system errors into appropriate StorageErrors with recoverable set properly."""

    @functools.wraps(cb)
    def _inner(*args, **kwargs):
        try:
            return cb(*args, **kwargs)
        except StorageError:
            raise
        except FileNotFoundError as ex:
            raise NotFound(str(ex.filename), wrapped=ex) from ex
        except PermissionError as ex:
            raise StorageError(f"Access to local file denied", 1003, True, ex) from ex
        except IsADirectoryError as ex:
            raise StorageError(f"Local file is a directory", 1004, wrapped=ex) from ex
        except NotADirectoryError as ex:
            raise StorageError(f"Local directory is not a directory", 1005, wrapped=ex) from ex
        except OSError as ex:
            raise StorageError(f"Exception processing local file: {ex.__class__.__name__}: {str(ex)}", 1006, wrapped=ex) from ex

    return _inner


class ListingPage:
    """One page of a delimiter-aware listing."""

    __slots__ = ('keys', 'prefixes', 'is_truncated', 'next_cursor')

    def __init__(self,
                 keys: t.Optional[list[str]] = None,
                 prefixes: t.Optional[list[str]] = None,
                 is_truncated: bool = False,
                 next_cursor: str = ""):
        self.keys = keys or []
        self.prefixes = prefixes or []
        self.is_truncated = is_truncated
        self.next_cursor = next_cursor

    def __eq__(self, other):
        return (
            isinstance(other, ListingPage)
            and self.keys == other.keys
            and self.prefixes == other.prefixes
            and self.is_truncated == other.is_truncated
            and self.next_cursor == other.next_cursor
        )

    def __repr__(self):
        return f"<ListingPage keys={len(self.keys)} prefixes={len(self.prefixes)} truncated={self.is_truncated}>"


class PartDescriptor:
    """A completed part of a multipart upload."""

    __slots__ = ('part_number', 'etag', 'size')

    def __init__(self, part_number: int, etag: str, size: int = 0):
        if part_number < 1:
            raise ValueError(f"Part numbers start at 1 [actual {part_number}]")
        self.part_number = part_number
        self.etag = etag
        self.size = size

    def __eq__(self, other):
        return (
            isinstance(other, PartDescriptor)
            and self.part_number == other.part_number
            and self.etag == other.etag
        )

    def __lt__(self, other):
        return self.part_number < other.part_number

    def __repr__(self):
        return f"<PartDescriptor {self.part_number} {self.etag!r}>"

    def to_dict(self) -> dict:
        return {'PartNumber': self.part_number, 'ETag': self.etag}


class FileMeta:
    """Stat information about a single object."""

    __slots__ = ('path', 'size', 'content_type', 'last_modified', 'etag', 'raw')

    def __init__(self,
                 path: str,
                 size: int,
                 content_type: t.Optional[str] = None,
                 last_modified: t.Optional[datetime.datetime] = None,
                 etag: t.Optional[str] = None,
                 raw: t.Any = None):
        self.path = path
        self.size = size
        self.content_type = content_type
        self.last_modified = last_modified
        self.etag = etag
        self.raw = raw

    def __repr__(self):
        return f"<FileMeta {self.path} size={self.size}>"


def is_local_file(content) -> bool:
    """Check if upload content refers to an existing local file rather than inline data."""
    if isinstance(content, pathlib.Path):
        return content.is_file()
    if isinstance(content, str):
        if content == "" or "\x00" in content or len(content) > 4096:
            return False
        try:
            return pathlib.Path(content).is_file()
        except OSError:
            return False
    return False


def as_bytes(content) -> bytes:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    if isinstance(content, str):
        return content.encode("utf-8")
    if hasattr(content, 'read'):
        data = content.read()
        return data.encode("utf-8") if isinstance(data, str) else data
    raise TypeError(f"Cannot upload content of type [{content.__class__.__name__}]")


class BaseFilesystem:
    """Uniform filesystem contract over one storage backend.

        The public methods are the same for every backend. The recursive directory
        emulation, batching and multipart orchestration are written once against the
        underscore-prefixed primitives, which each backend provides. Backends without
        a native primitive (e.g. no multipart upload) supply an emulated version with
        the same signature.

        Paths are always forward-slash delimited keys. The container is optional; when
        omitted, the backend's default container is used.
    """

    backend_name = "base"

    # True when the backend has real directories that must be created and removed
    has_directories = False

    # False when the underlying client cannot be shared between threads
    supports_parallel_parts = True

    default_page_size = DEFAULT_PAGE_SIZE
    default_batch_limit = DEFAULT_BATCH_LIMIT
    default_part_size = DEFAULT_PART_SIZE

    # None disables chunked copies for backends without a copy-part primitive
    default_copy_threshold: t.Optional[int] = None

    def __init__(self,
                 default_container: t.Optional[str] = None,
                 page_size: t.Optional[int] = None,
                 batch_limit: t.Optional[int] = None,
                 part_size: t.Optional[int] = None,
                 copy_threshold: t.Optional[int] = None,
                 copy_chunk_size: t.Optional[int] = None,
                 max_workers: int = 1,
                 abort_on_failure: bool = True,
                 halt_flag: t.Optional[HaltFlag] = None):
        self.default_container = default_container
        self.page_size = int(page_size or self.default_page_size)
        self.batch_limit = int(batch_limit or self.default_batch_limit)
        self.part_size = int(part_size or self.default_part_size)
        self.copy_threshold = int(copy_threshold) if copy_threshold is not None else self.default_copy_threshold
        self.copy_chunk_size = int(copy_chunk_size or DEFAULT_COPY_CHUNK_SIZE)
        self.max_workers = max(1, int(max_workers or 1)) if self.supports_parallel_parts else 1
        self.abort_on_failure = abort_on_failure
        self.halt_flag = halt_flag
        self._log = zrlog.get_logger(f"roverfs.storage.{self.backend_name}")

    def __str__(self):
        return f"{self.backend_name}:{self.default_container or ''}"

    def container(self, container: t.Optional[str] = None) -> t.Optional[str]:
        """Resolve the container to use for an operation."""
        return container if container is not None else self.default_container

    def mkdir(self, path: str, container: t.Optional[str] = None):
        """Create a directory. Object stores have implicit directories, so this is a no-op there."""
        if self.has_directories:
            self._make_directory(paths.normalize(path), self.container(container))

    def remove(self, paths_: t.Union[str, t.Iterable[str]], container: t.Optional[str] = None, **options):
        """Remove objects or whole virtual directories. Missing paths are ignored."""
        from .tree import TreeOperator
        TreeOperator(self, self.container(container)).remove(paths_)

    def move(self,
             from_path: str,
             to_path: str,
             from_container: t.Optional[str] = None,
             to_container: t.Optional[str] = None,
             **options):
        """Move an object by copying it and then removing the source.

            This works across containers but is not atomic; a failure between the two
            steps leaves both copies in place. Backends with a native move use it instead.
        """
        from .tree import TreeOperator
        return TreeOperator(self, self.container(from_container)).move(
            from_path,
            to_path,
            self.container(to_container),
            **options
        )

    def rename(self, old_names: t.Union[str, t.Iterable[str]], new_name: str, container: t.Optional[str] = None, **options):
        """Rename objects, or move every key under a virtual directory to a new prefix."""
        from .tree import TreeOperator
        TreeOperator(self, self.container(container)).rename(old_names, new_name)

    def upload_file(self, path: str, content, container: t.Optional[str] = None, **options):
        """Upload inline content or, if content names an existing local file, that file."""
        key = paths.normalize(path)
        container = self.container(container)
        if is_local_file(content):
            return self._put_file(key, pathlib.Path(content), container, options)
        return self._put_bytes(key, as_bytes(content), container, options)

    def initiate_multipart_upload(self, path: str, container: t.Optional[str] = None, **options) -> str:
        """Start a multipart upload and return its session id."""
        from .multipart import MultipartUpload
        upload = MultipartUpload(self, paths.normalize(path), self.container(container))
        return upload.initiate(**options)

    def upload_part(self,
                    path: str,
                    content,
                    part_number: int,
                    upload_id: t.Optional[str] = None,
                    container: t.Optional[str] = None,
                    **options) -> PartDescriptor:
        """Upload one part of a multipart upload."""
        from .multipart import MultipartUpload
        key = paths.normalize(path)
        upload = MultipartUpload.resume(self, key, self.container(container), upload_id or self._default_upload_id(key))
        return upload.upload_part(part_number, as_bytes(content), **options)

    def merge_multipart_upload(self,
                               path: str,
                               parts: t.Optional[t.Iterable[PartDescriptor]] = None,
                               upload_id: t.Optional[str] = None,
                               container: t.Optional[str] = None):
        """Complete a multipart upload from its parts, in part number order."""
        from .multipart import MultipartUpload
        key = paths.normalize(path)
        upload = MultipartUpload.resume(
            self,
            key,
            self.container(container),
            upload_id or self._default_upload_id(key),
            parts=parts
        )
        return upload.complete()

    def multipart_upload_from_file(self,
                                   path: str,
                                   local_file: t.Union[str, pathlib.Path],
                                   container: t.Optional[str] = None,
                                   part_size: t.Optional[int] = None,
                                   **options):
        """Upload a local file through a full initiate, upload parts, complete cycle."""
        from .multipart import MultipartOrchestrator
        return MultipartOrchestrator(self).upload_file(
            paths.normalize(path),
            pathlib.Path(local_file),
            self.container(container),
            part_size or self.part_size,
            **options
        )

    def download_file(self,
                      path: str,
                      local: t.Optional[t.Union[str, pathlib.Path]] = None,
                      container: t.Optional[str] = None,
                      **options):
        """Return the object's bytes, or write them to a local file and return its path."""
        key = paths.normalize(path)
        container = self.container(container)
        if local is None:
            return self._get_bytes(key, container, options)
        local = pathlib.Path(local)
        self._ensure_local_parent(local)
        try:
            self._get_to_file(key, local, container, options)
        except Exception:
            local.unlink(True)
            raise
        return local

    def copy_file(self,
                  from_path: str,
                  to_path: str,
                  from_container: t.Optional[str] = None,
                  to_container: t.Optional[str] = None,
                  **options):
        """Copy an object, switching to a chunked multipart copy above the copy threshold."""
        src_key = paths.normalize(from_path)
        dst_key = paths.normalize(to_path)
        src_container = self.container(from_container)
        dst_container = self.container(to_container)
        if src_key == dst_key and src_container == dst_container:
            return True
        if self.copy_threshold is not None:
            meta = self.get_file_meta(src_key, src_container)
            if meta.size > self.copy_threshold:
                from .multipart import MultipartOrchestrator
                return MultipartOrchestrator(self).copy_object(
                    src_key,
                    src_container,
                    dst_key,
                    dst_container,
                    meta.size,
                    self.copy_chunk_size,
                    **options
                )
        return self._copy_object(src_key, src_container, dst_key, dst_container, options)

    def file_exists(self, path: str, container: t.Optional[str] = None, **options) -> bool:
        return self._object_exists(paths.normalize(path), self.container(container))

    def get_file_meta(self, path: str, container: t.Optional[str] = None, **options) -> FileMeta:
        """Get size, content type, modification time and integrity tag. Raises NotFound."""
        return self._head_object(paths.normalize(path), self.container(container))

    def list_files(self, prefix: str = "", start: str = "", size: int = 100, container: t.Optional[str] = None) -> ListingPage:
        """List one page of keys and common prefixes directly below the prefix."""
        return self._list_page(paths.normalize(prefix), start or "", size, self.container(container))

    def list_all(self, prefix: str = "", container: t.Optional[str] = None):
        """List every key and common prefix directly below the prefix, across all pages."""
        from .listing import list_all
        container = self.container(container)
        return list_all(
            lambda p, c, s: self._list_page(p, c, s, container),
            paths.normalize(prefix),
            page_size=self.page_size,
            halt_flag=self.halt_flag
        )

    @local_file_error_wrap
    def _ensure_local_parent(self, local: pathlib.Path):
        local.parent.mkdir(parents=True, exist_ok=True)

    # Primitives. Backends override these.

    def _object_exists(self, key: str, container: t.Optional[str]) -> bool:
        raise NotImplementedError

    def _head_object(self, key: str, container: t.Optional[str]) -> FileMeta:
        raise NotImplementedError

    def _list_page(self, prefix: str, cursor: str, page_size: int, container: t.Optional[str]) -> ListingPage:
        raise NotImplementedError

    def _delete_object(self, key: str, container: t.Optional[str]):
        raise NotImplementedError

    def _delete_objects(self, keys: list[str], container: t.Optional[str]):
        for key in keys:
            self._delete_object(key, container)

    def _rename_object(self, old_key: str, new_key: str, container: t.Optional[str]):
        self.copy_file(old_key, new_key, container, container)
        self._delete_object(old_key, container)

    def _rename_objects(self, pairs: list[tuple[str, str]], container: t.Optional[str]):
        for old_key, new_key in pairs:
            self._rename_object(old_key, new_key, container)

    def _move_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        result = self.copy_file(src_key, dst_key, src_container, dst_container, **options)
        self.remove(src_key, src_container)
        return result

    def _make_directory(self, prefix: str, container: t.Optional[str]):
        pass

    def _remove_directory(self, prefix: str, container: t.Optional[str]):
        pass

    def _put_bytes(self, key: str, data: bytes, container: t.Optional[str], options: dict):
        raise NotImplementedError

    @local_file_error_wrap
    def _put_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        with open(local_path, "rb") as h:
            return self._put_bytes(key, h.read(), container, options)

    def _get_bytes(self, key: str, container: t.Optional[str], options: dict) -> bytes:
        raise NotImplementedError

    @local_file_error_wrap
    def _get_to_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        data = self._get_bytes(key, container, options)
        with open(local_path, "wb") as h:
            h.write(data)

    def _copy_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        raise NotImplementedError

    def _default_upload_id(self, key: str) -> str:
        raise MultipartError("an upload id is required", key)

    def _initiate_upload(self, key: str, container: t.Optional[str], options: dict) -> str:
        raise NotImplementedError

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes, container: t.Optional[str], options: dict) -> PartDescriptor:
        raise NotImplementedError

    def _copy_part(self,
                   src_key: str,
                   src_container: t.Optional[str],
                   dst_key: str,
                   dst_container: t.Optional[str],
                   upload_id: str,
                   part: PartRange) -> PartDescriptor:
        raise NotImplementedError(f"Backend [{self.backend_name}] cannot copy parts by range")

    def _complete_upload(self, key: str, upload_id: str, parts: list[PartDescriptor], container: t.Optional[str]):
        raise NotImplementedError

    def _abort_upload(self, key: str, upload_id: str, container: t.Optional[str]):
        pass

    @staticmethod
    def supports(backend: str) -> bool:
        """Check if this filesystem class handles the given backend name."""
        raise NotImplementedError

    @classmethod
    def build(cls, options: dict, halt_flag: t.Optional[HaltFlag] = None) -> BaseFilesystem:
        """Construct a filesystem from its configuration section."""
        raise NotImplementedError


def tuning_options(options: dict) -> dict:
    """Extract the options every backend accepts from a configuration section."""
    kwargs = {}
    for key in ('page_size', 'batch_limit', 'part_size', 'copy_threshold', 'copy_chunk_size', 'max_workers'):
        if options.get(key) is not None:
            kwargs[key] = int(options[key])
    if options.get('abort_on_failure') is not None:
        kwargs['abort_on_failure'] = bool(options['abort_on_failure'])
    if options.get('default_container') is not None:
        kwargs['default_container'] = str(options['default_container'])
    return kwargs
