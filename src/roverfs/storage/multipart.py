"""Multipart uploads and chunked copies.

    A MultipartUpload walks through INITIATED -> UPLOADING -> COMPLETED, or ends in
    FAILED as soon as any part, chunk or the completion call fails. Parts may finish
    in any order; they are always handed to the completion primitive sorted by part
    number.

    Backends with native multipart support expose it through the _initiate_upload,
    _upload_part, _copy_part, _complete_upload and _abort_upload primitives. Backends
    without it mix in StagedMultipartMixin, which writes each part as a numbered
    file in a staging area and concatenates them on completion.
"""
from __future__ import annotations
import concurrent.futures
import enum
import hashlib
import math
import pathlib
import threading
import typing as t

import zrlog

from roverfs.exc import RoverHalt
from .base import (
    PartDescriptor,
    MultipartError,
    IntegrityMismatch,
    StorageError,
    local_file_error_wrap,
)

if t.TYPE_CHECKING:
    from .base import BaseFilesystem


class UploadState(enum.Enum):

    INITIATED = 'initiated'
    UPLOADING = 'uploading'
    COMPLETED = 'completed'
    FAILED = 'failed'


class PartRange:
    """A contiguous byte range of the payload that becomes one part."""

    __slots__ = ('part_number', 'offset', 'length')

    def __init__(self, part_number: int, offset: int, length: int):
        self.part_number = part_number
        self.offset = offset
        self.length = length

    @property
    def end(self) -> int:
        """Last byte of the range (inclusive), as used by HTTP Range headers."""
        return self.offset + self.length - 1

    def __eq__(self, other):
        return (
            isinstance(other, PartRange)
            and self.part_number == other.part_number
            and self.offset == other.offset
            and self.length == other.length
        )

    def __repr__(self):
        return f"<PartRange {self.part_number} {self.offset}+{self.length}>"


def plan_parts(total_size: int, part_size: int) -> list[PartRange]:
    """Divide total_size bytes into contiguous parts; the last part takes the remainder."""
    if part_size < 1:
        raise ValueError(f"Part size must be positive [actual {part_size}]")
    if total_size < 0:
        raise ValueError(f"Size cannot be negative [actual {total_size}]")
    if total_size == 0:
        return [PartRange(1, 0, 0)]
    count = math.ceil(total_size / part_size)
    plan = []
    for idx in range(0, count):
        offset = idx * part_size
        plan.append(PartRange(idx + 1, offset, min(part_size, total_size - offset)))
    return plan


def plan_copy(total_size: int, chunk_size: int) -> list[PartRange]:
    """Split a remote object into ordered byte ranges for a chunked copy."""
    if total_size < 1:
        raise ValueError(f"Cannot plan a chunked copy of an empty object")
    return plan_parts(total_size, chunk_size)


def staging_id(key: str) -> str:
    """Stable session id for backends without native multipart uploads."""
    return hashlib.md5(key.encode("utf-8")).hexdigest()


def check_part_numbers(numbers: list[int], key: str, upload_id: t.Optional[str] = None):
    """Parts can only be merged when they are numbered 1, 2, ... without gaps."""
    expected = list(range(1, len(numbers) + 1))
    if sorted(numbers) != expected:
        missing = sorted(set(range(1, max(numbers, default=0) + 1)) - set(numbers))
        raise MultipartError(f"parts must be numbered 1 to {len(numbers)} without gaps, missing {missing}", key, upload_id)


class MultipartUpload:
    """State of one multipart upload or chunked copy."""

    def __init__(self,
                 fs: BaseFilesystem,
                 key: str,
                 container: t.Optional[str],
                 upload_id: t.Optional[str] = None,
                 parts: t.Optional[t.Iterable[PartDescriptor]] = None):
        self.fs = fs
        self.key = key
        self.container = container
        self.upload_id = upload_id
        self._parts: dict[int, PartDescriptor] = {}
        for part in parts or []:
            self._parts[part.part_number] = part
        self.state = None
        if upload_id is not None:
            self.state = UploadState.UPLOADING if self._parts else UploadState.INITIATED
        self._lock = threading.Lock()
        self._log = zrlog.get_logger("roverfs.storage.multipart")

    @classmethod
    def start(cls, fs: BaseFilesystem, key: str, container: t.Optional[str], **options) -> MultipartUpload:
        upload = cls(fs, key, container)
        upload.initiate(**options)
        return upload

    @classmethod
    def resume(cls,
               fs: BaseFilesystem,
               key: str,
               container: t.Optional[str],
               upload_id: str,
               parts: t.Optional[t.Iterable[PartDescriptor]] = None) -> MultipartUpload:
        return cls(fs, key, container, upload_id, parts)

    @property
    def parts(self) -> list[PartDescriptor]:
        """Completed parts, in part number order."""
        with self._lock:
            return sorted(self._parts.values())

    def initiate(self, **options) -> str:
        if self.state is not None:
            raise MultipartError("already initiated", self.key, self.upload_id)
        try:
            self.upload_id = self.fs._initiate_upload(self.key, self.container, options)
        except RoverHalt:
            raise
        except Exception as ex:
            self.state = UploadState.FAILED
            raise MultipartError(f"initiate failed: {ex}", self.key, wrapped=ex) from ex
        self.state = UploadState.INITIATED
        self._log.debug(f"Initiated multipart upload [{self.upload_id}] for [{self.key}]")
        return self.upload_id

    def _check_active(self, next_state: t.Optional[UploadState] = None):
        with self._lock:
            if self.state is None:
                raise MultipartError("not initiated", self.key)
            if self.state in (UploadState.COMPLETED, UploadState.FAILED):
                raise MultipartError(f"session is {self.state.value}", self.key, self.upload_id)
            if next_state is not None:
                self.state = next_state

    def upload_part(self, part_number: int, data: bytes, **options) -> PartDescriptor:
        """Upload one part. An integrity mismatch is retried exactly once."""
        self._check_active(UploadState.UPLOADING)
        part = self._attempt(
            part_number,
            lambda: self.fs._upload_part(self.key, self.upload_id, part_number, data, self.container, options)
        )
        self._record(part)
        return part

    def copy_part(self, src_key: str, src_container: t.Optional[str], part_range: PartRange) -> PartDescriptor:
        """Copy one byte range of a remote object into this upload."""
        self._check_active(UploadState.UPLOADING)
        part = self._attempt(
            part_range.part_number,
            lambda: self.fs._copy_part(src_key, src_container, self.key, self.container, self.upload_id, part_range)
        )
        self._record(part)
        return part

    def _attempt(self, part_number: int, action: t.Callable[[], PartDescriptor]) -> PartDescriptor:
        try:
            try:
                return action()
            except IntegrityMismatch as ex:
                self._log.warning(f"Part [{part_number}] of [{self.key}] failed integrity check, retrying: {ex}")
                return action()
        except (RoverHalt, MultipartError):
            self.fail()
            raise
        except Exception as ex:
            raise self.fail(ex, f"part {part_number} failed") from ex

    def _record(self, part: PartDescriptor):
        with self._lock:
            self._parts[part.part_number] = part
        self._log.debug(f"Part [{part.part_number}] of [{self.key}] uploaded")

    def complete(self):
        """Merge the parts, in part number order, into the target object."""
        self._check_active()
        parts = self.parts
        try:
            if parts:
                check_part_numbers([p.part_number for p in parts], self.key, self.upload_id)
            result = self.fs._complete_upload(self.key, self.upload_id, parts, self.container)
        except (RoverHalt, MultipartError):
            self.fail()
            raise
        except Exception as ex:
            raise self.fail(ex, "completion failed") from ex
        self.state = UploadState.COMPLETED
        self._log.info(f"Completed multipart upload of [{self.key}] from {len(parts)} parts")
        return result

    def fail(self, ex: t.Optional[Exception] = None, msg: str = "upload failed") -> MultipartError:
        """Mark the session as failed, abort it if configured and build the error to raise."""
        with self._lock:
            first_failure = self.state != UploadState.FAILED
            self.state = UploadState.FAILED
        if first_failure and self.fs.abort_on_failure and self.upload_id is not None:
            try:
                self.fs._abort_upload(self.key, self.upload_id, self.container)
                self._log.info(f"Aborted multipart upload [{self.upload_id}] for [{self.key}]")
            except StorageError as abort_ex:
                self._log.warning(f"Could not abort multipart upload [{self.upload_id}] for [{self.key}]: {abort_ex}")
        detail = f"{msg}: {ex}" if ex is not None else msg
        return MultipartError(detail, self.key, self.upload_id, wrapped=ex)


@local_file_error_wrap
def read_range(local_file: pathlib.Path, offset: int, length: int) -> bytes:
    with open(local_file, "rb") as h:
        h.seek(offset)
        return h.read(length)


@local_file_error_wrap
def local_size(local_file: pathlib.Path) -> int:
    return local_file.stat().st_size


class MultipartOrchestrator:
    """Runs a whole multipart upload or chunked copy against one filesystem."""

    def __init__(self, fs: BaseFilesystem):
        self.fs = fs
        self._log = zrlog.get_logger("roverfs.storage.multipart")

    def upload_file(self, key: str, local_file: pathlib.Path, container: t.Optional[str], part_size: int, **options):
        plan = plan_parts(local_size(local_file), part_size)
        self._log.debug(f"Uploading [{local_file}] to [{key}] in {len(plan)} parts")
        upload = MultipartUpload.start(self.fs, key, container, **options)
        self._run(
            upload,
            plan,
            lambda part: upload.upload_part(part.part_number, read_range(local_file, part.offset, part.length))
        )
        return upload.complete()

    def copy_object(self,
                    src_key: str,
                    src_container: t.Optional[str],
                    dst_key: str,
                    dst_container: t.Optional[str],
                    size: int,
                    chunk_size: int,
                    **options):
        plan = plan_copy(size, chunk_size)
        self._log.debug(f"Copying [{src_key}] to [{dst_key}] in {len(plan)} chunks")
        upload = MultipartUpload.start(self.fs, dst_key, dst_container, **options)
        self._run(upload, plan, lambda part: upload.copy_part(src_key, src_container, part))
        return upload.complete()

    def _run(self, upload: MultipartUpload, plan: list[PartRange], action: t.Callable[[PartRange], PartDescriptor]):
        try:
            if self.fs.max_workers <= 1 or len(plan) <= 1:
                for part in plan:
                    if self.fs.halt_flag is not None:
                        self.fs.halt_flag.breakpoint()
                    action(part)
            else:
                self._run_parallel(plan, action)
        except (MultipartError, RoverHalt):
            if upload.state != UploadState.FAILED:
                upload.fail()
            raise
        except Exception as ex:
            raise upload.fail(ex, "could not read part") from ex

    def _run_parallel(self, plan: list[PartRange], action: t.Callable[[PartRange], PartDescriptor]):
        halt_flag = self.fs.halt_flag

        def _do(part: PartRange):
            if halt_flag is not None:
                halt_flag.breakpoint()
            return action(part)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.fs.max_workers) as pool:
            futures = [pool.submit(_do, part) for part in plan]
            try:
                for future in concurrent.futures.as_completed(futures):
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise


class StagedMultipartMixin:
    """Multipart uploads for backends without a native multipart API.

        The session id is a hash of the target path, so initiating twice for the same
        path reuses the same staging area. Each part is written as "<n>.part" inside
        the staging area and gets an empty integrity tag.
    """

    PART_SUFFIX = ".part"

    def _default_upload_id(self, key: str) -> str:
        return staging_id(key)

    def _initiate_upload(self, key: str, container: t.Optional[str], options: dict) -> str:
        return staging_id(key)

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes, container: t.Optional[str], options: dict) -> PartDescriptor:
        self._stage_part(upload_id, f"{part_number}{self.PART_SUFFIX}", data)
        return PartDescriptor(part_number, "", len(data))

    def _complete_upload(self, key: str, upload_id: str, parts: list[PartDescriptor], container: t.Optional[str]):
        if parts:
            numbers = [p.part_number for p in sorted(parts)]
        else:
            numbers = self._staged_part_numbers(upload_id)
        if not numbers:
            raise MultipartError("no staged parts to merge", key, upload_id)
        check_part_numbers(numbers, key, upload_id)
        self._assemble_parts(key, upload_id, [f"{n}{self.PART_SUFFIX}" for n in numbers], container)
        self._discard_staging(upload_id)
        return True

    def _abort_upload(self, key: str, upload_id: str, container: t.Optional[str]):
        self._discard_staging(upload_id)

    def _staged_part_numbers(self, upload_id: str) -> list[int]:
        numbers = []
        for part_name in self._staged_part_names(upload_id):
            stem = part_name[:-len(self.PART_SUFFIX)] if part_name.endswith(self.PART_SUFFIX) else ""
            if stem.isdigit():
                numbers.append(int(stem))
        return sorted(numbers)

    def _stage_part(self, upload_id: str, part_name: str, data: bytes):
        raise NotImplementedError

    def _staged_part_names(self, upload_id: str) -> list[str]:
        raise NotImplementedError

    def _assemble_parts(self, key: str, upload_id: str, part_names: list[str], container: t.Optional[str]):
        raise NotImplementedError

    def _discard_staging(self, upload_id: str):
        raise NotImplementedError
