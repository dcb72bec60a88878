"""
    Provides a single filesystem interface over several storage backends.

    In general, one should use the StorageController to get the filesystem configured
    under a name. Every filesystem offers the same operations (remove, rename, move,
    upload, multipart upload, download, copy, stat and listing) regardless of whether
    it is an S3 compatible object store, Qiniu, an FTP server or a local disk.

    Object stores have no real directories. This component adopts the convention that
    keys are forward-slash delimited and that a path ending in a slash names a
    directory (e.g. reports/2024/) while one without names an object. Operations on a
    directory are applied to every key below it, recursively.

    Not every backend supports everything natively. Where a primitive is missing (e.g.
    multipart uploads on FTP, server-side moves on S3) it is emulated, so the result is
    the same but the cost and atomicity differ.
"""
from .core import StorageController
from .base import (
    BaseFilesystem,
    StorageError,
    NotFound,
    ListingError,
    BatchMutationError,
    MultipartError,
    IntegrityMismatch,
    ConfigurationError,
    ListingPage,
    PartDescriptor,
    FileMeta,
)
