"""Qiniu Kodo object storage.

    Bucket management goes through the qiniu SDK. Multipart uploads use the block
    API directly: each part is a "mkblk" block whose CRC32 is checked against the
    server's reply, and completion is a "mkfile" call that joins the block
    contexts in part number order. Every block but the last must be exactly
    4 MiB, so the part size is fixed.
"""
from __future__ import annotations
import datetime
import functools
import pathlib
import typing as t
from urllib.parse import quote

import qiniu
import requests
from qiniu.utils import crc32

from roverfs.util import HaltFlag
from .base import (
    BaseFilesystem,
    StorageError,
    NotFound,
    MultipartError,
    IntegrityMismatch,
    ConfigurationError,
    ListingPage,
    PartDescriptor,
    FileMeta,
    MIB,
    local_file_error_wrap,
    tuning_options,
)
from .multipart import staging_id

QINIU_BLOCK_SIZE = 4 * MIB
DEFAULT_UP_HOST = "https://upload.qiniup.com"

STATUS_NOT_FOUND = 612
STATUS_NO_BUCKET = 631
STATUS_PARTIAL_BATCH = 298


def check_response(ret, info, key: str = ""):
    """Raise the matching StorageError for a failed qiniu SDK call, otherwise return ret."""
    if info is None:
        raise StorageError(f"Qiniu: no response", 3002, True)
    if info.ok():
        return ret
    status = info.status_code
    if status == STATUS_NOT_FOUND:
        raise NotFound(key)
    elif status == STATUS_NO_BUCKET:
        raise ConfigurationError(f"Qiniu: bucket does not exist: {info.error}")
    elif status in (401, 403):
        raise StorageError(f"Qiniu: Access denied: {info.error}", 3003, True)
    elif status == -1:
        raise StorageError(f"Qiniu: Connection error: {info.error}", 3002, True)
    elif info.need_retry():
        raise StorageError(f"Qiniu: Service unavailable [{status}]: {info.error}", 3004, True)
    raise StorageError(f"Qiniu: [{status}] {info.error}", 3000)


def check_batch(ret, info, keys: list[str], allow_missing: bool = False):
    """Check a batch response, which reports one status per operation."""
    if info is not None and info.status_code == STATUS_PARTIAL_BATCH:
        failures = []
        for key, item in zip(keys, ret or []):
            code = item.get("code")
            if code == 200 or (allow_missing and code == STATUS_NOT_FOUND):
                continue
            failures.append((key, code, (item.get("data") or {}).get("error")))
        if failures:
            key, code, error = failures[0]
            raise StorageError(f"Qiniu: {len(failures)} of {len(keys)} batch operations failed, first [{key}]: [{code}] {error}", 3005, True)
        return ret
    return check_response(ret, info)


def wrap_qiniu_errors(cb):

    @functools.wraps(cb)
    def _inner(*args, **kwargs):
        try:
            return cb(*args, **kwargs)
        except StorageError:
            raise
        except requests.Timeout as ex:
            raise StorageError(f"Qiniu: Connection timeout error: {ex.__class__.__name__}: {str(ex)}", 3001, True, ex) from ex
        except requests.ConnectionError as ex:
            raise StorageError(f"Qiniu: Connection error: {ex.__class__.__name__}: {str(ex)}", 3002, True, ex) from ex
        except requests.RequestException as ex:
            raise StorageError(f"Qiniu: {ex.__class__.__name__}: {str(ex)}", 3000, wrapped=ex) from ex

    return _inner


class QiniuFilesystem(BaseFilesystem):

    backend_name = "qiniu"

    default_part_size = QINIU_BLOCK_SIZE

    def __init__(self,
                 auth: qiniu.Auth,
                 bucket_manager: t.Optional[qiniu.BucketManager] = None,
                 up_host: str = DEFAULT_UP_HOST,
                 download_domain: t.Optional[str] = None,
                 download_domains: t.Optional[dict[str, str]] = None,
                 private: bool = True,
                 token_expires: int = 3600,
                 timeout: float = 60,
                 session: t.Optional[requests.Session] = None,
                 **kwargs):
        super().__init__(**kwargs)
        if self.part_size != QINIU_BLOCK_SIZE:
            self._log.warning(f"Qiniu blocks are always {QINIU_BLOCK_SIZE} bytes, ignoring part size [{self.part_size}]")
            self.part_size = QINIU_BLOCK_SIZE
        self.auth = auth
        self.bucket_manager = bucket_manager or qiniu.BucketManager(auth)
        self.up_host = up_host.rstrip("/")
        # bucket -> domain its objects are served from
        self.download_domains = {
            bucket: domain.rstrip("/")
            for bucket, domain in (download_domains or {}).items()
            if domain
        }
        if download_domain:
            if not self.default_container:
                raise ConfigurationError(f"Qiniu download_domain needs a default_container; use download_domains instead")
            self.download_domains.setdefault(self.default_container, download_domain.rstrip("/"))
        self.private = private
        self.token_expires = token_expires
        self.timeout = timeout
        self.session = session or requests.Session()

    def _bucket(self, container: t.Optional[str]) -> str:
        if not container:
            raise ConfigurationError(f"No bucket given and no default bucket configured for [{self.backend_name}]")
        return container

    def _upload_token(self, container: t.Optional[str], key: t.Optional[str] = None) -> str:
        return self.auth.upload_token(self._bucket(container), key, self.token_expires)

    def multipart_upload_from_file(self, path, local_file, container=None, part_size=None, **options):
        if part_size is not None and part_size != QINIU_BLOCK_SIZE:
            self._log.warning(f"Qiniu blocks are always {QINIU_BLOCK_SIZE} bytes, ignoring part size [{part_size}]")
        return super().multipart_upload_from_file(path, local_file, container, QINIU_BLOCK_SIZE, **options)

    def _object_exists(self, key: str, container: t.Optional[str]) -> bool:
        try:
            self._head_object(key, container)
            return True
        except NotFound:
            return False

    def _head_object(self, key: str, container: t.Optional[str]) -> FileMeta:
        ret = check_response(*self.bucket_manager.stat(self._bucket(container), key), key=key)
        last_modified = None
        if ret.get("putTime"):
            # putTime is in units of 100 nanoseconds
            last_modified = datetime.datetime.fromtimestamp(int(ret["putTime"]) / 10000000, datetime.timezone.utc)
        return FileMeta(
            key,
            int(ret.get("fsize", 0)),
            ret.get("mimeType"),
            last_modified,
            ret.get("hash"),
            ret
        )

    def _list_page(self, prefix: str, cursor: str, page_size: int, container: t.Optional[str]) -> ListingPage:
        ret, _, info = self.bucket_manager.list(
            self._bucket(container),
            prefix=prefix or None,
            marker=cursor or None,
            limit=page_size,
            delimiter="/"
        )
        ret = check_response(ret, info, key=prefix)
        marker = ret.get("marker") or ""
        return ListingPage(
            [item["key"] for item in ret.get("items", None) or []],
            list(ret.get("commonPrefixes", None) or []),
            bool(marker),
            marker
        )

    def _delete_object(self, key: str, container: t.Optional[str]):
        try:
            check_response(*self.bucket_manager.delete(self._bucket(container), key), key=key)
        except NotFound:
            pass

    def _delete_objects(self, keys: list[str], container: t.Optional[str]):
        ops = qiniu.build_batch_delete(self._bucket(container), keys)
        check_batch(*self.bucket_manager.batch(ops), keys, allow_missing=True)

    def _rename_object(self, old_key: str, new_key: str, container: t.Optional[str]):
        check_response(*self.bucket_manager.rename(self._bucket(container), old_key, new_key, force="true"), key=old_key)

    def _rename_objects(self, pairs: list[tuple[str, str]], container: t.Optional[str]):
        ops = qiniu.build_batch_rename(self._bucket(container), dict(pairs), force="true")
        check_batch(*self.bucket_manager.batch(ops), [old for old, _ in pairs])

    def _move_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        return check_response(
            *self.bucket_manager.move(self._bucket(src_container), src_key, self._bucket(dst_container), dst_key, force="true"),
            key=src_key
        )

    def _copy_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        return check_response(
            *self.bucket_manager.copy(self._bucket(src_container), src_key, self._bucket(dst_container), dst_key, force="true"),
            key=src_key
        )

    def _put_bytes(self, key: str, data: bytes, container: t.Optional[str], options: dict):
        return check_response(*qiniu.put_data(
            self._upload_token(container, key),
            key,
            data,
            params=options.get("params"),
            mime_type=options.get("content_type") or "application/octet-stream",
            check_crc=True,
        ), key=key)

    @local_file_error_wrap
    def _put_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        return check_response(*qiniu.put_file(
            self._upload_token(container, key),
            key,
            str(local_path),
            params=options.get("params"),
            mime_type=options.get("content_type") or "application/octet-stream",
            check_crc=True,
        ), key=key)

    def _download_url(self, key: str, container: t.Optional[str]) -> str:
        bucket = self._bucket(container)
        if bucket not in self.download_domains:
            raise ConfigurationError(f"Qiniu: no download domain configured for bucket [{bucket}]")
        url = f"{self.download_domains[bucket]}/{quote(key, safe='/')}"
        if self.private:
            url = self.auth.private_download_url(url, expires=self.token_expires)
        return url

    @wrap_qiniu_errors
    def _download(self, key: str, container: t.Optional[str], stream: bool = False) -> requests.Response:
        resp = self.session.get(self._download_url(key, container), timeout=self.timeout, stream=stream)
        if resp.status_code == 404:
            resp.close()
            raise NotFound(key)
        resp.raise_for_status()
        return resp

    @wrap_qiniu_errors
    def _get_bytes(self, key: str, container: t.Optional[str], options: dict) -> bytes:
        return self._download(key, container).content

    @local_file_error_wrap
    @wrap_qiniu_errors
    def _get_to_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        with self._download(key, container, stream=True) as resp:
            with open(local_path, "wb") as h:
                for chunk in resp.iter_content(chunk_size=1024 * 1024):
                    h.write(chunk)

    def _default_upload_id(self, key: str) -> str:
        return staging_id(key)

    def _initiate_upload(self, key: str, container: t.Optional[str], options: dict) -> str:
        # Blocks are independent of any server side session until mkfile
        return staging_id(key)

    @wrap_qiniu_errors
    def _post(self, url: str, data: bytes, container: t.Optional[str], key: t.Optional[str] = None) -> dict:
        resp = self.session.post(
            url,
            data=data,
            headers={
                "Authorization": f"UpToken {self._upload_token(container, key)}",
                "Content-Type": "application/octet-stream",
            },
            timeout=self.timeout
        )
        if resp.status_code in (401, 403):
            raise StorageError(f"Qiniu: Access denied [{resp.status_code}]: {resp.text}", 3003, True)
        elif resp.status_code >= 500:
            raise StorageError(f"Qiniu: Service unavailable [{resp.status_code}]: {resp.text}", 3004, True)
        elif resp.status_code != 200:
            raise StorageError(f"Qiniu: [{resp.status_code}] {resp.text}", 3000)
        return resp.json()

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes, container: t.Optional[str], options: dict) -> PartDescriptor:
        ret = self._post(f"{self.up_host}/mkblk/{len(data)}", data, container, key)
        expected = crc32(data)
        if "ctx" not in ret or ret.get("crc32") != expected:
            raise IntegrityMismatch(part_number, str(expected), str(ret.get("crc32")))
        return PartDescriptor(part_number, ret["ctx"], len(data))

    def _complete_upload(self, key: str, upload_id: str, parts: list[PartDescriptor], container: t.Optional[str]):
        if not parts:
            raise MultipartError("no blocks to merge", key, upload_id)
        total_size = sum(p.size for p in parts)
        url = f"{self.up_host}/mkfile/{total_size}/key/{qiniu.urlsafe_base64_encode(key)}"
        body = ",".join(p.etag for p in parts)
        return self._post(url, body.encode("ascii"), container, key)

    @staticmethod
    def supports(backend: str) -> bool:
        return backend == "qiniu"

    @classmethod
    def build(cls, options: dict, halt_flag: t.Optional[HaltFlag] = None) -> QiniuFilesystem:
        if not options.get("access_key") or not options.get("secret_key"):
            raise ConfigurationError(f"Qiniu requires an access_key and a secret_key")
        auth = qiniu.Auth(options["access_key"], options["secret_key"])
        return cls(
            auth,
            qiniu.BucketManager(auth),
            up_host=options.get("up_host", DEFAULT_UP_HOST),
            download_domain=options.get("download_domain"),
            download_domains=options.get("download_domains"),
            private=bool(options.get("private", True)),
            token_expires=int(options.get("token_expires", 3600)),
            timeout=float(options.get("timeout", 60)),
            halt_flag=halt_flag,
            **tuning_options(options)
        )
