"""S3 compatible object stores (AWS S3, Aliyun OSS, Tencent COS) over boto3."""
from __future__ import annotations
import base64
import functools
import hashlib
import pathlib
import typing as t

import boto3
import botocore.exceptions as bce
from botocore.config import Config

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
    DEFAULT_COPY_THRESHOLD,
    local_file_error_wrap,
    tuning_options,
)

if t.TYPE_CHECKING:
    from .multipart import PartRange


NOT_FOUND_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound", "NoSuchUpload"}
DENIED_CODES = {"403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"}
THROTTLED_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "ServiceUnavailable",
    "InternalError",
    "500",
    "503",
}
DIGEST_CODES = {"BadDigest", "InvalidDigest"}


def _error_code(ex: bce.ClientError) -> str:
    return str(ex.response.get("Error", {}).get("Code", ""))


def wrap_s3_errors(cb):

    @functools.wraps(cb)
    def _inner(*args, **kwargs):
        try:
            return cb(*args, **kwargs)
        except StorageError:
            raise
        except bce.ClientError as ex:
            code = _error_code(ex)
            if code in NOT_FOUND_CODES:
                raise NotFound(str(args[1]) if len(args) > 1 else "", wrapped=ex) from ex
            elif code in DENIED_CODES:
                raise StorageError(f"S3: Access denied: {str(ex)}", 2003, True, ex) from ex
            elif code in THROTTLED_CODES:
                raise StorageError(f"S3: Service unavailable: {str(ex)}", 2004, True, ex) from ex
            raise StorageError(f"S3: {code}: {str(ex)}", 2000, wrapped=ex) from ex
        except (bce.ConnectTimeoutError, bce.ReadTimeoutError) as ex:
            raise StorageError(f"S3: Connection timeout error: {ex.__class__.__name__}: {str(ex)}", 2001, True, ex) from ex
        except (bce.EndpointConnectionError, bce.ConnectionClosedError) as ex:
            raise StorageError(f"S3: Connection error: {ex.__class__.__name__}: {str(ex)}", 2002, True, ex) from ex
        except (bce.NoCredentialsError, bce.PartialCredentialsError) as ex:
            raise ConfigurationError(f"S3: Credentials missing: {str(ex)}", ex) from ex
        except bce.BotoCoreError as ex:
            raise StorageError(f"S3: {ex.__class__.__name__}: {str(ex)}", 2000, wrapped=ex) from ex

    return _inner


class S3Filesystem(BaseFilesystem):
    """Filesystem over one S3 compatible endpoint.

        The aliyun and qcloud backends are presets of this class: they build the
        provider's endpoint from the region and switch on its quirks.
    """

    backend_name = "s3"

    default_copy_threshold = DEFAULT_COPY_THRESHOLD

    PRESETS = {
        "s3": {},
        "aliyun": {
            "endpoint_template": "https://oss-{region}.aliyuncs.com",
            "addressing_style": "virtual",
            "page_size": 100,
        },
        "qcloud": {
            "endpoint_template": "https://cos.{region}.myqcloud.com",
            "addressing_style": "virtual",
            "replace_metadata_in_container": True,
        },
    }

    OBJECT_ARGS = {
        "content_type": "ContentType",
        "metadata": "Metadata",
        "acl": "ACL",
        "storage_class": "StorageClass",
        "cache_control": "CacheControl",
        "content_disposition": "ContentDisposition",
    }

    def __init__(self,
                 client,
                 provider: str = "s3",
                 replace_metadata_in_container: bool = False,
                 verify_part_etag: bool = False,
                 **kwargs):
        self.backend_name = provider
        super().__init__(**kwargs)
        self.client = client
        self.replace_metadata_in_container = replace_metadata_in_container
        self.verify_part_etag = verify_part_etag

    def _bucket(self, container: t.Optional[str]) -> str:
        if not container:
            raise ConfigurationError(f"No bucket given and no default bucket configured for [{self.backend_name}]")
        return container

    def _object_args(self, options: dict) -> dict:
        return {
            self.OBJECT_ARGS[name]: value
            for name, value in options.items()
            if name in self.OBJECT_ARGS and value is not None
        }

    def _object_exists(self, key: str, container: t.Optional[str]) -> bool:
        try:
            self._head_object(key, container)
            return True
        except NotFound:
            return False

    @wrap_s3_errors
    def _head_object(self, key: str, container: t.Optional[str]) -> FileMeta:
        resp = self.client.head_object(Bucket=self._bucket(container), Key=key)
        return FileMeta(
            key,
            int(resp.get("ContentLength", 0)),
            resp.get("ContentType"),
            resp.get("LastModified"),
            str(resp.get("ETag", "")).strip('"') or None,
            resp
        )

    @wrap_s3_errors
    def _list_page(self, prefix: str, cursor: str, page_size: int, container: t.Optional[str]) -> ListingPage:
        kwargs = {
            "Bucket": self._bucket(container),
            "Prefix": prefix,
            "Delimiter": "/",
            "MaxKeys": page_size,
        }
        if cursor:
            kwargs["Marker"] = cursor
        resp = self.client.list_objects(**kwargs)
        keys = [obj["Key"] for obj in resp.get("Contents", None) or []]
        prefixes = [p["Prefix"] for p in resp.get("CommonPrefixes", None) or []]
        is_truncated = bool(resp.get("IsTruncated", False))
        next_cursor = resp.get("NextMarker") or ""
        if is_truncated and not next_cursor:
            # NextMarker is only sent when a delimiter is used on some providers
            last_entries = keys[-1:] + prefixes[-1:]
            next_cursor = max(last_entries) if last_entries else ""
        return ListingPage(keys, prefixes, is_truncated, next_cursor)

    @wrap_s3_errors
    def _delete_object(self, key: str, container: t.Optional[str]):
        self.client.delete_object(Bucket=self._bucket(container), Key=key)

    @wrap_s3_errors
    def _delete_objects(self, keys: list[str], container: t.Optional[str]):
        resp = self.client.delete_objects(
            Bucket=self._bucket(container),
            Delete={
                "Objects": [{"Key": key} for key in keys],
                "Quiet": True,
            }
        )
        errors = [e for e in resp.get("Errors", None) or [] if e.get("Code") not in NOT_FOUND_CODES]
        if errors:
            first = errors[0]
            raise StorageError(
                f"S3: {len(errors)} of {len(keys)} deletes failed, first [{first.get('Key')}]: {first.get('Code')} {first.get('Message')}",
                2005,
                True
            )

    @wrap_s3_errors
    def _put_bytes(self, key: str, data: bytes, container: t.Optional[str], options: dict):
        return self.client.put_object(
            Bucket=self._bucket(container),
            Key=key,
            Body=data,
            **self._object_args(options)
        )

    @wrap_s3_errors
    @local_file_error_wrap
    def _put_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        with open(local_path, "rb") as h:
            return self.client.put_object(
                Bucket=self._bucket(container),
                Key=key,
                Body=h,
                **self._object_args(options)
            )

    @wrap_s3_errors
    def _get_bytes(self, key: str, container: t.Optional[str], options: dict) -> bytes:
        kwargs = {}
        if options.get("range"):
            kwargs["Range"] = options["range"]
        resp = self.client.get_object(Bucket=self._bucket(container), Key=key, **kwargs)
        return resp["Body"].read()

    @wrap_s3_errors
    def _get_to_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        self.client.download_file(self._bucket(container), key, str(local_path))

    @wrap_s3_errors
    def _copy_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        src_bucket = self._bucket(src_container)
        dst_bucket = self._bucket(dst_container)
        kwargs = self._object_args(options)
        if self.replace_metadata_in_container and src_bucket == dst_bucket:
            kwargs["MetadataDirective"] = "REPLACE"
        return self.client.copy_object(
            Bucket=dst_bucket,
            Key=dst_key,
            CopySource={"Bucket": src_bucket, "Key": src_key},
            **kwargs
        )

    @wrap_s3_errors
    def _initiate_upload(self, key: str, container: t.Optional[str], options: dict) -> str:
        resp = self.client.create_multipart_upload(
            Bucket=self._bucket(container),
            Key=key,
            **self._object_args(options)
        )
        upload_id = resp.get("UploadId")
        if not upload_id:
            raise MultipartError("response is missing the upload id", key)
        return str(upload_id)

    @wrap_s3_errors
    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes, container: t.Optional[str], options: dict) -> PartDescriptor:
        digest = hashlib.md5(data).digest()
        try:
            resp = self.client.upload_part(
                Bucket=self._bucket(container),
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentMD5=base64.b64encode(digest).decode("ascii"),
            )
        except bce.ClientError as ex:
            if _error_code(ex) in DIGEST_CODES:
                raise IntegrityMismatch(part_number, digest.hex(), "rejected by server") from ex
            raise
        etag = str(resp.get("ETag", ""))
        if self.verify_part_etag and etag.strip('"').lower() != digest.hex():
            raise IntegrityMismatch(part_number, digest.hex(), etag.strip('"'))
        return PartDescriptor(part_number, etag, len(data))

    @wrap_s3_errors
    def _copy_part(self,
                   src_key: str,
                   src_container: t.Optional[str],
                   dst_key: str,
                   dst_container: t.Optional[str],
                   upload_id: str,
                   part: PartRange) -> PartDescriptor:
        resp = self.client.upload_part_copy(
            Bucket=self._bucket(dst_container),
            Key=dst_key,
            UploadId=upload_id,
            PartNumber=part.part_number,
            CopySource={"Bucket": self._bucket(src_container), "Key": src_key},
            CopySourceRange=f"bytes={part.offset}-{part.end}",
        )
        return PartDescriptor(part.part_number, str(resp.get("CopyPartResult", {}).get("ETag", "")), part.length)

    @wrap_s3_errors
    def _complete_upload(self, key: str, upload_id: str, parts: list[PartDescriptor], container: t.Optional[str]):
        return self.client.complete_multipart_upload(
            Bucket=self._bucket(container),
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [p.to_dict() for p in parts]},
        )

    @wrap_s3_errors
    def _abort_upload(self, key: str, upload_id: str, container: t.Optional[str]):
        self.client.abort_multipart_upload(Bucket=self._bucket(container), Key=key, UploadId=upload_id)

    @staticmethod
    def supports(backend: str) -> bool:
        return backend in S3Filesystem.PRESETS

    @classmethod
    def build(cls, options: dict, halt_flag: t.Optional[HaltFlag] = None) -> S3Filesystem:
        provider = str(options.get("backend", "s3")).lower()
        preset = cls.PRESETS.get(provider, {})
        region = options.get("region")
        endpoint = options.get("endpoint_url")
        if not endpoint and "endpoint_template" in preset:
            if not region:
                raise ConfigurationError(f"Backend [{provider}] requires a region or an endpoint_url")
            endpoint = preset["endpoint_template"].format(region=region)
        client_config = Config(
            s3={"addressing_style": options.get("addressing_style", preset.get("addressing_style", "auto"))},
            retries={"max_attempts": int(options.get("max_attempts", 3))},
            connect_timeout=float(options.get("timeout", 60)),
            read_timeout=float(options.get("timeout", 60)),
        )
        client = boto3.client(
            "s3",
            endpoint_url=endpoint or None,
            region_name=region,
            aws_access_key_id=options.get("access_key"),
            aws_secret_access_key=options.get("secret_key"),
            aws_session_token=options.get("session_token"),
            config=client_config,
        )
        kwargs = tuning_options(options)
        if "page_size" not in kwargs and "page_size" in preset:
            kwargs["page_size"] = preset["page_size"]
        return cls(
            client,
            provider=provider,
            replace_metadata_in_container=bool(options.get("replace_metadata_in_container", preset.get("replace_metadata_in_container", False))),
            verify_part_etag=bool(options.get("verify_part_etag", False)),
            halt_flag=halt_flag,
            **kwargs
        )
