"""In-memory stand-ins for storage backends and their client libraries."""
import hashlib
import io
import threading
import typing as t

import botocore.exceptions as bce

from roverfs.storage.base import (
    BaseFilesystem,
    NotFound,
    FileMeta,
    ListingPage,
    PartDescriptor,
    MultipartError,
    tuning_options,
)


def list_keys(keys: t.Iterable[str], prefix: str = "", delimiter: str = "", marker: str = "", max_keys: int = 1000):
    """List keys the way S3 does: sorted, after the marker, with common prefixes rolled up.

        Returns (keys, prefixes, is_truncated, next_marker).
    """
    entries = []
    seen_prefixes = set()
    for key in sorted(keys):
        if not key.startswith(prefix):
            continue
        rest = key[len(prefix):]
        if delimiter and delimiter in rest:
            common_prefix = prefix + rest[:rest.index(delimiter) + 1]
            if common_prefix in seen_prefixes:
                continue
            seen_prefixes.add(common_prefix)
            if marker and (common_prefix <= marker or marker.startswith(common_prefix)):
                continue
            entries.append((common_prefix, True))
        elif key > marker:
            entries.append((key, False))
    selected = entries[:max_keys]
    is_truncated = len(entries) > max_keys
    return (
        [k for k, is_prefix in selected if not is_prefix],
        [k for k, is_prefix in selected if is_prefix],
        is_truncated,
        selected[-1][0] if is_truncated else "",
    )


class MemoryFilesystem(BaseFilesystem):
    """Filesystem over a dictionary, with native multipart support and a call log.

        Set failures[primitive] to a list of exceptions (or None) to make the next
        calls to that primitive fail in order.
    """

    backend_name = "memory"

    default_copy_threshold = 100

    def __init__(self, objects: t.Optional[dict[str, bytes]] = None, **kwargs):
        kwargs.setdefault("default_container", "bucket")
        super().__init__(**kwargs)
        self.objects: dict[tuple[str, str], bytes] = {}
        for key, data in (objects or {}).items():
            self.objects[(self.default_container, key)] = data
        self.calls: list[tuple] = []
        self.failures: dict[str, list] = {}
        self.uploads: dict[str, dict] = {}
        self.aborted: list[str] = []
        self._next_upload = 0
        self._lock = threading.Lock()

    def _call(self, name: str, *args):
        with self._lock:
            self.calls.append((name, *args))
            pending = self.failures.get(name)
            ex = pending.pop(0) if pending else None
        if ex is not None:
            raise ex

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def keys(self, container: str = "bucket") -> list[str]:
        return sorted(k for c, k in self.objects if c == container)

    def _object_exists(self, key, container):
        self._call("object_exists", key)
        return (container, key) in self.objects

    def _head_object(self, key, container):
        self._call("head_object", key)
        if (container, key) not in self.objects:
            raise NotFound(key, container)
        data = self.objects[(container, key)]
        return FileMeta(key, len(data), "application/octet-stream", None, hashlib.md5(data).hexdigest())

    def _list_page(self, prefix, cursor, page_size, container):
        self._call("list_page", prefix, cursor, page_size)
        keys, prefixes, is_truncated, next_cursor = list_keys(self.keys(container), prefix, "/", cursor, page_size)
        return ListingPage(keys, prefixes, is_truncated, next_cursor)

    def _delete_object(self, key, container):
        self._call("delete_object", key)
        self.objects.pop((container, key), None)

    def _delete_objects(self, keys, container):
        self._call("delete_objects", list(keys))
        for key in keys:
            self.objects.pop((container, key), None)

    def _put_bytes(self, key, data, container, options):
        self._call("put_bytes", key)
        self.objects[(container, key)] = data
        return True

    def _get_bytes(self, key, container, options):
        self._call("get_bytes", key)
        if (container, key) not in self.objects:
            raise NotFound(key, container)
        return self.objects[(container, key)]

    def _copy_object(self, src_key, src_container, dst_key, dst_container, options):
        self._call("copy_object", src_key, dst_key)
        if (src_container, src_key) not in self.objects:
            raise NotFound(src_key, src_container)
        self.objects[(dst_container, dst_key)] = self.objects[(src_container, src_key)]
        return True

    def _initiate_upload(self, key, container, options):
        self._call("initiate_upload", key)
        with self._lock:
            self._next_upload += 1
            upload_id = f"upload-{self._next_upload}"
        self.uploads[upload_id] = {"key": key, "container": container, "parts": {}}
        return upload_id

    def _store_part(self, upload_id, part_number, data):
        if upload_id not in self.uploads:
            raise MultipartError("no such upload", "", upload_id)
        self.uploads[upload_id]["parts"][part_number] = data
        return PartDescriptor(part_number, hashlib.md5(data).hexdigest(), len(data))

    def _upload_part(self, key, upload_id, part_number, data, container, options):
        self._call("upload_part", part_number)
        return self._store_part(upload_id, part_number, data)

    def _copy_part(self, src_key, src_container, dst_key, dst_container, upload_id, part):
        self._call("copy_part", part.part_number, part.offset, part.length)
        data = self.objects[(src_container, src_key)]
        return self._store_part(upload_id, part.part_number, data[part.offset:part.offset + part.length])

    def _complete_upload(self, key, upload_id, parts, container):
        self._call("complete_upload", [p.part_number for p in parts])
        upload = self.uploads.pop(upload_id)
        data = b"".join(upload["parts"][p.part_number] for p in parts)
        self.objects[(container, key)] = data
        return True

    def _abort_upload(self, key, upload_id, container):
        self._call("abort_upload", upload_id)
        self.aborted.append(upload_id)
        self.uploads.pop(upload_id, None)

    @staticmethod
    def supports(backend):
        return backend == "memory"

    @classmethod
    def build(cls, options, halt_flag=None):
        return cls(halt_flag=halt_flag, **tuning_options(options))


def client_error(code: str, operation: str = "Operation") -> bce.ClientError:
    return bce.ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """Just enough of a boto3 S3 client to exercise S3Filesystem."""

    def __init__(self):
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.uploads: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, list] = {}
        self.part_etags: dict[int, str] = {}

    def _call(self, name: str, kwargs: dict):
        self.calls.append((name, kwargs))
        pending = self.failures.get(name)
        if pending:
            ex = pending.pop(0)
            if ex is not None:
                raise ex

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for n, kwargs in self.calls if n == name]

    def _objects(self, bucket: str) -> dict[str, bytes]:
        if bucket not in self.buckets:
            raise client_error("NoSuchBucket")
        return self.buckets[bucket]

    def head_object(self, Bucket, Key):
        self._call("head_object", {"Bucket": Bucket, "Key": Key})
        objects = self._objects(Bucket)
        if Key not in objects:
            raise client_error("404", "HeadObject")
        return {
            "ContentLength": len(objects[Key]),
            "ContentType": "binary/octet-stream",
            "ETag": f'"{hashlib.md5(objects[Key]).hexdigest()}"',
        }

    def list_objects(self, Bucket, Prefix="", Delimiter="", MaxKeys=1000, Marker=""):
        self._call("list_objects", {"Bucket": Bucket, "Prefix": Prefix, "Marker": Marker, "MaxKeys": MaxKeys})
        keys, prefixes, is_truncated, _ = list_keys(self._objects(Bucket).keys(), Prefix, Delimiter, Marker, MaxKeys)
        resp = {"IsTruncated": is_truncated}
        if keys:
            resp["Contents"] = [{"Key": k} for k in keys]
        if prefixes:
            resp["CommonPrefixes"] = [{"Prefix": p} for p in prefixes]
        return resp

    def delete_object(self, Bucket, Key):
        self._call("delete_object", {"Bucket": Bucket, "Key": Key})
        self._objects(Bucket).pop(Key, None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self._call("delete_objects", {"Bucket": Bucket, "Delete": Delete})
        objects = self._objects(Bucket)
        for item in Delete["Objects"]:
            objects.pop(item["Key"], None)
        return {}

    def put_object(self, Bucket, Key, Body, **kwargs):
        self._call("put_object", {"Bucket": Bucket, "Key": Key, **kwargs})
        self._objects(Bucket)[Key] = Body if isinstance(Body, bytes) else Body.read()
        return {"ETag": '"etag"'}

    def get_object(self, Bucket, Key, **kwargs):
        self._call("get_object", {"Bucket": Bucket, "Key": Key, **kwargs})
        objects = self._objects(Bucket)
        if Key not in objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(objects[Key])}

    def download_file(self, Bucket, Key, Filename):
        self._call("download_file", {"Bucket": Bucket, "Key": Key})
        objects = self._objects(Bucket)
        if Key not in objects:
            raise client_error("404", "HeadObject")
        with open(Filename, "wb") as h:
            h.write(objects[Key])

    def copy_object(self, Bucket, Key, CopySource, **kwargs):
        self._call("copy_object", {"Bucket": Bucket, "Key": Key, "CopySource": CopySource, **kwargs})
        source = self._objects(CopySource["Bucket"])
        if CopySource["Key"] not in source:
            raise client_error("NoSuchKey", "CopyObject")
        self._objects(Bucket)[Key] = source[CopySource["Key"]]
        return {"CopyObjectResult": {"ETag": '"etag"'}}

    def create_multipart_upload(self, Bucket, Key, **kwargs):
        self._call("create_multipart_upload", {"Bucket": Bucket, "Key": Key, **kwargs})
        upload_id = f"mpu-{len(self.uploads) + 1}"
        self.uploads[upload_id] = {"Bucket": Bucket, "Key": Key, "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body, ContentMD5=None):
        self._call("upload_part", {"Bucket": Bucket, "Key": Key, "UploadId": UploadId, "PartNumber": PartNumber, "ContentMD5": ContentMD5})
        if UploadId not in self.uploads:
            raise client_error("NoSuchUpload", "UploadPart")
        self.uploads[UploadId]["parts"][PartNumber] = Body
        etag = self.part_etags.get(PartNumber, hashlib.md5(Body).hexdigest())
        return {"ETag": f'"{etag}"'}

    def upload_part_copy(self, Bucket, Key, UploadId, PartNumber, CopySource, CopySourceRange):
        self._call("upload_part_copy", {"UploadId": UploadId, "PartNumber": PartNumber, "CopySource": CopySource, "CopySourceRange": CopySourceRange})
        data = self._objects(CopySource["Bucket"])[CopySource["Key"]]
        start, end = CopySourceRange[6:].split("-")
        chunk = data[int(start):int(end) + 1]
        self.uploads[UploadId]["parts"][PartNumber] = chunk
        return {"CopyPartResult": {"ETag": f'"{hashlib.md5(chunk).hexdigest()}"'}}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._call("complete_multipart_upload", {"Bucket": Bucket, "Key": Key, "UploadId": UploadId, "MultipartUpload": MultipartUpload})
        upload = self.uploads.pop(UploadId)
        self._objects(Bucket)[Key] = b"".join(upload["parts"][p["PartNumber"]] for p in MultipartUpload["Parts"])
        return {"Location": f"{Bucket}/{Key}", "ETag": '"multipart"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._call("abort_multipart_upload", {"Bucket": Bucket, "Key": Key, "UploadId": UploadId})
        self.uploads.pop(UploadId, None)
        return {}
