import base64
import hashlib
import pathlib
import tempfile
import unittest as ut

import botocore.exceptions as bce

from roverfs.storage.base import NotFound, StorageError, ConfigurationError, MultipartError, GIB
from roverfs.storage.s3 import S3Filesystem, wrap_s3_errors

from .helpers import FakeS3Client, client_error


def build_fs(client: FakeS3Client, **kwargs) -> S3Filesystem:
    client.buckets.setdefault("bucket", {})
    kwargs.setdefault("default_container", "bucket")
    return S3Filesystem(client, **kwargs)


class TestS3ErrorWrapping(ut.TestCase):

    def _raise(self, ex):
        @wrap_s3_errors
        def _inner(fs, key):
            raise ex
        return _inner

    def test_not_found(self):
        with self.assertRaises(NotFound) as h:
            self._raise(client_error("NoSuchKey"))(None, "a/b")
        self.assertEqual(h.exception.path, "a/b")

    def test_throttled_is_recoverable(self):
        with self.assertRaises(StorageError) as h:
            self._raise(client_error("SlowDown"))(None, "a")
        self.assertTrue(h.exception.is_recoverable)

    def test_access_denied_is_recoverable(self):
        with self.assertRaises(StorageError) as h:
            self._raise(client_error("AccessDenied"))(None, "a")
        self.assertTrue(h.exception.is_recoverable)

    def test_connection_error(self):
        with self.assertRaises(StorageError) as h:
            self._raise(bce.EndpointConnectionError(endpoint_url="https://example.com"))(None, "a")
        self.assertTrue(h.exception.is_recoverable)

    def test_missing_credentials(self):
        with self.assertRaises(ConfigurationError):
            self._raise(bce.NoCredentialsError())(None, "a")

    def test_other_errors(self):
        with self.assertRaises(StorageError) as h:
            self._raise(client_error("InvalidArgument"))(None, "a")
        self.assertFalse(h.exception.is_recoverable)


class TestS3Filesystem(ut.TestCase):

    def test_exists_and_meta(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.buckets["bucket"]["a.txt"] = b"hello"
        self.assertTrue(fs.file_exists("a.txt"))
        self.assertFalse(fs.file_exists("b.txt"))
        meta = fs.get_file_meta("/a.txt")
        self.assertEqual(meta.size, 5)
        self.assertEqual(meta.etag, hashlib.md5(b"hello").hexdigest())
        with self.assertRaises(NotFound):
            fs.get_file_meta("b.txt")

    def test_list_files_page(self):
        client = FakeS3Client()
        fs = build_fs(client)
        for key in ["a/1", "a/2", "a/3", "a/b/4"]:
            client.buckets["bucket"][key] = b""
        page = fs.list_files("a/", size=2)
        self.assertEqual(page.keys, ["a/1", "a/2"])
        self.assertTrue(page.is_truncated)
        self.assertEqual(page.next_cursor, "a/2")
        request = client.calls_to("list_objects")[0]
        self.assertEqual(request["MaxKeys"], 2)
        page = fs.list_files("a/", start=page.next_cursor, size=2)
        self.assertEqual(page.keys, ["a/3"])
        self.assertEqual(page.prefixes, ["a/b/"])
        self.assertFalse(page.is_truncated)

    def test_remove_directory_uses_bulk_delete(self):
        client = FakeS3Client()
        fs = build_fs(client, page_size=10, batch_limit=4)
        for i in range(9):
            client.buckets["bucket"][f"logs/{i}"] = b""
        client.buckets["bucket"]["logs/old/x"] = b""
        client.buckets["bucket"]["keep"] = b""
        fs.remove("logs")
        self.assertEqual(list(client.buckets["bucket"]), ["keep"])
        batches = [len(c["Delete"]["Objects"]) for c in client.calls_to("delete_objects")]
        self.assertEqual(batches, [4, 4, 1, 1])
        self.assertTrue(all(c["Delete"]["Quiet"] for c in client.calls_to("delete_objects")))

    def test_bulk_delete_errors(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.delete_objects = lambda Bucket, Delete: {"Errors": [{"Key": "a", "Code": "AccessDenied", "Message": "no"}]}
        with self.assertRaises(StorageError):
            fs._delete_objects(["a"], "bucket")

    def test_rename_directory(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.buckets["bucket"].update({"a/1": b"1", "a/b/2": b"2"})
        fs.rename("a", "c")
        self.assertEqual(sorted(client.buckets["bucket"]), ["c/1", "c/b/2"])

    def test_upload_inline_and_local(self):
        client = FakeS3Client()
        fs = build_fs(client)
        fs.upload_file("inline.txt", "some text", content_type="text/plain")
        self.assertEqual(client.buckets["bucket"]["inline.txt"], b"some text")
        self.assertEqual(client.calls_to("put_object")[0]["ContentType"], "text/plain")
        with tempfile.TemporaryDirectory() as d:
            local_file = pathlib.Path(d) / "local.bin"
            local_file.write_bytes(b"\x00\x01")
            fs.upload_file("local.bin", str(local_file))
        self.assertEqual(client.buckets["bucket"]["local.bin"], b"\x00\x01")

    def test_download(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.buckets["bucket"]["a.txt"] = b"hello"
        self.assertEqual(fs.download_file("a.txt"), b"hello")
        with tempfile.TemporaryDirectory() as d:
            target = fs.download_file("a.txt", pathlib.Path(d) / "sub" / "a.txt")
            self.assertEqual(target.read_bytes(), b"hello")
            with self.assertRaises(NotFound):
                fs.download_file("missing.txt", pathlib.Path(d) / "missing.txt")
            self.assertFalse((pathlib.Path(d) / "missing.txt").exists())

    def test_copy_between_buckets(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.buckets["archive"] = {}
        client.buckets["bucket"]["a"] = b"data"
        fs.copy_file("a", "b", "bucket", "archive")
        self.assertEqual(client.buckets["archive"]["b"], b"data")
        self.assertNotIn("MetadataDirective", client.calls_to("copy_object")[0])

    def test_replace_metadata_in_same_bucket(self):
        client = FakeS3Client()
        fs = build_fs(client, replace_metadata_in_container=True)
        client.buckets["archive"] = {}
        client.buckets["bucket"]["a"] = b"data"
        fs.copy_file("a", "b")
        fs.copy_file("a", "c", "bucket", "archive")
        calls = client.calls_to("copy_object")
        self.assertEqual(calls[0]["MetadataDirective"], "REPLACE")
        self.assertNotIn("MetadataDirective", calls[1])

    def test_large_copy_uses_part_copy(self):
        client = FakeS3Client()
        fs = build_fs(client, copy_threshold=10, copy_chunk_size=4)
        client.buckets["bucket"]["big"] = b"0123456789ABC"
        fs.copy_file("big", "copy")
        ranges = [c["CopySourceRange"] for c in client.calls_to("upload_part_copy")]
        self.assertEqual(ranges, ["bytes=0-3", "bytes=4-7", "bytes=8-11", "bytes=12-12"])
        self.assertEqual(client.buckets["bucket"]["copy"], b"0123456789ABC")
        self.assertEqual(client.calls_to("copy_object"), [])

    def test_default_copy_threshold(self):
        fs = build_fs(FakeS3Client())
        self.assertEqual(fs.copy_threshold, GIB)

    def test_multipart_upload(self):
        client = FakeS3Client()
        fs = build_fs(client)
        upload_id = fs.initiate_multipart_upload("mp.bin")
        p2 = fs.upload_part("mp.bin", b"world", 2, upload_id)
        p1 = fs.upload_part("mp.bin", b"hello ", 1, upload_id)
        fs.merge_multipart_upload("mp.bin", [p2, p1], upload_id)
        self.assertEqual(client.buckets["bucket"]["mp.bin"], b"hello world")
        completed = client.calls_to("complete_multipart_upload")[0]["MultipartUpload"]["Parts"]
        self.assertEqual([p["PartNumber"] for p in completed], [1, 2])
        sent_md5 = client.calls_to("upload_part")[0]["ContentMD5"]
        self.assertEqual(sent_md5, base64.b64encode(hashlib.md5(b"world").digest()).decode("ascii"))

    def test_upload_part_requires_upload_id(self):
        fs = build_fs(FakeS3Client())
        with self.assertRaises(MultipartError):
            fs.upload_part("mp.bin", b"x", 1)

    def test_bad_digest_retried_once(self):
        client = FakeS3Client()
        fs = build_fs(client)
        client.failures["upload_part"] = [client_error("BadDigest")]
        upload_id = fs.initiate_multipart_upload("mp.bin")
        part = fs.upload_part("mp.bin", b"data", 1, upload_id)
        self.assertEqual(part.part_number, 1)
        self.assertEqual(len(client.calls_to("upload_part")), 2)

    def test_etag_mismatch_fails_and_aborts(self):
        client = FakeS3Client()
        fs = build_fs(client, verify_part_etag=True)
        client.part_etags[1] = "not-the-md5"
        upload_id = fs.initiate_multipart_upload("mp.bin")
        with self.assertRaises(MultipartError):
            fs.upload_part("mp.bin", b"data", 1, upload_id)
        self.assertEqual(len(client.calls_to("upload_part")), 2)
        self.assertEqual(client.calls_to("abort_multipart_upload")[0]["UploadId"], upload_id)

    def test_multipart_from_file(self):
        client = FakeS3Client()
        fs = build_fs(client)
        with tempfile.TemporaryDirectory() as d:
            local_file = pathlib.Path(d) / "payload.bin"
            local_file.write_bytes(b"x" * 25)
            fs.multipart_upload_from_file("payload.bin", local_file, part_size=10)
        self.assertEqual(client.buckets["bucket"]["payload.bin"], b"x" * 25)
        self.assertEqual(len(client.calls_to("upload_part")), 3)

    def test_no_bucket(self):
        fs = S3Filesystem(FakeS3Client())
        with self.assertRaises(ConfigurationError):
            fs.file_exists("a")


class TestS3Build(ut.TestCase):

    def test_supports(self):
        for backend in ("s3", "aliyun", "qcloud"):
            self.assertTrue(S3Filesystem.supports(backend))
        self.assertFalse(S3Filesystem.supports("qiniu"))

    def test_aliyun_preset(self):
        fs = S3Filesystem.build({
            "backend": "aliyun",
            "region": "cn-hangzhou",
            "access_key": "key",
            "secret_key": "secret",
            "default_container": "bucket",
        })
        self.assertEqual(fs.client.meta.endpoint_url, "https://oss-cn-hangzhou.aliyuncs.com")
        self.assertEqual(fs.page_size, 100)
        self.assertFalse(fs.replace_metadata_in_container)
        self.assertEqual(fs.backend_name, "aliyun")

    def test_qcloud_preset(self):
        fs = S3Filesystem.build({
            "backend": "qcloud",
            "region": "ap-guangzhou",
            "access_key": "key",
            "secret_key": "secret",
        })
        self.assertEqual(fs.client.meta.endpoint_url, "https://cos.ap-guangzhou.myqcloud.com")
        self.assertTrue(fs.replace_metadata_in_container)
        self.assertEqual(fs.page_size, 1000)

    def test_preset_requires_region(self):
        with self.assertRaises(ConfigurationError):
            S3Filesystem.build({"backend": "aliyun"})

    def test_configured_page_size_wins(self):
        fs = S3Filesystem.build({
            "backend": "aliyun",
            "region": "cn-hangzhou",
            "access_key": "key",
            "secret_key": "secret",
            "page_size": 50,
        })
        self.assertEqual(fs.page_size, 50)
