import threading
import unittest as ut

import click

from roverfs.cli import report_errors
from roverfs.storage import StorageController, ConfigurationError, NotFound
from roverfs.storage.ftp import FtpFilesystem
from roverfs.storage.local import LocalFilesystem
from roverfs.storage.qiniu_kodo import QiniuFilesystem
from roverfs.storage.s3 import S3Filesystem
from roverfs.util import EventHaltFlag

from .helpers import MemoryFilesystem


class FakeConfig:

    def __init__(self, sections: dict):
        self.sections = sections

    def as_dict(self, key, default=None):
        return self.sections.get(key[-1], default)


class TestStorageController(ut.TestCase):

    def setUp(self):
        self.controller = StorageController()
        self.controller.config = FakeConfig({
            "default": {"backend": "local", "root": ".", "page_size": 50},
            "archive": {"backend": "tests.helpers.MemoryFilesystem", "default_container": "archive"},
        })

    def test_build_s3_presets(self):
        for backend in ("s3", "aliyun", "qcloud"):
            with self.subTest(backend=backend):
                fs = self.controller.build_filesystem({
                    "backend": backend,
                    "region": "ap-guangzhou",
                    "access_key": "key",
                    "secret_key": "secret",
                    "default_container": "bucket",
                })
                self.assertIsInstance(fs, S3Filesystem)
                self.assertEqual(fs.backend_name, backend)
                self.assertEqual(fs.default_container, "bucket")

    def test_backend_is_case_insensitive(self):
        fs = self.controller.build_filesystem({"backend": "LOCAL", "root": "."})
        self.assertIsInstance(fs, LocalFilesystem)

    def test_build_other_backends(self):
        self.assertIsInstance(
            self.controller.build_filesystem({"backend": "qiniu", "access_key": "a", "secret_key": "b"}),
            QiniuFilesystem
        )
        self.assertIsInstance(
            self.controller.build_filesystem({"backend": "ftp", "host": "ftp.example.com"}),
            FtpFilesystem
        )
        self.assertIsInstance(
            self.controller.build_filesystem({"backend": "file", "root": "."}),
            LocalFilesystem
        )

    def test_build_by_class_name(self):
        fs = self.controller.build_filesystem({"backend": "tests.helpers.MemoryFilesystem", "batch_limit": 7})
        self.assertIsInstance(fs, MemoryFilesystem)
        self.assertEqual(fs.batch_limit, 7)

    def test_unknown_backend(self):
        with self.assertRaises(ConfigurationError):
            self.controller.build_filesystem({"backend": "gopher"})
        with self.assertRaises(ConfigurationError):
            self.controller.build_filesystem({"backend": "tests.helpers.NoSuchFilesystem"})
        with self.assertRaises(ConfigurationError):
            self.controller.build_filesystem({"backend": "roverfs.storage.paths.normalize"})
        with self.assertRaises(ConfigurationError):
            self.controller.build_filesystem({})

    def test_get_filesystem_is_cached(self):
        fs = self.controller.get_filesystem()
        self.assertIsInstance(fs, LocalFilesystem)
        self.assertEqual(fs.page_size, 50)
        self.assertIs(self.controller.get_filesystem("default"), fs)

    def test_get_filesystem_passes_halt_flag(self):
        halt_flag = EventHaltFlag(threading.Event())
        fs = self.controller.get_filesystem("archive", halt_flag=halt_flag)
        self.assertIsInstance(fs, MemoryFilesystem)
        self.assertIs(fs.halt_flag, halt_flag)
        self.assertEqual(fs.default_container, "archive")

    def test_missing_configuration(self):
        with self.assertRaises(ConfigurationError):
            self.controller.get_filesystem("nothing")

    def test_close_clears_cache(self):
        fs = self.controller.get_filesystem()
        self.controller.close()
        self.assertIsNot(self.controller.get_filesystem(), fs)


class TestReportErrors(ut.TestCase):

    def test_converts_storage_errors(self):
        with self.assertRaises(click.ClickException) as h:
            with report_errors("default"):
                raise NotFound("a.txt")
        self.assertIn("a.txt", h.exception.message)

    def test_other_errors_pass_through(self):
        with self.assertRaises(ValueError):
            with report_errors("default"):
                raise ValueError("bad")
