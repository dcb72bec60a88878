import threading
import typing as t

import zirconium as zr
import zrlog
from autoinject import injector

from roverfs.util import HaltFlag, dynamic_object, DynamicObjectLoadError
from .base import BaseFilesystem, ConfigurationError
from .ftp import FtpFilesystem
from .local import LocalFilesystem
from .qiniu_kodo import QiniuFilesystem
from .s3 import S3Filesystem


@injector.injectable_global
class StorageController:
    """Controller class that builds the filesystem configured under a name.

        [roverfs.storage.NAME]
        backend = "aliyun" | "qcloud" | "s3" -> S3Filesystem
        backend = "qiniu" -> QiniuFilesystem
        backend = "ftp" | "ftps" -> FtpFilesystem
        backend = "local" | "file" -> LocalFilesystem
        backend = "package.ClassName" -> any BaseFilesystem subclass
    """

    config: zr.ApplicationConfig = None

    @injector.construct
    def __init__(self):
        self.filesystem_classes = [
            S3Filesystem,
            QiniuFilesystem,
            FtpFilesystem,
            LocalFilesystem,
        ]
        self._filesystems: dict[str, BaseFilesystem] = {}
        self._lock = threading.Lock()
        self._log = zrlog.get_logger("roverfs.storage")

    def get_filesystem(self, name: str = "default", halt_flag: t.Optional[HaltFlag] = None) -> BaseFilesystem:
        """Get the filesystem configured under the given name, building it on first use."""
        with self._lock:
            if name not in self._filesystems:
                options = self.config.as_dict(("roverfs", "storage", name), default=None)
                if not options:
                    raise ConfigurationError(f"No filesystem configured under [roverfs.storage.{name}]")
                self._filesystems[name] = self.build_filesystem(options, halt_flag)
                self._log.debug(f"Built filesystem [{name}] as [{self._filesystems[name]}]")
            return self._filesystems[name]

    def build_filesystem(self, options: dict, halt_flag: t.Optional[HaltFlag] = None) -> BaseFilesystem:
        """Build a filesystem from a configuration section, without caching it."""
        backend = str(options.get("backend", "")).lower()
        if not backend:
            raise ConfigurationError(f"Filesystem configuration is missing a backend")
        for cls in self.filesystem_classes:
            if cls.supports(backend):
                return cls.build(options, halt_flag=halt_flag)
        try:
            cls = dynamic_object(options["backend"])
        except DynamicObjectLoadError as ex:
            raise ConfigurationError(f"Unknown backend [{backend}]", ex) from ex
        if not (isinstance(cls, type) and issubclass(cls, BaseFilesystem)):
            raise ConfigurationError(f"Backend [{backend}] is not a filesystem class")
        return cls.build(options, halt_flag=halt_flag)

    def close(self):
        with self._lock:
            for fs in self._filesystems.values():
                if hasattr(fs, "close"):
                    fs.close()
            self._filesystems = {}
