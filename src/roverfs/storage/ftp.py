"""FTP and FTPS servers over ftplib.

    The server has real directories, so listings are built from a directory scan and
    directories are created and removed explicitly. Containers are subdirectories of
    the configured root. Multipart uploads are staged as numbered part files in a
    staging directory on the server and concatenated on completion.

    One control connection is kept open and re-established after connection errors.
    It is not shared between threads.
"""
from __future__ import annotations
import datetime
import ftplib
import functools
import io
import mimetypes
import pathlib
import tempfile
import typing as t

from roverfs.util import HaltFlag
from . import paths
from .base import (
    BaseFilesystem,
    StorageError,
    NotFound,
    ConfigurationError,
    ListingPage,
    FileMeta,
    MIB,
    local_file_error_wrap,
    tuning_options,
)
from .listing import page_from_entries
from .multipart import StagedMultipartMixin

DEFAULT_STAGING_DIR = ".roverfs-staging"


def wrap_ftp_errors(cb):

    @functools.wraps(cb)
    def _inner(self, *args, **kwargs):
        try:
            return cb(self, *args, **kwargs)
        except StorageError:
            raise
        except ftplib.error_perm as ex:
            message = str(ex)
            if message.startswith("550"):
                raise NotFound(str(args[0]) if args else "", wrapped=ex) from ex
            elif message.startswith("530") or message.startswith("532"):
                raise StorageError(f"FTP: Access denied: {message}", 4003, True, ex) from ex
            raise StorageError(f"FTP: {message}", 4000, wrapped=ex) from ex
        except ftplib.error_temp as ex:
            self._reset()
            raise StorageError(f"FTP: Temporary error: {str(ex)}", 4004, True, ex) from ex
        except TimeoutError as ex:
            self._reset()
            raise StorageError(f"FTP: Connection timeout error: {str(ex)}", 4001, True, ex) from ex
        except (OSError, EOFError) as ex:
            self._reset()
            raise StorageError(f"FTP: Connection error: {ex.__class__.__name__}: {str(ex)}", 4002, True, ex) from ex
        except ftplib.Error as ex:
            self._reset()
            raise StorageError(f"FTP: {ex.__class__.__name__}: {str(ex)}", 4000, wrapped=ex) from ex

    return _inner


class FtpFilesystem(StagedMultipartMixin, BaseFilesystem):

    backend_name = "ftp"

    has_directories = True
    supports_parallel_parts = False

    def __init__(self,
                 host: str,
                 port: int = 21,
                 username: str = "anonymous",
                 password: str = "",
                 use_ssl: bool = False,
                 passive: bool = True,
                 timeout: float = 90,
                 root: str = "/",
                 staging_dir: str = DEFAULT_STAGING_DIR,
                 connection_factory: t.Optional[t.Callable[[], ftplib.FTP]] = None,
                 **kwargs):
        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.passive = passive
        self.timeout = timeout
        self.root = "/" + paths.strip_trailing_separator(paths.normalize(root))
        self.staging_dir = paths.strip_trailing_separator(paths.normalize(staging_dir))
        self._connection_factory = connection_factory or self._connect
        self._ftp: t.Optional[ftplib.FTP] = None

    def __str__(self):
        return f"ftp://{self.host}:{self.port}{self.root}"

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP_TLS() if self.use_ssl else ftplib.FTP()
        ftp.connect(self.host, self.port, timeout=self.timeout)
        ftp.login(self.username, self.password)
        if self.use_ssl:
            ftp.prot_p()
        ftp.set_pasv(self.passive)
        ftp.voidcmd("TYPE I")
        return ftp

    @property
    def ftp(self) -> ftplib.FTP:
        if self._ftp is None:
            self._ftp = self._connection_factory()
            self._log.debug(f"Connected to [{self}]")
        return self._ftp

    def _reset(self):
        if self._ftp is not None:
            try:
                self._ftp.close()
            except OSError as ex:
                self._log.debug(f"Error closing connection to [{self}]: {ex}")
            self._ftp = None

    def close(self):
        if self._ftp is not None:
            try:
                self._ftp.quit()
            except (OSError, EOFError, ftplib.Error) as ex:
                self._log.debug(f"Error closing connection to [{self}]: {ex}")
            self._ftp = None

    def _remote(self, key: str, container: t.Optional[str]) -> str:
        return "/" + paths.join(self.root, container or "", key)

    def _staging_path(self, upload_id: str, part_name: t.Optional[str] = None) -> str:
        return "/" + paths.join(self.root, self.staging_dir, upload_id, part_name or "")

    def _is_directory(self, remote: str) -> bool:
        try:
            self.ftp.cwd(remote)
            return True
        except ftplib.error_perm:
            return False

    @wrap_ftp_errors
    def _size(self, key: str, remote: str) -> int:
        size = self.ftp.size(remote)
        if size is None:
            raise NotFound(key)
        return int(size)

    def _object_exists(self, key: str, container: t.Optional[str]) -> bool:
        if not key or key.endswith(paths.SEPARATOR):
            return False
        try:
            self._size(key, self._remote(key, container))
            return True
        except NotFound:
            return False

    @wrap_ftp_errors
    def _head_object(self, key: str, container: t.Optional[str]) -> FileMeta:
        remote = self._remote(key, container)
        size = self._size(key, remote)
        last_modified = None
        try:
            resp = self.ftp.sendcmd(f"MDTM {remote}")
            if resp.startswith("213"):
                last_modified = datetime.datetime.strptime(
                    resp[4:].strip()[:14], "%Y%m%d%H%M%S"
                ).replace(tzinfo=datetime.timezone.utc)
        except ftplib.error_perm as ex:
            self._log.debug(f"MDTM not available for [{remote}]: {ex}")
        return FileMeta(
            key,
            size,
            mimetypes.guess_type(key)[0],
            last_modified,
            None,
            {"remote": remote}
        )

    def _scan(self, remote_dir: str) -> list[tuple[str, bool]]:
        try:
            return [
                (entry_name, facts.get("type") == "dir")
                for entry_name, facts in self.ftp.mlsd(remote_dir, facts=["type"])
                if facts.get("type") not in ("cdir", "pdir")
            ]
        except ftplib.error_perm as ex:
            if str(ex).startswith("550"):
                raise
            self._log.debug(f"MLSD not supported by [{self}], falling back to NLST: {ex}")
        entries = []
        for entry in self.ftp.nlst(remote_dir):
            entry_name = paths.name(entry)
            entries.append((entry_name, self._is_directory(f"{remote_dir.rstrip('/')}/{entry_name}")))
        return entries

    @wrap_ftp_errors
    def _list_page(self, prefix: str, cursor: str, page_size: int, container: t.Optional[str]) -> ListingPage:
        prefix = paths.ensure_trailing_separator(prefix)
        remote_dir = self._remote(prefix, container)
        try:
            entries = self._scan(remote_dir)
        except ftplib.error_perm as ex:
            if str(ex).startswith("550"):
                return ListingPage()
            raise
        staging_root = "/" + paths.join(self.root, self.staging_dir)
        entries = [
            (entry_name, is_dir)
            for entry_name, is_dir in entries
            if not (is_dir and f"{remote_dir.rstrip('/')}/{entry_name}" == staging_root)
        ]
        return page_from_entries(prefix, entries, cursor, page_size)

    @wrap_ftp_errors
    def _delete_object(self, key: str, container: t.Optional[str]):
        try:
            self.ftp.delete(self._remote(key, container))
        except ftplib.error_perm as ex:
            if not str(ex).startswith("550"):
                raise

    def _make_directory(self, prefix: str, container: t.Optional[str]):
        self._make_remote_dirs(self._remote(prefix, container))

    @wrap_ftp_errors
    def _make_remote_dirs(self, remote_dir: str):
        current = ""
        for piece in [x for x in remote_dir.split("/") if x]:
            current = f"{current}/{piece}"
            if not self._is_directory(current):
                self.ftp.mkd(current)

    @wrap_ftp_errors
    def _remove_directory(self, prefix: str, container: t.Optional[str]):
        if not prefix:
            return
        remote_dir = self._remote(prefix, container)
        try:
            self.ftp.rmd(remote_dir)
        except ftplib.error_perm as ex:
            if not str(ex).startswith("550") or self._is_directory(remote_dir):
                raise

    @wrap_ftp_errors
    def _rename_object(self, old_key: str, new_key: str, container: t.Optional[str]):
        new_remote = self._remote(new_key, container)
        self._make_remote_dirs(paths.parent(new_remote))
        self.ftp.rename(self._remote(old_key, container), new_remote)

    @wrap_ftp_errors
    def _store(self, key: str, remote: str, handle):
        self._make_remote_dirs(paths.parent(remote))
        self.ftp.storbinary(f"STOR {remote}", handle)
        return True

    @wrap_ftp_errors
    def _retrieve(self, key: str, remote: str, callback: t.Callable[[bytes], t.Any]):
        self.ftp.retrbinary(f"RETR {remote}", callback)

    def _put_bytes(self, key: str, data: bytes, container: t.Optional[str], options: dict):
        return self._store(key, self._remote(key, container), io.BytesIO(data))

    @local_file_error_wrap
    def _put_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        with open(local_path, "rb") as h:
            return self._store(key, self._remote(key, container), h)

    def _get_bytes(self, key: str, container: t.Optional[str], options: dict) -> bytes:
        buffer = io.BytesIO()
        self._retrieve(key, self._remote(key, container), buffer.write)
        return buffer.getvalue()

    @local_file_error_wrap
    def _get_to_file(self, key: str, local_path: pathlib.Path, container: t.Optional[str], options: dict):
        with open(local_path, "wb") as h:
            self._retrieve(key, self._remote(key, container), h.write)

    @local_file_error_wrap
    def _copy_object(self, src_key: str, src_container: t.Optional[str], dst_key: str, dst_container: t.Optional[str], options: dict):
        # One connection cannot read and write at the same time, so the data goes through a local spool
        with tempfile.SpooledTemporaryFile(max_size=8 * MIB) as spool:
            self._retrieve(src_key, self._remote(src_key, src_container), spool.write)
            spool.seek(0)
            return self._store(dst_key, self._remote(dst_key, dst_container), spool)

    def _stage_part(self, upload_id: str, part_name: str, data: bytes):
        self._store(part_name, self._staging_path(upload_id, part_name), io.BytesIO(data))

    @wrap_ftp_errors
    def _staged_part_names(self, upload_id: str) -> list[str]:
        try:
            return [entry_name for entry_name, is_dir in self._scan(self._staging_path(upload_id)) if not is_dir]
        except ftplib.error_perm as ex:
            if str(ex).startswith("550"):
                return []
            raise

    @local_file_error_wrap
    def _assemble_parts(self, key: str, upload_id: str, part_names: list[str], container: t.Optional[str]):
        with tempfile.TemporaryFile() as assembled:
            for part_name in part_names:
                self._retrieve(part_name, self._staging_path(upload_id, part_name), assembled.write)
            assembled.seek(0)
            self._store(key, self._remote(key, container), assembled)

    @wrap_ftp_errors
    def _discard_staging(self, upload_id: str):
        for part_name in self._staged_part_names(upload_id):
            try:
                self.ftp.delete(self._staging_path(upload_id, part_name))
            except ftplib.error_perm as ex:
                if not str(ex).startswith("550"):
                    raise
        try:
            self.ftp.rmd(self._staging_path(upload_id))
        except ftplib.error_perm as ex:
            if not str(ex).startswith("550"):
                raise

    @staticmethod
    def supports(backend: str) -> bool:
        return backend in ("ftp", "ftps")

    @classmethod
    def build(cls, options: dict, halt_flag: t.Optional[HaltFlag] = None) -> FtpFilesystem:
        if not options.get("host"):
            raise ConfigurationError(f"FTP requires a host")
        return cls(
            options["host"],
            port=int(options.get("port", 21)),
            username=options.get("username", "anonymous"),
            password=options.get("password", ""),
            use_ssl=bool(options.get("ssl", str(options.get("backend", "")).lower() == "ftps")),
            passive=bool(options.get("passive", True)),
            timeout=float(options.get("timeout", 90)),
            root=options.get("root", "/"),
            staging_dir=options.get("staging_dir", DEFAULT_STAGING_DIR),
            halt_flag=halt_flag,
            **tuning_options(options)
        )
