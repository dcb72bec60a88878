import contextlib
import pathlib

import click
import zrlog
from autoinject import injector

from roverfs.boot import init_roverfs
from roverfs.exc import RoverError
from roverfs.storage import StorageController


def filesystem_options(cb):
    """Add the --fs and --container options shared by every command."""
    cb = click.option("--container", default=None, help="Bucket or container, if not the configured default")(cb)
    cb = click.option("--fs", "fs_name", default="default", show_default=True, help="Name of the configured filesystem")(cb)
    return cb


@contextlib.contextmanager
def report_errors(fs_name: str):
    try:
        yield
    except RoverError as ex:
        zrlog.get_logger("roverfs.cli").exception(f"Command failed on [{fs_name}]")
        raise click.ClickException(str(ex)) from ex


@click.group
def cli():
    pass


@cli.command
@click.argument("prefix", default="")
@click.option("--start", default="", help="List keys after this one")
@click.option("--size", default=100, show_default=True, help="Maximum entries in one page")
@click.option("--all", "list_everything", is_flag=True, help="Follow every page")
@filesystem_options
@injector.inject
def ls(prefix, start, size, list_everything, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        fs = storage.get_filesystem(fs_name)
        if list_everything:
            page = fs.list_all(prefix, container=container)
        else:
            page = fs.list_files(prefix, start, size, container=container)
        for common_prefix in page.prefixes:
            click.echo(common_prefix)
        for key in page.keys:
            click.echo(key)
        if not list_everything and page.is_truncated:
            click.echo(f"(more entries after {page.next_cursor})", err=True)


@cli.command
@click.argument("paths", nargs=-1, required=True)
@filesystem_options
@injector.inject
def rm(paths, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        storage.get_filesystem(fs_name).remove(list(paths), container=container)


@cli.command
@click.argument("source")
@click.argument("target")
@click.option("--to-container", default=None, help="Container to move into, if not the source container")
@filesystem_options
@injector.inject
def mv(source, target, to_container, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        storage.get_filesystem(fs_name).move(source, target, container, to_container or container)


@cli.command
@click.argument("old_names", nargs=-1, required=True)
@click.argument("new_name")
@filesystem_options
@injector.inject
def rename(old_names, new_name, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        storage.get_filesystem(fs_name).rename(list(old_names), new_name, container=container)


@cli.command
@click.argument("source")
@click.argument("target")
@click.option("--to-container", default=None, help="Container to copy into, if not the source container")
@filesystem_options
@injector.inject
def cp(source, target, to_container, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        storage.get_filesystem(fs_name).copy_file(source, target, container, to_container or container)


@cli.command
@click.argument("local_file", type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path))
@click.argument("path")
@click.option("--multipart", is_flag=True, help="Upload in parts")
@click.option("--part-size", default=None, type=int, help="Part size in bytes for multipart uploads")
@filesystem_options
@injector.inject
def put(local_file, path, multipart, part_size, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        fs = storage.get_filesystem(fs_name)
        if multipart:
            fs.multipart_upload_from_file(path, local_file, container=container, part_size=part_size)
        else:
            fs.upload_file(path, local_file, container=container)


@cli.command
@click.argument("path")
@click.argument("local_file", type=click.Path(dir_okay=False, path_type=pathlib.Path), required=False)
@filesystem_options
@injector.inject
def get(path, local_file, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        fs = storage.get_filesystem(fs_name)
        if local_file is None:
            click.echo(fs.download_file(path, container=container), nl=False)
        else:
            fs.download_file(path, local_file, container=container)


@cli.command
@click.argument("path")
@filesystem_options
@injector.inject
def stat(path, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        meta = storage.get_filesystem(fs_name).get_file_meta(path, container=container)
        click.echo(f"path: {meta.path}")
        click.echo(f"size: {meta.size}")
        click.echo(f"content_type: {meta.content_type or ''}")
        click.echo(f"last_modified: {meta.last_modified.isoformat() if meta.last_modified else ''}")
        click.echo(f"etag: {meta.etag or ''}")


@cli.command
@click.argument("path")
@filesystem_options
@injector.inject
def mkdir(path, fs_name, container, storage: StorageController = None):
    with report_errors(fs_name):
        storage.get_filesystem(fs_name).mkdir(path, container=container)


def main():
    init_roverfs("cli")
    cli()
