import logging
import os
import pathlib

import zirconium as zr
import zrlog

from roverfs import __VERSION__


def _config_paths():
    yield pathlib.Path(".").absolute()
    yield pathlib.Path("~").expanduser().absolute()
    custom_config_path = os.environ.get("ROVERFS_CONFIG_SEARCH_PATHS", "./config")
    if custom_config_path:
        paths = custom_config_path.split(";")
        for path in paths:
            if path:
                p = pathlib.Path(path).absolute()
                if p.exists():
                    yield p


def init_roverfs(app_type: str = "cli"):
    # boto3 logs every request at DEBUG
    logging.getLogger("botocore").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.INFO)

    @zr.configure
    def set_config(app_config: zr.ApplicationConfig):
        config_paths = [x for x in _config_paths()]
        logging.getLogger("roverfs.boot").info(f"Config Search Paths: {';'.join(str(x) for x in config_paths)}")
        for path in config_paths:
            app_config.register_default_file(path / ".roverfs.defaults.toml")
            app_config.register_default_file(path / f".roverfs.{app_type}.defaults.toml")
            app_config.register_file(path / ".roverfs.toml")
            app_config.register_file(path / f".roverfs.{app_type}.toml")

    zrlog.set_default_extra("version", __VERSION__)
    zrlog.set_default_extra("app_type", app_type)
    zrlog.init_logging()
