# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
import re
from collections.abc import Iterable
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import tomli
from attrs import define, field

logger = getLogger(__name__)

CONFIG_FILE_NAME = "batch-to-jpg.toml"
MAX_FILES_PER_BATCH = 1000
DEFAULT_QUALITY = 90
DEFAULT_RESERVED_CPUS = 2
DEFAULT_CONVERTER_EXE = "cjpeg"
DEFAULT_CONVERTER_CMD = "-quality {quality} -outfile {output} {input}"


def sp(path: Path) -> str:
    """Shorten path to parent and filename"""
    path_list = str(path).split(os.sep)
    return "." + os.sep + os.sep.join(path_list[-2:])


def validate_pos_int(var_: Any) -> int:
    """Convert var into an int and validate it is positive"""
    if isinstance(var_, bool):
        raise ValueError(f"{var_} is not a positive integer.")
    var_ = int(var_)  # Raises ValueError if not able to convert
    if var_ < 1:
        raise ValueError(f"{var_} is not a positive integer.")
    return var_


def validate_quality(var_: Any) -> int:
    var_ = validate_pos_int(var_)
    if var_ > 100:
        raise ValueError(f"{var_} is not in the range 1-100.")
    return var_


def validate_is_dir(path_str: Any) -> Path:
    dir_ = Path(path_str).expanduser()
    if not dir_.is_dir():
        raise FileNotFoundError(f"{path_str} is not a directory or does not exist.")
    return dir_


def validate_suffix(suffix: Any) -> str:
    pattern = re.compile(r"^\.[\w]+$")
    if not isinstance(suffix, str) or not pattern.match(suffix):
        raise ValueError("File suffixes must be of the form .a-z0-9")
    return suffix.lower()


def validate_names(names: Any) -> Tuple[str, ...]:
    if isinstance(names, str) or not isinstance(names, Iterable):
        raise ValueError("Expected a list of strings.")
    names = tuple(names)
    for name in names:
        if not isinstance(name, str):
            raise ValueError(f"{name!r} is not a string.")
    return names


class ConfException(Exception):
    pass


@define(frozen=True)
class Settings:
    quality: int = DEFAULT_QUALITY
    batch_size: int = MAX_FILES_PER_BATCH
    converters: Optional[int] = None  # None: derive from available CPUs
    reserved_cpus: int = DEFAULT_RESERVED_CPUS
    delete_original: bool = False
    exclude: Tuple[str, ...] = ()
    skip_dirs: Tuple[str, ...] = ("node_modules",)
    converter_exe: str = DEFAULT_CONVERTER_EXE
    converter_cmd: str = DEFAULT_CONVERTER_CMD
    input_suffix: str = ".png"
    output_suffix: str = ".jpg"
    config_path: Optional[Path] = field(default=None, eq=False)

    @classmethod
    def from_toml(cls, config_path: Path) -> "Settings":
        """Read the config file and build the settings from it

        Args:
            config_path: Path to the TOML config file.

        Raises:
            FileNotFoundError: Config file not found at the config_path.
            PermissionError: File at config_path is not readable.
            ConfException: Config file is not valid TOML or is not correct
        """
        with open(config_path, "rb") as f:  # tomli requires "rb"
            try:
                toml_dict = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfException(
                    f"Config '{config_path}' does not contain valid TOML."
                ) from e

        logger.debug("Config: %s", str(toml_dict))
        return cls.from_dict(toml_dict, config_path=config_path)

    @classmethod
    def from_dict(
        cls, toml_dict: Dict[str, Any], config_path: Optional[Path] = None
    ) -> "Settings":
        kwargs: Dict[str, Any] = {"config_path": config_path}

        if "quality" in toml_dict:
            try:
                kwargs["quality"] = validate_quality(toml_dict["quality"])
            except (TypeError, ValueError) as e:
                raise ConfException(
                    "If 'quality' is set it must be an integer from 1 to 100."
                ) from e

        for key in ("batch_size", "converters"):
            if key in toml_dict:
                try:
                    kwargs[key] = validate_pos_int(toml_dict[key])
                except (TypeError, ValueError) as e:
                    raise ConfException(
                        f"If '{key}' is set it must be a postive integer."
                    ) from e

        if "reserved_cpus" in toml_dict:
            try:
                reserved = int(toml_dict["reserved_cpus"])
                if reserved < 0 or isinstance(toml_dict["reserved_cpus"], bool):
                    raise ValueError(f"{reserved} is negative.")
            except (TypeError, ValueError) as e:
                raise ConfException(
                    "If 'reserved_cpus' is set it must be zero or a positive integer."
                ) from e
            kwargs["reserved_cpus"] = reserved

        if "delete_original" in toml_dict:
            if not isinstance(toml_dict["delete_original"], bool):
                raise ConfException("'delete_original' must be true or false.")
            kwargs["delete_original"] = toml_dict["delete_original"]

        for key in ("exclude", "skip_dirs"):
            if key in toml_dict:
                try:
                    kwargs[key] = validate_names(toml_dict[key])
                except ValueError as e:
                    raise ConfException(
                        f"'{key}' must be a list of relative paths or names."
                    ) from e

        converter = toml_dict.get("converter", {})
        if not isinstance(converter, dict):
            raise ConfException("[converter] must be a table in the config.")

        for key, attr in (("exe", "converter_exe"), ("cmd", "converter_cmd")):
            if key in converter:
                if not isinstance(converter[key], str) or not converter[key]:
                    raise ConfException(
                        f"converter.{key} must be a non-empty string in the config."
                    )
                kwargs[attr] = converter[key]

        for key, attr in (("input", "input_suffix"), ("output", "output_suffix")):
            if key in converter:
                try:
                    kwargs[attr] = validate_suffix(converter[key])
                except ValueError as e:
                    raise ConfException(
                        f'converter.{key} must be a single file suffix e.g. ".png".'
                    ) from e

        settings = cls(**kwargs)
        if settings.input_suffix == settings.output_suffix:
            raise ConfException("converter.input and converter.output must differ.")
        return settings


def load_settings(src_dir: Path, config_path: Optional[Path] = None) -> Settings:
    """Load settings from an explicit config, the root's config file or defaults"""
    if config_path is not None:
        config_path = Path(config_path).expanduser()
    elif (Path(src_dir) / CONFIG_FILE_NAME).is_file():
        config_path = Path(src_dir) / CONFIG_FILE_NAME
    if config_path is None:
        logger.debug("No %s found, using defaults", CONFIG_FILE_NAME)
        return Settings()
    logger.info("Reading config from %s", sp(config_path))
    return Settings.from_toml(config_path)
