# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from logging import getLogger
from pathlib import Path
from typing import Dict, List, Optional, Union

from attrs import define, field

from .config import ConfException, Settings, sp
from .walker import FileTask

logger = getLogger(__name__)


class ConversionError(Exception):
    pass


class DeletionError(Exception):
    pass


def resolve_exe(exe: str) -> Path:
    """Find the converter either as a path or on PATH"""
    exe_path = Path(exe).expanduser()
    if exe_path.is_file():
        return exe_path
    found = shutil.which(exe)
    if found is None:
        raise FileNotFoundError(f"{exe} is not a file and was not found on PATH.")
    return Path(found)


class Converter(ABC):
    """Turns one source file into one target file or raises ConversionError"""

    @abstractmethod
    def convert(self, src: Path, tgt: Path) -> None:
        raise NotImplementedError


@define
class CommandConverter(Converter):
    converter_exe: Path
    converter_cmd: str
    cmd_args: Dict[str, Union[int, str]] = field(factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommandConverter":
        try:
            exe = resolve_exe(settings.converter_exe)
        except FileNotFoundError as e:
            raise ConfException(
                f"Converter '{settings.converter_exe}' was not found."
            ) from e
        logger.debug("Using converter %s", str(exe))
        return cls(
            converter_exe=exe,
            converter_cmd=settings.converter_cmd,
            cmd_args={"quality": settings.quality},
        )

    def command(self, src: Path, tmptgt: str) -> List[str]:
        cmd_pre: List[str] = [str(self.converter_exe)] + self.converter_cmd.split()
        fields: Dict[str, Union[int, str]] = {
            "input": str(src),
            "output": tmptgt,
        }
        fields.update(self.cmd_args)
        cmd = []
        for token in cmd_pre:
            cmd.append(token.format_map(fields))
        return cmd

    def convert(self, src: Path, tgt: Path) -> None:
        # Convert into a private dir so a failed run never leaves a partial tgt
        with tempfile.TemporaryDirectory(prefix="batch-to-jpg-") as tmpdir:
            tmptgt = tmpdir + os.sep + str(tgt.name)
            cmd = self.command(src, tmptgt)
            logger.debug("Conversion cmd: %s", cmd)
            # Own session so a terminal Ctrl-C only reaches our signal handler
            try:
                subprocess.run(
                    cmd, capture_output=True, check=True, start_new_session=True
                )
            except subprocess.CalledProcessError as e:
                stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
                raise ConversionError(
                    f"{self.converter_exe.name} exited with {e.returncode}"
                    + (f": {stderr}" if stderr else "")
                ) from e
            except OSError as e:
                raise ConversionError(f"Could not run {self.converter_exe}: {e}") from e

            if not os.path.isfile(tmptgt):
                raise ConversionError(
                    f"{self.converter_exe.name} did not write an output file"
                )
            try:
                shutil.copyfile(tmptgt, tgt)
            except OSError as e:
                raise ConversionError(f"Could not write {tgt}: {e}") from e


class OutcomeStatus(enum.Enum):
    CONVERTED = "converted"
    FAILED = "failed"
    DELETE_FAILED = "delete_failed"


@define(frozen=True)
class ConversionOutcome:
    task: FileTask
    status: OutcomeStatus
    reason: Optional[str] = None

    @property
    def converted(self) -> bool:
        return self.status is not OutcomeStatus.FAILED


@define(frozen=True)
class ConversionJob:
    task: FileTask
    converter: Converter
    output_suffix: str = ".jpg"
    delete_original: bool = False

    @property
    def target(self) -> Path:
        src = self.task.path
        return src.with_name(src.stem + self.output_suffix)

    def _delete(self) -> None:
        try:
            self.task.path.unlink()
        except OSError as e:
            raise DeletionError(f"Could not delete {self.task.path}: {e}") from e

    def run(self) -> ConversionOutcome:
        src = self.task.path
        tgt = self.target
        try:
            self.converter.convert(src, tgt)
        except ConversionError as e:
            logger.error("Error converting %s: %s", str(src), e)
            return ConversionOutcome(self.task, OutcomeStatus.FAILED, str(e))
        logger.info("Converted %s to %s", sp(src), tgt.name)

        if self.delete_original:
            try:
                self._delete()
            except DeletionError as e:
                logger.error("%s", e)
                return ConversionOutcome(
                    self.task, OutcomeStatus.DELETE_FAILED, str(e)
                )
            logger.info("Deleted original file %s", sp(src))
        return ConversionOutcome(self.task, OutcomeStatus.CONVERTED)
