# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
from collections.abc import Iterable
from logging import getLogger
from pathlib import Path
from typing import Callable, FrozenSet, Iterator, List, Optional, Tuple

from attrs import define, field

from .config import MAX_FILES_PER_BATCH, sp

logger = getLogger(__name__)


class DirectoryReadError(Exception):
    pass


def normalize_exclusions(values: Iterable[str]) -> FrozenSet[str]:
    """Normalize exclusion prefixes to the form used for relative paths"""
    prefixes = set()
    for value in values:
        prefix = os.path.normpath(value.strip()) if value.strip() else ""
        if prefix.startswith("." + os.sep):
            prefix = prefix[2:]
        if not prefix or prefix == ".":
            logger.warning("Ignoring empty exclusion %r", value)
            continue
        prefixes.add(prefix)
    return frozenset(prefixes)


def is_excluded(relative_path: str, exclusions: Iterable[str]) -> bool:
    relative_path = os.path.normpath(relative_path)
    return any(relative_path.startswith(prefix) for prefix in exclusions)


@define(frozen=True)
class FileTask:
    path: Path
    relative: Path


@define
class Walker:
    """Explicit stack depth first walk of a tree yielding batches of FileTasks.

    Batches are yielded as soon as they fill so conversion can start before
    the whole tree has been scanned.
    """

    root: Path = field(converter=lambda p: Path(p).expanduser().absolute())
    exclusions: FrozenSet[str] = field(factory=frozenset, converter=frozenset)
    input_suffix: str = field(default=".png", converter=str.lower)
    skip_dirs: Tuple[str, ...] = field(default=("node_modules",), converter=tuple)
    batch_size: int = MAX_FILES_PER_BATCH
    skipped_dirs: int = field(default=0, init=False)
    dropped: int = field(default=0, init=False)

    def _list(self, directory: Path) -> List[os.DirEntry]:
        try:
            with os.scandir(directory) as it:
                return sorted(it, key=lambda entry: entry.name)
        except OSError as e:
            raise DirectoryReadError(f"Could not read directory {directory}") from e

    def _stopped(
        self, should_stop: Optional[Callable[[], bool]], batch: List[FileTask]
    ) -> bool:
        if should_stop is None or not should_stop():
            return False
        self.dropped += len(batch)
        if batch:
            logger.info(
                "Stopped walking, %d discovered files not submitted", len(batch)
            )
        return True

    def walk(
        self, should_stop: Optional[Callable[[], bool]] = None
    ) -> Iterator[List[FileTask]]:
        logger.debug("Walking '%s'", str(self.root))
        stack: List[Path] = [self.root]
        batch: List[FileTask] = []

        while stack:
            if self._stopped(should_stop, batch):
                return
            directory = stack.pop()

            try:
                entries = self._list(directory)
            except DirectoryReadError as e:
                self.skipped_dirs += 1
                logger.error("%s: %s, skipping it", e, e.__cause__)
                continue

            for entry in entries:
                path = Path(entry.path)
                relative = path.relative_to(self.root)
                if is_excluded(str(relative), self.exclusions):
                    logger.debug("  Excluding %s", str(relative))
                    continue

                name = entry.name
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                    is_file = not is_dir and entry.is_file()
                except OSError as e:
                    logger.warning("  Could not stat %s: %s", sp(path), e)
                    continue

                if is_dir:
                    if name in self.skip_dirs or name[:1] == ".":
                        logger.debug("  Ignoring dir %s", sp(path))
                        continue
                    stack.append(path)
                elif is_file:
                    if name[:1] == "." or path.suffix.lower() != self.input_suffix:
                        continue
                    batch.append(FileTask(path=path, relative=relative))
                    if len(batch) >= self.batch_size:
                        if self._stopped(should_stop, batch):
                            return
                        yield batch
                        batch = []

        if batch:
            yield batch
