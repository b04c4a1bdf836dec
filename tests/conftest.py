"""Pytest configuration and fixtures."""

import sys
import threading
import time
from pathlib import Path
from typing import Iterable, List, Tuple

import pytest

from batch_to_jpg.converter import ConversionError, Converter

FAKE_CJPEG = """\
import os
import sys
import time

args = sys.argv[1:]
quality = args[args.index("-quality") + 1]
outfile = args[args.index("-outfile") + 1]
src = args[-1]
if src.endswith("broken.png"):
    sys.stderr.write("not a PNG file\\n")
    sys.exit(3)
if src.endswith("silent.png"):
    sys.exit(0)
started = os.environ.get("FAKE_CJPEG_STARTED")
if started:
    open(started, "w").close()
time.sleep(float(os.environ.get("FAKE_CJPEG_DELAY", "0")))
with open(src, "rb") as f:
    data = f.read()
with open(outfile, "wb") as f:
    f.write(b"JPEG q=" + quality.encode() + b" " + data)
"""


class FakeConverter(Converter):
    """In-memory converter recording every call and the peak concurrency."""

    def __init__(
        self, delay: float = 0.0, fail: Iterable[str] = (), write_output: bool = True
    ):
        self.delay = delay
        self.fail = set(fail)
        self.write_output = write_output
        self.calls: List[Tuple[Path, Path]] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def convert(self, src: Path, tgt: Path) -> None:
        with self._lock:
            self.calls.append((src, tgt))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if src.name in self.fail:
                raise ConversionError(f"cannot convert {src.name}")
            if self.write_output:
                tgt.write_bytes(b"jpeg")
        finally:
            with self._lock:
                self.active -= 1

    @property
    def sources(self) -> List[Path]:
        with self._lock:
            return [src for src, _ in self.calls]


def touch(root: Path, *relatives: str) -> List[Path]:
    """Create files (and their parent dirs) under root"""
    paths = []
    for relative in relatives:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"png " + relative.encode())
        paths.append(path)
    return paths


@pytest.fixture
def fake_converter():
    return FakeConverter()


@pytest.fixture
def fake_cjpeg(tmp_path: Path) -> Path:
    """A python script that behaves like cjpeg"""
    script = tmp_path / "bin" / "fake_cjpeg.py"
    script.parent.mkdir()
    script.write_text(FAKE_CJPEG, encoding="utf-8")
    return script


@pytest.fixture
def fake_cjpeg_cmd(fake_cjpeg: Path) -> str:
    return f"{fake_cjpeg} -quality {{quality}} -outfile {{output}} {{input}}"


@pytest.fixture
def python_exe() -> str:
    return sys.executable


@pytest.fixture
def make_tree():
    return touch


@pytest.fixture
def make_converter():
    return FakeConverter
