"""Tests for conversion jobs and the command converter."""

import logging
import subprocess
import sys
from pathlib import Path

import pytest

from batch_to_jpg.config import ConfException, Settings
from batch_to_jpg.converter import (
    CommandConverter,
    ConversionError,
    ConversionJob,
    Converter,
    OutcomeStatus,
    resolve_exe,
)
from batch_to_jpg.walker import FileTask


def task_for(path: Path) -> FileTask:
    return FileTask(path=path, relative=Path(path.name))


class SourceVanishesConverter(Converter):
    """Writes the target then removes the source, so deleting it fails"""

    def convert(self, src: Path, tgt: Path) -> None:
        tgt.write_bytes(b"jpeg")
        src.unlink()


class TestConversionJob:
    def test_target_path(self, tmp_path, fake_converter):
        job = ConversionJob(task_for(tmp_path / "photo.PNG"), fake_converter)
        assert job.target == tmp_path / "photo.jpg"

    def test_success_keeps_original(self, tmp_path, make_tree, fake_converter):
        (src,) = make_tree(tmp_path, "a.png")

        outcome = ConversionJob(task_for(src), fake_converter).run()

        assert outcome.status is OutcomeStatus.CONVERTED
        assert outcome.converted
        assert fake_converter.calls == [(src, tmp_path / "a.jpg")]
        assert src.exists()
        assert (tmp_path / "a.jpg").exists()

    def test_success_deletes_original(
        self, tmp_path, make_tree, fake_converter, caplog
    ):
        caplog.set_level(logging.INFO)
        (src,) = make_tree(tmp_path, "a.png")

        outcome = ConversionJob(
            task_for(src), fake_converter, delete_original=True
        ).run()

        assert outcome.status is OutcomeStatus.CONVERTED
        assert not src.exists()
        assert (tmp_path / "a.jpg").exists()
        assert "Deleted original file" in caplog.text

    def test_failure_is_an_outcome(self, tmp_path, make_tree, make_converter, caplog):
        (src,) = make_tree(tmp_path, "bad.png")
        converter = make_converter(fail=["bad.png"])

        outcome = ConversionJob(task_for(src), converter, delete_original=True).run()

        assert outcome.status is OutcomeStatus.FAILED
        assert not outcome.converted
        assert outcome.reason == "cannot convert bad.png"
        assert src.exists()
        assert f"Error converting {src}" in caplog.text

    def test_delete_failure_keeps_conversion(self, tmp_path, make_tree, caplog):
        (src,) = make_tree(tmp_path, "a.png")

        outcome = ConversionJob(
            task_for(src), SourceVanishesConverter(), delete_original=True
        ).run()

        assert outcome.status is OutcomeStatus.DELETE_FAILED
        assert outcome.converted
        assert "Could not delete" in outcome.reason
        assert (tmp_path / "a.jpg").exists()
        assert "Could not delete" in caplog.text


class TestCommandConverter:
    def test_command_substitutes_fields(self, tmp_path):
        converter = CommandConverter(
            converter_exe=Path("/usr/bin/cjpeg"),
            converter_cmd="-quality {quality} -outfile {output} {input}",
            cmd_args={"quality": 75},
        )
        src = tmp_path / "with space" / "a.png"

        cmd = converter.command(src, "/tmp/out/a.jpg")

        assert cmd == [
            "/usr/bin/cjpeg",
            "-quality",
            "75",
            "-outfile",
            "/tmp/out/a.jpg",
            str(src),
        ]

    def test_converts_with_external_command(
        self, tmp_path, make_tree, fake_cjpeg_cmd
    ):
        (src,) = make_tree(tmp_path, "pics/a.png")
        converter = CommandConverter(
            converter_exe=Path(sys.executable),
            converter_cmd=fake_cjpeg_cmd,
            cmd_args={"quality": 90},
        )
        tgt = tmp_path / "pics" / "a.jpg"

        converter.convert(src, tgt)

        assert tgt.read_bytes() == b"JPEG q=90 png pics/a.png"

    def test_failed_command_leaves_no_output(
        self, tmp_path, make_tree, fake_cjpeg_cmd
    ):
        (src,) = make_tree(tmp_path, "broken.png")
        converter = CommandConverter(
            converter_exe=Path(sys.executable), converter_cmd=fake_cjpeg_cmd
        )
        converter.cmd_args["quality"] = 90
        tgt = tmp_path / "broken.jpg"

        with pytest.raises(ConversionError, match="exited with 3: not a PNG file"):
            converter.convert(src, tgt)
        assert not tgt.exists()

    def test_missing_output_is_an_error(self, tmp_path, make_tree, fake_cjpeg_cmd):
        (src,) = make_tree(tmp_path, "silent.png")
        converter = CommandConverter(
            converter_exe=Path(sys.executable),
            converter_cmd=fake_cjpeg_cmd,
            cmd_args={"quality": 90},
        )

        with pytest.raises(ConversionError, match="did not write an output file"):
            converter.convert(src, tmp_path / "silent.jpg")

    def test_runs_in_own_session(self, tmp_path, make_tree, monkeypatch):
        (src,) = make_tree(tmp_path, "a.png")
        runs = []

        def fake_run(cmd, **kwargs):
            runs.append(kwargs)
            Path(cmd[2]).write_bytes(b"jpeg")

        monkeypatch.setattr(subprocess, "run", fake_run)
        converter = CommandConverter(
            converter_exe=Path("/usr/bin/cjpeg"),
            converter_cmd="-outfile {output} {input}",
        )

        converter.convert(src, tmp_path / "a.jpg")

        assert runs[0]["start_new_session"]
        assert (tmp_path / "a.jpg").read_bytes() == b"jpeg"

    def test_missing_executable(self, tmp_path, make_tree):
        (src,) = make_tree(tmp_path, "a.png")
        converter = CommandConverter(
            converter_exe=tmp_path / "no-such-cjpeg",
            converter_cmd="-outfile {output} {input}",
        )

        with pytest.raises(ConversionError, match="Could not run"):
            converter.convert(src, tmp_path / "a.jpg")

    def test_from_settings(self, python_exe):
        settings = Settings(converter_exe=python_exe, quality=70)

        converter = CommandConverter.from_settings(settings)

        assert converter.converter_exe == Path(python_exe)
        assert converter.cmd_args == {"quality": 70}

    def test_from_settings_missing_exe(self):
        settings = Settings(converter_exe="definitely-not-a-real-cjpeg-xyz")

        with pytest.raises(ConfException, match="was not found"):
            CommandConverter.from_settings(settings)


def test_resolve_exe(tmp_path):
    exe = tmp_path / "tool"
    exe.touch()

    assert resolve_exe(str(exe)) == exe

    with pytest.raises(FileNotFoundError):
        resolve_exe("definitely-not-a-real-cjpeg-xyz")


def test_converter_requires_convert():
    class NoConvert(Converter):
        pass

    with pytest.raises(TypeError):
        NoConvert()
