"""Tests for transcoder commands and subprocess handling."""

import asyncio
from pathlib import Path

import pytest

from media_relay.content_store import ArtifactKind
from media_relay.core.errors import TranscodeError
from media_relay.transcoder import (
    SubprocessTranscoder,
    TransformOptions,
    default_command_builder,
    ffmpeg_command,
    gifsicle_command,
    transcode_bytes,
)
from tests.fixtures.runtime import FakeTranscoder


class TestCommandBuilders:
    """Test command line construction."""

    def test_should_trim_with_ffmpeg(self):
        """Test trims become seek and duration arguments."""
        command = ffmpeg_command(
            "in.mp4", "out.mp4", TransformOptions(trim_start=2, trim_end=7)
        )

        assert command[:5] == ["ffmpeg", "-hide_banner", "-loglevel", "error", "-y"]
        assert command[command.index("-ss") + 1] == "2"
        assert command[command.index("-t") + 1] == "5"
        assert command.index("-ss") < command.index("-i")
        assert "libx264" in command
        assert command[-1] == "out.mp4"

    def test_should_build_palette_filter_for_gif_output(self):
        """Test GIF output uses a generated palette."""
        command = ffmpeg_command(
            "in.mp4",
            "out.gif",
            TransformOptions(output_kind=ArtifactKind.GIF, fps=10, width=320),
        )

        graph = command[command.index("-filter_complex") + 1]
        assert graph.startswith("[0:v]fps=10,scale=320:-1:flags=lanczos,split")
        assert "palettegen" in graph
        assert "libx264" not in command

    def test_should_build_gifsicle_command(self):
        """Test lossy level defaults when not given."""
        assert gifsicle_command("in.gif", "out.gif", TransformOptions(width=200)) == [
            "gifsicle",
            "--optimize=3",
            "--lossy=35",
            "--resize-width",
            "200",
            "in.gif",
            "-o",
            "out.gif",
        ]

    def test_should_route_gif_optimisation_to_gifsicle(self):
        """Test GIF to GIF optimisation without trim uses gifsicle."""
        build = default_command_builder("/usr/bin/ffmpeg", "/usr/bin/gifsicle")

        assert build("a.gif", "b.gif", TransformOptions(optimize_level=80))[0] == "/usr/bin/gifsicle"
        assert (
            build("a.gif", "b.gif", TransformOptions(optimize_level=80, trim_end=3))[0]
            == "/usr/bin/ffmpeg"
        )
        assert build("a.mp4", "b.gif", TransformOptions(optimize_level=80))[0] == "/usr/bin/ffmpeg"


class FakeProcess:
    def __init__(self, returncode: int = 0, stderr: bytes = b"", hang: bool = False) -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        return b"", self.stderr

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        return -9


class TestSubprocessTranscoder:
    """Test subprocess failure handling."""

    @pytest.fixture
    def transcoder(self) -> SubprocessTranscoder:
        return SubprocessTranscoder(default_command_builder(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_should_raise_with_stderr_tail(self, transcoder, mocker):
        """Test a non-zero exit raises with the error output."""
        mocker.patch(
            "asyncio.create_subprocess_exec",
            mocker.AsyncMock(return_value=FakeProcess(1, b"Invalid data found")),
        )

        with pytest.raises(TranscodeError, match="Invalid data found"):
            await transcoder.transform(Path("in.mp4"), Path("out.gif"), TransformOptions())

    @pytest.mark.asyncio
    async def test_should_kill_on_timeout(self, transcoder, mocker):
        """Test a hung process is killed."""
        process = FakeProcess(hang=True)
        mocker.patch("asyncio.create_subprocess_exec", mocker.AsyncMock(return_value=process))

        with pytest.raises(TranscodeError, match="timed out"):
            await transcoder.transform(Path("in.mp4"), Path("out.gif"), TransformOptions())

        assert process.killed

    @pytest.mark.asyncio
    async def test_should_report_missing_binary(self, mocker):
        """Test a missing program is a TranscodeError."""
        mocker.patch(
            "asyncio.create_subprocess_exec",
            mocker.AsyncMock(side_effect=FileNotFoundError()),
        )
        transcoder = SubprocessTranscoder(default_command_builder(ffmpeg_path="no-ffmpeg"))

        with pytest.raises(TranscodeError, match="no-ffmpeg is not installed"):
            await transcoder.transform(Path("in.mp4"), Path("out.mp4"), TransformOptions())


class TestTranscodeBytes:
    """Test the temp file round trip."""

    @pytest.mark.asyncio
    async def test_should_return_output_and_remove_temp_files(self, tmp_path):
        """Test output bytes are returned and the work directory removed."""
        transcoder = FakeTranscoder()
        seen = []
        options = TransformOptions(trim_end=5)

        output = await transcode_bytes(
            transcoder, b"abcdef", ".mp4", ".mp4", options, str(tmp_path), seen.append
        )

        assert output == b"abc" + b"trim=0-5"
        assert len(seen) == 2
        assert not any(path.exists() for path in seen)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_should_clean_up_after_failures(self, tmp_path):
        """Test temp files are removed when the transcoder fails."""
        seen = []

        class Failing:
            async def transform(self, input_path, output_path, options):
                raise TranscodeError("boom")

        with pytest.raises(TranscodeError):
            await transcode_bytes(
                Failing(), b"data", ".mp4", ".gif", TransformOptions(), str(tmp_path), seen.append
            )

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_should_reject_missing_output(self, tmp_path):
        """Test a transcoder that writes nothing is an error."""

        class Silent:
            async def transform(self, input_path, output_path, options):
                return None

        with pytest.raises(TranscodeError, match="no output"):
            await transcode_bytes(Silent(), b"data", ".mp4", ".gif", TransformOptions(), str(tmp_path))
