"""External transcoder processes and the temp files they work on."""

import asyncio
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from media_relay.content_store.models import ArtifactKind
from media_relay.core.errors import TranscodeError
from media_relay.core.logging import get_logger
from media_relay.transcoder.options import DEFAULT_LOSSY_LEVEL, TransformOptions

logger = get_logger()

CommandBuilder = Callable[[str, str, TransformOptions], list[str]]

_STDERR_TAIL = 500


class Transcoder(Protocol):
    async def transform(
        self, input_path: Path, output_path: Path, options: TransformOptions
    ) -> None: ...


def ffmpeg_command(
    input_path: str,
    output_path: str,
    options: TransformOptions,
    binary: str = "ffmpeg",
) -> list[str]:
    """Build an ffmpeg invocation for trims, resizes and format conversion."""
    args = [binary, "-hide_banner", "-loglevel", "error", "-y"]
    if options.trim_start:
        args += ["-ss", f"{options.trim_start:g}"]
    args += ["-i", input_path]
    if options.trim_end is not None:
        args += ["-t", f"{options.trim_end - (options.trim_start or 0):g}"]

    filters: list[str] = []
    if options.fps is not None:
        filters.append(f"fps={options.fps:g}")
    if options.width is not None:
        filters.append(f"scale={options.width}:-1:flags=lanczos")

    if output_path.endswith(".gif"):
        chain = ",".join(filters) if filters else "null"
        args += [
            "-filter_complex",
            f"[0:v]{chain},split[a][b];[a]palettegen=stats_mode=diff[p];[b][p]paletteuse",
        ]
    else:
        if filters:
            args += ["-vf", ",".join(filters)]
        if options.output_kind is ArtifactKind.VIDEO or output_path.endswith(".mp4"):
            args += ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-movflags", "+faststart"]
    args.append(output_path)
    return args


def gifsicle_command(
    input_path: str,
    output_path: str,
    options: TransformOptions,
    binary: str = "gifsicle",
) -> list[str]:
    """Build a gifsicle invocation for lossy GIF optimisation."""
    lossy = options.optimize_level if options.optimize_level is not None else DEFAULT_LOSSY_LEVEL
    args = [binary, "--optimize=3", f"--lossy={lossy}"]
    if options.width is not None:
        args += ["--resize-width", str(options.width)]
    args += [input_path, "-o", output_path]
    return args


def default_command_builder(
    ffmpeg_path: str = "ffmpeg", gifsicle_path: str = "gifsicle"
) -> CommandBuilder:
    """GIF to GIF optimisation goes through gifsicle, everything else through ffmpeg."""

    def build(input_path: str, output_path: str, options: TransformOptions) -> list[str]:
        gif_to_gif = input_path.endswith(".gif") and output_path.endswith(".gif")
        if gif_to_gif and options.optimize_level is not None and not options.has_trim:
            return gifsicle_command(input_path, output_path, options, binary=gifsicle_path)
        return ffmpeg_command(input_path, output_path, options, binary=ffmpeg_path)

    return build


class SubprocessTranscoder:
    """Runs one external process per transform."""

    def __init__(self, command_builder: CommandBuilder, timeout: float = 600.0):
        self.command_builder = command_builder
        self.timeout = timeout

    async def transform(
        self, input_path: Path, output_path: Path, options: TransformOptions
    ) -> None:
        """Run the transform.

        Raises:
            TranscodeError: If the process is missing, fails or times out
        """
        command = self.command_builder(str(input_path), str(output_path), options)
        logger.info("transcode_started", program=command[0], options=options.discriminator())
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TranscodeError(f"{command[0]} is not installed") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.error("transcode_timed_out", program=command[0], timeout=self.timeout)
            raise TranscodeError(f"transcode timed out after {self.timeout:g}s") from e

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()
            logger.error(
                "transcode_failed",
                program=command[0],
                returncode=process.returncode,
                stderr=tail,
            )
            raise TranscodeError(f"{command[0]} exited with code {process.returncode}: {tail}")


async def transcode_bytes(
    transcoder: Transcoder,
    data: bytes,
    input_ext: str,
    output_ext: str,
    options: TransformOptions,
    temp_dir: str | None = None,
    on_temp_file: Callable[[Path], None] | None = None,
) -> bytes:
    """Transform bytes through temp files that are removed on every exit path.

    Raises:
        TranscodeError: If the transcoder fails or produces no output
    """
    with tempfile.TemporaryDirectory(prefix="media-relay-", dir=temp_dir) as workdir:
        input_path = Path(workdir) / f"input{input_ext}"
        output_path = Path(workdir) / f"output{output_ext}"
        await asyncio.to_thread(input_path.write_bytes, data)
        if on_temp_file is not None:
            on_temp_file(input_path)
            on_temp_file(output_path)

        await transcoder.transform(input_path, output_path, options)

        if not output_path.exists():
            raise TranscodeError("transcoder produced no output file")
        output = await asyncio.to_thread(output_path.read_bytes)
    if not output:
        raise TranscodeError("transcoder produced an empty file")
    return output
