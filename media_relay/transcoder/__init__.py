"""Boundary to the external transcoding and optimisation tools."""

from media_relay.transcoder.options import (
    IDENTITY,
    TransformOptions,
    build_transform_options,
)
from media_relay.transcoder.runner import (
    SubprocessTranscoder,
    Transcoder,
    default_command_builder,
    ffmpeg_command,
    gifsicle_command,
    transcode_bytes,
)

__all__ = [
    "IDENTITY",
    "SubprocessTranscoder",
    "Transcoder",
    "TransformOptions",
    "build_transform_options",
    "default_command_builder",
    "ffmpeg_command",
    "gifsicle_command",
    "transcode_bytes",
]
