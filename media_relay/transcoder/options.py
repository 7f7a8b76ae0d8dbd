"""Transform parameters and their canonical discriminator token."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from media_relay.content_store.models import ArtifactKind
from media_relay.core.errors import ValidationError

DEFAULT_LOSSY_LEVEL = 35


def _fmt(value: float) -> str:
    return f"{value:g}"


class TransformOptions(BaseModel):
    """Parameters of a derived transform.

    Two option sets with the same discriminator must describe the same
    output, so every field that changes the produced bytes takes part in it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    output_kind: ArtifactKind | None = Field(
        default=None, description="Target kind, None keeps the input kind"
    )
    trim_start: float | None = Field(default=None, ge=0, description="Start in seconds")
    trim_end: float | None = Field(default=None, ge=0, description="End in seconds")
    optimize_level: int | None = Field(
        default=None, ge=0, le=200, description="Lossy compression level"
    )
    fps: float | None = Field(default=None, gt=0, le=120)
    width: int | None = Field(default=None, gt=0, le=4096)

    @model_validator(mode="after")
    def check_trim_range(self) -> "TransformOptions":
        if (
            self.trim_start is not None
            and self.trim_end is not None
            and self.trim_end <= self.trim_start
        ):
            raise ValueError("trim end must be after trim start")
        return self

    @property
    def has_trim(self) -> bool:
        return self.trim_start is not None or self.trim_end is not None

    @property
    def is_identity(self) -> bool:
        return self.discriminator() == ""

    def target_kind(self, input_kind: ArtifactKind) -> ArtifactKind:
        return self.output_kind or input_kind

    def discriminator(self) -> str:
        """Canonical token such as ``out=gif;trim=0-5;lossy=35``.

        Returns an empty string for the identity transform.
        """
        parts: list[str] = []
        if self.output_kind is not None:
            parts.append(f"out={self.output_kind.value}")
        if self.has_trim:
            start = _fmt(self.trim_start or 0)
            end = _fmt(self.trim_end) if self.trim_end is not None else "end"
            parts.append(f"trim={start}-{end}")
        if self.optimize_level is not None:
            parts.append(f"lossy={self.optimize_level}")
        if self.fps is not None:
            parts.append(f"fps={_fmt(self.fps)}")
        if self.width is not None:
            parts.append(f"width={self.width}")
        return ";".join(parts)


IDENTITY = TransformOptions()


def build_transform_options(**raw: Any) -> TransformOptions:
    """Build options from user input.

    ``None`` values are dropped so that unset form fields mean "unchanged".

    Raises:
        ValidationError: If any value is out of range
    """
    try:
        return TransformOptions(**{k: v for k, v in raw.items() if v is not None})
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in error['loc']) or 'options'}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"invalid transform options: {details}") from e
