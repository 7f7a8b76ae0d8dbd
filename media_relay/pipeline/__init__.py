"""Ingest pipeline and runtime wiring."""

from media_relay.pipeline.factory import Runtime, build_runtime
from media_relay.pipeline.models import DeliveredArtifact, IngestRequest, IngestResult
from media_relay.pipeline.service import IngestService, is_direct_file_url

__all__ = [
    "DeliveredArtifact",
    "IngestRequest",
    "IngestResult",
    "IngestService",
    "Runtime",
    "build_runtime",
    "is_direct_file_url",
]
