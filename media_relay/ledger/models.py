"""Ledger entry model."""

from pydantic import BaseModel, ConfigDict


class LedgerEntry(BaseModel):
    """Result previously produced for a source URL."""

    model_config = ConfigDict(from_attributes=True)

    url_hash: str
    content_hash: str
    kind: str
    extension: str | None = None
    file_url: str
    user_id: str | None = None
    file_size: int | None = None
    processed_at: int
