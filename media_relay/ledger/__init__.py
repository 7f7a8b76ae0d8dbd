"""URL processing ledger."""

from media_relay.ledger.ledger import LedgerBackend, UrlLedger, ledger_key
from media_relay.ledger.models import LedgerEntry

__all__ = ["LedgerBackend", "LedgerEntry", "UrlLedger", "ledger_key"]
