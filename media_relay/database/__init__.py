"""Persistent record store: URL ledger, operation logs and user metrics."""
