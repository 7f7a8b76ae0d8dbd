"""HTTP surface."""

from media_relay.api.app import create_app

__all__ = ["create_app"]
