from media_relay.cli import cli

cli()
