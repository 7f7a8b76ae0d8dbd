"""Tests for the command line interface."""

import json

from click.testing import CliRunner

from media_relay.cli import cli
from media_relay.core.hashing import hash_bytes


class TestCli:
    """Test CLI commands that need no running services."""

    def test_should_list_commands(self):
        """Test the help lists every command."""
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in (
            "serve",
            "init-db",
            "sweep-stuck",
            "trace",
            "inspect",
            "stats",
            "deferred",
        ):
            assert command in result.output

    def test_should_print_storage_statistics(self, tmp_path, monkeypatch):
        """Test stats reports local files per directory."""
        (tmp_path / "videos").mkdir()
        (tmp_path / "videos" / "a.mp4").write_bytes(b"12345")
        monkeypatch.setenv("STORAGE_PATH", str(tmp_path))

        result = CliRunner().invoke(cli, ["stats"])

        assert result.exit_code == 0
        assert "Total files: 1" in result.output
        assert "videos: 1 files, 5 bytes" in result.output

    def test_should_reject_invalid_hash(self):
        """Test inspect validates the hash."""
        result = CliRunner().invoke(cli, ["inspect", "not-a-hash"])

        assert result.exit_code == 0
        assert "Error: Invalid hash format" in result.output

    def test_should_locate_stored_artifact(self, tmp_path, monkeypatch):
        """Test inspect finds a file on local disk."""
        digest = hash_bytes(b"video")
        (tmp_path / "videos").mkdir()
        (tmp_path / "videos" / f"{digest}.mp4").write_bytes(b"video")
        monkeypatch.setenv("STORAGE_PATH", str(tmp_path))
        monkeypatch.setenv("LOCAL_BASE_URL", "http://cdn.local/files")

        found = CliRunner().invoke(cli, ["inspect", digest])
        missing = CliRunner().invoke(cli, ["inspect", digest, "--kind", "gif"])

        assert "Method: local" in found.output
        assert f"URL: http://cdn.local/files/videos/{digest}.mp4" in found.output
        assert "Size: 5 bytes" in found.output
        assert "Not stored" in missing.output

    def test_should_fail_trace_without_database(self):
        """Test commands needing the database exit with an error."""
        result = CliRunner().invoke(cli, ["trace", "op-1"])

        assert result.exit_code == 1
        assert "no database is configured" in result.output

    def test_should_list_deferred_downloads(self, tmp_path, monkeypatch):
        """Test deferred prints counts and each saved request."""
        queue_file = tmp_path / "deferred.json"
        queue_file.write_text(
            json.dumps(
                [
                    {
                        "id": "req-1",
                        "url": "https://youtube.com/watch?v=abc",
                        "user_id": "u1",
                        "status": "failed",
                        "retry_count": 2,
                        "error": "rate limited",
                    }
                ]
            )
        )
        monkeypatch.setenv("DEFERRED_QUEUE_PATH", str(queue_file))

        result = CliRunner().invoke(cli, ["deferred"])

        assert result.exit_code == 0
        assert "Deferred downloads: 1" in result.output
        assert "failed: 1" in result.output
        assert "req-1 failed" in result.output
        assert "(rate limited)" in result.output
