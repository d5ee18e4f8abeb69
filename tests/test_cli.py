"""
Tests for the hoprelay command line: store inspection and argument errors.
"""

from __future__ import annotations

import sys

import pytest

from hoprelay import cli
from hoprelay.store import MessageStore


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "node.toml"
    path.write_text(
        f'store_root = "{tmp_path / "store"}"\n'
        f'key_path = "{tmp_path / "node_key"}"\n'
    )
    return path


def run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["hoprelay", *argv])
    cli.main()


class TestCli:

    def test_usage_without_command(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch)
        assert exc.value.code == 0
        assert "hoprelay sync <host:port>" in capsys.readouterr().out

    def test_list_empty(self, monkeypatch, capsys, config_file):
        run(monkeypatch, "-c", str(config_file), "list")
        assert "Message store is empty." in capsys.readouterr().out

    def test_list_shows_messages(self, monkeypatch, capsys, config_file, tmp_path, make_msg):
        meta, content = make_msg(b"listed", recipient="bob", hops=("r1",))
        MessageStore(tmp_path / "store").put(meta, content)

        run(monkeypatch, "-c", str(config_file), "list")
        out = capsys.readouterr().out
        assert "1 message(s)" in out
        assert meta.id[:16] in out
        assert "to=bob" in out
        assert "hops=1" in out

    def test_purge(self, monkeypatch, capsys, config_file, tmp_path, make_msg):
        meta, content = make_msg(creation_time=1000, lifespan=10)
        MessageStore(tmp_path / "store").put(meta, content, now=1000)

        run(monkeypatch, "-c", str(config_file), "purge")
        assert "Purged 1 expired entry." in capsys.readouterr().out

    def test_missing_config(self, monkeypatch, capsys, tmp_path):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "-c", str(tmp_path / "absent.toml"), "list")
        assert exc.value.code == 1
        assert "not found" in capsys.readouterr().err

    @pytest.mark.parametrize("addr", ["no-port", "host:abc"])
    def test_bad_sync_address(self, capsys, addr):
        with pytest.raises(SystemExit) as exc:
            cli._parse_address(addr)
        assert exc.value.code == 1
        assert "Error" in capsys.readouterr().err

    def test_parse_address(self):
        assert cli._parse_address("10.0.0.2:9745") == ("10.0.0.2", 9745)
