"""Tests for main.py — the command-line entry point."""

from __future__ import annotations

import io
import json
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import main
from sshbridge import CommandResult, NotFound, ReadResult, WriteOutcome
from sshbridge.config import ConfigManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Keep the caller's environment and keyring out of the CLI."""
    for var in ("SSHBRIDGE_HOST", "SSHBRIDGE_PORT", "SSHBRIDGE_USER", "SSHBRIDGE_KEY_PATH"):
        monkeypatch.delenv(var, raising=False)
    with patch("sshbridge.config.keyring.get_password", return_value=None):
        yield


@pytest.fixture()
def config(tmp_path: Path) -> ConfigManager:
    return ConfigManager(base_dir=tmp_path / "conf")


@pytest.fixture()
def key_args(tmp_path: Path) -> list[str]:
    key = tmp_path / "id_ed25519"
    key.write_bytes(b"KEY")
    return ["--host", "build.example", "--user", "ci", "--key", str(key)]


@pytest.fixture()
def engine():
    """Patch engine construction and signal installation; yield the mock engine."""
    mock_engine = MagicMock()
    with patch("main.RemoteEngine.from_credentials", return_value=mock_engine) as factory, \
            patch("main.install_signal_handlers"):
        mock_engine.factory = factory
        yield mock_engine


class TestMain:
    def test_missing_settings_returns_1(self, config: ConfigManager) -> None:
        assert main.main(["exec", "true"], config=config) == 1

    def test_exec_prints_json_and_returns_exit_code(self, config, key_args, engine, capsys) -> None:
        engine.exec_with_timeout.return_value = CommandResult(b"out\n", b"", 3)

        code = main.main([*key_args, "exec", "make test", "--cwd", "/src"], config=config)

        assert code == 3
        engine.exec_with_timeout.assert_called_once_with("make test", timeout=30, cwd="/src")
        assert json.loads(capsys.readouterr().out)["exitCode"] == 3
        engine.disconnect.assert_called_once()

    def test_credentials_and_options_reach_engine(self, config, key_args, engine) -> None:
        engine.exec_with_timeout.return_value = CommandResult(b"", b"", 0)
        main.main([*key_args, "--port", "2200", "exec", "true"], config=config)

        creds = engine.factory.call_args.args[0]
        assert (creds.host, creds.username, creds.port) == ("build.example", "ci", 2200)
        assert engine.factory.call_args.kwargs == config.connection_options()

    def test_engine_error_emits_error_json(self, config, key_args, engine, capsys) -> None:
        engine.read_file.side_effect = NotFound("File not found or inaccessible: /x", path="/x")

        code = main.main([*key_args, "read", "/x"], config=config)

        assert code == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["type"] == "NotFound"
        engine.disconnect.assert_called_once()

    def test_read_uses_configured_limit(self, config, key_args, engine, capsys) -> None:
        engine.read_file.return_value = ReadResult("hi", 2, "utf-8")
        main.main([*key_args, "read", "/etc/motd"], config=config)
        engine.read_file.assert_called_once_with("/etc/motd", encoding="utf-8", max_size=1_048_576)
        assert json.loads(capsys.readouterr().out)["content"] == "hi"

    def test_write_reads_stdin(self, config, key_args, engine, monkeypatch, capsys) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("payload"))
        engine.write_file.return_value = WriteOutcome(True, 7, "/srv/a.backup")

        code = main.main([*key_args, "write", "/srv/a", "--backup", "--create-dirs"], config=config)

        assert code == 0
        engine.write_file.assert_called_once_with(
            "/srv/a", "payload", encoding="utf-8", create_dirs=True, backup=True
        )
        assert json.loads(capsys.readouterr().out) == {
            "success": True,
            "bytesWritten": 7,
            "backupPath": "/srv/a.backup",
        }

    def test_value_error_returns_2(self, config, key_args, engine) -> None:
        engine.read_file.side_effect = ValueError("Unsupported encoding: 'x'")
        assert main.main([*key_args, "read", "/a", "--encoding", "x"], config=config) == 2


class TestLocalCommands:
    @pytest.fixture()
    def no_engine(self):
        with patch("main.RemoteEngine.from_credentials") as factory:
            yield factory

    def test_profile_save_list_delete(self, config, no_engine, capsys) -> None:
        args = ["--host", "build.example", "--user", "ci", "--port", "2200"]
        assert main.main([*args, "profile", "save", "build"], config=config) == 0
        assert json.loads(capsys.readouterr().out) == {
            "build": {"host": "build.example", "username": "ci", "port": 2200}
        }

        assert main.main(["profile", "list"], config=config) == 0
        assert list(json.loads(capsys.readouterr().out)) == ["build"]

        assert main.main(["profile", "delete", "build"], config=config) == 0
        assert main.main(["profile", "delete", "build"], config=config) == 1
        assert config.profile_names() == []
        no_engine.assert_not_called()

    def test_saved_profile_feeds_credentials(self, config, key_args, engine) -> None:
        main.main([*key_args, "profile", "save", "build"], config=config)
        engine.exec_with_timeout.return_value = CommandResult(b"", b"", 0)

        assert main.main(["--profile", "build", "exec", "true"], config=config) == 0
        assert engine.factory.call_args.args[0].host == "build.example"

    def test_passphrase_set_stores_under_account(self, config, no_engine) -> None:
        with patch("main.getpass.getpass", return_value="s3cret"), \
                patch("main.store_passphrase") as store:
            code = main.main(["--host", "h", "--user", "u", "passphrase", "set"], config=config)
        assert code == 0
        store.assert_called_once_with("u@h", "s3cret")
        no_engine.assert_not_called()

    def test_passphrase_set_rejects_empty(self, config) -> None:
        with patch("main.getpass.getpass", return_value=""), patch("main.store_passphrase") as store:
            assert main.main(["--host", "h", "--user", "u", "passphrase", "set"], config=config) == 2
        store.assert_not_called()

    def test_passphrase_clear_uses_profile(self, config) -> None:
        config.save_profile("build", {"host": "h", "username": "u"})
        with patch("main.delete_passphrase", return_value=True) as delete:
            assert main.main(["--profile", "build", "passphrase", "clear"], config=config) == 0
        delete.assert_called_once_with("u@h")

    def test_passphrase_without_host_returns_1(self, config) -> None:
        assert main.main(["passphrase", "clear"], config=config) == 1


class TestSignalHandlers:
    def test_signal_disconnects_then_exits(self) -> None:
        engine = MagicMock()
        previous = {s: signal.getsignal(s) for s in (signal.SIGINT, signal.SIGTERM)}
        try:
            main.install_signal_handlers(engine)
            handler = signal.getsignal(signal.SIGTERM)
            with pytest.raises(SystemExit) as info:
                handler(signal.SIGTERM, None)
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

        engine.disconnect.assert_called_once()
        assert info.value.code == 128 + signal.SIGTERM
