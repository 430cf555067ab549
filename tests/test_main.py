import functools
import json
import logging

import pytest

import main
from config import Config
from deriv_gateway.client import DerivClient
from deriv_gateway.models import DigitStat
from deriv_gateway.token_store import create_token_store


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    config = Config()
    config.set("storage.backend", "file")
    config.set("storage.path", str(tmp_path / "store.json"))
    config.set("logging.console", False)
    config.set("connection.connect_timeout", 0.5)
    config.set("connection.request_timeout", 0.5)
    path = tmp_path / "config.json"
    config.save(str(path), "json")
    return path


@pytest.fixture
def fake_api(server, monkeypatch):
    monkeypatch.setattr(main, "DerivClient", functools.partial(DerivClient, connector=server.connect))
    return server


def test_argument_parser():
    parser = main.setup_argument_parser()
    args = parser.parse_args(["watch", "R_100", "--history", "50", "--window", "20"])
    assert args.command == "watch"
    assert (args.symbol, args.history, args.window, args.every) == ("R_100", 50, 20, 10)

    args = parser.parse_args(["-l", "debug", "accounts", "--activate", "CR1"])
    assert args.log_level == "debug" and args.activate == "CR1"


def test_format_stats():
    stats = [DigitStat(digit=d, count=1, percentage=10) for d in range(10)]
    line = main.format_stats(stats)
    assert line.startswith("0: 10%")
    assert line.count("%") == 10


def test_dry_run(config_file):
    assert main.main(["-c", str(config_file), "--dry-run"]) == 0


def test_missing_config_is_created(tmp_path):
    path = tmp_path / "conf" / "derivdesk.yaml"
    assert main.main(["-c", str(path), "--dry-run"]) == 0
    assert path.exists()


def test_invalid_config_fails(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"schema_version": 999}))
    assert main.main(["-c", str(path), "--dry-run"]) == 1


def test_accounts_import_and_list(config_file, tmp_path, capsys):
    url = ("https://dashboard.example/redirect?acct1=CR1&token1=tok-a&cur1=usd"
           "&acct2=VRTC2&token2=tok-v&cur2=usd")
    assert main.main(["-c", str(config_file), "accounts", "--redirect", url, "--activate", "VRTC2"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("  CR1") and lines[0].endswith("real")
    assert lines[1].startswith("* VRTC2") and lines[1].endswith("virtual")

    store = create_token_store("file", str(tmp_path / "store.json"))
    assert store.get("CR1") == "tok-a"
    assert store.get_active_account() == "vrtc2"


def test_accounts_rejects_empty_redirect(config_file):
    assert main.main(["-c", str(config_file), "accounts", "--redirect", "https://x/?foo=1"]) == 1


def test_watch_streams_and_persists_snapshot(config_file, fake_api, tmp_path):
    fake_api.add_account("tok-a", "CR1")
    code = main.main(["-c", str(config_file), "watch", "R_100", "--token", "tok-a",
                      "--history", "20", "--duration", "0.05"])
    assert code == 0

    store = create_token_store("file", str(tmp_path / "store.json"))
    assert len(store.load_snapshot("R_100")) == 20
    assert store.get_last_token() == "tok-a"
    assert fake_api.commands("forget_all")
    assert fake_api.sockets[0].closed


def test_watch_with_rejected_token(config_file, fake_api):
    assert main.main(["-c", str(config_file), "watch", "R_100", "--token", "tok-bad",
                      "--duration", "0.01"]) == 3


def test_watch_without_connection(config_file, fake_api):
    fake_api.fail_connects = 1
    assert main.main(["-c", str(config_file), "watch", "R_100", "--duration", "0.01"]) == 2
