"""
Tests for the command line client.
"""

import pytest

from e2eclient.cli_client import CONTACT_PREFIX, main
from e2eclient.storage import SqliteStore


@pytest.fixture
def paths(tmp_path, monkeypatch):
    monkeypatch.delenv("E2E_PASSPHRASE", raising=False)
    return ["-f", str(tmp_path / "storage.db"), "-a", str(tmp_path / "app.db")]


def test_init_prints_stable_device_id(paths, capsys):
    assert main(paths + ["init"]) == 0
    first = capsys.readouterr().out.strip()
    assert main(paths + ["init"]) == 0
    assert capsys.readouterr().out.strip() == first
    assert len(first) == 43, "Device id should be an unpadded base64 Curve25519 key"


def test_add_contact(paths, tmp_path, capsys):
    main(paths + ["init"])
    device_id = capsys.readouterr().out.strip()

    assert main(paths + ["add", device_id, "me"]) == 0
    app_store = SqliteStore(tmp_path / "app.db")
    assert app_store.get_item(f"{CONTACT_PREFIX}me") == device_id
    app_store.close()


def test_add_rejects_invalid_device_id(paths, capsys):
    assert main(paths + ["add", "not-a-device-id", "bob"]) == 1
    assert "Invalid device id" in capsys.readouterr().err


def test_send_to_unknown_contact(paths, capsys):
    assert main(paths + ["send", "-t", "nobody"]) == 1
    assert "Unknown contact" in capsys.readouterr().err
