from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError
from pytest import MonkeyPatch

from azops import vault
from azops.vault import read_secret_plaintext, secret_buffer


def make_client(value: object) -> MagicMock:
    client = MagicMock()
    client.get_secret.return_value = SimpleNamespace(name="sql-password", value=value)
    return client


def test_read_secret_plaintext_returns_value() -> None:
    client = make_client("s3cr3t-ü")

    assert read_secret_plaintext("kv-prod", "sql-password", client=client) == "s3cr3t-ü"
    client.get_secret.assert_called_once_with("sql-password")


def test_read_secret_plaintext_empty_value() -> None:
    assert read_secret_plaintext("kv-prod", "empty", client=make_client(None)) == ""


def test_read_secret_plaintext_builds_client_from_vault_name(
    monkeypatch: MonkeyPatch,
) -> None:
    client = make_client("value")
    get_client = MagicMock(return_value=client)
    monkeypatch.setattr(vault, "get_key_vault_client", get_client)

    read_secret_plaintext("kv-prod", "sql-password")

    get_client.assert_called_once_with("kv-prod")


def test_secret_buffer_is_zeroed_after_use() -> None:
    with secret_buffer("kv-prod", "sql-password", client=make_client("hunter2")) as buf:
        assert bytes(buf) == b"hunter2"
        held = buf

    assert len(held) == len(b"hunter2")
    assert all(b == 0 for b in held)


def test_secret_buffer_is_zeroed_when_block_raises() -> None:
    with pytest.raises(RuntimeError):
        with secret_buffer("kv-prod", "sql-password", client=make_client("hunter2")) as buf:
            held = buf
            raise RuntimeError("boom")

    assert all(b == 0 for b in held)


def test_missing_secret_propagates() -> None:
    client = MagicMock()
    client.get_secret.side_effect = ResourceNotFoundError("SecretNotFound")

    with pytest.raises(ResourceNotFoundError):
        read_secret_plaintext("kv-prod", "nope", client=client)
