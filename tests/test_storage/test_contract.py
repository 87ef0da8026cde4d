"""Behaviour every storage backend must share with the certificate manager."""

from __future__ import annotations

import pytest

from certstore.storage.base import KeyInfo
from certstore.storage.errors import KeyNotFoundError

CERT_KEY = "certificates/acme-v02/example.com/example.com.crt"
CERT_PEM = b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n"


def test_store_then_load_returns_exact_bytes(storage) -> None:
    """What was stored is what comes back, byte for byte."""
    payload = CERT_PEM + bytes(range(256))
    storage.store(CERT_KEY, payload)

    assert storage.load(CERT_KEY) == payload


def test_store_overwrites_previous_value(storage) -> None:
    """Concurrent writers are last-writer-wins, a renewal simply replaces."""
    storage.store(CERT_KEY, b"old")
    storage.store(CERT_KEY, b"new")

    assert storage.load(CERT_KEY) == b"new"


def test_load_missing_key_raises_not_found(storage) -> None:
    """"Nothing stored yet" is a distinguishable outcome."""
    with pytest.raises(KeyNotFoundError) as excinfo:
        storage.load("certificates/acme-v02/missing.example/missing.example.crt")

    assert isinstance(excinfo.value, FileNotFoundError)
    assert excinfo.value.key.endswith("missing.example.crt")


def test_delete_removes_key(storage) -> None:
    """After delete, exists is False and load reports not found."""
    storage.store(CERT_KEY, CERT_PEM)
    storage.delete(CERT_KEY)

    assert storage.exists(CERT_KEY) is False
    with pytest.raises(KeyNotFoundError):
        storage.load(CERT_KEY)


def test_delete_missing_key_is_idempotent(storage) -> None:
    """Cleanup paths may delete the same key twice."""
    storage.delete("certificates/never-stored.crt")
    storage.store(CERT_KEY, CERT_PEM)
    storage.delete(CERT_KEY)
    storage.delete(CERT_KEY)


def test_delete_directory_removes_everything_below(storage) -> None:
    """A trailing separator deletes the whole virtual directory."""
    storage.store("certificates/example.com/example.com.crt", b"crt")
    storage.store("certificates/example.com/example.com.key", b"key")
    storage.store("certificates/other.org/other.org.crt", b"other")

    storage.delete("certificates/example.com/")

    assert storage.list("certificates", recursive=True) == ["certificates/other.org/other.org.crt"]


def test_exists_reports_objects_and_virtual_directories(storage) -> None:
    storage.store(CERT_KEY, CERT_PEM)

    assert storage.exists(CERT_KEY) is True
    assert storage.exists("certificates/acme-v02/example.com/") is True
    assert storage.exists("certificates/acme-v02/example.org/example.org.crt") is False


def test_list_recursive_restores_logical_keys(storage) -> None:
    """Listing under "a" returns exactly the keys stored below it."""
    for key in ("a/b", "a/c", "a/d/e", "ab/not-below-a", "z"):
        storage.store(key, b"x")

    assert sorted(storage.list("a", recursive=True)) == ["a/b", "a/c", "a/d/e"]


def test_list_treats_prefix_as_directory(storage) -> None:
    """"example.co" never matches "example.com/", and a leaf has no children."""
    storage.store("certificates/example.com/example.com.crt", b"x")

    assert storage.list("certificates/example.co", recursive=True) == []
    assert storage.list("certificates/example.com/example.com.crt", recursive=True) == []
    assert storage.list("certificates/example.com", recursive=True) == ["certificates/example.com/example.com.crt"]


def test_list_non_recursive_returns_immediate_children(storage) -> None:
    """Nested keys collapse into a virtual directory entry."""
    for key in ("a/b", "a/c", "a/d/e", "a/d/f"):
        storage.store(key, b"x")

    assert sorted(storage.list("a", recursive=False)) == ["a/b", "a/c", "a/d/"]


def test_list_hides_lock_objects(storage) -> None:
    """Locks are not certificate artifacts and never show up in listings."""
    storage.store("a/b", b"x")
    storage.lock("a/b")
    try:
        assert storage.list("", recursive=True) == ["a/b"]
        assert storage.list("", recursive=False) == ["a/"]
    finally:
        storage.unlock("a/b")


def test_list_unknown_prefix_is_empty(storage) -> None:
    assert storage.list("certificates/nowhere", recursive=True) == []


def test_stat_reports_size_and_terminal_flag(storage) -> None:
    """Leaves are terminal, keys ending with the separator are not."""
    storage.store(CERT_KEY, CERT_PEM)

    leaf = storage.stat(CERT_KEY)
    directory = storage.stat("certificates/acme-v02/example.com/")

    assert leaf.key == CERT_KEY
    assert leaf.size == len(CERT_PEM)
    assert leaf.is_terminal is True
    assert leaf.modified is not None
    assert directory.key == "certificates/acme-v02/example.com/"
    assert directory.is_terminal is False


def test_stat_missing_key_returns_zero_value(storage) -> None:
    """Stat failures are swallowed into an empty KeyInfo."""
    assert storage.stat("certificates/nothing-here.crt") == KeyInfo.empty()
    assert storage.stat("certificates/nothing-here/") == KeyInfo.empty()


@pytest.mark.parametrize("key", ["../escape", "a/../../b", "certificates/./x.crt"])
def test_exists_and_stat_never_raise_on_invalid_keys(storage, key) -> None:
    """Keys that cannot be resolved read as absent rather than raising."""
    assert storage.exists(key) is False
    assert storage.stat(key) == KeyInfo.empty()
