"""Tests for the flat-file user store."""
import pytest

from sitegen.auth import UserStore


@pytest.fixture
def store(tmp_path):
    return UserStore(str(tmp_path / "users.txt"))


def test_register_then_verify(store):
    assert store.register("ada", "secret")
    assert store.verify("ada", "secret")
    assert not store.verify("ada", "wrong")
    assert not store.verify("grace", "secret")


def test_duplicate_username(store):
    assert store.register("ada", "one")
    assert not store.register("ada", "two")
    assert store.verify("ada", "one")


def test_empty_or_separator_fields_rejected(store):
    assert not store.register("", "x")
    assert not store.register("a,b", "x")
    assert not store.verify("", "")


def test_file_format(store, tmp_path):
    store.register("ada", "one")
    store.register("grace", "two")
    assert (tmp_path / "users.txt").read_text(encoding="utf-8") == "ada,one\ngrace,two"


def test_missing_file_means_no_users(tmp_path):
    store = UserStore(str(tmp_path / "nested" / "users.txt"))
    assert not store.exists("ada")
    assert store.register("ada", "x")
    assert store.exists("ada")
