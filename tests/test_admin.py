import pytest

from memory_party.admin import AdminGate, verify_admin_secret
from memory_party.identifiers import random_id, sha256_hex

DIGEST = sha256_hex("Open-Sesame")


def test_correct_secret_unlocks_and_stays_unlocked():
    gate = AdminGate(DIGEST)

    assert gate.unlock("Open-Sesame") is True
    assert gate.unlock("Open-Sesame") is True
    assert gate.unlocked is True


@pytest.mark.parametrize("secret", ["", None, "open-sesame", "OPEN-SESAME", "Open-Sesame ", "wrong"])
def test_wrong_secrets_are_rejected(secret):
    gate = AdminGate(DIGEST)

    assert gate.unlock(secret) is False
    assert gate.unlocked is False


def test_event_without_digest_never_unlocks():
    assert verify_admin_secret("anything", None) is False
    assert AdminGate(None).unlock("") is False


def test_digest_is_lowercase_hex_sha256():
    assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_random_ids_use_base36():
    value = random_id(8)

    assert len(value) == 8
    assert value.isalnum() and value == value.lower()
