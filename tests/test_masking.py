"""Tests for log masking helpers."""

from callbridge.utils.masking import mask_phone, mask_ucid, safe_name, safe_trunc


def test_mask_phone_keeps_last_four():
    assert mask_phone("0551234567") == "******4567"
    assert mask_phone("123") == "123"
    assert mask_phone(None) is None


def test_mask_ucid():
    assert mask_ucid("00001234561709641234") == "0000...1234"
    assert mask_ucid("") == ""


def test_safe_trunc_handles_bytes():
    assert safe_trunc(b"abcdef", 3) == "abc"
    assert safe_trunc(None) is None


def test_safe_name_replaces_unsafe_characters():
    assert safe_name("../etc/passwd") == ".._etc_passwd"
    assert safe_name("ab:cd ef") == "ab_cd_ef"
    assert len(safe_name("x" * 300)) == 128
