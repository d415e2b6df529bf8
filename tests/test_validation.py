import pytest

from passless.service.validation import is_valid_nickname, normalize_email, normalize_unicode


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Ada@Example.COM", "ada@example.com"),
        ("  ada.l+tag@mail.example.org ", "ada.l+tag@mail.example.org"),
        ("ada\u200b@example.com", "ada@example.com"),
        ("a@\u210cost.com", "a@host.com"),
        ("\uff21da@Example.com", "ada@example.com"),
    ],
)
def test_normalize_email(raw, expected):
    assert normalize_email(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["", "ada", "ada@", "@example.com", "ada@localhost", "ada@-bad.com", "a b@example.com", None],
)
def test_normalize_email_rejects(raw):
    with pytest.raises(ValueError):
        normalize_email(raw)


def test_normalize_unicode_folds_compatibility_forms():
    assert normalize_unicode("ａ‮da") == "ada"


@pytest.mark.parametrize("nickname", ["ada", "Ada1815", "x" * 32])
def test_valid_nicknames(nickname):
    assert is_valid_nickname(nickname)


@pytest.mark.parametrize("nickname", ["ab", "x" * 33, "ada_l", "ada l", "adá"])
def test_invalid_nicknames(nickname):
    assert not is_valid_nickname(nickname)
