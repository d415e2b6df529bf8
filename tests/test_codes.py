"""Tests for one-time code generation."""

from datetime import datetime, timedelta, timezone

from passless.service.codes import CODE_LENGTH, code_expiry, generate_code, is_well_formed_code


class TestGenerateCode:
    def test_code_is_fixed_length_digits(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == CODE_LENGTH == 6
            assert code.isdigit()

    def test_codes_are_zero_padded(self, monkeypatch):
        monkeypatch.setattr("passless.service.codes.secrets.randbelow", lambda n: 42)
        assert generate_code() == "000042"

    def test_codes_vary(self):
        codes = {generate_code() for _ in range(50)}
        assert len(codes) > 1


class TestIsWellFormedCode:
    def test_accepts_six_digits(self):
        assert is_well_formed_code("012345")

    def test_rejects_wrong_length_or_charset(self):
        for value in ("1234", "1234567", "12a456", "", None, 123456, "１２３４５６"):
            assert not is_well_formed_code(value)


def test_code_expiry_truncates_to_seconds():
    now = datetime(2024, 1, 1, 12, 0, 0, 987654, tzinfo=timezone.utc)
    expires = code_expiry(now, 15)
    assert expires == datetime(2024, 1, 1, 12, 15, 0, tzinfo=timezone.utc)
    assert expires - now.replace(microsecond=0) == timedelta(minutes=15)
