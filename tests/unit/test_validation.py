"""Unit tests for email, password and PIN validation."""

import pytest

from kidsync.errors import ValidationError
from kidsync.validation import normalize_pin, validate_email, validate_password


@pytest.mark.parametrize("email", ["kid.tutor@example.com", "a+b@school.edu.es"])
def test_valid_emails(email):
    assert validate_email(email) == email


@pytest.mark.parametrize("email", ["", "   ", "no-at-sign", "a@b", "a@b.c", "two@@example.com"])
def test_invalid_emails(email):
    with pytest.raises(ValidationError) as exc:
        validate_email(email)
    assert exc.value.field == "email"


def test_valid_password():
    assert validate_password("Abcde1", "Abcde1") == "Abcde1"


@pytest.mark.parametrize(
    "password,confirm,field",
    [
        ("", "", "password"),
        ("Ab1", "Ab1", "password"),
        ("abcdef1", "abcdef1", "password"),
        ("ABCDEF1", "ABCDEF1", "password"),
        ("Abcdefg", "Abcdefg", "password"),
        ("Abc def1", "Abc def1", "password"),
        ("Abcdef1", "Abcdef2", "confirm"),
    ],
)
def test_invalid_passwords(password, confirm, field):
    with pytest.raises(ValidationError) as exc:
        validate_password(password, confirm)
    assert exc.value.field == field


def test_pin_whitespace_is_stripped():
    assert normalize_pin(" 1 2 3 4 ", "1234\n") == "1234"


@pytest.mark.parametrize(
    "pin,confirm",
    [("123", "123"), ("12345", "12345"), ("12a4", "12a4"), ("", ""), ("1234", "4321"), ("١٢٣٤", "١٢٣٤")],
)
def test_bad_pins(pin, confirm):
    with pytest.raises(ValidationError):
        normalize_pin(pin, confirm)
