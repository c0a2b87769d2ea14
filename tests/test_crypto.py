from decimal import Decimal

import pytest

from sparify.crypto import AmountCipher, EncryptedAmount
from sparify.exceptions import DecryptionError, KeyMaterialError
from sparify.money import MAX_AMOUNT, format_currency, from_cents, require_within_limit, to_cents, to_decimal


def test_encrypt_decrypt_keeps_two_decimal_places(cipher) -> None:
    blob = cipher.encrypt("14.5")

    assert isinstance(blob, EncryptedAmount)
    assert "14.5" not in blob.token
    assert cipher.decrypt(blob) == Decimal("14.50")
    assert cipher.decrypt(cipher.encrypt(-3)) == Decimal("-3.00")


def test_zero_is_an_encrypted_zero(cipher) -> None:
    assert cipher.decrypt(cipher.zero()) == Decimal("0.00")
    assert cipher.zero() != cipher.zero()  # fresh IV per token


def test_same_key_material_reads_other_instances_tokens(cipher) -> None:
    other = AmountCipher("test-secret", "test-salt", iterations=1_000)

    assert other.decrypt(cipher.encrypt("7.25")) == Decimal("7.25")


def test_foreign_or_corrupt_ciphertext_raises(cipher) -> None:
    foreign = AmountCipher("another-secret", "test-salt", iterations=1_000)

    with pytest.raises(DecryptionError):
        cipher.decrypt(foreign.encrypt("1.00"))
    with pytest.raises(DecryptionError):
        cipher.decrypt(EncryptedAmount("not-a-token"))
    with pytest.raises(DecryptionError):
        cipher.decrypt(EncryptedAmount("ünïcode"))


def test_plain_numbers_are_not_ciphertext(cipher) -> None:
    with pytest.raises(TypeError):
        cipher.decrypt("12.00")  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        cipher.encrypt(cipher.zero())  # type: ignore[arg-type]


@pytest.mark.parametrize("secret,salt", [("", "salt"), ("secret", ""), ("", "")])
def test_missing_key_material_is_rejected(secret: str, salt: str) -> None:
    with pytest.raises(KeyMaterialError):
        AmountCipher(secret, salt, iterations=1_000)


def test_money_helpers() -> None:
    assert to_decimal(2.675) == Decimal("2.68")
    assert to_decimal(" 3 ") == Decimal("3.00")
    assert to_cents(Decimal("12.34")) == 1234
    assert from_cents(-550) == Decimal("-5.50")
    assert format_currency(Decimal("1234.5")) == "1,234.50 €"
    with pytest.raises(TypeError):
        to_decimal(True)
    with pytest.raises(ValueError):
        to_decimal("NaN")
    with pytest.raises(ValueError):
        to_decimal("abc")


def test_amounts_beyond_decimal_precision_are_value_errors() -> None:
    with pytest.raises(ValueError):
        to_decimal("1e30")
    with pytest.raises(ValueError):
        require_within_limit(to_decimal("1e20"))
    assert require_within_limit(-MAX_AMOUNT) == -MAX_AMOUNT
