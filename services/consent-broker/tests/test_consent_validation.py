import pytest

from consent_broker.core.errors import ConsentValidationError
from consent_broker.services.consent_service import (
    iso_z,
    parse_validity_window,
    validate_amount,
    validate_permissions,
)


@pytest.mark.parametrize("amount", ["100.00", "0.01", "1.50", "250000.99"])
def test_amount_accepts_two_decimal_positive_values(amount: str) -> None:
    assert validate_amount(amount, "payment_amount") == amount


@pytest.mark.parametrize("amount", ["100", "100.0", "100.005", "-5.00", "0.00", "01.00", "1,000.00", "", " ", None, 100.0])
def test_amount_rejects_malformed_values(amount) -> None:
    with pytest.raises(ConsentValidationError) as exc:
        validate_amount(amount, "payment_amount")

    assert exc.value.message == "Invalid payment_amount"
    assert exc.value.status_code == 400


def test_permissions_must_be_non_empty_known_values() -> None:
    assert validate_permissions(["ReadAccountsBasic", "ReadBalances"]) == ["ReadAccountsBasic", "ReadBalances"]

    for bad in ([], None, "ReadBalances", ["ReadBalances", "WriteEverything"], [1]):
        with pytest.raises(ConsentValidationError):
            validate_permissions(bad)


def test_validity_window_parses_iso_strings() -> None:
    start, end = parse_validity_window("2026-01-01T00:00:00Z", "2026-02-01")

    assert iso_z(start) == "2026-01-01T00:00:00.000Z"
    assert end.tzinfo is not None
    assert parse_validity_window(None, None) == (None, None)


def test_validity_window_rejects_reversed_or_garbage_dates() -> None:
    with pytest.raises(ConsentValidationError, match="later than"):
        parse_validity_window("2026-02-01T00:00:00Z", "2026-01-01T00:00:00Z")

    with pytest.raises(ConsentValidationError):
        parse_validity_window("2026-02-01T00:00:00Z", "2026-02-01T00:00:00Z")

    with pytest.raises(ConsentValidationError, match="ISO"):
        parse_validity_window("yesterday", None)


@pytest.mark.parametrize("amount", ["1٠٠.٠٠", "5.٥٠", "1００.００", "１.00"])
def test_amount_rejects_non_ascii_digits(amount: str) -> None:
    with pytest.raises(ConsentValidationError):
        validate_amount(amount, "payment_amount")
