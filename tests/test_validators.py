"""
Tests for phone number and money helpers.
"""

from decimal import Decimal

import pytest

from src.paydesk.utils.money import from_cents, to_cents, to_decimal, to_gateway_units, total
from src.paydesk.utils.phone import mask_msisdn, normalize_msisdn


class TestNormalizeMsisdn:
    """Kenyan mobile numbers in the formats operators actually type."""

    @pytest.mark.parametrize(
        "raw",
        [
            "0712345678",
            "+254712345678",
            "254712345678",
            "+254 712 345 678",
            "0712 345 678",
            " 0712345678 ",
        ],
    )
    def test_local_and_international_formats(self, raw: str) -> None:
        assert normalize_msisdn(raw) == "254712345678"

    def test_safaricom_011_prefix(self) -> None:
        assert normalize_msisdn("0110345678") == "254110345678"

    def test_explicit_region(self) -> None:
        """A local Ugandan number parses when the region is given."""
        assert normalize_msisdn("0772123456", region="UG") == "256772123456"

    @pytest.mark.parametrize("raw", ["", "   ", "12345", "abcdefghij", "07123456789999"])
    def test_invalid_numbers(self, raw: str) -> None:
        with pytest.raises(ValueError):
            normalize_msisdn(raw)

    def test_none_rejected(self) -> None:
        with pytest.raises(ValueError, match="None"):
            normalize_msisdn(None)

    def test_landline_rejected(self) -> None:
        """Nairobi landlines cannot receive an STK push."""
        with pytest.raises(ValueError):
            normalize_msisdn("020 2222222")


class TestMaskMsisdn:
    def test_masks_middle_digits(self) -> None:
        assert mask_msisdn("254712345678") == "2547****5678"

    def test_short_values_unchanged(self) -> None:
        assert mask_msisdn("12345") == "12345"
        assert mask_msisdn("") == ""


class TestMoney:
    """Decimal, cents and gateway units."""

    def test_to_decimal_rounds_half_up(self) -> None:
        assert to_decimal("12.345") == Decimal("12.35")
        assert to_decimal("12.344") == Decimal("12.34")

    def test_to_decimal_from_float(self) -> None:
        assert to_decimal(0.1) == Decimal("0.10")

    def test_cents_round_trip(self) -> None:
        assert to_cents(Decimal("1000.50")) == 100050
        assert from_cents(100050) == Decimal("1000.50")

    @pytest.mark.parametrize(
        "amount,units",
        [("100", 100), ("100.00", 100), ("999.01", 1000), ("0.01", 1), ("250.50", 251)],
    )
    def test_gateway_units_round_up(self, amount: str, units: int) -> None:
        assert to_gateway_units(Decimal(amount)) == units

    def test_total_of_nothing(self) -> None:
        assert total([]) == Decimal("0.00")
        assert total([Decimal("1.10"), Decimal("2.20")]) == Decimal("3.30")
