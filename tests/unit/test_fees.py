"""Unit tests for fee and unit conversions."""
from decimal import ROUND_CEILING, Decimal

import pytest

from clo_pipeline.core.exceptions import InvalidTermsError
from clo_pipeline.finance.fees import format_ada, to_ada, to_lovelace, transfer_fees


class TestConversions:
    """Test ADA / lovelace conversion."""

    def test_to_lovelace(self):
        assert to_lovelace(Decimal("43.03")) == 43_030_000

    def test_dust_truncated_by_default(self):
        assert to_lovelace(Decimal("0.0000019")) == 1

    def test_ceiling_rounding(self):
        assert to_lovelace(Decimal("0.0000011"), rounding=ROUND_CEILING) == 2

    def test_to_ada(self):
        assert to_ada(2_500_000) == Decimal("2.5")

    def test_format_ada(self):
        assert format_ada(1_234_500_000) == "1,234.50"


class TestTransferFees:
    """1% of principal clamped to [5, 25000] ADA, split buyer/seller."""

    def test_minimum_fee_applies(self):
        fees = transfer_fees(Decimal("500"))

        assert fees.total == 5_000_000
        assert fees.buyer == 2_500_000
        assert fees.seller == 2_500_000

    def test_percentage_fee(self):
        fees = transfer_fees(Decimal("2000"), buyer_percent=100)

        assert fees.buyer == 20_000_000
        assert fees.seller == 0

    def test_maximum_fee_applies(self):
        assert transfer_fees(Decimal("5000000")).total == 25_000_000_000

    def test_split_always_adds_up(self):
        fees = transfer_fees(Decimal("1234.567"), buyer_percent=33)
        assert fees.buyer + fees.seller == fees.total

    @pytest.mark.parametrize("percent", [-1, 101])
    def test_invalid_buyer_share(self, percent):
        with pytest.raises(InvalidTermsError):
            transfer_fees(Decimal("500"), buyer_percent=percent)
