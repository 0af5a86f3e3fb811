from __future__ import annotations

import unittest

from keymarket.errors import ValidationError
from keymarket.utils.commission import bps_minor_half_up, split_after_partial_refund, split_total_minor


class CommissionSplitTestCase(unittest.TestCase):
    def test_ten_percent_fee_on_round_total(self):
        self.assertEqual(split_total_minor(1000, 1000), (100, 900))

    def test_half_up_rounding(self):
        self.assertEqual(bps_minor_half_up(1005, 1000), 101)  # 100.5 -> 101
        self.assertEqual(bps_minor_half_up(1004, 1000), 100)  # 100.4 -> 100
        fee, seller = split_total_minor(1005, 1000)
        self.assertEqual(fee + seller, 1005)

    def test_split_always_sums_to_total(self):
        for total in (1, 7, 99, 1001, 123457):
            for bps in (0, 250, 1000, 10000):
                fee, seller = split_total_minor(total, bps)
                self.assertEqual(fee + seller, total)
                self.assertGreaterEqual(seller, 0)

    def test_partial_refund_proportional_recomputes_fee(self):
        retained, fee, seller = split_after_partial_refund(
            total_minor=1000, fee_minor=100, refund_minor=300, fee_bps=1000, policy="proportional"
        )
        self.assertEqual((retained, fee, seller), (700, 70, 630))

    def test_partial_refund_fixed_keeps_fee(self):
        retained, fee, seller = split_after_partial_refund(
            total_minor=1000, fee_minor=100, refund_minor=300, fee_bps=1000, policy="fixed"
        )
        self.assertEqual((retained, fee, seller), (700, 100, 600))

    def test_fixed_fee_never_exceeds_retained(self):
        retained, fee, seller = split_after_partial_refund(
            total_minor=1000, fee_minor=100, refund_minor=950, fee_bps=1000, policy="fixed"
        )
        self.assertEqual((retained, fee, seller), (50, 50, 0))

    def test_partial_refund_bounds(self):
        for refund in (0, -5, 1000, 1500):
            with self.assertRaises(ValidationError):
                split_after_partial_refund(
                    total_minor=1000, fee_minor=100, refund_minor=refund, fee_bps=1000, policy="proportional"
                )


if __name__ == "__main__":
    unittest.main()
