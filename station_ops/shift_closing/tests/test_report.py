"""Unit tests for report aggregation: island rows, debtors, wallet projection."""

from __future__ import annotations

import unittest

from station_ops.shift_closing.models import (
    CollectionStatus,
    IslandCollection,
    NonFuelSale,
    PumpMeterEntry,
    TankDipEntry,
    TankStatus,
)
from station_ops.shift_closing.report import build_report
from station_ops.shift_closing.session import ClosingSession


def _pump(pump_id: str, unit_price: float, opening: float = 0.0, tank_id: str = "T1") -> PumpMeterEntry:
    return PumpMeterEntry(
        pump_id=pump_id,
        product_id="PMS",
        unit_price=unit_price,
        opening_electric=opening,
        opening_manual=opening,
        opening_cash=0.0,
        tank_id=tank_id,
    )


def _station_session() -> ClosingSession:
    """
    Two islands: I1 sells 40000 and collects 39000, I2 sells 15000 and collects 16000.
    P4 sells 1000 but belongs to no island.
    """
    session = ClosingSession(
        "ST1",
        "S1",
        pumps=[
            _pump("P1", 150.0, opening=1000.0),
            _pump("P2", 100.0),
            _pump("P3", 150.0, opening=500.0),
            _pump("P4", 100.0, tank_id=None),
        ],
        tanks=[
            TankDipEntry("T1", "PMS", capacity=10000.0, opening_volume=5000.0, opening_dip=150.0),
        ],
        islands=[
            IslandCollection("I1", island_name="Island 1", attendant_ids=("A1", "A2")),
            IslandCollection("I2", island_name="Island 2"),
        ],
        island_pump_mapping={"I1": ["P1", "P2"], "I2": ["P3"]},
        previous_wallet_balance=1000.0,
    )
    session.enter_pump_closing("P1", 1200.0)
    session.enter_pump_closing("P2", 100.0)
    session.enter_pump_closing("P3", 600.0)
    session.enter_pump_closing("P4", 10.0)
    session.enter_tank_reading("T1", closing_volume=4600.0, closing_dip=130.0)

    session.update_island_collection("I1", cash_amount=37000.0, card_amounts={"visa": 1000.0, "mastercard": 300.0})
    session.add_debt("I1", "D1", "Alpha Transport", 500.0)
    session.add_debt("I1", "d2f81c0e-77aa", "", 200.0)
    session.update_island_collection("I2", cash_amount=15700.0)
    session.add_debt("I2", "D1", "Alpha Transport", 300.0, reference="INV-88")
    session.add_non_fuel_sale(NonFuelSale("N1", "Engine oil 1L", 2, 1500.0))
    return session


class TestBuildReport(unittest.TestCase):
    def setUp(self) -> None:
        self.session = _station_session()
        self.report = build_report(self.session)

    def test_island_rows(self) -> None:
        i1, i2 = self.report.islands

        self.assertEqual(i1.attendants, ["A1", "A2"])
        self.assertAlmostEqual(i1.total_sales, 40000.0, places=6)
        self.assertAlmostEqual(i1.total_collected, 39000.0, places=6)
        self.assertAlmostEqual(i1.cash_drops, 37000.0, places=6)
        self.assertAlmostEqual(i1.total_debts, 700.0, places=6)
        self.assertAlmostEqual(i1.variance, -1000.0, places=6)
        self.assertEqual(i1.status, CollectionStatus.OK)
        self.assertAlmostEqual(i1.actual_collection, 39000.0, places=6)

        self.assertAlmostEqual(i2.total_sales, 15000.0, places=6)
        self.assertAlmostEqual(i2.variance, 1000.0, places=6)
        self.assertEqual(i2.status, CollectionStatus.REVIEW)
        self.assertAlmostEqual(i2.actual_collection, 15000.0, places=6)

    def test_station_totals_sum_island_rows(self) -> None:
        totals = self.report.totals

        self.assertAlmostEqual(totals.total_sales, 55000.0, places=6)
        self.assertAlmostEqual(totals.total_collected, 55000.0, places=6)
        self.assertAlmostEqual(totals.cash_drops, 52700.0, places=6)
        self.assertAlmostEqual(totals.total_debts, 1000.0, places=6)
        self.assertAlmostEqual(totals.variance, 0.0, places=6)

    def test_wallet_is_bounded_by_what_was_collected(self) -> None:
        wallet = self.report.wallet

        self.assertEqual(wallet.previous_balance, 1000.0)
        self.assertAlmostEqual(wallet.actual_collection, 54000.0, places=6)
        self.assertAlmostEqual(wallet.new_balance, 55000.0, places=6)

    def test_debtors_grouped_by_name_with_running_totals(self) -> None:
        alpha, unnamed = self.report.debtors

        self.assertEqual(alpha.debtor_name, "Alpha Transport")
        self.assertAlmostEqual(alpha.total, 800.0, places=6)
        self.assertEqual([t.island_id for t in alpha.transactions], ["I1", "I2"])
        self.assertEqual([t.running_total for t in alpha.transactions], [500.0, 800.0])
        self.assertEqual(alpha.transactions[1].reference, "INV-88")
        self.assertEqual(unnamed.debtor_name, "Debtor d2f81c0e")

    def test_unassigned_pump_sales_reported_separately(self) -> None:
        self.assertEqual(list(self.report.unassigned_sales), ["P4"])
        self.assertAlmostEqual(self.report.unassigned_sales["P4"], 1000.0, places=6)
        p4 = [p for p in self.report.pumps if p.pump_id == "P4"][0]
        self.assertIsNone(p4.island_id)

    def test_tanks_and_totals(self) -> None:
        (tank,) = self.report.tanks
        (variance,) = self.report.tank_variances

        self.assertEqual(tank.status, TankStatus.NORMAL)
        self.assertAlmostEqual(tank.usage, 400.0, places=6)
        self.assertAlmostEqual(variance.dispensed, 400.0, places=6)
        self.assertFalse(variance.flagged)
        self.assertAlmostEqual(self.report.total_liters, 410.0, places=6)
        self.assertAlmostEqual(self.report.non_fuel_total, 3000.0, places=6)

    def test_island_needing_review_flags_the_report(self) -> None:
        self.assertTrue(self.report.requires_review)

        self.session.update_island_collection("I2", cash_amount=14700.0)
        self.assertFalse(build_report(self.session).requires_review)

    def test_report_does_not_change_the_session(self) -> None:
        pumps = self.session.pumps
        islands = self.session.islands

        build_report(self.session)
        self.assertEqual(self.session.pumps, pumps)
        self.assertEqual(self.session.islands, islands)

    def test_as_dict_is_json_ready(self) -> None:
        data = self.report.as_dict()

        self.assertEqual(data["meter_type"], "electric")
        self.assertEqual(data["wallet"]["new_balance"], 55000.0)
        self.assertEqual(data["islands"][1]["status"], "review")
        self.assertTrue(data["requires_review"])


if __name__ == "__main__":
    unittest.main()
