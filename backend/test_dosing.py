import unittest
from constants import DRUG_LIBRARY, DoseUnit
from dosing import DoseEngine, calculate_dose, calculate_dose_for_context
from models import (
    Confidence,
    InvalidInputError,
    PatientContext,
    WeightEstimate,
    WeightMethod,
)


def make_context(weight_kg, age_years=4):
    estimate = WeightEstimate(weight_kg, WeightMethod.ACTUAL, Confidence.HIGH, "test scale")
    return PatientContext(age_years=age_years, age_months=0, resolved_weight=estimate)


class TestDoseEngine(unittest.TestCase):
    """
    Emergency drug sheet checks.
    Run with: python -m unittest test_dosing.py
    """

    def test_01_epinephrine_for_blue_zone(self):
        """[MASS] 14 kg -> 0.14 mg epinephrine, 1.4 mL of 1:10,000"""
        print("\nTEST 1: Epinephrine 14 kg")
        dose = calculate_dose(14, "epinephrine_arrest")
        print(f"  > {dose.display} = {dose.draw_up_ml} mL of {dose.concentration}")

        self.assertEqual(dose.amount, 0.14)
        self.assertEqual(dose.unit, DoseUnit.MG)
        self.assertEqual(dose.display, "0.14 mg")
        self.assertEqual(dose.draw_up_ml, 1.4)
        self.assertFalse(dose.capped)

    def test_02_hard_caps(self):
        """[SAFETY] Max doses apply regardless of weight"""
        print("\nTEST 2: Hard Caps")
        epi = calculate_dose(120, "epinephrine_arrest")
        self.assertEqual(epi.amount, 1.0)
        self.assertTrue(epi.capped, "Adult-sized child should hit the 1 mg ceiling")
        self.assertEqual(epi.display, "1.00 mg")

        amio = calculate_dose(70, "amiodarone")
        self.assertEqual(amio.amount, 300.0)
        self.assertTrue(amio.capped)

        bolus = calculate_dose(60, "fluid_bolus")
        self.assertEqual(bolus.amount, 1000)
        self.assertTrue(bolus.capped)

        anaphylaxis = calculate_dose(80, "epinephrine_anaphylaxis")
        self.assertEqual(anaphylaxis.amount, 0.5)

    def test_03_atropine_minimum(self):
        """[SAFETY] Atropine never below 0.1 mg"""
        small = calculate_dose(3, "atropine")
        self.assertEqual(small.amount, 0.1)
        self.assertTrue(small.capped)

        normal = calculate_dose(10, "atropine")
        self.assertEqual(normal.amount, 0.2)
        self.assertFalse(normal.capped)

    def test_04_volumes_are_whole_millilitres(self):
        """[VOLUME] Dextrose 12 kg -> 24 mL, bolus 15 kg -> 300 mL"""
        print("\nTEST 4: Volumes")
        dextrose = calculate_dose(12, "dextrose_10")
        self.assertEqual(dextrose.amount, 24)
        self.assertEqual(dextrose.display, "24 mL")
        self.assertIsNone(dextrose.draw_up_ml)

        bolus = calculate_dose(15, "fluid_bolus")
        self.assertEqual(bolus.display, "300 mL")

    def test_05_energies_round_half_up(self):
        """[ENERGY] 2 J/kg defibrillation, 14.5 kg cardioversion rounds up to 15 J"""
        self.assertEqual(calculate_dose(14, "defibrillation").display, "28 J")
        self.assertEqual(calculate_dose(14.5, "cardioversion").amount, 15)

    def test_06_bad_weight_is_rejected(self):
        """[CONTRACT] A dose is never produced for an unusable weight"""
        print("\nTEST 6: Bad Weights")
        for bad in (0, -1, float("nan"), float("inf"), "10", None, True):
            with self.assertRaises(InvalidInputError, msg=f"weight {bad!r} accepted"):
                calculate_dose(bad, "epinephrine_arrest")

    def test_07_unknown_drug(self):
        with self.assertRaises(InvalidInputError):
            calculate_dose(10, "unicorn_tears")

    def test_08_deterministic(self):
        """[DETERMINISM] Same weight, same string, every time"""
        first = calculate_dose(17.3, "hydrocortisone")
        second = calculate_dose(17.3, "hydrocortisone")
        self.assertEqual(first, second)
        self.assertEqual(first.display, second.display)

    def test_09_context_weight_is_read_each_call(self):
        """[CONTEXT] A replaced context weight flows into the next dose"""
        before = calculate_dose_for_context(make_context(10), "dextrose_10")
        after = calculate_dose_for_context(make_context(20), "dextrose_10")
        self.assertEqual(before.amount, 20)
        self.assertEqual(after.amount, 40)

    def test_10_full_sheet(self):
        sheet = DoseEngine.calculate_all(14)
        self.assertEqual(set(sheet), set(DRUG_LIBRARY.SPECS))
        self.assertEqual(sheet["defibrillation"].amount, 28)


if __name__ == '__main__':
    unittest.main()
