import unittest
from models import (
    BreathingAnswer,
    Confidence,
    GlucoseAnswer,
    GlucoseUnit,
    InvalidInputError,
    PatientContext,
    Severity,
    WeightEstimate,
    WeightMethod,
)
from protocols import TriggerEvaluator, evaluate, evaluate_all, hypotension_threshold, parse_answer


class TestCriticalTriggers(unittest.TestCase):
    """
    Each clinical question evaluated on its own.
    Run with: python -m unittest test_protocols.py
    """

    def context(self, weight=12.0, age_years=4, glucose_unit=GlucoseUnit.MMOL_L):
        estimate = WeightEstimate(weight, WeightMethod.ACTUAL, Confidence.HIGH, "test scale")
        return PatientContext(age_years=age_years, age_months=0, resolved_weight=estimate,
                              glucose_unit=glucose_unit)

    def fire(self, question_id, raw, **ctx):
        return evaluate(parse_answer(question_id, raw), self.context(**ctx))

    def test_01_apnea_rate_by_age(self):
        """[APNEA] Ventilation rate: infant 30, child 20, older child 12-15"""
        print("\nTEST 1: Apnea")
        infant = self.fire("breathing", "no", age_years=0.5, weight=7)
        child = self.fire("breathing", "no", age_years=4)
        older = self.fire("breathing", "no", age_years=10, weight=30)

        self.assertEqual(infant.dose, "30 breaths/minute")
        self.assertEqual(child.dose, "20 breaths/minute")
        self.assertEqual(older.dose, "12-15 breaths/minute")

        self.assertEqual(child.id, "bvm-ventilation")
        self.assertEqual(child.severity, Severity.CRITICAL)
        self.assertEqual(child.title, "START BAG-VALVE-MASK VENTILATION NOW")
        self.assertEqual(child.route, "Bag-valve-mask")
        self.assertEqual(child.timer_seconds, 30)
        self.assertEqual(child.intervention_template_id, "bvm_ventilation")

        self.assertIsNone(self.fire("breathing", "yes"))

    def test_02_pulselessness(self):
        """[ARREST] No pulse -> CPR with age-appropriate technique"""
        print("\nTEST 2: Pulseless")
        infant = self.fire("pulse", "no", age_years=0.5, weight=7)
        child = self.fire("pulse", "no", age_years=4)
        older = self.fire("pulse", "no", age_years=9, weight=28)

        self.assertIn("Two fingers or two thumbs encircling", infant.instruction)
        self.assertIn("One hand, heel of hand", child.instruction)
        self.assertIn("Two hands, interlocked", older.instruction)
        self.assertEqual(child.id, "start-cpr")
        self.assertEqual(child.title, "START CPR IMMEDIATELY")
        self.assertEqual(child.timer_seconds, 120)
        self.assertEqual(child.intervention_template_id, "cpr")
        self.assertIn("15:2", child.dose)

        self.assertIsNone(self.fire("pulse", "yes"))

    def test_03_weak_pulse_is_urgent(self):
        action = self.fire("pulse", "weak")
        self.assertEqual(action.severity, Severity.URGENT)
        self.assertEqual(action.intervention_template_id, "iv_access")
        self.assertEqual(action.timer_seconds, 300)

    def test_04_hypoglycemia_12kg(self):
        """[GLUCOSE] 2.0 mmol/L at 12 kg -> 24 mL D10%"""
        print("\nTEST 4: Hypoglycemia")
        action = self.fire("glucose", 2.0, weight=12)
        print(f"  > {action.title}: {action.instruction}")

        self.assertEqual(action.id, "hypoglycemia")
        self.assertEqual(action.severity, Severity.CRITICAL)
        self.assertEqual(action.title, "TREAT HYPOGLYCEMIA NOW")
        self.assertEqual(action.instruction, "Give 24 mL of 10% Dextrose IV/IO (2 mL/kg)")
        self.assertEqual(action.dose, "24 mL D10% IV/IO")
        self.assertEqual(action.timer_seconds, 900)
        self.assertEqual(action.intervention_template_id, "dextrose")
        self.assertEqual(action.reassess_prompt, "Recheck glucose in 15 minutes")

    def test_05_glucose_threshold_and_units(self):
        """[GLUCOSE] Strictly below 3.0 mmol/L; mg/dL divided by 18"""
        self.assertIsNone(self.fire("glucose", 3.0))
        self.assertIsNone(self.fire("glucose", 5.5))

        # 45 mg/dL = 2.5 mmol/L, via the patient's unit
        self.assertIsNotNone(self.fire("glucose", 45, glucose_unit=GlucoseUnit.MG_DL))
        self.assertIsNone(self.fire("glucose", 54, glucose_unit=GlucoseUnit.MG_DL))

        # Or via an explicit unit on the answer
        explicit = evaluate(GlucoseAnswer(45, GlucoseUnit.MG_DL), self.context())
        self.assertEqual(explicit.id, "hypoglycemia")
        parsed = self.fire("glucose", {"value": 45, "unit": "mg/dL"})
        self.assertEqual(parsed.id, "hypoglycemia")

    def test_06_hyperglycemia_is_advisory(self):
        action = self.fire("glucose", 22.0)
        self.assertEqual(action.id, "hyperglycemia")
        self.assertEqual(action.severity, Severity.URGENT)
        self.assertIsNone(action.intervention_template_id)

    def test_07_shock_15kg(self):
        """[SHOCK] Prolonged capillary refill at 15 kg -> 300 mL bolus"""
        print("\nTEST 7: Shock")
        action = self.fire("capillary_refill", "prolonged", weight=15)
        print(f"  > {action.instruction}")

        self.assertEqual(action.id, "fluid-bolus")
        self.assertEqual(action.title, "GIVE FLUID BOLUS")
        self.assertEqual(action.instruction, "Give 300 mL Normal Saline (20 mL/kg) over 5-10 minutes")
        self.assertEqual(action.dose, "300 mL NS")
        self.assertEqual(action.timer_seconds, 600)
        self.assertEqual(action.intervention_template_id, "fluid_bolus")

        self.assertIsNotNone(self.fire("capillary_refill", "flash", weight=15))
        self.assertIsNone(self.fire("capillary_refill", "normal", weight=15))

    def test_08_hypotension_threshold_by_age(self):
        """[BP] 60 for infants, 70 + 2 x age capped at 90"""
        self.assertEqual(hypotension_threshold(0.5), 60)
        self.assertEqual(hypotension_threshold(4), 78)
        self.assertEqual(hypotension_threshold(12), 90)

        self.assertEqual(self.fire("blood_pressure", 70, age_years=4).id, "hypotension")
        self.assertIsNone(self.fire("blood_pressure", 80, age_years=4))
        self.assertIsNotNone(self.fire("blood_pressure", 55, age_years=0.5, weight=7))
        self.assertIsNone(self.fire("blood_pressure", 65, age_years=0.5, weight=7))
        self.assertIsNotNone(self.fire("blood_pressure", 85, age_years=12, weight=36))
        # 0 = could not be measured
        self.assertIsNone(self.fire("blood_pressure", 0))

    def test_09_responsiveness(self):
        unresponsive = self.fire("responsiveness", "unresponsive")
        self.assertEqual(unresponsive.severity, Severity.CRITICAL)
        self.assertEqual(unresponsive.intervention_template_id, "airway_positioning")

        pain = self.fire("responsiveness", "pain")
        self.assertEqual(pain.severity, Severity.URGENT)
        self.assertIsNone(pain.intervention_template_id)

        self.assertIsNone(self.fire("responsiveness", "alert"))

    def test_10_multiple_triggers_are_independent(self):
        """[INDEPENDENCE] Apnea, hypoglycemia and shock all fire together"""
        print("\nTEST 10: Simultaneous Triggers")
        fired = evaluate_all([
            ("breathing", "no"),
            ("pulse", "yes"),
            ("glucose", 2.0),
            ("capillary_refill", "prolonged"),
        ], self.context())
        ids = [action.id for _, action in fired]
        print(f"  > Fired: {ids}")
        self.assertEqual(ids, ["bvm-ventilation", "hypoglycemia", "fluid-bolus"])
        self.assertEqual([q for q, _ in fired], ["breathing", "glucose", "capillary_refill"])

    def test_11_malformed_answers(self):
        """[CONTRACT] Bad payloads raise, they do not silently pass"""
        bad = [
            ("heart_sounds", "loud"),
            ("breathing", "maybe"),
            ("pulse", None),
            ("glucose", "low"),
            ("glucose", -1),
            ("glucose", {"value": 2, "unit": "grams"}),
            ("glucose", {"unit": "mmol/L"}),
            ("blood_pressure", 400),
            ("responsiveness", "asleep"),
        ]
        for question_id, raw in bad:
            with self.assertRaises(InvalidInputError, msg=f"{question_id}={raw!r} accepted"):
                parse_answer(question_id, raw)

        with self.assertRaises(InvalidInputError):
            parse_answer("pulse", BreathingAnswer("no"))

    def test_13_malformed_answer_does_not_block_others(self):
        """[INDEPENDENCE] A bad breathing answer still lets hypoglycemia fire"""
        with self.assertLogs("resusgps-triggers", level="WARNING") as logs:
            fired = evaluate_all([("breathing", "maybe"), ("glucose", 2.0)], self.context())
        self.assertEqual([(q, a.id) for q, a in fired], [("glucose", "hypoglycemia")])
        self.assertTrue(any("breathing" in line for line in logs.output))

    def test_12_critical_triggers_are_logged(self):
        with self.assertLogs("resusgps-triggers", level="WARNING") as logs:
            TriggerEvaluator.evaluate(BreathingAnswer("no"), self.context())
        self.assertIn("bvm-ventilation", logs.output[0])


if __name__ == '__main__':
    unittest.main()
