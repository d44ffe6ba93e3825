# session.py
import copy
import logging
from dataclasses import replace
from typing import List, Optional

from dosing import calculate_dose_for_context
from interventions import InterventionTracker, SystemClock
from models import (
    ActiveIntervention,
    CriticalAction,
    DoseResult,
    FiredAction,
    GlucoseUnit,
    HandoverSnapshot,
    InvalidInputError,
    PatientContext,
    WeightEstimate,
    WeightMeasurements,
    WeightValidation,
)
from protocols import TriggerEvaluator, parse_answer
from safety import SafetySupervisor
from weight_engine import non_negative, resolve_weight

logger = logging.getLogger("resusgps-session")


class AssessmentSession:
    """
    One child, one resuscitation. Holds the explicit patient context,
    the intervention tracker and the log of every trigger that fired.

    The context is replaced wholesale when a better weight arrives, so
    every dose computed afterwards sees the new weight.
    """

    def __init__(self, measurements: Optional[WeightMeasurements] = None, age_years: Optional[float] = None,
                 age_months: Optional[float] = None, glucose_unit: GlucoseUnit = GlucoseUnit.MMOL_L,
                 clock=None, id_factory=None):
        self.clock = clock or SystemClock()
        self.tracker = InterventionTracker(clock=self.clock, id_factory=id_factory)
        self.fired: List[FiredAction] = []
        self.weight_history: List[WeightEstimate] = []

        self.context: PatientContext = None
        self.weight_validation: Optional[WeightValidation] = None
        self._age_known = age_years is not None or age_months is not None
        self._age_years = age_years or 0
        self._age_months = age_months or 0
        self._glucose_unit = glucose_unit
        self.update_weight(measurements or WeightMeasurements())

    @property
    def weight_kg(self) -> float:
        return self.context.weight_kg

    # --- weight ---

    def update_weight(self, measurements: WeightMeasurements) -> WeightEstimate:
        """Re-resolves the weight from fresh measurements."""
        years, months = non_negative(measurements.age_years), non_negative(measurements.age_months)
        measured_age = years is not None or months is not None
        if self._age_known and not measured_age:
            # The session's age fills in for measurements that omit it
            measurements = replace(measurements, age_years=self._age_years, age_months=self._age_months)
        elif not self._age_known and measured_age:
            # First age seen becomes the patient's age
            self._age_known = True
            self._age_years = years or 0
            self._age_months = months or 0
        return self.replace_weight(resolve_weight(measurements))

    def replace_weight(self, estimate: WeightEstimate) -> WeightEstimate:
        if not isinstance(estimate, WeightEstimate):
            raise InvalidInputError(f"Expected a WeightEstimate, got {type(estimate).__name__}")
        previous = self.context.resolved_weight if self.context is not None else None

        # Single reference swap
        self.context = PatientContext(
            age_years=self._age_years,
            age_months=self._age_months,
            resolved_weight=estimate,
            glucose_unit=self._glucose_unit,
        )
        self.weight_history.append(estimate)
        if self._age_known:
            self.weight_validation = SafetySupervisor.check_weight_for_age(
                estimate, self._age_years, self._age_months)

        if previous is not None:
            logger.info("Weight replaced: %s kg (%s) -> %s kg (%s)", previous.weight_kg,
                        previous.method.value, estimate.weight_kg, estimate.method.value)
        return estimate

    # --- assessment ---

    def answer(self, question_id: str, raw) -> Optional[CriticalAction]:
        """
        Feeds one answer through the evaluator. Returns the fired action
        (or None) and records it; never waits on any intervention.
        """
        action = TriggerEvaluator.evaluate(parse_answer(question_id, raw), self.context)
        if action is not None:
            self.fired.append(FiredAction(action=action, question_id=question_id, fired_at=self.clock.now()))
        return action

    def acknowledge(self, action: CriticalAction) -> Optional[ActiveIntervention]:
        """Starts tracking the intervention a fired action calls for."""
        if action.intervention_template_id is None:
            logger.info("Action %s is advisory: nothing to track", action.id)
            return None
        return self.tracker.start(action.intervention_template_id, weight_kg=self.weight_kg, action=action)

    def start_intervention(self, template_id: str) -> ActiveIntervention:
        return self.tracker.start(template_id, weight_kg=self.weight_kg)

    def escalate(self, intervention_id: str, reason: str = "Manual escalation") -> Optional[ActiveIntervention]:
        """Escalates with the successor sized for the current weight."""
        return self.tracker.escalate(intervention_id, reason, weight_kg=self.weight_kg)

    def reassess(self, intervention_id: str, outcome) -> ActiveIntervention:
        return self.tracker.reassess(intervention_id, outcome, weight_kg=self.weight_kg)

    def dose(self, drug_id: str) -> DoseResult:
        return calculate_dose_for_context(self.context, drug_id)

    # --- handover ---

    def snapshot(self) -> HandoverSnapshot:
        return HandoverSnapshot(
            taken_at=self.clock.now(),
            patient=copy.deepcopy(self.context),
            fired_actions=tuple(copy.deepcopy(self.fired)),
            interventions=self.tracker.records(),
            counts=self.tracker.counts(),
            weight_history=tuple(self.weight_history),
        )
