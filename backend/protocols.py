# protocols.py
"""
Critical Trigger Evaluator.

One pure predicate per assessment question. Each call looks at a single
answer plus the patient context and returns zero or one CriticalAction.
No answer's evaluation ever depends on another answer, so apnea,
hypoglycemia and shock can all fire from the same session.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from constants import AGE_BANDS, GLUCOSE_CONSTANTS, TIMER_CONSTANTS
from dosing import calculate_dose_for_context
from models import (
    ANSWER_TYPES,
    Answer,
    BloodPressureAnswer,
    BreathingAnswer,
    CapillaryRefillAnswer,
    CriticalAction,
    GlucoseAnswer,
    GlucoseUnit,
    InvalidInputError,
    PatientContext,
    PulseAnswer,
    ResponsivenessAnswer,
    Severity,
)

logger = logging.getLogger("resusgps-triggers")


# --- 1. ANSWER PARSING ---

def _parse_glucose(raw) -> GlucoseAnswer:
    # Accepts a bare number or {"value": 2.0, "unit": "mg/dL"}
    if isinstance(raw, dict):
        if "value" not in raw:
            raise InvalidInputError("Glucose answer needs a 'value'")
        unit = raw.get("unit")
        if unit is not None and not isinstance(unit, GlucoseUnit):
            try:
                unit = GlucoseUnit(unit)
            except ValueError:
                raise InvalidInputError(f"Invalid glucose unit: {unit!r}")
        return GlucoseAnswer(value=raw["value"], unit=unit)
    return GlucoseAnswer(value=raw)


_PARSERS: Dict[str, Callable] = {
    BreathingAnswer.question_id: lambda raw: BreathingAnswer(breathing=raw),
    PulseAnswer.question_id: lambda raw: PulseAnswer(pulse=raw),
    GlucoseAnswer.question_id: _parse_glucose,
    CapillaryRefillAnswer.question_id: lambda raw: CapillaryRefillAnswer(refill=raw),
    BloodPressureAnswer.question_id: lambda raw: BloodPressureAnswer(systolic=raw),
    ResponsivenessAnswer.question_id: lambda raw: ResponsivenessAnswer(avpu=raw),
}

QUESTION_IDS = tuple(_PARSERS)


def parse_answer(question_id: str, raw) -> Answer:
    """
    Maps a (questionId, answer) pair onto its typed variant.
    Raises InvalidInputError for unknown questions or malformed payloads.
    """
    parser = _PARSERS.get(question_id)
    if parser is None:
        raise InvalidInputError(f"Unknown question id: {question_id!r}")
    if isinstance(raw, ANSWER_TYPES):
        if raw.question_id != question_id:
            raise InvalidInputError(f"Answer for '{raw.question_id}' given to question '{question_id}'")
        return raw
    return parser(raw)


# --- 2. HELPERS ---

def glucose_mmol(answer: GlucoseAnswer, context: PatientContext) -> float:
    unit = answer.unit or context.glucose_unit
    if unit == GlucoseUnit.MG_DL:
        return answer.value / GLUCOSE_CONSTANTS.MG_DL_PER_MMOL_L
    return answer.value


def hypotension_threshold(age_years: float) -> float:
    """Systolic floor: 60 for infants, 70 + 2 x age capped at 90 otherwise."""
    if age_years < AGE_BANDS.INFANT:
        return 60
    return min(70 + 2 * age_years, 90)


def _age_band(age_years: float) -> str:
    if age_years < AGE_BANDS.INFANT:
        return "infant"
    if age_years < AGE_BANDS.OLDER_CHILD:
        return "child"
    return "older_child"


# --- 3. TRIGGERS ---

class TriggerEvaluator:
    """
    Fixed protocol set. Every method takes (answer, context) and returns
    Optional[CriticalAction]. Doses are read from the context's weight
    at call time.
    """

    VENTILATION_RATES = {"infant": "30", "child": "20", "older_child": "12-15"}
    COMPRESSION_TECHNIQUE = {
        "infant": "Two fingers or two thumbs encircling",
        "child": "One hand, heel of hand",
        "older_child": "Two hands, interlocked",
    }

    @staticmethod
    def breathing(answer: BreathingAnswer, context: PatientContext) -> Optional[CriticalAction]:
        if answer.breathing != "no":
            return None
        rate = TriggerEvaluator.VENTILATION_RATES[_age_band(context.total_age_years)]
        return CriticalAction(
            id="bvm-ventilation",
            severity=Severity.CRITICAL,
            title="START BAG-VALVE-MASK VENTILATION NOW",
            instruction=(f"Open the airway (head tilt-chin lift) and ventilate with bag-valve-mask "
                         f"at {rate} breaths/minute. Watch for chest rise."),
            rationale="Apnea leads to hypoxic cardiac arrest within minutes. Oxygenation comes first.",
            dose=f"{rate} breaths/minute",
            route="Bag-valve-mask",
            reassess_after_seconds=TIMER_CONSTANTS.BVM_REASSESS_S,
            timer_seconds=TIMER_CONSTANTS.BVM_REASSESS_S,
            intervention_template_id="bvm_ventilation",
            reassess_prompt="Is chest rising? Is SpO2 improving?",
        )

    @staticmethod
    def pulse(answer: PulseAnswer, context: PatientContext) -> Optional[CriticalAction]:
        if answer.pulse == "no":
            technique = TriggerEvaluator.COMPRESSION_TECHNIQUE[_age_band(context.total_age_years)]
            return CriticalAction(
                id="start-cpr",
                severity=Severity.CRITICAL,
                title="START CPR IMMEDIATELY",
                instruction=(f"Begin chest compressions: {technique}. "
                             "Compress 1/3 chest depth at 100-120/min."),
                rationale="Pulseless child requires immediate CPR. Every minute without CPR lowers survival.",
                dose="30:2 compression:ventilation ratio (single rescuer) or 15:2 (two rescuers)",
                route="Chest compressions",
                reassess_after_seconds=TIMER_CONSTANTS.CPR_CYCLE_S,
                timer_seconds=TIMER_CONSTANTS.CPR_CYCLE_S,
                intervention_template_id="cpr",
                reassess_prompt="Rhythm check and pulse check",
            )
        if answer.pulse == "weak":
            return CriticalAction(
                id="weak-pulse-shock",
                severity=Severity.URGENT,
                title="WEAK PULSE - EARLY SHOCK SUSPECTED",
                instruction=("Weak pulse indicates poor perfusion. Establish IV/IO access and "
                             "continue assessment to identify the shock type."),
                rationale="A weak pulse is an early sign of compensated shock.",
                reassess_after_seconds=TIMER_CONSTANTS.WEAK_PULSE_REASSESS_S,
                timer_seconds=TIMER_CONSTANTS.WEAK_PULSE_REASSESS_S,
                intervention_template_id="iv_access",
                reassess_prompt="Reassess after circulation assessment",
            )
        return None

    @staticmethod
    def glucose(answer: GlucoseAnswer, context: PatientContext) -> Optional[CriticalAction]:
        mmol = glucose_mmol(answer, context)
        if mmol < GLUCOSE_CONSTANTS.HYPOGLYCEMIA_MMOL_L:
            dose = calculate_dose_for_context(context, "dextrose_10")
            volume = int(dose.amount)
            return CriticalAction(
                id="hypoglycemia",
                severity=Severity.CRITICAL,
                title="TREAT HYPOGLYCEMIA NOW",
                instruction=f"Give {volume} mL of 10% Dextrose IV/IO (2 mL/kg)",
                rationale=f"Glucose {mmol:.1f} mmol/L. Hypoglycemia causes brain injury and must be corrected first.",
                dose=f"{volume} mL D10% IV/IO",
                route="IV/IO",
                reassess_after_seconds=TIMER_CONSTANTS.DEXTROSE_RECHECK_S,
                timer_seconds=TIMER_CONSTANTS.DEXTROSE_RECHECK_S,
                intervention_template_id="dextrose",
                reassess_prompt="Recheck glucose in 15 minutes",
            )
        if mmol > GLUCOSE_CONSTANTS.HYPERGLYCEMIA_MMOL_L:
            return CriticalAction(
                id="hyperglycemia",
                severity=Severity.URGENT,
                title="HYPERGLYCEMIA - ASSESS FOR DKA",
                instruction="Check ketones, blood gas and electrolytes. If DKA: 10 mL/kg NS, insulin only after 1 hour.",
                rationale=f"Glucose {mmol:.1f} mmol/L may indicate diabetic ketoacidosis.",
                reassess_after_seconds=TIMER_CONSTANTS.DEXTROSE_RECHECK_S,
            )
        return None

    @staticmethod
    def _fluid_bolus_action(context: PatientContext, action_id: str, title: str,
                            rationale: str) -> CriticalAction:
        dose = calculate_dose_for_context(context, "fluid_bolus")
        volume = int(dose.amount)
        return CriticalAction(
            id=action_id,
            severity=Severity.CRITICAL,
            title=title,
            instruction=f"Give {volume} mL Normal Saline (20 mL/kg) over 5-10 minutes",
            rationale=rationale,
            dose=f"{volume} mL NS",
            route="IV/IO",
            reassess_after_seconds=TIMER_CONSTANTS.FLUID_BOLUS_REASSESS_S,
            timer_seconds=TIMER_CONSTANTS.FLUID_BOLUS_REASSESS_S,
            intervention_template_id="fluid_bolus",
            reassess_prompt="Reassess perfusion after bolus - check CRT, HR, BP",
        )

    @staticmethod
    def capillary_refill(answer: CapillaryRefillAnswer, context: PatientContext) -> Optional[CriticalAction]:
        # Flash refill = warm (distributive) shock, prolonged = cold shock
        if answer.refill not in ("prolonged", "flash"):
            return None
        return TriggerEvaluator._fluid_bolus_action(
            context, "fluid-bolus", "GIVE FLUID BOLUS",
            f"Capillary refill {answer.refill}: inadequate perfusion (shock).",
        )

    @staticmethod
    def blood_pressure(answer: BloodPressureAnswer, context: PatientContext) -> Optional[CriticalAction]:
        threshold = hypotension_threshold(context.total_age_years)
        # 0 = unrecordable, not a reading
        if not (0 < answer.systolic < threshold):
            return None
        return TriggerEvaluator._fluid_bolus_action(
            context, "hypotension", "HYPOTENSION - DECOMPENSATED SHOCK",
            f"BP {answer.systolic} is below threshold of {threshold:g} for age. Hypotension is a late sign in children.",
        )

    @staticmethod
    def responsiveness(answer: ResponsivenessAnswer, context: PatientContext) -> Optional[CriticalAction]:
        if answer.avpu == "unresponsive":
            return CriticalAction(
                id="protect-airway",
                severity=Severity.CRITICAL,
                title="PROTECT AIRWAY - UNRESPONSIVE CHILD",
                instruction=("Position in recovery position if breathing. Prepare for intubation "
                             "if not protecting airway. Call for senior help."),
                rationale="An unresponsive child cannot protect the airway: aspiration and respiratory failure risk.",
                route="Airway positioning",
                reassess_after_seconds=TIMER_CONSTANTS.AIRWAY_REASSESS_S,
                timer_seconds=TIMER_CONSTANTS.AIRWAY_REASSESS_S,
                intervention_template_id="airway_positioning",
                reassess_prompt="Is the airway maintained? Any gurgling or snoring?",
            )
        if answer.avpu == "pain":
            return CriticalAction(
                id="altered-consciousness",
                severity=Severity.URGENT,
                title="ALTERED CONSCIOUSNESS - ASSESS CAUSE",
                instruction=("Check blood glucose immediately. Consider hypoxia, seizure, head injury, "
                             "poisoning, sepsis. Protect airway."),
                rationale="Responding only to pain is significantly altered consciousness.",
                reassess_after_seconds=TIMER_CONSTANTS.WEAK_PULSE_REASSESS_S,
            )
        return None

    _DISPATCH = {
        BreathingAnswer: "breathing",
        PulseAnswer: "pulse",
        GlucoseAnswer: "glucose",
        CapillaryRefillAnswer: "capillary_refill",
        BloodPressureAnswer: "blood_pressure",
        ResponsivenessAnswer: "responsiveness",
    }

    @staticmethod
    def evaluate(answer: Answer, context: PatientContext) -> Optional[CriticalAction]:
        name = TriggerEvaluator._DISPATCH.get(type(answer))
        if name is None:
            raise InvalidInputError(f"Not an assessment answer: {answer!r}")
        action = getattr(TriggerEvaluator, name)(answer, context)
        if action is not None:
            if action.severity == Severity.CRITICAL:
                logger.warning("CRITICAL TRIGGER %s: %s (%s kg)", action.id, action.title, context.weight_kg)
            else:
                logger.info("Trigger %s (%s): %s", action.id, action.severity.value, action.title)
        return action

    @staticmethod
    def evaluate_all(answers: Iterable[Tuple[str, object]],
                     context: PatientContext) -> List[Tuple[str, CriticalAction]]:
        """
        Evaluates every (questionId, answer) pair independently.
        Returns (questionId, action) for each pair that fired, in input order.
        A malformed pair is logged and skipped; the rest still run.
        """
        fired = []
        for question_id, raw in answers:
            try:
                answer = parse_answer(question_id, raw)
            except InvalidInputError as e:
                logger.warning("Skipping answer %s=%r: %s", question_id, raw, e)
                continue
            action = TriggerEvaluator.evaluate(answer, context)
            if action is not None:
                fired.append((question_id, action))
        return fired


evaluate = TriggerEvaluator.evaluate
evaluate_all = TriggerEvaluator.evaluate_all
