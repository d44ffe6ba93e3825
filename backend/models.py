"""
ResusGPS: Clinical Decision Core Data Dictionary
================================================
Defines the state space shared by the weight engine, the dose engine,
the trigger evaluator and the intervention tracker.

NO LOGIC is implemented here beyond input validation in __post_init__.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union

from constants import LengthZone, DoseUnit, VERSION


class InvalidInputError(ValueError):
    """Raised when a caller breaks a contract (non-positive weight, malformed answer)."""
    pass


class NotFoundError(KeyError):
    """Raised when an intervention id is unknown to the tracker."""
    pass


class InvalidStateError(ValueError):
    """Raised when a transition is attempted without its precondition state."""
    pass


def is_positive_number(value) -> bool:
    """True for finite numbers > 0. Bools are rejected (True is not 1 kg)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


# --- 1. ENUMS ---

class WeightMethod(Enum):
    ACTUAL = "actual"
    LENGTH_TABLE = "length-table"
    AGE_FORMULA_PRIMARY = "age-formula-primary"
    AGE_FORMULA_SECONDARY = "age-formula-secondary"
    MUAC = "muac"
    PARENT_ESTIMATE = "parent-estimate"
    DEFAULT = "default"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WeightValidationStatus(Enum):
    VALID = "valid"
    TOO_LOW = "too_low"
    TOO_HIGH = "too_high"


class GlucoseUnit(Enum):
    MMOL_L = "mmol/L"
    MG_DL = "mg/dL"


class Severity(Enum):
    """Also the intervention priority. Order matters: first = most urgent."""
    CRITICAL = "critical"
    URGENT = "urgent"
    ROUTINE = "routine"


class InterventionType(Enum):
    IV_ACCESS = "iv_access"
    IO_ACCESS = "io_access"
    FLUID_BOLUS = "fluid_bolus"
    MEDICATION = "medication"
    AIRWAY = "airway"
    BREATHING = "breathing"
    CPR = "cpr"
    NEBULIZER = "nebulizer"
    LAB_COLLECTION = "lab_collection"


class InterventionStatus(Enum):
    PENDING = "pending"                        # Not started
    IN_PROGRESS = "in_progress"                # Timer running
    NEEDS_REASSESSMENT = "needs_reassessment"  # Derived: timer expired
    COMPLETED = "completed"
    ESCALATED = "escalated"
    FAILED = "failed"                          # Cancelled / could not complete


TERMINAL_STATUSES = frozenset({
    InterventionStatus.COMPLETED,
    InterventionStatus.ESCALATED,
    InterventionStatus.FAILED,
})


class ReassessmentOutcome(Enum):
    ONGOING = "ongoing"      # Start another cycle
    RESOLVED = "resolved"
    ESCALATE = "escalate"


# --- 2. WEIGHT RESOLUTION ---

@dataclass(frozen=True)
class WeightMeasurements:
    """Whatever the bedside team managed to measure. Every field is optional."""
    actual_weight_kg: Optional[float] = None
    length_cm: Optional[float] = None
    age_years: Optional[float] = None
    age_months: Optional[float] = None
    muac_cm: Optional[float] = None
    parent_estimate_kg: Optional[float] = None


@dataclass(frozen=True)
class WeightEstimate:
    """Immutable. A better estimate supersedes this one, it never edits it."""
    weight_kg: float
    method: WeightMethod
    confidence: Confidence
    source: str
    zone: Optional[LengthZone] = None  # Set for length-table estimates

    def __post_init__(self):
        if not is_positive_number(self.weight_kg):
            raise InvalidInputError(f"Weight must be a positive number, got {self.weight_kg!r}")


@dataclass(frozen=True)
class WeightValidation:
    """Advisory only. Never blocks dosing."""
    status: WeightValidationStatus
    min_expected_kg: float
    max_expected_kg: float
    message: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == WeightValidationStatus.VALID


# --- 3. PATIENT CONTEXT ---

@dataclass(frozen=True)
class PatientContext:
    """
    The explicit session context threaded through every calculation.
    Replaced wholesale (never edited) when a better weight arrives.
    """
    age_years: float
    age_months: float
    resolved_weight: WeightEstimate
    glucose_unit: GlucoseUnit = GlucoseUnit.MMOL_L

    @property
    def total_age_years(self) -> float:
        return (self.age_years or 0) + (self.age_months or 0) / 12.0

    @property
    def weight_kg(self) -> float:
        return self.resolved_weight.weight_kg


# --- 4. DOSES ---

@dataclass(frozen=True)
class DoseResult:
    drug_id: str
    drug_name: str
    indication: str
    weight_kg: float
    amount: float            # Rounded per unit rule
    unit: DoseUnit
    route: str
    capped: bool = False     # Hit max (or min) dose
    draw_up_ml: Optional[float] = None
    concentration: str = ""
    max_dose: Optional[float] = None

    @property
    def display(self) -> str:
        if self.unit == DoseUnit.MG:
            return f"{self.amount:.2f} mg"
        return f"{int(self.amount)} {self.unit.value}"


# --- 5. ASSESSMENT ANSWERS (closed tagged union, one variant per question) ---

def _require_choice(question_id: str, value, choices: Tuple[str, ...]) -> None:
    if value not in choices:
        raise InvalidInputError(
            f"Answer to '{question_id}' must be one of {', '.join(choices)}; got {value!r}"
        )


@dataclass(frozen=True)
class BreathingAnswer:
    question_id: ClassVar[str] = "breathing"
    choices: ClassVar[Tuple[str, ...]] = ("yes", "no")
    breathing: str

    def __post_init__(self):
        _require_choice(self.question_id, self.breathing, self.choices)


@dataclass(frozen=True)
class PulseAnswer:
    question_id: ClassVar[str] = "pulse"
    choices: ClassVar[Tuple[str, ...]] = ("yes", "weak", "no")
    pulse: str

    def __post_init__(self):
        _require_choice(self.question_id, self.pulse, self.choices)


@dataclass(frozen=True)
class GlucoseAnswer:
    question_id: ClassVar[str] = "glucose"
    value: float
    unit: Optional[GlucoseUnit] = None  # None = use the patient's glucose unit

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
            raise InvalidInputError(f"Glucose must be numeric, got {type(self.value).__name__}")
        if not math.isfinite(self.value) or self.value < 0:
            raise InvalidInputError(f"Invalid glucose: {self.value}")
        if self.unit is not None and not isinstance(self.unit, GlucoseUnit):
            raise InvalidInputError(f"Invalid glucose unit: {self.unit!r}")


@dataclass(frozen=True)
class CapillaryRefillAnswer:
    question_id: ClassVar[str] = "capillary_refill"
    choices: ClassVar[Tuple[str, ...]] = ("normal", "prolonged", "flash")
    refill: str

    def __post_init__(self):
        _require_choice(self.question_id, self.refill, self.choices)


@dataclass(frozen=True)
class BloodPressureAnswer:
    question_id: ClassVar[str] = "blood_pressure"
    systolic: int  # mmHg

    def __post_init__(self):
        if isinstance(self.systolic, bool) or not isinstance(self.systolic, (int, float)):
            raise InvalidInputError(f"Systolic BP must be numeric, got {type(self.systolic).__name__}")
        if not (0 <= self.systolic <= 300):
            raise InvalidInputError(f"Invalid systolic BP: {self.systolic}")


@dataclass(frozen=True)
class ResponsivenessAnswer:
    question_id: ClassVar[str] = "responsiveness"
    choices: ClassVar[Tuple[str, ...]] = ("alert", "voice", "pain", "unresponsive")
    avpu: str

    def __post_init__(self):
        _require_choice(self.question_id, self.avpu, self.choices)


Answer = Union[
    BreathingAnswer,
    PulseAnswer,
    GlucoseAnswer,
    CapillaryRefillAnswer,
    BloodPressureAnswer,
    ResponsivenessAnswer,
]

ANSWER_TYPES = (
    BreathingAnswer,
    PulseAnswer,
    GlucoseAnswer,
    CapillaryRefillAnswer,
    BloodPressureAnswer,
    ResponsivenessAnswer,
)


# --- 6. TRIGGERS ---

@dataclass(frozen=True)
class CriticalAction:
    """Evidence that a condition fired. Not tracked itself."""
    id: str
    severity: Severity
    title: str
    instruction: str
    rationale: str
    reassess_after_seconds: int
    dose: Optional[str] = None
    route: Optional[str] = None
    timer_seconds: Optional[int] = None
    intervention_template_id: Optional[str] = None
    reassess_prompt: str = ""


@dataclass(frozen=True)
class FiredAction:
    action: CriticalAction
    question_id: str
    fired_at: datetime


# --- 7. INTERVENTIONS ---

@dataclass
class ActiveIntervention:
    """
    The mutable tracked entity. Remaining time is NOT stored here:
    it is always derived from start_time and the clock.
    """
    id: str
    template_id: str
    type: InterventionType
    title: str
    instruction: str
    priority: Severity
    status: InterventionStatus
    start_time: datetime
    created_at: datetime
    sequence: int                            # Creation order, for stable sorting
    timer_duration_seconds: Optional[int] = None
    escalation_action: Optional[str] = None
    dose: Optional[str] = None
    route: Optional[str] = None
    reassess_prompt: str = ""
    cycle: int = 1
    weight_kg: Optional[float] = None         # Weight used for any dose, carried to successors

    # Repeatable fluid boluses
    bolus_number: Optional[int] = None
    volume_ml: Optional[int] = None           # This bolus
    volume_given: Optional[int] = None        # Cumulative incl. this bolus
    max_volume: Optional[int] = None          # Advisory ceiling

    # Lineage
    source_action_id: Optional[str] = None
    escalated_from: Optional[str] = None
    escalated_to: Optional[str] = None
    escalation_reason: Optional[str] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class InterventionView:
    """Derived, presentational state at one instant. Recomputed every tick."""
    intervention: ActiveIntervention
    status: InterventionStatus
    remaining_seconds: Optional[int]
    elapsed_seconds: int
    expired: bool
    overdue_seconds: int = 0
    exceeds_volume_ceiling: bool = False

    @property
    def id(self) -> str:
        return self.intervention.id


@dataclass(frozen=True)
class InterventionCounts:
    active: int = 0
    completed: int = 0     # completed + escalated (closed and handed off)
    failed: int = 0
    escalated: int = 0     # Sub-count of completed

    @property
    def total(self) -> int:
        return self.active + self.completed + self.failed


# --- 8. HANDOVER ---

@dataclass(frozen=True)
class HandoverSnapshot:
    """Read-only copy for the reporting collaborator. No formatting done here."""
    taken_at: datetime
    patient: PatientContext
    fired_actions: Tuple[FiredAction, ...]
    interventions: Tuple[ActiveIntervention, ...]
    counts: InterventionCounts
    model_version: str = VERSION
    weight_history: Tuple[WeightEstimate, ...] = field(default_factory=tuple)
