"""
ResusGPS: Active Intervention State Machine
===========================================
Tracks many independently timed interventions at once.

    pending --begin--> in_progress
    in_progress --(timer runs out)--> needs_reassessment   (derived, never stored)
    needs_reassessment --reassess ongoing--> in_progress (next cycle)
    needs_reassessment --reassess resolved--> completed
    needs_reassessment --reassess escalate--> escalated
    in_progress --complete--> completed
    in_progress --escalate--> escalated (+ successor intervention)
    any non-terminal --cancel--> failed

Time is injected through a clock object. Remaining time is always computed
from start_time, so a missed tick never corrupts anything.
"""

import copy
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from constants import TIMER_CONSTANTS
from dosing import calculate_dose
from models import (
    ActiveIntervention,
    CriticalAction,
    InterventionCounts,
    InterventionStatus,
    InterventionType,
    InterventionView,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    ReassessmentOutcome,
    Severity,
    is_positive_number,
)
from safety import SafetySupervisor

logger = logging.getLogger("resusgps-interventions")

PRIORITY_ORDER = {Severity.CRITICAL: 0, Severity.URGENT: 1, Severity.ROUTINE: 2}


# --- 1. CLOCKS ---

class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FakeClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


# --- 2. TEMPLATES ---

@dataclass(frozen=True)
class InterventionTemplate:
    id: str
    type: InterventionType
    title: str
    instruction: str              # May contain {dose}
    priority: Severity
    timer_seconds: Optional[int] = None
    route: Optional[str] = None
    reassess_prompt: str = ""
    escalates_to: Optional[str] = None
    escalation_action: Optional[str] = None
    repeatable: bool = False
    drug_id: Optional[str] = None     # Dose from the drug library when the weight is known
    per_kg_label: str = ""            # Shown instead of a dose when the weight is unknown
    # Weight-banded variants (IO site, nebulizer dose)
    band_kg: Optional[float] = None
    small_instruction: Optional[str] = None
    small_dose: Optional[str] = None
    fixed_dose: Optional[str] = None


INTERVENTION_TEMPLATES: Dict[str, InterventionTemplate] = {
    "bvm_ventilation": InterventionTemplate(
        id="bvm_ventilation", type=InterventionType.BREATHING,
        title="BAG-VALVE-MASK VENTILATION",
        instruction=("Position airway (head tilt-chin lift or jaw thrust). Ensure good seal. "
                     "Squeeze bag to see chest rise."),
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.BVM_REASSESS_S,
        route="Bag-valve-mask", reassess_prompt="Is chest rising? Is SpO2 improving?",
    ),
    "cpr": InterventionTemplate(
        id="cpr", type=InterventionType.CPR,
        title="CPR",
        instruction="Hard and fast compressions. 100-120/min. Full chest recoil. Minimize interruptions.",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.CPR_CYCLE_S,
        reassess_prompt="Rhythm check and pulse check",
    ),
    "dextrose": InterventionTemplate(
        id="dextrose", type=InterventionType.MEDICATION,
        title="DEXTROSE 10%",
        instruction="Give {dose} of 10% Dextrose IV/IO slowly",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.DEXTROSE_RECHECK_S,
        route="IV/IO", reassess_prompt="Recheck glucose in 15 minutes",
        drug_id="dextrose_10", per_kg_label="2 mL/kg",
    ),
    "fluid_bolus": InterventionTemplate(
        id="fluid_bolus", type=InterventionType.FLUID_BOLUS,
        title="FLUID BOLUS",
        instruction="Give {dose} Normal Saline or Ringer's Lactate over 5-10 minutes",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.FLUID_BOLUS_REASSESS_S,
        route="IV/IO push", reassess_prompt="Reassess perfusion after bolus",
        escalates_to="inotrope_infusion", escalation_action="Start inotropes (fluid-refractory shock)",
        repeatable=True, drug_id="fluid_bolus", per_kg_label="20 mL/kg",
    ),
    "iv_access": InterventionTemplate(
        id="iv_access", type=InterventionType.IV_ACCESS,
        title="GET IV ACCESS NOW",
        instruction="Establish peripheral IV access. Use largest gauge possible.",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.IV_ACCESS_S,
        escalates_to="io_access", escalation_action="Switch to IO",
    ),
    "io_access": InterventionTemplate(
        id="io_access", type=InterventionType.IO_ACCESS,
        title="INTRAOSSEOUS ACCESS",
        instruction="Proximal tibia or distal femur. Use appropriate needle size.",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.IO_ACCESS_S,
        band_kg=10.0,
        small_instruction="Proximal tibia, 1-2cm below tibial tuberosity, medial flat surface",
    ),
    "inotrope_infusion": InterventionTemplate(
        id="inotrope_infusion", type=InterventionType.MEDICATION,
        title="START INOTROPE INFUSION",
        instruction=("Fluid-refractory shock: start epinephrine 0.05-0.3 mcg/kg/min "
                     "(peripheral or IO acceptable). Call for senior help."),
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.INOTROPE_REASSESS_S,
        route="IV/IO infusion", reassess_prompt="Reassess BP, CRT and heart rate; titrate",
    ),
    "airway_positioning": InterventionTemplate(
        id="airway_positioning", type=InterventionType.AIRWAY,
        title="PROTECT AIRWAY",
        instruction=("Recovery position if breathing. Head tilt-chin lift or jaw thrust. "
                     "Suction secretions. Prepare for intubation."),
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.AIRWAY_REASSESS_S,
        reassess_prompt="Is the airway maintained? Any gurgling or snoring?",
    ),
    "epinephrine": InterventionTemplate(
        id="epinephrine", type=InterventionType.MEDICATION,
        title="EPINEPHRINE IV",
        instruction="Give {dose} of 1:10,000 epinephrine IV/IO during CPR",
        priority=Severity.CRITICAL, timer_seconds=TIMER_CONSTANTS.EPINEPHRINE_REPEAT_S,
        route="IV/IO", reassess_prompt="Repeat every 3-5 minutes while in arrest",
        drug_id="epinephrine_arrest", per_kg_label="0.01 mg/kg",
    ),
    "salbutamol_nebulizer": InterventionTemplate(
        id="salbutamol_nebulizer", type=InterventionType.NEBULIZER,
        title="SALBUTAMOL NEBULIZER",
        instruction="5 mg via nebulizer with oxygen",
        priority=Severity.URGENT, timer_seconds=TIMER_CONSTANTS.NEBULIZER_REASSESS_S,
        route="Nebulizer", reassess_prompt="Reassess work of breathing and SpO2",
        band_kg=20.0, fixed_dose="5 mg",
        small_instruction="2.5 mg via nebulizer with oxygen", small_dose="2.5 mg",
    ),
    "lab_collection": InterventionTemplate(
        id="lab_collection", type=InterventionType.LAB_COLLECTION,
        title="COLLECT LAB SAMPLES",
        instruction="Collect: VBG, lactate, glucose, electrolytes, CBC.",
        priority=Severity.URGENT,
    ),
}


def get_template(template_id: str) -> InterventionTemplate:
    template = INTERVENTION_TEMPLATES.get(template_id)
    if template is None:
        raise InvalidInputError(f"Unknown intervention template: {template_id!r}")
    return template


def _describe(template: InterventionTemplate, weight_kg: Optional[float]) -> Tuple[str, Optional[str]]:
    """Instruction and dose text for a given weight (None = unknown)."""
    small = template.band_kg is not None and weight_kg is not None and weight_kg < template.band_kg
    if small:
        return template.small_instruction or template.instruction, template.small_dose or template.fixed_dose

    if template.drug_id:
        if weight_kg is not None:
            dose = calculate_dose(weight_kg, template.drug_id).display
        else:
            dose = template.per_kg_label
        return template.instruction.format(dose=dose), dose

    return template.instruction, template.fixed_dose


def _default_id_factory(template_id: str, sequence: int) -> str:
    return f"{template_id}-{sequence}"


# --- 3. THE TRACKER ---

class InterventionTracker:
    """
    Owns every intervention of one assessment. Each transition touches
    exactly one record (escalation additionally creates its successor).
    """

    def __init__(self, clock=None, id_factory: Callable[[str, int], str] = None):
        self.clock = clock or SystemClock()
        self._id_factory = id_factory or _default_id_factory
        self._sequence = itertools.count(1)
        self._records: Dict[str, ActiveIntervention] = {}
        self._announced = set()

    # --- creation ---

    def _create(self, template_id: str, status: InterventionStatus, weight_kg: Optional[float],
                action: Optional[CriticalAction], escalated_from: Optional[str] = None) -> ActiveIntervention:
        template = get_template(template_id)
        if weight_kg is not None and not is_positive_number(weight_kg):
            raise InvalidInputError(f"Invalid weight for intervention: {weight_kg!r}")

        now = self.clock.now()
        sequence = next(self._sequence)
        intervention_id = self._id_factory(template_id, sequence)
        if intervention_id in self._records:
            raise InvalidStateError(f"Duplicate intervention id: {intervention_id}")

        instruction, dose = _describe(template, weight_kg)
        priority = template.priority
        timer = template.timer_seconds
        route = template.route
        reassess_prompt = template.reassess_prompt
        if action is not None:
            # The fired action is more specific than the template
            instruction = action.instruction
            dose = action.dose or dose
            route = action.route or route
            priority = action.severity
            timer = action.timer_seconds or timer
            reassess_prompt = action.reassess_prompt or reassess_prompt

        record = ActiveIntervention(
            id=intervention_id,
            template_id=template_id,
            type=template.type,
            title=template.title,
            instruction=instruction,
            priority=priority,
            status=status,
            start_time=now,
            created_at=now,
            sequence=sequence,
            timer_duration_seconds=timer,
            escalation_action=template.escalation_action,
            dose=dose,
            route=route,
            reassess_prompt=reassess_prompt,
            weight_kg=weight_kg,
            source_action_id=action.id if action is not None else None,
            escalated_from=escalated_from,
        )

        if template.repeatable:
            self._number_bolus(record, template)

        self._records[record.id] = record
        logger.info("Intervention %s created (%s, %s)", record.id, record.status.value, record.priority.value)
        return record

    def _number_bolus(self, record: ActiveIntervention, template: InterventionTemplate) -> None:
        previous = [r for r in self._records.values() if r.template_id == template.id]
        record.bolus_number = len(previous) + 1
        record.title = f"{template.title} {record.bolus_number}"
        if record.weight_kg is None:
            return
        record.volume_ml = int(calculate_dose(record.weight_kg, template.drug_id).amount)
        delivered = sum(r.volume_ml or 0 for r in previous if r.status != InterventionStatus.FAILED)
        record.volume_given = delivered + record.volume_ml
        record.max_volume = SafetySupervisor.bolus_ceiling_ml(record.weight_kg)
        # Advisory only: creation past the ceiling is allowed
        SafetySupervisor.check_bolus_ceiling(record.volume_given, record.max_volume, record.id)

    def start(self, template_id: str, weight_kg: Optional[float] = None,
              action: Optional[CriticalAction] = None) -> ActiveIntervention:
        """Creates an intervention with its timer already running."""
        return self._create(template_id, InterventionStatus.IN_PROGRESS, weight_kg, action)

    def enqueue(self, template_id: str, weight_kg: Optional[float] = None,
                action: Optional[CriticalAction] = None) -> ActiveIntervention:
        """Creates a pending intervention. Its timer starts on begin()."""
        return self._create(template_id, InterventionStatus.PENDING, weight_kg, action)

    # --- lookups ---

    def get(self, intervention_id: str) -> ActiveIntervention:
        try:
            return self._records[intervention_id]
        except KeyError:
            raise NotFoundError(f"Unknown intervention: {intervention_id}")

    def _elapsed(self, record: ActiveIntervention, now: datetime) -> int:
        end = record.ended_at if record.ended_at is not None else now
        return int(max(0.0, (end - record.start_time).total_seconds()))

    def view(self, intervention_id: str, now: Optional[datetime] = None) -> InterventionView:
        return self._view(self.get(intervention_id), now or self.clock.now())

    def _view(self, record: ActiveIntervention, now: datetime) -> InterventionView:
        duration = record.timer_duration_seconds
        exceeds = (record.volume_given is not None and record.max_volume is not None
                   and record.volume_given > record.max_volume)

        if record.status == InterventionStatus.PENDING:
            return InterventionView(
                intervention=copy.copy(record), status=record.status,
                remaining_seconds=duration, elapsed_seconds=0, expired=False,
                exceeds_volume_ceiling=exceeds,
            )

        elapsed = self._elapsed(record, now)
        remaining = max(0, duration - elapsed) if duration is not None else None
        expired = (record.status == InterventionStatus.IN_PROGRESS
                   and duration is not None and elapsed >= duration)

        return InterventionView(
            intervention=copy.copy(record),
            status=InterventionStatus.NEEDS_REASSESSMENT if expired else record.status,
            remaining_seconds=remaining,
            elapsed_seconds=elapsed,
            expired=expired,
            overdue_seconds=elapsed - duration if expired else 0,
            exceeds_volume_ceiling=exceeds,
        )

    def _needs_reassessment(self, record: ActiveIntervention) -> bool:
        return self._view(record, self.clock.now()).expired

    @staticmethod
    def _order(view: InterventionView):
        return PRIORITY_ORDER[view.intervention.priority], view.intervention.sequence

    def list_active(self, now: Optional[datetime] = None) -> List[InterventionView]:
        now = now or self.clock.now()
        views = [self._view(r, now) for r in self._records.values() if not r.is_terminal]
        return sorted(views, key=self._order)

    def list_closed(self, now: Optional[datetime] = None) -> List[InterventionView]:
        now = now or self.clock.now()
        views = [self._view(r, now) for r in self._records.values() if r.is_terminal]
        return sorted(views, key=self._order)

    def counts(self) -> InterventionCounts:
        statuses = [r.status for r in self._records.values()]
        escalated = statuses.count(InterventionStatus.ESCALATED)
        return InterventionCounts(
            active=sum(1 for s in statuses if s in (InterventionStatus.PENDING, InterventionStatus.IN_PROGRESS)),
            completed=statuses.count(InterventionStatus.COMPLETED) + escalated,
            failed=statuses.count(InterventionStatus.FAILED),
            escalated=escalated,
        )

    def records(self) -> Tuple[ActiveIntervention, ...]:
        """Deep copies in creation order. Editing them changes nothing here."""
        ordered = sorted(self._records.values(), key=lambda r: r.sequence)
        return tuple(copy.deepcopy(r) for r in ordered)

    def tick(self, now: Optional[datetime] = None) -> List[InterventionView]:
        """
        The 1 Hz heartbeat. Recomputes the derived view of every active
        intervention and logs each expiry once per cycle. Records are never
        touched. Safe to call any number of times.
        """
        views = self.list_active(now)
        for v in views:
            key = (v.id, v.intervention.cycle)
            if v.expired and key not in self._announced:
                self._announced.add(key)
                logger.info("Intervention %s needs reassessment: %s", v.id, v.intervention.reassess_prompt or v.intervention.title)
        # Forget closed records and finished cycles
        self._announced &= {(v.id, v.intervention.cycle) for v in views}
        return views

    # --- transitions ---

    def _close(self, record: ActiveIntervention, status: InterventionStatus) -> None:
        record.status = status
        record.ended_at = self.clock.now()
        logger.info("Intervention %s -> %s", record.id, status.value)

    def begin(self, intervention_id: str) -> ActiveIntervention:
        record = self.get(intervention_id)
        if record.status != InterventionStatus.PENDING:
            raise InvalidStateError(f"Cannot begin {intervention_id}: status is {record.status.value}")
        record.status = InterventionStatus.IN_PROGRESS
        record.start_time = self.clock.now()
        logger.info("Intervention %s -> in_progress", record.id)
        return record

    def complete(self, intervention_id: str) -> ActiveIntervention:
        record = self.get(intervention_id)
        if record.status == InterventionStatus.COMPLETED:
            return record
        if record.status != InterventionStatus.IN_PROGRESS:
            raise InvalidStateError(f"Cannot complete {intervention_id}: status is {record.status.value}")
        self._close(record, InterventionStatus.COMPLETED)
        return record

    def escalate(self, intervention_id: str, reason: str = "Manual escalation",
                 weight_kg: Optional[float] = None) -> Optional[ActiveIntervention]:
        """
        Closes the record as escalated and starts the template's successor
        (IV -> IO, fluid bolus -> inotropes). Returns the successor, or None
        when the template has nowhere to escalate to.

        The successor is sized for weight_kg, falling back to the weight
        the escalated record was started with.
        """
        record = self.get(intervention_id)
        if record.status == InterventionStatus.ESCALATED:
            return self._records.get(record.escalated_to) if record.escalated_to else None
        if record.status != InterventionStatus.IN_PROGRESS:
            raise InvalidStateError(f"Cannot escalate {intervention_id}: status is {record.status.value}")
        if weight_kg is not None and not is_positive_number(weight_kg):
            raise InvalidInputError(f"Invalid weight for intervention: {weight_kg!r}")

        record.escalation_reason = reason
        self._close(record, InterventionStatus.ESCALATED)

        successor_id = get_template(record.template_id).escalates_to
        if successor_id is None:
            return None
        weight = weight_kg if weight_kg is not None else record.weight_kg
        successor = self._create(successor_id, InterventionStatus.IN_PROGRESS, weight,
                                 action=None, escalated_from=record.id)
        record.escalated_to = successor.id
        logger.info("Escalated %s -> %s (%s)", record.id, successor.id, reason)
        return successor

    def _resize(self, record: ActiveIntervention, weight_kg: float) -> None:
        if not is_positive_number(weight_kg):
            raise InvalidInputError(f"Invalid weight for intervention: {weight_kg!r}")
        record.instruction, record.dose = _describe(get_template(record.template_id), weight_kg)
        logger.info("Intervention %s re-sized: %s kg -> %s kg", record.id, record.weight_kg, weight_kg)
        record.weight_kg = weight_kg

    def cancel(self, intervention_id: str) -> ActiveIntervention:
        record = self.get(intervention_id)
        if record.status == InterventionStatus.FAILED:
            return record
        if record.is_terminal:
            raise InvalidStateError(f"Cannot cancel {intervention_id}: status is {record.status.value}")
        self._close(record, InterventionStatus.FAILED)
        return record

    def reassess(self, intervention_id: str, outcome: Union[ReassessmentOutcome, str],
                 weight_kg: Optional[float] = None) -> ActiveIntervention:
        """
        Answers the reassessment prompt of an expired intervention.
        ongoing restarts the timer for another cycle; a changed weight_kg
        re-sizes the next cycle's instruction and dose.
        """
        if not isinstance(outcome, ReassessmentOutcome):
            try:
                outcome = ReassessmentOutcome(outcome)
            except ValueError:
                raise InvalidInputError(f"Invalid reassessment outcome: {outcome!r}")

        record = self.get(intervention_id)
        if record.is_terminal or not self._needs_reassessment(record):
            raise InvalidStateError(f"{intervention_id} is not awaiting reassessment")

        if outcome == ReassessmentOutcome.ONGOING:
            if weight_kg is not None and weight_kg != record.weight_kg:
                self._resize(record, weight_kg)
            record.cycle += 1
            record.start_time = self.clock.now()
            logger.info("Intervention %s reassessed: cycle %s", record.id, record.cycle)
        elif outcome == ReassessmentOutcome.RESOLVED:
            self.complete(intervention_id)
        else:
            self.escalate(intervention_id, reason="Reassessment: not improving", weight_kg=weight_kg)
        return record
