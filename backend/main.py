# main.py

import logging
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from constants import DRUG_LIBRARY, VERSION, DoseUnit
from dosing import calculate_dose
from interventions import INTERVENTION_TEMPLATES
from models import (
    ActiveIntervention,
    Confidence,
    CriticalAction,
    GlucoseUnit,
    InterventionStatus,
    InterventionType,
    InterventionView,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    ReassessmentOutcome,
    Severity,
    WeightEstimate,
    WeightMeasurements,
    WeightMethod,
    WeightValidation,
    WeightValidationStatus,
)
from session import AssessmentSession
from weight_engine import WeightResolutionEngine, resolve_weight, validate_weight_for_age

# --- 1. CONFIGURATION & LOGGING ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("resusgps-api")

app = FastAPI(
    title="ResusGPS Clinical Decision Core",
    version=VERSION,
    description="Weight estimation, emergency dosing, critical triggers and intervention timers "
                "for pediatric resuscitation.\n\n"
                "**WARNING**: Decision Support Tool Only. Not for autonomous clinical use.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# In-memory only: sessions die with the process
SESSIONS: Dict[str, AssessmentSession] = {}


# --- 2. INPUT SCHEMAS (The Guardrails) ---
class MeasurementsRequest(BaseModel):
    actual_weight_kg: Optional[float] = Field(None, gt=0, le=150.0, description="Scale weight")
    length_cm: Optional[float] = Field(None, gt=0, le=250.0, description="Length-tape reading")
    age_years: Optional[float] = Field(None, ge=0, le=18)
    age_months: Optional[float] = Field(None, ge=0, le=216)
    muac_cm: Optional[float] = Field(None, gt=0, le=40.0, description="Mid-Upper Arm Circumference")
    parent_estimate_kg: Optional[float] = Field(None, gt=0, le=150.0)

    class Config:
        json_schema_extra = {"example": {"length_cm": 100, "age_years": 4}}

    def to_measurements(self) -> WeightMeasurements:
        return WeightMeasurements(**self.model_dump())


class ValidationRequest(BaseModel):
    weight_kg: float
    age_years: float = Field(..., ge=0, le=18)
    age_months: float = Field(0, ge=0, le=216)


class DoseRequest(BaseModel):
    # Range is enforced by the dose engine, not here
    weight_kg: float


class SessionRequest(BaseModel):
    age_years: Optional[float] = Field(None, ge=0, le=18, description="Fills in for measurements without an age")
    age_months: Optional[float] = Field(None, ge=0, le=216)
    glucose_unit: GlucoseUnit = Field(default=GlucoseUnit.MMOL_L)
    measurements: MeasurementsRequest = Field(default_factory=MeasurementsRequest)


class AnswerRequest(BaseModel):
    question_id: str
    answer: Any
    acknowledge: bool = Field(True, description="Start the intervention the trigger calls for")


class StartInterventionRequest(BaseModel):
    template_id: str
    pending: bool = Field(False, description="Queue without starting the timer")


class TransitionRequest(BaseModel):
    reason: Optional[str] = None
    outcome: Optional[ReassessmentOutcome] = None


# --- 3. RESPONSE SCHEMAS (The Contract) ---
class LengthZoneResponse(BaseModel):
    color: str
    length_min_cm: int
    length_max_cm: int
    weight_kg: int
    tube_size_mm: float
    tube_depth_cm: float
    defib_energy_j: int
    epinephrine_mg: float
    fluid_bolus_ml: int


class WeightEstimateResponse(BaseModel):
    weight_kg: float
    method: WeightMethod
    confidence: Confidence
    source: str
    zone: Optional[LengthZoneResponse] = None


class WeightValidationResponse(BaseModel):
    status: WeightValidationStatus
    valid: bool
    min_expected_kg: float
    max_expected_kg: float
    message: Optional[str] = None


class WeightResolutionResponse(BaseModel):
    estimate: WeightEstimateResponse
    alternatives: List[WeightEstimateResponse]
    validation: Optional[WeightValidationResponse] = None


class DoseResponse(BaseModel):
    drug_id: str
    drug_name: str
    indication: str
    weight_kg: float
    amount: float
    unit: DoseUnit
    display: str
    route: str
    capped: bool
    draw_up_ml: Optional[float] = None
    concentration: str = ""
    max_dose: Optional[float] = None


class ActionResponse(BaseModel):
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


class InterventionResponse(BaseModel):
    id: str
    template_id: str
    type: InterventionType
    title: str
    instruction: str
    priority: Severity
    status: InterventionStatus
    start_time: datetime
    timer_duration_seconds: Optional[int] = None
    remaining_seconds: Optional[int] = None
    elapsed_seconds: Optional[int] = None
    expired: bool = False
    overdue_seconds: int = 0
    dose: Optional[str] = None
    route: Optional[str] = None
    reassess_prompt: str = ""
    cycle: int = 1
    bolus_number: Optional[int] = None
    volume_ml: Optional[int] = None
    volume_given: Optional[int] = None
    max_volume: Optional[int] = None
    exceeds_volume_ceiling: bool = False
    escalation_action: Optional[str] = None
    escalated_from: Optional[str] = None
    escalated_to: Optional[str] = None
    escalation_reason: Optional[str] = None
    source_action_id: Optional[str] = None
    ended_at: Optional[datetime] = None


class CountsResponse(BaseModel):
    active: int
    completed: int
    failed: int
    escalated: int
    total: int


class SessionResponse(BaseModel):
    session_id: str
    age_years: float
    age_months: float
    glucose_unit: GlucoseUnit
    weight: WeightEstimateResponse
    weight_validation: Optional[WeightValidationResponse] = None
    counts: CountsResponse


class AnswerResponse(BaseModel):
    fired: bool
    action: Optional[ActionResponse] = None
    intervention: Optional[InterventionResponse] = None


class InterventionBoardResponse(BaseModel):
    active: List[InterventionResponse]
    closed: List[InterventionResponse]
    counts: CountsResponse


class TransitionResponse(BaseModel):
    intervention: InterventionResponse
    successor: Optional[InterventionResponse] = None


class FiredActionResponse(BaseModel):
    question_id: str
    fired_at: datetime
    action: ActionResponse


class SnapshotResponse(BaseModel):
    taken_at: datetime
    model_version: str
    age_years: float
    age_months: float
    weight: WeightEstimateResponse
    weight_history: List[WeightEstimateResponse]
    fired_actions: List[FiredActionResponse]
    interventions: List[InterventionResponse]
    counts: CountsResponse


# --- 4. CONVERTERS (core dataclasses -> schemas) ---
def _estimate_out(estimate: WeightEstimate) -> WeightEstimateResponse:
    zone = LengthZoneResponse(**asdict(estimate.zone)) if estimate.zone is not None else None
    return WeightEstimateResponse(
        weight_kg=estimate.weight_kg, method=estimate.method,
        confidence=estimate.confidence, source=estimate.source, zone=zone,
    )


def _validation_out(validation: Optional[WeightValidation]) -> Optional[WeightValidationResponse]:
    if validation is None:
        return None
    return WeightValidationResponse(valid=validation.valid, **asdict(validation))


def _action_out(action: CriticalAction) -> ActionResponse:
    return ActionResponse(**asdict(action))


def _record_out(record: ActiveIntervention, **derived) -> InterventionResponse:
    fields = {name: getattr(record, name) for name in InterventionResponse.model_fields if hasattr(record, name)}
    fields.update(derived)
    return InterventionResponse(**fields)


def _view_out(view: InterventionView) -> InterventionResponse:
    return _record_out(
        view.intervention,
        status=view.status,
        remaining_seconds=view.remaining_seconds,
        elapsed_seconds=view.elapsed_seconds,
        expired=view.expired,
        overdue_seconds=view.overdue_seconds,
        exceeds_volume_ceiling=view.exceeds_volume_ceiling,
    )


def _counts_out(counts) -> CountsResponse:
    return CountsResponse(total=counts.total, **asdict(counts))


def _session_out(session_id: str, session: AssessmentSession) -> SessionResponse:
    ctx = session.context
    return SessionResponse(
        session_id=session_id,
        age_years=ctx.age_years,
        age_months=ctx.age_months,
        glucose_unit=ctx.glucose_unit,
        weight=_estimate_out(ctx.resolved_weight),
        weight_validation=_validation_out(session.weight_validation),
        counts=_counts_out(session.tracker.counts()),
    )


def _get_session(session_id: str) -> AssessmentSession:
    session = SESSIONS.get(session_id)
    if session is None:
        raise NotFoundError(f"Unknown session: {session_id}")
    return session


def _run(operation, *args):
    """Maps core exceptions onto HTTP status codes."""
    try:
        return operation(*args)
    except NotFoundError as e:
        logger.warning(f"Not found: {e.args[0] if e.args else e}")
        raise HTTPException(status_code=404, detail=str(e.args[0] if e.args else e))
    except InvalidStateError as e:
        logger.warning(f"Invalid transition: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidInputError as e:
        logger.warning(f"Clinical Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Clinical Validation Error: {str(e)}")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Internal Engine Failure: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Clinical Engine Error")


# --- 5. ENDPOINTS ---

@app.get("/")
def read_root():
    return {"status": "active", "message": "ResusGPS API is running successfully!"}


@app.get("/health")
def health_check():
    """K8s/AWS Health Probe"""
    return {"status": "active", "version": VERSION, "module": "resusgps-decision-core"}


@app.get("/drugs")
def list_drugs():
    return {drug_id: {"name": d.name, "indication": d.indication, "per_kg": d.per_kg,
                      "unit": d.unit.value, "route": d.route, "max_dose": d.max_dose}
            for drug_id, d in DRUG_LIBRARY.SPECS.items()}


@app.get("/interventions/templates")
def list_templates():
    return {t.id: {"title": t.title, "type": t.type.value, "priority": t.priority.value,
                   "timer_seconds": t.timer_seconds, "escalates_to": t.escalates_to}
            for t in INTERVENTION_TEMPLATES.values()}


@app.post("/weight/resolve", response_model=WeightResolutionResponse)
def resolve(request: MeasurementsRequest):
    """Best weight from whatever was measured, plus every method side by side."""
    def _resolve():
        measurements = request.to_measurements()
        estimate = resolve_weight(measurements)
        validation = None
        if measurements.age_years is not None or measurements.age_months is not None:
            validation = validate_weight_for_age(estimate.weight_kg, measurements.age_years,
                                                 measurements.age_months or 0)
        logger.info(f"Weight resolved: {estimate.weight_kg} kg via {estimate.method.value}")
        return WeightResolutionResponse(
            estimate=_estimate_out(estimate),
            alternatives=[_estimate_out(e) for e in WeightResolutionEngine.all_estimates(measurements)],
            validation=_validation_out(validation),
        )
    return _run(_resolve)


@app.post("/weight/validate", response_model=WeightValidationResponse)
def validate(request: ValidationRequest):
    return _run(lambda: _validation_out(
        validate_weight_for_age(request.weight_kg, request.age_years, request.age_months)))


@app.post("/doses/{drug_id}", response_model=DoseResponse)
def dose(drug_id: str, request: DoseRequest):
    def _dose():
        result = calculate_dose(request.weight_kg, drug_id)
        return DoseResponse(display=result.display, **asdict(result))
    return _run(_dose)


@app.post("/sessions", response_model=SessionResponse, status_code=201)
def create_session(request: SessionRequest):
    def _create():
        measurements = request.measurements.to_measurements()
        session = AssessmentSession(
            measurements=measurements,
            age_years=request.age_years,
            age_months=request.age_months,
            glucose_unit=request.glucose_unit,
        )
        session_id = uuid.uuid4().hex
        SESSIONS[session_id] = session
        logger.info(f"Session {session_id} opened: {session.weight_kg} kg "
                    f"({session.context.resolved_weight.method.value})")
        return _session_out(session_id, session)
    return _run(_create)


@app.put("/sessions/{session_id}/weight", response_model=SessionResponse)
def update_weight(session_id: str, request: MeasurementsRequest):
    def _update():
        session = _get_session(session_id)
        session.update_weight(request.to_measurements())
        return _session_out(session_id, session)
    return _run(_update)


@app.post("/sessions/{session_id}/answers", response_model=AnswerResponse)
def submit_answer(session_id: str, request: AnswerRequest):
    def _answer():
        session = _get_session(session_id)
        action = session.answer(request.question_id, request.answer)
        if action is None:
            return AnswerResponse(fired=False)
        intervention = None
        if request.acknowledge:
            record = session.acknowledge(action)
            if record is not None:
                intervention = _view_out(session.tracker.view(record.id))
        return AnswerResponse(fired=True, action=_action_out(action), intervention=intervention)
    return _run(_answer)


@app.get("/sessions/{session_id}/interventions", response_model=InterventionBoardResponse)
def list_interventions(session_id: str):
    def _board():
        session = _get_session(session_id)
        tracker = session.tracker
        return InterventionBoardResponse(
            active=[_view_out(v) for v in tracker.tick()],
            closed=[_view_out(v) for v in tracker.list_closed()],
            counts=_counts_out(tracker.counts()),
        )
    return _run(_board)


@app.post("/sessions/{session_id}/interventions", response_model=InterventionResponse, status_code=201)
def start_intervention(session_id: str, request: StartInterventionRequest):
    def _start():
        session = _get_session(session_id)
        if request.pending:
            record = session.tracker.enqueue(request.template_id, weight_kg=session.weight_kg)
        else:
            record = session.start_intervention(request.template_id)
        return _view_out(session.tracker.view(record.id))
    return _run(_start)


@app.post("/sessions/{session_id}/interventions/{intervention_id}/{operation}",
          response_model=TransitionResponse)
def transition(session_id: str, intervention_id: str, operation: str,
               request: Optional[TransitionRequest] = None):
    request = request or TransitionRequest()

    def _transition():
        session = _get_session(session_id)
        tracker = session.tracker
        successor = None
        if operation == "begin":
            tracker.begin(intervention_id)
        elif operation == "complete":
            tracker.complete(intervention_id)
        elif operation == "escalate":
            successor = session.escalate(intervention_id, request.reason or "Manual escalation")
        elif operation == "cancel":
            tracker.cancel(intervention_id)
        elif operation == "reassess":
            if request.outcome is None:
                raise InvalidInputError("Reassessment needs an outcome: ongoing, resolved or escalate")
            session.reassess(intervention_id, request.outcome)
            record = tracker.get(intervention_id)
            if record.escalated_to:
                successor = tracker.get(record.escalated_to)
        else:
            raise NotFoundError(f"Unknown operation: {operation}")
        return TransitionResponse(
            intervention=_view_out(tracker.view(intervention_id)),
            successor=_view_out(tracker.view(successor.id)) if successor is not None else None,
        )
    return _run(_transition)


@app.get("/sessions/{session_id}/snapshot", response_model=SnapshotResponse)
def snapshot(session_id: str):
    def _snapshot():
        snap = _get_session(session_id).snapshot()
        return SnapshotResponse(
            taken_at=snap.taken_at,
            model_version=snap.model_version,
            age_years=snap.patient.age_years,
            age_months=snap.patient.age_months,
            weight=_estimate_out(snap.patient.resolved_weight),
            weight_history=[_estimate_out(e) for e in snap.weight_history],
            fired_actions=[FiredActionResponse(question_id=f.question_id, fired_at=f.fired_at,
                                               action=_action_out(f.action))
                           for f in snap.fired_actions],
            interventions=[_record_out(r) for r in snap.interventions],
            counts=_counts_out(snap.counts),
        )
    return _run(_snapshot)
