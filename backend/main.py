# main.py
# Run with: uvicorn main:app --port 8000 (from the backend directory)

import logging
from dataclasses import dataclass
from typing import Optional, List
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from constants import VERSION, DrugClass
from models import (
    LabSnapshot,
    Cohort,
    AlertSeverity,
    AlertStatus,
    RecommendationType,
    RecommendationStatus,
    Urgency,
    InvalidInput,
    LifecycleError,
    NotFoundError,
    ConcurrencyConflict,
    CycleWindowExhausted,
    PersistenceError,
)
from config import APP, Settings, load_settings
from kdigo import classify
from transitions import detect_transition
from storage import CohortStore, InMemoryStore, SQLStore
from cohort import CohortCycleDriver, build_cohort, make_policy

# --- 1. CONFIGURATION & LOGGING ---
settings = load_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(APP["logger_name"])


@dataclass
class Services:
    settings: Settings
    store: CohortStore
    driver: CohortCycleDriver
    cohort: Cohort


def build_services(settings: Settings, store: Optional[CohortStore] = None) -> Services:
    if store is None:
        store = SQLStore(settings.database_url) if settings.database_url else InMemoryStore()
    driver = CohortCycleDriver(
        store,
        policy=make_policy(settings.cycle_policy),
        workers=settings.workers,
        lock_timeout=settings.lock_timeout_seconds,
        auto_initiation_probability=settings.auto_initiation_probability,
    )
    cohort = build_cohort(settings.cohort_size, settings.seed, store)
    logger.info(f"Store: {type(store).__name__}, policy: {settings.cycle_policy}, workers: {settings.workers}")
    return Services(settings=settings, store=store, driver=driver, cohort=cohort)


services = build_services(settings)

app = FastAPI(
    title=APP["title"],
    version=VERSION,
    description=APP["description"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(e: Exception) -> HTTPException:
    """Maps engine errors onto HTTP status codes."""
    if isinstance(e, (InvalidInput, LifecycleError)):
        logger.warning(f"Validation Error: {e}")
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=f"Not found: {e.args[0] if e.args else ''}")
    if isinstance(e, (ConcurrencyConflict, CycleWindowExhausted)):
        logger.warning(f"Conflict: {e}")
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceError):
        logger.error(f"Persistence Failure: {e}", exc_info=True)
        return HTTPException(status_code=503, detail="Storage unavailable")
    logger.error(f"Internal Engine Failure: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal Progression Engine Error")


def _current_state(patient_id: str) -> dict:
    snapshot = services.store.latest(patient_id)
    if snapshot is None:
        return {"snapshot": None, "health_state": None}
    return {"snapshot": snapshot.to_dict(), "health_state": classify(snapshot.egfr, snapshot.uacr).to_dict()}


def _require_patient(patient_id: str):
    patient = services.cohort.patients.get(patient_id)
    if patient is None:
        raise HTTPException(status_code=404, detail=f"Patient {patient_id} not found")
    return patient


@app.get("/")
def read_root():
    return {"status": "active", "message": "NephroFlow API is running successfully!"}

@app.get("/health")
def health_check():
    """K8s/AWS Health Probe"""
    return {"status": "active", "version": VERSION, "module": "nephroflow-progression-engine"}


# --- 2. REQUEST SCHEMAS ---
class LabRequest(BaseModel):
    egfr: float = Field(..., ge=0.0, description="eGFR in mL/min/1.73m²")
    uacr: Optional[float] = Field(None, ge=0.0, description="uACR in mg/g; omit if not measured")

class SnapshotRequest(LabRequest):
    cycle: int = Field(..., ge=0)

class TransitionRequest(BaseModel):
    patient_id: str = Field("", max_length=80)
    previous: SnapshotRequest
    current: SnapshotRequest

    class Config:
        json_schema_extra = {
            "example": {
                "patient_id": "P0001",
                "previous": {"egfr": 32.0, "uacr": 250.0, "cycle": 3},
                "current": {"egfr": 28.5, "uacr": 320.0, "cycle": 4},
            }
        }

class AdvanceRequest(BaseModel):
    target_cycle: Optional[int] = Field(None, ge=1, description="Makes the call idempotent")

class StartTreatmentRequest(BaseModel):
    drug_class: DrugClass
    medication_name: Optional[str] = Field(None, max_length=80)
    adherence: float = Field(0.8, ge=0.0, le=1.0)

class AlertUpdateRequest(BaseModel):
    status: AlertStatus
    acknowledged_by: Optional[str] = Field(None, max_length=120)

class RecommendationUpdateRequest(BaseModel):
    status: RecommendationStatus
    outcome: Optional[str] = Field(None, max_length=2000)


# --- 3. RESPONSE SCHEMAS ---
class HealthStateResponse(BaseModel):
    gfr_category: str
    albuminuria_category: str
    composite_state: str
    risk_level: str
    gfr_description: str
    albuminuria_description: str
    risk_color: str
    ckd_stage: Optional[int]
    has_ckd: bool
    ckd_severity: Optional[str]
    clinical_flags: List[str]
    requires_nephrology_referral: bool
    requires_dialysis_planning: bool
    recommend_ras_inhibitor: bool
    recommend_sglt2_inhibitor: bool
    monitoring_frequency: str
    target_bp: str
    uacr_imputed: bool


# --- 4. ENDPOINTS ---

@app.post("/classify", response_model=HealthStateResponse)
def classify_labs(request: LabRequest):
    try:
        return classify(request.egfr, request.uacr).to_dict()
    except Exception as e:
        raise _http_error(e)

@app.post("/transitions/detect")
def detect(request: TransitionRequest):
    try:
        prev = LabSnapshot(egfr=request.previous.egfr, uacr=request.previous.uacr, cycle=request.previous.cycle)
        curr = LabSnapshot(egfr=request.current.egfr, uacr=request.current.uacr, cycle=request.current.cycle)
        transition = detect_transition(prev, curr, request.patient_id)
    except Exception as e:
        raise _http_error(e)
    body = transition.to_dict()
    body["from_health_state"] = transition.from_state.to_dict()
    body["to_health_state"] = transition.to_state.to_dict()
    return body

@app.get("/cohort")
def get_cohort():
    body = services.cohort.to_dict()
    body["policy"] = services.driver.policy.name
    body["window"] = services.driver.policy.window
    return body

@app.post("/cohort/advance")
def advance(request: Optional[AdvanceRequest] = None):
    target = request.target_cycle if request else None
    logger.info(f"Advancing cohort '{services.cohort.cohort_id}' (target cycle: {target})")
    try:
        result = services.driver.advance_cycle(services.cohort, target_cycle=target)
    except Exception as e:
        raise _http_error(e)
    return result.to_dict()

@app.post("/cohort/reset")
def reset_cohort():
    try:
        services.driver.reset(services.cohort)
    except Exception as e:
        raise _http_error(e)
    return {"status": "reset", "cohort": services.cohort.to_dict()}

@app.get("/patients")
def list_patients():
    rows = []
    for patient_id in sorted(services.cohort.patients):
        row = services.cohort.patients[patient_id].to_dict()
        row.update(_current_state(patient_id))
        rows.append(row)
    return {"count": len(rows), "patients": rows}

@app.get("/patients/{patient_id}")
def get_patient(patient_id: str):
    patient = _require_patient(patient_id)
    store = services.store
    try:
        body = patient.to_dict()
        body.update(_current_state(patient_id))
        body["history"] = [s.to_dict() for s in store.history(patient_id)]
        body["transitions"] = [t.to_dict() for t in store.transitions(patient_id)]
        body["active_alerts"] = [a.to_dict() for a in store.alerts(patient_id=patient_id, status=AlertStatus.ACTIVE)]
        body["pending_recommendations"] = [
            r.to_dict() for r in store.recommendations(patient_id=patient_id, status=RecommendationStatus.PENDING)
        ]
        body["adherence_history"] = [r.to_dict() for r in store.adherence_history(patient_id)]
    except Exception as e:
        raise _http_error(e)
    return body

@app.get("/patients/{patient_id}/treatments")
def list_treatments(patient_id: str):
    _require_patient(patient_id)
    try:
        return {"treatments": [t.to_dict() for t in services.store.treatments(patient_id)]}
    except Exception as e:
        raise _http_error(e)

@app.post("/patients/{patient_id}/treatments", status_code=201)
def start_treatment(patient_id: str, request: StartTreatmentRequest):
    _require_patient(patient_id)
    try:
        treatment = services.driver.start_treatment(
            services.cohort, patient_id, request.drug_class,
            medication_name=request.medication_name, adherence=request.adherence,
        )
    except Exception as e:
        raise _http_error(e)
    return treatment.to_dict()

@app.post("/patients/{patient_id}/treatments/{treatment_id}/stop")
def stop_treatment(patient_id: str, treatment_id: str):
    _require_patient(patient_id)
    try:
        return services.driver.stop_treatment(services.cohort, patient_id, treatment_id).to_dict()
    except Exception as e:
        raise _http_error(e)

@app.get("/alerts")
def list_alerts(severity: Optional[AlertSeverity] = None, status: Optional[AlertStatus] = None,
                patient_id: Optional[str] = None):
    try:
        alerts = services.store.alerts(patient_id=patient_id, severity=severity, status=status)
    except Exception as e:
        raise _http_error(e)
    alerts.sort(key=lambda a: (a.priority, -a.generated_at.timestamp()))
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}

@app.patch("/alerts/{alert_id}")
def update_alert(alert_id: str, request: AlertUpdateRequest):
    try:
        return services.driver.update_alert(alert_id, request.status, by=request.acknowledged_by).to_dict()
    except Exception as e:
        raise _http_error(e)

@app.get("/recommendations")
def list_recommendations(type: Optional[RecommendationType] = None, urgency: Optional[Urgency] = None,
                         status: Optional[RecommendationStatus] = None, patient_id: Optional[str] = None):
    try:
        recs = services.store.recommendations(patient_id=patient_id, type=type, urgency=urgency, status=status)
    except Exception as e:
        raise _http_error(e)
    recs.sort(key=lambda r: (r.priority, r.patient_id))
    return {"count": len(recs), "recommendations": [r.to_dict() for r in recs]}

@app.patch("/recommendations/{recommendation_id}")
def update_recommendation(recommendation_id: str, request: RecommendationUpdateRequest):
    try:
        rec = services.driver.update_recommendation(
            services.cohort, recommendation_id, request.status, outcome=request.outcome)
    except Exception as e:
        raise _http_error(e)
    return rec.to_dict()

@app.get("/summary")
def summary():
    try:
        return services.driver.summary(services.cohort)
    except Exception as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
