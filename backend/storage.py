# storage.py
"""
Persistence collaborators for the cohort driver.

InMemoryStore keeps everything in dicts behind one RLock.
SQLStore keeps the same data in SQLAlchemy Core tables.
Both support transaction(): everything written inside the block is kept
only if the block finishes without raising.
"""

import copy
import json
import logging
import os
import threading
from dataclasses import replace
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    create_engine, MetaData, Table, Column,
    Integer, Float, String, DateTime, Text
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import select, insert, update, delete

from constants import DrugClass
from models import (
    LabSnapshot,
    Treatment,
    TreatmentStatus,
    Transition,
    ChangeType,
    Alert,
    AlertSeverity,
    AlertStatus,
    Recommendation,
    RecommendationType,
    RecommendationStatus,
    Urgency,
    AdherenceRecord,
    AdherenceBand,
    PersistenceError,
)
from transitions import TransitionDetector

logger = logging.getLogger(__name__)


class CohortStore(ABC):
    """Snapshot, treatment and event store used by the cohort driver."""

    # --- snapshots ---
    @abstractmethod
    def latest(self, patient_id: str) -> Optional[LabSnapshot]: ...

    @abstractmethod
    def history(self, patient_id: str, n: Optional[int] = None) -> List[LabSnapshot]:
        """Oldest first; the last n entries when n is given."""

    @abstractmethod
    def append(self, patient_id: str, snapshot: LabSnapshot) -> None: ...

    @abstractmethod
    def rollover(self, patient_id: str, window: int) -> None:
        """Archive the snapshot at slot `window` into slot 1 and clear slots 1..window."""

    def latest_many(self, patient_ids: Iterable[str]) -> Dict[str, Optional[LabSnapshot]]:
        return {pid: self.latest(pid) for pid in patient_ids}

    # --- treatments ---
    @abstractmethod
    def treatments(self, patient_id: str) -> List[Treatment]: ...

    def active_treatments(self, patient_id: str) -> List[Treatment]:
        return [t for t in self.treatments(patient_id) if t.is_active]

    def active_treatments_many(self, patient_ids: Iterable[str]) -> Dict[str, List[Treatment]]:
        return {pid: self.active_treatments(pid) for pid in patient_ids}

    @abstractmethod
    def get_treatment(self, treatment_id: str) -> Optional[Treatment]: ...

    @abstractmethod
    def upsert(self, treatment: Treatment) -> None: ...

    # --- events ---
    @abstractmethod
    def add_transition(self, transition: Transition) -> None: ...

    @abstractmethod
    def transitions(self, patient_id: Optional[str] = None) -> List[Transition]: ...

    @abstractmethod
    def add_alert(self, alert: Alert) -> None: ...

    @abstractmethod
    def update_alert(self, alert: Alert) -> None: ...

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    @abstractmethod
    def alerts(self, patient_id: Optional[str] = None, severity: Optional[AlertSeverity] = None,
               status: Optional[AlertStatus] = None) -> List[Alert]: ...

    @abstractmethod
    def add_recommendation(self, rec: Recommendation) -> None: ...

    @abstractmethod
    def update_recommendation(self, rec: Recommendation) -> None: ...

    @abstractmethod
    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]: ...

    @abstractmethod
    def recommendations(self, patient_id: Optional[str] = None,
                        type: Optional[RecommendationType] = None,
                        urgency: Optional[Urgency] = None,
                        status: Optional[RecommendationStatus] = None) -> List[Recommendation]: ...

    def open_recommendation_types(self, patient_id: str) -> set:
        return {r.type for r in self.recommendations(patient_id=patient_id) if r.is_open}

    @abstractmethod
    def add_adherence_record(self, record: AdherenceRecord) -> None: ...

    @abstractmethod
    def adherence_history(self, patient_id: str) -> List[AdherenceRecord]: ...

    # --- cohort state ---
    @abstractmethod
    def save_cohort_state(self, cohort_id: str, current_cycle: int, cycles_elapsed: int) -> None: ...

    @abstractmethod
    def load_cohort_state(self, cohort_id: str) -> Optional[Tuple[int, int]]: ...

    @abstractmethod
    def reset_progression(self) -> None:
        """Drop everything except the baseline (cycle 0) snapshots."""

    @abstractmethod
    def transaction(self): ...


# --- 1. IN-MEMORY ---

class InMemoryStore(CohortStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._snapshots: Dict[str, List[LabSnapshot]] = {}
        self._treatments: Dict[str, Treatment] = {}
        self._transitions: List[Transition] = []
        self._alerts: Dict[str, Alert] = {}
        self._recommendations: Dict[str, Recommendation] = {}
        self._adherence: List[AdherenceRecord] = []
        self._cohorts: Dict[str, Tuple[int, int]] = {}

    _STATE = ("_snapshots", "_treatments", "_transitions", "_alerts",
              "_recommendations", "_adherence", "_cohorts")

    @contextmanager
    def transaction(self):
        """
        Snapshots the whole store with deepcopy and restores it if the block raises.
        The copy grows with the stored history, so each cycle gets slower over a
        long run; fine for a demo cohort, use SQLStore beyond that.
        """
        with self._lock:
            backup = {name: copy.deepcopy(getattr(self, name)) for name in self._STATE}
            try:
                yield self
            except Exception:
                for name, value in backup.items():
                    setattr(self, name, value)
                logger.warning("In-memory transaction rolled back")
                raise

    def latest(self, patient_id):
        with self._lock:
            rows = self._snapshots.get(patient_id)
            return rows[-1] if rows else None

    def history(self, patient_id, n=None):
        with self._lock:
            rows = list(self._snapshots.get(patient_id, []))
        return rows[-n:] if n else rows

    def append(self, patient_id, snapshot):
        with self._lock:
            rows = self._snapshots.setdefault(patient_id, [])
            rows.append(snapshot)
            rows.sort(key=lambda s: s.cycle)

    def rollover(self, patient_id, window):
        with self._lock:
            rows = self._snapshots.get(patient_id, [])
            archived = [s for s in rows if s.cycle == window]
            kept = [s for s in rows if s.cycle == 0]
            for s in archived[-1:]:
                kept.append(LabSnapshot(egfr=s.egfr, uacr=s.uacr, cycle=1, measured_at=s.measured_at))
            self._snapshots[patient_id] = kept

    def treatments(self, patient_id):
        with self._lock:
            return [copy.deepcopy(t) for t in self._treatments.values() if t.patient_id == patient_id]

    def get_treatment(self, treatment_id):
        with self._lock:
            t = self._treatments.get(treatment_id)
            return copy.deepcopy(t) if t else None

    def upsert(self, treatment):
        with self._lock:
            self._treatments[treatment.treatment_id] = copy.deepcopy(treatment)

    def add_transition(self, transition):
        with self._lock:
            self._transitions.append(transition)

    def transitions(self, patient_id=None):
        with self._lock:
            return [t for t in self._transitions if patient_id is None or t.patient_id == patient_id]

    def add_alert(self, alert):
        with self._lock:
            self._alerts[alert.alert_id] = copy.deepcopy(alert)

    update_alert = add_alert

    def get_alert(self, alert_id):
        with self._lock:
            a = self._alerts.get(alert_id)
            return copy.deepcopy(a) if a else None

    def alerts(self, patient_id=None, severity=None, status=None):
        with self._lock:
            rows = [
                a for a in self._alerts.values()
                if (patient_id is None or a.patient_id == patient_id)
                and (severity is None or a.severity == severity)
                and (status is None or a.status == status)
            ]
            return [copy.deepcopy(a) for a in rows]

    def add_recommendation(self, rec):
        with self._lock:
            self._recommendations[rec.recommendation_id] = copy.deepcopy(rec)

    update_recommendation = add_recommendation

    def get_recommendation(self, recommendation_id):
        with self._lock:
            r = self._recommendations.get(recommendation_id)
            return copy.deepcopy(r) if r else None

    def recommendations(self, patient_id=None, type=None, urgency=None, status=None):
        with self._lock:
            rows = [
                r for r in self._recommendations.values()
                if (patient_id is None or r.patient_id == patient_id)
                and (type is None or r.type == type)
                and (urgency is None or r.urgency == urgency)
                and (status is None or r.status == status)
            ]
            return [copy.deepcopy(r) for r in rows]

    def add_adherence_record(self, record):
        with self._lock:
            self._adherence.append(record)

    def adherence_history(self, patient_id):
        with self._lock:
            return [r for r in self._adherence if r.patient_id == patient_id]

    def save_cohort_state(self, cohort_id, current_cycle, cycles_elapsed):
        with self._lock:
            self._cohorts[cohort_id] = (current_cycle, cycles_elapsed)

    def load_cohort_state(self, cohort_id):
        with self._lock:
            return self._cohorts.get(cohort_id)

    def reset_progression(self):
        with self._lock:
            self._snapshots = {
                pid: [s for s in rows if s.cycle == 0] for pid, rows in self._snapshots.items()
            }
            self._treatments = {}
            self._transitions = []
            self._alerts = {}
            self._recommendations = {}
            self._adherence = []
            self._cohorts = {cid: (0, 0) for cid in self._cohorts}


# --- 2. SQL (SQLAlchemy Core) ---

metadata = MetaData()

lab_snapshots = Table(
    "lab_snapshots", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("cycle", Integer, nullable=False),
    Column("egfr", Float, nullable=False),
    Column("uacr", Float, nullable=True),
    Column("measured_at", DateTime, nullable=False),
)

treatments_table = Table(
    "treatments", metadata,
    Column("treatment_id", String(120), primary_key=True),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("drug_class", String(40), nullable=False),
    Column("medication_name", String(80), nullable=False),
    Column("started_cycle", Integer, nullable=False),
    Column("adherence", Float, nullable=False),
    Column("baseline_adherence", Float, nullable=True),
    Column("estimated_adherence", Float, nullable=True),
    Column("status", String(20), nullable=False),
    Column("stopped_cycle", Integer, nullable=True),
)

transitions_table = Table(
    "transitions", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("cycle_from", Integer, nullable=False),
    Column("cycle_to", Integer, nullable=False),
    Column("from_egfr", Float, nullable=False),
    Column("to_egfr", Float, nullable=False),
    Column("from_uacr", Float, nullable=True),
    Column("to_uacr", Float, nullable=True),
    Column("change_type", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

alerts_table = Table(
    "alerts", metadata,
    Column("alert_id", String(120), primary_key=True),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("severity", String(20), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("title", String(200), nullable=False),
    Column("message", Text, nullable=False),
    Column("reasons_json", Text, nullable=False),
    Column("cycle", Integer, nullable=False),
    Column("from_state", String(10), nullable=False),
    Column("to_state", String(10), nullable=False),
    Column("egfr", Float, nullable=False),
    Column("uacr", Float, nullable=True),
    Column("status", String(20), nullable=False),
    Column("generated_at", DateTime, nullable=False),
    Column("acknowledged_by", String(120), nullable=True),
    Column("acknowledged_at", DateTime, nullable=True),
    Column("resolved_at", DateTime, nullable=True),
)

recommendations_table = Table(
    "recommendations", metadata,
    Column("recommendation_id", String(160), primary_key=True),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("type", String(40), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("urgency", String(20), nullable=False),
    Column("reason", Text, nullable=False),
    Column("cycle", Integer, nullable=False),
    Column("health_state", String(10), nullable=False),
    Column("status", String(20), nullable=False),
    Column("outcome", Text, nullable=True),
    Column("details_json", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=True),
)

adherence_history_table = Table(
    "adherence_history", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("treatment_id", String(120), nullable=False),
    Column("patient_id", String(80), nullable=False, index=True),
    Column("cycle", Integer, nullable=False),
    Column("adherence_score", Float, nullable=False),
    Column("band", String(20), nullable=False),
    Column("behavioral_adherence", Float, nullable=False),
    Column("egfr", Float, nullable=False),
    Column("uacr", Float, nullable=True),
    Column("egfr_change", Float, nullable=False),
    Column("uacr_change", Float, nullable=True),
    Column("calculation_method", String(40), nullable=False),
)

cohorts_table = Table(
    "cohorts", metadata,
    Column("cohort_id", String(80), primary_key=True),
    Column("current_cycle", Integer, nullable=False),
    Column("cycles_elapsed", Integer, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)


def _get_db_url() -> str:
    return os.getenv("DATABASE_URL", "").strip()


def _wrap(fn):
    """Turns SQLAlchemy failures into PersistenceError."""
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database failure in {fn.__name__}: {e}")
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e
    wrapper.__name__ = fn.__name__
    wrapper.__doc__ = fn.__doc__
    return wrapper


class SQLStore(CohortStore):

    def __init__(self, url: Optional[str] = None, engine=None):
        if engine is None:
            url = url or _get_db_url() or "sqlite:///nephroflow.db"
            if url.startswith("sqlite"):
                engine = create_engine(url, connect_args={"check_same_thread": False})
            else:
                engine = create_engine(url, pool_pre_ping=True)
        self.engine = engine
        self._local = threading.local()
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not initialise schema: {e}") from e

    @contextmanager
    def transaction(self):
        if getattr(self._local, "conn", None) is not None:
            # nested: join the outer transaction
            yield self
            return
        try:
            with self.engine.begin() as conn:
                self._local.conn = conn
                try:
                    yield self
                finally:
                    self._local.conn = None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Transaction failed: {e}") from e

    @contextmanager
    def _connect(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as conn:
                yield conn

    # --- row mappers ---
    @staticmethod
    def _snapshot(row) -> LabSnapshot:
        return LabSnapshot(egfr=row.egfr, uacr=row.uacr, cycle=row.cycle, measured_at=row.measured_at)

    @staticmethod
    def _treatment(row) -> Treatment:
        return Treatment(
            treatment_id=row.treatment_id,
            patient_id=row.patient_id,
            drug_class=DrugClass(row.drug_class),
            medication_name=row.medication_name,
            started_cycle=row.started_cycle,
            adherence=row.adherence,
            baseline_adherence=row.baseline_adherence,
            estimated_adherence=row.estimated_adherence,
            status=TreatmentStatus(row.status),
            stopped_cycle=row.stopped_cycle,
        )

    @staticmethod
    def _transition(row) -> Transition:
        # Categories and deltas are recomputed from the stored lab values; the change type is as written
        prev = LabSnapshot(egfr=row.from_egfr, uacr=row.from_uacr, cycle=row.cycle_from,
                           measured_at=row.created_at)
        curr = LabSnapshot(egfr=row.to_egfr, uacr=row.to_uacr, cycle=row.cycle_to,
                           measured_at=row.created_at)
        return replace(TransitionDetector.detect(prev, curr, row.patient_id),
                       change_type=ChangeType(row.change_type))

    @staticmethod
    def _alert(row) -> Alert:
        return Alert(
            alert_id=row.alert_id,
            patient_id=row.patient_id,
            severity=AlertSeverity(row.severity),
            priority=row.priority,
            title=row.title,
            message=row.message,
            reasons=json.loads(row.reasons_json or "[]"),
            cycle=row.cycle,
            from_state=row.from_state,
            to_state=row.to_state,
            egfr=row.egfr,
            uacr=row.uacr,
            status=AlertStatus(row.status),
            generated_at=row.generated_at,
            acknowledged_by=row.acknowledged_by,
            acknowledged_at=row.acknowledged_at,
            resolved_at=row.resolved_at,
        )

    @staticmethod
    def _recommendation(row) -> Recommendation:
        return Recommendation(
            recommendation_id=row.recommendation_id,
            patient_id=row.patient_id,
            type=RecommendationType(row.type),
            priority=row.priority,
            urgency=Urgency(row.urgency),
            reason=row.reason,
            cycle=row.cycle,
            health_state=row.health_state,
            status=RecommendationStatus(row.status),
            outcome=row.outcome,
            details=json.loads(row.details_json or "{}"),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _adherence(row) -> AdherenceRecord:
        return AdherenceRecord(
            treatment_id=row.treatment_id,
            patient_id=row.patient_id,
            cycle=row.cycle,
            adherence_score=row.adherence_score,
            band=AdherenceBand(row.band),
            behavioral_adherence=row.behavioral_adherence,
            egfr=row.egfr,
            uacr=row.uacr,
            egfr_change=row.egfr_change,
            uacr_change=row.uacr_change,
            calculation_method=row.calculation_method,
        )

    # --- snapshots ---
    @_wrap
    def latest(self, patient_id):
        with self._connect() as conn:
            row = conn.execute(
                select(lab_snapshots)
                .where(lab_snapshots.c.patient_id == patient_id)
                .order_by(lab_snapshots.c.cycle.desc(), lab_snapshots.c.id.desc())
                .limit(1)
            ).fetchone()
        return self._snapshot(row) if row else None

    @_wrap
    def latest_many(self, patient_ids):
        ids = list(patient_ids)
        result = {pid: None for pid in ids}
        if not ids:
            return result
        with self._connect() as conn:
            rows = conn.execute(
                select(lab_snapshots)
                .where(lab_snapshots.c.patient_id.in_(ids))
                .order_by(lab_snapshots.c.cycle, lab_snapshots.c.id)
            ).fetchall()
        for row in rows:
            result[row.patient_id] = self._snapshot(row)
        return result

    @_wrap
    def history(self, patient_id, n=None):
        with self._connect() as conn:
            rows = conn.execute(
                select(lab_snapshots)
                .where(lab_snapshots.c.patient_id == patient_id)
                .order_by(lab_snapshots.c.cycle, lab_snapshots.c.id)
            ).fetchall()
        snapshots = [self._snapshot(r) for r in rows]
        return snapshots[-n:] if n else snapshots

    @_wrap
    def append(self, patient_id, snapshot):
        with self._connect() as conn:
            conn.execute(insert(lab_snapshots).values(
                patient_id=patient_id,
                cycle=snapshot.cycle,
                egfr=snapshot.egfr,
                uacr=snapshot.uacr,
                measured_at=snapshot.measured_at,
            ))

    @_wrap
    def rollover(self, patient_id, window):
        with self._connect() as conn:
            row = conn.execute(
                select(lab_snapshots)
                .where(lab_snapshots.c.patient_id == patient_id)
                .where(lab_snapshots.c.cycle == window)
                .order_by(lab_snapshots.c.id.desc())
                .limit(1)
            ).fetchone()
            conn.execute(
                delete(lab_snapshots)
                .where(lab_snapshots.c.patient_id == patient_id)
                .where(lab_snapshots.c.cycle >= 1)
            )
            if row is not None:
                conn.execute(insert(lab_snapshots).values(
                    patient_id=patient_id, cycle=1, egfr=row.egfr, uacr=row.uacr,
                    measured_at=row.measured_at,
                ))

    # --- treatments ---
    @_wrap
    def treatments(self, patient_id):
        with self._connect() as conn:
            rows = conn.execute(
                select(treatments_table)
                .where(treatments_table.c.patient_id == patient_id)
                .order_by(treatments_table.c.started_cycle)
            ).fetchall()
        return [self._treatment(r) for r in rows]

    @_wrap
    def active_treatments_many(self, patient_ids):
        ids = list(patient_ids)
        result = {pid: [] for pid in ids}
        if not ids:
            return result
        with self._connect() as conn:
            rows = conn.execute(
                select(treatments_table)
                .where(treatments_table.c.patient_id.in_(ids))
                .where(treatments_table.c.status == TreatmentStatus.ACTIVE.value)
                .order_by(treatments_table.c.started_cycle)
            ).fetchall()
        for row in rows:
            result[row.patient_id].append(self._treatment(row))
        return result

    @_wrap
    def get_treatment(self, treatment_id):
        with self._connect() as conn:
            row = conn.execute(
                select(treatments_table).where(treatments_table.c.treatment_id == treatment_id)
            ).fetchone()
        return self._treatment(row) if row else None

    @_wrap
    def upsert(self, treatment):
        payload = {
            "patient_id": treatment.patient_id,
            "drug_class": treatment.drug_class.value,
            "medication_name": treatment.medication_name,
            "started_cycle": treatment.started_cycle,
            "adherence": treatment.adherence,
            "baseline_adherence": treatment.baseline_adherence,
            "estimated_adherence": treatment.estimated_adherence,
            "status": treatment.status.value,
            "stopped_cycle": treatment.stopped_cycle,
        }
        with self._connect() as conn:
            exists = conn.execute(
                select(treatments_table.c.treatment_id)
                .where(treatments_table.c.treatment_id == treatment.treatment_id)
            ).fetchone()
            if exists:
                conn.execute(
                    update(treatments_table)
                    .where(treatments_table.c.treatment_id == treatment.treatment_id)
                    .values(**payload)
                )
            else:
                conn.execute(insert(treatments_table).values(treatment_id=treatment.treatment_id, **payload))

    # --- events ---
    @_wrap
    def add_transition(self, transition):
        with self._connect() as conn:
            conn.execute(insert(transitions_table).values(
                patient_id=transition.patient_id,
                cycle_from=transition.cycle_from,
                cycle_to=transition.cycle_to,
                from_egfr=transition.from_egfr,
                to_egfr=transition.to_egfr,
                from_uacr=transition.from_uacr,
                to_uacr=transition.to_uacr,
                change_type=transition.change_type.value,
                created_at=datetime.now(),
            ))

    @_wrap
    def transitions(self, patient_id=None):
        query = select(transitions_table).order_by(transitions_table.c.id)
        if patient_id is not None:
            query = query.where(transitions_table.c.patient_id == patient_id)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._transition(r) for r in rows]

    @staticmethod
    def _alert_payload(alert: Alert) -> Dict:
        return {
            "patient_id": alert.patient_id,
            "severity": alert.severity.value,
            "priority": alert.priority,
            "title": alert.title,
            "message": alert.message,
            "reasons_json": json.dumps(list(alert.reasons)),
            "cycle": alert.cycle,
            "from_state": alert.from_state,
            "to_state": alert.to_state,
            "egfr": alert.egfr,
            "uacr": alert.uacr,
            "status": alert.status.value,
            "generated_at": alert.generated_at,
            "acknowledged_by": alert.acknowledged_by,
            "acknowledged_at": alert.acknowledged_at,
            "resolved_at": alert.resolved_at,
        }

    @_wrap
    def add_alert(self, alert):
        with self._connect() as conn:
            conn.execute(insert(alerts_table).values(alert_id=alert.alert_id, **self._alert_payload(alert)))

    @_wrap
    def update_alert(self, alert):
        with self._connect() as conn:
            conn.execute(
                update(alerts_table)
                .where(alerts_table.c.alert_id == alert.alert_id)
                .values(**self._alert_payload(alert))
            )

    @_wrap
    def get_alert(self, alert_id):
        with self._connect() as conn:
            row = conn.execute(select(alerts_table).where(alerts_table.c.alert_id == alert_id)).fetchone()
        return self._alert(row) if row else None

    @_wrap
    def alerts(self, patient_id=None, severity=None, status=None):
        query = select(alerts_table).order_by(alerts_table.c.priority, alerts_table.c.generated_at.desc())
        if patient_id is not None:
            query = query.where(alerts_table.c.patient_id == patient_id)
        if severity is not None:
            query = query.where(alerts_table.c.severity == severity.value)
        if status is not None:
            query = query.where(alerts_table.c.status == status.value)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._alert(r) for r in rows]

    @staticmethod
    def _recommendation_payload(rec: Recommendation) -> Dict:
        return {
            "patient_id": rec.patient_id,
            "type": rec.type.value,
            "priority": rec.priority,
            "urgency": rec.urgency.value,
            "reason": rec.reason,
            "cycle": rec.cycle,
            "health_state": rec.health_state,
            "status": rec.status.value,
            "outcome": rec.outcome,
            "details_json": json.dumps(rec.details),
            "created_at": rec.created_at,
            "updated_at": rec.updated_at,
        }

    @_wrap
    def add_recommendation(self, rec):
        with self._connect() as conn:
            conn.execute(insert(recommendations_table).values(
                recommendation_id=rec.recommendation_id, **self._recommendation_payload(rec)))

    @_wrap
    def update_recommendation(self, rec):
        with self._connect() as conn:
            conn.execute(
                update(recommendations_table)
                .where(recommendations_table.c.recommendation_id == rec.recommendation_id)
                .values(**self._recommendation_payload(rec))
            )

    @_wrap
    def get_recommendation(self, recommendation_id):
        with self._connect() as conn:
            row = conn.execute(
                select(recommendations_table)
                .where(recommendations_table.c.recommendation_id == recommendation_id)
            ).fetchone()
        return self._recommendation(row) if row else None

    @_wrap
    def recommendations(self, patient_id=None, type=None, urgency=None, status=None):
        query = select(recommendations_table).order_by(
            recommendations_table.c.priority, recommendations_table.c.created_at.desc())
        if patient_id is not None:
            query = query.where(recommendations_table.c.patient_id == patient_id)
        if type is not None:
            query = query.where(recommendations_table.c.type == type.value)
        if urgency is not None:
            query = query.where(recommendations_table.c.urgency == urgency.value)
        if status is not None:
            query = query.where(recommendations_table.c.status == status.value)
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._recommendation(r) for r in rows]

    @_wrap
    def add_adherence_record(self, record):
        with self._connect() as conn:
            conn.execute(insert(adherence_history_table).values(
                treatment_id=record.treatment_id,
                patient_id=record.patient_id,
                cycle=record.cycle,
                adherence_score=record.adherence_score,
                band=record.band.value,
                behavioral_adherence=record.behavioral_adherence,
                egfr=record.egfr,
                uacr=record.uacr,
                egfr_change=record.egfr_change,
                uacr_change=record.uacr_change,
                calculation_method=record.calculation_method,
            ))

    @_wrap
    def adherence_history(self, patient_id):
        with self._connect() as conn:
            rows = conn.execute(
                select(adherence_history_table)
                .where(adherence_history_table.c.patient_id == patient_id)
                .order_by(adherence_history_table.c.id)
            ).fetchall()
        return [self._adherence(r) for r in rows]

    # --- cohort state ---
    @_wrap
    def save_cohort_state(self, cohort_id, current_cycle, cycles_elapsed):
        payload = {"current_cycle": current_cycle, "cycles_elapsed": cycles_elapsed,
                   "updated_at": datetime.now()}
        with self._connect() as conn:
            exists = conn.execute(
                select(cohorts_table.c.cohort_id).where(cohorts_table.c.cohort_id == cohort_id)
            ).fetchone()
            if exists:
                conn.execute(update(cohorts_table).where(cohorts_table.c.cohort_id == cohort_id).values(**payload))
            else:
                conn.execute(insert(cohorts_table).values(cohort_id=cohort_id, **payload))

    @_wrap
    def load_cohort_state(self, cohort_id):
        with self._connect() as conn:
            row = conn.execute(
                select(cohorts_table).where(cohorts_table.c.cohort_id == cohort_id)
            ).fetchone()
        return (row.current_cycle, row.cycles_elapsed) if row else None

    @_wrap
    def reset_progression(self):
        with self._connect() as conn:
            conn.execute(delete(lab_snapshots).where(lab_snapshots.c.cycle > 0))
            for table in (treatments_table, transitions_table, alerts_table,
                          recommendations_table, adherence_history_table):
                conn.execute(delete(table))
            conn.execute(update(cohorts_table).values(current_cycle=0, cycles_elapsed=0,
                                                      updated_at=datetime.now()))
