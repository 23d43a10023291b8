"""
NephroFlow: Transition Detector
===============================
Compares two consecutive lab snapshots of one patient and decides whether a
clinically significant transition happened.
"""

from typing import Optional

from constants import TRANSITION_CONSTANTS, ALERT_THRESHOLDS
from kdigo import KDIGOClassifier
from models import LabSnapshot, Transition, ChangeType, HealthState

_WORSE = -1
_NONE = 0
_BETTER = 1


class TransitionDetector:

    @staticmethod
    def _egfr_signal(delta: float) -> int:
        if delta < -TRANSITION_CONSTANTS.EGFR_SIGNIFICANT_DELTA:
            return _WORSE
        if delta > TRANSITION_CONSTANTS.EGFR_SIGNIFICANT_DELTA:
            return _BETTER
        return _NONE

    @staticmethod
    def _uacr_signal(prev: Optional[float], curr: Optional[float]) -> int:
        # Rising albuminuria is worse
        if prev is None or curr is None:
            return _NONE
        if prev == 0:
            return _WORSE if curr > 0 else _NONE
        relative = (curr - prev) / prev
        if relative > TRANSITION_CONSTANTS.UACR_SIGNIFICANT_FRACTION:
            return _WORSE
        if relative < -TRANSITION_CONSTANTS.UACR_SIGNIFICANT_FRACTION:
            return _BETTER
        return _NONE

    @staticmethod
    def _crossed_critical(prev: LabSnapshot, curr: LabSnapshot) -> bool:
        if curr.egfr < ALERT_THRESHOLDS.EGFR_CRITICAL <= prev.egfr:
            return True
        if curr.egfr < ALERT_THRESHOLDS.EGFR_KIDNEY_FAILURE <= prev.egfr:
            return True
        if prev.uacr is not None and curr.uacr is not None:
            if prev.uacr <= ALERT_THRESHOLDS.UACR_CRITICAL < curr.uacr:
                return True
        return False

    @staticmethod
    def change_type(egfr_signal: int, uacr_signal: int,
                    prev_state: HealthState, curr_state: HealthState) -> ChangeType:
        """
        Agreeing (or single) signals decide directly. When eGFR and uACR point
        in opposite directions the metric whose KDIGO category changed decides;
        if both changed the risk level decides; if neither changed it is stable.
        """
        signals = {s for s in (egfr_signal, uacr_signal) if s != _NONE}
        if not signals:
            return ChangeType.STABLE
        if signals == {_WORSE}:
            return ChangeType.WORSENED
        if signals == {_BETTER}:
            return ChangeType.IMPROVED

        gfr_changed = prev_state.gfr_category != curr_state.gfr_category
        alb_changed = prev_state.albuminuria_category != curr_state.albuminuria_category
        if gfr_changed and alb_changed:
            rank_delta = curr_state.risk_level.rank - prev_state.risk_level.rank
            if rank_delta > 0:
                return ChangeType.WORSENED
            if rank_delta < 0:
                return ChangeType.IMPROVED
            return ChangeType.STABLE
        if gfr_changed:
            decisive = egfr_signal
        elif alb_changed:
            decisive = uacr_signal
        else:
            return ChangeType.STABLE
        return ChangeType.WORSENED if decisive == _WORSE else ChangeType.IMPROVED

    @staticmethod
    def detect(prev: LabSnapshot, curr: LabSnapshot, patient_id: str = "") -> Transition:
        prev_state = KDIGOClassifier.classify(prev.egfr, prev.uacr)
        curr_state = KDIGOClassifier.classify(curr.egfr, curr.uacr)

        egfr_delta = curr.egfr - prev.egfr
        uacr_delta = None
        if prev.uacr is not None and curr.uacr is not None:
            uacr_delta = curr.uacr - prev.uacr

        change = TransitionDetector.change_type(
            TransitionDetector._egfr_signal(egfr_delta),
            TransitionDetector._uacr_signal(prev.uacr, curr.uacr),
            prev_state,
            curr_state,
        )

        return Transition(
            patient_id=patient_id,
            from_state=prev_state,
            to_state=curr_state,
            cycle_from=prev.cycle,
            cycle_to=curr.cycle,
            from_egfr=prev.egfr,
            to_egfr=curr.egfr,
            from_uacr=prev.uacr,
            to_uacr=curr.uacr,
            egfr_delta=egfr_delta,
            uacr_delta=uacr_delta,
            category_changed=prev_state.composite_state != curr_state.composite_state,
            risk_increased=curr_state.risk_level.rank > prev_state.risk_level.rank,
            crossed_critical_threshold=TransitionDetector._crossed_critical(prev, curr),
            change_type=change,
        )


def detect_transition(prev: LabSnapshot, curr: LabSnapshot, patient_id: str = "") -> Transition:
    return TransitionDetector.detect(prev, curr, patient_id)
