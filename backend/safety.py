# safety.py
from datetime import datetime
from typing import List, Optional, Tuple

from constants import ALERT_THRESHOLDS
from models import Transition, Alert, AlertSeverity, ChangeType

_PRIORITY = {
    AlertSeverity.CRITICAL: ALERT_THRESHOLDS.PRIORITY_CRITICAL,
    AlertSeverity.WARNING: ALERT_THRESHOLDS.PRIORITY_WARNING,
    AlertSeverity.INFO: ALERT_THRESHOLDS.PRIORITY_INFO,
}


class AlertGenerator:
    """
    Rule table over one Transition.
    Returns at most one Alert per patient per cycle; its severity is the
    highest rule that fired and its reasons list every rule, critical first.
    """

    @staticmethod
    def matched_rules(t: Transition) -> List[Tuple[AlertSeverity, str]]:
        rules = []

        # 1. Critical: threshold crossings and kidney failure range
        if t.to_egfr < ALERT_THRESHOLDS.EGFR_CRITICAL <= t.from_egfr:
            rules.append((AlertSeverity.CRITICAL,
                          f"eGFR fell below {ALERT_THRESHOLDS.EGFR_CRITICAL:.0f} mL/min/1.73m² "
                          f"({t.from_egfr:.1f} -> {t.to_egfr:.1f})"))
        if t.to_egfr < ALERT_THRESHOLDS.EGFR_KIDNEY_FAILURE:
            rules.append((AlertSeverity.CRITICAL,
                          f"eGFR {t.to_egfr:.1f} is in the kidney failure range"))
        if t.from_uacr is not None and t.to_uacr is not None:
            if t.from_uacr <= ALERT_THRESHOLDS.UACR_CRITICAL < t.to_uacr:
                rules.append((AlertSeverity.CRITICAL,
                              f"uACR rose above {ALERT_THRESHOLDS.UACR_CRITICAL:.0f} mg/g "
                              f"({t.from_uacr:.1f} -> {t.to_uacr:.1f})"))

        # 2. Warning: staging moved or rapid decline
        if t.category_changed:
            rules.append((AlertSeverity.WARNING,
                          f"KDIGO category changed {t.from_state.composite_state} -> "
                          f"{t.to_state.composite_state}"))
        if t.risk_increased:
            rules.append((AlertSeverity.WARNING,
                          f"Risk level increased {t.from_risk_level.value} -> {t.to_risk_level.value}"))
        if t.egfr_delta < ALERT_THRESHOLDS.EGFR_RAPID_DROP:
            rules.append((AlertSeverity.WARNING,
                          f"Rapid eGFR decline of {abs(t.egfr_delta):.1f} mL/min in one cycle"))

        # 3. Info: any other meaningful change
        if t.change_type != ChangeType.STABLE:
            rules.append((AlertSeverity.INFO, f"Kidney labs {t.change_type.value}"))

        return rules

    @staticmethod
    def generate(t: Transition, alert_id: Optional[str] = None,
                 generated_at: Optional[datetime] = None) -> Optional[Alert]:
        rules = AlertGenerator.matched_rules(t)
        if not rules:
            return None

        # stable sort keeps rule order within a severity
        rules.sort(key=lambda r: _PRIORITY[r[0]])
        severity = rules[0][0]
        reasons = [reason for _sev, reason in rules]

        title = f"Health State Transition: {t.from_state.composite_state} → {t.to_state.composite_state}"
        message = (
            f"eGFR {t.from_egfr:.1f} → {t.to_egfr:.1f} mL/min/1.73m² "
            f"({t.egfr_delta:+.1f}); risk {t.to_risk_level.value}. " + "; ".join(reasons)
        )

        return Alert(
            alert_id=alert_id or f"alert-{t.patient_id}-{t.cycle_to}",
            patient_id=t.patient_id,
            severity=severity,
            priority=_PRIORITY[severity],
            title=title,
            message=message,
            reasons=reasons,
            cycle=t.cycle_to,
            from_state=t.from_state.composite_state,
            to_state=t.to_state.composite_state,
            egfr=t.to_egfr,
            uacr=t.to_uacr,
            generated_at=generated_at or datetime.now(),
        )
