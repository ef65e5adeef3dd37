"""Authorization alerts.

Real-time alerts computed from a client's active authorizations:

Expiry (days until valid_to):
- <= warning window (default 30) and > 14: EXPIRING_SOON / WARNING
- <= 14 and > 7: EXPIRING_SOON / HIGH
- <= 7 and > 0: EXPIRING_CRITICAL / CRITICAL
- <= 0: EXPIRED / CRITICAL

Usage (consumed / authorized):
- >= 100%: UNITS_EXHAUSTED / CRITICAL
- >= 90%: UNITS_LOW / HIGH
- >= 80%: UNITS_LOW / WARNING
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel

from carebase.core.settings import settings
from carebase.scheduling.units import AuthorizationSnapshot

HIGH_EXPIRY_DAYS = 14
CRITICAL_EXPIRY_DAYS = 7
USAGE_WARNING_PERCENT = Decimal(80)
USAGE_HIGH_PERCENT = Decimal(90)
USAGE_EXHAUSTED_PERCENT = Decimal(100)


class AlertSeverity(StrEnum):
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertType(StrEnum):
    EXPIRING_SOON = "EXPIRING_SOON"
    EXPIRING_CRITICAL = "EXPIRING_CRITICAL"
    EXPIRED = "EXPIRED"
    UNITS_LOW = "UNITS_LOW"
    UNITS_EXHAUSTED = "UNITS_EXHAUSTED"


class AuthorizationAlert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    authorization_id: str
    client_id: str
    days_remaining: int
    usage_percent: Decimal


class AlertSummary(BaseModel):
    total: int
    critical: int
    high: int
    warning: int
    expiring: int
    low_units: int


class AlertReport(BaseModel):
    alerts: list[AuthorizationAlert]
    summary: AlertSummary


def usage_percent(authorization: AuthorizationSnapshot) -> Decimal:
    # A zero grant counts as a one-unit grant so the ratio stays defined
    authorized = authorization.authorized_units or Decimal(1)
    return authorization.consumed_units / authorized * 100


def _expiry_alert(authorization: AuthorizationSnapshot, days_remaining: int, warning_days: int) -> AuthorizationAlert | None:
    if days_remaining <= 0:
        key, alert_type, severity = "expired", AlertType.EXPIRED, AlertSeverity.CRITICAL
        message = "Authorization has expired"
    elif days_remaining <= CRITICAL_EXPIRY_DAYS:
        key, alert_type, severity = "expiring-7", AlertType.EXPIRING_CRITICAL, AlertSeverity.CRITICAL
        message = f"URGENT: Authorization expires in {days_remaining} days"
    elif days_remaining <= HIGH_EXPIRY_DAYS:
        key, alert_type, severity = "expiring-14", AlertType.EXPIRING_SOON, AlertSeverity.HIGH
        message = f"Authorization expires in {days_remaining} days - reauthorization needed"
    elif days_remaining <= warning_days:
        key, alert_type, severity = f"expiring-{warning_days}", AlertType.EXPIRING_SOON, AlertSeverity.WARNING
        message = f"Authorization expires in {days_remaining} days"
    else:
        return None

    return AuthorizationAlert(
        id=f"{key}-{authorization.id}",
        type=alert_type,
        severity=severity,
        message=message,
        authorization_id=authorization.id,
        client_id=authorization.client_id,
        days_remaining=days_remaining,
        usage_percent=usage_percent(authorization),
    )


def _usage_alert(authorization: AuthorizationSnapshot, days_remaining: int) -> AuthorizationAlert | None:
    percent = usage_percent(authorization)
    remaining = (100 - percent).quantize(Decimal("0.1"))
    if percent >= USAGE_EXHAUSTED_PERCENT:
        key, alert_type, severity = "exhausted", AlertType.UNITS_EXHAUSTED, AlertSeverity.CRITICAL
        message = "All authorized units have been used"
    elif percent >= USAGE_HIGH_PERCENT:
        key, alert_type, severity = "usage-90", AlertType.UNITS_LOW, AlertSeverity.HIGH
        message = f"{remaining}% of units remaining"
    elif percent >= USAGE_WARNING_PERCENT:
        key, alert_type, severity = "usage-80", AlertType.UNITS_LOW, AlertSeverity.WARNING
        message = f"{remaining}% of units remaining"
    else:
        return None

    return AuthorizationAlert(
        id=f"{key}-{authorization.id}",
        type=alert_type,
        severity=severity,
        message=message,
        authorization_id=authorization.id,
        client_id=authorization.client_id,
        days_remaining=days_remaining,
        usage_percent=percent,
    )


def authorization_alerts(
    authorizations: Iterable[AuthorizationSnapshot],
    today: date,
    *,
    warning_days: int | None = None,
) -> list[AuthorizationAlert]:
    """Compute expiry and usage alerts, at most one of each per authorization."""
    if warning_days is None:
        warning_days = settings.authorization_expiry_warning_days

    alerts: list[AuthorizationAlert] = []
    for authorization in authorizations:
        days_remaining = (authorization.valid_to - today).days
        for alert in (
            _expiry_alert(authorization, days_remaining, warning_days),
            _usage_alert(authorization, days_remaining),
        ):
            if alert is not None:
                alerts.append(alert)
    return alerts


def summarize(alerts: list[AuthorizationAlert]) -> AlertSummary:
    return AlertSummary(
        total=len(alerts),
        critical=sum(1 for a in alerts if a.severity is AlertSeverity.CRITICAL),
        high=sum(1 for a in alerts if a.severity is AlertSeverity.HIGH),
        warning=sum(1 for a in alerts if a.severity is AlertSeverity.WARNING),
        expiring=sum(1 for a in alerts if a.type in (AlertType.EXPIRING_SOON, AlertType.EXPIRING_CRITICAL, AlertType.EXPIRED)),
        low_units=sum(1 for a in alerts if a.type in (AlertType.UNITS_LOW, AlertType.UNITS_EXHAUSTED)),
    )


def build_alert_report(
    authorizations: Iterable[AuthorizationSnapshot], today: date, *, warning_days: int | None = None
) -> AlertReport:
    alerts = authorization_alerts(authorizations, today, warning_days=warning_days)
    return AlertReport(alerts=alerts, summary=summarize(alerts))
