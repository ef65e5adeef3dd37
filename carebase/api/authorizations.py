"""Authorization alert endpoints."""

from datetime import date

from fastapi import APIRouter
from loguru import logger

from carebase.db.session import get_session
from carebase.scheduling.alerts import AlertReport, build_alert_report
from carebase.scheduling.stores import SqlAuthorizationStore

router = APIRouter(prefix="/authorizations", tags=["authorizations"])


@router.get("/{client_id}/alerts", response_model=AlertReport)
def get_authorization_alerts(client_id: str) -> AlertReport:
    """Expiry and unit-usage alerts for a client's active authorizations."""
    with get_session() as session:
        authorizations = SqlAuthorizationStore(session).list_active_authorizations(client_id)

    report = build_alert_report(authorizations, date.today())
    logger.info(
        "[AUTHORIZATION] Alerts computed",
        client_id=client_id,
        total=report.summary.total,
        critical=report.summary.critical,
    )
    return report
