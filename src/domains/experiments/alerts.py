"""Data-quality alerts: derivation, deduplication, persistence and Kafka routing.

Alerts are records, not exceptions. They are stored in ``ab_alerts`` inside
the pipeline transaction and published after commit, so a rolled-back run
never notifies anyone.
"""

import uuid
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import QualityAlertDB
from src.shared.kafka_utils import send_json

from .models import (
    AlertType,
    DriftResult,
    GuardrailStatus,
    MismatchSummary,
    NoveltyResult,
    QualityAlert,
    SrmResult,
)

logger = structlog.get_logger()


def build_quality_alerts(
    srm: SrmResult,
    novelty: NoveltyResult,
    drift: DriftResult,
    guardrails: list[GuardrailStatus],
    mismatch: MismatchSummary | None = None,
) -> list[QualityAlert]:
    alerts: list[QualityAlert] = []
    if srm.detected:
        alerts.append(
            QualityAlert(
                alert_type=AlertType.SRM,
                severity="critical",
                message="Observed traffic split deviates from configured allocation",
                details={
                    "chi_square": srm.chi_square,
                    "p_value": srm.p_value,
                    "observed": srm.observed,
                    "expected": srm.expected,
                },
            )
        )

    breached = [g for g in guardrails if g.breached]
    if breached:
        alerts.append(
            QualityAlert(
                alert_type=AlertType.GUARDRAIL_BREACH,
                severity="critical",
                message="Guardrail metric degraded beyond its threshold; test paused",
                details={"breaches": [g.model_dump(mode="json") for g in breached]},
            )
        )

    if novelty.detected:
        alerts.append(
            QualityAlert(
                alert_type=AlertType.NOVELTY,
                severity="warning",
                message=novelty.message,
                details={"checks": [c.model_dump() for c in novelty.checks if c.detected]},
            )
        )

    if drift.detected:
        alerts.append(
            QualityAlert(
                alert_type=AlertType.DRIFT,
                severity="warning",
                message=drift.message,
                details={"windows": [w.model_dump() for w in drift.windows if w.significant]},
            )
        )

    if mismatch is not None and mismatch.warning:
        alerts.append(
            QualityAlert(
                alert_type=AlertType.SHIPPING_MISMATCH,
                severity="warning",
                message=f"Shipping suffix mismatch rate {mismatch.mismatch_rate:.1%}",
                details=mismatch.model_dump(),
            )
        )
    return alerts


async def check_dedup(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    alert_type: str,
    suppression_window_seconds: int = 3600,
) -> bool:
    """True when the same alert was raised for the test inside the window."""
    cutoff = datetime.now(UTC) - timedelta(seconds=suppression_window_seconds)
    result = await session.execute(
        select(func.count()).where(
            QualityAlertDB.tenant_id == tenant_id,
            QualityAlertDB.test_id == test_id,
            QualityAlertDB.alert_type == alert_type,
            QualityAlertDB.created_at >= cutoff,
        )
    )
    count = result.scalar_one()
    if count > 0:
        logger.info(
            "alert_deduplicated",
            tenant_id=tenant_id,
            test_id=test_id,
            alert_type=alert_type,
            existing_alerts=count,
        )
        return True
    return False


async def create_alert(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    alert: QualityAlert,
    suppression_window_seconds: int = 3600,
) -> QualityAlertDB | None:
    """Stage an alert row unless an identical one is still inside the window."""
    if await check_dedup(session, tenant_id, test_id, alert.alert_type, suppression_window_seconds):
        return None

    row = QualityAlertDB(
        alert_id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        test_id=test_id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        message=alert.message,
        details=alert.details,
        created_at=datetime.now(UTC),
    )
    session.add(row)
    logger.warning(
        "quality_alert_created",
        alert_id=row.alert_id,
        tenant_id=tenant_id,
        test_id=test_id,
        alert_type=alert.alert_type,
        severity=alert.severity,
    )
    return row


async def publish_alert(alert: QualityAlertDB, producer, topic: str) -> None:
    """Publish an alert to Kafka for the notification collaborators.

    Args:
        alert: The committed alert record.
        producer: An aiokafka AIOKafkaProducer instance, or None when disabled.
        topic: Destination topic.
    """
    if producer is None:
        logger.debug("kafka_producer_not_available", alert_id=alert.alert_id)
        return

    payload = {
        "alert_id": alert.alert_id,
        "tenant_id": alert.tenant_id,
        "test_id": alert.test_id,
        "alert_type": alert.alert_type,
        "severity": alert.severity,
        "message": alert.message,
        "details": alert.details,
        "created_at": alert.created_at.isoformat(),
    }
    try:
        await send_json(producer, topic, payload, key=f"{alert.tenant_id}:{alert.test_id}")
        logger.info("alert_published_to_kafka", alert_id=alert.alert_id, topic=topic)
    except Exception:
        logger.exception("alert_publish_failed", alert_id=alert.alert_id, topic=topic)
