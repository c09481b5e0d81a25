"""
Flaky test alerts with fingerprint deduplication.

At most one non-resolved alert exists per (rule, repository, pull request,
fingerprint). A repeat finding bumps occurrence_count and refreshes the latest
metrics in context instead of opening a new alert. Each test run is counted
at most once per alert, so a retried or replayed analysis does not inflate
the counter.

Cooldown and daily caps live on the rule for the external rule scheduler;
they are not applied here.
"""
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_, update, text
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.alert import Alert, AlertRule
from devpulse.models.test_run import TestRun
from devpulse.utils.alerting import post_to_alert_webhook
from devpulse.utils.timestamps import utcnow
from devpulse.utils.upsert import dialect_insert

logger = logging.getLogger(__name__)

FLAKY_TEST_RULE_CODE = "flaky_test_detected"
FLAKY_TEST_ALERT_TYPE = "flaky_test"
COUNTED_RUNS_LIMIT = 100

FLAKY_TEST_RULE_DEFAULTS = {
    "name": "Flaky Test Detected",
    "description": "Alert when a test fails intermittently across recent runs",
    "rule_type": "flaky_test",
    "severity": "medium",
    "conditions": {
        "failure_rate_min": 5,
        "failure_rate_max": 95,
        "min_sample_size": 5,
    },
    "notification_channels": ["slack", "email"],
    "cooldown_minutes": 60,
    "max_alerts_per_day": 20,
    "is_active": True,
}


def flaky_test_fingerprint(repository_id, test_class: Optional[str], test_name: str) -> str:
    raw = f"{repository_id}_{test_class or ''}_{test_name}"
    return "flaky_test_" + hashlib.md5(raw.encode("utf-8")).hexdigest()


def severity_for(failure_rate: float, confidence: float) -> str:
    """failure_rate is a percentage."""
    if failure_rate > 30 and confidence > 0.8:
        return "high"
    if failure_rate > 15 and confidence > 0.6:
        return "medium"
    return "low"


def dedup_key_for(rule_id, repository_id, pull_request_id, fingerprint: str) -> str:
    return f"{rule_id}:{repository_id}:{pull_request_id or '-'}:{fingerprint}"


@dataclass
class AlertOutcome:
    alert: Alert
    created: bool
    counted: bool


class AlertManager:
    """Turns flakiness findings into deduplicated Alert rows."""

    def __init__(self, webhook_url: str = ""):
        self.webhook_url = webhook_url

    async def get_or_create_rule(self, db: AsyncSession) -> AlertRule:
        insert = dialect_insert(db)
        await db.execute(
            insert(AlertRule.__table__)
            .values(code=FLAKY_TEST_RULE_CODE, **FLAKY_TEST_RULE_DEFAULTS)
            .on_conflict_do_nothing(index_elements=["code"])
        )
        result = await db.execute(
            select(AlertRule).where(AlertRule.code == FLAKY_TEST_RULE_CODE)
        )
        return result.scalar_one()

    async def _find_open(self, db: AsyncSession, dedup_key: str) -> Optional[Alert]:
        result = await db.execute(
            select(Alert)
            .where(and_(Alert.dedup_key == dedup_key, Alert.status != "resolved"))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _merge_occurrence(self, alert: Alert, finding, test_run_id: str, now: datetime) -> bool:
        context = dict(alert.context or {})
        counted_runs = list(context.get("counted_runs") or [])
        if test_run_id in counted_runs:
            return False

        counted_runs.append(test_run_id)
        context.update({
            "latest_failure_rate": finding.failure_rate,
            "latest_runs": finding.total_runs,
            "latest_confidence_score": finding.confidence_score,
            "last_detected_at": now.isoformat(),
            "counted_runs": counted_runs[-COUNTED_RUNS_LIMIT:],
        })
        alert.context = context
        alert.occurrence_count = (alert.occurrence_count or 0) + 1
        return True

    def _new_alert_values(self, rule: AlertRule, test_run: TestRun, finding, fingerprint: str, dedup_key: str, now: datetime) -> dict:
        name = finding.test_name
        return {
            "id": uuid.uuid4(),
            "alert_rule_id": rule.id,
            "repository_id": test_run.repository_id,
            "pull_request_id": test_run.pull_request_id,
            "alert_type": FLAKY_TEST_ALERT_TYPE,
            "severity": severity_for(finding.failure_rate, finding.confidence_score),
            "title": f"Flaky Test: {name}",
            "message": (
                f"Test '{name}' has failed in {finding.failure_rate}% of the last "
                f"{finding.total_runs} runs, indicating flakiness. "
                f"Confidence score: {finding.confidence_score}/1.0"
            ),
            "context": {
                "test_name": name,
                "test_class": finding.test_class,
                "test_identifier": finding.test_identifier,
                "failure_rate": finding.failure_rate,
                "total_runs": finding.total_runs,
                "recent_failures": finding.recent_failures,
                "confidence_score": finding.confidence_score,
                "test_run_id": str(test_run.id),
                "first_detected_at": now.isoformat(),
                "counted_runs": [str(test_run.id)],
            },
            "status": "active",
            "fingerprint": fingerprint,
            "dedup_key": dedup_key,
            "occurrence_count": 1,
            "created_at": now,
            "updated_at": now,
        }

    async def record_flaky_test(
        self,
        db: AsyncSession,
        test_run: TestRun,
        finding,
        now: Optional[datetime] = None,
    ) -> AlertOutcome:
        now = now or utcnow()
        rule = await self.get_or_create_rule(db)
        fingerprint = flaky_test_fingerprint(test_run.repository_id, finding.test_class, finding.test_name)
        dedup_key = dedup_key_for(rule.id, test_run.repository_id, test_run.pull_request_id, fingerprint)
        run_key = str(test_run.id)

        existing = await self._find_open(db, dedup_key)
        if existing is None:
            insert = dialect_insert(db)
            result = await db.execute(
                insert(Alert.__table__)
                .values(**self._new_alert_values(rule, test_run, finding, fingerprint, dedup_key, now))
                .on_conflict_do_nothing(
                    index_elements=["dedup_key"],
                    index_where=text("status <> 'resolved'"),
                )
                .returning(Alert.__table__.c.id)
            )
            new_id = result.scalar_one_or_none()
            if new_id is not None:
                await self._mark_rule_triggered(db, rule, now)
                alert = await db.get(Alert, new_id)
                logger.info(
                    "Flaky test alert created: %s severity=%s", finding.test_identifier, alert.severity,
                )
                return AlertOutcome(alert=alert, created=True, counted=True)

            # A concurrent analysis opened the alert first
            existing = await self._find_open(db, dedup_key)

        counted = self._merge_occurrence(existing, finding, run_key, now)
        if counted:
            await self._mark_rule_triggered(db, rule, now)
        await db.flush()
        logger.info(
            "Flaky test alert %s occurrence=%d (counted=%s)",
            str(existing.id)[:8], existing.occurrence_count, counted,
        )
        return AlertOutcome(alert=existing, created=False, counted=counted)

    async def _mark_rule_triggered(self, db: AsyncSession, rule: AlertRule, now: datetime) -> None:
        await db.execute(
            update(AlertRule)
            .where(AlertRule.id == rule.id)
            .values(trigger_count=AlertRule.trigger_count + 1, last_triggered_at=now)
            .execution_options(synchronize_session=False)
        )

    async def notify(self, alert: Alert) -> bool:
        """Hand a new alert to the notification channel. Best-effort."""
        if not self.webhook_url:
            return False
        content = (
            f"[{alert.severity.upper()}] {alert.title}\n{alert.message}"
        )
        return await post_to_alert_webhook(content, webhook_url=self.webhook_url)

    async def notify_new_alerts(self, db: AsyncSession, outcomes: list[AlertOutcome], now: Optional[datetime] = None) -> int:
        """Notify every newly created alert and stamp notified_at. Returns how many were delivered."""
        now = now or utcnow()
        delivered = 0
        for outcome in outcomes:
            if not outcome.created:
                continue
            if await self.notify(outcome.alert):
                outcome.alert.notified_at = now
                delivered += 1
        if delivered:
            await db.flush()
        return delivered
