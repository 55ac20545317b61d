import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sensor_pulse.evaluator.rules import AlertRule, RuleSnapshotStore
from sensor_pulse.shared.metrics import evaluator_alerts_fired_total
from sensor_pulse.shared.telemetry import Reading

logger = logging.getLogger(__name__)


def evaluate_threshold(value, operator, threshold):
    """Check if a reading triggers a threshold rule.

    Returns True if the condition is MET. Equality is exact float equality,
    so "==" rarely fires on analog sensor values.
    """
    if value is None or threshold is None:
        return False
    if operator == ">":
        return value > threshold
    elif operator == ">=":
        return value >= threshold
    elif operator == "<":
        return value < threshold
    elif operator == "<=":
        return value <= threshold
    elif operator == "==":
        return value == threshold
    return False


@dataclass(frozen=True)
class AlertLogRecord:
    """One fired rule evaluation, written once to alert_logs."""

    device_pk: int
    device_uid: str
    user_id: int
    rule_id: int
    input_name: str
    triggered_value: float
    condition: str
    threshold: float
    # Channels the rule asked for, not channels that delivered anything.
    notify_email: bool = False
    notify_sms: bool = False
    notify_chat: bool = False
    sent_status: str = "queued"
    action_taken: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlertEvaluator:
    """
    Matches readings against the rule snapshot and enforces per-rule cooldowns.

    Cooldowns are kept in memory only and reset on restart.
    """

    def __init__(self, rule_store: RuleSnapshotStore, clock: Callable[[], float] = time.monotonic):
        self.rule_store = rule_store
        self._clock = clock
        self._last_fired: dict[int, float] = {}
        self._rules_version = rule_store.version

        self.rules_evaluated = 0
        self.alerts_fired = 0
        self.suppressed_by_cooldown = 0

    def last_fired(self, rule_id: int) -> Optional[float]:
        return self._last_fired.get(rule_id)

    def _cooldown_elapsed(self, rule: AlertRule, now: float) -> bool:
        last = self._last_fired.get(rule.id)
        return last is None or now - last >= rule.interval_seconds

    def _mark_fired(self, rule: AlertRule, now: float) -> None:
        last = self._last_fired.get(rule.id)
        self._last_fired[rule.id] = now if last is None else max(last, now)

    def _prune_cooldowns(self) -> None:
        """Forget cooldowns of rules that left the snapshot (deleted or disabled)."""
        if self._rules_version == self.rule_store.version:
            return
        self._rules_version = self.rule_store.version
        live = self.rule_store.rule_ids()
        for rule_id in [rid for rid in self._last_fired if rid not in live]:
            del self._last_fired[rule_id]

    def evaluate(self, reading: Reading) -> list[AlertLogRecord]:
        self._prune_cooldowns()
        rules = self.rule_store.rules_for(reading.device_uid)
        if not rules:
            return []

        now = self._clock()
        fired = []
        for rule in rules:
            value = reading.value(rule.channel)
            if value is None:
                continue
            self.rules_evaluated += 1
            if not evaluate_threshold(value, rule.condition, rule.threshold):
                continue
            if not self._cooldown_elapsed(rule, now):
                self.suppressed_by_cooldown += 1
                continue

            self._mark_fired(rule, now)
            self.alerts_fired += 1
            evaluator_alerts_fired_total.labels(channel=rule.channel).inc()
            logger.info(
                "alert triggered",
                extra={
                    "device_uid": reading.device_uid,
                    "device_name": rule.device_name,
                    "rule_id": rule.id,
                    "channel": rule.channel,
                    "condition": rule.condition,
                    "threshold": rule.threshold,
                    "value": value,
                },
            )
            fired.append(
                AlertLogRecord(
                    device_pk=rule.device_pk,
                    device_uid=reading.device_uid,
                    user_id=rule.user_id,
                    rule_id=rule.id,
                    input_name=rule.threshold_type,
                    triggered_value=value,
                    condition=rule.condition,
                    threshold=rule.threshold,
                    notify_email=rule.notify_email,
                    notify_sms=rule.notify_sms,
                    notify_chat=rule.notify_chat,
                )
            )
        return fired

    def stats(self) -> dict:
        return {
            "rules_evaluated": self.rules_evaluated,
            "alerts_fired": self.alerts_fired,
            "suppressed_by_cooldown": self.suppressed_by_cooldown,
        }
