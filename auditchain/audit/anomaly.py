"""Anomaly detection over the audit chain.

The detector is stateless and read-only: it evaluates windowed rules
against the chain store and emits flags to the alert sink. It never
writes to the chain.

Rules:
- BRUTE_FORCE: at least K AUTH_FAILURE entries from one IP (or against
  one actor) within T minutes
- SUSPICIOUS_ACTIVITY: at least M distinct IPs for one actor within T minutes
- UNUSUAL_ACCESS_PATTERN: at least N HIGH/CRITICAL entries for one actor
  within T minutes

``evaluate`` checks the rules that a single entry can trigger, over the
window ending at that entry. ``scan`` runs every rule over trailing
windows ending now, for the batch path. ``assess_threat_level`` scores
an IP by the severities of its recent entries.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from auditchain.audit.alerts import AlertSink, SecurityAlert
from auditchain.audit.config import SEVERITY_WEIGHTS, threat_level_for_score
from auditchain.audit.exceptions import ScanCancelledError
from auditchain.audit.models import AuditLogEntry, SecurityEventType, Severity, to_utc
from auditchain.audit.store import AuditQueryFilters, ChainStore

logger = logging.getLogger(__name__)

SUBJECT_IP = "ip"
SUBJECT_ACTOR = "actor"

_ELEVATED = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass(frozen=True)
class AnomalyRules:
    """Thresholds and windows for the detection rules."""

    brute_force_threshold: int = 5
    brute_force_window: timedelta = timedelta(minutes=15)
    distinct_ip_threshold: int = 5
    distinct_ip_window: timedelta = timedelta(minutes=60)
    severity_burst_threshold: int = 6
    severity_burst_window: timedelta = timedelta(minutes=60)


@dataclass(frozen=True)
class AnomalyFlag:
    """A detected anomaly.

    Attributes:
        type: BRUTE_FORCE, SUSPICIOUS_ACTIVITY or UNUSUAL_ACCESS_PATTERN
        subject_kind: "ip" or "actor"
        subject: The IP address or actor user ID
        count: Observed count (entries, or distinct IPs)
        window: Length of the evaluated window
        trigger_sequence: Entry that completed the pattern, if known
    """

    type: SecurityEventType
    subject_kind: str
    subject: str
    count: int
    window: timedelta
    trigger_sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "subject_kind": self.subject_kind,
            "subject": self.subject,
            "count": self.count,
            "window_minutes": int(self.window.total_seconds() // 60),
            "trigger_sequence": self.trigger_sequence,
        }


@dataclass
class ThreatAssessment:
    """Threat score for one IP over a recent period."""

    ip: str
    level: Severity
    score: int
    events: int
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "level": self.level.value,
            "score": self.score,
            "events": self.events,
            "details": self.details,
        }


class AnomalyDetector:
    """Evaluates detection rules against the chain store.

    Args:
        store: The chain store (read only).
        rules: Rule thresholds.
        alert_sink: Optional sink receiving one alert per flag.
    """

    def __init__(
        self,
        store: ChainStore,
        rules: AnomalyRules | None = None,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self._store = store
        self._rules = rules or AnomalyRules()
        self._alert_sink = alert_sink

    @property
    def rules(self) -> AnomalyRules:
        return self._rules

    async def evaluate(self, entry: AuditLogEntry) -> list[AnomalyFlag]:
        """Evaluate the rules an entry can trigger.

        Windows end at the entry's timestamp and only entries up to its
        sequence are considered, so the result does not depend on what
        was appended afterwards.

        Args:
            entry: A committed entry.

        Returns:
            Flags raised by this entry (possibly empty).
        """
        flags: list[AnomalyFlag] = []
        rules = self._rules
        end = to_utc(entry.timestamp)
        actor_id = entry.actor.user_id

        if entry.event_type == SecurityEventType.AUTH_FAILURE:
            window_filters = AuditQueryFilters(
                event_type=SecurityEventType.AUTH_FAILURE,
                start_time=end - rules.brute_force_window,
                end_time=end,
                max_sequence=entry.sequence,
            )
            by_ip = await self._store.count_entries(
                replace(window_filters, ip=entry.ip)
            )
            if by_ip >= rules.brute_force_threshold:
                flags.append(
                    AnomalyFlag(
                        type=SecurityEventType.BRUTE_FORCE,
                        subject_kind=SUBJECT_IP,
                        subject=entry.ip,
                        count=by_ip,
                        window=rules.brute_force_window,
                        trigger_sequence=entry.sequence,
                    )
                )
            if actor_id is not None:
                by_actor = await self._store.count_entries(
                    replace(window_filters, actor_id=actor_id)
                )
                if by_actor >= rules.brute_force_threshold:
                    flags.append(
                        AnomalyFlag(
                            type=SecurityEventType.BRUTE_FORCE,
                            subject_kind=SUBJECT_ACTOR,
                            subject=actor_id,
                            count=by_actor,
                            window=rules.brute_force_window,
                            trigger_sequence=entry.sequence,
                        )
                    )

        if actor_id is not None:
            groups = await self._store.count_grouped(
                AuditQueryFilters(
                    actor_id=actor_id,
                    start_time=end - rules.distinct_ip_window,
                    end_time=end,
                    max_sequence=entry.sequence,
                ),
                group_by=["ip"],
            )
            if len(groups) >= rules.distinct_ip_threshold:
                flags.append(
                    AnomalyFlag(
                        type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                        subject_kind=SUBJECT_ACTOR,
                        subject=actor_id,
                        count=len(groups),
                        window=rules.distinct_ip_window,
                        trigger_sequence=entry.sequence,
                    )
                )

        if actor_id is not None and entry.severity in _ELEVATED:
            elevated = await self._store.count_entries(
                AuditQueryFilters(
                    actor_id=actor_id,
                    severities=_ELEVATED,
                    start_time=end - rules.severity_burst_window,
                    end_time=end,
                    max_sequence=entry.sequence,
                )
            )
            if elevated >= rules.severity_burst_threshold:
                flags.append(
                    AnomalyFlag(
                        type=SecurityEventType.UNUSUAL_ACCESS_PATTERN,
                        subject_kind=SUBJECT_ACTOR,
                        subject=actor_id,
                        count=elevated,
                        window=rules.severity_burst_window,
                        trigger_sequence=entry.sequence,
                    )
                )

        await self._emit(flags)
        return flags

    async def scan(
        self,
        until: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AnomalyFlag]:
        """Run every rule over the trailing windows ending at ``until``.

        Args:
            until: End of the windows (default: now).
            cancel_event: When set, the scan stops between rules.

        Returns:
            All flags found.

        Raises:
            ScanCancelledError: If cancel_event was set during the scan.
        """
        end = to_utc(until) if until is not None else datetime.now(tz=timezone.utc)
        tail = await self._store.read_tail()
        rules = self._rules
        flags: list[AnomalyFlag] = []

        def check_cancelled() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise ScanCancelledError(tail.sequence)

        check_cancelled()
        brute_filters = AuditQueryFilters(
            event_type=SecurityEventType.AUTH_FAILURE,
            start_time=end - rules.brute_force_window,
            end_time=end,
        ).bounded(tail.sequence)
        for group_field, kind in (("ip", SUBJECT_IP), ("actor_user_id", SUBJECT_ACTOR)):
            for group in await self._store.count_grouped(brute_filters, group_by=[group_field]):
                subject = group.key[0]
                if subject is None or group.count < rules.brute_force_threshold:
                    continue
                flags.append(
                    AnomalyFlag(
                        type=SecurityEventType.BRUTE_FORCE,
                        subject_kind=kind,
                        subject=subject,
                        count=group.count,
                        window=rules.brute_force_window,
                    )
                )

        check_cancelled()
        ip_groups = await self._store.count_grouped(
            AuditQueryFilters(start_time=end - rules.distinct_ip_window, end_time=end).bounded(tail.sequence),
            group_by=["actor_user_id", "ip"],
        )
        distinct_ips: dict[str, int] = defaultdict(int)
        for group in ip_groups:
            if group.key[0] is not None:
                distinct_ips[group.key[0]] += 1
        for actor_id, count in sorted(distinct_ips.items()):
            if count >= rules.distinct_ip_threshold:
                flags.append(
                    AnomalyFlag(
                        type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                        subject_kind=SUBJECT_ACTOR,
                        subject=actor_id,
                        count=count,
                        window=rules.distinct_ip_window,
                    )
                )

        check_cancelled()
        burst_groups = await self._store.count_grouped(
            AuditQueryFilters(
                severities=_ELEVATED,
                start_time=end - rules.severity_burst_window,
                end_time=end,
            ).bounded(tail.sequence),
            group_by=["actor_user_id"],
        )
        for group in burst_groups:
            actor_id = group.key[0]
            if actor_id is None or group.count < rules.severity_burst_threshold:
                continue
            flags.append(
                AnomalyFlag(
                    type=SecurityEventType.UNUSUAL_ACCESS_PATTERN,
                    subject_kind=SUBJECT_ACTOR,
                    subject=actor_id,
                    count=group.count,
                    window=rules.severity_burst_window,
                )
            )

        if flags:
            logger.info("Anomaly scan up to sequence %s found %s flags", tail.sequence, len(flags))
        await self._emit(flags)
        return flags

    async def assess_threat_level(self, ip: str, hours: int = 24) -> ThreatAssessment:
        """Score an IP by the severities of its entries in the last ``hours``.

        Args:
            ip: Client IP address.
            hours: Look-back period.

        Returns:
            ThreatAssessment with level, score, event count and the most
            recent events.
        """
        tail = await self._store.read_tail()
        filters = AuditQueryFilters(
            ip=ip,
            start_time=datetime.now(tz=timezone.utc) - timedelta(hours=hours),
        ).bounded(tail.sequence)

        groups = await self._store.count_grouped(filters, group_by=["severity"])
        score = sum(SEVERITY_WEIGHTS[Severity(g.key[0])] * g.count for g in groups)
        events = sum(g.count for g in groups)

        recent = await self._store.find_entries(filters, limit=100)
        details = [
            {
                "sequence": e.sequence,
                "type": e.event_type.value,
                "severity": e.severity.value,
                "timestamp": e.timestamp.isoformat(),
                "path": e.path,
            }
            for e in recent
        ]
        return ThreatAssessment(
            ip=ip,
            level=threat_level_for_score(score),
            score=score,
            events=events,
            details=details,
        )

    async def _emit(self, flags: list[AnomalyFlag]) -> None:
        for flag in flags:
            logger.warning(
                "Anomaly detected: %s for %s %s (count=%s, sequence=%s)",
                flag.type.value,
                flag.subject_kind,
                flag.subject,
                flag.count,
                flag.trigger_sequence,
            )
            if self._alert_sink is not None:
                await self._alert_sink.emit(SecurityAlert.from_flag(flag))
