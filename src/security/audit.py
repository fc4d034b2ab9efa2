"""Bounded in-memory audit logs.

Path violations, signing decisions and alerts are kept in fixed-size ring buffers. They are
monitoring data, not transactional state: nothing here is persisted or read back by the pipeline.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

MAX_ALERTS = 5000
MAX_SIGNING_ENTRIES = 10_000
MAX_PATH_VIOLATIONS = 1000


class AlertSeverity(StrEnum):
    info = "info"
    warning = "warning"
    critical = "critical"


class AlertCategory(StrEnum):
    path_violation = "path_violation"
    signing = "signing"
    execution = "execution"
    rate_limit = "rate_limit"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PathViolation:
    """A rejected or suspicious path transition for one session."""

    session_id: str
    from_path: str | None
    to_path: str
    reason: str
    blocked: bool
    intent_text: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class GuardResult:
    allowed: bool
    reason: str | None = None
    requires_user_signature: bool = False


@dataclass(frozen=True)
class SigningAuditEntry:
    """One backend signing decision (allowed or not) for a chain operation."""

    session_id: str | None
    operation: str
    chain: str
    wallet_address: str | None
    backend_signed: bool
    guard_result: GuardResult
    tx_hash: str | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SecurityAlert:
    id: str
    severity: AlertSeverity
    category: AlertCategory
    message: str
    details: dict[str, Any]
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SigningSummary:
    total: int
    backend_signed: int
    denied: int
    by_chain: dict[str, int]
    by_operation: dict[str, int]


class AuditLog:
    """Size-bounded ring buffers for violations, signing entries and alerts."""

    def __init__(
            self,
            *,
            max_alerts: int = MAX_ALERTS,
            max_signing_entries: int = MAX_SIGNING_ENTRIES,
            max_path_violations: int = MAX_PATH_VIOLATIONS,
    ) -> None:
        self._alerts: deque[SecurityAlert] = deque(maxlen=max_alerts)
        self._signing: deque[SigningAuditEntry] = deque(maxlen=max_signing_entries)
        self._violations: deque[PathViolation] = deque(maxlen=max_path_violations)

    def record_path_violation(self, violation: PathViolation) -> None:
        self._violations.append(violation)
        logger.warning(
            "path violation session_id=%s from=%s to=%s blocked=%s reason=%s",
            violation.session_id,
            violation.from_path,
            violation.to_path,
            violation.blocked,
            violation.reason,
        )

    def record_signing(self, entry: SigningAuditEntry) -> None:
        self._signing.append(entry)
        logger.info(
            "signing operation=%s chain=%s backend_signed=%s allowed=%s tx_hash=%s",
            entry.operation,
            entry.chain,
            entry.backend_signed,
            entry.guard_result.allowed,
            entry.tx_hash,
        )

    def raise_alert(
            self,
            severity: AlertSeverity,
            category: AlertCategory,
            message: str,
            details: dict[str, Any] | None = None,
    ) -> SecurityAlert:
        alert = SecurityAlert(
            id=uuid.uuid4().hex,
            severity=severity,
            category=category,
            message=message,
            details=dict(details or {}),
        )
        self._alerts.append(alert)
        log = logger.error if severity == AlertSeverity.critical else logger.warning
        log("alert severity=%s category=%s message=%s", severity, category, message)
        return alert

    def alert_path_violation(self, violation: PathViolation) -> SecurityAlert:
        """Raise an alert for a violation.

        A blocked violation was contained, so it is a warning; one that got through is critical.
        """

        severity = AlertSeverity.warning if violation.blocked else AlertSeverity.critical
        return self.raise_alert(
            severity,
            AlertCategory.path_violation,
            f"Path violation {violation.from_path or 'none'} -> {violation.to_path}: {violation.reason}",
            {
                "session_id": violation.session_id,
                "from_path": violation.from_path,
                "to_path": violation.to_path,
                "blocked": violation.blocked,
            },
        )

    def recent_alerts(self, limit: int = 100) -> list[SecurityAlert]:
        return list(self._alerts)[-limit:]

    def recent_signing(self, limit: int = 100) -> list[SigningAuditEntry]:
        return list(self._signing)[-limit:]

    def recent_path_violations(self, limit: int = 100) -> list[PathViolation]:
        return list(self._violations)[-limit:]

    def signing_summary(self) -> SigningSummary:
        entries = list(self._signing)
        return SigningSummary(
            total=len(entries),
            backend_signed=sum(1 for e in entries if e.backend_signed),
            denied=sum(1 for e in entries if not e.guard_result.allowed),
            by_chain=dict(Counter(e.chain for e in entries)),
            by_operation=dict(Counter(e.operation for e in entries)),
        )
