"""Session-scoped path policy engine.

The engine keeps one `IntentContext` per session (in memory only, never persisted) and decides,
for each classified intent, whether the session may move onto the intent's path:

1. hard blocks: path-integrity conflicts and the absolute spend limit;
2. an id the session already confirmed is allowed;
3. the transition table (see `src.policy.paths`);
4. capability gates: high leverage, large bridges, bonded market creation;
5. otherwise allowed.

The result depends only on `(target path, usd estimate, session history)`, so it is deterministic.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from src.intent.schema import IntentKind, ParsedIntent
from src.policy.paths import (
    HIGH_VALUE_THRESHOLD_USD,
    AssetClass,
    ConfirmationType,
    classify_asset_for_leverage,
    IntentPath,
    is_cancellation,
    matches_confirmation_type,
    validate_path_integrity,
    validate_transition,
)
from src.security.audit import AuditLog, PathViolation

logger = logging.getLogger(__name__)

MAX_PENDING_CONFIRMATIONS = 20
MAX_CONFIRMED_IDS = 200


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PolicyConfig:
    """Policy thresholds (USD values use the router's static price table)."""

    high_value_threshold_usd: float = HIGH_VALUE_THRESHOLD_USD
    bridge_confirmation_usd: float = 50_000.0
    max_auto_leverage: int = 50
    altcoin_max_leverage: int = 25
    meme_max_leverage: int = 10
    max_intent_usd: float = 1_000_000.0
    history_limit: int = 20
    max_sessions: int = 10_000

    def max_leverage_for(self, asset_class: AssetClass) -> int:
        """Highest leverage accepted without a risk acknowledgement for `asset_class`."""

        bound = {
            AssetClass.major: self.max_auto_leverage,
            AssetClass.altcoin: self.altcoin_max_leverage,
            AssetClass.meme: self.meme_max_leverage,
        }[asset_class]
        return min(bound, self.max_auto_leverage)


class SessionState(StrEnum):
    idle = "idle"
    classified = "classified"
    confirming = "confirming"
    executing = "executing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class PolicyOutcome(StrEnum):
    allowed = "allowed"
    confirmation_required = "confirmation_required"
    blocked = "blocked"


@dataclass(frozen=True)
class PathTransition:
    from_path: IntentPath | None
    to_path: IntentPath
    forced: bool
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ConfirmationRequest:
    confirmation_id: str
    target_path: IntentPath
    confirmation_type: ConfirmationType
    reason: str | None
    parsed: ParsedIntent | None
    usd_estimate: float | None
    created_at: datetime = field(default_factory=_now)


@dataclass
class IntentContext:
    """Per-session path state. Created lazily; mutated only through `PolicyEngine`."""

    session_id: str
    history_limit: int = 20
    current_path: IntentPath | None = None
    state: SessionState = SessionState.idle
    transition_history: deque[PathTransition] = field(init=False)
    pending_confirmations: dict[str, ConfirmationRequest] = field(default_factory=dict)
    # Insertion-ordered so the oldest ids are the first to go.
    confirmed_intent_ids: dict[str, None] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        self.transition_history = deque(maxlen=self.history_limit)

    def add_pending(self, request: ConfirmationRequest) -> None:
        self.pending_confirmations[request.confirmation_id] = request
        while len(self.pending_confirmations) > MAX_PENDING_CONFIRMATIONS:
            del self.pending_confirmations[next(iter(self.pending_confirmations))]

    def remember_confirmed(self, confirmation_id: str) -> None:
        self.confirmed_intent_ids.pop(confirmation_id, None)
        self.confirmed_intent_ids[confirmation_id] = None
        while len(self.confirmed_intent_ids) > MAX_CONFIRMED_IDS:
            del self.confirmed_intent_ids[next(iter(self.confirmed_intent_ids))]


@dataclass(frozen=True)
class PolicyDecision:
    outcome: PolicyOutcome
    target_path: IntentPath
    from_path: IntentPath | None
    confirmation_type: ConfirmationType = ConfirmationType.none
    code: str | None = None
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome == PolicyOutcome.allowed

    @property
    def requires_confirmation(self) -> bool:
        return self.outcome == PolicyOutcome.confirmation_required

    @property
    def blocked(self) -> bool:
        return self.outcome == PolicyOutcome.blocked


class ConfirmationReply(StrEnum):
    confirmed = "confirmed"
    cancelled = "cancelled"
    unrecognized = "unrecognized"
    nothing_pending = "nothing_pending"


@dataclass(frozen=True)
class ConfirmationOutcome:
    reply: ConfirmationReply
    request: ConfirmationRequest | None = None


class ContextRegistry:
    """Injectable store of session contexts and their locks.

    Holds at most `max_sessions` contexts; the least recently used session whose lock is free is
    evicted first.
    """

    def __init__(self, history_limit: int = 20, max_sessions: int = 10_000) -> None:
        self._history_limit = history_limit
        self._max_sessions = max_sessions
        self._contexts: OrderedDict[str, IntentContext] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> IntentContext:
        context = self._contexts.get(session_id)
        if context is None:
            context = IntentContext(session_id=session_id, history_limit=self._history_limit)
            self._contexts[session_id] = context
            self._evict(keep=session_id)
        else:
            self._contexts.move_to_end(session_id)
        return context

    def lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing policy evaluation + transition for one session."""

        self.get(session_id)
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _evict(self, keep: str) -> None:
        while len(self._contexts) > self._max_sessions:
            victim = next(
                (
                    sid
                    for sid in self._contexts
                    if sid != keep and not (sid in self._locks and self._locks[sid].locked())
                ),
                None,
            )
            if victim is None:
                return
            logger.debug("evicting idle session session_id=%s", victim)
            self._forget(victim)

    def _forget(self, session_id: str) -> None:
        self._contexts.pop(session_id, None)
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    def reset(self, session_id: str) -> None:
        self._forget(session_id)

    def sessions(self) -> list[str]:
        return sorted(self._contexts)


class PolicyEngine:
    """Evaluates and commits path transitions for sessions."""

    def __init__(
            self,
            config: PolicyConfig | None = None,
            registry: ContextRegistry | None = None,
            audit: AuditLog | None = None,
    ) -> None:
        self.config = config or PolicyConfig()
        self.registry = registry or ContextRegistry(self.config.history_limit, self.config.max_sessions)
        self.audit = audit

    def context(self, session_id: str) -> IntentContext:
        return self.registry.get(session_id)

    def _blocked(
            self,
            session_id: str,
            context: IntentContext,
            target_path: IntentPath,
            code: str,
            reason: str,
            text: str,
    ) -> PolicyDecision:
        violation = PathViolation(
            session_id=session_id,
            from_path=context.current_path,
            to_path=target_path,
            reason=reason,
            blocked=True,
            intent_text=text,
        )
        if self.audit is not None:
            try:
                self.audit.record_path_violation(violation)
                self.audit.alert_path_violation(violation)
            except Exception:
                logger.exception("audit sink failed session_id=%s", session_id)

        return PolicyDecision(
            outcome=PolicyOutcome.blocked,
            target_path=target_path,
            from_path=context.current_path,
            code=code,
            reason=reason,
        )

    def _capability_gate(
            self,
            parsed: ParsedIntent | None,
            usd_estimate: float | None,
    ) -> tuple[ConfirmationType, str] | None:
        if parsed is None:
            return None

        if parsed.kind == IntentKind.perp and parsed.leverage is not None:
            asset_class = classify_asset_for_leverage(parsed.target_asset)
            limit = self.config.max_leverage_for(asset_class)
            if parsed.leverage > limit:
                return (
                    ConfirmationType.risk_ack,
                    f"Leverage {parsed.leverage:g}x exceeds the {limit}x auto limit for {asset_class} assets",
                )

        if (
                parsed.kind == IntentKind.bridge
                and usd_estimate is not None
                and usd_estimate >= self.config.bridge_confirmation_usd
        ):
            return (
                ConfirmationType.high_value_ack,
                f"Bridge of ${usd_estimate:,.0f} requires acknowledgement",
            )

        if parsed.kind == IntentKind.perp_create and parsed.raw_params.get("bond_amount"):
            return (ConfirmationType.bond_ack, "Market creation locks a bond")

        return None

    def evaluate_path_policy(
            self,
            session_id: str,
            target_path: IntentPath,
            *,
            parsed: ParsedIntent | None = None,
            usd_estimate: float | None = None,
            intent_id: str | None = None,
    ) -> PolicyDecision:
        """Decide whether `session_id` may proceed onto `target_path`. Does not commit anything."""

        context = self.registry.get(session_id)
        context.state = SessionState.classified
        text = parsed.original_text if parsed is not None else ""

        if text:
            integrity = validate_path_integrity(text, target_path)
            if not integrity.valid:
                return self._blocked(
                    session_id,
                    context,
                    target_path,
                    "PATH_INTEGRITY_VIOLATION",
                    integrity.reason or "path integrity violation",
                    text,
                )

        amount_defaulted = parsed is not None and bool(parsed.raw_params.get("amount_defaulted"))
        if usd_estimate is not None and usd_estimate > self.config.max_intent_usd and not amount_defaulted:
            return self._blocked(
                session_id,
                context,
                target_path,
                "SPEND_LIMIT_EXCEEDED",
                f"Value ${usd_estimate:,.0f} exceeds the ${self.config.max_intent_usd:,.0f} limit",
                text,
            )

        if intent_id is not None and intent_id in context.confirmed_intent_ids:
            return PolicyDecision(
                outcome=PolicyOutcome.allowed,
                target_path=target_path,
                from_path=context.current_path,
                reason="confirmed",
            )

        transition = validate_transition(
            context.current_path,
            target_path,
            usd_estimate,
            high_value_threshold_usd=self.config.high_value_threshold_usd,
        )
        if not transition.allowed:
            return PolicyDecision(
                outcome=PolicyOutcome.confirmation_required,
                target_path=target_path,
                from_path=context.current_path,
                confirmation_type=transition.confirmation_type,
                code="PATH_TRANSITION_BLOCKED",
                reason=transition.reason,
            )

        gate = self._capability_gate(parsed, usd_estimate)
        if gate is not None:
            confirmation_type, reason = gate
            return PolicyDecision(
                outcome=PolicyOutcome.confirmation_required,
                target_path=target_path,
                from_path=context.current_path,
                confirmation_type=confirmation_type,
                code="CONFIRMATION_REQUIRED",
                reason=reason,
            )

        return PolicyDecision(
            outcome=PolicyOutcome.allowed,
            target_path=target_path,
            from_path=context.current_path,
        )

    def transition_path(
            self,
            session_id: str,
            to_path: IntentPath,
            *,
            force: bool = False,
            usd_estimate: float | None = None,
    ) -> bool:
        """Move the session onto `to_path`.

        Without `force` the move is re-checked against the transition table and refused (returning
        `False`) if it needs confirmation.
        """

        context = self.registry.get(session_id)
        if not force:
            check = validate_transition(
                context.current_path,
                to_path,
                usd_estimate,
                high_value_threshold_usd=self.config.high_value_threshold_usd,
            )
            if not check.allowed:
                return False

        context.transition_history.append(
            PathTransition(from_path=context.current_path, to_path=to_path, forced=force)
        )
        logger.info(
            "path transition session_id=%s from=%s to=%s forced=%s",
            session_id,
            context.current_path,
            to_path,
            force,
        )
        context.current_path = to_path
        context.updated_at = _now()
        return True

    def request_confirmation(
            self,
            session_id: str,
            decision: PolicyDecision,
            *,
            parsed: ParsedIntent | None = None,
            usd_estimate: float | None = None,
    ) -> ConfirmationRequest:
        """Register an outstanding confirmation; its id is what the caller re-submits."""

        context = self.registry.get(session_id)
        request = ConfirmationRequest(
            confirmation_id=str(uuid.uuid4()),
            target_path=decision.target_path,
            confirmation_type=decision.confirmation_type,
            reason=decision.reason,
            parsed=parsed,
            usd_estimate=usd_estimate,
        )
        context.add_pending(request)
        context.state = SessionState.confirming
        return request

    def confirm(self, session_id: str, confirmation_id: str) -> ConfirmationRequest | None:
        """Mark `confirmation_id` as confirmed; returns the pending request if there was one."""

        context = self.registry.get(session_id)
        request = context.pending_confirmations.pop(confirmation_id, None)
        if request is None and confirmation_id not in context.confirmed_intent_ids:
            logger.warning(
                "confirming unknown id session_id=%s confirmation_id=%s", session_id, confirmation_id
            )
        context.remember_confirmed(confirmation_id)
        return request

    def process_confirmation(
            self,
            session_id: str,
            reply_text: str,
            confirmation_id: str | None = None,
    ) -> ConfirmationOutcome:
        """Interpret a user reply to the latest (or the given) pending confirmation."""

        context = self.registry.get(session_id)
        if not context.pending_confirmations:
            return ConfirmationOutcome(reply=ConfirmationReply.nothing_pending)

        if confirmation_id is None:
            confirmation_id = next(reversed(context.pending_confirmations))
        request = context.pending_confirmations.get(confirmation_id)
        if request is None:
            return ConfirmationOutcome(reply=ConfirmationReply.nothing_pending)

        if is_cancellation(reply_text):
            self.cancel(session_id, confirmation_id)
            return ConfirmationOutcome(reply=ConfirmationReply.cancelled, request=request)

        if matches_confirmation_type(reply_text, request.confirmation_type):
            self.confirm(session_id, confirmation_id)
            self.transition_path(session_id, request.target_path, force=True)
            return ConfirmationOutcome(reply=ConfirmationReply.confirmed, request=request)

        return ConfirmationOutcome(reply=ConfirmationReply.unrecognized, request=request)

    def cancel(self, session_id: str, confirmation_id: str | None = None) -> None:
        context = self.registry.get(session_id)
        if confirmation_id is None:
            context.pending_confirmations.clear()
        else:
            context.pending_confirmations.pop(confirmation_id, None)
        context.state = SessionState.cancelled

    def mark_execution_started(self, session_id: str) -> None:
        self.registry.get(session_id).state = SessionState.executing

    def mark_execution_complete(self, session_id: str, *, success: bool = True) -> None:
        """Finish an execution: the session returns to the research path."""

        context = self.registry.get(session_id)
        context.state = SessionState.completed if success else SessionState.failed
        context.current_path = IntentPath.research
        context.updated_at = _now()
