"""Intent parser orchestration (sanitize, then rules-based parse)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.intent.rules_parser import parse_intent
from src.intent.normalize import parse_amount
from src.intent.sanitizer import sanitize_intent_input, validate_amount
from src.intent.schema import ParsedIntent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParseResult:
    """Parsed intent plus what the sanitizer removed or flagged, and any amount warnings."""

    intent: ParsedIntent
    sanitized_text: str
    sanitize_warnings: list[str] = field(default_factory=list)

    @property
    def injection_flagged(self) -> bool:
        return any("injection" in w.lower() for w in self.sanitize_warnings)


def parse_user_text(text: str | None) -> ParseResult:
    """Sanitize raw user text and parse it into a `ParsedIntent`.

    Never raises: adversarial input is neutralized by the sanitizer, and anything the rules parser
    does not recognize becomes `kind=unknown, action=proof`.
    """

    sanitized = sanitize_intent_input(text)
    if sanitized.warnings:
        logger.info("sanitized input warnings=%s", ";".join(sanitized.warnings))

    intent = parse_intent(sanitized.sanitized)
    logger.debug("parsed kind=%s action=%s", intent.kind, intent.action)
    return ParseResult(
        intent=intent,
        sanitized_text=sanitized.sanitized,
        sanitize_warnings=[*sanitized.warnings, *amount_warnings(intent)],
    )


def amount_warnings(intent: ParsedIntent) -> list[str]:
    """Warnings about the amount the parser settled on (substituted default, dust)."""

    warnings: list[str] = []
    if intent.raw_params.get("amount_defaulted"):
        unit = f" {intent.amount_unit}" if intent.amount_unit else ""
        warnings.append(f"No usable amount given; defaulted to {intent.amount}{unit}")

    amount = parse_amount(intent.amount)
    if amount is not None:
        check = validate_amount(float(amount))
        if check.warning:
            warnings.append(check.warning)
    return warnings
