"""Auto-reply rule matching.

Canonical algorithm: the inbound text is trimmed and, unless the rule is case
sensitive, case-folded together with the shortcuts.

- ``any``: a shortcut occurs as a substring, or the shortcut without its leading
  ``/`` equals a whole word of the text.
- ``all``: every shortcut occurs as a substring.
- ``exact``: the text equals a shortcut, with or without its leading ``/``.
- ``regex``: ``re.search`` per shortcut; malformed patterns are skipped.

Active rules are tried by priority, then usage count (both descending), then id.
"""

import re
from datetime import datetime, time
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import update
from sqlalchemy.orm import Session

from switchboard.logging_config import get_logger
from switchboard.models import AutoReplyRule, Contact
from switchboard.services.clock import utcnow
from switchboard.services.tenant_context import TenantContext, scoped

logger = get_logger("reply_matcher")

_WORD_RE = re.compile(r"\w+", re.UNICODE)


class MatchMode(str, Enum):
    ANY = "any"
    ALL = "all"
    EXACT = "exact"
    REGEX = "regex"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    IS_SET = "is_set"


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare_numbers(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    return op(left, right)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    return str(expected).casefold() in str(actual).casefold()


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        return _compare_numbers(actual, expected, lambda a, b: a == b)
    if actual is None:
        return expected is None
    return str(actual).casefold() == str(expected).casefold()


def _in(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    options = expected if isinstance(expected, (list, tuple)) else str(expected).split(",")
    return any(_equals(actual, option.strip() if isinstance(option, str) else option) for option in options)


CONDITION_EVALUATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda actual, expected: not _equals(actual, expected),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda actual, expected: not _contains(actual, expected),
    ConditionOperator.GREATER_THAN: lambda actual, expected: _compare_numbers(actual, expected, lambda a, b: a > b),
    ConditionOperator.LESS_THAN: lambda actual, expected: _compare_numbers(actual, expected, lambda a, b: a < b),
    ConditionOperator.IN: _in,
    ConditionOperator.IS_SET: lambda actual, expected: actual not in (None, "", [], {}),
}

CONTACT_FIELDS = {
    "stage": "stage",
    "display_name": "display_name",
    "external_address": "external_address",
    "message_count": "message_count",
    "unread_count": "unread_count",
}


def contact_field(contact: Contact, field: str) -> Any:
    if field.startswith("metadata."):
        return (contact.contact_metadata or {}).get(field.split(".", 1)[1])
    attribute = CONTACT_FIELDS.get(field)
    if attribute is None:
        return None
    return getattr(contact, attribute, None)


def condition_holds(condition: dict, contact: Optional[Contact]) -> bool:
    if contact is None:
        return False
    try:
        operator = ConditionOperator(condition.get("operator"))
    except ValueError:
        logger.warning(f"Unknown condition operator: {condition.get('operator')!r}")
        return False
    field = condition.get("field") or ""
    if field not in CONTACT_FIELDS and not field.startswith("metadata."):
        logger.warning(f"Unknown condition field: {field!r}")
        return False
    return CONDITION_EVALUATORS[operator](contact_field(contact, field), condition.get("value"))


def conditions_hold(conditions: Optional[list], contact: Optional[Contact]) -> bool:
    return all(condition_holds(condition, contact) for condition in conditions or [])


def _parse_clock(value: str) -> Optional[time]:
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        return None


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def within_business_hours(rule: AutoReplyRule, now: Optional[datetime] = None) -> bool:
    """Hour/minute window in the rule's timezone. No window means always in scope."""
    if not rule.business_hours_start or not rule.business_hours_end:
        return True
    start = _parse_clock(rule.business_hours_start)
    end = _parse_clock(rule.business_hours_end)
    if start is None or end is None:
        logger.warning(f"Invalid business hours on rule {rule.id}, ignoring window")
        return True

    local = (now or utcnow()).astimezone(_zone(rule.timezone))
    current = time(local.hour, local.minute)
    if start <= end:
        return start <= current <= end
    # Window wraps past midnight, e.g. 22:00-06:00.
    return current >= start or current <= end


@lru_cache(maxsize=256)
def _compile(pattern: str, flags: int) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        logger.warning(f"Skipping malformed auto-reply pattern {pattern!r}: {e}")
        return None


def shortcut_matches(text: str, shortcuts: list, mode: str, case_sensitive: bool = False) -> bool:
    text = (text or "").strip()
    shortcuts = [s.strip() for s in shortcuts or [] if isinstance(s, str) and s.strip()]
    if not text or not shortcuts:
        return False

    try:
        mode = MatchMode(mode)
    except ValueError:
        logger.warning(f"Unknown match mode: {mode!r}")
        return False

    if mode == MatchMode.REGEX:
        flags = 0 if case_sensitive else re.IGNORECASE
        for pattern in shortcuts:
            compiled = _compile(pattern, flags)
            if compiled is not None and compiled.search(text):
                return True
        return False

    if not case_sensitive:
        text = text.casefold()
        shortcuts = [s.casefold() for s in shortcuts]

    if mode == MatchMode.EXACT:
        return any(text == s or text == s.lstrip("/") for s in shortcuts)

    if mode == MatchMode.ALL:
        return all(s in text for s in shortcuts)

    words = set(_WORD_RE.findall(text))
    return any(s in text or s.lstrip("/") in words for s in shortcuts)


def rule_matches(
    rule: AutoReplyRule, text: str, contact: Optional[Contact] = None, now: Optional[datetime] = None
) -> bool:
    if not rule.active:
        return False
    if not within_business_hours(rule, now):
        return False
    if rule.conditions and not conditions_hold(rule.conditions, contact):
        return False
    return shortcut_matches(text, rule.shortcuts, rule.match_mode, bool(rule.case_sensitive))


def candidate_rules(db: Session, tenant: TenantContext) -> list[AutoReplyRule]:
    return (
        scoped(db.query(AutoReplyRule), AutoReplyRule, tenant)
        .filter(AutoReplyRule.active.is_(True))
        .order_by(AutoReplyRule.priority.desc(), AutoReplyRule.usage_count.desc(), AutoReplyRule.id.asc())
        .all()
    )


def record_usage(db: Session, tenant: TenantContext, rule: AutoReplyRule) -> None:
    table = AutoReplyRule.__table__
    db.execute(
        update(table)
        .where(table.c.id == rule.id, table.c.tenant_id == tenant.tenant_id)
        .values(usage_count=table.c.usage_count + 1, last_used_at=utcnow())
    )


def match(
    db: Session,
    tenant: TenantContext,
    text: str,
    *,
    contact: Optional[Contact] = None,
    now: Optional[datetime] = None,
) -> Optional[AutoReplyRule]:
    """Return the first satisfying rule for this tenant and count its use, or None."""
    if not text or not text.strip():
        return None

    for rule in candidate_rules(db, tenant):
        if rule_matches(rule, text, contact, now):
            record_usage(db, tenant, rule)
            logger.info(
                "Auto-reply rule matched",
                extra={"context": {"tenant_id": str(tenant.tenant_id), "rule_id": str(rule.id)}},
            )
            return rule
    return None
