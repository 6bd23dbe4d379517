"""
Fee schedules attached to accepted connections.

Depends on: config, errors, models
"""

from typing import Iterable, Optional

from logmesh.config import NATIVE_FEE_UNIT
from logmesh.errors import ConfigurationError
from logmesh.models import FeeRule, FeeSchedule


def _collector(explicit: Optional[str], default_collector: Optional[str], local_agent_id: str) -> str:
    return explicit or default_collector or local_agent_id


def build_fee_schedule(
    native_fees: Iterable[dict] = (),
    token_fees: Iterable[dict] = (),
    exempt_ids: Iterable[str] = (),
    requester_id: Optional[str] = None,
    default_collector: Optional[str] = None,
    local_agent_id: str = "",
) -> Optional[FeeSchedule]:
    """Build fee terms for a connection, or None when no positive fee is configured.

    native_fees items: {"amount", "collector_id"?}
    token_fees items:  {"amount", "token_id", "collector_id"?}

    Zero amounts are dropped. The requesting party is always exempt.
    Raises ConfigurationError for negative amounts or a token fee without a token id.
    """
    rules: list[FeeRule] = []

    for fee in native_fees:
        amount = float(fee.get("amount", 0))
        if amount < 0:
            raise ConfigurationError(f"Fee amount must not be negative (got {amount})")
        if amount == 0:
            continue
        rules.append(FeeRule(
            amount=amount,
            collector_id=_collector(fee.get("collector_id"), default_collector, local_agent_id),
        ))

    for fee in token_fees:
        amount = float(fee.get("amount", 0))
        if amount < 0:
            raise ConfigurationError(f"Fee amount must not be negative (got {amount})")
        if not fee.get("token_id"):
            raise ConfigurationError("Token fees need a token_id")
        if amount == 0:
            continue
        rules.append(FeeRule(
            amount=amount,
            collector_id=_collector(fee.get("collector_id"), default_collector, local_agent_id),
            token_id=fee["token_id"],
        ))

    if not rules:
        return None

    exempt: list[str] = []
    for agent_id in list(exempt_ids) + ([requester_id] if requester_id else []):
        if agent_id and agent_id not in exempt:
            exempt.append(agent_id)
    return FeeSchedule(rules=rules, exempt_ids=exempt)


def with_exemption(schedule: Optional[FeeSchedule], agent_id: str) -> Optional[FeeSchedule]:
    """Return a copy of schedule that also exempts agent_id."""
    if schedule is None:
        return None
    exempt = list(schedule.exempt_ids)
    if agent_id and agent_id not in exempt:
        exempt.append(agent_id)
    return FeeSchedule(rules=list(schedule.rules), exempt_ids=exempt)


def format_fee_summary(schedule: Optional[FeeSchedule]) -> str:
    """Render ' with fees: 0.5 HBAR to X and 1 of token T', or '' for no fees."""
    if schedule is None or not schedule.rules:
        return ""
    parts = []
    for rule in schedule.rules:
        if rule.token_id:
            parts.append(f"{rule.amount:g} of token {rule.token_id}")
        else:
            parts.append(f"{rule.amount:g} {NATIVE_FEE_UNIT} to {rule.collector_id}")
    return " with fees: " + " and ".join(parts)
