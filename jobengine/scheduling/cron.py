"""Cron evaluation.

Pure functions of (expression, reference time); no clock, no store.
Expressions follow croniter: five fields, an optional sixth for seconds,
and the ``@hourly`` style aliases.
"""
from datetime import datetime

from croniter import croniter, CroniterError

from ..core.clock import ensure_utc
from ..core.errors import InvalidCronExpression

ALIASES = {
    "@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly",
}


def normalize(expression: str) -> str:
    if not isinstance(expression, str):
        raise InvalidCronExpression(repr(expression), "expression must be a string")
    return " ".join(expression.split())


def validate(expression: str) -> str:
    """Return the normalized expression or raise ``InvalidCronExpression``."""
    expr = normalize(expression)
    if not expr:
        raise InvalidCronExpression(expression, "expression is empty")
    if expr.startswith("@"):
        if expr.lower() not in ALIASES:
            raise InvalidCronExpression(expression, f"unknown alias {expr}")
        return expr.lower()
    fields = expr.split(" ")
    if len(fields) not in (5, 6):
        raise InvalidCronExpression(expression, f"expected 5 or 6 fields, got {len(fields)}")
    if not croniter.is_valid(expr):
        raise InvalidCronExpression(expression)
    return expr


def next_fire(expression: str, after: datetime) -> datetime:
    """First fire time strictly later than ``after``, in UTC."""
    expr = validate(expression)
    base = ensure_utc(after)
    try:
        nxt = croniter(expr, base).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as e:
        raise InvalidCronExpression(expression, str(e)) from e
    nxt = ensure_utc(nxt)
    if nxt <= base:
        raise InvalidCronExpression(expression, "schedule does not advance")
    return nxt
