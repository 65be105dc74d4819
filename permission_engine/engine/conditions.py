"""
Contextual predicates attached to individual permission grants.

Conditions are stored as JSON on the user-permission record, e.g.:

    {
      "timeRestrictions": {"startHour": 9, "endHour": 17, "weekdays": [1, 2, 3, 4, 5]},
      "maxAmount": 5000,
      "allowedLocations": ["cancun", "tulum"],
      "departmentId": "sales"
    }

Every predicate present must hold (AND). Anything the evaluator cannot verify
(missing request field, unknown predicate, malformed document) is a non-match.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from permission_engine.types import ContextLike, RequestContext, as_request_context

logger = logging.getLogger(__name__)


class TimeRestrictions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    start_hour: int | None = Field(default=None, alias="startHour", ge=0, le=23)
    end_hour: int | None = Field(default=None, alias="endHour", ge=0, le=23)
    # 0 = Sunday ... 6 = Saturday
    weekdays: list[int] | None = Field(default=None)


class PermissionConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    time_restrictions: TimeRestrictions | None = Field(default=None, alias="timeRestrictions")
    max_amount: float | None = Field(default=None, alias="maxAmount")
    allowed_locations: list[str] | None = Field(default=None, alias="allowedLocations")
    department_id: str | int | None = Field(default=None, alias="departmentId")


def _sunday_based_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def _hour_in_window(hour: int, start: int | None, end: int | None) -> bool:
    if start is not None and end is not None:
        if start <= end:
            return start <= hour <= end
        # Window wraps midnight, e.g. 22..6.
        return hour >= start or hour <= end
    if start is not None:
        return hour >= start
    if end is not None:
        return hour <= end
    return True


class ConditionEvaluator:
    """
    Evaluates `PermissionConditions` against a request context.

    Time predicates use the request's `timestamp` when supplied, otherwise the
    server-local clock.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock

    def parse(self, conditions: Mapping[str, Any] | PermissionConditions) -> PermissionConditions:
        if isinstance(conditions, PermissionConditions):
            return conditions
        return PermissionConditions.model_validate(dict(conditions))

    def matches(self, conditions: Mapping[str, Any] | PermissionConditions | None, request_context: ContextLike) -> bool:
        if not conditions:
            return True

        try:
            parsed = self.parse(conditions)
        except ValidationError as exc:
            logger.warning("Malformed permission conditions treated as non-match: %s", exc.error_count())
            return False

        if parsed.model_extra:
            logger.warning("Unknown condition predicates treated as non-match: %s", sorted(parsed.model_extra))
            return False

        ctx = as_request_context(request_context)
        return (
            self._time_matches(parsed.time_restrictions, ctx)
            and self._amount_matches(parsed.max_amount, ctx)
            and self._location_matches(parsed.allowed_locations, ctx)
            and self._department_matches(parsed.department_id, ctx)
        )

    def _time_matches(self, restrictions: TimeRestrictions | None, ctx: RequestContext) -> bool:
        if restrictions is None:
            return True
        moment = ctx.timestamp or self._clock()
        if not _hour_in_window(moment.hour, restrictions.start_hour, restrictions.end_hour):
            return False
        if restrictions.weekdays is not None and _sunday_based_weekday(moment) not in restrictions.weekdays:
            return False
        return True

    def _amount_matches(self, max_amount: float | None, ctx: RequestContext) -> bool:
        if max_amount is None:
            return True
        if ctx.amount is None:
            return False
        return ctx.amount <= max_amount

    def _location_matches(self, allowed: list[str] | None, ctx: RequestContext) -> bool:
        if allowed is None:
            return True
        if ctx.location is None:
            return False
        return ctx.location in allowed

    def _department_matches(self, department_id: str | int | None, ctx: RequestContext) -> bool:
        if department_id is None:
            return True
        if ctx.department_id is None:
            return False
        return str(department_id) == ctx.department_id
