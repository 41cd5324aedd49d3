"""Regional break rules.

Each region class owns one rule that yields both the payroll deduction and
the advisory severity, so the two can never disagree about thresholds.
All inputs and outputs are whole minutes.

Regions outside Germany and the UK do not borrow the German advisory tiers:
their only warning is red, raised on the days that are non-compliant.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .domain import RegionClass, UserProfile

SIX_HOURS = 6 * 60
NINE_HOURS = 9 * 60
TEN_HOURS = 10 * 60

GERMAN_BREAK_TIERS: Tuple[Tuple[int, int], ...] = (
    (NINE_HOURS, 45),
    (SIX_HOURS, 30),
)
UK_MIN_BREAK = 20


class Severity(str, enum.Enum):
    NONE = "none"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"


@dataclass(frozen=True, slots=True)
class ComplianceOutcome:
    deducted_break: int = 0
    is_compliant: bool = True
    severity: Severity = Severity.NONE


COMPLIANT = ComplianceOutcome()


def german_required_break(gross: int) -> int:
    for threshold, required in GERMAN_BREAK_TIERS:
        if gross > threshold:
            return required
    return 0


def _contractor_rule(gross: int, taken_break: int) -> ComplianceOutcome:
    return COMPLIANT


def _german_rule(gross: int, taken_break: int) -> ComplianceOutcome:
    required = german_required_break(gross)
    shortfall = max(required - taken_break, 0)
    if gross > TEN_HOURS:
        # Working time above ten hours is flagged even when breaks are complete.
        severity = Severity.RED
    elif shortfall and required == 45:
        severity = Severity.ORANGE
    elif shortfall:
        severity = Severity.YELLOW
    else:
        severity = Severity.NONE
    return ComplianceOutcome(deducted_break=shortfall, is_compliant=shortfall == 0, severity=severity)


def _uk_rule(gross: int, taken_break: int) -> ComplianceOutcome:
    if gross > SIX_HOURS and taken_break < UK_MIN_BREAK:
        return ComplianceOutcome(is_compliant=False, severity=Severity.YELLOW)
    return COMPLIANT


def _default_rule(gross: int, taken_break: int) -> ComplianceOutcome:
    if gross > TEN_HOURS and taken_break == 0:
        return ComplianceOutcome(is_compliant=False, severity=Severity.RED)
    return COMPLIANT


RULES: Dict[RegionClass, Callable[[int, int], ComplianceOutcome]] = {
    RegionClass.CONTRACTOR: _contractor_rule,
    RegionClass.GERMANY: _german_rule,
    RegionClass.UK: _uk_rule,
    RegionClass.DEFAULT: _default_rule,
}


def evaluate(gross: int, taken_break: int, profile: Optional[UserProfile]) -> ComplianceOutcome:
    """Apply the rule of the profile's region class.

    Without a profile nothing is deducted and the day counts as compliant.
    """
    if profile is None:
        return COMPLIANT
    rule = RULES.get(profile.region_class, _default_rule)
    return rule(max(gross, 0), max(taken_break, 0))


def break_deduction(gross: int, taken_break: int, profile: Optional[UserProfile]) -> Tuple[int, bool]:
    outcome = evaluate(gross, taken_break, profile)
    return outcome.deducted_break, outcome.is_compliant


def advisory_severity(gross: int, taken_break: int, profile: Optional[UserProfile]) -> Severity:
    return evaluate(gross, taken_break, profile).severity
