"""
Event classification.

Derives category, severity and outcome from a dotted event name when the
caller does not supply them. A rule ending in "." matches a name
prefix (`auth.` matches `auth.login`); any other rule matches anywhere
in the name. Rules are evaluated in order and the first match wins.
"""

from typing import Optional

from ..schemas import Category, Outcome, Severity


CATEGORY_RULES: tuple[tuple[tuple[str, ...], Category], ...] = (
    (("auth.", "violation"), Category.GOVERNANCE),
    (("team.", "security.", "account."), Category.ACCESS),
)

SEVERITY_RULES: tuple[tuple[tuple[str, ...], Severity], ...] = (
    (("violation", "critical"), Severity.CRITICAL),
    (("flag", "change", "remove"), Severity.MATERIAL),
)

OUTCOME_RULES: tuple[tuple[tuple[str, ...], Outcome], ...] = (
    (("violation", "blocked", "denied"), Outcome.BLOCKED),
)


def _matches(event_name: str, needle: str) -> bool:
    if needle.endswith("."):
        return event_name.startswith(needle)
    return needle in event_name


def _match(event_name: str, rules, default):
    for needles, value in rules:
        if any(_matches(event_name, needle) for needle in needles):
            return value
    return default


def classify_category(event_name: str) -> Category:
    return _match(event_name, CATEGORY_RULES, Category.OPERATIONS)


def classify_severity(event_name: str) -> Severity:
    return _match(event_name, SEVERITY_RULES, Severity.INFO)


def classify_outcome(event_name: str) -> Outcome:
    return _match(event_name, OUTCOME_RULES, Outcome.ALLOWED)


def classify(
    event_name: str,
    category: Optional[Category] = None,
    severity: Optional[Severity] = None,
    outcome: Optional[Outcome] = None,
) -> tuple[Category, Severity, Outcome]:
    """Fill in whichever of category/severity/outcome the caller left out."""
    return (
        category or classify_category(event_name),
        severity or classify_severity(event_name),
        outcome or classify_outcome(event_name),
    )
