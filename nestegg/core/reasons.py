"""Reason taxonomy for reported under-saving incidents.

The bucketing below is a placeholder taxonomy pending product input: exact
slugs match first, then keyword rules in declaration order, then ``other``.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

OTHER = "other"

REASON_CATEGORIES: Tuple[str, ...] = (
    "unexpected_expense",
    "income_reduction",
    "overspending",
    "forgot",
    OTHER,
)

SPENDING_CATEGORIES = frozenset({"overspending"})

REASON_LABELS: Dict[str, str] = {
    "unexpected_expense": "unexpected expenses",
    "income_reduction": "a drop in income",
    "overspending": "overspending",
    "forgot": "forgetting to contribute",
    OTHER: "other reasons",
}

_KEYWORD_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "unexpected_expense",
        ("unexpected", "emergency", "bill", "repair", "medical", "doctor", "hospital", "vet", "surprise"),
    ),
    (
        "income_reduction",
        ("income", "salary", "pay cut", "paycut", "laid off", "layoff", "lost job", "unemploy", "hours cut", "bonus"),
    ),
    (
        "overspending",
        ("overspen", "spent", "spending", "shopping", "impulse", "eating out", "restaurant", "holiday", "vacation", "treat"),
    ),
    (
        "forgot",
        ("forgot", "forget", "missed", "reminder", "late transfer"),
    ),
)

_UNDER_SAVING_TIPS: Dict[str, List[str]] = {
    "unexpected_expense": [
        "Consider increasing your safety pot",
        "Review your emergency fund allocation",
    ],
    "income_reduction": [
        "Adjust goal targets to match new income",
        "Consider temporary goal postponement",
    ],
    "overspending": [
        "Review your monthly budget",
        "Set up spending alerts",
    ],
    "forgot": [
        "Set up automatic contribution reminders",
        "Schedule contributions on payday",
    ],
    OTHER: [
        "Review your financial priorities",
        "Consider adjusting goal timelines",
    ],
}

_WHITESPACE_RE = re.compile(r"[\s_\-]+")


def _clean(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.strip().lower()).strip()


def normalize_reason(reason: Optional[str], context: Optional[Dict[str, Any]] = None) -> str:
    """Map free-text reason (plus optional context) onto a taxonomy bucket."""
    cleaned = _clean(reason or "")
    notes = _clean(str((context or {}).get("additional_notes") or ""))
    if not cleaned and not notes:
        return OTHER

    slug = cleaned.replace(" ", "_")
    if slug in REASON_CATEGORIES:
        return slug

    for haystack in (cleaned, notes):
        if not haystack:
            continue
        for category, keywords in _KEYWORD_RULES:
            if any(keyword in haystack for keyword in keywords):
                return category
    return OTHER


def is_spending_related(category: str) -> bool:
    return category in SPENDING_CATEGORIES


def tips_for(category: str) -> List[str]:
    return list(_UNDER_SAVING_TIPS.get(category, _UNDER_SAVING_TIPS[OTHER]))


def label_for(category: Optional[str]) -> str:
    return REASON_LABELS.get(category or OTHER, REASON_LABELS[OTHER])
