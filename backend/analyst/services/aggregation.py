"""
Aggregation engine.

Executes an AnalysisPlan against the dataset. Grouped plans bucket rows by the
string form of their group column and reduce each bucket with sum, count or
avg; scatter plans project two numeric columns. Results are sorted
chronologically when the group keys look like quarters, months, weekdays or
dates, and by value (descending) otherwise.
"""
import logging
import math
import re
import warnings
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from analyst.core.config import get_settings
from analyst.core.errors import PlanError
from analyst.core.performance import track_performance
from analyst.core.schemas import AnalysisCard, AnalysisPlan, Row
from analyst.services.profiler import parse_numeric

logger = logging.getLogger(__name__)

OTHERS_LABEL = "Others"
COUNT_KEY = "count"

# Keys that come from missing cells are never grouped
_DROPPED_KEYS = frozenset(("undefined", "null"))
_MISSING = object()

QUARTER_TOKEN = re.compile(r"(?<![a-z])q\s*([1-4])(?!\d)")
YEAR_AFTER = re.compile(r"(?<!\d)'?(\d{4}|\d{2})(?!\d)")
YEAR_BEFORE = re.compile(r"(?<!\d)(\d{4}|\d{2})'?[\s\-/]*$")
LONG_YEAR = re.compile(r"(?<!\d)(\d{4})(?!\d)")
SHORT_YEAR = re.compile(r"(?<!\d)'?(\d{2})(?!\d)")
WORD_SPLIT = re.compile(r"[^a-z]+")
DATE_SHAPE = re.compile(r"[0-9]{1,4}[-/][0-9]{1,2}[-/][0-9]{1,4}")

MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

WEEKDAYS = {
    "mon": 1, "monday": 1, "tue": 2, "tues": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3, "thu": 4, "thur": 4, "thurs": 4, "thursday": 4,
    "fri": 5, "friday": 5, "sat": 6, "saturday": 6, "sun": 7, "sunday": 7,
}


def key_string(value: Any) -> str:
    """
    Stringify a group-by cell the way the planner sees it.

    Absent cells become "undefined", nulls "null", and integral floats lose
    their trailing ".0" so 2023.0 and 2023 land in the same bucket.
    """
    if value is _MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
    return str(value)


def _as_number(value: Any) -> float:
    number = parse_numeric(value)
    return 0.0 if number is None else number


# Chronological ordering

def _year(text: str, pivot: int) -> int:
    year = int(text)
    if len(text) == 2:
        year += 2000 if year < pivot else 1900
    return year


def _dictionary_token(value: str, dictionary: Dict[str, int]) -> Optional[str]:
    """The whole value, or the first alphabetic token of it, found in ``dictionary``."""
    text = value.strip().lower()
    if text in dictionary:
        return text
    for token in WORD_SPLIT.split(text):
        if token in dictionary:
            return token
    return None


def quarter_order(value: str, pivot: int = 50) -> Optional[int]:
    """
    year * 10 + quarter for keys like "Q1 2023", "2023 Q1", "Q1-2023" or "Q4'22".

    The year may sit on either side of the quarter token; without one the
    bare quarter number is returned.
    """
    text = value.strip().lower()
    match = QUARTER_TOKEN.search(text)
    if not match:
        return None
    quarter = int(match.group(1))
    year = YEAR_AFTER.search(text[match.end():]) or YEAR_BEFORE.search(text[:match.start()])
    if not year:
        return quarter
    return _year(year.group(1), pivot) * 10 + quarter


def month_order(value: str, pivot: int = 50) -> Optional[int]:
    """year * 100 + month for keys like "Jan 2024" or "2023-Mar", else the month alone."""
    token = _dictionary_token(value, MONTHS)
    if token is None:
        return None
    month = MONTHS[token]
    year = LONG_YEAR.search(value) or SHORT_YEAR.search(value)
    if not year:
        return month
    return _year(year.group(1), pivot) * 100 + month


def weekday_order(value: str) -> Optional[int]:
    token = _dictionary_token(value, WEEKDAYS)
    return None if token is None else WEEKDAYS[token]


def date_order(value: str) -> Optional[int]:
    """Epoch milliseconds for strings shaped like dates, else None."""
    if not DATE_SHAPE.search(value):
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            parsed = pd.to_datetime(value, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    if pd.isna(parsed):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert("UTC").tz_localize(None)
    return int(parsed.value // 1_000_000)


def _chronological_orderers(pivot: int) -> List[Callable[[str], Optional[int]]]:
    # Checked in priority order; the first one that matches enough of the sample wins
    return [
        lambda v: quarter_order(v, pivot),
        lambda v: month_order(v, pivot),
        weekday_order,
        date_order,
    ]


def chronological_sort(
    rows: List[Row],
    key: str,
    sample_size: Optional[int] = None,
    threshold: Optional[float] = None,
    pivot: Optional[int] = None,
) -> Optional[List[Row]]:
    """
    Sort rows ascending by a time-like ``key``, or return None when the keys
    do not look time-like. Keys that fail to parse sort last.
    """
    settings = get_settings()
    sample_size = sample_size or settings.chronological_sample_size
    threshold = threshold if threshold is not None else settings.chronological_match_threshold
    pivot = pivot if pivot is not None else settings.two_digit_year_pivot

    if len(rows) < 2:
        return list(rows)

    sample = [str(row.get(key, "")).strip().lower() for row in rows[:sample_size]]
    for orderer in _chronological_orderers(pivot):
        hits = sum(1 for value in sample if orderer(value) is not None)
        if hits / len(sample) >= threshold:
            def sort_key(row: Row, orderer=orderer) -> float:
                order = orderer(str(row.get(key, "")).strip().lower())
                return np.inf if order is None else order
            return sorted(rows, key=sort_key)
    return None


def sort_aggregated(rows: List[Row], group_key: str, value_key: str) -> List[Row]:
    chronological = chronological_sort(rows, group_key)
    if chronological is not None:
        return chronological
    return sorted(rows, key=lambda row: _as_number(row.get(value_key)), reverse=True)


# Plan execution

def _execute_scatter(rows: List[Row], plan: AnalysisPlan) -> List[Row]:
    x, y = plan.x_column, plan.y_column
    if not x or not y:
        raise PlanError(f'Scatter plot "{plan.title}" needs both x_column and y_column.')

    projected = []
    for row in rows:
        x_value = parse_numeric(row.get(x))
        y_value = parse_numeric(row.get(y))
        if x_value is not None and y_value is not None:
            projected.append({x: x_value, y: y_value})
    return projected


def _execute_grouped(rows: List[Row], plan: AnalysisPlan) -> List[Row]:
    group_key, aggregation = plan.group_by_column, plan.aggregation
    if not group_key or not aggregation:
        raise PlanError(f'Plan "{plan.title}" needs group_by_column and aggregation.')

    value_key = plan.value_column or COUNT_KEY
    keys: List[str] = []
    values: List[float] = []
    for row in rows:
        key = key_string(row.get(group_key, _MISSING))
        if key in _DROPPED_KEYS:
            continue
        if plan.value_column:
            value = parse_numeric(row.get(plan.value_column))
        elif aggregation == "count":
            value = 1.0
        else:
            value = None
        keys.append(key)
        values.append(np.nan if value is None else value)

    if not keys:
        return []

    frame = pd.DataFrame({"key": keys, "value": values})
    grouped = frame.groupby("key", sort=False)["value"]
    if aggregation == "sum":
        reduced = grouped.sum()
    elif aggregation == "count":
        reduced = grouped.count()
    else:
        reduced = grouped.mean().fillna(0.0)

    result = []
    for key, value in reduced.items():
        result.append({
            group_key: key,
            value_key: int(value) if aggregation == "count" else float(value),
        })
    return sort_aggregated(result, group_key, value_key)


@track_performance("execute_plan")
def execute_plan(rows: List[Row], plan: AnalysisPlan) -> List[Row]:
    """
    Run ``plan`` against ``rows``.

    Raises:
        PlanError: a scatter plan lacks an axis column, or a grouped plan
            lacks group_by_column or aggregation
    """
    if plan.chart_type == "scatter":
        result = _execute_scatter(rows, plan)
    else:
        result = _execute_grouped(rows, plan)
    logger.info(f'Executed plan "{plan.title}": {len(rows)} rows -> {len(result)} rows')
    return result


def apply_top_n_with_others(
    rows: List[Row],
    group_key: str,
    value_key: str,
    top_n: Optional[int],
) -> List[Row]:
    """
    Keep the ``top_n - 1`` largest rows and fold the rest into an "Others" row.

    No-op when ``top_n`` is None or there are no more than ``top_n`` rows.
    """
    if top_n is None or len(rows) <= top_n:
        return list(rows)
    if top_n < 1:
        raise ValueError("top_n must be at least 1")

    ranked = sorted(rows, key=lambda row: _as_number(row.get(value_key)), reverse=True)
    kept, folded = ranked[:top_n - 1], ranked[top_n - 1:]
    others = {group_key: OTHERS_LABEL, value_key: sum(_as_number(row.get(value_key)) for row in folded)}
    return kept + [others]


def card_view_rows(card: AnalysisCard) -> List[Row]:
    """
    Rows a chart should draw for ``card`` after its display settings:
    filter, Top-N with Others, hide-others, then hidden legend labels.
    """
    plan = card.plan
    rows: List[Row] = card.aggregated_rows

    if card.filter is not None:
        allowed = set(card.filter.allowed_values)
        rows = [row for row in rows if key_string(row.get(card.filter.column, _MISSING)) in allowed]

    if plan.chart_type == "scatter" or not plan.group_by_column:
        return list(rows)

    group_key = plan.group_by_column
    value_key = plan.value_column or COUNT_KEY
    if card.top_n is not None:
        rows = apply_top_n_with_others(rows, group_key, value_key, card.top_n)
        if card.hide_others:
            rows = [row for row in rows if row.get(group_key) != OTHERS_LABEL]

    if card.hidden_labels:
        hidden = set(card.hidden_labels)
        rows = [row for row in rows if key_string(row.get(group_key)) not in hidden]
    return list(rows)


def group_labels(card: AnalysisCard) -> List[str]:
    """Distinct group labels of a card, in result order."""
    key = card.plan.group_by_column
    if not key:
        return []
    labels: Dict[str, None] = {}
    for row in card.aggregated_rows:
        labels.setdefault(key_string(row.get(key)), None)
    return list(labels)
