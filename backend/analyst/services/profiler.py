"""
Column type profiling.

A column is numerical only when every present value parses as a number once
currency symbols and thousands separators are stripped; anything else is
categorical.
"""
import logging
import math
import numbers
import re
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from analyst.core.performance import track_performance
from analyst.core.schemas import ColumnProfile, Row

logger = logging.getLogger(__name__)

CURRENCY_CHARS = re.compile(r'[$€,]')


def is_missing(value: Any) -> bool:
    """True for None, NaN and blank strings."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def parse_numeric(value: Any) -> Optional[float]:
    """
    Parse a cell as a number, or return None.

    "$1,200.50" and "€3" parse; booleans, blanks, "nan" and anything with
    letters do not.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Number):
        number = float(value)
        return None if math.isnan(number) else number
    text = CURRENCY_CHARS.sub('', str(value)).strip()
    if not text or '_' in text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def column_names(rows: List[Row]) -> List[str]:
    """Union of row keys in first-seen order."""
    return list(dict.fromkeys(key for row in rows for key in row))


def _profile_column(name: str, series: pd.Series) -> ColumnProfile:
    row_count = len(series)
    missing = series.map(is_missing).to_numpy(dtype=bool)
    parsed = series.map(parse_numeric).to_numpy(dtype=float)
    parsed_ok = ~np.isnan(parsed)

    present = ~missing
    if present.any() and parsed_ok[present].all():
        values = parsed[parsed_ok]
        return ColumnProfile(
            name=name,
            kind="numerical",
            value_range=(float(values.min()), float(values.max())),
            missing_percentage=(1 - parsed_ok.sum() / row_count) * 100,
        )

    # Distinct labels among present cells only
    labels = series[present].map(str)
    return ColumnProfile(
        name=name,
        kind="categorical",
        unique_count=int(labels.nunique()),
        missing_percentage=missing.sum() / row_count * 100,
    )


@track_performance("profile_columns")
def profile_columns(rows: List[Row]) -> List[ColumnProfile]:
    """
    Classify each column of ``rows`` and summarize it.

    Returns an empty list for empty input.
    """
    if not rows:
        return []

    profiles = []
    for name in column_names(rows):
        series = pd.Series([row.get(name) for row in rows], dtype=object, name=name)
        profiles.append(_profile_column(name, series))

    numerical = sum(1 for p in profiles if p.kind == "numerical")
    logger.info(
        f"Profiled {len(rows)} rows: {numerical} numerical, {len(profiles) - numerical} categorical columns"
    )
    return profiles


def merge_semantic_types(profiles: List[ColumnProfile], planned: List[ColumnProfile]) -> List[ColumnProfile]:
    """Carry semantic types declared by a preparation plan onto fresh profiles."""
    semantic: Dict[str, str] = {p.name: p.semantic_type for p in planned if p.semantic_type}
    if not semantic:
        return profiles
    return [
        p.model_copy(update={"semantic_type": semantic[p.name]}) if p.name in semantic else p
        for p in profiles
    ]
