#!/usr/bin/env python3
"""
Roast Curve Preparation - Consolidated Main Script

Turns a roast-logger export (CSV, or a ZIP holding one) into a normalized roast
curve: aligned time base, forward-filled signals, rate of rise, roast events,
phase split, and a chart whose event labels do not collide.
This consolidated version contains all functionality in a single file for easy deployment.

Author: Coffee Analytics Team
Version: 0.2.0
"""

import argparse
import io
import math
import re
import sys
import warnings
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.font_manager import FontProperties
from matplotlib.ticker import FuncFormatter, MultipleLocator
from scipy import stats


# =============================================================================
# CONFIGURATION
# =============================================================================

HEADER_SCAN_LIMIT = 100
TIME_PROBE_ROWS = 80

# A header candidate needs a time column that looks like a real time axis
MIN_FINITE_TIMES = 30
MIN_DISTINCT_TIMES = 30
MIN_TIME_RANGE_SEC = 60.0
MIN_INCREASING_FRACTION = 0.7

MINUTE_DELTA_LIMIT = 0.2
MINUTE_MAX_TIME = 60.0

ROR_WINDOW_SEC = 30.0
POWER_MAX_LEVEL = 10
FAN_MAX_LEVEL = 15
PERCENT_FLOOR = 20.0

YELLOW_TEMP_C = 150.0
TP_MIN_TIME_SEC = 20.0

DEFAULT_MAX_ROR = 25.0
ROR_CLAMP = (1.0, 80.0)
RIGHT_AXIS_CLAMP = (10, 60)
TEMP_TO_ROR_RATIO = 10

LABEL_LANES = 3
LABEL_FONT_SIZE = 9
CONTROL_DISPLAY_SCALE = 5

CHARGE = "CHARGE"
YELLOW = "YELLOW"
FIRST_CRACK = "1ST_CRACK"
TURNING_POINT = "TP"

EVENT_TITLES = {
    CHARGE: "CHARGE",
    YELLOW: "YELLOW",
    FIRST_CRACK: "1st CRACK",
    TURNING_POINT: "TP",
}


# =============================================================================
# ERRORS
# =============================================================================

class RoastDataError(ValueError):
    """Base class for tables that cannot be turned into a roast curve."""


class MissingRequiredColumns(RoastDataError):
    """No header row maps both a time column and a bean temperature column."""


NoHeaderFound = MissingRequiredColumns


class NoValidTimeData(RoastDataError):
    """Every time cell is unparseable."""


class NoBaselineTimestamp(RoastDataError):
    """No finite timestamp exists to anchor t=0.

    normalize_series() reports this case as NoValidTimeData; the class lets
    callers name it in except clauses.
    """


class EmptySeries(RoastDataError):
    """All rows were dropped while building the sample sequence.

    Covered by NoValidTimeData inside normalize_series(), like NoBaselineTimestamp.
    """


# =============================================================================
# VALUE PARSERS MODULE
# =============================================================================

_LEADING_FLOAT = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)")
_PLAIN_FLOAT = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def _leading_float(text: str) -> float:
    match = _LEADING_FLOAT.match(text)
    return float(match.group()) if match else np.nan


def _cleaned_float(text: str) -> float:
    """Plain decimal or exponent notation as is, anything else via the strip rule."""
    if _PLAIN_FLOAT.fullmatch(text):
        return float(text)
    return _leading_float(re.sub(r"[^0-9.\-]", "", text))


def _numeric_cell(value: Any) -> Optional[float]:
    """Return the cell as a float when it is already numeric, else None."""
    if isinstance(value, (bool, np.bool_)):
        return np.nan
    if isinstance(value, (int, float, np.integer, np.floating)):
        value = float(value)
        return value if math.isfinite(value) else np.nan
    return None


def parse_time(value: Any) -> float:
    """
    Convert a time cell into seconds.

    Numeric cells pass through. Strings with colons are read as [hh:]mm:ss,
    right-aligned, with every segment stripped down to digits and dots. Other
    strings are read as a plain number (exponent notation included), or after
    removing unit and locale noise.

    Args:
        value: Raw cell value

    Returns:
        Seconds as float, or NaN when the cell cannot be read
    """
    if value is None:
        return np.nan
    number = _numeric_cell(value)
    if number is not None:
        return number

    text = str(value).strip()
    if not text:
        return np.nan

    if ":" in text:
        parts = []
        for segment in text.split(":"):
            part = _leading_float(re.sub(r"[^0-9.]", "", segment))
            parts.append(0.0 if np.isnan(part) else part)
        hours, minutes, seconds = ([0.0, 0.0] + parts)[-3:]
        return hours * 3600 + minutes * 60 + seconds

    return _cleaned_float(text)


def parse_number(value: Any) -> float:
    """
    Convert a measurement cell (e.g. "205.3°C", " 50 %") into a float.

    Args:
        value: Raw cell value

    Returns:
        Parsed number, or NaN when the cell cannot be read
    """
    if value is None:
        return np.nan
    number = _numeric_cell(value)
    if number is not None:
        return number
    return _cleaned_float(str(value).strip())


def forward_fill(values: Union[Sequence[float], np.ndarray], initial: float = 0.0) -> np.ndarray:
    """
    Replace every non-finite value with the last finite value before it.

    Args:
        values: Numeric series with gaps (NaN or inf)
        initial: Fill value used before the first finite value

    Returns:
        Gap-free float array of the same length
    """
    series = pd.Series(np.asarray(values, dtype=float))
    series = series.where(np.isfinite(series))
    return series.ffill().fillna(initial).to_numpy(dtype=float)


# =============================================================================
# TABLE LOCATOR MODULE
# =============================================================================

_KEY_STRIP = re.compile(r"[^a-z0-9\u4e00-\u9fff]+")


def normalize_key(text: Any) -> str:
    """Lower-case a header cell and keep only ASCII alphanumerics and CJK ideographs."""
    key = str(text).lower().replace("temperature", "temp")
    return _KEY_STRIP.sub("", key)


def _exact(words: Sequence[str], exclude: Sequence[str] = ()) -> Callable[[str], bool]:
    vocabulary = frozenset(words)

    def predicate(key: str) -> bool:
        return key in vocabulary and not any(bad in key for bad in exclude)

    return predicate


def _contains(words: Sequence[str], exclude: Sequence[str] = ()) -> Callable[[str], bool]:
    def predicate(key: str) -> bool:
        return any(word in key for word in words) and not any(bad in key for bad in exclude)

    return predicate


# Scanned in order; the first matching column claims the role
COLUMN_RULES: Tuple[Tuple[str, Callable[[str], bool]], ...] = (
    ("time", _exact(["time", "timesec", "sec", "seconds", "時間", "時刻"], exclude=["totaltime"])),
    ("bt", _contains(["beantemp", "bt", "豆溫", "beantemperature"], exclude=["loadbean", "outbean"])),
    ("et", _contains(["exhaust", "et", "環境", "排氣", "exhausttemp"], exclude=["bean"])),
    ("power", _contains(["power", "火力", "heater"])),
    ("fan", _contains(["fan", "風門", "air"])),
    ("event", _contains(["event", "模式", "roastmode", "事件"])),
)


def build_mapping(headers: Sequence[Any]) -> Dict[str, Optional[int]]:
    """
    Map logical roles (time, bt, et, power, fan, event) to column indices.

    Args:
        headers: Cells of the row treated as header

    Returns:
        Role -> column index, or None when no header matches the role
    """
    keys = [normalize_key(header) for header in headers]
    mapping: Dict[str, Optional[int]] = {}
    for role, predicate in COLUMN_RULES:
        mapping[role] = next((i for i, key in enumerate(keys) if key and predicate(key)), None)
    return mapping


def _probe_time_axis(rows: Sequence[Sequence[Any]], column: int) -> Dict[str, float]:
    times = np.array(
        [parse_time(row[column]) if column < len(row) else np.nan for row in rows],
        dtype=float,
    )
    finite = times[np.isfinite(times)]
    if finite.size == 0:
        return {"finite": 0, "distinct": 0, "range": 0.0, "increasing": 0.0}

    deltas = np.diff(finite)
    return {
        "finite": int(finite.size),
        "distinct": int(np.unique(finite).size),
        "range": float(finite.max() - finite.min()),
        "increasing": float(np.mean(deltas > 0)) if deltas.size else 0.0,
    }


def _is_time_axis(probe: Dict[str, float]) -> bool:
    return (
        probe["finite"] >= MIN_FINITE_TIMES
        and probe["distinct"] >= MIN_DISTINCT_TIMES
        and probe["range"] >= MIN_TIME_RANGE_SEC
        and probe["increasing"] > MIN_INCREASING_FRACTION
    )


def locate_table(
    rows: Sequence[Sequence[Any]],
    scan_limit: int = HEADER_SCAN_LIMIT,
    probe_rows: int = TIME_PROBE_ROWS,
) -> Dict[str, Any]:
    """
    Find the header row and column mapping of a roast-logger table.

    Every row among the first `scan_limit` is tried as header. Rows mapping
    both time and bean temperature are scored by how convincingly the rows
    below them form a time axis; the best qualifying row wins. When none
    qualifies, the first mapped row (row 0 if it maps) is used with a warning.

    Args:
        rows: Tokenized table rows
        scan_limit: Number of leading rows considered as header
        probe_rows: Number of body rows sampled to judge the time column

    Returns:
        Dictionary with header_row_index, mapping, headers, body_rows and
        fallback_reason (None unless the fallback was used)

    Raises:
        MissingRequiredColumns: If no row maps both time and bean temperature
    """
    best: Optional[Tuple[float, int, Dict[str, Optional[int]]]] = None
    first_mapped: Optional[Tuple[int, Dict[str, Optional[int]]]] = None
    rejected: List[str] = []

    for i, row in enumerate(rows[:scan_limit]):
        mapping = build_mapping(row)
        if mapping["time"] is None or mapping["bt"] is None:
            continue
        if first_mapped is None:
            first_mapped = (i, mapping)

        probe = _probe_time_axis(rows[i + 1:i + 1 + probe_rows], mapping["time"])
        if not _is_time_axis(probe):
            rejected.append(
                f"row {i}: {probe['finite']} finite/{probe['distinct']} distinct times, "
                f"range {probe['range']:.0f}s, {probe['increasing']:.0%} increasing"
            )
            continue

        score = probe["distinct"] + probe["range"] + probe["increasing"] * 100
        if best is None or score > best[0]:
            best = (score, i, mapping)

    if first_mapped is None:
        raise MissingRequiredColumns(
            f"No row among the first {scan_limit} contains both a time and a bean temperature column."
        )

    fallback_reason = None
    if best is not None:
        _, index, mapping = best
    else:
        index, mapping = first_mapped
        fallback_reason = "no header candidate has a usable time axis (" + "; ".join(rejected[:3]) + ")"
        warnings.warn(f"Using row {index} as header: {fallback_reason}")

    return {
        "header_row_index": index,
        "mapping": mapping,
        "headers": [str(cell) for cell in rows[index]],
        "body_rows": list(rows[index + 1:]),
        "fallback_reason": fallback_reason,
    }


# =============================================================================
# SERIES NORMALIZER MODULE
# =============================================================================

def _cell(row: Sequence[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def infer_time_unit(times: Union[Sequence[float], np.ndarray]) -> Dict[str, Any]:
    """
    Decide whether raw timestamps are minutes or seconds.

    Loggers emitting fractional minutes have tiny steps and a small maximum;
    such a column is rescaled by 60.

    Args:
        times: Raw parsed time values in row order

    Returns:
        Dictionary with unit, scale, median_delta and max_time
    """
    times = np.asarray(times, dtype=float)
    finite = times[np.isfinite(times)]
    deltas = np.diff(finite)
    positive = deltas[deltas > 0]

    median_delta = float(np.median(positive)) if positive.size else np.nan
    max_time = float(finite.max()) if finite.size else np.nan
    minutes = bool(positive.size) and median_delta < MINUTE_DELTA_LIMIT and max_time < MINUTE_MAX_TIME

    return {
        "unit": "minutes" if minutes else "seconds",
        "scale": 60.0 if minutes else 1.0,
        "median_delta": median_delta,
        "max_time": max_time,
    }


def normalize_levels(values: Union[Sequence[float], np.ndarray], max_level: int) -> np.ndarray:
    """
    Put a power/fan column onto an integer level scale 0..max_level.

    Columns whose 95th percentile or maximum lies in (20, 100] are read as
    percentages and scaled down; anything else is taken as raw levels.

    Args:
        values: Forward-filled control values
        max_level: Top of the level scale

    Returns:
        Integer levels clamped to [0, max_level]
    """
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return np.zeros(0, dtype=int)

    p95 = float(np.percentile(values, 95))
    peak = float(values.max())
    if any(PERCENT_FLOOR < level <= 100 for level in (p95, peak)):
        values = values * max_level / 100.0

    return np.clip(np.floor(values + 0.5), 0, max_level).astype(int)


def _number_column(rows: Sequence[Sequence[Any]], index: Optional[int]) -> np.ndarray:
    if index is None:
        return np.full(len(rows), np.nan)
    return np.array([parse_number(_cell(row, index)) for row in rows], dtype=float)


def normalize_series(body_rows: Sequence[Sequence[Any]], mapping: Dict[str, Optional[int]]) -> pd.DataFrame:
    """
    Build the ordered sample table from body rows.

    Args:
        body_rows: Rows below the header
        mapping: Column mapping from build_mapping()

    Returns:
        DataFrame with columns t, bt, et, power, fan, event sorted by t;
        unit/baseline decisions are kept in DataFrame.attrs

    Raises:
        MissingRequiredColumns: If time or bean temperature is not mapped
        NoValidTimeData: If no time cell can be parsed, which also leaves no
            baseline to anchor t=0 and no sample to keep
    """
    if mapping.get("time") is None or mapping.get("bt") is None:
        raise MissingRequiredColumns("A time column and a bean temperature column are required.")

    rows = [row for row in body_rows if not _is_blank(_cell(row, mapping["time"]))]
    raw_time = np.array([parse_time(_cell(row, mapping["time"])) for row in rows], dtype=float)
    if not np.isfinite(raw_time).any():
        raise NoValidTimeData("No row contains a readable time value.")

    unit = infer_time_unit(raw_time)
    raw_time = raw_time * unit["scale"]

    events = []
    for row in rows:
        value = _cell(row, mapping.get("event"))
        events.append("" if value is None else str(value).strip())

    charge_index = next((i for i, text in enumerate(events) if "charge" in text.lower()), None)
    if charge_index is not None and np.isfinite(raw_time[charge_index]):
        baseline, baseline_source = float(raw_time[charge_index]), "charge"
    else:
        baseline, baseline_source = float(np.nanmin(raw_time)), "first-sample"

    samples = pd.DataFrame({
        "t": np.maximum(raw_time - baseline, 0.0),
        "bt": forward_fill(_number_column(rows, mapping["bt"]), 0.0),
        "et": forward_fill(_number_column(rows, mapping.get("et")), 0.0),
        "power": normalize_levels(forward_fill(_number_column(rows, mapping.get("power")), 0.0), POWER_MAX_LEVEL),
        "fan": normalize_levels(forward_fill(_number_column(rows, mapping.get("fan")), 0.0), FAN_MAX_LEVEL),
        "event": events,
    })

    samples = samples[np.isfinite(samples["t"])]
    samples = samples.sort_values("t", kind="mergesort").reset_index(drop=True)

    samples.attrs = {
        "time_unit": unit["unit"],
        "median_delta": unit["median_delta"],
        "max_time": unit["max_time"],
        "baseline_source": baseline_source,
        "baseline_time": baseline,
    }
    return samples


# =============================================================================
# RATE OF RISE MODULE
# =============================================================================

_DEGENERATE_TOLERANCE = 1e-12


def compute_ror(samples: pd.DataFrame, window: float = ROR_WINDOW_SEC) -> np.ndarray:
    """
    Rate of rise (°C/min) from a trailing-window linear regression of BT on t.

    The window [t_i - window, t_i] is maintained with two pointers and running
    sums, so the whole series costs O(n). Values stay undefined (NaN) until the
    first positive slope is seen; from then on every slope is reported.

    Args:
        samples: Sample table sorted by t
        window: Trailing window length in seconds

    Returns:
        Array aligned with samples, NaN where the RoR is undefined
    """
    t = samples["t"].to_numpy(dtype=float)
    bt = samples["bt"].to_numpy(dtype=float)
    n = len(t)
    ror = np.full(n, np.nan)

    start = end = count = 0
    sum_t = sum_bt = sum_tt = sum_tbt = 0.0
    latched = False

    for i in range(n):
        current = t[i]
        while end < n and t[end] <= current:
            sum_t += t[end]
            sum_bt += bt[end]
            sum_tt += t[end] * t[end]
            sum_tbt += t[end] * bt[end]
            count += 1
            end += 1
        while start < end and t[start] < current - window:
            sum_t -= t[start]
            sum_bt -= bt[start]
            sum_tt -= t[start] * t[start]
            sum_tbt -= t[start] * bt[start]
            count -= 1
            start += 1

        if count < 2:
            continue
        denominator = count * sum_tt - sum_t * sum_t
        if denominator <= _DEGENERATE_TOLERANCE * count * sum_tt:
            continue

        slope = (count * sum_tbt - sum_t * sum_bt) / denominator * 60.0
        if slope > 0:
            latched = True
        if latched:
            ror[i] = slope

    return ror


def compute_ror_reference(samples: pd.DataFrame, window: float = ROR_WINDOW_SEC) -> np.ndarray:
    """Same result as compute_ror(), refitting every window from scratch (O(n*w))."""
    t = samples["t"].to_numpy(dtype=float)
    bt = samples["bt"].to_numpy(dtype=float)
    ror = np.full(len(t), np.nan)
    latched = False

    for i, current in enumerate(t):
        mask = (t >= current - window) & (t <= current)
        if mask.sum() < 2 or np.ptp(t[mask]) == 0:
            continue
        slope = stats.linregress(t[mask], bt[mask]).slope * 60.0
        if slope > 0:
            latched = True
        if latched:
            ror[i] = slope

    return ror


def ror_axis_limits(ror: Union[Sequence[float], np.ndarray]) -> Tuple[float, int, int]:
    """
    Derive chart axis ceilings from the RoR series.

    Args:
        ror: RoR values (NaN allowed)

    Returns:
        (max_positive_ror, right_max, temp_max)
    """
    ror = np.asarray(ror, dtype=float)
    positive = ror[np.isfinite(ror) & (ror > 0)]
    if positive.size:
        max_positive = float(np.clip(positive.max(), *ROR_CLAMP))
    else:
        max_positive = DEFAULT_MAX_ROR

    right_max = int(np.clip(math.floor(max_positive) + 5, *RIGHT_AXIS_CLAMP))
    return max_positive, right_max, right_max * TEMP_TO_ROR_RATIO


# =============================================================================
# EVENT DETECTOR MODULE
# =============================================================================

EVENT_KEYWORDS = (
    ("YELLOW", YELLOW),
    ("1ST", FIRST_CRACK),
    ("CHARGE", CHARGE),
)


def _event_label(text: str) -> Optional[str]:
    upper = text.upper()
    for keyword, label in EVENT_KEYWORDS:
        if keyword in upper:
            return label
    if upper.strip() == TURNING_POINT or "TURNING" in upper:
        return TURNING_POINT
    return None


def _make_event(samples: pd.DataFrame, index: int, label: str) -> Dict[str, Any]:
    return {
        "index": int(index),
        "t": float(samples["t"].iat[index]),
        "bt": float(samples["bt"].iat[index]),
        "label": label,
    }


def find_turning_point(samples: pd.DataFrame, min_time: float = TP_MIN_TIME_SEC) -> Optional[int]:
    """
    Index of the post-charge temperature dip.

    Args:
        samples: Sample table sorted by t
        min_time: Earliest time considered; the whole series is used when no
            sample reaches it

    Returns:
        Index of the lowest BT, or None for an empty table
    """
    t = samples["t"].to_numpy(dtype=float)
    bt = samples["bt"].to_numpy(dtype=float)
    finite = np.isfinite(bt)

    candidates = np.flatnonzero(finite & (t >= min_time))
    if candidates.size == 0:
        candidates = np.flatnonzero(finite)
    if candidates.size == 0:
        return None
    return int(candidates[np.argmin(bt[candidates])])


def detect_events(samples: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    Collect roast events from the event column and the BT curve.

    Labelled events keep their first occurrence per label; a turning point is
    synthesized from the BT minimum only when none is labelled.

    Args:
        samples: Sample table sorted by t

    Returns:
        Events ({index, t, bt, label}) sorted by t
    """
    events: List[Dict[str, Any]] = []
    seen = set()

    for index, text in enumerate(samples["event"]):
        label = _event_label(str(text))
        if label is None or label in seen:
            continue
        seen.add(label)
        events.append(_make_event(samples, index, label))

    if TURNING_POINT not in seen:
        tp_index = find_turning_point(samples)
        if tp_index is not None:
            events.append(_make_event(samples, tp_index, TURNING_POINT))

    events.sort(key=lambda event: event["t"])
    return events


def estimate_yellow_crossing(samples: pd.DataFrame, threshold: float = YELLOW_TEMP_C) -> Optional[Dict[str, float]]:
    """First time BT crosses `threshold` from below, linearly interpolated."""
    t = samples["t"].to_numpy(dtype=float)
    bt = samples["bt"].to_numpy(dtype=float)
    if len(t) < 2:
        return None

    hits = np.flatnonzero((bt[:-1] < threshold) & (bt[1:] >= threshold))
    if hits.size == 0:
        return None

    i = int(hits[0])
    fraction = (threshold - bt[i]) / (bt[i + 1] - bt[i])
    return {"t": float(t[i] + fraction * (t[i + 1] - t[i])), "bt": float(threshold)}


# =============================================================================
# PHASE SEGMENTER MODULE
# =============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_time_label(seconds: float) -> str:
    """Format seconds as mm:ss."""
    if not np.isfinite(seconds):
        return "00:00"
    total = max(0, _round_half_up(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def _clamp_duration(value: float, total: float) -> float:
    if not np.isfinite(value) or value < 0:
        return 0.0
    return float(min(value, total))


def _first_event_time(events: Sequence[Dict[str, Any]], label: str) -> Optional[float]:
    return next((event["t"] for event in events if event["label"] == label), None)


def build_phases(samples: pd.DataFrame, events: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Split the roast into drying (A), Maillard (B) and development (C).

    Durations are clamped to [0, total] one by one, so inconsistent milestones
    (yellow after first crack) can make A + B + C differ from the total.

    Args:
        samples: Sample table sorted by t
        events: Events from detect_events()

    Returns:
        Phase durations, percentages, mm:ss labels and display texts
    """
    total = float(samples["t"].iloc[-1]) if len(samples) else 0.0

    yellow = _first_event_time(events, YELLOW)
    yellow_source = "event"
    if yellow is None:
        crossing = estimate_yellow_crossing(samples)
        if crossing is not None:
            yellow, yellow_source = crossing["t"], "crossing"
        else:
            yellow, yellow_source = total / 3, "default"

    first_crack = _first_event_time(events, FIRST_CRACK)
    if first_crack is None:
        first_crack = total * 2 / 3

    durations = {
        "a": _clamp_duration(yellow, total),
        "b": _clamp_duration(first_crack - yellow, total),
        "c": _clamp_duration(total - first_crack, total),
    }

    phases: Dict[str, Any] = {}
    for key, duration in durations.items():
        phases[key] = duration
        phases[f"{key}_pct"] = _round_half_up(duration / total * 100) if total else 0
        phases[f"{key}_label"] = format_time_label(duration)

    drop_bt = float(samples["bt"].iloc[-1]) if len(samples) else 0.0
    phases.update({
        "total": total,
        "yellow_time": float(yellow),
        "yellow_source": yellow_source,
        "first_crack_time": float(first_crack),
        "drop_time": total,
        "drop_bt": drop_bt,
        "display": " | ".join(
            f"{key.upper()} {phases[key + '_pct']}% {phases[key + '_label']}" for key in durations
        ),
        "drop_text": f"drop {format_time_label(total)} / BT {_round_half_up(drop_bt)}°C",
    })
    return phases


# =============================================================================
# LABEL LAYOUT MODULE
# =============================================================================

@dataclass(frozen=True)
class Box:
    """Axis-aligned rectangle in screen pixels (y grows downwards)."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.left + self.right) / 2, (self.top + self.bottom) / 2)

    def overlaps(self, other: "Box") -> bool:
        return (
            self.left < other.right and other.left < self.right
            and self.top < other.bottom and other.top < self.bottom
        )


@dataclass(frozen=True)
class LayoutContext:
    """What a scoring function may look at for one candidate box."""

    placed: Tuple[Box, ...]
    curves: Tuple[np.ndarray, ...]
    lane: int
    anchor: Tuple[float, float]


ScoreFn = Callable[[Box, LayoutContext], float]
MeasureFn = Callable[[str], Tuple[float, float]]


def approximate_text_size(text: str, font_size: float = LABEL_FONT_SIZE) -> Tuple[float, float]:
    """Rough text extent in pixels for layouts without a renderer."""
    return 0.6 * font_size * len(text), 1.2 * font_size


def overlap_score(box: Box, context: LayoutContext) -> float:
    """Number of already placed boxes in the lane that the candidate overlaps."""
    return float(sum(box.overlaps(other) for other in context.placed))


def curve_aware_score(box: Box, context: LayoutContext) -> float:
    """
    Box overlaps first, then curve points covered by the box.

    Curve hits add less than 1, so one fewer overlap always beats any number
    of curve hits.
    """
    hits = 0
    for points in context.curves:
        if len(points) == 0:
            continue
        inside = (
            (points[:, 0] >= box.left) & (points[:, 0] <= box.right)
            & (points[:, 1] >= box.top) & (points[:, 1] <= box.bottom)
        )
        hits += int(inside.sum())
    return overlap_score(box, context) + hits / (hits + 1.0)


class LabelLayoutEngine:
    """
    Greedy lane-based placement for two-line event labels.

    Lanes are horizontal bands stacked from the top of the plot area. Events
    are handled in time order; each takes the first candidate (lane order,
    then offset order) that scores zero, or else the lowest-scoring one. This
    is a best-effort heuristic: it never fails and never backtracks.
    """

    def __init__(
        self,
        plot_box: Box,
        n_lanes: int = LABEL_LANES,
        offsets: Sequence[float] = (0.0,),
        measure: Optional[MeasureFn] = None,
        score: Optional[ScoreFn] = None,
        lane_gap: float = 4.0,
        padding: float = 3.0,
    ):
        if n_lanes < 1:
            raise ValueError("n_lanes must be at least 1")
        if not offsets:
            raise ValueError("offsets must not be empty")
        self.plot_box = plot_box
        self.n_lanes = n_lanes
        self.offsets = tuple(offsets)
        self.measure = measure or approximate_text_size
        self.score = score or overlap_score
        self.lane_gap = lane_gap
        self.padding = padding

    @staticmethod
    def label_lines(event: Dict[str, Any]) -> Tuple[str, str]:
        title = EVENT_TITLES.get(event["label"], str(event["label"]))
        return f"{title} {format_time_label(event['t'])}", f"{event['bt']:.1f}°C"

    def _box_size(self, lines: Sequence[str]) -> Tuple[float, float]:
        extents = [self.measure(line) for line in lines]
        width = max(w for w, _ in extents) + 2 * self.padding
        height = sum(h for _, h in extents) + 2 * self.padding
        return width, height

    def _candidate(self, center_x: float, top: float, width: float, height: float) -> Box:
        bounds = self.plot_box
        left = min(center_x - width / 2, bounds.right - width)
        left = max(left, bounds.left)
        return Box(left, top, left + width, top + height)

    def place(
        self,
        events: Sequence[Dict[str, Any]],
        x_of_t: Callable[[float], float],
        y_of_temp: Callable[[float], float],
        curves: Sequence[Union[np.ndarray, Sequence[Tuple[float, float]]]] = (),
    ) -> List[Dict[str, Any]]:
        """
        Assign every event label a box.

        Args:
            events: Events from detect_events()
            x_of_t: Maps seconds to a screen x coordinate
            y_of_temp: Maps °C to a screen y coordinate (downwards)
            curves: Screen-space polylines (n x 2) the scorer may avoid

        Returns:
            One placement per event, in time order: event, lines, lane, box,
            anchor, leader (box centre -> anchor) and score
        """
        ordered = sorted(events, key=lambda event: event["t"])
        if not ordered:
            return []

        texts = [self.label_lines(event) for event in ordered]
        sizes = [self._box_size(lines) for lines in texts]
        pitch = max(height for _, height in sizes) + self.lane_gap
        curve_points = tuple(np.asarray(curve, dtype=float).reshape(-1, 2) for curve in curves)
        lanes: List[List[Box]] = [[] for _ in range(self.n_lanes)]

        placements = []
        for event, lines, (width, height) in zip(ordered, texts, sizes):
            anchor = (float(x_of_t(event["t"])), float(y_of_temp(event["bt"])))
            best: Optional[Tuple[float, int, Box]] = None

            for lane in range(self.n_lanes):
                top = self.plot_box.top + self.lane_gap + lane * pitch
                context = LayoutContext(tuple(lanes[lane]), curve_points, lane, anchor)
                for offset in self.offsets:
                    box = self._candidate(anchor[0] + offset, top, width, height)
                    score = float(self.score(box, context))
                    if best is None or score < best[0]:
                        best = (score, lane, box)
                    if score <= 0:
                        break
                if best[0] <= 0:
                    break

            score, lane, box = best
            lanes[lane].append(box)
            placements.append({
                "event": event,
                "lines": lines,
                "lane": lane,
                "box": box,
                "anchor": anchor,
                "leader": (box.center, anchor),
                "score": score,
            })

        return placements


# =============================================================================
# PIPELINE
# =============================================================================

def prepare_series(
    rows: Sequence[Sequence[Any]],
    headers: Optional[Sequence[str]] = None,
    window: float = ROR_WINDOW_SEC,
) -> Dict[str, Any]:
    """
    Run the full analysis on a tokenized roast-logger table.

    Args:
        rows: Table rows including any preamble and the header row
        headers: Original header strings, only reported in diagnostics
        window: RoR window in seconds

    Returns:
        Dictionary with samples, ror, events, phases, right_max, temp_max,
        max_positive_ror, x_labels and diagnostics

    Raises:
        RoastDataError: If the table cannot be turned into a roast curve
    """
    located = locate_table(rows)
    samples = normalize_series(located["body_rows"], located["mapping"])
    ror = compute_ror(samples, window=window)
    events = detect_events(samples)
    phases = build_phases(samples, events)
    max_positive_ror, right_max, temp_max = ror_axis_limits(ror)

    header_cells = located["headers"]
    columns = {
        role: header_cells[index] if index is not None and index < len(header_cells) else None
        for role, index in located["mapping"].items()
    }

    diagnostics = {
        "header_row_index": located["header_row_index"],
        "header_fallback": located["fallback_reason"] is not None,
        "fallback_reason": located["fallback_reason"],
        "mapping": dict(located["mapping"]),
        "columns": columns,
        "headers": list(headers) if headers is not None else header_cells,
        "sample_count": len(samples),
        **samples.attrs,
    }

    return {
        "samples": samples,
        "ror": ror,
        "events": events,
        "phases": phases,
        "right_max": right_max,
        "temp_max": temp_max,
        "max_positive_ror": max_positive_ror,
        "x_labels": [format_time_label(t) for t in samples["t"]],
        "diagnostics": diagnostics,
    }


def format_meta(prepared: Dict[str, Any]) -> str:
    """One-line status text: sample count and source columns."""
    diagnostics = prepared["diagnostics"]
    headers = [h for h in diagnostics["headers"] if h]
    return f"Data points: {diagnostics['sample_count']} | Columns: {', '.join(headers)}"


# =============================================================================
# FILE INPUT / OUTPUT
# =============================================================================

def read_table_text(path: Union[str, Path]) -> str:
    """
    Read CSV text from a .csv file or from the first CSV inside a .zip.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file type is unsupported or the ZIP holds no CSV
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Roast log not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        return path.read_bytes().decode("utf-8-sig", errors="replace")
    if suffix != ".zip":
        raise ValueError("Only CSV or ZIP files are supported.")

    with zipfile.ZipFile(path, "r") as archive:
        members = [
            info for info in archive.infolist()
            if not info.is_dir() and info.filename.lower().endswith(".csv")
        ]
        if not members:
            raise ValueError(f"No CSV file found inside {path.name}.")
        return archive.read(members[0]).decode("utf-8-sig", errors="replace")


def parse_csv_text(text: str, sep: str = ",") -> List[List[str]]:
    """
    Tokenize CSV text into typed rows, tolerating ragged preamble lines.

    Args:
        text: CSV content
        sep: Field separator

    Returns:
        Non-empty rows (trailing blank cells removed); cells pandas reads as
        finite numbers are floats, the rest trimmed strings
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ValueError("The CSV contains no data.")

    # widest line bounds the field count, so short rows get padded instead of rejected
    width = max(line.count(sep) for line in lines) + 1
    try:
        table = pd.read_csv(
            io.StringIO(text),
            sep=sep,
            header=None,
            names=list(range(width)),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
        )
    except pd.errors.ParserError as e:
        raise ValueError(f"CSV parsing failed: {e}") from e

    table = table.fillna("").astype(object).apply(lambda column: column.str.strip())
    # numeric cells are handed on as numbers, everything else as trimmed text
    numbers = table.apply(lambda column: pd.to_numeric(column, errors="coerce")).astype(float)
    numbers = numbers.where(np.isfinite(numbers))
    table = table.where(numbers.isna(), numbers.astype(object))

    rows = []
    for record in table.itertuples(index=False, name=None):
        row = list(record)
        while row and row[-1] == "":
            row.pop()
        if row:
            rows.append(row)

    if not rows:
        raise ValueError("The CSV contains no data.")
    return rows


def export_samples_csv(prepared: Dict[str, Any], path: Union[str, Path]) -> Path:
    """Write samples, mm:ss labels and RoR to a CSV file."""
    frame = prepared["samples"].copy()
    frame.insert(1, "time", prepared["x_labels"])
    frame["ror"] = prepared["ror"]
    path = Path(path)
    frame.to_csv(path, index=False)
    return path


# =============================================================================
# PLOTTING MODULE
# =============================================================================

def _renderer_measure(fig: plt.Figure, font_size: float) -> MeasureFn:
    renderer = fig.canvas.get_renderer()
    font = FontProperties(size=font_size)

    def measure(text: str) -> Tuple[float, float]:
        width, height, _ = renderer.get_text_width_height_descent(text, font, ismath=False)
        return width, height

    return measure


def _screen_curve(ax: plt.Axes, t: np.ndarray, values: np.ndarray, fig_height: float) -> np.ndarray:
    points = np.column_stack([t, values])
    points = points[np.all(np.isfinite(points), axis=1)]
    if len(points) == 0:
        return np.empty((0, 2))
    screen = ax.transData.transform(points)
    screen[:, 1] = fig_height - screen[:, 1]
    return screen


def draw_event_labels(
    fig: plt.Figure, ax_temp: plt.Axes, ax_ror: plt.Axes, prepared: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """
    Lay out and draw event labels with leader lines on a finished chart.

    Args:
        fig: Figure whose layout is final
        ax_temp: Temperature axes (events live on the BT curve)
        ax_ror: RoR twin axes
        prepared: Result of prepare_series()

    Returns:
        Placements produced by LabelLayoutEngine
    """
    fig_height = fig.bbox.height
    bounds = ax_temp.bbox
    plot_box = Box(bounds.x0, fig_height - bounds.y1, bounds.x1, fig_height - bounds.y0)

    samples = prepared["samples"]
    t = samples["t"].to_numpy(dtype=float)
    curves = [
        _screen_curve(ax_temp, t, samples["bt"].to_numpy(dtype=float), fig_height),
        _screen_curve(ax_temp, t, samples["et"].to_numpy(dtype=float), fig_height),
        _screen_curve(ax_ror, t, np.asarray(prepared["ror"], dtype=float), fig_height),
    ]

    engine = LabelLayoutEngine(
        plot_box,
        offsets=(0.0, 40.0, -40.0),
        measure=_renderer_measure(fig, LABEL_FONT_SIZE),
        score=curve_aware_score,
    )
    placements = engine.place(
        prepared["events"],
        x_of_t=lambda s: ax_temp.transData.transform((s, 0.0))[0],
        y_of_temp=lambda v: fig_height - ax_temp.transData.transform((0.0, v))[1],
        curves=curves,
    )

    # data coordinates survive savefig at another dpi or with a tight bbox
    to_data = ax_temp.transData.inverted()
    for placement in placements:
        cx, cy = placement["box"].center
        event = placement["event"]
        ax_ror.annotate(
            "\n".join(placement["lines"]),
            xy=(event["t"], event["bt"]),
            xycoords=ax_temp.transData,
            xytext=tuple(to_data.transform((cx, fig_height - cy))),
            textcoords=ax_temp.transData,
            annotation_clip=False,
            ha="center",
            va="center",
            fontsize=LABEL_FONT_SIZE,
            bbox=dict(boxstyle="square,pad=0.2", fc="white", ec="#64748b", lw=0.6),
            arrowprops=dict(arrowstyle="-", color="#64748b", lw=0.6),
            zorder=6,
        )

    return placements


def plot_roast_curve(prepared: Dict[str, Any], title: Optional[str] = None, save_path: Optional[str] = None) -> None:
    """
    Plot BT/ET, power and fan levels, RoR and labelled events.

    Args:
        prepared: Result of prepare_series()
        title: Optional title for the plot
        save_path: Optional path to save the plot as PNG
    """
    samples = prepared["samples"]
    t = samples["t"].to_numpy(dtype=float)
    total = float(t[-1]) if len(t) else 0.0

    fig, ax1 = plt.subplots(figsize=(12, 6.75))

    ax1.plot(t, samples["bt"], color="#f97316", linewidth=2, label="BT")
    ax1.plot(t, samples["et"], color="#94a3b8", linewidth=2, label="ET")
    ax1.step(t, samples["power"] * CONTROL_DISPLAY_SCALE, where="post",
             color="#ef4444", linestyle=(0, (6, 4)), label="Power")
    ax1.step(t, samples["fan"] * CONTROL_DISPLAY_SCALE, where="post",
             color="#10b981", linestyle=(0, (4, 4)), label="Fan")

    ax2 = ax1.twinx()
    ax2.plot(t, prepared["ror"], color="#3b82f6", linewidth=2, label="RoR (°C/min)")
    ax2.set_ylim(0, prepared["right_max"])
    ax2.yaxis.set_major_locator(MultipleLocator(5))
    ax2.set_ylabel("Rate of Rise (°C/min)")

    for event in prepared["events"]:
        ax1.scatter(event["t"], event["bt"], color="#f97316", edgecolor="black", zorder=5)

    # Dynamic x-ticks every ~30s
    max_ticks = 10
    interval = max(30, int((total + max_ticks * 30 - 1) // (max_ticks * 30)) * 30)
    ax1.set_xlim(0, max(total, 1.0))
    ax1.set_ylim(0, prepared["temp_max"])
    ax1.xaxis.set_major_locator(MultipleLocator(interval))
    ax1.xaxis.set_major_formatter(FuncFormatter(lambda x, pos: format_time_label(x)))
    ax1.yaxis.set_major_locator(MultipleLocator(50))
    ax1.set_xlabel("Time since Charge (mm:ss)")
    ax1.set_ylabel("Temperature (°C)")

    h1, l1 = ax1.get_legend_handles_labels()
    h2, l2 = ax2.get_legend_handles_labels()
    ax1.legend(h1 + h2, l1 + l2, loc="upper center", ncol=5,
               bbox_to_anchor=(0.5, -0.12), frameon=False)

    ax1.grid(True, axis='y', alpha=0.4)
    ax1.grid(False, axis='x')
    ax2.grid(False)

    phases = prepared["phases"]
    ax1.set_title(title or f"{phases['display']}    {phases['drop_text']}")

    plt.tight_layout()
    draw_event_labels(fig, ax1, ax2, prepared)

    if save_path:
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()


# =============================================================================
# MAIN ANALYSIS PIPELINE
# =============================================================================

def analyze_roast_file(path: str, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Complete analysis of one roast-logger export.

    Args:
        path: CSV or ZIP file
        options: Analysis options (window, plot, save_plot, export_csv, title)

    Returns:
        Prepared series or None if error
    """
    print("=" * 60)
    print("ROAST CURVE PREPARATION")
    print("=" * 60)

    print(f"\n1. Reading roast log {path}...")
    try:
        rows = parse_csv_text(read_table_text(path))
        print(f"✓ Read {len(rows)} rows")
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        print(f"ERROR reading file: {e}")
        return None

    print("\n2. Preparing roast curve...")
    try:
        prepared = prepare_series(rows, window=options.get("window", ROR_WINDOW_SEC))
    except RoastDataError as e:
        print(f"ERROR preparing data: {e}")
        return None

    diagnostics = prepared["diagnostics"]
    print(f"✓ Header row {diagnostics['header_row_index']}"
          f"{' (fallback)' if diagnostics['header_fallback'] else ''}, "
          f"time unit: {diagnostics['time_unit']}, baseline: {diagnostics['baseline_source']}")
    print(f"  - {format_meta(prepared)}")
    print("  - Events: " + ", ".join(
        f"{EVENT_TITLES[e['label']]} {format_time_label(e['t'])}" for e in prepared["events"]
    ))
    print(f"  - Phases: {prepared['phases']['display']}")
    print(f"  - {prepared['phases']['drop_text']}")
    print(f"  - Max RoR: {prepared['max_positive_ror']:.1f}°C/min (axis {prepared['right_max']})")

    if options.get("export_csv"):
        print("\n3. Exporting samples to CSV...")
        output = export_samples_csv(prepared, options["export_csv"])
        print(f"✓ Samples exported to {output}")

    if options.get("plot") or options.get("save_plot"):
        print("\n4. Generating chart...")
        plot_roast_curve(prepared, title=options.get("title"), save_path=options.get("save_plot"))
        if options.get("save_plot"):
            print(f"✓ Chart saved to {options['save_plot']}")

    print("\n" + "=" * 60)
    print("ANALYSIS COMPLETE!")
    print("=" * 60)

    return prepared


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Prepare a roast curve from a roast-logger CSV/ZIP export",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py roast.csv                              # Print the analysis
  python main.py roast.zip --plot                       # Show the chart
  python main.py roast.csv --save-plot roast-curve.png  # Save the chart
  python main.py roast.csv --export-csv                 # Export samples + RoR
        """
    )

    parser.add_argument(
        "roast_file",
        help="Roast-logger export (.csv or .zip containing a .csv)"
    )

    parser.add_argument(
        "--plot",
        action="store_true",
        help="Display the chart"
    )

    parser.add_argument(
        "--save-plot",
        metavar="PNG",
        help="Save the chart to the given PNG file"
    )

    parser.add_argument(
        "--export-csv",
        metavar="CSV",
        nargs="?",
        const="roast-curve.csv",
        help="Export samples and RoR (default file: roast-curve.csv)"
    )

    parser.add_argument(
        "--window",
        type=float,
        default=ROR_WINDOW_SEC,
        help=f"RoR regression window in seconds (default: {ROR_WINDOW_SEC:.0f})"
    )

    parser.add_argument(
        "--title",
        help="Chart title (default: phase summary)"
    )

    args = parser.parse_args()

    if not Path(args.roast_file).exists():
        print(f"ERROR: File '{args.roast_file}' does not exist!")
        sys.exit(1)

    options = {
        'plot': args.plot,
        'save_plot': args.save_plot,
        'export_csv': args.export_csv,
        'window': args.window,
        'title': args.title,
    }

    try:
        prepared = analyze_roast_file(args.roast_file, options)
    except KeyboardInterrupt:
        print("\n\nAnalysis interrupted by user.")
        sys.exit(1)

    if prepared is None:
        print("\nAnalysis failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
