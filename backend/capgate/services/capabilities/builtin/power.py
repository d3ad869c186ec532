"""
Power Tools - energy analysis over power and environmental readings

- analyzePowerData: totals, averages and extremes per power metric over a period
- correlateEnvironmentalFactors: how weather factors track power production/load

Both work on time buckets produced in the database; only bucket-level
aggregates ever leave it. Long periods get coarser buckets so that the whole
period fits within the facade's row limit.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from capgate.services.capabilities.catalog import builtin_catalog
from capgate.services.capabilities.errors import QueryError, ValidationError
from capgate.services.capabilities.query_builder import parse_timestamp
from capgate.services.capabilities.schema import AccessLevel, CapabilitySpec

DEFAULT_POWER_METRICS = ["mainGridPower", "solarOutput", "totalLoad"]
DEFAULT_FACTORS = ["air_temp", "ghi", "dni"]
CORRELATION_TARGETS = ["mainGridPower", "solarOutput", "totalLoad"]

# |r| above this is reported as an insight
INSIGHT_CORRELATION = 0.7
STRONG_CORRELATION = 0.9

# Finest first; a month is taken at its longest
BUCKET_WIDTHS = [
    ("hour", timedelta(hours=1)),
    ("day", timedelta(days=1)),
    ("week", timedelta(weeks=1)),
    ("month", timedelta(days=31)),
    ("year", timedelta(days=366)),
]

FACTOR_NAMES = {
    "air_temp": "Air temperature",
    "airTemp": "Air temperature",
    "ghi": "Global horizontal irradiance",
    "dni": "Direct normal irradiance",
    "dhi": "Diffuse horizontal irradiance",
    "humidity": "Humidity",
    "wind_speed": "Wind speed",
    "windSpeed": "Wind speed",
    "cloud_opacity": "Cloud opacity",
    "cloudOpacity": "Cloud opacity",
}

_PERIOD = {
    "startDate": {"type": "string", "description": "Start date for the analysis (ISO format)"},
    "endDate": {"type": "string", "description": "End date for the analysis (ISO format)"},
}


# =============================================================================
# Tool Definitions
# =============================================================================

ANALYZE_POWER_SPEC = CapabilitySpec(
    name="analyzePowerData",
    description="Analyze power data for a given time period to identify patterns and energy mix",
    module="power",
    parameter_schema={
        "type": "object",
        "properties": {
            **_PERIOD,
            "metrics": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Metrics to analyze (e.g., mainGridPower, solarOutput, totalLoad)",
            },
        },
        "required": ["startDate", "endDate"],
    },
    return_type_hint="PowerDataAnalysis",
    implementation="power.analyze",
    access_level=AccessLevel.PUBLIC,
    tags={"power", "analytics", "statistics"},
)

CORRELATE_ENVIRONMENT_SPEC = CapabilitySpec(
    name="correlateEnvironmentalFactors",
    description="Correlate environmental factors with power production and consumption",
    module="environment",
    parameter_schema={
        "type": "object",
        "properties": {
            **_PERIOD,
            "factors": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Environmental factors to correlate (e.g., air_temp, ghi, dni, humidity)",
            },
        },
        "required": ["startDate", "endDate"],
    },
    return_type_hint="CorrelationAnalysis",
    implementation="power.correlate_environment",
    access_level=AccessLevel.USER,
    tags={"environment", "correlation", "analytics"},
)


# =============================================================================
# Tool Handlers
# =============================================================================

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bucket_interval(start: Any, end: Any, finest: str, max_buckets: int) -> str:
    """
    The finest interval, starting at ``finest``, whose buckets cover the
    period in at most ``max_buckets`` rows.
    """
    try:
        start_at = _as_utc(parse_timestamp(start, "start date"))
        end_at = _as_utc(parse_timestamp(end, "end date"))
    except QueryError as exc:
        raise ValidationError(exc.message) from exc
    if end_at < start_at:
        raise ValidationError("End date must not be before start date")

    span = end_at - start_at
    names = [name for name, _ in BUCKET_WIDTHS]
    for name, width in BUCKET_WIDTHS[names.index(finest):]:
        # date_trunc can add a partial bucket at either end
        if span // width + 2 <= max_buckets:
            return name
    return BUCKET_WIDTHS[-1][0]


@builtin_catalog.register("power.analyze", spec=ANALYZE_POWER_SPEC)
async def analyze_power_data(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    """Per-metric totals over the period, combined from daily (or coarser) buckets"""
    metrics = args.get("metrics") or DEFAULT_POWER_METRICS
    interval = bucket_interval(args["startDate"], args["endDate"], "day", facade.row_limit)

    buckets = await facade.time_series(
        "power_data",
        "timestamp",
        [{"function": "count", "alias": "data_points"}]
        + [
            {"function": fn, "field": metric, "alias": f"{fn}_{metric}"}
            for metric in metrics
            for fn in ("count", "sum", "min", "max")
        ],
        interval=interval,
        options={"start_date": args["startDate"], "end_date": args["endDate"], "limit": facade.row_limit},
    )

    results = {}
    for metric in metrics:
        count = sum(int(b.get(f"count_{metric}") or 0) for b in buckets)
        total = sum(b.get(f"sum_{metric}") or 0.0 for b in buckets)
        mins = [b[f"min_{metric}"] for b in buckets if b.get(f"min_{metric}") is not None]
        maxes = [b[f"max_{metric}"] for b in buckets if b.get(f"max_{metric}") is not None]
        results[metric] = {
            "average": total / count if count else 0.0,
            "min": min(mins) if mins else 0.0,
            "max": max(maxes) if maxes else 0.0,
            "total": total,
            "count": count,
        }

    insights = []
    solar = results.get("solarOutput")
    grid = results.get("mainGridPower")
    if solar and grid and (solar["total"] + grid["total"]) > 0:
        solar_ratio = solar["total"] / (grid["total"] + solar["total"])
        insights.append({
            "type": "energy_mix",
            "message": f"Solar power accounted for {solar_ratio * 100:.2f}% of total energy production",
            "value": solar_ratio,
        })

    load = results.get("totalLoad")
    if load and buckets:
        avg_load = load["total"] / len(buckets)
        insights.append({
            "type": "consumption",
            "message": f"Average load per {interval} was {avg_load:.2f} across {len(buckets)} periods with data",
            "value": avg_load,
        })

    return {
        "period": {"start": args["startDate"], "end": args["endDate"]},
        "interval": interval,
        "metrics": results,
        "dataPoints": sum(int(b.get("data_points") or 0) for b in buckets),
        "insights": insights,
    }


def pearson(xs: Sequence[Any], ys: Sequence[Any]) -> Optional[float]:
    """
    Correlation coefficient over the positions where both values are present,
    or None when undefined (fewer than two pairs, zero variance)
    """
    x = pd.to_numeric(pd.Series(list(xs), dtype=object), errors="coerce")
    y = pd.to_numeric(pd.Series(list(ys), dtype=object), errors="coerce")
    r = x.corr(y)
    if np.isnan(r):
        return None
    return float(r)


def _describe_correlation(factor: str, target: str, r: float) -> Dict[str, Any]:
    strength = "strong" if abs(r) > STRONG_CORRELATION else "moderate"
    relationship = "positive" if r > 0 else "negative"
    return {
        "factor": factor,
        "target": target,
        "correlation": r,
        "strength": strength,
        "relationship": relationship,
        "message": (
            f"{FACTOR_NAMES.get(factor, factor)} has a {relationship} {strength} "
            f"correlation ({r:.2f}) with {target}"
        ),
    }


@builtin_catalog.register("power.correlate_environment", spec=CORRELATE_ENVIRONMENT_SPEC)
async def correlate_environmental_factors(facade, args: Dict[str, Any], context) -> Dict[str, Any]:
    """
    Hourly (or coarser) averages of both tables are aligned on their bucket;
    pairs with an undefined coefficient are omitted.
    """
    factors = args.get("factors") or DEFAULT_FACTORS
    interval = bucket_interval(args["startDate"], args["endDate"], "hour", facade.row_limit)
    options = {"start_date": args["startDate"], "end_date": args["endDate"], "limit": facade.row_limit}

    env_rows = await facade.time_series(
        "environmental_data",
        "timestamp",
        [{"function": "avg", "field": factor, "alias": f"f_{i}"} for i, factor in enumerate(factors)],
        interval=interval,
        options=options,
    )
    power_rows = await facade.time_series(
        "power_data",
        "timestamp",
        [{"function": "avg", "field": target, "alias": f"t_{i}"} for i, target in enumerate(CORRELATION_TARGETS)],
        interval=interval,
        options=options,
    )

    if env_rows and power_rows:
        aligned = pd.DataFrame(env_rows).merge(pd.DataFrame(power_rows), on="bucket", how="inner")
    else:
        aligned = pd.DataFrame()

    correlations: Dict[str, Dict[str, float]] = {}
    insights = []
    for i, factor in enumerate(factors):
        correlations[factor] = {}
        if aligned.empty:
            continue
        for j, target in enumerate(CORRELATION_TARGETS):
            r = pearson(aligned[f"f_{i}"], aligned[f"t_{j}"])
            if r is None:
                continue
            correlations[factor][target] = r
            if target != "mainGridPower" and abs(r) > INSIGHT_CORRELATION:
                insights.append(_describe_correlation(factor, target, r))

    return {
        "period": {"start": args["startDate"], "end": args["endDate"]},
        "interval": interval,
        "dataPoints": len(aligned),
        "correlations": correlations,
        "insights": insights,
    }
