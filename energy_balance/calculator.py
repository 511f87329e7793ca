"""
Energy Calculator for Meter Readings
Derives period consumption, production, cost and CO2 figures from raw readings
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .models import (
    Achievement,
    CalculationType,
    DetailedCosts,
    Device,
    EnergyData,
    EnergyProvider,
    EnergyStats,
    MeterReading,
    Period,
    PeriodStats,
    SustainabilityGoals,
    SustainabilityStats,
    UtilityAmounts,
    UtilityCosts,
    parse_devices,
    parse_providers,
    parse_readings,
)

logger = logging.getLogger(__name__)

PERIOD_LENGTHS: Dict[Period, timedelta] = {
    Period.DAILY: timedelta(days=1),
    Period.WEEKLY: timedelta(days=7),
    Period.MONTHLY: timedelta(days=30),
    Period.YEARLY: timedelta(days=365),
}

PRODUCTION_TYPES = ["solar"]
FEED_IN_TYPES = ["grid_feed_in", "solar_pv_feed_in"]
UTILITY_TYPES = ["electricity", "gas", "water"]

# Per-day consumption above which a new reading gets a plausibility warning
HIGH_CONSUMPTION_THRESHOLDS = {"electricity": 50.0, "gas": 20.0, "water": 1.0}

READING_COLUMNS = ["id", "meter_id", "device_id", "type", "reading", "timestamp", "unit"]


def readings_to_frame(readings: Sequence[MeterReading]) -> pd.DataFrame:
    """
    Convert readings into a DataFrame sorted by timestamp

    Persisted order is not trusted; a stable sort keeps entry order for
    readings sharing a timestamp.
    """
    if not readings:
        frame = pd.DataFrame(columns=READING_COLUMNS)
        frame["reading"] = frame["reading"].astype(float)
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
        return frame

    frame = pd.DataFrame(
        [
            {
                "id": r.id,
                "meter_id": r.meter_id,
                "device_id": r.device_id,
                "type": r.type.value,
                "reading": float(r.reading),
                "timestamp": r.timestamp,
                "unit": r.unit,
            }
            for r in readings
        ],
        columns=READING_COLUMNS,
    )
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame.sort_values("timestamp", kind="mergesort").reset_index(drop=True)


def _in_window(meter_df: pd.DataFrame, start: datetime, end: datetime) -> pd.DataFrame:
    ts = meter_df["timestamp"]
    return meter_df[(ts > pd.Timestamp(start)) & (ts <= pd.Timestamp(end))]


def reduce_sum(meter_df: pd.DataFrame, start: datetime, end: datetime) -> float:
    """Each reading is already the amount for its own interval"""
    in_window = _in_window(meter_df, start, end)
    if in_window.empty:
        return 0.0
    return float(in_window["reading"].clip(lower=0).sum())


def reduce_difference(meter_df: pd.DataFrame, start: datetime, end: datetime) -> float:
    """
    Readings are cumulative counter values

    The last reading at or before the window start is the baseline; without
    one, the first reading inside the window is. Steps between consecutive
    readings are clipped to 0 so a replaced or rolled back meter adds nothing;
    increases after the drop still count.

    Example:
        before window: 90
        in window:     100, 120, 135
        result:        45

        before window: 90
        in window:     100, 135, 40, 60
        result:        65
    """
    in_window = _in_window(meter_df, start, end)
    if in_window.empty:
        return 0.0

    values = in_window["reading"]
    before = meter_df[meter_df["timestamp"] <= pd.Timestamp(start)]
    if not before.empty:
        values = pd.concat([before["reading"].iloc[-1:], values])

    steps = values.reset_index(drop=True).diff().fillna(0).clip(lower=0)
    return float(steps.sum())


REDUCERS: Dict[CalculationType, Callable[[pd.DataFrame, datetime, datetime], float]] = {
    CalculationType.SUM: reduce_sum,
    CalculationType.DIFFERENCE: reduce_difference,
}


def reduce_meter(meter_df: pd.DataFrame, start: datetime, end: datetime, calculation_type) -> float:
    """Amount one meter contributes to the window (start, end]"""
    return REDUCERS[CalculationType(calculation_type)](meter_df, start, end)


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def _progress(current: float, goal: float) -> float:
    if goal <= 0:
        return 0.0
    return _clamp_percent(current / goal * 100)


class EnergyCalculator:
    """
    Calculator for energy statistics from meter readings.

    All methods are pure: they take plain collections (models or dicts as
    stored in a backup) and never raise for empty or partial data.
    Windows are trailing periods ending at ``now``; a reading belongs to a
    window when ``start < timestamp <= end``.
    """

    def __init__(
        self,
        co2_factor: float = 0.4,
        default_price_per_kwh: float = 0.30,
        basic_fee_period_days: float = 30,
    ):
        """
        Args:
            co2_factor: kg CO2 avoided per kWh of own production
            default_price_per_kwh: Electricity price used for savings when no provider applies
            basic_fee_period_days: Length of the period a provider's basic fee is charged for
        """
        self.co2_factor = co2_factor
        self.default_price_per_kwh = default_price_per_kwh
        self.basic_fee_period_days = basic_fee_period_days

    @classmethod
    def from_config(cls, config: dict) -> "EnergyCalculator":
        calculation = config.get("calculation", {})
        return cls(
            co2_factor=calculation.get("co2_factor", 0.4),
            default_price_per_kwh=calculation.get("default_price_per_kwh", 0.30),
            basic_fee_period_days=calculation.get("basic_fee_period_days", 30),
        )

    @staticmethod
    def get_period_window(period, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """
        Return (start, end) of the trailing window for a period

        Raises:
            ValueError: For an unknown period name
        """
        period = Period(period)
        end = now or datetime.now(timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return end - PERIOD_LENGTHS[period], end

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    @staticmethod
    def _calculation_type_for(meter_df: pd.DataFrame, devices: Dict[str, Device]) -> CalculationType:
        device_id = meter_df["device_id"].iloc[-1]
        device = devices.get(device_id)
        if device is None:
            return CalculationType.DIFFERENCE
        return device.effective_calculation_type()

    def calculate_total_for_period(
        self,
        frame: pd.DataFrame,
        devices: Dict[str, Device],
        start: datetime,
        end: datetime,
        types: Iterable[str],
    ) -> Tuple[float, int]:
        """
        Sum the period amount of every meter whose readings have one of ``types``

        Returns:
            Tuple of (total, number of readings inside the window)
        """
        subset = frame[frame["type"].isin(list(types))]
        total = 0.0
        reading_count = 0

        for meter_id, meter_df in subset.groupby("meter_id", sort=False):
            calculation_type = self._calculation_type_for(meter_df, devices)
            amount = reduce_meter(meter_df, start, end, calculation_type)
            reading_count += len(_in_window(meter_df, start, end))
            logger.debug(f"Meter {meter_id}: {amount:.3f} ({calculation_type.value}) in {start} .. {end}")
            total += amount

        return total, reading_count

    def _prepare(self, readings, devices) -> Tuple[pd.DataFrame, Dict[str, Device]]:
        frame = readings_to_frame(parse_readings(readings))
        device_map = {d.id: d for d in parse_devices(devices)}
        return frame, device_map

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def calculate_current_energy_data(self, readings, now: Optional[datetime] = None) -> EnergyData:
        """
        Most recent known value per metric

        Battery values are not measured by any reading type and stay at 0/False.
        """
        frame = readings_to_frame(parse_readings(readings))
        if frame.empty:
            return EnergyData(timestamp=now or datetime.now(timezone.utc))

        def latest(types: List[str]) -> float:
            matching = frame[frame["type"].isin(types)]
            if matching.empty:
                return 0.0
            return float(matching["reading"].iloc[-1])

        return EnergyData(
            timestamp=frame["timestamp"].iloc[-1].to_pydatetime(),
            solar_production=latest(PRODUCTION_TYPES),
            consumption=latest(["electricity"]),
            grid_feed_in=latest(FEED_IN_TYPES),
            grid_consumption=latest(["electricity"]),
        )

    # ------------------------------------------------------------------
    # Period statistics
    # ------------------------------------------------------------------

    def calculate_autarky_and_savings(
        self,
        consumption: float,
        production: float,
        grid_feed_in: float,
        price_per_kwh: Optional[float] = None,
    ) -> Dict[str, float]:
        """
        Derive autarky, self-consumption, savings and avoided CO2

        Own production that was not fed into the grid counts as used on
        site; both percentages are clamped to [0, 100].
        """
        direct_consumption = max(0.0, production - grid_feed_in)
        price = self.default_price_per_kwh if price_per_kwh is None else price_per_kwh

        autarky = _clamp_percent(direct_consumption / consumption * 100) if consumption > 0 else 0.0
        self_consumption = _clamp_percent(direct_consumption / production * 100) if production > 0 else 0.0

        return {
            "autarky": autarky,
            "self_consumption": self_consumption,
            "savings": direct_consumption * price,
            "co2_saved": max(0.0, production) * self.co2_factor,
        }

    def _electricity_rate(self, providers: List[EnergyProvider], moment: datetime) -> Optional[float]:
        provider = self._select_provider(providers, "electricity", None, moment, allow_meter_specific=True)
        return provider.price_per_unit if provider else None

    def _period_stats(
        self,
        frame: pd.DataFrame,
        devices: Dict[str, Device],
        providers: List[EnergyProvider],
        start: datetime,
        end: datetime,
    ) -> PeriodStats:
        production, _ = self.calculate_total_for_period(frame, devices, start, end, PRODUCTION_TYPES)
        consumption, _ = self.calculate_total_for_period(frame, devices, start, end, ["electricity"])
        grid_feed_in, _ = self.calculate_total_for_period(frame, devices, start, end, FEED_IN_TYPES)

        derived = self.calculate_autarky_and_savings(
            consumption, production, grid_feed_in, self._electricity_rate(providers, end)
        )
        return PeriodStats(
            production=production,
            consumption=consumption,
            grid_feed_in=grid_feed_in,
            **derived,
        )

    def calculate_energy_stats(
        self,
        readings,
        period,
        devices=None,
        providers=None,
        now: Optional[datetime] = None,
    ) -> PeriodStats:
        """
        Production, consumption and derived figures for one trailing period

        Args:
            readings: Meter readings (models or backup dicts)
            period: 'daily', 'weekly', 'monthly' or 'yearly'
            devices: Devices deciding each meter's calculation type
            providers: Tariffs; the electricity rate prices the savings
            now: End of the window (default: current time)
        """
        start, end = self.get_period_window(period, now)
        frame, device_map = self._prepare(readings, devices)
        return self._period_stats(frame, device_map, parse_providers(providers), start, end)

    def calculate_all_stats(self, readings, devices=None, providers=None, now: Optional[datetime] = None) -> EnergyStats:
        """Stats for every period plus the lifetime production counter"""
        end = now or datetime.now(timezone.utc)
        frame, device_map = self._prepare(readings, devices)
        provider_list = parse_providers(providers)

        per_period = {}
        for period in Period:
            start, window_end = self.get_period_window(period, end)
            per_period[period.value] = self._period_stats(frame, device_map, provider_list, start, window_end)

        return EnergyStats(total_production=self._total_production(frame), **per_period)

    # ------------------------------------------------------------------
    # Costs
    # ------------------------------------------------------------------

    @staticmethod
    def _select_provider(
        providers: List[EnergyProvider],
        utility: str,
        meter_id: Optional[str],
        moment: datetime,
        allow_meter_specific: bool = False,
    ) -> Optional[EnergyProvider]:
        """
        Provider pricing ``meter_id`` at ``moment``

        A provider bound to the meter beats a generic one; among equals the
        most recent contract wins.
        """
        candidates = [
            p for p in providers
            if p.type == utility
            and p.is_valid_at(moment)
            and (p.meter_id is None or p.meter_id == meter_id or allow_meter_specific)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: (meter_id is not None and p.meter_id == meter_id, p.valid_from))

    @staticmethod
    def _segment_boundaries(providers: List[EnergyProvider], start: datetime, end: datetime) -> List[datetime]:
        boundaries = {start, end}
        for provider in providers:
            for edge in (provider.valid_from, provider.valid_to):
                if edge is not None and start < edge < end:
                    boundaries.add(edge)
        return sorted(boundaries)

    def _utility_costs(
        self,
        frame: pd.DataFrame,
        devices: Dict[str, Device],
        providers: List[EnergyProvider],
        utility: str,
        start: datetime,
        end: datetime,
    ) -> float:
        """
        Cost of one utility over the window, split at tariff changes

        Each sub-window's consumption is priced with the provider valid in it;
        a provider's basic fee is pro-rated by the days it was in use.
        """
        type_providers = [p for p in providers if p.type == utility]
        if not type_providers:
            return 0.0

        meters = list(frame[frame["type"] == utility].groupby("meter_id", sort=False))
        fee_by_id = {p.id: p.basic_fee for p in type_providers}
        boundaries = self._segment_boundaries(type_providers, start, end)
        cost = 0.0

        for seg_start, seg_end in zip(boundaries, boundaries[1:]):
            midpoint = seg_start + (seg_end - seg_start) / 2
            charged = set()

            generic = self._select_provider(type_providers, utility, None, midpoint)
            if generic is not None:
                charged.add(generic.id)

            for meter_id, meter_df in meters:
                provider = self._select_provider(type_providers, utility, meter_id, midpoint)
                if provider is None:
                    logger.debug(f"No {utility} tariff for meter {meter_id} in {seg_start} .. {seg_end}")
                    continue
                charged.add(provider.id)
                calculation_type = self._calculation_type_for(meter_df, devices)
                amount = reduce_meter(meter_df, seg_start, seg_end, calculation_type)
                cost += amount * provider.price_per_unit

            segment_days = (seg_end - seg_start).total_seconds() / 86400
            for provider_id in charged:
                cost += fee_by_id[provider_id] * segment_days / self.basic_fee_period_days

        return cost

    def calculate_detailed_costs(
        self,
        readings,
        providers=None,
        period=Period.MONTHLY,
        devices=None,
        now: Optional[datetime] = None,
    ) -> DetailedCosts:
        """
        Consumption and cost per utility for one trailing period

        The basic fee of a generic (not meter-specific) provider valid in the
        window accrues pro rata (days / basic_fee_period_days) even when no
        readings fall inside it, so such a utility's cost is not 0 without
        consumption.

        Returns:
            DetailedCosts with per-utility costs and their total, the real
            consumption per utility, and the electricity-based production,
            autarky, savings and CO2 figures.
        """
        start, end = self.get_period_window(period, now)
        frame, device_map = self._prepare(readings, devices)
        provider_list = parse_providers(providers)

        consumption = {
            utility: self.calculate_total_for_period(frame, device_map, start, end, [utility])[0]
            for utility in UTILITY_TYPES
        }
        costs = {
            utility: self._utility_costs(frame, device_map, provider_list, utility, start, end)
            for utility in UTILITY_TYPES
        }

        production, _ = self.calculate_total_for_period(frame, device_map, start, end, PRODUCTION_TYPES)
        grid_feed_in, _ = self.calculate_total_for_period(frame, device_map, start, end, FEED_IN_TYPES)
        derived = self.calculate_autarky_and_savings(
            consumption["electricity"], production, grid_feed_in, self._electricity_rate(provider_list, end)
        )

        return DetailedCosts(
            costs=UtilityCosts(total=sum(costs.values()), **costs),
            real_consumption=UtilityAmounts(**consumption),
            production=production,
            consumption=sum(consumption.values()),
            grid_feed_in=grid_feed_in,
            **derived,
        )

    # ------------------------------------------------------------------
    # Sustainability
    # ------------------------------------------------------------------

    def calculate_sustainability_stats(
        self,
        stats: PeriodStats,
        goals: Optional[SustainabilityGoals] = None,
    ) -> SustainabilityStats:
        """
        Equivalents and goal progress for a period (usually the monthly one)

        1 kg CO2 is counted as 6 km driven; a tree binds 20 kg CO2 a year.
        Progress values are capped at 100.
        """
        if goals is None:
            goals = SustainabilityGoals()
        elif not isinstance(goals, SustainabilityGoals):
            goals = SustainabilityGoals.model_validate(goals)

        co2_saved = stats.co2_saved
        targets = [
            ("monthlyCo2", goals.monthly_co2_goal, co2_saved),
            ("energySaver", goals.energy_saver_goal, co2_saved),
            ("solarPioneer", goals.solar_pioneer_goal, stats.production),
            ("sustainabilityChampion", goals.sustainability_champion_goal, stats.savings),
        ]
        achievements = [
            Achievement(
                id=achievement_id,
                goal=goal,
                current=current,
                progress=_progress(current, goal),
                completed=goal > 0 and current >= goal,
            )
            for achievement_id, goal, current in targets
        ]

        return SustainabilityStats(
            co2_saved=co2_saved,
            km_equivalent=co2_saved * 6,
            trees_equivalent=co2_saved * 0.05,
            avoided_emissions=co2_saved,
            monthly_progress=achievements[0].progress,
            energy_saver_progress=achievements[1].progress,
            solar_pioneer_progress=achievements[2].progress,
            sustainability_progress=achievements[3].progress,
            achievements=achievements,
        )

    # ------------------------------------------------------------------
    # Per-reading helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _total_production(frame: pd.DataFrame) -> float:
        production = frame[frame["type"].isin(PRODUCTION_TYPES)]
        if production.empty:
            return 0.0
        return float(production["reading"].iloc[-1])

    def calculate_total_production(self, readings) -> float:
        """Latest value of any production meter"""
        return self._total_production(readings_to_frame(parse_readings(readings)))

    def calculate_meter_differences(self, readings, devices=None) -> pd.DataFrame:
        """
        Difference to the previous reading and running total for every reading

        Returns:
            DataFrame with columns ['id', 'meter_id', 'timestamp', 'reading',
            'difference', 'total_consumption'], newest reading first.

        Notes:
            - For 'sum' meters the difference is the reading itself
            - Differences are not clipped, a replaced meter shows up as a
              negative step
        """
        frame, device_map = self._prepare(readings, devices)
        columns = ["id", "meter_id", "timestamp", "reading", "difference", "total_consumption"]
        if frame.empty:
            return pd.DataFrame(columns=columns)

        parts = []
        for _, meter_df in frame.groupby("meter_id", sort=False):
            meter_df = meter_df.copy()
            if self._calculation_type_for(meter_df, device_map) == CalculationType.SUM:
                meter_df["difference"] = meter_df["reading"]
            else:
                meter_df["difference"] = meter_df["reading"].diff().fillna(0)
            meter_df["total_consumption"] = meter_df["reading"] - meter_df["reading"].iloc[0]
            parts.append(meter_df)

        result = pd.concat(parts)[columns]
        return result.sort_values("timestamp", ascending=False, kind="mergesort").reset_index(drop=True)

    def validate_meter_reading(self, reading, all_readings) -> Dict[str, Optional[str]]:
        """
        Check a new reading against its neighbours on the same meter

        Returns:
            Dict with 'valid' (bool), and 'error' or 'warning' messages
        """
        candidates = parse_readings([reading])
        if not candidates:
            return {"valid": False, "error": "Invalid reading value", "warning": None}
        new = candidates[0]
        value = new.reading
        if pd.isna(value):
            return {"valid": False, "error": "Invalid reading value", "warning": None}

        same_meter = [r for r in parse_readings(all_readings) if r.meter_id == new.meter_id and r.id != new.id]
        previous = max((r for r in same_meter if r.timestamp < new.timestamp), key=lambda r: r.timestamp, default=None)
        following = min((r for r in same_meter if r.timestamp > new.timestamp), key=lambda r: r.timestamp, default=None)

        if previous is not None and value < previous.reading:
            return {"valid": False, "error": "Reading must not be lower than the previous reading", "warning": None}
        if following is not None and value > following.reading:
            return {"valid": False, "error": "Reading must not be higher than the next reading", "warning": None}

        if previous is not None:
            days_since = (new.timestamp - previous.timestamp).total_seconds() / 86400
            if days_since > 0.1:
                per_day = (value - previous.reading) / days_since
                threshold = HIGH_CONSUMPTION_THRESHOLDS.get(new.type.value, HIGH_CONSUMPTION_THRESHOLDS["electricity"])
                if per_day > threshold:
                    unit = new.unit or "kWh"
                    return {
                        "valid": True,
                        "error": None,
                        "warning": f"Consumption of {per_day:.1f} {unit}/day is unusually high",
                    }

        return {"valid": True, "error": None, "warning": None}
