"""
Data Model for Meter Readings, Devices and Tariffs
Pydantic models shared by the calculator, the backup snapshot and the sync client
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ReadingType(str, Enum):
    ELECTRICITY = "electricity"
    GAS = "gas"
    WATER = "water"
    HEAT = "heat"
    SOLAR = "solar"
    GRID_FEED_IN = "grid_feed_in"
    SOLAR_PV_FEED_IN = "solar_pv_feed_in"


class CalculationType(str, Enum):
    """How repeated readings of one meter reduce to a period amount"""

    DIFFERENCE = "difference"
    SUM = "sum"


class Period(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    """Base model that reads and writes the camelCase keys of the backup JSON"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MeterReading(CamelModel):
    id: str
    device_id: str = ""
    meter_id: str
    meter_name: str = ""
    reading: float
    timestamp: datetime
    type: ReadingType
    unit: str = ""
    notes: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return to_utc(value)


class Device(CamelModel):
    id: str
    name: str = ""
    type: str = "meter"
    status: str = "online"
    last_update: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    calculation_type: Optional[CalculationType] = None

    def effective_calculation_type(self) -> CalculationType:
        """solar-pv devices always report per-period amounts"""
        if self.type == "solar-pv":
            return CalculationType.SUM
        return self.calculation_type or CalculationType.DIFFERENCE


class EnergyProvider(CamelModel):
    id: str
    name: str = ""
    type: str
    price_per_unit: float = 0.0
    basic_fee: float = 0.0
    valid_from: datetime
    valid_to: Optional[datetime] = None
    meter_id: Optional[str] = None

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _dates_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc(value) if value is not None else None

    def is_valid_at(self, moment: datetime) -> bool:
        """validFrom is inclusive, validTo exclusive"""
        if moment < self.valid_from:
            return False
        return self.valid_to is None or moment < self.valid_to


class SustainabilityGoals(CamelModel):
    monthly_co2_goal: float = 150.0  # kg CO2
    energy_saver_goal: float = 100.0  # kg CO2
    solar_pioneer_goal: float = 1000.0  # kWh
    sustainability_champion_goal: float = 1000.0  # EUR


class EnergyData(CamelModel):
    timestamp: datetime
    solar_production: float = 0.0
    consumption: float = 0.0
    battery_level: float = 0.0
    battery_charging: bool = False
    grid_feed_in: float = 0.0
    grid_consumption: float = 0.0


class PeriodStats(CamelModel):
    production: float = 0.0
    consumption: float = 0.0
    grid_feed_in: float = 0.0
    savings: float = 0.0
    co2_saved: float = 0.0
    autarky: float = 0.0
    self_consumption: float = 0.0


class EnergyStats(CamelModel):
    daily: PeriodStats = Field(default_factory=PeriodStats)
    weekly: PeriodStats = Field(default_factory=PeriodStats)
    monthly: PeriodStats = Field(default_factory=PeriodStats)
    yearly: PeriodStats = Field(default_factory=PeriodStats)
    total_production: float = 0.0


class UtilityAmounts(CamelModel):
    electricity: float = 0.0
    gas: float = 0.0
    water: float = 0.0


class UtilityCosts(UtilityAmounts):
    total: float = 0.0


class DetailedCosts(CamelModel):
    costs: UtilityCosts = Field(default_factory=UtilityCosts)
    real_consumption: UtilityAmounts = Field(default_factory=UtilityAmounts)
    production: float = 0.0
    consumption: float = 0.0
    autarky: float = 0.0
    self_consumption: float = 0.0
    savings: float = 0.0
    co2_saved: float = 0.0
    grid_feed_in: float = 0.0


class Achievement(CamelModel):
    id: str
    goal: float
    current: float
    progress: float
    completed: bool


class SustainabilityStats(CamelModel):
    co2_saved: float = 0.0
    km_equivalent: float = 0.0
    trees_equivalent: float = 0.0
    avoided_emissions: float = 0.0
    monthly_progress: float = 0.0
    energy_saver_progress: float = 0.0
    solar_pioneer_progress: float = 0.0
    sustainability_progress: float = 0.0
    achievements: List[Achievement] = Field(default_factory=list)


class StoredTokens(CamelModel):
    """Persisted Dropbox credentials; expiresAt is epoch milliseconds"""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def is_valid(self, now_ms: int) -> bool:
        return self.expires_at is None or now_ms < self.expires_at


def parse_models(items: Optional[Iterable[Any]], model: Type[ModelT]) -> List[ModelT]:
    """
    Parse a list of dicts into models, skipping entries that do not validate

    The calculator must produce a result for whatever the user has stored,
    so a single broken entry is logged and dropped instead of failing the batch.
    """
    parsed = []
    for index, item in enumerate(items or []):
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid {model.__name__} at index {index}: {e.error_count()} error(s)")
            logger.debug(f"{model.__name__} validation details: {e}")
    return parsed


def parse_readings(items: Optional[Iterable[Any]]) -> List[MeterReading]:
    return parse_models(items, MeterReading)


def parse_devices(items: Optional[Iterable[Any]]) -> List[Device]:
    return parse_models(items, Device)


def parse_providers(items: Optional[Iterable[Any]]) -> List[EnergyProvider]:
    return parse_models(items, EnergyProvider)


def parse_german_number(text: str) -> float:
    """
    Parse a number typed with German separators

    "1.234,56" -> 1234.56, "1234,56" -> 1234.56

    Raises:
        ValueError: If the text is not a number
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected a string, got {type(text).__name__}")
    cleaned = text.strip().replace(".", "").replace(",", ".")
    return float(cleaned)
