"""
Range, format and physical-plausibility checks for meter readings.

Arithmetic is done on ``Decimal`` values built from the readings' string
form, so boundaries such as ``100.1 - 100 == 0.1`` hold exactly.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from numbers import Real
from typing import List, Optional, Union

from meterverify.config import DEFAULT_SETTINGS, OCRSettings

log = logging.getLogger(__name__)

Number = Union[int, float, Decimal]

TWO_PLACES = Decimal("0.01")


@dataclass
class ValidationOutcome:
    """Result of a reading or consumption check."""

    valid: bool
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ConsumptionResult:
    """Result of computing consumption from a (start, end) pair."""

    valid: bool
    consumption: Optional[float] = None  # kWh, rounded to 2 places
    error: Optional[str] = None


def _to_decimal(value) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (Real, Decimal)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def decimal_places(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


class ReadingValidator:
    """
    Validate single readings and reading pairs.

    Contracts:
    - validate_reading: finite, positive, within [valid_min, valid_max],
      at most max_decimal_places decimals
    - calculate_consumption: both readings valid, end > start, difference
      within [consumption_min, consumption_max]
    - validate_consumption_with_context: consumption physically possible
      for the charge duration, charger power and battery size
    """

    def __init__(self, settings: OCRSettings = DEFAULT_SETTINGS):
        self.settings = settings

    def validate_reading(self, value) -> ValidationOutcome:
        s = self.settings
        reading = _to_decimal(value)
        if reading is None:
            return ValidationOutcome(valid=False, error="Invalid number format")
        if reading <= 0:
            return ValidationOutcome(valid=False, error="Reading must be positive")
        if reading < Decimal(str(s.valid_min)):
            return ValidationOutcome(
                valid=False, error=f"Reading too small (minimum: {s.valid_min:g} kWh)"
            )
        if reading > Decimal(str(s.valid_max)):
            return ValidationOutcome(
                valid=False, error=f"Reading too large (maximum: {s.valid_max:g} kWh)"
            )
        if decimal_places(reading) > s.max_decimal_places:
            return ValidationOutcome(valid=False, error="Too many decimal places")
        return ValidationOutcome(valid=True)

    def calculate_consumption(self, start, end) -> ConsumptionResult:
        """
        Compute consumption between two readings.

        Args:
            start: Start meter reading (kWh)
            end: End meter reading (kWh)

        Returns:
            ConsumptionResult with consumption rounded to 2 decimals
        """
        s = self.settings
        start_check = self.validate_reading(start)
        if not start_check.valid:
            return ConsumptionResult(valid=False, error=f"Start reading: {start_check.error}")
        end_check = self.validate_reading(end)
        if not end_check.valid:
            return ConsumptionResult(valid=False, error=f"End reading: {end_check.error}")

        diff = Decimal(str(end)) - Decimal(str(start))
        if diff <= 0:
            return ConsumptionResult(
                valid=False, error="End reading must be greater than start reading"
            )
        if diff < Decimal(str(s.consumption_min)):
            return ConsumptionResult(
                valid=False, error=f"Consumption too low (< {s.consumption_min:g} kWh)"
            )
        if diff > Decimal(str(s.consumption_max)):
            return ConsumptionResult(
                valid=False, error=f"Consumption too high (> {s.consumption_max:g} kWh)"
            )

        rounded = diff.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        return ConsumptionResult(valid=True, consumption=float(rounded))

    def validate_consumption_with_context(
        self,
        consumption: Number,
        duration_minutes: Number,
        charger_power_kw: Number,
        battery_capacity_kwh: Optional[Number] = None,
    ) -> ValidationOutcome:
        """
        Check consumption against what the charger could have delivered.

        Fails when consumption exceeds 115% of the theoretical maximum
        (duration * power * 95% efficiency) or 105% of the battery
        capacity. Warns, without failing, when average power is within 2%
        of the charger rating or delivered efficiency is below 60%.

        Durations under one minute skip these checks entirely.

        Args:
            consumption: Energy delivered (kWh)
            duration_minutes: Elapsed charge time
            charger_power_kw: Rated charger power
            battery_capacity_kwh: Vehicle battery size, if known

        Returns:
            ValidationOutcome with optional warnings
        """
        s = self.settings
        if Decimal(str(duration_minutes)) < Decimal(str(s.min_context_minutes)):
            log.warning(
                "Charging duration too short for validation (%s min)", duration_minutes
            )
            return ValidationOutcome(
                valid=True,
                warnings=["Duration too short for validation - using reading only"],
            )

        energy = Decimal(str(consumption))
        power = Decimal(str(charger_power_kw))
        if power <= 0:
            return ValidationOutcome(valid=False, error="Charger power must be positive")
        hours = Decimal(str(duration_minutes)) / Decimal(60)
        rated_energy = hours * power
        theoretical_max = rated_energy * Decimal(str(s.conversion_efficiency))

        if energy > theoretical_max * Decimal(str(s.theoretical_max_tolerance)):
            return ValidationOutcome(
                valid=False,
                error=(
                    f"Consumption ({consumption} kWh) exceeds theoretical maximum "
                    f"({theoretical_max:.1f} kWh)"
                ),
            )

        if battery_capacity_kwh:
            capacity = Decimal(str(battery_capacity_kwh))
            if energy > capacity * Decimal(str(s.battery_tolerance)):
                return ValidationOutcome(
                    valid=False,
                    error=f"Consumption exceeds battery capacity ({battery_capacity_kwh} kWh)",
                )

        warnings = []
        avg_power = energy / hours
        if avg_power > power * Decimal(str(s.saturation_ratio)):
            warnings.append("Average power very close to charger limit - verify readings")

        efficiency = energy / rated_energy
        if efficiency < Decimal(str(s.min_efficiency)):
            warnings.append(
                f"Low efficiency ({efficiency * 100:.0f}%) - may indicate partial charge"
            )

        return ValidationOutcome(valid=True, warnings=warnings)


def format_reading(value: Number) -> str:
    """Format a reading for display, e.g. ``1245.8 kWh``."""
    return f"{float(value):.1f} kWh"
