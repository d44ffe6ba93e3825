"""
ResusGPS: Weight Resolution Engine
==================================
Turns whatever was measured at the bedside into ONE usable weight.

Priority (first applicable wins):
  1. Actual measured weight
  2. Length table (Broselow zones, 46-145 cm)
  3. Age formula, primary ((age + 4) x 2)
  4. MUAC x length (only when no length-table match)
  5. Parent / caregiver estimate
  6. Default 10 kg

The secondary age formula (3 x age + 7) is offered for comparison only.
Nothing in here raises: bad inputs are treated as missing and the
chain degrades confidence instead of failing.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from constants import LENGTH_ZONES, WEIGHT_CONSTANTS, WEIGHT_FOR_AGE_BANDS, LengthZone
from models import (
    Confidence,
    WeightEstimate,
    WeightMeasurements,
    WeightMethod,
    WeightValidation,
    WeightValidationStatus,
    is_positive_number,
)

logger = logging.getLogger("resusgps-weight")


def round_half_up(value: float, places: int = 1) -> float:
    """Clinical rounding: 2.45 -> 2.5, never banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def non_negative(value) -> Optional[float]:
    """Ages may legitimately be 0. Anything unusable becomes None."""
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value < 0 or value == float("inf"):
        return None
    return float(value)


def _positive(value) -> Optional[float]:
    return float(value) if is_positive_number(value) else None


class WeightResolutionEngine:
    """
    The estimation methods, each returning None when inapplicable
    so the resolver can fall through to the next one.
    """

    @staticmethod
    def lookup_length_zone(length_cm: float) -> Optional[LengthZone]:
        if not is_positive_number(length_cm):
            return None
        for zone in LENGTH_ZONES:
            if zone.contains(length_cm):
                return zone
        return None

    @staticmethod
    def estimate_by_length(length_cm: float) -> Optional[WeightEstimate]:
        zone = WeightResolutionEngine.lookup_length_zone(length_cm)
        if zone is None:
            return None
        return WeightEstimate(
            weight_kg=zone.weight_kg,
            method=WeightMethod.LENGTH_TABLE,
            confidence=Confidence.HIGH,
            source=f"Length table {zone.color} zone ({length_cm:g} cm)",
            zone=zone,
        )

    @staticmethod
    def _infant_weight(total_months: float) -> float:
        # Birth ~3.5 kg, +0.7 kg/month to 6 months, then +0.5 kg/month
        early = WEIGHT_CONSTANTS.INFANT_EARLY_MONTHS
        if total_months <= early:
            return WEIGHT_CONSTANTS.INFANT_BASE_KG + total_months * WEIGHT_CONSTANTS.INFANT_EARLY_GAIN_KG_PER_MONTH
        return (WEIGHT_CONSTANTS.INFANT_BASE_KG
                + early * WEIGHT_CONSTANTS.INFANT_EARLY_GAIN_KG_PER_MONTH
                + (total_months - early) * WEIGHT_CONSTANTS.INFANT_LATE_GAIN_KG_PER_MONTH)

    @staticmethod
    def _estimate_by_age(age_years, age_months, method: WeightMethod, label: str,
                         child_formula, child_formula_text: str) -> Optional[WeightEstimate]:
        years = non_negative(age_years)
        months = non_negative(age_months) or 0.0
        if years is None and not months:
            return None
        total_years = (years or 0.0) + months / 12.0

        if total_years < 1:
            total_months = total_years * 12.0
            weight = WeightResolutionEngine._infant_weight(total_months)
            return WeightEstimate(
                weight_kg=round_half_up(weight, 1),
                method=method,
                confidence=Confidence.MEDIUM,
                source=f"{label} infant formula ({total_months:g} months)",
            )

        if total_years <= WEIGHT_CONSTANTS.CHILD_MAX_AGE_YEARS:
            return WeightEstimate(
                weight_kg=round_half_up(child_formula(total_years), 1),
                method=method,
                confidence=Confidence.MEDIUM,
                source=f"{label} formula: {child_formula_text}",
            )

        if total_years <= WEIGHT_CONSTANTS.ADOLESCENT_MAX_AGE_YEARS:
            # Population spread is wide in adolescents
            return WeightEstimate(
                weight_kg=round_half_up(total_years * WEIGHT_CONSTANTS.ADOLESCENT_KG_PER_YEAR, 1),
                method=method,
                confidence=Confidence.LOW,
                source=f"{label} formula: age x 3 (adolescent)",
            )

        return None

    @staticmethod
    def estimate_by_age_primary(age_years, age_months=0) -> Optional[WeightEstimate]:
        return WeightResolutionEngine._estimate_by_age(
            age_years, age_months, WeightMethod.AGE_FORMULA_PRIMARY, "Primary age",
            lambda age: (age + 4) * 2, "(age + 4) x 2",
        )

    @staticmethod
    def estimate_by_age_secondary(age_years, age_months=0) -> Optional[WeightEstimate]:
        return WeightResolutionEngine._estimate_by_age(
            age_years, age_months, WeightMethod.AGE_FORMULA_SECONDARY, "Regional age",
            lambda age: 3 * age + 7, "3 x age + 7",
        )

    @staticmethod
    def estimate_by_muac(muac_cm: float, length_cm: float) -> Optional[WeightEstimate]:
        muac = _positive(muac_cm)
        length = _positive(length_cm)
        if muac is None or length is None:
            return None
        weight = round_half_up((muac * muac * length) / WEIGHT_CONSTANTS.MUAC_DIVISOR, 1)
        if weight <= 0:
            return None
        # MUAC <11.5 cm = SAM: body composition breaks the formula
        is_sam = muac < WEIGHT_CONSTANTS.SAM_MUAC_THRESHOLD_CM
        return WeightEstimate(
            weight_kg=weight,
            method=WeightMethod.MUAC,
            confidence=Confidence.LOW if is_sam else Confidence.MEDIUM,
            source=f"MUAC formula ({muac:g} cm MUAC, {length:g} cm length)",
        )

    @staticmethod
    def resolve(measurements: WeightMeasurements) -> WeightEstimate:
        """
        MASTER RESOLVER: strict priority, never fails.
        """
        m = measurements

        # 1. Actual weight wins regardless of anything else supplied
        actual = _positive(m.actual_weight_kg)
        if actual is not None:
            estimate = WeightEstimate(
                weight_kg=m.actual_weight_kg,
                method=WeightMethod.ACTUAL,
                confidence=Confidence.HIGH,
                source="Measured weight",
            )
            logger.debug("Weight resolved by measurement: %s kg", estimate.weight_kg)
            return estimate

        # 2. Length table
        estimate = None
        if m.length_cm is not None:
            estimate = WeightResolutionEngine.estimate_by_length(m.length_cm)
            if estimate is None:
                logger.debug("Length %r cm outside table, falling through", m.length_cm)

        # 3. Primary age formula
        if estimate is None:
            estimate = WeightResolutionEngine.estimate_by_age_primary(m.age_years, m.age_months)

        # 4. MUAC (needs length, only reached when the length table did not match)
        if estimate is None:
            estimate = WeightResolutionEngine.estimate_by_muac(m.muac_cm, m.length_cm)

        # 5. Caregiver estimate
        if estimate is None:
            parent = _positive(m.parent_estimate_kg)
            if parent is not None:
                estimate = WeightEstimate(
                    weight_kg=m.parent_estimate_kg,
                    method=WeightMethod.PARENT_ESTIMATE,
                    confidence=Confidence.LOW,
                    source="Parent/caregiver estimate",
                )

        # 6. Nothing usable at all
        if estimate is None:
            estimate = WeightEstimate(
                weight_kg=WEIGHT_CONSTANTS.DEFAULT_WEIGHT_KG,
                method=WeightMethod.DEFAULT,
                confidence=Confidence.LOW,
                source="Default estimate (no usable data)",
            )

        logger.debug("Weight resolved: %s kg via %s (%s confidence)",
                     estimate.weight_kg, estimate.method.value, estimate.confidence.value)
        return estimate

    @staticmethod
    def all_estimates(measurements: WeightMeasurements) -> List[WeightEstimate]:
        """Side-by-side comparison of every applicable estimation method."""
        m = measurements
        candidates = [
            WeightResolutionEngine.estimate_by_length(m.length_cm) if m.length_cm is not None else None,
            WeightResolutionEngine.estimate_by_age_primary(m.age_years, m.age_months),
            WeightResolutionEngine.estimate_by_age_secondary(m.age_years, m.age_months),
            WeightResolutionEngine.estimate_by_muac(m.muac_cm, m.length_cm),
        ]
        return [c for c in candidates if c is not None]

    @staticmethod
    def validate_weight_for_age(weight_kg: float, age_years: float, age_months: float = 0) -> WeightValidation:
        """
        Compares a weight against the plausible 5th-95th centile band for age.
        Advisory: flags 'too low' / 'too high', never blocks.
        """
        years = non_negative(age_years) or 0.0
        months = non_negative(age_months) or 0.0
        total_years = years + months / 12.0

        min_kg, max_kg = WEIGHT_FOR_AGE_BANDS[-1][1]
        for ceiling, band in WEIGHT_FOR_AGE_BANDS:
            if ceiling is None:
                break
            # Infant band is strictly below 1 year, the others include their ceiling
            if (ceiling == 1.0 and total_years < ceiling) or (ceiling != 1.0 and total_years <= ceiling):
                min_kg, max_kg = band
                break

        age_label = f"{years:g}y{months:g}m"
        if not is_positive_number(weight_kg):
            return WeightValidation(
                status=WeightValidationStatus.TOO_LOW,
                min_expected_kg=min_kg, max_expected_kg=max_kg,
                message=f"Weight {weight_kg!r} is not a usable value. Re-measure or re-estimate.",
            )
        if weight_kg < min_kg:
            return WeightValidation(
                status=WeightValidationStatus.TOO_LOW,
                min_expected_kg=min_kg, max_expected_kg=max_kg,
                message=(f"Weight ({weight_kg:g} kg) is unusually low for age {age_label}. "
                         "Consider malnutrition or measurement error."),
            )
        if weight_kg > max_kg:
            return WeightValidation(
                status=WeightValidationStatus.TOO_HIGH,
                min_expected_kg=min_kg, max_expected_kg=max_kg,
                message=(f"Weight ({weight_kg:g} kg) is unusually high for age {age_label}. "
                         "Verify measurement or consider obesity."),
            )
        return WeightValidation(
            status=WeightValidationStatus.VALID,
            min_expected_kg=min_kg, max_expected_kg=max_kg,
        )


# Module-level shortcuts
resolve_weight = WeightResolutionEngine.resolve
lookup_length_zone = WeightResolutionEngine.lookup_length_zone
all_weight_estimates = WeightResolutionEngine.all_estimates
validate_weight_for_age = WeightResolutionEngine.validate_weight_for_age
