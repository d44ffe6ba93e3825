# safety.py
import logging
from typing import Optional

from constants import BOLUS_CONSTANTS
from models import WeightEstimate, WeightValidation
from weight_engine import validate_weight_for_age

logger = logging.getLogger("resusgps-safety")


class SafetySupervisor:
    """
    Advisory checks. Everything here flags and logs; nothing blocks
    a dose or an intervention.
    """

    @staticmethod
    def check_weight_for_age(estimate: WeightEstimate, age_years, age_months=0) -> WeightValidation:
        validation = validate_weight_for_age(estimate.weight_kg, age_years, age_months)
        if not validation.valid:
            logger.warning("Weight plausibility: %s (method %s)", validation.message, estimate.method.value)
        return validation

    @staticmethod
    def bolus_ceiling_ml(weight_kg: Optional[float]) -> Optional[int]:
        if weight_kg is None:
            return None
        return int(round(weight_kg * BOLUS_CONSTANTS.CEILING_ML_PER_KG))

    @staticmethod
    def check_bolus_ceiling(volume_given_ml: Optional[int], max_volume_ml: Optional[int],
                            intervention_id: str = "") -> bool:
        """
        True when the cumulative bolus volume is past the 60 mL/kg ceiling.
        Past this point fluid alone is not working: think inotropes.
        """
        if volume_given_ml is None or max_volume_ml is None:
            return False
        exceeded = volume_given_ml > max_volume_ml
        if exceeded:
            logger.warning("Bolus ceiling exceeded %s: %s mL given, ceiling %s mL",
                           intervention_id, volume_given_ml, max_volume_ml)
        return exceeded
