# dosing.py
import logging
from typing import Dict, Iterable

from constants import DRUG_LIBRARY, DoseUnit
from models import DoseResult, InvalidInputError, PatientContext, is_positive_number
from weight_engine import round_half_up

logger = logging.getLogger("resusgps-dosing")


class DoseEngine:
    """
    Weight x coefficient, then the hard caps, then clinical rounding.
    Pure: the same weight always produces the same DoseResult.
    """

    @staticmethod
    def _round_amount(amount: float, unit: DoseUnit) -> float:
        # Mass to 0.01 mg; volumes and energies to the whole unit
        if unit == DoseUnit.MG:
            return round_half_up(amount, 2)
        return round_half_up(amount, 0)

    @staticmethod
    def calculate(weight_kg: float, drug_id: str) -> DoseResult:
        if not is_positive_number(weight_kg):
            raise InvalidInputError(f"Cannot dose for weight {weight_kg!r}: must be a positive number")

        drug = DRUG_LIBRARY.get(drug_id)
        if drug is None:
            raise InvalidInputError(f"Unknown drug id: {drug_id!r}")

        raw = weight_kg * drug.per_kg
        amount = raw
        capped = False
        if drug.max_dose is not None and amount > drug.max_dose:
            amount = drug.max_dose
            capped = True
        # Atropine: below 0.1 mg causes paradoxical bradycardia
        if drug.min_dose is not None and amount < drug.min_dose:
            amount = drug.min_dose
            capped = True

        amount = DoseEngine._round_amount(amount, drug.unit)

        draw_up = None
        if drug.concentration_mg_ml:
            draw_up = round_half_up(amount / drug.concentration_mg_ml, 1)

        if capped:
            logger.info("%s capped at %s %s for %s kg (uncapped %.3f)",
                        drug_id, amount, drug.unit.value, weight_kg, raw)

        return DoseResult(
            drug_id=drug_id,
            drug_name=drug.name,
            indication=drug.indication,
            weight_kg=weight_kg,
            amount=amount,
            unit=drug.unit,
            route=drug.route,
            capped=capped,
            draw_up_ml=draw_up,
            concentration=drug.concentration_label,
            max_dose=drug.max_dose,
        )

    @staticmethod
    def calculate_all(weight_kg: float, drug_ids: Iterable[str] = None) -> Dict[str, DoseResult]:
        """The resuscitation sheet: every drug in the library for one weight."""
        ids = list(drug_ids) if drug_ids is not None else list(DRUG_LIBRARY.SPECS)
        return {drug_id: DoseEngine.calculate(weight_kg, drug_id) for drug_id in ids}


def calculate_dose(weight_kg: float, drug_id: str) -> DoseResult:
    return DoseEngine.calculate(weight_kg, drug_id)


def calculate_dose_for_context(context: PatientContext, drug_id: str) -> DoseResult:
    # Read the weight on every call; the session may have swapped it since
    return DoseEngine.calculate(context.weight_kg, drug_id)
