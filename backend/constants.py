from enum import Enum
from dataclasses import dataclass
from typing import Optional, Tuple

VERSION = "1.0.0"


class DoseUnit(Enum):
    """What a per-kg coefficient multiplies into."""
    MG = "mg"
    ML = "mL"
    JOULES = "J"


@dataclass(frozen=True)
class LengthZone:
    color: str
    length_min_cm: int
    length_max_cm: int
    weight_kg: int
    tube_size_mm: float     # Endotracheal tube internal diameter
    tube_depth_cm: float    # Insertion depth at the lip
    defib_energy_j: int     # 2 J/kg
    epinephrine_mg: float   # 0.01 mg/kg
    fluid_bolus_ml: int     # 20 mL/kg

    def contains(self, length_cm: float) -> bool:
        # Half-open so fractional lengths between bins (54.5) still land in one zone
        return self.length_min_cm <= length_cm < self.length_max_cm + 1


# Broselow-Luten 2017 bins. Contiguous: zone[i+1].min == zone[i].max + 1
LENGTH_ZONES: Tuple[LengthZone, ...] = (
    LengthZone("Grey",    46,  54,  3, 3.0,  9.0,  6, 0.03,  60),
    LengthZone("Pink",    55,  60,  4, 3.5, 10.0,  8, 0.04,  80),
    LengthZone("Red",     61,  67,  5, 3.5, 10.5, 10, 0.05, 100),
    LengthZone("Purple",  68,  76,  7, 4.0, 12.0, 14, 0.07, 140),
    LengthZone("Yellow",  77,  85,  9, 4.5, 13.5, 18, 0.09, 180),
    LengthZone("White",   86,  95, 11, 5.0, 15.0, 22, 0.11, 220),
    LengthZone("Blue",    96, 107, 14, 5.5, 16.5, 28, 0.14, 280),
    LengthZone("Orange", 108, 120, 18, 6.0, 18.0, 36, 0.18, 360),
    LengthZone("Green",  121, 145, 24, 6.5, 19.5, 48, 0.24, 480),
)


class WEIGHT_CONSTANTS:
    INFANT_BASE_KG = 3.5
    INFANT_EARLY_GAIN_KG_PER_MONTH = 0.7   # months 0-6
    INFANT_LATE_GAIN_KG_PER_MONTH = 0.5    # months 7-12
    INFANT_EARLY_MONTHS = 6

    CHILD_MAX_AGE_YEARS = 10
    ADOLESCENT_MAX_AGE_YEARS = 14
    ADOLESCENT_KG_PER_YEAR = 3

    SAM_MUAC_THRESHOLD_CM = 11.5  # <11.5cm = Severe Acute Malnutrition
    MUAC_DIVISOR = 1000.0

    DEFAULT_WEIGHT_KG = 10.0      # ~2 year old


# Age ceiling (years, inclusive) -> plausible (min, max) kg, 5th-95th centile
WEIGHT_FOR_AGE_BANDS = (
    (1.0, (3.0, 12.0)),     # Infants (strictly < 1y)
    (2.0, (8.0, 16.0)),     # Toddlers
    (5.0, (12.0, 25.0)),    # Preschool
    (10.0, (15.0, 50.0)),   # School age
    (None, (30.0, 80.0)),   # Adolescent
)


@dataclass(frozen=True)
class DrugProperties:
    name: str
    indication: str
    per_kg: float
    unit: DoseUnit
    route: str
    max_dose: Optional[float] = None
    min_dose: Optional[float] = None
    # mg/mL. Only set for drugs drawn up from a vial.
    concentration_mg_ml: Optional[float] = None
    concentration_label: str = ""


class DRUG_LIBRARY:
    """
    The Emergency Drug Compendium.
    Fixed per-kg coefficients with hard caps that apply regardless of weight.
    """
    SPECS = {
        "epinephrine_arrest": DrugProperties(
            name="Epinephrine (Adrenaline)", indication="Cardiac arrest",
            per_kg=0.01, unit=DoseUnit.MG, route="IV/IO",
            max_dose=1.0, concentration_mg_ml=0.1,
            concentration_label="0.1 mg/mL (1:10,000)"
        ),
        "epinephrine_anaphylaxis": DrugProperties(
            name="Epinephrine (Adrenaline)", indication="Anaphylaxis",
            per_kg=0.01, unit=DoseUnit.MG, route="IM (anterolateral thigh)",
            max_dose=0.5, concentration_mg_ml=1.0,
            concentration_label="1 mg/mL (1:1000)"
        ),
        "amiodarone": DrugProperties(
            name="Amiodarone", indication="Cardiac arrest (VF/pVT)",
            per_kg=5.0, unit=DoseUnit.MG, route="IV/IO rapid bolus",
            max_dose=300.0, concentration_mg_ml=50.0,
            concentration_label="50 mg/mL"
        ),
        "adenosine_first": DrugProperties(
            name="Adenosine", indication="SVT (first dose)",
            per_kg=0.1, unit=DoseUnit.MG, route="IV rapid push + NS flush",
            max_dose=6.0, concentration_mg_ml=3.0,
            concentration_label="3 mg/mL"
        ),
        "adenosine_second": DrugProperties(
            name="Adenosine", indication="SVT (second dose)",
            per_kg=0.2, unit=DoseUnit.MG, route="IV rapid push + NS flush",
            max_dose=12.0, concentration_mg_ml=3.0,
            concentration_label="3 mg/mL"
        ),
        "atropine": DrugProperties(
            name="Atropine", indication="Bradycardia with poor perfusion",
            per_kg=0.02, unit=DoseUnit.MG, route="IV/IO rapid push",
            min_dose=0.1, max_dose=0.5, concentration_mg_ml=0.1,
            concentration_label="0.1 mg/mL"
        ),
        "hydrocortisone": DrugProperties(
            name="Hydrocortisone", indication="Anaphylaxis / status asthmaticus",
            per_kg=4.0, unit=DoseUnit.MG, route="IV/IO slow push",
            max_dose=100.0, concentration_mg_ml=50.0,
            concentration_label="50 mg/mL (reconstituted)"
        ),
        "diazepam_iv": DrugProperties(
            name="Diazepam", indication="Seizures",
            per_kg=0.3, unit=DoseUnit.MG, route="IV/IO slow push",
            max_dose=10.0, concentration_mg_ml=5.0,
            concentration_label="5 mg/mL"
        ),
        "diazepam_rectal": DrugProperties(
            name="Diazepam", indication="Seizures",
            per_kg=0.5, unit=DoseUnit.MG, route="Rectal",
            max_dose=20.0, concentration_mg_ml=5.0,
            concentration_label="5 mg/mL"
        ),
        "fluid_bolus": DrugProperties(
            name="Normal Saline 0.9%", indication="Shock resuscitation",
            per_kg=20.0, unit=DoseUnit.ML, route="IV/IO",
            max_dose=1000.0, concentration_label="Isotonic crystalloid"
        ),
        "dextrose_10": DrugProperties(
            name="Dextrose 10%", indication="Hypoglycemia",
            per_kg=2.0, unit=DoseUnit.ML, route="IV/IO slow push",
            max_dose=100.0, concentration_label="10% (0.1 g/mL)"
        ),
        "defibrillation": DrugProperties(
            name="Defibrillation", indication="VF / pulseless VT",
            per_kg=2.0, unit=DoseUnit.JOULES, route="Pads/paddles"
        ),
        "cardioversion": DrugProperties(
            name="Synchronized cardioversion", indication="Unstable SVT",
            per_kg=1.0, unit=DoseUnit.JOULES, route="Pads/paddles"
        ),
    }

    @staticmethod
    def get(drug_id: str) -> Optional[DrugProperties]:
        return DRUG_LIBRARY.SPECS.get(drug_id)


class GLUCOSE_CONSTANTS:
    MG_DL_PER_MMOL_L = 18.0
    HYPOGLYCEMIA_MMOL_L = 3.0
    HYPERGLYCEMIA_MMOL_L = 14.0


class TIMER_CONSTANTS:
    # Seconds until the intervention should be reassessed
    BVM_REASSESS_S = 30
    CPR_CYCLE_S = 120
    DEXTROSE_RECHECK_S = 900
    FLUID_BOLUS_REASSESS_S = 600
    WEAK_PULSE_REASSESS_S = 300
    IV_ACCESS_S = 90
    IO_ACCESS_S = 60
    INOTROPE_REASSESS_S = 300
    AIRWAY_REASSESS_S = 60
    EPINEPHRINE_REPEAT_S = 180
    NEBULIZER_REASSESS_S = 600
    TICK_INTERVAL_S = 1


class BOLUS_CONSTANTS:
    CEILING_ML_PER_KG = 60.0  # Advisory: beyond this, think inotropes


class AGE_BANDS:
    # Years. Below INFANT -> infant technique; below OLDER_CHILD -> child technique.
    INFANT = 1.0
    OLDER_CHILD = 8.0
