from __future__ import annotations

from dataclasses import dataclass


class ClinicalFields:
    # curatedOvarianData phenotype columns
    TIME = "days_to_death"
    VITAL_STATUS = "vital_status"
    DEBULKING = "debulking"
    HISTOLOGY = "histological_type"
    GRADE = "summarygrade"
    STAGE = "summarystage"
    AGE = "age_at_initial_pathologic_diagnosis"

    # normalised survival columns produced by studies.prepare_clinical
    SURV_TIME = "time"
    SURV_EVENT = "event"


class Subgroups:
    SUBOPTIMAL = "suboptimal"
    SEROUS = "ser"
    HIGH_GRADE = "high"
    LATE_STAGE = "late"
    AGE_CUTOFF = 70

    DECEASED = "deceased"
    LIVING = "living"


# Covariate Summary column -> (clinical field, level or None for the age cutoff)
SUBGROUP_COLUMNS: dict[str, tuple[str, str | None]] = {
    "suboptimal_debulking": (ClinicalFields.DEBULKING, Subgroups.SUBOPTIMAL),
    "serous_histology": (ClinicalFields.HISTOLOGY, Subgroups.SEROUS),
    "high_grade": (ClinicalFields.GRADE, Subgroups.HIGH_GRADE),
    "late_stage": (ClinicalFields.STAGE, Subgroups.LATE_STAGE),
    "age_over_70": (ClinicalFields.AGE, None),
}

META_METHODS = ("FE", "DL", "REML")


@dataclass(frozen=True)
class MetaConfig:
    method: str = "REML"
    max_iterations: int = 1000
    step_adjustment: float = 0.5
    threshold: float = 1e-5
    alpha: float = 0.05
    penalizer: float = 0.0
    min_samples: int = 10
    plot: bool = True
    n_jobs: int = 1

    def __post_init__(self) -> None:
        if self.method not in META_METHODS:
            raise ValueError(f"method must be one of {META_METHODS}, got {self.method!r}")
        if int(self.max_iterations) < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 0.0 < float(self.step_adjustment) <= 1.0:
            raise ValueError(f"step_adjustment must be in (0, 1], got {self.step_adjustment}")
        if float(self.threshold) <= 0:
            raise ValueError(f"threshold must be > 0, got {self.threshold}")
        if not 0.0 < float(self.alpha) < 1.0:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
