"""
Factor encoding service for experimental layouts.

This module provides the FactorEncodingService that turns an ordered list of
sample identifiers plus run-length groupings ("3 Control, 3 Treated, repeated
across locations") into per-sample categorical factors.
"""

from numbers import Integral
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from factorial_de.core import (
    Factor,
    InvalidGroupingError,
    Location,
    Sample,
    Treatment,
)
from factorial_de.utils.logger import get_logger

logger = get_logger(__name__)

Run = Tuple[str, int]

TREATMENT_FACTOR = "treatment"
LOCATION_FACTOR = "location"


def _is_count(value: Any) -> bool:
    """True for integers >= 1; bools and integral floats are rejected."""
    return isinstance(value, Integral) and not isinstance(value, bool) and value >= 1


class FactorEncodingService:
    """
    Service for building categorical factors from run-length groupings.

    All methods are pure: they return new Factor or Sample objects and never
    modify their inputs.
    """

    def __init__(self):
        """Initialize the factor encoding service."""
        self.logger = logger

    def encode_factor(
        self,
        name: str,
        sample_ids: Sequence[str],
        runs: Sequence[Run],
        repeat: int = 1,
        levels: Optional[Sequence[str]] = None,
    ) -> Factor:
        """
        Encode one factor from run lengths.

        Args:
            name: Factor name
            sample_ids: Ordered sample identifiers (N of them)
            runs: Ordered (level, run_length) pairs
            repeat: Number of times the run pattern is laid out back to back
            levels: Optional level enumeration; its first entry is the
                reference. Defaults to order of first appearance in ``runs``.

        Returns:
            Factor: Factor with one level per sample

        Raises:
            InvalidGroupingError: If run lengths do not cover exactly N samples,
                a run length or ``repeat`` is not an integer >= 1, or a run
                uses a level outside ``levels``
        """
        sample_ids = [str(sample_id) for sample_id in sample_ids]
        n_samples = len(sample_ids)

        if not runs:
            raise InvalidGroupingError(
                f"Factor '{name}' has no runs", details={"factor": name}
            )
        if not _is_count(repeat):
            raise InvalidGroupingError(
                f"Factor '{name}': repeat must be an integer >= 1, got {repeat}",
                details={"factor": name, "repeat": repeat},
            )

        bad_runs = [(level, length) for level, length in runs if not _is_count(length)]
        if bad_runs:
            raise InvalidGroupingError(
                f"Factor '{name}': run lengths must be integers >= 1, got {bad_runs}",
                details={"factor": name, "bad_runs": bad_runs},
            )

        n_labels = sum(length for _, length in runs) * repeat
        if n_labels != n_samples:
            raise InvalidGroupingError(
                f"Factor '{name}': runs cover {n_labels} samples but "
                f"{n_samples} sample identifiers were given",
                details={
                    "factor": name,
                    "n_samples": n_samples,
                    "n_labels": n_labels,
                },
            )

        run_levels = [str(level) for level, _ in runs]
        if levels is None:
            levels = list(dict.fromkeys(run_levels))
        else:
            levels = [str(level) for level in levels]
            if len(set(levels)) != len(levels):
                raise InvalidGroupingError(
                    f"Factor '{name}' declares duplicated levels: {levels}",
                    details={"factor": name, "levels": levels},
                )
            unknown = sorted(set(run_levels) - set(levels))
            if unknown:
                raise InvalidGroupingError(
                    f"Factor '{name}' uses levels {unknown} outside {levels}",
                    details={"factor": name, "unknown_levels": unknown},
                )

        values: List[str] = []
        for _ in range(repeat):
            for level, length in runs:
                values.extend([str(level)] * length)

        factor = Factor(
            name=name,
            values=tuple(values),
            levels=tuple(levels),
            sample_ids=tuple(sample_ids),
        )
        self.logger.debug(
            f"Encoded factor '{name}': {factor.level_counts()} "
            f"(reference: {factor.reference})"
        )
        return factor

    def encode_factors(
        self, sample_ids: Sequence[str], specs: Mapping[str, Mapping[str, Any]]
    ) -> List[Factor]:
        """
        Encode several factors over the same samples.

        Args:
            sample_ids: Ordered sample identifiers
            specs: Mapping of factor name to ``{"runs": [...], "repeat": int,
                "levels": [...]}``; ``repeat`` and ``levels`` are optional

        Returns:
            List[Factor]: Factors in the order of ``specs``
        """
        factors = []
        for name, spec in specs.items():
            if "runs" not in spec:
                raise InvalidGroupingError(
                    f"Factor '{name}' specification has no 'runs'",
                    details={"factor": name},
                )
            factors.append(
                self.encode_factor(
                    name,
                    sample_ids,
                    [tuple(run) for run in spec["runs"]],
                    repeat=spec.get("repeat", 1),
                    levels=spec.get("levels"),
                )
            )
        self.logger.info(
            f"Encoded {len(factors)} factors over {len(sample_ids)} samples"
        )
        return factors

    def factor_from_labels(
        self,
        name: str,
        sample_ids: Sequence[str],
        labels: Sequence[str],
        levels: Optional[Sequence[str]] = None,
    ) -> Factor:
        """
        Encode a factor from one label per sample (e.g. a sample sheet column).

        Consecutive equal labels are collapsed into runs, so the result is
        identical to calling ``encode_factor`` with the matching run lengths.
        """
        if len(labels) != len(sample_ids):
            raise InvalidGroupingError(
                f"Factor '{name}': {len(labels)} labels for {len(sample_ids)} samples",
                details={
                    "factor": name,
                    "n_samples": len(sample_ids),
                    "n_labels": len(labels),
                },
            )
        runs: List[Run] = []
        for label in labels:
            label = str(label)
            if runs and runs[-1][0] == label:
                runs[-1] = (label, runs[-1][1] + 1)
            else:
                runs.append((label, 1))
        return self.encode_factor(name, sample_ids, runs, levels=levels)

    def build_samples(self, treatment: Factor, location: Factor) -> List[Sample]:
        """
        Build Sample objects from the treatment and location factors.

        Raises:
            InvalidGroupingError: If the factors cover different samples or use
                levels outside the Treatment/Location enumerations
        """
        if treatment.sample_ids != location.sample_ids:
            raise InvalidGroupingError(
                "Treatment and location factors cover different samples",
                details={
                    "n_samples": treatment.n_samples,
                    "n_labels": location.n_samples,
                },
            )

        try:
            samples = [
                Sample(
                    sample_id=sample_id,
                    treatment=Treatment(trt),
                    location=Location(loc),
                )
                for sample_id, trt, loc in zip(
                    treatment.sample_ids, treatment.values, location.values
                )
            ]
        except ValueError as e:
            raise InvalidGroupingError(
                f"Unknown treatment or location level: {e}",
                details={
                    "treatment_levels": [t.value for t in Treatment],
                    "location_levels": [loc.value for loc in Location],
                },
            ) from e

        return samples

    def workshop_factors(self, sample_ids: Sequence[str]) -> Tuple[Factor, Factor]:
        """
        Factors for the workshop layout: 12 samples, Control/Treated in runs
        of three, Inland samples first then Beach.

        Returns:
            Tuple[Factor, Factor]: (treatment, location)
        """
        treatment = self.encode_factor(
            TREATMENT_FACTOR,
            sample_ids,
            [(Treatment.CONTROL.value, 3), (Treatment.TREATED.value, 3)],
            repeat=2,
            levels=[t.value for t in Treatment],
        )
        location = self.encode_factor(
            LOCATION_FACTOR,
            sample_ids,
            [(Location.INLAND.value, 6), (Location.BEACH.value, 6)],
            levels=[loc.value for loc in Location],
        )
        return treatment, location

    def describe_factors(self, factors: Sequence[Factor]) -> Dict[str, Dict[str, int]]:
        """Per-factor level counts, useful for logging and CLI previews."""
        return {factor.name: factor.level_counts() for factor in factors}
