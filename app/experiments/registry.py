"""Lookup of experiment families by name."""

from typing import Dict, List, Type

from app.experiments.base import Experiment, UnknownExperimentError
from app.experiments.composite import CompositeIndexExperiment
from app.experiments.selectivity import SelectivityExperiment
from app.experiments.write_cost import WriteCostExperiment


# Registry mapping family names to their experiment classes
_EXPERIMENT_REGISTRY: Dict[str, Type[Experiment]] = {
    "write_cost": WriteCostExperiment,
    "index_cost_test": WriteCostExperiment,  # Alias
    "selectivity": SelectivityExperiment,
    "selectivity_test": SelectivityExperiment,  # Alias
    "composite": CompositeIndexExperiment,
    "composite_test": CompositeIndexExperiment,  # Alias
}

# Instances are stateless between requests, so one per family is enough
_EXPERIMENT_CACHE: Dict[str, Experiment] = {}


def get_experiment(family: str) -> Experiment:
    """Get the experiment for a family name or alias (case-insensitive).

    Raises:
        UnknownExperimentError: If the family is not registered.
    """
    normalized = (family or "").lower().strip()
    experiment_class = _EXPERIMENT_REGISTRY.get(normalized)
    if experiment_class is None:
        raise UnknownExperimentError(
            f"Experiment '{family}' is not supported. Supported experiments: {', '.join(list_families())}"
        )

    canonical = experiment_class.family
    if canonical not in _EXPERIMENT_CACHE:
        _EXPERIMENT_CACHE[canonical] = experiment_class()
    return _EXPERIMENT_CACHE[canonical]


def list_families() -> List[str]:
    return sorted({cls.family for cls in _EXPERIMENT_REGISTRY.values()})


def clear_experiment_cache() -> None:
    """Clear the instance cache. Useful for testing."""
    _EXPERIMENT_CACHE.clear()
