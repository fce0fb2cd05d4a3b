from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

"""
 * Parameters for the Temporal Memory and the Connections store it runs on.
 *
 * A config is built once, validated on construction and treated as read-only
 * afterwards. Use `dataclasses.replace` to derive a variant.
"""


class HtmConfigError(ValueError):
    """Raised when a configuration value is out of its valid range."""


@dataclass(frozen=True)
class HtmConfig:

    num_columns: int = 2048
    """
    * Member "num_columns" is the number of mini-columns in the layer. Active
    * column indices supplied to the Temporal Memory must lie in
    * [0, num_columns).
    """
    cells_per_column: int = 32
    """
    * Member "cells_per_column" is the number of cells in every column.
    """
    activation_threshold: int = 13
    """
    * Member "activation_threshold" is the number of connected synapses to
    * active cells a segment needs to become active (predictive).
    """
    min_threshold: int = 10
    """
    * Member "min_threshold" is the number of potential synapses to active cells
    * a segment needs to be matching, i.e. a candidate for learning.
    """
    initial_permanence: float = 0.21
    """
    * Member "initial_permanence" is the permanence of a newly grown synapse.
    """
    connected_permanence: float = 0.5
    """
    * Member "connected_permanence" is the permanence at or above which a
    * synapse counts as connected.
    """
    permanence_increment: float = 0.10
    """
    * Member "permanence_increment" is added to synapses whose presynaptic cell
    * was active when their segment is reinforced.
    """
    permanence_decrement: float = 0.10
    """
    * Member "permanence_decrement" is subtracted from synapses whose
    * presynaptic cell was inactive when their segment is reinforced.
    """
    predicted_segment_decrement: float = 0.1
    """
    * Member "predicted_segment_decrement" punishes matching segments on columns
    * that did not become active. Zero disables punishment.
    """
    max_new_synapse_count: int = 20
    """
    * Member "max_new_synapse_count" is the number of synapses a learning
    * segment tries to reach when growing towards previous winner cells.
    """
    max_segments_per_cell: int = 255
    """
    * Member "max_segments_per_cell" caps segments on a cell. Creating one more
    * evicts the least recently used segment.
    """
    max_synapses_per_segment: int = 255
    """
    * Member "max_synapses_per_segment" caps synapses on a segment. Growth past
    * the cap evicts the weakest synapses first.
    """
    seed: int = 42
    """
    * Member "seed" seeds the single random generator used for growth and
    * tie-breaking. Two runs with the same seed, parameters and input produce
    * identical results.
    """

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise `HtmConfigError` when any member is out of range."""
        for name in ("num_columns", "cells_per_column", "max_segments_per_cell", "max_synapses_per_segment"):
            value = getattr(self, name)
            if not _is_int(value) or value <= 0:
                raise HtmConfigError(f"{name} must be a positive integer, got {value!r}.")

        for name in ("activation_threshold", "min_threshold", "max_new_synapse_count"):
            value = getattr(self, name)
            if not _is_int(value) or value < 0:
                raise HtmConfigError(f"{name} must be a non-negative integer, got {value!r}.")

        for name in (
            "initial_permanence",
            "connected_permanence",
            "permanence_increment",
            "permanence_decrement",
            "predicted_segment_decrement",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise HtmConfigError(f"{name} must be a number in [0, 1], got {value!r}.")

        if not _is_int(self.seed):
            raise HtmConfigError(f"seed must be an integer, got {self.seed!r}.")

    @property
    def num_cells(self) -> int:
        return self.num_columns * self.cells_per_column

    def make_random(self) -> np.random.Generator:
        """Return a fresh generator seeded from `seed`."""
        return np.random.default_rng(self.seed)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "HtmConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise HtmConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")
        return cls(**values)

    @classmethod
    def from_json(cls, source: Union[str, Path]) -> "HtmConfig":
        """Load a config from a JSON file path or a JSON string."""
        path = Path(source)
        try:
            is_file = path.is_file()
        except OSError:
            is_file = False
        text = path.read_text() if is_file else str(source)
        try:
            values = json.loads(text)
        except json.JSONDecodeError as exc:
            raise HtmConfigError(f"Could not parse configuration: {exc}") from exc
        if not isinstance(values, dict):
            raise HtmConfigError("Configuration JSON must be an object.")
        return cls.from_dict(values)


def _is_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)
