from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from statistics import fmean, pstdev
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

import numpy as np

from htm_config import HtmConfig

logger = logging.getLogger(__name__)

EPSILON = 0.00001  # Synapses whose permanence falls below this are destroyed


# ===== Basic Building Blocks =====

class Cell:
    """Single cell within a column.

    Cells are created once by `Connections` and addressed by their flattened
    index. `column_index` is a lookup reference only; the column owns the cell.
    """

    __slots__ = ("index", "column_index", "segments")

    def __init__(self, index: int, column_index: int) -> None:
        self.index: int = index
        self.column_index: int = column_index
        self.segments: List[DistalSegment] = []

    def __repr__(self) -> str:
        return f"Cell(index={self.index}, column={self.column_index})"

    def __hash__(self) -> int:
        return self.index

    def __lt__(self, other: "Cell") -> bool:
        return self.index < other.index


class Column:
    """Column holding a fixed, ordered run of cells."""

    def __init__(self, index: int, cells: List[Cell]) -> None:
        self.index: int = index
        self.cells: List[Cell] = cells

    def __repr__(self) -> str:
        return f"Column(index={self.index})"

    @property
    def segments(self) -> List[DistalSegment]:
        """Return all distal segments on all cells in this column."""
        return [segment for cell in self.cells for segment in cell.segments]


class Synapse:
    """Distal synapse from a presynaptic cell onto a segment."""

    __slots__ = ("segment", "presynaptic_cell", "permanence", "ordinal")

    def __init__(self, segment: DistalSegment, presynaptic_cell: Cell, permanence: float, ordinal: int) -> None:
        self.segment: DistalSegment = segment
        self.presynaptic_cell: Cell = presynaptic_cell
        self.permanence: float = permanence
        self.ordinal: int = ordinal

    def __repr__(self) -> str:
        return (
            f"Synapse(presynaptic={self.presynaptic_cell.index}, "
            f"segment={self.segment.ordinal}, permanence={self.permanence:.4f})"
        )


class DistalSegment:
    """
    Class containing minimal information to identify a unique segment.

    :param cell: (int) Index of the cell that this segment is on.

    :param flat_idx: (int) The segment's flattened list index. Activity arrays
        are indexed by it. Freed indices are reused by later segments.

    :param ordinal: (int) Creation sequence number. Segments are sorted by it,
        which fixes the order used for tie-breaking.

    :param last_used_iteration: (int) Iteration in which the segment was last
        active. Used to pick a segment to evict when a cell is full.
    """

    __slots__ = (
        "cell",
        "flat_idx",
        "ordinal",
        "last_used_iteration",
        "synapses",
        "destroyed",
        "_synapse_for_presynaptic_cell",
    )

    def __init__(self, cell: int, flat_idx: int, ordinal: int, last_used_iteration: int = 0) -> None:
        self.cell: int = cell
        self.flat_idx: int = flat_idx
        self.ordinal: int = ordinal
        self.last_used_iteration: int = last_used_iteration
        self.synapses: List[Synapse] = []
        self.destroyed: bool = False
        self._synapse_for_presynaptic_cell: Dict[int, Synapse] = {}

    def __repr__(self) -> str:
        return f"DistalSegment(cell={self.cell}, ordinal={self.ordinal}, synapses={len(self.synapses)})"

    def synapse_to(self, presynaptic_cell: Cell) -> Optional[Synapse]:
        """Return the synapse from `presynaptic_cell`, if this segment has one."""
        return self._synapse_for_presynaptic_cell.get(presynaptic_cell.index)

    @property
    def presynaptic_cells(self) -> Set[Cell]:
        return {syn.presynaptic_cell for syn in self.synapses}


def is_connected(permanence: float, connected_permanence: float) -> bool:
    """True when `permanence` reaches `connected_permanence`, within EPSILON."""
    return permanence > connected_permanence - EPSILON


def segment_sort_key(segment: DistalSegment) -> int:
    """Sort key giving segments a stable, creation-ordered position."""
    return segment.ordinal


@dataclass
class SegmentActivity:
    """Per-segment synapse counts for one set of active presynaptic cells.

    Both arrays are indexed by `DistalSegment.flat_idx`.
    """

    num_active_connected: np.ndarray
    num_active_potential: np.ndarray

    @classmethod
    def empty(cls) -> "SegmentActivity":
        return cls(np.zeros(0, dtype=np.intp), np.zeros(0, dtype=np.intp))

    def active(self, segment: DistalSegment) -> int:
        """Return the number of connected synapses to active cells."""
        if segment.flat_idx >= self.num_active_connected.shape[0]:
            return 0
        return int(self.num_active_connected[segment.flat_idx])

    def potential(self, segment: DistalSegment) -> int:
        """Return the number of synapses to active cells, regardless of permanence."""
        if segment.flat_idx >= self.num_active_potential.shape[0]:
            return 0
        return int(self.num_active_potential[segment.flat_idx])


# ===== Connectivity Store =====

class Connections:
    """Structural and per-cycle state shared by the Temporal Memory.

    Columns and cells are created once here and never resized. Segments and
    synapses come and go during learning; destroying a synapse that empties its
    segment destroys the segment too. The store also keeps the most recent
    cycle's active/winner cells and active/matching segments, which the
    Temporal Memory reads as "previous" state on the next cycle.
    """

    def __init__(self, config: HtmConfig) -> None:
        self.config: HtmConfig = config
        cells_per_column = config.cells_per_column

        self.cells: List[Cell] = [
            Cell(index, index // cells_per_column) for index in range(config.num_cells)
        ]
        self.columns: List[Column] = [
            Column(col_idx, self.cells[col_idx * cells_per_column:(col_idx + 1) * cells_per_column])
            for col_idx in range(config.num_columns)
        ]

        self._segment_for_flat_idx: List[Optional[DistalSegment]] = []
        self._free_flat_idxs: List[int] = []
        self._next_flat_idx = 0
        self._next_segment_ordinal = 0
        self._next_synapse_ordinal = 0
        self._num_synapses = 0
        self._synapses_for_presynaptic_cell: Dict[int, Set[Synapse]] = defaultdict(set)

        # Most recent cycle, read back as t-1 by the next compute.
        self.active_cells: Set[Cell] = set()
        self.winner_cells: Set[Cell] = set()
        self.active_segments: List[DistalSegment] = []
        self.matching_segments: List[DistalSegment] = []
        self.last_activity: SegmentActivity = SegmentActivity.empty()
        self.iteration: int = 0

    def __repr__(self) -> str:
        return (
            f"Connections(columns={len(self.columns)}, cells={len(self.cells)}, "
            f"segments={self.num_segments()}, synapses={self.num_synapses()})"
        )

    # --------------------- Lookups ---------------------
    @property
    def num_columns(self) -> int:
        return len(self.columns)

    @property
    def num_cells(self) -> int:
        return len(self.cells)

    def get_column(self, index: int) -> Column:
        return self.columns[index]

    def get_cell(self, index: int) -> Cell:
        return self.cells[index]

    def cells_for_column(self, index: int) -> List[Cell]:
        return self.columns[index].cells

    def cell_for_segment(self, segment: DistalSegment) -> Cell:
        return self.cells[segment.cell]

    def column_index_for_segment(self, segment: DistalSegment) -> int:
        return segment.cell // self.config.cells_per_column

    def segments_for_cell(self, cell: Cell) -> List[DistalSegment]:
        return cell.segments

    def synapses_for_segment(self, segment: DistalSegment) -> List[Synapse]:
        return segment.synapses

    def synapses_for_presynaptic_cell(self, presynaptic_cell: Cell) -> Set[Synapse]:
        """Return the synapses that `presynaptic_cell` forms on any segment."""
        return self._synapses_for_presynaptic_cell.get(presynaptic_cell.index, set())

    def segment_for_flat_idx(self, flat_idx: int) -> Optional[DistalSegment]:
        return self._segment_for_flat_idx[flat_idx]

    def segment_flat_list_length(self) -> int:
        """Length a list needs to hold one value per segment flat index."""
        return self._next_flat_idx

    def num_segments(self, cell: Optional[Cell] = None) -> int:
        if cell is not None:
            return len(cell.segments)
        return self._next_flat_idx - len(self._free_flat_idxs)

    def num_synapses(self, segment: Optional[DistalSegment] = None) -> int:
        if segment is not None:
            return len(segment.synapses)
        return self._num_synapses

    def iter_segments(self) -> Iterable[DistalSegment]:
        """Yield every live segment in creation order."""
        live = [segment for segment in self._segment_for_flat_idx if segment is not None]
        return iter(sorted(live, key=segment_sort_key))

    @property
    def next_segment_ordinal(self) -> int:
        return self._next_segment_ordinal

    @property
    def predictive_cells(self) -> Set[Cell]:
        """Cells depolarized by the current active segments."""
        return {self.cells[segment.cell] for segment in self.active_segments}

    # --------------------- Structural changes ---------------------
    def create_segment(self, cell: Cell) -> DistalSegment:
        """Append a new segment to `cell`, evicting its least recently used
        segment first when the cell is full."""
        while len(cell.segments) >= self.config.max_segments_per_cell:
            victim = min(cell.segments, key=lambda s: (s.last_used_iteration, s.ordinal))
            logger.debug("Cell %d full, evicting segment %d", cell.index, victim.ordinal)
            self.destroy_segment(victim)

        return self._add_segment(cell, self._next_segment_ordinal, self.iteration)

    def _add_segment(self, cell: Cell, ordinal: int, last_used_iteration: int) -> DistalSegment:
        if self._free_flat_idxs:
            flat_idx = self._free_flat_idxs.pop()
        else:
            flat_idx = self._next_flat_idx
            self._segment_for_flat_idx.append(None)
            self._next_flat_idx += 1

        segment = DistalSegment(cell.index, flat_idx, ordinal, last_used_iteration)
        cell.segments.append(segment)
        self._segment_for_flat_idx[flat_idx] = segment
        self._next_segment_ordinal = max(self._next_segment_ordinal, ordinal + 1)
        return segment

    def destroy_segment(self, segment: DistalSegment) -> None:
        """Destroy a segment together with all of its synapses."""
        if segment.destroyed:
            return

        for synapse in list(segment.synapses):
            self._remove_synapse(synapse)

        self.cells[segment.cell].segments.remove(segment)
        self._free_flat_idxs.append(segment.flat_idx)
        self._segment_for_flat_idx[segment.flat_idx] = None
        segment.destroyed = True

    def create_synapse(self, segment: DistalSegment, presynaptic_cell: Cell, permanence: float) -> Synapse:
        """Create a synapse from `presynaptic_cell` onto `segment`.

        A segment holds at most one synapse per presynaptic cell; when one
        exists already it is returned unchanged. A full segment gives up its
        weakest synapse to make room.
        """
        if segment.destroyed:
            raise ValueError(f"Cannot create a synapse on destroyed segment {segment.ordinal}.")

        existing = segment.synapse_to(presynaptic_cell)
        if existing is not None:
            return existing

        while len(segment.synapses) >= self.config.max_synapses_per_segment:
            weakest = min(segment.synapses, key=lambda s: (s.permanence, s.ordinal))
            logger.debug("Segment %d full, evicting synapse %d", segment.ordinal, weakest.ordinal)
            self._remove_synapse(weakest)

        return self._add_synapse(segment, presynaptic_cell, permanence, self._next_synapse_ordinal)

    def _add_synapse(self, segment: DistalSegment, presynaptic_cell: Cell, permanence: float, ordinal: int) -> Synapse:
        synapse = Synapse(segment, presynaptic_cell, _clamp(permanence), ordinal)
        segment.synapses.append(synapse)
        segment._synapse_for_presynaptic_cell[presynaptic_cell.index] = synapse
        self._synapses_for_presynaptic_cell[presynaptic_cell.index].add(synapse)
        self._next_synapse_ordinal = max(self._next_synapse_ordinal, ordinal + 1)
        self._num_synapses += 1
        return synapse

    def destroy_synapse(self, synapse: Synapse, segment: Optional[DistalSegment] = None) -> None:
        """Destroy a synapse; a segment left without synapses is destroyed too."""
        segment = synapse.segment if segment is None else segment
        self._remove_synapse(synapse)
        if not segment.synapses:
            self.destroy_segment(segment)

    def destroy_min_permanence_synapses(
        self,
        segment: DistalSegment,
        count: int,
        excluded_cells: Iterable[Cell] = (),
    ) -> int:
        """Remove up to `count` of the weakest synapses on `segment`, skipping
        synapses from `excluded_cells`. The segment itself is kept.

        Returns the number of synapses removed.
        """
        excluded = {cell.index for cell in excluded_cells}
        candidates = sorted(
            (syn for syn in segment.synapses if syn.presynaptic_cell.index not in excluded),
            key=lambda s: (s.permanence, s.ordinal),
        )
        removed = candidates[:max(0, count)]
        for synapse in removed:
            self._remove_synapse(synapse)
        return len(removed)

    def _remove_synapse(self, synapse: Synapse) -> None:
        segment = synapse.segment
        segment.synapses.remove(synapse)
        del segment._synapse_for_presynaptic_cell[synapse.presynaptic_cell.index]

        presynaptic = self._synapses_for_presynaptic_cell[synapse.presynaptic_cell.index]
        presynaptic.discard(synapse)
        if not presynaptic:
            del self._synapses_for_presynaptic_cell[synapse.presynaptic_cell.index]
        self._num_synapses -= 1

    def update_synapse_permanence(self, synapse: Synapse, permanence: float) -> None:
        synapse.permanence = _clamp(permanence)

    # --------------------- Activity ---------------------
    def compute_activity(self, active_cells: Iterable[Cell], connected_permanence: float) -> SegmentActivity:
        """
        Compute each segment's number of active synapses for a given input.

        Only synapses reachable from the active cells are visited, through the
        presynaptic index. A synapse counts as potential when its presynaptic
        cell is active, and as connected when in addition its permanence is at
        least `connected_permanence`.
        """
        potential: List[int] = []
        connected: List[int] = []

        for cell in active_cells:
            for synapse in self._synapses_for_presynaptic_cell.get(cell.index, ()):
                flat_idx = synapse.segment.flat_idx
                potential.append(flat_idx)
                if is_connected(synapse.permanence, connected_permanence):
                    connected.append(flat_idx)

        length = self._next_flat_idx
        return SegmentActivity(
            num_active_connected=np.bincount(np.asarray(connected, dtype=np.intp), minlength=length),
            num_active_potential=np.bincount(np.asarray(potential, dtype=np.intp), minlength=length),
        )

    def record_segment_activity(self, segment: DistalSegment) -> None:
        """Mark `segment` as used in the current iteration."""
        segment.last_used_iteration = self.iteration

    def start_new_iteration(self) -> None:
        self.iteration += 1

    def clear_activity(self) -> None:
        """Drop the per-cycle state; structure is untouched."""
        self.active_cells = set()
        self.winner_cells = set()
        self.active_segments = []
        self.matching_segments = []
        self.last_activity = SegmentActivity.empty()

    # --------------------- Snapshot ---------------------
    def to_dict(self) -> Dict[str, Any]:
        """Return the structural state as plain JSON-compatible data."""
        return {
            "config": self.config.to_dict(),
            "iteration": self.iteration,
            "next_segment_ordinal": self._next_segment_ordinal,
            "next_synapse_ordinal": self._next_synapse_ordinal,
            "segments": [
                {
                    "cell": segment.cell,
                    "ordinal": segment.ordinal,
                    "last_used_iteration": segment.last_used_iteration,
                    "synapses": [
                        [syn.presynaptic_cell.index, syn.permanence, syn.ordinal]
                        for syn in segment.synapses
                    ],
                }
                for segment in self.iter_segments()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connections":
        """Rebuild a store from `to_dict` output."""
        connections = cls(HtmConfig.from_dict(data["config"]))
        for entry in data["segments"]:
            cell = connections.cells[entry["cell"]]
            segment = connections._add_segment(cell, entry["ordinal"], entry["last_used_iteration"])
            for presynaptic_index, permanence, ordinal in entry["synapses"]:
                connections._add_synapse(segment, connections.cells[presynaptic_index], permanence, ordinal)

        connections.iteration = data["iteration"]
        connections._next_segment_ordinal = data["next_segment_ordinal"]
        connections._next_synapse_ordinal = data["next_synapse_ordinal"]
        return connections

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.write_text(json.dumps(self.to_dict()))
        logger.info("Saved %d segments and %d synapses to %s", self.num_segments(), self.num_synapses(), path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Connections":
        path = Path(path)
        connections = cls.from_dict(json.loads(path.read_text()))
        logger.info(
            "Loaded %d segments and %d synapses from %s",
            connections.num_segments(), connections.num_synapses(), path,
        )
        return connections

    def _structure(self) -> Tuple[Any, ...]:
        return tuple(
            tuple(
                (segment.ordinal, tuple(
                    (syn.presynaptic_cell.index, syn.permanence) for syn in segment.synapses
                ))
                for segment in cell.segments
            )
            for cell in self.cells
        )

    def __eq__(self, other: object) -> bool:
        """Two stores are equal when their configuration, segments and synapses match."""
        if not isinstance(other, Connections):
            return NotImplemented
        return (
            self.config == other.config
            and self._num_synapses == other._num_synapses
            and self._structure() == other._structure()
        )

    __hash__ = None  # type: ignore[assignment]

    # --------------------- Statistics ---------------------
    def stats(self) -> Dict[str, Any]:
        """Summaries of segments, synapses and permanences in the store."""
        segments_per_cell = [len(cell.segments) for cell in self.cells]
        all_segments = [segment for cell in self.cells for segment in cell.segments]
        synapses_per_segment = [len(segment.synapses) for segment in all_segments]
        permanences = [syn.permanence for segment in all_segments for syn in segment.synapses]
        connected = sum(1 for p in permanences if is_connected(p, self.config.connected_permanence))

        return {
            "columns": len(self.columns),
            "cells": len(self.cells),
            "segments": len(all_segments),
            "synapses": len(permanences),
            "connected_synapses": connected,
            "segments_per_cell": _describe(segments_per_cell),
            "synapses_per_segment": _describe(synapses_per_segment),
            "permanence": _describe(permanences),
        }

    def print_stats(self) -> None:
        """Print statistics about the segments and synapses in the store."""
        stats = self.stats()

        def format_metric(label: str, summary: Dict[str, float], precision: str) -> str:
            mean_str = format(summary["mean"], precision)
            std_str = format(summary["std"], precision)
            min_str = format(summary["min"], precision)
            max_str = format(summary["max"], precision)
            return f"| {label:<22}| {mean_str:>8} ± {std_str:<8}| {min_str:>8} | {max_str:>8} |"

        table_lines = [
            "+------------------------+--------------------+----------+----------+",
            "| Metric                 |   Mean ± Std      |      Min |      Max |",
            "+------------------------+--------------------+----------+----------+",
            format_metric("Segments per cell", stats["segments_per_cell"], ".2f"),
            format_metric("Synapses per segment", stats["synapses_per_segment"], ".2f"),
            format_metric("Permanence", stats["permanence"], ".3f"),
            "+------------------------+--------------------+----------+----------+",
        ]
        ratio = stats["connected_synapses"] / stats["synapses"] if stats["synapses"] else 0.0

        print("Connections statistics:")
        print(
            f"  Columns: {stats['columns']} | Cells: {stats['cells']} | "
            f"Segments: {stats['segments']} | Synapses: {stats['synapses']}"
        )
        for line in table_lines:
            print(f"  {line}")
        print(
            f"  Connected synapses (>= {self.config.connected_permanence}): "
            f"{stats['connected_synapses']} ({ratio:.1%} of all synapses)"
        )


def _clamp(permanence: float) -> float:
    return 0.0 if permanence < 0.0 else 1.0 if permanence > 1.0 else float(permanence)


def _describe(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"count": 0, "mean": 0.0, "std": 0.0, "min": 0.0, "max": 0.0}
    return {
        "count": len(values),
        "mean": fmean(values),
        "std": pstdev(values) if len(values) > 1 else 0.0,
        "min": float(min(values)),
        "max": float(max(values)),
    }
