from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

import numpy as np

from connections import (
    EPSILON,
    Cell,
    Column,
    Connections,
    DistalSegment,
    SegmentActivity,
    Synapse,
    segment_sort_key,
)
from htm_config import HtmConfig, HtmConfigError

logger = logging.getLogger(__name__)

ActiveColumnInput = Union[Set[int], Sequence[int], np.ndarray]


class ActiveColumnError(ValueError):
    """Raised when the active column input is not a valid set of column indices."""


@dataclass
class ComputeCycle:
    """Result of one `TemporalMemory.compute` call."""

    active_column_indices: List[int] = field(default_factory=list)
    active_cells: Set[Cell] = field(default_factory=set)
    winner_cells: Set[Cell] = field(default_factory=set)
    active_segments: List[DistalSegment] = field(default_factory=list)
    matching_segments: List[DistalSegment] = field(default_factory=list)
    predictive_cells: Set[Cell] = field(default_factory=set)


class BurstingResult(NamedTuple):
    cells: List[Cell]
    best_cell: Cell


def cell_indices(cells: Iterable[Cell]) -> List[int]:
    """Return the sorted flat indices of `cells`."""
    return sorted(cell.index for cell in cells)


# ===== Temporal Memory =====

class TemporalMemory:
    """Temporal Memory following HTM principles.

    Learns temporal sequences through distal dendrite segments on cells. Each
    `compute` call runs in two phases: cells are activated from the active
    columns using the segment activity of the previous cycle, then segment
    activity is re-evaluated against the new active cells. The result of the
    second phase is what the next cycle sees as "previous" state.

    All randomness comes from one generator, seeded from `config.seed` unless
    the caller passes its own.
    """

    def __init__(
        self,
        config: HtmConfig,
        connections: Optional[Connections] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if connections is None:
            connections = Connections(config)
        elif connections.config != config:
            raise HtmConfigError("Connections were built with a different configuration.")

        self.config: HtmConfig = config
        self.connections: Connections = connections
        self.rng: np.random.Generator = rng if rng is not None else config.make_random()

        self.active_columns: List[int] = []
        self.bursting_columns: Set[int] = set()

    def __repr__(self) -> str:
        return f"TemporalMemory(columns={self.config.num_columns}, cells_per_column={self.config.cells_per_column})"

    # --------------------- Input ---------------------
    def _validate_column_index(self, idx: Any) -> int:
        if isinstance(idx, (bool, np.bool_)) or not isinstance(idx, (int, np.integer)):
            raise ActiveColumnError(f"Column index {idx!r} is not an integer.")
        value = int(idx)
        if value < 0 or value >= self.config.num_columns:
            raise ActiveColumnError(f"Column index {value} out of bounds for {self.config.num_columns} columns.")
        return value

    def normalize_active_columns(self, active_columns: ActiveColumnInput) -> List[int]:
        """Return the active columns as an ascending list of unique indices.

        Accepts a set of indices, an index sequence or array, or a boolean mask
        of length `num_columns` (a numpy bool array or a sequence of bools).
        """
        if isinstance(active_columns, (str, bytes)):
            raise TypeError("Active column sequence must not be a string/bytes.")

        if isinstance(active_columns, np.ndarray):
            vector = active_columns.ravel()
            if vector.dtype == np.bool_:
                return self._mask_to_indices(vector.tolist())
            return sorted({self._validate_column_index(val) for val in vector})

        if isinstance(active_columns, (set, frozenset)):
            return sorted({self._validate_column_index(idx) for idx in active_columns})

        if isinstance(active_columns, Sequence):
            values = list(active_columns)
            if values and all(isinstance(value, (bool, np.bool_)) for value in values):
                return self._mask_to_indices(values)
            return sorted({self._validate_column_index(value) for value in values})

        raise TypeError("Unsupported type for active_columns; provide indices or a binary mask.")

    def _mask_to_indices(self, mask: List[bool]) -> List[int]:
        if len(mask) != self.config.num_columns:
            raise ActiveColumnError(
                f"Column mask has length {len(mask)}, expected {self.config.num_columns}."
            )
        return [idx for idx, value in enumerate(mask) if value]

    # --------------------- Compute ---------------------
    def compute(self, active_columns: ActiveColumnInput, learn: bool = True) -> ComputeCycle:
        """Run one cycle: activate cells, then activate dendrites."""
        cycle = self.activate_cells(active_columns, learn)
        self.activate_dendrites(cycle, learn)
        return cycle

    def _group_segments_by_column(
        self,
        active_segments: Iterable[DistalSegment],
        matching_segments: Iterable[DistalSegment],
    ) -> Dict[int, Tuple[List[DistalSegment], List[DistalSegment]]]:
        grouped: Dict[int, Tuple[List[DistalSegment], List[DistalSegment]]] = {}
        for slot, segments in enumerate((active_segments, matching_segments)):
            for segment in segments:
                if segment.destroyed:
                    continue
                col_idx = self.connections.column_index_for_segment(segment)
                grouped.setdefault(col_idx, ([], []))[slot].append(segment)
        return grouped

    def activate_cells(self, active_columns: ActiveColumnInput, learn: bool = True) -> ComputeCycle:
        """
        Calculate the active cells, using the current active columns and the
        segments that were active and matching in the previous cycle. Grow and
        reinforce synapses when learning.

        Pseudocode:
          for each column
            if column is active and has active distal dendrite segments
              call activate_predicted_column
            if column is active and doesn't have active distal dendrite segments
              call burst_column
            if column is inactive and has matching distal dendrite segments
              call punish_predicted_column
        """
        conn = self.connections
        column_indices = self.normalize_active_columns(active_columns)
        cycle = ComputeCycle(active_column_indices=column_indices)

        prev_active_cells = conn.active_cells
        prev_winner_cells = conn.winner_cells
        grouped = self._group_segments_by_column(conn.active_segments, conn.matching_segments)

        active_set = set(column_indices)
        bursting: Set[int] = set()

        for col_idx in sorted(active_set.union(grouped)):
            column_active_segments, column_matching_segments = grouped.get(col_idx, ([], []))

            if col_idx in active_set:
                if column_active_segments:
                    predicted_cells = self.activate_predicted_column(
                        column_active_segments, prev_active_cells, prev_winner_cells, learn
                    )
                    cycle.active_cells.update(predicted_cells)
                    cycle.winner_cells.update(predicted_cells)
                else:
                    result = self.burst_column(
                        conn.get_column(col_idx), column_matching_segments,
                        prev_active_cells, prev_winner_cells, learn,
                    )
                    cycle.active_cells.update(result.cells)
                    cycle.winner_cells.add(result.best_cell)
                    bursting.add(col_idx)
            elif learn:
                self.punish_predicted_column(column_matching_segments, prev_active_cells)

        self.active_columns = column_indices
        self.bursting_columns = bursting
        logger.debug(
            "Iteration %d: %d active columns, %d bursting, %d active cells, %d winner cells",
            conn.iteration, len(column_indices), len(bursting), len(cycle.active_cells), len(cycle.winner_cells),
        )
        return cycle

    def activate_dendrites(self, cycle: ComputeCycle, learn: bool = True) -> None:
        """
        Calculate dendrite segment activity, using the current active cells.

        Pseudocode:
          for each distal dendrite segment with number of active synapses >= activation_threshold
            mark the segment as active
          for each distal dendrite segment with unconnected activity >= min_threshold
            mark the segment as matching

        When learning, active segments are stamped with the current iteration,
        which decides which segment a full cell gives up.
        """
        conn = self.connections
        activity = conn.compute_activity(cycle.active_cells, self.config.connected_permanence)

        # Segments without any synapse to an active cell never qualify, even at a zero threshold.
        connected = activity.num_active_connected
        potential = activity.num_active_potential
        active_segments = self._segments_at(
            np.flatnonzero((connected > 0) & (connected >= self.config.activation_threshold))
        )
        matching_segments = self._segments_at(
            np.flatnonzero((potential > 0) & (potential >= self.config.min_threshold))
        )

        cycle.active_segments = active_segments
        cycle.matching_segments = matching_segments
        cycle.predictive_cells = {conn.cell_for_segment(segment) for segment in active_segments}

        conn.last_activity = activity
        conn.active_cells = set(cycle.active_cells)
        conn.winner_cells = set(cycle.winner_cells)
        conn.active_segments = list(active_segments)
        conn.matching_segments = list(matching_segments)

        if learn:
            for segment in active_segments:
                conn.record_segment_activity(segment)
            conn.start_new_iteration()

        logger.debug("Active segments: %d, matching segments: %d", len(active_segments), len(matching_segments))

    def _segments_at(self, flat_idxs: np.ndarray) -> List[DistalSegment]:
        segments = (self.connections.segment_for_flat_idx(int(idx)) for idx in flat_idxs)
        return sorted((segment for segment in segments if segment is not None), key=segment_sort_key)

    def activate_predicted_column(
        self,
        column_active_segments: List[DistalSegment],
        prev_active_cells: Set[Cell],
        prev_winner_cells: Set[Cell],
        learn: bool = True,
    ) -> List[Cell]:
        """
        Determine which cells in a predicted column become active and winners,
        and learn on the segments that correctly predicted the column.

        Pseudocode:
          for each cell in the column that has an active distal dendrite segment
            mark the cell as active
            mark the cell as a winner cell
            (learning) for each active distal dendrite segment
              strengthen active synapses
              weaken inactive synapses
              grow synapses to previous winner cells
        """
        conn = self.connections
        cells: List[Cell] = []

        for segment in column_active_segments:
            if segment.destroyed:
                continue
            if not any(syn.presynaptic_cell in prev_active_cells for syn in segment.synapses):
                continue

            cell = conn.cell_for_segment(segment)
            if cell not in cells:
                cells.append(cell)

            if learn:
                n_grow_desired = self.config.max_new_synapse_count - conn.last_activity.potential(segment)
                adapt_segment(
                    conn, segment, prev_active_cells,
                    self.config.permanence_increment, self.config.permanence_decrement,
                )
                if n_grow_desired > 0 and not segment.destroyed:
                    grow_synapses(
                        conn, prev_winner_cells, segment, self.config.initial_permanence,
                        n_grow_desired, self.rng, self.config.max_synapses_per_segment,
                    )

        return cells

    def burst_column(
        self,
        column: Column,
        column_matching_segments: List[DistalSegment],
        prev_active_cells: Set[Cell],
        prev_winner_cells: Set[Cell],
        learn: bool = True,
    ) -> BurstingResult:
        """
        Activate all of the cells in an unpredicted active column, choose a
        winner cell and, when learning, adapt or create a segment for it.

        Pseudocode:
          mark all cells as active
          if there are any matching distal dendrite segments
            find the most active matching segment
            mark its cell as a winner cell
            (learning)
              grow and reinforce synapses to previous winner cells
          else
            find the cell with the least segments, mark it as a winner cell
            (learning)
              if there are previous winner cells
                add a segment to this winner cell
                grow synapses to previous winner cells
        """
        conn = self.connections
        matching = [segment for segment in column_matching_segments if not segment.destroyed]

        if matching:
            best_segment = get_segment_with_highest_potential(matching, conn.last_activity)
            best_cell = conn.cell_for_segment(best_segment)

            if learn:
                n_grow_desired = self.config.max_new_synapse_count - conn.last_activity.potential(best_segment)
                adapt_segment(
                    conn, best_segment, prev_active_cells,
                    self.config.permanence_increment, self.config.permanence_decrement,
                )
                if n_grow_desired > 0 and not best_segment.destroyed:
                    grow_synapses(
                        conn, prev_winner_cells, best_segment, self.config.initial_permanence,
                        n_grow_desired, self.rng, self.config.max_synapses_per_segment,
                    )
        else:
            best_cell = get_least_used_cell(conn, column.cells, self.rng)

            if learn:
                n_grow_exact = min(self.config.max_new_synapse_count, len(prev_winner_cells))
                if n_grow_exact > 0:
                    new_segment = conn.create_segment(best_cell)
                    grow_synapses(
                        conn, prev_winner_cells, new_segment, self.config.initial_permanence,
                        n_grow_exact, self.rng, self.config.max_synapses_per_segment,
                    )

        return BurstingResult(list(column.cells), best_cell)

    def punish_predicted_column(
        self,
        column_matching_segments: List[DistalSegment],
        prev_active_cells: Set[Cell],
    ) -> None:
        """Weaken synapses to previously active cells on every matching segment
        of a column that did not become active."""
        decrement = self.config.predicted_segment_decrement
        if decrement <= 0:
            return
        for segment in column_matching_segments:
            if not segment.destroyed:
                adapt_segment(self.connections, segment, prev_active_cells, -decrement, 0.0)

    def reset(self) -> None:
        """Indicate the start of a new sequence.

        Clears predictions and makes sure synapses don't grow to the currently
        active cells in the next time step. Segments and synapses are kept.
        """
        self.connections.clear_activity()
        self.active_columns = []
        self.bursting_columns = set()

    # --------------------- State accessors ---------------------
    @property
    def active_cells(self) -> Set[Cell]:
        return self.connections.active_cells

    @property
    def winner_cells(self) -> Set[Cell]:
        return self.connections.winner_cells

    @property
    def active_segments(self) -> List[DistalSegment]:
        return self.connections.active_segments

    @property
    def matching_segments(self) -> List[DistalSegment]:
        return self.connections.matching_segments

    @property
    def predictive_cells(self) -> Set[Cell]:
        return self.connections.predictive_cells

    def get_cells(self) -> List[Cell]:
        """Return all cells in the layer."""
        return list(self.connections.cells)

    def get_active_cells(self) -> Set[Cell]:
        return set(self.active_cells)

    def get_winner_cells(self) -> Set[Cell]:
        return set(self.winner_cells)

    def get_predictive_cells(self) -> Set[Cell]:
        """Return cells depolarized by the active segments of the last cycle."""
        return self.predictive_cells

    def get_predicted_columns(self) -> Set[int]:
        """Return indices of columns holding at least one predictive cell."""
        return {cell.column_index for cell in self.predictive_cells}

    def cells_to_binary(self, cells: Iterable[Cell]) -> np.ndarray:
        """Return binary vector over all cells (flattened columns).

        Ordering = for col index i, its cells occupy slice [i*cells_per_column : (i+1)*cells_per_column)."""
        vec = np.zeros(self.connections.num_cells, dtype=int)
        for cell in cells:
            vec[cell.index] = 1
        return vec


# ===== Learning helpers =====

def adapt_segment(
    connections: Connections,
    segment: DistalSegment,
    prev_active_cells: Set[Cell],
    permanence_increment: float,
    permanence_decrement: float,
) -> None:
    """
    Increment the permanence of synapses whose presynaptic cell was active in
    the previous cycle and decrement the others. Permanences are kept within
    [0, 1]. A synapse falling below EPSILON is destroyed, and so is the segment
    if no synapses remain.
    """
    # Destroying a synapse modifies the list we're iterating through.
    synapses_to_destroy: List[Synapse] = []

    for synapse in connections.synapses_for_segment(segment):
        permanence = synapse.permanence
        if synapse.presynaptic_cell in prev_active_cells:
            permanence += permanence_increment
        else:
            permanence -= permanence_decrement

        permanence = min(1.0, max(0.0, permanence))

        if permanence < EPSILON:
            synapses_to_destroy.append(synapse)
        else:
            connections.update_synapse_permanence(synapse, permanence)

    for synapse in synapses_to_destroy:
        connections.destroy_synapse(synapse, segment)

    if connections.num_synapses(segment) == 0:
        connections.destroy_segment(segment)


def grow_synapses(
    connections: Connections,
    prev_winner_cells: Iterable[Cell],
    segment: DistalSegment,
    initial_permanence: float,
    n_desired_new_synapses: int,
    rng: np.random.Generator,
    max_synapses_per_segment: Optional[int] = None,
) -> List[Synapse]:
    """
    Create up to `n_desired_new_synapses` synapses on `segment`, choosing
    random cells from the previous winner cells that are not already on the
    segment. Cells are drawn without replacement.

    When `max_synapses_per_segment` is given and growth would exceed it, the
    weakest synapses to non-winner cells are removed first and growth is capped
    to the room left.
    """
    existing = {syn.presynaptic_cell.index for syn in segment.synapses}
    candidates = [cell for cell in sorted(prev_winner_cells) if cell.index not in existing]

    n_actual = min(n_desired_new_synapses, len(candidates))
    if n_actual <= 0:
        return []

    if max_synapses_per_segment is not None:
        overrun = connections.num_synapses(segment) + n_actual - max_synapses_per_segment
        if overrun > 0:
            connections.destroy_min_permanence_synapses(segment, overrun, prev_winner_cells)
        n_actual = min(n_actual, max_synapses_per_segment - connections.num_synapses(segment))

    created: List[Synapse] = []
    for _ in range(n_actual):
        rnd_index = int(rng.integers(len(candidates)))
        created.append(connections.create_synapse(segment, candidates.pop(rnd_index), initial_permanence))
    return created


def get_segment_with_highest_potential(
    matching_segments: Sequence[DistalSegment],
    activity: SegmentActivity,
) -> DistalSegment:
    """Return the segment with the most potential synapses; the first one seen wins ties."""
    if not matching_segments:
        raise ValueError("Cannot pick a segment from an empty list.")

    best_segment = matching_segments[0]
    best_count = activity.potential(best_segment)
    for segment in matching_segments[1:]:
        count = activity.potential(segment)
        if count > best_count:
            best_segment, best_count = segment, count
    return best_segment


def get_least_used_cell(connections: Connections, cells: Sequence[Cell], rng: np.random.Generator) -> Cell:
    """Return the cell with the fewest segments, breaking ties at random."""
    min_segments = min(connections.num_segments(cell) for cell in cells)
    least_used = [cell for cell in cells if connections.num_segments(cell) == min_segments]
    return least_used[int(rng.integers(len(least_used)))]
