"""
Pipeline: drives one event through an ordered list of component nodes.

Per node:
    1. snapshot the event (global frame) and transform it into the node frame
    2. call trace()
    3. ABSORBED (or event no longer alive): stop, no later node sees it
       RESTORED: undo this node's changes only
       SCATTERED: record the interaction
       PASS_THROUGH: continue
    4. transform back to global; absorb the event if it became non-finite
"""

import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from beamline_mc.core.errors import ConfigurationError, RunAbortedError
from beamline_mc.core.event import Event
from beamline_mc.core.rng import EventRandom
from beamline_mc.transport.node import ComponentNode, NodeState, TraceStatus

logger = logging.getLogger(__name__)


@dataclass
class NodeStatistics:
    """Per-node event counters."""

    entered: int = 0
    passed: int = 0
    scattered: int = 0
    absorbed: int = 0
    restored: int = 0
    degenerate: int = 0

    def merge(self, other: dict):
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> dict:
        return asdict(self)


class Pipeline:
    """
    Ordered component nodes of one instrument.

    Example:
        pipeline = Pipeline([PointSource('source', ...), PSDMonitor('psd', ...)])
        pipeline.initialize()
        pipeline.start()
        pipeline.trace_event(Event(index=0), EventRandom(seed, 0))
    """

    def __init__(self, nodes: Sequence[ComponentNode], name: str = 'instrument'):
        if not nodes:
            raise ConfigurationError("An instrument needs at least one component")
        seen = set()
        for node in nodes:
            if node.name in seen:
                raise ConfigurationError(f"Duplicate component name '{node.name}'", node.name)
            seen.add(node.name)

        self.name = name
        self.nodes: List[ComponentNode] = list(nodes)
        self._stats = {node.name: NodeStatistics() for node in self.nodes}
        self._stats_locks = {node.name: threading.Lock() for node in self.nodes}
        self.multiplicity: Counter = Counter()
        self._multiplicity_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def node(self, name: str) -> ComponentNode:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(f"No component named '{name}' in {self.name}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        """
        Initialize every node in order.

        Raises:
            RunAbortedError: a node rejected its configuration; nodes already
                             initialized are torn down again.
        """
        for i, node in enumerate(self.nodes):
            try:
                node.initialize()
            except ConfigurationError as e:
                logger.error("Aborting %s: %s", self.name, e)
                for done in self.nodes[:i]:
                    done.teardown()
                raise RunAbortedError(node.name, str(e)) from e

    @property
    def initialized(self) -> bool:
        return all(node.phase != NodeState.UNINITIALIZED for node in self.nodes)

    def start(self):
        for node in self.nodes:
            if node.phase == NodeState.INITIALIZED:
                node.start()

    def save(self, output_dir, n_events: Optional[int] = None) -> List[Path]:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for node in self.nodes:
            paths.extend(node.save(output_dir, n_events))
        return paths

    def teardown(self):
        for node in self.nodes:
            node.teardown()

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _count(self, node_name: str, field: str):
        with self._stats_locks[node_name]:
            stats = self._stats[node_name]
            setattr(stats, field, getattr(stats, field) + 1)

    def trace_event(self, event: Event, rng: EventRandom) -> bool:
        """
        Push one event through all nodes.

        Returns:
            True if the event left the last node alive
        """
        for node in self.nodes:
            self._count(node.name, 'entered')
            snapshot = event.snapshot()
            node.placement.to_local(event)

            status = node.trace(event, rng)
            if not isinstance(status, TraceStatus):
                raise TypeError(f"{node.type_name} '{node.name}' returned {status!r} "
                                f"instead of a TraceStatus")

            if status is TraceStatus.ABSORBED or not event.alive:
                event.absorb()
                self._count(node.name, 'absorbed')
                break

            node.placement.to_global(event)
            if status is TraceStatus.RESTORED:
                event.restore(snapshot, node.restore_fields)
                self._count(node.name, 'restored')
            elif status is TraceStatus.SCATTERED:
                event.mark_interaction(node.name)
                self._count(node.name, 'scattered')
            else:
                self._count(node.name, 'passed')

            if not event.is_finite():
                logger.debug("Event %d became non-finite in '%s', absorbed", event.index, node.name)
                event.absorb()
                self._count(node.name, 'degenerate')
                break

        with self._multiplicity_lock:
            self.multiplicity[event.n_interactions] += 1
        return event.alive

    # ------------------------------------------------------------------
    # Statistics and reduction
    # ------------------------------------------------------------------

    def statistics(self) -> Dict[str, dict]:
        result = {}
        for name, stats in self._stats.items():
            with self._stats_locks[name]:
                result[name] = stats.as_dict()
        return result

    def merge_statistics(self, statistics: Dict[str, dict], multiplicity: Optional[dict] = None):
        for name, counts in statistics.items():
            with self._stats_locks[name]:
                self._stats[name].merge(counts)
        if multiplicity:
            with self._multiplicity_lock:
                self.multiplicity.update(multiplicity)

    def export_accumulators(self) -> Dict[str, Dict[str, dict]]:
        """Histogram arrays of every node: {node: {filename: arrays}}."""
        return {node.name: {key: hist.arrays() for key, hist in node.accumulators().items()}
                for node in self.nodes}

    def merge_accumulators(self, exported: Dict[str, Dict[str, dict]]):
        for node_name, histograms in exported.items():
            owned = self.node(node_name).accumulators()
            for key, arrays in histograms.items():
                owned[key].merge_arrays(arrays['count'], arrays['weight_sum'],
                                        arrays['weight_sq_sum'])

    def reset(self):
        """Zero histograms and counters (used by worker processes between chunks)."""
        for node in self.nodes:
            for hist in node.accumulators().values():
                hist.reset()
        for name in self._stats:
            with self._stats_locks[name]:
                self._stats[name] = NodeStatistics()
        with self._multiplicity_lock:
            self.multiplicity.clear()

    # ------------------------------------------------------------------
    # Description (process backend)
    # ------------------------------------------------------------------

    def describe(self) -> dict:
        return {'name': self.name, 'components': [node.describe() for node in self.nodes]}

    @classmethod
    def from_description(cls, description: dict) -> 'Pipeline':
        # Populates the component registry
        import beamline_mc.components  # noqa: F401

        nodes = [ComponentNode.from_description(d) for d in description['components']]
        return cls(nodes, description.get('name', 'instrument'))

    def summary(self) -> str:
        lines = [f"Instrument '{self.name}' ({len(self.nodes)} components):"]
        for node in self.nodes:
            lines.append(f"  {node.name:<16s} {node.type_name:<18s} {node.placement!r}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Pipeline('{self.name}', {[node.name for node in self.nodes]})"
