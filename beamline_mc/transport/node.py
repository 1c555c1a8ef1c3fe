"""
Component node: the lifecycle contract every beamline component follows.

    node.initialize()            # once: validate parameters, load tables, create histograms
    node.start()                 # enter the tracing phase
    node.trace(event, rng)       # per event, any order across events, may run concurrently
    node.save(output_dir)        # once: write owned histograms
    node.teardown()              # once: release private state

Subclasses implement ``setup()`` (returns the node's private state object)
and ``trace()``; ``trace`` works in the node's local frame and answers with a
TraceStatus.
"""

import enum
import logging
import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Type

from beamline_mc.core.errors import ConfigurationError, LifecycleError
from beamline_mc.core.event import ALL_FIELDS, Event, check_fields
from beamline_mc.core.placement import Placement
from beamline_mc.core.rng import EventRandom
from beamline_mc.scoring.histogram import WeightedHistogram

logger = logging.getLogger(__name__)

# Component type name -> class, filled by @register_component
COMPONENT_REGISTRY: Dict[str, Type['ComponentNode']] = {}

_REQUIRED = object()


class TraceStatus(enum.Enum):
    """Outcome of one node's trace of one event."""

    PASS_THROUGH = 'pass_through'   # continue, no interaction recorded
    SCATTERED = 'scattered'         # continue, interaction recorded
    ABSORBED = 'absorbed'           # stop the event
    RESTORED = 'restored'           # undo this node's changes, continue


class NodeState(enum.Enum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    ACTIVE = 2
    FINALIZING = 3
    TORN_DOWN = 4


def register_component(cls):
    """Class decorator making a node type available to instrument descriptions."""
    COMPONENT_REGISTRY[cls.__name__] = cls
    return cls


class ComponentNode:
    """
    Base class of all beamline components.

    Attributes:
        name: Instance name (unique within a pipeline)
        placement: Local frame in global coordinates
        params: Raw configuration parameters
        state: Private per-instance state returned by setup() (None before initialize)
        phase: Lifecycle phase (NodeState)
        base_dir: Directory relative table paths resolve against
    """

    # Event fields restored when trace() answers RESTORED
    restore_fields: Tuple[str, ...] = ALL_FIELDS

    def __init__(self, name: str, placement: Optional[Placement] = None,
                 base_dir: Optional[Path] = None, **params):
        if not name or not isinstance(name, str):
            raise ConfigurationError(f"Component name must be a non-empty string, got {name!r}")
        self.name = name
        self.placement = placement if placement is not None else Placement()
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.params = dict(params)
        self.state = None
        self.phase = NodeState.UNINITIALIZED

    @property
    def type_name(self) -> str:
        return type(self).__name__

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _require(self, allowed: Iterable[NodeState], action: str):
        if self.phase not in allowed:
            raise LifecycleError(f"{self.type_name} '{self.name}': cannot {action} "
                                 f"in phase {self.phase.name}")

    def initialize(self):
        """
        Validate the configuration and build the private state.

        Raises:
            ConfigurationError: invalid parameters, unreadable or malformed tables
        """
        self._require((NodeState.UNINITIALIZED,), 'initialize')
        try:
            state = self.setup()
        except ConfigurationError as e:
            if e.instance is None:
                raise ConfigurationError(str(e), self.name) from e
            raise
        except (ValueError, KeyError, IndexError, OSError) as e:
            # Table lookups raise ParseError/KeyError/FileNotFoundError
            raise ConfigurationError(f"{type(e).__name__}: {e}", self.name) from e

        fields = check_fields(self.restore_fields)
        if set(fields) != set(ALL_FIELDS):
            missing = [f for f in ALL_FIELDS if f not in fields]
            logger.warning("%s '%s' restores a partial field set; %s keep this node's changes "
                           "after RESTORED", self.type_name, self.name, missing)

        self.state = state
        self.phase = NodeState.INITIALIZED
        logger.debug("Initialized %s '%s'", self.type_name, self.name)

    def start(self):
        self._require((NodeState.INITIALIZED,), 'start')
        self.phase = NodeState.ACTIVE

    def save(self, output_dir, n_events: Optional[int] = None) -> List[Path]:
        """Write all owned histograms into ``output_dir`` (exactly once)."""
        self._require((NodeState.INITIALIZED, NodeState.ACTIVE), 'save')
        self.phase = NodeState.FINALIZING
        output_dir = Path(output_dir)
        paths = []
        for hist in self.accumulators().values():
            paths.append(hist.save(output_dir / hist.filename, n_events))
        return paths

    def teardown(self):
        self._require((NodeState.INITIALIZED, NodeState.ACTIVE, NodeState.FINALIZING), 'teardown')
        self.release()
        self.state = None
        self.phase = NodeState.TORN_DOWN

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def setup(self):
        """Validate parameters and return the private state object (may be None)."""
        return None

    def trace(self, event: Event, rng: EventRandom) -> TraceStatus:
        raise NotImplementedError(f"{self.type_name} does not implement trace()")

    def release(self):
        """Free resources held by the private state (default: nothing)."""

    def accumulators(self) -> Dict[str, WeightedHistogram]:
        """Histograms owned by this node, keyed by output file name."""
        return {}

    # ------------------------------------------------------------------
    # Parameter helpers
    # ------------------------------------------------------------------

    def param(self, name: str, default=_REQUIRED, kind=float):
        """Typed parameter lookup; missing or unconvertible values are configuration errors."""
        if name not in self.params or self.params[name] is None:
            if default is _REQUIRED:
                raise ConfigurationError(f"missing required parameter '{name}'", self.name)
            return default
        value = self.params[name]
        if kind is bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)) and value in (0, 1):
                return bool(value)
            if isinstance(value, str) and value.lower() in ('true', 'false', 'yes', 'no', '1', '0'):
                return value.lower() in ('true', 'yes', '1')
            raise ConfigurationError(f"parameter '{name}' must be a boolean, got {value!r}", self.name)
        if kind is int and isinstance(value, float) and not value.is_integer():
            raise ConfigurationError(f"parameter '{name}' must be an integer, got {value!r}",
                                     self.name)
        try:
            converted = kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"parameter '{name}' must be {kind.__name__}, got {value!r}",
                                     self.name) from e
        if isinstance(converted, float) and not math.isfinite(converted):
            raise ConfigurationError(f"parameter '{name}' must be finite, got {value!r}", self.name)
        return converted

    def positive(self, name: str, default=_REQUIRED, kind=float):
        value = self.param(name, default, kind)
        if value is not None and not value > 0:
            raise ConfigurationError(f"parameter '{name}' must be positive, got {value}", self.name)
        return value

    def resolve_path(self, value) -> Path:
        """Resolve a table path against the instrument file's directory."""
        path = Path(value).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    def describe(self) -> dict:
        """Plain-data description, enough to rebuild the node in another process."""
        return {
            'type': self.type_name,
            'name': self.name,
            'position': self.placement.position.tolist(),
            'rotation': self.placement.rotation.tolist(),
            'base_dir': str(self.base_dir) if self.base_dir is not None else None,
            'params': dict(self.params),
        }

    @staticmethod
    def from_description(description: dict) -> 'ComponentNode':
        cls = COMPONENT_REGISTRY.get(description['type'])
        if cls is None:
            raise ConfigurationError(f"Unknown component type '{description['type']}'",
                                     description.get('name'))
        placement = Placement(description['position'], description['rotation'])
        return cls(description['name'], placement, description.get('base_dir'),
                   **description['params'])

    def __repr__(self) -> str:
        return f"{self.type_name}('{self.name}', {self.placement!r}, {self.phase.name})"
