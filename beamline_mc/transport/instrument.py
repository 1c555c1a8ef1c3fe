"""
Instrument descriptions (YAML).

    name: point_source_psd
    species: xray
    seed: 1234
    events: 100000
    components:
      - name: source
        type: PointSource
        at: [0, 0, 0]
        params: {focus_xw: 1.0, focus_yh: 1.0, dist: 1.0, E0: 10.0, dE: 1.0}
      - name: psd
        type: PSDMonitor
        at: [0, 0, 1.0]
        relative: source
        params: {xwidth: 1.0, yheight: 1.0, nx: 10, ny: 10}

``at`` and ``rotated`` (degrees about x, y, z) are given in the frame of the
``relative`` component, which must appear earlier in the list (default: the
global frame). Relative table paths resolve against the YAML file's directory.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml

from beamline_mc.core.constants import SPECIES
from beamline_mc.core.errors import ConfigurationError
from beamline_mc.core.placement import Placement
from beamline_mc.transport.engine import RunDriver, RunSummary
from beamline_mc.transport.node import COMPONENT_REGISTRY
from beamline_mc.transport.pipeline import Pipeline

logger = logging.getLogger(__name__)

RUN_SETTINGS = ('seed', 'events', 'workers', 'backend', 'output_dir')
COMPONENT_KEYS = ('name', 'type', 'at', 'rotated', 'relative', 'params')


@dataclass
class Instrument:
    """A built pipeline plus its run settings."""

    name: str
    species: str
    pipeline: Pipeline
    seed: Optional[int] = None
    events: int = 10000
    workers: Optional[int] = None
    backend: str = 'threads'
    output_dir: Optional[Path] = None
    source: Optional[Path] = None
    settings: dict = field(default_factory=dict)

    def driver(self, **overrides) -> RunDriver:
        """RunDriver configured from the description; keyword arguments override it."""
        kwargs = {'species': self.species, 'seed': self.seed,
                  'n_workers': self.workers, 'backend': self.backend}
        kwargs.update(overrides)
        return RunDriver(self.pipeline, **kwargs)

    def run(self, n_events: Optional[int] = None, output_dir=None, **overrides) -> RunSummary:
        """Run the instrument and save its histograms."""
        driver = self.driver(**overrides)
        summary = driver.run(self.events if n_events is None else n_events)
        output_dir = output_dir or self.output_dir or Path(f"{self.name}_output")
        driver.finish(output_dir)
        return summary


def _vector(value, key: str, component: str):
    if value is None:
        return (0.0, 0.0, 0.0)
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise ConfigurationError(f"'{key}' must be a list of three numbers, got {value!r}", component)
    try:
        return tuple(float(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'{key}' must be a list of three numbers, got {value!r}",
                                 component) from e


def build_instrument(description: dict, base_dir: Optional[Path] = None,
                     source: Optional[Path] = None) -> Instrument:
    """
    Build an Instrument from an already parsed description.

    Raises:
        ConfigurationError: unknown component type, duplicate name, unknown
                            relative target, malformed entries
    """
    # Populates the component registry
    import beamline_mc.components  # noqa: F401

    if not isinstance(description, dict):
        raise ConfigurationError("Instrument description must be a mapping")
    name = str(description.get('name', 'instrument'))
    species = description.get('species', 'xray')
    if species not in SPECIES:
        raise ConfigurationError(f"Unknown species '{species}'. Available: {list(SPECIES)}")

    entries = description.get('components')
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("Instrument needs a non-empty 'components' list")

    placements = {}
    nodes = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Component #{i} must be a mapping, got {entry!r}")
        comp_name = entry.get('name')
        if not comp_name or not isinstance(comp_name, str):
            raise ConfigurationError(f"Component #{i} needs a 'name'")
        unknown_keys = set(entry) - set(COMPONENT_KEYS)
        if unknown_keys:
            raise ConfigurationError(f"Unknown keys {sorted(unknown_keys)}", comp_name)
        if comp_name in placements:
            raise ConfigurationError(f"Duplicate component name '{comp_name}'", comp_name)

        comp_type = entry.get('type')
        cls = COMPONENT_REGISTRY.get(comp_type)
        if cls is None:
            raise ConfigurationError(f"Unknown component type '{comp_type}'. "
                                     f"Available: {sorted(COMPONENT_REGISTRY)}", comp_name)

        relative = entry.get('relative')
        if relative in (None, 'absolute'):
            parent = None
        elif relative in placements:
            parent = placements[relative]
        else:
            raise ConfigurationError(f"Unknown relative target '{relative}' "
                                     f"(must name an earlier component)", comp_name)

        placement = Placement.from_angles(_vector(entry.get('at'), 'at', comp_name),
                                          _vector(entry.get('rotated'), 'rotated', comp_name),
                                          parent)
        params = entry.get('params') or {}
        if not isinstance(params, dict):
            raise ConfigurationError(f"'params' must be a mapping, got {params!r}", comp_name)

        placements[comp_name] = placement
        nodes.append(cls(comp_name, placement, base_dir, **params))

    settings = {key: description[key] for key in RUN_SETTINGS if key in description}
    try:
        seed = int(settings['seed']) if settings.get('seed') is not None else None
        events = int(settings.get('events', 10000))
        workers = int(settings['workers']) if settings.get('workers') is not None else None
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid run setting: {e}") from e
    output_dir = settings.get('output_dir')
    if output_dir is not None:
        output_dir = Path(output_dir)
        if not output_dir.is_absolute() and base_dir is not None:
            output_dir = base_dir / output_dir

    instrument = Instrument(
        name=name,
        species=species,
        pipeline=Pipeline(nodes, name),
        seed=seed,
        events=events,
        workers=workers,
        backend=settings.get('backend', 'threads'),
        output_dir=output_dir,
        source=source,
        settings=settings,
    )
    logger.info("Built instrument '%s' with %d components", name, len(nodes))
    return instrument


def load_instrument(path: Union[str, Path]) -> Instrument:
    """
    Load an instrument description from a YAML file.

    Raises:
        FileNotFoundError: missing file
        ConfigurationError: invalid YAML or description
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Instrument file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            description = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    return build_instrument(description, base_dir=path.resolve().parent, source=path)
