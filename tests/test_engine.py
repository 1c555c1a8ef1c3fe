import threading
from pathlib import Path

import numpy as np
import pytest
import yaml

from beamline_mc.components import PointSource
from beamline_mc.core.errors import ConfigurationError, LifecycleError, RunAbortedError
from beamline_mc.scoring.histogram import WeightedHistogram
from beamline_mc.transport import engine
from beamline_mc.transport.engine import RunDriver
from beamline_mc.transport.instrument import build_instrument, load_instrument
from beamline_mc.transport.node import ComponentNode, TraceStatus
from beamline_mc.transport.pipeline import Pipeline

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"

POINT_SOURCE_PSD = {
    'name': 'point_source_psd',
    'species': 'xray',
    'seed': 1234,
    'events': 4000,
    'components': [
        {'name': 'source', 'type': 'PointSource', 'at': [0, 0, 0],
         'params': {'focus_xw': 1.0, 'focus_yh': 1.0, 'dist': 1.0, 'E0': 10.0, 'dE': 1.0}},
        {'name': 'psd', 'type': 'PSDMonitor', 'at': [0, 0, 1.0], 'relative': 'source',
         'params': {'xwidth': 1.0, 'yheight': 1.0, 'nx': 10, 'ny': 10}},
    ],
}


def instrument(**changes):
    description = yaml.safe_load(yaml.safe_dump(POINT_SOURCE_PSD))
    description.update(changes)
    return build_instrument(description)


def psd_of(inst):
    return inst.pipeline.node('psd').state.histogram


class Unregistered(ComponentNode):
    """Valid node type that worker processes cannot rebuild"""

    def trace(self, event, rng):
        return TraceStatus.PASS_THROUGH


class TestRunDriver:

    def test_all_events_reach_monitor(self, tmp_path):
        inst = instrument()
        driver = inst.driver(n_workers=1, verbose=False)
        summary = driver.run(4000, progress=False)
        assert summary.n_processed == 4000
        assert summary.seed == 1234
        assert summary.statistics['psd']['entered'] == 4000
        assert summary.statistics['psd']['restored'] == 4000
        assert psd_of(inst).count.sum() == 4000

        paths = driver.finish(tmp_path)
        assert [p.name for p in paths] == ['psd.psd']
        data = WeightedHistogram.read(paths[0])
        assert data['header']['events'] == '4000'
        assert data['counts'].sum() == 4000

    def test_threads_match_single_worker(self):
        single = instrument()
        single.driver(n_workers=1, verbose=False).run(3000, progress=False)
        threaded = instrument()
        threaded.driver(n_workers=4, chunk_size=100, verbose=False).run(3000, progress=False)

        np.testing.assert_array_equal(psd_of(threaded).count, psd_of(single).count)
        np.testing.assert_allclose(psd_of(threaded).weight_sum, psd_of(single).weight_sum,
                                   rtol=1e-12)

    def test_processes_match_threads(self):
        threaded = instrument()
        threaded.driver(n_workers=2, verbose=False).run(1000, progress=False)
        processes = instrument()
        summary = processes.driver(n_workers=2, backend='processes', chunk_size=250,
                                   verbose=False).run(1000, progress=False)

        assert summary.n_processed == 1000
        assert summary.statistics['source']['entered'] == 1000
        np.testing.assert_array_equal(psd_of(processes).count, psd_of(threaded).count)
        np.testing.assert_allclose(psd_of(processes).weight_sum, psd_of(threaded).weight_sum,
                                   rtol=1e-12)

    def test_stop_event(self):
        inst = instrument()
        stop = threading.Event()
        stop.set()
        summary = inst.driver(n_workers=2, verbose=False).run(1000, stop_event=stop, progress=False)
        assert summary.n_processed == 0
        assert summary.stopped_early
        assert psd_of(inst).count.sum() == 0

    def test_time_budget_counts_only_processed(self):
        inst = instrument()
        summary = inst.driver(n_workers=1, verbose=False).run(200000, time_budget=0.2, progress=False)
        assert summary.n_processed <= 200000
        assert psd_of(inst).count.sum() == summary.n_processed

    def test_aborts_on_bad_component(self):
        inst = instrument(components=[
            {'name': 'source', 'type': 'PointSource',
             'params': {'focus_xw': 1.0, 'focus_yh': 1.0, 'dist': 1.0, 'E0': 10.0}},
            {'name': 'slit', 'type': 'Slit', 'params': {}},
        ])
        with pytest.raises(RunAbortedError, match="slit"):
            inst.driver(n_workers=1, verbose=False).run(10, progress=False)

    def test_processes_abort_on_unrebuildable_node(self):
        def pipeline():
            return Pipeline([PointSource('source', focus_xw=1.0, focus_yh=1.0, dist=1.0, E0=10.0),
                             Unregistered('u')])

        summary = RunDriver(pipeline(), n_workers=2, verbose=False).run(100, progress=False)
        assert summary.n_processed == 100

        driver = RunDriver(pipeline(), n_workers=2, backend='processes', verbose=False)
        with pytest.raises(RunAbortedError, match="'u'.*Unknown component type"):
            driver.run(100, progress=False)

    def test_worker_initialize_failure_reported_by_chunk(self, monkeypatch):
        monkeypatch.setattr(engine, '_worker_pipeline', None)
        monkeypatch.setattr(engine, '_worker_error', None)
        description = Pipeline([PointSource('source', focus_xw=1.0, focus_yh=1.0, dist=1.0,
                                            E0=10.0)]).describe()
        description['components'][0]['params'].pop('E0')

        engine._init_worker(description)
        result = engine._run_chunk_worker({'seed': 1, 'species': 'xray', 'start': 0, 'stop': 10,
                                           'deadline': None})
        instance, reason = result['error']
        assert instance == 'source'
        assert "exactly one of 'E0' or 'lambda0'" in reason
        assert engine._worker_pipeline is None

    def test_repeated_runs_continue_event_sequence(self):
        split = instrument()
        driver = split.driver(n_workers=1, verbose=False)
        driver.run(500, progress=False)
        first = psd_of(split).count.copy()
        driver.run(500, progress=False)
        assert driver.next_index == 1000
        assert driver.n_processed == 1000
        assert not np.array_equal(psd_of(split).count - first, first)

        whole = instrument()
        whole.driver(n_workers=1, verbose=False).run(1000, progress=False)
        np.testing.assert_array_equal(psd_of(split).count, psd_of(whole).count)
        np.testing.assert_allclose(psd_of(split).weight_sum, psd_of(whole).weight_sum, rtol=1e-12)

    def test_finish_once(self, tmp_path):
        driver = instrument().driver(n_workers=1, verbose=False)
        driver.run(10, progress=False)
        driver.finish(tmp_path)
        with pytest.raises(LifecycleError):
            driver.finish(tmp_path)

    def test_invalid_arguments(self):
        pipeline = instrument().pipeline
        with pytest.raises(ValueError):
            RunDriver(pipeline, backend='gpu')
        with pytest.raises(ValueError):
            RunDriver(pipeline, species='muon')
        with pytest.raises(ValueError):
            RunDriver(pipeline, n_workers=0)


class TestInstrumentDescription:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / 'inst.yaml'
        path.write_text(yaml.safe_dump(POINT_SOURCE_PSD))
        inst = load_instrument(path)
        assert inst.name == 'point_source_psd'
        assert inst.events == 4000
        assert inst.seed == 1234
        np.testing.assert_allclose(inst.pipeline.node('psd').placement.position, [0.0, 0.0, 1.0])

    def test_relative_rotation(self):
        inst = instrument(components=[
            {'name': 'arm', 'type': 'Arm', 'at': [0, 0, 1], 'rotated': [0, 90, 0]},
            {'name': 'psd', 'type': 'PSDMonitor', 'at': [0, 0, 1], 'relative': 'arm',
             'params': {'xwidth': 1.0, 'yheight': 1.0}},
        ])
        np.testing.assert_allclose(inst.pipeline.node('psd').placement.position, [1.0, 0.0, 1.0],
                                   atol=1e-12)

    @pytest.mark.parametrize("components, message", [
        ([{'name': 'a', 'type': 'Teleporter'}], "Unknown component type"),
        ([{'name': 'a', 'type': 'Arm'}, {'name': 'a', 'type': 'Arm'}], "Duplicate"),
        ([{'name': 'a', 'type': 'Arm', 'relative': 'b'}, {'name': 'b', 'type': 'Arm'}],
         "Unknown relative target"),
        ([{'name': 'a', 'type': 'Arm', 'at': [0, 0]}], "three numbers"),
        ([{'type': 'Arm'}], "needs a 'name'"),
        ([], "non-empty"),
    ])
    def test_invalid(self, components, message):
        with pytest.raises(ConfigurationError, match=message):
            instrument(components=components)

    def test_unknown_species(self):
        with pytest.raises(ConfigurationError):
            instrument(species='electron')

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yaml'
        path.write_text("components: [\n")
        with pytest.raises(ConfigurationError):
            load_instrument(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_instrument(tmp_path / 'none.yaml')

    def test_table_paths_relative_to_file(self, tmp_path, si_tables):
        path = tmp_path / 'crystal.yaml'
        path.write_text(yaml.safe_dump({
            'name': 'crystal',
            'components': [
                {'name': 'crystal', 'type': 'FlatCrystal',
                 'params': {'form_factor_file': 'Si_f0.dat', 'xwidth': 0.05, 'zdepth': 0.1}},
            ],
        }))
        inst = load_instrument(path)
        inst.pipeline.initialize()
        assert inst.pipeline.node('crystal').state.form_factor.n_rows == 12

    def test_example_point_source_psd(self):
        inst = load_instrument(EXAMPLES / 'instruments' / 'point_source_psd.yaml')
        n = 20000
        inst.driver(n_workers=1, verbose=False).run(n, progress=False)
        hist = psd_of(inst)

        # Counts flat within Poisson noise
        expected = n / hist.count.size
        assert np.all(np.abs(hist.count - expected) < 5.0 * np.sqrt(expected))
        # Mean weight per hit follows cos(theta)/r^2: corner cell ~0.6 of the centre
        mean_weight = hist.weight_sum / hist.count
        assert 0.5 < mean_weight[0, 0] / mean_weight[4, 4] < 0.7
