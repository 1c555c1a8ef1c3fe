import logging

import numpy as np
import pytest

from beamline_mc.core.errors import ConfigurationError, LifecycleError, RunAbortedError
from beamline_mc.core.event import Event
from beamline_mc.core.placement import Placement
from beamline_mc.core.rng import EventRandom
from beamline_mc.transport.node import ComponentNode, NodeState, TraceStatus
from beamline_mc.transport.pipeline import Pipeline


class Recorder(ComponentNode):
    """Records the events it sees, then answers a fixed status."""

    def setup(self):
        return {'seen': []}

    def trace(self, event, rng):
        self.state['seen'].append((event.index, event.position.copy(), event.weight))
        return TraceStatus[self.params.get('status', 'PASS_THROUGH')]


class Mutator(ComponentNode):
    """Moves the event, halves its weight, answers a fixed status."""

    def trace(self, event, rng):
        event.position = event.position + 1.0
        event.k = (0.0, 0.5, 1.0)
        event.weight = 0.5 * event.weight
        event.polarization = (0.0, 1.0, 0.0)
        event.time = 3.0
        return TraceStatus[self.params.get('status', 'SCATTERED')]


class Poisoner(ComponentNode):
    def trace(self, event, rng):
        event.position = (np.nan, 0.0, 0.0)
        return TraceStatus.PASS_THROUGH


class Broken(ComponentNode):
    def setup(self):
        raise ConfigurationError("xwidth must be positive")


class MissingTable(ComponentNode):
    def setup(self):
        raise FileNotFoundError("no such table: f0.dat")


class WeightOnly(Mutator):
    restore_fields = ('weight',)


def run_one(pipeline, event=None):
    event = event or Event(index=0)
    pipeline.trace_event(event, EventRandom(1, event.index))
    return event


def started(*nodes):
    pipeline = Pipeline(list(nodes))
    pipeline.initialize()
    pipeline.start()
    return pipeline


class TestLifecycle:

    def test_phases(self, tmp_path):
        node = Recorder('r')
        assert node.phase is NodeState.UNINITIALIZED
        node.initialize()
        assert node.phase is NodeState.INITIALIZED
        node.start()
        assert node.phase is NodeState.ACTIVE
        node.save(tmp_path)
        assert node.phase is NodeState.FINALIZING
        node.teardown()
        assert node.phase is NodeState.TORN_DOWN
        assert node.state is None

    def test_double_initialize(self):
        node = Recorder('r')
        node.initialize()
        with pytest.raises(LifecycleError):
            node.initialize()

    def test_save_exactly_once(self, tmp_path):
        node = Recorder('r')
        node.initialize()
        node.save(tmp_path)
        with pytest.raises(LifecycleError):
            node.save(tmp_path)

    def test_configuration_error_names_instance(self):
        with pytest.raises(ConfigurationError, match=r"\[slit1\]"):
            Broken('slit1').initialize()

    def test_partial_restore_set_is_flagged(self, caplog):
        with caplog.at_level(logging.WARNING):
            WeightOnly('w').initialize()
        assert "partial field set" in caplog.text

    def test_param_helpers(self):
        node = Recorder('r', xwidth='0.5', flag='yes', bad='abc')
        assert node.param('xwidth') == 0.5
        assert node.param('flag', kind=bool) is True
        assert node.param('missing', 3.0) == 3.0
        with pytest.raises(ConfigurationError):
            node.param('missing')
        with pytest.raises(ConfigurationError):
            node.param('bad')
        with pytest.raises(ConfigurationError):
            Recorder('r', size=-1.0).positive('size')


class TestInitialize:

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError):
            Pipeline([Recorder('a'), Recorder('a')])

    def test_abort_names_offending_node(self):
        first = Recorder('first')
        pipeline = Pipeline([first, Broken('slit1'), Recorder('last')])
        with pytest.raises(RunAbortedError, match="slit1") as info:
            pipeline.initialize()
        assert info.value.instance == 'slit1'
        assert isinstance(info.value.__cause__, ConfigurationError)
        # Nodes initialized before the failure are released again
        assert first.phase is NodeState.TORN_DOWN

    def test_missing_table_aborts(self):
        pipeline = Pipeline([MissingTable('crystal')])
        with pytest.raises(RunAbortedError, match="crystal"):
            pipeline.initialize()


class TestTraceEvent:

    def test_absorbed_event_stops(self):
        last = Recorder('last')
        pipeline = started(Recorder('absorber', status='ABSORBED'), last)
        event = run_one(pipeline)
        assert not event.alive
        assert last.state['seen'] == []
        stats = pipeline.statistics()
        assert stats['absorber']['absorbed'] == 1
        assert stats['last']['entered'] == 0

    def test_restored_event_sees_pre_node_state(self):
        last = Recorder('last')
        pipeline = started(Mutator('m', status='RESTORED'), last)
        event = Event(position=(0.1, 0.2, 0.3), weight=0.8)
        before = event.snapshot()
        run_one(pipeline, event)

        _, position, weight = last.state['seen'][0]
        np.testing.assert_array_equal(position, before['position'][0])
        assert weight == 0.8
        for name in before.dtype.names:
            np.testing.assert_array_equal(event.snapshot()[name], before[name])
        assert event.n_interactions == 0

    def test_restore_only_undoes_own_changes(self):
        last = Recorder('last')
        pipeline = started(Mutator('first', status='PASS_THROUGH'),
                           Mutator('second', status='RESTORED'), last)
        run_one(pipeline, Event(position=(0.0, 0.0, 0.0), weight=1.0))
        _, position, weight = last.state['seen'][0]
        np.testing.assert_array_equal(position, [1.0, 1.0, 1.0])
        assert weight == 0.5

    def test_partial_restore_keeps_other_fields(self):
        last = Recorder('last')
        pipeline = started(WeightOnly('w', status='RESTORED'), last)
        run_one(pipeline, Event(position=(0.0, 0.0, 0.0), weight=1.0))
        _, position, weight = last.state['seen'][0]
        assert weight == 1.0
        np.testing.assert_array_equal(position, [1.0, 1.0, 1.0])

    def test_scattered_marks_interaction(self):
        pipeline = started(Mutator('a'), Mutator('b'), Recorder('end'))
        event = run_one(pipeline)
        assert event.interactions == ['a', 'b']
        assert pipeline.multiplicity[2] == 1
        assert pipeline.statistics()['a']['scattered'] == 1

    def test_non_finite_event_absorbed_as_degenerate(self):
        last = Recorder('last')
        pipeline = started(Poisoner('nan'), last)
        event = run_one(pipeline)
        assert not event.alive
        assert pipeline.statistics()['nan']['degenerate'] == 1
        assert last.state['seen'] == []

    def test_node_frame_transform(self):
        local = Recorder('local', placement=Placement((0.0, 0.0, 2.0)))
        pipeline = Pipeline([local])
        pipeline.initialize()
        pipeline.start()
        event = run_one(pipeline, Event(position=(0.0, 0.0, 0.5)))
        _, position, _ = local.state['seen'][0]
        np.testing.assert_allclose(position, [0.0, 0.0, -1.5])
        # Back in the global frame afterwards
        np.testing.assert_allclose(event.position, [0.0, 0.0, 0.5])

    def test_bad_status_rejected(self):
        class Sloppy(ComponentNode):
            def trace(self, event, rng):
                return None

        pipeline = started(Sloppy('s'))
        with pytest.raises(TypeError):
            run_one(pipeline)

    def test_describe_round_trip(self):
        from beamline_mc.components import Arm

        pipeline = Pipeline([Arm('origin', Placement.from_angles((0.0, 0.0, 1.0), (0.0, 10.0, 0.0)))])
        rebuilt = Pipeline.from_description(pipeline.describe())
        np.testing.assert_allclose(rebuilt.node('origin').placement.rotation,
                                   pipeline.node('origin').placement.rotation)
