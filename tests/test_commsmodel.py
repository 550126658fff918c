"""
Unit tests for swarmnetsim/commsmodel.py

Tests outages, visibility, neighbors, link quality and the update cadence.
"""

import pickle
import numpy as np
import pytest
from swarmnetsim import commsmodel as cm
from swarmnetsim import environment as env
from swarmnetsim import robots as rob
from swarmnetsim.config import CommsConfig


class TestPairKey:
    """Tests for the unordered address pair"""

    def test_symmetric(self):
        """Order of the addresses does not matter"""
        assert cm.PairKey('a', 'b') == cm.PairKey('b', 'a')
        assert hash(cm.PairKey('a', 'b')) == hash(cm.PairKey('b', 'a'))
        assert {cm.PairKey('b', 'a'): 1}[cm.PairKey('a', 'b')] == 1

    def test_sorted(self):
        """Addresses are stored sorted"""
        key = cm.PairKey('z', 'm')
        assert key.first == 'm'
        assert key.second == 'z'

    def test_same_address_rejected(self):
        """A pair needs two distinct robots"""
        with pytest.raises(ValueError):
            cm.PairKey('a', 'a')

    def test_pickle(self):
        """Keys survive pickling"""
        key = pickle.loads(pickle.dumps(cm.PairKey('b', 'a')))
        assert isinstance(key, cm.PairKey)
        assert key == ('a', 'b')


class TestDistance:
    """Tests for effective distance and bounds"""

    p1 = np.array([0.0, 0.0, 0.0])
    p2 = np.array([6.0, 8.0, 0.0])

    def test_clear_pair(self):
        """Clear or unknown pairs use the Euclidean distance"""
        assert cm.effectiveDistance(self.p1, self.p2, None, 5.0) == 10.0
        clear = cm.VisibilityRecord()
        assert cm.effectiveDistance(self.p1, self.p2, clear, 5.0) == 10.0

    def test_blocked_pair_penalized(self):
        """Blocked pairs add the penalty once"""
        blocked = cm.VisibilityRecord(False, ['oak', 'pine'])
        assert cm.effectiveDistance(self.p1, self.p2, blocked, 5.0) == 15.0

    def test_negative_penalty_severs(self):
        """Negative penalty makes a blocked pair infinitely far"""
        blocked = cm.VisibilityRecord(False, ['oak', 'oak'])
        assert np.isinf(cm.effectiveDistance(self.p1, self.p2, blocked, -1))

    def test_within_bounds(self):
        """Bounds are inclusive and negative bounds are open"""
        assert cm.withinBounds(10.0, 10.0, 20.0)
        assert cm.withinBounds(20.0, 10.0, 20.0)
        assert not cm.withinBounds(9.9, 10.0, 20.0)
        assert not cm.withinBounds(20.1, 10.0, 20.0)
        assert cm.withinBounds(1e9, -1, -1)
        assert cm.withinBounds(0.0, -1, 5.0)
        assert not cm.withinBounds(np.inf, -1, -1)


class TestOutageScheduler:
    """Tests for stochastic outages"""

    def test_bounded_outage_counts_down(self, rng):
        """Outage lasts its drawn duration, then clears"""
        config = CommsConfig(commsOutageProbability=1.0,
                             commsOutageDurationMin=2,
                             commsOutageDurationMax=2)
        outages = cm.OutageScheduler(config, rng, ['a', 'b'])
        outages.update(0.0)
        assert outages.isInOutage('a') and outages.isInOutage('b')
        assert outages.state('a').remaining == 2.0
        assert outages.nOutages == 2

        outages.update(1.0)
        assert outages.isInOutage('a')
        assert outages.state('a').remaining == 1.0

        outages.update(1.0)
        assert not outages.isInOutage('a')
        assert not outages.isInOutage('b')

        # Clearing evaluation does not also start a new outage
        outages.update(1.0)
        assert outages.isInOutage('a')
        assert outages.nOutages == 4

    def test_unbounded_outage(self, rng):
        """Negative maximum duration lasts until cleared"""
        config = CommsConfig(commsOutageProbability=1.0)
        outages = cm.OutageScheduler(config, rng, ['a'])
        outages.update(0.0)
        for _ in range(50):
            outages.update(1.0)
        state = outages.state('a')
        assert state.inOutage
        assert np.isinf(state.remaining)
        outages.clearOutage('a')
        assert not outages.isInOutage('a')

    def test_zero_probability(self, rng):
        """No outages without a probability"""
        outages = cm.OutageScheduler(CommsConfig(), rng, ['a', 'b'])
        for _ in range(100):
            outages.update(1.0)
        assert outages.nOutages == 0

    def test_negative_min_duration(self, rng):
        """Negative minimum duration is read as zero"""
        config = CommsConfig(commsOutageProbability=1.0,
                             commsOutageDurationMin=-1,
                             commsOutageDurationMax=3)
        outages = cm.OutageScheduler(config, rng, ['a'])
        for _ in range(20):
            assert 0.0 <= outages._drawDuration() <= 3.0

    def test_state_is_copy(self, rng):
        """Returned state does not alias the scheduler state"""
        config = CommsConfig(commsOutageProbability=1.0)
        outages = cm.OutageScheduler(config, rng, ['a'])
        outages.update(0.0)
        state = outages.state('a')
        state.inOutage = False
        assert outages.isInOutage('a')

    def test_unknown_robot(self, rng):
        """Unknown robots are never in outage"""
        outages = cm.OutageScheduler(CommsConfig(), rng, ['a'])
        assert not outages.isInOutage('nobody')
        outages.clearOutage('nobody')


class _BrokenWorld(env.WorldQuery):
    """World whose line-of-sight answers can be switched to failures"""

    def __init__(self, result=(True, []), error=None):
        self.result = result
        self.error = error

    def lineOfSight(self, p1, p2):
        if (self.error is not None):
            raise self.error
        return self.result

    def positionOf(self, address):
        raise env.EnvironmentQueryError(address)


class TestVisibilityCache:
    """Tests for per-pair line-of-sight records"""

    positions = {'a': np.array([0.0, 0.0, 1.0]),
                 'b': np.array([10.0, 0.0, 1.0]),
                 'c': np.array([0.0, 10.0, 1.0])}

    def test_clear_record(self, world):
        """Clear pairs hold a single empty name"""
        cache = cm.VisibilityCache(world)
        assert cache.recompute(self.positions)
        record = cache.get('b', 'a')
        assert record.clear
        assert record.entities == [""]
        assert len(cache.records) == 3
        assert cache.nQueries == 3

    def test_blocked_record_first_and_last(self, world):
        """Blocked pairs hold the first and last obstacles"""
        world.addObstacle(env.Tree('near', 2.0, 0.0, 0.5, 10.0))
        world.addObstacle(env.Tree('mid', 5.0, 0.0, 0.5, 10.0))
        world.addObstacle(env.Tree('far', 8.0, 0.0, 0.5, 10.0))
        cache = cm.VisibilityCache(world)
        cache.recompute(self.positions)
        record = cache.get('a', 'b')
        assert not record.clear
        assert record.entities == ['near', 'far']
        assert cache.get('a', 'c').clear

    def test_single_obstacle_named_twice(self, world):
        """One obstacle is both first and last"""
        world.addObstacle(env.Tree('oak', 5.0, 0.0, 0.5, 10.0))
        cache = cm.VisibilityCache(world)
        cache.recompute(self.positions)
        assert cache.get('a', 'b').entities == ['oak', 'oak']

    def test_failure_keeps_previous_cache(self, world):
        """A failed query leaves the previous records in place"""
        cache = cm.VisibilityCache(world)
        cache.recompute(self.positions)
        before = cache.records
        bad = dict(self.positions, c=np.array([np.nan, 0.0, 0.0]))
        assert not cache.recompute(bad)
        assert cache.records is before
        assert cache.nFailures == 1

    def test_malformed_result(self):
        """Blocked result without entities is rejected"""
        cache = cm.VisibilityCache(_BrokenWorld(result=(False, [])))
        assert not cache.recompute(self.positions)
        assert cache.records == {}

    def test_unexpected_exception(self):
        """Any exception from the world is contained"""
        cache = cm.VisibilityCache(_BrokenWorld(error=RuntimeError('down')))
        assert not cache.recompute(self.positions)
        assert cache.nFailures == 1


class TestNeighborGraph:
    """Tests for neighbor sets"""

    def _graph(self, world, positions, **params):
        config = CommsConfig(**params)
        cache = cm.VisibilityCache(world)
        cache.recompute(positions)
        graph = cm.NeighborGraph(config, positions.keys())
        changed = graph.recompute(positions, cache)
        return graph, cache, changed

    def test_symmetric_within_range(self, world):
        """Neighbor relation is symmetric"""
        positions = {'a': np.zeros(3), 'b': np.array([10.0, 0, 0]),
                     'c': np.array([30.0, 0, 0])}
        graph, _, changed = self._graph(world, positions,
                                        neighborDistanceMax=15)
        assert graph.isNeighbor('a', 'b') and graph.isNeighbor('b', 'a')
        assert not graph.isNeighbor('a', 'c')
        assert graph.neighbors('c') == set()
        assert changed == {'a', 'b'}

    def test_minimum_distance(self, world):
        """Pairs closer than the minimum are not neighbors"""
        positions = {'a': np.zeros(3), 'b': np.array([1.0, 0, 0])}
        graph, _, _ = self._graph(world, positions, neighborDistanceMin=5)
        assert not graph.isNeighbor('a', 'b')

    def test_penalty_pushes_out_of_range(self, world):
        """Obstruction penalty can break a short link"""
        world.addObstacle(env.Tree('oak', 5.0, 0.0, 0.5, 10.0))
        positions = {'a': np.array([0.0, 0, 1]), 'b': np.array([10.0, 0, 1])}
        graph, _, _ = self._graph(world, positions, neighborDistanceMax=15,
                                  neighborDistancePenaltyTree=10)
        assert not graph.isNeighbor('a', 'b')
        graph, _, _ = self._graph(world, positions, neighborDistanceMax=15,
                                  neighborDistancePenaltyTree=4)
        assert graph.isNeighbor('a', 'b')

    def test_negative_penalty_severs(self, world):
        """Negative penalty severs any obstructed pair"""
        world.addObstacle(env.Tree('oak', 0.5, 0.0, 0.1, 10.0))
        positions = {'a': np.array([0.0, 0, 1]), 'b': np.array([1.0, 0, 1])}
        graph, _, _ = self._graph(world, positions,
                                  neighborDistancePenaltyTree=-1)
        assert not graph.isNeighbor('a', 'b')

    def test_changed_only_when_sets_change(self, world):
        """Recomputation reports only the robots whose set changed"""
        positions = {'a': np.zeros(3), 'b': np.array([10.0, 0, 0]),
                     'c': np.array([100.0, 0, 0])}
        graph, cache, _ = self._graph(world, positions,
                                      neighborDistanceMax=15)
        assert graph.recompute(positions, cache) == set()
        positions['c'] = np.array([20.0, 0, 0])
        cache.recompute(positions)
        assert graph.recompute(positions, cache) == {'b', 'c'}

    def test_neighbors_is_copy(self, world):
        """Returned set does not alias the graph"""
        positions = {'a': np.zeros(3), 'b': np.array([1.0, 0, 0])}
        graph, _, _ = self._graph(world, positions)
        graph.neighbors('a').clear()
        assert graph.isNeighbor('a', 'b')


class TestLinkQuality:
    """Tests for per-message delivery decisions"""

    def test_drop_probability_grows_with_distance(self, network, addrs):
        """Interpolated drop probability is monotonic in distance"""
        config = CommsConfig(commsDistanceMax=100,
                             commsDropProbabilityMin=0.1,
                             commsDropProbabilityMax=0.5)
        _, model, _ = network([(0, 0, 0), (20, 0, 0), (60, 0, 0),
                               (150, 0, 0)], config)
        model.update(0.0)
        lq = model.linkQuality
        near = lq.dropProbability(addrs[0], addrs[1])
        far = lq.dropProbability(addrs[0], addrs[2])
        assert near == pytest.approx(0.18)
        assert far == pytest.approx(0.34)
        assert near < far
        assert lq.dropProbability(addrs[0], addrs[3]) == 1.0

    def test_out_of_range(self, network, addrs):
        """Pairs beyond the maximum distance are dropped"""
        config = CommsConfig(commsDistanceMax=50)
        _, model, _ = network([(0, 0, 0), (60, 0, 0)], config)
        model.update(0.0)
        assert model.linkQuality.evaluate(addrs[0], addrs[1]) == cm.DROP_RANGE

    def test_perfect_link(self, network, addrs):
        """Zero drop probability always delivers"""
        _, model, _ = network([(0, 0, 0), (60, 0, 0)])
        model.update(0.0)
        for _ in range(100):
            assert model.linkQuality.evaluate(addrs[0], addrs[1]) is None

    def test_outage_exclusivity(self, network, addrs):
        """Robots in outage neither send nor receive, at any distance"""
        config = CommsConfig(commsOutageProbability=1.0)
        _, model, _ = network([(0, 0, 0), (0.1, 0, 0)], config)
        model.update(0.0)
        lq = model.linkQuality
        for _ in range(50):
            assert lq.evaluate(addrs[0], addrs[1]) == cm.DROP_OUTAGE
            assert lq.evaluate(addrs[1], addrs[0]) == cm.DROP_OUTAGE

    def test_one_side_outage(self, network, addrs):
        """Outage of the recipient alone drops the message"""
        _, model, _ = network([(0, 0, 0), (1, 0, 0)])
        model.update(0.0)
        model.outages.states[addrs[1]].inOutage = True
        model.outages.states[addrs[1]].remaining = 5.0
        assert model.linkQuality.evaluate(addrs[0], addrs[1]) == cm.DROP_OUTAGE
        model.clearOutage(addrs[1])
        assert model.linkQuality.evaluate(addrs[0], addrs[1]) is None

    def test_unbounded_range_uniform_draw(self, network, addrs):
        """Unbounded range draws the probability between min and max"""
        config = CommsConfig(commsDropProbabilityMin=0.2,
                             commsDropProbabilityMax=0.4)
        _, model, _ = network([(0, 0, 0), (5000, 0, 0)], config)
        model.update(0.0)
        draws = [model.linkQuality.dropProbability(addrs[0], addrs[1])
                 for _ in range(200)]
        assert min(draws) >= 0.2
        assert max(draws) <= 0.4
        assert len(set(draws)) > 1

    def test_unknown_position_is_out_of_range(self, network, addrs):
        """Robots with no position are unreachable"""
        _, model, _ = network([(0, 0, 0), (1, 0, 0)])
        model.update(0.0)
        assert np.isinf(model.linkQuality.distance(addrs[0], 'nobody'))

    def test_reproducible_under_seed(self, network, addrs):
        """Same seed gives identical drop decisions"""
        config = CommsConfig(commsDistanceMax=100,
                             commsDropProbabilityMin=0.3,
                             commsDropProbabilityMax=0.6,
                             commsOutageProbability=0.1,
                             commsOutageDurationMin=1,
                             commsOutageDurationMax=3)
        runs = []
        for _ in range(2):
            _, model, _ = network([(0, 0, 0), (40, 0, 0)], config, seed=99)
            decisions = []
            for t in range(30):
                model.update(float(t))
                decisions.extend(model.linkQuality.evaluate(addrs[0], addrs[1])
                                 for _ in range(5))
            runs.append(decisions)
        assert runs[0] == runs[1]


class TestCommsModel:
    """Tests for the update cadence and neighbor publication"""

    def test_update_throttled(self, network):
        """Full recomputation at most once per interval"""
        _, model, _ = network([(0, 0, 0), (1, 0, 0)])
        assert model.update(0.0)
        assert not model.update(0.5)
        assert model.update(1.0)
        assert not model.update(1.9)
        assert model.update(2.0)

    def test_custom_interval(self, network):
        """Update interval follows the configuration"""
        _, model, _ = network([(0, 0, 0), (1, 0, 0)],
                              CommsConfig(updateInterval=0.25))
        assert model.update(0.0)
        assert model.update(0.25)
        assert not model.update(0.3)

    def test_clock_restart_recomputes(self, network, addrs):
        """An earlier time restarts the cadence"""
        config = CommsConfig(neighborDistanceMax=15)
        swarm, model, _ = network([(0, 0, 0), (10, 0, 0)], config)
        assert model.update(0.0)
        assert model.update(5.0)
        swarm[1].position = (40.0, 0.0, 0.0)
        assert model.update(0.0)
        assert model.lastUpdateTime == 0.0
        assert swarm[0].neighbors() == []
        assert not model.update(0.5)

    def test_positions_refreshed_every_tick(self, network, addrs):
        """Positions follow the robots between recomputations"""
        swarm, model, _ = network([(0, 0, 0), (1, 0, 0)])
        model.update(0.0)
        swarm[1].position = (7.0, 0.0, 0.0)
        assert not model.update(0.1)
        assert model.positions[addrs[1]][0] == 7.0

    def test_neighbors_published(self, network, addrs):
        """Robots receive their neighbor lists"""
        config = CommsConfig(neighborDistanceMax=15)
        swarm, model, _ = network([(0, 0, 0), (10, 0, 0), (20, 0, 0)],
                                  config)
        model.update(0.0)
        assert swarm[0].neighbors() == [addrs[1]]
        assert swarm[1].neighbors() == [addrs[0], addrs[2]]
        assert model.isNeighbor(addrs[0], addrs[1])
        assert model.neighbors(addrs[2]) == {addrs[1]}

    def test_publication_on_change(self, network, addrs):
        """A robot moving out of range is told"""
        config = CommsConfig(neighborDistanceMax=15)
        swarm, model, _ = network([(0, 0, 0), (10, 0, 0)], config)
        model.update(0.0)
        swarm[1].position = (40.0, 0.0, 0.0)
        model.update(1.0)
        assert swarm[0].neighbors() == []
        assert swarm[1].neighbors() == []

    def test_publication_error_contained(self, network, addrs):
        """A failing neighbor hook does not stop the update"""

        class Grumpy(rob.SwarmRobot):
            def onNeighborsReceived(self, neighbors):
                raise RuntimeError('no thanks')

        swarm, model, _ = network([(0, 0, 0), (1, 0, 0)], robotType=Grumpy)
        assert model.update(0.0)
        assert model.isNeighbor(addrs[0], addrs[1])

    def test_position_failure_keeps_snapshot(self, network, world, addrs):
        """A missing robot position keeps the previous snapshot"""
        swarm, model, _ = network([(0, 0, 0), (1, 0, 0)], world=world)
        model.update(0.0)
        records = model.visibility.records
        del world.positions[addrs[1]]
        assert model.update(1.0)
        assert model.positions[addrs[1]][0] == 1.0
        assert model.visibility.records is records

    def test_seed_recorded(self, world):
        """A generated seed is kept for replay"""
        model = cm.CommsModel({}, world)
        assert isinstance(model.seed, int)
        assert 'RNG Seed' in str(model)
