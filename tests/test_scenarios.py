"""
End-to-end scenarios for swarmnetsim/simulator.py

Two team controllers exchange one round of unicast, broadcast and multicast
per tick; each scenario checks what the network lets through.
"""

import logging
import os
import numpy as np
import pytest
from swarmnetsim import commsmodel as cm
from swarmnetsim import communication as comm
from swarmnetsim import environment as env
from swarmnetsim import logger
from swarmnetsim import robots as rob
from swarmnetsim import simulator
from swarmnetsim.config import CommsConfig

# Two controllers, 100 rounds of 3 messages each
SENT = 2 * 100 * 3


def _delivered(sim):
    return sim.broker.stats['packetDelivered']


class TestScenarios:
    """Tests for whole-network behavior"""

    def test_perfect_comms(self, makeSim):
        """In range, no obstacles, no drops: everything arrives"""
        sim = makeSim(CommsConfig(neighborDistanceMax=50,
                                  commsDistanceMax=50))
        history = sim.simulate()
        assert sim.broker.stats['packetSent'] == SENT
        assert _delivered(sim) == SENT
        assert history[:, 2].sum() == SENT
        for robot in sim.robots:
            assert robot.received == {'unicast': 100, 'broadcast': 100,
                                      'multicast': 100}

    def test_total_outage(self, makeSim):
        """Outage probability 1 silences the network"""
        sim = makeSim(CommsConfig(commsOutageProbability=1.0))
        sim.simulate()
        assert _delivered(sim) == 0
        assert sim.broker.stats['packetDropOutage'] == SENT
        assert all(sim.commsModel.isInOutage(r.address) for r in sim.robots)

    def test_out_of_range(self, makeSim):
        """Robots beyond range are not neighbors and hear nothing"""
        sim = makeSim(CommsConfig(neighborDistanceMax=50,
                                  commsDistanceMax=50),
                      positions=((0, 0, 1), (100, 0, 1)))
        sim.simulate()
        assert all(r.neighbors() == [] for r in sim.robots)
        assert _delivered(sim) == 0
        assert sim.broker.stats['recipientsEvaluated'] == 0
        assert sim.broker.stats['packetNotNeighbor'] == 2 * 100

    def test_tree_penalty_blocks(self, makeSim):
        """One tree inflates the distance past the comms range"""
        config = CommsConfig(commsDistanceMax=40,
                             commsDistancePenaltyTree=20,
                             commsDropProbabilityMax=0.5)
        world = env.World([env.Tree('oak', 15.0, 0.0, 1.0, 10.0)])
        blocked = makeSim(config, positions=((0, 0, 1), (30, 0, 1)),
                          world=world)
        blocked.simulate()
        assert _delivered(blocked) == 0
        assert blocked.broker.stats['packetDropRange'] == SENT

        clear = makeSim(config, positions=((0, 0, 1), (30, 0, 1)))
        clear.simulate()
        rate = _delivered(clear) / SENT
        # Interpolated drop probability at 30 m is 0.375
        assert 0.5 < rate < 0.75

    def test_tree_penalty_within_range(self, makeSim):
        """Small penalty keeps an obstructed pair in range"""
        config = CommsConfig(commsDistanceMax=40, commsDistancePenaltyTree=5)
        world = env.World([env.Tree('oak', 15.0, 0.0, 1.0, 10.0)])
        sim = makeSim(config, positions=((0, 0, 1), (30, 0, 1)), world=world)
        sim.simulate()
        assert _delivered(sim) == SENT

    def test_two_trees_single_penalty(self, makeSim):
        """Several obstacles cost one penalty, not one each"""
        config = CommsConfig(commsDistanceMax=40, commsDistancePenaltyTree=5)
        world = env.World([env.Tree('oak', 10.0, 0.0, 1.0, 10.0),
                           env.Tree('elm', 20.0, 0.0, 1.0, 10.0)])
        sim = makeSim(config, positions=((0, 0, 1), (30, 0, 1)), world=world)
        sim.simulate()
        assert _delivered(sim) == SENT
        record = sim.commsModel.visibility.get(*[r.address
                                                 for r in sim.robots])
        assert record.entities == ['oak', 'elm']

    def test_two_trees_severed(self, makeSim):
        """Negative penalty severs an obstructed pair"""
        config = CommsConfig(commsDistancePenaltyTree=-1)
        world = env.World([env.Tree('oak', 10.0, 0.0, 1.0, 10.0),
                           env.Tree('elm', 20.0, 0.0, 1.0, 10.0)])
        sim = makeSim(config, positions=((0, 0, 1), (30, 0, 1)), world=world)
        sim.simulate()
        assert _delivered(sim) == 0
        assert sim.broker.stats['packetDropRange'] == SENT

    def test_all_packets_drop(self, makeSim):
        """Drop probability 1 loses every message"""
        sim = makeSim(CommsConfig(commsDropProbabilityMin=1.0,
                                  commsDropProbabilityMax=1.0))
        sim.simulate()
        assert _delivered(sim) == 0
        assert sim.broker.stats['packetDropPLR'] == SENT

    def test_half_drop(self, makeSim):
        """Drop probability 0.5 delivers roughly half"""
        sim = makeSim(CommsConfig(commsDistanceMax=100,
                                  commsDropProbabilityMin=0.5,
                                  commsDropProbabilityMax=0.5))
        sim.simulate()
        rate = _delivered(sim) / SENT
        assert 0.4 < rate < 0.6

    def test_temporary_outage(self, makeSim):
        """Bounded outages clear and traffic resumes"""
        sim = makeSim(CommsConfig(commsOutageProbability=1.0,
                                  commsOutageDurationMin=2,
                                  commsOutageDurationMax=2), N=60)
        history = sim.simulate()
        t = history[:, 0]
        # Outage for 2 s, clear for 1 s, then outage again
        silent = history[t < 1.95]
        resumed = history[(t > 1.95) & (t < 2.95)]
        assert silent[:, 2].sum() == 0
        assert len(resumed) == 10
        assert np.all(resumed[:, 1] == 6)
        assert np.all(resumed[:, 2] == 6)
        assert sim.commsModel.outages.nOutages >= 4

    def test_reproducible(self, makeSim):
        """Same seed replays the same run"""
        config = CommsConfig(commsDistanceMax=60,
                             commsDropProbabilityMin=0.1,
                             commsDropProbabilityMax=0.6,
                             commsOutageProbability=0.2,
                             commsOutageDurationMin=1,
                             commsOutageDurationMax=3)
        a = makeSim(config, seed=5)
        b = makeSim(config, seed=5)
        np.testing.assert_array_equal(a.simulate(), b.simulate())
        assert a.broker.stats == b.broker.stats


class TestSimulator:
    """Tests for the simulation driver"""

    def test_time_settings(self, makeSim):
        """Time array follows sampleTime and N"""
        sim = makeSim(N=10)
        assert sim.simTime.shape == (11, 1)
        assert sim.runTime == pytest.approx(1.0)
        sim.runTime = 5
        assert sim.N == 50
        with pytest.raises(ValueError):
            sim.N = -1
        with pytest.raises(ValueError):
            sim.sampleTime = 0

    def test_duplicate_addresses(self, world):
        """Robots must have unique addresses"""
        from swarmnetsim.robots import SwarmRobot
        robots = [SwarmRobot('192.168.2.1'), SwarmRobot('192.168.2.1')]
        with pytest.raises(ValueError):
            simulator.Simulator(world=world, robots=robots, N=1,
                                logging='none', commLogging='none')

    def test_run_writes_nothing(self, makeSim, tmp_path):
        """Quiet run records history and leaves no files"""
        sim = makeSim(N=20)
        sim.run()
        assert sim.history.shape == (21, 3)
        assert list(tmp_path.iterdir()) == []
        assert 'Delivery Rate' in sim.broker.getStatsReport()
        assert 'TeamController' in str(sim)

    def test_save_and_load(self, makeSim, tmp_path):
        """Simulations pickle and load back"""
        sim = makeSim(N=20)
        sim.simulate()
        path = simulator.save(sim, str(tmp_path / 'run.pkl'))
        assert path == str(tmp_path / 'run.pickle')
        assert os.path.isfile(path)
        loaded = simulator.load(path)
        assert loaded.broker.stats == sim.broker.stats
        np.testing.assert_array_equal(loaded.history, sim.history)
        assert loaded.robots[0].neighbors() == [sim.robots[1].address]
        assert loaded.broker.robots[loaded.robots[0].address] is \
            loaded.robots[0]

    def test_unknown_formats(self, makeSim, tmp_path):
        """Unknown save and load formats return None"""
        sim = makeSim(N=1)
        assert simulator.save(sim, str(tmp_path / 'run'), format='json') \
            is None
        assert simulator.load(str(tmp_path / 'run.json')) is None

    def test_second_run_restarts_clocks(self, makeSim):
        """A second run recomputes the network and moves robots forward"""
        sim = makeSim(N=20)
        sim.simulate()
        first, second = sim.robots
        assert first.neighbors() == [second.address]
        start = second.position.copy()

        sim.config.neighborDistanceMax = 50
        second.velocity = np.array([100.0, 0.0, 0.0])
        sim.simulate()
        assert sim.commsModel.lastUpdateTime == pytest.approx(2.0)
        assert second.lastTime == pytest.approx(2.0)
        np.testing.assert_allclose(second.position, start + [200.0, 0, 0])
        assert first.neighbors() == []
        assert not sim.commsModel.isNeighbor(first.address, second.address)

    def test_delivery_uses_moved_positions(self, makeSim):
        """A robot leaving range during a tick misses that tick's traffic"""
        sim = makeSim(CommsConfig(commsDistanceMax=50), N=5)
        sim.robots[1].velocity = np.array([1000.0, 0.0, 0.0])
        history = sim.simulate()
        assert history[0, 2] == 6
        assert history[1, 1] == 6
        assert history[1, 2] == 0
        assert sim.broker.stats['packetDropRange'] == 5 * 6


@pytest.fixture
def restoreLogging():
    """Return the shared loggers to silence after a test"""
    yield
    logger.noneLog(logger.MAIN_LOG)
    logger.removeHandlers(logger.COMM_LOG)
    comm.log = cm.log = logger.setupComm(file=False, out=False)


def _handlerNames(name):
    return [h.get_name() for h in logging.getLogger(name).handlers]


@pytest.mark.usefixtures('restoreLogging')
class TestSimulatorOutput:
    """Tests for log files and the output folder"""

    def _sim(self, tmp_path, **kwargs):
        world = env.World()
        robots = rob.buildSwarm(2, world, rob.TeamController, numMessages=5)
        return simulator.Simulator(name='out', sampleTime=0.1, N=5,
                                   world=world, robots=robots, seed=3,
                                   plotting=False, outputRoot=str(tmp_path),
                                   **kwargs)

    def test_default_logging_writes_both_files(self, tmp_path):
        """Default settings log to console and to two files"""
        sim = self._sim(tmp_path)
        sim.run()
        assert os.path.dirname(sim.outDir) == str(tmp_path)
        assert sim.logFile == f"{sim.saveFile}.log"
        assert sim.commFile == f"{sim.saveFile}_comm.log"
        with open(sim.logFile) as f:
            assert 'Delivery Rate' in f.read()
        with open(sim.commFile) as f:
            assert 'ON BROKER' in f.read()
        assert logger.consoleHandler in sim.log.handlers
        assert logger.consoleHandler in logging.getLogger(
            logger.COMM_LOG).handlers

    def test_file_only_with_custom_names(self, tmp_path):
        """Bare file names get the .log extension in the output folder"""
        sim = self._sim(tmp_path, logFile='custom', commFile='radio.txt',
                        logging='noout', commLogging='noout')
        assert sim.logFile == os.path.join(sim.outDir, 'custom.log')
        assert sim.commFile == os.path.join(sim.outDir, 'radio.log')
        assert logger.consoleHandler is None
        assert 'Comms file handler' in _handlerNames(logger.COMM_LOG)
        sim.run()
        with open(sim.logFile) as f:
            assert 'Delivery Rate' in f.read()
        assert os.path.isfile(sim.commFile)

    def test_console_only_writes_nothing(self, tmp_path):
        """No-file settings keep the output folder off disk"""
        sim = self._sim(tmp_path, logging='nofile', commLogging='nofile')
        assert logger.fileHandler is None
        assert logger.consoleHandler in sim.log.handlers
        assert _handlerNames(logger.COMM_LOG) == ['Console handler']
        sim.simulate()
        assert list(tmp_path.iterdir()) == []

    def test_comm_handlers_rebuilt(self, tmp_path):
        """Changing the comms setting replaces its handlers"""
        sim = self._sim(tmp_path, logging='noout', commLogging='noout')
        commLog = logging.getLogger(logger.COMM_LOG)
        assert _handlerNames(logger.COMM_LOG) == ['Comms file handler']
        commHandler = commLog.handlers[0]
        sim.commLogging = 'nofile'
        assert commLog.handlers == [logger.fileHandler]
        assert commHandler.stream is None
        sim.logging = 'none'
        sim.commLogging = 'none'
        assert commLog.handlers == []

    def test_paths_fixed_after_init(self, tmp_path):
        """Output folder and log names cannot be changed later"""
        sim = self._sim(tmp_path, logging='none', commLogging='none',
                        logFile='first')
        outDir = sim.outDir
        sim.outDir = str(tmp_path / 'elsewhere')
        sim.logFile = 'second'
        sim.commFile = 'radio'
        assert sim.outDir == outDir
        assert sim.logFile == os.path.join(outDir, 'first.log')
        assert sim.commFile == os.path.join(outDir, 'radio.log')
        assert not os.path.exists(tmp_path / 'elsewhere')
