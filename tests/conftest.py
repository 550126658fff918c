"""
Pytest configuration and shared fixtures for SwarmNet-Sim tests.
"""

import matplotlib
matplotlib.use('Agg')

import pytest
import numpy as np

from swarmnetsim import commsmodel as cm
from swarmnetsim import communication as comm
from swarmnetsim import environment as env
from swarmnetsim import robots as rob
from swarmnetsim.config import CommsConfig
from swarmnetsim.simulator import Simulator


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests"""
    return np.random.default_rng(42)


@pytest.fixture
def world():
    """Empty world"""
    return env.World()


@pytest.fixture
def config():
    """Default communication model parameters"""
    return CommsConfig()


@pytest.fixture
def network():
    """
    Factory building robots, a comms model and a broker without a Simulator.

    Robots are placed at the given positions, in address order
    192.168.2.1, 192.168.2.2, ...
    """

    def _build(positions, config=None, world=None, seed=7,
               robotType=rob.SwarmRobot, **kwargs):
        if (world is None):
            world = env.World()
        swarm = rob.buildSwarm(len(positions), world, robotType, **kwargs)
        for robot, position in zip(swarm, positions):
            robot.position = position
        model = cm.CommsModel({r.address: r for r in swarm}, world, config,
                              seed)
        broker = comm.Broker(model)
        for robot in swarm:
            broker.register(robot)
        return swarm, model, broker

    return _build


@pytest.fixture
def makeSim(tmp_path):
    """
    Factory building a quiet Simulator of team controllers.

    Logging and plotting are off and outputs go under tmp_path, so nothing is
    written unless a test asks for it.
    """

    def _make(config=None, positions=((0, 0, 1), (10, 0, 1)), world=None,
              N=100, numMessages=100, seed=1234):
        if (world is None):
            world = env.World()
        robots = rob.buildSwarm(len(positions), world, rob.TeamController,
                                numMessages=numMessages)
        for robot, position in zip(robots, positions):
            robot.position = position
        return Simulator(name='test', sampleTime=0.1, N=N, world=world,
                         robots=robots, config=config, seed=seed,
                         logging='none', commLogging='none',
                         outputRoot=str(tmp_path), plotting=False)

    return _make


@pytest.fixture
def addrs():
    """Addresses assigned by buildSwarm"""
    return [f"{rob.ADDR_PREFIX}{i}" for i in range(1, 6)]
