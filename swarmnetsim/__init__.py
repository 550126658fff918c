"""
SwarmNet-Sim: Multi-Robot Wireless Communication Simulation Framework

A simulation environment for the wireless network of a robot swarm: who can
hear whom through an obstacle-filled world, how likely each message is to
arrive, and how unicast, broadcast and multicast datagrams are routed.

Modules
-------
robots : Robot interface, swarm robots, controller and base of operations
environment : Obstacle world and line-of-sight queries
commsmodel : Outages, visibility, neighbors and link quality
communication : Message broker and datagram wire format
config : Communication model parameters and world description parsing
simulator : Main simulation coordination
plotNetwork : Visualization and plotting utilities
logger : Logging configuration and utilities

Examples
--------
### Two team controllers exchanging messages:

>>> import swarmnetsim as sn
>>>
>>> world = sn.environment.World()
>>> robots = sn.robots.buildSwarm(2, world, sn.robots.TeamController,
...                               numMessages=10)
>>> config = sn.config.CommsConfig(neighborDistanceMax=100.0,
...                                commsDistanceMax=100.0)
>>> sim = sn.Simulator(name="PairDemo", world=world, robots=robots,
...                    config=config, N=200)
>>> sim.run()

### Swarm in a forest with lossy links:

>>> world = sn.environment.World.forest(nTrees=40, size=300, seed=3)
>>> robots = sn.robots.buildSwarm(8, world, sn.robots.TeamController,
...                               spacing=30.0, numMessages=20)
>>> config = sn.config.CommsConfig.fromDict({
...     'neighbor_distance_max': 150, 'neighbor_distance_penalty_tree': 40,
...     'comms_distance_max': 120, 'comms_drop_probability_max': 0.3,
... })
>>> sim = sn.Simulator(name="ForestDemo", world=world, robots=robots,
...                    config=config, seed=7)
>>> sim.run()
"""

# Core modules - import for direct access
from . import commsmodel
from . import communication
from . import config
from . import environment
from . import logger
from . import plotNetwork
from . import robots
from . import simulator

# Classes and functions for convenience
from .simulator import Simulator
from .simulator import save, load

# Version info
__version__ = "0.1.0"

# Define what gets imported with "from swarmnetsim import *"
__all__ = [
    # Modules
    'commsmodel',
    'communication',
    'config',
    'environment',
    'logger',
    'plotNetwork',
    'robots',
    'simulator',
    # Main classes
    'Simulator',
    'save',
    'load',
]
