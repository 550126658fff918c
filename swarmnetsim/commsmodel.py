"""
Communication model deciding who can hear whom in a robot swarm.

Combines line-of-sight visibility, a distance and obstruction penalty link
model, and a stochastic outage process into the per-tick state consulted by
the message broker. All per-pair and per-robot state lives in explicit
objects owned by a CommsModel instance.


Classes
-------
CommsModel
    Orchestrates outages, visibility and neighbors on the simulation clock.
OutageScheduler
    Starts, counts down and clears per-robot communication outages.
VisibilityCache
    Line-of-sight records for every unordered robot pair.
NeighborGraph
    Per-robot neighbor sets derived from distance and obstruction.
LinkQuality
    Per-message delivery decision between two robots.
PairKey
    Unordered pair of robot addresses.
VisibilityRecord
    Line-of-sight result for one pair.
OutageState
    Outage flag and remaining duration for one robot.


Functions
---------
effectiveDistance(p1, p2, record, penalty)
    Free-space distance plus the obstruction penalty.
withinBounds(d, lo, hi)
    Range test where a negative bound means no limit.


Notes
-----
**Update Cadence:**

CommsModel.update(simTime) is called every tick. Robot positions are
refreshed every tick, while outages, visibility and neighbors are recomputed
once per updateInterval of simulated time (1 s by default). Between
recomputations the cached values are reused unchanged.

A call with a time earlier than the last recomputation is a restart of the
clock: the model recomputes immediately and counts outages from there.

**Update Order:**

1. Outages are evaluated (new outages drawn, running ones counted down).
2. Visibility is recomputed for every pair with one line-of-sight query.
3. Neighbor sets are recomputed and each robot whose set changed is notified
   through onNeighborsReceived().

**Obstruction Penalty:**

A blocked pair adds one fixed penalty to its distance, however many
obstacles lie between the robots. A negative penalty severs the pair.

**Randomness:**

One numpy Generator, seeded by the CommsModel, drives both the outage draws
and the packet drop draws. Fixing the seed reproduces a run exactly.

**Error Handling:**

Nothing raised by the world query escapes update(). A failed position or
line-of-sight query is logged and the previous positions and visibility are
kept.


Examples
--------
>>> import swarmnetsim.environment as env
>>> import swarmnetsim.robots as rob
>>> from swarmnetsim.commsmodel import CommsModel
>>> from swarmnetsim.config import CommsConfig
>>> world = env.World()
>>> swarm = {r.address: r for r in rob.buildSwarm(3, world)}
>>> model = CommsModel(swarm, world, CommsConfig(neighborDistanceMax=100),
...                    seed=42)
>>> model.update(0.0)
True
>>> model.isNeighbor('192.168.2.1', '192.168.2.2')
True
"""

from __future__ import annotations
from dataclasses import dataclass, field
from itertools import combinations
from typing import (Dict, Iterable, List, Mapping, Optional, Set,
                    TYPE_CHECKING, Tuple)
from numpy.typing import NDArray
if (TYPE_CHECKING):
    from swarmnetsim.robots import Robot
import numpy as np
from swarmnetsim.config import CommsConfig
from swarmnetsim.environment import EnvironmentQueryError, WorldQuery
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Drop reasons reported by LinkQuality.evaluate()
DROP_OUTAGE = 'outage'
DROP_RANGE = 'range'
DROP_PLR = 'plr'

# Global Variables
log = logger.setupComm(file=False)

###############################################################################

class PairKey(tuple):
    """
    Unordered pair of robot addresses.

    PairKey(a, b) and PairKey(b, a) compare equal and hash the same. The
    addresses are stored in sorted order.
    """

    __slots__ = ()

    def __new__(cls, a:str, b:str)->PairKey:
        if (a == b):
            raise ValueError(f"PairKey needs two distinct addresses, got {a!r}")
        return super().__new__(cls, (a, b) if (a < b) else (b, a))

    def __getnewargs__(self)->Tuple[str, str]:
        return tuple(self)

    def __repr__(self)->str:
        return f"PairKey({self[0]!r}, {self[1]!r})"

    @property
    def first(self)->str:
        return self[0]

    @property
    def second(self)->str:
        return self[1]

###############################################################################

@dataclass
class VisibilityRecord:
    """
    Line-of-sight result between two robots.

    Attributes
    ----------
    clear : bool
        True if nothing obstructs the pair.
    entities : list of str
        ``[""]`` when clear, otherwise the names of the first and last
        obstructing entities (the same name twice for a single obstacle).
    """

    clear: bool = True
    entities: List[str] = field(default_factory=lambda: [""])

###############################################################################

@dataclass
class OutageState:
    """
    Outage status of one robot.

    Attributes
    ----------
    inOutage : bool
        True while the robot can neither send nor receive.
    remaining : float
        Remaining outage time (s). Infinite for an unbounded outage.
    """

    inOutage: bool = False
    remaining: float = 0.0

###############################################################################

def effectiveDistance(p1:NPFltArr,
                      p2:NPFltArr,
                      record:Optional[VisibilityRecord],
                      penalty:float,
                      )->float:
    """
    Return the distance between two points as seen by the radio.

    Parameters
    ----------
    p1, p2 : ndarray, shape (3,)
        Robot positions.
    record : VisibilityRecord or None
        Visibility of the pair. None is treated as clear.
    penalty : float
        Distance (m) added when the pair is blocked. Negative: infinite.

    Returns
    -------
    float
        Euclidean distance, plus the penalty when blocked.
    """

    d = float(np.linalg.norm(p2 - p1))
    if ((record is None) or (record.clear)):
        return d
    if (penalty < 0):
        return np.inf
    return d + penalty

#-----------------------------------------------------------------------------#

def withinBounds(d:float, lo:float, hi:float)->bool:
    """True if d lies in [lo, hi]. Negative bounds are open; inf never fits."""
    if (not np.isfinite(d)):
        return False
    if ((lo >= 0) and (d < lo)):
        return False
    if ((hi >= 0) and (d > hi)):
        return False
    return True

###############################################################################

class OutageScheduler:
    """
    Stochastic per-robot communication outages.

    Each evaluation, a robot that is not in outage enters one with probability
    commsOutageProbability. The outage length is drawn uniformly from
    [commsOutageDurationMin, commsOutageDurationMax]. A negative minimum is
    read as 0 s and a negative maximum makes the outage unbounded, so it only
    ends through clearOutage(). Running outages are counted down by the
    elapsed time and clear once nothing remains.

    Attributes
    ----------
    config : CommsConfig
        Outage parameters.
    rng : numpy.random.Generator
        Shared random generator.
    states : dict
        Robot address -> OutageState.
    nOutages : int
        Number of outages started so far.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 config:CommsConfig,
                 rng:np.random.Generator,
                 addresses:Iterable[str],
                 )->None:
        self.config = config
        self.rng = rng
        self.states = {a: OutageState() for a in addresses}
        self.nOutages = 0

    ## Methods ===============================================================#
    def update(self, elapsed:float)->None:
        """
        Evaluate outages for every robot.

        Parameters
        ----------
        elapsed : float
            Simulated time (s) since the previous evaluation.

        Notes
        -----
        Robots are visited in sorted address order so that the sequence of
        random draws only depends on the seed. A robot whose outage clears in
        this evaluation cannot start a new one until the next.
        """

        p = self.config.commsOutageProbability
        for address in sorted(self.states):
            state = self.states[address]
            if (state.inOutage):
                if (np.isinf(state.remaining)):
                    continue
                state.remaining -= elapsed
                if (state.remaining <= 0):
                    state.inOutage = False
                    state.remaining = 0.0
                    log.info('%s: OUTAGE CLEARED...', address)
            elif ((p > 0) and (self.rng.random() < p)):
                state.inOutage = True
                state.remaining = self._drawDuration()
                self.nOutages += 1
                log.info('%s: OUTAGE STARTED (%.2f s)...', address,
                         state.remaining)

    #--------------------------------------------------------------------------
    def isInOutage(self, address:str)->bool:
        """True if the robot is currently in outage. Unknown robots are not."""
        state = self.states.get(address)
        return (state is not None) and (state.inOutage)

    #--------------------------------------------------------------------------
    def clearOutage(self, address:str)->None:
        """End the outage of a robot immediately."""
        state = self.states.get(address)
        if ((state is not None) and (state.inOutage)):
            state.inOutage = False
            state.remaining = 0.0
            log.info('%s: OUTAGE CLEARED (explicit)...', address)

    #--------------------------------------------------------------------------
    def state(self, address:str)->OutageState:
        """Return a copy of the outage state of a robot."""
        state = self.states.get(address, OutageState())
        return OutageState(state.inOutage, state.remaining)

    ## Helper Methods ========================================================#
    def _drawDuration(self)->float:
        """Draw an outage length (s); inf when the maximum is unbounded."""
        lo = max(self.config.commsOutageDurationMin, 0.0)
        hi = self.config.commsOutageDurationMax
        if (hi < 0):
            return np.inf
        return float(self.rng.uniform(lo, hi)) if (hi > lo) else lo

###############################################################################

class VisibilityCache:
    """
    Line-of-sight records for every unordered pair of robots.

    Attributes
    ----------
    world : WorldQuery
        World answering the line-of-sight queries.
    records : dict
        PairKey -> VisibilityRecord from the last successful recomputation.
    nQueries : int
        Number of line-of-sight queries issued.
    nFailures : int
        Number of recomputations abandoned because a query failed.
    """

    ## Constructor ===========================================================#
    def __init__(self, world:WorldQuery)->None:
        self.world = world
        self.records: Dict[PairKey, VisibilityRecord] = {}
        self.nQueries = 0
        self.nFailures = 0

    ## Methods ===============================================================#
    def get(self, a:str, b:str)->Optional[VisibilityRecord]:
        """Return the record for the pair (a, b), or None if never computed."""
        return self.records.get(PairKey(a, b))

    #--------------------------------------------------------------------------
    def recompute(self, positions:Mapping[str, NPFltArr])->bool:
        """
        Query line of sight for every pair with the given positions.

        Parameters
        ----------
        positions : mapping
            Robot address -> position.

        Returns
        -------
        bool
            True if the cache was replaced. False if a query failed, in which
            case the previous records are kept unchanged.
        """

        records = {}
        try:
            for a, b in combinations(sorted(positions), 2):
                self.nQueries += 1
                result = self.world.lineOfSight(positions[a], positions[b])
                records[PairKey(a, b)] = self._toRecord(result)
        except EnvironmentQueryError as e:
            self.nFailures += 1
            log.error('VISIBILITY: world query failed, keeping previous '
                      'state: %s', e)
            return False
        except Exception as e:
            self.nFailures += 1
            log.error('VISIBILITY: world query raised %s, keeping previous '
                      'state: %s', type(e).__name__, e)
            return False

        self.records = records
        return True

    ## Helper Methods ========================================================#
    @staticmethod
    def _toRecord(result)->VisibilityRecord:
        """Convert a (clear, entities) query result to a VisibilityRecord."""
        try:
            clear, entities = result
            entities = [str(e) for e in entities]
        except (TypeError, ValueError):
            raise EnvironmentQueryError(
                f"Malformed line-of-sight result {result!r}") from None
        if (clear):
            return VisibilityRecord(True, [""])
        if (not entities):
            raise EnvironmentQueryError(
                "Blocked line of sight reported without entities")
        return VisibilityRecord(False, [entities[0], entities[-1]])

###############################################################################

class NeighborGraph:
    """
    Neighbor sets of every robot.

    Two robots are neighbors when their effective distance, with
    neighborDistancePenaltyTree added for a blocked pair, lies within
    [neighborDistanceMin, neighborDistanceMax]. The relation is symmetric.

    Attributes
    ----------
    config : CommsConfig
        Neighbor parameters.
    sets : dict
        Robot address -> set of neighbor addresses.
    """

    ## Constructor ===========================================================#
    def __init__(self, config:CommsConfig, addresses:Iterable[str])->None:
        self.config = config
        self.sets: Dict[str, Set[str]] = {a: set() for a in addresses}

    ## Methods ===============================================================#
    def recompute(self,
                  positions:Mapping[str, NPFltArr],
                  visibility:VisibilityCache,
                  )->Set[str]:
        """
        Recompute all neighbor sets.

        Returns
        -------
        set of str
            Addresses whose neighbor set changed.
        """

        cfg = self.config
        sets = {a: set() for a in self.sets}
        for a, b in combinations(sorted(sets), 2):
            if ((a not in positions) or (b not in positions)):
                continue
            d = effectiveDistance(positions[a], positions[b],
                                  visibility.get(a, b),
                                  cfg.neighborDistancePenaltyTree)
            if (withinBounds(d, cfg.neighborDistanceMin,
                             cfg.neighborDistanceMax)):
                sets[a].add(b)
                sets[b].add(a)

        changed = {a for a in sets if (sets[a] != self.sets[a])}
        self.sets = sets
        return changed

    #--------------------------------------------------------------------------
    def isNeighbor(self, a:str, b:str)->bool:
        """True if b is in the neighbor set of a."""
        return b in self.sets.get(a, ())

    #--------------------------------------------------------------------------
    def neighbors(self, address:str)->Set[str]:
        """Return a copy of the neighbor set of a robot."""
        return set(self.sets.get(address, ()))

###############################################################################

class LinkQuality:
    """
    Delivery decision for one message between two robots.

    A message is dropped when either robot is in outage, when the effective
    distance (with commsDistancePenaltyTree for a blocked pair) falls outside
    [commsDistanceMin, commsDistanceMax], or when a uniform draw falls below
    the drop probability.

    Attributes
    ----------
    config : CommsConfig
        Link parameters.
    rng : numpy.random.Generator
        Shared random generator.
    outages : OutageScheduler
        Outage state consulted first.
    visibility : VisibilityCache
        Cached visibility of each pair.
    positions : dict
        Live robot positions, refreshed by the CommsModel every tick.

    Notes
    -----
    With a bounded commsDistanceMax the drop probability grows linearly from
    commsDropProbabilityMin at distance 0 to commsDropProbabilityMax at
    commsDistanceMax. With an unbounded maximum distance the probability is
    drawn uniformly from [commsDropProbabilityMin, commsDropProbabilityMax]
    for each message.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 config:CommsConfig,
                 rng:np.random.Generator,
                 outages:OutageScheduler,
                 visibility:VisibilityCache,
                 positions:Dict[str, NPFltArr],
                 )->None:
        self.config = config
        self.rng = rng
        self.outages = outages
        self.visibility = visibility
        self.positions = positions

    ## Methods ===============================================================#
    def evaluate(self, src:str, dst:str)->Optional[str]:
        """
        Decide whether one message from src reaches dst.

        Returns
        -------
        str or None
            None if the message survives, otherwise the drop reason:
            'outage', 'range' or 'plr'.
        """

        if (self.outages.isInOutage(src) or self.outages.isInOutage(dst)):
            return DROP_OUTAGE

        d = self.distance(src, dst)
        if (not withinBounds(d, self.config.commsDistanceMin,
                             self.config.commsDistanceMax)):
            return DROP_RANGE

        p = self._probabilityAt(d)
        if (p <= 0):
            return None
        if (self.rng.random() < p):
            return DROP_PLR
        return None

    #--------------------------------------------------------------------------
    def distance(self, src:str, dst:str)->float:
        """Effective comms distance (m) between two robots; inf if unknown."""
        p1 = self.positions.get(src)
        p2 = self.positions.get(dst)
        if ((p1 is None) or (p2 is None)):
            return np.inf
        return effectiveDistance(p1, p2, self.visibility.get(src, dst),
                                 self.config.commsDistancePenaltyTree)

    #--------------------------------------------------------------------------
    def dropProbability(self, src:str, dst:str)->float:
        """
        Drop probability for a message from src to dst.

        Returns 1.0 when the pair is out of comms range. With an unbounded
        maximum distance each call makes a new uniform draw.
        """

        d = self.distance(src, dst)
        if (not withinBounds(d, self.config.commsDistanceMin,
                             self.config.commsDistanceMax)):
            return 1.0
        return self._probabilityAt(d)

    ## Helper Methods ========================================================#
    def _probabilityAt(self, d:float)->float:
        """Drop probability at effective distance d (m)."""
        pMin = self.config.commsDropProbabilityMin
        pMax = self.config.commsDropProbabilityMax
        dMax = self.config.commsDistanceMax
        if (dMax < 0):
            if (pMax > pMin):
                return float(self.rng.uniform(pMin, pMax))
            return pMin
        if (dMax == 0):
            return pMin
        frac = min(max(d, 0.0) / dMax, 1.0)
        return pMin + (pMax - pMin) * frac

###############################################################################

class CommsModel:
    """
    Communication state of a swarm, advanced on the simulation clock.

    Attributes
    ----------
    swarm : dict
        Robot address -> Robot. Read only, fixed for the run.
    world : WorldQuery
        World answering position and line-of-sight queries.
    config : CommsConfig
        Model parameters.
    seed : int
        Seed of the shared random generator.
    rng : numpy.random.Generator
        Random generator shared by outages and link quality.
    positions : dict
        Robot address -> position snapshot of the current tick.
    lastUpdateTime : float or None
        Simulation time of the last full recomputation.
    outages : OutageScheduler
    visibility : VisibilityCache
    neighborGraph : NeighborGraph
    linkQuality : LinkQuality

    Methods
    -------
    update(simTime)
        Advance the model to simTime.
    isNeighbor(a, b)
        True if the two robots are current neighbors.
    neighbors(address)
        Copy of the current neighbor set of a robot.
    isInOutage(address)
        True if a robot is in outage.
    clearOutage(address)
        End the outage of a robot.
    refreshPositions()
        Read the robot positions of the current tick from the world.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 swarm:Mapping[str, Robot],
                 world:WorldQuery,
                 config:Optional[CommsConfig] = None,
                 seed:Optional[int] = None,
                 **kwargs,
                 )->None:
        """
        Initialize the communication model.

        Parameters
        ----------
        swarm : mapping
            Robot address -> Robot.
        world : WorldQuery
            Position and line-of-sight provider.
        config : CommsConfig, optional
            Model parameters. Defaults to CommsConfig().
        seed : int, optional
            Random seed. A fresh entropy value is used when omitted and is
            kept in the seed attribute so the run can be reproduced.
        **kwargs
            Additional attributes set on the model.
        """

        self.swarm = swarm
        self.world = world
        self.config = config if (config is not None) else CommsConfig()

        if (seed is None):
            self.seed = np.random.SeedSequence().entropy
        else:
            self.seed = seed
        self.rng = np.random.default_rng(self.seed)

        self.positions: Dict[str, NPFltArr] = {}
        self.lastUpdateTime = None

        self.outages = OutageScheduler(self.config, self.rng, swarm.keys())
        self.visibility = VisibilityCache(world)
        self.neighborGraph = NeighborGraph(self.config, swarm.keys())
        self.linkQuality = LinkQuality(self.config, self.rng, self.outages,
                                       self.visibility, self.positions)

        self.__dict__.update(kwargs)

    ## Special Methods =======================================================#
    def __repr__(self)->str:
        """Detailed description of the communication model."""
        return (
            f"{self.__class__.__name__}("
            f"robots={len(self.swarm)}, "
            f"config={self.config!r}, "
            f"seed={self.seed})"
        )

    #--------------------------------------------------------------------------
    def __str__(self)->str:
        """User friendly description of the communication model."""
        return f"{self.config}\n{'RNG Seed:':31}{self.seed}"

    ## Methods ===============================================================#
    def update(self, simTime:float)->bool:
        """
        Advance the model to simTime.

        Parameters
        ----------
        simTime : float
            Current simulation time (s).

        Returns
        -------
        bool
            True if outages, visibility and neighbors were recomputed on this
            call, False if only the positions were refreshed.
        """

        posOK = self.refreshPositions()

        if ((self.lastUpdateTime is not None) and
            (simTime < self.lastUpdateTime)):
            log.info('UPDATE: clock went back to %.2f s, restarting', simTime)
            self.lastUpdateTime = None

        if (self.lastUpdateTime is not None):
            elapsed = simTime - self.lastUpdateTime
            if (elapsed + 1e-9 < self.config.updateInterval):
                return False
        else:
            elapsed = 0.0
        self.lastUpdateTime = simTime

        self.outages.update(elapsed)
        if (posOK):
            self.visibility.recompute(self.positions)
        changed = self.neighborGraph.recompute(self.positions,
                                               self.visibility)
        self._publish(changed)
        return True

    #--------------------------------------------------------------------------
    def isNeighbor(self, a:str, b:str)->bool:
        """True if b is currently a neighbor of a."""
        return self.neighborGraph.isNeighbor(a, b)

    #--------------------------------------------------------------------------
    def neighbors(self, address:str)->Set[str]:
        """Copy of the current neighbor set of a robot."""
        return self.neighborGraph.neighbors(address)

    #--------------------------------------------------------------------------
    def isInOutage(self, address:str)->bool:
        """True if the robot is in outage."""
        return self.outages.isInOutage(address)

    #--------------------------------------------------------------------------
    def clearOutage(self, address:str)->None:
        """End the outage of a robot immediately."""
        self.outages.clearOutage(address)

    #--------------------------------------------------------------------------
    def refreshPositions(self)->bool:
        """
        Read every robot position from the world.

        Called by update() and again by the Simulator once the robots have
        moved, so link quality is judged on the positions of the current
        tick.

        Returns False and keeps the previous snapshot if any query fails.
        The snapshot dict is updated in place since LinkQuality holds it.
        """

        snapshot = {}
        try:
            for address in self.swarm:
                snapshot[address] = np.asarray(
                    self.world.positionOf(address), dtype=np.float64)
        except Exception as e:
            log.error('POSITIONS: world query failed, keeping previous '
                      'snapshot: %s', e)
            return False
        self.positions.clear()
        self.positions.update(snapshot)
        return True

    ## Helper Methods ========================================================#
    def _publish(self, changed:Set[str])->None:
        """Send the new neighbor list to every robot whose set changed."""
        for address in sorted(changed):
            robot = self.swarm.get(address)
            if (robot is None):
                continue
            neighbors = sorted(self.neighborGraph.sets[address])
            log.debug('%s: NEIGHBORS %s', address, neighbors)
            try:
                robot.onNeighborsReceived(neighbors)
            except Exception as e:
                log.error('%s: neighbor update failed: %s', address, e)
