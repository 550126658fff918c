"""
Obstacle world and line-of-sight queries for swarm network simulation.

Provides the world query interface consulted by the communication model and a
reference world of vertical cylinders (trees) and axis-aligned boxes
(buildings). The communication model only needs two answers from a world:
where a robot is, and which named entities lie between two points.


Classes
-------
WorldQuery
    Abstract interface for position and line-of-sight queries.
World
    Reference world holding obstacles and robot positions.
Tree
    Vertical cylinder obstacle.
Building
    Axis-aligned box obstacle.
EnvironmentQueryError
    Raised when a world query cannot be answered.


Notes
-----
**Line of Sight:**

lineOfSight(p1, p2) returns a tuple (clear, entities). The entities are the
names of every obstacle crossed by the segment from p1 to p2, ordered by
distance from p1. An empty list means the segment is clear.

**Failures:**

Non-finite coordinates and unknown robot addresses raise
EnvironmentQueryError. The communication model catches it and keeps its
previous visibility state.


Examples
--------
### Two robots on either side of a tree:

>>> import swarmnetsim.environment as env
>>> world = env.World().addObstacle(
...     env.Tree('oak', x=5.0, y=0.0, radius=1.0, height=10.0))
>>> world.lineOfSight([0, 0, 1], [10, 0, 1])
(False, ['oak'])

### Randomly planted world:

>>> world = env.World.forest(nTrees=25, size=200, seed=7)
>>> print(world)
World
----------------------
Size:            200 m
Trees:           25
Buildings:       0
Robots:          0
----------------------
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union
from typing_extensions import Self
from numpy.typing import NDArray
import numpy as np
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]
Point = Union[Sequence[float], NPFltArr]

# Global Variables
log = logger.addLog('env')

###############################################################################

class EnvironmentQueryError(Exception):
    """A position or line-of-sight query could not be answered."""

###############################################################################

class WorldQuery(ABC):
    """
    Interface between the communication model and the physical world.

    Methods
    -------
    lineOfSight(p1, p2)
        Return (clear, entities) for the segment from p1 to p2.
    positionOf(address)
        Return the current 3D position of a robot.
    """

    @abstractmethod
    def lineOfSight(self, p1:Point, p2:Point)->Tuple[bool, List[str]]:
        """Return (clear, entities) for the segment from p1 to p2."""

    @abstractmethod
    def positionOf(self, address:str)->NPFltArr:
        """Return the current position of the robot at address."""

###############################################################################

@dataclass
class Tree:
    """
    Vertical cylinder standing on the ground plane.

    Attributes
    ----------
    name : str
        Entity name reported by line-of-sight queries.
    x, y : float
        Trunk center (m).
    radius : float
        Trunk radius (m).
    height : float
        Height above base (m).
    base : float, default=0.0
        Elevation of the bottom of the cylinder (m).
    """

    name: str
    x: float
    y: float
    radius: float
    height: float
    base: float = 0.0

    def intersect(self, p1:NPFltArr, p2:NPFltArr)->Optional[float]:
        """
        Return the segment parameter where p1->p2 enters the cylinder.

        Parameters
        ----------
        p1, p2 : ndarray, shape (3,)
            Segment end points.

        Returns
        -------
        float or None
            Entry parameter t in [0, 1], or None if the segment misses.
        """

        d = p2 - p1
        fx = p1[0] - self.x
        fy = p1[1] - self.y
        a = d[0]**2 + d[1]**2
        c = fx**2 + fy**2 - self.radius**2

        # Horizontal footprint
        if (a == 0.0):
            if (c > 0.0):
                return None
            tLo, tHi = 0.0, 1.0
        else:
            b = 2.0 * (fx*d[0] + fy*d[1])
            disc = b**2 - 4.0*a*c
            if (disc < 0.0):
                return None
            root = np.sqrt(disc)
            tLo = max((-b - root) / (2.0*a), 0.0)
            tHi = min((-b + root) / (2.0*a), 1.0)
            if (tLo > tHi):
                return None

        return _clipHeight(p1[2], d[2], self.base, self.base + self.height,
                           tLo, tHi)

###############################################################################

@dataclass
class Building:
    """
    Axis-aligned box.

    Attributes
    ----------
    name : str
        Entity name reported by line-of-sight queries.
    lower : sequence of float
        Minimum (x, y, z) corner (m).
    upper : sequence of float
        Maximum (x, y, z) corner (m).
    """

    name: str
    lower: Sequence[float]
    upper: Sequence[float]

    def intersect(self, p1:NPFltArr, p2:NPFltArr)->Optional[float]:
        """Return the entry parameter t in [0, 1] of p1->p2, or None."""

        d = p2 - p1
        tLo, tHi = 0.0, 1.0
        for i in range(3):
            lo, hi = float(self.lower[i]), float(self.upper[i])
            if (d[i] == 0.0):
                if not (lo <= p1[i] <= hi):
                    return None
                continue
            t0 = (lo - p1[i]) / d[i]
            t1 = (hi - p1[i]) / d[i]
            if (t0 > t1):
                t0, t1 = t1, t0
            tLo = max(tLo, t0)
            tHi = min(tHi, t1)
            if (tLo > tHi):
                return None
        return tLo

###############################################################################

Obstacle = Union[Tree, Building]

###############################################################################

class World(WorldQuery):
    """
    Reference world of named obstacles and robot positions.

    Attributes
    ----------
    obstacles : list of Tree or Building
        Obstacles tested by lineOfSight(), in insertion order.
    positions : dict
        Robot address -> position, ndarray shape (3,).
    size : float
        Side length (m) of the square area used by presets and plots.

    Methods
    -------
    addObstacle(obstacle)
        Add an obstacle. Returns the world for chaining.
    setPosition(address, position)
        Record the current position of a robot.
    positionOf(address)
        Return a copy of the robot position.
    lineOfSight(p1, p2)
        Return (clear, entities) for the segment p1->p2.
    open_field(**kwargs)
        World with no obstacles.
    forest(nTrees, size, seed, **kwargs)
        World with randomly planted trees.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 obstacles:Optional[List[Obstacle]] = None,
                 size:float = 500.0,
                 **kwargs,
                 )->None:
        """
        Initialize world.

        Parameters
        ----------
        obstacles : list, optional
            Initial obstacles.
        size : float, default=500.0
            Side length (m) of the working area.
        **kwargs
            Additional attributes set on the world.
        """

        self.obstacles = []
        self.positions: Dict[str, NPFltArr] = {}
        self.size = size
        for obstacle in (obstacles or []):
            self.addObstacle(obstacle)
        self.__dict__.update(kwargs)

    ## Preset Constructors ===================================================#
    @classmethod
    def open_field(cls, **kwargs)->World:
        """Return a world with no obstacles."""
        return cls(**kwargs)

    #--------------------------------------------------------------------------
    @classmethod
    def forest(cls,
               nTrees:int = 20,
               size:float = 500.0,
               seed:Optional[int] = None,
               **kwargs,
               )->World:
        """
        Return a world with randomly planted trees.

        Parameters
        ----------
        nTrees : int, default=20
            Number of trees.
        size : float, default=500.0
            Side length (m) of the square area, centered on the origin.
        seed : int, optional
            Seed for reproducible planting.
        **kwargs
            Passed to the World constructor.
        """

        rng = np.random.default_rng(seed)
        world = cls(size=size, **kwargs)
        half = size / 2
        for i in range(nTrees):
            x, y = rng.uniform(-half, half, 2)
            world.addObstacle(Tree(name=f"tree_{i:02d}",
                                   x=float(x), y=float(y),
                                   radius=float(rng.uniform(0.3, 1.5)),
                                   height=float(rng.uniform(5.0, 25.0))))
        log.info('Planted forest: %d trees in %.0f m square', nTrees, size)
        return world

    ## Special Methods =======================================================#
    def __repr__(self)->str:
        """Detailed description of the world."""
        return (
            f"{self.__class__.__name__}("
            f"obstacles={self.obstacles!r}, "
            f"size={self.size})"
        )

    #--------------------------------------------------------------------------
    def __str__(self)->str:
        """User friendly description of the world."""
        cw = 16
        nTrees = sum(isinstance(o, Tree) for o in self.obstacles)
        nBuild = sum(isinstance(o, Building) for o in self.obstacles)
        out = [
            f"World",
            f"{'Size:':{cw}} {self.size:.0f} m",
            f"{'Trees:':{cw}} {nTrees}",
            f"{'Buildings:':{cw}} {nBuild}",
            f"{'Robots:':{cw}} {len(self.positions)}",
        ]
        line = '-' * max([len(line) for line in out])
        out.insert(1, line)
        out.append(line)
        return "\n".join(out)

    ## Methods ===============================================================#
    def addObstacle(self, obstacle:Obstacle)->Self:
        """
        Add an obstacle to the world.

        Raises
        ------
        ValueError
            If another obstacle already uses the same name.
        """

        if (any(o.name == obstacle.name for o in self.obstacles)):
            msg = f"Obstacle name '{obstacle.name}' already in use"
            log.critical(msg)
            raise ValueError(msg)
        self.obstacles.append(obstacle)
        return self

    #--------------------------------------------------------------------------
    def setPosition(self, address:str, position:Point)->None:
        """Record the current position of the robot at address."""
        self.positions[address] = np.asarray(position, dtype=np.float64)

    #--------------------------------------------------------------------------
    def positionOf(self, address:str)->NPFltArr:
        """
        Return a copy of the current position of a robot.

        Raises
        ------
        EnvironmentQueryError
            If the address is unknown or the position is not finite.
        """

        try:
            pos = self.positions[address]
        except KeyError:
            raise EnvironmentQueryError(
                f"No position for robot '{address}'") from None
        return _asPoint(pos).copy()

    #--------------------------------------------------------------------------
    def lineOfSight(self, p1:Point, p2:Point)->Tuple[bool, List[str]]:
        """
        Test the segment from p1 to p2 against every obstacle.

        Parameters
        ----------
        p1, p2 : array_like, shape (3,)
            Segment end points.

        Returns
        -------
        clear : bool
            True if no obstacle crosses the segment.
        entities : list of str
            Names of crossed obstacles ordered from p1 towards p2.

        Raises
        ------
        EnvironmentQueryError
            If either end point is malformed or not finite.
        """

        a = _asPoint(p1)
        b = _asPoint(p2)
        hits = []
        for obstacle in self.obstacles:
            t = obstacle.intersect(a, b)
            if (t is not None):
                hits.append((t, obstacle.name))
        hits.sort()
        entities = [name for _, name in hits]
        return (len(entities) == 0, entities)

###############################################################################

def _asPoint(p:Point)->NPFltArr:
    """Return p as a finite float array of shape (3,)."""
    try:
        arr = np.asarray(p, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise EnvironmentQueryError(f"Malformed position {p!r}") from e
    if (arr.shape != (3,)):
        raise EnvironmentQueryError(f"Position must have 3 components, "
                                    f"got shape {arr.shape}")
    if (not np.all(np.isfinite(arr))):
        raise EnvironmentQueryError(f"Non-finite position {arr}")
    return arr

def _clipHeight(z0:float, dz:float, zLo:float, zHi:float,
                tLo:float, tHi:float)->Optional[float]:
    """Restrict [tLo, tHi] to where z0 + t*dz lies in [zLo, zHi]."""
    if (dz == 0.0):
        return tLo if (zLo <= z0 <= zHi) else None
    t0 = (zLo - z0) / dz
    t1 = (zHi - z0) / dz
    if (t0 > t1):
        t0, t1 = t1, t0
    tLo = max(tLo, t0)
    tHi = min(tHi, t1)
    return tLo if (tLo <= tHi) else None
