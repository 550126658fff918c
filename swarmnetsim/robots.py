"""
Robot classes for swarm network simulation.

Defines the capability interface the communication core relies on and the
concrete robots: a generic swarm member with address binding, sending and a
lock-guarded neighbor list, an example team controller that exchanges
unicast, broadcast and multicast messages with a partner, and the base of
operations that checks reports of a lost person.


Classes
-------
Robot
    Abstract capability interface used by CommsModel and Broker.
SwarmRobot
    Swarm member with handlers bound on (address, port) pairs.
TeamController
    Swarm member sending one round of test traffic per update.
BooRobot
    Base of operations checking lost person reports.


Functions
---------
buildSwarm(num, world, robotType, spacing, **kwargs)
    Create a list of robots with sequential addresses.


Notes
-----
**Binding:**

bind(callback, address, port) registers callback(srcAddress, dstAddress,
dstPort, data) for datagrams sent to (address, port). Binding a robot's own
address also binds the broadcast address on the same port. Binding any other
address subscribes the robot to that multicast group.

**Neighbors:**

The communication model pushes a new neighbor list through
onNeighborsReceived() whenever it changes. The list is held under a per-robot
lock, and neighbors() returns a copy taken under that lock.

**Motion:**

Robots move at a constant velocity between updates and write their position
to the world, which is where the communication model reads it.


Examples
--------
>>> import swarmnetsim.environment as env
>>> import swarmnetsim.robots as rob
>>> world = env.World()
>>> swarm = rob.buildSwarm(2, world, rob.TeamController, spacing=10.0)
>>> [r.address for r in swarm]
['192.168.2.1', '192.168.2.2']
>>> swarm[0].partner
'192.168.2.2'
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from bisect import bisect_right
from threading import Lock
from typing import (Any, Callable, Dict, List, Optional, Sequence,
                    TYPE_CHECKING, Tuple, Union)
from numpy.typing import NDArray
if (TYPE_CHECKING):
    from swarmnetsim.communication import Broker
import construct as cst
import numpy as np
from swarmnetsim import communication as comm
from swarmnetsim.config import SearchArea
from swarmnetsim.environment import EnvironmentQueryError, World
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]
Callback = Callable[[str, str, int, bytes], Any]

# Address Constants
ADDR_PREFIX = '192.168.2.'

# Global Variables
log = logger.addLog('rob')

###############################################################################

class Robot(ABC):
    """
    Capability interface of a swarm member.

    The communication core only uses the members declared here and never
    depends on a concrete robot class.
    """

    address: str
    broker: Optional[Broker]

    @property
    @abstractmethod
    def position(self)->NPFltArr:
        """Current 3D position (m)."""

    @abstractmethod
    def sendTo(self,
               data:Union[bytes, str],
               dstAddress:str,
               port:int = comm.DEFAULT_PORT,
               )->bool:
        """Send a datagram. False on local validation or transport failure."""

    @abstractmethod
    def bind(self,
             callback:Callback,
             address:Optional[str] = None,
             port:int = comm.DEFAULT_PORT,
             )->bool:
        """Register a handler for datagrams sent to (address, port)."""

    @abstractmethod
    def recv(self, datagram:comm.Datagram)->bool:
        """Dispatch an incoming datagram. False if no handler is bound."""

    @abstractmethod
    def isSubscribed(self, group:str)->bool:
        """True if the robot listens to the multicast group."""

    @abstractmethod
    def onNeighborsReceived(self, neighbors:Sequence[str])->None:
        """Store the neighbor list published by the communication model."""

    @abstractmethod
    def update(self, simTime:float)->None:
        """Advance the robot to simTime."""

###############################################################################

class SwarmRobot(Robot):
    """
    Swarm member with bound handlers and a lock-guarded neighbor list.

    Attributes
    ----------
    address : str
        Unique network address. Read-only.
    velocity : ndarray, shape (3,)
        Constant velocity (m/s) applied by update().
    world : World or None
        World receiving position updates.
    broker : Broker or None
        Set by Broker.register().
    searchArea : SearchArea
        Area assigned to this robot.
    info : dict
        Descriptive fields shown by __str__().
    ownAddresses : frozenset
        Reserved addresses robots of this class may use. Class attribute.

    Methods
    -------
    bind(callback, address, port)
        Register a handler for (address, port).
    sendTo(data, dstAddress, port)
        Send a datagram through the broker.
    recv(datagram)
        Dispatch an incoming datagram to its handler.
    neighbors()
        Copy of the current neighbor list.
    update(simTime)
        Move the robot to its position at simTime.
    """

    ownAddresses = frozenset()

    ## Constructor ===========================================================#
    def __init__(self,
                 address:str,
                 position:Sequence[float] = (0.0, 0.0, 0.0),
                 velocity:Sequence[float] = (0.0, 0.0, 0.0),
                 world:Optional[World] = None,
                 searchArea:Optional[SearchArea] = None,
                 **kwargs,
                 )->None:
        """
        Initialize swarm robot.

        Parameters
        ----------
        address : str
            Unique network address. Must not be a reserved address.
        position : sequence of float, default=(0, 0, 0)
            Initial position (m).
        velocity : sequence of float, default=(0, 0, 0)
            Constant velocity (m/s).
        world : World, optional
            World to keep informed of the robot position.
        searchArea : SearchArea, optional
            Assigned search area. Undefined when omitted.
        **kwargs
            Additional attributes set on the robot.

        Raises
        ------
        ValueError
            If address is empty or reserved.
        """

        if ((not address) or
            (address in comm.RESERVED_ADDRS - self.ownAddresses)):
            msg = f"Invalid robot address '{address}'"
            log.critical(msg)
            raise ValueError(msg)

        self._address = address
        self.broker = None
        self.world = world
        self.velocity = np.asarray(velocity, dtype=np.float64)
        self.searchArea = searchArea if (searchArea) else SearchArea()
        self.lastTime = None
        self.info = {'Address': address}

        self._callbacks: Dict[Tuple[str, int], Callback] = {}
        self._neighbors: List[str] = []
        self._neighborLock = Lock()

        self.position = position
        self.__dict__.update(kwargs)

    ## Properties ============================================================#
    @property
    def address(self)->str:
        """Network address. Read-only."""
        return self._address

    #--------------------------------------------------------------------------
    @property
    def position(self)->NPFltArr:
        """Current position (m)."""
        return self._position

    @position.setter
    def position(self, pos:Sequence[float])->None:
        """Set position and forward it to the world."""
        self._position = np.asarray(pos, dtype=np.float64)
        if (self.world is not None):
            self.world.setPosition(self.address, self._position)

    ## Special Methods =======================================================#
    def __repr__(self)->str:
        """Return concise string representation of the robot."""
        return f"<{self.__class__.__name__} {self.address} at {hex(id(self))}>"

    #--------------------------------------------------------------------------
    def __str__(self)->str:
        """Return user-friendly description of the robot."""
        out = [f"{self.__class__.__name__} {self.address}"]
        fields = dict(self.info)
        fields['Position'] = np.array2string(self.position, precision=1)
        fields['Bindings'] = ', '.join(f"{a}:{p}"
                                       for a, p in sorted(self._callbacks))
        fields['Neighbors'] = len(self.neighbors())
        cw = max(len(k) for k in fields) + 1
        for key, value in fields.items():
            k = f"{key}:"
            out.append(f"{k:{cw}} {value}")
        line = '-' * max([len(o) for o in out])
        out = [out[0], line, *out[1:], line]
        return '\n'+'\n'.join(out)

    #--------------------------------------------------------------------------
    def __getstate__(self)->dict:
        """Drop the neighbor lock for pickling."""
        state = self.__dict__.copy()
        state.pop('_neighborLock', None)
        return state

    #--------------------------------------------------------------------------
    def __setstate__(self, state)->None:
        """Restore state and recreate the neighbor lock."""
        self.__dict__.update(state)
        self._neighborLock = Lock()

    ## Methods ===============================================================#
    def bind(self,
             callback:Callback,
             address:Optional[str] = None,
             port:int = comm.DEFAULT_PORT,
             )->bool:
        """
        Register a handler for datagrams sent to (address, port).

        Parameters
        ----------
        callback : callable
            Called as callback(srcAddress, dstAddress, dstPort, data).
        address : str, optional
            Own address (default), BROADCAST_ADDR or a multicast group.
        port : int, default=DEFAULT_PORT
            Destination port.

        Returns
        -------
        bool
            True once bound. An existing handler for the same key is replaced.
        """

        if (address is None):
            address = self.address
        self._callbacks[(address, port)] = callback
        if (address == self.address):
            self._callbacks[(comm.BROADCAST_ADDR, port)] = callback
        log.debug('%s: BOUND %s:%d', self.address, address, port)
        return True

    #--------------------------------------------------------------------------
    def sendTo(self,
               data:Union[bytes, str],
               dstAddress:str,
               port:int = comm.DEFAULT_PORT,
               )->bool:
        """
        Send a datagram through the broker.

        Parameters
        ----------
        data : bytes or str
            Payload. Strings are UTF-8 encoded.
        dstAddress : str
            Robot address, BROADCAST_ADDR or a multicast group.
        port : int, default=DEFAULT_PORT
            Destination port.

        Returns
        -------
        bool
            False if the payload is not bytes or str, exceeds the MTU, the
            robot has no broker, or the broker refused the frame. Delivery
            to recipients is not reported.
        """

        if (not isinstance(data, (bytes, bytearray, str))):
            log.error('%s: sendTo() error: payload must be bytes or str, got '
                      '%s', self.address, type(data).__name__)
            return False
        if (isinstance(data, str)):
            data = data.encode('utf-8')
        datagram = comm.Datagram(self.address, dstAddress, port, bytes(data))

        mtu = self.broker.mtu if (self.broker is not None) else comm.MTU
        try:
            datagram.checkSize(mtu)
        except comm.PayloadTooLargeError as e:
            log.error('%s: sendTo() error: %s', self.address, e)
            return False

        if (self.broker is None):
            log.error('%s: sendTo() error: not registered with a broker',
                      self.address)
            return False

        try:
            frame = comm.writeDatagram(datagram)
        except cst.ConstructError as e:
            log.error('%s: sendTo() error building frame for %s:%d: %s',
                      self.address, dstAddress, port, e)
            return False

        return self.broker.submit(frame)

    #--------------------------------------------------------------------------
    def recv(self, datagram:comm.Datagram)->bool:
        """
        Dispatch an incoming datagram to its bound handler.

        Returns
        -------
        bool
            False if the robot is not a recipient or no handler is bound to
            (dstAddress, dstPort).
        """

        if (self.address not in datagram.recipients):
            log.debug('%s: NOT A RECIPIENT OF %s>%s', self.address,
                      datagram.srcAddress, datagram.dstAddress)
            return False

        callback = self._callbacks.get((datagram.dstAddress,
                                        datagram.dstPort))
        if (callback is None):
            return False

        callback(datagram.srcAddress, datagram.dstAddress, datagram.dstPort,
                 datagram.data)
        return True

    #--------------------------------------------------------------------------
    def isSubscribed(self, group:str)->bool:
        """True if any handler is bound to the multicast group."""
        return any(a == group for a, _ in self._callbacks)

    #--------------------------------------------------------------------------
    def onNeighborsReceived(self, neighbors:Sequence[str])->None:
        """Replace the neighbor list, excluding this robot."""
        with self._neighborLock:
            self._neighbors = [n for n in neighbors if (n != self.address)]

    #--------------------------------------------------------------------------
    def neighbors(self)->List[str]:
        """Return a copy of the current neighbor list."""
        with self._neighborLock:
            return list(self._neighbors)

    #--------------------------------------------------------------------------
    def update(self, simTime:float)->None:
        """Move at constant velocity from the previous update to simTime."""
        if ((self.lastTime is not None) and (np.any(self.velocity))):
            self.position = (self.position +
                             self.velocity * (simTime - self.lastTime))
        self.lastTime = simTime

###############################################################################

class TeamController(SwarmRobot):
    """
    Example controller exchanging test traffic with a partner.

    On each update, until numMessages rounds have been sent, the controller
    sends a unicast to its partner, a broadcast and a multicast on the
    default port. It listens on its own address (which includes broadcast)
    and on the default multicast group, counting what it receives.

    Attributes
    ----------
    partner : str or None
        Address of the unicast partner.
    numMessages : int
        Number of rounds to send.
    msgsSent : int
        Rounds sent so far.
    received : dict
        Messages received per kind: 'unicast', 'broadcast', 'multicast'.
    inbox : list of tuple
        (srcAddress, dstAddress, data) of each received message.
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 address:str,
                 partner:Optional[str] = None,
                 numMessages:int = 1,
                 **kwargs,
                 )->None:
        """
        Initialize team controller.

        Parameters
        ----------
        address : str
            Unique network address.
        partner : str, optional
            Unicast partner address.
        numMessages : int, default=1
            Number of rounds to send.
        **kwargs
            Passed to SwarmRobot.
        """

        self.partner = partner
        self.numMessages = numMessages
        self.msgsSent = 0
        self.received = {'unicast': 0, 'broadcast': 0, 'multicast': 0}
        self.inbox = []
        super().__init__(address, **kwargs)
        self.info.update([('Partner', f"{partner}"),
                          ('Messages', f"{numMessages}")])

        self.bind(self.onDataReceived)
        self.bind(self.onDataReceived, comm.MULTICAST_ADDR)

    ## Properties ============================================================#
    @property
    def totalReceived(self)->int:
        """Total number of messages received."""
        return sum(self.received.values())

    ## Methods ===============================================================#
    def update(self, simTime:float)->None:
        """Move, then send one round of messages if any remain."""

        super().update(simTime)
        if (self.msgsSent >= self.numMessages):
            return
        self.msgsSent += 1

        if (self.partner is not None):
            if (not self.sendTo('Unicast data', self.partner)):
                log.error('%s: error sending a message to <%s,%d>',
                          self.address, self.partner, comm.DEFAULT_PORT)
                return

        for dst, data in ((comm.BROADCAST_ADDR, 'Broadcast data'),
                          (comm.MULTICAST_ADDR, 'Multicast data')):
            if (not self.sendTo(data, dst)):
                log.error('%s: error sending a message to <%s,%d>',
                          self.address, dst, comm.DEFAULT_PORT)
                return

    #--------------------------------------------------------------------------
    def onDataReceived(self,
                       srcAddress:str,
                       dstAddress:str,
                       dstPort:int,
                       data:bytes,
                       )->None:
        """Count and store a received message."""

        if (dstAddress == self.address):
            kind = 'unicast'
        elif (dstAddress == comm.BROADCAST_ADDR):
            kind = 'broadcast'
        else:
            kind = 'multicast'
        self.received[kind] += 1
        self.inbox.append((srcAddress, dstAddress, data))
        log.debug('%s: %s FROM %s: %s', self.address, kind.upper(),
                  srcAddress, data)

###############################################################################

class BooRobot(SwarmRobot):
    """
    Base of operations receiving lost person reports.

    The base of operations is a stationary swarm member at BOO_ADDR. It
    listens on BOO_PORT for text commands of the form ``<cmd> [args]``. The
    only command is::

        FOUND <x> <y> <z> <t>

    where x, y, z is the reported position of the lost person (m) and t the
    simulation time (s) at which the person was seen, e.g.
    ``FOUND 100.0 50.0 1.0 10.4``.

    On every update the base reads the lost person position from the world
    and records the grid cell it occupies each time the cell changes. A
    report is correct if the reported position falls in the cell the person
    occupied at time t.

    Attributes
    ----------
    lostPerson : str
        World entity name of the lost person.
    cellSize : float
        Side length (m) of the cubic grid cells used to compare positions.
    personBuffer : dict
        Time (s) at which the person entered a cell -> cell (ix, iy, iz).
    found : bool
        True once a correct report has been received.
    foundBy : str or None
        Address of the robot that sent the first correct report.
    foundTime : float or None
        Time reported in the first correct report.
    reports : dict
        Reports received per outcome: 'found', 'wrong', 'malformed'.
    """

    ownAddresses = frozenset((comm.BOO_ADDR,))

    ## Constructor ===========================================================#
    def __init__(self,
                 lostPerson:str = 'lost_person',
                 cellSize:float = 10.0,
                 **kwargs,
                 )->None:
        """
        Initialize base of operations.

        Parameters
        ----------
        lostPerson : str, default='lost_person'
            Name under which the world holds the lost person position.
        cellSize : float, default=10.0
            Grid cell side length (m). Must be greater than zero.
        **kwargs
            Passed to SwarmRobot.

        Raises
        ------
        ValueError
            If cellSize is not greater than zero.
        """

        if (not cellSize > 0):
            msg = "cellSize must be greater than zero"
            log.critical(msg)
            raise ValueError(msg)

        self.lostPerson = lostPerson
        self.cellSize = float(cellSize)
        self.personBuffer: Dict[float, Tuple[int, int, int]] = {}
        self.found = False
        self.foundBy = None
        self.foundTime = None
        self.reports = {'found': 0, 'wrong': 0, 'malformed': 0}
        self._bufferLock = Lock()
        super().__init__(comm.BOO_ADDR, **kwargs)
        self.info.update([('Lost Person', lostPerson),
                          ('Cell Size', f"{self.cellSize:.1f} m")])

        self.bind(self.onDataReceived, port=comm.BOO_PORT)

    ## Special Methods =======================================================#
    def __getstate__(self)->dict:
        """Drop the neighbor and buffer locks for pickling."""
        state = super().__getstate__()
        state.pop('_bufferLock', None)
        return state

    #--------------------------------------------------------------------------
    def __setstate__(self, state)->None:
        """Restore state and recreate the locks."""
        super().__setstate__(state)
        self._bufferLock = Lock()

    ## Methods ===============================================================#
    def posToGrid(self, position:Sequence[float])->Tuple[int, int, int]:
        """Return the grid cell containing a position."""
        cell = np.floor(np.asarray(position, dtype=np.float64) /
                        self.cellSize).astype(int)
        return tuple(int(c) for c in cell)

    #--------------------------------------------------------------------------
    def personCellAt(self, t:float)->Optional[Tuple[int, int, int]]:
        """
        Return the cell the lost person occupied at time t.

        None if t is later than the last update or earlier than the first
        recorded position.
        """

        with self._bufferLock:
            if ((self.lastTime is None) or (t > self.lastTime)):
                return None
            times = list(self.personBuffer)
            i = bisect_right(times, t) - 1
            if (i < 0):
                return None
            return self.personBuffer[times[i]]

    #--------------------------------------------------------------------------
    def update(self, simTime:float)->None:
        """Move, then record the lost person cell if it changed."""

        super().update(simTime)
        if (self.world is None):
            return
        try:
            position = self.world.positionOf(self.lostPerson)
        except EnvironmentQueryError as e:
            log.debug('%s: no lost person position: %s', self.address, e)
            return

        cell = self.posToGrid(position)
        with self._bufferLock:
            if ((self.personBuffer) and
                (simTime < next(reversed(self.personBuffer)))):
                self.personBuffer.clear()
            last = (self.personBuffer[next(reversed(self.personBuffer))]
                    if (self.personBuffer) else None)
            if (cell != last):
                self.personBuffer[simTime] = cell
                log.debug('%s: LOST PERSON IN CELL %s', self.address, cell)

    #--------------------------------------------------------------------------
    def onDataReceived(self,
                       srcAddress:str,
                       dstAddress:str,
                       dstPort:int,
                       data:bytes,
                       )->None:
        """Parse and check a command sent to the base of operations."""

        try:
            args = data.decode('utf-8').split()
        except UnicodeDecodeError:
            args = []

        if ((len(args) != 5) or (args[0] != 'FOUND')):
            self.reports['malformed'] += 1
            log.warning('%s: unsupported command from %s: %r', self.address,
                        srcAddress, data)
            return

        try:
            values = np.array(args[1:], dtype=np.float64)
        except ValueError:
            values = None
        if ((values is None) or (not np.all(np.isfinite(values)))):
            self.reports['malformed'] += 1
            log.warning('%s: unable to parse FOUND from %s: %r',
                        self.address, srcAddress, data)
            return

        if (self.found):
            log.debug('%s: person already found, ignoring %s', self.address,
                      srcAddress)
            return

        position, t = values[:3], float(values[3])
        cell = self.personCellAt(t)
        if ((cell is None) or (self.posToGrid(position) != cell)):
            self.reports['wrong'] += 1
            log.info('%s: WRONG REPORT FROM %s (%s at %.2f s)', self.address,
                     srcAddress, np.array2string(position, precision=1), t)
            return

        self.reports['found'] += 1
        self.found = True
        self.foundBy = srcAddress
        self.foundTime = t
        log.info('%s: PERSON FOUND BY %s at %.2f s', self.address, srcAddress,
                 t)

###############################################################################

def buildSwarm(num:int,
               world:Optional[World] = None,
               robotType:type = SwarmRobot,
               spacing:float = 10.0,
               **kwargs,
               )->List[Robot]:
    """
    Create a list of robots with sequential addresses.

    Parameters
    ----------
    num : int
        Number of robots.
    world : World, optional
        World receiving the robot positions.
    robotType : type, default=SwarmRobot
        Robot class to instantiate.
    spacing : float, default=10.0
        Distance (m) between consecutive robots placed along the x axis.
    **kwargs
        Passed to every robot constructor.

    Returns
    -------
    swarm : list of Robot
        Robots at ADDR_PREFIX + '1' ... ADDR_PREFIX + str(num). Team
        controllers are paired as (1, 2), (3, 4), ... unless a partner is
        given in kwargs.

    Examples
    --------
    >>> swarm = buildSwarm(3)
    >>> swarm[2].address
    '192.168.2.3'
    >>> swarm[2].position
    array([20.,  0.,  0.])
    """

    swarm = []
    for i in range(num):
        address = f"{ADDR_PREFIX}{i+1}"
        robotKwargs = dict(kwargs)
        robotKwargs.setdefault('position', (i * spacing, 0.0, 0.0))
        if ((issubclass(robotType, TeamController)) and
            ('partner' not in robotKwargs)):
            mate = i + 2 if (i % 2 == 0) else i
            if (mate <= num):
                robotKwargs['partner'] = f"{ADDR_PREFIX}{mate}"
        swarm.append(robotType(address, world=world, **robotKwargs))
    return swarm
