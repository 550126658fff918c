"""
Message broker and datagram wire format for swarm robot communication.

Robots hand binary datagram frames to a Broker, which resolves each
destination against the current neighbor graph, applies the link quality
model to every candidate recipient, and dispatches the surviving copies to
the recipients' bound handlers.


Classes
-------
Broker
    Routes datagrams between registered robots once per tick.
Datagram
    Source, destination, port, payload and delivered recipients.
PayloadTooLargeError
    Raised when a payload exceeds the MTU.


Functions
---------
getDatagramStruct()
    Return the construct Struct describing a datagram frame.
writeDatagram(datagram)
    Serialize a Datagram to a frame.
readDatagram(frame)
    Parse a frame back into a Datagram.


Constants
---------
BROADCAST_ADDR : str
    Destination reaching every current neighbor.
MULTICAST_ADDR : str
    Default multicast group.
BOO_ADDR : str
    Address of the base of operations (BooRobot).
DEFAULT_PORT : int
    Port used when none is given.
BOO_PORT : int
    Port the base of operations listens on for FOUND reports.
MTU : int
    Default maximum payload size (bytes).


Notes
-----
**Addressing:**

A destination is resolved in this order:

1. The address of a registered robot: unicast, delivered only if that robot
   is a current neighbor of the sender.
2. BROADCAST_ADDR: every current neighbor of the sender.
3. Anything else is a multicast group: every current neighbor of the sender
   that is subscribed to the group.

The sender never receives its own datagram.

**Delivery:**

Frames submitted during a tick are queued and routed by deliver(time) in
submission order. Link quality is evaluated independently for each candidate
recipient. The full recipient list is filled before any handler runs, so
every recipient sees the same list.

**Failure Reporting:**

Unreachable recipients (not a neighbor, out of range, in outage, dropped) and
recipients without a bound handler are not reported to the sender. They are
counted in stats and logged at DEBUG. Exceptions raised by a handler are
logged at ERROR and counted as failed deliveries.


Examples
--------
>>> import swarmnetsim.communication as comm
>>> frame = comm.writeDatagram(
...     comm.Datagram('192.168.2.1', comm.BROADCAST_ADDR, 4100, b'hello'))
>>> comm.readDatagram(frame).data
b'hello'
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
from threading import Lock
from typing import Dict, List, Optional, TYPE_CHECKING, Tuple
if (TYPE_CHECKING):
    from swarmnetsim.commsmodel import CommsModel
    from swarmnetsim.robots import Robot
import construct as cst
from swarmnetsim import commsmodel as cm
from swarmnetsim import config as cfg
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Addressing Constants
BROADCAST_ADDR = 'broadcast'
MULTICAST_ADDR = 'multicast'
BOO_ADDR = 'boo'
DEFAULT_PORT = 4100
BOO_PORT = 4200
MTU = cfg.MTU

RESERVED_ADDRS = frozenset((BROADCAST_ADDR, MULTICAST_ADDR, BOO_ADDR))

# Global Variables
log = logger.setupComm(file=False)

###############################################################################

class PayloadTooLargeError(ValueError):
    """Payload larger than the maximum transmission unit."""

    def __init__(self, size:int, mtu:int)->None:
        self.size = size
        self.mtu = mtu
        super().__init__(f"Payload size ({size}) is greater than the maximum "
                         f"allowed ({mtu})")

###############################################################################

@dataclass
class Datagram:
    """
    Addressed message exchanged between robots.

    Attributes
    ----------
    srcAddress : str
        Address of the sending robot.
    dstAddress : str
        Robot address, BROADCAST_ADDR or a multicast group.
    dstPort : int
        Destination port.
    data : bytes
        Payload.
    recipients : list of str
        Robots the broker delivered this datagram to. Filled by the broker.
    """

    srcAddress: str
    dstAddress: str
    dstPort: int
    data: bytes
    recipients: List[str] = field(default_factory=list)

    def checkSize(self, mtu:int = MTU)->None:
        """
        Validate the payload size.

        Raises
        ------
        PayloadTooLargeError
            If len(data) > mtu.
        """
        if (len(self.data) > mtu):
            raise PayloadTooLargeError(len(self.data), mtu)

###############################################################################

class Broker:
    """
    Routes datagrams between the robots of a swarm.

    Attributes
    ----------
    commsModel : CommsModel
        Source of neighbor sets and per-message link quality.
    robots : dict
        Robot address -> Robot, filled by register().
    queue : collections.deque
        Datagrams waiting for the next deliver() call.
    stats : dict
        Traffic counters, see calcStats().

    Methods
    -------
    register(robot)
        Attach a robot to the broker.
    submit(frame)
        Queue a datagram frame for routing.
    deliver(time)
        Route and dispatch every queued datagram.
    calcStats()
        Compute derived statistics.
    getStatsReport()
        Return a formatted traffic summary.

    Notes
    -----
    submit() may be called from any thread; the queue is guarded by a lock.
    deliver() runs on the simulation thread.
    """

    ## Constructor ===========================================================#
    def __init__(self, commsModel:CommsModel, **kwargs)->None:
        """
        Initialize broker.

        Parameters
        ----------
        commsModel : CommsModel
            Communication model consulted when routing.
        **kwargs
            Additional attributes set on the broker.
        """

        self.commsModel = commsModel
        self.robots: Dict[str, Robot] = {}
        self.queue = deque()
        self._lock = Lock()

        self.stats = {
            'packetSent': 0,
            'frameErrors': 0,
            'recipientsEvaluated': 0,
            'packetDelivered': 0,
            'packetUnbound': 0,
            'packetFailedDel': 0,
            'packetNotNeighbor': 0,
            'packetDropOutage': 0,
            'packetDropRange': 0,
            'packetDropPLR': 0,
            'plrActual': 0.0,
            'deliveryRate': 0.0,
        }

        self.__dict__.update(kwargs)

    ## Properties ============================================================#
    @property
    def mtu(self)->int:
        """Maximum payload size (bytes) from the comms configuration."""
        return self.commsModel.config.MTU

    #--------------------------------------------------------------------------
    @property
    def pending(self)->int:
        """Number of datagrams waiting for delivery."""
        with self._lock:
            return len(self.queue)

    ## Special Methods =======================================================#
    def __repr__(self)->str:
        """Detailed description of the broker."""
        return (
            f"{self.__class__.__name__}("
            f"robots={sorted(self.robots)}, "
            f"pending={len(self.queue)}, "
            f"stats={self.stats})"
        )

    #--------------------------------------------------------------------------
    def __getstate__(self)->dict:
        """Drop the queue lock for pickling."""
        state = self.__dict__.copy()
        state.pop('_lock', None)
        return state

    #--------------------------------------------------------------------------
    def __setstate__(self, state)->None:
        """Restore state and recreate the queue lock."""
        self.__dict__.update(state)
        self._lock = Lock()

    ## Methods ===============================================================#
    def register(self, robot:Robot)->None:
        """
        Attach a robot to the broker.

        Raises
        ------
        ValueError
            If another robot already uses the same address.
        """

        if (robot.address in self.robots):
            msg = f"Address {robot.address} already registered"
            log.critical(msg)
            raise ValueError(msg)
        self.robots[robot.address] = robot
        robot.broker = self
        log.info('%s: ON BROKER...', robot.address)

    #--------------------------------------------------------------------------
    def submit(self, frame:bytes)->bool:
        """
        Queue a datagram frame for routing on the next deliver() call.

        Parameters
        ----------
        frame : bytes
            Frame built by writeDatagram().

        Returns
        -------
        bool
            False if the frame could not be parsed, was oversized, or came
            from an unregistered address.
        """

        try:
            datagram = readDatagram(frame)
            datagram.checkSize(self.mtu)
        except (cst.ConstructError, UnicodeError, PayloadTooLargeError) as e:
            self.stats['frameErrors'] += 1
            log.error('BROKER: rejected frame: %s', e)
            return False

        if (datagram.srcAddress not in self.robots):
            self.stats['frameErrors'] += 1
            log.error('BROKER: frame from unregistered address %s',
                      datagram.srcAddress)
            return False

        log.info('[%s>%s:%d] %d bytes', datagram.srcAddress,
                 datagram.dstAddress, datagram.dstPort, len(datagram.data))
        with self._lock:
            self.queue.append(datagram)
            self.stats['packetSent'] += 1
        return True

    #--------------------------------------------------------------------------
    def deliver(self, time:float)->Tuple[int, int]:
        """
        Route and dispatch every datagram queued before this call.

        Parameters
        ----------
        time : float
            Current simulation time (s), used in log messages.

        Returns
        -------
        evaluated : int
            Number of candidate recipients evaluated.
        delivered : int
            Number of copies handled by a bound callback.
        """

        with self._lock:
            batch = list(self.queue)
            self.queue.clear()

        evaluated = 0
        delivered = 0
        for datagram in batch:
            e, d = self._route(datagram, time)
            evaluated += e
            delivered += d
        return evaluated, delivered

    #--------------------------------------------------------------------------
    def calcStats(self)->None:
        """Compute delivery rate and actual packet loss from the counters."""
        n = self.stats['recipientsEvaluated']
        if (n > 0):
            self.stats['deliveryRate'] = self.stats['packetDelivered'] / n
            self.stats['plrActual'] = self.stats['packetDropPLR'] / n

    #--------------------------------------------------------------------------
    def getStatsReport(self)->str:
        """
        Return a formatted traffic summary.

        Returns
        -------
        str
            Multi-line report of traffic, drops and delivery rate.
        """

        self.calcStats()
        cw = 24
        cw2 = 10
        s = self.stats
        dropped = (s['packetNotNeighbor'] + s['packetDropOutage'] +
                   s['packetDropRange'] + s['packetDropPLR'])
        accounted = (dropped + s['packetDelivered'] + s['packetUnbound'] +
                     s['packetFailedDel'])

        report = [
            f"\nBroker: Network Performance Summary",
            f"Traffic",
            f"{' Datagrams Sent:':{cw}} {s['packetSent']:>{cw2}}",
            f"{' Frame Errors:':{cw}} {s['frameErrors']:>{cw2}}",
            f"{' Recipients Evaluated:':{cw}} "
            f"{s['recipientsEvaluated']:>{cw2}}",
            f"{' Delivered:':{cw}} {s['packetDelivered']:>{cw2}}",
            f"{' Unbound:':{cw}} {s['packetUnbound']:>{cw2}}",
        ]
        if (s['packetFailedDel'] > 0):
            report.append(
                f"{' Failed (errors):':{cw}} {s['packetFailedDel']:>{cw2}}")
        report.extend([
            f"",
            f"Drops",
            f"{' Not Neighbor:':{cw}} {s['packetNotNeighbor']:>{cw2}}",
            f"{' Outage:':{cw}} {s['packetDropOutage']:>{cw2}}",
            f"{' Out of Range:':{cw}} {s['packetDropRange']:>{cw2}}",
            f"{' Packet Loss:':{cw}} {s['packetDropPLR']:>{cw2}}",
            f"{' Total Accounted:':{cw}} {accounted:>{cw2}}",
            f"",
            f"Performance",
            f"{' Actual PLR:':{cw}} {s['plrActual']:>{cw2+1}.1%}",
            f"{' Delivery Rate:':{cw}} {s['deliveryRate']:>{cw2+1}.1%}",
            f"{' Outages Started:':{cw}} "
            f"{self.commsModel.outages.nOutages:>{cw2}}",
        ])
        line = '-' * max([len(line) for line in report])
        report.insert(1, line)
        report.append(line)
        return "\n".join(report)

    ## Helper Methods ========================================================#
    def _resolve(self, datagram:Datagram)->List[str]:
        """Return the candidate recipients of a datagram, sorted."""

        src = datagram.srcAddress
        dst = datagram.dstAddress
        neighbors = self.commsModel.neighbors(src)

        # Unicast
        if (dst in self.robots):
            if (dst in neighbors):
                return [dst]
            self.stats['packetNotNeighbor'] += 1
            log.debug('[%s>%s:%d] NOT A NEIGHBOR', src, dst, datagram.dstPort)
            return []

        # Broadcast
        if (dst == BROADCAST_ADDR):
            return sorted(neighbors)

        # Multicast
        return sorted(a for a in neighbors
                      if ((a in self.robots) and
                          (self.robots[a].isSubscribed(dst))))

    #--------------------------------------------------------------------------
    def _route(self, datagram:Datagram, time:float)->Tuple[int, int]:
        """Apply link quality to each candidate and dispatch the survivors."""

        src = datagram.srcAddress
        port = datagram.dstPort
        candidates = self._resolve(datagram)
        self.stats['recipientsEvaluated'] += len(candidates)

        for address in candidates:
            reason = self.commsModel.linkQuality.evaluate(src, address)
            if (reason is None):
                datagram.recipients.append(address)
                continue
            if (reason == cm.DROP_OUTAGE):
                self.stats['packetDropOutage'] += 1
            elif (reason == cm.DROP_RANGE):
                self.stats['packetDropRange'] += 1
            else:
                self.stats['packetDropPLR'] += 1
            log.debug('[%s>%s:%d] (%.2fs) DROPPED (%s)', src, address, port,
                      time, reason.upper())

        delivered = 0
        for address in datagram.recipients:
            try:
                if (self.robots[address].recv(datagram)):
                    delivered += 1
                    self.stats['packetDelivered'] += 1
                else:
                    self.stats['packetUnbound'] += 1
                    log.debug('[%s>%s:%d] NO HANDLER AT %s', src,
                              datagram.dstAddress, port, address)
            except Exception as e:
                self.stats['packetFailedDel'] += 1
                log.error('[%s>%s:%d] delivery to %s failed: %s', src,
                          datagram.dstAddress, port, address, e)
        return len(candidates), delivered

###############################################################################

@lru_cache(maxsize=1)
def getDatagramStruct()->cst.Struct:
    """
    Return binary datagram structure for serialization/parsing.

    Returns
    -------
    cst.Struct
        Construct Struct. Use .build(dict) to serialize and .parse(bytes) to
        deserialize.

    Notes
    -----
    **Frame Layout:**

    .. code-block:: none

        type          4 bytes   b'DGRM'
        src_address   1 + n     length prefixed UTF-8
        dst_address   1 + n     length prefixed UTF-8
        dst_port      4 bytes   unsigned little endian
        data          4 + n     length prefixed payload

    The recipient list is filled in by the broker and is not part of the
    frame.
    """

    # Define Field Formats
    strType = cst.PascalString(cst.Int8ul, "utf8")
    intType = cst.Int32ul

    # Define Message Structure
    DGRM = cst.Struct(
        "type"              / cst.Const(b'DGRM'),
        "src_address"       / strType,
        "dst_address"       / strType,
        "dst_port"          / intType,
        "data"              / cst.Prefixed(intType, cst.GreedyBytes),
    )

    return DGRM

###############################################################################

def writeDatagram(datagram:Datagram)->bytes:
    """
    Serialize a datagram to a frame.

    Parameters
    ----------
    datagram : Datagram
        Datagram to serialize. Recipients are not included.

    Returns
    -------
    bytes
        Frame for Broker.submit().
    """

    return getDatagramStruct().build({
        "src_address": datagram.srcAddress,
        "dst_address": datagram.dstAddress,
        "dst_port": datagram.dstPort,
        "data": datagram.data,
    })

###############################################################################

def readDatagram(frame:bytes)->Datagram:
    """
    Parse a frame into a Datagram.

    Raises
    ------
    construct.ConstructError
        If the frame is malformed.
    UnicodeError
        If an address is not valid UTF-8.
    """

    msg = getDatagramStruct().parse(frame)
    return Datagram(srcAddress=msg.src_address,
                    dstAddress=msg.dst_address,
                    dstPort=msg.dst_port,
                    data=bytes(msg.data))
