"""
Communication model parameters and world description parsing.

Holds the thresholds that shape how robots see and hear each other, with the
documented defaults used when a world description leaves a value out. Parsing
problems never stop a simulation: the offending value is logged as a
configuration warning and its default is kept.


Classes
-------
CommsConfig
    Neighbor, link-quality, outage and transport parameters.
SearchArea
    Geographic search area in absolute latitude / longitude degrees.


Functions
---------
loadSearchArea(robotDesc, worldDesc)
    Build a SearchArea from a robot's search area block and the world origin.


Notes
-----
**Distance Bounds:**

Every distance bound uses ``< 0`` to mean "no limit on this side". A negative
obstruction penalty means that a single obstacle always severs the link.

**Key Styles:**

CommsConfig.fromDict() accepts the camelCase attribute names as well as the
snake_case element names used in world description files, e.g.
``neighbor_distance_max`` for ``neighborDistanceMax``. A ``comms_model``
wrapper block is unwrapped automatically.

Examples
--------
>>> import swarmnetsim.config as cfg
>>> config = cfg.CommsConfig.fromDict({
...     'comms_model': {
...         'neighbor_distance_max': 250,
...         'comms_distance_max': 200,
...         'comms_drop_probability_max': 0.2,
...     }
... })
>>> config.commsDistanceMax
200.0
"""

from typing import Any, Dict, Mapping, Optional
from dataclasses import dataclass, field, fields
import math
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Transport Constants
MTU = 1024                      # Maximum payload size (bytes)
UPDATE_INTERVAL = 1.0           # Visibility/neighbor/outage cadence (s)

# Global Variables
log = logger.addLog('cfg')

###############################################################################

@dataclass
class CommsConfig:
    """
    Parameters of the communication model.

    Attributes
    ----------
    neighborDistanceMin : float, default=-1.0
        Minimum free-space distance (m) for two robots to be neighbors.
    neighborDistanceMax : float, default=-1.0
        Maximum free-space distance (m) for two robots to be neighbors.
    neighborDistancePenaltyTree : float, default=0.0
        Equivalent free-space distance (m) consumed by an obstruction when
        deciding neighbors. Negative: an obstruction always severs.
    commsDistanceMin : float, default=-1.0
        Minimum free-space distance (m) for a message to pass.
    commsDistanceMax : float, default=-1.0
        Maximum free-space distance (m) for a message to pass. Also the
        distance at which the drop probability reaches its maximum.
    commsDistancePenaltyTree : float, default=0.0
        Equivalent free-space distance (m) consumed by an obstruction when
        deciding delivery. Negative: an obstruction always drops.
    commsDropProbabilityMin : float, default=0.0
        Drop probability at zero distance.
    commsDropProbabilityMax : float, default=0.0
        Drop probability at commsDistanceMax.
    commsOutageProbability : float, default=0.0
        Probability of entering an outage at each evaluation (per second).
    commsOutageDurationMin : float, default=-1.0
        Minimum outage length (s). Negative: no limit.
    commsOutageDurationMax : float, default=-1.0
        Maximum outage length (s). Negative: no limit.
    MTU : int, default=1024
        Largest payload (bytes) accepted by sendTo().
    updateInterval : float, default=1.0
        Simulated seconds between visibility, neighbor and outage updates.

    Notes
    -----
    __post_init__ sanitizes the values: probabilities are clipped to [0, 1],
    a maximum drop probability below the minimum is raised to the minimum,
    and bounded outage durations given in the wrong order are swapped. Each
    correction is logged as a configuration warning.
    """

    neighborDistanceMin: float = -1.0
    neighborDistanceMax: float = -1.0
    neighborDistancePenaltyTree: float = 0.0
    commsDistanceMin: float = -1.0
    commsDistanceMax: float = -1.0
    commsDistancePenaltyTree: float = 0.0
    commsDropProbabilityMin: float = 0.0
    commsDropProbabilityMax: float = 0.0
    commsOutageProbability: float = 0.0
    commsOutageDurationMin: float = -1.0
    commsOutageDurationMax: float = -1.0
    MTU: int = MTU
    updateInterval: float = UPDATE_INTERVAL

    ## Special Methods =======================================================#
    def __post_init__(self)->None:
        """Coerce types and repair inconsistent values."""

        for f in fields(self):
            value = getattr(self, f.name)
            try:
                value = int(value) if (f.name == 'MTU') else float(value)
                if (math.isnan(value)):
                    raise ValueError('NaN')
            except (TypeError, ValueError):
                log.warning("CONFIG: '%s' has invalid value %r, using "
                            "default %r", f.name, value, f.default)
                value = f.default
            setattr(self, f.name, value)

        for name in ('commsDropProbabilityMin', 'commsDropProbabilityMax',
                     'commsOutageProbability'):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                clipped = min(max(value, 0.0), 1.0)
                log.warning("CONFIG: '%s'=%s outside [0, 1], clipped to %s",
                            name, value, clipped)
                setattr(self, name, clipped)

        if (self.commsDropProbabilityMax < self.commsDropProbabilityMin):
            log.warning("CONFIG: commsDropProbabilityMax (%s) below "
                        "commsDropProbabilityMin (%s), raised to minimum",
                        self.commsDropProbabilityMax,
                        self.commsDropProbabilityMin)
            self.commsDropProbabilityMax = self.commsDropProbabilityMin

        if ((self.commsOutageDurationMin >= 0) and
            (self.commsOutageDurationMax >= 0) and
            (self.commsOutageDurationMax < self.commsOutageDurationMin)):
            log.warning("CONFIG: outage duration bounds reversed, swapping")
            self.commsOutageDurationMin, self.commsOutageDurationMax = (
                self.commsOutageDurationMax, self.commsOutageDurationMin)

        if (self.MTU <= 0):
            log.warning("CONFIG: MTU must be positive, using default %d", MTU)
            self.MTU = MTU

        if (self.updateInterval <= 0):
            log.warning("CONFIG: updateInterval must be positive, using "
                        "default %s", UPDATE_INTERVAL)
            self.updateInterval = UPDATE_INTERVAL

    #--------------------------------------------------------------------------
    def __str__(self)->str:
        """User friendly description of the parameters."""
        cw = 30
        out = [f"{'Communication Model'}"]
        for f in fields(self):
            out.append(f"{' '+f.name+':':{cw}} {getattr(self, f.name)}")
        line = '-' * max(len(o) for o in out)
        out.insert(1, line)
        out.append(line)
        return "\n".join(out)

    ## Methods ===============================================================#
    @classmethod
    def fromDict(cls, data:Optional[Mapping[str, Any]])->'CommsConfig':
        """
        Build a configuration from a world description mapping.

        Parameters
        ----------
        data : mapping or None
            Parameter values keyed by attribute name or snake_case element
            name. May be wrapped in a ``comms_model`` block. None or an empty
            mapping yields the defaults.

        Returns
        -------
        CommsConfig
            New configuration. Unknown keys are logged and ignored.
        """

        if (not data):
            log.info('CONFIG: no comms_model block, using defaults')
            return cls()

        if (not isinstance(data, Mapping)):
            log.warning("CONFIG: comms_model block must be a mapping, got "
                        "%s; using defaults", type(data).__name__)
            return cls()

        if ('comms_model' in data):
            data = data['comms_model'] or {}
            if (not isinstance(data, Mapping)):
                log.warning("CONFIG: comms_model block must be a mapping, "
                            "got %s; using defaults", type(data).__name__)
                return cls()

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _attrName(str(key))
            if (name not in known):
                log.warning("CONFIG: unknown comms_model parameter '%s' "
                            "ignored", key)
                continue
            kwargs[name] = value
        return cls(**kwargs)

###############################################################################

@dataclass
class SearchArea:
    """
    Search area boundaries in absolute degrees.

    All four bounds are 0.0 when the area is undefined.
    """

    minLatitude: float = 0.0
    maxLatitude: float = 0.0
    minLongitude: float = 0.0
    maxLongitude: float = 0.0
    defined: bool = field(default=False, compare=False)

    def contains(self, latitude:float, longitude:float)->bool:
        """True if the point lies inside a defined search area."""
        return (self.defined and
                (self.minLatitude <= latitude <= self.maxLatitude) and
                (self.minLongitude <= longitude <= self.maxLongitude))

###############################################################################

def loadSearchArea(robotDesc:Optional[Mapping[str, Any]],
                   worldDesc:Optional[Mapping[str, Any]],
                   )->SearchArea:
    """
    Build a robot's search area from its description and the world origin.

    Parameters
    ----------
    robotDesc : mapping, optional
        Robot description. Its ``swarm_search_area`` block must provide
        ``min_relative_latitude_deg``, ``max_relative_latitude_deg``,
        ``min_relative_longitude_deg`` and ``max_relative_longitude_deg``.
    worldDesc : mapping, optional
        World description. Its ``spherical_coordinates`` block must provide
        ``latitude_deg`` and ``longitude_deg``.

    Returns
    -------
    SearchArea
        Relative bounds offset by the world origin. Blocks that are missing
        or incomplete contribute zeros.

    Notes
    -----
    If either block is missing or incomplete a configuration warning is
    logged and the search area is flagged as undefined. The simulation
    continues.
    """

    area = SearchArea()
    relKeys = ('min_relative_latitude_deg', 'max_relative_latitude_deg',
               'min_relative_longitude_deg', 'max_relative_longitude_deg')
    originKeys = ('latitude_deg', 'longitude_deg')

    searchBlock = _block(robotDesc, 'swarm_search_area')
    foundSearchArea = _hasNumbers(searchBlock, relKeys)
    if (foundSearchArea):
        area.minLatitude = float(searchBlock['min_relative_latitude_deg'])
        area.maxLatitude = float(searchBlock['max_relative_latitude_deg'])
        area.minLongitude = float(searchBlock['min_relative_longitude_deg'])
        area.maxLongitude = float(searchBlock['max_relative_longitude_deg'])

    originBlock = _block(worldDesc, 'spherical_coordinates')
    foundOrigin = _hasNumbers(originBlock, originKeys)
    if (foundOrigin):
        lat = float(originBlock['latitude_deg'])
        lon = float(originBlock['longitude_deg'])
        area.minLatitude += lat
        area.maxLatitude += lat
        area.minLongitude += lon
        area.maxLongitude += lon

    if (not foundSearchArea or not foundOrigin):
        log.warning("CONFIG: no spherical_coordinates and/or "
                    "swarm_search_area found. Search area will be undefined.")
    else:
        area.defined = True

    return area

###############################################################################

def _attrName(key:str)->str:
    """Convert a snake_case element name to its camelCase attribute name."""
    if (key.lower() == 'mtu'):
        return 'MTU'
    if ('_' not in key):
        return key
    head, *rest = key.split('_')
    return head + ''.join(p[:1].upper() + p[1:] for p in rest)

def _block(desc:Optional[Mapping[str, Any]], name:str)->Dict[str, Any]:
    """Return the named sub-block of a description, or an empty dict."""
    if (not isinstance(desc, Mapping)):
        return {}
    block = desc.get(name)
    return block if isinstance(block, Mapping) else {}

def _hasNumbers(block:Mapping[str, Any], keys:tuple)->bool:
    """True if every key is present and parses as a float."""
    for k in keys:
        if (k not in block):
            return False
        try:
            float(block[k])
        except (TypeError, ValueError):
            return False
    return True
