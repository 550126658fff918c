"""
Visualization functions for swarm network simulation data.

Draws the obstacle world with robot positions and current neighbor links, and
the per-tick delivery rate recorded by the Simulator.


Functions
---------
plotNeighborGraph(world, robots, commsModel, figNo, filename)
    Top view of obstacles, robots and neighbor links.
plotDeliveryRate(history, figNo, filename)
    Delivery rate and traffic per tick against simulation time.


Utility Functions
-----------------
cm2inch(value)
    Convert centimeters to inches for figure sizing.


Notes
-----
Default plot parameters (figure size, DPI, legend size) are defined as
module-level globals and can be modified before calling plot functions.
Both plot functions return the Figure and leave showing or closing it to the
caller.
"""

from typing import Optional, Sequence
from numpy.typing import NDArray
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from matplotlib.patches import Circle, Rectangle
import numpy as np
from swarmnetsim.commsmodel import CommsModel
from swarmnetsim.environment import Building, Tree, World
from swarmnetsim.robots import Robot
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Global Variables
log = logger.addLog('pltNet')

# Plot Parameters
legendSize = 10         # legend size
figSize1 = [20, 20]     # neighbor graph size in cm
figSize2 = [25, 13]     # delivery rate size in cm
dpiValue = 150          # figure dpi value

###############################################################################

def cm2inch(value:float)->float:
    """Convert centimeters to inches for matplotlib figure sizing."""
    return value / 2.54

###############################################################################

def plotNeighborGraph(world:World,
                      robots:Sequence[Robot],
                      commsModel:CommsModel,
                      figNo:Optional[int] = None,
                      filename:Optional[str] = None,
                      )->Figure:
    """
    Plot a top view of the world with robots and neighbor links.

    Parameters
    ----------
    world : World
        World whose obstacles are drawn.
    robots : sequence of Robot
        Robots to draw.
    commsModel : CommsModel
        Source of the neighbor links and outage state.
    figNo : int, optional
        Figure number used by Matplotlib for window reference.
    filename : str, optional
        If given, the figure is saved to this path.

    Returns
    -------
    fig : matplotlib.figure.Figure

    Notes
    -----
    Trees are drawn as green circles and buildings as grey rectangles.
    Robots in outage are drawn in red. Each neighbor pair is drawn once.
    """

    fig = plt.figure(figNo,
                     figsize=(cm2inch(figSize1[0]), cm2inch(figSize1[1])),
                     dpi=dpiValue)
    ax = fig.add_subplot(1, 1, 1)

    # Obstacles
    for obstacle in world.obstacles:
        if (isinstance(obstacle, Tree)):
            ax.add_patch(Circle((obstacle.x, obstacle.y), obstacle.radius,
                                color='forestgreen', alpha=0.6))
        elif (isinstance(obstacle, Building)):
            lo, hi = obstacle.lower, obstacle.upper
            ax.add_patch(Rectangle((lo[0], lo[1]), hi[0]-lo[0], hi[1]-lo[1],
                                   color='grey', alpha=0.6))

    # Neighbor links
    pos = {r.address: np.asarray(r.position) for r in robots}
    nLinks = 0
    for a in sorted(pos):
        for b in sorted(commsModel.neighbors(a)):
            if ((b <= a) or (b not in pos)):
                continue
            ax.plot([pos[a][0], pos[b][0]], [pos[a][1], pos[b][1]],
                    color='steelblue', linewidth=0.8, zorder=1)
            nLinks += 1

    # Robots
    for address, p in pos.items():
        color = 'red' if (commsModel.isInOutage(address)) else 'navy'
        ax.scatter(p[0], p[1], color=color, s=25, zorder=2)
        ax.annotate(address.split('.')[-1], (p[0], p[1]),
                    textcoords='offset points', xytext=(4, 4), fontsize=8)

    ax.set_aspect('equal', adjustable='datalim')
    ax.set_xlabel("X (m)", fontsize=12)
    ax.set_ylabel("Y (m)", fontsize=12)
    ax.set_title(f"Neighbor graph: {len(pos)} robots, {nLinks} links")
    ax.grid()

    if (filename is not None):
        fig.savefig(filename)
        log.info('Saved neighbor graph to %s', filename)
    return fig

###############################################################################

def plotDeliveryRate(history:NPFltArr,
                     figNo:Optional[int] = None,
                     filename:Optional[str] = None,
                     )->Figure:
    """
    Plot delivery rate and traffic against simulation time.

    Parameters
    ----------
    history : ndarray, shape (n, 3)
        Rows of [time, recipients evaluated, copies delivered], as returned
        by Simulator.simulate().
    figNo : int, optional
        Figure number used by Matplotlib for window reference.
    filename : str, optional
        If given, the figure is saved to this path.

    Returns
    -------
    fig : matplotlib.figure.Figure

    Notes
    -----
    Ticks where nothing was evaluated have no defined rate and are left as
    gaps in the rate curve.
    """

    history = np.asarray(history, dtype=np.float64).reshape(-1, 3)
    t = history[:, 0]
    evaluated = history[:, 1]
    delivered = history[:, 2]
    rate = np.full_like(t, np.nan)
    mask = evaluated > 0
    rate[mask] = delivered[mask] / evaluated[mask]

    fig = plt.figure(figNo,
                     figsize=(cm2inch(figSize2[0]), cm2inch(figSize2[1])),
                     dpi=dpiValue)

    ax1 = fig.add_subplot(2, 1, 1)
    ax1.plot(t, rate, marker='.', linestyle='-')
    ax1.set_ylim(-0.05, 1.05)
    ax1.legend(["Delivery rate"], fontsize=legendSize)
    ax1.grid()

    ax2 = fig.add_subplot(2, 1, 2)
    ax2.plot(t, evaluated, t, delivered)
    ax2.set_xlabel("Time (s)", fontsize=12)
    ax2.legend(["Recipients evaluated", "Delivered"], fontsize=legendSize)
    ax2.grid()

    if (filename is not None):
        fig.savefig(filename)
        log.info('Saved delivery rate plot to %s', filename)
    return fig
