"""
Core simulation driver for swarm network scenarios.

Provides the Simulator class, which steps a shared clock over a world, a list
of robots, a communication model and a message broker, records per-tick
delivery counts and reports network statistics.


Classes
-------
Simulator
    Main simulation orchestrator for swarm network scenarios.


Functions
---------
save(simulation, filename, format)
    Save Simulator object to file (pickle format).
load(filename, format)
    Load Simulator object from file.


Notes
-----
Each tick runs, in order:

1. logger.simTime is set to the tick time.
2. CommsModel.update(t) refreshes positions and, once per update interval,
   outages, visibility and neighbors.
3. Every robot's update(t) runs (motion and sending).
4. CommsModel.refreshPositions() reads the positions after the move.
5. Broker.deliver(t) routes the datagrams sent during the tick. Range and
   drop probability use the new positions; neighbor sets are the ones from
   the last recomputation.

Each call to simulate() starts the clocks of the communication model and the
robots again from the first tick, so a second run carries no stale times.
"""

from typing import List, Optional
from numpy.typing import NDArray
from logging import Logger
import os
import importlib
import inspect
import time
import datetime
import pickle
import matplotlib.pyplot as plt
import numpy as np
from swarmnetsim import commsmodel as cm
from swarmnetsim import communication as comm
from swarmnetsim import environment as env
from swarmnetsim import plotNetwork as pltNet
from swarmnetsim import robots as rob
from swarmnetsim.config import CommsConfig
from swarmnetsim import logger

#-----------------------------------------------------------------------------#

# Type Aliases
NPFltArr = NDArray[np.float64]

# Global Variables
log = logger.addLog('sim')

###############################################################################

class Simulator:
    """
    Main simulation coordinator for swarm network scenarios.

    Attributes
    ----------
    name : str
        Simulation title. Set once at initialization.
    sampleTime : float
        Time step per iteration (s).
    N : int
        Number of iterations. The loop runs N+1 ticks, from 0 to runTime.
    runTime : float
        Total simulated time (s). Setting it recomputes N.
    simTime : ndarray, shape (N+1, 1)
        Tick times.
    world : World
        Obstacles and robot positions.
    robots : list of Robot
        Swarm members.
    config : CommsConfig
        Communication model parameters.
    commsModel : CommsModel
        Outage, visibility and neighbor state.
    broker : Broker
        Datagram router.
    history : ndarray, shape (N+1, 3) or None
        Rows of [time, recipients evaluated, copies delivered] after a run.
    plotting : bool
        If True, run() saves the network plots to the output directory.
    showPlots : bool
        If True, run() also shows the plots.
    outputRoot : str or None
        Parent directory of the output folder. Defaults to
        <project>/outputs/<script name>.
    logging : str
        Main logger configuration.
    commLogging : str
        Communication logger configuration.

    Methods
    -------
    run()
        Simulate, log the statistics and plot.
    simulate()
        Run the tick loop and return the delivery history.
    logCommStats()
        Log the broker statistics report.
    plot()
        Draw the neighbor graph and delivery rate.

    Notes
    -----
    The output directory outputs/<script_name>/<name>_<timestamp>/ is only
    created when a file needs to be written (log files, plots, saves), so a
    simulation run with logging='none', commLogging='none' and plotting=False
    leaves nothing on disk.

    Examples
    --------
    >>> import swarmnetsim as sn
    >>> world = sn.environment.World()
    >>> robots = sn.robots.buildSwarm(2, world, sn.robots.TeamController)
    >>> sim = sn.Simulator(name='pair', sampleTime=0.1, N=100,
    ...                    world=world, robots=robots, seed=1,
    ...                    config=sn.config.CommsConfig())
    >>> sim.run()
    """

    ## Constructor ===========================================================#
    def __init__(self,
                 name:str = 'Simulation',
                 sampleTime:float = 0.1,
                 N:int = 1000,
                 world:Optional[env.World] = None,
                 robots:Optional[List[rob.Robot]] = None,
                 config:Optional[CommsConfig] = None,
                 seed:Optional[int] = None,
                 logging:str = 'all',
                 commLogging:str = 'all',
                 **kwargs,
                 )->None:
        """
        Initialize Simulator with time parameters, world and robots.

        Parameters
        ----------
        name : str
            Simulation title.
        sampleTime : float
            Time step per iteration in seconds.
        N : int
            Number of simulation iterations.
        world : World, optional
            Obstacle world. An open field is used when omitted.
        robots : list of Robot, optional
            Swarm members.
        config : CommsConfig, optional
            Communication model parameters.
        seed : int, optional
            Seed of the communication model random generator.
        logging : str
            Main logger configuration.
        commLogging : str
            Communication logger configuration.
        **kwargs
            Additional attributes to set on simulator.
        """

        ## Time Stamp
        init_time = datetime.datetime.now()
        self.initTime = init_time.strftime("%y%m%d-%H%M%S")

        ## Data
        self.history = None                         # delivery history
        self.simTime = None                         # simulation times array

        ## Output
        self.outputRoot = None                      # output parent directory
        self.plotting = True                        # save plots in run()
        self.showPlots = True                       # show plots in run()

        ## Simulation
        self.name = name                            # simulation title
        self.sampleTime = sampleTime                # iteration time step (sec)
        self.N = N                                  # number of iterations

        ## User Keyword Attributes
        for key,value in kwargs.items():
            if key not in {                         # computed attributes
                'simTime',
                'history',
            }:
                setattr(self, key, value)

        ## Logging
        self.log = None                             # main logger
        self.logging = logging                      # logging setting
        self.commLogging = commLogging              # comms logging setting

        ## Network
        self.world = world if (world is not None) else env.World.open_field()
        self.robots = list(robots) if (robots) else []
        self.config = config if (config is not None) else CommsConfig()
        self.seed = seed
        self._buildNetwork()

    ## Properties ============================================================#
    @property
    def name(self)->str:
        """Get simulation name."""
        return self._name

    @name.setter
    def name(self, name:str)->None:
        """Set the simulation name. Can only be set at initialization."""
        if ('_name' in self.__dict__):
            log.warning("Cannot rename simulation. Attribute must be " +
                        "set at initialization.")
            return
        self._baseName = f"{name}_{self.initTime}"
        self._name = name

    #--------------------------------------------------------------------------
    @property
    def sampleTime(self)->float:
        """Get simulation iteration time step in seconds."""
        return self._sampleTime

    @sampleTime.setter
    def sampleTime(self, h:float)->None:
        """Set simulation time step. Recomputes simTime if N is set."""
        if (h <= 0):
            msg = "sampleTime must be greater than zero"
            log.critical(msg)
            raise ValueError(msg)
        self._sampleTime = h
        if ('_N' in self.__dict__):
            self.N = self.N

    #--------------------------------------------------------------------------
    @property
    def N(self)->int:
        """Get number of simulation iterations."""
        return self._N

    @N.setter
    def N(self, n:int)->None:
        """Set number of iterations and compute the time array."""
        if (n < 0):
            msg = "N must not be negative"
            log.critical(msg)
            raise ValueError(msg)
        self._N = int(n)
        self.simTime = (np.arange(self._N + 1) * self.sampleTime)[:, None]
        self._runTime = self.simTime[-1][0]

    #--------------------------------------------------------------------------
    @property
    def runTime(self)->float:
        """Get total simulation time in seconds."""
        return self._runTime

    @runTime.setter
    def runTime(self, n:float)->None:
        """Set total simulation time. Indirectly calls N.setter."""
        self.N = int(round(n / self.sampleTime))

    #--------------------------------------------------------------------------
    @property
    def nRobots(self)->int:
        """Get number of robots in simulation."""
        return len(self.robots)

    #--------------------------------------------------------------------------
    @property
    def outDir(self)->str:
        """Get output directory path, creating it on first use."""
        if ('_outDir' not in self.__dict__):
            self._outDir = self._makeSaveDir(self._baseName)
        return self._outDir

    @outDir.setter
    def outDir(self, outDir:str)->None:
        """Attempt to set the output directory for the simulation."""
        log.warning("Cannot set output directory directly. Attribute is " +
                    "set by the 'name' and 'outputRoot' attributes.")

    #--------------------------------------------------------------------------
    @property
    def saveFile(self)->str:
        """Get save file path."""
        return os.path.join(self.outDir, self._baseName)

    #--------------------------------------------------------------------------
    @property
    def logFile(self)->str:
        """Get main log file path."""
        if ('_logFile' not in self.__dict__):
            self._logFile = f"{self.saveFile}.log"
        return self._logFile

    @logFile.setter
    def logFile(self, logFile:str)->None:
        """Set main log file path. Can only be set at initialization."""
        if ('_logFile' in self.__dict__):
            log.warning("Cannot rename log file. Attribute must be set " +
                        "at initialization.")
            return
        self._logFile = self._validFileName(logFile, '.log')

    #--------------------------------------------------------------------------
    @property
    def commFile(self)->str:
        """Get communication log file path."""
        if ('_commFile' not in self.__dict__):
            self._commFile = f"{self.saveFile}_comm.log"
        return self._commFile

    @commFile.setter
    def commFile(self, commFile:str)->None:
        """Set communication log file path. Can only set at initialization."""
        if ('_commFile' in self.__dict__):
            log.warning("Cannot rename comm log file. Attribute must be " +
                        "set at initialization.")
            return
        self._commFile = self._validFileName(commFile, '.log')

    #--------------------------------------------------------------------------
    @property
    def logging(self)->str:
        """Get main logger configuration."""
        return self._logging

    @logging.setter
    def logging(self, logging:str)->None:
        """
        Set main logger configuration.

        Parameters
        ----------
        logging : str
            'all', 'none', 'noout', 'nofile', 'quiet', 'onlyfile',
            'onlyconsole'.
        """

        def setNoneLog()->None:
            """Set the main logger to no logging"""
            self.log = logger.noneLog(logger.MAIN_LOG)

        def setNoConsoleLog()->None:
            """Set the main logger to no console logging"""
            if (logger.consoleHandler is not None):
                logger.deepRemoveHandler(logger.consoleHandler)
            if (logger.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileName=self.logFile, outFormat=None)

        def setNoFileLog()->None:
            """Set the main logger to no file logging"""
            if (logger.fileHandler is not None):
                logger.deepRemoveHandler(logger.fileHandler)
            if (logger.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileFormat=None)

        def setDefaultLog()->None:
            """Set the main logger to default logging to console and file"""
            if (logger.log is not None):
                logger.removeLog(logger.MAIN_LOG)
            self.log = logger.setupMain(fileName=self.logFile)

        # Map the logging settings to logging setter functions
        logSettings = {
            # No logging
            'NONE': setNoneLog,
            'OFF': setNoneLog,
            # No console logging
            'NOOUT': setNoConsoleLog,
            'QUIET': setNoConsoleLog,
            'NOCONSOLE': setNoConsoleLog,
            'ONLYFILE': setNoConsoleLog,
            # No file logging
            'NOFILE': setNoFileLog,
            'ONLYOUT': setNoFileLog,
            'ONLYCONSOLE': setNoFileLog,
        }

        # Set the logging settings
        configLog = logSettings.get(logging.upper(), setDefaultLog)
        configLog()
        self._logging = logging

    #--------------------------------------------------------------------------
    @property
    def commLogging(self)->str:
        """Get communication logger configuration."""
        return self._commLogging

    @commLogging.setter
    def commLogging(self, commLogging:str)->None:
        """
        Set communication logger configuration.

        Parameters
        ----------
        commLogging : str
            'all', 'none', 'noout', 'nofile', 'quiet', 'noconsole'.

        Notes
        -----
        The comms logger is shared by the communication model and the broker.
        Its handlers are rebuilt on every assignment.
        """

        logger.removeHandlers(logger.COMM_LOG)

        def setNoneComm()->Logger:
            """Set the comm logger to no logging"""
            return logger.setupComm(file=False, out=False)

        def setNoConsoleComm()->Logger:
            """Set the comm logger to no console logging"""
            return logger.setupComm(fileName=self.commFile, out=False)

        def setNoFileComm()->Logger:
            """Set the comm logger to no unique file logging"""
            return logger.setupComm(file=False)

        def setDefaultComm()->Logger:
            """Set the comm logger to default logging"""
            return logger.setupComm(fileName=self.commFile)

        # Map the comm logging settings to comm log setting functions
        commSettings = {
            # No console or unique file logging
            'NONE': setNoneComm,
            'OFF': setNoneComm,
            # No console logging
            'NOOUT': setNoConsoleComm,
            'QUIET': setNoConsoleComm,
            'NOCONSOLE': setNoConsoleComm,
            # No unique file logging
            'NOFILE': setNoFileComm,
        }

        # Set the comm logging settings
        configCommLog = commSettings.get(commLogging.upper(), setDefaultComm)
        comm.log = cm.log = configCommLog()
        self._commLogging = commLogging

    ## Special Methods =======================================================#
    def __str__(self)->str:
        """
        Return user-friendly string representation of simulator configuration.
        """
        line = '*' * 64
        robotOut = ["Robots: "]
        if (self.robots):
            typeNames = [type(r).__name__ for r in self.robots]
            typeCounts = {t:typeNames.count(t) for t in sorted(set(typeNames))}
            robotOut.extend(f"({num}) {t}" for t,num in typeCounts.items())
        else:
            robotOut.append("None")

        return "\n".join([
            line,
            f"{self.__class__.__name__}: {self.name}",
            line,
            f"Sampling frequency: {round(1 / self.sampleTime)} Hz",
            f"Simulation time: {round(self.runTime)} seconds",
            f"{self.commsModel}",
            f"{self.world}",
            *robotOut,
            line,
        ])

    ## Methods ===============================================================#
    def run(self)->None:
        """
        Execute complete simulation workflow: run, log statistics, plot.

        Notes
        -----
        Workflow:

        1. Execute simulation loop, calls simulate()
        2. Log network statistics, calls logCommStats()
        3. Save network plots if plotting is enabled, calls plot()
        4. Display total execution time
        """

        self.log.info(f"{self}")
        start = time.time()
        self.history = self.simulate()
        runTime = round(self.runTime)
        endData = round(time.time()-start)
        line = '*' * 64
        self.log.info(line)
        self.log.info(f'Run Time:'+
                      f' (Real) {datetime.timedelta(seconds=endData)},'+
                      f' (Simulated) {datetime.timedelta(seconds=runTime)}')
        self.logCommStats()

        if (self.plotting):
            self.plot()
            if (self.showPlots):
                plt.show()
            plt.close('all')

        endTotal = round(time.time()-start)
        self.log.info(f'Total Time: {datetime.timedelta(seconds=endTotal)}')
        self.log.info(line)

    #--------------------------------------------------------------------------
    def simulate(self)->NPFltArr:
        """
        Execute the simulation tick loop.

        Returns
        -------
        history : ndarray, shape (N+1, 3)
            Rows of [time, recipients evaluated, copies delivered] per tick.
        """

        history = np.zeros((self.N+1, 3))

        # Restart Clocks From a Previous Run
        self.commsModel.lastUpdateTime = None
        for r in self.robots:
            r.lastTime = None

        # Start Simulation Loop
        for i in range(0, self.N+1):
            # Simulation time
            currentTime = self.simTime[i][0]
            logger.simTime = f'{currentTime:.2f}'

            # Update Communication Model
            self.commsModel.update(currentTime)

            # Advance Robots
            for r in self.robots:
                r.update(currentTime)
            self.commsModel.refreshPositions()

            # Deliver Messages Sent This Tick
            evaluated, delivered = self.broker.deliver(currentTime)
            history[i] = (currentTime, evaluated, delivered)

        self.history = history
        return history

    #--------------------------------------------------------------------------
    def logCommStats(self)->None:
        """Log the broker network performance statistics report."""
        self.log.info(self.broker.getStatsReport())
        self.log.info("")

    #--------------------------------------------------------------------------
    def plot(self)->None:
        """
        Save the neighbor graph and delivery rate plots to the output folder.
        """

        pltNet.plotNeighborGraph(self.world, self.robots, self.commsModel,
                                 filename=f"{self.saveFile}_neighbors.png")
        if (self.history is not None):
            pltNet.plotDeliveryRate(self.history,
                                    filename=f"{self.saveFile}_delivery.png")

    ## Helper Methods ========================================================#
    def _buildNetwork(self)->None:
        """Place robots in the world, build the comms model and the broker."""

        swarm = {}
        for r in self.robots:
            if (r.address in swarm):
                msg = f"Duplicate robot address {r.address}"
                log.critical(msg)
                raise ValueError(msg)
            if (getattr(r, 'world', None) is None):
                r.world = self.world
            self.world.setPosition(r.address, r.position)
            swarm[r.address] = r

        self.commsModel = cm.CommsModel(swarm, self.world, self.config,
                                        self.seed)
        self.seed = self.commsModel.seed
        self.broker = comm.Broker(self.commsModel)
        for r in self.robots:
            self.broker.register(r)

    #--------------------------------------------------------------------------
    def _makeSaveDir(self, dirName:str)->str:
        """
        Create and return output directory path for simulation files.

        Parameters
        ----------
        dirName : str
            Directory name for this simulation.

        Returns
        -------
        outDir : str
            Full path to created output directory.

        Notes
        -----
        - Creates directory structure: outputs/<script_name>/<dirName>/
          unless outputRoot is set, in which case <outputRoot>/<dirName>/.
        - Automatically detects calling script name.
        """

        if (self.outputRoot is not None):
            scriptOutDir = self.outputRoot
        else:
            # Get the project directory
            modulePath = inspect.getfile(importlib.import_module('swarmnetsim'))
            projDir = os.path.dirname(os.path.dirname(modulePath))

            # Get the user script name
            frame = inspect.currentframe()
            while frame.f_back:
                frame = frame.f_back
            if ('__file__' in frame.f_globals):
                scriptPath = os.path.abspath(frame.f_globals['__file__'])
                scriptName = os.path.splitext(os.path.basename(scriptPath))[0]
            else:
                scriptName = 'REPL'
            scriptOutDir = os.path.join(projDir, 'outputs', scriptName)

        # Create a unique subdirectory within the script output directory
        outDir = os.path.join(scriptOutDir, dirName)
        os.makedirs(outDir, exist_ok=True)
        return outDir

    #--------------------------------------------------------------------------
    def _validFileName(self, fileName:str, extension:str)->str:
        """Force the extension and place bare names in the output folder."""
        root, ext = os.path.splitext(fileName)
        if (ext != extension):
            fileName = f"{root}{extension}"
        if not (os.path.dirname(fileName)):
            fileName = os.path.join(self.outDir, fileName)
        return fileName

###############################################################################

def save(simulation:Simulator,
         filename:Optional[str] = None,
         format:str = 'pickle',
         )->Optional[str]:
    """
    Save Simulator object to file.

    Parameters
    ----------
    simulation : Simulator
        Simulator object to save.
    filename : str, optional
        Output filename (default: simulation.saveFile).
    format : {'pickle', 'pkl'}
        Save format (default: 'pickle').

    Returns
    -------
    path : str or None
        Path of the written file, None if the format is unknown.

    Notes
    -----
    Saves to simulation.outDir if filename has no directory. Robot neighbor
    locks and the broker queue lock are recreated when loading.
    """

    pickleExts = ['pickle', 'pkl']

    # Determine filename and path
    if (filename is None):
        filename = simulation.saveFile
    elif not (os.path.dirname(filename)):
        filename = os.path.join(simulation.outDir, filename)

    # Check filename for extension and remove if it is a save format
    root, ext = os.path.splitext(filename)
    if (ext[1:].lower() in pickleExts):
        filename = root
    baseName = os.path.basename(filename)

    if (format.lower() not in pickleExts):
        simulation.log.error(f"simulator.save(): Unknown format: '{format}'.")
        return None

    path = f"{filename}.pickle"
    with open(path, "wb") as f:
        pickle.dump(simulation, f, pickle.HIGHEST_PROTOCOL)
    simulation.log.info(f"Saved Simulator object as: '{baseName}.pickle'.")
    return path

###############################################################################

def load(filename:str,
         format:Optional[str] = None,
         )->Optional[Simulator]:
    """
    Load Simulator object from file.

    Parameters
    ----------
    filename : str
        Path to saved simulator file.
    format : str, optional
        File format. Auto-detected from extension if None.

    Returns
    -------
    simulation : Simulator
        Loaded Simulator object, or None if the format is not recognized.
    """

    pickleExts = ['pickle', 'pkl']

    if (format is None):
        _, ext = os.path.splitext(filename)
        format = ext[1:]

    if (format.lower() not in pickleExts):
        log.error("simulator.load(): Unknown format for '%s'.",
                  os.path.basename(filename))
        return None

    with open(filename, 'rb') as f:
        return pickle.load(f)
