"""
Logging configuration for swarm network simulations.

Central place where the simulation, module and communication loggers are
created and wired to shared handlers. Log records carry the current
simulation time so that network events can be lined up with simulation ticks.


Functions
---------
**Setup Functions:**

    setupMain(fileName, fileFormat, fileLevel, outFormat, outLevel)
        Configure and return the main simulation logger.
    setupComm(name, fileName, file, out)
        Configure and return the communication logger.

**Logger Management:**

    addLog(name)
        Create module logger that shares the main logger handlers.
    noneLog(name)
        Strip a logger down to warnings on stderr.
    removeLog(name)
        Remove logger and close the handlers only it was using.

**Handler Management:**

    addMainHandlers(subLog)
        Attach the main console and file handlers to another logger.
    removeHandlers(name)
        Detach every handler of a logger, closing unshared ones.
    closeHandler(handler)
        Close handler and clear the module level reference to it.
    deepRemoveHandler(handler)
        Detach handler from every logger and close it.

**Custom Features:**

    customRecordFactory(args, kwargs)
        Add the simTime field to every log record.
    CustomFormatter
        Bracket function names and keep the prefix on multi-line messages.


Global Variables
----------------
log : logging.Logger
    Main simulation logger, None until setupMain() is called.
consoleHandler : logging.StreamHandler
    Console handler shared by the main, module and comms loggers.
fileHandler : logging.FileHandler
    File handler shared by the main and module loggers.
simTime : str
    Simulation time stamped on each record. The Simulator assigns it at the
    start of every tick.


Notes
-----
Module loggers created with addLog() are recorded in a registry and receive
the main handlers every time setupMain() builds them. This lets every module
create its logger at import time, and lets the Simulator rebuild the main
handlers without orphaning module loggers.
"""

from typing import Optional
from datetime import datetime
import logging
import os

#-----------------------------------------------------------------------------#

# Logging levels
DEBUG = logging.DEBUG           # 10
INFO = logging.INFO             # 20
WARNING = logging.WARNING       # 30
ERROR = logging.ERROR           # 40
CRITICAL = logging.CRITICAL     # 50

# Log record component formats
SIMTIME = '%(simTime)8s'
DATETIME = '%(asctime)s'
NAME  = '%(name)-8s'
LEVEL = '%(levelname)-7s'
FUNCTION = '%(funcName)s'
MESSAGE = '%(message)s'

# Delimiter strings
CS = ' : '      # Colon with spaces
RAB = '>'       # Right angle bracket
P = '|'         # Pipe
S = ' '         # Space

# Formatting strings
FMT_DATE = '%M:%S'
FMT_OUT = P+SIMTIME+P+S+NAME+CS+LEVEL+S+RAB+S+MESSAGE
FMT_FILE = P+SIMTIME+S+DATETIME+P+S+NAME+S+LEVEL+S+FUNCTION+CS+MESSAGE

# Logger names
MAIN_LOG = 'swarmsim'
COMM_LOG = 'comms'

# Global variables -----------------------------------------------------------#

# Main logger and main handlers
log = None
consoleHandler = None
fileHandler = None

# Module loggers sharing the main handlers
subLogs = []

# Custom logging
oldFactory = logging.getLogRecordFactory()  # Cache for original record factory
simTime = '0.00'                            # Initial value of custom field

###############################################################################

class CustomFormatter(logging.Formatter):
    """
    Log formatter with bracketed function names and multi-line support.

    Function names are wrapped as ``[funcName]`` and padded to a fixed width.
    When a message spans several lines, the record prefix is repeated on each
    line so reports (such as the broker statistics) stay aligned in the file.
    """

    def format(self, record:logging.LogRecord)->str:
        """Format the record, repeating the prefix after each newline."""

        # Bracket the function name once per record
        if not (record.funcName.startswith("[")):
            func = f"[{record.funcName}]"
            record.funcName = f"{func:19}"

        newline = '\n'
        if (isinstance(record.msg, str) and (newline in record.msg)):
            # Work on a copy so other handlers see the original record
            record = logging.makeLogRecord(record.__dict__)
            prefixFmt, _, _ = self._fmt.partition(MESSAGE)
            if (DATETIME in prefixFmt):
                record.asctime = self.formatTime(record, self.datefmt)
            prefix = prefixFmt % record.__dict__
            record.msg = (newline + prefix).join(record.msg.split(newline))

        return super().format(record)

###############################################################################

def customRecordFactory(*args, **kwargs)->logging.LogRecord:
    """
    Create log record carrying the current simulation time.

    Notes
    -----
    Installed by setupMain() via logging.setLogRecordFactory(). The value is
    read from the module global simTime at record creation.
    """

    record = oldFactory(*args, **kwargs)
    record.simTime = simTime
    return record

###############################################################################

def addMainHandlers(subLog:logging.Logger)->None:
    """
    Attach the main console and file handlers to a sublevel logger.

    Parameters
    ----------
    subLog : logging.Logger
        Logger to receive the handlers. Missing handlers are skipped.
    """

    if (consoleHandler is not None):
        subLog.addHandler(consoleHandler)
    if (fileHandler is not None):
        subLog.addHandler(fileHandler)
    subLog.debug('%s logger activated', subLog.name)

###############################################################################

def setupMain(fileName:Optional[str] = MAIN_LOG+'.log',
              fileFormat:Optional[str] = FMT_FILE,
              fileLevel:int = DEBUG,
              outFormat:Optional[str] = FMT_OUT,
              outLevel:int = INFO,
              )->logging.Logger:
    """
    Configure and return the main simulation logger.

    Parameters
    ----------
    fileName : str, default='swarmsim.log'
        Log file name.
    fileFormat : str, optional
        Format string for the file handler. None disables file output.
    fileLevel : int, default=DEBUG
        Minimum level written to file.
    outFormat : str, optional
        Format string for the console handler. None disables console output.
    outLevel : int, default=INFO
        Minimum level written to console.

    Returns
    -------
    log : logging.Logger
        Main logger.

    Notes
    -----
    - Installs the simTime record factory.
    - Every registered module logger receives the main handlers.
    - Calling again while the main logger exists returns it unchanged.
    """

    global log, consoleHandler, fileHandler

    if (log is None):

        logging.setLogRecordFactory(customRecordFactory)
        log = logging.getLogger(MAIN_LOG)
        log.setLevel(DEBUG)

        # Console
        if (outFormat is not None):
            if (consoleHandler is None):
                consoleHandler = logging.StreamHandler()
                consoleHandler.set_name('Console handler')
                consoleHandler.setLevel(outLevel)
                consoleHandler.setFormatter(CustomFormatter(outFormat))
            log.addHandler(consoleHandler)
            log.info('Console logging started')

        # File
        if (fileFormat is not None):
            if (fileHandler is None):
                fileHandler = logging.FileHandler(fileName)
                fileHandler.set_name('File handler')
                fileHandler.setLevel(fileLevel)
                fileHandler.setFormatter(CustomFormatter(fileFormat,
                                                         FMT_DATE))
            log.addHandler(fileHandler)
            start = datetime.now().strftime("%m/%d/%Y %H:%M:%S")
            log.info('File logging started at %s in %s',
                     start, os.path.basename(fileName))

        for name in subLogs:
            addMainHandlers(logging.getLogger(name))

    return log

###############################################################################

def addLog(name:str)->logging.Logger:
    """
    Create a module logger that shares the main logger handlers.

    Parameters
    ----------
    name : str
        Logger name.

    Returns
    -------
    logger : logging.Logger
        New or existing logger.

    Notes
    -----
    The name is recorded in subLogs. If the main logger does not exist yet
    the handlers are attached later by setupMain().
    """

    if (name in logging.Logger.manager.loggerDict):
        return logging.getLogger(name)

    thisLog = logging.getLogger(name)
    thisLog.setLevel(DEBUG)
    subLogs.append(name)
    if (log is not None):
        addMainHandlers(thisLog)
    return thisLog

###############################################################################

def noneLog(name:str)->logging.Logger:
    """
    Create or reduce a logger to no handlers at WARNING level.

    Parameters
    ----------
    name : str
        Logger name.

    Returns
    -------
    logger : logging.Logger
        Logger whose warnings fall through to the logging last resort
        (stderr).
    """

    global log

    thisLog = logging.getLogger(name)
    thisLog.setLevel(WARNING)

    if (thisLog.hasHandlers()):
        if (thisLog is log):
            while thisLog.handlers:
                deepRemoveHandler(thisLog.handlers[0])
        else:
            removeHandlers(name)

    if (name == MAIN_LOG):
        log = thisLog

    return thisLog

###############################################################################

def closeHandler(handler:logging.Handler)->None:
    """Close handler, dropping the global reference if it is a main one."""

    global consoleHandler, fileHandler

    handler.close()
    if (handler is consoleHandler):
        consoleHandler = None
    elif (handler is fileHandler):
        fileHandler = None

###############################################################################

def removeHandlers(name:str)->None:
    """
    Detach every handler from a logger, closing handlers no one else uses.

    Parameters
    ----------
    name : str
        Logger name.
    """

    thisLog = logging.getLogger(name)

    while thisLog.handlers:
        handler = thisLog.handlers[0]
        thisLog.removeHandler(handler)

        shared = any(
            (isinstance(other, logging.Logger) and
             (handler in other.handlers))
            for other in logging.Logger.manager.loggerDict.values()
        )
        if (not shared):
            closeHandler(handler)

###############################################################################

def deepRemoveHandler(handler:logging.Handler)->None:
    """
    Detach a handler from all registered loggers and close it.

    Parameters
    ----------
    handler : logging.Handler
        Handler to remove.
    """

    for thisLog in logging.Logger.manager.loggerDict.values():
        if (isinstance(thisLog, logging.Logger) and
            (handler in thisLog.handlers)):
            thisLog.removeHandler(handler)
    closeHandler(handler)

###############################################################################

def removeLog(name:str)->None:
    """
    Remove a logger and close the handlers only it was using.

    Parameters
    ----------
    name : str
        Logger name.

    Notes
    -----
    Removing the main logger resets the module global so setupMain() can
    build it again.
    """

    global log

    thisLog = logging.getLogger(name)
    removeHandlers(name)
    logging.Logger.manager.loggerDict.pop(name, None)
    if (name in subLogs):
        subLogs.remove(name)
    if (thisLog is log):
        log = None

###############################################################################

def setupComm(name:str = COMM_LOG,
              fileName:Optional[str] = COMM_LOG+'.log',
              file:bool = True,
              out:bool = True,
              )->logging.Logger:
    """
    Configure and return the communication logger.

    Parameters
    ----------
    name : str, default='comms'
        Logger name.
    fileName : str, default='comms.log'
        File for comms records when file is True.
    file : bool, default=True
        Write comms records to their own file instead of the main log file.
    out : bool, default=True
        Echo comms records to the main console handler.

    Returns
    -------
    commLog : logging.Logger
        Communication logger.

    Notes
    -----
    - Console echo needs the main console handler; with the main console off
      nothing is printed even if out is True.
    - With a dedicated comms file, comms records are kept out of the main log
      file.
    """

    commLog = logging.getLogger(name)
    commLog.setLevel(DEBUG)

    if ((out) and (consoleHandler is not None)):
        commLog.addHandler(consoleHandler)

    if (file):
        commFileHandler = logging.FileHandler(fileName)
        commFileHandler.set_name('Comms file handler')
        if (fileHandler is not None):
            commFileHandler.setLevel(fileHandler.level)
        else:
            commFileHandler.setLevel(DEBUG)
        commFileHandler.setFormatter(CustomFormatter(FMT_FILE, FMT_DATE))
        commLog.addHandler(commFileHandler)
        start = datetime.now().strftime("%m/%d/%Y %H:%M:%S")
        commLog.info('Comms file logging started at %s in %s',
                     start, os.path.basename(fileName))
    elif (fileHandler is not None):
        commLog.addHandler(fileHandler)

    commLog.debug('%s logger activated', name)
    return commLog

###############################################################################
