# coding: utf-8

# PyDiSam: Distance Sampling detection function and abundance estimation in Python

# Copyright (C) 2021 Jean-Philippe Meuret

# This program is free software: you can redistribute it and/or modify it under the terms
# of the GNU General Public License as published by the Free Software Foundation,
# either version 3 of the License, or (at your option) any later version.
# This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY;
# without even the implied warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
# See the GNU General Public License for more details.
# You should have received a copy of the GNU General Public License along with this program.
# If not, see https://www.gnu.org/licenses/.

# Submodule "log": Thin wrapper above logging to get more debug and info levels, and easier configuration.

import sys
import pathlib as pl
import logging
from logging import NOTSET, DEBUG, INFO, WARNING, ERROR, CRITICAL


# Define new logging levels : <base>0 = <base>, then <base>N = <base> - N, for N in 1 .. 8
KNumSubLevels = 8

DEBUG0 = DEBUG
DEBUG1 = DEBUG - 1
DEBUG2 = DEBUG - 2
DEBUG3 = DEBUG - 3
DEBUG4 = DEBUG - 4
DEBUG5 = DEBUG - 5
DEBUG6 = DEBUG - 6
DEBUG7 = DEBUG - 7
DEBUG8 = DEBUG - 8

INFO0 = INFO
INFO1 = INFO - 1
INFO2 = INFO - 2
INFO3 = INFO - 3
INFO4 = INFO - 4
INFO5 = INFO - 5
INFO6 = INFO - 6
INFO7 = INFO - 7
INFO8 = INFO - 8

for _base, _baseName in [(DEBUG, 'DEBUG'), (INFO, 'INFO')]:
    for _sub in range(KNumSubLevels + 1):
        logging.addLevelName(_base - _sub, f'{_baseName}{_sub}')


def _levelMethod(level):

    """Build a Logger method logging at the given (new) level"""

    def logAtLevel(self, msg, *args, **kwargs):
        if self.isEnabledFor(level):
            self._log(level, msg, args, **kwargs)

    return logAtLevel


class Logger(logging.Logger):

    """A Logger class with methods associated to the new levels (info0 ... info8, debug0 ... debug8)
    """

    Configured = False

    def __init__(self, name):
        super().__init__(name)

    info0 = logging.Logger.info
    info1 = _levelMethod(INFO1)
    info2 = _levelMethod(INFO2)
    info3 = _levelMethod(INFO3)
    info4 = _levelMethod(INFO4)
    info5 = _levelMethod(INFO5)
    info6 = _levelMethod(INFO6)
    info7 = _levelMethod(INFO7)
    info8 = _levelMethod(INFO8)

    debug0 = logging.Logger.debug
    debug1 = _levelMethod(DEBUG1)
    debug2 = _levelMethod(DEBUG2)
    debug3 = _levelMethod(DEBUG3)
    debug4 = _levelMethod(DEBUG4)
    debug5 = _levelMethod(DEBUG5)
    debug6 = _levelMethod(DEBUG6)
    debug7 = _levelMethod(DEBUG7)
    debug8 = _levelMethod(DEBUG8)

    @staticmethod
    def _handlerId(hdlr):
        if isinstance(hdlr, pl.Path):
            hdlr = hdlr.as_posix()
        return 'File({})'.format(hdlr) if isinstance(hdlr, str) else 'Stream({})'.format(hdlr.name)

    @staticmethod
    def configure(loggers=[dict(name='pds', level=logging.INFO)],
                  level=NOTSET, handlers=[sys.stdout], fileMode='w', verbose=False,
                  format='%(asctime)s %(process)d %(name)s %(levelname)s\t%(message)s', reset=False):

        """Configure logging system, mainly the root logger (levels, handlers, formatter, ...)

        Parameters:
        :param loggers: if not None, list of dict(name, [level]) to apply
        :param level: for root only, see logging.Logger.setLevel
        :param handlers: a list of "handler specs" ; according to type,
            * str / pathlib.Path: logging.FileHandler for given file path-name
            * otherwise: StreamHandler (for sys.stdout and so on)
            * None or empty list => use currently configured ones for root logger
        :param fileMode: see logging.FileHandler ctor
        :param format: see logging.Handler.setFormatter
        :param verbose: if True, write a first INFO msg to the handlers' targets
        :param reset: if True, hard cleanup logger config. (useful in jupyter notebooks)
        """

        # Configure root logger only (children are assumed to have propagate=on):
        # multiple FileHandlers on children give intermixed / missing lines.
        root = logging.getLogger()

        if reset:
            while root.handlers:
                root.handlers.pop().close()

        formatter = logging.Formatter(format)
        for hdlr in handlers or []:
            if isinstance(hdlr, (str, pl.Path)):
                handler = logging.FileHandler(pl.Path(hdlr).as_posix(), mode=fileMode)
            else:
                handler = logging.StreamHandler(stream=hdlr)
            handler.setFormatter(formatter)
            root.addHandler(handler)

        if verbose:
            msg = 'Logging to {}'.format(', '.join(Logger._handlerId(hdlr) for hdlr in handlers))
            root.setLevel(INFO)
            root.info(msg)

        if not verbose or level != INFO:
            root.setLevel(level)

        # Configure children loggers.
        for logrCfg in loggers or []:
            logr = logging.getLogger(logrCfg['name'])
            if verbose:
                logr.info(msg)
            if 'level' in logrCfg:
                logr.setLevel(logrCfg['level'])

        Logger.Configured = True

    @staticmethod
    def logger(name, level=None, reset=False):

        """ Create, or retrieve, and eventually update the logger with given name.

        Parameters:
        :param name: name of the target logger (see logging.getLogger)
        :param level: if not None, level to set (see logging.Logger.setLevel)
        :param reset: if True, hard cleanup logger config. (useful in jupyter notebooks)
        """

        if not Logger.Configured:
            Logger.configure(level=INFO, reset=reset)

        logr = logging.getLogger(name)

        # Cleanup any default handler (ex: jupyter does some logging initialisation itself ...)
        if reset:
            while logr.handlers:
                logr.handlers.pop()

        if level is not None:
            logr.setLevel(level)

        return logr


logging.setLoggerClass(Logger)

configure = Logger.configure

logger = Logger.logger
