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

# Submodule "executor": Tools for easily running model fits and bootstrap resamples sequentially or parallely

import os
import concurrent.futures as cofu

from . import log

logger = log.logger('pds.exr')


class ImmediateFuture(object):

    """Synchronous concurrent.futures.Future minimal and trivial implementation,
       for use with SequentialExecutor

       Like a real Future, any exception raised by the called function is kept
       and re-raised by result().
    """

    def __init__(self, func, *args, **kwargs):

        self._result = None
        self._exception = None
        try:
            self._result = func(*args, **kwargs)
        except Exception as exc:
            self._exception = exc

    def result(self, timeout=None):

        if self._exception is not None:
            raise self._exception
        return self._result

    def exception(self, timeout=None):

        return self._exception

    def cancel(self):

        return False

    def cancelled(self):

        return False

    def running(self):

        return False

    def done(self):

        return True


class SequentialExecutor(cofu.Executor):

    """Non-parallel concurrent.futures.Executor minimal implementation
    """

    def __init__(self):

        logger.info2('Started the SequentialExecutor.')

    def submit(self, func, *args, **kwargs):

        return ImmediateFuture(func, *args, **kwargs)  # Do it now !

    def map(self, func, *iterables, timeout=None, chunksize=1):

        return map(func, *iterables)  # Do it now !

    def shutdown(self, wait=True, cancel_futures=False):

        pass


class Executor(object):

    """Wrapper class for simpler concurrent.futures.Executor interface,
       access to added non-parallel SequentialExecutor, and cancellable task runs
    """

    # The only SequentialExecutor (only one needed)
    TheSeqExor = None

    def __init__(self, threads=None, processes=None, name_prefix='', mp_context=None):

        """Ctor

        Parameters:
        :param threads: Must be None or >= 0 ; 0 for auto-number (see expectedWorkers) ;
                        None for pure sequential calling (no actual parallelism) ;
                        if processes is not None, must be None (= unspecified)
        :param processes: Must be None or >= 0 ; 0 for auto-number (see expectedWorkers) ;
                          None for pure sequential calling (no actual parallelism) ;
                          if threads is not None, must be None (= unspecified)
        :param name_prefix: See concurrent module (only for multi-threading)
        :param mp_context: See concurrent module (only for multiprocessing)
        """

        assert (threads is None and (processes is None or processes >= 0)) \
               or (processes is None and (threads is None or threads >= 0)), \
               'An Executor can\'t implement multi-threading _and_ multi-processing at the same time'

        # Keep original parallelism (or not) specs for expectedWorkers().
        self.threads = threads
        self.processes = processes

        # Create / Get the actual executor object.
        if threads is not None:
            self.realExor = cofu.ThreadPoolExecutor(max_workers=threads or None, thread_name_prefix=name_prefix)
            logger.info1('Started a ThreadPoolExecutor(max_workers={})'.format(threads or 'None'))

        elif processes is not None:
            self.realExor = cofu.ProcessPoolExecutor(max_workers=processes or None, mp_context=mp_context)
            logger.info1('Started a ProcessPoolExecutor(max_workers={})'.format(processes or 'None'))

        else:
            if Executor.TheSeqExor is None:
                Executor.TheSeqExor = SequentialExecutor()
            self.realExor = Executor.TheSeqExor

    def expectedWorkers(self):

        """Theoretically expected number of thread/process workers,
        from the specified number of threads / processes (see concurrent.futures defaults)"""

        if self.threads is None:
            if self.processes is None:
                return 1
            return self.processes or os.cpu_count()

        return self.threads or min(32, os.cpu_count() + 4)

    def isParallel(self):

        return self.realExor is not self.TheSeqExor and self.expectedWorkers() > 1

    def isAsync(self):

        return self.realExor is not self.TheSeqExor

    def submit(self, func, *args, **kwargs):

        assert self.realExor is not None, 'Can\'t submit after shutdown'

        return self.realExor.submit(func, *args, **kwargs)

    def map(self, func, *iterables, timeout=None, chunksize=1):

        return self.realExor.map(func, *iterables, timeout=timeout, chunksize=chunksize)

    def asCompleted(self, futures):

        return iter(futures) if not self.isAsync() else cofu.as_completed(futures)

    def runTasks(self, func, tasks, cancel=None):

        """Run func(*task) for each task, possibly in parallel, and yield (task index, result)
        as soon as each one is completed (so: not in task order when parallel).

        Cancellation: if the cancel event (threading.Event like) gets set, no more task is submitted,
        not yet started ones are cancelled, and only already completed results are yielded
        (in-progress ones are waited for and yielded too, as they can't be interrupted).

        Parameters:
        :param func: the function to call
        :param tasks: iterable of argument tuples
        :param cancel: None, or an object with an is_set() method (like threading.Event)
        """

        cancelled = lambda: cancel is not None and cancel.is_set()

        dFutures = dict()
        for taskInd, args in enumerate(tasks):
            if cancelled():
                logger.info1(f'Cancelled: stopped submitting tasks after {taskInd}')
                break
            dFutures[self.submit(func, *args)] = taskInd

        for future in self.asCompleted(dFutures):
            if cancelled():
                for pending in dFutures:
                    pending.cancel()
            if future.cancelled():
                continue
            yield dFutures[future], future.result()

    def shutdown(self, wait=True):

        if self.realExor is not None and self.realExor is not self.TheSeqExor:
            logger.info2(self.realExor.__class__.__name__ + ' shut down.')
            self.realExor.shutdown(wait=wait)
        self.realExor = None
