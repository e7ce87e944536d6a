# coding: utf-8
# PyDiSam: Distance Sampling detection function and abundance estimation in Python

# Copyright (C) 2021 Jean-Philippe Meuret, Sylvain Sainnier

# This program is free software: you can redistribute it and/or modify it under the terms
# of the GNU General Public License as published by the Free Software Foundation,
# either version 3 of the License, or (at your option) any later version.
# This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY;
# without even the implied warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
# See the GNU General Public License for more details.
# You should have received a copy of the GNU General Public License along with this program.
# If not, see https://www.gnu.org/licenses/.

# Automated unit and integration tests for "executor" submodule

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import threading

import pytest

import pydisam as pds

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.exr', level=pds.DEBUG)

KWhat2Test = 'executor'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)


###############################################################################
#                                Test Cases                                   #
###############################################################################

def _square(x):
    return x * x


def _failIfOdd(x):
    if x % 2:
        raise ValueError(f'odd {x}')
    return x


def testSequentialExecutor():

    exor = pds.Executor()
    assert not exor.isAsync() and not exor.isParallel()
    assert exor.expectedWorkers() == 1

    # Only one sequential executor behind
    assert pds.Executor().realExor is exor.realExor

    fut = exor.submit(_square, 3)
    assert fut.done() and fut.result() == 9
    assert list(exor.map(_square, [1, 2, 3])) == [1, 4, 9]

    # Exceptions kept for result()
    fut = exor.submit(_failIfOdd, 1)
    assert isinstance(fut.exception(), ValueError)
    with pytest.raises(ValueError):
        fut.result()

    exor.shutdown()

    logger.info0('PASS testSequentialExecutor: submit, map, exception, shutdown')


@pytest.mark.parametrize('threads', [None, 3])
def testRunTasks(threads):

    exor = pds.Executor(threads=threads)
    assert exor.isAsync() == (threads is not None)

    results = dict(exor.runTasks(_square, [(x,) for x in range(10)]))
    assert results == {x: x * x for x in range(10)}

    exor.shutdown()

    logger.info0(f'PASS testRunTasks(threads={threads})')


def testRunTasksCancelled():

    exor = pds.Executor()
    cancel = threading.Event()

    # Set the cancel event from the 4th task on (sequential => in order)
    def task(x):
        if x >= 3:
            cancel.set()
        return x

    results = dict(exor.runTasks(task, [(x,) for x in range(10)], cancel=cancel))
    assert sorted(results) == [0, 1, 2, 3]

    # Already cancelled => nothing run
    assert dict(exor.runTasks(task, [(x,) for x in range(10)], cancel=cancel)) == dict()

    logger.info0('PASS testRunTasksCancelled')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
