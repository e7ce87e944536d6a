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

# Automated unit and integration tests for "bootstrap" submodule

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import threading

import numpy as np

import pytest

import pydisam as pds

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.bst', level=pds.DEBUG,
                          otherLoggers={'pds': pds.INFO, 'pds.eng': pds.WARNING, 'pds.dat': pds.WARNING})

KWhat2Test = 'bootstrap'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)


###############################################################################
#                Test function and related tooling functions                  #
###############################################################################

def testBootstrapResults():

    bootRes = pds.BootstrapResults([10.0, 20.0, np.nan, 30.0, 40.0], nRequested=6, ciLevel=0.5, cancelled=True)
    assert bootRes.nDone == 5 and bootRes.nOk == 4 and bootRes.nFailed == 1
    assert bootRes.ci == pytest.approx((17.5, 32.5))

    sSum = bootRes.summary()
    assert sSum['Requested'] == 6 and sSum['Cancelled']
    assert sSum['Mean'] == pytest.approx(25.0)

    bootRes = pds.BootstrapResults([np.nan], nRequested=1)
    assert bootRes.ci is None and bootRes.nOk == 0
    assert np.isnan(bootRes.summary()['Low'])

    logger.info0('PASS testBootstrapResults')


@pytest.fixture(scope='module')
def lineFit_fxt():

    dfDets, dfSites = uivu.lineSurvey()
    dets = pds.DetectionDataSet(dfDets)
    sites = pds.SiteDataSet(dfSites)
    dfunc = pds.CDSEngine().estimate(dets, wHi=100)
    assert dfunc.success()

    return dfunc, dets, sites


def testAbundEstimCI(lineFit_fxt):

    dfunc, dets, sites = lineFit_fxt

    abund = pds.abundEstim(dfunc, dets, sites, area=1e6, ci=0.9, R=60, seed=1)
    logger.info(f'With CI: {abund}\n{abund.summary()}')

    assert abund.ciAvailable() and abund.ciLevel == 0.9
    low, high = abund.ci
    assert 0 < low < high
    assert low < 1.5 * abund.nHat and high > 0.5 * abund.nHat
    assert abund.bootstrap.nDone == 60 and not abund.bootstrap.cancelled
    assert abund.summary()['NHatLow'] == low

    # Same seed => same resamples => same values (whatever the executor)
    bootRes1 = pds.Bootstrapper(seed=3).run(dfunc, dets, sites, area=1e6, R=15)
    bootRes2 = pds.Bootstrapper(seed=3).run(dfunc, dets, sites, area=1e6, R=15)
    assert np.array_equal(bootRes1.values, bootRes2.values, equal_nan=True)

    exor = pds.Executor(threads=3)
    bootRes3 = pds.Bootstrapper(executor=exor, seed=3).run(dfunc, dets, sites, area=1e6, R=15)
    exor.shutdown()
    assert bootRes3.values == pytest.approx(bootRes1.values, nan_ok=True)

    # No bootstrap
    abund = pds.abundEstim(dfunc, dets, sites, area=1e6, R=0)
    assert abund.bootstrap is None and not abund.ciAvailable()
    abund = pds.abundEstim(dfunc, dets, sites, area=1e6, ci=None)
    assert abund.bootstrap is None

    with pytest.raises(AssertionError):
        pds.Bootstrapper().run(dfunc, dets, sites, ciLevel=1.5)

    logger.info0('PASS testAbundEstimCI')


# A failed fit, whatever the data.
def _failedRefit(self, dfunc, detections, sites=None, start=None):

    return pds.DetectionFunction(dfunc.likelihood, dfunc.series, dfunc.expansions, dfunc.wLo, dfunc.wHi,
                                 dfunc.pointSurvey, dfunc.params, convergence=pds.DetectionFunction.CVFailed)


def testFailedResamples(lineFit_fxt, monkeypatch):

    dfunc, dets, sites = lineFit_fxt

    # All resamples fail => no CI, but still the point estimate
    monkeypatch.setattr(pds.CDSEngine, 'refit', _failedRefit)
    abund = pds.abundEstim(dfunc, dets, sites, area=1e6, R=10, seed=1)
    logger.info(f'All failed: {abund}')

    assert abund.bootstrap.nDone == 10 and abund.bootstrap.nFailed == 10
    assert not abund.ciAvailable()
    assert np.isfinite(abund.nHat)
    assert abund.status() == 'partial'
    assert np.isnan(abund.summary()['NHatLow'])

    # Half of the resamples fail => CI from the successful ones
    monkeypatch.undo()
    origRefit = pds.CDSEngine.refit
    calls = dict(n=0)

    def _halfFailedRefit(self, dfunc, detections, sites=None, start=None):
        calls['n'] += 1
        if calls['n'] % 2:
            return _failedRefit(self, dfunc, detections, sites, start)
        return origRefit(self, dfunc, detections, sites, start)

    monkeypatch.setattr(pds.CDSEngine, 'refit', _halfFailedRefit)
    bootRes = pds.Bootstrapper(seed=1).run(dfunc, dets, sites, area=1e6, R=10)
    assert bootRes.nFailed >= 5 and bootRes.ci is not None

    logger.info0('PASS testFailedResamples')


def testRaisingResample(lineFit_fxt, monkeypatch):

    dfunc, dets, sites = lineFit_fxt

    # 3rd abundance computation raises => 1 more failed resample, the others kept
    origEstimateN = pds.bootstrap.estimateN
    calls = dict(n=0)

    def _overflowingEstimateN(*args, **kwargs):
        calls['n'] += 1
        if calls['n'] == 3:
            raise FloatingPointError('overflow in one resample')
        return origEstimateN(*args, **kwargs)

    bootResRef = pds.Bootstrapper(seed=1).run(dfunc, dets, sites, area=1e6, R=10)

    monkeypatch.setattr(pds.bootstrap, 'estimateN', _overflowingEstimateN)
    bootRes = pds.Bootstrapper(seed=1).run(dfunc, dets, sites, area=1e6, R=10)

    assert calls['n'] >= 3
    assert bootRes.nDone == 10
    assert bootRes.nFailed == bootResRef.nFailed + 1
    assert bootRes.ci is not None

    logger.info0('PASS testRaisingResample')


def testCancel(lineFit_fxt):

    dfunc, dets, sites = lineFit_fxt

    cancel = threading.Event()
    cancel.set()
    bootRes = pds.Bootstrapper(seed=1).run(dfunc, dets, sites, R=10, cancel=cancel)
    assert bootRes.cancelled and bootRes.nDone == 0
    assert bootRes.ci is None

    logger.info0('PASS testCancel')


def testWithCovariates():

    dfDets, dfSites = uivu.pointSurvey()
    dets = pds.DetectionDataSet(dfDets)
    sites = pds.SiteDataSet(dfSites, pointSurvey=True)
    dfunc = pds.CDSEngine(surveyType='Point').estimate(dets, sites, covars=['habitat'])
    assert dfunc.success()

    abund = pds.abundEstim(dfunc, dets, sites, area=1e6, R=10, seed=5)
    logger.info(f'With covariates: {abund}')
    assert abund.bootstrap.nDone == 10
    assert abund.bootstrap.nOk > 0 and abund.ciAvailable()

    logger.info0('PASS testWithCovariates')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
