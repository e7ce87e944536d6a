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

# Automated unit and integration tests for "abundance" submodule

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import numpy as np
import pandas as pd

import pytest

import pydisam as pds

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.abd', level=pds.DEBUG, otherLoggers={'pds.dat': pds.INFO, 'pds.eng': pds.INFO})

KWhat2Test = 'abundance'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)


###############################################################################
#                Test function and related tooling functions                  #
###############################################################################

# Scenario A data: 100 detections on a single 1000 long transect, truncated at 150.
def _singleTransect():

    dist = uivu.halfNormalDistances(n=100, sigma=50.0, seed=123)
    dfDets = pd.DataFrame(dict(site='T1', distance=dist))
    dfSites = pd.DataFrame(dict(site=['T1'], length=[1000.0]))

    return dfDets, dfSites


def testScenarioALine():

    dfDets, dfSites = _singleTransect()
    dets = pds.DetectionDataSet(dfDets)
    sites = pds.SiteDataSet(dfSites)

    dfunc = pds.CDSEngine().estimate(dets, likelihood='halfnorm', wLo=0, wHi=150)
    assert dfunc.success()

    abund = pds.estimateN(dfunc, dets, sites, area=10000)
    logger.info(f'Scenario A: {abund}\n{abund.summary()}')

    esw = dfunc.effectiveDistance()
    n = (dets.distances <= 150).sum()
    assert abund.n == n and abund.nSites == 1 and abund.totalLength == 1000
    assert np.isfinite(abund.nHat) and abund.nHat > 0
    assert abund.nHat == pytest.approx(n * 10000 / (2 * esw * 1000))
    assert abund.density == pytest.approx(abund.nHat / 10000)
    assert abund.pDetect == pytest.approx(esw / 150)
    assert abund.status() == 'success'
    assert not abund.ciAvailable()

    sSum = abund.summary()
    assert sSum['NHat'] == pytest.approx(abund.nHat) and sSum['Status'] == 'success'
    assert 'NHatLow' not in sSum.index

    logger.info0('PASS testScenarioALine')


def testScenarioBPoint():

    dfDets, dfSites = _singleTransect()
    dfSites = dfSites.drop(columns=['length'])
    dfDets['distance'] = uivu.halfNormalDistances(n=100, sigma=50.0, seed=123, pointSurvey=True)

    eng = pds.CDSEngine(surveyType='Point')
    dfunc = eng.estimate(dfDets, likelihood='halfnorm', wHi=150)
    assert dfunc.success() and dfunc.pointSurvey

    abund = pds.estimateN(dfunc, dfDets, dfSites, area=10000)
    logger.info(f'Scenario B: {abund}')

    edr = dfunc.effectiveDistance()
    n = (dfDets.distance <= 150).sum()
    assert abund.totalLength is None
    assert abund.nHat == pytest.approx(n * 10000 / (np.pi * edr ** 2 * 1))
    assert abund.pDetect == pytest.approx(edr ** 2 / 150 ** 2)

    # Survey type mismatch
    with pytest.raises(ValueError):
        pds.estimateN(dfunc, dfDets, pds.SiteDataSet(_singleTransect()[1]), area=10000)

    logger.info0('PASS testScenarioBPoint')


def testEstimatorsAndSites():

    dfDets, dfSites = uivu.lineSurvey()
    dfunc = pds.CDSEngine().estimate(dfDets, wHi=100)
    assert dfunc.success()

    # Without covariates, HT == standard
    abundHT = pds.estimateN(dfunc, dfDets, dfSites, area=1e6, bySite=True, estimator='ht')
    abundStd = pds.estimateN(dfunc, dfDets, dfSites, area=1e6, estimator='standard')
    assert abundStd.nHat == pytest.approx(abundHT.nHat)
    assert abundHT.avgGroupSize == pytest.approx(dfDets.loc[dfDets.distance <= 100, 'size'].mean())
    assert abundStd.dfBySite is None

    # Per site table
    dfBySite = abundHT.dfBySite
    logger.info(f'By site:\n{dfBySite.to_string()}')
    assert dfBySite.columns.tolist() == ['Site', 'NDetections', 'NIndividuals', 'PDetect',
                                         'EffArea', 'SampledArea', 'NHat', 'Density']
    assert len(dfBySite) == len(dfSites)
    assert dfBySite.NDetections.sum() == abundHT.n
    assert dfBySite.SampledArea.tolist() == pytest.approx([2 * 100 * 200.0] * len(dfSites))
    assert dfBySite.NHat.sum() / dfBySite.SampledArea.sum() * 1e6 == pytest.approx(abundHT.nHat)

    # Site without detection: still there, with 0 abundance, and a detection probability
    sEmpty = dfBySite.iloc[-1]
    assert sEmpty.NDetections == 0 and sEmpty.NIndividuals == 0 and sEmpty.NHat == 0 and sEmpty.Density == 0
    assert sEmpty.PDetect == pytest.approx(dfunc.detectionProbability())

    # Unknown sites
    with pytest.raises(ValueError):
        pds.estimateN(dfunc, dfDets, dfSites.iloc[:-3], area=1e6)

    # Invalid options
    with pytest.raises(AssertionError):
        pds.estimateN(dfunc, dfDets, dfSites, area=0)
    with pytest.raises(AssertionError):
        pds.estimateN(dfunc, dfDets, dfSites, estimator='distance')

    logger.info0('PASS testEstimatorsAndSites')


def testWithCovariates():

    dfDets, dfSites = uivu.pointSurvey()
    dets = pds.DetectionDataSet(dfDets)
    sites = pds.SiteDataSet(dfSites, pointSurvey=True)

    dfunc = pds.CDSEngine(surveyType='Point').estimate(dets, sites, covars=['habitat'])
    assert dfunc.success()

    # Horvitz-Thompson: sum of group size / detection probability, 1 per detection
    abund = pds.estimateN(dfunc, dets, sites, area=1e6, bySite=True)
    edrs = dfunc.effectiveDistance(dets.covariates(['habitat'], sites))
    assert abund.nHat == pytest.approx(np.sum(1 / (np.pi * edrs ** 2 * len(sites))) * 1e6)

    # Standard estimator not available => HT
    abundStd = pds.estimateN(dfunc, dets, sites, area=1e6, estimator='standard')
    assert abundStd.estimator == 'ht' and abundStd.nHat == pytest.approx(abund.nHat)

    # Empty site p from its own covariates
    dfBySite = abund.dfBySite
    sEmpty = dfBySite.iloc[-1]
    assert sEmpty.NDetections == 0
    pOpen = dfunc.detectionProbability(pd.DataFrame(dict(habitat=['open'])))
    assert sEmpty.PDetect == pytest.approx(pOpen[0])  # Last point (P11) is in the open
    assert dfBySite.NHat.sum() / dfBySite.SampledArea.sum() * 1e6 == pytest.approx(abund.nHat)

    # Missing site covariate values => no per-site table possible
    dfSitesBad = dfSites.copy()
    dfSitesBad.loc[len(dfSitesBad) - 1, 'habitat'] = None
    with pytest.raises(ValueError):
        pds.estimateN(dfunc, dets, pds.SiteDataSet(dfSitesBad, pointSurvey=True), area=1e6, bySite=True)

    logger.info0('PASS testWithCovariates')


def testStatus():

    dfDets, dfSites = uivu.lineSurvey()

    # Failed fit => failure
    dfunc = pds.CDSEngine().fit([10.0], wHi=100)
    abund = pds.estimateN(dfunc, dfDets, dfSites)
    assert abund.status() == 'failure'

    # Singular fit => partial
    dfunc = pds.DetectionFunction('halfnorm', 'cosine', 0, 0.0, 100.0, False, [40.0], varcovar=None,
                                  loglik=-500.0, nObs=150)
    abund = pds.estimateN(dfunc, dfDets, dfSites)
    assert abund.status() == 'partial'

    # Bootstrap without CI => partial
    dfunc = pds.DetectionFunction('halfnorm', 'cosine', 0, 0.0, 100.0, False, [40.0], varcovar=[[4.0]],
                                  loglik=-500.0, nObs=150)
    abund = pds.estimateN(dfunc, dfDets, dfSites)
    assert abund.status() == 'success'
    abund.setBootstrap(pds.BootstrapResults([np.nan, np.nan], nRequested=2))
    assert not abund.ciAvailable() and abund.status() == 'partial'
    assert 'no CI' in repr(abund)

    logger.info0('PASS testStatus')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
