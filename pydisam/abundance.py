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

# Submodule "abundance": Abundance / density estimation from a fitted detection function

import numpy as np
import pandas as pd

from . import log

logger = log.logger('pds.abd')

from .data import DetectionDataSet, SiteDataSet, Truncation


class AbundanceEstimate(object):

    """Abundance estimate in the study area, with its ingredients,
    and, if a bootstrap was run, its confidence interval"""

    # Status narration.
    StatusSuccess = 'success'
    StatusPartial = 'partial'
    StatusFailure = 'failure'

    def __init__(self, dfunc, nHat, n, area, esw, pDetect, nSites, totalLength, avgGroupSize,
                 estimator='ht', dfBySite=None):

        self.dfunc = dfunc
        self.nHat = nHat
        self.n = n
        self.area = area
        self.esw = esw
        self.pDetect = pDetect
        self.nSites = nSites
        self.totalLength = totalLength
        self.avgGroupSize = avgGroupSize
        self.estimator = estimator
        self.dfBySite = dfBySite

        # Bootstrap results (see setBootstrap).
        self.bootstrap = None
        self.ciLevel = None
        self.ci = None

    @property
    def density(self):

        return self.nHat / self.area

    def setBootstrap(self, bootResults):

        """Attach bootstrap results (see bootstrap.BootstrapResults)"""

        self.bootstrap = bootResults
        self.ciLevel = bootResults.ciLevel
        self.ci = bootResults.ci

    def ciAvailable(self):

        return self.ci is not None

    def status(self):

        if not self.dfunc.success() or not np.isfinite(self.nHat):
            return self.StatusFailure

        if self.dfunc.isSingular() or (self.bootstrap is not None
                                       and (not self.ciAvailable() or self.bootstrap.nFailed > 0)):
            return self.StatusPartial

        return self.StatusSuccess

    def summary(self):

        """Main results as a pd.Series"""

        sSum = pd.Series({'NHat': self.nHat, 'Density': self.density, 'Area': self.area,
                          'NDetections': self.n, 'NSites': self.nSites, 'TotalLength': self.totalLength,
                          'AvgGroupSize': self.avgGroupSize, 'EffDist': np.mean(self.esw),
                          'PDetect': np.mean(self.pDetect), 'Estimator': self.estimator, 'Status': self.status()})

        if self.bootstrap is not None:
            low, high = self.ci if self.ciAvailable() else (np.nan, np.nan)
            sSum = pd.concat([sSum, pd.Series({'CILevel': self.ciLevel, 'NHatLow': low, 'NHatHigh': high,
                                               'BootOk': self.bootstrap.nOk,
                                               'BootRequested': self.bootstrap.nRequested})])

        return sSum

    def __repr__(self):

        ciText = ''
        if self.bootstrap is not None:
            ciText = ' ; {:.0%} CI: [{:.2f}, {:.2f}]'.format(self.ciLevel, *self.ci) if self.ciAvailable() \
                     else ' ; no CI available'

        return f'{self.__class__.__name__}(N={self.nHat:.2f}{ciText})'


Estimators = ['ht', 'standard']


def _siteTable(dfunc, dets, sites, pDets):

    """Per-site detections, detection probability, areas, abundance and density"""

    dfSites = pd.DataFrame({'Site': sites.siteIds.to_numpy()})
    if dfunc.pointSurvey:
        dfSites['SampledArea'] = np.pi * (dfunc.wHi ** 2 - dfunc.wLo ** 2)
    else:
        dfSites['SampledArea'] = 2 * (dfunc.wHi - dfunc.wLo) * sites.lengths

    dfDets = pd.DataFrame({'Site': dets.siteIds.to_numpy(), 'NIndividuals': dets.groupSizes,
                           'PDetect': pDets})
    dfDets['NHat'] = dfDets.NIndividuals / dfDets.PDetect
    dfBySite = dfDets.groupby('Site').agg(NDetections=('NIndividuals', 'size'),
                                          NIndividuals=('NIndividuals', 'sum'),
                                          PDetect=('PDetect', 'mean'), NHat=('NHat', 'sum'))

    dfSites = dfSites.join(dfBySite, on='Site')
    sbEmpty = dfSites.NDetections.isnull()
    dfSites.loc[sbEmpty, ['NDetections', 'NIndividuals', 'NHat']] = 0
    dfSites['NDetections'] = dfSites.NDetections.astype(int)

    # Sites without detection: p from their own covariates (must be there).
    if sbEmpty.any():
        if dfunc.hasCovariates():
            dfSiteCovars = sites.covariates(dfunc.covarNames)[sbEmpty.to_numpy()]
            dfSites.loc[sbEmpty, 'PDetect'] = dfunc.detectionProbability(dfSiteCovars.reset_index(drop=True))
        else:
            dfSites.loc[sbEmpty, 'PDetect'] = dfunc.detectionProbability()

    dfSites['EffArea'] = dfSites.SampledArea * dfSites.PDetect
    dfSites['Density'] = dfSites.NHat / dfSites.SampledArea

    return dfSites[['Site', 'NDetections', 'NIndividuals', 'PDetect', 'EffArea', 'SampledArea', 'NHat', 'Density']]


def estimateN(dfunc, detections, sites, area=1.0, bySite=False, estimator='ht'):

    """Estimate abundance in the study area from a fitted detection function and survey data

    Parameters:
    :param dfunc: fitted DetectionFunction
    :param detections: DetectionDataSet (or pd.DataFrame), truncated here as dfunc was
    :param sites: SiteDataSet (or pd.DataFrame), with every surveyed site (even with no detection)
    :param area: study area size (in the square distance unit if densities are wanted
                 as numbers per square distance unit)
    :param bySite: if True, also compute per-site abundance and density (see AbundanceEstimate.dfBySite)
    :param estimator: 'ht' for per-detection Horvitz-Thompson inflation,
                      or 'standard' for the average group size x count one (not with covariates)
    :return: AbundanceEstimate
    """

    assert estimator in Estimators, f'Invalid estimator {estimator}: should be in {Estimators}'
    assert area > 0, f'Invalid area {area}: should be > 0'

    if not isinstance(detections, DetectionDataSet):
        detections = DetectionDataSet(detections)
    if not isinstance(sites, SiteDataSet):
        sites = SiteDataSet(sites, pointSurvey=dfunc.pointSurvey)
    if sites.pointSurvey != dfunc.pointSurvey:
        raise ValueError('Site data survey type does not match the detection function one')
    detections.checkSites(sites)

    dets = detections.truncated(Truncation(dfunc.wLo, dfunc.wHi))
    n = len(dets)
    sizes = dets.groupSizes
    nSites = len(sites)
    totLength = sites.totalLength()
    avgGroupSize = sizes.mean() if n > 0 else np.nan

    if dfunc.hasCovariates():
        if estimator != 'ht':
            logger.warning('Only the Horvitz-Thompson estimator is available with covariates: using it')
            estimator = 'ht'
        esw = dfunc.effectiveDistance(dets.covariates(dfunc.covarNames, sites))
    else:
        esw = dfunc.effectiveDistance()
    pDets = dfunc.effDistToProbability(esw)

    if dfunc.pointSurvey:
        effArea = np.pi * np.square(esw) * nSites
    else:
        effArea = 2 * esw * totLength

    if n == 0:
        nHat = 0.0
    elif estimator == 'ht':
        nHat = float(np.sum(sizes / effArea) * area)
    else:
        nHat = float(avgGroupSize * n * area / effArea)

    dfBySite = None
    if bySite:
        dfBySite = _siteTable(dfunc, dets, sites, np.broadcast_to(pDets, (n,)))

    logger.info1('Abundance: N={:.3f} from n={} detections on {} sites (p={:.3f}, {})'
                 .format(nHat, n, nSites, float(np.mean(pDets)) if np.size(pDets) else np.nan, estimator))

    return AbundanceEstimate(dfunc, nHat=nHat, n=n, area=area, esw=esw, pDetect=pDets, nSites=nSites,
                             totalLength=totLength, avgGroupSize=avgGroupSize, estimator=estimator,
                             dfBySite=dfBySite)
