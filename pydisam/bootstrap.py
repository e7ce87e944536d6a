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

# Submodule "bootstrap": Non-parametric bootstrap of sites for abundance confidence intervals

import numpy as np
import pandas as pd

from . import log

logger = log.logger('pds.bst')

from .data import DetectionDataSet, SiteDataSet, resampleSites
from .engine import CDSEngine
from .abundance import estimateN


class BootstrapResults(object):

    """Bootstrap abundance values and percentile confidence interval"""

    def __init__(self, values, nRequested, ciLevel=0.95, cancelled=False):

        """Ctor

        :param values: abundance estimates of completed resamples (NaN for failed ones)
        :param nRequested: number of requested resamples
        :param ciLevel: confidence level, in ]0, 1[
        :param cancelled: True if the run was cancelled before all resamples completed
        """

        self.values = np.asarray(values, dtype=float)
        self.nRequested = nRequested
        self.ciLevel = ciLevel
        self.cancelled = cancelled

        okValues = self.values[np.isfinite(self.values)]
        self.ci = None
        if len(okValues) > 0:
            alpha = (1 - ciLevel) / 2
            self.ci = tuple(float(v) for v in np.quantile(okValues, [alpha, 1 - alpha]))

    @property
    def nDone(self):

        return len(self.values)

    @property
    def nOk(self):

        return int(np.isfinite(self.values).sum())

    @property
    def nFailed(self):

        return self.nDone - self.nOk

    def summary(self):

        low, high = self.ci if self.ci is not None else (np.nan, np.nan)

        return pd.Series({'Requested': self.nRequested, 'Done': self.nDone, 'Ok': self.nOk,
                          'Failed': self.nFailed, 'Cancelled': self.cancelled, 'CILevel': self.ciLevel,
                          'Low': low, 'High': high,
                          'Mean': np.nanmean(self.values) if self.nOk else np.nan,
                          'Std': np.nanstd(self.values, ddof=1) if self.nOk > 1 else np.nan})


# 1 bootstrap resample fit + abundance (module level, for process pools) ;
# any numerical failure gives NaN (a failed resample), never aborts the bootstrap.
def _bootIteration(engine, dfunc, detections, sites, area, estimator, siteIndices):

    dets, sits = resampleSites(detections, sites, siteIndices)

    try:
        bdfunc = engine.refit(dfunc, dets, sits)
        if not bdfunc.success():
            logger.debug1(f'Failed resample fit: {bdfunc.statusMessage()}')
            return np.nan

        with engine.numericsContext():
            nHat = estimateN(bdfunc, dets, sits, area=area, estimator=estimator).nHat

    except (ValueError, ArithmeticError, np.linalg.LinAlgError) as exc:
        logger.debug1(f'Failed resample: {exc.__class__.__name__}: {exc}')
        return np.nan

    return nHat if np.isfinite(nHat) else np.nan


class Bootstrapper(object):

    """Non-parametric bootstrap over sites (transects or points): sites are resampled with replacement,
    the detection function is refit from scratch, and abundance re-estimated, for each resample"""

    # Min. ratio of successful resamples below which a warning is issued.
    KMinSuccessRatio = 0.9

    def __init__(self, engine=None, executor=None, seed=None, logProgressEvery=50):

        """Ctor

        Parameters:
        :param engine: CDSEngine to refit with (None => a sequential default one, of the fitted model survey type)
        :param executor: Executor for running resamples (None => engine one)
        :param seed: random generator seed (None => not reproducible)
        :param logProgressEvery: log progress every N completed resamples
        """

        self.engine = engine
        self.executor = executor
        self.seed = seed
        self.logProgressEvery = logProgressEvery

    def run(self, dfunc, detections, sites, area=1.0, R=500, ciLevel=0.95, estimator='ht', cancel=None):

        """Run the bootstrap

        Parameters:
        :param dfunc: fitted DetectionFunction (its model is refit on each resample)
        :param detections: DetectionDataSet (or pd.DataFrame)
        :param sites: SiteDataSet (or pd.DataFrame)
        :param area: study area size
        :param R: number of resamples
        :param ciLevel: confidence level of the percentile interval
        :param estimator: abundance estimator (see abundance.estimateN)
        :param cancel: None or threading.Event like object ; if set, stop as soon as possible
                       (the interval is computed from already completed resamples)
        :return: BootstrapResults
        """

        assert R > 0, f'Invalid number of resamples {R}: should be > 0'
        assert 0 < ciLevel < 1, f'Invalid confidence level {ciLevel}: should be in ]0, 1['

        if not isinstance(detections, DetectionDataSet):
            detections = DetectionDataSet(detections)
        if not isinstance(sites, SiteDataSet):
            sites = SiteDataSet(sites, pointSurvey=dfunc.pointSurvey)
        detections.checkSites(sites)

        engine = self.engine
        if engine is None:
            engine = CDSEngine(surveyType='Point' if dfunc.pointSurvey else 'Line', gridSize=dfunc.gridSize)
        executor = self.executor if self.executor is not None else engine.executor

        # Draw all resamples up front: results don't depend on execution order.
        rng = np.random.default_rng(self.seed)
        nSites = len(sites)
        lSiteIndices = [rng.integers(0, nSites, size=nSites) for _ in range(R)]

        logger.info('Bootstrapping {} resamples of {} sites ({}) ...'
                    .format(R, nSites, 'in parallel' if executor.isParallel() else 'in sequence'))
        startTime = pd.Timestamp.now()

        values = np.full(R, np.nan)
        sbDone = np.zeros(R, dtype=bool)
        tasks = ((engine, dfunc, detections, sites, area, estimator, siteInds) for siteInds in lSiteIndices)
        for nDone, (taskInd, nHat) in enumerate(executor.runTasks(_bootIteration, tasks, cancel=cancel), start=1):

            values[taskInd] = nHat
            sbDone[taskInd] = True

            if nDone % self.logProgressEvery == 0 or nDone == R:
                elapsedTilNow = pd.Timestamp.now() - startTime
                logger.info1('{}/{} resamples in {} (mean {:.3f}s).'
                             .format(nDone, R, str(elapsedTilNow.round('s')).replace('0 days ', ''),
                                     elapsedTilNow.total_seconds() / nDone))

        cancelled = not sbDone.all()
        if cancelled:
            logger.info(f'Bootstrap cancelled after {sbDone.sum()} of {R} resamples')

        results = BootstrapResults(values[sbDone], nRequested=R, ciLevel=ciLevel, cancelled=cancelled)

        if results.nOk == 0:
            logger.error('No successful bootstrap resample ({} done): no confidence interval available'
                         .format(results.nDone))
        elif results.nOk < self.KMinSuccessRatio * results.nDone:
            logger.warning('CI based on {} of {} successful bootstrap resamples'.format(results.nOk, results.nDone))
        else:
            logger.info('CI based on {} of {} successful bootstrap resamples'.format(results.nOk, results.nDone))

        return results


def abundEstim(dfunc, detections, sites, area=1.0, ci=0.95, R=500, bySite=False, estimator='ht',
               engine=None, executor=None, seed=None, cancel=None):

    """Estimate abundance from a fitted detection function, with a bootstrap confidence interval

    Parameters:
    :param dfunc: fitted DetectionFunction
    :param detections: DetectionDataSet (or pd.DataFrame)
    :param sites: SiteDataSet (or pd.DataFrame)
    :param area: study area size
    :param ci: confidence level ; None => no bootstrap
    :param R: number of bootstrap resamples ; 0 => no bootstrap
    :param bySite: if True, also compute per-site abundance and density
    :param estimator: abundance estimator (see abundance.estimateN)
    :param engine: CDSEngine for bootstrap refits (see Bootstrapper)
    :param executor: Executor for bootstrap resamples (see Bootstrapper)
    :param seed: bootstrap random generator seed
    :param cancel: None or threading.Event like object, for cancelling the bootstrap
    :return: AbundanceEstimate
    """

    if not isinstance(detections, DetectionDataSet):
        detections = DetectionDataSet(detections)
    if not isinstance(sites, SiteDataSet):
        sites = SiteDataSet(sites, pointSurvey=dfunc.pointSurvey)

    abund = estimateN(dfunc, detections, sites, area=area, bySite=bySite, estimator=estimator)

    if ci is not None and R > 0:
        bootstrapper = Bootstrapper(engine=engine, executor=executor, seed=seed)
        abund.setBootstrap(bootstrapper.run(dfunc, detections, sites, area=area, R=R, ciLevel=ci,
                                            estimator=estimator, cancel=cancel))

    return abund
