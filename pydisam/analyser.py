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

# Submodule "analyser": Run a grid of CDS analyses, select the best model, and estimate abundance with it

import numpy as np
import pandas as pd

from . import log, runtime

logger = log.logger('pds.anr')

from .data import DetectionDataSet, SiteDataSet, Truncation, ResultsSet
from .likelihood import KeyFunctions, Series
from .engine import CDSEngine
from .dfunc import DetectionFunction
from .analysis import CDSAnalysis
from .bootstrap import abundEstim


class ModelSelectionResultsSet(ResultsSet):

    """A specialized results set for model selection among CDS analyses (1 row per candidate model),
    with post-computed selection criterion, delta criterion and rank columns, sorted by rank."""

    # Candidate number (grid order).
    CLCandNum = ('header', 'candidate', 'Value')

    # Post-computed columns.
    CLSelCriterion = ('selection', 'criterion', 'Value')
    CLSelDelta = ('selection', 'delta criterion', 'Value')
    CLSelRank = ('selection', 'rank', 'Value')

    def __init__(self, criterion='AICc'):

        assert criterion in CDSAnalysis.CriterionColumns, \
               'Invalid criterion {}: should be in {}'.format(criterion, list(CDSAnalysis.CriterionColumns))

        self.criterion = criterion

        miCols = pd.MultiIndex.from_tuples([self.CLCandNum] + list(CDSAnalysis.MIRunColumns)
                                           + [self.CLSelCriterion, self.CLSelDelta, self.CLSelRank])

        super().__init__(miCols=miCols, sortCols=[self.CLSelRank], sortAscend=[True])

    @classmethod
    def selectionCriterion(cls, dfResults, criterion='AICc'):

        """Criterion values for ranking, +inf for candidates that didn't converge or with invalid scale"""

        sbValid = (dfResults[CDSAnalysis.CLRunStatus] == DetectionFunction.CVSuccess) \
                  & dfResults[CDSAnalysis.CLScaleOk].astype(bool)

        return dfResults[CDSAnalysis.CriterionColumns[criterion]].astype(float).where(sbValid, np.inf)

    @classmethod
    def ranking(cls, dfResults, criterion='AICc'):

        """Row positions from best to worst: by criterion, then number of parameters, then candidate order"""

        return np.lexsort((dfResults[cls.CLCandNum].astype(int).to_numpy(),
                           dfResults[CDSAnalysis.CLNParams].astype(int).to_numpy(),
                           cls.selectionCriterion(dfResults, criterion).to_numpy()))

    @classmethod
    def selectBest(cls, dfResults, criterion='AICc'):

        """Index label of the best candidate row, or None if no candidate converged with a valid scale"""

        if dfResults.empty:
            return None

        bestPos = cls.ranking(dfResults, criterion)[0]
        if not np.isfinite(cls.selectionCriterion(dfResults, criterion).iloc[bestPos]):
            return None

        return dfResults.index[bestPos]

    def postComputeColumns(self):

        df = self._dfData

        sCrit = self.selectionCriterion(df, self.criterion)
        df[self.CLSelCriterion] = sCrit
        with np.errstate(invalid='ignore'):
            df[self.CLSelDelta] = sCrit - sCrit.min()

        ranks = np.empty(len(df), dtype=int)
        ranks[self.ranking(df, self.criterion)] = np.arange(1, len(df) + 1)
        df[self.CLSelRank] = ranks

    def bestCandidate(self):

        """Candidate number of the best model, or None if none valid"""

        dfData = self.getData(copy=False)
        bestInd = self.selectBest(dfData, self.criterion)

        return None if bestInd is None else int(dfData.loc[bestInd, self.CLCandNum])


class CDSModelSelector(object):

    """Fit a grid of candidate CDS models (likelihoods x series x expansions) to the same data,
    and rank them by information criterion (the best = the lowest criterion among converged models
    with a valid scale)"""

    # Default candidate grid.
    LikelihoodsDef = ['halfnorm', 'hazrate', 'uniform', 'negexp', 'Gamma']
    SeriesDef = ['cosine', 'hermite', 'simple']
    ExpansionsDef = [0, 1, 2, 3]

    def __init__(self, engine=None, likelihoods=LikelihoodsDef, series=SeriesDef, expansions=ExpansionsDef,
                 criterion='AICc', logProgressEvery=10):

        """Ctor

        Parameters:
        :param engine: CDSEngine to use (None => a sequential line transect one) ;
            fits are run through its executor (parallel or not)
        :param likelihoods: candidate likelihoods (see CDSEngine.Likelihoods)
        :param series: candidate series (see CDSEngine.SeriesNames)
        :param expansions: candidate numbers of expansion terms
        :param criterion: selection criterion (AICc, AIC or BIC)
        :param logProgressEvery: log progress every N completed candidates
        """

        assert criterion in CDSAnalysis.CriterionColumns, \
               'Invalid criterion {}: should be in {}'.format(criterion, list(CDSAnalysis.CriterionColumns))

        self.engine = engine if engine is not None else CDSEngine()
        self.candidates = self.candidateModels(likelihoods, series, expansions)
        self.criterion = criterion
        self.logProgressEvery = logProgressEvery

        self.results = None
        self.dfuncs = dict()  # Fitted detection functions, by candidate number.

    @staticmethod
    def candidateModels(likelihoods=LikelihoodsDef, series=SeriesDef, expansions=ExpansionsDef):

        """Candidate model grid, as a list of dict(likelihood=, series=, expansions=)

        No series variants when no expansion (only 1 candidate, with 'cosine' series),
        and only 1 candidate for likelihoods without expansions support (Gamma).
        """

        for lkl in likelihoods:
            assert lkl in KeyFunctions, 'Invalid likelihood {}: should be in {}'.format(lkl, list(KeyFunctions))
        for ser in series:
            assert ser in Series.Names, 'Invalid series {}: should be in {}'.format(ser, Series.Names)
        for exp in expansions:
            assert 0 <= exp <= Series.MaxExpansions, \
                   'Invalid expansions {}: should be in [0, {}]'.format(exp, Series.MaxExpansions)

        lCands = list()
        for lkl in likelihoods:
            if not KeyFunctions[lkl].SupportsExpansions:
                lCands.append(dict(likelihood=lkl, series='cosine', expansions=0))
                continue
            for exp in expansions:
                for ser in (['cosine'] if exp == 0 else series):
                    cand = dict(likelihood=lkl, series=ser, expansions=exp)
                    if cand not in lCands:
                        lCands.append(cand)

        return lCands

    def _logProgress(self, nDone, nTotal, startTime):

        if nDone % self.logProgressEvery == 0 or nDone == nTotal:
            elapsedTilNow = pd.Timestamp.now() - startTime
            logger.info1('{}/{} candidates in {} (mean {:.3f}s).'
                         .format(nDone, nTotal, str(elapsedTilNow.round('s')).replace('0 days ', ''),
                                 elapsedTilNow.total_seconds() / nDone))

    def run(self, detections, sites=None, wLo=0, wHi=None, covars=None, stopOnFailure=False, cancel=None):

        """Fit all candidate models, and rank them

        Parameters:
        :param detections: DetectionDataSet (or pd.DataFrame)
        :param sites: None or SiteDataSet (or pd.DataFrame), for site covariates
        :param wLo: left truncation distance
        :param wHi: right truncation distance (None => max. distance, for all candidates)
        :param covars: None or list of covariate names
        :param stopOnFailure: if True, stop the grid after the first failed candidate
        :param cancel: None or threading.Event like object ; if set, stop the grid as soon as possible
                       (the results of already completed candidates are kept)
        :return: ModelSelectionResultsSet (also kept as self.results)
        """

        if not isinstance(detections, DetectionDataSet):
            detections = DetectionDataSet(detections)
        if sites is not None and not isinstance(sites, SiteDataSet):
            sites = SiteDataSet(sites, pointSurvey=self.engine.pointSurvey)

        # Same truncation for all candidates (otherwise criteria are not comparable).
        trunc = Truncation.fromDistances(detections.distances, wLo, wHi)

        cancelled = lambda: cancel is not None and cancel.is_set()
        executor = self.engine.executor

        logger.info('Running {} candidate models ({}) ...'
                    .format(len(self.candidates), 'in parallel' if executor.isParallel() else 'in sequence'))
        startTime = pd.Timestamp.now()

        # Submit candidate fits.
        dAnlyses = dict()
        stopped = False
        for candNum, cand in enumerate(self.candidates):

            if cancelled():
                logger.info(f'Cancelled: no more candidate submitted after #{candNum}')
                break

            anlys = CDSAnalysis(engine=self.engine, detections=detections, sites=sites, customData=candNum,
                                wLo=trunc.wLo, wHi=trunc.wHi, covars=covars, **cand)
            logger.info2(f'#{candNum + 1}/{len(self.candidates)} : {anlys.name}')
            dAnlyses[anlys.submit()] = anlys

            # Sequential run: already done.
            if stopOnFailure and not executor.isAsync() and anlys.errors():
                logger.info(f'Stopping on first failed candidate {anlys.name}: {anlys.dfunc.statusMessage()}')
                stopped = True
                break

        # Wait for and gather results of all candidates, as they get completed.
        results = ModelSelectionResultsSet(criterion=self.criterion)
        self.dfuncs = dict()
        nDone = 0
        for anlysFut in executor.asCompleted(dAnlyses):

            if (cancelled() or stopped) and executor.isAsync():
                for fut in dAnlyses:
                    fut.cancel()
            if anlysFut.cancelled():
                continue

            anlys = dAnlyses[anlysFut]
            sResult = pd.concat([pd.Series({ModelSelectionResultsSet.CLCandNum: anlys.customData}),
                                 anlys.getResults()])
            results.append(sResult)
            self.dfuncs[anlys.customData] = anlys.dfunc

            if stopOnFailure and anlys.errors() and not stopped:
                logger.info(f'Stopping on first failed candidate {anlys.name}: {anlys.dfunc.statusMessage()}')
                stopped = True

            nDone += 1
            self._logProgress(nDone, len(dAnlyses), startTime)

        # Set results specs for traceability.
        results.updateSpecs(candidates=pd.DataFrame(self.candidates), criterion=self.criterion,
                            truncation=dict(wLo=trunc.wLo, wHi=trunc.wHi), covariates=covars,
                            runtime=pd.Series(runtime, name='Version'))

        nFailed = sum(not dfunc.success() for dfunc in self.dfuncs.values())
        if nFailed > 0:
            logger.info('Note: {} of {} candidate models did not converge or had an invalid scale'
                        .format(nFailed, len(self.dfuncs)))
        logger.info(f'Candidate models done ({len(results)} results).')

        self.results = results

        return results

    def bestDetectionFunction(self):

        """Best fitted detection function of the last run, or None if none valid"""

        assert self.results is not None, 'Run first'

        bestCand = self.results.bestCandidate()

        return None if bestCand is None else self.dfuncs[bestCand]


def autoDistSamp(detections, sites, area=1.0, wLo=0, wHi=None, covars=None,
                 likelihoods=CDSModelSelector.LikelihoodsDef, series=CDSModelSelector.SeriesDef,
                 expansions=CDSModelSelector.ExpansionsDef, criterion='AICc',
                 R=500, ci=0.95, seed=None, estimator='ht', bySite=False,
                 engine=None, stopOnFailure=False, cancel=None):

    """Automated conventional distance sampling: select the best detection function model
    among a grid of candidates, and estimate abundance with it (with bootstrap CI if R > 0)

    Parameters:
    :param detections: DetectionDataSet (or pd.DataFrame)
    :param sites: SiteDataSet (or pd.DataFrame)
    :param area: study area size
    :param engine: CDSEngine to use (None => a sequential line transect one)
    :param others: see CDSModelSelector and bootstrap.abundEstim
    :return: tuple(AbundanceEstimate (None if no valid model), ModelSelectionResultsSet)
    """

    engine = engine if engine is not None else CDSEngine()
    if not isinstance(detections, DetectionDataSet):
        detections = DetectionDataSet(detections)
    if not isinstance(sites, SiteDataSet):
        sites = SiteDataSet(sites, pointSurvey=engine.pointSurvey)

    selector = CDSModelSelector(engine=engine, likelihoods=likelihoods, series=series, expansions=expansions,
                                criterion=criterion)
    results = selector.run(detections, sites, wLo=wLo, wHi=wHi, covars=covars,
                           stopOnFailure=stopOnFailure, cancel=cancel)

    dfunc = selector.bestDetectionFunction()
    if dfunc is None:
        logger.error('No candidate model converged with a valid scale: no abundance estimate')
        return None, results

    logger.info(f'Best model ({criterion}={dfunc.aic(criterion):.3f}): {dfunc}')

    abund = abundEstim(dfunc, detections, sites, area=area, ci=ci, R=R, bySite=bySite, estimator=estimator,
                       engine=engine, seed=seed, cancel=cancel)

    return abund, results
