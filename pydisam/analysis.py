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

# Submodule "analysis": One layer above engines, to run DS analyses from input data sets, and get fit results

import numpy as np
import pandas as pd

from . import log
from .engine import DSEngine, CDSEngine
from .dfunc import DetectionFunction
from .likelihood import KeyFunctions

logger = log.logger('pds.ans')


# Analysis (abstract) : Gather input params, data sets, results
class DSAnalysis:

    EngineClass = DSEngine

    # Run columns for output : root engine output (3-level multi-index)
    CLRunStatus = ('run output', 'run status', 'Value')
    CLRunStartTime = ('run output', 'start time', 'Value')
    CLRunElapsedTime = ('run output', 'elapsed time', 'Value')

    RunRunColumns = [CLRunStatus, CLRunStartTime, CLRunElapsedTime]

    # Ctor
    # * :param: engine : DS engine to use
    # * :param: detections : data.DetectionDataSet instance to use
    # * :param: sites : data.SiteDataSet instance to use (or None if no site covariates)
    # * :param: name : name (maybe empty), only for user-friendliness (logs, ...)
    # * :param: customData : any custom data to be transported with the analysis object
    #                        during run (left completely untouched)
    def __init__(self, engine, detections, sites, name, customData=None):

        self.engine = engine
        self.detections = detections
        self.sites = sites
        self.name = name
        self.customData = customData


class CDSAnalysis(DSAnalysis):

    EngineClass = CDSEngine

    def __init__(self, engine, detections, sites=None, name=None, customData=None,
                 likelihood=EngineClass.LikelihoodDef, series=EngineClass.SeriesDef,
                 expansions=EngineClass.ExpansionsDef, wLo=0, wHi=None, covars=None):

        """Ctor

        Parameters:
        :param engine: CDS engine to use
        :param detections: DetectionDataSet instance to use
        :param sites: SiteDataSet instance to use (only for site covariates)
        :param name: only for user-friendliness (logs) ;
            default: None => auto-generated from model parameters
        :param customData: custom data for the run to ship through
        :param likelihood: key function family (see CDSEngine.Likelihoods)
        :param series: series expansion (see CDSEngine.SeriesNames)
        :param expansions: number of series expansion terms
        :param wLo: left truncation distance ; None or NaN => 0
        :param wHi: right truncation distance ; None or NaN => max. distance
        :param covars: None or list of covariate names for the log-linear scale model
        """

        # Check engine
        assert isinstance(engine, CDSEngine), 'Engine must be a CDSEngine'

        # Check analysis params
        assert likelihood in engine.Likelihoods, \
               'Invalid likelihood {}: should be in {}'.format(likelihood, engine.Likelihoods)
        assert series in engine.SeriesNames, \
               'Invalid series {}: should be in {}'.format(series, engine.SeriesNames)
        assert expansions == 0 or KeyFunctions[likelihood].SupportsExpansions, \
               'No series expansion possible for likelihood {}'.format(likelihood)
        if isinstance(wLo, float) and np.isnan(wLo):
            wLo = None  # enforce wLo NaN => None for later
        assert wLo is None or wLo >= 0, \
               'Invalid left truncation distance {}: should be None/NaN or >= 0'.format(wLo)
        if isinstance(wHi, float) and np.isnan(wHi):
            wHi = None  # enforce wHi NaN => None for later
        assert wHi is None or wLo is None or wLo < wHi, \
               'Invalid right truncation distance {}:' \
               ' should be None/NaN or > left truncation distance if specified'.format(wHi)

        # Build name from main params if not specified
        if name is None:
            name = '-'.join(['cds', likelihood[:3].lower()]
                            + ([series[:3], str(expansions)] if expansions > 0 else [])
                            + (covars or []))

        # Initialise base.
        super().__init__(engine, detections, sites, name, customData)

        # Save params.
        self.likelihood = likelihood
        self.series = series
        self.expansions = expansions
        self.wLo = wLo or 0
        self.wHi = wHi
        self.covars = list(covars) if covars else None

        self.future = None
        self.dfunc = None

    # Run columns for output : analysis params + root engine output + fit results (3-level multi-index)
    CLParLikelihood = ('parameters', 'likelihood', 'Value')
    CLParSeries = ('parameters', 'series', 'Value')
    CLParExpansions = ('parameters', 'expansions', 'Value')
    CLParTruncLeft = ('parameters', 'left truncation distance', 'Value')
    CLParTruncRight = ('parameters', 'right truncation distance', 'Value')
    CLParCovars = ('parameters', 'covariates', 'Value')

    RunParColumns = [CLParLikelihood, CLParSeries, CLParExpansions, CLParTruncLeft, CLParTruncRight, CLParCovars]

    CLStatus = ('detection function', 'status', 'Value')
    CLMessage = ('detection function', 'message', 'Value')
    CLScaleOk = ('detection function', 'scale ok', 'Value')
    CLSingular = ('detection function', 'singular', 'Value')
    CLNObs = ('detection function', 'observations', 'Value')
    CLNParams = ('detection function', 'parameters', 'Value')
    CLLogLik = ('detection function', 'log-likelihood', 'Value')
    CLAIC = ('detection function', 'AIC', 'Value')
    CLAICc = ('detection function', 'AICc', 'Value')
    CLBIC = ('detection function', 'BIC', 'Value')
    CLEffDist = ('detection function', 'effective distance', 'Value')

    DfuncColumns = [CLStatus, CLMessage, CLScaleOk, CLSingular, CLNObs, CLNParams,
                    CLLogLik, CLAIC, CLAICc, CLBIC, CLEffDist]
    CriterionColumns = dict(AIC=CLAIC, AICc=CLAICc, BIC=CLBIC)

    MIRunColumns = pd.MultiIndex.from_tuples(RunParColumns + DSAnalysis.RunRunColumns + DfuncColumns)

    # DataFrame for translating 3-level multi-index columns to 1 level lang-translated columns
    DfRunColumnTrans = \
        pd.DataFrame(index=MIRunColumns,
                     data=dict(en=['Likelihood', 'Series', 'Expansions', 'Left Trunc Dist', 'Right Trunc Dist',
                                   'Covariates', 'ExCod', 'StartTime', 'ElapsedTime',
                                   'Status', 'Message', 'Scale Ok', 'Singular',
                                   'NObs', 'NParams', 'LogLik', 'AIC', 'AICc', 'BIC', 'Eff Dist'],
                               fr=['Vraisemblance', 'Série', 'Ajustements', 'Dist Tronc Gche', 'Dist Tronc Drte',
                                   'Covariables', 'CodEx', 'HeureExec', 'DuréeExec',
                                   'Statut', 'Message', 'Echelle Ok', 'Singulière',
                                   'NObs', 'NParams', 'LogVrais', 'AIC', 'AICc', 'BIC', 'Dist Eff']))

    # Start running the analysis, and return immediately (the associated cofu.Future object) :
    # this starts an async. run ; you'll need to call getResults to wait for the real end of execution.
    def submit(self):

        # Ask the engine to start running the analysis
        self.future = \
            self.engine.submitEstimate(self.detections, self.sites, likelihood=self.likelihood,
                                       series=self.series, expansions=self.expansions,
                                       wLo=self.wLo, wHi=self.wHi, covars=self.covars)

        return self.future

    # Wait for the real end of analysis execution (blocking).
    # This indicates the end of an async. run when returning.
    def _wait4Results(self):

        assert self.future is not None, 'Analysis must be submitted first'

        if self.dfunc is None:
            self.dfunc, self.startTime, self.elapsedTime = self.future.result()

    # Wait for the real end of analysis execution, and return its results.
    def getResults(self):

        # Get analysis execution results, when the computation is finished (blocking)
        self._wait4Results()

        dfunc = self.dfunc
        effDist = np.nan
        if dfunc.convergence != DetectionFunction.CVFailed:
            with self.engine.numericsContext():
                effDist = float(np.mean(dfunc.effectiveDistance()))
        criteria = dfunc.criteria()

        # Build up run data (input parameters, run status and fit results) for output.
        return pd.Series(data=[self.likelihood, self.series if self.expansions else None, self.expansions,
                               dfunc.wLo, dfunc.wHi, ','.join(self.covars) if self.covars else None,
                               dfunc.convergence, self.startTime, self.elapsedTime,
                               dfunc.status(), dfunc.statusMessage(),
                               dfunc.convergence != DetectionFunction.CVInvalidScale, dfunc.isSingular(),
                               dfunc.nObs, dfunc.nParams, dfunc.loglik,
                               criteria['AIC'], criteria['AICc'], criteria['BIC'], effDist],
                         index=self.MIRunColumns)

    def success(self):

        self._wait4Results()  # First, wait for end of actual run !

        return self.dfunc.success()

    def errors(self):

        self._wait4Results()  # First, wait for end of actual run !

        return not self.dfunc.success()
