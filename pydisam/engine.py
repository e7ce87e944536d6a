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

# Submodule "engine": DS engines, for fitting detection functions to distance data

import copy
import contextlib

from collections import namedtuple as ntuple

import numpy as np
import pandas as pd
from scipy.optimize import minimize

from . import log

logger = log.logger('pds.eng', level=log.INFO)  # Initial config (can be changed later)

from .executor import Executor
from .data import DetectionDataSet, SiteDataSet, Truncation, covariateLevels, designMatrix
from .likelihood import DetectionModel, KeyFunctions, Series, KGridSize
from .dfunc import DetectionFunction


# DSEngine (abstract) classes.
# An engine for running multiple DS fits with same options (engine ctor params),
# but various parameters (fit / estimate parameters), possibly as parallel threads / processes.
# Warning: No option change allowed while submitted fits are running.
class DSEngine:

    # Possible values for options.
    SurveyTypes = ['Line', 'Point']
    DistUnits = ['Meter', 'Kilometer', 'Mile', 'Inch', 'Feet', 'Yard', 'Nautical mile']
    AreaUnits = ['Hectare', 'Acre'] + ['Sq. ' + distUnit for distUnit in DistUnits]

    def __init__(self, executor=None, surveyType='Line', distanceUnit='Meter', areaUnit='Hectare', **options):

        """Ctor
        :param executor: Executor object to use (None => a sequential one will be auto-generated)
        :param surveyType: 'Line' (line transects, perpendicular distances)
                           or 'Point' (point transects, radial distances)
        :param distanceUnit: unit of distances (informative only: no conversion)
        :param areaUnit: unit of areas (informative only: no conversion)
        """

        # Check base options
        assert surveyType in self.SurveyTypes, \
               'Invalid survey type {}: should be in {}'.format(surveyType, self.SurveyTypes)
        assert distanceUnit in self.DistUnits, \
               'Invalid distance unit {}: should be in {}'.format(distanceUnit, self.DistUnits)
        assert areaUnit in self.AreaUnits, \
               'Invalid area unit {}: should be in {}'.format(areaUnit, self.AreaUnits)

        # Save specific options (as a named tuple for easier use through dot operator).
        options = copy.deepcopy(options)
        options.update(surveyType=surveyType, distanceUnit=distanceUnit, areaUnit=areaUnit)
        self.options = ntuple('Options', options.keys())(**options)

        # Set executor for submitEstimate().
        self.ownExecutor = executor is None
        self.executor = executor if executor is not None else Executor()

    @property
    def pointSurvey(self):

        return self.options.surveyType == 'Point'

    # No executor in pickled engines (process pools): tasks run where they are.
    def __getstate__(self):

        state = self.__dict__.copy()
        state.update(executor=None, ownExecutor=False)
        state['options'] = self.options._asdict()

        return state

    def __setstate__(self, state):

        state = state.copy()
        state['options'] = ntuple('Options', state['options'].keys())(**state['options'])
        self.__dict__.update(state)

    # Context for running numerics (silenced floating point warnings if quiet option) ;
    # No warnings filter change: process wide, not thread safe.
    @contextlib.contextmanager
    def numericsContext(self):

        if not self.options.quiet:
            yield
            return

        with np.errstate(all='ignore'):
            yield

    # Shutdown : release any used resource (but a user-provided executor).
    # Post-condition: Instance can no more submit fits.
    def shutdown(self, executor=True):

        if executor and getattr(self, 'ownExecutor', False) and getattr(self, 'executor', None) is not None:
            self.executor.shutdown()
        self.executor = None

    def __del__(self):

        self.shutdown()


# CDS engine (Conventional Distance Sampling, with optional covariates: MCDS like)
class CDSEngine(DSEngine):

    # Possible values for fit parameters.
    Likelihoods = list(KeyFunctions.keys())
    SeriesNames = list(Series.Names)

    # Fit parameter default values.
    LikelihoodDef = 'halfnorm'
    SeriesDef = 'cosine'
    ExpansionsDef = 0

    # Minimal number of fitted distances (whatever the number of parameters).
    KMinObs = 2

    # Relative step for finite-difference Hessian computation.
    KHessianRelStep = 1e-3

    def __init__(self, executor=None, surveyType='Line', distanceUnit='Meter', areaUnit='Hectare',
                 gridSize=KGridSize, maxIter=500, quiet=True):

        """Ctor
        :param executor: Executor object to use (None => a sequential one will be auto-generated)
        :param surveyType: 'Line' or 'Point'
        :param distanceUnit: unit of distances (informative)
        :param areaUnit: unit of areas (informative)
        :param gridSize: number of grid points for numerical integration (odd, >= 3)
        :param maxIter: optimizer iteration limit
        :param quiet: if True, floating point warnings are silenced during fits
        """

        assert gridSize >= 3 and gridSize % 2 == 1, f'Invalid grid size {gridSize}: should be odd and >= 3'
        assert maxIter > 0, f'Invalid iteration limit {maxIter}: should be > 0'

        super().__init__(executor=executor, surveyType=surveyType,
                         distanceUnit=distanceUnit, areaUnit=areaUnit,
                         gridSize=gridSize, maxIter=maxIter, quiet=quiet)

    # Central finite-difference Hessian of a scalar function at given point.
    @classmethod
    def hessian(cls, func, x):

        x = np.asarray(x, dtype=float)
        steps = cls.KHessianRelStep * np.maximum(np.abs(x), 1e-1)
        nDim = len(x)
        hess = np.empty((nDim, nDim))
        fx = func(x)
        for i in range(nDim):
            ei = np.zeros(nDim)
            ei[i] = steps[i]
            hess[i, i] = (func(x + ei) - 2 * fx + func(x - ei)) / steps[i] ** 2
            for j in range(i):
                ej = np.zeros(nDim)
                ej[j] = steps[j]
                hess[i, j] = hess[j, i] = \
                    (func(x + ei + ej) - func(x + ei - ej) - func(x - ei + ej) + func(x - ei - ej)) \
                    / (4 * steps[i] * steps[j])

        return hess

    # Variance-covariance matrix of parameters from the Hessian of the negative log-likelihood ;
    # NaN-filled if not invertible or not positive definite.
    @classmethod
    def varCovar(cls, func, params):

        nParams = len(params)
        hess = cls.hessian(func, params)
        if np.isfinite(hess).all():
            try:
                varcovar = np.linalg.inv(hess)
                if np.isfinite(varcovar).all() and (np.diag(varcovar) > 0).all():
                    return varcovar
            except np.linalg.LinAlgError as exc:
                logger.debug(f'Singular Hessian: {exc}')

        return np.full((nParams, nParams), np.nan)

    # Check that parameters are at (one of) their bounds.
    @staticmethod
    def atBoundary(params, bounds):

        for value, (low, high) in zip(params, bounds):
            for bound in [low, high]:
                if bound is not None and np.isclose(value, bound, rtol=1e-6, atol=1e-10):
                    return True

        return False

    def fit(self, dist, likelihood=LikelihoodDef, series=SeriesDef, expansions=ExpansionsDef,
            wLo=0, wHi=None, dfCovars=None, covarLevels=None, start=None):

        """Fit a detection function to distances, by maximum likelihood

        Note: Fit failures are not raised, but reported through the convergence code of the returned model.

        Parameters:
        :param dist: detection distances (any iterable of numbers)
        :param likelihood: key function family (see Likelihoods)
        :param series: series expansion (see SeriesNames)
        :param expansions: number of series expansion terms
        :param wLo: left truncation distance
        :param wHi: right truncation distance (None => max. distance)
        :param dfCovars: None, or covariate values for each distance (same order, even outside truncation)
        :param covarLevels: None (=> auto from dfCovars), or levels of categorical covariates
                            (see data.covariateLevels)
        :param start: None (=> auto), or parameter start values
        :return: DetectionFunction
        """

        # Check and select data.
        if likelihood not in self.Likelihoods:
            raise ValueError('Invalid likelihood {}: should be in {}'.format(likelihood, self.Likelihoods))
        dist = np.asarray(dist, dtype=float)
        if dfCovars is not None and len(dfCovars) != len(dist):
            raise ValueError('Covariate values must be given for each distance')
        trunc = Truncation.fromDistances(dist, wLo, wHi)

        sbKeep = trunc.selection(dist)
        dist = dist[sbKeep]
        design, designCols = None, None
        if dfCovars is not None and len(dfCovars.columns) > 0:
            dfCovars = dfCovars[sbKeep].reset_index(drop=True)
            if covarLevels is None:
                covarLevels = covariateLevels(dfCovars)
            design, designCols = designMatrix(dfCovars, covarLevels)
        else:
            dfCovars, covarLevels = None, None

        model = DetectionModel(likelihood, series, expansions, trunc.wLo, trunc.wHi, self.pointSurvey,
                               design=design, designCols=designCols, gridSize=self.options.gridSize)

        logger.info2('Fitting {} / {} x {} on {} distances in {}{}'
                     .format(likelihood, expansions, series, len(dist), trunc,
                             ' with covariates ' + ', '.join(covarLevels) if covarLevels else ''))

        startTime = pd.Timestamp.now()

        def detFunc(params, varcovar=None, loglik=np.nan, convergence=DetectionFunction.CVSuccess, message=''):
            return DetectionFunction(likelihood, series, expansions, trunc.wLo, trunc.wHi, self.pointSurvey,
                                     params, varcovar=varcovar, loglik=loglik, convergence=convergence,
                                     message=message, dist=dist, dfCovars=dfCovars, covarLevels=covarLevels,
                                     gridSize=self.options.gridSize,
                                     elapsedTime=(pd.Timestamp.now() - startTime).total_seconds())

        x0 = np.asarray(start, dtype=float) if start is not None else model.startValues(dist)
        assert len(x0) == model.nParams, f'Expecting {model.nParams} start values, not {len(x0)}'

        # Not enough data => failure.
        if len(dist) < max(self.KMinObs, model.nParams):
            msg = f'Not enough detections ({len(dist)}) for {model.nParams} parameter(s)'
            logger.warning(msg)
            return detFunc(x0, convergence=DetectionFunction.CVFailed, message=msg)

        # Optimise in a scaled parameter space (all values near 1).
        typParams = np.where(np.abs(x0) > 1, np.abs(x0), 1.0)
        scaledNegLogLik = lambda z: model.negLogLikelihood(z * typParams, dist)
        bounds = model.bounds()
        scaledBounds = [(None if low is None else low / typ, None if high is None else high / typ)
                        for (low, high), typ in zip(bounds, typParams)]

        with self.numericsContext():

            try:
                res = minimize(scaledNegLogLik, x0 / typParams, method='L-BFGS-B', bounds=scaledBounds,
                               options=dict(maxiter=self.options.maxIter))
            except (ValueError, ArithmeticError, np.linalg.LinAlgError) as exc:
                msg = f'Optimizer error: {exc}'
                logger.warning(msg)
                return detFunc(x0, convergence=DetectionFunction.CVFailed, message=msg)

            params = res.x * typParams
            loglik = -res.fun
            message = str(res.message)

            # Convergence diagnostic.
            if res.status == 0:
                convergence = DetectionFunction.CVSuccess
            elif res.status == 1:
                convergence = DetectionFunction.CVMaxIter
            elif res.status == 2 and np.all(np.abs(res.jac) < 1e-3 * max(1.0, abs(res.fun))):
                convergence = DetectionFunction.CVSuccess  # Line search stalled at the optimum
            else:
                convergence = DetectionFunction.CVFailed
            if not np.isfinite(loglik) or not np.isfinite(params).all():
                convergence = DetectionFunction.CVFailed
            elif convergence == DetectionFunction.CVSuccess and self.atBoundary(params, bounds):
                convergence = DetectionFunction.CVBoundary
                message = DetectionFunction.CVMessages[convergence]

            varcovar = None
            try:
                if convergence != DetectionFunction.CVFailed:
                    varcovar = self.varCovar(lambda p: model.negLogLikelihood(p, dist), params)

                dfunc = detFunc(params, varcovar=varcovar, loglik=loglik, convergence=convergence,
                                message=message)

                if dfunc.success() and not dfunc.scaleOk():
                    dfunc = detFunc(params, varcovar=varcovar, loglik=loglik,
                                    convergence=DetectionFunction.CVInvalidScale)
            except (ValueError, ArithmeticError, np.linalg.LinAlgError) as exc:
                msg = f'Post-fit computation error: {exc}'
                logger.warning(msg)
                return detFunc(params, loglik=loglik, convergence=DetectionFunction.CVFailed, message=msg)

        logger.info1('{} fit: code {} ({}), logLik={:.3f}, {} params in {:.2f}s'
                     .format(likelihood, dfunc.convergence, dfunc.statusMessage(), dfunc.loglik,
                             dfunc.nParams, dfunc.elapsedTime))

        return dfunc

    def estimate(self, detections, sites=None, likelihood=LikelihoodDef, series=SeriesDef,
                 expansions=ExpansionsDef, wLo=0, wHi=None, covars=None, covarLevels=None, start=None):

        """Fit a detection function to detection data (and site data for site covariates)

        Parameters:
        :param detections: DetectionDataSet (or pd.DataFrame, see DetectionDataSet)
        :param sites: None, or SiteDataSet (or pd.DataFrame, see SiteDataSet), only for site covariates
        :param covars: None, or list of covariate names (columns of detections or sites)
        :param others: see fit()
        :return: DetectionFunction
        """

        if not isinstance(detections, DetectionDataSet):
            detections = DetectionDataSet(detections)
        if sites is not None and not isinstance(sites, SiteDataSet):
            sites = SiteDataSet(sites, pointSurvey=self.pointSurvey)

        trunc = Truncation.fromDistances(detections.distances, wLo, wHi)
        detections = detections.truncated(trunc)

        dfCovars = detections.covariates(covars, sites) if covars else None

        return self.fit(detections.distances, likelihood=likelihood, series=series, expansions=expansions,
                        wLo=trunc.wLo, wHi=trunc.wHi, dfCovars=dfCovars, covarLevels=covarLevels, start=start)

    def refit(self, dfunc, detections, sites=None, start=None):

        """Fit the model of an existing detection function to (other) detection data,
        with same truncation and covariate levels"""

        return self.estimate(detections, sites, likelihood=dfunc.likelihood, series=dfunc.series,
                             expansions=dfunc.expansions, wLo=dfunc.wLo, wHi=dfunc.wHi,
                             covars=dfunc.covarNames or None, covarLevels=dfunc.covarLevels, start=start)

    # Run 1 fit from the beginning to the end (blocking for the calling thread)
    def _runEstimate(self, detections, sites=None, **estimParams):

        startTime = pd.Timestamp.now()

        dfunc = self.estimate(detections, sites, **estimParams)

        return dfunc, startTime, (pd.Timestamp.now() - startTime).total_seconds()

    # Start running a fit, using the executor (possibly asynchronously if it is not a sequential one)
    # Returns a Future object to ask from and wait for (dfunc, start time, elapsed time)
    def submitEstimate(self, detections, sites=None, **estimParams):

        assert self.executor is not None, 'Can\'t submit after shutdown'

        return self.executor.submit(self._runEstimate, detections, sites, **estimParams)
