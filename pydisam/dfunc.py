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

# Submodule "dfunc": Fitted detection functions, and derived effective strip width / detection radius

import numpy as np
import pandas as pd
from scipy import stats

from . import log
from .likelihood import DetectionModel, KGridSize
from .data import designMatrix

logger = log.logger('pds.dfn')


class DetectionFunction(object):

    """A fitted detection function (output of CDSEngine.fit / estimate) ; immutable once created.

    Holds the model structure (likelihood, series, expansions, truncation, survey type, covariates),
    the estimated parameters with their variance-covariance matrix, the maximised log-likelihood
    and the fit convergence diagnostic ; ESW / EDR and detection probabilities are re-derived on demand.
    """

    # Convergence codes.
    CVSuccess = 0
    CVMaxIter = 1        # Iteration limit reached
    CVInvalidScale = 2   # ESW / EDR > right truncation distance
    CVBoundary = -1      # Some parameter(s) at a bound
    CVFailed = 52        # Optimizer error, not enough data, numerical exception

    CVMessages = {CVSuccess: 'Success',
                  CVMaxIter: 'Iteration limit reached',
                  CVInvalidScale: 'Invalid scale: effective distance > right truncation distance',
                  CVBoundary: 'Parameter(s) at a boundary of their search interval',
                  CVFailed: 'Fit failed'}

    # Status narration.
    StatusSuccess = 'success'
    StatusUnreliable = 'unreliable'
    StatusFailure = 'failure'

    Criteria = ['AICc', 'AIC', 'BIC']

    def __init__(self, likelihood, series, expansions, wLo, wHi, pointSurvey, params, varcovar=None,
                 loglik=np.nan, convergence=CVSuccess, message='', dist=None, nObs=None,
                 dfCovars=None, covarLevels=None, gridSize=KGridSize, elapsedTime=None):

        """Ctor

        Parameters:
        :param likelihood: key function family tag
        :param series: expansion series tag
        :param expansions: number of expansion terms
        :param wLo: left truncation distance
        :param wHi: right truncation distance
        :param pointSurvey: True for point transects, False for line ones
        :param params: estimated parameters (see DetectionModel for layout)
        :param varcovar: variance-covariance matrix of params (None or NaN-filled when singular)
        :param loglik: maximised log-likelihood
        :param convergence: convergence code (see CV* class constants)
        :param message: optimizer / fit message
        :param dist: fitted (truncated) distances, if available
        :param nObs: number of fitted distances (ignored if dist is given)
        :param dfCovars: per-observation covariate values (None if no covariates)
        :param covarLevels: dict(covariate name: None for numeric, levels list for categorical) ;
                            None if no covariates
        :param gridSize: number of grid points for numerical integration
        :param elapsedTime: fit duration (s)
        """

        self.dist = None if dist is None else np.asarray(dist, dtype=float)
        self.nObs = len(self.dist) if self.dist is not None else int(nObs or 0)
        self.covarLevels = covarLevels if covarLevels else None
        self.covarNames = list(self.covarLevels.keys()) if self.covarLevels else []
        self.dfCovars = dfCovars if self.covarLevels else None

        design, designCols = None, None
        if self.covarLevels:
            if self.dfCovars is not None:
                design, designCols = designMatrix(self.dfCovars, self.covarLevels)
            else:  # Only column names needed (params layout)
                designCols = self._designColumns(self.covarLevels)
                design = np.zeros((0, len(designCols)))
        self.model = DetectionModel(likelihood, series, expansions, wLo, wHi, pointSurvey,
                                    design=design, designCols=designCols, gridSize=gridSize)

        self.params = np.array(params, dtype=float)
        assert len(self.params) == self.model.nParams, \
               'Expecting {} parameters, not {}'.format(self.model.nParams, len(self.params))
        nParams = len(self.params)
        self.varcovar = np.full((nParams, nParams), np.nan) if varcovar is None else np.array(varcovar, dtype=float)
        self.loglik = float(loglik)
        self.convergence = int(convergence)
        self.message = message or self.CVMessages.get(self.convergence, '')
        self.elapsedTime = elapsedTime

        for arr in [self.params, self.varcovar]:
            arr.setflags(write=False)

    @staticmethod
    def _designColumns(covarLevels):

        cols = ['(Intercept)']
        for col, levels in covarLevels.items():
            cols += [col] if levels is None else [f'{col}{lvl}' for lvl in levels[1:]]

        return cols

    # Model structure accessors.
    @property
    def likelihood(self):
        return self.model.likelihood

    @property
    def series(self):
        return self.model.series

    @property
    def expansions(self):
        return self.model.expansions

    @property
    def wLo(self):
        return self.model.wLo

    @property
    def wHi(self):
        return self.model.wHi

    @property
    def pointSurvey(self):
        return self.model.pointSurvey

    @property
    def gridSize(self):
        return self.model.gridSize

    @property
    def nParams(self):
        return self.model.nParams

    @property
    def paramNames(self):
        return self.model.paramNames()

    def hasCovariates(self):

        return bool(self.covarNames)

    def coef(self):

        return pd.Series(self.params, index=self.paramNames)

    def isSingular(self):

        """True if the variance-covariance matrix couldn't be computed (singular Hessian)"""

        return not np.isfinite(self.varcovar).all()

    def success(self):

        return self.convergence == self.CVSuccess

    def status(self):

        if not self.success():
            return self.StatusFailure

        return self.StatusUnreliable if self.isSingular() else self.StatusSuccess

    def statusMessage(self):

        msg = self.message
        if self.success() and self.isSingular():
            msg += ' ; FAILURE (singular variance-covariance matrix): unreliable standard errors'

        return msg

    # Scaling point and detection probability there.
    @property
    def xScl(self):

        scale, shape, _ = self.model.unpack(self.params, self._design(self._sclCovars()))

        return float(np.mean(self.model.keyFn.scalingPoint(scale, shape)))

    @property
    def gXScl(self):

        return 1.0

    def _sclCovars(self):

        return None if not self.hasCovariates() else self._defaultCovars().iloc[:1]

    def _defaultCovars(self):

        if self.dfCovars is None:
            raise ValueError('No covariate values available: please specify some')

        return self.dfCovars

    def _design(self, dfCovars):

        """Design matrix rows for given covariates (None if no covariates in model)"""

        if not self.hasCovariates():
            return None

        return designMatrix(self._defaultCovars() if dfCovars is None else dfCovars, self.covarLevels)[0]

    def linearPredictor(self, dfCovars=None):

        """Log-scale parameter, 1 value per covariate row (default: fitted observations) ;
        None if no covariates"""

        if not self.hasCovariates():
            return None

        return self._design(dfCovars) @ self.params[:self.model.nScaleParams]

    def probability(self, x, dfCovars=None):

        """Detection probability g(x) at given distances (with covariates: for given covariate rows,
        1 row per distance, or 1 row for all)"""

        return self.model.probability(np.asarray(x, dtype=float), self.params, self._design(dfCovars))

    def effectiveDistance(self, dfCovars=None):

        """Effective strip width (lines) or effective detection radius (points):
        a scalar without covariates, 1 value per covariate row otherwise (default: fitted observations)"""

        esw = self.model.effectiveDistance(self.params, self._design(dfCovars))

        return float(esw) if np.ndim(esw) == 0 else esw

    def effDistToProbability(self, esw):

        """Detection probability inside the truncation interval from effective distance(s)"""

        if self.pointSurvey:
            return np.square(esw) / (self.wHi ** 2 - self.wLo ** 2)

        return esw / (self.wHi - self.wLo)

    def detectionProbability(self, dfCovars=None):

        return self.effDistToProbability(self.effectiveDistance(dfCovars))

    def scaleOk(self):

        """False if the effective distance(s) exceed the right truncation distance
        (the sign of a fit gone astray: the detection function increases with distance)"""

        esw = np.asarray(self.effectiveDistance(), dtype=float)

        return bool(np.isfinite(esw).all() and (esw <= self.wHi).all())

    # Information criteria.
    def aic(self, criterion='AICc'):

        assert criterion in self.Criteria, f'Invalid criterion {criterion}: should be in {self.Criteria}'

        n, k = self.nObs, self.nParams
        if criterion == 'AIC':
            return -2 * self.loglik + 2 * k
        elif criterion == 'AICc':
            if n - k - 1 <= 0:
                return np.inf
            return -2 * self.loglik + 2 * k + 2 * k * (k + 1) / (n - k - 1)

        return -2 * self.loglik + k * np.log(n) if n > 0 else np.inf

    def criteria(self):

        return {crit: self.aic(crit) for crit in self.Criteria}

    def coefTable(self):

        """Wald table of parameters: estimate, standard error, z value, p-value"""

        se = np.sqrt(np.diag(self.varcovar))
        with np.errstate(divide='ignore', invalid='ignore'):
            zVals = self.params / se

        return pd.DataFrame({'Estimate': self.params, 'SE': se, 'z': zVals, 'p(>|z|)': 2 * stats.norm.sf(np.abs(zVals))},
                            index=self.paramNames)

    def summary(self):

        """Main model features and results as a pd.Series"""

        esw = self.effectiveDistance() if not self.hasCovariates() or self.dfCovars is not None else np.nan
        sSum = pd.Series({'Likelihood': self.likelihood, 'Series': self.series if self.expansions else None,
                          'Expansions': self.expansions, 'LeftTrunc': self.wLo, 'RightTrunc': self.wHi,
                          'Survey': 'Point' if self.pointSurvey else 'Line',
                          'Covariates': ','.join(self.covarNames) or None,
                          'NObs': self.nObs, 'NParams': self.nParams, 'LogLik': self.loglik,
                          'Convergence': self.convergence, 'Status': self.status(),
                          'Message': self.statusMessage(),
                          'EffDist': np.mean(esw), 'XScl': self.xScl if np.isfinite(esw).all() else np.nan})
        sSum = pd.concat([sSum, pd.Series(self.criteria())])

        return pd.concat([sSum, self.coef()])

    # Persistence (ESW / EDR and abundance can be re-derived without refit).
    def toDict(self, withData=False):

        dModel = dict(likelihood=self.likelihood, series=self.series, expansions=self.expansions,
                      wLo=self.wLo, wHi=self.wHi, pointSurvey=self.pointSurvey,
                      params=self.params.tolist(), paramNames=self.paramNames,
                      varcovar=self.varcovar.tolist(), loglik=self.loglik,
                      convergence=self.convergence, message=self.message, nObs=self.nObs,
                      covarLevels=self.covarLevels, gridSize=self.gridSize)
        if withData:
            dModel.update(dist=None if self.dist is None else self.dist.tolist(),
                          covars=None if self.dfCovars is None else self.dfCovars.to_dict(orient='list'))

        return dModel

    @classmethod
    def fromDict(cls, dModel):

        dfCovars = dModel.get('covars')
        if dfCovars is not None:
            dfCovars = pd.DataFrame(dfCovars)

        return cls(likelihood=dModel['likelihood'], series=dModel['series'], expansions=dModel['expansions'],
                   wLo=dModel['wLo'], wHi=dModel['wHi'], pointSurvey=dModel['pointSurvey'],
                   params=dModel['params'], varcovar=dModel['varcovar'], loglik=dModel['loglik'],
                   convergence=dModel['convergence'], message=dModel['message'],
                   dist=dModel.get('dist'), nObs=dModel['nObs'], dfCovars=dfCovars,
                   covarLevels=dModel.get('covarLevels'), gridSize=dModel.get('gridSize', KGridSize))

    def __repr__(self):

        return '{}({}{}, w=[{}, {}], {}, {})' \
               .format(self.__class__.__name__, self.likelihood,
                       f'+{self.expansions}x{self.series}' if self.expansions else '',
                       self.wLo, self.wHi, 'point' if self.pointSurvey else 'line', self.status())


def effectiveDistance(dfunc, dfCovars=None):

    """Effective strip width (line transects) or effective detection radius (point transects)
    of a fitted detection function (see DetectionFunction.effectiveDistance)"""

    return dfunc.effectiveDistance(dfCovars)
