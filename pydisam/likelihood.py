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

# Submodule "likelihood": Detection function key functions, series expansions and likelihoods.
#
# All functions here are pure (no state), and thus safe for concurrent use.

import numpy as np
import scipy
from scipy import integrate, special

from . import log, runtime

runtime.update(scipy=scipy.__version__)

logger = log.logger('pds.lik')

# Default number of points (odd, for Simpson's rule) of the distance grid for numerical integration.
KGridSize = 201

# Floor for likelihood densities: invalid parameter zones are penalised, not fatal.
KMinDensity = 1e-12


class Series(object):

    """Series expansions for adjusting key functions: g(x) = key(x) * (1 + sum_j(a_j * h_j(u)))

    * cosine: h_j(u) = cos((j+1).pi.u), j >= 1, with u = x / wHi
    * hermite: h_j(u) = He_2(j+1)(u) (probabilists' Hermite polynomials He4, He6, ...), with u = x / sigma
    * simple: h_j(u) = u^2(j+1) (u^4, u^6, ...), with u = x / wHi
    """

    Names = ['cosine', 'hermite', 'simple']
    MaxExpansions = 5

    @classmethod
    def check(cls, series, expansions):

        if series not in cls.Names:
            raise ValueError('Invalid series {}: should be in {}'.format(series, cls.Names))
        if int(expansions) != expansions or not 0 <= expansions <= cls.MaxExpansions:
            raise ValueError('Invalid number of expansions {}: should be an integer in [0, {}]'
                             .format(expansions, cls.MaxExpansions))

    @classmethod
    def terms(cls, series, u, expansions):

        """Expansion terms h_j(u), as an array of shape u.shape + (expansions,)"""

        u = np.asarray(u, dtype=float)
        if series == 'cosine':
            lTerms = [np.cos((j + 2) * np.pi * u) for j in range(expansions)]
        elif series == 'simple':
            lTerms = [u ** (2 * j + 4) for j in range(expansions)]
        elif series == 'hermite':
            lTerms = [np.polynomial.hermite_e.hermeval(u, np.eye(2 * j + 5)[-1]) for j in range(expansions)]
        else:
            raise ValueError(f'Unsupported series {series}')

        return np.stack(lTerms, axis=-1)


class KeyFunction(object):

    """Key function of a detection function family (abstract).

    Each family provides the same capabilities: probability (g, scaled to 1 at the scaling point),
    density (the likelihood contribution), integral (over the truncation interval),
    and the parameter metadata for fitting (names, bounds, start values).

    Parameter layout: 1 scale parameter (first ; possibly a log-linear function of covariates),
    then the shape parameters of the family (if any), then the expansion coefficients (if any).
    """

    Name = None
    ScaleName = 'sigma'
    ShapeNames = []
    SupportsExpansions = True

    @classmethod
    def key(cls, x, scale, shape):

        """Unscaled key function value(s) ; x and scale broadcast together"""

        raise NotImplementedError('KeyFunction is an abstract class : implement key in a derived class')

    @classmethod
    def scalingPoint(cls, scale, shape):

        """Distance where the detection function is scaled to 1"""

        return np.zeros_like(np.asarray(scale, dtype=float))

    @classmethod
    def hermiteScale(cls, scale, shape):

        """Distance scale for Hermite expansion terms"""

        return scale

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        raise NotImplementedError('KeyFunction is an abstract class : implement startScale in a derived class')

    @classmethod
    def startShape(cls, dist, wLo, wHi, pointSurvey):

        return []

    @classmethod
    def scaleBounds(cls, wLo, wHi):

        return 1e-3 * wHi, 1e2 * wHi

    @classmethod
    def shapeBounds(cls, wLo, wHi):

        return []

    @classmethod
    def _closedIntegral(cls, scale, shape, wLo, wHi, pointSurvey):

        """Closed form of the integral of g (or x.g for points) over [wLo, wHi] without expansions,
        None if not available"""

        return None

    @classmethod
    def _unscaled(cls, x, scale, shape, expCoefs, series, wHi):

        gx = cls.key(x, scale, shape)
        if len(expCoefs) > 0:
            u = x / cls.hermiteScale(scale, shape) if series == 'hermite' else np.asarray(x) / wHi
            gx = gx * (1 + Series.terms(series, u, len(expCoefs)) @ np.asarray(expCoefs, dtype=float))

        return np.maximum(gx, 0)

    @classmethod
    def probability(cls, x, scale, shape=(), expCoefs=(), series='cosine', wHi=1.0):

        """Detection probability g(x), scaled so that g(scaling point) = 1 (x and scale broadcast together)"""

        gx = cls._unscaled(x, scale, shape, expCoefs, series, wHi)
        gScl = cls._unscaled(cls.scalingPoint(scale, shape), scale, shape, expCoefs, series, wHi)

        return gx / gScl

    @classmethod
    def integral(cls, scale, shape=(), expCoefs=(), series='cosine', wLo=0.0, wHi=1.0,
                 pointSurvey=False, gridSize=KGridSize):

        """Integral over [wLo, wHi] of g(x) (line transects) or x.g(x) (point transects) ;
        scalar if scale is, or 1 value per scale value otherwise"""

        if len(expCoefs) == 0:
            closed = cls._closedIntegral(scale, shape, wLo, wHi, pointSurvey)
            if closed is not None:
                return closed

        xs = np.linspace(wLo, wHi, gridSize)
        gxs = cls.probability(xs, np.asarray(scale, dtype=float)[..., np.newaxis], shape, expCoefs, series, wHi)
        if pointSurvey:
            gxs = gxs * xs

        return integrate.simpson(gxs, x=xs, axis=-1)

    @classmethod
    def density(cls, x, scale, shape=(), expCoefs=(), series='cosine', wLo=0.0, wHi=1.0,
                pointSurvey=False, gridSize=KGridSize):

        """Probability density of detection distances (the likelihood contributions)"""

        fx = cls.probability(x, scale, shape, expCoefs, series, wHi)
        if pointSurvey:
            fx = fx * x

        return fx / cls.integral(scale, shape, expCoefs, series, wLo, wHi, pointSurvey, gridSize)


class HalfNormal(KeyFunction):

    """g(x) = exp(-x^2 / 2.sigma^2)"""

    Name = 'halfnorm'

    @classmethod
    def key(cls, x, scale, shape):

        return np.exp(-np.square(x) / (2 * np.square(scale)))

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        # Moment estimators of the non-truncated half-normal / Rayleigh.
        return np.sqrt(np.mean(np.square(dist)) / (2 if pointSurvey else 1))

    @classmethod
    def _closedIntegral(cls, scale, shape, wLo, wHi, pointSurvey):

        sig2 = np.square(scale)
        if pointSurvey:
            return sig2 * (np.exp(-wLo ** 2 / (2 * sig2)) - np.exp(-wHi ** 2 / (2 * sig2)))

        return np.sqrt(2 * np.pi) * scale * (special.ndtr(wHi / scale) - special.ndtr(wLo / scale))


class HazardRate(KeyFunction):

    """g(x) = 1 - exp(-(x / sigma)^-beta)"""

    Name = 'hazrate'
    ShapeNames = ['beta']

    @classmethod
    def key(cls, x, scale, shape):

        # g(0) = 1 (0^-beta = inf).
        with np.errstate(divide='ignore'):
            return 1 - np.exp(-np.power(np.asarray(x, dtype=float) / scale, -shape[0]))

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        return np.median(dist)

    @classmethod
    def startShape(cls, dist, wLo, wHi, pointSurvey):

        return [2.0]

    @classmethod
    def shapeBounds(cls, wLo, wHi):

        return [(1e-2, 1e2)]


class Uniform(KeyFunction):

    """Smooth (logistic) approximation of a uniform key: g(x) = 1 / (1 + exp((x - theta) / knee))"""

    Name = 'uniform'
    ScaleName = 'theta'
    ShapeNames = ['knee']

    @classmethod
    def key(cls, x, scale, shape):

        return special.expit(-(np.asarray(x, dtype=float) - scale) / shape[0])

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        return np.percentile(dist, 90)

    @classmethod
    def startShape(cls, dist, wLo, wHi, pointSurvey):

        return [0.1 * (wHi - wLo)]

    @classmethod
    def shapeBounds(cls, wLo, wHi):

        return [(1e-3 * wHi, 1e1 * wHi)]


class NegExponential(KeyFunction):

    """g(x) = exp(-beta.x)"""

    Name = 'negexp'
    ScaleName = 'beta'

    @classmethod
    def key(cls, x, scale, shape):

        return np.exp(-scale * np.asarray(x, dtype=float))

    @classmethod
    def hermiteScale(cls, scale, shape):

        return 1 / scale

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        return (2 if pointSurvey else 1) / np.mean(dist)

    @classmethod
    def scaleBounds(cls, wLo, wHi):

        return 1e-4 / wHi, 1e3 / wHi

    @classmethod
    def _closedIntegral(cls, scale, shape, wLo, wHi, pointSurvey):

        eLo, eHi = np.exp(-scale * wLo), np.exp(-scale * wHi)
        if pointSurvey:
            return (wLo / scale + 1 / scale ** 2) * eLo - (wHi / scale + 1 / scale ** 2) * eHi

        return (eLo - eHi) / scale


class Gamma(KeyFunction):

    """g(x) = (x / m)^(r-1) . exp(-(x - m) / lambda), with mode m = (r - 1).lambda, r > 1 ;
    scaled at its mode (not at 0) ; no series expansion"""

    Name = 'Gamma'
    ScaleName = 'lambda'
    ShapeNames = ['shape']
    SupportsExpansions = False

    @classmethod
    def key(cls, x, scale, shape):

        mode = (shape[0] - 1) * scale

        # g(0) = 0 (log(0) = -inf).
        with np.errstate(divide='ignore'):
            return np.exp((shape[0] - 1) * np.log(np.asarray(x, dtype=float) / mode) - (x - mode) / scale)

    @classmethod
    def scalingPoint(cls, scale, shape):

        return (shape[0] - 1) * np.asarray(scale, dtype=float)

    @classmethod
    def startScale(cls, dist, wLo, wHi, pointSurvey):

        # Mean of a gamma(r, lambda) = r.lambda, with r = 2 (line) or 3 (point, x.g(x))
        return np.mean(dist) / (3 if pointSurvey else 2)

    @classmethod
    def startShape(cls, dist, wLo, wHi, pointSurvey):

        return [2.0]

    @classmethod
    def shapeBounds(cls, wLo, wHi):

        return [(1.01, 5e1)]


# The closed set of supported families, by tag.
KeyFunctions = {keyFn.Name: keyFn for keyFn in [HalfNormal, HazardRate, Uniform, NegExponential, Gamma]}


class DetectionModel(object):

    """A detection function model structure (family, expansions, truncation, survey type, covariate design),
    mapping parameter vectors to probabilities, effective distances and likelihoods"""

    def __init__(self, likelihood, series='cosine', expansions=0, wLo=0.0, wHi=1.0, pointSurvey=False,
                 design=None, designCols=None, gridSize=KGridSize):

        """Ctor

        Parameters:
        :param likelihood: key function family tag (see KeyFunctions)
        :param series: expansion series (see Series.Names)
        :param expansions: number of expansion terms
        :param wLo: left truncation distance
        :param wHi: right truncation distance
        :param pointSurvey: True for point transects, False for line ones
        :param design: None if no covariates, otherwise design matrix (intercept first) of the
                       log-linear model of the scale parameter, 1 row per observation
        :param designCols: design matrix column names
        :param gridSize: number of grid points for numerical integration
        """

        if likelihood not in KeyFunctions:
            raise ValueError('Invalid likelihood {}: should be in {}'.format(likelihood, list(KeyFunctions)))
        Series.check(series, expansions)
        self.keyFn = KeyFunctions[likelihood]
        if expansions > 0 and not self.keyFn.SupportsExpansions:
            raise ValueError(f'No series expansion supported for the {likelihood} likelihood')

        self.likelihood = likelihood
        self.series = series
        self.expansions = int(expansions)
        self.wLo = float(wLo)
        self.wHi = float(wHi)
        self.pointSurvey = pointSurvey
        self.design = design
        self.designCols = designCols
        self.gridSize = gridSize

    @property
    def nScaleParams(self):

        return 1 if self.design is None else self.design.shape[1]

    @property
    def nParams(self):

        return self.nScaleParams + len(self.keyFn.ShapeNames) + self.expansions

    def paramNames(self):

        scaleNames = [self.keyFn.ScaleName] if self.design is None else list(self.designCols)

        return scaleNames + list(self.keyFn.ShapeNames) + [f'a{j + 1}' for j in range(self.expansions)]

    def unpack(self, params, design=None):

        """Split a parameter vector into (scale, shape parameters, expansion coefficients) ;
        scale is 1 value per design row when covariates (log link), a scalar otherwise

        :param design: design rows to compute the scale for (default: the fitting ones)
        """

        params = np.asarray(params, dtype=float)
        nScl, nShp = self.nScaleParams, len(self.keyFn.ShapeNames)
        if self.design is None:
            scale = params[0]
        else:
            scale = np.exp((self.design if design is None else design) @ params[:nScl])

        return scale, params[nScl:nScl + nShp], params[nScl + nShp:]

    def bounds(self):

        """(min, max) bounds for each parameter (None = no bound)"""

        if self.design is None:
            scaleBounds = [self.keyFn.scaleBounds(self.wLo, self.wHi)]
        else:
            scaleBounds = [(None, None)] * self.nScaleParams

        return scaleBounds + self.keyFn.shapeBounds(self.wLo, self.wHi) + [(None, None)] * self.expansions

    def startValues(self, dist):

        """Start values for fitting: moment-like estimates for the key, 0 for covariate slopes and expansions"""

        dist = np.asarray(dist, dtype=float)
        dist = dist[dist > 0] if (dist > 0).any() else np.array([0.5 * (self.wLo + self.wHi)])

        sclMin, sclMax = self.keyFn.scaleBounds(self.wLo, self.wHi)
        scale0 = float(np.clip(self.keyFn.startScale(dist, self.wLo, self.wHi, self.pointSurvey), sclMin, sclMax))
        if self.design is None:
            scaleStart = [scale0]
        else:
            scaleStart = [np.log(scale0)] + [0.0] * (self.nScaleParams - 1)

        shapeStart = [float(np.clip(start, low, high)) for start, (low, high)
                      in zip(self.keyFn.startShape(dist, self.wLo, self.wHi, self.pointSurvey),
                             self.keyFn.shapeBounds(self.wLo, self.wHi))]

        return np.array(scaleStart + shapeStart + [0.0] * self.expansions)

    def probability(self, x, params, design=None):

        """Detection probability at distance(s) x ; with covariates, x is aligned with (or broadcast to)
        the design rows"""

        scale, shape, coefs = self.unpack(params, design)

        return self.keyFn.probability(x, scale, shape, coefs, self.series, self.wHi)

    def integral(self, params, design=None):

        scale, shape, coefs = self.unpack(params, design)

        return self.keyFn.integral(scale, shape, coefs, self.series, self.wLo, self.wHi,
                                   self.pointSurvey, self.gridSize)

    def density(self, x, params, design=None):

        scale, shape, coefs = self.unpack(params, design)

        return self.keyFn.density(x, scale, shape, coefs, self.series, self.wLo, self.wHi,
                                  self.pointSurvey, self.gridSize)

    def effectiveDistance(self, params, design=None):

        """Effective strip width (lines) = integral of g over [wLo, wHi],
        or effective detection radius (points) = sqrt(2 * integral of x.g(x) over [wLo, wHi])"""

        integ = self.integral(params, design)

        return np.sqrt(2 * integ) if self.pointSurvey else integ

    def negLogLikelihood(self, params, dist):

        """Negative log-likelihood of the detection distances (truncated ones, already selected) ;
        penalised (density floor) rather than infinite in invalid parameter zones"""

        fx = self.density(dist, params)
        fx = np.where(np.isfinite(fx) & (fx > KMinDensity), fx, KMinDensity)

        return -np.sum(np.log(fx))


def negLogLikelihood(params, dist, likelihood, series='cosine', expansions=0, wLo=0.0, wHi=1.0,
                     pointSurvey=False, design=None, gridSize=KGridSize):

    """Functional shortcut to DetectionModel(...).negLogLikelihood(params, dist)"""

    return DetectionModel(likelihood, series, expansions, wLo, wHi, pointSurvey,
                          design=design, gridSize=gridSize).negLogLikelihood(params, dist)
