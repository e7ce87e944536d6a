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

# Common tools for automated unit, integration and validation tests

import pathlib as pl

import numpy as np
import pandas as pd

import pydisam as pds

from conftest import pLogFile


# Setup local logger
_logger = pds.logger('uiv.tst')


def setupLogger(name, level=pds.DEBUG, otherLoggers=None):
    """Create logger for tests and configure logging"""
    otherLoggers = otherLoggers or {'pds': pds.INFO2, 'pds.eng': pds.INFO, 'pds.exr': pds.INFO}
    for dLvl in [dict(name=nm, level=lvl) for nm, lvl in otherLoggers.items()] \
                + [dict(name='uiv.tst', level=level)]:
        _ = pds.logger(dLvl['name'], level=dLvl['level'])

    return pds.logger(name, level)


def logPlatform():
    """Show testing configuration (traceability)"""
    _logger.info('Testing platform:')
    for k, v in pds.runtime.items():
        if k != 'pydisam':
            _logger.info(f'* {k}: {v}')
    _logger.info(f'PyDiSam {pds.__version__} from {pl.Path(pds.__path__[0]).resolve().as_posix()}')


def logBegin(what):
    """Log beginning of tests"""
    _logger.info(f'Testing pydisam: {what} ...')
    _logger.info('Current folder: ' + pl.Path().absolute().as_posix())
    _logger.info('Computation platform:')
    for k, v in pds.runtime.items():
        _logger.info(f'* {k}: {v}')


def logEnd(what, rc=None):
    """Log end of tests"""
    sts = {-1: 'Not run', 0: 'Success', None: None}.get(rc, 'Error')
    msg = f'see {pLogFile.as_posix()}' if sts is None else f'{sts} (code: {rc})'
    _logger.info(f'Done testing pydisam: {what} => {msg}.\n')


def halfNormalDistances(n=100, sigma=50.0, seed=123, pointSurvey=False):
    """Simulated detection distances from a half-normal detection function (line transects)
    or a Rayleigh distribution (point transects: half-normal g(r) times r)"""
    rng = np.random.default_rng(seed)
    if pointSurvey:
        return rng.rayleigh(scale=sigma, size=n)
    return np.abs(rng.normal(0, sigma, size=n))


def lineSurvey(nSites=10, nDets=150, sigma=40.0, length=200.0, seed=42, withSizes=True):
    """Simulated line transect survey: (detections, sites) DataFrames,
    detections spread randomly among sites, but for the last one (no detection)"""
    rng = np.random.default_rng(seed)
    dfDets = pd.DataFrame(dict(site=rng.integers(0, nSites - 1, size=nDets),
                               distance=np.abs(rng.normal(0, sigma, size=nDets))))
    if withSizes:
        dfDets['size'] = rng.integers(1, 5, size=nDets)
    dfSites = pd.DataFrame(dict(site=np.arange(nSites), length=np.full(nSites, length)))

    return dfDets, dfSites


def pointSurvey(nSites=12, nDets=150, sigma=30.0, seed=42):
    """Simulated point transect survey: (detections, sites) DataFrames,
    with a categorical site covariate (habitat) and a numerical detection one (observer experience)"""
    rng = np.random.default_rng(seed)
    dfSites = pd.DataFrame(dict(point=[f'P{i:02d}' for i in range(nSites)],
                                habitat=['open' if i % 2 else 'forest' for i in range(nSites)]))
    sites = rng.integers(0, nSites - 1, size=nDets)
    sigmas = np.where(sites % 2, sigma * 1.5, sigma)
    dfDets = pd.DataFrame(dict(point=[f'P{i:02d}' for i in sites],
                               distance=rng.rayleigh(scale=sigmas),
                               experience=rng.uniform(0, 1, size=nDets)))

    return dfDets, dfSites
