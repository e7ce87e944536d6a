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

# Submodule "data": Input detection and site data sets, truncation, covariate design and results tables

import re

import numpy as np
import pandas as pd

from . import log, runtime

runtime.update(numpy=np.__version__, pandas=pd.__version__)

logger = log.logger('pds.dat')


class DataSet:

    """A tabular data set, built from a pandas.DataFrame (copied),
    with auto-detection of "standard" columns from their names (through regexp aliases)"""

    # Possible regexps for auto-detection of standard columns (searched anywhere inside column names,
    # case ignored) ; derived classes specify them.
    FieldAliasREs = dict()

    def __init__(self, source):

        """Ctor
        :param source: the pandas.DataFrame to get data from (copied)
        """

        if not isinstance(source, pd.DataFrame):
            raise ValueError('Source for {} must be a pandas.DataFrame'.format(self.__class__.__name__))

        self._dfData = source.copy()

        if self._dfData.empty:
            logger.warning(f'No data in source {self.__class__.__name__}')

        logger.debug(f'Loaded {len(self)} x {len(self.columns)} total rows x columns in data set'
                     ' [{}]'.format('|'.join(str(c) for c in self.columns)))

    @classmethod
    def matchField(cls, srcFields, tgtField, required=True):

        """Find the first source field matching one of the alias regexps for the target standard field

        :param srcFields: source column names to search among
        :param tgtField: standard field (key in cls.FieldAliasREs)
        :param required: if True, raise KeyError when no match found ; otherwise return None
        """

        for srcField in srcFields:
            for pat in cls.FieldAliasREs[tgtField]:
                if re.search(pat, str(srcField), flags=re.IGNORECASE):
                    logger.debug1(f'* {tgtField}: matched {srcField}')
                    return srcField

        if required:
            raise KeyError('Could not find a match for expected field {} in {} columns [{}]'
                           .format(tgtField, cls.__name__, ', '.join(str(f) for f in srcFields)))

        return None

    def __len__(self):

        return len(self._dfData)

    @property
    def empty(self):

        return self._dfData.empty

    @property
    def columns(self):

        return self._dfData.columns

    @property
    def dfData(self):

        return self._dfData

    @dfData.setter
    def dfData(self, dfData_):

        raise NotImplementedError('No change allowed to data ; create a new dataset !')


class SiteDataSet(DataSet):

    """The surveyed sites: line transects (with a length) or points ; 1 row per site

    Sites with no detection must be there: they count in sample size denominators."""

    FieldAliasREs = dict(SITE=['^site', 'transect', 'point', 'lieu', 'location'],
                         LENGTH=['length', 'longueur', 'effort', 'len$'])

    def __init__(self, source, siteCol=None, lengthCol=None, pointSurvey=False):

        """Ctor

        :param source: the pandas.DataFrame of sites
        :param siteCol: name of the site id column (None => auto-detected)
        :param lengthCol: name of the transect length column (None => auto-detected ; ignored for points)
        :param pointSurvey: True for point transects, False for line transects
        """

        super().__init__(source)

        self.pointSurvey = pointSurvey
        self.siteCol = siteCol or self.matchField(self.columns, 'SITE')
        if pointSurvey:
            self.lengthCol = None
        else:
            self.lengthCol = lengthCol or self.matchField(self.columns, 'LENGTH')

        for col in [self.siteCol, self.lengthCol]:
            if col is not None and col not in self.columns:
                raise KeyError(f'No such column "{col}" in site data')

        # Check data.
        if self._dfData[self.siteCol].isnull().any():
            raise ValueError('Some site ids are missing in site data')
        dups = self._dfData[self.siteCol][self._dfData[self.siteCol].duplicated()].unique()
        if len(dups) > 0:
            raise ValueError('Site ids must be unique in site data ; duplicates: {}'
                             .format(', '.join(str(s) for s in dups[:10])))
        if self.lengthCol is not None:
            sLengths = pd.to_numeric(self._dfData[self.lengthCol], errors='coerce')
            if sLengths.isnull().any() or (sLengths <= 0).any():
                raise ValueError('Transect lengths must all be specified and > 0 for line transect surveys')
            self._dfData[self.lengthCol] = sLengths.astype(float)

        logger.info1('Site data: {} {}'.format(len(self), 'points' if pointSurvey else 'transects'))

    @property
    def siteIds(self):

        return self._dfData[self.siteCol]

    @property
    def lengths(self):

        """Transect lengths (None for points)"""

        return None if self.pointSurvey else self._dfData[self.lengthCol].to_numpy()

    def totalLength(self):

        """Total transect length (None for points)"""

        return None if self.pointSurvey else float(self._dfData[self.lengthCol].sum())

    def covariates(self, covarNames):

        """Site covariate values, 1 row per site (same order as sites)

        Missing covariate columns or values are fatal: detection probabilities can't be computed."""

        missCols = [col for col in covarNames if col not in self.columns]
        if missCols:
            raise ValueError('Missing covariate(s) [{}] in site data'.format(', '.join(missCols)))

        dfCovars = self._dfData[list(covarNames)]
        if dfCovars.isnull().any().any():
            raise ValueError('Missing values for covariate(s) [{}] in site data'
                             .format(', '.join(dfCovars.columns[dfCovars.isnull().any()])))

        return dfCovars.reset_index(drop=True)


class DetectionDataSet(DataSet):

    """The detections (1 row per detected group): distance, group size, site id, and optional covariates"""

    FieldAliasREs = dict(DISTANCE=['dist'],
                         SIZE=['size', 'group', 'nombre', 'indiv', 'count', 'effectif'],
                         SITE=['^site', 'transect', 'point', 'lieu', 'location'])

    def __init__(self, source, distCol=None, sizeCol=None, siteCol=None):

        """Ctor

        :param source: the pandas.DataFrame of detections
        :param distCol: name of the distance column (None => auto-detected ; mandatory)
        :param sizeCol: name of the group size column (None => auto-detected ; if none, size = 1)
        :param siteCol: name of the site id column (None => auto-detected ; needed for abundance estimation)
        """

        super().__init__(source)

        self.distCol = distCol or self.matchField(self.columns, 'DISTANCE')
        self.sizeCol = sizeCol or self.matchField(self.columns, 'SIZE', required=False)
        self.siteCol = siteCol or self.matchField(self.columns, 'SITE', required=False)

        for col in [self.distCol, self.sizeCol, self.siteCol]:
            if col is not None and col not in self.columns:
                raise KeyError(f'No such column "{col}" in detection data')

        # Check data.
        sDist = pd.to_numeric(self._dfData[self.distCol], errors='coerce')
        if sDist.isnull().any():
            raise ValueError('Some detection distances are missing or not numbers')
        if (sDist < 0).any():
            raise ValueError('Detection distances must be >= 0')
        self._dfData[self.distCol] = sDist.astype(float)

        if self.sizeCol is not None:
            sSizes = pd.to_numeric(self._dfData[self.sizeCol], errors='coerce')
            if sSizes.isnull().any() or (sSizes <= 0).any():
                raise ValueError('Group sizes must all be specified and > 0')
            self._dfData[self.sizeCol] = sSizes

        logger.info1(f'Detection data: {len(self)} detections')

    def _clone(self, dfData):

        """New data set of the same columns layout, from (already checked) data"""

        return DetectionDataSet(dfData, distCol=self.distCol, sizeCol=self.sizeCol, siteCol=self.siteCol)

    @property
    def distances(self):

        return self._dfData[self.distCol].to_numpy()

    @property
    def groupSizes(self):

        return np.ones(len(self)) if self.sizeCol is None else self._dfData[self.sizeCol].to_numpy(dtype=float)

    @property
    def siteIds(self):

        if self.siteCol is None:
            raise KeyError('No site id column in detection data')

        return self._dfData[self.siteCol]

    def truncated(self, truncation):

        """Detections inside the truncation bounds (included), as a new data set"""

        sbKeep = truncation.selection(self.distances)
        logger.debug(f'Truncation {truncation}: kept {sbKeep.sum()} detections out of {len(self)}')

        return self._clone(self._dfData[sbKeep].reset_index(drop=True))

    def checkSites(self, sites):

        """Check that every detection site id refers to a known site (fatal ValueError otherwise)"""

        sUnknown = ~self.siteIds.isin(sites.siteIds)
        if sUnknown.any():
            raise ValueError('Detections refer to unknown site(s): {}'
                             .format(', '.join(str(s) for s in self.siteIds[sUnknown].unique()[:10])))

    def covariates(self, covarNames, sites=None):

        """Covariate values for each detection (same row order), taken from the detection data columns,
        or else from the site data ones (through the detection site id)"""

        dCovars = dict()
        for col in covarNames:
            if col in self.columns:
                dCovars[col] = self._dfData[col].to_numpy()
            elif sites is not None and col in sites.columns:
                self.checkSites(sites)
                sSiteCovar = sites.dfData.set_index(sites.siteCol)[col]
                dCovars[col] = self.siteIds.map(sSiteCovar).to_numpy()
            else:
                raise ValueError(f'Covariate {col} found neither in detection nor in site data')

        dfCovars = pd.DataFrame(dCovars, columns=list(covarNames))
        if dfCovars.isnull().any().any():
            raise ValueError('Missing values for covariate(s) [{}] in detection data'
                             .format(', '.join(dfCovars.columns[dfCovars.isnull().any()])))

        return dfCovars


def resampleSites(detections, sites, siteIndices):

    """Build a resampled survey from given site row indices (possibly repeated) :
    each drawn site gets a new unique id (its draw rank), and carries along its detections.

    :param detections: DetectionDataSet
    :param sites: SiteDataSet
    :param siteIndices: positional indices of the drawn sites (in sites data)
    :return: tuple(DetectionDataSet, SiteDataSet) for the resample
    """

    dfSites = sites.dfData.iloc[siteIndices].reset_index(drop=True)
    origIds = dfSites[sites.siteCol].to_numpy()
    dfSites[sites.siteCol] = np.arange(len(dfSites))

    dfDetsBySite = detections.dfData.groupby(detections.siteCol, sort=False)
    ldfDets = list()
    for newId, origId in enumerate(origIds):
        if origId in dfDetsBySite.groups:
            dfDets = dfDetsBySite.get_group(origId).copy()
            dfDets[detections.siteCol] = newId
            ldfDets.append(dfDets)
    dfDets = pd.concat(ldfDets, ignore_index=True) if ldfDets else detections.dfData.iloc[0:0].copy()

    return (DetectionDataSet(dfDets, distCol=detections.distCol, sizeCol=detections.sizeCol,
                             siteCol=detections.siteCol),
            SiteDataSet(dfSites, siteCol=sites.siteCol, lengthCol=sites.lengthCol, pointSurvey=sites.pointSurvey))


class Truncation(object):

    """Distance truncation interval [wLo, wHi] : only detections inside (bounds included) are analysed"""

    def __init__(self, wLo=0, wHi=None):

        """Ctor

        Parameters:
        :param wLo: left truncation distance, if a number (None => 0),
                    or truncation itself if a (wLo, wHi) tuple/list, a dict(wLo=, wHi=) or a Truncation
        :param wHi: right truncation distance if wLo is a number, ignored otherwise

        Ex: Truncation(wLo=0, wHi=150), Truncation((10, 150)), Truncation(dict(wHi=150, wLo=0))
        """

        if isinstance(wLo, Truncation):
            wLo, wHi = wLo.wLo, wLo.wHi
        elif isinstance(wLo, (tuple, list)):
            wLo, wHi = wLo
        elif isinstance(wLo, dict):
            wLo, wHi = wLo.get('wLo', 0), wLo.get('wHi')

        self.wLo = 0.0 if wLo is None else wLo
        self.wHi = wHi

    @classmethod
    def fromDistances(cls, dist, wLo=0, wHi=None):

        """Truncation with default right bound = max. observed distance, after validation"""

        trunc = cls(wLo, wHi)
        if trunc.wHi is None:
            if len(dist) == 0:
                raise ValueError('Can\'t determine default right truncation distance without any detection')
            trunc.wHi = float(np.max(dist))

        return trunc.validate()

    def check(self):

        """Check truncation consistency ; return a string listing errors (empty if none)"""

        errors = list()

        for name, value in [('wLo', self.wLo), ('wHi', self.wHi)]:
            if value is None or not np.isscalar(value) or not np.isfinite(value):
                errors.append(f'{name}:{value} is not a finite number')
        if errors:
            return ', '.join(errors)

        if self.wLo < 0:
            errors.append(f'wLo:{self.wLo} < 0')
        if self.wHi <= self.wLo:
            errors.append(f'wHi:{self.wHi} <= wLo:{self.wLo}')

        return ', '.join(errors)

    def validate(self):

        """Raise ValueError if not consistent ; return self otherwise (for chaining)"""

        errors = self.check()
        if errors:
            raise ValueError(f'Invalid truncation distances: {errors}')

        self.wLo, self.wHi = float(self.wLo), float(self.wHi)

        return self

    def selection(self, dist):

        """Boolean mask of given distances inside the interval (bounds included)"""

        dist = np.asarray(dist, dtype=float)

        return (dist >= self.wLo) & (dist <= self.wHi)

    @property
    def width(self):

        return self.wHi - self.wLo

    def __repr__(self):

        return '[{}, {}]'.format(self.wLo, self.wHi)


def covariateLevels(dfCovars):

    """Category levels of non-numeric covariates (sorted), as a dict(name: list or None for numeric ones)"""

    return {col: None if pd.api.types.is_numeric_dtype(dfCovars[col]) and not pd.api.types.is_bool_dtype(dfCovars[col])
            else sorted(dfCovars[col].unique().tolist())
            for col in dfCovars.columns}


def designMatrix(dfCovars, covarLevels):

    """Design matrix for a log-linear model of the scale parameter:
    intercept first, then numeric covariates as is, and categorical ones as dummy columns
    (first level = reference)

    :param dfCovars: covariate values (1 row per observation / site)
    :param covarLevels: dict(name: None for numeric, or list of levels for categorical), see covariateLevels
    :return: tuple(2D np.ndarray, list of column names)
    """

    ldfCols = [pd.DataFrame({'(Intercept)': np.ones(len(dfCovars))})]
    for col, levels in covarLevels.items():
        if levels is None:
            ldfCols.append(pd.DataFrame({col: pd.to_numeric(dfCovars[col]).to_numpy(dtype=float)}))
        else:
            sCat = pd.Series(pd.Categorical(dfCovars[col].to_numpy(), categories=levels))
            if sCat.isnull().any():
                raise ValueError(f'Unknown level(s) for categorical covariate {col}')
            ldfCols.append(pd.get_dummies(sCat, prefix=col, prefix_sep='', drop_first=True, dtype=float))

    dfDesign = pd.concat(ldfCols, axis='columns')

    return dfDesign.to_numpy(dtype=float), [str(col) for col in dfDesign.columns]


class ResultsSet:

    """
    A tabular result set for some computation process repeated multiple times with different input / results,
    each process result being given as a pd.Series (1 row for the target table).

    With ability to post-compute columns (derived classes) and to sort rows.
    """

    def __init__(self, miCols, sortCols=[], sortAscend=[]):

        """Ctor

        Parameters:
        :param miCols: process results columns, in display order (a pd.MultiIndex, or a list of names)
        :param sortCols: if not empty, iterable of columns to sort values by in dfData
        :param sortAscend: sorting order for each column (iterable of bool) in dfData
        """

        assert len(sortCols) == len(sortAscend), 'sortCols and sortAscend must have same length'

        self.miCols = miCols if isinstance(miCols, pd.MultiIndex) else pd.Index(miCols)
        self.sortCols = list(sortCols)
        self.sortAscend = list(sortAscend)

        self._dfData = pd.DataFrame(columns=self.miCols)
        self.postComputed = False

        # Specifications of computations that led to the results
        self.specs = dict()

    def __len__(self):

        return len(self._dfData)

    @property
    def empty(self):

        return self._dfData.empty

    def append(self, sResult):

        """Append 1 row of results (a pd.Series indexed by columns) to the all-results table"""

        assert not self.postComputed, "Can't append after columns post-computation"
        assert isinstance(sResult, pd.Series), 'sResult : Can only append a pd.Series'

        # pd.DataFrame([sResult]) preserves types (pd.concat of a Series.to_frame().T doesn't)
        dfRow = pd.DataFrame([sResult]).reindex(columns=self.miCols)
        self._dfData = dfRow if self._dfData.empty else pd.concat([self._dfData, dfRow], ignore_index=True)

    def postComputeColumns(self):

        # Derive class to really compute things (=> work directly on self._dfData),
        pass

    def getData(self, copy=True):

        # Do post-computation and sorting if not already done.
        if not (self._dfData.empty or self.postComputed):

            self.postComputeColumns()
            self.postComputed = True

            if self.sortCols:
                self._dfData.sort_values(by=self.sortCols, ascending=self.sortAscend, inplace=True,
                                         kind='stable')

        return self._dfData.copy() if copy else self._dfData

    @property
    def dfData(self):

        return self.getData(copy=True)

    def updateSpecs(self, **specs):

        self.specs.update(specs)
