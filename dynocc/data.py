"""Detection arrays and covariates consumed by the occupancy models.

The raw survey table is reshaped by the caller. This module only checks that
the resulting arrays are well formed, marks which replicate surveys take part
in the likelihood, and standardizes covariates.

Typical usage example:

    y = np.array([[[1, 0, np.nan], [0, 0, np.nan]]])
    data = DetectionData(y, surveys=[2])
    data.is_excluded(0, 1, 2)  # True
"""
from dataclasses import dataclass
from typing import Optional

import json

import numpy as np

from dynocc.utils import NumpyEncoder

def _readonly(x: np.ndarray) -> np.ndarray:
    x = np.array(x, copy=True)
    x.setflags(write=False)
    return x

class DetectionData:
    """Detection/non-detection records indexed by (site, season, replicate).

    Attributes:
        y: float array with 0, 1, or NaN for a missing survey
        surveys: number of replicate surveys conducted at each site
        mask: True where an observation enters the likelihood
        detections: count of detections per site-season
        trials: count of usable surveys per site-season
        detected: True where the species was recorded at the site-season
    """

    def __init__(self, y, surveys=None) -> None:
        y = np.asarray(y, dtype=float)
        if y.ndim != 3:
            raise ValueError(
                f'detection array must be 3-dimensional, got shape {y.shape}'
            )

        site_count, season_count, replicate_count = y.shape
        if site_count < 1 or replicate_count < 1:
            raise ValueError('detection array needs at least one site and '
                             'one replicate survey')
        if season_count < 2:
            raise ValueError('dynamic occupancy needs at least two seasons')

        observed = ~np.isnan(y)
        if not np.isin(y[observed], (0., 1.)).all():
            raise ValueError('detections must be 0, 1, or missing (NaN)')

        # slots beyond the site's survey count are structurally excluded
        slots = np.arange(replicate_count)
        if surveys is None:
            surveys = np.full(site_count, replicate_count)
        else:
            surveys = np.asarray(surveys)
            if surveys.shape != (site_count,):
                raise ValueError(
                    f'surveys must have length {site_count}, '
                    f'got shape {surveys.shape}'
                )
            if not np.all(surveys == np.round(surveys)):
                raise ValueError('surveys must be whole numbers')
            surveys = surveys.astype(int)
            if surveys.min() < 0 or surveys.max() > replicate_count:
                raise ValueError(
                    f'surveys must lie in [0, {replicate_count}]'
                )

        within_surveys = slots[None, None, :] < surveys[:, None, None]
        inconsistent = observed & ~within_surveys
        if inconsistent.any():
            site = np.argwhere(inconsistent)[0][0]
            raise ValueError(
                f'site {site} has observations beyond its survey count '
                f'of {surveys[site]}'
            )

        mask = observed & within_surveys
        filled = np.where(mask, y, 0.)

        self.y = _readonly(y)
        self.surveys = _readonly(surveys)
        self.mask = _readonly(mask)
        self.detections = _readonly(filled.sum(axis=2).astype(int))
        self.trials = _readonly(mask.sum(axis=2))
        self.detected = _readonly(self.detections > 0)

    @property
    def shape(self):
        return self.y.shape

    @property
    def site_count(self) -> int:
        return self.y.shape[0]

    @property
    def season_count(self) -> int:
        return self.y.shape[1]

    @property
    def replicate_count(self) -> int:
        return self.y.shape[2]

    def is_excluded(self, site: int, season: int, replicate: int) -> bool:
        """Whether the observation slot is left out of the likelihood."""
        return not self.mask[site, season, replicate]

    def filled(self) -> np.ndarray:
        """Detections with excluded slots set to zero."""
        return np.where(self.mask, self.y, 0.)

@dataclass(frozen=True)
class Scaling:
    '''Constants used to standardize a covariate.'''
    mean: float
    sd: float

    def transform(self, x):
        return (np.asarray(x, dtype=float) - self.mean) / self.sd

    def back_transform(self, z):
        return np.asarray(z, dtype=float) * self.sd + self.mean

    @classmethod
    def fit(cls, x) -> 'Scaling':
        x = np.asarray(x, dtype=float)
        sd = np.nanstd(x, ddof=1)
        if not np.isfinite(sd) or sd == 0:
            raise ValueError('cannot standardize a constant covariate')
        return cls(mean=float(np.nanmean(x)), sd=float(sd))

@dataclass(frozen=True)
class Covariates:
    """Site and survey covariates for the covariate-driven model.

    Attributes:
        elevation: per-site elevation
        forest: per-site forest cover
        date: survey date for each (site, season, replicate), NaN if missing
        scaling: standardization constants, empty until standardized
    """
    elevation: np.ndarray
    forest: np.ndarray
    date: np.ndarray
    scaling: Optional[dict] = None

    def standardize(self) -> 'Covariates':
        """Return standardized covariates that retain their constants."""
        if self.scaling is not None:
            return self

        scaling = {
            'elevation': Scaling.fit(self.elevation),
            'forest': Scaling.fit(self.forest),
            'date': Scaling.fit(self.date),
        }
        return Covariates(
            elevation=scaling['elevation'].transform(self.elevation),
            forest=scaling['forest'].transform(self.forest),
            date=scaling['date'].transform(self.date),
            scaling=scaling
        )

    def validate(self, data: DetectionData) -> None:
        """Fail fast if the covariates don't line up with the detections."""
        for name in ('elevation', 'forest'):
            x = np.asarray(getattr(self, name), dtype=float)
            if x.shape != (data.site_count,):
                raise ValueError(
                    f'{name} must have shape ({data.site_count},), '
                    f'got {x.shape}'
                )
            if np.isnan(x).any():
                raise ValueError(f'{name} is missing for some sites')

        date = np.asarray(self.date, dtype=float)
        if date.shape != data.shape:
            raise ValueError(
                f'date must have shape {data.shape}, got {date.shape}'
            )
        if np.isnan(date[data.mask]).any():
            raise ValueError('survey date is missing for a used observation')

def load_json(path: str):
    """Read a dataset written by ``dump_json``.

    Returns:
        tuple of DetectionData and Covariates (None without covariates)
    """
    with open(path) as f:
        raw = json.load(f)

    y = np.array(raw['y'], dtype=float)
    data = DetectionData(y, surveys=raw.get('surveys'))

    covariates = None
    if all(k in raw for k in ('elevation', 'forest', 'date')):
        covariates = Covariates(
            elevation=np.array(raw['elevation'], dtype=float),
            forest=np.array(raw['forest'], dtype=float),
            date=np.array(raw['date'], dtype=float)
        )

    return data, covariates

def dump_json(path: str, data: DetectionData,
              covariates: Optional[Covariates] = None, **extra) -> None:
    out = {'y': data.y, 'surveys': data.surveys}
    if covariates is not None:
        out.update({'elevation': covariates.elevation,
                    'forest': covariates.forest,
                    'date': covariates.date})
    out.update(extra)
    with open(path, 'w') as f:
        json.dump(out, f, cls=NumpyEncoder)
