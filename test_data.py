import numpy as np
import pytest

from dynocc.data import Covariates, DetectionData, Scaling, dump_json, load_json

nan = np.nan

# two sites, two seasons, three replicate slots; site 1 surveyed twice
y = np.array([
    [[1, 0, 0], [0, 0, 1]],
    [[0, 0, nan], [0, nan, nan]],
])

def test_shape_validation():

    with pytest.raises(ValueError):
        DetectionData(np.zeros((3, 2)))

    with pytest.raises(ValueError):
        DetectionData(np.zeros((3, 1, 2)))

    with pytest.raises(ValueError):
        DetectionData(np.full((2, 2, 2), 2.))

def test_surveys_validation():

    with pytest.raises(ValueError):
        DetectionData(y, surveys=[3, 2, 2])

    with pytest.raises(ValueError):
        DetectionData(y, surveys=[4, 2])

    # site 0 has an observation in its third slot
    with pytest.raises(ValueError):
        DetectionData(y, surveys=[2, 2])

def test_exclusion():
    data = DetectionData(y, surveys=[3, 2])

    # third slot of site 1 is beyond its survey count in every season
    for season in range(data.season_count):
        assert data.is_excluded(1, season, 2)

    # missing survey within the survey count is excluded as well
    assert data.is_excluded(1, 1, 1)
    assert not data.is_excluded(1, 1, 0)
    assert not data.is_excluded(0, 0, 2)

def test_counts():
    data = DetectionData(y, surveys=[3, 2])

    assert np.array_equal(data.detections, [[1, 1], [0, 0]])
    assert np.array_equal(data.trials, [[3, 3], [2, 1]])
    assert np.array_equal(data.detected, [[True, True], [False, False]])
    assert np.array_equal(data.filled()[1, 1], [0., 0., 0.])

def test_immutable():
    data = DetectionData(y)

    with pytest.raises(ValueError):
        data.y[0, 0, 0] = 0.

    with pytest.raises(ValueError):
        data.mask[1, 1, 2] = True

def test_scaling():
    x = np.array([100., 200., 300., np.nan])
    scaling = Scaling.fit(x)

    assert scaling.mean == 200.
    assert scaling.sd == 100.
    assert np.allclose(scaling.back_transform(scaling.transform(x[:3])), x[:3])

    with pytest.raises(ValueError):
        Scaling.fit(np.ones(4))

def test_standardize():
    rng = np.random.default_rng(3)
    covariates = Covariates(
        elevation=rng.normal(1000, 300, 50),
        forest=rng.uniform(0, 100, 50),
        date=rng.uniform(120, 200, (50, 2, 3))
    )

    standardized = covariates.standardize()

    assert np.isclose(standardized.elevation.mean(), 0.)
    assert np.isclose(standardized.elevation.std(ddof=1), 1.)
    assert np.isclose(standardized.date.mean(), 0.)

    # the constants are kept for back-transforming
    elevation = standardized.scaling['elevation'].back_transform(
        standardized.elevation
    )
    assert np.allclose(elevation, covariates.elevation)

    # standardizing twice changes nothing
    assert standardized.standardize() is standardized

def test_covariate_validation():
    data = DetectionData(y, surveys=[3, 2])
    date = np.full(y.shape, 150.)

    good = Covariates(elevation=[1., 2.], forest=[3., 4.], date=date)
    good.validate(data)

    with pytest.raises(ValueError):
        Covariates(elevation=[1., 2., 3.], forest=[3., 4.],
                   date=date).validate(data)

    # a date may be missing only where the survey is excluded
    date_missing = date.copy()
    date_missing[1, 0, 2] = np.nan
    Covariates(elevation=[1., 2.], forest=[3., 4.],
               date=date_missing).validate(data)

    date_missing[0, 0, 0] = np.nan
    with pytest.raises(ValueError):
        Covariates(elevation=[1., 2.], forest=[3., 4.],
                   date=date_missing).validate(data)

def test_json(tmp_path):
    data = DetectionData(y, surveys=[3, 2])
    covariates = Covariates(elevation=np.array([1., 2.]),
                            forest=np.array([3., 4.]),
                            date=np.full(y.shape, 150.))

    path = str(tmp_path / 'data.json')
    dump_json(path, data, covariates)
    loaded, loaded_covariates = load_json(path)

    assert np.array_equal(loaded.y, data.y, equal_nan=True)
    assert np.array_equal(loaded.surveys, data.surveys)
    assert np.array_equal(loaded_covariates.forest, covariates.forest)
