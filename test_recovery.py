import numpy as np
import pytest

from dynocc.chain import sample
from dynocc.check import check
from dynocc.data import DetectionData
from dynocc.diagnostics import gelman_rubin
from dynocc.model import CovariateModel, build_model
from dynocc.simulate import Simulator, default_params
from dynocc.utils import bayesian_p_value

truth = {'psi': 0.6, 'phi': 0.8, 'gamma': 0.2, 'p': 0.5}

class TestNullRecovery:

    simulator = Simulator(seed=2024)
    results = simulator.simulate('null', truth, site_count=1000,
                                 season_count=5, replicate_count=3)
    model = build_model('null', results['data'])
    samples = sample(model, chains=2, adapt=0, burn=200, draws=400, seed=1)

    def test_posterior_means(self):

        for name, value in truth.items():
            estimate = self.samples.parameter(name).mean()
            assert np.isclose(estimate, value, atol=0.05), name

    def test_convergence(self):

        for name in truth:
            rhat, _ = gelman_rubin(self.samples.parameter(name))
            assert rhat <= 1.1, name

    def test_posterior_predictive(self):
        results = check(self.samples, self.model, seed=5)

        p_value = bayesian_p_value(results['freeman_tukey_new'],
                                   results['freeman_tukey_observed'])

        assert 0.01 < p_value < 0.99

    def test_agrees_with_mle(self):
        mle = self.model.estimate_mle()

        for name in truth:
            estimate = self.samples.parameter(name).mean()
            assert np.isclose(estimate, mle.loc[name, 'estimate'], atol=0.02)

    def test_realized_occupancy(self):
        n_occ = self.samples.parameter('n_occ').mean(axis=(0, 1))
        realized = self.results['z'].mean(axis=0)

        assert np.allclose(n_occ, realized, atol=0.05)

@pytest.mark.slow
def test_interval_coverage():
    simulator = Simulator(seed=99)
    covered = {name: [] for name in truth}

    for i in range(40):
        results = simulator.simulate('null', truth, site_count=200,
                                     season_count=4, replicate_count=3)
        model = build_model('null', results['data'])
        samples = sample(model, chains=2, adapt=0, burn=100, draws=250,
                         seed=i)

        for name, value in truth.items():
            draws = samples.parameter(name).ravel()
            lower, upper = np.quantile(draws, [0.025, 0.975])
            covered[name].append(lower <= value <= upper)

    # 95% intervals should cover the truth in nearly every replicate
    for name in truth:
        assert np.mean(covered[name]) >= 0.85, name

def test_dynamic_recovery():
    simulator = Simulator(seed=31)
    params = default_params('dynamic', truth, 4)
    results = simulator.simulate('dynamic', params, site_count=800,
                                 season_count=4, replicate_count=3)
    model = build_model('dynamic', results['data'])
    samples = sample(model, chains=2, adapt=0, burn=200, draws=300, seed=31)

    assert np.allclose(samples.parameter('phi').mean(axis=(0, 1)), params['phi'],
                       atol=0.08)
    assert np.allclose(samples.parameter('p').mean(axis=(0, 1)), params['p'],
                       atol=0.08)

def test_covariate_recovery():
    simulator = Simulator(seed=41)
    params = default_params('covariate', truth, 4)
    results = simulator.simulate('covariate', params, site_count=600,
                                 season_count=4, replicate_count=3)
    model = CovariateModel(results['data'], results['covariates'])
    samples = sample(model, chains=2, adapt=300, burn=300, draws=300, seed=41,
                     tune_interval=50)

    # the detection coefficients are the best informed
    p_beta = samples.parameter('p_beta').mean(axis=(0, 1))
    assert np.allclose(p_beta, params['p_beta'], atol=0.3)

@pytest.mark.parametrize('name', ['null', 'dynamic', 'covariate'])
def test_small_dataset(name):
    # five sites, three seasons, two replicates, one site never detected
    y = np.array([
        [[1, 1], [1, 0], [0, 1]],
        [[0, 1], [0, 0], [0, 0]],
        [[0, 0], [1, 0], [0, 0]],
        [[0, 0], [0, 0], [0, 0]],
        [[0, 0], [0, 0], [1, 1]],
    ])
    data = DetectionData(y)
    simulator = Simulator(seed=8)
    covariates = simulator.simulate_covariates(5, 3, 2)
    model = build_model(name, data, covariates)

    samples = sample(model, chains=2, adapt=50, burn=100, draws=200, seed=8,
                     tune_interval=25)
    latent_mean = samples.latent_mean()

    # site 3 is never forced, site 0 always is
    assert not data.detected[3].any()
    assert (latent_mean[0] == 1).all()
    assert latent_mean[3].mean() < latent_mean[0].mean()
