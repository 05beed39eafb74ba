import numpy as np
import pytest

from dynocc.chain import Chain, ChainState, PosteriorSamples, sample
from dynocc.model import build_model
from dynocc.simulate import Simulator, default_params

truth = {'psi': 0.6, 'phi': 0.8, 'gamma': 0.2, 'p': 0.5}

def simulate_model(name, site_count=30, season_count=3, replicate_count=2,
                   seed=1):
    simulator = Simulator(seed)
    params = default_params(name, truth, season_count)
    results = simulator.simulate(name, params, site_count, season_count,
                                 replicate_count)
    return build_model(name, results['data'], results['covariates'])

def test_phases():
    model = simulate_model('null')
    chain = Chain(model, seed=3, adapt=3, burn=4, draws=10, thin=2)

    assert chain.state is ChainState.UNINITIALIZED

    chain.run(max_sweeps=5)
    assert chain.state is ChainState.BURNING_IN
    assert len(chain.draws) == 0

    # resuming continues from the same sweep
    chain.run(max_sweeps=10)
    assert chain.state is ChainState.SAMPLING
    assert chain.sweeps == 15
    assert len(chain.draws) == 4

    chain.run()
    assert chain.state is ChainState.DONE
    assert chain.sweeps == 27
    assert [d.iteration for d in chain.draws] == list(range(10))

    # a finished chain does nothing more
    chain.run()
    assert chain.sweeps == 27

def test_chain_arguments():
    model = simulate_model('null')

    with pytest.raises(ValueError):
        Chain(model, start='halfway')

    with pytest.raises(ValueError):
        Chain(model, draws=0)

    with pytest.raises(ValueError):
        Chain(model, burn=-1)

@pytest.mark.parametrize('name', ['null', 'dynamic', 'covariate'])
def test_draws_are_valid(name):
    model = simulate_model(name)
    samples = sample(model, chains=2, adapt=10, burn=10, draws=15, seed=4,
                     tune_interval=5)

    assert len(samples) == 30
    assert samples.check_aligned() == 15

    detected = model.data.detected
    for draw in samples.draws:
        assert (draw.z[detected] == 1).all()
        assert np.isin(draw.z, (0, 1)).all()
        assert np.isfinite(draw.deviance)
        assert np.isfinite(model.log_prior(draw.params))

        psi1, phi, gamma, p = model.probabilities(draw.params)
        for prob in (psi1, phi, gamma, p):
            assert ((prob >= 0) & (prob <= 1)).all()

def test_reproducible():
    model = simulate_model('dynamic')

    first = sample(model, chains=2, adapt=0, burn=5, draws=10, seed=11)
    second = sample(model, chains=2, adapt=0, burn=5, draws=10, seed=11)
    other = sample(model, chains=2, adapt=0, burn=5, draws=10, seed=12)

    assert np.array_equal(first.parameter('phi'), second.parameter('phi'))
    assert np.array_equal(first.parameter('z'), second.parameter('z'))
    assert not np.array_equal(first.parameter('phi'), other.parameter('phi'))

def test_parallel_matches_serial():
    model = simulate_model('null')

    serial = sample(model, chains=2, adapt=0, burn=5, draws=10, seed=7)
    parallel = sample(model, chains=2, adapt=0, burn=5, draws=10, seed=7,
                      cores=2)

    assert np.array_equal(serial.parameter('psi'), parallel.parameter('psi'))

def test_start_types():
    model = simulate_model('null')
    seeds = np.random.SeedSequence(0).spawn(2)

    empty = Chain(model, start='empty', seed=seeds[0])
    full = Chain(model, start='full', seed=seeds[1])
    empty.initialize()
    full.initialize()

    assert empty.params['psi'] < full.params['psi']
    assert empty.latent.z.sum() < full.latent.z.sum()

def test_covariate_tuning():
    model = simulate_model('covariate', site_count=40)
    chain = Chain(model, seed=5, adapt=20, burn=0, draws=1,
                  proposal_scale=0.001, tune_interval=10)

    chain.run()

    # tiny proposals are nearly always accepted, so the scales grow
    scales = [s.scale for block in chain.steppers.values() for s in block]
    assert all(scale > 0.001 for scale in scales)

class TestPosteriorSamples:

    model = simulate_model('dynamic')
    samples = sample(model, chains=3, adapt=0, burn=5, draws=8, seed=2)

    def test_parameter(self):

        assert self.samples.chain_ids == [0, 1, 2]
        assert self.samples.parameter('psi').shape == (3, 8)
        assert self.samples.parameter('phi').shape == (3, 8, 2)
        assert self.samples.parameter('turnover').shape == (3, 8, 2)
        assert self.samples.parameter('deviance').shape == (3, 8)
        assert self.samples.parameter('z').shape == (3, 8, 30, 3)

        with pytest.raises(KeyError):
            self.samples.parameter('omega')

    def test_scalars(self):
        scalars = self.samples.scalars(['psi', 'p'])

        assert list(scalars) == ['psi', 'p[0]', 'p[1]', 'p[2]']

    def test_latent_mean(self):
        latent_mean = self.samples.latent_mean()

        assert latent_mean.shape == (30, 3)
        assert (latent_mean[self.model.data.detected] == 1).all()

    def test_check_aligned(self):
        draws = self.samples.draws
        ragged = PosteriorSamples(draws[:-1])

        with pytest.raises(ValueError):
            ragged.check_aligned()

        with pytest.raises(ValueError):
            PosteriorSamples().check_aligned()

    def test_inference_data(self):
        idata = self.samples.to_inference_data()

        assert idata.posterior['phi'].shape == (3, 8, 2)
        assert idata.sample_stats['deviance'].shape == (3, 8)

    def test_dataframe(self):
        df = self.samples.to_dataframe()

        assert len(df) == 24
        assert 'phi[1]' in df.columns
        assert 'psi_eq[2]' in df.columns
