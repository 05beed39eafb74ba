"""Simulate detection data under any of the occupancy models.

The latent states follow the first-order Markov chain of the dynamic model,
and detections are Bernoulli draws at occupied site-seasons. Sites may have
fewer surveys than the array has replicate slots; those slots are missing.

The module can also be called from the command line to write a dataset:
    $ python -m dynocc.simulate --model null --seed 1 --out sim.json
"""
import argparse
import logging

import numpy as np

from dynocc.config import DEFAULT_CONFIG, load_config
from dynocc.data import Covariates, DetectionData, dump_json
from dynocc.model import build_model
from dynocc.utils import logit

def parse():
    '''Parses arguments from the command line'''
    parser = argparse.ArgumentParser(description="Simulating occupancy data")
    parser.add_argument('-c', '--config', default=None)
    parser.add_argument('-m', '--model', default=None)
    parser.add_argument('-s', '--seed', type=int, default=None)
    parser.add_argument('-o', '--out', default='sim.json')
    return parser.parse_args()

class Simulator:
    """Data generator for dynamic occupancy models.

    Attributes:
        seed: integer seed for the rng
        rng: np.random.Generator used by the simulator
    """

    def __init__(self, seed: int = None) -> None:
        self.seed = seed
        self.rng = np.random.default_rng(seed)

    def simulate_z(self, psi1: np.ndarray, phi: np.ndarray,
                   gamma: np.ndarray) -> np.ndarray:
        """Simulate the latent occupancy of each site in each season."""
        site_count, interval_count = phi.shape

        z = np.zeros((site_count, interval_count + 1), dtype=int)
        z[:, 0] = self.rng.binomial(1, psi1)
        for t in range(interval_count):
            occupied_prob = np.where(z[:, t] == 1, phi[:, t], gamma[:, t])
            z[:, t + 1] = self.rng.binomial(1, occupied_prob)

        return z

    def simulate_detections(self, z: np.ndarray, p: np.ndarray,
                            surveys: np.ndarray = None) -> np.ndarray:
        """Replicate surveys of every site-season, NaN beyond a site's surveys."""
        site_count, _, replicate_count = p.shape
        if surveys is None:
            surveys = np.full(site_count, replicate_count)

        y = self.rng.binomial(1, p * z[:, :, None]).astype(float)
        slots = np.arange(replicate_count)
        unsurveyed = slots[None, None, :] >= np.asarray(surveys)[:, None, None]
        y[np.broadcast_to(unsurveyed, y.shape)] = np.nan

        return y

    def simulate_covariates(self, site_count: int, season_count: int,
                            replicate_count: int) -> Covariates:
        '''Raw elevation (m), forest cover (%) and ordinal survey dates.'''
        elevation = self.rng.normal(1200., 400., site_count)
        forest = self.rng.uniform(0., 100., site_count)

        # replicate surveys happen in order within a season
        date = np.sort(self.rng.uniform(120., 200., (site_count, season_count,
                                                     replicate_count)), axis=2)

        return Covariates(elevation=elevation, forest=forest, date=date)

    def simulate(self, model: str, params: dict, site_count: int,
                 season_count: int, replicate_count: int, surveys=None,
                 covariates: Covariates = None) -> dict:
        """Simulate a dataset under a model variant.

        Args:
            model: 'null', 'dynamic' or 'covariate'
            params: true parameter values in the model's parameterization
            site_count: number of sites
            season_count: number of seasons
            replicate_count: replicate slots per season
            surveys: surveys per site, defaults to replicate_count everywhere
            covariates: raw covariates, simulated for the covariate model
              when not given
        Returns:
            dict with the DetectionData, the true latent states and the
              covariates
        """
        shape = (site_count, season_count, replicate_count)
        if model == 'covariate' and covariates is None:
            covariates = self.simulate_covariates(*shape)

        # the model only needs the array's shape to compute probabilities
        template = DetectionData(np.zeros(shape), surveys=surveys)
        occupancy_model = build_model(model, template, covariates)
        psi1, phi, gamma, p = occupancy_model.probabilities(params)

        z = self.simulate_z(psi1, phi, gamma)
        y = self.simulate_detections(z, p, template.surveys)

        data = DetectionData(y, surveys=template.surveys)
        return {'data': data, 'z': z, 'covariates': covariates}

def default_params(model: str, params: dict, season_count: int) -> dict:
    """Expand the scalar settings of a config into a model's parameters."""
    if model == 'null':
        return dict(params)

    if model == 'dynamic':
        return {
            'psi': params['psi'],
            'phi': np.full(season_count - 1, params['phi']),
            'gamma': np.full(season_count - 1, params['gamma']),
            'p': np.full(season_count, params['p'])
        }

    # intercepts from the scalars, modest covariate effects
    return {
        'psi_beta': np.array([logit(params['psi']), 0.5, 0.5]),
        'phi_beta': np.array([logit(params['phi']), -0.5, 0.3]),
        'gamma_beta': np.array([logit(params['gamma']), 0.3, 0.5]),
        'p_beta': np.array([logit(params['p']), 0.3, -0.2])
    }

def main():
    '''Simulate one dataset and write it to json.'''
    args = parse()
    logging.basicConfig(level=logging.INFO)

    cfg = load_config(args.config, DEFAULT_CONFIG)
    model = args.model or cfg.model
    seed = cfg.seed if args.seed is None else args.seed
    settings = cfg.simulate

    params = default_params(model, settings.params, settings.seasons)

    logging.info(f'Simulating {model} data with seed {seed}')
    simulator = Simulator(seed)
    results = simulator.simulate(model, params, settings.sites,
                                 settings.seasons, settings.replicates)

    dump_json(args.out, results['data'], results['covariates'],
              z=results['z'], model=model, truth=params)
    logging.info(f'Wrote {args.out}')

if __name__ == '__main__':
    main()
