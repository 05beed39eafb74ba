"""Run independent MCMC chains and collect their draws.

Each chain alternates a Gibbs pass over the latent states with an update of
the model parameters. A chain moves through adaptation (Metropolis scales are
tuned, nothing kept), burn-in (nothing kept), and sampling (every thin-th
sweep kept). Chains share nothing, so they can run on separate processes; the
results are joined into one PosteriorSamples collection.

Typical usage example:

    model = build_model('null', data)
    samples = sample(model, chains=3, adapt=0, burn=500, draws=1000, thin=1)
    samples.parameter('phi').mean()
"""
from dataclasses import dataclass
from enum import Enum
from multiprocessing import Pool

import logging

import arviz as az
import numpy as np
import pandas as pd

from dynocc.config import Config
from dynocc.derived import derived_quantities
from dynocc.latent import LatentState, sample_latent_states

STARTS = ('empty', 'full', 'data', 'random')

class ChainState(Enum):
    UNINITIALIZED = 0
    ADAPTING = 1
    BURNING_IN = 2
    SAMPLING = 3
    DONE = 4

@dataclass
class Draw:
    '''One retained sweep of one chain.'''
    chain: int
    iteration: int
    params: dict
    z: np.ndarray
    derived: dict
    deviance: float

class Chain:
    """A single MCMC chain for an occupancy model.

    Attributes:
        model: the occupancy model being sampled
        chain_id: integer identifying the chain
        start: starting configuration, one of STARTS
        state: ChainState of the chain
        sweeps: total sweeps run so far
        params: current parameter values
        latent: current LatentState
        steppers: Metropolis steppers for non-conjugate parameters
        draws: retained Draw records
    """

    def __init__(self, model, chain_id: int = 0, start: str = 'data',
                 seed=None, adapt: int = 500, burn: int = 1000,
                 draws: int = 1000, thin: int = 1, proposal_scale=0.1,
                 tune_interval: int = 50) -> None:
        if start not in STARTS:
            raise ValueError(f'start must be one of {STARTS}, got {start}')
        for name, value in (('adapt', adapt), ('burn', burn)):
            if value < 0:
                raise ValueError(f'{name} must be non-negative')
        if draws < 1 or thin < 1 or tune_interval < 1:
            raise ValueError('draws, thin, and tune_interval must be positive')

        self.model = model
        self.chain_id = chain_id
        self.start = start
        self.adapt = adapt
        self.burn = burn
        self.draw_count = draws
        self.thin = thin
        self.proposal_scale = proposal_scale
        self.tune_interval = tune_interval

        # separate streams for initial values, latent states and parameters
        if not isinstance(seed, np.random.SeedSequence):
            seed = np.random.SeedSequence(seed)
        init_seed, latent_seed, param_seed = seed.spawn(3)
        self.init_rng = np.random.default_rng(init_seed)
        self.latent_rng = np.random.default_rng(latent_seed)
        self.param_rng = np.random.default_rng(param_seed)

        self.state = ChainState.UNINITIALIZED
        self.sweeps = 0
        self.phase_sweeps = 0
        self.params = None
        self.latent = None
        self.steppers = None
        self.draws = []

    def initialize(self) -> None:
        self.params = self.model.initial_values(self.start, self.init_rng)
        self.latent = LatentState.from_data(self.model.data, self.start,
                                            self.init_rng)
        self.steppers = self.model.make_steppers(self.proposal_scale)
        self.state = ChainState.ADAPTING
        self.phase_sweeps = 0
        logging.debug(f'chain {self.chain_id} initialized from {self.start}')
        self._advance()

    def phase_length(self) -> int:
        if self.state is ChainState.ADAPTING:
            return self.adapt
        if self.state is ChainState.BURNING_IN:
            return self.burn
        if self.state is ChainState.SAMPLING:
            return self.draw_count * self.thin
        return 0

    def _advance(self) -> None:
        '''Move to the next phase once the current one is complete.'''
        following = {
            ChainState.ADAPTING: ChainState.BURNING_IN,
            ChainState.BURNING_IN: ChainState.SAMPLING,
            ChainState.SAMPLING: ChainState.DONE
        }
        while (self.state in following
               and self.phase_sweeps >= self.phase_length()):
            self.state = following[self.state]
            self.phase_sweeps = 0
            logging.info(f'chain {self.chain_id} entering {self.state.name}')

    def sweep(self) -> None:
        """Update every latent state, then every parameter."""
        psi1, phi, gamma, p = self.model.probabilities(self.params)
        sample_latent_states(self.latent, psi1, phi, gamma, p,
                             self.model.data, self.latent_rng)
        self.params = self.model.update_parameters(
            self.params, self.latent.z, self.param_rng, self.steppers
        )
        self.sweeps += 1
        self.phase_sweeps += 1

    def record(self) -> Draw:
        z = self.latent.z.copy()
        params = {k: np.copy(v) if np.ndim(v) else v
                  for k, v in self.params.items()}
        draw = Draw(
            chain=self.chain_id,
            iteration=len(self.draws),
            params=params,
            z=z,
            derived=derived_quantities(self.model, params, z),
            deviance=self.model.deviance(params, z)
        )
        self.draws.append(draw)
        return draw

    def run(self, max_sweeps: int = None) -> 'Chain':
        """Run the chain to completion, or for at most max_sweeps sweeps.

        Stopping at max_sweeps keeps every draw so far; calling run again
        resumes where the chain left off.
        """
        if self.state is ChainState.UNINITIALIZED:
            self.initialize()

        done = 0
        while self.state is not ChainState.DONE:
            if max_sweeps is not None and done >= max_sweeps:
                logging.info(f'chain {self.chain_id} paused after '
                             f'{self.sweeps} sweeps, {len(self.draws)} draws')
                break

            self.sweep()
            done += 1

            if (self.state is ChainState.ADAPTING
                    and self.phase_sweeps % self.tune_interval == 0):
                self.tune()
            elif (self.state is ChainState.SAMPLING
                    and self.phase_sweeps % self.thin == 0):
                self.record()

            self._advance()

        return self

    def tune(self) -> None:
        for block in self.steppers.values():
            for stepper in block:
                stepper.tune()

    def acceptance_rates(self) -> dict:
        return {name: [s.acceptance_rate for s in block]
                for name, block in self.steppers.items()}

def _run_chain(chain: Chain) -> Chain:
    return chain.run()

class PosteriorSamples:
    """Append-only collection of draws from one or more chains."""

    def __init__(self, draws=None) -> None:
        self.draws = []
        for draw in draws or []:
            self.append(draw)

    def append(self, draw: Draw) -> None:
        self.draws.append(draw)

    def __len__(self) -> int:
        return len(self.draws)

    @property
    def chain_ids(self) -> list:
        return sorted({d.chain for d in self.draws})

    def by_chain(self) -> dict:
        chains = {c: [] for c in self.chain_ids}
        for draw in self.draws:
            chains[draw.chain].append(draw)
        for draws in chains.values():
            draws.sort(key=lambda d: d.iteration)
        return chains

    def check_aligned(self) -> int:
        '''Number of draws per chain, raising if chains differ.'''
        counts = {c: len(d) for c, d in self.by_chain().items()}
        if not counts:
            raise ValueError('no draws have been recorded')
        if len(set(counts.values())) != 1:
            raise ValueError(f'chains have different numbers of draws: {counts}')
        return next(iter(counts.values()))

    def _stack(self, get) -> np.ndarray:
        self.check_aligned()
        return np.stack([
            np.stack([np.asarray(get(d), dtype=float) for d in draws])
            for draws in self.by_chain().values()
        ])

    def parameter(self, name: str) -> np.ndarray:
        """Draws of a parameter or derived quantity as (chain, draw, ...)."""
        first = self.draws[0]
        if name in first.params:
            return self._stack(lambda d: d.params[name])
        if name in first.derived:
            return self._stack(lambda d: d.derived[name])
        if name == 'deviance':
            return self._stack(lambda d: d.deviance)
        if name == 'z':
            return self._stack(lambda d: d.z)
        raise KeyError(name)

    def scalars(self, names=None) -> dict:
        """Flatten vector quantities into scalars named like 'phi[0]'."""
        if names is None:
            names = list(self.draws[0].params) + list(self.draws[0].derived)

        out = {}
        for name in names:
            x = self.parameter(name)
            if x.ndim == 2:
                out[name] = x
            else:
                for i in range(x.shape[2]):
                    out[f'{name}[{i}]'] = x[:, :, i]
        return out

    def latent_mean(self) -> np.ndarray:
        '''Posterior probability of occupancy for each site-season.'''
        return np.mean([d.z for d in self.draws], axis=0)

    def param_draws(self) -> list:
        return [d.params for d in self.draws]

    def to_inference_data(self) -> az.InferenceData:
        posterior = {name: self.parameter(name)
                     for name in list(self.draws[0].params)
                     + list(self.draws[0].derived)}
        posterior['z'] = self.parameter('z')
        sample_stats = {'deviance': self.parameter('deviance')}
        return az.from_dict(posterior=posterior, sample_stats=sample_stats)

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for draw in self.draws:
            row = {'chain': draw.chain, 'iteration': draw.iteration,
                   'deviance': draw.deviance}
            for group in (draw.params, draw.derived):
                for name, value in group.items():
                    value = np.asarray(value)
                    if value.ndim == 0:
                        row[name] = float(value)
                    else:
                        row.update({f'{name}[{i}]': v
                                    for i, v in enumerate(value)})
            rows.append(row)
        return pd.DataFrame(rows)

def sample(model, chains: int = 3, adapt: int = 500, burn: int = 1000,
           draws: int = 1000, thin: int = 1, seed=None, starts=None,
           proposal_scale=0.1, tune_interval: int = 50,
           cores: int = 1) -> PosteriorSamples:
    """Run independent chains and join their draws.

    Args:
        model: occupancy model to sample
        chains: number of chains
        adapt: adaptation sweeps per chain
        burn: burn-in sweeps per chain
        draws: retained draws per chain
        thin: keep every thin-th sampling sweep
        seed: root seed, each chain gets its own spawned stream
        starts: start type per chain, cycling if shorter than chains
        proposal_scale: initial Metropolis scale, float or dict per block
        tune_interval: sweeps between tuning steps during adaptation
        cores: worker processes; 1 runs the chains in this process
    Returns:
        PosteriorSamples with draws from every chain
    """
    if chains < 1:
        raise ValueError('need at least one chain')
    starts = list(starts or STARTS)

    chain_seeds = np.random.SeedSequence(seed).spawn(chains)
    chain_list = [
        Chain(model, chain_id=i, start=starts[i % len(starts)],
              seed=chain_seeds[i], adapt=adapt, burn=burn, draws=draws,
              thin=thin, proposal_scale=proposal_scale,
              tune_interval=tune_interval)
        for i in range(chains)
    ]

    logging.info(f'Sampling {chains} chains of the {model.name} model...')
    if cores > 1:
        with Pool(min(cores, chains)) as pool:
            chain_list = pool.map(_run_chain, chain_list)
    else:
        chain_list = [_run_chain(c) for c in chain_list]

    samples = PosteriorSamples()
    for chain in chain_list:
        for draw in chain.draws:
            samples.append(draw)

    return samples

def sample_config(model, cfg: Config) -> PosteriorSamples:
    '''Wrapper for sampling a model with settings from a config.'''
    return sample(
        model,
        chains=cfg.chains,
        adapt=cfg.adapt,
        burn=cfg.burn,
        draws=cfg.draws,
        thin=cfg.thin,
        seed=cfg.seed,
        starts=cfg.starts,
        proposal_scale=cfg.proposal_scale,
        tune_interval=cfg.tune_interval,
        cores=cfg.cores
    )
