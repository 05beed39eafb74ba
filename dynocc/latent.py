"""Latent occupancy states and their Gibbs update.

Each site-season carries a binary occupancy state. A site-season with at
least one detection is forced to be occupied; every other state is sampled
from its full conditional given the neighbouring seasons, the transition
probabilities, and the site-season's non-detections.
"""
from enum import Enum, IntEnum

import numpy as np

from dynocc.data import DetectionData
from dynocc.model import transition_probability

class Occupancy(IntEnum):
    ABSENT = 0
    PRESENT = 1

class Provenance(Enum):
    FORCED = 'forced'
    SAMPLED = 'sampled'

class LatentState:
    """Occupancy state for every (site, season), with its provenance.

    Attributes:
        z: int8 array of shape (n_sites, n_seasons)
        forced: True where a detection fixes the state at PRESENT
    """

    def __init__(self, z: np.ndarray, forced: np.ndarray) -> None:
        self.z = np.asarray(z, dtype=np.int8)
        self.forced = np.asarray(forced, dtype=bool)
        self.check()

    @classmethod
    def from_data(cls, data: DetectionData, start: str = 'data',
                  rng: np.random.Generator = None) -> 'LatentState':
        """Initial states: detected site-seasons occupied, the rest by start.

        Args:
            data: the detection array
            start: 'empty' (only detected site-seasons occupied), 'full'
              (occupied everywhere), 'data' (also occupied in the seasons
              between a site's first and last detection), or 'random'
              (fair coin flips)
            rng: generator used by the 'random' start
        """
        forced = np.array(data.detected)
        if start == 'empty':
            z = np.zeros(forced.shape, dtype=np.int8)
        elif start == 'data':
            # gaps between detections are assumed to be missed detections
            seen_before = np.logical_or.accumulate(forced, axis=1)
            seen_after = np.logical_or.accumulate(forced[:, ::-1], axis=1)[:, ::-1]
            z = (seen_before & seen_after).astype(np.int8)
        elif start == 'full':
            z = np.ones(forced.shape, dtype=np.int8)
        elif start == 'random':
            rng = np.random.default_rng(rng)
            z = rng.binomial(1, 0.5, forced.shape).astype(np.int8)
        else:
            raise ValueError(f'unknown start: {start}')

        z[forced] = Occupancy.PRESENT
        return cls(z, forced)

    def copy(self) -> 'LatentState':
        return LatentState(self.z.copy(), self.forced.copy())

    def state(self, site: int, season: int) -> Occupancy:
        return Occupancy(int(self.z[site, season]))

    def provenance(self, site: int, season: int) -> Provenance:
        if self.forced[site, season]:
            return Provenance.FORCED
        return Provenance.SAMPLED

    def check(self) -> None:
        '''Raise if a state is not binary or a forced state is unoccupied.'''
        if self.z.shape != self.forced.shape:
            raise ValueError('latent state and forced mask differ in shape')
        if not np.isin(self.z, (0, 1)).all():
            raise ValueError('latent states must be 0 or 1')
        if (self.z[self.forced] != Occupancy.PRESENT).any():
            raise ValueError('a site-season with a detection is unoccupied')

def sample_latent_states(latent: LatentState, psi1: np.ndarray,
                         phi: np.ndarray, gamma: np.ndarray, p: np.ndarray,
                         data: DetectionData,
                         rng: np.random.Generator) -> LatentState:
    """One Gibbs pass over all site-seasons, updating ``latent`` in place.

    Seasons are visited in order; within a season all sites are updated at
    once since their full conditionals are independent.

    Args:
        latent: current states
        psi1: initial occupancy probability per site, shape (n_sites,)
        phi: survival probability, shape (n_sites, n_seasons - 1)
        gamma: colonization probability, shape (n_sites, n_seasons - 1)
        p: detection probability, shape (n_sites, n_seasons, n_replicates)
        data: detection array, providing the exclusion mask
        rng: generator for the Bernoulli draws
    """
    z = latent.z
    season_count = z.shape[1]

    # likelihood of all-zero detections given occupied, over usable surveys
    miss_prob = np.where(data.mask, 1 - p, 1.).prod(axis=2)

    for t in range(season_count):

        # prior from the previous season, or the initial occupancy draw
        if t == 0:
            prior_occupied = psi1
        else:
            prior_occupied = transition_probability(z[:, t - 1], phi[:, t - 1],
                                                    gamma[:, t - 1])

        # the next season's state depends on this one as well
        if t < season_count - 1:
            occupied_next = z[:, t + 1] == 1
            forward_occupied = np.where(occupied_next, phi[:, t],
                                        1 - phi[:, t])
            forward_unoccupied = np.where(occupied_next, gamma[:, t],
                                          1 - gamma[:, t])
        else:
            forward_occupied = 1.
            forward_unoccupied = 1.

        weight_occupied = prior_occupied * forward_occupied * miss_prob[:, t]
        weight_unoccupied = (1 - prior_occupied) * forward_unoccupied

        total = weight_occupied + weight_unoccupied
        prob = np.full(total.shape, 0.5)
        np.divide(weight_occupied, total, out=prob, where=total > 0)

        draws = (rng.uniform(size=prob.shape) < prob).astype(np.int8)
        z[:, t] = np.where(latent.forced[:, t], Occupancy.PRESENT, draws)

    return latent
