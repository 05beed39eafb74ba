"""Deterministic functions of a single posterior draw.

None of these are sampled. Ratios whose denominator underflows to zero are
reported as NaN rather than raising.
"""
import numpy as np

from dynocc.utils import safe_divide

def site_trajectories(psi1, phi, gamma) -> np.ndarray:
    """Expected occupancy of each site in each season.

    Args:
        psi1: first season occupancy, shape (n_sites,)
        phi: survival, shape (n_sites, n_seasons - 1)
        gamma: colonization, shape (n_sites, n_seasons - 1)
    Returns:
        array of shape (n_sites, n_seasons)
    """
    phi = np.asarray(phi, dtype=float)
    gamma = np.asarray(gamma, dtype=float)
    site_count, interval_count = phi.shape

    psi = np.zeros((site_count, interval_count + 1))
    psi[:, 0] = psi1
    for t in range(interval_count):
        psi[:, t + 1] = psi[:, t] * phi[:, t] + (1 - psi[:, t]) * gamma[:, t]

    return psi

def equilibrium_occupancy(psi1, phi, gamma) -> np.ndarray:
    '''Occupancy trajectory averaged over sites.'''
    return site_trajectories(psi1, phi, gamma).mean(axis=0)

def realized_occupancy(z) -> np.ndarray:
    '''Fraction of sites occupied in each season.'''
    return np.asarray(z).mean(axis=0)

def growth_rate(psi_eq) -> np.ndarray:
    psi_eq = np.asarray(psi_eq, dtype=float)
    return safe_divide(psi_eq[1:], psi_eq[:-1])

def turnover(psi_site, gamma) -> np.ndarray:
    """Share of next season's occupied sites that were newly colonized."""
    psi_site = np.asarray(psi_site, dtype=float)
    colonized = ((1 - psi_site[:, :-1]) * gamma).sum(axis=0)
    occupied = psi_site[:, 1:].sum(axis=0)
    return safe_divide(colonized, occupied)

def derived_quantities(model, params: dict, z: np.ndarray) -> dict:
    """All derived quantities for one draw.

    Returns:
        dict with psi_eq and n_occ (length n_seasons), growth and turnover
          (length n_seasons - 1)
    """
    psi1, phi, gamma, _ = model.probabilities(params)
    psi_site = site_trajectories(psi1, phi, gamma)
    psi_eq = psi_site.mean(axis=0)

    return {
        'psi_eq': psi_eq,
        'n_occ': realized_occupancy(z),
        'growth': growth_rate(psi_eq),
        'turnover': turnover(psi_site, gamma)
    }
