"""Posterior predictive check for the occupancy models.

The test statistic is the Freeman-Tukey statistic, measuring the discrepancy
between the observed (or replicated) and expected detection counts for every
site-season. Replicated counts are drawn from the model given each retained
draw's latent states and detection probabilities.

Typical usage example:

    results = check(samples, model, seed=1)
    p_val = bayesian_p_value(results['freeman_tukey_new'],
                             results['freeman_tukey_observed'])
"""
import numpy as np

from dynocc.utils import freeman_tukey

def check(samples, model, seed=None) -> dict:
    '''Conduct a posterior predictive check with the Freeman-Tukey statistic.

    Args:
        samples: PosteriorSamples for the model
        model: the sampled occupancy model
        seed: seed for the replicate data
    Returns:
        dict of per-draw statistics for the observed and replicated counts
    '''
    data = model.data
    observed = data.detections

    # rng for drawing from the posterior predictive distribution
    rng = np.random.default_rng(seed=seed)

    # freeman-tukey statistics for each draw
    freeman_tukey_observed = []
    freeman_tukey_new = []

    for draw in samples.draws:
        _, _, _, p = model.probabilities(draw.params)

        # expected detections at each site-season given the latent states
        p_used = np.where(data.mask, p, 0.)
        expected_counts = draw.z * p_used.sum(axis=2)

        D_obs = freeman_tukey(observed, expected_counts)
        freeman_tukey_observed.append(D_obs)

        # replicate surveys only where the site is occupied and surveyed
        y_new = rng.binomial(1, p_used) * draw.z[:, :, None]
        D_new = freeman_tukey(y_new.sum(axis=2), expected_counts)
        freeman_tukey_new.append(D_new)

    freeman_tukey_observed = np.array(freeman_tukey_observed)
    freeman_tukey_new = np.array(freeman_tukey_new)

    return {'freeman_tukey_observed': freeman_tukey_observed,
            'freeman_tukey_new': freeman_tukey_new}
