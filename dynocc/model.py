"""Priors and likelihoods for three dynamic occupancy models.

All three share the same state-space structure. A site is occupied in the
first season with probability psi; afterwards an occupied site stays occupied
with probability phi (survival) and an unoccupied site becomes occupied with
probability gamma (colonization). Each usable replicate survey of an occupied
site-season detects the species with probability p. The variants differ only
in how psi, phi, gamma, and p are parameterized:

    null: one psi, phi, gamma, and p, each with a beta prior
    dynamic: phi and gamma per interval, p per season, beta priors
    covariate: logit-linear in site and survey covariates, normal priors

Typical usage example:

    model = build_model('dynamic', data)
    params = model.initial_values('data', rng)
    psi1, phi, gamma, p = model.probabilities(params)
"""
import numpy as np
import pandas as pd
import pymc as pm
from pytensor import tensor as pt
from scipy import stats
from scipy.optimize import minimize

from dynocc.data import Covariates, DetectionData
from dynocc.updates import (RandomWalkMetropolis, bernoulli_logit_loglik,
                            count_detections, count_transitions, draw_beta)
from dynocc.utils import expit, logit

# starting values for chains that begin away from the data
START_VALUES = {
    'empty': {'psi': 0.1, 'phi': 0.2, 'gamma': 0.05, 'p': 0.8},
    'full': {'psi': 0.9, 'phi': 0.9, 'gamma': 0.6, 'p': 0.2},
}

def transition_probability(z_previous, phi, gamma):
    '''Probability a site is occupied given its state last season.'''
    return np.where(z_previous == 1, phi, gamma)

def detection_probability(z, p):
    '''Probability a survey records the species given the site's state.'''
    return z * p

def naive_estimates(data: DetectionData) -> dict:
    """Crude estimates of psi, phi, gamma and p that treat detection as perfect.

    Used to start a chain near the data. Every value is kept inside
    [0.05, 0.95] so that no start sits on the boundary.
    """
    detected = data.detected
    counts = count_transitions(detected.astype(int))

    with np.errstate(divide='ignore', invalid='ignore'):
        phi = counts['survived'] / counts['occupied']
        gamma = counts['colonized'] / counts['unoccupied']
        p = data.detections.sum(axis=0) / np.where(detected, data.trials,
                                                   0).sum(axis=0)

    estimates = {
        'psi': detected[:, 0].mean(),
        'phi': np.nan_to_num(phi, nan=0.5),
        'gamma': np.nan_to_num(gamma, nan=0.5),
        'p': np.nan_to_num(p, nan=0.5)
    }
    return {k: np.clip(v, 0.05, 0.95) for k, v in estimates.items()}

class OccupancyModel:
    """Behaviour shared by the model variants.

    Subclasses supply the parameterization through ``parameter_shapes``,
    ``initial_values``, ``probabilities``, ``log_prior`` and
    ``update_parameters``.
    """
    name = None

    def __init__(self, data: DetectionData) -> None:
        self.data = data

    @property
    def site_count(self) -> int:
        return self.data.site_count

    @property
    def season_count(self) -> int:
        return self.data.season_count

    def parameter_shapes(self) -> dict:
        raise NotImplementedError

    def initial_values(self, start: str, rng: np.random.Generator) -> dict:
        raise NotImplementedError

    def probabilities(self, params: dict):
        raise NotImplementedError

    def log_prior(self, params: dict) -> float:
        raise NotImplementedError

    def update_parameters(self, params: dict, z: np.ndarray,
                          rng: np.random.Generator, steppers: dict) -> dict:
        raise NotImplementedError

    def make_steppers(self, scale) -> dict:
        '''Metropolis steppers for non-conjugate parameters.'''
        return {}

    def loglik(self, params: dict, z: np.ndarray) -> float:
        """Log-likelihood of the usable detections given the latent states."""
        # a detection at an unoccupied site-season is impossible
        if (self.data.detected & (z == 0)).any():
            return -np.inf

        _, _, _, p = self.probabilities(params)
        y = self.data.filled()
        used = self.data.mask & (z[:, :, None] == 1)

        with np.errstate(divide='ignore'):
            terms = np.where(y == 1, np.log(p), np.log1p(-p))

        return float(terms[used].sum())

    def deviance(self, params: dict, z: np.ndarray) -> float:
        return -2 * self.loglik(params, z)

    def marginal_loglik(self, params: dict) -> float:
        """Log-likelihood with the latent states summed out.

        Uses the forward recursion over seasons, renormalizing each season to
        avoid underflow.
        """
        psi1, phi, gamma, p = self.probabilities(params)
        y = self.data.filled()

        # probability of each site-season's detections if occupied or not
        lik_occupied = np.where(self.data.mask, np.where(y == 1, p, 1 - p),
                                1.).prod(axis=2)
        lik_unoccupied = np.where(self.data.detected, 0., 1.)

        occupied = psi1 * lik_occupied[:, 0]
        unoccupied = (1 - psi1) * lik_unoccupied[:, 0]
        loglik = np.zeros(self.site_count)

        with np.errstate(divide='ignore', invalid='ignore'):
            for t in range(1, self.season_count):
                norm = occupied + unoccupied
                loglik += np.log(norm)
                occupied, unoccupied = occupied / norm, unoccupied / norm

                occupied, unoccupied = (
                    (occupied * phi[:, t - 1] + unoccupied * gamma[:, t - 1])
                    * lik_occupied[:, t],
                    (occupied * (1 - phi[:, t - 1])
                     + unoccupied * (1 - gamma[:, t - 1]))
                    * lik_unoccupied[:, t]
                )

            loglik += np.log(occupied + unoccupied)

        total = loglik.sum()
        if np.isnan(total):
            return -np.inf
        return float(total)

    def marginal_deviance(self, params: dict) -> float:
        return -2 * self.marginal_loglik(params)

    def mean_params(self, params_list) -> dict:
        '''Average a sequence of parameter sets, e.g., for plug-in deviance.'''
        return {name: np.mean([np.asarray(params[name]) for params in params_list],
                              axis=0)
                for name in self.parameter_shapes()}

class BetaPriorModel(OccupancyModel):
    """Probabilities with independent Beta(a, b) priors.

    Attributes:
        a: first shape parameter of every prior
        b: second shape parameter of every prior
    """

    def __init__(self, data: DetectionData, a: float = 1., b: float = 1.) -> None:
        super().__init__(data)
        if a <= 0 or b <= 0:
            raise ValueError('beta prior parameters must be positive')
        self.a = a
        self.b = b

    def log_prior(self, params: dict) -> float:
        values = np.concatenate(
            [np.atleast_1d(params[name]) for name in self.parameter_shapes()]
        )
        return float(stats.beta.logpdf(values, self.a, self.b).sum())

    def initial_values(self, start: str, rng: np.random.Generator) -> dict:
        shapes = self.parameter_shapes()
        naive = naive_estimates(self.data)

        params = {}
        for name, shape in shapes.items():
            if start in START_VALUES:
                value = np.full(shape, START_VALUES[start][name])
            elif start == 'data':
                value = np.broadcast_to(
                    self.pool(name, naive[name]), shape
                ).copy()
            elif start == 'random':
                value = rng.uniform(0.1, 0.9, shape)
            else:
                raise ValueError(f'unknown start: {start}')
            params[name] = value if shape else float(value)

        return params

    def pool(self, name: str, value):
        return value

class NullModel(BetaPriorModel):
    """Constant psi, phi, gamma and p."""
    name = 'null'

    def parameter_shapes(self) -> dict:
        return {'psi': (), 'phi': (), 'gamma': (), 'p': ()}

    def pool(self, name, value):
        return np.mean(value)

    def probabilities(self, params: dict):
        n, T, J = self.data.shape
        psi1 = np.full(n, params['psi'])
        phi = np.full((n, T - 1), params['phi'])
        gamma = np.full((n, T - 1), params['gamma'])
        p = np.full((n, T, J), params['p'])
        return psi1, phi, gamma, p

    def update_parameters(self, params, z, rng, steppers=None) -> dict:
        first = z[:, 0].sum()
        transitions = count_transitions(z)
        detections = count_detections(self.data, z)

        occupied = transitions['occupied'].sum()
        survived = transitions['survived'].sum()
        unoccupied = transitions['unoccupied'].sum()
        colonized = transitions['colonized'].sum()
        detected = detections['detections'].sum()
        trials = detections['trials'].sum()

        return {
            'psi': float(draw_beta(first, self.site_count - first,
                                   self.a, self.b, rng)),
            'phi': float(draw_beta(survived, occupied - survived,
                                   self.a, self.b, rng)),
            'gamma': float(draw_beta(colonized, unoccupied - colonized,
                                     self.a, self.b, rng)),
            'p': float(draw_beta(detected, trials - detected,
                                 self.a, self.b, rng))
        }

    def estimate_mle(self) -> pd.DataFrame:
        """Estimate the MLE for the null model.

        Returns:
            pd.DataFrame containing the logit estimates and standard errors,
              indexed by parameter
        """
        names = list(self.parameter_shapes())
        theta_start = np.zeros(len(names))

        def negative_loglik(theta):
            params = dict(zip(names, expit(theta)))
            return -self.marginal_loglik(params)

        res = minimize(negative_loglik, theta_start, method='BFGS')
        se = np.sqrt(np.diag(res.hess_inv))

        # put results in a dataframe
        results = pd.DataFrame({'est_logit': res['x'], 'se': se}, index=names)
        results['estimate'] = expit(results.est_logit)

        return results

    def compile_pymc_model(self) -> pm.Model:
        """The null model in PyMC, with the latent states summed out.

        The forward recursion runs over the seasons in pytensor and enters
        the model as a Potential, so the model can be sampled with NUTS as an
        independent check on the Gibbs sampler.
        """
        detections = np.array(self.data.detections)
        trials = np.array(self.data.trials)
        lik_unoccupied = np.where(self.data.detected, 0., 1.)

        with pm.Model() as null:
            psi = pm.Beta('psi', self.a, self.b)
            phi = pm.Beta('phi', self.a, self.b)
            gamma = pm.Beta('gamma', self.a, self.b)
            p = pm.Beta('p', self.a, self.b)

            # detections given occupied, one column per season
            lik_occupied = p ** detections * (1 - p) ** (trials - detections)

            occupied = psi * lik_occupied[:, 0]
            unoccupied = (1 - psi) * lik_unoccupied[:, 0]
            loglik = pt.zeros(self.site_count)

            for t in range(1, self.season_count):
                norm = occupied + unoccupied
                loglik = loglik + pt.log(norm)
                occupied, unoccupied = occupied / norm, unoccupied / norm

                occupied, unoccupied = (
                    (occupied * phi + unoccupied * gamma) * lik_occupied[:, t],
                    (occupied * (1 - phi) + unoccupied * (1 - gamma))
                    * lik_unoccupied[:, t]
                )

            loglik = loglik + pt.log(occupied + unoccupied)
            pm.Potential('loglik', loglik.sum())

        return null

class DynamicModel(BetaPriorModel):
    """Survival and colonization per interval, detection per season."""
    name = 'dynamic'

    def parameter_shapes(self) -> dict:
        T = self.season_count
        return {'psi': (), 'phi': (T - 1,), 'gamma': (T - 1,), 'p': (T,)}

    def probabilities(self, params: dict):
        n, T, J = self.data.shape
        psi1 = np.full(n, params['psi'])
        phi = np.broadcast_to(np.asarray(params['phi'])[None, :], (n, T - 1))
        gamma = np.broadcast_to(np.asarray(params['gamma'])[None, :],
                                (n, T - 1))
        p = np.broadcast_to(np.asarray(params['p'])[None, :, None], (n, T, J))
        return psi1, phi, gamma, p

    def update_parameters(self, params, z, rng, steppers=None) -> dict:
        first = z[:, 0].sum()
        transitions = count_transitions(z)
        detections = count_detections(self.data, z)

        survived = transitions['survived']
        colonized = transitions['colonized']
        detected = detections['detections']

        return {
            'psi': float(draw_beta(first, self.site_count - first,
                                   self.a, self.b, rng)),
            'phi': draw_beta(survived, transitions['occupied'] - survived,
                             self.a, self.b, rng),
            'gamma': draw_beta(colonized, transitions['unoccupied'] - colonized,
                               self.a, self.b, rng),
            'p': draw_beta(detected, detections['trials'] - detected,
                           self.a, self.b, rng)
        }

class CovariateModel(OccupancyModel):
    """Logit-linear psi, phi and gamma in site covariates, p in survey date.

        logit(psi_i) = psi_beta . [1, elevation_i, forest_i]
        logit(phi_i) = phi_beta . [1, elevation_i, forest_i]
        logit(gamma_i) = gamma_beta . [1, elevation_i, forest_i]
        logit(p_itj) = p_beta . [1, date_itj, date_itj ** 2]

    Covariates are standardized before use; the constants are kept on
    ``self.covariates.scaling``.

    Attributes:
        covariates: standardized covariates
        sd: standard deviation of the normal priors on every coefficient
        site_design: (n_sites, 3) design matrix for psi, phi and gamma
        survey_design: (n_sites, n_seasons, n_replicates, 3) design for p
    """
    name = 'covariate'
    blocks = ('psi_beta', 'phi_beta', 'gamma_beta', 'p_beta')

    def __init__(self, data: DetectionData, covariates: Covariates = None,
                 sd: float = 10.) -> None:
        super().__init__(data)
        if covariates is None:
            raise ValueError('the covariate model requires covariates')
        if sd <= 0:
            raise ValueError('prior standard deviation must be positive')

        covariates.validate(data)
        self.covariates = covariates.standardize()
        self.sd = sd

        n = self.site_count
        self.site_design = np.column_stack(
            (np.ones(n), self.covariates.elevation, self.covariates.forest)
        )

        # excluded surveys get a placeholder date, they never enter a likelihood
        date = np.where(data.mask, self.covariates.date, 0.)
        self.survey_design = np.stack((np.ones_like(date), date, date ** 2),
                                      axis=-1)

    def parameter_shapes(self) -> dict:
        return {name: (3,) for name in self.blocks}

    def initial_values(self, start: str, rng: np.random.Generator) -> dict:
        if start in START_VALUES:
            intercepts = START_VALUES[start]
        elif start == 'data':
            naive = naive_estimates(self.data)
            intercepts = {k: np.mean(v) for k, v in naive.items()}
        elif start == 'random':
            intercepts = {k: rng.uniform(0.1, 0.9) for k in START_VALUES['full']}
        else:
            raise ValueError(f'unknown start: {start}')

        params = {}
        for name in self.blocks:
            beta = np.zeros(3)
            beta[0] = logit(intercepts[name.replace('_beta', '')])
            if start == 'random':
                beta[1:] = rng.normal(0., 0.5, 2)
            params[name] = beta

        return params

    def probabilities(self, params: dict):
        T = self.season_count
        psi1 = expit(self.site_design @ params['psi_beta'])
        phi = np.repeat(expit(self.site_design @ params['phi_beta'])[:, None],
                        T - 1, axis=1)
        gamma = np.repeat(
            expit(self.site_design @ params['gamma_beta'])[:, None], T - 1,
            axis=1
        )
        p = expit(self.survey_design @ params['p_beta'])
        return psi1, phi, gamma, p

    def log_prior(self, params: dict) -> float:
        values = np.concatenate([params[name] for name in self.blocks])
        return float(stats.norm.logpdf(values, 0., self.sd).sum())

    def make_steppers(self, scale) -> dict:
        steppers = {}
        for name in self.blocks:
            block_scale = scale.get(name, 0.1) if isinstance(scale, dict) \
                else scale
            steppers[name] = [RandomWalkMetropolis(block_scale)
                              for _ in range(3)]
        return steppers

    def block_loglik(self, z: np.ndarray) -> dict:
        """Likelihood of each coefficient block given the latent states.

        Returns:
            dict mapping block name to a function of the coefficients
        """
        previous = z[:, :-1] == 1
        following = z[:, 1:] == 1

        # transitions per site, since phi and gamma vary by site only
        occupied = previous.sum(axis=1)
        survived = (previous & following).sum(axis=1)
        unoccupied = (~previous).sum(axis=1)
        colonized = (~previous & following).sum(axis=1)

        used = self.data.mask & (z[:, :, None] == 1)
        y = self.data.filled()[used]
        survey_design = self.survey_design[used]
        site_design = self.site_design

        return {
            'psi_beta': lambda beta: bernoulli_logit_loglik(
                site_design @ beta, z[:, 0], 1),
            'phi_beta': lambda beta: bernoulli_logit_loglik(
                site_design @ beta, survived, occupied),
            'gamma_beta': lambda beta: bernoulli_logit_loglik(
                site_design @ beta, colonized, unoccupied),
            'p_beta': lambda beta: bernoulli_logit_loglik(
                survey_design @ beta, y, 1)
        }

    def update_parameters(self, params, z, rng, steppers) -> dict:
        loglik = self.block_loglik(z)
        updated = {}

        for name in self.blocks:
            beta = np.array(params[name], dtype=float)

            def logp(b, block=loglik[name]):
                return (stats.norm.logpdf(b, 0., self.sd).sum() + block(b))

            current = logp(beta)
            for k, stepper in enumerate(steppers[name]):

                def logp_k(value, k=k):
                    proposal = beta.copy()
                    proposal[k] = value
                    return logp(proposal)

                beta[k], current = stepper.step(beta[k], logp_k, rng, current)

            updated[name] = beta

        return updated

MODELS = {
    'null': NullModel,
    'dynamic': DynamicModel,
    'covariate': CovariateModel
}

def build_model(name: str, data: DetectionData, covariates: Covariates = None,
                a: float = 1., b: float = 1., sd: float = 10.) -> OccupancyModel:
    '''Construct one of the model variants by name.'''
    if name not in MODELS:
        raise ValueError(f'model must be one of {list(MODELS)}, got {name}')
    if name == 'covariate':
        return CovariateModel(data, covariates, sd=sd)
    return MODELS[name](data, a=a, b=b)
