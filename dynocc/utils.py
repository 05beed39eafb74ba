import json

import numpy as np

class NumpyEncoder(json.JSONEncoder):
    '''Easy conversion between numpy and json.'''
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            # missing observations are written as null
            return np.where(np.isnan(obj), None, obj).tolist() \
                if obj.dtype.kind == 'f' else obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return json.JSONEncoder.default(self, obj)

def expit(x):
    return 1 / (1 + np.exp(-x))

def logit(p):
    return np.log(p) - np.log1p(-p)

def safe_divide(numerator, denominator):
    """Elementwise ratio that is NaN wherever the denominator underflows."""
    numerator = np.asarray(numerator, dtype=float)
    denominator = np.asarray(denominator, dtype=float)
    out = np.full(np.broadcast(numerator, denominator).shape, np.nan)
    ok = np.abs(denominator) > np.finfo(float).tiny
    np.divide(numerator, denominator, out=out, where=ok)
    return out

def freeman_tukey(observed, expected) -> float:
    '''Calculate the Freeman-Tukey discrepancy between two sets of counts.'''
    D = np.power(np.sqrt(observed) - np.sqrt(expected), 2).sum()
    return D

def bayesian_p_value(replicate, observed) -> float:
    return (np.asarray(replicate) > np.asarray(observed)).mean()
