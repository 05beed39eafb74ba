"""Configuration for the sampler and the command line tools.

Settings live in YAML files. Any key missing from a user config is filled in
from the packaged defaults in ``default.yaml``.

Typical usage example:

    cfg = load_config('config/run.yaml', DEFAULT_CONFIG)
    print(cfg.chains, cfg.prior.a)
"""
from typing import Optional

import os
import yaml
import logging

DEFAULT_CONFIG = os.path.join(os.path.dirname(__file__), 'default.yaml')

class Config(dict):
    def __getattr__(self, key):
        try:
            val = self[key]
        except KeyError:
            return super().__getattribute__(key)
        if isinstance(val, dict):
            return Config(val)
        return val

def load_config(path: Optional[str], 
                default_path: Optional[str] = DEFAULT_CONFIG) -> Config:
    if path is not None:
        with open(path) as f:
            cfg = Config(yaml.safe_load(f) or {})
    else:
        cfg = Config()
    if default_path is not None:
        # set keys not included in `path` by default
        with open(default_path) as f:
            default_cfg = Config(yaml.safe_load(f))
        for key, val in default_cfg.items():
            if key not in cfg:
                logging.debug(f"used default config {key}: {val}")
                cfg[key] = val
    return cfg
