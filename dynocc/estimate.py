"""Fit one or more occupancy models to a dataset and compare them.

Reads a json dataset (see ``dynocc.data.dump_json``), runs the MCMC chains
for each requested model, and writes a summary table, the posterior draws as
ArviZ json, and a DIC comparison table to the results directory.

The script is called from the command line with the following arguments:
    -d: path to the json dataset
    -c: path to a yaml config (defaults fill in missing keys)
    -m: one or more models (default: the config's model)
    -n: name for the run (default: debug)

Typical usage example:
    $ python -m dynocc.estimate -d sim.json -m null dynamic covariate
"""
import argparse
import logging
import os

from dynocc.chain import sample_config
from dynocc.config import DEFAULT_CONFIG, load_config
from dynocc.data import load_json
from dynocc.diagnostics import compare_models, diagnose
from dynocc.model import build_model

def parse():
    '''Parse arguments from the command line.'''
    parser = argparse.ArgumentParser(description="Estimating occupancy")
    parser.add_argument('-d', '--data', required=True)
    parser.add_argument('-c', '--config', default=None)
    parser.add_argument('-m', '--models', nargs='+', default=None)
    parser.add_argument('-n', '--name', default='debug')
    parser.add_argument('-o', '--results', default='results')
    return parser.parse_args()

def main():
    '''Estimate every requested model for the dataset.'''
    args = parse()

    results_dir = os.path.join(args.results, args.name)
    os.makedirs(results_dir, exist_ok=True)

    logging.basicConfig(filename=os.path.join(args.results, f'{args.name}.log'),
                        level=logging.INFO)

    cfg = load_config(args.config, DEFAULT_CONFIG)
    data, covariates = load_json(args.data)
    models = args.models or [cfg.model]

    fits = {}
    for name in models:
        print(f'Estimating the {name} model...')
        report = estimate(name, data, covariates, cfg, results_dir)
        fits[name] = report.dic
        print(report.summary.round(3))

    comparison = compare_models(fits)
    comparison.to_csv(os.path.join(results_dir, 'dic.csv'))
    print(comparison.round(2))

    return None

def estimate(name, data, covariates, cfg, results_dir):
    '''Sample one model, then save its summary and draws.'''
    model = build_model(name, data, covariates, a=cfg.prior.a, b=cfg.prior.b,
                        sd=cfg.coef_prior_sd)
    samples = sample_config(model, cfg)

    report = diagnose(samples, model, method=cfg.pd_method)
    report.summary.to_csv(os.path.join(results_dir, f'{name}-summary.csv'))

    # dump results to json
    idata = samples.to_inference_data()
    idata.to_json(os.path.join(results_dir, f'{name}.json'))

    logging.info(f'{name}: DIC {report.dic["DIC"]:.1f}, '
                 f'multivariate R-hat {report.mpsrf:.3f}')
    return report

if __name__ == '__main__':
    main()
