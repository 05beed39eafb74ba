from dynocc.config import DEFAULT_CONFIG, Config, load_config

def test_defaults():
    cfg = load_config(None, DEFAULT_CONFIG)

    assert cfg.model == 'dynamic'
    assert cfg.chains == 3
    assert cfg.prior.a == 1.0
    assert cfg.starts == ['empty', 'full', 'data']

def test_override(tmp_path):
    path = tmp_path / 'run.yaml'
    path.write_text("model: 'null'\nchains: 4\nthin: 5\n")

    cfg = load_config(str(path), DEFAULT_CONFIG)

    assert cfg.model == 'null'
    assert cfg.chains == 4
    assert cfg.thin == 5

    # keys missing from the run config come from the defaults
    assert cfg.burn == 1000
    assert cfg.pd_method == 'variance'

def test_config_attribute_access():
    cfg = Config({'simulate': {'params': {'p': 0.5}}})
    assert cfg.simulate.params.p == 0.5
    assert isinstance(cfg.simulate, Config)
