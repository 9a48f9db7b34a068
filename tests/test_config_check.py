import pytest

from ratelimit_service.config import RateLimitConfigError, RateLimitConfigToLoad
from ratelimit_service.config_check import load_configs, main
from ratelimit_service.model import DescriptorEntry, RateLimitDescriptor

GOOD = """
domain: check
descriptors:
  - key: k
    rate_limit:
      unit: second
      requests_per_unit: 3
"""

OTHER = """
domain: check
descriptors:
  - key: j
    rate_limit:
      unit: hour
      requests_per_unit: 9
"""


def test_load_configs_returns_usable_config():
    config = load_configs([RateLimitConfigToLoad("a.yaml", GOOD)], False)
    limit = config.get_limit("check", RateLimitDescriptor([DescriptorEntry("k", "v")]))
    assert limit.limit.requests_per_unit == 3


def test_load_configs_raises_on_bad_config():
    with pytest.raises(RateLimitConfigError, match="config file cannot have empty domain"):
        load_configs([RateLimitConfigToLoad("a.yaml", "descriptors: []")], False)


def test_main_ok(tmp_path, capsys):
    (tmp_path / "a.yaml").write_text(GOOD)
    assert main(["-config_dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "checking rate limit configs..." in out
    assert f"opening config file: {tmp_path / 'a.yaml'}" in out
    assert out.endswith("all rate limit configs ok\n")


def test_main_reports_bad_config(tmp_path, capsys):
    (tmp_path / "a.yaml").write_text("domain: d\nbogus: 1\n")
    assert main(["--config_dir", str(tmp_path)]) == 1
    out = capsys.readouterr().out
    assert "error loading rate limit configs:" in out
    assert "unknown key 'bogus'" in out
    assert "all rate limit configs ok" not in out


def test_main_missing_directory(tmp_path, capsys):
    missing = tmp_path / "missing"
    assert main(["-config_dir", str(missing)]) == 1
    assert f"error opening directory {missing}:" in capsys.readouterr().out


def test_main_merge_flag(tmp_path, capsys):
    (tmp_path / "a.yaml").write_text(GOOD)
    (tmp_path / "b.yaml").write_text(OTHER)
    assert main(["-config_dir", str(tmp_path)]) == 1
    assert "duplicate domain 'check' in config file" in capsys.readouterr().out
    assert main(["-config_dir", str(tmp_path), "-merge_domain_configs"]) == 0


def test_main_subdirectory_is_read_error(tmp_path, capsys):
    (tmp_path / "sub").mkdir()
    assert main(["-config_dir", str(tmp_path)]) == 1
    assert f"error reading file {tmp_path / 'sub'}:" in capsys.readouterr().out