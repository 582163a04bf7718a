"""
DAG Flow — Config Loader Tests

Tests layered config loading: base file → overlay files → env vars,
and the EngineSettings built from it.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from dagflow.config import (
    EngineSettings,
    _load_env_overrides,
    _load_overlay_file,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
    load_settings,
)
from dagflow.retry import DEFAULT_POLICY, RetryPolicy


def _clean_env():
    return {k: v for k, v in os.environ.items() if not k.startswith("DAGFLOW_")}


class TestDeepMerge(unittest.TestCase):
    """Core merge logic."""

    def test_flat_merge(self):
        self.assertEqual(deep_merge({"a": 1, "b": 2}, {"b": 99, "c": 3}),
                         {"a": 1, "b": 99, "c": 3})

    def test_nested_merge(self):
        base = {"retry": {"default": {"max_retries": 1, "delay_ms": 10}}}
        overlay = {"retry": {"default": {"max_retries": 3}}}
        self.assertEqual(deep_merge(base, overlay),
                         {"retry": {"default": {"max_retries": 3, "delay_ms": 10}}})

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"a": [1, 2]}, {"a": [3]}), {"a": [3]})

    def test_base_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base, {"a": {"b": 1}})

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["a", "b", "c"], 5)
        self.assertEqual(d, {"a": {"b": {"c": 5}}})


class _TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base_path = os.path.join(self.tmpdir, "dagflow.yaml")
        with open(self.base_path, "w") as f:
            f.write(
                "engine:\n"
                "  log_level: info\n"
                "  default_timeout: 30\n"
                "retry:\n"
                "  default:\n"
                "    max_retries: 1\n"
                "    delay_ms: 100\n"
                "  steps:\n"
                "    fetch:\n"
                "      max_retries: 5\n"
            )
        os.makedirs(os.path.join(self.tmpdir, "config"))
        with open(os.path.join(self.tmpdir, "config", "prod.yaml"), "w") as f:
            f.write("engine:\n  default_timeout: 10\n  human_gate_timeout: 3600\n")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestOverlayFile(_TempDirTestCase):

    def test_no_env_no_overlay(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            self.assertEqual(_load_overlay_file(self.base_path), {})

    def test_overlay_from_config_dir(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            overlay = _load_overlay_file(
                self.base_path, env="prod", config_dir=os.path.join(self.tmpdir, "config"))
        self.assertEqual(overlay["engine"]["default_timeout"], 10)

    def test_overlay_beside_base_file(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            overlay = _load_overlay_file(self.base_path, env="prod", config_dir="/nonexistent")
        self.assertEqual(overlay["engine"]["human_gate_timeout"], 3600)

    def test_missing_overlay(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            self.assertEqual(_load_overlay_file(self.base_path, env="staging"), {})


class TestEnvOverrides(unittest.TestCase):

    def test_double_underscore_nesting(self):
        env = _clean_env()
        env["DAGFLOW_RETRY__STEPS__FETCH_PRICES__MAX_RETRIES"] = "7"
        env["DAGFLOW_ENGINE__LOG_LEVEL"] = "DEBUG"
        with patch.dict(os.environ, env, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides["retry"]["steps"]["fetch_prices"]["max_retries"], 7)
        self.assertEqual(overrides["engine"]["log_level"], "DEBUG")

    def test_values_parsed_as_yaml(self):
        env = _clean_env()
        env["DAGFLOW_ENGINE__DEFAULT_TIMEOUT"] = "2.5"
        env["DAGFLOW_FEATURE__ENABLED"] = "true"
        env["DAGFLOW_ENGINE__HUMAN_GATE_TIMEOUT"] = "null"
        with patch.dict(os.environ, env, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides["engine"]["default_timeout"], 2.5)
        self.assertIs(overrides["feature"]["enabled"], True)
        self.assertIsNone(overrides["engine"]["human_gate_timeout"])

    def test_meta_vars_excluded(self):
        env = _clean_env()
        env["DAGFLOW_ENV"] = "prod"
        env["DAGFLOW_CONFIG_DIR"] = "/tmp"
        env["DAGFLOW_VERSION"] = "1.2.3"
        with patch.dict(os.environ, env, clear=True):
            self.assertEqual(_load_env_overrides(), {})


class TestLoadConfig(_TempDirTestCase):

    def test_layers(self):
        env = _clean_env()
        env["DAGFLOW_ENGINE__DEFAULT_TIMEOUT"] = "5"
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config(self.base_path, env="prod",
                              config_dir=os.path.join(self.tmpdir, "config"))
        self.assertEqual(cfg["engine"]["default_timeout"], 5)        # env var
        self.assertEqual(cfg["engine"]["human_gate_timeout"], 3600)  # overlay
        self.assertEqual(cfg["retry"]["default"]["delay_ms"], 100)   # base
        self.assertEqual(cfg["_active_env"], "prod")
        self.assertEqual(cfg["_config_source"], self.base_path)

    def test_missing_base_file(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(os.path.join(self.tmpdir, "absent.yaml"))
        self.assertEqual(cfg["_active_env"], "default")

    def test_get_config_value(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(self.base_path)
        self.assertEqual(get_config_value("retry.steps.fetch.max_retries", cfg), 5)
        self.assertEqual(get_config_value("engine.nope", cfg, default="x"), "x")


class TestEngineSettings(_TempDirTestCase):

    def test_defaults(self):
        s = EngineSettings()
        self.assertEqual(s.log_level, "INFO")
        self.assertIs(s.retry_policy_for("anything"), DEFAULT_POLICY)
        self.assertIsNone(s.default_timeout)

    def test_load_settings(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            s = load_settings(self.base_path, env="prod",
                              config_dir=os.path.join(self.tmpdir, "config"))
        self.assertEqual(s.log_level, "INFO")
        self.assertEqual(s.default_timeout, 10.0)
        self.assertEqual(s.human_gate_timeout, 3600.0)
        self.assertEqual(s.default_retry, RetryPolicy(max_retries=1, delay_ms=100))
        fetch = s.retry_policy_for("fetch")
        self.assertEqual(fetch.max_retries, 5)
        self.assertEqual(fetch.delay_ms, 100)
        self.assertEqual(s.retry_policy_for("other").max_retries, 1)

    def test_bad_timeout_rejected(self):
        with self.assertRaises(ValueError):
            EngineSettings.from_config({"engine": {"default_timeout": 0}})

    def test_repo_sample_config_loads(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            s = load_settings(os.path.join(_base, "dagflow.yaml"))
        self.assertEqual(s.default_retry.max_retries, 0)
        self.assertEqual(s.human_gate_timeout, 86400.0)


if __name__ == "__main__":
    unittest.main()
