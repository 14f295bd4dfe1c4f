"""
Tests for settings and pipeline configuration loading.

Covers:
  - defaults: engine catalogue, A/B split, thresholds
  - JSON file loading with camelCase engine keys
  - unreadable / malformed / inconsistent files raise ValidationConfigError
  - reload swaps the active config; a bad reload keeps the previous one
  - audit redaction fields accept CSV from the environment
"""

from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch


def _write(directory: str, data) -> str:
    path = Path(directory) / "pipeline.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return str(path)


class PipelineConfigDefaultsTests(unittest.TestCase):
    def test_default_engine_catalogue(self):
        from invoice_pipeline.core.config import PipelineConfig

        config = PipelineConfig()
        self.assertEqual([e.name for e in config.enabled_engines()], ["openai", "google_vision"])
        self.assertFalse(config.engine("tesseract").enabled)
        self.assertEqual(config.ab_test.split_percent, 20.0)
        self.assertEqual(config.ab_test.comparison_criterion, "confidence_score")
        self.assertEqual(config.validation.confidence_threshold, 0.85)
        self.assertEqual((config.validation.anomaly_warn_z, config.validation.anomaly_critical_z), (2.5, 4.0))

    def test_enabled_engines_sorted_by_priority(self):
        from invoice_pipeline.core.config import EngineProfile, PipelineConfig

        config = PipelineConfig(
            engines=(
                EngineProfile(name="tesseract", priority=3),
                EngineProfile(name="openai", priority=1),
                EngineProfile(name="google_vision", priority=2, enabled=False),
            )
        )
        self.assertEqual([e.name for e in config.enabled_engines()], ["openai", "tesseract"])

    def test_duplicate_engine_names_rejected(self):
        from invoice_pipeline.core.config import parse_pipeline_config
        from invoice_pipeline.errors import ValidationConfigError

        with self.assertRaises(ValidationConfigError):
            parse_pipeline_config({"engines": [{"name": "openai", "priority": 1}, {"name": "openai", "priority": 2}]})


class PipelineConfigFileTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    def test_load_from_file_with_camel_case_keys(self):
        from invoice_pipeline.core.config import load_pipeline_config

        path = _write(
            self._tmp.name,
            {
                "engines": [{"name": "google_vision", "priority": 1, "avgAccuracy": 0.975, "costPerCall": 0.005}],
                "ab_test": {"enabled": False},
                "validation": {"confidence_threshold": 0.9},
            },
        )
        config = load_pipeline_config(path)

        profile = config.engine("google_vision")
        self.assertEqual(profile.avg_accuracy, 0.975)
        self.assertEqual(profile.cost_per_call, 0.005)
        self.assertFalse(config.ab_test.enabled)
        self.assertEqual(config.validation.confidence_threshold, 0.9)

    def test_bad_files_raise(self):
        from invoice_pipeline.core.config import load_pipeline_config
        from invoice_pipeline.errors import ValidationConfigError

        cases = {
            "missing": str(Path(self._tmp.name) / "absent.json"),
            "not json": _write(self._tmp.name, "{engines: ["),
        }
        for label, path in cases.items():
            with self.subTest(label):
                with self.assertRaises(ValidationConfigError):
                    load_pipeline_config(path)

        with self.assertRaises(ValidationConfigError):
            load_pipeline_config(_write(self._tmp.name, ["not", "an", "object"]))
        with self.assertRaises(ValidationConfigError):
            load_pipeline_config(_write(self._tmp.name, {"validation": {"anomaly_warn_z": 5, "anomaly_critical_z": 4}}))
        with self.assertRaises(ValidationConfigError):
            load_pipeline_config(_write(self._tmp.name, {"ab_test": {"comparison_criterion": "vibes"}}))

    def test_reload_keeps_previous_config_on_error(self):
        from invoice_pipeline.core.config import get_pipeline_config, get_settings, reload_pipeline_config
        from invoice_pipeline.errors import ValidationConfigError

        path = _write(self._tmp.name, {"ab_test": {"split_percent": 50}})
        with patch.dict(os.environ, {"PIPELINE_CONFIG_PATH": path}, clear=False):
            get_settings.cache_clear()
            self.assertEqual(get_pipeline_config().ab_test.split_percent, 50)

            _write(self._tmp.name, {"ab_test": {"split_percent": 10}})
            self.assertEqual(reload_pipeline_config().ab_test.split_percent, 10)

            _write(self._tmp.name, {"ab_test": {"split_percent": 300}})
            with self.assertRaises(ValidationConfigError):
                reload_pipeline_config()
            self.assertEqual(get_pipeline_config().ab_test.split_percent, 10)


class SettingsTests(unittest.TestCase):
    @patch.dict(os.environ, {"AUDIT_REDACTION_FIELDS": "cnpj_distribuidora, uc_code ,"}, clear=False)
    def test_redaction_fields_from_csv(self):
        from invoice_pipeline.core.config import Settings

        self.assertEqual(Settings().audit_redaction_fields, ["cnpj_distribuidora", "uc_code"])

    @patch.dict(os.environ, {"GOOGLE_VISION_API_KEY": "legacy-key"}, clear=False)
    def test_legacy_google_key_alias(self):
        from invoice_pipeline.core.config import Settings

        os.environ.pop("GOOGLE_CLOUD_API_KEY", None)
        self.assertEqual(Settings().google_cloud_api_key, "legacy-key")
