import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from photoframe import config as config_module
from photoframe.config import (
    DEFAULT_API_KEY,
    DEFAULTS,
    build_configuration,
    env_overrides,
    load_local_overrides,
    merge_layers,
    resolve_configuration,
)
from photoframe.errors import ConfigurationError


class MergeLayersTests(unittest.TestCase):
    def test_later_layers_win(self):
        merged = merge_layers(
            {"api_key": "default", "port": 3001},
            {"api_key": "from-file", "port": 4000},
            {"api_key": "from-env"},
        )
        self.assertEqual(merged["api_key"], "from-env")
        self.assertEqual(merged["port"], 4000)

    def test_none_never_overrides(self):
        merged = merge_layers({"api_key": "default"}, {"api_key": None})
        self.assertEqual(merged["api_key"], "default")

    def test_inputs_are_not_mutated(self):
        defaults = {"api_key": "default"}
        merge_layers(defaults, {"api_key": "other"})
        self.assertEqual(defaults, {"api_key": "default"})


class EnvOverridesTests(unittest.TestCase):
    def test_parses_known_variables(self):
        overrides = env_overrides(
            {
                "PHOTOFRAME_API_KEY": " secret ",
                "PHOTOFRAME_PORT": "8080",
                "PHOTOFRAME_MAX_FILE_SIZE": "2048",
                "PHOTOFRAME_RATE_LIMIT": "3",
                "PHOTOFRAME_RATE_LIMIT_WINDOW_MS": "1000",
                "UNRELATED": "ignored",
            }
        )
        self.assertEqual(
            overrides,
            {
                "api_key": "secret",
                "port": 8080,
                "max_file_size_bytes": 2048,
                "rate_limit_max_requests": 3,
                "rate_limit_window_ms": 1000,
            },
        )

    def test_invalid_integers_are_skipped(self):
        with self.assertLogs("photoframe.config", level="WARNING"):
            overrides = env_overrides({"PHOTOFRAME_PORT": "eighty"})
        self.assertNotIn("port", overrides)

    def test_blank_values_are_skipped(self):
        self.assertEqual(env_overrides({"PHOTOFRAME_API_KEY": "  "}), {})

    def test_production_forces_https(self):
        overrides = env_overrides({"PHOTOFRAME_ENV": "production"})
        self.assertFalse(overrides["is_development"])
        self.assertTrue(overrides["enforce_https"])


class BuildConfigurationTests(unittest.TestCase):
    def test_defaults_are_valid(self):
        config = build_configuration({})
        self.assertEqual(config.api_key, DEFAULT_API_KEY)
        self.assertEqual(config.rate_limit_max_requests, 10)
        self.assertEqual(config.rate_limit_window_seconds, 900.0)
        self.assertEqual(config.max_file_size_bytes, 10 * 1024 * 1024)
        self.assertIn("image/jpeg", config.allowed_content_types)
        self.assertTrue(config.storage_directory.is_absolute())
        self.assertFalse(config.requires_https)

    def test_content_types_are_normalized(self):
        config = build_configuration(
            {"allowed_content_types": ["Image/PNG", "image/jpeg; charset=binary", ""]}
        )
        self.assertEqual(config.allowed_content_types, frozenset({"image/png", "image/jpeg"}))

    def test_comma_separated_content_types(self):
        config = build_configuration({"allowed_content_types": "image/png, image/gif"})
        self.assertEqual(config.allowed_content_types, frozenset({"image/png", "image/gif"}))

    def test_empty_content_types_rejected(self):
        with self.assertRaises(ConfigurationError):
            build_configuration({"allowed_content_types": []})

    def test_non_positive_limits_rejected(self):
        for key in ("rate_limit_max_requests", "rate_limit_window_ms", "max_file_size_bytes"):
            with self.subTest(key=key):
                with self.assertRaises(ConfigurationError):
                    build_configuration({key: 0})

    def test_boolean_strings_are_coerced(self):
        config = build_configuration({"enforce_https": "yes", "is_development": "false"})
        self.assertTrue(config.enforce_https)
        self.assertFalse(config.is_development)
        self.assertTrue(config.requires_https)

    def test_invalid_boolean_rejected(self):
        with self.assertRaises(ConfigurationError):
            build_configuration({"enable_cors": "maybe"})

    def test_configuration_is_immutable(self):
        config = build_configuration({})
        with self.assertRaises(AttributeError):
            config.api_key = "changed"  # type: ignore[misc]


class ResolveConfigurationTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config_path = self.root / "photoframe.local.json"

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write_config(self, payload):
        self.config_path.write_text(json.dumps(payload), encoding="utf-8")

    def test_precedence_env_over_file_over_defaults(self):
        self._write_config(
            {
                "api_key": "file-key",
                "rate_limit_max_requests": 5,
                "storage_directory": str(self.root / "photos"),
            }
        )
        config = resolve_configuration(
            environ={"PHOTOFRAME_API_KEY": "env-key"},
            config_path=self.config_path,
        )
        self.assertEqual(config.api_key, "env-key")
        self.assertEqual(config.rate_limit_max_requests, 5)
        self.assertEqual(config.max_file_size_bytes, DEFAULTS["max_file_size_bytes"])
        self.assertEqual(config.storage_directory, (self.root / "photos").resolve())

    def test_missing_storage_directory_is_created(self):
        target = self.root / "nested" / "photos"
        config = resolve_configuration(
            environ={"PHOTOFRAME_STORAGE_DIR": str(target)},
            config_path=self.config_path,
        )
        self.assertTrue(target.is_dir())
        self.assertEqual(config.storage_directory, target.resolve())

    def test_storage_path_that_is_a_file_fails_fast(self):
        blocker = self.root / "not-a-directory"
        blocker.write_text("x", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            resolve_configuration(
                environ={"PHOTOFRAME_STORAGE_DIR": str(blocker)},
                config_path=self.config_path,
            )

    @unittest.skipIf(hasattr(os, "geteuid") and os.geteuid() == 0, "root ignores permissions")
    def test_read_only_storage_directory_fails_fast(self):
        read_only = self.root / "read-only"
        read_only.mkdir()
        read_only.chmod(stat.S_IRUSR | stat.S_IXUSR)
        try:
            with self.assertRaises(ConfigurationError):
                resolve_configuration(
                    environ={"PHOTOFRAME_STORAGE_DIR": str(read_only)},
                    config_path=self.config_path,
                )
        finally:
            read_only.chmod(stat.S_IRWXU)

    def test_empty_content_types_in_file_fails_fast(self):
        self._write_config(
            {"allowed_content_types": [], "storage_directory": str(self.root / "photos")}
        )
        with self.assertRaises(ConfigurationError):
            resolve_configuration(environ={}, config_path=self.config_path)

    def test_malformed_file_is_ignored(self):
        self.config_path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("photoframe.config", level="WARNING"):
            config = resolve_configuration(
                environ={"PHOTOFRAME_STORAGE_DIR": str(self.root / "photos")},
                config_path=self.config_path,
            )
        self.assertEqual(config.api_key, DEFAULT_API_KEY)

    def test_file_that_is_not_utf8_is_ignored(self):
        self.config_path.write_bytes(b'{"api_key": "\xff\xfe"}')
        with self.assertLogs("photoframe.config", level="WARNING"):
            config = resolve_configuration(
                environ={"PHOTOFRAME_STORAGE_DIR": str(self.root / "photos")},
                config_path=self.config_path,
            )
        self.assertEqual(config.api_key, DEFAULT_API_KEY)

    def test_unknown_keys_are_dropped(self):
        self._write_config({"api_key": "file-key", "colour": "blue"})
        values = load_local_overrides(self.config_path)
        self.assertEqual(values, {"api_key": "file-key"})

    def test_missing_file_yields_no_overrides(self):
        self.assertEqual(load_local_overrides(self.root / "absent.json"), {})

    def test_default_key_outside_development_warns(self):
        with self.assertLogs("photoframe.security", level="CRITICAL"):
            resolve_configuration(
                environ={
                    "PHOTOFRAME_ENV": "production",
                    "PHOTOFRAME_STORAGE_DIR": str(self.root / "photos"),
                },
                config_path=self.config_path,
            )

    def test_config_file_path_from_environment(self):
        custom = self.root / "custom.json"
        custom.write_text(json.dumps({"port": 5050}), encoding="utf-8")
        path = config_module.default_config_path({"PHOTOFRAME_CONFIG_FILE": str(custom)})
        self.assertEqual(path, custom)
        config = resolve_configuration(
            environ={
                "PHOTOFRAME_CONFIG_FILE": str(custom),
                "PHOTOFRAME_STORAGE_DIR": str(self.root / "photos"),
            }
        )
        self.assertEqual(config.port, 5050)


if __name__ == "__main__":
    unittest.main()
