import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from autoapprove.config import EngineConfig, load_config, parse_duration  # noqa: E402
from autoapprove.errors import ValidationError  # noqa: E402


class ParseDurationTests(unittest.TestCase):
    def test_units(self):
        self.assertEqual(parse_duration("90s"), 90)
        self.assertEqual(parse_duration("30m"), 1800)
        self.assertEqual(parse_duration("2h"), 7200)
        self.assertEqual(parse_duration("7d"), 7 * 86400)
        self.assertEqual(parse_duration("45"), 45)
        self.assertEqual(parse_duration(12), 12)

    def test_rejects_garbage(self):
        for value in ("soon", "1w", "", None, True):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError):
                    parse_duration(value)


class EngineConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = EngineConfig().validate()
        self.assertEqual(config.max_files, 5)
        self.assertEqual(config.max_lines, 125)
        self.assertEqual(config.min_open_time, 3600)
        self.assertEqual(config.max_open_time, 0)
        self.assertTrue(config.use_ai)
        self.assertFalse(config.use_consensus)
        self.assertTrue(config.is_dependency_bot("Dependabot[bot]"))
        self.assertFalse(config.is_dependency_bot("renovate[bot]"))

    def test_invalid_values(self):
        cases = [
            dict(max_files=0),
            dict(max_lines=0),
            dict(min_open_time=-1),
            dict(min_open_time=7200, max_open_time=3600),
            dict(trusted_min_role="owner"),
            dict(model_timeout=0),
            dict(consensus_min_confidence=1.2),
            dict(min_models=0),
        ]
        for fields in cases:
            with self.subTest(**fields):
                with self.assertRaises(ValidationError):
                    EngineConfig(**fields).validate()

    def test_consensus_needs_two_models(self):
        original = EngineConfig(use_consensus=True, models=["gpt-4o"])
        with self.assertLogs("autoapprove.config", level="WARNING"):
            config = original.validate()
        self.assertFalse(config.use_consensus)
        self.assertTrue(original.use_consensus)
        config = EngineConfig(use_consensus=True, models=["gpt-4o", "claude-sonnet-4"]).validate()
        self.assertTrue(config.use_consensus)

    def test_merged_coerces_overrides(self):
        config = EngineConfig().merged({
            "max_lines": 300,
            "min_open_time": "30m",
            "models": "gpt-4o, claude-sonnet-4",
            "use_consensus": True,
        })
        self.assertEqual(config.max_lines, 300)
        self.assertEqual(config.min_open_time, 1800)
        self.assertEqual(config.models, ["gpt-4o", "claude-sonnet-4"])
        self.assertTrue(config.use_consensus)

    def test_merged_rejects_wrong_types(self):
        for overrides in ({"max_files": "5"}, {"use_ai": "yes"}, {"models": [1, 2]}, {"colour": "red"}):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    EngineConfig().merged(overrides)


class LoadConfigTests(unittest.TestCase):
    def _write(self, text):
        tmp = tempfile.NamedTemporaryFile("w", suffix=".yml", delete=False, encoding="utf-8")
        tmp.write(text)
        tmp.close()
        self.addCleanup(Path(tmp.name).unlink)
        return tmp.name

    def test_loads_policy_file(self):
        path = self._write(
            "max_files: 3\n"
            "max_open_time: 14d\n"
            "trusted_users: [alice, bob]\n"
            "trusted_min_role: maintain\n"
        )
        config = load_config(path)
        self.assertEqual(config.max_files, 3)
        self.assertEqual(config.max_open_time, 14 * 86400)
        self.assertEqual(config.trusted_users, ["alice", "bob"])
        self.assertEqual(config.trusted_min_role, "maintain")

    def test_empty_file_gives_defaults(self):
        self.assertEqual(load_config(self._write("")), EngineConfig())

    def test_unknown_key(self):
        with self.assertRaises(ValidationError) as ctx:
            load_config(self._write("max_file: 3\n"))
        self.assertIn("max_file", str(ctx.exception))

    def test_not_a_mapping(self):
        with self.assertRaises(ValidationError):
            load_config(self._write("- one\n- two\n"))

    def test_bad_yaml(self):
        with self.assertRaises(ValidationError):
            load_config(self._write("max_files: [unclosed\n"))

    def test_missing_file(self):
        with self.assertRaises(ValidationError):
            load_config("/nonexistent/policy.yml")


if __name__ == "__main__":
    unittest.main()
