"""The bundled eval samples must all be classified correctly with rules only."""

import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from eval.run_eval import build_config, collect_samples, compute_stats, run_sample  # noqa: E402

SAMPLES = ROOT / "eval" / "samples"


class EvalSampleTests(unittest.TestCase):
    def test_rules_only_classifies_every_sample(self):
        config = build_config([], consensus=False)
        samples = collect_samples(SAMPLES, None)
        self.assertGreaterEqual(len(samples), 10)
        for number, path in enumerate(samples, 1):
            with self.subTest(sample=f"{path.parent.name}/{path.name}"):
                result = run_sample(path, number, config)
                self.assertEqual(result.errors, [])
                self.assertTrue(result.correct, result.reason)

    def test_expected_reasons(self):
        config = build_config([], consensus=False)
        expected = {
            "workflow_change.patch": "GitHub Actions workflow changes require manual review",
            "code_change.patch": "Code changes could alter program behavior",
            "readme_command.patch": "File changes contain potential security risks",
            "comment_injection.patch": "Security threat detected in PR content",
            "typosquat_dependency.patch": "Config changes could alter program behavior",
            "shell_script.patch": "Shell script modifications require manual review",
            "binary_asset.patch": "Unable to inspect file content",
        }
        for name, reason in expected.items():
            with self.subTest(sample=name):
                self.assertEqual(run_sample(SAMPLES / "manual" / name, 1, config).reason, reason)

    def test_stats(self):
        config = build_config([], consensus=False)
        results = [run_sample(p, i, config) for i, p in enumerate(collect_samples(SAMPLES, None), 1)]
        stats = compute_stats(results, max_unsafe=0.0, max_missed=0.0)
        self.assertEqual(stats["unsafe"], 0)
        self.assertEqual(stats["missed"], 0)
        self.assertTrue(stats["unsafe_pass"] and stats["missed_pass"])


if __name__ == "__main__":
    unittest.main()
