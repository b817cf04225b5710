#!/usr/bin/env python
"""
autoapprove Eval Harness

Runs labelled diff samples through the DecisionEngine offline. Samples live
under eval/samples/<expected>/*.patch where <expected> is "approvable" or
"manual". PR metadata is synthesized so that only the content and AI gates
decide; CI, reviews and age always pass.

Usage:
    python eval/run_eval.py                       # Rules only, no API calls
    python eval/run_eval.py --model gpt-4o        # Add single-model analysis
    python eval/run_eval.py --model gpt-4o --model claude-sonnet-4 --consensus
    python eval/run_eval.py --sample readme_typo.patch -v
"""

import argparse
import json
import os
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

_ROOT = Path(__file__).resolve().parent.parent
_EVAL = Path(__file__).resolve().parent
sys.path.insert(0, str(_ROOT))

from autoapprove.adapters.github_client import deltas_from_diff  # noqa: E402
from autoapprove.adapters.llm_clients import ProviderKeys, build_model  # noqa: E402
from autoapprove.analyzer import SingleModelAnalyzer  # noqa: E402
from autoapprove.config import EngineConfig  # noqa: E402
from autoapprove.consensus import ConsensusMember, MultiModelConsensus, build_model_configs  # noqa: E402
from autoapprove.constants import MERGE_SQUASH  # noqa: E402
from autoapprove.decision_engine import DecisionEngine  # noqa: E402
from autoapprove.hosting import HostingClient  # noqa: E402
from autoapprove.models import ChangeRef, ChangeRequest, CombinedStatus, FileDelta  # noqa: E402

# Thresholds (overridable for CI profiles)
DEFAULT_MAX_UNSAFE = float(os.environ.get("AUTOAPPROVE_EVAL_MAX_UNSAFE", "0.0"))
DEFAULT_MAX_MISSED = float(os.environ.get("AUTOAPPROVE_EVAL_MAX_MISSED", "25.0"))

EXPECTED_DIRS = ("approvable", "manual")
EVAL_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Offline hosting
# ---------------------------------------------------------------------------

class SampleHosting(HostingClient):
    """Serves one diff as an open, quiet, green pull request. Read-only."""

    def __init__(self, ref: ChangeRef, files: list[FileDelta], title: str, author: str = "contributor"):
        self.files = files
        self.change = ChangeRequest(
            ref=ref,
            state="open",
            draft=False,
            title=title,
            body=f"Automated evaluation sample {title}.",
            author=author,
            author_association="CONTRIBUTOR",
            created_at=EVAL_NOW - timedelta(days=2),
            updated_at=EVAL_NOW - timedelta(days=1),
            changed_files=len(files),
            additions=sum(f.additions for f in files),
            deletions=sum(f.deletions for f in files),
            head_sha="0" * 40,
            url=f"https://github.com/{ref.full_name}/pull/{ref.number}",
        )

    def authenticated_user(self):
        return "autoapprove-eval"

    def get_change(self, ref):
        return self.change

    def list_files(self, ref):
        return list(self.files)

    def get_combined_status(self, ref, sha):
        return CombinedStatus("success")

    def list_check_runs(self, ref, sha):
        return []

    def list_reviews(self, ref):
        return []

    def list_issue_comments(self, ref):
        return []

    def list_review_comments(self, ref):
        return []

    def get_user_permission(self, ref, user):
        return "none"

    def approve(self, ref, body=""):
        raise RuntimeError("eval harness never writes")

    def enable_auto_merge(self, ref, method=MERGE_SQUASH):
        raise RuntimeError("eval harness never writes")

    def merge(self, ref, method=MERGE_SQUASH):
        raise RuntimeError("eval harness never writes")

    def update_branch(self, ref):
        raise RuntimeError("eval harness never writes")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class Result:
    sample: str
    expected: str          # approvable | manual
    approvable: bool
    reason: str
    files: int
    lines: int
    elapsed: float
    details: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def correct(self) -> bool:
        return self.approvable == (self.expected == "approvable")

    @property
    def unsafe(self) -> bool:
        """Approved although a human should have looked."""
        return self.expected == "manual" and self.approvable

    @property
    def missed(self) -> bool:
        """Sent to a human although it was safe."""
        return self.expected == "approvable" and not self.approvable


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def build_config(models: list[str], consensus: bool) -> EngineConfig:
    return EngineConfig(
        use_ai=bool(models),
        use_consensus=consensus,
        models=models,
        # Everyone is trusted so that consensus sees code changes too.
        trusted_users=["contributor"] if consensus else [],
    ).validate()


def build_ai(config: EngineConfig, keys: ProviderKeys):
    if not config.models:
        return None, None
    models = [build_model(name, keys) for name in config.models]
    analyzer = SingleModelAnalyzer(models[0], timeout=config.model_timeout) if config.use_ai else None
    consensus = None
    if config.use_consensus:
        members = [ConsensusMember(m, c) for m, c in zip(models, build_model_configs(config.models))]
        consensus = MultiModelConsensus(members, min_models=config.min_models, timeout=config.model_timeout)
    return analyzer, consensus


def run_sample(sample_path: Path, number: int, config: EngineConfig, analyzer=None, consensus=None) -> Result:
    """Run one diff sample through the full engine."""
    start = time.monotonic()
    expected = sample_path.parent.name
    errors: list[str] = []

    try:
        files = deltas_from_diff(sample_path.read_text(encoding="utf-8"))
    except Exception as e:
        errors.append(f"Diff: {e}")
        files = []

    ref = ChangeRef("eval", "samples", number)
    hosting = SampleHosting(ref, files, title=sample_path.stem.replace("_", " "))
    engine = DecisionEngine(hosting, config, analyzer=analyzer, consensus=consensus, clock=lambda: EVAL_NOW)

    try:
        decision = engine.evaluate(ref)
        approvable, reason, details = decision.approvable, decision.reason, list(decision.details)
    except Exception as e:
        errors.append(f"DecisionEngine: {e}")
        approvable, reason, details = False, "evaluation error", []

    return Result(
        sample=sample_path.name,
        expected=expected,
        approvable=approvable,
        reason=reason,
        files=len(files),
        lines=hosting.change.total_lines,
        elapsed=round(time.monotonic() - start, 2),
        details=details,
        errors=errors,
    )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def compute_stats(results: list[Result], max_unsafe: float, max_missed: float) -> dict:
    total = len(results)
    if total == 0:
        return {"total": 0, "unsafe_pass": True, "missed_pass": True}

    safe = [r for r in results if r.expected == "approvable"]
    manual = [r for r in results if r.expected == "manual"]
    unsafe = sum(1 for r in results if r.unsafe)
    missed = sum(1 for r in results if r.missed)
    correct = sum(1 for r in results if r.correct)

    unsafe_rate = unsafe / len(manual) * 100 if manual else 0
    missed_rate = missed / len(safe) * 100 if safe else 0

    return {
        "total": total,
        "correct": correct,
        "accuracy_pct": round(correct / total * 100, 1),
        "approvable_count": len(safe),
        "manual_count": len(manual),
        "unsafe": unsafe, "unsafe_rate_pct": round(unsafe_rate, 1),
        "missed": missed, "missed_rate_pct": round(missed_rate, 1),
        # Any unsafe approval fails the default profile.
        "unsafe_pass": unsafe_rate <= max_unsafe,
        "missed_pass": missed_rate <= max_missed,
    }


def print_report(results: list[Result], stats: dict, elapsed: float, verbose: bool):
    print("\n" + "=" * 60)
    print("EVAL SUMMARY")
    print("=" * 60)
    if not stats["total"]:
        print("No samples.")
        return

    print(f"Accuracy:        {stats['correct']}/{stats['total']} ({stats['accuracy_pct']}%)")
    print(f"Unsafe approvals: {stats['unsafe']}/{stats['manual_count']} ({stats['unsafe_rate_pct']}%)")
    print(f"Missed approvals: {stats['missed']}/{stats['approvable_count']} ({stats['missed_rate_pct']}%)")
    print(f"Time:            {elapsed:.1f}s")
    print()
    print(f"Unsafe threshold: {'PASS' if stats['unsafe_pass'] else 'FAIL'}")
    print(f"Missed threshold: {'PASS' if stats['missed_pass'] else 'FAIL'}")

    failures = [r for r in results if not r.correct]
    if failures and verbose:
        print()
        print("FAILURES:")
        for r in failures:
            label = "UNSAFE" if r.unsafe else "MISSED"
            print(f"  [{label}] {r.expected}/{r.sample} -> {r.reason}")


def write_results(results: list[Result], stats: dict, models: list[str]) -> Path:
    results_dir = _EVAL / "results"
    results_dir.mkdir(exist_ok=True)

    ts = time.strftime("%Y%m%d-%H%M%S")
    out_path = results_dir / f"eval-{ts}.json"
    output = {
        "meta": {"timestamp": ts, "models": models, **stats},
        "results": [asdict(r) for r in results],
    }
    out_path.write_text(json.dumps(output, indent=2, default=str), encoding="utf-8")
    print(f"\nResults: {out_path}")
    return out_path


def collect_samples(samples_dir: Path, sample_filter: str | None) -> list[Path]:
    if sample_filter:
        matches = sorted(samples_dir.rglob(sample_filter))
        if not matches:
            print(f"ERROR: Sample not found: {sample_filter}")
            sys.exit(1)
        return matches
    samples = []
    for expected in EXPECTED_DIRS:
        samples.extend(sorted((samples_dir / expected).glob("*.patch")))
    return samples


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="autoapprove Eval Harness")
    p.add_argument("--model", action="append", default=[],
                   help="Model spec for AI analysis (repeat for consensus)")
    p.add_argument("--consensus", action="store_true",
                   help="Resolve code changes with multi-model consensus")
    p.add_argument("--sample", default=None, help="Run a single sample by filename")
    p.add_argument("--no-write", action="store_true", help="Do not write a results file")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose per-sample output")
    p.add_argument("--max-unsafe", type=float, default=DEFAULT_MAX_UNSAFE,
                   help="Fail if the unsafe-approval rate exceeds this percentage")
    p.add_argument("--max-missed", type=float, default=DEFAULT_MAX_MISSED,
                   help="Fail if the missed-approval rate exceeds this percentage")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    print("autoapprove Eval Harness")
    print("=" * 60)

    config = build_config(args.model, args.consensus)
    keys = ProviderKeys(
        openai_key=os.environ.get("OPENAI_API_KEY", ""),
        anthropic_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        openrouter_key=os.environ.get("OPENROUTER_API_KEY", ""),
        ollama_host=os.environ.get("OLLAMA_HOST", ""),
    )
    analyzer, consensus = build_ai(config, keys)
    print(f"Models:    {', '.join(config.models) or 'none (rules only)'}")
    print(f"Consensus: {config.use_consensus}")

    samples = collect_samples(_EVAL / "samples", args.sample)
    print(f"Samples:   {len(samples)}")
    print("=" * 60)

    results = []
    t0 = time.monotonic()
    for i, path in enumerate(samples, 1):
        r = run_sample(path, i, config, analyzer, consensus)
        results.append(r)
        label = "OK" if r.correct else ("UNSAFE" if r.unsafe else "MISSED")
        print(f"[{i}/{len(samples)}] {r.expected}/{r.sample}  files={r.files} lines={r.lines}  [{label}]")
        if args.verbose or not r.correct:
            print(f"  reason: {r.reason}")
        for e in r.errors:
            print(f"  ERROR: {e}")
    elapsed = time.monotonic() - t0

    stats = compute_stats(results, args.max_unsafe, args.max_missed)
    print_report(results, stats, elapsed, args.verbose)
    if not args.no_write:
        write_results(results, stats, config.models)

    sys.exit(0 if stats["unsafe_pass"] and stats["missed_pass"] else 1)


if __name__ == "__main__":
    main()
