#!/usr/bin/env python3
"""
autoapprove GitHub Action Entrypoint

Evaluates one pull request against the auto-approve policy and, unless
running in dry-run mode, approves it and optionally enables auto-merge.
"""

import hashlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from autoapprove.adapters.credentials import AppInstallationTokenProvider, StaticTokenProvider
from autoapprove.adapters.github_client import GitHubClient
from autoapprove.adapters.llm_clients import ProviderKeys, build_model
from autoapprove.analyzer import SingleModelAnalyzer
from autoapprove.config import EngineConfig, load_config
from autoapprove.consensus import ConsensusMember, MultiModelConsensus, build_model_configs
from autoapprove.deadline import Deadline
from autoapprove.decision_engine import DecisionEngine, render_decision_card
from autoapprove.errors import AutoApproveError, EvaluationCancelled
from autoapprove.hosting import parse_change_ref
from autoapprove.models import ChangeRef
from autoapprove.processor import ChangeProcessor, Outcome

# INPUT_* name -> EngineConfig field, by value kind
BOOL_INPUTS = {
    "INPUT_SKIP_FIRST_TIME": "skip_first_time",
    "INPUT_SKIP_DRAFT": "skip_draft",
    "INPUT_REQUIRE_PASSING_CHECKS": "require_passing_checks",
    "INPUT_IGNORE_SIGNING_CHECKS": "ignore_signing_checks",
    "INPUT_USE_AI": "use_ai",
    "INPUT_USE_CONSENSUS": "use_consensus",
}
INT_INPUTS = {
    "INPUT_MAX_FILES": "max_files",
    "INPUT_MAX_LINES": "max_lines",
    "INPUT_MIN_MODELS": "min_models",
}
TEXT_INPUTS = {
    "INPUT_MIN_OPEN_TIME": "min_open_time",
    "INPUT_MAX_OPEN_TIME": "max_open_time",
    "INPUT_MODEL_TIMEOUT": "model_timeout",
    "INPUT_TRUSTED_USERS": "trusted_users",
    "INPUT_TRUSTED_MIN_ROLE": "trusted_min_role",
    "INPUT_DEPENDENCY_BOTS": "dependency_bots",
}


def get_env(name: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(name, default)


def parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.strip().lower() in ("true", "1", "yes")


def parse_float(value: str, default: float) -> float:
    """Parse a float from string with fallback."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        print(f"::error::{name} must be an integer, got {value!r}")
        sys.exit(1)


def resolve_existing_file(
    raw: Optional[str],
    bases: list[Path],
    extensions: tuple[str, ...] = ("", ".yaml", ".yml"),
) -> Optional[Path]:
    """Resolve an input path/name to an existing file across base directories."""
    if not raw:
        return None

    candidate = Path(raw)
    roots = [Path("/")] if candidate.is_absolute() else [Path(p) for p in bases] + [Path(".")]
    for root in roots:
        base = candidate if candidate.is_absolute() else (root / candidate)
        for ext in extensions:
            test = base if (ext == "" or base.suffix) else base.with_suffix(ext)
            if test.is_file():
                return test.resolve()
    return None


def set_output(name: str, value: str):
    """Set GitHub Actions output."""
    output_file = os.environ.get("GITHUB_OUTPUT")
    text = str(value)
    if output_file:
        delimiter = f"EOF_{hashlib.sha256(f'{name}:{text}'.encode()).hexdigest()[:16]}"
        with open(output_file, "a", encoding="utf-8") as f:
            f.write(f"{name}<<{delimiter}\n")
            f.write(f"{text}\n")
            f.write(f"{delimiter}\n")
    else:
        escaped = text.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
        print(f"::set-output name={name}::{escaped}")


def write_step_summary(markdown: str) -> None:
    summary_file = os.environ.get("GITHUB_STEP_SUMMARY")
    if not summary_file:
        return
    with open(summary_file, "a", encoding="utf-8") as f:
        f.write(markdown)
        f.write("\n")


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def config_overrides() -> dict[str, Any]:
    """Typed EngineConfig overrides for every INPUT_* that is set."""
    overrides: dict[str, Any] = {}
    for env, key in BOOL_INPUTS.items():
        if get_env(env):
            overrides[key] = parse_bool(get_env(env))
    for env, key in INT_INPUTS.items():
        if get_env(env):
            overrides[key] = parse_int(get_env(env), env)
    for env, key in TEXT_INPUTS.items():
        if get_env(env):
            overrides[key] = get_env(env)
    models = [get_env(f"INPUT_MODEL_{i}").strip() for i in (1, 2, 3)]
    models = [m for m in models if m]
    if models:
        overrides["models"] = models
    if get_env("INPUT_CONSENSUS_MIN_CONFIDENCE"):
        overrides["consensus_min_confidence"] = parse_float(get_env("INPUT_CONSENSUS_MIN_CONFIDENCE"), 0.85)
    return overrides


def load_engine_config(workspace: Path) -> EngineConfig:
    base = EngineConfig()
    raw_policy = get_env("INPUT_POLICY")
    if raw_policy:
        policy_path = resolve_existing_file(raw_policy, [workspace, workspace / ".github"])
        if policy_path is None:
            print(f"::error::Policy file not found: {raw_policy}")
            sys.exit(1)
        print(f"Policy: {policy_path}")
        base = load_config(policy_path)
    return base.merged(config_overrides()).validate()


def resolve_change_ref() -> Optional[ChangeRef]:
    """INPUT_PR wins; otherwise the pull_request event that triggered the run."""
    raw = get_env("INPUT_PR")
    if raw:
        return parse_change_ref(raw)

    event_path = get_env("GITHUB_EVENT_PATH")
    repository = get_env("GITHUB_REPOSITORY")
    if not event_path or not repository:
        return None
    try:
        with open(event_path, encoding="utf-8") as f:
            event = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"::error::Cannot read event payload {event_path}: {e}")
        sys.exit(1)
    if not isinstance(event, dict):
        print(f"::error::Event payload {event_path} is not a JSON object")
        sys.exit(1)
    number = (event.get("pull_request") or {}).get("number") or event.get("number")
    if not number:
        return None
    return parse_change_ref(f"{repository}#{number}")


def build_github_client(workspace: Path) -> GitHubClient:
    app_id = get_env("INPUT_APP_ID")
    if app_id:
        provider = AppInstallationTokenProvider(
            app_id,
            get_env("INPUT_APP_PRIVATE_KEY"),
            get_env("INPUT_APP_INSTALLATION_ID"),
        )
    else:
        provider = StaticTokenProvider()

    stub = get_env("STUB_DIFF_PATH")
    stub_path = None
    if stub:
        stub_path = Path(stub) if Path(stub).is_absolute() else workspace / stub
        if not stub_path.exists():
            print(f"::error::STUB_DIFF_PATH set but file not found: {stub_path}")
            sys.exit(1)
    return GitHubClient(provider.auth(), stub_diff_path=stub_path)


def provider_keys() -> ProviderKeys:
    return ProviderKeys(
        openai_key=get_env("INPUT_OPENAI_API_KEY") or get_env("OPENAI_API_KEY"),
        anthropic_key=get_env("INPUT_ANTHROPIC_API_KEY") or get_env("ANTHROPIC_API_KEY"),
        openrouter_key=get_env("INPUT_OPENROUTER_API_KEY") or get_env("OPENROUTER_API_KEY"),
        ollama_host=get_env("INPUT_OLLAMA_HOST") or get_env("OLLAMA_HOST"),
    )


def build_ai(config: EngineConfig) -> tuple[Optional[SingleModelAnalyzer], Optional[MultiModelConsensus]]:
    if not config.use_ai and not config.use_consensus:
        return None, None
    if not config.models:
        print("::error::AI analysis is enabled but no model is configured (set model-1)")
        sys.exit(1)

    keys = provider_keys()
    models = [build_model(name, keys) for name in config.models]
    analyzer = None
    if config.use_ai:
        analyzer = SingleModelAnalyzer(models[0], timeout=config.model_timeout)
    consensus = None
    if config.use_consensus:
        members = [
            ConsensusMember(model, cfg)
            for model, cfg in zip(models, build_model_configs(config.models))
        ]
        consensus = MultiModelConsensus(members, min_models=config.min_models, timeout=config.model_timeout)
    return analyzer, consensus


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def report(outcome: Outcome) -> None:
    decision = outcome.decision
    set_output("approvable", "true" if decision.approvable else "false")
    set_output("reason", decision.reason)
    set_output("details", "\n".join(decision.details))
    set_output("approved", "true" if outcome.approved else "false")
    auto_merge = any(a.action == "enable_auto_merge" and a.ok for a in outcome.actions)
    set_output("auto_merge_enabled", "true" if auto_merge else "false")

    print("::group::Decision")
    print(f"Approvable: {decision.approvable}")
    print(f"Reason: {decision.reason}")
    for detail in decision.details:
        print(f"  - {detail}")
    print("::endgroup::")

    if decision.approvable and outcome.dry_run:
        print(f"::notice::[dry-run] {outcome.ref} would be approved")
    elif not decision.approvable:
        print(f"::notice::{outcome.ref} needs manual review: {decision.reason}")
    for action in outcome.actions:
        if action.skipped:
            print(f"::notice::{action.action} skipped: {action.message}")
        elif action.ok:
            print(f"::notice::{action.action} succeeded for {outcome.ref}")
        else:
            print(f"::warning::{action.action} failed for {outcome.ref}: {action.message}")


def main():
    debug = parse_bool(get_env("INPUT_DEBUG", "false"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    workspace = Path(get_env("GITHUB_WORKSPACE", ".")).resolve()
    dry_run = parse_bool(get_env("INPUT_DRY_RUN", "false"))
    auto_merge = parse_bool(get_env("INPUT_AUTO_MERGE", "false"))
    merge_method = get_env("INPUT_AUTO_MERGE_METHOD", "squash")
    update_branch = parse_bool(get_env("INPUT_UPDATE_BRANCH", "false"))
    fail_on_reject = parse_bool(get_env("INPUT_FAIL_ON_REJECT", "false"))
    timeout = parse_float(get_env("INPUT_TIMEOUT", "300"), 300.0)

    try:
        ref = resolve_change_ref()
        if ref is None:
            print("::notice::Not a pull request event, skipping analysis")
            sys.exit(0)

        config = load_engine_config(workspace)
        print("::group::autoapprove")
        print(f"PR: {ref}")
        print(f"Dry run: {dry_run}")
        print(f"Limits: {config.max_files} files, {config.max_lines} lines")
        print(f"AI: {config.use_ai} | consensus: {config.use_consensus} | models: {', '.join(config.models) or 'none'}")
        print("::endgroup::")

        hosting = build_github_client(workspace)
        analyzer, consensus = build_ai(config)
        engine = DecisionEngine(hosting, config, analyzer=analyzer, consensus=consensus)
        processor = ChangeProcessor(
            hosting,
            engine,
            dry_run=dry_run,
            auto_merge=auto_merge,
            merge_method=merge_method,
            update_branch=update_branch,
        )
        outcome = processor.process(ref, Deadline(timeout))
    except EvaluationCancelled as exc:
        print(f"::error::{exc} (timeout {timeout:.0f}s)")
        set_output("approvable", "false")
        sys.exit(1)
    except AutoApproveError as exc:
        print(f"::error::{exc}")
        set_output("approvable", "false")
        sys.exit(1)

    report(outcome)
    write_step_summary(render_decision_card(outcome.decision))

    if any(not a.ok for a in outcome.actions):
        sys.exit(1)
    if fail_on_reject and not outcome.decision.approvable:
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
