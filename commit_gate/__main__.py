import argparse
import dataclasses
import os
import sys

from commit_gate.config import GateConfig, infer_refs_from_event, load_config, load_event
from commit_gate.engine import run_gate
from commit_gate.errors import ConfigError
from commit_gate.logger import log_event
from commit_gate.report import gate_report, write_gate_artifact, write_github_outputs


def _build_config(args, environ):
    config = load_config(args.config) if args.config else GateConfig.from_env(environ)
    overrides = {}
    if args.base:
        overrides["base_branch"] = args.base
    if args.head:
        overrides["head_branch"] = args.head
    if args.repo_path:
        overrides["repo_path"] = args.repo_path
    if args.no_merge:
        overrides["merge_enabled"] = False
    if not (overrides.get("base_branch") or config.base_branch) or not (
        overrides.get("head_branch") or config.head_branch
    ):
        base, head = infer_refs_from_event(load_event(environ))
        overrides.setdefault("base_branch", config.base_branch or base)
        overrides.setdefault("head_branch", config.head_branch or head)
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv=None, environ=None) -> int:
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        prog="commit-gate",
        description="Verify SSH-signed commits and fast-forward the base branch.",
    )
    parser.add_argument("--config", help="YAML config file; defaults to INPUT_* environment variables")
    parser.add_argument("--base")
    parser.add_argument("--head")
    parser.add_argument("--repo-path")
    parser.add_argument("--no-merge", action="store_true", help="authenticate only")
    parser.add_argument("--artifact-dir")
    args = parser.parse_args(argv)

    try:
        config = _build_config(args, environ)
        result = run_gate(config)
    except ConfigError as exc:
        log_event("gate", f"config_invalid error={exc}")
        print(f"commit-gate configuration error: {exc}", file=sys.stderr)
        return 2

    print(gate_report(result))

    artifact_dir = args.artifact_dir or config.artifact_dir
    if artifact_dir:
        write_gate_artifact(result, artifact_dir)
    if environ.get("GITHUB_OUTPUT"):
        write_github_outputs(result, environ["GITHUB_OUTPUT"])
    return 0 if result.passed else 1


if __name__ == "__main__":
    raise SystemExit(main())
