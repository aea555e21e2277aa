import json
import os

from commit_gate.logger import log_event


def _payload(result):
    payload = result.to_dict()
    payload["results"] = [dict(item) for item in result.results]
    return payload


def gate_report(result):
    payload = {
        "auth_status": result.auth_status,
        "merge_status": result.merge_status,
        "failed_commits": [dict(item) for item in result.failed_commits],
        "merge_sha": result.merge_sha,
        "blocking_reason": result.blocking_reason,
        "error_code": (result.error or {}).get("code"),
        "verdict_digest": result.verdict_digest,
        "audit_error_code": (result.audit_error or {}).get("code"),
    }
    return "COMMIT_GATE_REPORT " + json.dumps(payload, sort_keys=True)


def write_gate_artifact(result, root="artifacts/commit-gate"):
    os.makedirs(root, exist_ok=True)
    head = (result.head or "unknown").replace("/", "-")
    path = os.path.join(root, f"gate-{head}.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(_payload(result), f, sort_keys=True, indent=2)
        f.write("\n")
    status = "PASS" if result.passed else "FAIL"
    log_event("artifact", f"wrote gate-{head}.json status={status}")
    return path


def write_github_outputs(result, path):
    """Append ``key=value`` lines to a GITHUB_OUTPUT style file."""
    lines = {
        "auth-status": result.auth_status,
        "merge-status": result.merge_status,
        "failed-commits": json.dumps([dict(item) for item in result.failed_commits], sort_keys=True),
        "merge-sha": result.merge_sha or "",
        "blocking-reason": result.blocking_reason or "",
        "should-comment": "true" if result.should_comment else "false",
    }
    with open(path, "a", encoding="utf-8") as f:
        for key, value in lines.items():
            f.write(f"{key}={value}\n")
