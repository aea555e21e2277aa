import time

from commit_gate.audit_log import AuditLog, MemorySink
from commit_gate.config import GateConfig
from commit_gate.engine import GateResult, run_gate
from commit_gate.resilience import Deadline

from sshsig_testkit import FakeRepo, ed25519_key, linear_repo, make_commit, rsa_key


def _config(*keys, **overrides):
    policy = "\n".join(key.policy_line(f"dev{i}@example.com") for i, key in enumerate(keys)) + "\n"
    values = {
        "allowed_signers": policy,
        "base_branch": "main",
        "head_branch": "feature",
        "artifact_dir": None,
    }
    values.update(overrides)
    return GateConfig(**values)


def _run(config, repo, **kwargs):
    sink = MemorySink()
    audit = AuditLog([sink])
    result = run_gate(config, vcs=repo, audit_log=audit, **kwargs)
    assert sink.closed
    return result, sink


def test_signed_range_authenticates_and_fast_forwards():
    key = ed25519_key()
    repo, _, shas = linear_repo(head_count=2, key=key)

    result, _ = _run(_config(key), repo)

    assert result.auth_status == "success"
    assert result.failed_commits == ()
    assert result.merge_status == "success"
    assert result.merge_sha == shas[-1]
    assert repo.refs["main"] == shas[-1]
    assert result.passed


def test_unsigned_commit_blocks_merge():
    key = ed25519_key()
    repo, root, shas = linear_repo(head_count=1, key=key)
    unsigned = repo.add(make_commit("unsigned", parents=(shas[-1],)))
    repo.refs["feature"] = unsigned

    result, _ = _run(_config(key), repo)

    assert result.auth_status == "failed"
    assert result.failed_commits == ({"sha": unsigned, "outcome": "unsigned"},)
    assert result.merge_status == "skipped"
    assert repo.refs["main"] == root
    assert not result.passed


def test_required_key_type_rejection():
    key = rsa_key()
    repo, _, shas = linear_repo(head_count=1, key=key)

    result, _ = _run(_config(key, required_key_type="ed25519-sk"), repo)

    assert result.auth_status == "failed"
    assert result.failed_commits == ({"sha": shas[0], "outcome": "keyTypeRejected"},)


def test_identical_refs_skip_merge():
    repo, _, _ = linear_repo(head_count=0)

    result, _ = _run(_config(ed25519_key()), repo)

    assert result.auth_status == "success"
    assert result.merge_status == "skipped"
    assert result.merge_sha is None
    assert repo.writes == []


def test_diverged_history_is_blocked():
    key = ed25519_key()
    repo = FakeRepo()
    (root,) = repo.chain(["root"], key=key)
    (base_only,) = repo.chain(["base-only"], parent=root, key=key)
    (head_only,) = repo.chain(["head-only"], parent=root, key=key)
    repo.refs.update(main=base_only, feature=head_only)

    result, _ = _run(_config(key, merge_method="fast-forward"), repo)

    assert result.auth_status == "success"
    assert result.merge_status == "blocked"
    assert result.blocking_reason == "notFastForward"
    assert not result.passed


def test_policy_error_aborts_before_evaluation():
    repo, _, _ = linear_repo(head_count=1)

    result, sink = _run(_config(allowed_signers="alice@example.com ssh-ed25519 !!!\n"), repo)

    assert result.auth_status == "failed"
    assert result.merge_status == "skipped"
    assert result.error["code"] == "commit_gate.policy.invalid"
    assert result.error["context"]["line_number"] == 1
    assert ("resolve", "feature") not in repo.calls
    assert [e.category for e in sink.events] == ["gate.aborted"]


def test_missing_refs_is_a_config_failure():
    repo, _, _ = linear_repo()
    result, _ = _run(_config(ed25519_key(), head_branch=None), repo)
    assert result.error["code"] == "commit_gate.config.invalid"


def test_auth_not_required_skips_verification():
    repo, _, shas = linear_repo(head_count=1)

    result, sink = _run(_config(allowed_signers="", auth_required=False), repo)

    assert result.auth_status == "skipped"
    assert result.failed_commits == ()
    assert result.merge_status == "success"
    assert repo.refs["main"] == shas[-1]
    assert "auth.skipped" in [e.category for e in sink.events]


def test_observe_when_skipped_reports_without_blocking():
    key = ed25519_key()
    repo, _, shas = linear_repo(head_count=1)

    result, _ = _run(_config(key, auth_required=False, observe_when_skipped=True), repo)

    assert result.auth_status == "skipped"
    assert result.failed_commits == ({"sha": shas[0], "outcome": "unsigned"},)
    assert result.merge_status == "success"


def test_merge_disabled_only_authenticates():
    key = ed25519_key()
    repo, root, _ = linear_repo(head_count=1, key=key)

    result, _ = _run(_config(key, merge_enabled=False), repo)

    assert result.auth_status == "success"
    assert result.merge_status == "skipped"
    assert repo.refs["main"] == root


def test_shallow_history_error_carries_hint():
    key = ed25519_key()
    repo = FakeRepo()
    repo.shallow = True
    (a,) = repo.chain(["a"], key=key)
    b = repo.add(make_commit("b", parents=("0" * 40,), key=key))
    repo.refs.update(main=a, feature=b)

    result, _ = _run(_config(key), repo)

    assert result.auth_status == "failed"
    assert result.error["code"] == "commit_gate.range.shallow_history"
    assert "fetch-depth: 0" in result.error["context"]["hint"]


def test_deadline_expiry_reports_timeout_not_partial_verdict(monkeypatch):
    key = ed25519_key()
    repo, root, _ = linear_repo(head_count=3, key=key)

    import commit_gate.authenticator as authenticator

    real_verify = authenticator.verify_commit

    def slow_verify(*args, **kwargs):
        time.sleep(0.5)
        return real_verify(*args, **kwargs)

    monkeypatch.setattr(authenticator, "verify_commit", slow_verify)

    result, sink = _run(_config(key, workers=1), repo, deadline=Deadline(0.2))

    assert result.auth_status == "failed"
    assert result.error["code"] == "commit_gate.deadline.exceeded"
    assert result.failed_commits == ()
    assert result.verdict_digest is None
    assert repo.refs["main"] == root
    assert "gate.timeout" in [e.category for e in sink.events]


def test_repeated_runs_share_verdict_digest():
    key = ed25519_key()
    repo, _, _ = linear_repo(head_count=2, key=key)
    config = _config(key, merge_enabled=False)

    first, _ = _run(config, repo)
    second, _ = _run(config, repo)

    assert first.verdict_digest == second.verdict_digest
    assert first == second


def test_comment_mode():
    failed = GateResult(auth_status="failed", merge_status="skipped", comment_mode="on-error")
    passed = GateResult(auth_status="success", merge_status="success", comment_mode="on-error")
    assert failed.should_comment
    assert not passed.should_comment
    assert GateResult(auth_status="success", merge_status="success", comment_mode="always").should_comment
    assert not GateResult(auth_status="failed", merge_status="failed", comment_mode="never").should_comment


def test_configured_token_is_masked_in_audit_file(tmp_path):
    repo, _, _ = linear_repo(head_count=1)
    audit_path = tmp_path / "audit.jsonl"
    config = _config(
        ed25519_key(),
        head_branch="feature-s3cr3tvalue",
        forge_token="s3cr3tvalue",
        audit_log_path=str(audit_path),
    )

    result = run_gate(config, vcs=repo)

    assert result.error["code"] == "commit_gate.range.unresolvable"
    text = audit_path.read_text(encoding="utf-8")
    assert "auth.range_unresolved" in text
    assert "s3cr3tvalue" not in text


class _HeadRacingRepo(FakeRepo):
    """Pushes an unsigned commit onto ``feature`` right after the range is listed."""

    def list_commits(self, base_sha, head_sha):
        commits = super().list_commits(base_sha, head_sha)
        if "intruder" not in self.refs:
            intruder = self.add(make_commit("intruder", parents=(self.refs["feature"],)))
            self.refs["intruder"] = intruder
            self.refs["feature"] = intruder
        return commits


def test_head_moved_after_verification_is_not_merged():
    key = ed25519_key()
    repo = _HeadRacingRepo()
    (root,) = repo.chain(["root"], key=key)
    (signed,) = repo.chain(["signed"], parent=root, key=key)
    repo.refs.update(main=root, feature=signed)

    result, sink = _run(_config(key), repo)

    assert result.auth_status == "success"
    assert [r["sha"] for r in result.results] == [signed]
    assert result.merge_status == "blocked"
    assert result.blocking_reason == "headMoved"
    assert repo.refs["main"] == root
    assert repo.writes == []
    assert "merge.head_moved" in [e.category for e in sink.events]


def test_audit_write_failure_keeps_the_result(tmp_path):
    key = ed25519_key()
    repo, _, shas = linear_repo(head_count=1, key=key)
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    config = _config(key, audit_log_path=str(blocker / "audit.jsonl"))

    result = run_gate(config, vcs=repo)

    assert result.auth_status == "success"
    assert result.merge_status == "success"
    assert result.merge_sha == shas[-1]
    assert repo.refs["main"] == shas[-1]
    assert result.audit_error["code"] == "commit_gate.audit.write_failed"
    assert result.to_dict()["audit_error"]["code"] == "commit_gate.audit.write_failed"
