import os
import shutil
import subprocess

import pytest

from commit_gate.errors import ExternalCommandError, RangeResolutionError, ShallowHistoryError
from commit_gate.git_client import GitRepository, _parse_batch_output, branch_ref, parse_commit_object
from commit_gate.resilience import Resilience, RetryPolicy
from commit_gate.signers import load_signers
from commit_gate.verifier import verify_commit

from sshsig_testkit import commit_payload, ed25519_key, fake_sha, raw_commit_object, sign_armored

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Alice Example",
    "GIT_AUTHOR_EMAIL": "alice@example.com",
    "GIT_COMMITTER_NAME": "Alice Example",
    "GIT_COMMITTER_EMAIL": "alice@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def _git(repo, *args, input_bytes=None):
    env = dict(os.environ, HOME=str(repo), **GIT_ENV)
    proc = subprocess.run(
        ["git", *args],
        cwd=repo,
        input=input_bytes,
        capture_output=True,
        env=env,
        check=True,
    )
    return proc.stdout.decode("ascii").strip()


def _commit(repo, message):
    _git(repo, "commit", "--allow-empty", "-q", "-m", message)
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q", "-b", "main")
    _git(repo, "config", "commit.gpgsign", "false")
    return repo


def test_parse_commit_object_strips_signature_header():
    key = ed25519_key()
    payload = commit_payload((fake_sha("parent"),), "signed change")
    signature = sign_armored(key, payload)
    sha = fake_sha("signed")

    record = parse_commit_object(sha, raw_commit_object(payload, signature))

    assert record.sha == sha
    assert record.signature_blob == signature
    assert record.signed_payload == payload
    assert record.parents == (fake_sha("parent"),)
    assert record.author_identity == "Alice Example <alice@example.com>"
    registry = load_signers(key.policy_line() + "\n")
    assert verify_commit(record, registry).outcome == "verified"


def test_parse_commit_object_unsigned():
    payload = commit_payload((), "plain")
    record = parse_commit_object(fake_sha("plain"), payload)
    assert record.signature_blob is None
    assert record.signed_payload == payload
    assert record.parents == ()


def test_sha1_commit_ignores_sha256_signature_header():
    payload = commit_payload((), "other hash")
    raw = raw_commit_object(payload, sign_armored(ed25519_key(), payload), header="gpgsig-sha256")

    record = parse_commit_object(fake_sha("other"), raw)

    assert record.signature_blob is None
    assert record.signed_payload == payload


def test_batch_output_missing_object_is_shallow_history():
    sha = fake_sha("gone")
    with pytest.raises(ShallowHistoryError):
        _parse_batch_output(f"{sha} missing\n".encode("ascii"), [sha])


def test_batch_output_truncated():
    with pytest.raises(ExternalCommandError):
        _parse_batch_output(b"", [fake_sha("x")])


def test_batch_output_parses_objects():
    payload = commit_payload((), "batch")
    sha = fake_sha("batch")
    data = f"{sha} commit {len(payload)}\n".encode("ascii") + payload + b"\n"
    (record,) = _parse_batch_output(data, [sha])
    assert record.signed_payload == payload


def _scripted(remote, replies):
    repo = GitRepository(
        ".",
        remote=remote,
        resilience=Resilience(policy=RetryPolicy(attempts=2, sleep=lambda _: None)),
    )
    issued = []

    def fake_run_git(args, input_bytes=None):
        issued.append(args[0])
        returncode, stdout, stderr = replies.pop(0)
        return subprocess.CompletedProcess(["git", *args], returncode, stdout, stderr)

    repo._run_git = fake_run_git
    return repo, issued


def test_push_applied_before_transient_failure_counts_as_written():
    old, new = fake_sha("old"), fake_sha("new")
    repo, issued = _scripted(
        "origin",
        [
            (1, b"", b"error: RPC failed; HTTP 502 curl 22 The requested URL returned error: 502"),
            (1, b"!\trefs/heads/main:refs/heads/main\t[rejected] (stale info)\nDone\n", b"error: failed to push some refs"),
            (0, f"{new}\trefs/heads/main\n".encode("ascii"), b""),
        ],
    )

    assert repo.update_ref("main", old, new) is True
    assert issued == ["push", "push", "ls-remote"]


def test_push_lease_lost_to_another_writer_is_a_conflict():
    old, new = fake_sha("old"), fake_sha("new")
    repo, issued = _scripted(
        "origin",
        [
            (1, b"!\trefs/heads/main:refs/heads/main\t[rejected] (stale info)\nDone\n", b"error: failed to push some refs"),
            (0, f"{fake_sha('other')}\trefs/heads/main\n".encode("ascii"), b""),
        ],
    )

    assert repo.update_ref("main", old, new) is False
    assert issued == ["push", "ls-remote"]


def test_branch_ref():
    assert branch_ref("main") == "refs/heads/main"
    assert branch_ref("refs/heads/release") == "refs/heads/release"


@needs_git
def test_git_repository_range_and_fast_forward(git_repo):
    base = _commit(git_repo, "base")
    _git(git_repo, "checkout", "-q", "-b", "feature")
    first = _commit(git_repo, "first")
    second = _commit(git_repo, "second")
    _git(git_repo, "checkout", "-q", "main")
    vcs = GitRepository(str(git_repo))

    assert vcs.resolve("main") == base
    assert vcs.resolve("feature") == second
    assert vcs.is_shallow() is False
    assert vcs.is_ancestor(base, second) is True
    assert vcs.is_ancestor(second, base) is False
    assert vcs.merge_base(base, second) == base
    assert [c.sha for c in vcs.list_commits(base, second)] == [first, second]

    assert vcs.update_ref("main", first, second) is False
    assert vcs.current_tip("main") == base
    assert vcs.update_ref("main", base, second) is True
    assert vcs.current_tip("main") == second


@needs_git
def test_git_repository_unresolvable_ref(git_repo):
    _commit(git_repo, "base")
    with pytest.raises(RangeResolutionError):
        GitRepository(str(git_repo)).resolve("nope")


@needs_git
def test_git_repository_reads_ssh_signature(git_repo):
    base = _commit(git_repo, "base")
    _git(git_repo, "hash-object", "-t", "tree", "-w", "--stdin", input_bytes=b"")
    key = ed25519_key()
    payload = commit_payload((base,), "signed on the fly")
    raw = raw_commit_object(payload, sign_armored(key, payload))
    signed = _git(git_repo, "hash-object", "-t", "commit", "-w", "--stdin", input_bytes=raw)
    _git(git_repo, "update-ref", "refs/heads/feature", signed)

    vcs = GitRepository(str(git_repo))
    (record,) = vcs.list_commits(base, vcs.resolve("feature"))

    assert record.sha == signed
    assert record.parents == (base,)
    registry = load_signers(key.policy_line() + "\n")
    assert verify_commit(record, registry).outcome == "verified"


@needs_git
def test_git_repository_merge_commit(git_repo, monkeypatch):
    for name, value in GIT_ENV.items():
        monkeypatch.setenv(name, value)
    base = _commit(git_repo, "base")
    _git(git_repo, "checkout", "-q", "-b", "feature")
    head = _commit(git_repo, "head")
    vcs = GitRepository(str(git_repo))

    merge_sha = vcs.create_merge_commit(base, head, "Merge feature into main")

    parents = _git(git_repo, "rev-list", "--parents", "-n", "1", merge_sha).split()[1:]
    assert parents == [base, head]
