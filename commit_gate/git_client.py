import re
import subprocess
from typing import Protocol

from commit_gate.errors import (
    ExternalCommandError,
    RangeResolutionError,
    RefUpdateRejectedError,
    ShallowHistoryError,
    TransientExternalError,
)
from commit_gate.logger import log_event
from commit_gate.models import CommitRecord
from commit_gate.resilience import Resilience, external_call


class VersionControl(Protocol):
    def resolve(self, ref: str) -> str: ...

    def list_commits(self, base_sha: str, head_sha: str) -> list[CommitRecord]: ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    def update_ref(self, ref: str, expected_old_sha: str, new_sha: str) -> bool: ...

    def merge_base(self, a: str, b: str) -> str | None: ...

    def is_shallow(self) -> bool: ...

    def current_tip(self, ref: str) -> str | None: ...

    def create_merge_commit(self, base_sha: str, head_sha: str, message: str) -> str: ...


_TRANSIENT_MARKERS = (
    "index.lock",
    ".lock': File exists",
    "Unable to create",
    "Could not resolve host",
    "Connection timed out",
    "Connection reset",
    "Operation timed out",
    "early EOF",
    "RPC failed",
    "remote end hung up unexpectedly",
    "returned error: 5",
    "HTTP 5",
)

_PROTECTED_MARKERS = (
    "protected branch",
    "GH006",
    "pre-receive hook declined",
)

_CONFLICT_MARKERS = (
    "but expected",
    "stale info",
    "non-fast-forward",
    "fetch first",
)

_SHA_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


def branch_ref(name):
    name = (name or "").strip()
    if name.startswith("refs/"):
        return name
    return f"refs/heads/{name}"


def _stderr(proc):
    return (proc.stderr or b"").decode("utf-8", errors="replace").strip()


def _is_transient(text):
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def _raise_for_status(proc, args):
    if proc.returncode == 0:
        return
    err = _stderr(proc)
    label = f"git {args[0]}"
    if _is_transient(err):
        raise TransientExternalError(f"{label} failed transiently: {err}", command=label)
    raise ExternalCommandError(f"{label} exited {proc.returncode}: {err}", command=label)


def _signature_header(sha):
    return b"gpgsig-sha256 " if len(sha) == 64 else b"gpgsig "


def parse_commit_object(sha, raw):
    """Split a raw commit object into its signature and the signed payload."""
    header, sep, message = raw.partition(b"\n\n")
    wanted = _signature_header(sha)
    kept = []
    signature_lines = []
    author = ""
    parents = []
    in_signature = False
    capturing = False
    for line in header.split(b"\n"):
        if in_signature and line.startswith(b" "):
            if capturing:
                signature_lines.append(line[1:])
            continue
        in_signature = False
        if line.startswith(b"gpgsig ") or line.startswith(b"gpgsig-sha256 "):
            in_signature = True
            capturing = line.startswith(wanted)
            if capturing:
                signature_lines.append(line[len(wanted):])
            continue
        if line.startswith(b"author "):
            ident = line[len(b"author "):].decode("utf-8", errors="replace")
            author = ident.rsplit(" ", 2)[0] if ident.count(" ") >= 2 else ident
        elif line.startswith(b"parent "):
            parents.append(line[len(b"parent "):].decode("ascii", errors="replace").strip())
        kept.append(line)

    payload = b"\n".join(kept) + sep + message
    return CommitRecord(
        sha=sha,
        author_identity=author,
        signature_blob=b"\n".join(signature_lines) if signature_lines else None,
        signed_payload=payload,
        parents=tuple(parents),
    )


def _parse_batch_output(data, shas):
    commits = []
    offset = 0
    for sha in shas:
        newline = data.find(b"\n", offset)
        if newline < 0:
            raise ExternalCommandError("git cat-file --batch output truncated", command="git cat-file")
        header = data[offset:newline].decode("ascii", errors="replace").split()
        offset = newline + 1
        if len(header) >= 2 and header[1] == "missing":
            raise ShallowHistoryError(f"commit {sha} is missing from local history", sha=sha)
        if len(header) != 3 or header[0] != sha or header[1] != "commit":
            raise ExternalCommandError(
                f"unexpected git cat-file header for {sha}",
                command="git cat-file",
            )
        size = int(header[2])
        commits.append(parse_commit_object(sha, data[offset:offset + size]))
        offset += size + 1
    return commits


class GitRepository:
    """VersionControl backed by the git CLI.

    With ``remote`` set, ref writes are pushed with a lease instead of being
    applied to the local repository.
    """

    def __init__(self, repo_path=".", remote=None, resilience=None, timeout=60):
        self.repo_path = repo_path
        self.remote = remote
        self.resilience = resilience or Resilience()
        self.timeout = timeout

    def _run_git(self, args, input_bytes=None):
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.repo_path,
                input=input_bytes,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientExternalError(f"git {args[0]} timed out", command=f"git {args[0]}") from exc
        except FileNotFoundError as exc:
            raise ExternalCommandError("git executable not found", command="git") from exc

    @external_call("git")
    def resolve(self, ref):
        candidates = [ref]
        if not ref.startswith("refs/") and not _SHA_RE.match(ref):
            candidates.append(f"refs/remotes/{self.remote or 'origin'}/{ref}")
        for candidate in candidates:
            proc = self._run_git(["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"])
            if proc.returncode == 0:
                return proc.stdout.decode("ascii").strip()
            if _is_transient(_stderr(proc)):
                _raise_for_status(proc, ["rev-parse"])
        raise RangeResolutionError(f"cannot resolve ref {ref}", ref=ref)

    @external_call("git")
    def is_shallow(self):
        proc = self._run_git(["rev-parse", "--is-shallow-repository"])
        _raise_for_status(proc, ["rev-parse"])
        return proc.stdout.decode("ascii").strip() == "true"

    @external_call("git")
    def merge_base(self, a, b):
        proc = self._run_git(["merge-base", a, b])
        if proc.returncode == 1:
            return None
        _raise_for_status(proc, ["merge-base"])
        return proc.stdout.decode("ascii").strip() or None

    @external_call("git")
    def is_ancestor(self, ancestor, descendant):
        proc = self._run_git(["merge-base", "--is-ancestor", ancestor, descendant])
        if proc.returncode in (0, 1):
            return proc.returncode == 0
        _raise_for_status(proc, ["merge-base"])
        return False

    @external_call("git")
    def list_commits(self, base_sha, head_sha):
        proc = self._run_git(["rev-list", "--topo-order", "--reverse", f"{base_sha}..{head_sha}"])
        if proc.returncode != 0:
            err = _stderr(proc)
            if _is_transient(err):
                _raise_for_status(proc, ["rev-list"])
            raise ShallowHistoryError(
                f"cannot enumerate {base_sha}..{head_sha}: {err}",
                base=base_sha,
                head=head_sha,
            )
        shas = [line.strip() for line in proc.stdout.decode("ascii").splitlines() if line.strip()]
        if not shas:
            return []
        batch = self._run_git(["cat-file", "--batch"], input_bytes=("\n".join(shas) + "\n").encode("ascii"))
        _raise_for_status(batch, ["cat-file"])
        return _parse_batch_output(batch.stdout, shas)

    @external_call("git")
    def current_tip(self, ref):
        return self._read_tip(ref)

    def _read_tip(self, ref):
        if not self.remote:
            proc = self._run_git(["rev-parse", "--verify", "--quiet", branch_ref(ref)])
            if proc.returncode != 0:
                return None
            return proc.stdout.decode("ascii").strip()
        proc = self._run_git(["ls-remote", self.remote, branch_ref(ref)])
        _raise_for_status(proc, ["ls-remote"])
        for line in proc.stdout.decode("ascii", errors="replace").splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == branch_ref(ref):
                return parts[0]
        return None

    @external_call("git")
    def create_merge_commit(self, base_sha, head_sha, message):
        proc = self._run_git(["commit-tree", f"{head_sha}^{{tree}}", "-p", base_sha, "-p", head_sha, "-m", message])
        _raise_for_status(proc, ["commit-tree"])
        return proc.stdout.decode("ascii").strip()

    @external_call("merge-write")
    def update_ref(self, ref, expected_old_sha, new_sha):
        full_ref = branch_ref(ref)
        if self.remote:
            args = [
                "push",
                "--porcelain",
                f"--force-with-lease={full_ref}:{expected_old_sha}",
                self.remote,
                f"{new_sha}:{full_ref}",
            ]
        else:
            args = ["update-ref", "-m", "commit-gate: fast-forward", full_ref, new_sha, expected_old_sha]
        proc = self._run_git(args)
        if proc.returncode == 0:
            log_event("git", f"update_ref ref={full_ref} old={expected_old_sha} new={new_sha} remote={self.remote}")
            return True

        text = _stderr(proc) + "\n" + (proc.stdout or b"").decode("utf-8", errors="replace")
        if any(marker in text for marker in _CONFLICT_MARKERS):
            if self._read_tip(ref) == new_sha:
                # A previous attempt was applied before its failure was reported.
                log_event("git", f"update_ref_already_applied ref={full_ref} new={new_sha}")
                return True
            log_event("git", f"update_ref_conflict ref={full_ref} expected={expected_old_sha}")
            return False
        if any(marker.lower() in text.lower() for marker in _PROTECTED_MARKERS):
            raise RefUpdateRejectedError(
                f"write to {full_ref} rejected by branch protection",
                protected=True,
                ref=full_ref,
            )
        _raise_for_status(proc, args)
        return False
