import json
import socket
import urllib.error
import urllib.parse
import urllib.request

from commit_gate.errors import (
    ConfigError,
    ExternalCommandError,
    RefUpdateRejectedError,
    TransientExternalError,
)
from commit_gate.logger import log_event
from commit_gate.resilience import Resilience, external_call


def _normalize_api_base(api_base):
    base = (api_base or "").rstrip("/")
    if not base:
        raise ConfigError("Missing forge api_base")
    if not base.startswith(("https://", "http://")):
        raise ConfigError(f"Unsupported forge api_base scheme: {base}")
    return base


def _branch_name(ref):
    ref = (ref or "").strip()
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return ref


def _api_json_request(method, url, payload=None, headers=None, timeout=10):
    req_headers = {"Accept": "application/json"}
    if headers:
        req_headers.update(headers)
    data = None
    if payload is not None:
        req_headers["Content-Type"] = "application/json"
        data = json.dumps(payload).encode("utf-8")

    req = urllib.request.Request(url, data=data, headers=req_headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            raw = response.read().decode()
            parsed = json.loads(raw) if raw else None
            return response.status, parsed, raw
    except urllib.error.HTTPError as e:
        raw = e.read().decode() if e.fp else ""
        parsed = None
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = None
        return e.code, parsed, raw
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
        raise TransientExternalError(f"forge request failed method={method} url={url} error={e}") from e


def _message(parsed, raw):
    if isinstance(parsed, dict) and parsed.get("message"):
        return str(parsed["message"])
    return raw[:200]


def _raise_for_transient(status, parsed, raw, endpoint_label):
    if status >= 500 or status == 429:
        raise TransientExternalError(
            f"forge API failure endpoint={endpoint_label} status={status} body={_message(parsed, raw)}",
            endpoint=endpoint_label,
            status=status,
        )


class ForgeClient:
    """Ref reads and fast-forward writes over a GitHub-compatible REST API."""

    def __init__(self, api_base, repository, token=None, resilience=None, timeout=10):
        owner, _, repo = (repository or "").partition("/")
        if not owner or not repo:
            raise ConfigError(f"forge repository must be owner/repo, got {repository!r}")
        self.api_base = _normalize_api_base(api_base)
        self.owner = owner
        self.repo = repo
        self._token = token
        self.resilience = resilience or Resilience()
        self.timeout = timeout

    def _headers(self):
        headers = {"Accept": "application/vnd.github+json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _ref_url(self, path, ref):
        branch = urllib.parse.quote(_branch_name(ref), safe="/")
        return f"{self.api_base}/repos/{self.owner}/{self.repo}/git/{path}/heads/{branch}"

    def _get_tip(self, ref):
        url = self._ref_url("ref", ref)
        status, data, raw = _api_json_request("GET", url, headers=self._headers(), timeout=self.timeout)
        if status == 404:
            return None
        _raise_for_transient(status, data, raw, "git/ref")
        if status != 200 or not isinstance(data, dict):
            raise ExternalCommandError(
                f"forge API failure endpoint=git/ref status={status} body={_message(data, raw)}",
                endpoint="git/ref",
                status=status,
            )
        return ((data.get("object") or {}).get("sha") or "").strip() or None

    @external_call("forge-api")
    def current_tip(self, ref):
        return self._get_tip(ref)

    @external_call("merge-write")
    def update_ref(self, ref, expected_old_sha, new_sha):
        tip = self._get_tip(ref)
        if tip == new_sha:
            # An earlier attempt landed even though its response was lost.
            log_event("forge", f"update_ref_already_applied ref={ref} new={new_sha}")
            return True
        if tip != expected_old_sha:
            log_event("forge", f"update_ref_conflict ref={ref} expected={expected_old_sha} current={tip}")
            return False

        url = self._ref_url("refs", ref)
        status, data, raw = _api_json_request(
            "PATCH",
            url,
            payload={"sha": new_sha, "force": False},
            headers=self._headers(),
            timeout=self.timeout,
        )
        log_event("forge", f"update_ref ref={ref} new={new_sha} http={status}")
        if status == 200:
            return True
        _raise_for_transient(status, data, raw, "git/refs")

        message = _message(data, raw)
        if "protected" in message.lower() or status == 403:
            raise RefUpdateRejectedError(
                f"write to {ref} rejected: {message}",
                protected=True,
                ref=ref,
                status=status,
            )
        if status in (409, 422):
            return False
        raise RefUpdateRejectedError(f"write to {ref} rejected: {message}", ref=ref, status=status)
