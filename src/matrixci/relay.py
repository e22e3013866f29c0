# relay.py
"""
Artifact / signing / coverage hand-off.

Everything behind this module is an external, best-effort collaborator:
failures surface as ExternalServiceError, which the step executor records
and logs but never escalates to an instance failure.
"""
from __future__ import annotations

import hashlib
import http.client
import json
import logging
import shutil
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import urljoin

from .actions import ActionContext
from .errors import ExternalServiceError, StepCancelled

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Service interfaces
# ----------------------------------------------------------------------

class ArtifactStore(Protocol):
    def upload(self, name: str, paths: Sequence[Path]) -> str:
        ...

    def download(self, artifact_id: str, dest: Path) -> List[Path]:
        ...


class SigningState(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SigningStatus:
    state: SigningState
    artifact_id: Optional[str] = None
    message: str = ""


class SigningService(Protocol):
    def submit(
        self,
        artifact_id: str,
        policy: str,
        *,
        token: Optional[str] = None,
        organization: Optional[str] = None,
        project: Optional[str] = None,
    ) -> str:
        ...

    def poll(self, request_id: str) -> SigningStatus:
        ...


class CoverageService(Protocol):
    def upload(self, token: Optional[str], report_path: Path) -> None:
        ...


# ----------------------------------------------------------------------
# Filesystem artifact store
# ----------------------------------------------------------------------

class LocalArtifactStore:
    """
    Artifacts stored under <root>/<name>/, one directory per name.

    Upload is idempotent by name: re-uploading a name replaces that
    artifact (and retires its old id) without touching any other name.
    """

    INDEX = "index.json"

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self._lock = threading.Lock()

    def _index_path(self) -> Path:
        return self.root / self.INDEX

    def _load_index(self) -> Dict[str, str]:
        p = self._index_path()
        if not p.exists():
            return {}
        return json.loads(p.read_text(encoding="utf-8"))

    def _save_index(self, index: Dict[str, str]) -> None:
        self._index_path().write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")

    def upload(self, name: str, paths: Sequence[Path]) -> str:
        files = [Path(p) for p in paths]
        missing = [str(p) for p in files if not p.is_file()]
        if not files or missing:
            raise ExternalServiceError("artifact-store", f"no such files for '{name}': {missing or 'none given'}")
        basenames = [p.name for p in files]
        if len(set(basenames)) != len(basenames):
            raise ExternalServiceError("artifact-store", f"duplicate file names in '{name}': {basenames}")

        h = hashlib.sha256(name.encode("utf-8"))
        for p in sorted(files, key=lambda f: f.name):
            h.update(p.name.encode("utf-8"))
            h.update(hashlib.sha256(p.read_bytes()).digest())
        artifact_id = f"{name}-{h.hexdigest()[:16]}"

        with self._lock:
            target = self.root / name
            if target.exists():
                shutil.rmtree(target)
            target.mkdir(parents=True)
            for p in files:
                shutil.copy2(p, target / p.name)

            index = {aid: n for aid, n in self._load_index().items() if n != name}
            index[artifact_id] = name
            self._save_index(index)

        logger.info("uploaded artifact %s (%d files)", artifact_id, len(files))
        return artifact_id

    def download(self, artifact_id: str, dest: Path) -> List[Path]:
        with self._lock:
            name = self._load_index().get(artifact_id)
        if name is None:
            raise ExternalServiceError("artifact-store", f"unknown artifact id '{artifact_id}'")

        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        out: List[Path] = []
        for f in sorted((self.root / name).iterdir()):
            shutil.copy2(f, dest / f.name)
            out.append(dest / f.name)
        return out


# ----------------------------------------------------------------------
# HTTP services
# ----------------------------------------------------------------------

class HTTPServiceClient:
    """Minimal JSON-over-HTTP client; every failure is an ExternalServiceError."""

    service = "http"

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        body: Optional[bytes] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {"Content-Type": "application/json"}
        if self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"
        if headers:
            req_headers.update(headers)

        if data is not None:
            body = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=body, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            try:
                error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            except (http.client.HTTPException, OSError):
                error_body = ""
            raise ExternalServiceError(self.service, f"request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise ExternalServiceError(self.service, f"network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise ExternalServiceError(self.service, f"invalid JSON response: {e}")
        except (http.client.HTTPException, OSError, UnicodeDecodeError) as e:
            # dropped connections, resets, read timeouts, undecodable bodies
            raise ExternalServiceError(self.service, f"connection failed: {type(e).__name__}: {e}")


class HTTPSigningService(HTTPServiceClient):
    """
    Signing service over HTTP.

    POST /signing-requests      {artifact_id, policy, organization, project} -> {id}
    GET  /signing-requests/<id> -> {status: pending|completed|failed, signed_artifact_id, message}

    Signed artifacts are published to the shared artifact store.
    """

    service = "signing"

    def __init__(self, base_url: str, token: Optional[str], organization: str = "", project: str = "", **kw):
        super().__init__(base_url, token, **kw)
        self.organization = organization
        self.project = project

    def submit(
        self,
        artifact_id: str,
        policy: str,
        *,
        token: Optional[str] = None,
        organization: Optional[str] = None,
        project: Optional[str] = None,
    ) -> str:
        """Per-request token/organization/project win over the configured ones."""
        headers = {"Authorization": f"Bearer {token}"} if token else None
        resp = self._request(
            "POST",
            "/signing-requests",
            data={
                "artifact_id": artifact_id,
                "policy": policy,
                "organization": organization or self.organization,
                "project": project or self.project,
            },
            headers=headers,
        )
        request_id = resp.get("id")
        if not request_id:
            raise ExternalServiceError(self.service, f"submit returned no request id: {resp}")
        return str(request_id)

    def poll(self, request_id: str) -> SigningStatus:
        resp = self._request("GET", f"/signing-requests/{request_id}")
        status = resp.get("status")
        if status == "completed":
            return SigningStatus(SigningState.SIGNED, artifact_id=resp.get("signed_artifact_id"))
        if status == "failed":
            return SigningStatus(SigningState.REJECTED, message=resp.get("message", ""))
        return SigningStatus(SigningState.PENDING)


class HTTPCoverageService(HTTPServiceClient):
    """POST /upload with the raw report body."""

    service = "coverage"

    def upload(self, token: Optional[str], report_path: Path) -> None:
        report_path = Path(report_path)
        if not report_path.is_file():
            raise ExternalServiceError(self.service, f"coverage report not found: {report_path}")
        headers = {"Content-Type": "text/plain"}
        if token:
            headers["Authorization"] = f"token {token}"
        self._request("POST", f"/upload?name={report_path.name}", body=report_path.read_bytes(), headers=headers)


# ----------------------------------------------------------------------
# Signing relay
# ----------------------------------------------------------------------

class SigningRelay:
    """submit -> poll (bounded, cancellable wait) -> retrieve signed artifact."""

    def __init__(
        self,
        store: ArtifactStore,
        service: SigningService,
        *,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
    ):
        self.store = store
        self.service = service
        self.poll_interval = poll_interval
        self.timeout = timeout

    def submit(self, artifact_id: str, policy: str, **scope: Optional[str]) -> str:
        """`scope` is token/organization/project, forwarded to the service."""
        return self.service.submit(artifact_id, policy, **scope)

    def wait(self, request_id: str, cancel_event: Optional[threading.Event] = None) -> str:
        """Block until signed; returns the signed artifact id."""
        cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + self.timeout

        while True:
            status = self.service.poll(request_id)
            if status.state is SigningState.SIGNED:
                if not status.artifact_id:
                    raise ExternalServiceError("signing", f"request {request_id} signed without an artifact id")
                return status.artifact_id
            if status.state is SigningState.REJECTED:
                raise ExternalServiceError("signing", f"request {request_id} rejected: {status.message}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExternalServiceError("signing", f"request {request_id} timed out after {self.timeout}s")
            if cancel_event.wait(min(self.poll_interval, remaining)):
                raise StepCancelled(f"signing request {request_id} cancelled")

    def sign(
        self,
        artifact_id: str,
        policy: str,
        output_dir: Path,
        cancel_event: Optional[threading.Event] = None,
        **scope: Optional[str],
    ) -> Dict[str, Any]:
        request_id = self.submit(artifact_id, policy, **scope)
        logger.info("submitted signing request %s for %s (policy=%s)", request_id, artifact_id, policy)
        signed_id = self.wait(request_id, cancel_event)
        files = self.store.download(signed_id, output_dir)
        return {
            "signing-request-id": request_id,
            "signed-artifact-id": signed_id,
            "files": [str(f) for f in files],
        }


# ----------------------------------------------------------------------
# Built-in relay actions
# ----------------------------------------------------------------------

def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


def _resolve_files(patterns: List[str], workdir: Path) -> List[Path]:
    files: List[Path] = []
    for pattern in patterns:
        matches = sorted(p for p in workdir.glob(pattern) if p.is_file()) if any(c in pattern for c in "*?[") else []
        files.extend(matches or [workdir / pattern])
    return files


def _require(inputs: Mapping[str, Any], key: str, service: str) -> Any:
    value = inputs.get(key)
    if value in (None, ""):
        raise ExternalServiceError(service, f"missing required input '{key}'")
    return value


class UploadArtifactAction:
    """inputs: name, path (newline separated or list). outputs: artifact-id."""

    def __init__(self, store: ArtifactStore):
        self.store = store

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        name = _require(inputs, "name", "artifact-store")
        files = _resolve_files(_as_list(inputs.get("path")), ctx.workdir)
        return {"artifact-id": self.store.upload(str(name), files)}


class DownloadArtifactAction:
    """inputs: artifact-id, path. outputs: download-path."""

    def __init__(self, store: ArtifactStore):
        self.store = store

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        artifact_id = _require(inputs, "artifact-id", "artifact-store")
        dest = ctx.workdir / str(inputs.get("path") or ".")
        self.store.download(str(artifact_id), dest)
        return {"download-path": str(dest)}


class SignArtifactAction:
    """
    inputs: github-artifact-id, signing-policy-slug, output-artifact-directory,
    wait-for-completion, and optionally api-token, organization-id and
    project-slug, which override the service's configured scope for this
    request. The short names artifact-id, signing-policy and
    output-directory are accepted too.

    outputs: signing-request-id, signed-artifact-id.
    """

    def __init__(self, relay: SigningRelay):
        self.relay = relay

    @staticmethod
    def _first(inputs: Mapping[str, Any], *names: str) -> Optional[str]:
        for name in names:
            value = inputs.get(name)
            if value not in (None, ""):
                return str(value)
        return None

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        artifact_id = self._first(inputs, "github-artifact-id", "artifact-id")
        if artifact_id is None:
            raise ExternalServiceError("signing", "missing required input 'github-artifact-id'")
        policy = self._first(inputs, "signing-policy-slug", "signing-policy") or "default"
        wait = str(inputs.get("wait-for-completion", "true")).lower() != "false"
        scope = {
            "token": self._first(inputs, "api-token"),
            "organization": self._first(inputs, "organization-id"),
            "project": self._first(inputs, "project-slug"),
        }

        if not wait:
            return {"signing-request-id": self.relay.submit(artifact_id, policy, **scope)}

        output_dir = ctx.workdir / (self._first(inputs, "output-artifact-directory", "output-directory") or ".")
        result = self.relay.sign(artifact_id, policy, output_dir, ctx.cancel_event, **scope)
        return {k: v for k, v in result.items() if k != "files"}


class UploadCoverageAction:
    """inputs: token, files."""

    def __init__(self, service: CoverageService):
        self.service = service

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        token = inputs.get("token") or None
        reports = _as_list(inputs.get("files"))
        if not reports:
            raise ExternalServiceError("coverage", "no coverage files given")
        for report in reports:
            self.service.upload(token, ctx.workdir / report)
        return {}
