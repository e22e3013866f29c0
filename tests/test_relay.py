import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from matrixci.actions import FunctionAction
from matrixci.dsl import job, matrix, uses, wf
from matrixci.errors import ExternalServiceError, StepCancelled
from matrixci.model import InstanceStatus, RunContext, StepStatus
from matrixci.pipeline import Pipeline, default_registry
from matrixci.relay import (
    HTTPCoverageService,
    HTTPSigningService,
    LocalArtifactStore,
    SigningRelay,
    SigningState,
    SigningStatus,
)


class FakeSigning:
    """Signs after `pending` polls by publishing a 'signed' copy to the store."""

    def __init__(self, store, tmp_path, pending=1, reject=False, never=False):
        self.store = store
        self.tmp_path = tmp_path
        self.pending = pending
        self.reject = reject
        self.never = never
        self.submitted = []
        self.scopes = []
        self.polls = 0

    def submit(self, artifact_id, policy, **scope):
        self.submitted.append((artifact_id, policy))
        self.scopes.append(scope)
        return f"req-{len(self.submitted)}"

    def poll(self, request_id):
        self.polls += 1
        if self.never or self.polls <= self.pending:
            return SigningStatus(SigningState.PENDING)
        if self.reject:
            return SigningStatus(SigningState.REJECTED, message="policy violation")
        signed = self.tmp_path / "signed-out" / "pkg.whl"
        signed.parent.mkdir(exist_ok=True)
        signed.write_bytes(b"signed wheel")
        return SigningStatus(SigningState.SIGNED, artifact_id=self.store.upload("signed-wheel", [signed]))


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def wheel(tmp_path):
    dist = tmp_path / "dist"
    dist.mkdir()
    p = dist / "pkg.whl"
    p.write_bytes(b"unsigned wheel")
    return p


def test_store_upload_is_idempotent_by_name(store, wheel, tmp_path):
    first = store.upload("wheel", [wheel])
    assert store.upload("wheel", [wheel]) == first

    other = tmp_path / "other.txt"
    other.write_text("x")
    kept = store.upload("notes", [other])

    wheel.write_bytes(b"rebuilt")
    replaced = store.upload("wheel", [wheel])
    assert replaced != first

    with pytest.raises(ExternalServiceError):
        store.download(first, tmp_path / "gone")
    assert [p.read_text() for p in store.download(kept, tmp_path / "notes")] == ["x"]
    assert [p.read_bytes() for p in store.download(replaced, tmp_path / "w")] == [b"rebuilt"]


def test_store_rejects_missing_files(store, tmp_path):
    with pytest.raises(ExternalServiceError):
        store.upload("nothing", [tmp_path / "missing.whl"])
    with pytest.raises(ExternalServiceError):
        store.upload("empty", [])


def test_relay_signs_and_retrieves(store, wheel, tmp_path):
    service = FakeSigning(store, tmp_path, pending=2)
    relay = SigningRelay(store, service, poll_interval=0.01, timeout=5)
    unsigned = store.upload("unsigned-wheel", [wheel])

    result = relay.sign(unsigned, "test-signing", tmp_path / "signed")

    assert service.submitted == [(unsigned, "test-signing")]
    assert service.polls == 3
    assert result["signing-request-id"] == "req-1"
    assert (tmp_path / "signed" / "pkg.whl").read_bytes() == b"signed wheel"


def test_relay_rejection(store, tmp_path):
    relay = SigningRelay(store, FakeSigning(store, tmp_path, pending=0, reject=True), poll_interval=0.01)
    with pytest.raises(ExternalServiceError, match="rejected"):
        relay.wait("req-1")


def test_relay_times_out(store, tmp_path):
    relay = SigningRelay(store, FakeSigning(store, tmp_path, never=True), poll_interval=0.01, timeout=0.05)
    with pytest.raises(ExternalServiceError, match="timed out"):
        relay.wait("req-1")


def test_relay_wait_is_cancellable(store, tmp_path):
    event = threading.Event()
    event.set()
    relay = SigningRelay(store, FakeSigning(store, tmp_path, never=True), poll_interval=10, timeout=60)
    with pytest.raises(StepCancelled):
        relay.wait("req-1", event)


def test_unreachable_signing_service():
    service = HTTPSigningService("http://127.0.0.1:9", token="t", timeout=2)
    with pytest.raises(ExternalServiceError) as exc:
        service.submit("a-1", "test-signing")
    assert exc.value.service == "signing"


def test_missing_coverage_report(tmp_path):
    with pytest.raises(ExternalServiceError):
        HTTPCoverageService("http://127.0.0.1:9").upload("t", tmp_path / "coverage.xml")


RELEASE_LEG = "matrix.os == 'windows-latest' && github.event_name == 'push'"


def _release_workflow():
    return wf(
        job(
            "test",
            uses(
                "Upload wheel",
                "upload-artifact@v1",
                id="unsigned-artifacts",
                with_={"name": "unsigned-wheel", "path": "dist/*.whl"},
                if_=RELEASE_LEG,
                continue_on_error=True,
            ),
            uses(
                "Sign",
                "sign-artifact@v1",
                id="sign",
                with_={
                    "artifact-id": "${{ steps.unsigned-artifacts.outputs.artifact-id }}",
                    "signing-policy": "test-signing",
                    "output-directory": "dist/signed",
                },
                if_=RELEASE_LEG,
                continue_on_error=True,
            ),
            uses("Coverage", "upload-coverage@v1", with_={"files": "coverage.xml"}),
            uses("Report", "fake@v1", with_={"signed": "${{ steps.sign.outputs.signed-artifact-id }}"}),
            matrix=matrix(os=["ubuntu-latest", "windows-latest"]),
            fail_fast=False,
        ),
    )


def _registry(store, signing, recorder):
    registry = default_registry(store, signing, poll_interval=0.01, timeout=5)
    registry.register("fake", "v1", FunctionAction(recorder))
    return registry


def test_release_leg_signs_and_other_legs_skip(store, wheel, tmp_path, recorder):
    signing = FakeSigning(store, tmp_path)
    result = Pipeline(_release_workflow(), RunContext(event_name="push"), registry=_registry(store, signing, recorder), workdir=tmp_path).run()

    assert result.ok
    assert len(signing.submitted) == 1
    assert (tmp_path / "dist" / "signed" / "pkg.whl").exists()

    reports = {c[0]: c[2]["signed"] for c in recorder.calls}
    assert reports["test (windows-latest)"].startswith("signed-wheel-")
    assert reports["test (ubuntu-latest)"] == ""

    ubuntu = result.results["test (ubuntu-latest)"]
    assert [s.status for s in ubuntu.steps[:2]] == [StepStatus.SKIPPED, StepStatus.SKIPPED]


def test_signing_outage_never_gates_the_pipeline(store, wheel, tmp_path, recorder):
    signing = HTTPSigningService("http://127.0.0.1:9", token="t", timeout=2)
    result = Pipeline(_release_workflow(), registry=_registry(store, signing, recorder), workdir=tmp_path).run()

    windows = result.results["test (windows-latest)"]
    assert windows.status is InstanceStatus.SUCCEEDED
    assert windows.steps[1].status is StepStatus.FAILED
    assert "signing" in windows.steps[1].error
    assert result.ok


def test_unconfigured_services_are_best_effort(store, wheel, tmp_path, recorder):
    result = Pipeline(_release_workflow(), registry=_registry(store, None, recorder), workdir=tmp_path).run()

    assert result.ok
    coverage = result.results["test (ubuntu-latest)"].steps[2]
    assert coverage.status is StepStatus.FAILED
    assert "not configured" in coverage.error


@pytest.fixture
def dropping_server():
    """Accepts every connection, reads the request and hangs up without answering."""
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    sock.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(1)
                try:
                    conn.recv(65536)
                except OSError:
                    pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{sock.getsockname()[1]}"
    stop.set()
    thread.join(timeout=2)
    sock.close()


def test_dropped_connection_is_a_service_error(dropping_server, tmp_path):
    report = tmp_path / "coverage.xml"
    report.write_text("<coverage/>")
    with pytest.raises(ExternalServiceError) as exc:
        HTTPCoverageService(dropping_server, timeout=2).upload("t", report)
    assert exc.value.service == "coverage"


def test_dropped_coverage_upload_never_gates_the_pipeline(dropping_server, store, tmp_path):
    (tmp_path / "coverage.xml").write_text("<coverage/>")
    workflow = wf(job("test", uses("Coverage", "upload-coverage@v1", with_={"token": "t", "files": "coverage.xml"})))
    registry = default_registry(store, coverage=HTTPCoverageService(dropping_server, timeout=2))

    result = Pipeline(workflow, registry=registry, workdir=tmp_path).run()

    assert result.ok
    coverage = result.results["test"].steps[0]
    assert coverage.status is StepStatus.FAILED
    assert "coverage" in coverage.error


class _SigningHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        self.server.seen.append((self.headers.get("Authorization"), json.loads(self.rfile.read(length))))
        body = json.dumps({"id": "req-9"}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


@pytest.fixture
def signing_server():
    server = HTTPServer(("127.0.0.1", 0), _SigningHandler)
    server.seen = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def test_request_scope_overrides_service_defaults(signing_server):
    url = f"http://127.0.0.1:{signing_server.server_address[1]}"
    service = HTTPSigningService(url, token="default-token", organization="default-org", project="default-project")

    assert service.submit("a-1", "test-signing") == "req-9"
    assert service.submit("a-2", "release", token="step-token", organization="org-7", project="starship") == "req-9"

    (auth1, body1), (auth2, body2) = signing_server.seen
    assert auth1 == "Bearer default-token"
    assert (body1["organization"], body1["project"]) == ("default-org", "default-project")
    assert auth2 == "Bearer step-token"
    assert body2 == {"artifact_id": "a-2", "policy": "release", "organization": "org-7", "project": "starship"}


def test_sign_step_accepts_release_workflow_input_names(store, wheel, tmp_path, recorder):
    workflow = wf(
        job(
            "release",
            uses(
                "Upload wheel",
                "upload-artifact@v1",
                id="unsigned-artifacts",
                with_={"name": "unsigned-wheel", "path": "dist/*.whl"},
            ),
            uses(
                "Sign",
                "sign-artifact@v1",
                id="sign",
                with_={
                    "api-token": "${{ secrets.SIGNING_API_TOKEN }}",
                    "organization-id": "${{ vars.SIGNING_ORGANIZATION_ID }}",
                    "project-slug": "starship",
                    "github-artifact-id": "${{ steps.unsigned-artifacts.outputs.artifact-id }}",
                    "signing-policy-slug": "test-signing",
                    "wait-for-completion": True,
                    "output-artifact-directory": "target/debug",
                },
            ),
            uses("Report", "fake@v1", with_={"signed": "${{ steps.sign.outputs.signed-artifact-id }}"}),
        ),
    )
    run_ctx = RunContext(secrets={"SIGNING_API_TOKEN": "s3cret"}, vars={"SIGNING_ORGANIZATION_ID": "org-42"})
    signing = FakeSigning(store, tmp_path)

    result = Pipeline(workflow, run_ctx, registry=_registry(store, signing, recorder), workdir=tmp_path).run()

    assert result.ok
    assert result.results["release"].steps[1].status is StepStatus.SUCCEEDED
    assert signing.submitted[0][0].startswith("unsigned-wheel-")
    assert signing.submitted[0][1] == "test-signing"
    assert signing.scopes == [{"token": "s3cret", "organization": "org-42", "project": "starship"}]
    assert (tmp_path / "target" / "debug" / "pkg.whl").read_bytes() == b"signed wheel"
    assert recorder.calls[0][2]["signed"].startswith("signed-wheel-")


def test_sign_step_without_scope_uses_service_defaults(store, wheel, tmp_path):
    signing = FakeSigning(store, tmp_path, never=True)
    registry = default_registry(store, signing)
    unsigned = store.upload("unsigned-wheel", [wheel])
    workflow = wf(
        job(
            "release",
            uses("Sign", "sign-artifact@v1", with_={"github-artifact-id": unsigned, "wait-for-completion": "false"}),
        )
    )

    result = Pipeline(workflow, registry=registry, workdir=tmp_path).run()

    assert result.ok
    assert signing.submitted == [(unsigned, "default")]
    assert signing.scopes == [{"token": None, "organization": None, "project": None}]
