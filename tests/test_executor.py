import threading

import pytest

from matrixci.actions import FunctionAction
from matrixci.dsl import job, matrix, sh, uses
from matrixci.errors import ExternalServiceError
from matrixci.executor import StepExecutor, runner_os
from matrixci.matrix import expand_job
from matrixci.model import InstanceStatus, RunContext, StepStatus


def _run(registry, j, *, run_ctx=None, workdir=".", cancel_event=None, which=0):
    bound = registry.bind([j])
    executor = StepExecutor(bound, run_ctx or RunContext(), workdir=workdir, cancel_event=cancel_event)
    return executor.run(expand_job(j)[which])


def test_steps_run_in_declared_order(registry, recorder):
    j = job("build", *(uses(f"s{i}", "fake@v1") for i in range(4)))
    result = _run(registry, j)

    assert result.status is InstanceStatus.SUCCEEDED
    assert recorder.steps() == ["s0", "s1", "s2", "s3"]
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED] * 4


def test_failure_skips_the_rest(registry, recorder):
    j = job(
        "build",
        uses("first", "fake@v1"),
        uses("boom", "fake@v1", with_={"fail": True}),
        uses("after", "fake@v1"),
    )
    result = _run(registry, j)

    assert result.status is InstanceStatus.FAILED
    assert "boom" in result.error
    assert recorder.steps() == ["first", "boom"]
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]


def test_continue_on_error_is_tolerated(registry, recorder):
    j = job(
        "build",
        uses("flaky", "fake@v1", with_={"fail": True}, continue_on_error=True),
        uses("after", "fake@v1"),
    )
    result = _run(registry, j)

    assert result.status is InstanceStatus.SUCCEEDED
    assert recorder.steps() == ["flaky", "after"]
    assert result.steps[0].status is StepStatus.FAILED


def test_external_service_failure_never_fails_the_instance(registry, recorder):
    def unreachable(inputs, ctx):
        raise ExternalServiceError("signing", "connection refused")

    registry.register("sign-artifact", "v1", FunctionAction(unreachable))
    j = job("release", uses("sign", "sign-artifact@v1"), uses("after", "fake@v1"))
    result = _run(registry, j)

    assert result.status is InstanceStatus.SUCCEEDED
    assert "ExternalServiceError" in result.steps[0].error
    assert recorder.steps() == ["after"]


def test_step_outputs_feed_later_steps(registry, recorder):
    j = job(
        "release",
        uses("upload", "fake@v1", id="unsigned-artifacts", with_={"outputs": {"artifact-id": "wheel-123"}}),
        uses("sign", "fake@v1", with_={"artifact-id": "${{ steps.unsigned-artifacts.outputs.artifact-id }}"}),
    )
    _run(registry, j)

    assert recorder.calls[1][2]["artifact-id"] == "wheel-123"


def test_step_outputs_stay_inside_their_matrix_leg(registry, recorder):
    j = job(
        "test",
        uses("produce", "fake@v1", id="p", with_={"outputs": {"x": "1"}}, if_="matrix.os == 'a'"),
        uses("read", "fake@v1", with_={"x": "${{ steps.p.outputs.x }}"}),
        matrix=matrix(os=["a", "b"]),
    )
    leg_a, leg_b = expand_job(j)
    executor = StepExecutor(registry.bind([j]), RunContext())

    executor.run(leg_a)
    result_b = executor.run(leg_b)

    reads = {c[0]: c[2]["x"] for c in recorder.calls if c[1] == "read"}
    assert reads == {"test (a)": "1", "test (b)": ""}
    assert result_b.steps[0].status is StepStatus.SKIPPED
    assert result_b.steps[0].outputs == {}


def test_false_guard_skips_step(registry, recorder):
    j = job(
        "test",
        uses("only-windows", "fake@v1", id="win", if_="matrix.os == 'windows-latest'"),
        uses("report", "fake@v1", with_={"outcome": "${{ steps.win.outcome }}"}),
        matrix=matrix(os=["ubuntu-latest", "windows-latest"]),
    )
    result = _run(registry, j, which=0)

    assert result.status is InstanceStatus.SUCCEEDED
    assert result.steps[0].status is StepStatus.SKIPPED
    assert recorder.steps() == ["report"]
    assert recorder.calls[0][2]["outcome"] == "skipped"


def test_matrix_and_github_are_visible(registry, recorder):
    j = job(
        "test",
        uses("show", "fake@v1", with_={"label": "${{ matrix.os }}/${{ github.event_name }}", "ref": "${{ github.ref_name }}"}),
        matrix=matrix(os=["macOS-latest"]),
    )
    _run(registry, j, run_ctx=RunContext(event_name="pull_request", ref="refs/heads/feature"))

    assert recorder.calls[0][2] == {"label": "macOS-latest/pull_request", "ref": "feature"}


def test_job_env_is_interpolated_per_instance(registry):
    seen = {}

    def capture(inputs, ctx):
        seen["env"] = dict(ctx.env)
        return {}

    registry.register("capture", "v1", FunctionAction(capture))
    j = job(
        "test",
        uses("capture", "capture@v1", env={"STEP_ONLY": "yes"}),
        env={"TARGET_OS": "${{ matrix.os }}"},
        matrix=matrix(os=["windows-latest"]),
    )
    _run(registry, j, run_ctx=RunContext(env={"GLOBAL": "1"}))

    assert seen["env"]["TARGET_OS"] == "windows-latest"
    assert seen["env"]["STEP_ONLY"] == "yes"
    assert seen["env"]["GLOBAL"] == "1"


def test_runner_scope_from_runs_on(registry, recorder):
    j = job(
        "test",
        uses("show", "fake@v1", with_={"os": "${{ runner.os }}"}),
        runs_on="${{ matrix.os }}",
        matrix=matrix(os=["windows-latest"]),
    )
    _run(registry, j)
    assert recorder.calls[0][2]["os"] == "Windows"


@pytest.mark.parametrize(
    "label, expected",
    [("ubuntu-22.04", "Linux"), ("macOS-latest", "macOS"), ("windows-2019", "Windows"), ("self-hosted", ""), (None, "")],
)
def test_runner_os(label, expected):
    assert runner_os(label) == expected


def test_shell_step_outputs(registry, recorder, tmp_path):
    j = job(
        "build",
        sh("version", 'echo "version=1.2.3" >> "$MATRIXCI_OUTPUT"', id="ver"),
        uses("show", "fake@v1", with_={"v": "${{ steps.ver.outputs.version }}"}),
    )
    result = _run(registry, j, workdir=tmp_path)

    assert result.status is InstanceStatus.SUCCEEDED
    assert result.steps[0].outputs == {"version": "1.2.3"}
    assert recorder.calls[0][2]["v"] == "1.2.3"


def test_shell_step_non_zero_exit(registry, tmp_path):
    j = job("build", sh("broken", "echo nope >&2; exit 3"))
    result = _run(registry, j, workdir=tmp_path)

    assert result.status is InstanceStatus.FAILED
    assert "exit_code=3" in result.steps[0].error


def test_shell_step_missing_cwd(registry, tmp_path):
    j = job("build", sh("somewhere", "true", cwd="does-not-exist"))
    result = _run(registry, j, workdir=tmp_path)
    assert result.status is InstanceStatus.FAILED
    assert "cwd not found" in result.steps[0].error


def test_cancelled_before_start(registry, recorder):
    event = threading.Event()
    event.set()
    result = _run(registry, job("build", uses("a", "fake@v1"), uses("b", "fake@v1")), cancel_event=event)

    assert result.status is InstanceStatus.CANCELLED
    assert recorder.calls == []


def test_cancel_kills_running_shell_step(registry, tmp_path):
    event = threading.Event()
    timer = threading.Timer(0.3, event.set)
    timer.start()
    try:
        result = _run(registry, job("slow", sh("sleep", "sleep 30")), workdir=tmp_path, cancel_event=event)
    finally:
        timer.cancel()

    assert result.status is InstanceStatus.CANCELLED
    assert result.steps[0].status is StepStatus.CANCELLED
