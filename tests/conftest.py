import threading

import pytest

from matrixci.actions import ActionRegistry, FunctionAction, ShellAction
from matrixci.errors import StepFailure
from matrixci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


class Recorder:
    """
    Fake action. Records every call; fails when inputs['fail'] is truthy;
    returns inputs['outputs'] as its outputs.
    """

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, inputs, ctx):
        with self._lock:
            self.calls.append((ctx.instance, ctx.step.name, dict(inputs)))
        if inputs.get("fail"):
            raise StepFailure(job=ctx.instance, step=ctx.step.name, message="forced failure")
        return dict(inputs.get("outputs") or {})

    def instances(self):
        return [c[0] for c in self.calls]

    def steps(self):
        return [c[1] for c in self.calls]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def registry(recorder):
    r = ActionRegistry()
    r.register("run", "v1", ShellAction())
    r.register("fake", "v1", FunctionAction(recorder))
    return r
