import threading
import time
from collections import Counter

import pytest

from jobgraph.errors import StepTimeout
from jobgraph.executor import StepOutcome
from jobgraph.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console


class FakeExecutor:
    """
    Interprets rendered commands instead of running a shell.

    A command is a `;` separated list of:
      echo TEXT       append TEXT to stdout
      set K=V         record step output K
      sleep SECS      sleep, honouring request.timeout
      hang SECS       sleep, ignoring request.timeout
      exit N          stop with exit code N
      flaky N         fail the first N attempts of this step
    """

    def __init__(self):
        self.calls = []
        self.attempts = Counter()
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    @property
    def commands(self):
        return [c for _, _, c in self.calls]

    def calls_for(self, job):
        return [c for j, _, c in self.calls if j == job]

    def __call__(self, request):
        with self._lock:
            self.calls.append((request.job, request.step.name, request.command))
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            return self._behave(request)
        finally:
            with self._lock:
                self.running -= 1

    def _behave(self, request):
        stdout = []
        outputs = {}
        for part in request.command.split(";"):
            part = part.strip()
            verb, _, arg = part.partition(" ")
            if verb == "echo":
                stdout.append(arg)
            elif verb == "set":
                key, value = arg.split("=", 1)
                outputs[key] = value
            elif verb == "sleep":
                secs = float(arg)
                if request.timeout is not None and secs > request.timeout:
                    time.sleep(max(request.timeout, 0))
                    raise StepTimeout(request.job, request.step.name, request.timeout)
                time.sleep(secs)
            elif verb == "hang":
                time.sleep(float(arg))
            elif verb == "exit":
                return StepOutcome(exit_code=int(arg), stdout="\n".join(stdout), stderr="boom")
            elif verb == "flaky":
                with self._lock:
                    self.attempts[(request.job, request.step.name)] += 1
                    attempt = self.attempts[(request.job, request.step.name)]
                if attempt <= int(arg):
                    return StepOutcome(exit_code=1, stderr=f"flaky attempt {attempt}")
        return StepOutcome(exit_code=0, stdout="\n".join(stdout), outputs=outputs)


@pytest.fixture
def fake_executor():
    return FakeExecutor()
