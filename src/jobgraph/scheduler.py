# scheduler.py
from __future__ import annotations

import os
import threading
import time
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .artifacts import DEFAULT_RETENTION_SECONDS, ArtifactStore, pack_path, path_kind, unpack_into
from .dag import validate_definition
from .errors import ErrorRecord, StepExecutionError, StepTimeout
from .executor import TAIL_CHARS, ShellExecutor, StepExecutor, StepOutcome, StepRequest
from .expressions import UNDEFINED, Scope, compile_expression, gate, render
from .matrix import expand
from .model import (
    JobInstance,
    JobSpec,
    JobStatus,
    RunContext,
    RunDefinition,
    RunResult,
    RunStatus,
    Step,
    StepRecord,
)
from .ui.console import Console, get_console

DEFAULT_POLL_INTERVAL = 0.05


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class _Outcome:
    """What a worker thread reports back for one instance."""
    status: JobStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None
    reason: Optional[str] = None


class Scheduler:
    """
    Runs one RunDefinition against one RunContext.

    Per instance: PENDING -> {SKIPPED | READY} -> RUNNING ->
    {SUCCEEDED | FAILED | CANCELLED}. Transitions are applied by the
    scheduling loop (main thread) except READY -> RUNNING, which happens
    inside the worker thread so that RUNNING never exceeds max_workers.
    """

    def __init__(
        self,
        definition: RunDefinition,
        context: Optional[Mapping[str, Any]] = None,
        executor: Optional[StepExecutor] = None,
        *,
        max_workers: Optional[int] = None,
        artifacts: Optional[ArtifactStore] = None,
        workspace: str | Path = ".",
        clock: Callable[[], float] = time.time,
        console: Optional[Console] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        expire_artifacts: bool = True,
    ):
        if max_workers is None:
            max_workers = default_workers()
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.definition = definition
        self.context = context if isinstance(context, RunContext) else RunContext(context or {})
        self.workspace = Path(workspace).resolve()
        self.executor: StepExecutor = executor if executor is not None else ShellExecutor(self.workspace)
        self.max_workers = max_workers
        self.artifacts = artifacts if artifacts is not None else ArtifactStore(clock=clock)
        self.clock = clock
        self.console = console or get_console()
        self.poll_interval = poll_interval
        self.run_id = run_id or uuid.uuid4().hex
        self.expire_artifacts = expire_artifacts

        self._cancel_event = cancel_event or threading.Event()
        self._cancelled = False
        self._lock = threading.RLock()
        self._order: List[JobInstance] = []
        self._by_job: Dict[str, List[JobInstance]] = {}
        self._instance_cancel: Dict[Any, threading.Event] = {}
        self._abandoned = False
        self.peak_running = 0
        self.result: Optional[RunResult] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel the run. Safe to call from any thread."""
        self._cancel_event.set()

    @property
    def instances(self) -> List[JobInstance]:
        return list(self._order)

    def run(self) -> RunResult:
        # ConfigurationError escapes here, before any instance exists
        levels = validate_definition(self.definition)
        self._materialize([name for level in levels for name in level])

        started_at = self.clock()
        self.console.print_run_started(
            name=self.definition.name,
            instance_count=len(self._order),
            context=self.context.to_dict(),
        )

        ready: Deque[JobInstance] = deque()
        in_flight: Dict[Future, JobInstance] = {}
        pool = self._new_pool()
        try:
            while True:
                if self._cancel_event.is_set() and not self._cancelled:
                    self._cancel_all(in_flight)

                self._promote(ready)

                # schedule all currently ready, oldest first
                while ready and len(in_flight) < self.max_workers and not self._cancelled:
                    inst = ready.popleft()
                    if inst.status is not JobStatus.READY:
                        continue
                    in_flight[pool.submit(self._execute_instance, inst)] = inst

                if not in_flight:
                    if all(i.status.terminal for i in self._order):
                        break
                    if not ready and not self._cancelled:
                        raise RuntimeError(
                            "Scheduler stalled with non-terminal instances: "
                            + ", ".join(i.label for i in self._order if not i.status.terminal)
                        )
                    continue

                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._finish(in_flight.pop(fut), fut)

                if self._enforce_timeouts(in_flight):
                    # a timed-out step still holds its pool thread
                    pool.shutdown(wait=False)
                    pool = self._new_pool()
        finally:
            pool.shutdown(wait=not self._abandoned, cancel_futures=True)

        finished_at = self.clock()
        if self.expire_artifacts:
            for name in self.artifacts.expire(finished_at):
                self.console.print_debug(f"artifact expired: {name}")

        self.result = self._build_result(started_at, finished_at)
        return self.result

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="jobgraph")

    def _materialize(self, job_order: List[str]) -> None:
        self._order = []
        self._by_job = {}
        for name in job_order:
            spec = self.definition.job(name)
            instances = [JobInstance(spec=spec, assignment=a) for a in expand(spec.matrix)]
            self._by_job[name] = instances
            self._order.extend(instances)

    # ------------------------------------------------------------------
    # Dependency views
    # ------------------------------------------------------------------

    def _aggregate(self, job_name: str) -> Optional[JobStatus]:
        """Combined state of every instance of a job; None while any is still open."""
        statuses = [i.status for i in self._by_job[job_name]]
        if not all(s.terminal for s in statuses):
            return None
        for s in (JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SUCCEEDED):
            if s in statuses:
                return s
        return JobStatus.SKIPPED

    def _job_view(self, job_name: str) -> Mapping[str, Any]:
        status = self._aggregate(job_name)
        outputs: Dict[str, Any] = {}
        for inst in self._by_job[job_name]:
            if inst.status is JobStatus.SUCCEEDED:
                outputs.update(inst.outputs)
        return MappingProxyType({
            "result": status.result if status else UNDEFINED,
            "outputs": MappingProxyType(outputs),
        })

    def needs_view(self, spec: Optional[JobSpec] = None) -> Mapping[str, Any]:
        """`needs` as seen by an expression: declared needs only, or every job."""
        names = spec.needs if spec is not None else list(self._by_job)
        with self._lock:
            return MappingProxyType({n: self._job_view(n) for n in names})

    @staticmethod
    def _job_info(inst: JobInstance) -> Mapping[str, Any]:
        info: Dict[str, Any] = {"name": inst.spec.name, "label": inst.label}
        if inst.environment is not None:
            info["environment"] = MappingProxyType(dict(inst.environment))
        return MappingProxyType(info)

    def _scope(self, inst: JobInstance, **extra: Any) -> Scope:
        return Scope(
            ctx=self.context,
            needs=self.needs_view(inst.spec),
            matrix=MappingProxyType(dict(inst.assignment)),
            job=self._job_info(inst),
            cancelled=self._cancelled,
            **extra,
        )

    # ------------------------------------------------------------------
    # Transitions (main thread)
    # ------------------------------------------------------------------

    def _promote(self, ready: Deque[JobInstance]) -> None:
        """Resolve PENDING instances whose dependencies are all terminal."""
        changed = True
        while changed:
            changed = False
            for inst in self._order:
                if inst.status is not JobStatus.PENDING:
                    continue
                with self._lock:
                    upstream = {d: self._aggregate(d) for d in inst.spec.needs}
                if any(s is None for s in upstream.values()):
                    continue

                scope = self._scope(inst, env=self.definition.env)
                if gate(inst.spec.condition, scope):
                    with self._lock:
                        inst.transition(JobStatus.READY)
                    ready.append(inst)
                else:
                    blocked = [f"{d} {s.result}" for d, s in upstream.items() if s is not JobStatus.SUCCEEDED]
                    if blocked and not (inst.spec.condition and compile_expression(inst.spec.condition).uses_status_function):
                        reason = "needs " + ", ".join(blocked)
                    else:
                        reason = "condition false"
                    with self._lock:
                        inst.transition(JobStatus.SKIPPED)
                        inst.finished_at = self.clock()
                        inst.reason = reason
                    self.console.print_job_skipped(inst.label, reason)
                changed = True

    def _finish(self, inst: JobInstance, fut: Future) -> None:
        try:
            outcome = fut.result()
        except Exception as e:
            outcome = _Outcome(JobStatus.FAILED, error=ErrorRecord.from_exception(inst.label, None, e))

        if outcome is None:
            return  # never started (cancelled while queued)

        with self._lock:
            if inst.status is not JobStatus.RUNNING:
                return  # timed out / cancelled meanwhile: late result is dropped
            inst.transition(outcome.status)
            inst.finished_at = self.clock()
            inst.error = outcome.error
            inst.reason = outcome.reason
            if outcome.status is JobStatus.SUCCEEDED:
                inst.outputs = dict(outcome.outputs)

        duration = inst.finished_at - inst.started_at if inst.started_at is not None else None
        if outcome.status is JobStatus.FAILED and outcome.error is not None:
            self.console.print_failure(
                inst.label,
                outcome.error.message,
                exit_code=outcome.error.details.get("exit_code"),
                is_job=True,
            )
        self.console.print_job_finished(inst.label, outcome.status.value, duration)

    def _enforce_timeouts(self, in_flight: Dict[Future, JobInstance]) -> int:
        """Cancel instances past their timeout; returns how many were abandoned."""
        now = self.clock()
        abandoned = 0
        for fut, inst in list(in_flight.items()):
            timeout = inst.spec.timeout
            with self._lock:
                if inst.status is not JobStatus.RUNNING or timeout is None or inst.started_at is None:
                    continue
                if now - inst.started_at < timeout:
                    continue
                inst.transition(JobStatus.CANCELLED)
                inst.finished_at = now
                inst.reason = "timeout"
                inst.error = ErrorRecord(
                    instance=inst.label,
                    step=self._current_step(inst),
                    kind="StepTimeout",
                    message=f"[{inst.label}] timed out after {timeout}s",
                    details={"timeout": timeout},
                )
                evt = self._instance_cancel.get(inst.key)
            if evt is not None:
                evt.set()
            del in_flight[fut]
            self._abandoned = True
            self.console.print_job_finished(inst.label, "cancelled", now - inst.started_at)
            abandoned += 1
        return abandoned

    def _cancel_all(self, in_flight: Dict[Future, JobInstance]) -> None:
        self._cancelled = True
        now = self.clock()
        with self._lock:
            for inst in self._order:
                if inst.status.terminal:
                    continue
                inst.transition(JobStatus.CANCELLED)
                inst.finished_at = now
                inst.reason = "run cancelled"
            for evt in self._instance_cancel.values():
                evt.set()
        if in_flight:
            self._abandoned = True
            in_flight.clear()
        self.console.print_info("Run cancelled")

    @staticmethod
    def _current_step(inst: JobInstance) -> Optional[str]:
        done = {s.ref for s in inst.steps}
        for step in inst.spec.steps:
            if step.ref not in done:
                return step.name
        return None

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _execute_instance(self, inst: JobInstance) -> Optional[_Outcome]:
        cancel = threading.Event()
        with self._lock:
            if inst.status is not JobStatus.READY:
                return None
            inst.transition(JobStatus.RUNNING)
            inst.started_at = self.clock()
            self._instance_cancel[inst.key] = cancel
            running = sum(1 for i in self._order if i.status is JobStatus.RUNNING)
            self.peak_running = max(self.peak_running, running)

        if inst.spec.environment is not None:
            self._bind_environment(inst, self._scope(inst, env=self.definition.env))

        deadline = inst.started_at + inst.spec.timeout if inst.spec.timeout else None
        self.console.print_job_start(inst.label, inst.environment["name"] if inst.environment else None)
        if inst.spec.workflow is not None:
            return self._run_nested(inst, cancel)
        return self._run_steps(inst, cancel, deadline)

    def _bind_environment(self, inst: JobInstance, scope: Scope) -> None:
        environment = inst.spec.environment
        bound = {
            "name": render(environment.name, scope),
            "url": render(environment.url, scope) if environment.url else None,
        }
        with self._lock:
            inst.environment = bound

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - self.clock()

    def _record(self, inst: JobInstance, record: StepRecord) -> None:
        with self._lock:
            if inst.status is JobStatus.RUNNING:
                inst.steps.append(record)

    def _render_env(self, base: Mapping[str, str], extra: Mapping[str, str], scope: Scope) -> Dict[str, str]:
        env = dict(base)
        for key, value in extra.items():
            scope.env = MappingProxyType(env)
            env[key] = render(str(value), scope)
        return env

    def _run_steps(self, inst: JobInstance, cancel: threading.Event, deadline: Optional[float]) -> _Outcome:
        scope = self._scope(inst, success=True, failure=False)
        env = self._render_env({}, self.definition.env, scope)
        env = self._render_env(env, inst.spec.env, scope)
        steps_view: Dict[str, Any] = {}

        for step in inst.spec.steps:
            if cancel.is_set() or self._cancel_event.is_set():
                return _Outcome(JobStatus.CANCELLED, reason="cancelled")
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                err = StepTimeout(inst.label, step.name, inst.spec.timeout)
                return _Outcome(JobStatus.CANCELLED, reason="timeout",
                                error=ErrorRecord.from_exception(inst.label, step.name, err))

            scope = self._scope(inst, env=MappingProxyType(env), steps=MappingProxyType(dict(steps_view)),
                                success=True, failure=False)
            record = StepRecord(name=step.name, ref=step.ref)

            if not gate(step.if_, scope):
                self.console.print_step_skipped(inst.label, step.name)
                steps_view[step.ref] = self._step_view(record)
                self._record(inst, record)
                continue

            step_env = self._render_env(env, step.env, scope)
            scope.env = MappingProxyType(step_env)
            self.console.print_step(inst.label, step.name)
            try:
                outcome = self._run_step(inst, step, scope, step_env, deadline, record)
            except StepTimeout as e:
                record.outcome = record.conclusion = "cancelled"
                self._record(inst, record)
                return _Outcome(JobStatus.CANCELLED, reason="timeout",
                                error=ErrorRecord.from_exception(inst.label, step.name, e))
            except Exception as e:
                record.outcome = "failure"
                if step.continue_on_error:
                    record.conclusion = "success"
                    record.error = ErrorRecord.from_exception(inst.label, step.name, e)
                    record.error.details["continue_on_error"] = True
                    self.console.print_failure(f"{inst.label} / {step.name}", str(e),
                                               hint="continue-on-error: job continues")
                    steps_view[step.ref] = self._step_view(record)
                    self._record(inst, record)
                    continue
                record.conclusion = "failure"
                self._record(inst, record)
                return _Outcome(JobStatus.FAILED, error=ErrorRecord.from_exception(inst.label, step.name, e))

            record.outcome = record.conclusion = "success"
            record.exit_code = outcome.exit_code
            record.stdout = outcome.stdout
            record.outputs = dict(outcome.outputs)
            steps_view[step.ref] = self._step_view(record)
            self._record(inst, record)

        scope = self._scope(inst, env=MappingProxyType(env), steps=MappingProxyType(dict(steps_view)),
                            success=True, failure=False)
        if inst.spec.environment is not None:
            # url templates may read step outputs
            self._bind_environment(inst, scope)
        return _Outcome(JobStatus.SUCCEEDED, outputs=self._evaluate_outputs(inst.spec, scope))

    @staticmethod
    def _step_view(record: StepRecord) -> Mapping[str, Any]:
        return MappingProxyType({
            "outcome": record.outcome,
            "conclusion": record.conclusion,
            "outputs": MappingProxyType(dict(record.outputs)),
            "stdout": record.stdout,
            "exit_code": record.exit_code,
        })

    @staticmethod
    def _evaluate_outputs(spec: JobSpec, scope: Scope) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name, expr in spec.outputs.items():
            value = compile_expression(expr).evaluate(scope)
            if value is not UNDEFINED:
                outputs[name] = value
        return outputs

    def _run_step(
        self,
        inst: JobInstance,
        step: Step,
        scope: Scope,
        env: Dict[str, str],
        deadline: Optional[float],
        record: StepRecord,
    ) -> StepOutcome:
        """One step with its own retry budget. Raises on final failure."""
        last_error: Optional[Exception] = None
        for attempt in range(1, step.retry + 1):
            record.attempts = attempt
            if attempt > 1:
                remaining = self._remaining(deadline)
                if remaining is not None and remaining <= 0:
                    raise StepTimeout(inst.label, step.name, inst.spec.timeout)
                self.console.print_step_retry(inst.label, step.name, attempt, step.retry)

            try:
                if step.kind == "upload-artifact":
                    return self._upload(inst, step, scope)
                if step.kind == "download-artifact":
                    return self._download(step, scope)

                command = render(step.run, scope)
                outcome = self.executor(StepRequest(
                    job=inst.label,
                    step=step,
                    command=command,
                    env=MappingProxyType(env),
                    timeout=self._remaining(deadline),
                ))
                record.exit_code = outcome.exit_code
                if outcome.ok:
                    return outcome
                last_error = StepExecutionError(
                    job=inst.label,
                    step=step.name,
                    cmd=command,
                    exit_code=outcome.exit_code,
                    stdout=outcome.stdout[-TAIL_CHARS:],
                    stderr=outcome.stderr[-TAIL_CHARS:],
                )
            except StepTimeout:
                raise
            except Exception as e:
                last_error = e

        assert last_error is not None
        raise last_error

    def _upload(self, inst: JobInstance, step: Step, scope: Scope) -> StepOutcome:
        name = render(str(step.data["name"]), scope)
        src = self.workspace / render(str(step.data["path"]), scope)
        if "retention_days" in step.data:
            retention = float(step.data["retention_days"]) * 24 * 3600
        else:
            retention = float(step.data.get("retention", DEFAULT_RETENTION_SECONDS))

        ref = self.artifacts.put(name, inst.label, pack_path(src), retention, kind=path_kind(src))
        with self._lock:
            inst.artifacts.append(ref)
        return StepOutcome(exit_code=0, outputs={
            "name": name, "digest": ref.digest, "size": str(ref.size), "kind": ref.kind,
        })

    def _download(self, step: Step, scope: Scope) -> StepOutcome:
        name = render(str(step.data["name"]), scope)
        artifact, data = self.artifacts.fetch(name)   # ArtifactNotFound goes to the step's tolerance policy
        dest = self.workspace / render(str(step.data.get("path") or name), scope)
        unpack_into(data, dest, artifact.kind)
        return StepOutcome(exit_code=0, outputs={"name": name, "path": str(dest)})

    def _run_nested(self, inst: JobInstance, cancel: threading.Event) -> _Outcome:
        child = Scheduler(
            inst.spec.workflow,
            self.context,
            self.executor,
            max_workers=self.max_workers,
            artifacts=self.artifacts,
            workspace=self.workspace,
            clock=self.clock,
            console=self.console,
            poll_interval=self.poll_interval,
            run_id=f"{self.run_id}/{inst.spec.name}",
            cancel_event=cancel,
            expire_artifacts=False,
        )
        result = child.run()

        if result.status is RunStatus.SUCCEEDED:
            scope = Scope(
                ctx=self.context,
                needs=child.needs_view(),
                matrix=MappingProxyType(dict(inst.assignment)),
                job=self._job_info(inst),
                success=True,
                failure=False,
            )
            if inst.spec.environment is not None:
                self._bind_environment(inst, scope)
            return _Outcome(JobStatus.SUCCEEDED, outputs=self._evaluate_outputs(inst.spec, scope))

        status = JobStatus.FAILED if result.status is RunStatus.FAILED else JobStatus.CANCELLED
        error = ErrorRecord(
            instance=inst.label,
            step=None,
            kind="NestedRunError",
            message=f"nested workflow '{result.name}' {result.status.value}",
            details={"errors": [e.to_dict() for e in result.errors]},
        )
        return _Outcome(status, error=error, reason=None if status is JobStatus.FAILED else "nested run cancelled")

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _build_result(self, started_at: float, finished_at: float) -> RunResult:
        with self._lock:
            snapshots = [i.snapshot() for i in self._order]
            errors: List[ErrorRecord] = []
            for i in self._order:
                errors.extend(s.error for s in i.steps if s.error is not None)
                if i.error is not None:
                    errors.append(i.error)

        if any(s.status is JobStatus.FAILED and s.required for s in snapshots):
            status = RunStatus.FAILED
        elif self._cancelled:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.SUCCEEDED

        return RunResult(
            run_id=self.run_id,
            name=self.definition.name,
            status=status,
            instances=snapshots,
            started_at=started_at,
            finished_at=finished_at,
            errors=errors,
            context=self.context.to_dict(),
        )


def run(
    definition: RunDefinition,
    context: Optional[Mapping[str, Any]] = None,
    executor: Optional[StepExecutor] = None,
    **kwargs: Any,
) -> RunResult:
    """Validate and run a definition; see Scheduler for keyword options."""
    return Scheduler(definition, context, executor, **kwargs).run()
