"""Wave executor for stack-based orchestration.

Walks a Plan wave by wave. Operations inside a wave run concurrently on a
thread pool; waves run strictly in sequence. Each operation:

1. resolves references from the state store (outputs of earlier waves)
2. calls its provider, retrying transient errors with exponential backoff
3. waits for the provider's readiness predicate if the resource asks for it
4. persists its state record immediately

A conditional update whose re-resolved inputs match the recorded ones is
reported as unchanged without calling the provider.

If any operation in a wave fails, the rest of that wave still finishes but
no further wave starts; remaining operations are reported as skipped.
Cancellation behaves the same way without a failure.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import backoff_delays
from config import EngineConfig
from errors import (
    EngineError,
    PermanentProviderError,
    ReadinessTimeoutError,
    TransientProviderError,
)
from providers import Provider, supports_readiness
from readiness import wait_until_ready
from stack_opr.planner import CREATE, DELETE, Operation, Plan
from stack_opr.state import ResourceRecord, StateStore

logger = logging.getLogger(__name__)

# Outcome statuses
PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
UNCHANGED = 'unchanged'

# Run statuses
RUN_SUCCESS = 'success'
RUN_PARTIAL_FAILURE = 'partial_failure'
RUN_CANCELLED = 'cancelled'


@dataclass
class OperationOutcome:
    """Per-operation execution status.

    Attributes:
        address: Resource address
        action: create, update or delete
        status: pending, running, succeeded, failed, skipped, unchanged
        attempts: Provider calls made (retries included)
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution ended
        error: Error message if failed, reason if skipped
    """
    address: str
    action: str
    status: str = PENDING
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self) -> None:
        self.status = SUCCEEDED
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.error = reason

    def unchanged(self) -> None:
        self.status = UNCHANGED
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
            'attempts': self.attempts,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class RunResult:
    """Outcome of applying one plan."""
    stack_name: str
    outcomes: dict[str, OperationOutcome] = field(default_factory=dict)
    cancelled: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def _with_status(self, status: str) -> list[OperationOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    @property
    def succeeded(self) -> list[OperationOutcome]:
        return self._with_status(SUCCEEDED)

    @property
    def failed(self) -> list[OperationOutcome]:
        return self._with_status(FAILED)

    @property
    def skipped(self) -> list[OperationOutcome]:
        return self._with_status(SKIPPED)

    @property
    def unchanged(self) -> list[OperationOutcome]:
        return self._with_status(UNCHANGED)

    @property
    def status(self) -> str:
        if self.failed:
            return RUN_PARTIAL_FAILURE
        if self.cancelled and self.skipped:
            return RUN_CANCELLED
        return RUN_SUCCESS

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCESS

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        return {
            'stack': self.stack_name,
            'status': self.status,
            'success': self.success,
            'duration_seconds': round(self.duration or 0.0, 2),
            'operations': [o.to_dict() for o in self.outcomes.values()],
        }


@dataclass
class WaveExecutor:
    """Executes a Plan against provider plugins.

    Attributes:
        providers: Provider instances by name
        store: State store; the only shared mutable object
        config: Retry, readiness and parallelism settings
        dry_run: If True, preview operations without executing
        sleep: Sleep function for backoff and readiness polls
    """
    providers: dict[str, Provider]
    store: StateStore
    config: EngineConfig
    dry_run: bool = False
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        """Stop starting new waves; in-flight operations finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested: finishing in-flight operations, "
                           "no further waves will start")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan) -> RunResult:
        """Execute every wave of the plan.

        Raises:
            StateConflictError: If the state changed since the plan was computed
        """
        result = RunResult(stack_name=plan.stack_name)
        for op in plan.operations:
            result.outcomes[op.address] = OperationOutcome(address=op.address, action=op.action)

        if self.dry_run:
            self._preview(plan)
            return result

        self.store.check_serial(plan.serial)
        result.started_at = time.time()

        total = len(plan.waves)
        for index, wave in enumerate(plan.waves, start=1):
            if self.cancelled:
                result.cancelled = True
                logger.warning(f"Cancelled before wave {index}/{total}")
                break

            logger.info(f"Wave {index}/{total}: "
                        f"{', '.join(op.address for op in wave)}")
            failures = self._run_wave(wave, result)
            if failures:
                logger.error(f"Wave {index}/{total} had {failures} failure(s); "
                             "not starting further waves")
                break

        if self.cancelled:
            result.cancelled = True
        for outcome in result.outcomes.values():
            if outcome.status == PENDING:
                outcome.skip('cancelled' if result.cancelled else 'not attempted after earlier failure')

        result.completed_at = time.time()
        logger.info(f"Run finished: {result.status} "
                    f"({len(result.succeeded)} succeeded, {len(result.failed)} failed, "
                    f"{len(result.skipped)} skipped)")
        return result

    def _run_wave(self, wave: list[Operation], result: RunResult) -> int:
        """Run one wave concurrently; return the number of failed operations."""
        workers = max(1, min(self.config.parallelism, len(wave)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='wave') as pool:
            futures = [pool.submit(self._run_operation, op, result.outcomes[op.address])
                       for op in wave]
            for future in futures:
                future.result()
        return sum(1 for op in wave if result.outcomes[op.address].status == FAILED)

    def _run_operation(self, op: Operation, outcome: OperationOutcome) -> None:
        """Execute one operation and record its outcome. Never raises."""
        outcome.start()
        logger.info(f"[{op.action}] {op.address}")
        try:
            if op.action == DELETE:
                self._delete(op, outcome)
            else:
                self._apply(op, outcome)
        except EngineError as e:
            outcome.fail(str(e))
        except Exception as e:
            # Unexpected plugin failure: treat as permanent for this resource
            logger.debug(f"[{op.action}] {op.address} raised", exc_info=True)
            outcome.fail(f"{type(e).__name__}: {e}")

        if outcome.status == FAILED:
            logger.error(f"[{op.action}] {op.address} failed: {outcome.error}")
            return
        if outcome.status == UNCHANGED:
            logger.info(f"[{op.action}] {op.address} unchanged: upstream outputs are the same")
            return
        outcome.succeed()
        logger.info(f"[{op.action}] {op.address} done "
                    f"({outcome.attempts} attempt{'s' if outcome.attempts != 1 else ''})")

    def _provider(self, name: str) -> Provider:
        provider = self.providers.get(name)
        if provider is None:
            raise PermanentProviderError(f"Provider '{name}' is not configured")
        return provider

    def _call(self, outcome: OperationOutcome, fn: Callable[[], Any]) -> Any:
        """Call fn, retrying TransientProviderError with bounded backoff."""
        delays = backoff_delays(self.config.max_attempts,
                                self.config.backoff_base, self.config.backoff_max)
        while True:
            outcome.attempts += 1
            try:
                return fn()
            except TransientProviderError as e:
                delay = next(delays, None)
                if delay is None:
                    raise TransientProviderError(
                        f"{e} (gave up after {outcome.attempts} attempts)"
                    ) from e
                logger.warning(f"[{outcome.action}] {outcome.address}: transient error "
                               f"(attempt {outcome.attempts}/{self.config.max_attempts}): {e}; "
                               f"retrying in {delay:g}s")
                self.sleep(delay)

    def _apply(self, op: Operation, outcome: OperationOutcome) -> None:
        """Create or update a resource, wait for readiness, persist the record."""
        decl = op.decl
        assert decl is not None
        provider = self._provider(decl.provider)

        # Resolved only now, after every upstream wave has been persisted
        inputs = self.store.resolve(decl.configuration, decl.address)
        if op.conditional and op.prior is not None and inputs == op.prior.inputs:
            outcome.unchanged()
            return
        call_config = dict(inputs)
        call_config.setdefault('name', decl.name)

        if op.action == CREATE:
            outputs = self._call(outcome, lambda: provider.create(decl.type, call_config))
        else:
            outputs = self._call(outcome, lambda: provider.update(decl.type, decl.name, call_config))
        outputs = dict(outputs or {})

        record = ResourceRecord(
            type=decl.type,
            name=decl.name,
            provider=decl.provider,
            configuration=decl.configuration,
            inputs=inputs,
            outputs=outputs,
            dependencies=list(op.dependencies),
            created_at=op.prior.created_at if op.prior else None,
        )

        if decl.readiness is not None and supports_readiness(provider):
            timeout = float(decl.readiness.get('timeout', self.config.readiness_timeout))
            interval = float(decl.readiness.get('interval', self.config.readiness_interval))
            try:
                wait_until_ready(
                    lambda: provider.ready(decl.type, decl.name, outputs),  # type: ignore[attr-defined]
                    timeout=timeout,
                    interval=interval,
                    description=op.address,
                    sleep=self.sleep,
                )
            except ReadinessTimeoutError:
                record.tainted = True
                self.store.record(record)
                raise

        self.store.record(record)

    def _delete(self, op: Operation, outcome: OperationOutcome) -> None:
        """Delete a resource and drop its record."""
        prior = op.prior
        assert prior is not None
        provider = self._provider(prior.provider)
        self._call(outcome, lambda: provider.delete(prior.type, prior.name))
        self.store.remove(op.address)

    def _preview(self, plan: Plan) -> None:
        """Print the plan without executing it."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {'DESTROY' if plan.destroy else 'APPLY'}: {plan.stack_name}")
        print(f"  State serial: {plan.serial}")
        print("=" * 65)
        print("")
        if not plan.waves:
            print("  No changes.")
        for index, wave in enumerate(plan.waves, start=1):
            print(f"  Wave {index}:")
            for op in wave:
                reason = f" ({op.reason})" if op.reason else ''
                print(f"    {op}{reason}")
        print("")
