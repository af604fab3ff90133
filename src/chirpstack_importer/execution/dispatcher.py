"""Unit Dispatcher - bounded, isolated execution of per-row registry work.

Both the import executor and the bulk mutation engine hand their units of
work (one row or one identifier) to a UnitDispatcher. It provides:

1. Bounded concurrency - every unit holds a RegistryThrottle slot while it
   talks to the registry.
2. Index-addressed results - outcomes are written into a pre-sized list at
   the unit's input position, so the final order is the input order no matter
   which call completes first.
3. Failure isolation - a RegistryError becomes a Failed outcome tagged with
   its kind; any other exception becomes a Failed outcome with code "Error".
   Nothing escapes to the caller.
4. Timeouts - the registry client bounds every HTTP request; a unit whose
   call timed out is recorded as Failed/Timeout. There is no automatic retry
   and no limit on the unit as a whole, so a multi-call mutation is never cut
   between its steps.
5. Cancellation - a CancellationToken is checked after the slot is acquired;
   units that observe it are Skipped with reason Cancelled while in-flight
   calls finish normally.
6. Unreachable breaker - after N consecutive Unreachable failures further
   units are Skipped with reason UpstreamUnavailable.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from ..constants import DEFAULT_UNREACHABLE_THRESHOLD
from ..models.results import UNEXPECTED_ERROR_CODE, RowOutcome, RowStatus, SkipReason
from ..observability.metrics import get_global_collector
from ..utils.exceptions import RegistryError, RegistryErrorKind
from .throttle import RegistryThrottle

logger = structlog.get_logger(__name__)

UnitWork = Callable[[int], Awaitable[RowOutcome]]


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a run.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(executor.execute(verdicts, profile, target, cancel=token))
        token.cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation; units not yet dispatched will be skipped."""
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()


class UnreachableBreaker:
    """
    Trip after a run of consecutive Unreachable failures.

    Any completion other than Unreachable resets the streak. Once tripped the
    breaker stays open for the rest of the run.
    """

    def __init__(self, threshold: int = DEFAULT_UNREACHABLE_THRESHOLD) -> None:
        self.threshold = threshold
        self.streak = 0
        self.tripped = False

    def record(self, error_code: str | None) -> None:
        """Feed the error code of a completed unit (None for success)."""
        if error_code == RegistryErrorKind.UNREACHABLE.value:
            self.streak += 1
            if self.threshold > 0 and self.streak >= self.threshold and not self.tripped:
                self.tripped = True
                logger.error(
                    "Registry unreachable, remaining units will be skipped",
                    consecutive_failures=self.streak,
                )
        else:
            self.streak = 0


def failed_outcome(index: int, error: BaseException, dev_eui: str | None = None) -> RowOutcome:
    """
    Build the Failed outcome for an exception raised by a unit.

    Args:
        index: Input position of the unit
        error: Exception raised by the unit
        dev_eui: Identifier the unit worked on, when known

    Returns:
        RowOutcome with status Failed and the error kind as code
    """
    if isinstance(error, RegistryError):
        code = error.kind.value
    elif isinstance(error, asyncio.TimeoutError):
        code = RegistryErrorKind.TIMEOUT.value
    else:
        code = UNEXPECTED_ERROR_CODE

    return RowOutcome(
        row_index=index,
        status=RowStatus.FAILED,
        registry_device_id=dev_eui,
        error=str(error) or type(error).__name__,
        error_code=code,
    )


def skipped_outcome(index: int, reason: SkipReason, message: str) -> RowOutcome:
    return RowOutcome(
        row_index=index,
        status=RowStatus.SKIPPED,
        error=message,
        error_code=reason.value,
    )


class UnitDispatcher:
    """
    Run units of work concurrently and collect one outcome per input.

    A dispatcher is reusable; breaker state is per dispatch() call.
    """

    def __init__(
        self,
        throttle: RegistryThrottle | None = None,
        unreachable_threshold: int = DEFAULT_UNREACHABLE_THRESHOLD,
        operation_kind: str = "import",
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            throttle: Shared throttle (a default RegistryThrottle if None)
            unreachable_threshold: Consecutive Unreachable failures that trip the breaker
            operation_kind: Label used in logs and metrics
        """
        self.throttle = throttle or RegistryThrottle()
        self.unreachable_threshold = unreachable_threshold
        self.operation_kind = operation_kind
        self.collector = get_global_collector()

    async def dispatch(
        self,
        slots: list[RowOutcome | None],
        work: UnitWork,
        cancel: CancellationToken | None = None,
        identifiers: list[str | None] | None = None,
        row_indexes: list[int] | None = None,
    ) -> list[RowOutcome]:
        """
        Fill every empty slot by running ``work(position)``.

        Args:
            slots: Pre-sized outcome list; None marks a unit to dispatch,
                pre-filled entries are kept as they are
            work: Coroutine function doing the registry work of one unit
            cancel: Optional cancellation token
            identifiers: Optional DevEUI per slot, attached to Failed outcomes
            row_indexes: Optional row index reported for each slot (defaults
                to the slot position)

        Returns:
            The completed outcome list, in input order
        """
        breaker = UnreachableBreaker(self.unreachable_threshold)
        lock = asyncio.Lock()
        pending = [i for i, slot in enumerate(slots) if slot is None]

        def row_index(position: int) -> int:
            return row_indexes[position] if row_indexes is not None else position

        logger.info(
            "Dispatching units",
            operation=self.operation_kind,
            units=len(pending),
            total=len(slots),
            max_concurrency=self.throttle.max_concurrency,
        )

        async def run_unit(position: int) -> None:
            index = row_index(position)
            dev_eui = identifiers[position] if identifiers else None
            async with self.throttle:
                if cancel is not None and cancel.cancelled:
                    outcome = skipped_outcome(
                        index, SkipReason.CANCELLED, "Run cancelled before dispatch"
                    )
                elif breaker.tripped:
                    outcome = skipped_outcome(
                        index,
                        SkipReason.UPSTREAM_UNAVAILABLE,
                        "Registry unreachable, unit not dispatched",
                    )
                else:
                    start = time.monotonic()
                    try:
                        outcome = await work(position)
                    except RegistryError as e:
                        outcome = failed_outcome(index, e, dev_eui)
                    except Exception as e:
                        logger.exception(
                            "Unexpected error in unit", row_index=index, dev_eui=dev_eui
                        )
                        outcome = failed_outcome(index, e, dev_eui)
                    breaker.record(outcome.error_code)
                    self.collector.record_latency(
                        self.operation_kind, (time.monotonic() - start) * 1000
                    )

            async with lock:
                slots[position] = outcome

            self.collector.count_outcome(
                self.operation_kind, outcome.status.value, outcome.error_code
            )
            logger.debug(
                "Unit completed",
                operation=self.operation_kind,
                row_index=index,
                dev_eui=dev_eui,
                status=outcome.status.value,
                error_code=outcome.error_code,
            )

        results = await asyncio.gather(*(run_unit(p) for p in pending), return_exceptions=True)

        # run_unit captures unit errors itself; anything here is a dispatcher bug
        for position, result in zip(pending, results, strict=True):
            if isinstance(result, BaseException) and slots[position] is None:
                index = row_index(position)
                logger.error("Unit crashed outside isolation", row_index=index, error=str(result))
                slots[position] = failed_outcome(index, result)

        return [slot for slot in slots if slot is not None]
