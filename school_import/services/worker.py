from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import BrokenExecutor, Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..models.analysis_pattern import AnalysisPattern
from ..models.row_data import ImportRow
from ..models.rules import ColumnDefinition, FormatRule, RuleRegistry
from ..models.validation_error import ValidationError
from .pattern_analysis import DEFAULT_MIN_OCCURRENCES, analyze, apply_pattern
from .validation import RowCallback, validate_with_registry

logger = logging.getLogger(__name__)

"""Background worker for validation, pattern analysis and pattern application.

One single-worker executor runs the jobs off the calling (interactive)
thread, so at most one job executes at a time and jobs run in submission
order.

Delivery contract:
- every submission gets a generation number per request kind; only the
  newest generation of a kind is current, older responses come back with
  stale=True and callers drop them
- a failed delivery (executor cannot start, executor shut down or broken,
  timeout, exception inside the job) raises DeliveryError. It is never
  reported as an empty error list
- no cancellation: a superseded job still runs to completion
"""

__all__ = [
    "RequestKind",
    "DeliveryError",
    "WorkerRequest",
    "WorkerResponse",
    "ValidationWorker",
]

ExecutorFactory = Callable[[], Executor]


class RequestKind(Enum):
    VALIDATE = "validate"
    ANALYZE = "analyze"
    APPLY_PATTERN = "apply-pattern"


class DeliveryError(Exception):
    """The worker could not deliver a result for a request."""

    def __init__(self, kind: RequestKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


@dataclass(frozen=True)
class WorkerRequest:
    kind: RequestKind
    generation: int
    future: Future[Any]


@dataclass(frozen=True)
class WorkerResponse:
    kind: RequestKind
    generation: int
    payload: Any
    stale: bool = False


def _default_executor() -> Executor:
    return ThreadPoolExecutor(max_workers=1, thread_name_prefix="school-import-worker")


class ValidationWorker:
    """Runs validation / analysis jobs on a dedicated single worker.

    Use as a context manager, or call shutdown() when done.
    """

    def __init__(self, executor_factory: ExecutorFactory | None = None, *, timeout: float | None = None) -> None:
        self._factory = executor_factory or _default_executor
        self.timeout = timeout
        self._executor: Executor | None = None
        self._lock = threading.Lock()
        self._generations: dict[RequestKind, int] = {k: 0 for k in RequestKind}
        self._pending: dict[RequestKind, WorkerRequest] = {}

    def start(self) -> None:
        if self._executor is not None:
            return
        try:
            self._executor = self._factory()
        except Exception as e:
            raise DeliveryError(RequestKind.VALIDATE, f"worker could not be started: {e}") from e
        logger.debug("validation worker started")

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._pending.clear()

    def __enter__(self) -> ValidationWorker:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()

    def current_generation(self, kind: RequestKind) -> int:
        return self._generations[kind]

    def is_pending(self, kind: RequestKind) -> bool:
        request = self._pending.get(kind)
        return request is not None and not request.future.done()

    def _submit(self, kind: RequestKind, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> WorkerRequest:
        if self._executor is None:
            self.start()
        assert self._executor is not None
        with self._lock:
            self._generations[kind] += 1
            generation = self._generations[kind]
            try:
                future = self._executor.submit(fn, *args, **kwargs)
            except (RuntimeError, BrokenExecutor) as e:
                raise DeliveryError(kind, f"worker not accepting requests: {e}") from e
            request = WorkerRequest(kind=kind, generation=generation, future=future)
            self._pending[kind] = request
        logger.debug(f"submitted {kind.value} generation={generation}")
        return request

    def submit_validate(
        self, rows: Sequence[ImportRow], registry: RuleRegistry, *, on_row: RowCallback | None = None
    ) -> WorkerRequest:
        # 行リストはスナップショットとして渡す
        return self._submit(RequestKind.VALIDATE, validate_with_registry, list(rows), registry, on_row=on_row)

    def submit_analyze(
        self,
        errors: Sequence[ValidationError],
        rows: Sequence[ImportRow],
        *,
        columns: Sequence[ColumnDefinition] | None = None,
        format_rules: Sequence[FormatRule] = (),
        min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
    ) -> WorkerRequest:
        return self._submit(
            RequestKind.ANALYZE,
            analyze,
            list(errors),
            list(rows),
            columns=columns,
            format_rules=tuple(format_rules),
            min_occurrences=min_occurrences,
        )

    def submit_apply_pattern(
        self,
        pattern: AnalysisPattern,
        rows: Sequence[ImportRow],
        *,
        label_for: Callable[[ImportRow], str | None] | None = None,
    ) -> WorkerRequest:
        return self._submit(RequestKind.APPLY_PATTERN, apply_pattern, pattern, list(rows), label_for=label_for)

    def wait(self, request: WorkerRequest, timeout: float | None = None) -> WorkerResponse:
        """Block until the request's result is available.

        Raises:
            DeliveryError: timeout, broken executor or exception inside the job
        """
        limit = self.timeout if timeout is None else timeout
        try:
            payload = request.future.result(timeout=limit)
        except TimeoutError as e:
            raise DeliveryError(request.kind, f"no response within {limit}s") from e
        except BrokenExecutor as e:
            raise DeliveryError(request.kind, f"worker crashed: {e}") from e
        except Exception as e:
            raise DeliveryError(request.kind, f"job failed: {type(e).__name__}: {e}") from e
        finally:
            with self._lock:
                if self._pending.get(request.kind) is request:
                    del self._pending[request.kind]

        stale = request.generation != self._generations[request.kind]
        if stale:
            logger.debug(f"dropping stale {request.kind.value} response generation={request.generation}")
        return WorkerResponse(kind=request.kind, generation=request.generation, payload=payload, stale=stale)

    def validate(
        self, rows: Sequence[ImportRow], registry: RuleRegistry, *, on_row: RowCallback | None = None
    ) -> list[ValidationError]:
        return self.wait(self.submit_validate(rows, registry, on_row=on_row)).payload

    def analyze(
        self,
        errors: Sequence[ValidationError],
        rows: Sequence[ImportRow],
        *,
        columns: Sequence[ColumnDefinition] | None = None,
        format_rules: Sequence[FormatRule] = (),
        min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
    ) -> list[AnalysisPattern]:
        return self.wait(
            self.submit_analyze(
                errors, rows, columns=columns, format_rules=format_rules, min_occurrences=min_occurrences
            )
        ).payload
