from __future__ import annotations

import sys
import threading
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Row progress display with tqdm (TTY only).

update() is called once per row from the validation worker thread, so
counts are collected under a lock and handed to tqdm in batches. Without a
TTY (CI, redirected output) no bar is created and only the counter runs.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]

DEFAULT_BATCH = 50


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    """Progress bar over the rows of one validation run."""

    def __init__(self, total_rows: int, *, description: str = "Validating rows", batch: int = DEFAULT_BATCH) -> None:
        self.total_rows = total_rows
        self.batch = max(1, batch)
        self.processed = 0
        self._unflushed = 0
        self._lock = threading.Lock()

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None = None
        if self.enabled:
            self.pbar = tqdm(
                total=total_rows,
                desc=description,
                unit="row",
                leave=False,
                ncols=80,
                ascii=True,
                file=sys.stderr,
            )

    def update(self, n: int = 1) -> None:
        with self._lock:
            self.processed += n
            self._unflushed += n
            if self._unflushed >= self.batch:
                self._flush()

    def _flush(self) -> None:
        if self.pbar is not None and self._unflushed:
            self.pbar.update(self._unflushed)
        self._unflushed = 0

    def set_postfix(self, **kwargs: Any) -> None:
        if self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        with self._lock:
            self._flush()
            if self.pbar is not None:
                self.pbar.close()
                self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
