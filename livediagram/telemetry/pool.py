"""Fixed-size worker pool over a shared work queue."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkResult:
	item: Any
	value: Any = None
	error: Optional[Exception] = None

	@property
	def ok(self) -> bool:
		return self.error is None


def run_worker_pool(
	items: Iterable[Any],
	work: Callable[[Any], Any],
	concurrency: int = 6,
	name: str = "worker",
) -> List[WorkResult]:
	"""
	Run ``work`` over ``items`` with at most ``concurrency`` threads.

	Workers pull from one shared queue until it is empty. A failing item is
	captured in its ``WorkResult`` and never raised, so sibling items keep
	going. Results come back in input order.
	"""
	pending = list(items)
	if not pending:
		return []

	work_queue: "queue.Queue[tuple]" = queue.Queue()
	for idx, item in enumerate(pending):
		work_queue.put((idx, item))

	results: List[Optional[WorkResult]] = [None] * len(pending)

	def _worker() -> None:
		while True:
			try:
				idx, item = work_queue.get_nowait()
			except queue.Empty:
				return
			try:
				results[idx] = WorkResult(item=item, value=work(item))
			except Exception as e:
				results[idx] = WorkResult(item=item, error=e)

	threads = [
		threading.Thread(target=_worker, name=f"{name}-{i}", daemon=True)
		for i in range(max(1, min(concurrency, len(pending))))
	]
	for t in threads:
		t.start()
	for t in threads:
		t.join()

	return [r for r in results if r is not None]
