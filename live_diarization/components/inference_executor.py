import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Tuple

logger = logging.getLogger("InferenceExecutor")


class InferenceExecutor:
    """
    Single worker thread for every extractor call.

    Responsibility:
    - Keep model inference off the event loop so append never blocks.
    - One worker => calls run strictly in submission order.
    - No cancellation: a submitted call always runs to completion.
    """

    def __init__(self, name: str = "InferenceWorker"):
        self.name = name
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self.calls = 0

    async def run(self, fn: Callable[..., Any], *args) -> Tuple[Any, float]:
        """
        Run fn(*args) on the worker. Returns (result, elapsed_seconds).
        Exceptions raised by fn propagate to the awaiting caller.
        """
        loop = asyncio.get_running_loop()
        self.calls += 1

        def timed():
            start = time.perf_counter()
            result = fn(*args)
            return result, time.perf_counter() - start

        return await loop.run_in_executor(self._pool, timed)

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)
        logger.info(f"{self.name} shut down after {self.calls} calls.")
