"""
Worker invocation with a bounded timeout and normalized failures.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Optional

import structlog

from credit_batcher.config import BatcherConfig, get_config
from credit_batcher.errors import ProviderError, ProviderTimeoutError
from credit_batcher.worker.interface import WorkerInterface, classify_error

if TYPE_CHECKING:
    from credit_batcher.core.item import WorkItem

logger = structlog.get_logger(__name__)


class WorkerInvoker:
    """
    Calls a worker for one item at a time.

    A call that runs past the timeout is cancelled and reported as
    ``ProviderTimeoutError``. Every other failure is mapped onto the
    provider error taxonomy. Nothing is retried.
    """

    def __init__(
        self,
        worker: WorkerInterface,
        timeout_seconds: Optional[float] = None,
        config: Optional[BatcherConfig] = None,
    ):
        self.config = config or get_config()
        self.worker = worker
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else self.config.worker_timeout_seconds
        )

    async def invoke(self, item: "WorkItem", options: Optional[dict] = None) -> Any:
        """
        Classify a work item.

        Raises:
            ProviderError: Normalized failure, including timeouts
        """
        call_options = {"filename": item.filename}
        if options:
            call_options.update(options)

        try:
            return await asyncio.wait_for(
                self.worker.invoke(item.payload, item.media_type, call_options),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "worker_timeout",
                worker=self.worker.name,
                index=item.index,
                timeout_seconds=self.timeout_seconds,
            )
            raise ProviderTimeoutError(
                f"{self.worker.name} did not respond within {self.timeout_seconds}s"
            )
        except ProviderError as e:
            logger.warning(
                "worker_failed",
                worker=self.worker.name,
                index=item.index,
                kind=e.kind.value,
                error=str(e),
            )
            raise
        except Exception as e:
            error = classify_error(e)
            logger.warning(
                "worker_failed",
                worker=self.worker.name,
                index=item.index,
                kind=error.kind.value,
                error=str(e),
            )
            raise error from e
