"""Runs facade operations on dedicated workers under a caller deadline."""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Union
import asyncio
import logging

from .errors import OperationTimeoutError
from .facade import EnrollmentFacade
from .models import IssuedCertificate, PendingRequest, RequestOptions, Template

logger = logging.getLogger(__name__)


class EnrollmentDispatcher:
    """
    Async adapter between the transport and the synchronous facade.

    Key generation and signing are CPU bound, so each call runs on a
    bounded thread pool instead of the event loop. When the deadline
    passes the caller gets OperationTimeoutError; a job that already
    started runs to completion and its result is dropped. A signing
    request that completes after its caller gave up is abandoned.
    """

    def __init__(self, facade: EnrollmentFacade, worker_count: int = 4, timeout_seconds: float = 30.0):
        self.facade = facade
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="enrollment-worker")

    async def create_certificate_request(self, options: RequestOptions, caller: Optional[str] = None) -> PendingRequest:
        return await self._run(
            "CreateCertificateRequest",
            lambda: self.facade.create_certificate_request(options, caller),
            on_late_result=self._abandon_late_request,
        )

    async def install_certificate(
        self,
        response: Union[str, bytes],
        password: Optional[str] = "",
        caller: Optional[str] = None,
    ) -> bool:
        return await self._run(
            "InstallCertificate",
            lambda: self.facade.install_certificate(response, password, caller),
        )

    async def get_available_templates(self, caller: Optional[str] = None) -> List[Template]:
        return await self._run(
            "GetAvailableTemplates",
            lambda: self.facade.get_available_templates(caller),
        )

    async def create_self_signed_certificate(
        self,
        subject_name: str,
        validity_days: int,
        caller: Optional[str] = None,
    ) -> IssuedCertificate:
        return await self._run(
            "CreateSelfSignedCertificate",
            lambda: self.facade.create_self_signed_certificate(subject_name, validity_days, caller),
        )

    async def _run(self, operation: str, job: Callable, on_late_result: Optional[Callable] = None):
        future = self._executor.submit(job)
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"{operation} timed out after {self.timeout_seconds}s; result will be discarded")
            future.add_done_callback(lambda done: self._discard(operation, done, on_late_result))
            raise OperationTimeoutError(f"{operation} did not complete within {self.timeout_seconds} seconds")

    @staticmethod
    def _discard(operation: str, done: Future, on_late_result: Optional[Callable]):
        if done.cancelled() or done.exception() is not None:
            return
        logger.info(f"Discarding late {operation} result")
        if on_late_result is not None:
            on_late_result(done.result())

    def _abandon_late_request(self, entry: PendingRequest):
        if self.facade.cancel_request(entry.thumbprint):
            logger.info(f"Abandoned pending request {entry.thumbprint} after caller timeout")

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
