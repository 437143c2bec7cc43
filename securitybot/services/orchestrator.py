"""Dispatch chunks to the analysis provider under concurrency, timeout, retry, and rate-limit bounds."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from securitybot.core.errors import AnalysisError, RateLimitExceeded
from securitybot.schemas.changeset import Chunk
from securitybot.schemas.config import BotConfig
from securitybot.schemas.findings import CoverageGap, RawFinding
from securitybot.services.provider import AnalysisProvider, AnalysisRequest, parse_findings
from securitybot.services.rate_limiter import AdmissionController, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0

GAP_INCOMPLETE = "AnalysisIncomplete"
GAP_CANCELLED = "cancelled"


def backoff_delay(attempt: int) -> float:
    """Delay before retry number `attempt` (1-based): 1s, 2s, 4s, ... capped at 30s."""
    return min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** max(0, attempt - 1)))


@dataclass
class AnalysisResult:
    findings: list[RawFinding] = field(default_factory=list)
    coverage_gaps: list[CoverageGap] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class _ChunkOutcome:
    findings: list[RawFinding] = field(default_factory=list)
    gap: CoverageGap | None = None


def _gap(chunk: Chunk, attempts: int, reason: str) -> CoverageGap:
    return CoverageGap(
        file=chunk.path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        checksum=chunk.checksum,
        attempts=attempts,
        reason=reason,
    )


class AnalysisOrchestrator:
    """
    Runs one analysis request per chunk through a fixed pool of workers.

    Workers take chunks from a FIFO queue in submission order and pass through a shared
    AdmissionController before every attempt. Results are keyed by chunk index, so completion
    order never affects the output.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        config: BotConfig,
        *,
        admission: AdmissionController | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.config = config
        self._sleep = sleep
        self._clock = clock
        perf = config.performance
        self.admission = admission or AdmissionController(
            perf.max_concurrent_requests,
            SlidingWindowRateLimiter(
                perf.rate_limit.requests, perf.rate_limit.window, clock=clock, sleep=sleep
            ),
        )
        self.checks = tuple(config.enabled_checks())
        self.log_requests = config.logging.include_api_calls

    async def run(
        self,
        chunks: Sequence[Chunk],
        cancel_event: asyncio.Event | None = None,
    ) -> AnalysisResult:
        """
        Analyze every chunk. Raises RateLimitExceeded if the run deadline cannot be met.

        Failed or cancelled chunks come back as coverage gaps rather than being dropped.
        """
        cancel = cancel_event or asyncio.Event()
        if not chunks:
            return AnalysisResult(cancelled=cancel.is_set())
        if not self.checks:
            logger.warning("No enabled security checks; skipping analysis", extra={"chunk_count": len(chunks)})
            return AnalysisResult(cancelled=cancel.is_set())

        deadline = self._clock() + self.config.performance.run_timeout
        queue: asyncio.Queue[Chunk] = asyncio.Queue()
        for chunk in chunks:
            queue.put_nowait(chunk)
        outcomes: dict[int, _ChunkOutcome] = {}

        async def worker() -> None:
            while True:
                try:
                    chunk = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if cancel.is_set():
                    outcomes[chunk.index] = _ChunkOutcome(gap=_gap(chunk, 0, GAP_CANCELLED))
                    continue
                outcomes[chunk.index] = await self._analyze_chunk(chunk, deadline, cancel)

        worker_count = min(self.admission.max_concurrent, len(chunks))
        start = time.perf_counter()
        tasks = [asyncio.create_task(worker()) for _ in range(worker_count)]
        try:
            await asyncio.gather(*tasks)
        except RateLimitExceeded:
            logger.error(
                "Analysis aborted: rate limit cannot be satisfied before the run deadline",
                extra={"chunk_count": len(chunks), "completed": len(outcomes)},
            )
            raise
        finally:
            # A failed worker must not leave its siblings running past this call.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        result = AnalysisResult(cancelled=cancel.is_set())
        for chunk in chunks:
            outcome = outcomes.get(chunk.index) or _ChunkOutcome(gap=_gap(chunk, 0, GAP_CANCELLED))
            result.findings.extend(outcome.findings)
            if outcome.gap is not None:
                result.coverage_gaps.append(outcome.gap)
        result.findings.sort(key=lambda f: (f.chunk_index, f.ordinal))

        logger.info(
            "Analysis completed",
            extra={
                "chunk_count": len(chunks),
                "raw_finding_count": len(result.findings),
                "coverage_gap_count": len(result.coverage_gaps),
                "latency_seconds": time.perf_counter() - start,
                "cancelled": result.cancelled,
            },
        )
        return result

    async def _call_provider(self, request: AnalysisRequest) -> str:
        try:
            return await self.provider.analyze(request)
        except AnalysisError:
            raise
        except Exception as e:
            logger.exception(
                "Provider raised an unexpected error",
                extra={"provider": self.provider.name, "chunk_index": request.chunk.index},
            )
            raise AnalysisError(f"{self.provider.name} failed: {type(e).__name__}: {e}", cause=e) from e

    async def _analyze_chunk(self, chunk: Chunk, deadline: float, cancel: asyncio.Event) -> _ChunkOutcome:
        request = AnalysisRequest(model=self.config.ai_model, chunk=chunk, checks=self.checks)
        max_attempts = self.config.max_retries + 1
        timeout = self.config.api_timeout_seconds
        attempts = 0
        last_error = ""

        while attempts < max_attempts:
            if attempts > 0:
                if cancel.is_set():
                    return _ChunkOutcome(gap=_gap(chunk, attempts, GAP_CANCELLED))
                await self._sleep(backoff_delay(attempts))
                if cancel.is_set():
                    return _ChunkOutcome(gap=_gap(chunk, attempts, GAP_CANCELLED))
            attempts += 1
            try:
                async with self.admission.admit(deadline):
                    text = await asyncio.wait_for(self._call_provider(request), timeout=timeout)
                return _ChunkOutcome(findings=parse_findings(text, chunk, self.checks))
            except asyncio.TimeoutError:
                last_error = f"timed out after {timeout:g}s"
                retryable = True
            except AnalysisError as e:
                last_error = e.message
                retryable = e.retryable

            logger.warning(
                "Chunk analysis attempt failed",
                extra={
                    "chunk_index": chunk.index,
                    "file": chunk.path,
                    "attempt": attempts,
                    "max_attempts": max_attempts,
                    "retryable": retryable,
                    "error": last_error,
                },
            )
            if not retryable:
                break

        logger.error(
            "Chunk analysis incomplete",
            extra={
                "chunk_index": chunk.index,
                "file": chunk.path,
                "start_line": chunk.start_line,
                "end_line": chunk.end_line,
                "attempts": attempts,
                "error": last_error,
            },
        )
        return _ChunkOutcome(gap=_gap(chunk, attempts, GAP_INCOMPLETE))
