"""Stage and publish review reports with bounded retries."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from securitybot.core.errors import GitHubApiError, PublishError
from securitybot.schemas.config import BotConfig
from securitybot.schemas.findings import ReviewRun
from securitybot.services.orchestrator import backoff_delay
from securitybot.services.report import RenderedReport, extract_report_data, render_report

logger = logging.getLogger(__name__)


class ReportSurface(ABC):
    """Where reports go. Publishing the same report twice must leave one copy, updated in place."""

    @abstractmethod
    async def publish(self, report: RenderedReport) -> None:
        """Create or update the report. Raise GitHubApiError or PublishError on transport failure."""

    @abstractmethod
    async def fetch_published(self) -> str | None:
        """Body of the currently published report, if any."""


class ReportPublisher:
    def __init__(
        self,
        surface: ReportSurface,
        config: BotConfig,
        *,
        max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.surface = surface
        self.config = config
        self.max_attempts = max_attempts
        self._sleep = sleep

    def stage(self, run: ReviewRun) -> RenderedReport:
        """Render and validate without touching the surface. Raises PublishError if the report is invalid."""
        return render_report(run, self.config)

    async def publish(self, run: ReviewRun) -> RenderedReport:
        """
        Publish the run. Retries transport failures; after the last attempt the findings are
        logged as JSON for manual recovery and PublishError is raised.
        """
        report = self.stage(run)
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.surface.publish(report)
            except (GitHubApiError, PublishError) as e:
                last_error = e
                logger.warning(
                    "Report publish attempt failed",
                    extra={
                        "change_set_id": run.change_set_id,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "error": str(e),
                    },
                )
                if attempt < self.max_attempts:
                    await self._sleep(backoff_delay(attempt))
                continue
            logger.info(
                "Report published",
                extra={
                    "change_set_id": run.change_set_id,
                    "commit_sha": run.commit_sha,
                    "conclusion": run.conclusion.value,
                    "attempt": attempt,
                },
            )
            return report

        logger.error(
            "Report could not be published; findings for manual recovery: %s",
            run.model_dump_json(),
            extra={"change_set_id": run.change_set_id, "commit_sha": run.commit_sha},
        )
        raise PublishError(
            f"Report for change set {run.change_set_id} was not published after {self.max_attempts} attempts.",
            cause=last_error,
        )

    async def last_published_run(self) -> ReviewRun | None:
        """The run embedded in the currently published report, used to re-publish after ledger changes."""
        body = await self.surface.fetch_published()
        if body is None:
            return None
        return extract_report_data(body)
