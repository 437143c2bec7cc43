"""Wire one review: chunk, analyze, filter, apply the ledger, conclude, publish."""

import asyncio
import logging
from datetime import datetime

from securitybot.schemas.config import BotConfig
from securitybot.schemas.changeset import ChangeSet
from securitybot.schemas.findings import ReviewRun
from securitybot.services.chunker import DiffChunker
from securitybot.services.finding_filter import FindingFilter
from securitybot.services.ledger import FalsePositiveLedger
from securitybot.services.orchestrator import AnalysisOrchestrator
from securitybot.services.provider import AnalysisProvider
from securitybot.services.publisher import ReportPublisher
from securitybot.services.report import compute_conclusion

logger = logging.getLogger(__name__)


class ReviewPipeline:
    def __init__(
        self,
        config: BotConfig,
        provider: AnalysisProvider,
        ledger: FalsePositiveLedger,
        publisher: ReportPublisher,
        *,
        orchestrator: AnalysisOrchestrator | None = None,
    ) -> None:
        self.config = config
        self.chunker = DiffChunker(config.max_lines)
        self.orchestrator = orchestrator or AnalysisOrchestrator(provider, config)
        self.filter = FindingFilter(config)
        self.ledger = ledger
        self.publisher = publisher

    async def run(
        self,
        change_set: ChangeSet,
        *,
        cancel_event: asyncio.Event | None = None,
        now: datetime | None = None,
    ) -> ReviewRun:
        """
        Review a change set and publish the result.

        Raises RateLimitExceeded if analysis cannot finish before the run deadline and
        PublishError if the report cannot be delivered.
        """
        chunks = self.chunker.chunk(change_set)
        logger.info(
            "Review started",
            extra={
                "repository": change_set.repository,
                "change_set_id": change_set.change_set_id,
                "commit_sha": change_set.commit_sha,
                "file_count": len(change_set.files),
                "chunk_count": len(chunks),
            },
        )
        analysis = await self.orchestrator.run(chunks, cancel_event)
        findings = self.filter.apply(analysis.findings)
        await self.ledger.load()
        findings = self.ledger.apply(findings, now)

        review = ReviewRun(
            repository=change_set.repository,
            change_set_id=change_set.change_set_id,
            commit_sha=change_set.commit_sha,
            findings=tuple(findings),
            coverage_gaps=tuple(analysis.coverage_gaps),
            conclusion=compute_conclusion(findings, self.config),
        )
        log_review(review, self.config)
        await self.publisher.publish(review)
        return review


async def refresh_review(
    previous: ReviewRun,
    config: BotConfig,
    ledger: FalsePositiveLedger,
    publisher: ReportPublisher,
    *,
    now: datetime | None = None,
) -> ReviewRun:
    """Re-apply the (already loaded) ledger to a published run and publish the result. No analysis."""
    findings = ledger.apply(previous.findings, now)
    review = previous.model_copy(
        update={"findings": tuple(findings), "conclusion": compute_conclusion(findings, config)}
    )
    log_review(review, config)
    await publisher.publish(review)
    return review


def log_review(review: ReviewRun, config: BotConfig) -> None:
    logger.info(
        "Review concluded",
        extra={
            "change_set_id": review.change_set_id,
            "conclusion": review.conclusion.value,
            "active_count": len(review.active_findings),
            "suppressed_count": len(review.suppressed_findings),
            "coverage_gap_count": len(review.coverage_gaps),
        },
    )
    if not config.logging.include_vulnerability_details:
        return
    for finding in review.active_findings:
        logger.info(
            "Security finding",
            extra={
                "check_id": finding.check_id,
                "severity": finding.severity,
                "confidence": finding.confidence,
                "location": finding.location,
                "owasp": finding.owasp,
                "cwe": finding.cwe,
            },
        )
