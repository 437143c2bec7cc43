"""Turn validated provider findings into canonical, deduplicated, severity-ranked findings."""

import logging
from collections.abc import Iterable

from securitybot.schemas.config import BotConfig, CheckDefinition
from securitybot.schemas.findings import Finding, FindingKey, RawFinding

logger = logging.getLogger(__name__)


class FindingFilter:
    """Applies thresholds and severity gates from one BotConfig. Pure; safe to reuse across runs."""

    def __init__(self, config: BotConfig) -> None:
        self.config = config

    def effective_threshold(self, check: CheckDefinition) -> float:
        severity = self.config.severity_levels[check.severity]
        return max(check.confidence_threshold, severity.threshold, self.config.confidence_threshold)

    def _admit(self, raw: RawFinding) -> CheckDefinition | None:
        check = self.config.security_checks.get(raw.check_id)
        if check is None or not check.enabled:
            return None
        severity = self.config.severity_levels.get(check.severity)
        if severity is None or not severity.enabled:
            return None
        if raw.confidence < self.effective_threshold(check):
            return None
        return check

    def apply(self, raw_findings: Iterable[RawFinding]) -> list[Finding]:
        """
        Filter, deduplicate by key, and order.

        For duplicate keys the highest confidence wins; ties keep the finding from the earliest
        submitted chunk, then the earliest position in that chunk's response.
        """
        best: dict[str, tuple[RawFinding, CheckDefinition]] = {}
        dropped = 0
        total = 0
        for raw in raw_findings:
            total += 1
            check = self._admit(raw)
            if check is None:
                dropped += 1
                continue
            token = _key(raw).token
            current = best.get(token)
            if current is None or _beats(raw, current[0]):
                best[token] = (raw, check)

        findings = [_to_finding(raw, check) for raw, check in best.values()]
        findings.sort(
            key=lambda f: (self.config.severity_rank(f.severity), f.file, f.line, f.check_id)
        )
        logger.info(
            "Findings filtered",
            extra={
                "raw_count": total,
                "dropped_count": dropped,
                "duplicate_count": total - dropped - len(findings),
                "finding_count": len(findings),
            },
        )
        return findings


def _key(raw: RawFinding) -> FindingKey:
    return FindingKey(
        check_id=raw.check_id,
        file=raw.file,
        line=raw.line,
        content_hash=raw.content_hash,
    )


def _beats(candidate: RawFinding, incumbent: RawFinding) -> bool:
    if candidate.confidence != incumbent.confidence:
        return candidate.confidence > incumbent.confidence
    return (candidate.chunk_index, candidate.ordinal) < (incumbent.chunk_index, incumbent.ordinal)


def _to_finding(raw: RawFinding, check: CheckDefinition) -> Finding:
    return Finding(
        key=_key(raw),
        title=check.name,
        severity=check.severity,
        confidence=raw.confidence,
        owasp=check.owasp,
        cwe=check.cwe,
        description=raw.description,
        suggested_fix=raw.suggested_fix,
    )
