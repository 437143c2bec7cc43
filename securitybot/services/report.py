"""Render a ReviewRun as a markdown report with embedded machine-readable data.

Rendering is a pure function of the run and the configuration; it carries no timestamps, so the
same run always renders to the same bytes and re-publishing it is a no-op for readers.
"""

import json
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, ValidationError

from securitybot.core.errors import PublishError
from securitybot.schemas.config import BotConfig
from securitybot.schemas.findings import Conclusion, CoverageGap, Finding, ReviewRun
from securitybot.services.commands import command_example

REPORT_MARKER = "<!-- securitybot:report -->"
_FINDING_MARKER = "<!-- securitybot:finding {token} -->"
_DATA_PREFIX = "<!-- securitybot:report-data "
_DATA_SUFFIX = " -->"

# GitHub rejects comment bodies and check-run text longer than this.
MAX_BODY_CHARS = 65_536


class RenderedReport(BaseModel):
    """A staged report: everything the surface needs, computed before any transport call."""

    model_config = ConfigDict(frozen=True)

    change_set_id: str
    commit_sha: str
    conclusion: Conclusion
    title: str
    summary: str
    body: str


def compute_conclusion(findings: Iterable[Finding], config: BotConfig) -> Conclusion:
    """Fail if any Active finding of an enabled severity is at or above that level's threshold."""
    for finding in findings:
        if not finding.is_active:
            continue
        level = config.severity_levels.get(finding.severity)
        if level is not None and level.enabled and finding.confidence >= level.threshold:
            return Conclusion.FAIL
    return Conclusion.PASS


def _summary_line(run: ReviewRun, config: BotConfig) -> str:
    active = run.active_findings
    counts: list[str] = []
    for name in config.severity_levels:
        n = sum(1 for f in active if f.severity == name)
        if n:
            counts.append(f"{n} {name}")
    text = f"{len(active)} active finding{'s' if len(active) != 1 else ''}"
    if counts:
        text += f" ({', '.join(counts)})"
    text += f", {len(run.suppressed_findings)} suppressed"
    if run.coverage_gaps:
        text += f", {len(run.coverage_gaps)} coverage gap{'s' if len(run.coverage_gaps) != 1 else ''}"
    return text + "."


def _inert(text: str) -> str:
    """Untrusted text with HTML comment delimiters defused, so it cannot open or close a marker."""
    return text.replace("<!--", "&lt;!--").replace("-->", "--&gt;")


def _render_finding(finding: Finding, *, compact: bool) -> list[str]:
    out = [f"#### {finding.title}: `{finding.location}`"]
    meta = f"- Severity: **{finding.severity}**, confidence {finding.confidence:.0%}"
    refs = ", ".join(r for r in (finding.owasp, finding.cwe) if r)
    if refs:
        meta += f", {refs}"
    out.append(meta)
    suppression = finding.suppression
    if suppression is not None and finding.suppression_expired:
        out.append(
            f"- False-positive mark by @{suppression.requester} expired on {suppression.expires_at.date().isoformat()}"
        )
    elif suppression is not None and suppression.approval_state == "pending_approval":
        out.append(f"- False-positive mark by @{suppression.requester} is pending maintainer approval")
    if not compact:
        out.append("")
        out.append(_inert(finding.description))
        if finding.suggested_fix:
            out.append("")
            out.append(f"**Suggested fix:** {_inert(finding.suggested_fix)}")
    out.append(_FINDING_MARKER.format(token=finding.key.token))
    out.append("")
    return out


def _render_suppressed(findings: list[Finding]) -> list[str]:
    out = [f"### Suppressed ({len(findings)})", ""]
    for f in findings:
        line = f"- {f.title} `{f.location}` ({f.severity})"
        s = f.suppression
        if s is not None:
            line += f": marked by @{s.requester}"
            if s.decided_by and s.decided_by != s.requester:
                line += f", approved by @{s.decided_by}"
            line += f", until {s.expires_at.date().isoformat()}"
            if s.reason:
                line += f". Reason: {_inert(' '.join(s.reason.split()))}"
        out.append(line)
        out.append(_FINDING_MARKER.format(token=f.key.token))
    out.append("")
    return out


def _render_gaps(gaps: tuple[CoverageGap, ...]) -> list[str]:
    out = [
        f"### Coverage gaps ({len(gaps)})",
        "",
        "These ranges were not analyzed and may contain issues.",
        "",
        "| File | Lines | Attempts | Reason |",
        "|------|-------|----------|--------|",
    ]
    for g in gaps:
        out.append(f"| `{g.file}` | {g.start_line}-{g.end_line} | {g.attempts} | {g.reason} |")
    out.append("")
    return out


def _embed_data(run: ReviewRun) -> str:
    # Angle brackets are escaped so the JSON can neither close the comment nor contain a prefix.
    payload = run.model_dump_json().replace("<", "\\u003c").replace(">", "\\u003e")
    return f"{_DATA_PREFIX}{payload}{_DATA_SUFFIX}"


def _render_body(run: ReviewRun, config: BotConfig, title: str, summary: str, *, compact: bool) -> str:
    lines = [REPORT_MARKER, f"## {title}", "", summary, ""]
    active = run.active_findings
    for name in config.severity_levels:
        group = [f for f in active if f.severity == name]
        if not group:
            continue
        lines.append(f"### {name.capitalize()} ({len(group)})")
        lines.append("")
        for finding in group:
            lines.extend(_render_finding(finding, compact=compact))
    if run.suppressed_findings:
        lines.extend(_render_suppressed(run.suppressed_findings))
    if run.coverage_gaps:
        lines.extend(_render_gaps(run.coverage_gaps))
    if config.false_positives.enabled and active:
        example = command_example(config.false_positives.command)
        lines.append(
            f"To report a false positive, comment `{example} <CheckType> (file:line) reason`."
        )
        lines.append("")
    lines.append(f"_Commit {run.commit_sha}_")
    lines.append(_embed_data(run))
    return "\n".join(lines) + "\n"


def render_report(run: ReviewRun, config: BotConfig) -> RenderedReport:
    """Render and validate. Falls back to a compact body when the full one is too large."""
    verdict = "Passed" if run.conclusion is Conclusion.PASS else "Failed"
    title = f"Security Review {verdict}"
    summary = _summary_line(run, config)
    body = _render_body(run, config, title, summary, compact=False)
    if len(body) > MAX_BODY_CHARS:
        body = _render_body(run, config, title, summary, compact=True)
    if len(body) > MAX_BODY_CHARS:
        raise PublishError(
            f"Rendered report is {len(body)} characters, over the {MAX_BODY_CHARS} character limit."
        )
    return RenderedReport(
        change_set_id=run.change_set_id,
        commit_sha=run.commit_sha,
        conclusion=run.conclusion,
        title=title,
        summary=summary,
        body=body,
    )


def extract_report_data(body: str) -> ReviewRun | None:
    """
    Recover the ReviewRun embedded in a published report body, or None if absent or unreadable.

    The data block is always the last line the renderer writes, so only the final occurrence of
    the prefix is read; anything earlier in the body is finding text.
    """
    start = body.rfind(_DATA_PREFIX)
    if start == -1:
        return None
    start += len(_DATA_PREFIX)
    end = body.find(_DATA_SUFFIX, start)
    if end == -1:
        return None
    try:
        return ReviewRun.model_validate(json.loads(body[start:end]))
    except (json.JSONDecodeError, ValidationError):
        return None
