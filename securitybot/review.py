"""
CLI entrypoint for the security review. Run as a CI step on pull_request and issue_comment events:

  python -m securitybot.review

Exit codes: 0 review passed (or nothing to do), 1 review failed, 2 configuration or fatal error.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from securitybot.core.bot_config import load_bot_config
from securitybot.core.config import Settings, get_settings
from securitybot.core.errors import ConfigError, FalsePositiveCommandError, SecurityBotError
from securitybot.schemas.config import BotConfig, LoggingConfig
from securitybot.schemas.findings import Conclusion, ReviewRun
from securitybot.schemas.ledger import CommandResult, LedgerScope
from securitybot.services.github import (
    GitHubClient,
    GitHubPermissionResolver,
    GitHubReportSurface,
    fetch_change_set,
)
from securitybot.services.ledger import FalsePositiveLedger
from securitybot.services.mark_store import build_mark_store
from securitybot.services.pipeline import ReviewPipeline, refresh_review
from securitybot.services.provider import AnalysisProvider, build_provider
from securitybot.services.publisher import ReportPublisher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_ERROR = 2

PULL_REQUEST_EVENTS = ("pull_request", "pull_request_target")
REVIEW_ACTIONS = ("opened", "synchronize", "reopened", "ready_for_review")


def configure_logging(config: LoggingConfig) -> None:
    """Apply the bot config's logging section: level, plus a file handler when a file is set."""
    root = logging.getLogger()
    root.setLevel(config.python_level)
    if config.file:
        handler = logging.FileHandler(config.file, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s", "%Y-%m-%dT%H:%M:%SZ")
        )
        root.addHandler(handler)
    if not config.include_api_calls:
        # Transport-level request logs are only wanted alongside provider request logging.
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _ledger_and_publisher(
    client: GitHubClient,
    config: BotConfig,
    settings: Settings,
    number: int,
) -> tuple[FalsePositiveLedger, ReportPublisher]:
    scope = LedgerScope(repository=client.repository, change_set_id=str(number))
    store = build_mark_store(config.false_positives, scope, client=client, pr_number=number)
    ledger = FalsePositiveLedger(store, config, GitHubPermissionResolver(client))
    publisher = ReportPublisher(
        GitHubReportSurface(client, number, settings.CHECK_RUN_NAME),
        config,
        max_attempts=settings.PUBLISH_MAX_ATTEMPTS,
    )
    return ledger, publisher


def _install_cancel_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread; runs without cancellation.
            return


async def review_pull_request(
    client: GitHubClient,
    config: BotConfig,
    settings: Settings,
    number: int,
    *,
    provider: AnalysisProvider | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ReviewRun:
    """Analyze the pull request at its head commit and publish the report."""
    change_set = await fetch_change_set(client, number)
    ledger, publisher = _ledger_and_publisher(client, config, settings, number)
    provider = provider or build_provider(
        config.ai_model,
        settings,
        config.performance.request_timeout_seconds,
        log_requests=config.logging.include_api_calls,
    )
    pipeline = ReviewPipeline(config, provider, ledger, publisher)
    return await pipeline.run(change_set, cancel_event=cancel_event)


async def handle_comment(
    client: GitHubClient,
    config: BotConfig,
    settings: Settings,
    payload: dict[str, Any],
) -> CommandResult | None:
    """
    Apply a false-positive command from a pull-request comment and reply to its author.

    Command errors are replied to the author rather than raised. After a successful command the
    last published report is re-published with the updated ledger; nothing is re-analyzed.
    """
    comment = payload.get("comment") or {}
    user = comment.get("user") or {}
    if user.get("type") == "Bot":
        return None
    author = user.get("login") or ""
    number = int((payload.get("issue") or {})["number"])
    body = comment.get("body") or ""

    ledger, publisher = _ledger_and_publisher(client, config, settings, number)
    await ledger.load()
    previous = await publisher.last_published_run()
    findings = previous.findings if previous is not None else ()

    try:
        result = await ledger.handle_command(body, author, findings)
    except FalsePositiveCommandError as e:
        logger.info(
            "False-positive command rejected",
            extra={"pr_number": number, "requester": author, "error": e.message, "retryable": e.retryable},
        )
        await client.create_issue_comment(number, f"@{author} {e.message}")
        return None
    if result is None:
        return None

    await client.create_issue_comment(number, f"@{author} {result.message}")
    if previous is not None:
        await refresh_review(previous, config, ledger, publisher)
    return result


async def dispatch_event(
    event_name: str | None,
    payload: dict[str, Any],
    config: BotConfig,
    settings: Settings,
    *,
    client: GitHubClient | None = None,
    provider: AnalysisProvider | None = None,
    cancel_event: asyncio.Event | None = None,
) -> int:
    """Route one GitHub event to its handler. Returns the process exit code."""
    repository = (payload.get("repository") or {}).get("full_name") or settings.GITHUB_REPOSITORY
    client = client or GitHubClient.from_settings(settings, repository)

    if event_name in PULL_REQUEST_EVENTS or (event_name is None and settings.PR_NUMBER):
        pr = payload.get("pull_request") or {}
        action = payload.get("action")
        if action is not None and action not in REVIEW_ACTIONS:
            logger.info("Ignoring pull request action", extra={"action": action})
            return EXIT_PASS
        number = pr.get("number") or settings.PR_NUMBER
        if not number:
            raise ConfigError("No pull request number in the event payload or PR_NUMBER.")
        review = await review_pull_request(
            client, config, settings, int(number), provider=provider, cancel_event=cancel_event
        )
        return EXIT_FAIL if review.conclusion is Conclusion.FAIL else EXIT_PASS

    if event_name == "issue_comment":
        issue = payload.get("issue") or {}
        if not issue.get("pull_request") or payload.get("action") != "created":
            return EXIT_PASS
        await handle_comment(client, config, settings, payload)
        return EXIT_PASS

    logger.info("Ignoring event", extra={"event_name": event_name})
    return EXIT_PASS


def _read_event(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read event payload {path}: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Event payload {path} is not a JSON object.")
    return data


async def _run(event_name: str | None, payload: dict[str, Any], config: BotConfig, settings: Settings) -> int:
    cancel = asyncio.Event()
    _install_cancel_handlers(cancel)
    return await dispatch_event(event_name, payload, config, settings, cancel_event=cancel)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run the security review for a GitHub event.")
    parser.add_argument("--config", help="Bot configuration YAML (default: CONFIG_PATH)")
    parser.add_argument("--event-name", help="GitHub event name (default: GITHUB_EVENT_NAME)")
    parser.add_argument("--event-path", help="GitHub event payload JSON (default: GITHUB_EVENT_PATH)")
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
        config = load_bot_config(args.config or settings.CONFIG_PATH)
        configure_logging(config.logging)
        payload = _read_event(args.event_path or settings.GITHUB_EVENT_PATH)
    except ConfigError as e:
        logger.error("Configuration error: %s", e.message)
        return EXIT_ERROR

    event_name = args.event_name or settings.GITHUB_EVENT_NAME
    try:
        return asyncio.run(_run(event_name, payload, config, settings))
    except ConfigError as e:
        logger.error("Configuration error: %s", e.message)
        return EXIT_ERROR
    except SecurityBotError as e:
        logger.exception("Security review failed: %s", e.message)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
