"""GitHub webhook endpoint: verify the signature, then handle the event in the background."""

import hashlib
import hmac
import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status

from securitybot.core.bot_config import get_bot_config
from securitybot.core.config import Settings, get_settings
from securitybot.core.errors import ConfigError, SecurityBotError
from securitybot.review import dispatch_event

logger = logging.getLogger(__name__)
router = APIRouter()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an X-Hub-Signature-256 header ('sha256=<hex>') against the raw request body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.removeprefix("sha256="))


async def process_event(event_name: str, payload: dict[str, Any], settings: Settings) -> None:
    """Background task: same handlers as the CLI. Failures are logged; the webhook already returned."""
    try:
        exit_code = await dispatch_event(event_name, payload, get_bot_config(), settings)
    except SecurityBotError as e:
        logger.exception("Webhook event handling failed: %s", e.message, extra={"event_name": event_name})
        return
    logger.info("Webhook event handled", extra={"event_name": event_name, "exit_code": exit_code})


@router.post("/github", status_code=status.HTTP_202_ACCEPTED)
async def post_github_event(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Annotated[Settings, Depends(get_settings)],
    x_github_event: Annotated[str | None, Header()] = None,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
) -> dict[str, str]:
    """
    Receive a GitHub webhook. Requires GITHUB_WEBHOOK_SECRET; unsigned or mis-signed requests get 401.

    pull_request events start a review and issue_comment events apply false-positive commands,
    both after the response is sent.
    """
    if settings.GITHUB_WEBHOOK_SECRET is None:
        raise HTTPException(status_code=503, detail="GITHUB_WEBHOOK_SECRET is not configured.")
    body = await request.body()
    if not verify_signature(settings.GITHUB_WEBHOOK_SECRET.get_secret_value(), body, x_hub_signature_256):
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header.")
    if x_github_event == "ping":
        return {"status": "pong"}

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON.") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    try:
        get_bot_config()
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=e.message) from e

    background_tasks.add_task(process_event, x_github_event, payload, settings)
    return {"status": "accepted", "event": x_github_event}
