"""False-positive audit endpoint: stored marks for a pull request with their derived state."""

from collections.abc import Callable
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from securitybot.core.bot_config import get_bot_config
from securitybot.core.config import Settings, get_settings
from securitybot.core.database import SessionLocal
from securitybot.core.errors import ConfigError, GitHubApiError, SecurityBotError
from securitybot.schemas.config import BotConfig
from securitybot.schemas.ledger import FalsePositiveHistoryResponse, LedgerScope
from securitybot.services.github import GitHubClient
from securitybot.services.ledger import FalsePositiveLedger, PermissionResolver
from securitybot.services.mark_store import build_mark_store

router = APIRouter()


class _ReadOnlyPermissions(PermissionResolver):
    async def is_maintainer(self, identity: str) -> bool:
        return False


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def require_bot_config() -> BotConfig:
    try:
        return get_bot_config()
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=e.message) from e


@router.get("/{owner}/{repo}/{number}", response_model=FalsePositiveHistoryResponse)
async def get_false_positive_history(
    owner: str,
    repo: str,
    number: int,
    config: Annotated[BotConfig, Depends(require_bot_config)],
    settings: Annotated[Settings, Depends(get_settings)],
    session_factory: Annotated[Callable[[], Session], Depends(get_session_factory)],
) -> FalsePositiveHistoryResponse:
    """
    Audit view of false-positive marks on one pull request.

    Returns every mark (or only the latest per finding when track_history is off) with the
    state derived now: active, pending_approval, suppressed, or expired.
    """
    repository = f"{owner}/{repo}"
    scope = LedgerScope(repository=repository, change_set_id=str(number))
    try:
        client = None
        if config.false_positives.storage == "comments":
            client = GitHubClient.from_settings(settings, repository)
        store = build_mark_store(
            config.false_positives,
            scope,
            client=client,
            pr_number=number,
            session_factory=session_factory,
        )
        ledger = FalsePositiveLedger(store, config, _ReadOnlyPermissions())
        await ledger.load()
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    except GitHubApiError as e:
        status = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status, detail=e.message) from e
    except SecurityBotError as e:
        raise HTTPException(status_code=502, detail=e.message) from e

    return FalsePositiveHistoryResponse(
        repository=repository,
        change_set_id=str(number),
        track_history=config.false_positives.track_history,
        entries=ledger.history(),
    )
