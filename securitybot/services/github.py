"""GitHub REST client and the GitHub-backed seams: report surface, permissions, and change-set loading."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from securitybot.core.errors import ConfigError, GitHubApiError
from securitybot.schemas.changeset import ChangedFile, ChangeSet
from securitybot.schemas.findings import Conclusion
from securitybot.services.chunker import parse_unified_patch
from securitybot.services.ledger import PermissionResolver
from securitybot.services.publisher import ReportSurface
from securitybot.services.report import REPORT_MARKER, RenderedReport

if TYPE_CHECKING:
    from securitybot.core.config import Settings

logger = logging.getLogger(__name__)

PER_PAGE = 100
# Repository roles allowed to approve or reject false-positive marks.
MAINTAINER_PERMISSIONS = frozenset({"admin", "maintain", "write"})
# GitHub caps check-run output text at 65535 characters.
_CHECK_TEXT_LIMIT = 65_535


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
        detail = body.get("message") if isinstance(body, dict) else None
    except ValueError:
        detail = None
    return detail or (resp.text[:500] if resp.text else "Unknown error")


class GitHubClient:
    """Minimal async client for the endpoints the bot needs. One repository per client."""

    def __init__(self, token: str, repository: str, api_url: str, timeout: float) -> None:
        if not token:
            raise ConfigError("GITHUB_TOKEN must be set to talk to GitHub.")
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @classmethod
    def from_settings(cls, settings: Settings, repository: str | None = None) -> GitHubClient:
        repo = repository or settings.GITHUB_REPOSITORY
        if not repo:
            raise ConfigError("GITHUB_REPOSITORY must be set (owner/name).")
        token = settings.GITHUB_TOKEN.get_secret_value() if settings.GITHUB_TOKEN else ""
        return cls(token, repo, settings.GITHUB_API_URL, settings.GITHUB_REQUEST_TIMEOUT_SEC)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        url = f"{self.api_url}{path}"
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, params=params, json=json, headers=self._headers)
        except httpx.ConnectError as e:
            raise GitHubApiError("GitHub API is unreachable. Check GITHUB_API_URL.", cause=e) from e
        except httpx.TimeoutException as e:
            raise GitHubApiError("GitHub API request timed out.", cause=e) from e
        except httpx.HTTPError as e:
            raise GitHubApiError("GitHub API request failed.", cause=e) from e

        logger.debug(
            "GitHub API call",
            extra={
                "method": method,
                "path": path,
                "status": resp.status_code,
                "latency_seconds": time.perf_counter() - start,
            },
        )
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code == 401:
            raise GitHubApiError("GitHub authentication failed (invalid GITHUB_TOKEN).", 401)
        if resp.status_code == 403:
            raise GitHubApiError(f"GitHub denied the request: {_error_detail(resp)}", 403)
        if resp.status_code == 404:
            raise GitHubApiError(f"GitHub resource not found: {path}", 404)
        if resp.status_code >= 400:
            raise GitHubApiError(f"GitHub returned {resp.status_code}: {_error_detail(resp)}", resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _paginate(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._request("GET", path, params={**(params or {}), "per_page": PER_PAGE, "page": page})
            if not isinstance(batch, list):
                raise GitHubApiError(f"GitHub returned an unexpected payload for {path}.")
            items.extend(batch)
            if len(batch) < PER_PAGE:
                return items
            page += 1

    async def get_pull_request(self, number: int) -> dict[str, Any]:
        return await self._request("GET", f"/repos/{self.repository}/pulls/{number}")

    async def list_pr_files(self, number: int) -> list[dict[str, Any]]:
        return await self._paginate(f"/repos/{self.repository}/pulls/{number}/files")

    async def list_issue_comments(self, number: int) -> list[dict[str, Any]]:
        return await self._paginate(f"/repos/{self.repository}/issues/{number}/comments")

    async def create_issue_comment(self, number: int, body: str) -> dict[str, Any]:
        return await self._request("POST", f"/repos/{self.repository}/issues/{number}/comments", json={"body": body})

    async def update_issue_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"/repos/{self.repository}/issues/comments/{comment_id}", json={"body": body}
        )

    async def delete_issue_comment(self, comment_id: int) -> None:
        await self._request("DELETE", f"/repos/{self.repository}/issues/comments/{comment_id}")

    async def get_collaborator_permission(self, username: str) -> str:
        """Effective permission ('admin', 'maintain', 'write', 'triage', 'read' or 'none')."""
        data = await self._request(
            "GET", f"/repos/{self.repository}/collaborators/{username}/permission", allow_404=True
        )
        if not data:
            return "none"
        role = data.get("role_name")
        if role in MAINTAINER_PERMISSIONS:
            return role
        return data.get("permission") or "none"

    async def find_check_run(self, head_sha: str, name: str) -> dict[str, Any] | None:
        data = await self._request(
            "GET",
            f"/repos/{self.repository}/commits/{head_sha}/check-runs",
            params={"check_name": name, "per_page": PER_PAGE},
        )
        for run in (data or {}).get("check_runs", []):
            if run.get("name") == name and run.get("head_sha", head_sha) == head_sha:
                return run
        return None

    async def create_check_run(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/repos/{self.repository}/check-runs", json=payload)

    async def update_check_run(self, check_run_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/repos/{self.repository}/check-runs/{check_run_id}", json=payload)


async def find_marked_comments(client: GitHubClient, number: int, marker: str) -> list[dict[str, Any]]:
    """Bot-authored comments on the pull request whose body contains marker, oldest first."""
    found = []
    for comment in await client.list_issue_comments(number):
        # Users can paste a marker too; only comments written by a bot account count.
        if (comment.get("user") or {}).get("type") != "Bot":
            continue
        if marker in (comment.get("body") or ""):
            found.append(comment)
    return found


async def find_marked_comment(client: GitHubClient, number: int, marker: str) -> dict[str, Any] | None:
    """Oldest bot-authored comment on the pull request whose body contains marker."""
    found = await find_marked_comments(client, number, marker)
    return found[0] if found else None


async def fetch_change_set(client: GitHubClient, number: int) -> ChangeSet:
    """Build the change set for a pull request from the patches of its changed files."""
    pr = await client.get_pull_request(number)
    head_sha = (pr.get("head") or {}).get("sha")
    if not head_sha:
        raise GitHubApiError(f"Pull request {number} has no head commit.")
    files: list[ChangedFile] = []
    skipped = 0
    for entry in await client.list_pr_files(number):
        patch = entry.get("patch")
        if entry.get("status") == "removed" or not patch:
            # Deleted, binary, or too-large files have nothing to review on the new side.
            skipped += 1
            continue
        hunks = parse_unified_patch(patch)
        if hunks:
            files.append(ChangedFile(path=entry["filename"], hunks=tuple(hunks)))
    logger.info(
        "Change set loaded",
        extra={"pr_number": number, "head_sha": head_sha, "file_count": len(files), "skipped_files": skipped},
    )
    return ChangeSet(
        repository=client.repository,
        change_set_id=str(number),
        commit_sha=head_sha,
        files=tuple(files),
    )


class GitHubPermissionResolver(PermissionResolver):
    """Maintainer means admin, maintain, or write permission on the repository."""

    def __init__(self, client: GitHubClient) -> None:
        self.client = client
        self._cache: dict[str, bool] = {}

    async def is_maintainer(self, identity: str) -> bool:
        if identity not in self._cache:
            permission = await self.client.get_collaborator_permission(identity)
            self._cache[identity] = permission in MAINTAINER_PERMISSIONS
        return self._cache[identity]


class GitHubReportSurface(ReportSurface):
    """One report comment per pull request and one check run per head commit, both updated in place."""

    def __init__(self, client: GitHubClient, pr_number: int, check_run_name: str) -> None:
        self.client = client
        self.pr_number = pr_number
        self.check_run_name = check_run_name

    async def publish(self, report: RenderedReport) -> None:
        existing = await find_marked_comment(self.client, self.pr_number, REPORT_MARKER)
        if existing is None:
            await self.client.create_issue_comment(self.pr_number, report.body)
        elif existing.get("body") != report.body:
            await self.client.update_issue_comment(existing["id"], report.body)

        payload = {
            "name": self.check_run_name,
            "head_sha": report.commit_sha,
            "status": "completed",
            "conclusion": "success" if report.conclusion is Conclusion.PASS else "failure",
            "output": {
                "title": report.title,
                "summary": report.summary,
                "text": report.body[:_CHECK_TEXT_LIMIT],
            },
        }
        check_run = await self.client.find_check_run(report.commit_sha, self.check_run_name)
        if check_run is None:
            await self.client.create_check_run(payload)
        else:
            await self.client.update_check_run(check_run["id"], payload)

    async def fetch_published(self) -> str | None:
        existing = await find_marked_comment(self.client, self.pr_number, REPORT_MARKER)
        return existing.get("body") if existing else None

