"""Transfer of a generated bundle into a Camunda 8 Web Modeler project.

Layout created in the target project::

    <service name> <service key>/
      <service name> <YYYYMMDD-HHMM>/
        High Level/   main BPMN + forms
        Low Level/    subprocess BPMNs

Uploads are strictly sequential with a pacing delay to stay under the
Modeler API rate limit. Each file gets a bounded number of attempts with a
linear backoff; a file that exhausts them is reported as failed and the
batch continues.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from manual_service.config import settings as default_settings
from manual_service.core.metrics import (
    oauth_token_refreshes_total,
    transfer_file_uploads_total,
    transfer_runs_total,
    transfer_upload_retries_total,
)
from manual_service.exceptions import ApiError, AuthenticationError, InvalidBundle, UploadError
from manual_service.services.bundle_builder import MAIN_FILENAME, Bundle

logger = logging.getLogger(__name__)

HIGH_LEVEL_FOLDER = "High Level"
LOW_LEVEL_FOLDER = "Low Level"


# ---------------------------------------------------------------------------
# OAuth token cache
# ---------------------------------------------------------------------------


class TokenCache:
    """Bearer token plus expiry, shared by every request of one client.

    Concurrent callers that find the token stale wait on one refresh instead
    of each requesting their own.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, margin_seconds: int = 60):
        self._clock = clock
        self._margin = margin_seconds
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self, fetch: Callable[[], Awaitable[tuple[str, int]]]) -> str:
        if self.valid:
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if not self.valid:
                token, expires_in = await fetch()
                self._token = token
                self._expires_at = self._clock() + max(expires_in - self._margin, 0)
        return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


# ---------------------------------------------------------------------------
# Web Modeler REST client
# ---------------------------------------------------------------------------


class CamundaModelerClient:
    """Thin async wrapper around the Web Modeler REST API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        oauth_url: str,
        audience: str,
        api_url: str,
        ui_url: str = "https://modeler.camunda.io",
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.oauth_url = oauth_url
        self.audience = audience
        self.api_url = api_url.rstrip("/")
        self.ui_url = ui_url.rstrip("/")
        self.token_cache = token_cache or TokenCache()
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings=default_settings,
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> CamundaModelerClient:
        return cls(
            client_id=settings.CAMUNDA_CONSOLE_CLIENT_ID,
            client_secret=settings.CAMUNDA_CONSOLE_CLIENT_SECRET,
            oauth_url=settings.CAMUNDA_OAUTH_URL,
            audience=settings.CAMUNDA_CONSOLE_OAUTH_AUDIENCE,
            api_url=settings.CAMUNDA_MODELER_API_URL,
            ui_url=settings.CAMUNDA_MODELER_UI_URL,
            token_cache=token_cache
            or TokenCache(margin_seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS),
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # -- auth ---------------------------------------------------------------

    async def authenticate(self) -> str:
        return await self.token_cache.get(self._request_token)

    async def _request_token(self) -> tuple[str, int]:
        client = await self._get_client()
        payload = {
            "grant_type": "client_credentials",
            "audience": self.audience,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            resp = await client.post(self.oauth_url, json=payload)
        except httpx.HTTPError as exc:
            oauth_token_refreshes_total.labels(status="error").inc()
            raise AuthenticationError(f"Authentication request failed: {exc}") from exc

        if not resp.is_success:
            oauth_token_refreshes_total.labels(status="rejected").inc()
            raise AuthenticationError(
                f"Authentication failed: {resp.status_code} {resp.text[:200]}"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            oauth_token_refreshes_total.labels(status="rejected").inc()
            raise AuthenticationError("Authentication response is not JSON") from exc
        token = data.get("access_token")
        if not token:
            oauth_token_refreshes_total.labels(status="rejected").inc()
            raise AuthenticationError("Authentication response carried no access_token")
        oauth_token_refreshes_total.labels(status="ok").inc()
        logger.info("Obtained Web Modeler access token")
        return token, int(data.get("expires_in") or 3600)

    async def _request(self, method: str, path: str, body: dict[str, Any]) -> Any:
        token = await self.authenticate()
        client = await self._get_client()
        try:
            resp = await client.request(
                method,
                f"{self.api_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 401:
            self.token_cache.invalidate()
        if not resp.is_success:
            raise ApiError(
                f"API request failed: {resp.status_code} {resp.text[:200]}",
                status=resp.status_code,
                body=resp.text,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(
                f"{method} {path} returned a non-JSON body ({resp.status_code})",
                status=resp.status_code,
                body=resp.text,
            ) from exc

    # -- resources ----------------------------------------------------------

    async def search_projects(self, name: str) -> list[dict[str, Any]]:
        data = await self._request("POST", "/projects/search", {"filter": {"name": name}})
        if isinstance(data, list):
            return data
        return data.get("items", [])

    async def create_project(self, name: str) -> dict[str, Any]:
        return await self._request("POST", "/projects", {"name": name})

    async def create_folder(
        self, project_id: str, name: str, parent_id: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"projectId": project_id, "name": name}
        if parent_id:
            body["parentId"] = parent_id
        return await self._request("POST", "/folders", body)

    async def upload_file(
        self,
        project_id: str,
        name: str,
        content: str,
        kind: str,
        parent_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "projectId": project_id,
            "name": name,
            "content": content,
            "fileType": kind,
        }
        if parent_id:
            body["folderId"] = parent_id
        try:
            return await self._request("POST", "/files", body)
        except ApiError as exc:
            raise UploadError(
                f"Failed to upload {name}: {exc.message}", status=exc.status, body=exc.body
            ) from exc

    def project_url(self, project_id: str) -> str:
        return f"{self.ui_url}/projects/{project_id}"

    def folder_url(self, project_id: str, folder_id: str) -> str:
        return f"{self.ui_url}/projects/{project_id}/folder/{folder_id}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class UploadItem:
    name: str
    content: str
    kind: str  # bpmn | form
    parent_id: str | None = None


@dataclass
class UploadSuccess:
    name: str
    remote_id: str


@dataclass
class UploadFailure:
    name: str
    error: str
    attempts: int


@dataclass
class UploadReport:
    succeeded: list[UploadSuccess] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)


@dataclass
class TransferResult:
    project_id: str
    project_name: str
    project_url: str
    main_folder_id: str
    main_folder_name: str
    export_folder_id: str
    export_folder_name: str
    export_folder_url: str
    high_level_folder_id: str
    low_level_folder_id: str
    succeeded: list[UploadSuccess] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def status(self) -> str:
        return "success" if self.success else "partial_success"

    @property
    def message(self) -> str:
        location = f"{self.project_name}/{self.main_folder_name}/{self.export_folder_name}"
        if self.success:
            return f"Successfully transferred {len(self.succeeded)} files to {location}"
        return (
            f"Transferred {len(self.succeeded)} files to {location}, "
            f"{len(self.failed)} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "projectId": self.project_id,
            "projectName": self.project_name,
            "projectUrl": self.project_url,
            "mainFolderId": self.main_folder_id,
            "mainFolderName": self.main_folder_name,
            "exportFolderId": self.export_folder_id,
            "exportFolderName": self.export_folder_name,
            "exportFolderUrl": self.export_folder_url,
            "highLevelFolderId": self.high_level_folder_id,
            "lowLevelFolderId": self.low_level_folder_id,
            "filesUploaded": len(self.succeeded),
            "filesFailed": len(self.failed),
            "uploadDetails": {
                "successful": [{"name": s.name, "fileId": s.remote_id} for s in self.succeeded],
                "failed": [
                    {"name": f.name, "error": f.error, "attempts": f.attempts} for f in self.failed
                ],
            },
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TransferEngine:
    def __init__(
        self,
        client: CamundaModelerClient,
        project_name: str | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        pacing_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.project_name = project_name or default_settings.CAMUNDA_TARGET_PROJECT_NAME
        self.max_attempts = max_attempts or default_settings.TRANSFER_MAX_ATTEMPTS
        self.backoff_seconds = (
            default_settings.TRANSFER_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.pacing_seconds = (
            default_settings.TRANSFER_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        )
        self._sleep = sleep
        self._now = now

    async def authenticate(self) -> str:
        """Obtain a token, retrying within the same budget as uploads."""
        last_error: AuthenticationError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.client.authenticate()
            except AuthenticationError as exc:
                last_error = exc
                logger.warning(
                    "Authentication attempt %d/%d failed: %s", attempt, self.max_attempts, exc
                )
                if attempt < self.max_attempts:
                    await self._sleep(attempt * self.backoff_seconds)
        raise last_error or AuthenticationError("Authentication failed")

    async def resolve_or_create_project(self, name: str) -> dict[str, Any]:
        """First project with exactly ``name``, created when none exists.

        Two concurrent transfers may both create the project; that race is
        accepted.
        """
        projects = await self.client.search_projects(name)
        for project in projects:
            if project.get("name") == name:
                logger.info("Using existing project %s (%s)", name, project.get("id"))
                return project
        logger.info("Project '%s' not found; creating it", name)
        return await self.client.create_project(name)

    async def create_folder(
        self, project_id: str, name: str, parent_id: str | None = None
    ) -> dict[str, Any]:
        folder = await self.client.create_folder(project_id, name, parent_id)
        logger.info("Created folder %s (%s)", folder.get("name", name), folder.get("id"))
        return folder

    async def upload_all(self, project_id: str, files: list[UploadItem]) -> UploadReport:
        report = UploadReport()
        for index, item in enumerate(files):
            if not item.content:
                report.failed.append(UploadFailure(name=item.name, error="Empty content", attempts=0))
                transfer_file_uploads_total.labels(kind=item.kind, status="failed").inc()
                logger.warning("Skipping %s: empty content", item.name)
                continue

            last_error = ""
            for attempt in range(1, self.max_attempts + 1):
                try:
                    created = await self.client.upload_file(
                        project_id, item.name, item.content, item.kind, item.parent_id
                    )
                except (ApiError, AuthenticationError) as exc:
                    last_error = str(exc)
                    logger.warning(
                        "Upload attempt %d/%d failed for %s: %s",
                        attempt,
                        self.max_attempts,
                        item.name,
                        exc,
                    )
                    if attempt < self.max_attempts:
                        delay = attempt * self.backoff_seconds
                        transfer_upload_retries_total.inc()
                        logger.info("Retrying %s in %.1fs", item.name, delay)
                        await self._sleep(delay)
                    continue

                report.succeeded.append(
                    UploadSuccess(
                        name=item.name,
                        remote_id=str(created.get("id", "")) if isinstance(created, dict) else "",
                    )
                )
                transfer_file_uploads_total.labels(kind=item.kind, status="uploaded").inc()
                if index < len(files) - 1:
                    await self._sleep(self.pacing_seconds)
                break
            else:
                report.failed.append(
                    UploadFailure(name=item.name, error=last_error, attempts=self.max_attempts)
                )
                transfer_file_uploads_total.labels(kind=item.kind, status="failed").inc()
        return report

    async def transfer(self, bundle: Bundle) -> TransferResult:
        if not bundle.main_xml or not bundle.service_key:
            raise InvalidBundle("Bundle has no main process or service key")

        extra = {"service_key": bundle.service_key}
        logger.info(
            "Transferring bundle: %d forms, %d subprocesses",
            len(bundle.forms),
            len(bundle.subprocesses),
            extra=extra,
        )
        await self.authenticate()

        project = await self.resolve_or_create_project(self.project_name)
        project_id = str(project["id"])
        main_folder = await self.create_folder(
            project_id, f"{bundle.service_name} {bundle.service_key}"
        )
        stamp = self._now().strftime("%Y%m%d-%H%M")
        export_folder = await self.create_folder(
            project_id, f"{bundle.service_name} {stamp}", str(main_folder["id"])
        )
        export_id = str(export_folder["id"])
        high = await self.create_folder(project_id, HIGH_LEVEL_FOLDER, export_id)
        low = await self.create_folder(project_id, LOW_LEVEL_FOLDER, export_id)
        high_id, low_id = str(high["id"]), str(low["id"])

        files = [UploadItem(MAIN_FILENAME, bundle.main_xml, "bpmn", high_id)]
        files += [
            UploadItem(form.filename, json.dumps(form.content, indent=2), "form", high_id)
            for form in bundle.forms
        ]
        files += [UploadItem(sub.filename, sub.xml, "bpmn", low_id) for sub in bundle.subprocesses]

        report = await self.upload_all(project_id, files)
        result = TransferResult(
            project_id=project_id,
            project_name=project.get("name", self.project_name),
            project_url=self.client.project_url(project_id),
            main_folder_id=str(main_folder["id"]),
            main_folder_name=main_folder.get("name", ""),
            export_folder_id=export_id,
            export_folder_name=export_folder.get("name", ""),
            export_folder_url=self.client.folder_url(project_id, export_id),
            high_level_folder_id=high_id,
            low_level_folder_id=low_id,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        transfer_runs_total.labels(status=result.status).inc()
        logger.info(
            "Transfer finished: %d uploaded, %d failed",
            len(result.succeeded),
            len(result.failed),
            extra=extra,
        )
        return result
