"""Azure DevOps REST client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..contracts import (
    Approval,
    ApprovalDecision,
    Build,
    Pipeline,
    Project,
    RetentionLease,
    TimelineRecord,
)
from ..errors import PipelineConnectionError, PipelineRequestError
from .base import BasePipelineClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dev.azure.com"
DEFAULT_API_VERSION = "7.1"
PREVIEW_API_VERSION = "7.1-preview.1"
BUILD_STATUS_FILTER = "cancelling,completed,inProgress,none,notStarted,postponed"
LEASE_OWNER = "User:runwatch"
LEASE_DAYS_VALID = 36500


def _error_message(response: httpx.Response) -> str:
    """Extract the service's own message from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = response.text.strip()
    return text or f"HTTP {response.status_code} {response.reason_phrase}"


class AzureDevOpsClient(BasePipelineClient):
    """Client for the Azure DevOps build, pipelines and approvals APIs."""

    def __init__(
        self,
        organization: str,
        token: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not organization:
            raise ValueError("organization is required for AzureDevOpsClient")

        self.organization = organization
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/{quote(self.organization, safe='')}/",
            auth=httpx.BasicAuth("", self._token) if self._token else None,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        api_version: Optional[str] = None,
    ) -> Any:
        if self._client is None:
            await self.connect()

        query = {"api-version": api_version or self.api_version}
        query.update(params or {})
        try:
            response = await self._client.request(method, path, params=query, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.debug(f"{method} {path} rejected ({e.response.status_code}): {message}")
            raise PipelineRequestError(message, status_code=e.response.status_code) from e
        except httpx.TransportError as e:
            raise PipelineConnectionError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _project_path(project: str, suffix: str) -> str:
        return f"{quote(project, safe='')}/_apis/{suffix}"

    # Browsing ---------------------------------------------------------
    async def list_projects(self) -> List[Project]:
        data = await self._request("GET", "_apis/projects")
        return [Project.model_validate(item) for item in (data or {}).get("value", [])]

    async def list_pipelines(self, project: str) -> List[Pipeline]:
        data = await self._request("GET", self._project_path(project, "pipelines"))
        return [Pipeline.model_validate(item) for item in (data or {}).get("value", [])]

    async def list_builds(self, project: str, pipeline_id: int) -> List[Build]:
        data = await self._request(
            "GET",
            self._project_path(project, "build/builds"),
            params={
                "definitions": pipeline_id,
                "statusFilter": BUILD_STATUS_FILTER,
                "queryOrder": "queueTimeDescending",
            },
        )
        return [Build.model_validate(item) for item in (data or {}).get("value", [])]

    async def get_build(self, project: str, run_id: int) -> Build:
        data = await self._request(
            "GET", self._project_path(project, f"build/builds/{run_id}")
        )
        return Build.model_validate(data)

    async def get_timeline(self, project: str, run_id: int) -> List[TimelineRecord]:
        data = await self._request(
            "GET", self._project_path(project, f"build/builds/{run_id}/timeline")
        )
        # A run that has not been scheduled yet has no timeline.
        records = []
        for item in (data or {}).get("records") or []:
            try:
                records.append(TimelineRecord.model_validate(item))
            except ValidationError as e:
                record_id = item.get("id") if isinstance(item, dict) else None
                logger.warning(
                    f"Skipping malformed timeline record {record_id} of run {run_id}: "
                    f"{e.error_count()} validation error(s)"
                )
        return records

    async def get_retention_leases(
        self, project: str, run_id: int
    ) -> List[RetentionLease]:
        data = await self._request(
            "GET", self._project_path(project, f"build/builds/{run_id}/leases")
        )
        return [RetentionLease.model_validate(item) for item in (data or {}).get("value", [])]

    async def get_log(self, project: str, run_id: int, log_id: int) -> List[str]:
        data = await self._request(
            "GET", self._project_path(project, f"build/builds/{run_id}/logs/{log_id}")
        )
        return list((data or {}).get("value", []))

    # Approvals --------------------------------------------------------
    async def list_pending_approvals(self, project: str) -> List[Approval]:
        data = await self._request(
            "GET",
            self._project_path(project, "pipelines/approvals"),
            params={"state": "pending", "$expand": "steps"},
            api_version=PREVIEW_API_VERSION,
        )
        return [Approval.model_validate(item) for item in (data or {}).get("value", [])]

    async def set_approval_decision(
        self,
        project: str,
        approval_id: str,
        decision: ApprovalDecision,
        comment: str = "",
    ) -> Approval:
        update: Dict[str, Any] = {"approvalId": approval_id, "status": decision.status.value}
        if comment:
            update["comment"] = comment
        data = await self._request(
            "PATCH",
            self._project_path(project, "pipelines/approvals"),
            json=[update],
            api_version=PREVIEW_API_VERSION,
        )
        items = data.get("value", []) if isinstance(data, dict) else data or []
        if not items:
            raise PipelineRequestError("No approval response received")
        return Approval.model_validate(items[0])

    # Mutating actions -------------------------------------------------
    async def retry_stage(
        self,
        project: str,
        run_id: int,
        stage_identifier: str,
        force_all_jobs: bool = False,
        retry_dependents: bool = False,
    ) -> None:
        await self._request(
            "PATCH",
            self._project_path(
                project, f"build/builds/{run_id}/stages/{quote(stage_identifier, safe='')}"
            ),
            json={
                "state": "retry",
                "forceRetryAllJobs": force_all_jobs,
                "retryDependencies": retry_dependents,
            },
        )

    async def retry_build_failed_jobs(self, project: str, run_id: int) -> None:
        await self._request(
            "PATCH",
            self._project_path(project, f"build/builds/{run_id}"),
            params={"retry": "true"},
            json={},
        )

    async def cancel_run(self, project: str, run_id: int) -> None:
        await self._request(
            "PATCH",
            self._project_path(project, f"build/builds/{run_id}"),
            json={"status": "cancelling"},
        )

    async def delete_run(self, project: str, run_id: int) -> None:
        await self._request("DELETE", self._project_path(project, f"build/builds/{run_id}"))

    async def set_retention(
        self, project: str, run_id: int, pipeline_id: int, keep: bool
    ) -> None:
        if keep:
            await self._request(
                "POST",
                self._project_path(project, "build/retention/leases"),
                json=[
                    {
                        "daysValid": LEASE_DAYS_VALID,
                        "definitionId": pipeline_id,
                        "ownerId": LEASE_OWNER,
                        "protectPipeline": False,
                        "runId": run_id,
                    }
                ],
            )
            return

        leases = await self.get_retention_leases(project, run_id)
        if not leases:
            return
        await self._request(
            "DELETE",
            self._project_path(project, "build/retention/leases"),
            params={"ids": ",".join(str(lease.lease_id) for lease in leases)},
        )

    async def run_pipeline(
        self,
        project: str,
        pipeline_id: int,
        branch: str,
        template_parameters: Optional[Dict[str, str]] = None,
    ) -> Build:
        body: Dict[str, Any] = {
            "resources": {"repositories": {"self": {"refName": f"refs/heads/{branch}"}}}
        }
        if template_parameters:
            body["templateParameters"] = template_parameters
        data = await self._request(
            "POST",
            self._project_path(project, f"pipelines/{pipeline_id}/runs"),
            json=body,
        )
        # The pipelines API names runs differently from the build API.
        return Build.model_validate(
            {
                "id": data["id"],
                "buildNumber": data.get("name", str(data["id"])),
                "status": "notStarted",
                "sourceBranch": f"refs/heads/{branch}",
                "definition": {"id": pipeline_id},
            }
        )

    async def get_run_parameters(
        self, project: str, pipeline_id: int, run_id: int
    ) -> Dict[str, str]:
        data = await self._request(
            "GET", self._project_path(project, f"pipelines/{pipeline_id}/runs/{run_id}")
        )
        return dict((data or {}).get("templateParameters") or {})
