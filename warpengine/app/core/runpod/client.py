############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# client.py: HTTP client for the RunPod job-control APIs
#
############################################################

"""Client for RunPod serverless jobs and legacy pods."""

from typing import Any, Dict, Optional

import httpx

from warpengine.app.core.runpod.models import (
    JobHandle,
    JobStatusReport,
    parse_job_status,
)
from warpengine.app.logging_config import get_logger
from warpengine.app.settings import Settings

logger = get_logger(__name__)

_NOT_FOUND_MARKERS = ("does not exist", "not found")


class RunpodError(Exception):
    """A RunPod request failed (unreachable, timed out or non-success)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RunpodNotFoundError(RunpodError):
    """RunPod has no record of the requested job or pod."""


class RunpodTimeoutError(RunpodError):
    """A RunPod request exceeded the configured timeout."""


class RunpodClient:
    """
    HTTP client for the RunPod serverless v2 API and GraphQL API.

    Holds no state beyond its connection pool: every call maps to one
    remote request. All failures surface as RunpodError subclasses.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_id = settings.runpod_endpoint_id
        self.base_url = settings.runpod_endpoint_url
        self.graphql_url = settings.runpod_graphql_url
        self.timeout = settings.runpod_request_timeout
        self.job_input = dict(settings.runpod_job_input)
        self._api_key = settings.runpod_api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.endpoint_id:
            logger.error("runpod_endpoint_not_configured")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self, method: str, url: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON body."""
        try:
            client = await self._get_client()
            response = await client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            logger.error("runpod_timeout", url=url, error=str(e))
            raise RunpodTimeoutError(f"RunPod API request timed out: {url}") from e
        except httpx.HTTPError as e:
            logger.error("runpod_transport_error", url=url, error=str(e))
            raise RunpodError(f"RunPod API request failed: {e}") from e

        if response.status_code == 404:
            raise RunpodNotFoundError(
                f"RunPod API request failed: not found - {response.text}",
                status_code=404,
            )
        if response.status_code >= 400:
            logger.error(
                "runpod_bad_status",
                url=url,
                status=response.status_code,
                body=response.text[:500],
            )
            if _looks_like_not_found(response.text):
                raise RunpodNotFoundError(
                    f"RunPod API request failed: {response.text}",
                    status_code=response.status_code,
                )
            raise RunpodError(
                f"RunPod API request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type and response.content:
            data = response.json()
            if isinstance(data, dict):
                return data
            return {"data": data}
        # Cancel may answer with an empty body
        return {"status": response.status_code}

    def _require_endpoint(self) -> None:
        if not self.endpoint_id:
            raise RunpodError("RunPod endpoint ID is not configured")

    async def start_job(self) -> JobHandle:
        """Start a serverless job on the configured endpoint."""
        self._require_endpoint()
        data = await self._request(
            "POST", f"{self.base_url}/run", json={"input": self.job_input}
        )
        handle = JobHandle(id=data.get("id"), status=data.get("status"))
        logger.info("runpod_job_started", job_id=handle.id, status=handle.status)
        return handle

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        """Fetch the current status of a job."""
        if not job_id:
            raise ValueError("job_id is required to get status")
        self._require_endpoint()
        data = await self._request("POST", f"{self.base_url}/status/{job_id}")
        if _looks_like_not_found(str(data.get("error") or "")):
            raise RunpodNotFoundError(f"RunPod job {job_id} not found: {data['error']}")
        return parse_job_status(job_id, data)

    async def cancel_job(self, job_id: str) -> Optional[str]:
        """Request cancellation of a job; RunPod does not wait for it to stop."""
        if not job_id:
            raise ValueError("job_id is required to cancel")
        self._require_endpoint()
        logger.info("runpod_cancel_requested", job_id=job_id)
        data = await self._request("POST", f"{self.base_url}/cancel/{job_id}")
        status = data.get("status")
        return str(status) if status is not None else None

    async def terminate_pod(self, pod_id: str) -> None:
        """Terminate a legacy persistent pod (blocking equivalent of cancel)."""
        if not pod_id:
            raise ValueError("pod_id is required to terminate")
        query = """
            mutation PodTerminate($input: PodTerminateInput!) {
              podTerminate(input: $input)
            }
        """
        data = await self._request(
            "POST",
            self.graphql_url,
            json={"query": query, "variables": {"input": {"podId": pod_id}}},
        )
        errors = data.get("errors")
        if errors:
            message = errors[0].get("message") or "graphql error"
            if _looks_like_not_found(message):
                raise RunpodNotFoundError(f"RunPod pod {pod_id} not found: {message}")
            raise RunpodError(f"RunPod pod termination failed: {message}")
        logger.info("runpod_pod_terminated", pod_id=pod_id)


def _looks_like_not_found(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)
