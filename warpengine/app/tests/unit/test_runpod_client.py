############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# test_runpod_client.py: Unit tests for the RunPod HTTP client
#
############################################################

"""Unit tests for RunpodClient over httpx.MockTransport."""

import json

import httpx
import pytest

from warpengine.app.core.runpod.client import (
    RunpodClient,
    RunpodError,
    RunpodNotFoundError,
    RunpodTimeoutError,
)


def make_client(settings, handler) -> RunpodClient:
    return RunpodClient(settings, transport=httpx.MockTransport(handler))


class TestStartJob:
    @pytest.mark.asyncio
    async def test_posts_job_input_to_run(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "job-abc", "status": "IN_QUEUE"})

        client = make_client(settings, handler)
        handle = await client.start_job()
        await client.close()

        assert handle.id == "job-abc"
        assert handle.status == "IN_QUEUE"
        assert seen["url"] == "https://api.runpod.ai/v2/ep-test/run"
        assert seen["auth"] == "Bearer rp_test_key"
        assert seen["body"] == {"input": {"env": {}}}

    @pytest.mark.asyncio
    async def test_server_error_raises(self, settings):
        client = make_client(settings, lambda r: httpx.Response(500, text="boom"))
        with pytest.raises(RunpodError) as exc:
            await client.start_job()
        assert exc.value.status_code == 500
        assert not isinstance(exc.value, RunpodNotFoundError)

    @pytest.mark.asyncio
    async def test_timeout_raises_timeout_error(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(settings, handler)
        with pytest.raises(RunpodTimeoutError):
            await client.start_job()

    @pytest.mark.asyncio
    async def test_connection_error_raises(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(settings, handler)
        with pytest.raises(RunpodError):
            await client.start_job()

    @pytest.mark.asyncio
    async def test_missing_endpoint_fails_without_request(self, settings):
        calls = []
        settings = settings.model_copy(update={"runpod_endpoint_id": None})
        client = make_client(settings, lambda r: calls.append(r) or httpx.Response(200))
        with pytest.raises(RunpodError):
            await client.start_job()
        assert calls == []


class TestJobStatus:
    @pytest.mark.asyncio
    async def test_status_parsed(self, settings):
        def handler(request):
            assert request.url.path == "/v2/ep-test/status/job-1"
            return httpx.Response(
                200,
                json={"id": "job-1", "status": "IN_PROGRESS", "delayTime": 4200, "workerId": "w1"},
            )

        client = make_client(settings, handler)
        report = await client.get_job_status("job-1")
        assert report.status == "IN_PROGRESS"
        assert report.delay_seconds == pytest.approx(4.2)
        assert report.worker_id == "w1"

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, settings):
        client = make_client(settings, lambda r: httpx.Response(404, text="no such job"))
        with pytest.raises(RunpodNotFoundError):
            await client.get_job_status("job-1")

    @pytest.mark.asyncio
    async def test_error_text_saying_missing_is_not_found(self, settings):
        client = make_client(
            settings,
            lambda r: httpx.Response(400, json={"error": "request does not exist"}),
        )
        with pytest.raises(RunpodNotFoundError):
            await client.get_job_status("job-1")

    @pytest.mark.asyncio
    async def test_error_body_on_success_status_is_not_found(self, settings):
        client = make_client(
            settings,
            lambda r: httpx.Response(200, json={"error": "job not found"}),
        )
        with pytest.raises(RunpodNotFoundError):
            await client.get_job_status("job-1")


class TestCancelAndTerminate:
    @pytest.mark.asyncio
    async def test_cancel_returns_reported_status(self, settings):
        def handler(request):
            assert request.url.path == "/v2/ep-test/cancel/job-1"
            return httpx.Response(200, json={"id": "job-1", "status": "CANCELLED"})

        client = make_client(settings, handler)
        assert await client.cancel_job("job-1") == "CANCELLED"

    @pytest.mark.asyncio
    async def test_cancel_with_empty_body(self, settings):
        client = make_client(settings, lambda r: httpx.Response(200))
        assert await client.cancel_job("job-1") == "200"

    @pytest.mark.asyncio
    async def test_terminate_pod_sends_graphql_mutation(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"podTerminate": None}})

        client = make_client(settings, handler)
        await client.terminate_pod("pod-7")
        assert seen["url"] == "https://api.runpod.io/graphql"
        assert seen["body"]["variables"] == {"input": {"podId": "pod-7"}}

    @pytest.mark.asyncio
    async def test_terminate_missing_pod(self, settings):
        client = make_client(
            settings,
            lambda r: httpx.Response(200, json={"errors": [{"message": "Pod not found"}]}),
        )
        with pytest.raises(RunpodNotFoundError):
            await client.terminate_pod("pod-7")

    @pytest.mark.asyncio
    async def test_terminate_graphql_error(self, settings):
        client = make_client(
            settings,
            lambda r: httpx.Response(200, json={"errors": [{"message": "forbidden"}]}),
        )
        with pytest.raises(RunpodError):
            await client.terminate_pod("pod-7")
