"""
Tests for ValidationHookRunner using httpx.MockTransport.
"""

import json

import httpx
import pytest

from rollout.errors import ValidationHookFailure
from rollout.validation_hooks import HookContext, ValidationHookRunner

HOOK_URL = 'http://validator.internal/hooks/trivia'
CONTEXT = HookContext(
    rollout_id='r-1',
    stack='trivia',
    target_color='green',
    test_listener='TestListener',
    test_endpoint='http://trivia-lb.elb.amazonaws.com:9000',
)


def runner_for(handler):
    return ValidationHookRunner(timeout_seconds=5, transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestValidationHookRunner:

    @pytest.mark.asyncio
    async def test_success_posts_context(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={'status': 'Succeeded'})

        await runner_for(handler).run(HOOK_URL, CONTEXT)

        assert len(requests) == 1
        assert requests[0].method == 'POST'
        assert json.loads(requests[0].content) == {
            'rollout_id': 'r-1',
            'stack': 'trivia',
            'target_color': 'green',
            'test_listener': 'TestListener',
            'test_endpoint': 'http://trivia-lb.elb.amazonaws.com:9000',
        }

    @pytest.mark.asyncio
    async def test_empty_2xx_body_passes(self):
        await runner_for(lambda request: httpx.Response(204)).run(HOOK_URL, CONTEXT)

    @pytest.mark.asyncio
    async def test_failed_verdict(self):
        def handler(request):
            return httpx.Response(200, json={'status': 'Failed', 'reason': 'GET /api/trivia/all returned 500'})

        with pytest.raises(ValidationHookFailure, match="returned 500"):
            await runner_for(handler).run(HOOK_URL, CONTEXT)

    @pytest.mark.asyncio
    async def test_error_status(self):
        with pytest.raises(ValidationHookFailure, match="HTTP 503"):
            await runner_for(lambda request: httpx.Response(503)).run(HOOK_URL, CONTEXT)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ValidationHookFailure, match="timed out"):
            await runner_for(handler).run(HOOK_URL, CONTEXT)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ValidationHookFailure, match="unreachable"):
            await runner_for(handler).run(HOOK_URL, CONTEXT)

    @pytest.mark.asyncio
    async def test_no_hook_url_passes_without_request(self):
        def handler(request):
            raise AssertionError("hook must not be called")

        await runner_for(handler).run(None, CONTEXT)
