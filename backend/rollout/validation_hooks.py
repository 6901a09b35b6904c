"""
Test-traffic validation hook.

Once the new environment takes 100% of the test listener, the hook URL
configured for the stack is called with the rollout's context. The hook
validates the new environment through the test listener and answers with
its verdict:

    POST <hook_url>
    {"rollout_id": ..., "stack": ..., "target_color": ..., "test_listener": ...}

    200 {"status": "Succeeded"}   -> rollout continues
    200 {"status": "Failed"}      -> ValidationHookFailure
    non-2xx / timeout / no answer -> ValidationHookFailure

A stack without a hook URL passes validation immediately.
"""

from dataclasses import dataclass, asdict
from typing import Optional
import logging

import httpx

from .errors import ValidationHookFailure

logger = logging.getLogger(__name__)


@dataclass
class HookContext:
    rollout_id: str
    stack: str
    target_color: str
    test_listener: str
    test_endpoint: Optional[str] = None


class ValidationHookRunner:
    """Calls validation hooks over HTTP"""

    def __init__(self, timeout_seconds: float = 60, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout_seconds = timeout_seconds
        # Tests pass httpx.MockTransport
        self.transport = transport

    async def run(self, hook_url: Optional[str], context: HookContext) -> None:
        """
        Invoke the hook and raise if it does not report success.

        Raises:
            ValidationHookFailure: On a failed verdict, an error status or an unreachable hook
        """
        if not hook_url:
            logger.info(f"Rollout {context.rollout_id}: no validation hook configured, skipping")
            return

        client_kwargs = {'timeout': httpx.Timeout(self.timeout_seconds)}
        if self.transport is not None:
            client_kwargs['transport'] = self.transport

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.post(hook_url, json=asdict(context))
        except httpx.TimeoutException:
            raise ValidationHookFailure(f"Validation hook timed out after {self.timeout_seconds}s")
        except httpx.HTTPError as e:
            raise ValidationHookFailure(f"Validation hook unreachable: {e}")

        if not response.is_success:
            raise ValidationHookFailure(f"Validation hook returned HTTP {response.status_code}")

        verdict = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                verdict = body.get('status')

        if isinstance(verdict, str) and verdict.lower() == 'failed':
            reason = body.get('reason') or 'no reason given'
            raise ValidationHookFailure(f"Validation hook reported failure: {reason}")

        logger.info(f"Rollout {context.rollout_id}: validation hook passed ({verdict or 'HTTP ' + str(response.status_code)})")
