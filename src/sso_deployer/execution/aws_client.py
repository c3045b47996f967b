"""AWS client factory and retrying call adapter."""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from sso_deployer.execution.errors import CloudCallError, from_client_error
from sso_deployer.execution.retry import RetryExecutor


def _get_service_config(sdk_timeout_seconds: int) -> Config:
    # The retry executor owns the throttling policy, so botocore makes one attempt only.
    return Config(
        read_timeout=sdk_timeout_seconds,
        connect_timeout=sdk_timeout_seconds,
        retries={"max_attempts": 1, "mode": "standard"},
    )


def create_client(
    service: str,
    *,
    region: str | None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    session_token: str | None = None,
    sdk_timeout_seconds: int = 30,
):
    """Build a fresh boto3 client. Nothing is cached between calls."""
    session = boto3.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        aws_session_token=session_token,
        region_name=region,
    )
    return session.client(service, config=_get_service_config(sdk_timeout_seconds))


def _operation_label(client: Any, method_name: str) -> str:
    """Map ``attach_role_policy`` to ``AttachRolePolicy`` when the client knows it."""
    method_map = getattr(getattr(client, "meta", None), "method_to_api_mapping", None)
    if isinstance(method_map, dict):
        return str(method_map.get(method_name, method_name))
    return method_name


def _call_method(client: Any, method_name: str, kwargs: dict[str, object]) -> dict[str, object]:
    method = getattr(client, method_name)
    try:
        response = method(**kwargs)
    except ClientError as exc:
        raise from_client_error(exc, _operation_label(client, method_name)) from exc
    except BotoCoreError as exc:
        raise CloudCallError(
            str(exc),
            operation=_operation_label(client, method_name),
            code=type(exc).__name__,
        ) from exc
    if isinstance(response, dict):
        return response
    return {"result": response}


async def call_aws_api_async(
    client: Any,
    method_name: str,
    *,
    timeout: float | None = None,
    **kwargs: object,
) -> dict[str, object]:
    """Run one SDK call off the event loop with a hard timeout."""
    call = asyncio.to_thread(_call_method, client, method_name, kwargs)
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CloudCallError(
            f"call did not complete within {timeout:.0f}s",
            operation=_operation_label(client, method_name),
            code="CallTimeout",
        ) from exc


class RetryingClient:
    """A boto3 client whose every call goes through the retry executor."""

    def __init__(
        self,
        client: Any,
        executor: RetryExecutor,
        *,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._timeout = timeout

    @property
    def raw(self) -> Any:
        return self._client

    async def call(self, method_name: str, **kwargs: object) -> dict[str, object]:
        return await self._executor.run(
            lambda: call_aws_api_async(
                self._client, method_name, timeout=self._timeout, **kwargs
            ),
            description=method_name,
        )

    async def collect(
        self,
        method_name: str,
        result_key: str,
        *,
        token_key: str = "NextToken",
        **kwargs: object,
    ) -> list[Any]:
        """Follow pagination tokens, retrying each page independently."""
        items: list[Any] = []
        token: object = None
        while True:
            params = dict(kwargs)
            if token:
                params[token_key] = token
            page = await self.call(method_name, **params)
            items.extend(page.get(result_key) or [])
            token = page.get(token_key)
            if not token:
                return items
