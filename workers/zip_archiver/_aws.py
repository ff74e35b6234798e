"""Shared helpers for aiobotocore clients."""

from __future__ import annotations

from typing import Any

from botocore.exceptions import ClientError


def client_kwargs(
    region: str,
    endpoint_url: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
) -> dict[str, Any]:
    """Build keyword arguments for ``session.create_client()``."""
    kwargs: dict[str, Any] = {"region_name": region}

    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url

    if access_key_id:
        kwargs["aws_access_key_id"] = access_key_id
        kwargs["aws_secret_access_key"] = secret_access_key

    return kwargs


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a ClientError."""
    return error.response.get("Error", {}).get("Code", "")
