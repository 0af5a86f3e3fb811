from __future__ import annotations

import requests

from keymarket.errors import ExternalDependencyError, GatewayTimeout


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


def transport_error(exc: requests.RequestException, *, dependency: str) -> ExternalDependencyError:
    """Translate a requests failure into the engine's external error types."""
    if isinstance(exc, requests.Timeout):
        return GatewayTimeout(f"{dependency} call timed out", dependency=dependency)
    return ExternalDependencyError(f"{dependency} unreachable: {exc}", transient=True, dependency=dependency)


def raise_for_status(status_code: int, message: str, *, dependency: str, body: dict | None = None) -> None:
    if 200 <= int(status_code) < 300:
        return
    transient = int(status_code) >= 500 or int(status_code) in (408, 409, 429)
    raise ExternalDependencyError(
        f"{dependency} HTTP {status_code}: {message}",
        transient=transient,
        dependency=dependency,
        details={"http_status": int(status_code), "body": body or {}},
    )
