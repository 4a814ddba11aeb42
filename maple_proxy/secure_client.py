"""Verified backend sessions for the Maple proxy.

A session is bound to one backend URL and one API key and is only usable
after its attestation handshake succeeds. Sessions are created per request
and closed when the request completes; nothing is pooled or shared.

The attestation document check itself is pluggable (see
AttestationVerifier): this module owns the handshake transport and the
session lifecycle, not the enclave cryptography.
"""

import json
import secrets
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

import httpx

from maple_proxy.errors import BackendError, ErrorKind, SecureConnectError, StreamError
from maple_proxy.telemetry import logger

_MAX_CAUSE_LEN = 200


class AttestationError(Exception):
    """Raised by a verifier when an attestation document is not acceptable."""


class SecureSession(Protocol):
    """Operations the proxy needs from a verified backend session."""

    async def verify(self) -> None:
        """Perform the attestation handshake; raise SecureConnectError on failure."""

    async def list_models(self) -> Dict[str, Any]:
        ...

    async def chat_completion(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def chat_completion_stream(
        self, request: Dict[str, Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        """Start a streaming completion and return its chunk iterator."""

    async def embeddings(self, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        ...


AttestationVerifier = Callable[[Dict[str, Any], str], None]
SessionFactory = Callable[[str, str], SecureSession]


def verify_attestation_document(document: Dict[str, Any], nonce: str) -> None:
    """Default verifier: the document must echo our nonce and carry evidence."""
    if not isinstance(document, dict):
        raise AttestationError("attestation response is not a JSON object")
    if document.get("nonce") != nonce:
        raise AttestationError("attestation nonce mismatch")
    if not document.get("attestation_document"):
        raise AttestationError("attestation document missing")


def _validate_backend_url(backend_url: str) -> httpx.URL:
    try:
        url = httpx.URL(backend_url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise SecureConnectError(
            ErrorKind.CONNECT_CONSTRUCTION,
            "Failed to create client: invalid backend URL: {}".format(exc),
        ) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise SecureConnectError(
            ErrorKind.CONNECT_CONSTRUCTION,
            "Failed to create client: backend URL must be http(s) with a host",
        )
    return url


def _validate_api_key(api_key: str) -> None:
    if not api_key or api_key != api_key.strip():
        raise SecureConnectError(
            ErrorKind.CONNECT_CONSTRUCTION,
            "Failed to create client: API key is empty or padded with whitespace",
        )
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in api_key):
        raise SecureConnectError(
            ErrorKind.CONNECT_CONSTRUCTION,
            "Failed to create client: API key contains control characters",
        )


def _describe_status(resp: httpx.Response) -> str:
    """Summarize a failed backend response for error messages."""
    cause = "backend returned HTTP {}".format(resp.status_code)
    try:
        body = resp.json()
    except ValueError:
        return cause
    message = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            message = err.get("message")
        elif isinstance(err, str):
            message = err
        else:
            message = body.get("message")
    if message:
        cause = "{}: {}".format(cause, str(message)[:_MAX_CAUSE_LEN])
    return cause


class AttestedBackendClient:
    """httpx-backed session against an attestation-gated backend."""

    def __init__(
        self,
        backend_url: str,
        api_key: str,
        *,
        verifier: Optional[AttestationVerifier] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        url = _validate_backend_url(backend_url)
        _validate_api_key(api_key)

        self._verifier = verifier or verify_attestation_document
        self._verified = False
        self._client = httpx.AsyncClient(
            base_url=str(url).rstrip("/"),
            headers={"Authorization": "Bearer {}".format(api_key)},
            timeout=timeout,
            transport=transport,
        )

    @property
    def verified(self) -> bool:
        return self._verified

    async def verify(self) -> None:
        """Fetch and check a fresh attestation document.

        Raises:
            SecureConnectError: ATTESTATION if the backend cannot be reached,
                returns an error, or the document fails verification.
        """
        nonce = secrets.token_hex(16)
        try:
            resp = await self._client.get("/attestation/{}".format(nonce))
            resp.raise_for_status()
            self._verifier(resp.json(), nonce)
        except (httpx.HTTPError, ValueError, AttestationError) as exc:
            raise SecureConnectError(
                ErrorKind.CONNECT_ATTESTATION,
                "Attestation handshake failed: {}".format(exc),
            ) from exc
        self._verified = True

    def _require_verified(self) -> None:
        if not self._verified:
            raise SecureConnectError(
                ErrorKind.CONNECT_ATTESTATION,
                "Session used before attestation handshake",
            )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._require_verified()
        try:
            resp = await self._client.request(method, path, json=body)
        except httpx.HTTPError as exc:
            raise BackendError(operation, str(exc) or type(exc).__name__) from exc

        if resp.status_code >= 400:
            raise BackendError(operation, _describe_status(resp))

        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(operation, "backend returned invalid JSON") from exc

    async def list_models(self) -> Dict[str, Any]:
        return await self._request("retrieve models", "GET", "/v1/models")

    async def chat_completion(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "create completion", "POST", "/v1/chat/completions", request
        )

    async def embeddings(self, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "create embeddings", "POST", "/v1/embeddings", request
        )

    async def chat_completion_stream(
        self, request: Dict[str, Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        """Open a streaming completion.

        The backend status is checked before returning, so a rejected request
        raises BackendError here; failures after that surface from the
        returned iterator as StreamError.
        """
        operation = "create streaming completion"
        self._require_verified()
        body = dict(request)
        body["stream"] = True
        req = self._client.build_request(
            "POST",
            "/v1/chat/completions",
            json=body,
            headers={"Accept": "text/event-stream"},
        )
        try:
            resp = await self._client.send(req, stream=True)
        except httpx.HTTPError as exc:
            raise BackendError(operation, str(exc) or type(exc).__name__) from exc

        if resp.status_code >= 400:
            try:
                await resp.aread()
                cause = _describe_status(resp)
            finally:
                await resp.aclose()
            raise BackendError(operation, cause)

        return _iter_sse_chunks(resp)

    async def aclose(self) -> None:
        await self._client.aclose()


async def _iter_sse_chunks(resp: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Yield JSON chunks from an OpenAI-style SSE body until ``[DONE]``."""
    try:
        async for line in resp.aiter_lines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            if not data:
                continue
            try:
                chunk = json.loads(data)
            except ValueError as exc:
                raise StreamError(
                    ErrorKind.STREAM_TRANSPORT,
                    "Malformed chunk from backend: {}".format(exc),
                ) from exc
            yield chunk
    except httpx.HTTPError as exc:
        raise StreamError(
            ErrorKind.STREAM_TRANSPORT, "Stream error: {}".format(exc)
        ) from exc
    finally:
        await resp.aclose()


async def bootstrap(
    backend_url: str,
    api_key: str,
    session_factory: SessionFactory = AttestedBackendClient,
) -> SecureSession:
    """Create a session for one request and complete its attestation handshake.

    Args:
        backend_url: Backend base URL.
        api_key: Caller's backend API key.
        session_factory: Builds an unverified session; defaults to
            AttestedBackendClient.

    Returns:
        A verified session owned by the caller, who must ``aclose()`` it.

    Raises:
        SecureConnectError: CONSTRUCTION if the session cannot be built,
            ATTESTATION if the handshake fails. The cause is logged here and
            never included in the client-facing message.
    """
    try:
        session = session_factory(backend_url, api_key)
    except SecureConnectError as exc:
        logger.error("Failed to create client: %s", exc.detail)
        raise
    except ValueError as exc:
        logger.error("Failed to create client: %s", exc)
        raise SecureConnectError(
            ErrorKind.CONNECT_CONSTRUCTION, "Failed to create client: {}".format(exc)
        ) from exc

    try:
        await session.verify()
    except SecureConnectError as exc:
        logger.error("Attestation handshake failed: %s", exc.detail)
        await session.aclose()
        raise
    except Exception as exc:
        logger.error("Attestation handshake failed: %s", exc)
        await session.aclose()
        raise SecureConnectError(
            ErrorKind.CONNECT_ATTESTATION,
            "Attestation handshake failed: {}".format(exc),
        ) from exc

    return session
