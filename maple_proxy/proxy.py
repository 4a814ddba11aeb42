"""Request dispatch for the Maple proxy.

Every operation follows the same pipeline:

1. Resolve the caller's API key (Authorization header or configured default)
2. Bootstrap a fresh, attestation-verified backend session
3. Invoke the backend operation
4. Return the document, or hand a chunk stream to the SSE translator

A failure at any step raises a ProxyError; later steps are never attempted.
The session is always closed before the request finishes (for streams,
when the event sequence ends or is abandoned).
"""

from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from maple_proxy.auth import resolve_api_key
from maple_proxy.config import ProxyConfig
from maple_proxy.errors import AuthenticationError, BackendError, SecureConnectError
from maple_proxy.models import ChatCompletionRequest, EmbeddingRequest
from maple_proxy.secure_client import (
    AttestedBackendClient,
    SecureSession,
    SessionFactory,
    bootstrap,
)
from maple_proxy.streaming import StreamState, StreamTranslator
from maple_proxy.telemetry import log_request, logger, mask_api_key

T = TypeVar("T")

AuthorizationHeader = Optional[Union[str, bytes]]


class ProxyService:
    """Per-request pipeline over read-only configuration."""

    def __init__(
        self,
        config: ProxyConfig,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self._config = config
        self._session_factory = session_factory or AttestedBackendClient

    def _resolve(self, authorization: AuthorizationHeader, request_id: str, operation: str) -> str:
        try:
            return resolve_api_key(authorization, self._config.default_api_key)
        except AuthenticationError as exc:
            log_request(
                request_id=request_id,
                operation=operation,
                outcome="auth_error",
                error=exc.detail,
            )
            raise

    async def _connect(self, api_key: str, request_id: str, operation: str) -> SecureSession:
        try:
            return await bootstrap(
                self._config.backend_url, api_key, self._session_factory
            )
        except SecureConnectError as exc:
            log_request(
                request_id=request_id,
                operation=operation,
                outcome="secure_connection_error",
                api_key=api_key,
                error=exc.kind.value,
            )
            raise

    async def _invoke(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        label: str,
        request_id: str,
        operation: str,
        api_key: str,
        model: Optional[str] = None,
    ) -> T:
        """Run one backend call, normalizing unexpected failures to BackendError."""
        try:
            return await call()
        except (BackendError, SecureConnectError) as exc:
            logger.error("%s", exc.detail)
            err = exc
        except Exception as exc:
            logger.error("Failed to %s: %s", label, exc)
            err = BackendError(label, str(exc) or type(exc).__name__)
            err.__cause__ = exc
        log_request(
            request_id=request_id,
            operation=operation,
            outcome="backend_error",
            api_key=api_key,
            model=model,
            error=err.detail,
        )
        raise err

    async def list_models(
        self, authorization: AuthorizationHeader, *, request_id: str
    ) -> Dict[str, Any]:
        """Return the backend's model list document."""
        operation = "list_models"
        api_key = self._resolve(authorization, request_id, operation)
        logger.debug("Listing models for API key: %s", mask_api_key(api_key))

        session = await self._connect(api_key, request_id, operation)
        try:
            models = await self._invoke(
                session.list_models,
                label="retrieve models",
                request_id=request_id,
                operation=operation,
                api_key=api_key,
            )
        finally:
            await session.aclose()

        data = models.get("data") if isinstance(models, dict) else None
        count = len(data) if isinstance(data, list) else None
        logger.debug("Successfully retrieved %s models", count)
        log_request(
            request_id=request_id,
            operation=operation,
            outcome="success",
            api_key=api_key,
            detail={"models": count},
        )
        return models

    async def create_chat_completion(
        self,
        authorization: AuthorizationHeader,
        request: ChatCompletionRequest,
        *,
        request_id: str,
    ) -> Union[Dict[str, Any], StreamTranslator]:
        """Forward a chat completion.

        Returns the completion document for non-streaming requests, or a
        StreamTranslator producing SSE frames when ``stream`` is true. The
        translator owns the session from that point on.
        """
        operation = "chat_completion"
        stream = bool(request.stream)
        api_key = self._resolve(authorization, request_id, operation)
        logger.debug(
            "Chat completion request for model: %s, stream: %s", request.model, stream
        )

        document = request.to_backend()
        session = await self._connect(api_key, request_id, operation)

        if stream:
            try:
                chunks = await self._invoke(
                    lambda: session.chat_completion_stream(document),
                    label="create streaming completion",
                    request_id=request_id,
                    operation=operation,
                    api_key=api_key,
                    model=request.model,
                )
            except BaseException:
                await session.aclose()
                raise

            translator: StreamTranslator

            async def _finish() -> None:
                await session.aclose()
                if translator.state == StreamState.STREAMING:
                    outcome = "client_disconnected"
                elif translator.state == StreamState.TERMINATED_ERROR:
                    outcome = "stream_error"
                else:
                    outcome = "success"
                log_request(
                    request_id=request_id,
                    operation=operation,
                    outcome=outcome,
                    api_key=api_key,
                    model=request.model,
                    stream=True,
                    detail={"chunks": translator.chunk_count},
                    error=translator.error.detail if translator.error else None,
                )

            translator = StreamTranslator(chunks, on_close=_finish)
            return translator

        document["stream"] = False
        try:
            response = await self._invoke(
                lambda: session.chat_completion(document),
                label="create completion",
                request_id=request_id,
                operation=operation,
                api_key=api_key,
                model=request.model,
            )
        finally:
            await session.aclose()

        completion_id = response.get("id") if isinstance(response, dict) else None
        logger.debug("Successfully created chat completion: %s", completion_id)
        log_request(
            request_id=request_id,
            operation=operation,
            outcome="success",
            api_key=api_key,
            model=request.model,
            stream=False,
            detail={"completion_id": completion_id},
        )
        return response

    async def create_embeddings(
        self,
        authorization: AuthorizationHeader,
        request: EmbeddingRequest,
        *,
        request_id: str,
    ) -> Dict[str, Any]:
        """Forward an embeddings request."""
        operation = "embeddings"
        api_key = self._resolve(authorization, request_id, operation)
        logger.debug("Embeddings request for model: %s", request.model)

        document = request.to_backend()
        session = await self._connect(api_key, request_id, operation)
        try:
            response = await self._invoke(
                lambda: session.embeddings(document),
                label="create embeddings",
                request_id=request_id,
                operation=operation,
                api_key=api_key,
                model=request.model,
            )
        finally:
            await session.aclose()

        data = response.get("data") if isinstance(response, dict) else None
        count = len(data) if isinstance(data, list) else None
        logger.debug("Successfully created embeddings with %s vectors", count)
        log_request(
            request_id=request_id,
            operation=operation,
            outcome="success",
            api_key=api_key,
            model=request.model,
            detail={"vectors": count},
        )
        return response
