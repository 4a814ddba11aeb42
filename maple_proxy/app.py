"""FastAPI application for the Maple proxy.

Exposes an OpenAI-compatible surface (models, chat completions, embeddings)
and relays every call to the attestation-gated Maple backend. All failures
are rendered as OpenAI-style error documents.
"""

import uuid
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from maple_proxy.config import SERVICE_NAME, SERVICE_VERSION, ProxyConfig, load_config
from maple_proxy.errors import ProxyError, error_document, error_response
from maple_proxy.models import ChatCompletionRequest, EmbeddingRequest, HealthResponse
from maple_proxy.proxy import AuthorizationHeader, ProxyService
from maple_proxy.secure_client import SessionFactory
from maple_proxy.streaming import StreamTranslator
from maple_proxy.telemetry import logger

REQUEST_ID_HEADER = "X-Request-ID"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def new_request_id() -> str:
    return "mp-{}".format(uuid.uuid4().hex[:12])


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = new_request_id()
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or new_request_id()


def _authorization(request: Request) -> AuthorizationHeader:
    """Return the raw Authorization header bytes, or None when absent."""
    for name, value in request.headers.raw:
        if name.lower() == b"authorization":
            return value
    return None


def _service(request: Request) -> ProxyService:
    return request.app.state.proxy


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
@router.get("/", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe; no backend contact."""
    return HealthResponse(status="ok", service=SERVICE_NAME, version=SERVICE_VERSION)


@router.get("/v1/models", response_model=None)
async def list_models(request: Request) -> Dict[str, Any]:
    return await _service(request).list_models(
        _authorization(request), request_id=_request_id(request)
    )


@router.post("/v1/chat/completions", response_model=None)
async def create_chat_completion(
    request: Request, payload: ChatCompletionRequest
) -> Union[Dict[str, Any], StreamingResponse]:
    """Handle a chat completion, streaming or not.

    Streaming responses commit a 200 ``text/event-stream`` before the first
    backend chunk is translated; later failures arrive as an in-band error
    event.
    """
    result = await _service(request).create_chat_completion(
        _authorization(request), payload, request_id=_request_id(request)
    )
    if isinstance(result, StreamTranslator):
        return StreamingResponse(
            result.events(),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )
    return result


@router.post("/v1/embeddings", response_model=None)
async def create_embeddings(request: Request, payload: EmbeddingRequest) -> Dict[str, Any]:
    return await _service(request).create_embeddings(
        _authorization(request), payload, request_id=_request_id(request)
    )


def create_app(
    config: Optional[ProxyConfig] = None,
    session_factory: Optional[SessionFactory] = None,
) -> FastAPI:
    """Build the proxy application.

    Args:
        config: Proxy configuration; loaded from the environment when omitted.
        session_factory: Builds backend sessions; defaults to the httpx
            attested client. Tests inject fakes here.
    """
    if config is None:
        config = load_config()

    app = FastAPI(title="Maple Proxy", version=SERVICE_VERSION)
    app.state.proxy = ProxyService(config, session_factory)

    app.add_middleware(RequestIDMiddleware)
    if config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        param = None
        message = "Request validation failed"
        if errors:
            first = errors[0]
            loc = [str(part) for part in first.get("loc", ()) if part != "body"]
            param = ".".join(loc) or None
            message = "{}: {}".format(message, first.get("msg", "invalid value"))
        body = error_document(message, "invalid_request_error", param=param)
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        body = error_document("Internal server error", "server_error")
        response = JSONResponse(status_code=500, content=body.model_dump())
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.include_router(router)
    return app
