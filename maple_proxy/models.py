"""Request and response models for the Maple proxy.

Backend payloads are pass-through documents: only the fields the proxy
inspects are declared and everything else is kept via ``extra="allow"``.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatCompletionRequest(BaseModel):
    """OpenAI-style chat completion request forwarded to the backend."""

    model_config = ConfigDict(extra="allow")

    model: str = Field(..., min_length=1, description="Backend model name")
    messages: List[Dict[str, Any]] = Field(
        ..., min_length=1, description="Conversation messages"
    )
    stream: Optional[bool] = Field(
        default=None, description="Return a server-sent event stream"
    )

    def to_backend(self) -> Dict[str, Any]:
        """Serialize for forwarding, dropping unset optional fields."""
        return self.model_dump(exclude_none=True)


class EmbeddingRequest(BaseModel):
    """OpenAI-style embeddings request forwarded to the backend."""

    model_config = ConfigDict(extra="allow")

    model: str = Field(..., min_length=1, description="Embedding model name")
    input: Any = Field(..., description="Text or list of texts to embed")

    def to_backend(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class HealthResponse(BaseModel):
    """Liveness document returned by / and /health."""

    status: str = "ok"
    service: str
    version: str


class ErrorDetail(BaseModel):
    """Structured error detail."""

    message: str
    type: str
    param: Optional[str] = None
    code: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
