"""Credential resolution for the Maple proxy.

The caller's backend API key comes from an ``Authorization: Bearer <key>``
header when one is sent, otherwise from the configured default key.
Resolution is a pure function of its inputs.
"""

from typing import Optional, Union

from maple_proxy.errors import AuthenticationError, ErrorKind

BEARER_PREFIX = "Bearer "


def resolve_api_key(
    header_value: Optional[Union[str, bytes]],
    default_key: Optional[str],
) -> str:
    """Resolve the backend API key for a request.

    Args:
        header_value: Raw ``Authorization`` header value, or None when the
            header is absent. Bytes are decoded as UTF-8.
        default_key: The configured fallback key, if any.

    Returns:
        The API key to present to the backend.

    Raises:
        AuthenticationError: MALFORMED if the header is present but is not a
            non-empty ``Bearer`` token; MISSING if there is neither a header
            nor a default key.
    """
    if header_value is not None:
        if isinstance(header_value, bytes):
            try:
                header_value = header_value.decode("utf-8")
            except UnicodeDecodeError:
                raise AuthenticationError(
                    ErrorKind.AUTH_MALFORMED, "Invalid Authorization header format"
                )

        if not header_value.startswith(BEARER_PREFIX):
            raise AuthenticationError(
                ErrorKind.AUTH_MALFORMED,
                "Invalid Authorization header format. Expected 'Bearer <api key>'.",
            )

        key = header_value[len(BEARER_PREFIX):]
        if not key.strip():
            raise AuthenticationError(
                ErrorKind.AUTH_MALFORMED, "Empty bearer token in Authorization header"
            )
        return key

    if default_key:
        return default_key

    raise AuthenticationError(
        ErrorKind.AUTH_MISSING,
        "No API key provided. Set MAPLE_API_KEY environment variable "
        "or provide Authorization header",
    )
