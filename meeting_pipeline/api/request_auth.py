import hmac

from fastapi import Request

from meeting_pipeline.services.errors import WebhookSignatureError


def extract_shared_secret(request: Request, header_name: str) -> str | None:
    header_value = request.headers.get(header_name)
    if header_value:
        return header_value.strip()

    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    auth_scheme, _, auth_token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer":
        return None

    token = auth_token.strip()
    return token or None


def require_shared_secret(request: Request, *, header_name: str, expected_secret: str) -> None:
    if not expected_secret:
        return
    provided_secret = extract_shared_secret(request, header_name)
    if not provided_secret or not hmac.compare_digest(provided_secret, expected_secret):
        raise WebhookSignatureError("Invalid or missing secret.")
