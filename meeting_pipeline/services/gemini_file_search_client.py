import json
import uuid
from collections.abc import Mapping, Sequence
from typing import Any
from urllib import parse

from meeting_pipeline.services.errors import UpstreamError
from meeting_pipeline.services.http_client import JsonHttpClient


class GeminiFileSearchClient:
    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        upload_base_url: str = "https://generativelanguage.googleapis.com/upload/v1beta",
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
        http_client: JsonHttpClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base_url = api_base_url.rstrip("/")
        self.upload_base_url = upload_base_url.rstrip("/")
        self.http_client = http_client or JsonHttpClient(
            service_name="Gemini File Search",
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
            initial_backoff_seconds=initial_backoff_seconds,
        )

    def create_store(self, display_name: str) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key})
        response = self.http_client.post_json(
            f"{self.api_base_url}/fileSearchStores?{query}",
            {"displayName": display_name},
        )
        if not isinstance(response, Mapping) or not isinstance(response.get("name"), str):
            raise UpstreamError("Gemini File Search store response missing name.")
        return dict(response)

    def upload_document(
        self,
        *,
        store_name: str,
        display_name: str,
        content: bytes,
        custom_metadata: Sequence[Mapping[str, Any]],
        mime_type: str = "text/markdown",
    ) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key, "uploadType": "multipart"})
        endpoint = f"{self.upload_base_url}/{store_name}:uploadToFileSearchStore?{query}"
        metadata = {
            "displayName": display_name,
            "mimeType": mime_type,
            "customMetadata": [dict(entry) for entry in custom_metadata],
        }
        boundary = f"meeting-pipeline-{uuid.uuid4().hex}"
        body = _build_multipart_body(
            boundary=boundary,
            metadata=metadata,
            content=content,
            mime_type=mime_type,
        )
        response = self.http_client.send(
            "POST",
            endpoint,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            body=body,
        ).json()
        if not isinstance(response, Mapping):
            raise UpstreamError("Gemini File Search upload response is not a JSON object.")

        operation = dict(response)
        operation_result = operation.get("response")
        document_name = None
        if isinstance(operation_result, Mapping):
            document_name = operation_result.get("documentName") or operation_result.get("name")
        return {
            "name": document_name or operation.get("name"),
            "operation": operation,
        }

    def delete_document(self, document_name: str) -> None:
        query = parse.urlencode({"key": self.api_key, "force": "true"})
        self.http_client.send("DELETE", f"{self.api_base_url}/{document_name}?{query}")


def _build_multipart_body(
    *,
    boundary: str,
    metadata: Mapping[str, Any],
    content: bytes,
    mime_type: str,
) -> bytes:
    delimiter = f"--{boundary}\r\n".encode("utf-8")
    parts = [
        delimiter,
        b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
        json.dumps(metadata, ensure_ascii=False).encode("utf-8"),
        b"\r\n",
        delimiter,
        f"Content-Type: {mime_type}\r\n\r\n".encode("utf-8"),
        content,
        b"\r\n",
        f"--{boundary}--\r\n".encode("utf-8"),
    ]
    return b"".join(parts)
