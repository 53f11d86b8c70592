"""HTTP request function for models.

Implementation rules enforced here (Rule 8):
- Never print
- Never read global config or environment
- Always return simple dicts
- Side effects: outbound HTTP only

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": [],
    "writes": [],
    "external": ["http.request"],
}

import json
from typing import Any, Dict, Optional

import httpx

DEFAULT_TIMEOUT = 30.0


def request(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
    timeout: float = DEFAULT_TIMEOUT,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """Send an HTTP request.

    Mapping and list bodies are sent as JSON, strings as-is. JSON responses
    are decoded; anything else is returned as text.

    Returns:
        {"status": int, "headers": {...}, "body": decoded or text}
    """
    kwargs: Dict[str, Any] = {"headers": headers or {}}
    if isinstance(body, (dict, list)):
        kwargs["json"] = body
    elif body is not None:
        kwargs["content"] = str(body)

    if client is not None:
        response = client.request(method.upper(), url, timeout=timeout, **kwargs)
    else:
        response = httpx.request(method.upper(), url, timeout=timeout, **kwargs)

    content_type = response.headers.get("content-type", "")
    payload: Any = response.text
    if "json" in content_type:
        try:
            payload = response.json()
        except json.JSONDecodeError:
            pass
    return {
        "status": response.status_code,
        "headers": dict(response.headers),
        "body": payload,
    }


FUNCTIONS: Dict[str, Dict[str, Any]] = {
    "http_request": {
        "func": request,
        "description": "performs an HTTP request and returns status, headers and body",
        "input_schema": {
            "type": "object",
            "required": ["method", "url"],
            "properties": {
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]},
                "url": {"type": "string"},
                "headers": {"type": "object"},
                "body": {},
            },
        },
    },
}
