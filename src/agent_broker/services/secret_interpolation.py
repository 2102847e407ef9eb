import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

LOCATION_HEADER = "header"
LOCATION_QUERY = "query"
LOCATION_BODY = "body"

_LOCATION_LABELS = {
    LOCATION_HEADER: "headers",
    LOCATION_QUERY: "query parameters",
    LOCATION_BODY: "request body",
}


def placeholder_for(alias: str) -> str:
    return "{" + alias + "}"


def location_label(location: str) -> str:
    return _LOCATION_LABELS.get(location, location)


def interpolate_text(text: str, alias: str, secret: str) -> Tuple[str, bool]:
    placeholder = placeholder_for(alias)
    if placeholder not in text:
        return text, False
    return text.replace(placeholder, secret), True


def _interpolate_json(value: Any, alias: str, secret: str) -> Tuple[Any, bool]:
    if isinstance(value, str):
        return interpolate_text(value, alias, secret)
    if isinstance(value, dict):
        hit = False
        out: Dict[str, Any] = {}
        for key, item in value.items():
            out[key], item_hit = _interpolate_json(item, alias, secret)
            hit = hit or item_hit
        return out, hit
    if isinstance(value, list):
        hit = False
        items = []
        for item in value:
            replaced, item_hit = _interpolate_json(item, alias, secret)
            items.append(replaced)
            hit = hit or item_hit
        return items, hit
    return value, False


@dataclass
class InterpolationResult:
    headers: Dict[str, str]
    query: List[Tuple[str, str]]
    body: Optional[str]
    secret_in_header: bool = False
    secret_in_query: bool = False
    secret_in_body: bool = False
    disallowed: List[str] = field(default_factory=list)

    @property
    def used_anywhere(self) -> bool:
        return self.secret_in_header or self.secret_in_query or self.secret_in_body

    def locations(self) -> Dict[str, bool]:
        return {
            LOCATION_HEADER: self.secret_in_header,
            LOCATION_QUERY: self.secret_in_query,
            LOCATION_BODY: self.secret_in_body,
        }


class SecretInterpolationEngine:
    """Substitutes ``{alias}`` placeholders with the secret, tracking which locations received it.

    JSON bodies are interpolated value by value before encoding, so a secret
    containing quotes cannot break the document.
    """

    def interpolate(
        self,
        alias: str,
        secret: str,
        headers: Dict[str, str],
        query: List[Tuple[str, str]],
        body_text: Optional[str] = None,
        body_json: Optional[Dict[str, Any]] = None,
    ) -> InterpolationResult:
        out_headers: Dict[str, str] = {}
        in_header = False
        for key, value in headers.items():
            out_headers[key], hit = interpolate_text(value, alias, secret)
            in_header = in_header or hit

        out_query: List[Tuple[str, str]] = []
        in_query = False
        for key, value in query:
            replaced, hit = interpolate_text(value, alias, secret)
            out_query.append((key, replaced))
            in_query = in_query or hit

        body: Optional[str] = None
        in_body = False
        if body_json is not None:
            replaced_json, in_body = _interpolate_json(body_json, alias, secret)
            body = json.dumps(replaced_json, ensure_ascii=False)
        elif body_text:
            body, in_body = interpolate_text(body_text, alias, secret)
        elif body_text is not None:
            body = body_text

        return InterpolationResult(
            headers=out_headers,
            query=out_query,
            body=body,
            secret_in_header=in_header,
            secret_in_query=in_query,
            secret_in_body=in_body,
        )

    def check_locations(
        self,
        result: InterpolationResult,
        allowed_in_header: bool,
        allowed_in_query: bool,
        allowed_in_body: bool,
    ) -> List[str]:
        """Locations that received the secret without permission, in header/query/body order."""
        violations: List[str] = []
        if result.secret_in_header and not allowed_in_header:
            violations.append(LOCATION_HEADER)
        if result.secret_in_query and not allowed_in_query:
            violations.append(LOCATION_QUERY)
        if result.secret_in_body and not allowed_in_body:
            violations.append(LOCATION_BODY)
        result.disallowed = violations
        return violations
