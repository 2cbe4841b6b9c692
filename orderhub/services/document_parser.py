"""
Order Hub - Document Parser Client

parse(case_id, file_url) -> ParseResult(status ok|blocked, canonical, issues)

Spreadsheet parsing itself happens in the parser service. A `blocked`
result (unreadable file, no header row, no line items, ...) sends the case
straight to Blocked; it is an answer, not an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from orderhub.services import config
from orderhub.services.case_models import CanonicalOrder
from orderhub.services.errors import BusinessValidationError, TransientStepError

logger = logging.getLogger(__name__)


class ParseStatus:
    OK = "ok"
    BLOCKED = "blocked"


@dataclass
class ParseResult:
    status: str
    canonical: Optional[CanonicalOrder] = None
    issues: List[Dict[str, Any]] = field(default_factory=list)
    block_reason: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return self.status == ParseStatus.BLOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "canonical": self.canonical.model_dump(mode="json") if self.canonical else None,
            "issues": list(self.issues),
            "block_reason": self.block_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParseResult":
        canonical = data.get("canonical") or data.get("canonical_data")
        return cls(
            status=data.get("status", ParseStatus.OK),
            canonical=CanonicalOrder.model_validate(canonical) if canonical else None,
            issues=list(data.get("issues", [])),
            block_reason=data.get("block_reason"),
        )


def _blocked(reason: str, issues: List[Dict[str, Any]] = None) -> ParseResult:
    return ParseResult(
        status=ParseStatus.BLOCKED,
        issues=issues or [{"code": "BLOCKED", "severity": "blocker", "message": reason}],
        block_reason=reason,
    )


def _to_parse_result(data: Dict[str, Any]) -> ParseResult:
    if data.get("status") == ParseStatus.BLOCKED:
        issues = list(data.get("issues", []))
        reason = data.get("block_reason") or (issues[0].get("message") if issues else "File could not be parsed")
        return _blocked(reason, issues or None)
    try:
        result = ParseResult.from_dict(data)
    except ValidationError as e:
        logger.warning("Parser returned malformed order data: %s", e)
        return _blocked("Parsed order data is malformed")
    if result.canonical is None or not result.canonical.line_items:
        return _blocked("No line items found in file", result.issues or None)
    return result


class HttpDocumentParser:
    """Parser service over HTTP (POST /parse)."""

    def __init__(self, base_url: str = config.PARSER_SERVICE_URL, timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def parse(self, case_id: str, file_url: str) -> ParseResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/parse", json={"case_id": case_id, "file_url": file_url})
        except httpx.TransportError as e:
            raise TransientStepError(f"Parser unavailable: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientStepError(f"Parser returned {resp.status_code}", status_code=resp.status_code)
        if resp.status_code != 200:
            raise BusinessValidationError(
                f"Parser rejected file: {resp.status_code} - {resp.text[:200]}",
                status_code=resp.status_code, details={"file_url": file_url},
            )
        return _to_parse_result(resp.json())


class InMemoryDocumentParser:
    """Canned parse results keyed by file url."""

    def __init__(self, results: Dict[str, Any] = None):
        self.results: Dict[str, Any] = dict(results or {})
        self.calls: List[str] = []

    def register(self, file_url: str, result: Any) -> None:
        """`result` is a ParseResult or the parser service's JSON answer."""
        self.results[file_url] = result

    async def parse(self, case_id: str, file_url: str) -> ParseResult:
        self.calls.append(file_url)
        result = self.results.get(file_url)
        if result is None:
            return _blocked(f"File not found: {file_url}")
        if isinstance(result, Exception):
            raise result
        if isinstance(result, ParseResult):
            return result
        return _to_parse_result(result)
