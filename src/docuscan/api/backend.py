"""
Client for the DocuScan REST backend and the reply-letter webhook.

Uses aiohttp. The scan notification is best effort and never retried; the
reply endpoints are retried on transport errors with tenacity.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.analysis import TEMPLATE_LABELS, ParsedAnalysis
from ..core.errors import BackendError
from ..utils.log_utils import get_logger

logger = get_logger(__name__)


def _extract_text(body: Dict[str, Any]) -> Optional[str]:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    content = data.get("content") or body.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        if isinstance(text, str):
            return text
    return None


class BackendClient:
    """Thin aiohttp wrapper around the backend endpoints the client uses."""

    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = 15.0,
        webhook_url: Optional[str] = None,
        webhook_token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.webhook_url = webhook_url
        self.webhook_token = webhook_token
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("POST %s", url)
        async with self._get_session().post(url, json=payload) as response:
            if response.status >= 400:
                text = await response.text()
                logger.error("POST %s -> HTTP %d: %s", url, response.status, text[:200])
                raise BackendError(f"HTTP {response.status}: {text[:200]}", status=response.status)
            body = await response.json(content_type=None)
        if not isinstance(body, dict):
            raise BackendError(f"Unexpected response from {url}: {body!r}")
        return body

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise BackendError("Backend URL not configured")
        return f"{self.base_url}{path}"

    async def notify_scan_created(self, language: str) -> Optional[Dict[str, Any]]:
        """
        Tell the backend a scan was created. Best effort: failures are logged
        and None is returned.
        """
        if not self.base_url:
            logger.warning("Backend URL not configured, skipping scan notification")
            return None
        try:
            body = await self._post_json(self._url("/scans"), {"language": language})
        except (aiohttp.ClientError, BackendError, asyncio.TimeoutError) as err:
            logger.warning("Backend scan notification failed: %s", err)
            return None
        logger.debug("Backend scan record %s created", body.get("id"))
        return body

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def generate_response_letter(self, scan_id: str, analysis: ParsedAnalysis) -> str:
        """Ask the backend to draft a reply letter for an analyzed scan."""
        body = await self._post_json(
            self._url(f"/api/scans/{scan_id}/generate-response"),
            {"analysis": analysis.raw},
        )
        text = body.get("response")
        if not isinstance(text, str) or not text:
            raise BackendError("No response text in backend answer")
        return text

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def request_reply_template(self, template_type: str, analysis: ParsedAnalysis) -> str:
        """Fill one of the reply templates through the webhook."""
        if template_type not in TEMPLATE_LABELS:
            raise ValueError(f"Unknown template type {template_type!r}")
        if not self.webhook_url:
            raise BackendError("Reply webhook URL not configured")
        payload = {
            "token": self.webhook_token or "",
            "sender": analysis.sender or "",
            "type": analysis.type or "",
            "summary_ua": analysis.summary,
            "deadline": analysis.deadline or "",
            "amount": analysis.amount,
            "template_type": template_type,
        }
        body = await self._post_json(self.webhook_url, payload)
        text = _extract_text(body)
        if text is None:
            raise BackendError("Unexpected webhook response structure")
        return text
