"""HTTP client for the external document analyzer service."""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from income_verification.config import settings
from income_verification.exceptions import ExtractionFailure

logger = logging.getLogger(__name__)


class DocumentAnalyzer(Protocol):
    """Anything that can run an extraction model over raw document bytes."""

    async def analyze(self, content: bytes, model_id: str) -> Dict[str, Any]:
        ...


class AzureDocumentAnalyzer:
    """Client for the Document Intelligence REST API.

    Analysis is asynchronous on the service side: the submit call answers 202
    with an ``operation-location`` header which is polled until the
    operation succeeds or fails.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        api_version: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = (endpoint or settings.ANALYZER_ENDPOINT).rstrip("/")
        self.api_key = api_key or settings.ANALYZER_API_KEY
        self.api_version = api_version or settings.ANALYZER_API_VERSION
        self.poll_interval = settings.ANALYZER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_polls = max_polls or settings.ANALYZER_MAX_POLLS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(settings.ANALYZER_TIMEOUT_SECONDS, connect=10.0),
            headers={"Ocp-Apim-Subscription-Key": self.api_key},
            transport=self._transport,
        )

    async def analyze(self, content: bytes, model_id: str) -> Dict[str, Any]:
        """
        Run ``model_id`` over the document and return the ``analyzeResult`` body.

        Raises:
            ExtractionFailure: On missing credentials, HTTP errors, a failed
                operation, or when polling runs out of attempts
        """
        if not self.endpoint or not self.api_key:
            raise ExtractionFailure("Document analyzer credentials are not set.", model_id)

        analyze_url = (
            f"{self.endpoint}/documentintelligence/documentModels/{model_id}:analyze"
            f"?api-version={self.api_version}"
        )
        logger.info(f"Starting document analysis with model: {model_id}")

        try:
            async with self._client() as client:
                response = await client.post(
                    analyze_url,
                    content=content,
                    headers={"Content-Type": "application/octet-stream"},
                )
                if response.status_code != 202:
                    raise ExtractionFailure(
                        f"Analysis failed with status {response.status_code}: {response.text}",
                        model_id,
                    )

                operation_location = response.headers.get("operation-location")
                if not operation_location:
                    raise ExtractionFailure("No operation location received from analyzer", model_id)

                return await self._poll(client, operation_location, model_id)

        except httpx.HTTPError as e:
            logger.error(f"Document analyzer HTTP error: {e}")
            raise ExtractionFailure(f"Document analyzer unreachable: {e}", model_id) from e

    async def _poll(
        self, client: httpx.AsyncClient, operation_location: str, model_id: str
    ) -> Dict[str, Any]:
        for attempt in range(self.max_polls):
            await asyncio.sleep(self.poll_interval)

            status_response = await client.get(operation_location)
            if status_response.status_code != 200:
                raise ExtractionFailure(
                    f"Failed to get analysis status: {status_response.status_code}", model_id
                )

            body = status_response.json()
            status = body.get("status")
            logger.debug(f"Analysis status check {attempt + 1}: {status}")

            if status == "succeeded":
                logger.info(f"Analysis completed with model: {model_id}")
                return body.get("analyzeResult", {})
            if status == "failed":
                message = (body.get("error") or {}).get("message", "Unknown error")
                raise ExtractionFailure(f"Analysis failed: {message}", model_id)

        raise ExtractionFailure(
            f"Analysis timed out after {self.max_polls} status checks", model_id
        )
