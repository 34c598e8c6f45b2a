"""
Prediction Client
Submits images to the Replicate predictions API and reads prediction status.

API reference: https://replicate.com/docs/reference/http
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from avatargen.core.config import settings
from avatargen.core.exceptions import (
    InvalidInputError,
    PayloadTooLargeError,
    PollError,
    SubmissionError,
)
from avatargen.schemas.job import PredictionResult, PredictionState

logger = logging.getLogger(__name__)

# Placeholder some clients store when no real image was captured
PLACEHOLDER_IMAGE = "data:image/jpeg;base64,direct-upload"


@dataclass(frozen=True)
class PredictionInput:
    """The image sent to the model: an inline data URI or a locator URL."""
    image: str
    is_inline: bool

    @classmethod
    def inline(cls, data_uri: str) -> "PredictionInput":
        return cls(image=data_uri, is_inline=True)

    @classmethod
    def locator(cls, url: str) -> "PredictionInput":
        return cls(image=url, is_inline=False)

    @property
    def kind(self) -> str:
        return "inline" if self.is_inline else "locator"


class PredictionClient:
    """Async client for the prediction service."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        model_version: Optional[str] = None,
        prompt: Optional[str] = None,
        max_inline_size: Optional[int] = None,
        submit_timeout: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token if api_token is not None else settings.REPLICATE_API_TOKEN
        self.base_url = (base_url or settings.REPLICATE_API_URL).rstrip("/")
        self.model_version = model_version or settings.REPLICATE_MODEL_VERSION
        self.prompt = prompt or settings.AVATAR_PROMPT
        self.max_inline_size = max_inline_size or settings.MAX_INLINE_PAYLOAD_SIZE
        self.submit_timeout = submit_timeout or settings.SUBMIT_TIMEOUT
        self.poll_timeout = poll_timeout or settings.POLL_REQUEST_TIMEOUT
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def validate(self, prediction_input: PredictionInput) -> None:
        """
        Local checks run before any request is sent.

        Raises:
            InvalidInputError: missing image or the placeholder sentinel
            PayloadTooLargeError: inline payload above the ceiling
        """
        image = prediction_input.image
        if not image:
            raise InvalidInputError("Missing image source")
        if image == PLACEHOLDER_IMAGE:
            raise InvalidInputError("Invalid image source")
        if prediction_input.is_inline and len(image) > self.max_inline_size:
            raise PayloadTooLargeError(len(image), self.max_inline_size)

    async def submit(self, prediction_input: PredictionInput, prompt: Optional[str] = None) -> str:
        """
        Start a prediction and return its handle.

        Raises:
            InvalidInputError / PayloadTooLargeError: rejected locally
            SubmissionError: upstream rejected the request or returned no id
        """
        self.validate(prediction_input)

        body = {
            "version": self.model_version,
            "input": {
                "image": prediction_input.image,
                "prompt": prompt or self.prompt,
            },
        }
        logger.info(f"[Prediction] Submitting {prediction_input.kind} image ({len(prediction_input.image)} chars)")

        try:
            response = await self._client.post("/predictions", json=body, timeout=self.submit_timeout)
        except httpx.TimeoutException as e:
            raise SubmissionError(f"Prediction request timed out after {self.submit_timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise SubmissionError(f"Prediction request failed: {e}") from e

        if not response.is_success:
            logger.error(f"[Prediction] API error {response.status_code}: {response.text[:300]}")
            raise SubmissionError(
                f"API Error: {response.status_code}",
                status_code=response.status_code,
                upstream_message=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SubmissionError("Prediction response was not JSON", status_code=response.status_code) from e

        handle = data.get("id") if isinstance(data, dict) else None
        if not handle:
            upstream = data.get("error") if isinstance(data, dict) else None
            raise SubmissionError(
                upstream or "Failed to start prediction",
                status_code=response.status_code,
                upstream_message=str(data),
            )

        logger.info(f"[Prediction] Started prediction {handle}")
        return handle

    async def poll(self, handle: str) -> PredictionResult:
        """
        Single status check, no waiting.

        Raises:
            PollError: transport failure, non-2xx, or undecodable body
        """
        try:
            response = await self._client.get(f"/predictions/{handle}", timeout=self.poll_timeout)
        except httpx.HTTPError as e:
            raise PollError(f"Status check failed: {e}", handle=handle) from e

        if not response.is_success:
            raise PollError(
                f"Status check returned {response.status_code}",
                handle=handle,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PollError("Status response was not JSON", handle=handle) from e
        if not isinstance(data, dict):
            raise PollError("Status response was not an object", handle=handle)

        upstream_status = data.get("status")
        if upstream_status == "succeeded":
            state = PredictionState.SUCCEEDED
        elif upstream_status == "failed":
            state = PredictionState.FAILED
        else:
            # starting, processing and anything unrecognized
            state = PredictionState.RUNNING

        error = data.get("error")
        return PredictionResult(
            status=state,
            output=data.get("output"),
            error=str(error) if error else None,
        )

    async def close(self):
        await self._client.aclose()


__all__ = ["PLACEHOLDER_IMAGE", "PredictionInput", "PredictionClient"]
