"""HTTPX client for the hosted analyze-photo function."""

from dataclasses import dataclass

import httpx

from meal_reconciler.domain.errors import ModelOutputMalformed
from meal_reconciler.services.inference import InferenceClient


@dataclass
class HttpxEdgeInferenceClient(InferenceClient):
    """Posts inference requests to an edge function that proxies the model."""

    url: str
    api_key: str
    http_client: httpx.AsyncClient

    @classmethod
    def create(cls, url: str, api_key: str) -> "HttpxEdgeInferenceClient":
        """Create an edge client with a managed httpx session."""
        return cls(url=url, api_key=api_key, http_client=httpx.AsyncClient())

    async def infer(  # noqa: PLR0913
        self,
        *,
        model: str,
        reasoning_effort: str | None,
        store: bool,
        prompt: str,
        schema: dict[str, object],
        image_url: str | None,
        text: str | None,
    ) -> dict[str, object]:
        """POST the request; the per-attempt timeout comes from the retry policy."""
        response = await self.http_client.post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": model,
                "reasoning_effort": reasoning_effort,
                "store": store,
                "prompt": prompt,
                "schema": schema,
                "image_url": image_url,
                "text": text,
            },
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise ModelOutputMalformed("Edge function returned invalid JSON") from exc

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()
