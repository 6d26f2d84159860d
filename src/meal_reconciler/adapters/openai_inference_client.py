"""OpenAI Responses API client for meal inference."""

import json
from dataclasses import dataclass

from openai import AsyncOpenAI

from meal_reconciler.domain.errors import ModelOutputMalformed
from meal_reconciler.services.inference import InferenceClient


@dataclass
class OpenAIInferenceClient(InferenceClient):
    """Inference client backed by OpenAI Responses API."""

    client: AsyncOpenAI

    @classmethod
    def create(cls, api_key: str) -> "OpenAIInferenceClient":
        """Create an OpenAI inference client."""
        return cls(client=AsyncOpenAI(api_key=api_key))

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
        """Call OpenAI Responses API with structured outputs.

        ``text`` is already part of the prompt; the image goes in as a
        separate input part when present.
        """
        content: list[dict[str, object]] = [{"type": "input_text", "text": prompt}]
        if image_url:
            content.append({"type": "input_image", "image_url": image_url})
        request_payload: dict[str, object] = {
            "model": model,
            "input": [{"role": "user", "content": content}],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "meal_inference",
                    "strict": True,
                    "schema": schema,
                }
            },
            "store": store,
        }
        if reasoning_effort:
            request_payload["reasoning"] = {"effort": reasoning_effort}

        response = await self.client.responses.create(**request_payload)
        output_text = response.output_text
        if not output_text:
            raise ModelOutputMalformed("OpenAI returned an empty response")
        try:
            return json.loads(output_text)
        except json.JSONDecodeError as exc:
            raise ModelOutputMalformed("OpenAI returned invalid JSON") from exc

    async def close(self) -> None:
        await self.client.close()
