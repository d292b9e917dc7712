"""Ask a language model for the next wallpaper prompt.

The request combines the prompt-writing guidelines, the style profile and
the feedback summary (liked exemplars, disliked exemplars, recent prompts
that must not be repeated, recent user comments). The model answers with a
JSON object that is validated into :class:`PromptData`.

Any object with a ``generate_prompt(style, summary, message=None)`` method
can stand in for :class:`OpenAIPromptClient`; tests use scripted fakes.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

import openai
from openai import OpenAI
from pydantic import ValidationError

from wallpapy.core.errors import ExternalServiceError, MalformedResponseError
from wallpapy.core.models import FeedbackSummary, PromptData, StyleProfile

logger = logging.getLogger(__name__)

PROMPT_GUIDELINES = """A well-crafted image prompt typically includes:
    Subject: The main focus of the image.
    Style: The artistic approach or visual aesthetic.
    Composition: How elements are arranged within the frame.
    Lighting: The type and quality of light in the scene.
    Color Palette: The dominant colors or color scheme.
    Mood/Atmosphere: The emotional tone or ambiance of the image.
    Technical Details: Perspective or specific visual techniques.

Provide specific details instead of vague descriptions. Use natural language rather
than keyword lists. Guide the overall composition, not just individual elements, and
always state the artistic style. Avoid overloading the prompt with conflicting ideas.
The image is a desktop wallpaper: keep the focal point clear and leave calm areas
where desktop icons can sit."""

SYSTEM_INSTRUCTION = (
    "You are a wallpaper image prompt generator. Write a prompt for a wallpaper image in a "
    "few sentences without new lines, following the prompt guidelines. Lean towards what the "
    "user liked, steer away from what they disliked, prioritise the user's comments as "
    "feedback, and make every new image clearly different in subject and composition from "
    "the recent prompts."
)

PROMPT_SCHEMA = {
    "type": "object",
    "properties": {
        "prompt": {
            "type": "string",
            "description": "The prompt to send to the image generator",
        },
        "shortened_prompt": {
            "type": "string",
            "description": "A shortened version of the prompt, only including the image "
            "description, max 25 words",
        },
    },
    "required": ["prompt", "shortened_prompt"],
    "additionalProperties": False,
}

# USD per million tokens (input, output)
TOKEN_PRICES = {"gpt-4o-mini": (0.15, 0.6), "gpt-4o": (2.5, 10.0)}


class PromptClient(Protocol):
    """Capability: produce one image prompt."""

    def generate_prompt(
        self,
        style: StyleProfile,
        summary: FeedbackSummary,
        message: str | None = None,
    ) -> PromptData: ...


def _bullet_list(items: tuple[str, ...]) -> str:
    return "\n".join(f"- {item}" for item in items)


def build_prompt_messages(
    style: StyleProfile,
    summary: FeedbackSummary,
    message: str | None = None,
) -> list[dict]:
    """Build the chat messages for one prompt request.

    Args:
        style: Aesthetic target
        summary: Feedback digest; may be empty on a cold start
        message: Optional one-off request from the user for this image

    Returns:
        List of chat messages in OpenAI format
    """
    style_lines = [f"Style (include in every prompt): {style.style}"]
    if style.contents:
        style_lines.append(f"Contents to create: {style.contents}")
    if style.negative_contents:
        style_lines.append(f"Avoid: {style.negative_contents}")

    if summary.is_empty:
        history = (
            "No feedback yet. This is the first wallpaper, pick any subject fitting the style."
        )
    else:
        sections = []
        if summary.liked_prompts:
            sections.append(
                "The user LIKED these, create more like them:\n"
                + _bullet_list(summary.liked_prompts)
            )
        if summary.disliked_prompts:
            sections.append(
                "The user DISLIKED these, avoid similar images:\n"
                + _bullet_list(summary.disliked_prompts)
            )
        if summary.comments:
            sections.append("User comments:\n" + _bullet_list(summary.comments))
        if summary.recent_prompts:
            sections.append(
                "Most recent prompts, do NOT repeat them and vary subject and composition:\n"
                + _bullet_list(summary.recent_prompts)
            )
        history = "\n\n".join(sections)

    messages = [
        {"role": "system", "name": "prompt_guidelines", "content": PROMPT_GUIDELINES},
        {"role": "system", "name": "style", "content": "\n".join(style_lines)},
        {"role": "system", "name": "history", "content": history},
        {"role": "system", "content": SYSTEM_INSTRUCTION},
    ]
    if message:
        messages.append(
            {"role": "user", "content": f"For this image the user requested: '{message}'"}
        )
    messages.append({"role": "user", "content": "Create me a new image prompt."})
    return messages


def parse_prompt_response(
    content: str | None,
    summary: FeedbackSummary,
    max_length: int,
) -> PromptData:
    """Validate the raw model output into PromptData.

    Raises:
        MalformedResponseError: If the output is missing, not the expected JSON
            object, empty, too long, or repeats a recent prompt verbatim
    """
    if not content or not content.strip():
        raise MalformedResponseError("Prompt model returned no content")

    try:
        data = PromptData.model_validate_json(content)
    except ValidationError as e:
        raise MalformedResponseError(f"Prompt model output is not valid prompt data: {e}") from e

    prompt = " ".join(data.prompt.split())
    if not prompt:
        raise MalformedResponseError("Prompt model returned an empty prompt")
    if len(prompt) > max_length:
        raise MalformedResponseError(
            f"Prompt is {len(prompt)} characters, maximum is {max_length}"
        )
    if prompt in {" ".join(p.split()) for p in summary.recent_prompts}:
        raise MalformedResponseError("Prompt model repeated a recent prompt verbatim")

    return PromptData(prompt=prompt, shortened_prompt=data.shortened_prompt.strip())


class OpenAIPromptClient:
    """Prompt generator backed by the OpenAI chat completions API.

    The SDK's own retries are disabled: one run makes at most one call.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 120.0,
        max_prompt_length: int = 1500,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.max_prompt_length = max_prompt_length
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            try:
                self._client = OpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
            except openai.OpenAIError as e:
                raise ExternalServiceError(f"Cannot create OpenAI client: {e}") from e
        return self._client

    def generate_prompt(
        self,
        style: StyleProfile,
        summary: FeedbackSummary,
        message: str | None = None,
    ) -> PromptData:
        """Request one new prompt.

        Raises:
            ExternalServiceError: On transport, authentication or quota failure
            MalformedResponseError: If the answer cannot be used as a prompt
        """
        client = self._get_client()
        messages = build_prompt_messages(style, summary, message)
        logger.debug(f"Prompt request:\n{dump_messages(messages)}")
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "prompt_data",
                        "schema": PROMPT_SCHEMA,
                        "strict": True,
                    },
                },
                max_tokens=1024,
            )
        except openai.APIError as e:
            logger.error(f"Prompt model request failed: {e}")
            raise ExternalServiceError(f"Prompt model request failed: {e}") from e

        if not response.choices:
            raise MalformedResponseError("Prompt model returned no choices")
        choice = response.choices[0].message
        if getattr(choice, "refusal", None):
            raise MalformedResponseError(f"Prompt model refused: {choice.refusal}")

        self._log_usage(response)
        prompt_data = parse_prompt_response(choice.content, summary, self.max_prompt_length)
        logger.info(f"Generated prompt: {prompt_data.prompt}")
        return prompt_data

    def _log_usage(self, response) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return
        input_price, output_price = TOKEN_PRICES.get(self.model, (0.0, 0.0))
        cost = (
            usage.prompt_tokens * input_price + usage.completion_tokens * output_price
        ) / 1_000_000
        logger.info(
            f"Prompt generation used {usage.prompt_tokens} prompt tokens and "
            f"{usage.completion_tokens} completion tokens at ${cost:.6f}"
        )


def dump_messages(messages: list[dict]) -> str:
    """Render chat messages for debug logging."""
    return json.dumps(messages, indent=2, ensure_ascii=False)
