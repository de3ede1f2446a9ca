"""
OpenAI implementation of the AI backend contract.

Translates OpenAI responses and errors into AIResult, SafetyBlocked and
UpstreamBackendError.
"""

import threading
from typing import Iterator, Optional

import openai
from openai import OpenAI

from ..core.errors import SafetyBlocked, UpstreamBackendError
from ..core.routing import RequestClass
from .backend import AIResult

DEFAULT_IMAGE_RESOLUTION = "1024x1024"


class OpenAIBackend:
    """Backend that calls OpenAI chat completions and image generation.

    Usage is reported by OpenAI for chat completions; images carry no
    token counts.
    """

    def __init__(self, client: Optional[OpenAI] = None):
        """Initialize the backend.

        Args:
            client: OpenAI client to use (defaults to one configured from the environment)
        """
        self.client = client or OpenAI()

    def invoke(
        self,
        model_id: str,
        prompt: str,
        modality: RequestClass,
        image_resolution: Optional[str] = None,
    ) -> AIResult:
        """Run a single request to completion.

        Raises:
            ValueError: If model_id or prompt is empty
            SafetyBlocked: If OpenAI refused the content
            UpstreamBackendError: For any other OpenAI failure
        """
        if not model_id or not model_id.strip():
            raise ValueError("model_id is required and cannot be empty")
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        if RequestClass(modality) == RequestClass.IMAGE:
            return self._generate_image(model_id, prompt, image_resolution)

        try:
            response = self.client.chat.completions.create(
                model=model_id,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        if not response.choices:
            raise UpstreamBackendError("OpenAI response contained no choices")
        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise SafetyBlocked(f"Response to {model_id} request was filtered")

        usage = response.usage
        return AIResult(
            content=choice.message.content or "",
            tokens_in=usage.prompt_tokens if usage else None,
            tokens_out=usage.completion_tokens if usage else None,
        )

    def stream(self, model_id: str, prompt: str) -> "ChatTextStream":
        """Stream a chat completion as text fragments.

        The request is sent when iteration starts. The returned handle can be
        closed from another thread to drop the HTTP connection mid-read.
        """
        return ChatTextStream(self.client, model_id, prompt)

    def _generate_image(self, model_id: str, prompt: str, image_resolution: Optional[str]) -> AIResult:
        try:
            response = self.client.images.generate(
                model=model_id,
                prompt=prompt,
                size=image_resolution or DEFAULT_IMAGE_RESOLUTION,
                n=1,
            )
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        if not response.data:
            raise UpstreamBackendError("OpenAI image response contained no data")
        image = response.data[0]
        return AIResult(content=image.url or image.b64_json or "")


def _translate_error(error: openai.OpenAIError) -> UpstreamBackendError:
    if getattr(error, "code", None) == "content_policy_violation":
        return SafetyBlocked(str(error))
    return UpstreamBackendError(str(error))


class ChatTextStream:
    """Text fragments of one streamed chat completion.

    Iterating sends the request and yields delta content as it arrives.
    close() releases the underlying response and is safe to call from a
    thread other than the one iterating.

    Raises (while iterating):
        SafetyBlocked: If OpenAI filtered the response mid-stream
        UpstreamBackendError: For any other OpenAI failure
    """

    def __init__(self, client: OpenAI, model_id: str, prompt: str):
        self._client = client
        self._model_id = model_id
        self._prompt = prompt
        self._lock = threading.Lock()
        self._response = None
        self._closed = False

    def __iter__(self) -> Iterator[str]:
        try:
            response = self._client.chat.completions.create(
                model=self._model_id,
                messages=[{"role": "user", "content": self._prompt}],
                stream=True,
            )
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

        with self._lock:
            if self._closed:
                response.close()
                return
            self._response = response

        try:
            for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta is not None and choice.delta.content:
                    yield choice.delta.content
                if choice.finish_reason == "content_filter":
                    raise SafetyBlocked(f"Stream from {self._model_id} was filtered")
        except openai.OpenAIError as e:
            raise _translate_error(e) from e
        finally:
            self.close()

    def close(self) -> None:
        """Release the HTTP response. Later calls are no-ops."""
        with self._lock:
            self._closed = True
            response, self._response = self._response, None
        if response is not None:
            response.close()
