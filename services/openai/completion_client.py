"""Chat-completion requests against an OpenAI-compatible endpoint.

Streaming requests return a `CompletionStream`, a single-pass handle over
the raw response bytes; framing and delta extraction happen downstream in
`services.streaming`. Non-streaming requests return the decoded
`ChatCompletion`.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

import httpx
import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletion

from models.errors import EndpointError, InvalidCredential, RateLimited, StreamReadError, Unauthorized

LOGGER = logging.getLogger(__name__)

CREDENTIAL_PREFIX = "sk-"
CREDENTIAL_MIN_LENGTH = 20


def is_valid_credential(credential: Optional[str]) -> bool:
    """Return True when the credential has the expected surface shape."""
    return (
        isinstance(credential, str)
        and credential.startswith(CREDENTIAL_PREFIX)
        and len(credential) > CREDENTIAL_MIN_LENGTH
    )


def to_history(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, str]]:
    """Reduce message-like mappings to the role/content pairs the endpoint accepts."""
    history: List[Dict[str, str]] = []
    for message in messages:
        content = message.get("content")
        if content is None:
            content = message.get("text", "")
        history.append({"role": str(message["role"]), "content": str(content)})
    return history


class CompletionStream:
    """Live, single-pass handle over a streaming completion response.

    `close()` may be called at any point, including while `chunks()` is
    being consumed; the byte sequence then ends without error.
    """

    def __init__(self, response: Any, exit_stack: Optional[AsyncExitStack] = None) -> None:
        self._response = response
        self._exit_stack = exit_stack
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield raw response bytes as they arrive."""
        try:
            async for chunk in self._response.iter_bytes():
                if self._closed:
                    return
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if self._closed:
                return
            raise StreamReadError(f"Completion stream interrupted: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        else:
            await self._response.close()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class CompletionClient:
    """Issue chat-completion requests with a per-call credential."""

    def __init__(self, client: AsyncOpenAI) -> None:
        if client is None:
            raise ValueError("AsyncOpenAI client is required.")
        self.client = client

    async def request(
        self,
        history: Sequence[Mapping[str, Any]],
        credential: Optional[str],
        model: str,
        streaming: bool,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        organization: Optional[str] = None,
        beta: Optional[str] = None,
    ) -> Union[CompletionStream, ChatCompletion]:
        """Send `history` to the endpoint.

        Args:
            history: Ordered role/content pairs; extra keys are dropped.
            credential: Bearer credential, validated before any network call.
            model: Model name read from the ModelSelector.
            streaming: Return a `CompletionStream` instead of a decoded response.
            temperature: Optional sampling temperature passed through.
            max_tokens: Optional completion length limit passed through.
            organization: Sent as the `OpenAI-Organization` header when given.
            beta: Sent as the `OpenAI-Beta` header when given.

        Raises:
            InvalidCredential: The credential shape is wrong; nothing was sent.
            Unauthorized: The endpoint rejected the credential (401).
            RateLimited: The endpoint reported a rate or quota limit (429).
            EndpointError: Any other non-2xx response.
            StreamReadError: The transport failed before a response arrived.
        """
        if not is_valid_credential(credential):
            raise InvalidCredential(
                f"Credential must start with {CREDENTIAL_PREFIX!r} and be longer than "
                f"{CREDENTIAL_MIN_LENGTH} characters."
            )

        messages = to_history(history)
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["max_tokens"] = max_tokens
        if beta:
            options["extra_headers"] = {"OpenAI-Beta": beta}

        LOGGER.info(
            "Completion request: model=%s streaming=%s messages=%d", model, streaming, len(messages)
        )
        client_options: Dict[str, Any] = {"api_key": credential}
        if organization:
            client_options["organization"] = organization
        scoped = self.client.with_options(**client_options)

        try:
            if streaming:
                exit_stack = AsyncExitStack()
                response = await exit_stack.enter_async_context(
                    scoped.chat.completions.with_streaming_response.create(
                        model=model, messages=messages, stream=True, **options
                    )
                )
                return CompletionStream(response, exit_stack)
            return await scoped.chat.completions.create(
                model=model, messages=messages, stream=False, **options
            )
        except openai.AuthenticationError as exc:
            LOGGER.error("Completion endpoint rejected credential: %s", exc.status_code)
            raise Unauthorized("Credential rejected by completion endpoint.", exc.status_code, exc.body) from exc
        except openai.RateLimitError as exc:
            LOGGER.error("Completion endpoint rate limited the request: %s", exc.status_code)
            raise RateLimited("Completion endpoint rate or quota limit exceeded.", exc.status_code, exc.body) from exc
        except openai.APIStatusError as exc:
            LOGGER.error("Completion endpoint error: %s", exc.status_code)
            raise EndpointError(
                f"Completion endpoint returned {exc.status_code}.", exc.status_code, exc.body
            ) from exc
        except openai.APIConnectionError as exc:
            raise StreamReadError(f"Completion transport failure: {exc}") from exc
