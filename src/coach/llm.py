import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import openai
import tiktoken

from coach.config import COMPLETION_TIMEOUT_SECONDS, DEFAULT_OPENAI_MODEL, MAX_TOKENS, OPENAI_API_KEY, TEMPERATURE
from coach.errors import CompletionServiceError, CompletionTimeout, InternalInvariantViolation
from coach.modes import ChatMode
from coach.prompts import CompletionPayload


def split_text(text, max_length=4096):
    # Split the text into paragraphs using newlines
    paragraphs = text.split('\n')

    chunks = []
    current_chunk = ''

    for index, paragraph in enumerate(paragraphs):
        new_chunk = (paragraph + '\n') if index < len(paragraphs) - 1 else paragraph

        # Hard-wrap paragraphs that alone exceed the limit
        while len(new_chunk) > max_length:
            if current_chunk:
                chunks.append(current_chunk.rstrip('\n'))
                current_chunk = ''
            chunks.append(new_chunk[:max_length])
            new_chunk = new_chunk[max_length:]

        if len(current_chunk) + len(new_chunk) > max_length:
            chunks.append(current_chunk.rstrip('\n'))
            current_chunk = new_chunk
        else:
            current_chunk += new_chunk

    if current_chunk:
        chunks.append(current_chunk.rstrip('\n'))

    return chunks


def num_tokens_from_messages(messages, model=DEFAULT_OPENAI_MODEL):
    try:
        encoding = tiktoken.encoding_for_model(model)
    except KeyError:
        encoding = tiktoken.get_encoding("cl100k_base")
    num_tokens = 0
    for message in messages:
        num_tokens += 4  # every message follows <im_start>{role/name}\n{content}<im_end>\n
        for key, value in message.items():
            num_tokens += len(encoding.encode(value))
            if key == "name":  # if there's a name, the role is omitted
                num_tokens += -1  # role is always required and always 1 token
    num_tokens += 2  # every reply is primed with <im_start>assistant
    return num_tokens


@dataclass
class CompletionResult:
    reply: str
    tokens_used: Optional[int] = None


class CompletionClient:
    """Single bounded call to the completion service.

    The call is wrapped in asyncio.wait_for, so the in-flight request is
    cancelled when the deadline passes. There are no retries: the caller turns
    any failure into a fallback reply.
    """

    def __init__(self, client=None, model: str = DEFAULT_OPENAI_MODEL,
                 timeout_seconds: float = COMPLETION_TIMEOUT_SECONDS,
                 max_tokens: int = MAX_TOKENS, temperature: float = TEMPERATURE):
        self._client = client
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def client(self):
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=OPENAI_API_KEY, max_retries=0)
        return self._client

    async def complete(self, payload: CompletionPayload) -> CompletionResult:
        if payload.mode is not ChatMode.PERSONALIZED:
            raise InternalInvariantViolation("Completion requested for a generic-mode payload")

        messages = payload.to_messages()
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            logging.warning(f"Completion timed out after {self.timeout_seconds}s")
            raise CompletionTimeout() from e
        except openai.OpenAIError as e:
            logging.error(f"OpenAI API error: {e}")
            raise CompletionServiceError() from e

        if not response.choices:
            raise CompletionServiceError("Empty completion")
        reply = (response.choices[0].message.content or "").strip()
        if not reply:
            raise CompletionServiceError("Empty completion")

        usage = getattr(response, "usage", None)
        if usage is not None and usage.total_tokens is not None:
            tokens_used = usage.total_tokens
        else:
            tokens_used = num_tokens_from_messages(messages + [{"role": "assistant", "content": reply}], self.model)
        return CompletionResult(reply=reply, tokens_used=tokens_used)
