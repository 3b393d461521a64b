"""Token counting with tiktoken.

Counts are exact for OpenAI-family encodings and a close proxy for other
vendors. A tokenizer that cannot be loaded raises ``TokenError``; counts
are never guessed from character lengths.
"""

from __future__ import annotations

from functools import lru_cache
import json
import logging
from typing import TYPE_CHECKING

import tiktoken

from lmstream.errors import TokenError

if TYPE_CHECKING:
    from lmstream.types import Message, Request

logger = logging.getLogger(__name__)

FALLBACK_ENCODING = "cl100k_base"

# Chat framing overhead per message and for priming the reply
# (the num_tokens_from_messages recipe for gpt-4-era models).
_TOKENS_PER_MESSAGE = 3
_TOKENS_PER_REPLY = 3


@lru_cache(maxsize=32)
def encoding_for(model_name: str) -> tiktoken.Encoding:
    """Return the encoding for *model_name*, falling back to ``cl100k_base``."""
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        logger.debug("No tiktoken mapping for %s; using %s", model_name, FALLBACK_ENCODING)
    try:
        return tiktoken.get_encoding(FALLBACK_ENCODING)
    except Exception as e:
        raise TokenError(
            f"Could not load tokenizer for {model_name}: {e}",
            hint="tiktoken downloads encodings on first use; check network access "
            "or TIKTOKEN_CACHE_DIR.",
        ) from e


def _encoding(model_name: str) -> tiktoken.Encoding:
    try:
        return encoding_for(model_name)
    except TokenError:
        raise
    except Exception as e:
        raise TokenError(f"Could not load tokenizer for {model_name}: {e}") from e


def count_tokens(text: str, *, model_name: str = "gpt-4") -> int:
    return len(_encoding(model_name).encode(text, disallowed_special=()))


def count_message_tokens(
    messages: tuple[Message, ...] | list[Message], *, model_name: str = "gpt-4"
) -> int:
    """Count prompt tokens for a chat transcript, including framing overhead."""
    encoding = _encoding(model_name)
    total = 0
    for message in messages:
        total += _TOKENS_PER_MESSAGE
        total += len(encoding.encode(message.role.value, disallowed_special=()))
        total += len(encoding.encode(message.content, disallowed_special=()))
        for call in message.tool_calls:
            total += len(encoding.encode(call.name, disallowed_special=()))
            total += len(encoding.encode(call.arguments, disallowed_special=()))
    return total + _TOKENS_PER_REPLY


def count_request_tokens(request: Request, *, model_name: str = "gpt-4") -> int:
    """Prompt tokens for *request*: messages plus serialized tool schemas."""
    total = count_message_tokens(request.messages, model_name=model_name)
    if request.tools:
        encoding = _encoding(model_name)
        for tool in request.tools:
            total += len(encoding.encode(tool.name, disallowed_special=()))
            total += len(encoding.encode(tool.description, disallowed_special=()))
            total += len(encoding.encode(json.dumps(tool.json_schema), disallowed_special=()))
    return total
