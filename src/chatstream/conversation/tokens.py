"""Token counting for context-budget accounting."""

from functools import lru_cache
from typing import Callable

import tiktoken

# (text, model_name) -> token count
TokenCounter = Callable[[str, str], int]

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=32)
def _encoding_for(model_name: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        # Unknown or non-OpenAI model names fall back to the common encoding
        return tiktoken.get_encoding(DEFAULT_ENCODING)


def count_tokens(text: str, model_name: str) -> int:
    """Count the tokens of ``text`` under the tokenizer of ``model_name``."""
    if not text:
        return 0
    # Special-token markers in user text are counted as plain text
    return len(_encoding_for(model_name).encode(text, disallowed_special=()))
