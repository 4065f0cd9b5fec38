import logging
from typing import Callable, List, Optional, Sequence

import tiktoken

log = logging.getLogger(__name__)

IMAGE_TOKEN_ESTIMATE = 765
FALLBACK_ENCODING = "cl100k_base"


class PromptTooLong(Exception):
    def __init__(self, max_tokens: int, prompt_tokens: int):
        self.max_tokens = max_tokens
        self.prompt_tokens = prompt_tokens
        super().__init__(
            f"Prompt is too long. Max token count is {max_tokens}, "
            f"but prompt is {prompt_tokens} tokens long."
        )


class TokenCounter:
    """Counts tokens of upstream chat messages.

    Text is measured with the model's tiktoken encoding. Images have no
    documented exact cost, so each one is charged a fixed estimate.
    """

    def __init__(self, model: str, *, image_tokens: int = IMAGE_TOKEN_ESTIMATE):
        self.image_tokens = image_tokens
        try:
            self.encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            log.info("no tiktoken encoding registered for %s, using %s", model, FALLBACK_ENCODING)
            self.encoding = tiktoken.get_encoding(FALLBACK_ENCODING)

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_message(self, message: dict) -> int:
        content = message.get("content")
        if content is None:
            return 0
        if isinstance(content, str):
            return self.count_text(content)
        total = 0
        for part in content:
            if part.get("type") == "text":
                total += self.count_text(part.get("text") or "")
            else:
                total += self.image_tokens
        return total


def constrain_input(
    history: Sequence[dict],
    max_input_tokens: Optional[int],
    count: Callable[[dict], int],
) -> List[dict]:
    """Keep the newest messages of ``history`` that fit in ``max_input_tokens``.

    Raises PromptTooLong when the newest message alone does not fit.
    """
    if max_input_tokens is None:
        return list(history)

    current_tokens = 0
    kept: List[dict] = []
    for message in reversed(history):
        tokens = count(message)
        if current_tokens + tokens > max_input_tokens:
            if not kept:
                raise PromptTooLong(max_input_tokens, current_tokens + tokens)
            break
        current_tokens += tokens
        kept.append(message)
    kept.reverse()
    return kept
