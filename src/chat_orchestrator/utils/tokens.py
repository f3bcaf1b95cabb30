"""
Token estimation helpers.

Backends count tokens with their own tokenizers. When a backend does not
report usage we fall back to the usual approximation of four characters
per token.
"""

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """
    Rough estimation of token count for text.

    Args:
        text: Text to estimate tokens for

    Returns:
        Estimated token count (at least 1 for non-empty text, 0 otherwise)
    """
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)
