from __future__ import annotations

from typing import Optional


def clamp_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + '...'


def mask_secret(value: Optional[str], visible: int = 6) -> str:
    if not value:
        return ''
    if len(value) <= visible * 2:
        return '*' * len(value)
    return f'{value[:visible]}...{value[-visible:]}'
