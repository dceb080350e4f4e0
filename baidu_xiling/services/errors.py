from __future__ import annotations


class BaiduApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None, error_code: int | str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
