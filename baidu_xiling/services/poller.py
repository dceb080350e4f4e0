from __future__ import annotations

import asyncio
import json
import math
from typing import Any, Awaitable, Callable, Dict, Optional

from baidu_xiling.services.errors import BaiduApiError
from baidu_xiling.utils.logging import get_logger
from baidu_xiling.utils.text import clamp_text


logger = get_logger('poller')

SUCCESS_STATUSES = {'success'}
# Digital human reports `Failed`, long-text TTS reports `Failure`.
FAIL_STATUSES = {'failed', 'failure'}
RETRYABLE_STATUS_CODES = {429}

TaskQuery = Callable[[str], Awaitable[Dict[str, Any]]]
Sleep = Callable[[float], Awaitable[Any]]


class TaskError(RuntimeError):
    def __init__(self, message: str, task_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskFailedError(TaskError):
    def __init__(self, task_id: str, record: Dict[str, Any], label: str = 'task') -> None:
        details = clamp_text(json.dumps(record, ensure_ascii=False), 2000)
        super().__init__(f'{label} failed, task_id={task_id}: {details}', task_id)
        self.record = record


class TaskTimeoutError(TaskError):
    def __init__(self, task_id: str, timeout: float, label: str = 'task') -> None:
        super().__init__(f'{label} not finished within {timeout}s, task_id={task_id}', task_id)
        self.timeout = timeout


def get_task_status(record: Dict[str, Any]) -> str:
    result = record.get('result') if isinstance(record.get('result'), dict) else {}
    return str(
        record.get('task_status')
        or result.get('task_status')
        or result.get('status')
        or record.get('status')
        or ''
    ).strip()


def max_attempts(timeout: float, interval: float) -> int:
    if interval <= 0:
        raise ValueError('poll interval must be positive')
    if timeout < 0:
        raise ValueError('poll timeout must not be negative')
    return max(math.ceil(timeout / interval), 1)


def _is_transient(exc: BaiduApiError) -> bool:
    code = exc.status_code
    return code is not None and (code in RETRYABLE_STATUS_CODES or code >= 500)


async def poll_task(
    query: TaskQuery,
    task_id: str,
    *,
    timeout: float,
    interval: float,
    label: str = 'task',
    sleep: Optional[Sleep] = None,
) -> Dict[str, Any]:
    """Query ``task_id`` until it succeeds, fails or the attempts run out.

    At most ``ceil(timeout / interval)`` queries are made with a fixed
    ``interval`` sleep between them. Success returns the last record, a failure
    status raises :class:`TaskFailedError` and running out of attempts raises
    :class:`TaskTimeoutError`. Rate limiting and 5xx errors from the vendor
    count as a running poll.
    """
    attempts = max_attempts(timeout, interval)
    sleep = sleep or asyncio.sleep

    for attempt in range(1, attempts + 1):
        try:
            record = await query(task_id)
        except BaiduApiError as exc:
            if not _is_transient(exc):
                raise
            logger.warning('poll_transient_error', label=label, task_id=task_id, attempt=attempt, error=str(exc))
        else:
            status = get_task_status(record)
            logger.info('poll_status', label=label, task_id=task_id, attempt=attempt, status=status)
            lowered = status.lower()
            if lowered in SUCCESS_STATUSES:
                return record
            if lowered in FAIL_STATUSES:
                raise TaskFailedError(task_id, record, label)

        if attempt < attempts:
            await sleep(interval)

    logger.warning('poll_timeout', label=label, task_id=task_id, attempts=attempts, timeout=timeout)
    raise TaskTimeoutError(task_id, timeout, label)
