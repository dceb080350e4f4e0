from __future__ import annotations

import asyncio
import hashlib
import json
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import httpx

from baidu_xiling.config import get_settings
from baidu_xiling.services.errors import BaiduApiError
from baidu_xiling.services.poller import Sleep, poll_task
from baidu_xiling.services.token_cache import TokenCache, build_token_cache
from baidu_xiling.utils.logging import get_logger
from baidu_xiling.utils.text import clamp_text, mask_secret


logger = get_logger('baidu')

TOKEN_PATH = '/oauth/2.0/token'
UPLOAD_PATH = '/rest/2.0/ai_dh/file/upload'
SYNTHESIS_PATH = '/rpc/2.0/ai_custom/v1/digital_human/synthesis'
SYNTHESIS_QUERY_PATH = '/rpc/2.0/ai_custom/v1/digital_human/synthesis/query'
TTS_CREATE_PATH = '/rpc/2.0/tts/v1/create'
TTS_QUERY_PATH = '/rpc/2.0/tts/v1/query'

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'
JSON_CONTENT_TYPE = 'application/json'
JSON_HEADERS = {'Content-Type': JSON_CONTENT_TYPE}

# Seconds before expiry at which a token is no longer handed out.
TOKEN_REFRESH_MARGIN = 60
# 110: access token invalid, 111: access token expired.
TOKEN_REJECTED_CODES = {'110', '111'}
QUERY_METHODS = {'GET', 'DELETE', 'HEAD'}


def _now() -> float:
    return time.time()


class BaiduApiClient:
    """Client for the Baidu AI open platform (Xiling digital human and long-text TTS).

    The access token is fetched with the OAuth2 client-credentials grant and
    kept in memory. When a ``cache`` is given the token is also shared through
    it, keyed by a hash of the api key, so several processes reuse one token.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        cache: Optional[TokenCache] = None,
        *,
        cache_key_prefix: Optional[str] = None,
        cache_ttl: Optional[int] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = (api_key if api_key is not None else settings.baidu_api_key).strip()
        self.secret_key = (secret_key if secret_key is not None else settings.baidu_secret_key).strip()
        if not self.api_key or not self.secret_key:
            raise ValueError('api_key and secret_key must be provided')

        self._owns_cache = cache is None
        self.cache = cache if cache is not None else build_token_cache(settings.token_cache_url)
        prefix = cache_key_prefix if cache_key_prefix is not None else settings.token_cache_key_prefix
        self.cache_key = prefix + hashlib.md5(self.api_key.encode('utf-8')).hexdigest()
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.token_cache_ttl

        self.base_url = (base_url or settings.baidu_base_url).strip().rstrip('/')
        self.poll_timeout = settings.poll_timeout_seconds
        self.poll_interval = settings.poll_interval_seconds

        self._access_token: Optional[str] = None
        self._token_expire = 0
        self._token_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()
        close_cache = getattr(self.cache, 'close', None)
        if self._owns_cache and close_cache is not None:
            await close_cache()

    async def __aenter__(self) -> 'BaiduApiClient':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Access token

    def _token_is_fresh(self) -> bool:
        return bool(self._access_token) and _now() < self._token_expire - TOKEN_REFRESH_MARGIN

    async def get_access_token(self) -> str:
        if self._token_is_fresh():
            return self._access_token
        async with self._token_lock:
            if self._token_is_fresh():
                return self._access_token
            await self._load_token_from_cache()
            if self._token_is_fresh():
                return self._access_token
            return await self._refresh_token()

    async def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expire = 0
        if self.cache is not None:
            await self.cache.delete(self.cache_key)

    async def _load_token_from_cache(self) -> None:
        if self.cache is None:
            return
        data = await self.cache.get(self.cache_key)
        if not isinstance(data, dict):
            return
        token = data.get('token')
        try:
            expire = int(data.get('expire') or 0)
        except (TypeError, ValueError):
            return
        if token and expire > _now():
            self._access_token = str(token)
            self._token_expire = expire
            logger.debug('token_cache_hit', token=mask_secret(self._access_token), expire=expire)

    async def _refresh_token(self) -> str:
        form = {
            'grant_type': 'client_credentials',
            'client_id': self.api_key,
            'client_secret': self.secret_key,
        }
        try:
            resp = await self._client.post(self._url(TOKEN_PATH), data=form)
        except httpx.HTTPError as exc:
            logger.warning('token_request_failed', error=str(exc))
            raise BaiduApiError(f'Baidu token request failed: {exc}') from exc

        data = self._parse_response(resp)
        token = str(data.get('access_token') or '').strip() if isinstance(data, dict) else ''
        if not token:
            raise RuntimeError(f'Failed to obtain Baidu access token: {self._dump(data)}')

        try:
            expires_in = int(data.get('expires_in') or self.cache_ttl)
        except (TypeError, ValueError):
            expires_in = self.cache_ttl
        self._access_token = token
        self._token_expire = int(_now()) + expires_in

        if self.cache is not None:
            await self.cache.set(
                self.cache_key,
                {'token': self._access_token, 'expire': self._token_expire},
                max(expires_in - TOKEN_REFRESH_MARGIN, 1),
            )
        logger.info('token_refreshed', token=mask_secret(token), expires_in=expires_in)
        return self._access_token

    # Transport

    def _url(self, url: str) -> str:
        if url.startswith(('http://', 'https://')):
            return url
        return f'{self.base_url}/{url.lstrip("/")}'

    @staticmethod
    def _dump(data: Any) -> str:
        return clamp_text(json.dumps(data, ensure_ascii=False), 1000)

    @staticmethod
    def _raise_for_envelope(data: Mapping[str, Any], status_code: int) -> None:
        if data.get('error'):
            message = data.get('error_description') or data.get('error') or 'Unknown error'
            raise BaiduApiError(str(message), status_code, data.get('error'))
        code = data.get('error_code')
        if code not in (None, '', 0, '0'):
            message = data.get('error_msg') or 'Unknown error'
            raise BaiduApiError(f'{message} (error_code={code})', status_code, code)

    def _parse_response(self, resp: httpx.Response) -> Any:
        try:
            data = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                raise BaiduApiError(
                    f'Baidu API error {resp.status_code}: {clamp_text(resp.text, 500)}',
                    resp.status_code,
                )
            raise RuntimeError(f'Baidu API returned a non-JSON response: {clamp_text(resp.text, 500)}')
        if isinstance(data, dict):
            self._raise_for_envelope(data, resp.status_code)
        if resp.status_code >= 400:
            raise BaiduApiError(f'Baidu API error {resp.status_code}: {clamp_text(resp.text, 500)}', resp.status_code)
        return data

    @staticmethod
    def _is_token_rejected(exc: BaiduApiError) -> bool:
        return exc.error_code is not None and str(exc.error_code) in TOKEN_REJECTED_CODES

    async def _signed(self, send: Callable[[str], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        access_token = await self.get_access_token()
        try:
            return await send(access_token)
        except BaiduApiError as exc:
            if not self._is_token_rejected(exc):
                raise
            logger.info('token_rejected', error_code=exc.error_code)
            # Another caller may already have replaced the rejected token.
            if self._access_token == access_token:
                await self.invalidate_token()
            return await send(await self.get_access_token())

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        *,
        sign: bool = True,
    ) -> Dict[str, Any]:
        """Send ``params`` to ``url`` and return the decoded JSON object.

        The body is JSON when the ``Content-Type`` header is
        ``application/json`` and form encoded otherwise; query-style methods
        carry ``params`` in the query string. With ``sign`` the access token
        is added as the ``access_token`` query parameter, and a token the
        vendor rejects is refreshed once before giving up.
        """
        method = method.upper()
        merged = httpx.Headers({'Content-Type': FORM_CONTENT_TYPE})
        merged.update(dict(headers or {}))
        content_type = merged.get('content-type', '').split(';')[0].strip().lower()
        payload = dict(params or {})

        async def send(access_token: Optional[str]) -> Dict[str, Any]:
            query: Dict[str, Any] = {}
            if access_token:
                query['access_token'] = access_token
            options: Dict[str, Any] = {'headers': merged}
            if method in QUERY_METHODS:
                query.update(payload)
            elif content_type == JSON_CONTENT_TYPE:
                options['json'] = payload
            else:
                options['data'] = payload
            target = httpx.URL(self._url(url))
            if query:
                target = target.copy_merge_params(query)

            try:
                resp = await self._client.request(method, target, **options)
            except httpx.HTTPError as exc:
                logger.warning('request_failed', method=method, url=url, error=str(exc))
                raise BaiduApiError(f'Baidu API request failed: {exc}') from exc

            data = self._parse_response(resp)
            if not isinstance(data, dict):
                raise RuntimeError(f'Baidu API response is not a JSON object: {self._dump(data)}')
            return data

        if not sign:
            return await send(None)
        return await self._signed(send)

    async def upload_file(self, file_path: str | Path, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Upload ``file_path`` as the ``file`` part, with ``params`` as extra form fields.

        The whole file is read into memory in a worker thread before sending.
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f'File not found: {file_path}')
        fields = {key: str(value) for key, value in (params or {}).items()}
        content = await asyncio.to_thread(path.read_bytes)

        async def send(access_token: str) -> Dict[str, Any]:
            target = httpx.URL(self._url(UPLOAD_PATH)).copy_merge_params({'access_token': access_token})
            try:
                resp = await self._client.post(
                    target,
                    files={'file': (path.name, content)},
                    data=fields,
                )
            except httpx.HTTPError as exc:
                logger.warning('upload_failed', filename=path.name, error=str(exc))
                raise BaiduApiError(f'Baidu file upload failed: {exc}') from exc
            body = self._parse_response(resp)
            if not isinstance(body, dict):
                raise RuntimeError('Baidu upload response has an unexpected format')
            return body

        body = await self._signed(send)
        logger.info('file_uploaded', filename=path.name)
        return body

    # Tasks

    @staticmethod
    def extract_task_id(record: Dict[str, Any]) -> str:
        result = record.get('result') if isinstance(record.get('result'), dict) else {}
        for candidate in (result.get('task_id'), record.get('task_id'), result.get('taskId')):
            value = str(candidate or '').strip()
            if value:
                return value
        raise BaiduApiError(f'Baidu task response has no task_id: {BaiduApiClient._dump(record)}')

    def _poll_window(self, timeout: Optional[float], interval: Optional[float]) -> tuple[float, float]:
        return (
            self.poll_timeout if timeout is None else timeout,
            self.poll_interval if interval is None else interval,
        )

    async def create_synthesis_task(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request('POST', SYNTHESIS_PATH, params, JSON_HEADERS)

    async def get_synthesis_task_result(self, task_id: str) -> Dict[str, Any]:
        return await self.request('POST', SYNTHESIS_QUERY_PATH, {'task_id': task_id}, JSON_HEADERS)

    async def wait_for_synthesis_result(
        self,
        task_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        *,
        sleep: Optional[Sleep] = None,
    ) -> Dict[str, Any]:
        timeout, interval = self._poll_window(timeout, interval)
        return await poll_task(
            self.get_synthesis_task_result,
            task_id,
            timeout=timeout,
            interval=interval,
            label='synthesis',
            sleep=sleep,
        )

    async def synthesize(
        self,
        params: Mapping[str, Any],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        *,
        sleep: Optional[Sleep] = None,
    ) -> Dict[str, Any]:
        created = await self.create_synthesis_task(params)
        task_id = self.extract_task_id(created)
        logger.info('synthesis_submitted', task_id=task_id)
        return await self.wait_for_synthesis_result(task_id, timeout, interval, sleep=sleep)

    async def create_tts_task(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request('POST', TTS_CREATE_PATH, params, JSON_HEADERS)

    async def query_tts_tasks(self, task_ids: Sequence[str]) -> Dict[str, Any]:
        return await self.request('POST', TTS_QUERY_PATH, {'task_ids': list(task_ids)}, JSON_HEADERS)

    async def get_tts_task_result(self, task_id: str) -> Dict[str, Any]:
        data = await self.query_tts_tasks([task_id])
        for info in data.get('tasks_info') or []:
            if isinstance(info, dict) and str(info.get('task_id') or '') == task_id:
                return info
        # Freshly created tasks can be missing from the listing for a moment.
        logger.debug('tts_task_not_listed', task_id=task_id)
        return {'task_id': task_id, 'task_status': 'Running'}

    async def wait_for_tts_result(
        self,
        task_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        *,
        sleep: Optional[Sleep] = None,
    ) -> Dict[str, Any]:
        timeout, interval = self._poll_window(timeout, interval)
        return await poll_task(
            self.get_tts_task_result,
            task_id,
            timeout=timeout,
            interval=interval,
            label='tts',
            sleep=sleep,
        )

    async def text_to_speech(
        self,
        params: Mapping[str, Any],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        *,
        sleep: Optional[Sleep] = None,
    ) -> Dict[str, Any]:
        created = await self.create_tts_task(params)
        task_id = self.extract_task_id(created)
        logger.info('tts_submitted', task_id=task_id)
        return await self.wait_for_tts_result(task_id, timeout, interval, sleep=sleep)
