from __future__ import annotations

import httpx
import pytest

import baidu_xiling.services.client as client_module
from baidu_xiling.services.errors import BaiduApiError


UPLOAD_PATH = '/rest/2.0/ai_dh/file/upload'


@pytest.mark.asyncio
async def test_missing_file_fails_before_any_request(make_client, vendor, tmp_path):
    client = make_client()

    with pytest.raises(FileNotFoundError):
        await client.upload_file(tmp_path / 'missing.mp4')

    assert vendor.requests == []


@pytest.mark.asyncio
async def test_directory_is_not_uploaded(make_client, vendor, tmp_path):
    client = make_client()

    with pytest.raises(FileNotFoundError):
        await client.upload_file(tmp_path)

    assert vendor.requests == []


@pytest.mark.asyncio
async def test_upload_sends_multipart_with_token(make_client, vendor, tmp_path):
    video = tmp_path / 'clip.mp4'
    video.write_bytes(b'fake-video-bytes')
    vendor.add(UPLOAD_PATH, httpx.Response(200, json={'result': {'fileId': 'f-1'}}))
    client = make_client()

    body = await client.upload_file(str(video), {'providerType': 'VIDEO', 'sourceFlag': 1})

    assert body == {'result': {'fileId': 'f-1'}}
    (req,) = vendor.calls(UPLOAD_PATH)
    assert req.method == 'POST'
    assert req.url.params['access_token'] == 'token-1'
    assert req.headers['content-type'].startswith('multipart/form-data')
    content = req.content
    assert b'name="file"; filename="clip.mp4"' in content
    assert b'fake-video-bytes' in content
    assert b'name="providerType"' in content
    assert b'VIDEO' in content
    assert b'name="sourceFlag"' in content


@pytest.mark.asyncio
async def test_upload_non_object_response_raises(make_client, vendor, tmp_path):
    audio = tmp_path / 'voice.wav'
    audio.write_bytes(b'RIFF')
    vendor.add(UPLOAD_PATH, httpx.Response(200, json=['unexpected']))
    client = make_client()

    with pytest.raises(RuntimeError):
        await client.upload_file(audio)


@pytest.mark.asyncio
async def test_upload_vendor_error_raises(make_client, vendor, tmp_path):
    audio = tmp_path / 'voice.wav'
    audio.write_bytes(b'RIFF')
    vendor.add(UPLOAD_PATH, httpx.Response(200, json={'error_code': 216201, 'error_msg': 'image format error'}))
    client = make_client()

    with pytest.raises(BaiduApiError) as exc_info:
        await client.upload_file(audio)

    assert exc_info.value.error_code == 216201


@pytest.mark.asyncio
async def test_file_read_off_the_event_loop(make_client, vendor, tmp_path, monkeypatch):
    video = tmp_path / 'clip.mp4'
    video.write_bytes(b'fake-video-bytes')
    vendor.add(UPLOAD_PATH, httpx.Response(200, json={'result': {'fileId': 'f-2'}}))
    offloaded = []
    original_to_thread = client_module.asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(func)
        return await original_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(client_module.asyncio, 'to_thread', recording_to_thread)
    client = make_client()

    await client.upload_file(video)

    (reader,) = offloaded
    assert reader.__name__ == 'read_bytes'
    assert reader.__self__ == video
    assert b'fake-video-bytes' in vendor.calls(UPLOAD_PATH)[0].content
