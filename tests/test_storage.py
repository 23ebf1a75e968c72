from unittest.mock import Mock

import pytest
from google.api_core import exceptions as gexc

from splitscribe.storage import BlobStore


def test_upload_download_delete(tmp_path, storage_client):
    local = tmp_path / 'clip.mp3'
    local.write_bytes(b'abc')
    store = BlobStore('b', client=storage_client)

    uri = store.upload(local, 'audios/clip.mp3')
    assert uri == 'gs://b/audios/clip.mp3'
    assert store.download('audios/clip.mp3') == b'abc'
    assert store.delete('audios/clip.mp3') is True
    assert store.delete('audios/clip.mp3') is False
    assert store.delete(None) is False


def test_unique_key_keeps_stem_and_extension():
    a = BlobStore.unique_key('audios/', '/tmp/rec_part_001.mp3')
    b = BlobStore.unique_key('audios/', '/tmp/rec_part_001.mp3')
    assert a != b
    assert a.startswith('audios/rec_part_001_')
    assert a.endswith('.mp3')
    assert BlobStore.unique_key('transcripts/', 'x.mp3', suffix='/').endswith('/')


def test_key_from_uri(storage_client):
    store = BlobStore('b', client=storage_client)
    assert store.key_from_uri('gs://b/transcripts/x/result.json') == 'transcripts/x/result.json'
    with pytest.raises(ValueError):
        store.key_from_uri('gs://other/x.json')


def test_delete_prefix_removes_only_that_folder(storage_client):
    store = BlobStore('b', client=storage_client)
    bucket = storage_client.bucket('b')
    bucket.blobs = {'transcripts/a/1.json': b'', 'transcripts/a/2.json': b'', 'transcripts/b/1.json': b''}

    assert store.delete_prefix('transcripts/a/') == 2
    assert list(bucket.blobs) == ['transcripts/b/1.json']
    assert store.delete_prefix('') == 0


def test_delete_logs_api_errors_instead_of_raising(storage_client):
    store = BlobStore('b', client=storage_client)

    forbidden = Mock(**{'delete.side_effect': gexc.Forbidden('no')})
    storage_client.bucket('b').blob = lambda name: forbidden
    assert store.delete('audios/x.mp3') is False
