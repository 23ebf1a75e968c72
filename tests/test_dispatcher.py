import asyncio
import random
from dataclasses import replace

import pytest

from conftest import FakeRecognizer, words_payload
from splitscribe.dispatcher import BatchDispatcher
from splitscribe.errors import SplitError
from splitscribe.planner import plan
from splitscribe.retry import RetryPolicy, Success, Terminal
from splitscribe.storage import BlobStore


def make_parts(tmp_path, count):
    paths = []
    for i in range(count):
        p = tmp_path / f'rec_part_{i:03d}.mp3'
        p.write_bytes(b'audio %d' % i)
        paths.append(p)
    return paths


def make_dispatcher(settings, storage_client, sleeper, payloads):
    store = BlobStore(settings.bucket_name, client=storage_client)
    recognizer = FakeRecognizer(storage_client, settings.bucket_name, payloads)
    policy = RetryPolicy(delay=60, jitter=5, max_retries=5, rng=random.Random(1))
    dispatcher = BatchDispatcher(store, recognizer, settings, policy=policy, sleep=sleeper)
    return dispatcher, recognizer


def test_results_follow_segment_order(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 3)
    payloads = {p.stem: words_payload((f'seg{i}.', 1.0, 1.5)) for i, p in enumerate(parts)}
    dispatcher, _ = make_dispatcher(settings, storage_client, sleeper, payloads)

    results = asyncio.run(dispatcher.transcribe_all(parts, plan(3000, 1140), 'uk-UA'))

    assert [r.index for r in results] == [0, 1, 2]
    assert [r.offset for r in results] == [0, 1140, 2280]
    assert [r.words[0].text for r in results] == ['seg0.', 'seg1.', 'seg2.']
    assert not any(r.failed for r in results)


def test_batches_run_one_after_another(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 6)
    payloads = {p.stem: words_payload(('x.', 0, 1)) for p in parts}
    dispatcher, recognizer = make_dispatcher(settings, storage_client, sleeper, payloads)

    asyncio.run(dispatcher.transcribe_all(parts, plan(6 * 1140, 1140), 'en-US'))

    first_batch = {p.stem for p in parts[:4]}
    second_submit = recognizer.events.index(('submit', parts[4].stem))
    done_before = {stem for kind, stem in recognizer.events[:second_submit] if kind == 'done'}
    assert first_batch <= done_before
    # positions 1..3 of the first batch, position 1 of the second
    assert sleeper.delays == [2.0, 4.0, 6.0, 2.0]


def test_batch_size_comes_from_settings(tmp_path, settings, storage_client, sleeper):
    settings = replace(settings, batch_size=2, stagger_seconds=1.0)
    parts = make_parts(tmp_path, 3)
    payloads = {p.stem: words_payload(('x.', 0, 1)) for p in parts}
    dispatcher, _ = make_dispatcher(settings, storage_client, sleeper, payloads)

    asyncio.run(dispatcher.transcribe_all(parts, plan(3000, 1140), 'en-US'))
    assert sleeper.delays == [1.0]


def test_failed_segment_does_not_affect_siblings(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 3)
    payloads = {p.stem: words_payload(('ok.', 0, 1)) for p in parts}
    dispatcher, recognizer = make_dispatcher(settings, storage_client, sleeper, payloads)
    recognizer.broken.add(parts[1].stem)

    results = asyncio.run(dispatcher.transcribe_all(parts, plan(3000, 1140), 'uk-UA'))

    assert [r.failed for r in results] == [False, True, False]
    assert results[1].offset == 1140
    assert 'bad audio' in results[1].error
    assert recognizer.submissions[parts[1].stem] == 1


def test_quota_errors_are_retried(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 1)
    payloads = {parts[0].stem: words_payload(('hi.', 0, 1))}
    dispatcher, recognizer = make_dispatcher(settings, storage_client, sleeper, payloads)
    recognizer.quota[parts[0].stem] = 2

    results = asyncio.run(dispatcher.transcribe_all(parts, plan(600, 1140), 'uk-UA'))

    assert not results[0].failed
    assert recognizer.submissions[parts[0].stem] == 3
    assert len(sleeper.delays) == 2
    assert all(60 <= d <= 65 for d in sleeper.delays)


def test_quota_retries_are_capped(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 1)
    payloads = {parts[0].stem: words_payload(('hi.', 0, 1))}
    dispatcher, recognizer = make_dispatcher(settings, storage_client, sleeper, payloads)
    recognizer.quota[parts[0].stem] = 100

    results = asyncio.run(dispatcher.transcribe_all(parts, plan(600, 1140), 'uk-UA'))

    assert results[0].failed
    assert 'Quota' in results[0].error
    assert recognizer.submissions[parts[0].stem] == 6


def test_bucket_is_empty_after_success_and_failure(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 2)
    payloads = {p.stem: words_payload(('ok.', 0, 1)) for p in parts}
    dispatcher, recognizer = make_dispatcher(settings, storage_client, sleeper, payloads)
    recognizer.broken.add(parts[0].stem)

    asyncio.run(dispatcher.transcribe_all(parts, plan(2000, 1140), 'uk-UA'))

    bucket = storage_client.bucket(settings.bucket_name)
    assert bucket.blobs == {}
    deleted = bucket.deleted
    assert any(k.startswith('audios/rec_part_000_') for k in deleted)
    assert any(k.startswith('transcripts/rec_part_001_') and k.endswith('/result.json') for k in deleted)


def test_part_count_must_match_plan(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 2)
    dispatcher, _ = make_dispatcher(settings, storage_client, sleeper, {})
    with pytest.raises(SplitError):
        asyncio.run(dispatcher.transcribe_all(parts, plan(3000, 1140), 'uk-UA'))


class NeverRetry(RetryPolicy):
    def decide(self, attempt, error=None, value=None):
        if error is None:
            return Success(value)
        return Terminal(error)


def test_dispatcher_follows_policy_decisions(tmp_path, settings, storage_client, sleeper):
    parts = make_parts(tmp_path, 1)
    payloads = {parts[0].stem: words_payload(('hi.', 0, 1))}
    store = BlobStore(settings.bucket_name, client=storage_client)
    recognizer = FakeRecognizer(storage_client, settings.bucket_name, payloads)
    recognizer.quota[parts[0].stem] = 2
    dispatcher = BatchDispatcher(store, recognizer, settings, policy=NeverRetry(), sleep=sleeper)

    results = asyncio.run(dispatcher.transcribe_all(parts, plan(600, 1140), 'uk-UA'))

    assert results[0].failed
    assert recognizer.submissions[parts[0].stem] == 1
    assert sleeper.delays == []
