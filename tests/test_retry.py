import asyncio
import random

import pytest

from splitscribe.errors import QuotaExhaustedError, SegmentTranscriptionError
from splitscribe.retry import Retryable, RetryPolicy, Success, Terminal


def policy(**kwargs):
    return RetryPolicy(rng=random.Random(7), **kwargs)


def test_success_outcome():
    assert policy().decide(1, value='uri') == Success('uri')


def test_quota_error_is_retryable_with_jittered_delay():
    outcome = policy().decide(1, QuotaExhaustedError('quota'))
    assert isinstance(outcome, Retryable)
    assert 60 <= outcome.delay <= 65


def test_quota_error_becomes_terminal_at_cap():
    p = policy(max_retries=5)
    assert isinstance(p.decide(5, QuotaExhaustedError('quota')), Retryable)
    outcome = p.decide(6, QuotaExhaustedError('quota'))
    assert isinstance(outcome, Terminal)
    assert isinstance(outcome.error, QuotaExhaustedError)


def test_other_errors_are_terminal_immediately():
    assert isinstance(policy().decide(1, SegmentTranscriptionError('bad audio')), Terminal)
    assert isinstance(policy().decide(1, ValueError('x')), Terminal)


def test_retrying_retries_quota_then_succeeds(sleeper):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise QuotaExhaustedError('quota')
        return 'done'

    result = asyncio.run(policy().retrying(sleep=sleeper)(flaky))
    assert result == 'done'
    assert len(calls) == 3
    assert len(sleeper.delays) == 2
    assert all(60 <= d <= 65 for d in sleeper.delays)


def test_retrying_gives_up_after_cap(sleeper):
    calls = []

    async def always_quota():
        calls.append(1)
        raise QuotaExhaustedError('quota')

    with pytest.raises(QuotaExhaustedError):
        asyncio.run(policy(max_retries=2).retrying(sleep=sleeper)(always_quota))
    assert len(calls) == 3


def test_retrying_does_not_retry_other_errors(sleeper):
    calls = []

    async def broken():
        calls.append(1)
        raise SegmentTranscriptionError('bad audio')

    with pytest.raises(SegmentTranscriptionError):
        asyncio.run(policy().retrying(sleep=sleeper)(broken))
    assert calls == [1]
    assert sleeper.delays == []


class PatientPolicy(RetryPolicy):
    def decide(self, attempt, error=None, value=None):
        if error is None:
            return Success(value)
        if attempt < 10:
            return Retryable(1.5)
        return Terminal(error)


def test_retrying_takes_cap_and_delay_from_decide(sleeper):
    calls = []

    async def always_quota():
        calls.append(1)
        raise QuotaExhaustedError('quota')

    with pytest.raises(QuotaExhaustedError):
        asyncio.run(PatientPolicy(max_retries=1).retrying(sleep=sleeper)(always_quota))
    assert len(calls) == 10
    assert sleeper.delays == [1.5] * 9
