import pytest

from .errors import ConfigError
from .retry import RetryPolicy


def test_defaults_retry_forever():
    policy = RetryPolicy()

    assert policy.attempts == RetryPolicy.FOREVER == -1
    assert policy.forever
    assert policy.wait == 1.0


def test_bounded_attempts():
    policy = RetryPolicy(attempts=5, wait=0)

    assert not policy.forever
    assert policy.attempts == 5


@pytest.mark.parametrize("attempts", [0, -2])
def test_invalid_attempts(attempts):
    with pytest.raises(ConfigError, match="attempts"):
        RetryPolicy(attempts=attempts)


def test_negative_wait():
    with pytest.raises(ConfigError, match="wait"):
        RetryPolicy(wait=-0.1)


def test_from_mapping_accepts_strings():
    policy = RetryPolicy.from_mapping({"attempts": "3", "wait": "0.25"})

    assert policy == RetryPolicy(attempts=3, wait=0.25)


def test_from_mapping_defaults():
    assert RetryPolicy.from_mapping({}) == RetryPolicy()


def test_from_mapping_rejects_garbage():
    with pytest.raises(ConfigError, match="'attempts' must be an integer"):
        RetryPolicy.from_mapping({"attempts": "many"})
