import logging

import pytest

from app.utils import MASK, is_masked, log_memory_usage, mask_api_key


def test_mask_long_key():
    assert mask_api_key("sk-abcdefghijklmnop") == "sk-a" + MASK + "mnop"


@pytest.mark.parametrize("key", ["a", "short", "12345678"])
def test_mask_short_key(key):
    assert mask_api_key(key) == MASK


def test_mask_empty_key():
    assert mask_api_key("") == ""
    assert mask_api_key(None) == ""


@pytest.mark.parametrize("key", ["sk-abcdefghijklmnop", "123456789", "secret", "x" * 64])
def test_mask_is_idempotent_and_leaks_at_most_eight_chars(key):
    masked = mask_api_key(key)
    assert masked == mask_api_key(key)
    visible = masked.replace(MASK, "")
    assert len(visible) <= 8
    if len(key) > 8:
        assert visible == key[:4] + key[-4:]
        assert key[4:-4] not in masked


def test_is_masked():
    assert is_masked(mask_api_key("sk-abcdefghijklmnop"))
    assert not is_masked("sk-abcdefghijklmnop")
    assert not is_masked(None)


def test_log_memory_usage(caplog):
    with caplog.at_level(logging.INFO, logger="storybook-app"):
        log_memory_usage("unit test")
    assert "[MEMORY] unit test | RSS:" in caplog.text
