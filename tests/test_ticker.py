import time

import pytest

from ngmonitoring.ticker import Ticker


def test_ticker():
    ticker = Ticker(0.05)
    try:
        channel = ticker.subscribe()
        assert ticker.subscriber_count() == 1
        channel.stop()
        assert ticker.subscriber_count() == 0

        first = ticker.subscribe()
        second = ticker.subscribe()
        t1 = first.get(timeout=2)
        t2 = second.get(timeout=2)
        assert int(t1.timestamp()) == int(t2.timestamp())

        ticker.reset(0.07)
        t1 = first.get(timeout=2)
        t2 = second.get(timeout=2)
        assert int(t1.timestamp()) == int(t2.timestamp())
    finally:
        ticker.stop()


def test_zero_interval_rejected():
    with pytest.raises(ValueError):
        Ticker(0)


def test_last_time_recorded():
    with Ticker(0.03) as ticker:
        assert ticker.last_time() is None or ticker.last_time().timestamp() > 0
        channel = ticker.subscribe()
        received = channel.get(timeout=2)
        assert ticker.last_time() >= received


def test_get_times_out_without_ticks():
    with Ticker(60) as ticker:
        channel = ticker.subscribe()
        with pytest.raises(TimeoutError):
            channel.get(timeout=0.05)


def test_no_ticks_after_stop():
    ticker = Ticker(0.02)
    channel = ticker.subscribe()
    channel.get(timeout=2)
    ticker.stop()
    time.sleep(0.1)
    try:
        channel.get(timeout=0)
    except TimeoutError:
        pass
    with pytest.raises(TimeoutError):
        channel.get(timeout=0.1)


def test_reset_same_interval_keeps_ticking():
    with Ticker(0.03) as ticker:
        channel = ticker.subscribe()
        ticker.reset(0.03)
        assert channel.get(timeout=2).timestamp() > 0


def test_subscribers_get_distinct_channels():
    with Ticker(60) as ticker:
        a = ticker.subscribe()
        b = ticker.subscribe()
        a.stop()
        a.stop()
        assert ticker.subscriber_count() == 1
        b.stop()
        assert ticker.subscriber_count() == 0