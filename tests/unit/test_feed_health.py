from gridwatch.config import FeedConfig
from gridwatch.snapshot.health import FeedHealthTracker
from gridwatch.utils.types import MetricKey

CEN = MetricKey("PL", "CEN", "spot-price")


def tracker(*feeds):
    return FeedHealthTracker(feeds=[FeedConfig(fid, f"wss://{fid}", staleness_s=10.0) for fid in feeds])


def test_never_seen_feed_is_down():
    h = tracker("tge")
    assert h.status(now=100.0)["tge"].state == "down"
    assert h.status(now=100.0)["tge"].last_seen is None


def test_ok_then_stale_then_down_by_age():
    h = tracker("tge")
    h.heartbeat("tge", ts=100.0)
    assert h.status(now=105.0)["tge"].state == "ok"
    st = h.status(now=115.0)["tge"]
    assert st.state == "stale"
    assert st.age_s == 15.0
    # default down_after_factor is 5x staleness
    assert h.status(now=150.0)["tge"].state == "stale"
    assert h.status(now=151.0)["tge"].state == "down"

    h.heartbeat("tge", ts=151.0)
    assert h.status(now=152.0)["tge"].state == "ok"


def test_disconnect_marks_down_until_next_message():
    h = tracker("tge")
    h.heartbeat("tge", ts=100.0)
    h.mark_disconnected("tge")
    assert h.status(now=101.0)["tge"].state == "down"
    h.heartbeat("tge", ts=102.0)
    assert h.status(now=103.0)["tge"].state == "ok"


def test_key_is_stale_only_when_every_feed_is_unhealthy():
    h = tracker("tge", "entsoe")
    h.bind_key("tge", CEN)
    h.bind_key("entsoe", CEN)
    h.heartbeat("tge", ts=100.0)
    h.heartbeat("entsoe", ts=100.0)

    assert h.stale_keys(h.status(now=105.0)) == frozenset()

    h.heartbeat("entsoe", ts=120.0)
    assert h.stale_keys(h.status(now=125.0)) == frozenset()     # tge stale, entsoe ok
    assert h.stale_keys(h.status(now=140.0)) == {CEN}


def test_unknown_feed_heartbeat_registers_it():
    clock = iter([50.0, 52.0])
    h = FeedHealthTracker(clock=lambda: next(clock))
    h.heartbeat("adhoc")
    assert h.feed_ids() == ["adhoc"]
    assert h.status()["adhoc"].state == "ok"


def test_total_outage():
    h = tracker("tge", "entsoe")
    assert FeedHealthTracker.total_outage({}) is False
    assert h.total_outage(h.status(now=1.0)) is True
    h.heartbeat("tge", ts=1.0)
    assert h.total_outage(h.status(now=2.0)) is False
