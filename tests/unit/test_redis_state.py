import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

import gridwatch.storage.redis_state as rs
from gridwatch.alerts.rules import AlertRule
from gridwatch.config import RedisConfig
from gridwatch.data.ring_buffer import BucketRow
from gridwatch.data.store import TimeSeriesStore
from gridwatch.utils.types import MetricKey

T = 1_760_875_200
CEN = MetricKey("PL", "CEN", "spot-price")


class _FakePipeline:
    def __init__(self, r):
        self.r = r
        self.cmds = []

    def execute_command(self, *args):
        self.cmds.append(tuple(args))

    async def execute(self, raise_on_error=True):
        out = []
        for cmd in self.cmds:
            try:
                out.append(self.r.apply(cmd))
            except ResponseError as e:
                if raise_on_error:
                    raise
                out.append(e)
        self.r.executed.append(list(self.cmds))
        self.cmds = []
        return out


class _FakeRedis:
    """Just enough of redis + RedisTimeSeries for the state store."""

    def __init__(self):
        self.hashes = {}
        self.series = {}
        self.executed = []
        self.fail_hset = False
        self.closed = False

    def pipeline(self):
        return _FakePipeline(self)

    async def hset(self, name, key, value):
        if self.fail_hset:
            self.fail_hset = False
            raise RedisConnectionError("connection reset")
        self.hashes.setdefault(name, {})[key] = value

    async def hdel(self, name, key):
        self.hashes.get(name, {}).pop(key, None)

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def execute_command(self, *args):
        return self.apply(args)

    async def aclose(self):
        self.closed = True

    def apply(self, args):
        cmd, k = args[0], args[1]
        if cmd == "TS.CREATE":
            if k in self.series:
                raise ResponseError("TSDB: key already exists")
            i = args.index("LABELS")
            labels = dict(zip(args[i + 1::2], args[i + 2::2]))
            self.series[k] = {"labels": labels, "points": {}}
            return "OK"
        if cmd == "TS.ADD":
            self.series.setdefault(k, {"labels": {}, "points": {}})["points"][args[2]] = args[3]
            return args[2]
        if cmd == "TS.RANGE":
            pts = self.series.get(k, {"points": {}})["points"]
            return [[ts, str(v)] for ts, v in sorted(pts.items())]
        if cmd == "TS.QUERYINDEX":
            want = [f.split("=", 1) for f in args[1:]]
            return [name for name, s in self.series.items()
                    if all(s["labels"].get(a) == b for a, b in want)]
        raise ResponseError(f"unknown command {cmd}")


class _FakeRedisModule:
    def __init__(self):
        self.last_url = None
        self.instance = _FakeRedis()

    def from_url(self, url, decode_responses=True):
        self.last_url = url
        return self.instance


@pytest.fixture
def fake_mod(monkeypatch):
    mod = _FakeRedisModule()
    monkeypatch.setattr(rs, "redis", mod)
    return mod


async def drained(st):
    for _ in range(100):
        if st._q.qsize() == 0:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)


def row(i, c, n=1):
    return BucketRow(epoch=T + 60 * i, o=c, h=c + 1, l=c - 1, c=c, vol=2.0, vws=2.0 * c, n=n)


def test_series_key_round_trip():
    k = rs.series_key(CEN, "1m", "C")
    assert k == "ts:PL:CEN:spot-price:1m:C"
    assert rs.parse_series_key(k) == (CEN, "1m", "C")
    with pytest.raises(ValueError):
        rs.parse_series_key("bars:PL:CEN")


@pytest.mark.asyncio
async def test_rules_saved_deleted_and_loaded(fake_mod):
    st = rs.RedisStateStore(RedisConfig(url="redis://localhost:6379/0"))
    await st.start()
    assert fake_mod.last_url == "redis://localhost:6379/0"

    keep = AlertRule("r1", "PL/*/spot-price", ">", 100.0, hysteresis=2.0, cooldown_s=300)
    gone = AlertRule("r2", "PL/CEN/load", "<", 5.0)
    paused = AlertRule("r3", "PL/CEN/load", ">", 9000.0, active=False)
    st.save_rule(keep)
    st.save_rule(gone)
    st.save_rule(paused)
    st.delete_rule("r2")
    await drained(st)

    fake_mod.instance.hashes[rs.RULES_HASH]["broken"] = json.dumps({"rule_id": "broken", "operator": ">="})
    loaded = await st.load_rules()
    assert loaded == [keep, paused]
    assert loaded[1].active is False

    await st.stop()
    assert fake_mod.instance.closed


@pytest.mark.asyncio
async def test_buckets_mirrored_and_restored(fake_mod):
    st = rs.RedisStateStore(RedisConfig(url="redis://x"))
    await st.start()
    for i, c in enumerate([10.0, 11.0, 12.5]):
        assert st.mirror_bucket(CEN, "1m", row(i, c))
    await drained(st)

    creates = [c for batch in fake_mod.instance.executed for c in batch if c[0] == "TS.CREATE"]
    assert len(creates) == len(rs.FIELDS)
    assert ("TS.ADD", "ts:PL:CEN:spot-price:1m:C", (T + 60) * 1000, 11.0) in [
        c for batch in fake_mod.instance.executed for c in batch
    ]

    assert await st.series() == [(CEN, "1m")]
    rows = await st.load_buckets(CEN, "1m")
    assert rows == [row(0, 10.0), row(1, 11.0), row(2, 12.5)]

    store = TimeSeriesStore()
    assert await st.restore_into(store) == 3
    got = store.query(CEN, "1m")
    assert [b.close for b in got] == [10.0, 11.0, 12.5]
    assert all(b.closed for b in got)
    await st.stop()


@pytest.mark.asyncio
async def test_write_error_is_counted_and_writer_keeps_going(fake_mod):
    st = rs.RedisStateStore(RedisConfig(url="redis://x"))
    await st.start()
    fake_mod.instance.fail_hset = True
    st.save_rule(AlertRule("r1", "PL/CEN/load", ">", 1.0))
    st.save_rule(AlertRule("r2", "PL/CEN/load", ">", 2.0))
    await drained(st)

    assert st.write_errors == 1
    assert set(fake_mod.instance.hashes[rs.RULES_HASH]) == {"r2"}
    await st.stop()


@pytest.mark.asyncio
async def test_disabled_store_is_noop(fake_mod):
    st = rs.RedisStateStore(RedisConfig())
    await st.start()
    assert fake_mod.last_url is None
    assert st.mirror_bucket(CEN, "1m", row(0, 1.0)) is False
    assert st.save_rule(AlertRule("r1", "PL/CEN/load", ">", 1.0)) is False
    await st.stop()
    with pytest.raises(RuntimeError):
        await st.load_rules()
