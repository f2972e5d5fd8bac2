import pytest

from services.config import TrendConfig
from workflows.trends import (
    TrendStage,
    calculate_velocity,
    classify_trend,
    detect_spike,
    latest_trends,
    snapshot_day,
    topic_history,
)

DAY = 86400


def _stage(db, clock, **config) -> TrendStage:
    return TrendStage(db, TrendConfig(**config), clock=clock)


async def _snapshots(db):
    rows = await db.fetchall("SELECT * FROM trend_snapshots ORDER BY snapshot_date, topic")
    return [dict(r) for r in rows]


@pytest.mark.parametrize(
    "current,previous,expected",
    [
        (4, 0, 1.0),
        (0, 0, None),
        (15, 10, 0.5),
        (7, 10, -0.3),
    ],
)
def test_velocity(current, previous, expected):
    velocity = calculate_velocity(current, previous)
    if expected is None:
        assert velocity is None
    else:
        assert velocity == pytest.approx(expected)


@pytest.mark.parametrize(
    "velocity,is_spike,expected",
    [
        (-0.9, True, "hot"),
        (None, False, "stable"),
        (0.5, False, "hot"),
        (0.49, False, "rising"),
        (0.1, False, "rising"),
        (0.0, False, "stable"),
        (-0.1, False, "stable"),
        (-0.2, False, "cooling"),
        (-0.3, False, "cooling"),
        (-0.31, False, "cold"),
    ],
)
def test_classify_trend(velocity, is_spike, expected):
    assert classify_trend(velocity, is_spike) == expected


def test_detect_spike():
    assert detect_spike(5, 0.0)
    assert not detect_spike(4, 0.0)
    assert detect_spike(9, 3.0)
    assert not detect_spike(8, 3.0)


async def test_daily_snapshots_track_velocity(db, seed, clock):
    await seed.record(topics=["unpaid_invoices"], severity="critical")
    await seed.record(topics=["Unpaid Invoice"])
    await seed.record(topics=["unpaid_invoicing"], source_id="freelance")
    stage = _stage(db, clock)

    first = await stage.run()

    assert (first.attempted, first.succeeded) == (1, 1)
    [row] = await _snapshots(db)
    assert row["topic"] == "unpaid_invoice"
    assert row["snapshot_date"] == snapshot_day(clock())
    assert (row["mention_count"], row["new_mentions"]) == (3, 3)
    assert row["velocity"] == 1.0
    assert row["trend_status"] == "hot"
    assert row["is_spike"] == 0
    assert row["avg_severity"] == pytest.approx(2.67)
    assert row["source_spread"] == 2
    assert row["velocity_7d"] is None

    clock.advance(DAY)
    await seed.record(topics=["unpaid invoices"])
    second = await stage.run()

    assert second.detail["rising"] == 1
    latest = (await _snapshots(db))[-1]
    assert (latest["mention_count"], latest["new_mentions"]) == (4, 1)
    assert latest["velocity"] == pytest.approx(1 / 3)
    assert latest["trend_status"] == "rising"


async def test_rerun_on_the_same_day_overwrites(db, seed, clock):
    await seed.record(topics=["payroll"])
    stage = _stage(db, clock)
    await stage.run()

    clock.advance(600)
    await seed.record(topics=["payroll"])
    await stage.run()

    rows = await _snapshots(db)
    assert len(rows) == 1
    assert rows[0]["mention_count"] == 2
    assert rows[0]["created_at"] == clock()


async def test_burst_of_new_mentions_is_a_spike(db, seed, clock):
    for _ in range(6):
        await seed.record(topics=["rental_bond"])

    result = await _stage(db, clock).run()

    assert result.detail["spikes"] == 1
    [row] = await _snapshots(db)
    assert (row["is_spike"], row["trend_status"]) == (1, "hot")


async def test_spike_measured_against_last_week(db, seed, clock):
    for days_back in range(1, 8):
        await seed._insert("trend_snapshots", {
            "topic": "payroll",
            "snapshot_date": snapshot_day(clock(), days_back),
            "mention_count": 20 - 2 * days_back,
            "new_mentions": 2,
            "trend_status": "stable",
            "created_at": clock() - days_back * DAY,
        })
    for _ in range(23):
        await seed.record(topics=["payroll"])

    await _stage(db, clock).run()

    today = (await _snapshots(db))[-1]
    # 5 new against a 2/day average
    assert today["new_mentions"] == 5
    assert today["is_spike"] == 0
    assert today["velocity_7d"] == pytest.approx((23 - 6) / 6)


async def test_old_snapshots_are_pruned(db, seed, clock):
    await seed._insert("trend_snapshots", {
        "topic": "payroll",
        "snapshot_date": snapshot_day(clock(), 120),
        "mention_count": 1,
        "trend_status": "stable",
        "created_at": clock() - 120 * DAY,
    })
    await seed.record(topics=["payroll"])

    result = await _stage(db, clock, history_days=90).run()

    assert result.detail["removed"] == 1
    assert [r["snapshot_date"] for r in await _snapshots(db)] == [snapshot_day(clock())]


async def test_trend_queries(db, seed, clock):
    await seed.record(topics=["payroll"])
    for _ in range(5):
        await seed.record(topics=["rental_bond"])
    stage = _stage(db, clock)
    await stage.run()
    clock.advance(DAY)
    await stage.run()

    latest = await latest_trends(db)
    assert [r["topic"] for r in latest] == ["rental_bond", "payroll"]
    assert all(r["snapshot_date"] == snapshot_day(clock()) for r in latest)
    assert await latest_trends(db, status="hot") == []

    history = await topic_history(db, "Rental Bonds", now=clock())
    assert [(h["mention_count"], h["trend_status"]) for h in history] == [(5, "hot"), (5, "stable")]


async def test_nothing_tagged_writes_nothing(db, clock):
    result = await _stage(db, clock).run()
    assert result.attempted == 0
    assert await _snapshots(db) == []
    assert (await db.count_stage_runs("trends")) == 1
