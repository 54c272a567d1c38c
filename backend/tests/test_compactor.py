from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW, add_resource
from detector.models import ScanResult, SeriesData
from detector.services.compactor import (
    SERIES_MIN_POINTS,
    SeriesCompactor,
    SeriesPoint,
    build_series,
    load_series,
    serialize_series,
)


async def add_history(session_factory, resource_id: int, ages, status: str = None) -> None:
    """Add one scan result per age (a timedelta before NOW)."""
    async with session_factory() as session:
        for age in ages:
            session.add(ScanResult(
                created=NOW - age,
                resource_id=resource_id,
                url="https://example.test/health",
                response_time_ms=20,
                status_code=200 if status is None else 500,
                exception_message=status,
            ))
        await session.commit()


async def stored_series(session_factory, resource_id: int):
    async with session_factory() as session:
        result = await session.execute(select(SeriesData).where(SeriesData.resource_id == resource_id))
        return result.scalar_one_or_none()


def test_build_series_dedups_timestamps_newest_first() -> None:
    history = [
        ScanResult(created=NOW - timedelta(minutes=2), response_time_ms=30),
        ScanResult(created=NOW, response_time_ms=10),
        ScanResult(created=NOW, response_time_ms=99, exception_message="Invalid HTTP status code 500"),
        ScanResult(created=NOW - timedelta(minutes=1), response_time_ms=20),
    ]

    points = build_series(history)

    assert [p.timestamp for p in points] == [NOW, NOW - timedelta(minutes=1), NOW - timedelta(minutes=2)]
    assert len({p.timestamp for p in points}) == len(points)


def test_serialized_series_loads_back() -> None:
    points = [SeriesPoint(NOW, 12, "Ok"), SeriesPoint(NOW - timedelta(seconds=10), None, "SSL Error: X - Y")]

    assert load_series(serialize_series(points)) == points


@pytest.mark.parametrize("raw", ["not json", '[{"rt": 1}]', "42"])
def test_malformed_series_loads_empty(raw: str) -> None:
    assert load_series(raw) == []


@pytest.mark.asyncio
async def test_compaction_is_idempotent(session_factory) -> None:
    resource_id = await add_resource(session_factory)
    await add_history(session_factory, resource_id, [timedelta(minutes=m) for m in range(5)])
    compactor = SeriesCompactor(session_factory)

    assert await compactor.run(now=NOW) == 1
    first = await stored_series(session_factory, resource_id)

    assert await compactor.run(now=NOW + timedelta(minutes=5)) == 0
    second = await stored_series(session_factory, resource_id)

    assert second.points_json == first.points_json
    assert second.updated == first.updated == NOW


@pytest.mark.asyncio
async def test_new_history_rewrites_series(session_factory) -> None:
    resource_id = await add_resource(session_factory)
    await add_history(session_factory, resource_id, [timedelta(minutes=1)])
    compactor = SeriesCompactor(session_factory)
    await compactor.run(now=NOW)

    await add_history(session_factory, resource_id, [timedelta(0)], status="Invalid HTTP status code 500")
    assert await compactor.run(now=NOW + timedelta(minutes=5)) == 1

    points = load_series((await stored_series(session_factory, resource_id)).points_json)
    assert [p.status for p in points] == ["Invalid HTTP status code 500", "Ok"]


@pytest.mark.asyncio
async def test_dense_window_uses_only_last_two_hours(session_factory) -> None:
    resource_id = await add_resource(session_factory)
    # 150 points inside the window, one day-old point outside
    ages = [timedelta(seconds=30 * i) for i in range(150)] + [timedelta(days=1)]
    await add_history(session_factory, resource_id, ages)

    await SeriesCompactor(session_factory).run(now=NOW)

    points = load_series((await stored_series(session_factory, resource_id)).points_json)
    assert len(points) == 150
    assert min(p.timestamp for p in points) >= NOW - timedelta(hours=2)


@pytest.mark.asyncio
async def test_sparse_window_falls_back_to_latest_points(session_factory) -> None:
    resource_id = await add_resource(session_factory)
    # 10 recent points, 200 old ones spaced a minute apart starting a day ago
    ages = [timedelta(minutes=i) for i in range(10)]
    ages += [timedelta(days=1, minutes=i) for i in range(200)]
    await add_history(session_factory, resource_id, ages)

    await SeriesCompactor(session_factory).run(now=NOW)

    points = load_series((await stored_series(session_factory, resource_id)).points_json)
    assert len(points) == SERIES_MIN_POINTS
    assert points[0].timestamp == NOW
    assert points[-1].timestamp == NOW - timedelta(days=1, minutes=SERIES_MIN_POINTS - 11)


@pytest.mark.asyncio
async def test_resources_without_history_or_deleted_are_skipped(session_factory) -> None:
    await add_resource(session_factory, identifier="quiet")
    deleted_id = await add_resource(session_factory, identifier="gone", deleted=NOW)
    await add_history(session_factory, deleted_id, [timedelta(minutes=1)])

    assert await SeriesCompactor(session_factory).run(now=NOW) == 0
    assert await stored_series(session_factory, deleted_id) is None
