from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import NOW, WebhookRecorder, add_resource
from detector.models import Alert, Issue, IssueType, Resource
from detector.services.ledger import OPENED, REFRESHED, RESOLVED, IssueLedger
from detector.services.probe import Failed, Healthy

SSL_FAILURE = Failed(
    IssueType.SSL_ERROR,
    "SSL Error: CHAIN_ERRORS - Remote Certificate Chain Errors",
    {"ssl_error_code": "CHAIN_ERRORS", "ssl_error_message": "Remote Certificate Chain Errors"},
)
HTTP_FAILURE = Failed(IssueType.INVALID_HTTP_STATUS_CODE, "Invalid HTTP status code 500", {"status_code": 500})
HEALTHY = Healthy(connecting_ip="10.0.0.1", status_code=200, response_time_ms=42)


async def _rows(session, model) -> list:
    return list((await session.execute(select(model).order_by(model.id))).scalars().all())


@pytest.mark.asyncio
async def test_open_refresh_resolve_produces_one_issue_and_two_alerts(
    session_factory, ledger: IssueLedger, webhook: WebhookRecorder
) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)

        opened = await ledger.record(session, resource, SSL_FAILURE, now=NOW)
        refreshed = await ledger.record(session, resource, SSL_FAILURE, now=NOW + timedelta(seconds=10))
        resolved = await ledger.record(session, resource, HEALTHY, now=NOW + timedelta(seconds=20))

        assert [t.transition for t in opened] == [OPENED]
        assert [t.transition for t in refreshed] == [REFRESHED]
        assert [t.transition for t in resolved] == [RESOLVED]

        issues = await _rows(session, Issue)
        assert len(issues) == 1
        issue = issues[0]
        assert issue.created == NOW
        assert issue.updated == NOW + timedelta(seconds=20)
        assert issue.resolved == NOW + timedelta(seconds=20)
        assert issue.issue_type == "ssl_error"
        assert issue.ssl_error_code == "CHAIN_ERRORS"

        alerts = await _rows(session, Alert)
        assert [a.type for a in alerts] == ["negative", "positive"]
        assert all(a.issue_id == issue.id for a in alerts)
        # The refresh landed on the negative alert
        assert alerts[0].updated == NOW + timedelta(seconds=10)

    assert len(webhook.requests) == 2


@pytest.mark.asyncio
async def test_refresh_only_advances_updated(session_factory, ledger: IssueLedger) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        await ledger.record(session, resource, HTTP_FAILURE, now=NOW)
        later = Failed(IssueType.INVALID_HTTP_STATUS_CODE, "Invalid HTTP status code 404", {"status_code": 404})
        await ledger.record(session, resource, later, now=NOW + timedelta(minutes=5))

        issues = await _rows(session, Issue)
        assert len(issues) == 1
        assert issues[0].message == "Invalid HTTP status code 500"
        assert issues[0].http_status_code == 500
        assert issues[0].updated == NOW + timedelta(minutes=5)
        assert issues[0].resolved is None


@pytest.mark.asyncio
async def test_repeated_healthy_probes_write_nothing(session_factory, ledger: IssueLedger, webhook: WebhookRecorder) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        for i in range(3):
            transitions = await ledger.record(session, resource, HEALTHY, now=NOW + timedelta(minutes=i))
            assert transitions == []

        assert await _rows(session, Issue) == []
        assert await _rows(session, Alert) == []
    assert webhook.requests == []


@pytest.mark.asyncio
async def test_distinct_failure_types_open_separate_issues(session_factory, ledger: IssueLedger) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        await ledger.record(session, resource, SSL_FAILURE, now=NOW)
        await ledger.record(session, resource, HTTP_FAILURE, now=NOW + timedelta(seconds=10))

        open_issues = await ledger.get_open_issues(session, resource_id)
        assert sorted(i.issue_type for i in open_issues) == ["invalid_http_status_code", "ssl_error"]


@pytest.mark.asyncio
async def test_healthy_resolves_all_open_issues(session_factory, ledger: IssueLedger) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        await ledger.record(session, resource, SSL_FAILURE, now=NOW)
        await ledger.record(session, resource, HTTP_FAILURE, now=NOW + timedelta(seconds=10))

        resolved = await ledger.record(session, resource, HEALTHY, now=NOW + timedelta(seconds=20))

        assert len(resolved) == 2
        assert await ledger.get_open_issues(session, resource_id) == []
        positives = (
            await session.execute(select(func.count(Alert.id)).where(Alert.type == "positive"))
        ).scalar_one()
        assert positives == 2


@pytest.mark.asyncio
async def test_failure_after_resolve_opens_new_issue(session_factory, ledger: IssueLedger) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        await ledger.record(session, resource, SSL_FAILURE, now=NOW)
        await ledger.record(session, resource, HEALTHY, now=NOW + timedelta(minutes=1))
        transitions = await ledger.record(session, resource, SSL_FAILURE, now=NOW + timedelta(minutes=2))

        assert [t.transition for t in transitions] == [OPENED]
        issues = await _rows(session, Issue)
        assert len(issues) == 2
        assert issues[0].resolved is not None
        assert issues[1].resolved is None


@pytest.mark.asyncio
async def test_issues_are_scoped_per_resource(session_factory, ledger: IssueLedger) -> None:
    first_id = await add_resource(session_factory, identifier="a")
    second_id = await add_resource(session_factory, identifier="b")
    async with session_factory() as session:
        first = await session.get(Resource, first_id)
        second = await session.get(Resource, second_id)
        await ledger.record(session, first, SSL_FAILURE, now=NOW)
        await ledger.record(session, second, SSL_FAILURE, now=NOW)
        await ledger.record(session, first, HEALTHY, now=NOW + timedelta(seconds=10))

        assert await ledger.get_open_issues(session, first_id) == []
        assert len(await ledger.get_open_issues(session, second_id)) == 1


@pytest.mark.asyncio
async def test_failed_alert_write_does_not_drop_other_recoveries(
    session_factory, ledger: IssueLedger, alerter, monkeypatch
) -> None:
    resource_id = await add_resource(session_factory)
    async with session_factory() as session:
        resource = await session.get(Resource, resource_id)
        await ledger.record(session, resource, SSL_FAILURE, now=NOW)
        await ledger.record(session, resource, HTTP_FAILURE, now=NOW + timedelta(seconds=10))
        open_ids = [issue.id for issue in await ledger.get_open_issues(session, resource_id)]

        original_find_recent = alerter.find_recent
        calls = []

        async def flaky_find_recent(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("disk I/O error"))
            return await original_find_recent(*args, **kwargs)

        monkeypatch.setattr(alerter, "find_recent", flaky_find_recent)
        await ledger.record(session, resource, HEALTHY, now=NOW + timedelta(seconds=20))

    async with session_factory() as session:
        positives = (
            await session.execute(select(Alert).where(Alert.type == "positive"))
        ).scalars().all()
        assert [a.issue_id for a in positives] == [open_ids[1]]
        assert all(i.resolved is not None for i in await _rows(session, Issue))
