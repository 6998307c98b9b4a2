"""Tests for deadline arithmetic, urgency classification and timeframe extensions."""

from datetime import timedelta

import pytest

from haunter_platform.domain.enums import ExtensionStatus, SearchJobStatus, Urgency
from haunter_platform.domain.models import SearchJob, TimeframeExtension
from haunter_platform.infra.clock import as_utc
from haunter_platform.services.deadline_tracker import (
    is_expired,
    remaining_fraction,
    time_remaining,
    urgency,
)
from haunter_platform.services.errors import (
    DeadlinePassedError,
    ExtensionAlreadyResolvedError,
    ExtensionNotFoundError,
    InvalidStateError,
    MissingFieldError,
    NotAuthorizedError,
    ValidationFailure,
)

from conftest import HUNTER, HUNTER_2, START, TENANT, evidence

WINDOW = timedelta(days=5)


def _job(claimed=True, extensions=None) -> SearchJob:
    return SearchJob(
        claimed_at=START if claimed else None,
        deadline=START + WINDOW if claimed else None,
        extensions=extensions or [],
    )


# ---------------------------------------------------------------------------
# Pure reads
# ---------------------------------------------------------------------------


class TestRemainingFraction:
    @pytest.mark.parametrize(
        "elapsed,expected",
        [
            (timedelta(0), 1.0),
            (timedelta(days=2, hours=12), 0.5),
            (timedelta(days=5), 0.0),
            (timedelta(days=9), 0.0),
            (timedelta(days=-1), 1.0),
        ],
    )
    def test_fraction_is_clamped(self, elapsed, expected):
        assert remaining_fraction(_job(), START + elapsed) == pytest.approx(expected)

    def test_unclaimed_job_has_full_window(self):
        job = _job(claimed=False)
        assert remaining_fraction(job, START) == 1.0
        assert time_remaining(job, START) is None

    def test_time_remaining_never_negative(self):
        assert time_remaining(_job(), START + timedelta(days=1)) == timedelta(days=4)
        assert time_remaining(_job(), START + timedelta(days=8)) == timedelta(0)

    def test_naive_datetimes_are_treated_as_utc(self):
        job = SearchJob(
            claimed_at=START.replace(tzinfo=None),
            deadline=(START + WINDOW).replace(tzinfo=None),
            extensions=[],
        )
        assert remaining_fraction(job, START + timedelta(days=2, hours=12)) == pytest.approx(0.5)


class TestUrgency:
    @pytest.mark.parametrize(
        "elapsed,level",
        [
            (timedelta(days=1), Urgency.NORMAL),
            (timedelta(days=3, hours=12), Urgency.WARNING),
            (timedelta(days=4, hours=12), Urgency.URGENT),
            (timedelta(days=5, minutes=1), Urgency.EXPIRED),
        ],
    )
    def test_levels(self, elapsed, level):
        assert urgency(_job(), START + elapsed) == level

    def test_unclaimed_is_normal(self):
        assert urgency(_job(claimed=False), START) == Urgency.NORMAL


class TestIsExpired:
    def test_not_expired_at_deadline(self):
        assert not is_expired(_job(), START + WINDOW, grace_hours=24)

    def test_expired_after_deadline(self):
        assert is_expired(_job(), START + WINDOW + timedelta(seconds=1), grace_hours=24)

    def test_pending_extension_holds_job_open_for_grace(self):
        extension = TimeframeExtension(
            status=ExtensionStatus.PENDING.value, created_at=START + timedelta(days=4), requested_hours=24
        )
        job = _job(extensions=[extension])

        assert not is_expired(job, START + WINDOW + timedelta(hours=23), grace_hours=24)
        assert is_expired(job, START + WINDOW + timedelta(hours=25), grace_hours=24)

    def test_resolved_extension_gives_no_grace(self):
        extension = TimeframeExtension(
            status=ExtensionStatus.REJECTED.value, created_at=START + timedelta(days=4), requested_hours=24
        )
        job = _job(extensions=[extension])

        assert is_expired(job, START + WINDOW + timedelta(hours=1), grace_hours=24)


# ---------------------------------------------------------------------------
# Extension requests
# ---------------------------------------------------------------------------


class TestRequestExtension:
    async def test_claiming_hunter_requests_more_time(self, claimed_job, tracker, lifecycle):
        job = await claimed_job()

        extension = await tracker.request_extension(job.id, HUNTER, 24, "Landlord only shows on Monday")

        assert extension.status == ExtensionStatus.PENDING.value
        assert extension.requested_hours == 24
        assert [e.id for e in (await lifecycle.get(job.id)).extensions] == [extension.id]

    async def test_only_one_pending_request(self, claimed_job, tracker):
        job = await claimed_job()
        await tracker.request_extension(job.id, HUNTER, 24, "Need the weekend")

        with pytest.raises(InvalidStateError):
            await tracker.request_extension(job.id, HUNTER, 12, "Still waiting")

    @pytest.mark.parametrize("hours", [0, 73, -5])
    async def test_hours_bounded(self, claimed_job, tracker, hours):
        job = await claimed_job()
        with pytest.raises(ValidationFailure):
            await tracker.request_extension(job.id, HUNTER, hours, "Need time")

    async def test_reason_required(self, claimed_job, tracker):
        job = await claimed_job()
        with pytest.raises(MissingFieldError):
            await tracker.request_extension(job.id, HUNTER, 24, "")

    async def test_other_hunter_refused(self, claimed_job, tracker):
        job = await claimed_job()
        with pytest.raises(NotAuthorizedError):
            await tracker.request_extension(job.id, HUNTER_2, 24, "Need time")

    async def test_refused_after_deadline(self, claimed_job, tracker, clock):
        job = await claimed_job("URGENT")
        clock.advance(days=3, minutes=5)

        with pytest.raises(DeadlinePassedError):
            await tracker.request_extension(job.id, HUNTER, 24, "Need time")

    async def test_refused_once_in_review(self, claimed_job, tracker, lifecycle):
        job = await claimed_job()
        await lifecycle.submit_evidence(job.id, HUNTER, evidence(3))

        with pytest.raises(InvalidStateError):
            await tracker.request_extension(job.id, HUNTER, 24, "Need time")


class TestResolveExtension:
    async def test_approve_moves_deadline_forward(self, claimed_job, tracker, lifecycle):
        job = await claimed_job("PREMIUM")
        original = as_utc(job.deadline)
        extension = await tracker.request_extension(job.id, HUNTER, 48, "Viewing keys delayed")

        extension = await tracker.resolve_extension(job.id, extension.id, TENANT, approve=True)

        assert extension.status == ExtensionStatus.APPROVED.value
        assert extension.resolved_by == TENANT
        job = await lifecycle.get(job.id)
        assert as_utc(job.deadline) == original + timedelta(hours=48)

    async def test_reject_keeps_deadline(self, claimed_job, tracker, lifecycle):
        job = await claimed_job("PREMIUM")
        original = as_utc(job.deadline)
        extension = await tracker.request_extension(job.id, HUNTER, 48, "Viewing keys delayed")

        extension = await tracker.resolve_extension(job.id, extension.id, TENANT, approve=False)

        assert extension.status == ExtensionStatus.REJECTED.value
        assert as_utc((await lifecycle.get(job.id)).deadline) == original

    async def test_deadline_only_grows_across_extensions(self, claimed_job, tracker, lifecycle):
        job = await claimed_job("PREMIUM")
        job_id = job.id
        deadlines = [as_utc(job.deadline)]
        for hours, approve in [(24, True), (12, False), (6, True)]:
            extension = await tracker.request_extension(job_id, HUNTER, hours, "More time")
            await tracker.resolve_extension(job_id, extension.id, TENANT, approve=approve)
            deadlines.append(as_utc((await lifecycle.get(job_id)).deadline))

        assert deadlines == sorted(deadlines)
        assert deadlines[-1] == deadlines[0] + timedelta(hours=30)

    async def test_resolution_is_final(self, claimed_job, tracker):
        job = await claimed_job()
        extension = await tracker.request_extension(job.id, HUNTER, 24, "Need time")
        job_id, extension_id = job.id, extension.id
        await tracker.resolve_extension(job_id, extension_id, TENANT, approve=False)

        with pytest.raises(ExtensionAlreadyResolvedError):
            await tracker.resolve_extension(job_id, extension_id, TENANT, approve=True)

    async def test_only_tenant_resolves(self, claimed_job, tracker):
        job = await claimed_job()
        extension = await tracker.request_extension(job.id, HUNTER, 24, "Need time")

        with pytest.raises(NotAuthorizedError):
            await tracker.resolve_extension(job.id, extension.id, HUNTER, approve=True)

    async def test_unknown_extension(self, claimed_job, tracker):
        job = await claimed_job()
        with pytest.raises(ExtensionNotFoundError):
            await tracker.resolve_extension(job.id, "missing", TENANT, approve=True)


class TestGraceWindow:
    async def test_pending_request_delays_forfeiture(self, claimed_job, tracker, lifecycle, clock):
        job = await claimed_job("URGENT")
        job_id = job.id
        clock.advance(days=2, hours=20)
        extension = await tracker.request_extension(job_id, HUNTER, 24, "Caretaker away")
        extension_id = extension.id

        clock.advance(hours=6)  # past the deadline, inside the grace window
        assert await lifecycle.check_expiry(job_id) is False

        clock.advance(hours=24)
        assert await lifecycle.check_expiry(job_id) is True

        job = await lifecycle.get(job_id)
        assert job.status == SearchJobStatus.FORFEITED.value
        extension = next(e for e in job.extensions if e.id == extension_id)
        assert extension.status == ExtensionStatus.REJECTED.value
        assert extension.resolved_by == "system"

    async def test_late_approval_inside_grace_keeps_job_alive(self, claimed_job, tracker, lifecycle, clock):
        job = await claimed_job("URGENT")
        job_id = job.id
        clock.advance(days=2, hours=20)
        extension = await tracker.request_extension(job_id, HUNTER, 48, "Caretaker away")
        clock.advance(hours=6)

        await tracker.resolve_extension(job_id, extension.id, TENANT, approve=True)
        clock.advance(hours=24)

        assert await lifecycle.check_expiry(job_id) is False
        assert (await lifecycle.get(job_id)).status == SearchJobStatus.IN_PROGRESS.value
