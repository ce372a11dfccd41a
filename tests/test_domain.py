"""Tests for transition tables, money and geo helpers."""

from decimal import Decimal

import pytest

from gigmarket.domain.errors import (
    GatewayRejectedError,
    GatewayUnavailableError,
    InvalidTransitionError,
    LocationVerificationError,
)
from gigmarket.domain.geo import (
    METERS_PER_FOOT,
    bounding_box,
    haversine_meters,
    is_valid_coordinate,
)
from gigmarket.domain.money import FeePolicy, from_cents, to_cents
from gigmarket.domain.states import (
    APPLICATION_TRANSITIONS,
    JOB_TRANSITIONS,
    ApplicationStatus,
    JobStatus,
    can_transition_application,
    can_transition_job,
)


class TestTransitionTables:
    """The tables are the single source of allowed edges."""

    @pytest.mark.parametrize("current,target", [
        (JobStatus.OPEN, JobStatus.ASSIGNED),
        (JobStatus.ASSIGNED, JobStatus.IN_PROGRESS),
        (JobStatus.IN_PROGRESS, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.PAYMENT_FAILED),
        (JobStatus.PAYMENT_FAILED, JobStatus.COMPLETED),
        (JobStatus.OPEN, JobStatus.CANCELED),
        (JobStatus.IN_PROGRESS, JobStatus.CANCELED),
    ])
    def test_allowed_job_edges(self, current, target):
        assert can_transition_job(current, target)

    @pytest.mark.parametrize("current,target", [
        (JobStatus.OPEN, JobStatus.IN_PROGRESS),
        (JobStatus.OPEN, JobStatus.COMPLETED),
        (JobStatus.ASSIGNED, JobStatus.COMPLETED),
        (JobStatus.COMPLETED, JobStatus.OPEN),
        (JobStatus.COMPLETED, JobStatus.CANCELED),
        (JobStatus.CANCELED, JobStatus.OPEN),
        (JobStatus.PAYMENT_FAILED, JobStatus.CANCELED),
    ])
    def test_forbidden_job_edges(self, current, target):
        assert not can_transition_job(current, target)

    def test_every_status_has_an_entry(self):
        assert set(JOB_TRANSITIONS) == set(JobStatus)
        assert set(APPLICATION_TRANSITIONS) == set(ApplicationStatus)

    def test_terminal_application_states(self):
        for status in (ApplicationStatus.REJECTED, ApplicationStatus.COMPLETED, ApplicationStatus.CANCELLED):
            assert not APPLICATION_TRANSITIONS[status]

    def test_application_edges(self):
        assert can_transition_application(ApplicationStatus.PENDING, ApplicationStatus.ACCEPTED)
        assert can_transition_application(ApplicationStatus.ACCEPTED, ApplicationStatus.COMPLETED)
        assert not can_transition_application(ApplicationStatus.PENDING, ApplicationStatus.COMPLETED)
        assert not can_transition_application(ApplicationStatus.REJECTED, ApplicationStatus.ACCEPTED)

    def test_accepts_plain_strings(self):
        """Statuses loaded from the database arrive as plain strings."""
        assert can_transition_job("open", JobStatus.ASSIGNED)


class TestMoney:
    """Cents conversion and the platform fee policy."""

    def test_to_cents_rounds_half_up(self):
        assert to_cents(Decimal("10.005")) == 1001
        assert to_cents(Decimal("10.004")) == 1000
        assert to_cents(Decimal("0.1")) == 10

    def test_from_cents(self):
        assert from_cents(1999) == Decimal("19.99")

    def test_percentage_fee(self):
        policy = FeePolicy(mode="percentage", rate=Decimal("0.10"))
        split = policy.split(Decimal("100.00"))

        assert split.amount_cents == 10000
        assert split.fee_cents == 1000
        assert split.net == Decimal("90.00")

    def test_percentage_fee_rounds_fraction_up_at_half(self):
        policy = FeePolicy(mode="percentage", rate=Decimal("0.10"))

        # 10.05 -> 1005 cents -> 100.5 -> 101
        assert policy.fee_cents(1005) == 101
        # 10.04 -> 1004 cents -> 100.4 -> 100
        assert policy.fee_cents(1004) == 100

    def test_flat_fee(self):
        policy = FeePolicy(mode="flat", flat=Decimal("2.50"))

        assert policy.fee_for(Decimal("40.00")) == Decimal("2.50")
        assert policy.split(Decimal("40.00")).net == Decimal("37.50")

    def test_flat_fee_capped_at_amount(self):
        policy = FeePolicy(mode="flat", flat=Decimal("2.50"))
        assert policy.fee_for(Decimal("1.00")) == Decimal("1.00")

    def test_zero_amount_has_no_fee(self):
        assert FeePolicy().fee_cents(0) == 0


class TestGeo:
    """Distance helpers used for the start-of-job location check."""

    def test_zero_distance(self):
        assert haversine_meters(37.0, -122.0, 37.0, -122.0) == 0

    def test_known_distance(self):
        # San Francisco to Los Angeles, roughly 559 km
        distance = haversine_meters(37.7749, -122.4194, 34.0522, -118.2437)
        assert distance == pytest.approx(559_000, rel=0.01)

    def test_thousand_feet_north(self):
        offset = (1000 * METERS_PER_FOOT) / 111_195  # degrees of latitude
        distance = haversine_meters(37.0, -122.0, 37.0 + offset, -122.0)
        assert distance == pytest.approx(304.8, rel=0.001)

    def test_bounding_box_contains_radius(self):
        min_lat, max_lat, min_lon, max_lon = bounding_box(37.0, -122.0, 1000)

        assert haversine_meters(37.0, -122.0, max_lat, -122.0) == pytest.approx(1000, rel=0.001)
        assert min_lat < 37.0 < max_lat
        assert min_lon < -122.0 < max_lon

    def test_coordinate_validation(self):
        assert is_valid_coordinate(90, 180)
        assert not is_valid_coordinate(91, 0)
        assert not is_valid_coordinate(0, -181)


class TestErrors:
    """Error kinds carry their HTTP status and context."""

    def test_invalid_transition_context(self):
        error = InvalidTransitionError("job", 7, JobStatus.OPEN, JobStatus.COMPLETED)

        assert error.status_code == 400
        assert error.context["current_status"] == "open"
        assert error.context["target_status"] == "completed"

    def test_location_error_carries_distance(self):
        error = LocationVerificationError(3, 304.84, 152.4)

        assert error.status_code == 409
        assert error.context["distance_meters"] == 304.8
        assert error.radius_meters == 152.4

    def test_gateway_errors_retriable_flag(self):
        assert GatewayUnavailableError("down").retriable is True
        assert GatewayRejectedError("no").retriable is False
        assert GatewayUnavailableError("down").status_code == 502
