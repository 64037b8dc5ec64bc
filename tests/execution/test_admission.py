"""Tests for per-caller admission control."""

import pytest

from queryspine.core.errors import Denied
from queryspine.execution.admission import AdmissionController


@pytest.fixture
def controller(clock):
    return AdmissionController(
        max_concurrent=2,
        bucket_capacity=3,
        refill_tokens=3,
        refill_interval_seconds=60,
        clock=clock,
    )


class TestConcurrencyBound:
    def test_admits_up_to_bound(self, controller):
        controller.try_acquire("analyst-1")
        controller.try_acquire("analyst-1")
        assert controller.active("analyst-1") == 2

        with pytest.raises(Denied) as exc_info:
            controller.try_acquire("analyst-1")
        assert exc_info.value.reason == "concurrency"
        assert exc_info.value.retry_after == 1.0
        assert exc_info.value.caller == "analyst-1"

    def test_concurrency_denial_spends_no_token(self, controller):
        controller.try_acquire("analyst-1")
        controller.try_acquire("analyst-1")
        with pytest.raises(Denied):
            controller.try_acquire("analyst-1")
        assert controller.available_tokens("analyst-1") == pytest.approx(1.0)

    def test_release_frees_slot(self, controller):
        permit = controller.try_acquire("analyst-1")
        controller.try_acquire("analyst-1")
        permit.release()
        assert permit.released
        assert controller.active("analyst-1") == 1
        controller.try_acquire("analyst-1")

    def test_release_is_idempotent(self, controller):
        permit = controller.try_acquire("analyst-1")
        permit.release()
        permit.release()
        assert controller.active("analyst-1") == 0

    def test_permit_as_context_manager(self, controller):
        with controller.try_acquire("analyst-1") as permit:
            assert controller.active("analyst-1") == 1
        assert permit.released
        assert controller.active("analyst-1") == 0

    def test_callers_are_independent(self, controller):
        controller.try_acquire("analyst-1")
        controller.try_acquire("analyst-1")
        controller.try_acquire("analyst-2")
        assert controller.active("analyst-2") == 1


class TestTokenBucket:
    def test_rate_denial_with_retry_after(self, controller, clock):
        for _ in range(3):
            controller.try_acquire("analyst-1").release()

        with pytest.raises(Denied) as exc_info:
            controller.try_acquire("analyst-1")
        assert exc_info.value.reason == "rate"
        assert exc_info.value.retry_after == pytest.approx(20.0)

    def test_rate_denial_holds_no_slot(self, controller):
        for _ in range(3):
            controller.try_acquire("analyst-1").release()
        with pytest.raises(Denied):
            controller.try_acquire("analyst-1")
        assert controller.active("analyst-1") == 0

    def test_refill_admits_again(self, controller, clock):
        for _ in range(3):
            controller.try_acquire("analyst-1").release()
        clock.advance(20)
        controller.try_acquire("analyst-1")

    def test_unseen_caller_has_full_bucket(self, controller):
        assert controller.available_tokens("new-caller") == 3.0


class TestConstruction:
    def test_from_settings(self, settings, clock):
        controller = AdmissionController.from_settings(settings, clock=clock)
        assert controller.max_concurrent == 4
        for _ in range(4):
            controller.try_acquire("analyst-1")
        with pytest.raises(Denied):
            controller.try_acquire("analyst-1")

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            AdmissionController(max_concurrent=0)
