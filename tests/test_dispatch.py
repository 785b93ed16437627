import pytest

from conversa.database import ensure_aware
from conversa.services.dispatch_service import compute_delays, safe_rate, schedule_sends


class TestSafeRate:
    @pytest.mark.parametrize("rate, expected", [(60, 60), ("30", 30), (None, 20), (0, 20), (-5, 20), ("abc", 20)])
    def test_invalid_rates_fall_back_to_default(self, rate, expected):
        assert safe_rate(rate) == expected

    def test_configured_default(self, test_settings):
        test_settings.default_rate_limit_per_minute = 40
        assert safe_rate(None) == 40


class TestComputeDelays:
    def test_even_spacing(self):
        assert compute_delays(4, 30) == [0.0, 2.0, 4.0, 6.0]

    def test_never_more_than_rate_in_a_minute(self):
        delays = compute_delays(25, 10)
        assert sum(1 for delay in delays if delay < 60) == 10

    def test_no_sends(self):
        assert compute_delays(0, 10) == []


class TestScheduleSends:
    def test_jobs_keep_payload_order_and_spacing(self, db_session):
        payloads = [{"n": n} for n in range(3)]

        jobs = schedule_sends(db_session, "campaign.send", payloads, 60)

        assert [job.payload for job in jobs] == payloads
        first = ensure_aware(jobs[0].run_at)
        offsets = [(ensure_aware(job.run_at) - first).total_seconds() for job in jobs]
        assert offsets == pytest.approx([0.0, 1.0, 2.0], abs=0.1)
        assert all(job.status == "PENDING" for job in jobs)
