import random

from wa_gateway.services.backoff import MAX_ATTEMPTS, ReconnectBackoff, base_delay_ms, jitter


class TestBaseDelay:
    def test_sequence_doubles_and_caps(self):
        assert [base_delay_ms(a) for a in range(1, 10)] == [
            1000,
            2000,
            4000,
            8000,
            16000,
            32000,
            60000,
            60000,
            60000,
        ]


class TestJitter:
    def test_within_spread(self):
        rng = random.Random(1)
        values = [jitter(1000, 0.5, rng) for _ in range(200)]
        assert all(500 <= v <= 1500 for v in values)
        assert len(set(values)) > 1

    def test_zero_spread(self):
        assert jitter(1000, 0, random.Random(1)) == 1000


class TestReconnectBackoff:
    def test_delays_stay_in_jitter_band(self):
        backoff = ReconnectBackoff(random.Random(3))
        for attempt in range(1, 12):
            delay = backoff.next_delay("acct1")
            base = base_delay_ms(attempt)
            assert base * 0.5 <= delay <= base * 1.5

    def test_attempt_counter_caps(self):
        backoff = ReconnectBackoff(random.Random(3))
        for _ in range(20):
            backoff.next_delay("acct1")
        assert backoff.attempts("acct1") == MAX_ATTEMPTS

    def test_reset(self):
        backoff = ReconnectBackoff(random.Random(3))
        backoff.next_delay("acct1")
        backoff.next_delay("acct1")
        backoff.reset("acct1")
        assert backoff.attempts("acct1") == 0
        assert 500 <= backoff.next_delay("acct1") <= 1500
