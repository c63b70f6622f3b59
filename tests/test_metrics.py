import threading

from app.services.metrics_service import MetricsCollector


def test_empty_snapshot():
    snapshot = MetricsCollector().snapshot()

    assert snapshot.total_requests == 0
    assert snapshot.success_rate == 0.0
    assert snapshot.average_requests_per_session == 0.0


def test_rates():
    metrics = MetricsCollector()
    for _ in range(4):
        metrics.record_request()
    for _ in range(3):
        metrics.record_success()
    metrics.record_failure()
    metrics.record_proxy_failure()
    metrics.record_challenge_solved()

    snapshot = metrics.snapshot(active_sessions=2, session_totals=(4, 10))

    assert snapshot.successful_requests == 3
    assert snapshot.failed_requests == 1
    assert snapshot.success_rate == 75.0
    assert snapshot.proxy_failures == 1
    assert snapshot.captchas_solved == 1
    assert snapshot.active_sessions == 2
    assert snapshot.average_requests_per_session == 2.5


def test_counters_are_exact_under_threads():
    metrics = MetricsCollector()

    def hammer():
        for _ in range(1000):
            metrics.record_request()
            metrics.record_success()

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snapshot = metrics.snapshot()
    assert snapshot.total_requests == 8000
    assert snapshot.successful_requests == 8000
    assert snapshot.success_rate == 100.0
