"""
Metrics Collector - Compteurs process-wide du pipeline d'acquisition.

Un seul verrou, section critique minimale: chaque incrément et chaque
snapshot ne tiennent le verrou que le temps de lire/écrire des entiers.
"""
import threading
from typing import Tuple

from app.normalizers.session import MetricsSnapshot


class MetricsCollector:
    def __init__(self):
        self._lock = threading.Lock()
        self._total = 0
        self._success = 0
        self._failed = 0
        self._captchas = 0
        self._proxy_failures = 0

    def record_request(self) -> None:
        with self._lock:
            self._total += 1

    def record_success(self) -> None:
        with self._lock:
            self._success += 1

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1

    def record_challenge_solved(self) -> None:
        with self._lock:
            self._captchas += 1

    def record_proxy_failure(self) -> None:
        with self._lock:
            self._proxy_failures += 1

    def snapshot(self, active_sessions: int = 0, session_totals: Tuple[int, int] = (0, 0)) -> MetricsSnapshot:
        with self._lock:
            total, success, failed = self._total, self._success, self._failed
            captchas, proxy_failures = self._captchas, self._proxy_failures

        sessions, session_requests = session_totals
        return MetricsSnapshot(
            total_requests=total,
            successful_requests=success,
            failed_requests=failed,
            captchas_solved=captchas,
            proxy_failures=proxy_failures,
            active_sessions=active_sessions,
            success_rate=round(success / total * 100, 2) if total else 0.0,
            average_requests_per_session=round(session_requests / sessions, 2) if sessions else 0.0,
        )
