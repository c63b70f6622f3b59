"""
Pool de proxies: sélection, compteur d'échecs, dépriorisation, cooldown.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone

from app.normalizers.session import ProxyEndpoint, ProxyProtocol
from app.services.proxy_service import ProxyPool


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_empty_pool_selects_nothing(rng):
    assert ProxyPool(rng=rng).select_random() is None


def test_duplicate_proxies_are_ignored(proxies, rng):
    pool = ProxyPool(proxies + [ProxyEndpoint(host="10.0.0.1", port=8080)], rng=rng)
    assert len(pool) == 3


def test_selection_is_roughly_uniform(proxy_pool):
    counts = Counter(proxy_pool.select_random().key for _ in range(3000))

    assert len(counts) == 3
    assert all(800 < c < 1200 for c in counts.values())


def test_exclude_is_honored_when_possible(proxy_pool, proxies):
    exclude = {proxies[0].key, proxies[1].key}
    for _ in range(20):
        assert proxy_pool.select_random(exclude).key == proxies[2].key


def test_exclude_everything_still_returns_a_proxy(proxy_pool, proxies):
    assert proxy_pool.select_random({p.key for p in proxies}) is not None


class TestFailureTracking:
    def test_counter_increments_and_success_resets(self, proxy_pool, proxies):
        assert proxy_pool.report_failure(proxies[0]) == 1
        assert proxy_pool.report_failure(proxies[0]) == 2
        proxy_pool.report_success(proxies[0])
        assert proxy_pool.failure_count(proxies[0]) == 0

    def test_deprioritized_after_threshold(self, proxies, rng):
        pool = ProxyPool(proxies, rng=rng, failure_threshold=2)
        pool.report_failure(proxies[0])
        pool.report_failure(proxies[0])

        picks = {pool.select_random().key for _ in range(50)}
        assert proxies[0].key not in picks
        assert pool.get_stats()["deprioritized"] == 1
        # Dépriorisé, pas supprimé
        assert len(pool) == 3

    def test_all_deprioritized_still_selectable(self, proxies, rng):
        pool = ProxyPool(proxies[:1], rng=rng, failure_threshold=1)
        pool.report_failure(proxies[0])

        assert pool.select_random() == proxies[0]

    def test_cooldown_gives_second_chance(self, proxies, rng):
        clock = FakeClock()
        pool = ProxyPool(proxies[:2], rng=rng, failure_threshold=1, cooldown=timedelta(minutes=5), clock=clock)
        pool.report_failure(proxies[0])
        assert {pool.select_random().key for _ in range(20)} == {proxies[1].key}

        clock.advance(minutes=5)
        assert {pool.select_random().key for _ in range(50)} == {proxies[0].key, proxies[1].key}
        assert pool.failure_count(proxies[0]) == 0

    def test_default_clock_is_timezone_aware(self, proxies, rng):
        pool = ProxyPool(proxies[:2], rng=rng, failure_threshold=1)
        pool.report_failure(proxies[0])

        assert pool._deprioritized_at[proxies[0].key].tzinfo is timezone.utc


# ---------------------------------------------------------------------------
# ProxyEndpoint
# ---------------------------------------------------------------------------


class TestProxyEndpoint:
    def test_from_url_with_credentials(self):
        proxy = ProxyEndpoint.from_url("socks5://bob:pw@proxy.example.com:1080")

        assert proxy.protocol == ProxyProtocol.SOCKS5
        assert proxy.host == "proxy.example.com"
        assert proxy.port == 1080
        assert proxy.has_credentials
        assert proxy.to_url() == "socks5://bob:pw@proxy.example.com:1080"

    def test_from_url_defaults(self):
        proxy = ProxyEndpoint.from_url("10.1.1.1:3128")

        assert proxy.protocol == ProxyProtocol.HTTP
        assert proxy.key == "http://10.1.1.1:3128"
        assert not proxy.has_credentials
        assert proxy.to_dict() == {"http": "http://10.1.1.1:3128", "https": "http://10.1.1.1:3128"}
