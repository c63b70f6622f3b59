"""
Proxy Service - Pool de proxies partagé entre les sessions de scraping.

- Sélection uniforme parmi les proxies actifs
- Compteur d'échecs par proxy
- Au-delà du seuil, le proxy est dépriorisé (pas supprimé): il n'est
  resélectionné que si aucun proxy sain n'est disponible, et revient
  dans la rotation après `cooldown`.
"""
import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from app.normalizers.session import ProxyEndpoint

FAILURE_THRESHOLD = 3
COOLDOWN = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProxyPool:
    def __init__(
        self,
        proxies: Optional[Iterable[ProxyEndpoint]] = None,
        rng: Optional[random.Random] = None,
        failure_threshold: int = FAILURE_THRESHOLD,
        cooldown: timedelta = COOLDOWN,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._lock = threading.Lock()
        self._rng = rng or random.Random()
        self._proxies: List[ProxyEndpoint] = []
        self._failures: Dict[str, int] = {}
        self._deprioritized_at: Dict[str, datetime] = {}
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        for proxy in proxies or []:
            self.add(proxy)

    def __len__(self) -> int:
        with self._lock:
            return len(self._proxies)

    def add(self, proxy: ProxyEndpoint) -> None:
        with self._lock:
            if any(p.key == proxy.key for p in self._proxies):
                return
            self._proxies.append(proxy)
            self._failures.setdefault(proxy.key, 0)
        logger.info(f"Added proxy {proxy.host}:{proxy.port} to pool")

    def _is_healthy(self, proxy: ProxyEndpoint, now: datetime) -> bool:
        since = self._deprioritized_at.get(proxy.key)
        if since is None:
            return True
        if now - since >= self.cooldown:
            # Fin du cooldown: seconde chance
            del self._deprioritized_at[proxy.key]
            self._failures[proxy.key] = 0
            return True
        return False

    def select_random(self, exclude: Optional[Set[str]] = None) -> Optional[ProxyEndpoint]:
        """
        Choix uniforme parmi les proxies sains (hors `exclude` si possible).
        Retourne None si le pool est vide.
        """
        exclude = exclude or set()
        with self._lock:
            if not self._proxies:
                return None
            now = self._clock()
            healthy = [p for p in self._proxies if self._is_healthy(p, now)]
            for candidates in (
                [p for p in healthy if p.key not in exclude],
                healthy,
                [p for p in self._proxies if p.key not in exclude],
                self._proxies,
            ):
                if candidates:
                    return self._rng.choice(candidates)
        return None

    def report_failure(self, proxy: ProxyEndpoint) -> int:
        """Incrémente le compteur d'échecs et retourne sa nouvelle valeur."""
        with self._lock:
            count = self._failures.get(proxy.key, 0) + 1
            self._failures[proxy.key] = count
            if count >= self.failure_threshold and proxy.key not in self._deprioritized_at:
                self._deprioritized_at[proxy.key] = self._clock()
                deprioritized = True
            else:
                deprioritized = False
        if deprioritized:
            logger.warning(f"Proxy {proxy.key} deprioritized after {count} failures")
        else:
            logger.debug(f"Proxy {proxy.key} failure #{count}")
        return count

    def report_success(self, proxy: ProxyEndpoint) -> None:
        with self._lock:
            self._failures[proxy.key] = 0
            self._deprioritized_at.pop(proxy.key, None)

    def failure_count(self, proxy: ProxyEndpoint) -> int:
        with self._lock:
            return self._failures.get(proxy.key, 0)

    def get_stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "total": len(self._proxies),
                "deprioritized": len(self._deprioritized_at),
                "failures": dict(self._failures),
            }
