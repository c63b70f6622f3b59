"""
Session Manager - Cycle de vie des sessions de scraping.

Une session = un proxy (optionnel) + une empreinte + un handle
d'automatisation, possédée exclusivement par la tâche qui la tient.

Cycle: created -> active -> closed (ou active -> failed -> closed).

Plafond de concurrence: `create_session` BLOQUE tant que
`max_concurrent_sessions` sessions sont ouvertes; le slot est rendu par
`close_session`. `acquire_timeout` borne l'attente (SessionCreationError).
"""
import asyncio
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from app.core.exceptions import SessionBusyError, SessionCreationError
from app.core.logging import get_logger
from app.normalizers.session import BrowserFingerprint, ProxyEndpoint
from app.services.browser_worker import AutomationBackend
from app.services.proxy_service import ProxyPool
from app.utils.http_stealth import DEFAULT_FINGERPRINT, FingerprintGenerator

logger = get_logger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ScrapingSession:
    id: str
    fingerprint: BrowserFingerprint
    handle: Any
    proxy: Optional[ProxyEndpoint] = None
    created_at: float = field(default_factory=time.monotonic)
    request_count: int = 0
    state: SessionState = SessionState.CREATED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def age(self) -> float:
        """Âge en secondes."""
        return time.monotonic() - self.created_at

    def mark_failed(self) -> None:
        if self.state != SessionState.CLOSED:
            self.state = SessionState.FAILED


class SessionManager:
    def __init__(
        self,
        backend: AutomationBackend,
        proxy_pool: ProxyPool,
        max_concurrent_sessions: int = 5,
        proxy_rotation: bool = True,
        randomize_fingerprint: bool = True,
        rng: Optional[random.Random] = None,
        acquire_timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.proxy_pool = proxy_pool
        self.max_concurrent_sessions = max_concurrent_sessions
        self.proxy_rotation = proxy_rotation
        self.randomize_fingerprint = randomize_fingerprint
        self.acquire_timeout = acquire_timeout
        self._fingerprints = FingerprintGenerator(rng)
        self._slots = asyncio.Semaphore(max_concurrent_sessions)
        self._sessions: Dict[str, ScrapingSession] = {}
        # Sessions fermées (pour la moyenne de requêtes par session)
        self._closed_count = 0
        self._closed_requests = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def session_totals(self) -> Tuple[int, int]:
        """(sessions créées, requêtes cumulées), sessions fermées incluses."""
        active = list(self._sessions.values())
        return (
            self._closed_count + len(active),
            self._closed_requests + sum(s.request_count for s in active),
        )

    async def _acquire_slot(self) -> None:
        if self.acquire_timeout is None:
            await self._slots.acquire()
            return
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as e:
            raise SessionCreationError(
                f"No session slot available after {self.acquire_timeout}s "
                f"(max {self.max_concurrent_sessions})"
            ) from e

    async def create_session(
        self,
        session_id: Optional[str] = None,
        exclude_proxies: Optional[Set[str]] = None,
        proxy_rotation: Optional[bool] = None,
        randomize_fingerprint: Optional[bool] = None,
    ) -> str:
        """
        Alloue proxy + empreinte, ouvre un handle et enregistre la session.

        `proxy_rotation` et `randomize_fingerprint` remplacent, pour cette
        session, les valeurs données au constructeur.

        Raises:
            SessionCreationError: backend indisponible ou id déjà utilisé
        """
        sid = session_id or f"session_{uuid.uuid4().hex[:12]}"
        if sid in self._sessions:
            raise SessionCreationError(f"Session {sid} already exists")

        if proxy_rotation is None:
            proxy_rotation = self.proxy_rotation
        if randomize_fingerprint is None:
            randomize_fingerprint = self.randomize_fingerprint

        await self._acquire_slot()
        try:
            proxy = self.proxy_pool.select_random(exclude_proxies) if proxy_rotation else None
            fingerprint = self._fingerprints.generate() if randomize_fingerprint else DEFAULT_FINGERPRINT
            try:
                handle = await self.backend.open(proxy)
            except SessionCreationError:
                raise
            except Exception as e:
                raise SessionCreationError(f"Automation backend failed to start: {e}") from e

            session = ScrapingSession(id=sid, fingerprint=fingerprint, handle=handle, proxy=proxy)
            session.state = SessionState.ACTIVE
            self._sessions[sid] = session
        except BaseException:
            self._slots.release()
            raise

        logger.info(
            "Session created",
            session_id=sid,
            proxy=proxy.key if proxy else None,
            active_sessions=self.active_count,
        )
        return sid

    def get_session(self, session_id: str) -> Optional[ScrapingSession]:
        return self._sessions.get(session_id)

    async def close_session(self, session_id: str) -> None:
        """Libère le handle et le slot (idempotent)."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        try:
            await self.backend.close(session.handle)
        except Exception as e:
            logger.warning(f"Error while closing session: {e}", session_id=session_id)
        finally:
            session.state = SessionState.CLOSED
            self._closed_count += 1
            self._closed_requests += session.request_count
            self._slots.release()
        logger.info(
            "Session closed",
            session_id=session_id,
            requests=session.request_count,
            age_s=round(session.age, 2),
        )

    async def close_all(self) -> None:
        ids = list(self._sessions)
        await asyncio.gather(*(self.close_session(sid) for sid in ids))
        if ids:
            logger.info("All sessions closed", count=len(ids))

    @asynccontextmanager
    async def lease(self, session_id: str) -> AsyncIterator[ScrapingSession]:
        """
        Réserve une session existante pour la tâche courante.

        Raises:
            SessionCreationError: session inconnue
            SessionBusyError: session déjà tenue par une autre tâche
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionCreationError(f"Unknown session {session_id}")
        if session.lock.locked():
            raise SessionBusyError(f"Session {session_id} is already in use")
        async with session.lock:
            yield session
