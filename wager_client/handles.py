"""
Cached connection handles to the remote ledger.

Handles are keyed by ``(identity_kind, purpose)`` and live for a fixed TTL;
an expired handle is retired and only closed after a grace period.
A credential/verification failure evicts the handle that produced it; if an
authenticated handshake is itself rejected the store falls back to an
anonymous, read-only handle and switches to demo mode, after which
authenticated acquisition is refused locally.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from wager_client.clients.ledger_client import LedgerClient
from wager_client.config import Capability, IdentityKind, Mode, Purpose, settings
from wager_client.errors import DemoModeError, RemoteError
from wager_client.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[IdentityKind], LedgerClient]


@dataclass
class ConnectionHandle:
    identity_kind: IdentityKind
    purpose: Purpose
    client: LedgerClient
    created_at: float
    ttl: float
    capability: Capability
    handle_id: int = field(default=0)

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


def default_client_factory(identity_kind: IdentityKind) -> LedgerClient:
    token = settings.identity_token if identity_kind is IdentityKind.AUTHENTICATED else None
    return LedgerClient(identity_token=token)


def backoff_delays(attempts: Optional[int] = None, base: Optional[float] = None, multiplier: Optional[float] = None):
    """Waits between consecutive attempts: base, base*m, base*m^2 ... (attempts - 1 values)."""
    attempts = attempts if attempts is not None else settings.max_retries
    delay = base if base is not None else settings.retry_backoff_seconds
    multiplier = multiplier if multiplier is not None else settings.retry_backoff_multiplier
    for _ in range(max(attempts - 1, 0)):
        yield delay
        delay *= multiplier


class HandleStore:
    def __init__(
        self,
        client_factory: ClientFactory = default_client_factory,
        clock: Callable[[], float] = time.monotonic,
        ttl_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        grace_seconds: Optional[float] = None,
    ):
        self.client_factory = client_factory
        self.clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.handle_ttl_seconds
        # expired clients stay open this long so in-flight calls can finish
        self.grace_seconds = grace_seconds if grace_seconds is not None else settings.request_timeout_seconds
        self.sleep = sleep
        self.mode = Mode.LIVE
        self._handles: Dict[Tuple[IdentityKind, Purpose], ConnectionHandle] = {}
        self._retired: List[Tuple[float, ConnectionHandle]] = []
        self._lock = asyncio.Lock()
        self._created = 0

    def cached(self, identity_kind: IdentityKind, purpose: Purpose) -> Optional[ConnectionHandle]:
        return self._handles.get((identity_kind, purpose))

    async def _create(self, identity_kind: IdentityKind, purpose: Purpose) -> ConnectionHandle:
        client = self.client_factory(identity_kind)
        try:
            await client.handshake()
        except RemoteError:
            await client.aclose()
            raise
        self._created += 1
        capability = Capability.AUTHENTICATED if identity_kind is IdentityKind.AUTHENTICATED else Capability.READ_ONLY
        handle = ConnectionHandle(
            identity_kind=identity_kind,
            purpose=purpose,
            client=client,
            created_at=self.clock(),
            ttl=self.ttl_seconds,
            capability=capability,
            handle_id=self._created,
        )
        logger.info(
            "Created connection handle id=%s identity=%s purpose=%s capability=%s",
            handle.handle_id,
            identity_kind.value,
            purpose.value,
            capability.value,
        )
        return handle

    async def acquire(self, identity_kind: IdentityKind, purpose: Purpose) -> ConnectionHandle:
        if identity_kind is IdentityKind.AUTHENTICATED and self.mode is Mode.DEMO:
            raise DemoModeError("authenticated access unavailable in demo mode")
        key = (identity_kind, purpose)
        async with self._lock:
            await self._close_retired()
            handle = self._handles.get(key)
            if handle is not None and not handle.expired(self.clock()):
                return handle
            if handle is not None:
                logger.info("Connection handle expired id=%s purpose=%s", handle.handle_id, purpose.value)
                self._handles.pop(key, None)
                self._retired.append((self.clock(), handle))
            try:
                handle = await self._create(identity_kind, purpose)
            except RemoteError as exc:
                if identity_kind is IdentityKind.AUTHENTICATED and exc.kind.credential:
                    self._enter_demo_mode(exc)
                    fallback = self._handles.get((IdentityKind.ANONYMOUS, purpose))
                    if fallback is None or fallback.expired(self.clock()):
                        fallback = await self._create(IdentityKind.ANONYMOUS, purpose)
                        self._handles[(IdentityKind.ANONYMOUS, purpose)] = fallback
                    raise DemoModeError("authenticated handshake rejected; switched to demo mode") from exc
                raise
            self._handles[key] = handle
            return handle

    async def invalidate_on_error(self, error: Exception, handle: ConnectionHandle) -> bool:
        """
        Evict ``handle`` if ``error`` is a credential/verification failure.
        Returns True when the handle was evicted.
        """
        if not isinstance(error, RemoteError) or not error.kind.credential:
            return False
        key = (handle.identity_kind, handle.purpose)
        async with self._lock:
            if self._handles.get(key) is handle:
                self._handles.pop(key)
        await handle.client.aclose()
        logger.warning(
            "Evicted connection handle id=%s identity=%s purpose=%s after %s",
            handle.handle_id,
            handle.identity_kind.value,
            handle.purpose.value,
            error.kind.value,
        )
        return True

    def _enter_demo_mode(self, exc: RemoteError) -> None:
        if self.mode is not Mode.DEMO:
            logger.warning("Switching to demo mode: authenticated handshake failed kind=%s", exc.kind.value)
        self.mode = Mode.DEMO

    def restore_live(self) -> None:
        """Leave demo mode; the next authenticated acquire performs a fresh handshake."""
        if self.mode is Mode.DEMO:
            logger.info("Leaving demo mode")
        self.mode = Mode.LIVE

    async def call(
        self,
        identity_kind: IdentityKind,
        purpose: Purpose,
        operation: Callable[[LedgerClient], Awaitable[T]],
        attempts: Optional[int] = None,
        cancelled: Optional[asyncio.Event] = None,
    ) -> T:
        """
        Run ``operation`` on a handle, retrying transient failures with exponential backoff.

        Non-transient errors propagate on the first attempt. Credential failures
        evict the handle so the next attempt handshakes afresh.
        """
        delays = backoff_delays(attempts)
        attempt = 0
        while True:
            attempt += 1
            handle = None
            try:
                handle = await self.acquire(identity_kind, purpose)
                return await operation(handle.client)
            except RemoteError as exc:
                if handle is not None:
                    await self.invalidate_on_error(exc, handle)
                if not exc.transient:
                    raise
                delay = next(delays, None)
                if delay is None or (cancelled is not None and cancelled.is_set()):
                    logger.error(
                        "Giving up on ledger call purpose=%s attempts=%s kind=%s",
                        purpose.value,
                        attempt,
                        exc.kind.value,
                    )
                    raise
                logger.warning(
                    "Retrying ledger call purpose=%s attempt=%s kind=%s backoff=%s",
                    purpose.value,
                    attempt,
                    exc.kind.value,
                    delay,
                )
                await self.sleep(delay)

    async def _close_retired(self, force: bool = False) -> None:
        now = self.clock()
        pending = []
        for retired_at, handle in self._retired:
            if force or now - retired_at >= self.grace_seconds:
                logger.info("Closing retired connection handle id=%s", handle.handle_id)
                await handle.client.aclose()
            else:
                pending.append((retired_at, handle))
        self._retired = pending

    async def close(self) -> None:
        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            await self._close_retired(force=True)
        for handle in handles:
            await handle.client.aclose()
