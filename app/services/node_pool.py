# app/services/node_pool.py

import asyncio
import logging
import secrets
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from app.core.errors import (
    AuthError,
    InvalidAmount,
    InvalidPaymentHash,
    NodeConnectionError,
    NodeError,
    SessionNotFound,
    UpstreamError,
)
from app.services.credentials import CredentialStore, NodeCredential

logger = logging.getLogger(__name__)

PAYMENT_HASH_LEN = 32


@dataclass(frozen=True)
class ConnectResult:
    token: str
    pubkey: str


@dataclass(frozen=True)
class NodeInfo:
    alias: str
    pubkey: str
    balance: int


@dataclass(frozen=True)
class Invoice:
    payment_request: str
    payment_hash: bytes
    amount_sat: int
    settled: bool = False


def new_token() -> str:
    return secrets.token_urlsafe(32)


def validate_amount(amount_sat) -> int:
    if isinstance(amount_sat, bool) or not isinstance(amount_sat, int) or amount_sat <= 0:
        raise InvalidAmount(amount_sat)
    return amount_sat


def validate_payment_hash(payment_hash: bytes) -> bytes:
    if not isinstance(payment_hash, (bytes, bytearray)) or len(payment_hash) != PAYMENT_HASH_LEN:
        raise InvalidPaymentHash(f"El hash debe tener {PAYMENT_HASH_LEN} bytes")
    return bytes(payment_hash)


class NodeSession:
    """
    Sesión viva contra un nodo. El transporte es privado del pool: quien recibe
    la sesión sólo ve el token, el pubkey y las operaciones tipadas.
    """

    def __init__(self, token: str, pubkey: str, transport, timeout: float):
        self.token = token
        self.pubkey = pubkey
        self._transport = transport
        self._timeout = timeout
        self._settled = set()
        self.last_used = time.monotonic()

    def touch(self):
        self.last_used = time.monotonic()

    async def _rpc(self, name, *args, **kwargs):
        """Llamada remota acotada; cualquier fallo de transporte sale como UpstreamError."""
        method = getattr(self._transport, name)
        try:
            return await asyncio.wait_for(method(*args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"Timeout en {name} tras {self._timeout}s", timeout=True) from e
        except (NodeConnectionError, AuthError) as e:
            raise UpstreamError(f"Fallo en {name}: {e}") from e

    async def get_info(self):
        return await self._rpc("get_info")

    async def channel_balance(self) -> int:
        return await self._rpc("channel_balance")

    async def add_invoice(self, amount_sat: int, memo: str = "") -> Invoice:
        validate_amount(amount_sat)
        response = await self._rpc("add_invoice", amount_sat, memo)
        return Invoice(
            payment_request=response["payment_request"],
            payment_hash=response["r_hash"],
            amount_sat=amount_sat,
            settled=False,
        )

    async def lookup_invoice(self, payment_hash: bytes) -> bool:
        payment_hash = validate_payment_hash(payment_hash)
        # Una vez visto settled, no vuelve atrás
        if payment_hash in self._settled:
            return True
        invoice = await self._rpc("lookup_invoice", payment_hash)
        if invoice["settled"]:
            self._settled.add(payment_hash)
            return True
        return False

    def close(self):
        self._transport.close()


class NodeSessionPool:
    """
    Pool de sesiones RPC autenticadas, indexadas por un token opaco.

    - connect() hace el handshake, acuña el token y guarda las credenciales.
    - get_session() devuelve la sesión viva o la reconstruye desde las
      credenciales guardadas (una sola reconexión en vuelo por token).
    - Las sesiones se desalojan por LRU (max_sessions) y por inactividad (idle_ttl).
    """

    def __init__(
        self,
        transport_factory: Callable,
        credentials: CredentialStore,
        timeout: float = 10.0,
        max_sessions: int = 256,
        idle_ttl: Optional[float] = 900.0,
    ):
        self._transport_factory = transport_factory
        self._credentials = credentials
        self.timeout = timeout
        self.max_sessions = max_sessions
        self.idle_ttl = idle_ttl
        self._sessions: "OrderedDict[str, NodeSession]" = OrderedDict()
        self._reconnect_locks: Dict[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, token):
        return token in self._sessions

    async def _handshake(self, host: str, cert: str, macaroon: str):
        """Abre el transporte y consulta la identidad del nodo. No registra nada."""
        transport = self._transport_factory(host, cert, macaroon, timeout=self.timeout)
        try:
            identity = await asyncio.wait_for(transport.get_info(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            transport.close()
            raise NodeConnectionError(f"Timeout conectando a {host} tras {self.timeout}s") from e
        except UpstreamError as e:
            transport.close()
            raise NodeConnectionError(f"No se pudo conectar a {host}: {e}") from e
        except BaseException:
            transport.close()
            raise
        return transport, identity

    def _register(self, session: NodeSession):
        self._sessions[session.token] = session
        self._sessions.move_to_end(session.token)
        while len(self._sessions) > self.max_sessions:
            token, evicted = self._sessions.popitem(last=False)
            evicted.close()
            logger.info(f"↪ Sesión {token[:8]}… desalojada (LRU)")

    async def connect(self, host: str, cert: str, macaroon: str) -> ConnectResult:
        logger.info(f"→ connect a {host}")
        transport, identity = await self._handshake(host, cert, macaroon)

        token = new_token()
        pubkey = identity["pubkey"]
        try:
            self._credentials.save(NodeCredential(
                host=host, cert=cert, macaroon=macaroon, token=token, pubkey=pubkey,
            ))
        except BaseException:
            transport.close()
            raise

        self._register(NodeSession(token, pubkey, transport, self.timeout))
        logger.info(f"✔ Nodo {pubkey} conectado ({host})")
        return ConnectResult(token=token, pubkey=pubkey)

    async def get_session(self, token: str) -> NodeSession:
        session = self._sessions.get(token)
        if session is None:
            lock = self._reconnect_locks.get(token)
            if lock is None:
                lock = asyncio.Lock()
                self._reconnect_locks[token] = lock
            async with lock:
                session = self._sessions.get(token)
                if session is None:
                    session = await self._reestablish(token)
        else:
            self._sessions.move_to_end(token)
        session.touch()
        return session

    async def _reestablish(self, token: str) -> NodeSession:
        credential = self._credentials.get(token)
        if credential is None:
            raise SessionNotFound(token)

        logger.info(f"⚙ Reconstruyendo sesión para {credential.host}")
        try:
            transport, identity = await self._handshake(credential.host, credential.cert, credential.macaroon)
        except (NodeConnectionError, AuthError) as e:
            logger.warning(f"No se pudo reconstruir la sesión de {credential.host}: {e}")
            raise SessionNotFound(token, reason=f"reconexión fallida: {e}") from e

        pubkey = identity["pubkey"]
        if credential.pubkey and credential.pubkey != pubkey:
            transport.close()
            logger.error(f"El nodo en {credential.host} cambió de identidad ({pubkey})")
            raise SessionNotFound(token, reason="el pubkey del nodo no coincide")
        if not credential.pubkey:
            self._credentials.attach_pubkey(token, pubkey)

        session = NodeSession(token, pubkey, transport, self.timeout)
        self._register(session)
        return session

    async def info(self, token: str) -> NodeInfo:
        session = await self.get_session(token)
        tasks = [
            asyncio.ensure_future(session.get_info()),
            asyncio.ensure_future(session.channel_balance()),
        ]
        try:
            identity, balance = await asyncio.gather(*tasks)
        except BaseException:
            # Si una consulta falla, la otra no sigue viva por su cuenta
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return NodeInfo(alias=identity["alias"], pubkey=identity["pubkey"], balance=balance)

    async def add_invoice(self, token: str, amount_sat: int, memo: str = "") -> Invoice:
        validate_amount(amount_sat)
        session = await self.get_session(token)
        invoice = await session.add_invoice(amount_sat, memo)
        logger.info(f"✔ Invoice de {amount_sat} sats creada en {session.pubkey}")
        return invoice

    async def lookup_invoice(self, token: str, payment_hash: bytes) -> bool:
        validate_payment_hash(payment_hash)
        session = await self.get_session(token)
        return await session.lookup_invoice(payment_hash)

    def disconnect(self, token: str) -> bool:
        session = self._sessions.pop(token, None)
        if session is None:
            return False
        session.close()
        return True

    def deregister(self, token: str) -> bool:
        self.disconnect(token)
        return self._credentials.delete(token)

    def evict_idle(self) -> int:
        if not self.idle_ttl:
            return 0
        cutoff = time.monotonic() - self.idle_ttl
        stale = [token for token, s in self._sessions.items() if s.last_used < cutoff]
        for token in stale:
            self.disconnect(token)
        if stale:
            logger.info(f"↪ {len(stale)} sesiones inactivas desalojadas")
        return len(stale)

    async def restore_sessions(self) -> int:
        """Reconecta al arrancar todos los nodos guardados. Los fallos sólo se loguean."""
        restored = 0
        for credential in self._credentials.all():
            try:
                await self.get_session(credential.token)
                restored += 1
            except NodeError as e:
                logger.warning(f"Nodo {credential.host} no restaurado: {e}")
        logger.info(f"✔ {restored} sesiones restauradas")
        return restored

    def close(self):
        for token in list(self._sessions):
            self.disconnect(token)
