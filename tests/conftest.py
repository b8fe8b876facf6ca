"""Fixtures compartidas: DB SQLite en memoria y una red Lightning simulada."""

import asyncio
import hashlib
import os
import time
from types import SimpleNamespace

# Antes de importar la app: nada de tocar la DB real
os.environ["DATABASE_URL"] = "sqlite://"

import grpc
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.db import init_db
from app.core.errors import AuthError, NodeConnectionError, UpstreamError
from app.core.lightning import build_invoice_gate, build_node_pool
from app.models import Post, User
from app.services import lnd_grpc

CERT = "-----BEGIN CERTIFICATE-----\nMIIBfake\n-----END CERTIFICATE-----\n"
MACAROON = "0201036c6e6402f801"


class FakeNode:
    """Un nodo LND de mentira con su propio libro de invoices."""

    def __init__(self, host, pubkey, alias, macaroon=MACAROON, balance=50_000):
        self.host = host
        self.pubkey = pubkey
        self.alias = alias
        self.macaroon = macaroon
        self.balance = balance
        self.online = True
        self.hang = False
        self.delay = 0.0
        self.pay_immediately = False
        self.fail_balance = False
        self.invoices = {}
        self.get_info_calls = 0
        self.add_invoice_calls = 0
        self.lookup_calls = 0
        self.inflight = 0
        self.max_inflight = 0

    def settle(self, r_hash: bytes):
        self.invoices[r_hash] = True


class FakeTransport:
    def __init__(self, network, host, cert, macaroon, timeout=None):
        self.network = network
        self.host = host
        self.timeout = timeout
        self.macaroon = macaroon
        self.closed = False
        network.transports.append(self)

    def _node(self):
        node = self.network.nodes.get(self.host)
        if node is None or not node.online:
            raise NodeConnectionError(f"No se pudo conectar a {self.host}")
        if self.macaroon != node.macaroon:
            raise AuthError(f"{self.host} rechazó el macaroon")
        return node

    async def _wait(self, node):
        if node.hang:
            await asyncio.sleep(3600)
        if node.delay:
            await asyncio.sleep(node.delay)

    async def get_info(self):
        node = self._node()
        node.get_info_calls += 1
        node.inflight += 1
        node.max_inflight = max(node.max_inflight, node.inflight)
        try:
            await self._wait(node)
        finally:
            node.inflight -= 1
        return {"alias": node.alias, "pubkey": node.pubkey}

    async def channel_balance(self):
        node = self._node()
        if node.fail_balance:
            raise UpstreamError("channel balance no disponible")
        await self._wait(node)
        return node.balance

    async def add_invoice(self, amount_sat, memo=""):
        node = self._node()
        await self._wait(node)
        node.add_invoice_calls += 1
        r_hash = hashlib.sha256(f"{node.host}:{node.add_invoice_calls}:{memo}".encode()).digest()
        node.invoices[r_hash] = node.pay_immediately
        return {"r_hash": r_hash, "payment_request": f"lnbcrt{amount_sat}n1{r_hash.hex()[:20]}"}

    async def lookup_invoice(self, r_hash):
        node = self._node()
        node.lookup_calls += 1
        await self._wait(node)
        if r_hash not in node.invoices:
            raise UpstreamError("unable to locate invoice")
        return {"settled": node.invoices[r_hash], "memo": "", "amt_paid_sat": 0}

    def close(self):
        self.closed = True


class FakeRpcError(grpc.RpcError):
    def __init__(self, code, details="boom"):
        self._code = code
        self._details = details

    def code(self):
        return self._code

    def details(self):
        return self._details


class StubLightning:
    """
    Sustituye al stub gRPC Lightning de lndgrpc. Recuerda el deadline de cada
    llamada y, como un nodo real, no retiene el hilo más allá de ese deadline.
    """

    def __init__(self, alias="alice", pubkey="02abc"):
        self.alias = alias
        self.pubkey = pubkey
        self.error = None
        self.delay = 0.0
        self.deadlines = []
        self.requests = {}

    def _serve(self, name, request, timeout):
        self.deadlines.append((name, timeout))
        self.requests[name] = request
        if self.delay:
            time.sleep(min(self.delay, timeout))
            if self.delay >= timeout:
                raise FakeRpcError(grpc.StatusCode.DEADLINE_EXCEEDED, "Deadline Exceeded")
        if self.error:
            raise self.error

    def GetInfo(self, request, timeout=None):
        self._serve("GetInfo", request, timeout)
        return SimpleNamespace(alias=self.alias, identity_pubkey=self.pubkey)

    def ChannelBalance(self, request, timeout=None):
        self._serve("ChannelBalance", request, timeout)
        return SimpleNamespace(balance=1234)

    def AddInvoice(self, request, timeout=None):
        self._serve("AddInvoice", request, timeout)
        return SimpleNamespace(r_hash=b"\x07" * 32, payment_request=f"lnbcrt{request.value}n1")

    def LookupInvoice(self, request, timeout=None):
        self._serve("LookupInvoice", request, timeout)
        return SimpleNamespace(settled=True, memo="m", amt_paid_sat=100)


class FakeNetwork:
    def __init__(self):
        self.nodes = {}
        self.transports = []

    def add_node(self, host, pubkey, alias, **kwargs):
        node = FakeNode(host, pubkey, alias, **kwargs)
        self.nodes[host] = node
        return node

    def transport_factory(self, host, cert, macaroon, timeout=None):
        return FakeTransport(self, host, cert, macaroon, timeout)

    def settle(self, r_hash: bytes):
        for node in self.nodes.values():
            if r_hash in node.invoices:
                node.settle(r_hash)
                return
        raise KeyError(r_hash.hex())


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def network():
    net = FakeNetwork()
    net.add_node("h1:10009", "02" + "a1" * 32, "alice")
    net.add_node("h2:10009", "03" + "b2" * 32, "bob")
    return net


@pytest.fixture
def pool(network, session_factory):
    pool = build_node_pool(network.transport_factory, session_factory)
    pool.timeout = 1.0
    return pool


@pytest.fixture
def gate(pool, session_factory):
    return build_invoice_gate(pool, session_factory)


@pytest.fixture
def lnd_nodes(monkeypatch):
    """Nodos LND por host detrás del LNDClient real de la app (host → StubLightning)."""
    nodes = {}

    class StubLNDClient:
        def __init__(self, **kwargs):
            self.kwargs = kwargs
            host = kwargs["ip_address"]
            pubkey = "02" + hashlib.sha256(host.encode()).hexdigest()
            self._ln_stub = nodes.setdefault(host, StubLightning(alias=host, pubkey=pubkey))

    monkeypatch.setattr(lnd_grpc, "LNDClient", StubLNDClient)
    return nodes


@pytest.fixture
def make_post(session_factory):
    def _make_post(post_id=None, node_token=None, name="alice"):
        db = session_factory()
        try:
            user = db.query(User).filter(User.name == name).first()
            if user is None:
                user = User(name=name, blog=f"https://{name}.blog", password="x", node_token=node_token)
                db.add(user)
                db.flush()
            post = Post(title="Hola", content="Lightning", user_id=user.id, votes=0)
            if post_id:
                post.id = post_id
            db.add(post)
            db.commit()
            return post.id
        finally:
            db.close()
    return _make_post


@pytest.fixture
def votes_of(session_factory):
    def _votes_of(post_id):
        db = session_factory()
        try:
            return db.query(Post).filter(Post.id == post_id).one().votes
        finally:
            db.close()
    return _votes_of
