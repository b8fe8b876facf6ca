# app/core/lightning.py
#
# Instancias compartidas del pool de nodos y del invoice gate, expuestas como
# dependencies de FastAPI (los tests las sustituyen con dependency_overrides).

from app.core.config import settings
from app.core.db import SessionLocal
from app.services.credentials import CredentialStore
from app.services.effects import upvote_post
from app.services.invoice_gate import InvoiceGate
from app.services.lnd_grpc import LndGrpcTransport
from app.services.node_pool import NodeSessionPool


def build_node_pool(transport_factory=LndGrpcTransport, session_factory=SessionLocal) -> NodeSessionPool:
    return NodeSessionPool(
        transport_factory=transport_factory,
        credentials=CredentialStore(session_factory),
        timeout=settings.LND_RPC_TIMEOUT,
        max_sessions=settings.NODE_POOL_MAX_SESSIONS,
        idle_ttl=settings.NODE_POOL_IDLE_TTL,
    )


def build_invoice_gate(pool: NodeSessionPool, session_factory=SessionLocal) -> InvoiceGate:
    gate = InvoiceGate(pool, session_factory)
    gate.register_effect("post", upvote_post)
    return gate


node_pool = build_node_pool()
invoice_gate = build_invoice_gate(node_pool)


def get_node_pool() -> NodeSessionPool:
    return node_pool


def get_invoice_gate() -> InvoiceGate:
    return invoice_gate
