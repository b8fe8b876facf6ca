import logging
from dataclasses import dataclass
from typing import List, Optional

from app.core.db import SessionLocal
from app.models import LndNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeCredential:
    host: str
    cert: str
    macaroon: str
    token: str
    pubkey: Optional[str] = None


class CredentialStore:
    """
    Material de conexión de cada nodo registrado, guardado en la tabla lnd_nodes.
    Se crea en un connect exitoso y sólo se modifica para fijar el pubkey.
    """

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _to_credential(row: LndNode) -> NodeCredential:
        return NodeCredential(
            host=row.host,
            cert=row.cert,
            macaroon=row.macaroon,
            token=row.token,
            pubkey=row.pubkey,
        )

    def save(self, credential: NodeCredential) -> NodeCredential:
        db = self._session_factory()
        try:
            row = LndNode(
                host=credential.host,
                cert=credential.cert,
                macaroon=credential.macaroon,
                token=credential.token,
                pubkey=credential.pubkey,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info(f"✔ Credenciales guardadas para nodo {row.pubkey} ({row.host})")
            return self._to_credential(row)
        finally:
            db.close()

    def get(self, token: str) -> Optional[NodeCredential]:
        db = self._session_factory()
        try:
            row = db.query(LndNode).filter(LndNode.token == token).first()
            return self._to_credential(row) if row else None
        finally:
            db.close()

    def all(self) -> List[NodeCredential]:
        db = self._session_factory()
        try:
            return [self._to_credential(row) for row in db.query(LndNode).all()]
        finally:
            db.close()

    def attach_pubkey(self, token: str, pubkey: str) -> NodeCredential:
        """Fija el pubkey una única vez; un pubkey distinto al guardado es un error."""
        db = self._session_factory()
        try:
            row = db.query(LndNode).filter(LndNode.token == token).first()
            if row is None:
                raise KeyError(token)
            if row.pubkey and row.pubkey != pubkey:
                raise ValueError(f"El pubkey del nodo {row.host} es inmutable")
            if not row.pubkey:
                row.pubkey = pubkey
                db.commit()
                db.refresh(row)
            return self._to_credential(row)
        finally:
            db.close()

    def delete(self, token: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(LndNode).filter(LndNode.token == token).delete()
            db.commit()
            return bool(deleted)
        finally:
            db.close()
