# app/services/invoice_gate.py

import asyncio
import base64
import binascii
import logging
import weakref
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.errors import (
    ActionNotFound,
    InvalidPaymentHash,
    InvoiceMismatch,
    MissingProof,
    NodeUnavailable,
    PaymentNotSettled,
    SessionNotFound,
    UpstreamError,
)
from app.models import ActionState, GatedAction, utcnow
from app.services.node_pool import PAYMENT_HASH_LEN, Invoice, NodeSessionPool, validate_amount

logger = logging.getLogger(__name__)

# Un efecto recibe la sesión de DB abierta y la acción; se ejecuta dentro de la
# misma transacción que marca la acción como GRANTED.
Effect = Callable[[Session, GatedAction], None]


@dataclass(frozen=True)
class ActionResult:
    action_id: str
    payment_hash: str
    state: ActionState
    newly_granted: bool


def decode_payment_hash(claimed_hash: Optional[str]) -> bytes:
    """Decodifica el hash en base64 tal como llega por HTTP."""
    if not claimed_hash:
        raise MissingProof()
    try:
        raw = base64.b64decode(claimed_hash, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidPaymentHash("El hash no es base64 válido") from e
    if len(raw) != PAYMENT_HASH_LEN:
        raise InvalidPaymentHash(f"El hash debe tener {PAYMENT_HASH_LEN} bytes")
    return raw


def encode_payment_hash(raw: bytes) -> str:
    return base64.b64encode(raw).decode()


def action_kind(action_id: str) -> str:
    return action_id.partition("-")[0]


def action_target(action_id: str) -> str:
    return action_id.partition("-")[2]


class InvoiceGate:
    """
    Pay-to-read: una acción sólo se aplica tras ver su invoice settled.

    Cada (acción, invoice) vive en gated_actions con un estado explícito
    (PRICED → PENDING_PROOF → SETTLED → GRANTED, o REJECTED y vuelta a probar).
    El efecto se aplica como mucho una vez: redeem serializa por action_id
    dentro del proceso, y el paso a GRANTED es un UPDATE condicional en la DB.
    """

    def __init__(self, pool: NodeSessionPool, session_factory=SessionLocal):
        self.pool = pool
        self._session_factory = session_factory
        self._effects: Dict[str, Effect] = {}
        self._locks: Dict[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def register_effect(self, kind: str, effect: Effect):
        self._effects[kind] = effect

    def _lock_for(self, action_id: str) -> asyncio.Lock:
        lock = self._locks.get(action_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[action_id] = lock
        return lock

    async def price_action(self, action_id: str, token: str, amount_sat: int, memo: str = "") -> Invoice:
        validate_amount(amount_sat)
        if action_kind(action_id) not in self._effects:
            raise ActionNotFound(action_id)

        invoice = await self.pool.add_invoice(token, amount_sat, memo or action_id)

        db = self._session_factory()
        try:
            db.add(GatedAction(
                action_id=action_id,
                payment_hash=invoice.payment_hash.hex(),
                payment_request=invoice.payment_request,
                amount_sat=invoice.amount_sat,
                node_token=token,
                state=ActionState.PRICED,
            ))
            db.commit()
        finally:
            db.close()
        logger.info(f"→ Acción {action_id} con precio {amount_sat} sats")
        return invoice

    def state_of(self, action_id: str, claimed_hash: str) -> Optional[ActionState]:
        raw = decode_payment_hash(claimed_hash)
        db = self._session_factory()
        try:
            action = (
                db.query(GatedAction)
                  .filter(GatedAction.action_id == action_id,
                          GatedAction.payment_hash == raw.hex())
                  .first()
            )
            return action.state if action else None
        finally:
            db.close()

    def _find(self, db: Session, action_id: str, payment_hash_hex: str) -> GatedAction:
        action = (
            db.query(GatedAction)
              .filter(GatedAction.payment_hash == payment_hash_hex)
              .first()
        )
        if action is None or action.action_id != action_id:
            exists = db.query(GatedAction.id).filter(GatedAction.action_id == action_id).first()
            if exists is None:
                raise ActionNotFound(action_id)
            raise InvoiceMismatch(action_id)
        return action

    def _set_state(self, db: Session, action: GatedAction, state: ActionState):
        action.transition(state)
        db.commit()

    async def redeem(self, action_id: str, claimed_hash: Optional[str]) -> ActionResult:
        raw = decode_payment_hash(claimed_hash)
        payment_hash_hex = raw.hex()

        async with self._lock_for(action_id):
            db = self._session_factory()
            try:
                action = self._find(db, action_id, payment_hash_hex)

                if action.state is ActionState.GRANTED or action.granted_at is not None:
                    logger.info(f"↪ Acción {action_id} ya concedida, nada que hacer")
                    return ActionResult(action_id, payment_hash_hex, ActionState.GRANTED, newly_granted=False)

                previous = action.state
                if previous is ActionState.PENDING_PROOF:
                    # Quedó a medias (caída del proceso o efecto fallido): se vuelve a comprobar
                    previous = ActionState.REJECTED
                else:
                    self._set_state(db, action, ActionState.PENDING_PROOF)

                try:
                    settled = await self.pool.lookup_invoice(action.node_token, raw)
                except SessionNotFound as e:
                    self._set_state(db, action, previous)
                    logger.warning(f"Nodo no disponible para {action_id}: {e}")
                    raise NodeUnavailable(action_id) from e
                except UpstreamError:
                    self._set_state(db, action, previous)
                    raise

                if not settled:
                    self._set_state(db, action, ActionState.REJECTED)
                    logger.info(f"Pago no confirmado para {action_id}")
                    raise PaymentNotSettled(action_id)

                # SETTLED → GRANTED + efecto en una sola transacción. El UPDATE
                # condicional es el guard entre procesos: sólo uno lo gana.
                effect = self._effects[action_kind(action_id)]
                try:
                    won = (
                        db.query(GatedAction)
                          .filter(GatedAction.id == action.id,
                                  GatedAction.state != ActionState.GRANTED,
                                  GatedAction.granted_at.is_(None))
                          .update({GatedAction.state: ActionState.GRANTED,
                                   GatedAction.granted_at: utcnow()},
                                  synchronize_session=False)
                    )
                    if not won:
                        db.rollback()
                        # Si nuestro PENDING_PROOF pisó el GRANTED del otro worker, se restaura
                        (db.query(GatedAction)
                           .filter(GatedAction.id == action.id, GatedAction.granted_at.isnot(None))
                           .update({GatedAction.state: ActionState.GRANTED}, synchronize_session=False))
                        db.commit()
                        logger.info(f"↪ Acción {action_id} ya concedida por otro worker")
                        return ActionResult(action_id, payment_hash_hex, ActionState.GRANTED, newly_granted=False)
                    effect(db, action)
                    db.commit()
                except Exception:
                    db.rollback()
                    logger.exception(f"Falló el efecto de {action_id}")
                    raise
                logger.info(f"✔ Acción {action_id} concedida")
                return ActionResult(action_id, payment_hash_hex, ActionState.GRANTED, newly_granted=True)
            finally:
                db.close()
