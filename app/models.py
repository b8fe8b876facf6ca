# app/models.py

import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Enum
from sqlalchemy.orm import relationship
from app.core.db import Base

def gen_id():
    return str(uuid.uuid4())

def utcnow():
    return datetime.now(timezone.utc)


class ActionState(str, enum.Enum):
    PRICED        = "priced"
    PENDING_PROOF = "pending_proof"
    SETTLED       = "settled"
    REJECTED      = "rejected"
    GRANTED       = "granted"


# Transiciones permitidas de una acción con invoice
ACTION_TRANSITIONS = {
    ActionState.PRICED:        {ActionState.PENDING_PROOF},
    ActionState.REJECTED:      {ActionState.PENDING_PROOF},
    ActionState.PENDING_PROOF: {ActionState.SETTLED, ActionState.REJECTED, ActionState.PRICED},
    ActionState.SETTLED:       {ActionState.GRANTED},
    ActionState.GRANTED:       set(),
}


class LndNode(Base):
    __tablename__ = "lnd_nodes"
    id         = Column(String,   primary_key=True, default=gen_id)
    host       = Column(String,   nullable=False)
    cert       = Column(Text,     nullable=False)
    macaroon   = Column(Text,     nullable=False)
    token      = Column(String,   nullable=False, unique=True, index=True)
    pubkey     = Column(String)
    created_at = Column(DateTime, default=utcnow)

class User(Base):
    __tablename__ = "users"
    id         = Column(String,   primary_key=True, default=gen_id)
    name       = Column(String,   nullable=False, unique=True)
    blog       = Column(String,   nullable=False)
    password   = Column(String,   nullable=False)  # hash bcrypt
    node_token = Column(String,   ForeignKey("lnd_nodes.token", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow)

    node  = relationship("LndNode")
    posts = relationship("Post", back_populates="user")

class Post(Base):
    __tablename__ = "posts"
    id         = Column(String,   primary_key=True, default=gen_id)
    title      = Column(String,   nullable=False)
    content    = Column(Text,     nullable=False)
    user_id    = Column(String,   ForeignKey("users.id"), nullable=False)
    votes      = Column(Integer,  nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="posts")

class GatedAction(Base):
    __tablename__ = "gated_actions"
    id              = Column(String,   primary_key=True, default=gen_id)
    action_id       = Column(String,   nullable=False, index=True)  # ej. post-<id>
    payment_hash    = Column(String,   nullable=False, unique=True)  # hex
    payment_request = Column(Text,     nullable=False)
    amount_sat      = Column(Integer,  nullable=False)
    node_token      = Column(String,   nullable=False)
    state           = Column(Enum(ActionState), nullable=False, default=ActionState.PRICED)
    created_at      = Column(DateTime, default=utcnow)
    granted_at      = Column(DateTime)

    def transition(self, target: ActionState):
        if target not in ACTION_TRANSITIONS[self.state]:
            raise ValueError(f"Transición inválida {self.state.value} -> {target.value}")
        self.state = target
        if target is ActionState.GRANTED:
            self.granted_at = utcnow()
