import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.schemas import PostCreate, PostResponse, InvoiceResponse, RedeemRequest
from app.models import Post, User
from app.core.auth import get_current_user
from app.core.config import settings
from app.core.db import get_db
from app.core.lightning import get_invoice_gate
from app.services.invoice_gate import InvoiceGate, encode_payment_hash

t_logger = logging.getLogger(__name__)

router = APIRouter()

def post_action_id(post_id: str) -> str:
    return f"post-{post_id}"

def _get_post(db: Session, post_id: str) -> Post:
    post = db.query(Post).filter(Post.id == post_id).first()
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post

@router.get("/posts", response_model=List[PostResponse], tags=["Posts"])
def get_posts(db: Session = Depends(get_db)):
    return db.query(Post).order_by(Post.created_at).all()

@router.post("/posts", response_model=PostResponse, status_code=201, tags=["Posts"])
def create_post(
    payload: PostCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    post = Post(title=payload.title, content=payload.content, user_id=user.id, votes=0)
    db.add(post)
    db.commit()
    db.refresh(post)
    t_logger.info(f"✔ Post {post.id} creado por {user.name}")
    return post

@router.post("/posts/{post_id}/invoice", response_model=InvoiceResponse, tags=["Posts"])
async def post_invoice(
    post_id: str,
    db: Session = Depends(get_db),
    gate: InvoiceGate = Depends(get_invoice_gate),
):
    post = _get_post(db, post_id)

    # La invoice se crea en el nodo del autor del post
    owner = post.user
    if not owner or not owner.node_token:
        raise HTTPException(status_code=409, detail="Node not found for this post.")

    amount = settings.POST_UPVOTE_PRICE_SAT
    invoice = await gate.price_action(post_action_id(post.id), owner.node_token, amount)
    return InvoiceResponse(
        payreq=invoice.payment_request,
        hash=encode_payment_hash(invoice.payment_hash),
        amount=invoice.amount_sat,
    )

@router.post("/posts/{post_id}/upvote", response_model=PostResponse, tags=["Posts"])
async def upvote_post(
    post_id: str,
    payload: Optional[RedeemRequest] = None,
    db: Session = Depends(get_db),
    gate: InvoiceGate = Depends(get_invoice_gate),
):
    post = _get_post(db, post_id)
    result = await gate.redeem(post_action_id(post.id), payload.hash if payload else None)
    t_logger.info(f"✔ Upvote {post.id}: nuevo={result.newly_granted}")

    db.refresh(post)
    return post
