import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.schemas import ConnectRequest, ConnectResponse, NodeInfoResponse
from app.models import User
from app.core.auth import get_current_user
from app.core.db import get_db
from app.core.lightning import get_node_pool
from app.services.node_pool import NodeSessionPool

t_logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/connect", response_model=ConnectResponse, status_code=201, tags=["Nodes"])
async def connect(
    payload: ConnectRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    pool: NodeSessionPool = Depends(get_node_pool),
):
    t_logger.info(f"→ connect de {user.name} a {payload.host}")
    result = await pool.connect(payload.host, payload.cert, payload.macaroon)

    # El nodo queda asociado al usuario: post → user → node
    previous = user.node_token
    user.node_token = result.token
    db.commit()
    if previous and previous != result.token:
        pool.deregister(previous)
        t_logger.info(f"↪ Nodo anterior de {user.name} dado de baja")
    return ConnectResponse(token=result.token, pubkey=result.pubkey, host=payload.host)

@router.delete("/connect", status_code=204, tags=["Nodes"])
def disconnect(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    pool: NodeSessionPool = Depends(get_node_pool),
):
    if not user.node_token:
        raise HTTPException(status_code=404, detail="Your node is not connected")
    token = user.node_token
    user.node_token = None
    db.commit()
    pool.deregister(token)
    t_logger.info(f"↪ Nodo de {user.name} dado de baja")

@router.get("/info", response_model=NodeInfoResponse, tags=["Nodes"])
async def get_info(token: str = None, pool: NodeSessionPool = Depends(get_node_pool)):
    if not token:
        raise HTTPException(status_code=400, detail="Your node is not connected")
    info = await pool.info(token)
    return NodeInfoResponse(alias=info.alias, balance=info.balance, pubkey=info.pubkey)
