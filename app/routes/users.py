# app/routes/users.py

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from app.schemas import UserCreate, LoginRequest, UserResponse
from app.models import User
from app.core.auth import hash_password, verify_password, issue_token
from app.core.db import get_db

t_logger = logging.getLogger(__name__)

router = APIRouter()

def _response(user: User, jwt_token: str) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        blog=user.blog,
        node_token=user.node_token,
        jwt_token=jwt_token,
    )

@router.post("/users", response_model=UserResponse, status_code=201, tags=["Users"])
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    if not (payload.name and payload.blog and payload.password):
        raise HTTPException(status_code=400, detail="All inputs are required.")

    existing = db.query(User).filter(User.name == payload.name).first()
    if existing:
        raise HTTPException(status_code=409, detail="User already exists. Please login.")

    user = User(
        name=payload.name,
        blog=payload.blog,
        password=hash_password(payload.password),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="User already exists. Please login.")
    db.refresh(user)
    t_logger.info(f"✔ Usuario creado {user.name}")
    return _response(user, issue_token(user))

@router.post("/login", response_model=UserResponse, tags=["Users"])
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.name == payload.name).first()
    if not user or not verify_password(payload.password, user.password):
        t_logger.warning(f"Login fallido para {payload.name}")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _response(user, issue_token(user))
