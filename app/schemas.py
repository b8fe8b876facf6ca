from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime

class ConnectRequest(BaseModel):
    host: str
    cert: str
    macaroon: str

class ConnectResponse(BaseModel):
    token: str
    pubkey: str
    host: str

class NodeInfoResponse(BaseModel):
    alias: str
    balance: int
    pubkey: str

class UserCreate(BaseModel):
    name: str
    blog: str
    password: str

class LoginRequest(BaseModel):
    name: str
    password: str

class UserResponse(BaseModel):
    id: str
    name: str
    blog: str
    node_token: Optional[str] = None
    jwt_token: Optional[str] = None

class PostCreate(BaseModel):
    title: str
    content: str

class PostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    content: str
    user_id: str
    votes: int
    created_at: Optional[datetime] = None

class InvoiceResponse(BaseModel):
    payreq: str
    hash: str
    amount: int

class RedeemRequest(BaseModel):
    hash: Optional[str] = None
