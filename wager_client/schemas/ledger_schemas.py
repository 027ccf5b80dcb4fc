from pydantic import BaseModel, StrictInt
from typing import List, Optional


class StatusResponse(BaseModel):
    status: str
    rootKey: Optional[str] = None


class BalanceResponse(BaseModel):
    accountId: str
    balance: StrictInt


class DebitResponse(BaseModel):
    status: str
    remoteReference: Optional[str] = None


class CreditResponse(BaseModel):
    status: str
    payout: StrictInt = 0
    remoteReference: Optional[str] = None


class ForceEndResponse(BaseModel):
    status: str


class SessionSnapshot(BaseModel):
    wagerId: str
    variant: str
    status: str
    stake: StrictInt
    revealed: List[int] = []
    concealed: List[int] = []
    multiplier: float = 1.0
    payout: Optional[int] = None
    position: Optional[int] = None
