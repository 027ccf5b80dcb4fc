from datetime import datetime
from pydantic import BaseModel, StrictInt
from typing import Literal, Optional, Union

from wager_client.config import GameVariant, LegStatus, Mode, TerminalState
from wager_client.games.wheel import RiskLevel


class GameParams(BaseModel):
    totalCells: int = 25
    concealedCount: int = 5
    segmentCount: int = 12
    riskLevel: RiskLevel = RiskLevel.MEDIUM
    threshold: float = 0.0


class PlaceWagerRequest(BaseModel):
    stake: Union[StrictInt, float, str]
    unit: Optional[Literal["decimal", "fixed"]] = None
    variant: GameVariant
    params: GameParams = GameParams()


class PlayerAction(BaseModel):
    action: Literal["reveal", "spin"]
    index: Optional[int] = None


class WagerHandle(BaseModel):
    wagerId: str
    accountId: str
    stake: StrictInt
    variant: GameVariant
    status: str
    state: str
    createdAt: datetime


class SettlementResult(BaseModel):
    wagerId: str
    terminalState: Optional[TerminalState] = None
    payout: StrictInt
    status: LegStatus
    remoteReference: Optional[str] = None
    balance: Optional[int] = None


class BalanceView(BaseModel):
    accountId: str
    balance: StrictInt
    formatted: str
    lastSyncedAt: Optional[datetime] = None


class ModeView(BaseModel):
    mode: Mode
