from typing import Optional

from pydantic import BaseModel, StrictInt

from wager_client.config import GameVariant
from wager_client.schemas.app_schemas import GameParams, PlayerAction


class LedgerDebitRequest(BaseModel):
    accountId: str
    amount: StrictInt
    variant: GameVariant
    params: dict
    idempotencyKey: str

    @classmethod
    def from_wager(cls, wager, idempotency_key: str) -> "LedgerDebitRequest":
        return cls(
            accountId=wager.account_id,
            amount=wager.stake,
            variant=wager.variant,
            params=wager.params.model_dump(mode="json"),
            idempotencyKey=idempotency_key,
        )


class LedgerCreditRequest(BaseModel):
    accountId: str
    claimedPayout: Optional[StrictInt] = None
    terminalState: Optional[str] = None
    revealed: list[int] = []
    idempotencyKey: str

    @classmethod
    def from_wager(cls, wager, payout: int, idempotency_key: str) -> "LedgerCreditRequest":
        revealed = list(wager.grid.revealed) if wager.grid is not None else []
        return cls(
            accountId=wager.account_id,
            # remote-authoritative rounds are paid from the remote's own state
            claimedPayout=None if wager.remote_authoritative else payout,
            terminalState=wager.terminal_state.value if wager.terminal_state else None,
            revealed=revealed,
            idempotencyKey=idempotency_key,
        )


class LedgerActionRequest(BaseModel):
    action: str
    index: Optional[int] = None
    params: Optional[dict] = None

    @classmethod
    def from_player_action(cls, action: PlayerAction, params: GameParams) -> "LedgerActionRequest":
        return cls(
            action=action.action,
            index=action.index,
            params=params.model_dump(mode="json") if action.action == "spin" else None,
        )
