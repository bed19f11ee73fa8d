from typing import Optional

from fastapi import Depends, Request
from sqlmodel import Session

from ..services import ChainLedgerClient, LoyaltyRepository, LoyaltyService, ReconciliationPoller
from .config import Settings, get_settings
from .db import get_session

def get_chain_client(request: Request) -> Optional[ChainLedgerClient]:
    return getattr(request.app.state, "chain_client", None)

def get_reconciliation_poller(
    chain: Optional[ChainLedgerClient] = Depends(get_chain_client),
    settings: Settings = Depends(get_settings),
) -> Optional[ReconciliationPoller]:
    if chain is None:
        return None
    return ReconciliationPoller.from_settings(chain, settings)

def get_loyalty_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    chain: Optional[ChainLedgerClient] = Depends(get_chain_client),
    poller: Optional[ReconciliationPoller] = Depends(get_reconciliation_poller),
) -> LoyaltyService:
    repository = LoyaltyRepository(session)
    return LoyaltyService(session, settings, chain, poller, repository)
