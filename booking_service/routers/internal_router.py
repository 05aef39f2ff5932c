import secrets
from dataclasses import asdict
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session
from typing import Annotated, Optional

from .. import schemas
from ..config import settings
from ..database import get_db
from ..expiry_sweeper import remind_pending_hosts, sweep
from ..payments import StripePaymentAuthorizer, get_payment_authorizer

router = APIRouter(prefix="/internal", tags=["Internal"])


def verify_cron_secret(x_cron_secret: Annotated[Optional[str], Header()] = None):
    if not settings.CRON_SECRET or not x_cron_secret or not secrets.compare_digest(
            x_cron_secret, settings.CRON_SECRET
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@router.post("/sweep", response_model=schemas.SweepSummaryRead, dependencies=[Depends(verify_cron_secret)])
def run_sweep(
        authorizer: Annotated[StripePaymentAuthorizer, Depends(get_payment_authorizer)],
        db: Session = Depends(get_db),
):
    """
    Scheduler hook: expire overdue holds and remind waiting hosts now
    instead of waiting for the in-process loop.
    """
    summary = sweep(db, authorizer)
    summary.hosts_reminded = remind_pending_hosts(db)
    return schemas.SweepSummaryRead(**asdict(summary))
