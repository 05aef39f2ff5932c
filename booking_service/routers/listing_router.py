from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Annotated, Optional

from .. import schemas, crud, document_gate
from ..auth import get_current_user_id_from_token, get_optional_user_id
from ..database import get_db
from ..errors import ListingNotFound

router = APIRouter(prefix="/listings", tags=["Listings"])

UserId = Annotated[int, Depends(get_current_user_id_from_token)]


def _get_owned_listing(db: Session, listing_id: int, host_id: int):
    db_listing = crud.get_listing(db, listing_id)
    if db_listing is None:
        raise ListingNotFound()
    if db_listing.host_id != host_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the host of this listing")
    return db_listing


@router.post("/", response_model=schemas.ListingRead, status_code=status.HTTP_201_CREATED)
def create_listing(listing: schemas.ListingCreate, user_id: UserId, db: Session = Depends(get_db)):
    return crud.create_listing(db=db, listing=listing, host_id=user_id)


@router.get("/{listing_id}", response_model=schemas.ListingRead)
def read_listing(listing_id: int, db: Session = Depends(get_db)):
    db_listing = crud.get_listing(db, listing_id)
    if db_listing is None:
        raise ListingNotFound()
    return db_listing


@router.get("/{listing_id}/required-documents", response_model=List[schemas.RequiredDocumentRead])
def read_required_documents(listing_id: int, db: Session = Depends(get_db)):
    if crud.get_listing(db, listing_id) is None:
        raise ListingNotFound()
    return crud.get_required_documents(db, listing_id)


@router.post(
    "/{listing_id}/required-documents",
    response_model=schemas.RequiredDocumentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_required_document(
        listing_id: int,
        rule: schemas.RequiredDocumentCreate,
        user_id: UserId,
        db: Session = Depends(get_db),
):
    _get_owned_listing(db, listing_id, user_id)
    try:
        return crud.create_required_document(db, listing_id, rule)
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Listing already requires '{rule.document_type}'."
        )


@router.delete("/{listing_id}/required-documents/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_required_document(listing_id: int, rule_id: int, user_id: UserId, db: Session = Depends(get_db)):
    _get_owned_listing(db, listing_id, user_id)
    rule = crud.get_required_document(db, listing_id, rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Required document not found")
    crud.delete_required_document(db, rule)


@router.get("/{listing_id}/document-gate", response_model=schemas.GateResultRead)
def read_document_gate(
        listing_id: int,
        user_id: Annotated[Optional[int], Depends(get_optional_user_id)],
        db: Session = Depends(get_db),
):
    """
    Whether the caller can request this listing right away or must upload
    documents first. Anonymous callers see what is required.
    """
    result = document_gate.evaluate(db, listing_id, user_id)
    return schemas.GateResultRead(**asdict(result))
