# src/listings/routes.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.models import User
from auth.routes import ensure_subject_access, get_current_user
from clock import Clock, get_clock
from database import get_db
from listings.schemas import ListingCreate, ListingResponse
from listings.services import ListingService

router = APIRouter(prefix="/listings", tags=["listings"])


@router.post("", response_model=ListingResponse, status_code=201)
def create_listing(
    data: ListingCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: User = Depends(get_current_user),
) -> ListingResponse:
    """Submit a listing; blocked with 402 when the subscription has no free slot."""
    ensure_subject_access(data.subject_id, current_user)
    return ListingService.create_listing(data, db, clock.now())


@router.get("/subject/{subject_id}", response_model=List[ListingResponse])
def get_subject_listings(
    subject_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[ListingResponse]:
    ensure_subject_access(subject_id, current_user)
    return ListingService.get_subject_listings(subject_id, db)
