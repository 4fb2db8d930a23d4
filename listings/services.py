# src/listings/services.py
import logging
from datetime import datetime
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import LedgerError, QuotaExceededError
from listings.models import Listing
from listings.schemas import ListingCreate, ListingResponse
from subscription.services import SubscriptionService

logger = logging.getLogger(__name__)


class ListingService:
    @staticmethod
    def create_listing(data: ListingCreate, db: Session, now: datetime) -> ListingResponse:
        """Consume a quota slot and store the listing in one transaction."""
        try:
            allowed = SubscriptionService.try_consume_listing_slot(data.subject_id, db, now, commit=False)
            if not allowed:
                db.rollback()
                raise QuotaExceededError("Subscription required or listing limit reached", subject_id=data.subject_id)
            listing = Listing(**data.model_dump(), status="pending", created_at=now)
            db.add(listing)
            db.commit()
            db.refresh(listing)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Listing creation failed for subject {data.subject_id}: {str(e)}", exc_info=True)
            raise LedgerError("Could not create listing") from e
        logger.info(f"Listing {listing.id} created for subject {data.subject_id}")
        return ListingResponse.model_validate(listing)

    @staticmethod
    def get_subject_listings(subject_id: int, db: Session) -> List[ListingResponse]:
        listings = db.query(Listing).filter(Listing.subject_id == subject_id).order_by(Listing.created_at.desc()).all()
        return [ListingResponse.model_validate(item) for item in listings]
