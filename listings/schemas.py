# src/listings/schemas.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class ListingCreate(BaseModel):
    """Schema for submitting a listing."""
    subject_id: int
    title: str
    make: str
    model: str
    year: int = Field(ge=1900)
    price: int = Field(gt=0)
    description: Optional[str] = None


class ListingResponse(BaseModel):
    """Schema for listing response."""
    id: int
    subject_id: int
    title: str
    make: str
    model: str
    year: int
    price: int
    description: Optional[str]
    status: str
    created_at: datetime

    class Config:
        from_attributes = True
