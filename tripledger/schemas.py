"""
Pydantic schemas for the trip ledger API.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class RegisterRequest(ApiModel):
    username: str = Field(..., min_length=3, max_length=64)
    password: str = Field(..., min_length=6, max_length=128)
    email: str = Field(..., max_length=254, pattern=EMAIL_PATTERN)
    first_name: str = Field("", max_length=100)
    last_name: Optional[str] = Field("", max_length=100)
    phone_number: Optional[str] = Field("", max_length=32)


class LoginRequest(ApiModel):
    username: str
    password: str


class ProfileUpdateRequest(ApiModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=32)
    email: Optional[str] = Field(None, max_length=254, pattern=EMAIL_PATTERN)
    bio: Optional[str] = Field(None, max_length=2000)


class ChangePasswordRequest(ApiModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=128)


class UserResponse(ApiModel):
    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    phone_number: str
    bio: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class MessageResponse(ApiModel):
    message: str


class TripCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)


class TripUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)


class TripResponse(ApiModel):
    id: int
    user_id: int
    name: str
    description: str
    created_at: Optional[dt.datetime] = None


class ExpenseResponse(ApiModel):
    id: int
    user_id: int
    type: str
    date: dt.date
    vendor: str
    location: str
    cost: Decimal
    trip_name: str
    receipt_path: Optional[str] = None
    comments: str
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class ReceiptUrlResponse(ApiModel):
    url: str


class ReceiptUploadResponse(ApiModel):
    message: str
    receipt_path: str


class HealthResponse(ApiModel):
    status: Literal["ok", "error"]
    database: Literal["connected", "error"]
    timestamp: dt.datetime
    message: Optional[str] = None
