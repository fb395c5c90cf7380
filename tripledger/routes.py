"""
HTTP routes for the trip ledger API.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse

from tripledger import receipts
from tripledger.config import Settings, get_settings
from tripledger.db import (
    DbClient,
    EntityConflictError,
    EntityNotFoundError,
    ExpenseRecord,
    TripRecord,
    UserRecord,
)
from tripledger.dependencies import (
    SESSION_ID_KEY,
    get_current_user,
    get_db_client,
    get_storage_client,
)
from tripledger.schemas import (
    ChangePasswordRequest,
    ExpenseResponse,
    HealthResponse,
    LoginRequest,
    MessageResponse,
    ProfileUpdateRequest,
    ReceiptUploadResponse,
    ReceiptUrlResponse,
    RegisterRequest,
    TripCreate,
    TripResponse,
    TripUpdate,
    UserResponse,
)
from tripledger.security import hash_password, verify_password
from tripledger.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()

BOTH_RECEIPTS_MESSAGE = "Send either a receipt file or a receiptPath, not both"


def _owned_trip(db: DbClient, trip_id: int, user: UserRecord) -> TripRecord:
    trip = db.get_trip(trip_id)
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    if trip.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return trip


def _owned_expense(db: DbClient, expense_id: int, user: UserRecord) -> ExpenseRecord:
    expense = db.get_expense(expense_id)
    if not expense:
        raise HTTPException(status_code=404, detail="Expense not found")
    if expense.user_id != user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return expense


def _read_receipt(
    receipt: Optional[UploadFile], max_bytes: int
) -> Optional[tuple[str, bytes]]:
    """Return (filename, bytes) for a submitted file, or None when absent."""
    if receipt is None or not receipt.filename:
        return None
    # One byte past the limit is enough to reject oversized files.
    data = receipt.file.read(max_bytes + 1)
    return receipt.filename, data


def _store_receipt(
    storage: StorageClient,
    user_id: int,
    upload: tuple[str, bytes],
    max_bytes: int,
    old_path: Optional[str] = None,
) -> str:
    filename, data = upload
    try:
        return receipts.replace_receipt(
            storage, user_id, old_path, filename, data, max_bytes=max_bytes
        )
    except receipts.InvalidReceiptError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        logger.exception("Receipt upload failed")
        raise HTTPException(status_code=500, detail="Failed to upload file") from exc


def _check_receipt_path(
    db: DbClient, storage: StorageClient, user_id: int, path: str
) -> str:
    """Accept a previously uploaded receipt for attachment to an expense."""
    if not receipts.belongs_to_user(user_id, path):
        raise HTTPException(status_code=403, detail="Forbidden")
    try:
        found = storage.exists(path)
    except StorageError as exc:
        logger.exception("Receipt lookup failed for %s", path)
        raise HTTPException(status_code=500, detail="Failed to verify receipt") from exc
    if not found:
        raise HTTPException(status_code=403, detail="Forbidden")
    if db.receipt_in_use(path):
        raise HTTPException(
            status_code=409, detail="Receipt is already attached to an expense"
        )
    return path


async def _submitted_form_keys(request: Request) -> frozenset:
    # Empty form values arrive as None; this tells "sent empty" from "not sent".
    form = await request.form()
    return frozenset(form.keys())


def _start_session(
    request: Request, db: DbClient, user_id: int, settings: Settings
) -> None:
    previous = request.session.get(SESSION_ID_KEY)
    if previous:
        db.delete_session(previous)
    request.session.clear()
    request.session[SESSION_ID_KEY] = db.create_session(
        user_id, settings.session_max_age_seconds
    )


# --- session / user ---


@router.post("/register", response_model=UserResponse, status_code=201)
def register(
    payload: RegisterRequest,
    request: Request,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    try:
        user = db.create_user(
            username=payload.username.strip(),
            password_hash=hash_password(payload.password),
            email=payload.email.strip().lower(),
            first_name=payload.first_name.strip(),
            last_name=(payload.last_name or "").strip(),
            phone_number=(payload.phone_number or "").strip(),
        )
    except EntityConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    _start_session(request, db, user.id, settings)
    logger.info("Registered user %s", user.id)
    return user


@router.post("/login", response_model=UserResponse)
def login(
    payload: LoginRequest,
    request: Request,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    user = db.get_user_by_username(payload.username.strip())
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    _start_session(request, db, user.id, settings)
    return user


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, db: DbClient = Depends(get_db_client)):
    token = request.session.get(SESSION_ID_KEY)
    if token:
        db.delete_session(token)
    request.session.clear()
    return MessageResponse(message="Logged out")


@router.get("/user", response_model=UserResponse)
def current_user(user: UserRecord = Depends(get_current_user)):
    return user


@router.put("/user/profile", response_model=UserResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    changes = payload.model_dump(exclude_unset=True)
    for key in ("last_name", "phone_number"):
        if key in changes and changes[key] is None:
            changes[key] = ""
    for key in ("first_name", "email"):
        if key in changes and changes[key] is None:
            del changes[key]
    if "email" in changes:
        changes["email"] = changes["email"].strip().lower()
    try:
        return db.update_user_profile(user.id, changes)
    except EntityConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/user/change-password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not verify_password(payload.current_password, user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db.update_user_password(user.id, hash_password(payload.new_password))
    ended = db.delete_user_sessions(user.id, keep=request.session.get(SESSION_ID_KEY))
    logger.info("Password changed for user %s; ended %d other session(s)", user.id, ended)
    return MessageResponse(message="Password updated")


# --- trips ---


@router.get("/trips", response_model=list[TripResponse])
def list_trips(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return db.list_trips(user.id)


@router.post("/trips", response_model=TripResponse, status_code=201)
def create_trip(
    payload: TripCreate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Trip name is required")
    return db.create_trip(user.id, name, payload.description)


@router.get("/trips/{trip_id}", response_model=TripResponse)
def get_trip(
    trip_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return _owned_trip(db, trip_id, user)


@router.put("/trips/{trip_id}", response_model=TripResponse)
def update_trip(
    trip_id: int,
    payload: TripUpdate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    trip = _owned_trip(db, trip_id, user)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name") is None:
        changes.pop("name", None)
    else:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Trip name is required")
    if not changes:
        return trip
    try:
        return db.update_trip(trip_id, changes)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/trips/{trip_id}", status_code=204)
def delete_trip(
    trip_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
) -> None:
    _owned_trip(db, trip_id, user)
    try:
        removed = db.delete_trip(trip_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    for expense in removed:
        receipts.discard_receipt(storage, expense.receipt_path)


# --- receipts ---


@router.get("/expenses/receipt/{expense_id}", response_model=ReceiptUrlResponse)
def get_receipt_url(
    expense_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    expense = _owned_expense(db, expense_id, user)
    if not expense.receipt_path:
        raise HTTPException(status_code=404, detail="No receipt attached to this expense")
    try:
        url = receipts.signed_receipt_url(
            storage, expense.receipt_path, settings.receipt_url_ttl_seconds
        )
    except StorageError as exc:
        logger.exception("Signing receipt %s failed", expense.receipt_path)
        raise HTTPException(
            status_code=500, detail="Failed to generate receipt URL"
        ) from exc
    return ReceiptUrlResponse(url=url)


@router.post("/expenses/upload", response_model=ReceiptUploadResponse)
def upload_receipt(
    receipt: Optional[UploadFile] = File(None),
    user: UserRecord = Depends(get_current_user),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    upload = _read_receipt(receipt, settings.max_receipt_bytes)
    if upload is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    path = _store_receipt(
        storage, user.id, upload, settings.max_receipt_bytes
    )
    return ReceiptUploadResponse(message="File uploaded successfully", receipt_path=path)


# --- expenses ---


@router.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    trip_name: Optional[str] = Query(None, alias="tripName"),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return db.list_expenses(user.id, trip_name=trip_name)


@router.post("/expenses", response_model=ExpenseResponse, status_code=201)
def create_expense(
    expense_type: str = Form(..., alias="type", min_length=1),
    expense_date: dt.date = Form(..., alias="date"),
    vendor: str = Form(..., min_length=1),
    location: str = Form(..., min_length=1),
    cost: Decimal = Form(..., ge=0, max_digits=10, decimal_places=2),
    trip_name: str = Form(..., alias="tripName", min_length=1),
    comments: Optional[str] = Form(None),
    uploaded_path: Optional[str] = Form(None, alias="receiptPath"),
    receipt: Optional[UploadFile] = File(None),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    receipt_path = None
    upload = _read_receipt(receipt, settings.max_receipt_bytes)
    if upload is not None and uploaded_path:
        raise HTTPException(status_code=400, detail=BOTH_RECEIPTS_MESSAGE)
    if upload is not None:
        receipt_path = _store_receipt(
            storage, user.id, upload, settings.max_receipt_bytes
        )
    elif uploaded_path:
        receipt_path = _check_receipt_path(db, storage, user.id, uploaded_path)
    try:
        return db.create_expense(
            user.id,
            type=expense_type,
            date=expense_date,
            vendor=vendor,
            location=location,
            cost=cost,
            trip_name=trip_name,
            comments=comments,
            receipt_path=receipt_path,
        )
    except Exception:
        receipts.discard_receipt(storage, receipt_path)
        raise


@router.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(
    expense_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return _owned_expense(db, expense_id, user)


@router.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    expense_type: Optional[str] = Form(None, alias="type", min_length=1),
    expense_date: Optional[dt.date] = Form(None, alias="date"),
    vendor: Optional[str] = Form(None, min_length=1),
    location: Optional[str] = Form(None, min_length=1),
    cost: Optional[Decimal] = Form(None, ge=0, max_digits=10, decimal_places=2),
    trip_name: Optional[str] = Form(None, alias="tripName", min_length=1),
    comments: Optional[str] = Form(None),
    uploaded_path: Optional[str] = Form(None, alias="receiptPath"),
    receipt: Optional[UploadFile] = File(None),
    user: UserRecord = Depends(get_current_user),
    form_keys: frozenset = Depends(_submitted_form_keys),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    expense = _owned_expense(db, expense_id, user)
    fields = {
        "type": expense_type,
        "date": expense_date,
        "vendor": vendor,
        "location": location,
        "cost": cost,
        "trip_name": trip_name,
        "comments": comments,
    }
    changes = {key: value for key, value in fields.items() if value is not None}
    if comments is None and "comments" in form_keys:
        changes["comments"] = ""

    upload = _read_receipt(receipt, settings.max_receipt_bytes)
    if upload is not None and uploaded_path:
        raise HTTPException(status_code=400, detail=BOTH_RECEIPTS_MESSAGE)
    superseded = None
    if upload is not None:
        changes["receipt_path"] = _store_receipt(
            storage,
            user.id,
            upload,
            settings.max_receipt_bytes,
            old_path=expense.receipt_path,
        )
    elif uploaded_path and uploaded_path != expense.receipt_path:
        changes["receipt_path"] = _check_receipt_path(
            db, storage, user.id, uploaded_path
        )
        superseded = expense.receipt_path

    new_path = changes.get("receipt_path")
    try:
        updated = db.update_expense(expense_id, changes)
    except EntityNotFoundError as exc:
        receipts.discard_receipt(storage, new_path)
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception:
        receipts.discard_receipt(storage, new_path)
        raise
    receipts.discard_receipt(storage, superseded)
    return updated


@router.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
) -> None:
    _owned_expense(db, expense_id, user)
    try:
        removed = db.delete_expense(expense_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    receipts.discard_receipt(storage, removed.receipt_path)


# --- system ---


@router.get("/health", response_model=HealthResponse, tags=["system"])
def healthcheck(db: DbClient = Depends(get_db_client)):
    now = dt.datetime.now(dt.timezone.utc)
    try:
        db.ping()
    except Exception as exc:
        logger.exception("Health check failed to reach the database")
        body = HealthResponse(
            status="error",
            database="error",
            timestamp=now,
            message=f"Failed to connect to database: {exc}",
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return HealthResponse(status="ok", database="connected", timestamp=now)
