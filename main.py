import logging
import sys
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from aggregates import summarize
from attachments import AttachmentStore
from config import ConfigurationError, get_settings, validate_settings
from database import SessionLocal, init_engine
from models import Transaction, TransactionKind, User
from parsing import apply_kind, parse_amount, parse_bool, parse_date
from recurrence import local_today, next_due_date
from scheduler import SchedulerManager
from schemas import LoginIn, RegisterIn, TransactionIn, TransactionUpdate
from services import (
    AuthError,
    AuthService,
    NotFound,
    PersistenceError,
    TransactionFilters,
    TransactionService,
    ValidationError,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(title="FinTrack")

cors_origins = [o.strip() for o in settings.cors_origin.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins or ["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    init_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    try:
        return AuthService(db).authenticate(authorization)
    except AuthError as exc:
        raise HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        ) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    validate_settings()
    init_engine()
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _internal_error_response(exc: Exception) -> JSONResponse:
    content: dict[str, object] = {"detail": "Internal server error"}
    if not get_settings().is_production:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return _internal_error_response(exc)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"database_error: path={request.url.path}")
    return _internal_error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


def serialize_user(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


def serialize_transaction(
    txn: Transaction, today: Optional[date] = None
) -> dict[str, object]:
    next_occurrence = None
    if txn.is_recurring:
        upcoming = next_due_date(txn, today or local_today())
        next_occurrence = upcoming.isoformat() if upcoming else None
    return {
        "id": txn.id,
        "description": txn.description,
        "amount": float(txn.amount),
        "amount_cents": txn.amount_cents,
        "date": txn.date.isoformat(),
        "category": txn.category,
        "kind": txn.kind.value,
        "is_recurring": txn.is_recurring,
        "repeat_interval": txn.repeat_interval.value if txn.repeat_interval else None,
        "next_occurrence": next_occurrence,
        "attachment_ref": txn.attachment_ref,
        "attachment_url": (
            str(app.url_path_for("attachment_file", name=txn.attachment_ref))
            if txn.attachment_ref
            else None
        ),
        "origin_template_id": txn.origin_template_id,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
    }


def _auth_response(user: User, token: str) -> dict[str, object]:
    return {
        "user": serialize_user(user),
        "token": token,
        "expires_in": get_settings().token_max_age_secs,
    }


def _field(fields: dict, *names: str):
    for name in names:
        if name in fields:
            return fields[name]
    return None


def _has_field(fields: dict, *names: str) -> bool:
    return any(name in fields for name in names)


def _kind_from(fields: dict) -> Optional[TransactionKind]:
    raw = _field(fields, "type", "kind")
    if raw in (None, ""):
        return None
    try:
        return TransactionKind(str(raw).strip().lower())
    except ValueError as exc:
        raise ValidationError("Type must be income or expense") from exc


def transaction_payload(fields: dict) -> TransactionIn:
    missing = [
        name
        for name in ("description", "amount", "date", "category")
        if fields.get(name) in (None, "")
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    amount_cents = apply_kind(parse_amount(fields["amount"]), _kind_from(fields))
    interval = _field(fields, "repeatInterval", "repeat_interval")
    return TransactionIn(
        description=str(fields["description"]),
        amount_cents=amount_cents,
        date=parse_date(str(fields["date"])),
        category=str(fields["category"]),
        is_recurring=parse_bool(_field(fields, "isRecurring", "is_recurring")),
        repeat_interval=str(interval) if interval not in (None, "") else None,
    )


def transaction_update_payload(fields: dict) -> TransactionUpdate:
    values: dict[str, object] = {}
    if "description" in fields:
        values["description"] = str(fields["description"] or "")
    if "category" in fields:
        values["category"] = str(fields["category"] or "")
    if fields.get("amount") not in (None, ""):
        values["amount_cents"] = apply_kind(
            parse_amount(fields["amount"]), _kind_from(fields)
        )
    if fields.get("date") not in (None, ""):
        values["date"] = parse_date(str(fields["date"]))
    if _has_field(fields, "isRecurring", "is_recurring"):
        values["is_recurring"] = parse_bool(_field(fields, "isRecurring", "is_recurring"))
    if _has_field(fields, "repeatInterval", "repeat_interval"):
        interval = _field(fields, "repeatInterval", "repeat_interval")
        values["repeat_interval"] = str(interval) if interval not in (None, "") else None
    return TransactionUpdate(**values)


async def read_payload(request: Request) -> tuple[dict, Optional[UploadFile]]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Malformed JSON body") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return body, None

    form = await request.form()
    upload = form.get("file")
    fields = {key: value for key, value in form.items() if key != "file"}
    if not isinstance(upload, UploadFile) or not upload.filename:
        upload = None
    return fields, upload


async def store_attachment(upload: Optional[UploadFile]) -> Optional[str]:
    if upload is None:
        return None
    content = await upload.read()
    try:
        return AttachmentStore().save(upload.filename, content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        start = parse_date(params["start"]) if params.get("start") else None
        end = parse_date(params["end"]) if params.get("end") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date filter") from exc
    return TransactionFilters(
        query=params.get("q") or None,
        category=params.get("category") or None,
        start=start,
        end=end,
    )


@app.get("/health")
def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@app.post("/api/auth/register", status_code=201)
def register(data: RegisterIn, db: Session = Depends(get_db)):
    try:
        user, token = AuthService(db).register(data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _auth_response(user, token)


@app.post("/api/auth/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    service = AuthService(db)
    try:
        user, token = service.login(data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return _auth_response(user, token)


@app.post("/api/auth/refresh")
def refresh(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        user, token = AuthService(db).refresh(authorization)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return _auth_response(user, token)


@app.get("/api/auth/me")
def me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    try:
        user = AuthService(db).get_user(user_id)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return serialize_user(user)


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    today = local_today()
    items = TransactionService(db, user_id).list(filters)
    return [serialize_transaction(txn, today) for txn in items]


@app.get("/api/transactions/categories")
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return TransactionService(db, user_id).categories()


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.post("/api/transactions", status_code=201)
async def create_transaction(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    fields, upload = await read_payload(request)
    try:
        data = transaction_payload(fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    attachment_ref = await store_attachment(upload)
    if attachment_ref:
        data = data.model_copy(update={"attachment_ref": attachment_ref})
    try:
        txn = TransactionService(db, user_id).create(data)
    except ValidationError as exc:
        AttachmentStore().discard(attachment_ref)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception:
        AttachmentStore().discard(attachment_ref)
        raise
    return serialize_transaction(txn)


@app.put("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    fields, upload = await read_payload(request)
    try:
        data = transaction_update_payload(fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(db, user_id)
    try:
        service.get(transaction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    attachment_ref = await store_attachment(upload)
    if attachment_ref:
        data = TransactionUpdate(
            **data.model_dump(exclude_unset=True), attachment_ref=attachment_ref
        )
    try:
        txn = service.update(transaction_id, data)
    except NotFound as exc:
        AttachmentStore().discard(attachment_ref)
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        AttachmentStore().discard(attachment_ref)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception:
        AttachmentStore().discard(attachment_ref)
        raise
    return serialize_transaction(txn)


@app.get("/api/transactions/files/{name}", name="attachment_file")
def attachment_file(name: str):
    path = AttachmentStore().open_path(name)
    if path is None:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return FileResponse(path)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Deleted"}


@app.get("/api/dashboard")
def dashboard(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    try:
        top_n = min(max(int(request.query_params.get("top", "5")), 0), 50)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid top parameter") from exc
    items = TransactionService(db, user_id).list(filters)
    summary = summarize(items, top_n=top_n)
    today = local_today()
    return {
        "totals": {
            "income": float(summary.totals.income),
            "expenses": float(summary.totals.expenses),
            "balance": float(summary.totals.balance),
        },
        "savings_rate": summary.savings_rate,
        "health": {"score": summary.health.score, "level": summary.health.level},
        "categories": [
            {
                "category": item.category,
                "amount": float(item.amount),
                "count": item.count,
                "percentage": item.percentage,
            }
            for item in summary.categories
        ],
        "trend": [
            {
                "date": point.date.isoformat(),
                "amount": float(point.amount),
                "balance": float(point.balance),
                "kind": point.kind.value,
            }
            for point in summary.trend
        ],
        "top": [serialize_transaction(txn, today) for txn in summary.top],
    }


def main():
    import uvicorn

    try:
        current = validate_settings()
    except ConfigurationError as exc:
        logger.error(f"FATAL: {exc}")
        sys.exit(1)
    uvicorn.run("main:app", host="0.0.0.0", port=current.port, reload=False)


if __name__ == "__main__":
    main()
