import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal, init_db
from errors import FAULT_MESSAGE, Failure, FailureKind, Result, fault
from models import TransactionType
from schemas import (
    BalanceOut,
    CategoryIn,
    CategoryOut,
    CategoryPatchIn,
    Envelope,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionOut,
    TransactionPatchIn,
    UserOut,
)
from security import Identity, read_token
from services import (
    CategoryService,
    LedgerService,
    TransactionFilters,
    UserService,
)

settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

app = FastAPI(title="Expenses Ledger API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


class FailureRaised(Exception):
    """Carries a failure out of a dependency, before any unit of work runs."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(request: Request) -> Identity:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise FailureRaised(
            Failure(FailureKind.unauthenticated, "Access denied. No token provided")
        )
    identity = read_token(header[len("Bearer ") :].strip())
    if identity is None:
        raise FailureRaised(
            Failure(FailureKind.unauthenticated, "Invalid or expired token")
        )
    return identity


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database schema ready")


def error_response(
    request: Request, failure: Failure, status_code: Optional[int] = None
) -> JSONResponse:
    status_code = status_code or failure.status_code
    request_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"request_failed: request_id={request_id} method={request.method} "
        f"path={request.url.path} code={failure.error_code} "
        f"message={failure.message}"
    )
    body = {
        "success": False,
        "error": {
            "message": failure.message,
            "code": failure.error_code,
            "statusCode": status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            "method": request.method,
            "requestId": request_id,
        },
    }
    headers = {
        "X-Request-ID": request_id,
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
    }
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def respond(
    request: Request,
    result: Result,
    message: str,
    render: Optional[Callable[[Any], Any]] = None,
    status_code: int = 200,
    token: Optional[str] = None,
) -> JSONResponse:
    if not result.ok:
        return error_response(request, result.failure)
    data = render(result.value) if render else None
    envelope = Envelope(message=message, data=data, token=token)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(
            mode="json", exclude={"token"} if token is None else None
        ),
    )


def dump(schema):
    def render(value):
        if isinstance(value, list):
            return [
                schema.model_validate(item).model_dump(mode="json") for item in value
            ]
        return schema.model_validate(value).model_dump(mode="json")

    return render


def type_from_param(value: Optional[str]) -> Optional[TransactionType]:
    if not value:
        return None
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise FailureRaised(
            Failure(FailureKind.validation_failure, f"Unknown type '{value}'")
        ) from exc


def parse_query_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # transaction_date is stored as naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type") or request.query_params.get("kind")
    category_param = request.query_params.get("category_id")
    txn_type = type_from_param(type_param)
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        start_at = parse_query_date(start)
        end_at = parse_query_date(end)
    except ValueError as exc:
        raise FailureRaised(
            Failure(FailureKind.validation_failure, f"Invalid date range: {exc}")
        ) from exc
    if start_at and end_at and start_at > end_at:
        raise FailureRaised(
            Failure(
                FailureKind.validation_failure, "Start date must be before end date"
            )
        )
    return TransactionFilters(
        type=txn_type, category_id=category_param or None, start=start_at, end=end_at
    )


@app.exception_handler(FailureRaised)
async def failure_raised_handler(request: Request, exc: FailureRaised):
    return error_response(request, exc.failure)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(
            str(part) for part in error.get("loc", ()) if part != "body"
        )
        msg = error.get("msg", "")
        problems.append(f"{location}: {msg}" if location else msg)
    message = "Validation Error: " + ", ".join(problems)
    return error_response(request, Failure(FailureKind.validation_failure, message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        failure = Failure(
            FailureKind.not_found,
            f"Route {request.url.path} not found",
            code="ROUTE_NOT_FOUND",
        )
        return error_response(request, failure)
    if exc.status_code >= 500:
        return error_response(request, fault())
    failure = Failure(
        FailureKind.validation_failure,
        str(exc.detail),
        code=f"HTTP_{exc.status_code}",
    )
    return error_response(request, failure, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        f"unhandled_error: method={request.method} path={request.url.path}"
    )
    detail = str(exc) if settings.expose_fault_detail else FAULT_MESSAGE
    return error_response(request, fault(detail))


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.post(f"{API_PREFIX}/auth/register")
def register(data: RegisterIn, request: Request, db: Session = Depends(get_db)):
    result = UserService(db).register(data)
    return respond(
        request,
        result,
        "User created successfully",
        render=lambda auth: {"user": dump(UserOut)(auth.user)},
        status_code=201,
        token=result.value.token if result.ok else None,
    )


@app.post(f"{API_PREFIX}/auth/login")
def login(data: LoginIn, request: Request, db: Session = Depends(get_db)):
    result = UserService(db).login(data)
    return respond(
        request,
        result,
        "User logged in successfully",
        token=result.value.token if result.ok else None,
    )


@app.get(f"{API_PREFIX}/auth/balance")
def get_balance(
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = LedgerService(db, identity.user_id).balance()
    return respond(
        request,
        result,
        "Balance fetched successfully.",
        render=lambda balance: BalanceOut(balance=balance).model_dump(mode="json"),
    )


@app.post(f"{API_PREFIX}/user/transaction")
def create_transaction(
    data: TransactionIn,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = LedgerService(db, identity.user_id).create(data)
    return respond(
        request,
        result,
        "Transaction succeeded.",
        render=dump(TransactionOut),
        status_code=201,
    )


@app.get(f"{API_PREFIX}/user/transactions")
def list_transactions(
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    result = LedgerService(db, identity.user_id).list(filters)
    return respond(
        request,
        result,
        "Transactions retrieved successfully.",
        render=dump(TransactionOut),
    )


@app.get(f"{API_PREFIX}/user/transaction/{{transaction_id}}")
def get_transaction(
    transaction_id: str,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = LedgerService(db, identity.user_id).get(transaction_id)
    return respond(
        request,
        result,
        "Transaction retrieved successfully.",
        render=dump(TransactionOut),
    )


@app.patch(f"{API_PREFIX}/user/transaction/{{transaction_id}}")
def update_transaction(
    transaction_id: str,
    data: TransactionPatchIn,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = LedgerService(db, identity.user_id).update(
        transaction_id, data.to_patch()
    )
    return respond(
        request,
        result,
        "Transaction updated successfully.",
        render=dump(TransactionOut),
    )


@app.delete(f"{API_PREFIX}/user/transaction/{{transaction_id}}")
def delete_transaction(
    transaction_id: str,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = LedgerService(db, identity.user_id).delete(transaction_id)
    return respond(
        request,
        result,
        "Transaction deleted successfully.",
        render=dump(TransactionOut),
    )


@app.post(f"{API_PREFIX}/categories/new/category")
def create_category(
    data: CategoryIn,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService(db, identity.user_id).create(data)
    return respond(
        request,
        result,
        "Category created successfully",
        render=dump(CategoryOut),
        status_code=201,
    )


@app.get(f"{API_PREFIX}/categories")
def list_categories(
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    type_param = request.query_params.get("type") or request.query_params.get("kind")
    result = CategoryService(db, identity.user_id).list_all(
        type_from_param(type_param)
    )
    return respond(
        request,
        result,
        "Categories retrieved successfully.",
        render=dump(CategoryOut),
    )


@app.patch(f"{API_PREFIX}/categories/category/{{category_id}}")
def update_category(
    category_id: str,
    data: CategoryPatchIn,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService(db, identity.user_id).update(category_id, data)
    return respond(
        request,
        result,
        "Category updated successfully.",
        render=dump(CategoryOut),
    )


@app.delete(f"{API_PREFIX}/categories/category/{{category_id}}")
def delete_category(
    category_id: str,
    request: Request,
    identity: Identity = Depends(current_user),
    db: Session = Depends(get_db),
):
    result = CategoryService(db, identity.user_id).delete(category_id)
    return respond(
        request,
        result,
        "Category deleted successfully.",
        render=dump(CategoryOut),
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
