import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from library_ledger.auth import decode_access_token
from library_ledger.config import settings
from library_ledger.database import Database
from library_ledger.errors import LedgerError
from library_ledger.ledger import CHECKOUT_FILTERS, STAFF_ACTIONS, CheckoutLedger
from library_ledger.retry import RetryPolicy
from library_ledger.users import User, UserDirectory

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Business refusals not listed here are plain 400s
_STATUS_BY_KIND = {
    "invalid_argument": 400,
    "permission_denied": 403,
    "not_found": 404,
    "contention": 503,
}


# --- Models ---
class BorrowRequest(BaseModel):
    book_id: int = Field(ge=1)
    due_days: int = Field(default=settings.default_loan_days, ge=1, le=30, description="Loan length in days")


class ReturnRequest(BaseModel):
    checkout_id: int = Field(ge=1)


class RenewRequest(BaseModel):
    checkout_id: int = Field(ge=1)
    additional_days: int = Field(default=settings.default_renewal_days, ge=1, le=14)


class InventoryRequest(BaseModel):
    new_total_copies: int = Field(ge=0)


def _ok(message: str, data: Any = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_ledger(request: Request) -> CheckoutLedger:
    return request.app.state.ledger


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> User:
    """Dependency resolving the bearer token to an active user."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access token required")
    user_id = decode_access_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = request.app.state.users.get_user(user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def require_reader(user: User = Depends(get_current_user)) -> User:
    if not user.is_reader:
        raise HTTPException(status_code=403, detail="Reader access required")
    return user


def require_staff(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return user


def create_app(database: Optional[Database] = None,
               clock: Optional[Callable[[], datetime]] = None,
               retry_policy: Optional[RetryPolicy] = None) -> FastAPI:
    """Build the HTTP application around one shared store handle."""
    database = database or Database()
    users = UserDirectory(database)
    ledger = CheckoutLedger(database, users=users, clock=clock, retry_policy=retry_policy)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
        database.initialize()
        logger.info("%s %s serving %s", settings.app_name, settings.app_version, database.db_file)
        yield

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.database = database
    app.state.users = users
    app.state.ledger = ledger

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Error mapping ---
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=_STATUS_BY_KIND.get(exc.kind, 400), content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        kind = "unauthorized" if exc.status_code == 401 else "permission_denied" if exc.status_code == 403 else "error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": kind, "message": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "invalid_argument",
                "message": "Validation failed",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(status_code=500, content={"success": False, "error": "internal", "message": message})

    # --- Health ---
    @app.get("/health")
    def health():
        """Lightweight health check that touches the database."""
        with database.reader() as conn:
            conn.execute("SELECT 1").fetchone()
        return {"status": "ok", "version": settings.app_version}

    # --- Checkouts ---
    @app.post("/checkouts/borrow")
    def borrow_book(payload: BorrowRequest, user: User = Depends(require_reader),
                    ledger: CheckoutLedger = Depends(get_ledger)):
        checkout = ledger.borrow(user.user_id, payload.book_id, payload.due_days)
        return _ok("Book borrowed successfully", checkout.to_dict())

    @app.post("/checkouts/return")
    def return_book(payload: ReturnRequest, user: User = Depends(require_reader),
                    ledger: CheckoutLedger = Depends(get_ledger)):
        receipt = ledger.return_book(payload.checkout_id, user_id=user.user_id)
        message = "Book returned late" if receipt.is_late else "Book returned successfully"
        return _ok(message, receipt.to_dict())

    @app.post("/checkouts/renew")
    def renew_book(payload: RenewRequest, user: User = Depends(require_reader),
                   ledger: CheckoutLedger = Depends(get_ledger)):
        checkout = ledger.renew(payload.checkout_id, user.user_id, payload.additional_days)
        return _ok("Book renewed successfully", checkout.to_dict())

    @app.get("/checkouts/my-checkouts")
    def my_checkouts(status: Optional[str] = Query(default=None, description=" | ".join(CHECKOUT_FILTERS)),
                     page: int = Query(default=1, ge=1),
                     limit: int = Query(default=settings.default_page_size, ge=1, le=50),
                     user: User = Depends(require_reader),
                     ledger: CheckoutLedger = Depends(get_ledger)):
        result = ledger.list_checkouts(user.user_id, status=status, page=page, limit=limit)
        return _ok("Checkouts", {
            "checkouts": [c.to_dict() for c in result["checkouts"]],
            "pagination": result["pagination"],
        })

    @app.get("/checkouts/history")
    def checkout_history(page: int = Query(default=1, ge=1),
                         limit: int = Query(default=settings.default_page_size, ge=1, le=50),
                         user: User = Depends(require_reader),
                         ledger: CheckoutLedger = Depends(get_ledger)):
        result = ledger.checkout_history(user.user_id, page=page, limit=limit)
        return _ok("Checkout history", {
            "history": [c.to_dict() for c in result["history"]],
            "pagination": result["pagination"],
        })

    @app.get("/checkouts/overdue")
    def overdue_checkouts(user: User = Depends(require_reader),
                          ledger: CheckoutLedger = Depends(get_ledger)):
        return _ok("Overdue checkouts", ledger.overdue_checkouts(user.user_id))

    @app.get("/checkouts/soon-due")
    def soon_due(days: int = Query(default=3, ge=1, le=14),
                 user: User = Depends(require_reader),
                 ledger: CheckoutLedger = Depends(get_ledger)):
        checkouts = ledger.soon_due(user.user_id, days=days)
        return _ok(f"Books due within the next {days} days", [c.to_dict() for c in checkouts])

    @app.get("/checkouts/my-borrowed-ids")
    def my_borrowed_ids(user: User = Depends(require_reader),
                        ledger: CheckoutLedger = Depends(get_ledger)):
        return _ok("Borrowed book ids", ledger.borrowed_book_ids(user.user_id))

    # --- Staff ---
    @app.put("/admin/books/{book_id}/inventory")
    def update_inventory(payload: InventoryRequest, book_id: int = Path(ge=1),
                         staff: User = Depends(require_staff),
                         ledger: CheckoutLedger = Depends(get_ledger)):
        adjustment = ledger.update_inventory(staff.user_id, book_id, payload.new_total_copies)
        return _ok("Inventory updated successfully", adjustment.to_dict())

    @app.put("/admin/books/{book_id}/retire")
    def retire_book(book_id: int = Path(ge=1),
                    staff: User = Depends(require_staff),
                    ledger: CheckoutLedger = Depends(get_ledger)):
        book = ledger.retire_book(staff.user_id, book_id)
        return _ok("Book retired successfully", book.to_dict())

    @app.get("/admin/logs")
    def staff_logs(action_type: Optional[str] = Query(default=None, description=" | ".join(STAFF_ACTIONS)),
                   page: int = Query(default=1, ge=1),
                   limit: int = Query(default=50, ge=1, le=100),
                   staff: User = Depends(require_staff),
                   ledger: CheckoutLedger = Depends(get_ledger)):
        result = ledger.staff_logs(action_type=action_type, page=page, limit=limit)
        return _ok("Staff logs", {
            "logs": [log.to_dict() for log in result["logs"]],
            "pagination": result["pagination"],
        })

    return app


app = create_app()
