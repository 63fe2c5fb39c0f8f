from __future__ import annotations
import logging
import math
import os
from typing import Optional, Literal, List

from fastapi import FastAPI, Depends, Query, Body
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from starlette.exceptions import HTTPException as StarletteHTTPException

from shop_billing.auth import hash_pw, verify_pw, create_token, require_roles
from shop_billing.db import engine, init_db, get_session
from shop_billing.errors import BillingError, NotFound
from shop_billing.models import User
from shop_billing.repository import SqlUnitOfWork
from shop_billing.schemas import (
    CreateBillRequest, UpdateBillRequest, StockAdjustRequest, LoginRequest,
    bill_payload, stock_payload, error_messages,
)
from shop_billing.services import create_bill, update_bill, delete_bill, preview_bill

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shop Billing")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:5173")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

any_user = require_roles("ADMIN", "USER")


def get_uow(s: Session = Depends(get_session)) -> SqlUnitOfWork:
    return SqlUnitOfWork(s)


def ok(data=None, message: Optional[str] = None, status_code: int = 200, **extra) -> JSONResponse:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


# ---------------- Error mapping ----------------
@app.exception_handler(BillingError)
def _billing_error(request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return fail(exc.message, exc.status_code)


@app.exception_handler(RequestValidationError)
def _validation_error(request, exc: RequestValidationError):
    return fail(f"Validation failed: {', '.join(error_messages(exc))}", 400)


@app.exception_handler(StarletteHTTPException)
def _http_error(request, exc: StarletteHTTPException):
    return fail(str(exc.detail), exc.status_code)


@app.exception_handler(Exception)
def _unexpected(request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return fail("Internal server error", 500)


@app.on_event("startup")
def _startup():
    init_db()
    # Create default admin on first run
    with Session(engine) as s:
        username = os.getenv("ADMIN_USERNAME", "admin")
        if not s.exec(select(User).where(User.username == username)).first():
            s.add(User(
                username=username,
                name="Administrator",
                password_hash=hash_pw(os.getenv("ADMIN_PASSWORD", "admin123")),
                role="ADMIN",
            ))
            s.commit()
            logger.info("seeded admin user %s", username)


@app.get("/health")
def health():
    return {"status": "OK", "message": "Billing API is running"}


# ---------------- Login ----------------
@app.post("/api/auth/login")
def login(payload: LoginRequest, s: Session = Depends(get_session)):
    u = s.exec(select(User).where(User.username == payload.username, User.is_active == True)).first()  # noqa: E712
    if not u or not verify_pw(payload.password, u.password_hash):
        return fail("Invalid username or password", 401)
    token = create_token(u.id, u.username, u.role)
    resp = ok({"token": token, "user": {"id": u.id, "name": u.name, "role": u.role}}, "Login successful")
    resp.set_cookie("token", token, httponly=True, samesite="lax")
    return resp


# ---------------- Bills ----------------
@app.get("/api/bills")
def bills_list(
    page: int = Query(1, gt=0),
    limit: int = Query(10, gt=0, le=100),
    search: str = "",
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    uow: SqlUnitOfWork = Depends(get_uow),
    u=Depends(any_user),
):
    rows, total = uow.bills.list_page(page, limit, search, sort_by, sort_order)
    return ok([bill_payload(d) for d in rows], pagination=pagination(page, limit, total))


@app.get("/api/bills/status/pending")
def bills_pending(uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    return ok([bill_payload(d) for d in uow.bills.list_pending()])


@app.get("/api/bills/shop/{shop_id}")
def bills_for_shop(
    shop_id: int,
    page: int = Query(1, gt=0),
    limit: int = Query(10, gt=0, le=100),
    uow: SqlUnitOfWork = Depends(get_uow),
    u=Depends(any_user),
):
    rows, total = uow.bills.list_page(page, limit, shop_id=shop_id)
    return ok([bill_payload(d) for d in rows], pagination=pagination(page, limit, total))


@app.get("/api/bills/{bill_id}")
def bills_get(bill_id: int, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    d = uow.bills.detail(bill_id)
    if not d:
        raise NotFound("Bill", bill_id)
    return ok(bill_payload(d))


@app.post("/api/bills")
def bills_create(payload: CreateBillRequest, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    d = create_bill(uow, payload, user_id=u["uid"])
    return ok(bill_payload(d), "Bill created successfully", status_code=201)


@app.post("/api/bills/preview")
def bills_preview(
    shop_id: int = Body(..., alias="shopId", gt=0),
    items: List[dict] = Body([]),
    uow: SqlUnitOfWork = Depends(get_uow),
    u=Depends(any_user),
):
    priced = preview_bill(uow.catalog, shop_id, items)
    return ok({
        "totalAmount": priced.total_amount,
        "items": [
            {
                "productId": it.product_id,
                "quantity": it.quantity,
                "rate": it.rate,
                "amount": it.amount,
                "sgst": it.sgst,
                "cgst": it.cgst,
            }
            for it in priced.items
        ],
    })


@app.put("/api/bills/{bill_id}")
def bills_update(bill_id: int, payload: UpdateBillRequest, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    d = update_bill(uow, bill_id, payload)
    return ok(bill_payload(d), "Bill updated successfully")


@app.delete("/api/bills/{bill_id}")
def bills_delete(bill_id: int, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    delete_bill(uow, bill_id)
    return ok(message="Bill deleted successfully")


# ---------------- Stock ----------------
@app.patch("/api/stocks/{product_id}/adjust")
def stock_adjust(product_id: int, payload: StockAdjustRequest, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    with uow:
        previous = uow.catalog.stock_quantity(product_id)
        if previous is None:
            raise NotFound("Stock", product_id)
        quantity = uow.catalog.adjust_stock(product_id, payload.adjustment)
        uow.commit()
    logger.info("stock for product %s adjusted by %s (%s)", product_id, payload.adjustment, payload.reason or "Manual adjustment")
    return ok(
        {
            "productId": product_id,
            "quantity": quantity,
            "previousQuantity": previous,
            "adjustment": payload.adjustment,
            "reason": payload.reason or "Manual adjustment",
        },
        f"Stock {'increased' if payload.adjustment > 0 else 'decreased'} successfully",
    )


@app.get("/api/stocks/alerts/low-stock")
def stock_low(threshold: float = 10, uow: SqlUnitOfWork = Depends(get_uow), u=Depends(any_user)):
    rows = uow.catalog.low_stock(threshold)
    return ok([stock_payload(st, p) for st, p in rows], meta={"threshold": threshold, "count": len(rows)})
