from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from shop_billing.errors import ValidationFailed
from shop_billing.repository import BillDetail

M = TypeVar("M", bound=BaseModel)


# keeps quantity * rate well inside Decimal's 28-digit context
MAX_AMOUNT = 1_000_000_000


class _Camel(BaseModel):
    # accepts both shopId and shop_id
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class BillItemIn(_Camel):
    product_id: int = Field(gt=0)
    quantity: float = Field(ge=-999999, le=999999)
    rate: float = Field(ge=0, le=MAX_AMOUNT)
    sgst: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT)
    cgst: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT)
    hsn_code: Optional[str] = None


class CreateBillRequest(_Camel):
    shop_id: int = Field(gt=0)
    bill_date: Optional[datetime] = None
    received_amount: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT)
    notes: Optional[str] = None
    apply_to_pending: bool = False
    items: List[BillItemIn] = Field(default_factory=list)


class UpdateBillRequest(_Camel):
    received_amount: Optional[float] = Field(default=None, ge=0, le=MAX_AMOUNT)
    status: Optional[Literal["PENDING", "COMPLETED", "CANCELLED"]] = None
    notes: Optional[str] = None


class StockAdjustRequest(_Camel):
    adjustment: float = Field(ge=-MAX_AMOUNT, le=MAX_AMOUNT)
    reason: Optional[str] = None


class LoginRequest(_Camel):
    username: str = Field(min_length=2)
    password: str = Field(min_length=6)


def error_messages(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        out.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return out


def validate_request(model: Type[M], data: Any) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(error_messages(e)) from e


# ---------------- response shaping ----------------
def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


def product_payload(p) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "id": p.id,
        "productName": p.product_name,
        "unit": p.unit,
        "hsnCode": p.hsn_code,
        "gst": p.gst,
        "price": p.price,
    }


def shop_payload(s) -> Optional[Dict[str, Any]]:
    if s is None:
        return None
    return {
        "id": s.id,
        "shopName": s.shop_name,
        "address": s.address,
        "contact": s.contact,
        "email": s.email,
        "gstNumber": s.gst_number,
        "status": s.status,
    }


def bill_payload(d: BillDetail) -> Dict[str, Any]:
    b = d.bill
    return {
        "id": b.id,
        "billNumber": b.bill_number,
        "shopId": b.shop_id,
        "userId": b.user_id,
        "billDate": _iso(b.bill_date),
        "totalAmount": b.total_amount,
        "receivedAmount": b.received_amount,
        "pendingAmount": b.pending_amount,
        "status": b.status,
        "notes": b.notes,
        "createdAt": _iso(b.created_at),
        "shop": shop_payload(d.shop),
        "user": {"id": d.user.id, "name": d.user.name, "email": d.user.email} if d.user else None,
        "billItems": [
            {
                "id": it.id,
                "billId": it.bill_id,
                "productId": it.product_id,
                "quantity": it.quantity,
                "rate": it.rate,
                "amount": it.amount,
                "sgst": it.sgst,
                "cgst": it.cgst,
                "product": product_payload(p),
            }
            for it, p in d.items
        ],
    }


def stock_payload(st, product=None) -> Dict[str, Any]:
    return {
        "id": st.id,
        "productId": st.product_id,
        "quantity": st.quantity,
        "rate": st.rate,
        "updatedAt": _iso(st.updated_at),
        "product": product_payload(product),
    }
