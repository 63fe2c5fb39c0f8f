from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, UniqueConstraint

PENDING = "PENDING"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
BILL_STATUSES = (PENDING, COMPLETED, CANCELLED)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    name: str = ""
    email: Optional[str] = None
    password_hash: str
    role: str = "USER"  # ADMIN, USER
    is_active: bool = True


class Shop(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    shop_name: str = Field(index=True)
    address: str = ""
    contact: str = ""
    email: Optional[str] = None
    gst_number: Optional[str] = None
    status: str = "ACTIVE"  # ACTIVE, INACTIVE


class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_name: str = Field(index=True)
    unit: str = "pcs"
    hsn_code: Optional[str] = None
    gst: float = 0.0  # percent, split equally into SGST and CGST
    price: float = 0.0


class ShopProduct(SQLModel, table=True):
    """Per-shop price override for a product."""

    __table_args__ = (UniqueConstraint("shop_id", "product_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shop.id", index=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    price: float = 0.0


# Timestamps are naive local time; bill numbering counts by local calendar day.
class Stock(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True, unique=True)
    quantity: float = 0.0
    rate: float = 0.0
    updated_at: datetime = Field(default_factory=datetime.now, sa_type=DateTime)


class Bill(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_number: str = Field(index=True, unique=True)
    shop_id: int = Field(foreign_key="shop.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    bill_date: datetime = Field(default_factory=datetime.now, index=True, sa_type=DateTime)
    total_amount: float = 0.0
    received_amount: float = 0.0
    pending_amount: float = 0.0
    status: str = Field(default=PENDING, index=True)  # PENDING, COMPLETED, CANCELLED
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now, index=True, sa_type=DateTime)


class BillItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    quantity: float  # negative = return/wastage
    rate: float
    amount: float
    sgst: float = 0.0
    cgst: float = 0.0
